from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import pandas as pd
import portalocker
import pyarrow as pa

from partover.aggregator import PartitionBatch
from partover.commit_log import OPERATION_OVERWRITE, OPERATION_PURGE
from partover.config import ColumnType, TableConfig
from partover.exceptions import ConcurrentCommitInProgress
from partover.layout import PartitionKey, PartitionModel, PhysicalUnit
from partover.utils.content_hash import EMPTY_CONTENT_HASH, compute_dataframe_hash

ARROW_TYPES = {
    ColumnType.STRING: pa.string(),
    ColumnType.INT64: pa.int64(),
    ColumnType.FLOAT64: pa.float64(),
    ColumnType.BOOL: pa.bool_(),
    ColumnType.DATE: pa.date32(),
    ColumnType.TIMESTAMP: pa.timestamp("us"),
}


def arrow_schema(columns: Dict[str, ColumnType]) -> pa.Schema:
    """Arrow schema for a table's declared columns, in declaration order."""
    return pa.schema([pa.field(name, ARROW_TYPES[ColumnType(kind)]) for name, kind in columns.items()])


@dataclass(frozen=True)
class UnitVersion:
    """Commit metadata a store keeps for the current version of each unit."""

    table: str
    unit_id: str
    key: Tuple[Any, ...]
    row_count: int
    checksum: str
    sequence: int
    committed_at: str
    operation: str = OPERATION_OVERWRITE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": list(self.key),
            "row_count": self.row_count,
            "checksum": self.checksum,
            "sequence": self.sequence,
            "committed_at": self.committed_at,
            "operation": self.operation,
        }

    @classmethod
    def from_dict(cls, table: str, unit_id: str, data: Dict[str, Any]) -> "UnitVersion":
        return cls(
            table=table,
            unit_id=unit_id,
            key=tuple(data.get("key") or ()),
            row_count=int(data["row_count"]),
            checksum=data["checksum"],
            sequence=int(data["sequence"]),
            committed_at=data["committed_at"],
            operation=data.get("operation", OPERATION_OVERWRITE),
        )


@dataclass(frozen=True)
class UnitReplacement:
    """New content for one unit."""

    unit: PhysicalUnit
    batch: PartitionBatch


@dataclass
class StagedCommit:
    """Replacement content built off the critical path, not yet visible."""

    table: str
    sequence: int
    base_sequence: int
    committed_at: str
    versions: List[UnitVersion]
    staged_files: List[str] = field(default_factory=list)
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def unit_ids(self) -> List[str]:
        return [v.unit_id for v in self.versions]


class TableSnapshot(ABC):
    """Read-only view of one table version.

    A snapshot never changes once taken, even if a commit lands meanwhile.
    """

    def __init__(self, model: PartitionModel, columns: Sequence[str]):
        self.model = model
        self.columns = list(columns)

    @property
    @abstractmethod
    def sequence(self) -> int:
        ...

    @abstractmethod
    def unit_ids(self) -> List[str]:
        ...

    @abstractmethod
    def read_unit(self, key: PartitionKey) -> pd.DataFrame:
        """Rows of the unit addressed by ``key`` (empty frame if absent)."""
        ...

    @abstractmethod
    def read_table(self) -> pd.DataFrame:
        ...

    def row_count(self, key: PartitionKey) -> int:
        return len(self.read_unit(key))

    def unit_checksum(self, key: PartitionKey) -> str:
        """Content hash of a unit, independent of physical row order."""
        df = self.read_unit(key)
        return compute_dataframe_hash(df, columns=self.columns, sort_columns=self.columns)

    def _empty_frame(self) -> pd.DataFrame:
        return pd.DataFrame({col: [] for col in self.columns})


AbortCheck = Optional[Callable[[], bool]]


class BuildAborted(Exception):
    """Raised inside ``build`` when the caller asked to stop."""


class TableStore(ABC):
    """Capability handle to one target table's physical storage.

    The committer drives a store through ``build`` (copy-on-write staging),
    ``swap`` (the single atomic visibility change) and, on failure,
    ``discard``.
    """

    def __init__(self, config: TableConfig):
        self.config = config
        self.name = config.name
        self.model = PartitionModel.from_config(config)
        self.columns = list(config.columns)
        self.schema = arrow_schema(config.columns)

    @property
    def layout(self):
        return self.model.layout_kind()

    @property
    @abstractmethod
    def lock_path(self) -> str:
        ...

    @contextmanager
    def commit_lock(self, unit_ids: Sequence[str] = ()) -> Iterator[None]:
        """Exclusive, non-blocking writer lock for this table.

        Raises:
            ConcurrentCommitInProgress: Another writer holds the lock.
        """
        lock = portalocker.Lock(self.lock_path, timeout=0, fail_when_locked=True)
        try:
            lock.acquire()
        except portalocker.exceptions.LockException as e:
            raise ConcurrentCommitInProgress(self.name, unit_ids, self.lock_path) from e
        try:
            yield
        finally:
            lock.release()

    @abstractmethod
    def exists(self) -> bool:
        ...

    @abstractmethod
    def create(self) -> None:
        """Create the empty table. The layout kind is fixed from here on."""
        ...

    @abstractmethod
    def current_sequence(self) -> int:
        ...

    @abstractmethod
    def build(
        self,
        replacements: Sequence[UnitReplacement],
        removals: Sequence[PhysicalUnit],
        sequence: int,
        committed_at: str,
        should_abort: AbortCheck = None,
    ) -> StagedCommit:
        """Write replacement content without making it visible."""
        ...

    @abstractmethod
    def swap(self, staged: StagedCommit) -> None:
        """Make a staged commit visible in one atomic step."""
        ...

    @abstractmethod
    def discard(self, staged: StagedCommit) -> None:
        """Remove everything ``build`` wrote for a commit that will not land."""
        ...

    @abstractmethod
    def snapshot(self) -> TableSnapshot:
        ...

    @abstractmethod
    def unit_versions(self) -> List[UnitVersion]:
        """Current commit metadata per unit, as recorded by the swap itself."""
        ...

    @abstractmethod
    def vacuum(self, retention_seconds: float) -> List[str]:
        """Delete data files no longer referenced and older than the retention.

        Holds the commit lock, so it raises ConcurrentCommitInProgress while a
        commit is in flight.
        """
        ...

    def staged_versions(
        self,
        replacements: Sequence[UnitReplacement],
        removals: Sequence[PhysicalUnit],
        sequence: int,
        committed_at: str,
    ) -> List[UnitVersion]:
        """Unit metadata a commit will publish together with its data."""
        versions = [
            UnitVersion(
                table=self.name,
                unit_id=rep.unit.unit_id,
                key=tuple(rep.batch.key),
                row_count=rep.batch.row_count,
                checksum=rep.batch.checksum,
                sequence=sequence,
                committed_at=committed_at,
            )
            for rep in replacements
        ]
        versions.extend(
            UnitVersion(
                table=self.name,
                unit_id=unit.unit_id,
                key=tuple(unit.key),
                row_count=0,
                checksum=EMPTY_CONTENT_HASH,
                sequence=sequence,
                committed_at=committed_at,
                operation=OPERATION_PURGE,
            )
            for unit in removals
        )
        return versions

    def batch_table(self, batches: Sequence[PartitionBatch]) -> pa.Table:
        rows = [row for batch in batches for row in batch.rows]
        return pa.Table.from_pylist(rows, schema=self.schema)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(table={self.name!r}, layout={self.layout.value})"

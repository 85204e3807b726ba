"""Delta Lake table store.

Each commit is a single Delta transaction: ``write_deltalake`` in overwrite
mode with a predicate covering exactly the planned units (``replaceWhere``).
Delta's optimistic concurrency makes the swap atomic; the per-unit commit
metadata travels in the transaction's custom metadata so the commit log can
be rebuilt from table history.
"""

import json
import os
from typing import Any, Dict, List, Optional, Sequence

# Suppress noisy delta-rs transaction conflict warnings
if "RUST_LOG" not in os.environ:
    os.environ["RUST_LOG"] = "deltalake_core::kernel::transaction=error"

import pandas as pd
from deltalake import CommitProperties, DeltaTable, write_deltalake

from partover.config import LayoutKind, TableConfig
from partover.exceptions import LayoutMismatch, ManifestConflict, TableNotFound
from partover.layout import PartitionKey, PhysicalUnit, key_predicate
from partover.storage.base import (
    AbortCheck,
    BuildAborted,
    StagedCommit,
    TableSnapshot,
    TableStore,
    UnitReplacement,
    UnitVersion,
)
from partover.utils.logging import logger

SEQUENCE_KEY = "partover.sequence"
UNITS_KEY = "partover.units"


def _commit_metadata(entry: Dict[str, Any]) -> Dict[str, Any]:
    # delta-rs flattens custom metadata into commitInfo
    if UNITS_KEY in entry:
        return entry
    return entry.get("info") or {}


class DeltaTableSnapshot(TableSnapshot):
    def __init__(self, store: "DeltaTableStore", table: DeltaTable, sequence: int):
        super().__init__(store.model, store.columns)
        self.store = store
        self.table = table
        self._sequence = sequence

    @property
    def sequence(self) -> int:
        return self._sequence

    @property
    def version(self) -> int:
        return self.table.version()

    def unit_ids(self) -> List[str]:
        df = self.table.to_pandas(columns=list(self.model.key_columns)).drop_duplicates()
        return sorted(self.model.unit_for(self.model.key_of(row)).unit_id for _, row in df.iterrows())

    def read_unit(self, key: PartitionKey) -> pd.DataFrame:
        unit = self.model.unit_for(key)
        filters = [(col, "=", val) for col, val in zip(unit.key_columns, unit.key)]
        return self.table.to_pandas(filters=filters)

    def read_table(self) -> pd.DataFrame:
        return self.table.to_pandas()


class DeltaTableStore(TableStore):
    """Table stored as a Delta Lake table (local path or object storage URI)."""

    def __init__(self, config: TableConfig, lock_dir: Optional[str] = None):
        super().__init__(config)
        self.uri = config.path
        self.storage_options = dict(config.storage_options)
        self._lock_dir = lock_dir or os.path.dirname(
            os.path.abspath(config.resolved_commit_log_path)
        )

    @property
    def lock_path(self) -> str:
        return os.path.join(self._lock_dir, f".{self.name}.commit.lock")

    def _open(self, version: Optional[int] = None) -> DeltaTable:
        if not self.exists():
            raise TableNotFound(self.name, self.uri)
        return DeltaTable(self.uri, version=version, storage_options=self.storage_options or None)

    def exists(self) -> bool:
        return DeltaTable.is_deltatable(self.uri, storage_options=self.storage_options or None)

    def create(self) -> None:
        partition_by = list(self.model.key_columns) if self.layout == LayoutKind.EXPLICIT else None
        if self.exists():
            existing = self._open().metadata().partition_columns or []
            if list(existing) != (partition_by or []):
                raise LayoutMismatch(
                    f"delta table '{self.name}' is partitioned by {list(existing)}, "
                    f"configured layout is {self.layout.value}",
                    key_columns=self.model.key_columns,
                )
            return

        os.makedirs(self._lock_dir, exist_ok=True)
        DeltaTable.create(
            self.uri,
            schema=self.schema,
            mode="error",
            partition_by=partition_by,
            name=self.name,
            description=self.config.description,
            storage_options=self.storage_options or None,
        )
        logger.info(
            "Delta table created",
            table=self.name,
            layout=self.layout.value,
            partition_by=partition_by,
            uri=self.uri,
        )

    def _history(self) -> List[Dict[str, Any]]:
        return self._open().history()

    def current_sequence(self) -> int:
        if not self.exists():
            return 0
        sequences = [
            int(_commit_metadata(entry)[SEQUENCE_KEY])
            for entry in self._history()
            if SEQUENCE_KEY in _commit_metadata(entry)
        ]
        return max(sequences, default=0)

    def unit_versions(self) -> List[UnitVersion]:
        latest: Dict[str, UnitVersion] = {}
        # history is newest first
        for entry in self._history():
            meta = _commit_metadata(entry)
            if UNITS_KEY not in meta:
                continue
            for unit_id, data in json.loads(meta[UNITS_KEY]).items():
                if unit_id not in latest:
                    latest[unit_id] = UnitVersion.from_dict(self.name, unit_id, data)
        return sorted(latest.values(), key=lambda v: (v.sequence, v.unit_id))

    def snapshot(self) -> DeltaTableSnapshot:
        table = self._open()
        return DeltaTableSnapshot(self, table, self.current_sequence())

    def build(
        self,
        replacements: Sequence[UnitReplacement],
        removals: Sequence[PhysicalUnit],
        sequence: int,
        committed_at: str,
        should_abort: AbortCheck = None,
    ) -> StagedCommit:
        if replacements and removals:
            raise ValueError("A delta commit either replaces or removes units, not both")

        table = self._open()
        staged = StagedCommit(
            table=self.name,
            sequence=sequence,
            base_sequence=self.current_sequence(),
            committed_at=committed_at,
            versions=self.staged_versions(replacements, removals, sequence, committed_at),
        )
        units = [rep.unit for rep in replacements] or list(removals)
        staged.payload = {
            "base_version": table.version(),
            "predicate": " OR ".join(f"({key_predicate(u.key_columns, u.key)})" for u in units),
            "data": self.batch_table([rep.batch for rep in replacements]) if replacements else None,
            "custom_metadata": {
                SEQUENCE_KEY: str(sequence),
                UNITS_KEY: json.dumps({v.unit_id: v.to_dict() for v in staged.versions}, default=str),
            },
        }
        if should_abort is not None and should_abort():
            raise BuildAborted("cancelled by caller")
        return staged

    def swap(self, staged: StagedCommit) -> None:
        table = self._open()
        if table.version() != staged.payload["base_version"]:
            raise ManifestConflict(
                self.name, staged.payload["base_version"], table.version(), counter="version"
            )

        commit_properties = CommitProperties(custom_metadata=staged.payload["custom_metadata"])
        if staged.payload["data"] is None:
            table.delete(staged.payload["predicate"], commit_properties=commit_properties)
        else:
            write_deltalake(
                self.uri,
                staged.payload["data"],
                mode="overwrite",
                predicate=staged.payload["predicate"],
                storage_options=self.storage_options or None,
                commit_properties=commit_properties,
            )
        logger.debug("Delta transaction committed", table=self.name, sequence=staged.sequence)

    def discard(self, staged: StagedCommit) -> None:
        # nothing is written before the transaction; drop the in-memory payload
        staged.payload.clear()

    def vacuum(self, retention_seconds: float) -> List[str]:
        with self.commit_lock():
            removed = self._open().vacuum(
                retention_hours=int(retention_seconds // 3600),
                enforce_retention_duration=False,
                dry_run=False,
            )
        logger.info("Delta vacuum complete", table=self.name, removed_files=len(removed))
        return list(removed)

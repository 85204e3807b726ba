"""Partition model: physical layout of a target table.

A table is either organized into disjoint explicit partitions or into a
clustered store where each unit is the region matched by a key-equality
predicate. The two kinds are a tagged variant: ``PartitionModel.unit_for``
dispatches on ``LayoutKind`` and returns the variant carrying only what its
replacement strategy needs.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterator, Sequence, Tuple, Union
from urllib.parse import quote, unquote

import pyarrow as pa
import pyarrow.compute as pc

from partover.config import LayoutKind, TableConfig
from partover.exceptions import LayoutMismatch


@dataclass(frozen=True, order=True)
class PartitionKey:
    """Ordered, immutable tuple of key column values."""

    values: Tuple[Any, ...]

    def __post_init__(self):
        if not isinstance(self.values, tuple):
            object.__setattr__(self, "values", tuple(self.values))

    def __iter__(self) -> Iterator[Any]:
        return iter(self.values)

    def __len__(self) -> int:
        return len(self.values)

    def __getitem__(self, index: int) -> Any:
        return self.values[index]

    def __repr__(self) -> str:
        return f"PartitionKey{self.values!r}"


def format_key_value(value: Any) -> str:
    """Render a key value the way it appears in a unit id (Hive style)."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def sql_literal(value: Any) -> str:
    """Render a key value as a SQL literal for predicates."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    text = format_key_value(value).replace("'", "''")
    return f"'{text}'"


def key_predicate(key_columns: Sequence[str], key: PartitionKey) -> str:
    """SQL equality predicate selecting the rows of one key."""
    return " AND ".join(f"{col} = {sql_literal(val)}" for col, val in zip(key_columns, key))


def unit_id_for(key_columns: Sequence[str], key: PartitionKey) -> str:
    return "/".join(
        f"{col}={quote(format_key_value(val), safe='')}" for col, val in zip(key_columns, key)
    )


def parse_unit_id(unit_id: str) -> Tuple[Tuple[str, str], ...]:
    """Split a unit id back into (column, rendered value) pairs."""
    pairs = []
    for part in unit_id.split("/"):
        col, _, val = part.partition("=")
        pairs.append((col, unquote(val)))
    return tuple(pairs)


@dataclass(frozen=True)
class ExplicitPartition:
    """Disjoint storage segment addressed by exact key equality."""

    unit_id: str
    key: PartitionKey
    key_columns: Tuple[str, ...]
    kind: LayoutKind = field(default=LayoutKind.EXPLICIT, init=False)

    @property
    def relative_path(self) -> str:
        # unit ids are already path-safe, one directory level per key column
        return self.unit_id


@dataclass(frozen=True)
class PredicateRegion:
    """Rows of a clustered store matching an equality predicate on the key."""

    unit_id: str
    key: PartitionKey
    key_columns: Tuple[str, ...]
    kind: LayoutKind = field(default=LayoutKind.PREDICATE, init=False)

    @property
    def predicate(self) -> str:
        return key_predicate(self.key_columns, self.key)

    def arrow_mask(self, table: "pa.Table") -> "pa.ChunkedArray":
        """Boolean mask of the rows of ``table`` inside this region."""
        result = None
        for col, val in zip(self.key_columns, self.key):
            column = table.column(col)
            column_mask = pc.equal(column, pa.scalar(val, type=column.type))
            result = column_mask if result is None else pc.and_(result, column_mask)
        return result


PhysicalUnit = Union[ExplicitPartition, PredicateRegion]


class PartitionModel:
    """Maps partition keys to physical units for one table layout."""

    def __init__(self, kind: LayoutKind, key_columns: Sequence[str]):
        if not key_columns:
            raise LayoutMismatch("A layout needs at least one key column")
        self.kind = LayoutKind(kind)
        self.key_columns = tuple(key_columns)

    @classmethod
    def from_config(cls, config: TableConfig) -> "PartitionModel":
        return cls(config.layout, config.key_columns)

    def layout_kind(self) -> LayoutKind:
        return self.kind

    def unit_for(self, key: PartitionKey) -> PhysicalUnit:
        """Resolve the physical unit addressed by ``key``.

        Raises:
            LayoutMismatch: If the key's arity differs from the key columns.
        """
        if not isinstance(key, PartitionKey):
            key = PartitionKey(tuple(key))
        if len(key) != len(self.key_columns):
            raise LayoutMismatch(
                f"key has {len(key)} value(s) but layout expects {len(self.key_columns)}",
                key_columns=self.key_columns,
                keys=[key],
            )
        unit_id = unit_id_for(self.key_columns, key)
        if self.kind == LayoutKind.EXPLICIT:
            return ExplicitPartition(unit_id=unit_id, key=key, key_columns=self.key_columns)
        return PredicateRegion(unit_id=unit_id, key=key, key_columns=self.key_columns)

    def key_of(self, row: Any) -> PartitionKey:
        """Key of a stored row (mapping or pandas row)."""
        return PartitionKey(tuple(row[col] for col in self.key_columns))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PartitionModel):
            return NotImplemented
        return self.kind == other.kind and self.key_columns == other.key_columns

    def __hash__(self) -> int:
        return hash((self.kind, self.key_columns))

    def __repr__(self) -> str:
        return f"PartitionModel(kind={self.kind.value}, key_columns={list(self.key_columns)})"

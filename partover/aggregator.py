"""Batch aggregator: groups computed rows into one batch per partition key."""

import time
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from partover.config import ColumnType
from partover.exceptions import KeyExtractionError, SchemaMismatch
from partover.layout import PartitionKey, PartitionModel
from partover.utils.content_hash import compute_rows_hash
from partover.utils.logging import logger

Row = Mapping[str, Any]
RowsInput = Union[Iterable[Row], pd.DataFrame]
ColumnsInput = Union[Sequence[str], Mapping[str, ColumnType]]

MIDNIGHT = datetime.min.time()


@dataclass(frozen=True)
class PartitionBatch:
    """All computed rows sharing one partition key."""

    key: PartitionKey
    rows: Tuple[Dict[str, Any], ...]
    row_count: int
    checksum: str

    def to_records(self) -> List[Dict[str, Any]]:
        return [dict(row) for row in self.rows]


def _is_null(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (list, tuple, dict, set)):
        return False
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def _iter_rows(rows: RowsInput) -> Iterable[Row]:
    if isinstance(rows, pd.DataFrame):
        return rows.to_dict(orient="records")
    return rows


def _to_string(value: Any) -> str:
    if isinstance(value, str):
        return str(value)
    raise TypeError


def _to_int(value: Any) -> int:
    if isinstance(value, (bool, np.bool_)):
        raise TypeError
    if isinstance(value, (int, np.integer)):
        return int(value)
    # float columns from pandas, e.g. an int column that held NaN
    if isinstance(value, (float, np.floating)) and float(value).is_integer():
        return int(value)
    raise TypeError


def _to_float(value: Any) -> float:
    if isinstance(value, (bool, np.bool_)):
        raise TypeError
    if isinstance(value, (int, float, np.integer, np.floating)):
        return float(value)
    raise TypeError


def _to_bool(value: Any) -> bool:
    if isinstance(value, (bool, np.bool_)):
        return bool(value)
    raise TypeError


def _to_timestamp(value: Any) -> datetime:
    if isinstance(value, (datetime, np.datetime64, str)):
        return pd.Timestamp(value).to_pydatetime()
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    raise TypeError


def _to_date(value: Any) -> date:
    if isinstance(value, str):
        return date.fromisoformat(value)
    if isinstance(value, (datetime, np.datetime64)):
        stamp = _to_timestamp(value)
        if stamp.time() != MIDNIGHT:
            raise ValueError("has a time of day")
        return stamp.date()
    if isinstance(value, date):
        return value
    raise TypeError


_CASTS: Dict[ColumnType, Callable[[Any], Any]] = {
    ColumnType.STRING: _to_string,
    ColumnType.INT64: _to_int,
    ColumnType.FLOAT64: _to_float,
    ColumnType.BOOL: _to_bool,
    ColumnType.DATE: _to_date,
    ColumnType.TIMESTAMP: _to_timestamp,
}


def cast_value(value: Any, kind: ColumnType) -> Any:
    """Cast ``value`` to the Python type stored for ``kind``; nulls become None.

    Raises:
        ValueError: ``value`` cannot represent a ``kind`` value.
    """
    if _is_null(value):
        return None
    try:
        return _CASTS[kind](value)
    except TypeError:
        raise ValueError(f"expected {kind.value}, got {type(value).__name__} {value!r}")
    except ValueError as e:
        raise ValueError(f"expected {kind.value}, got {value!r} ({e})")


class BatchAggregator:
    """Groups rows by key after validating them against the table schema.

    Ingest is all-or-nothing: the first bad row aborts the whole call and no
    batches are returned. When ``columns`` maps names to ColumnTypes every
    value is cast to its column's type first, so a key sent as a date, an
    ISO string or a midnight Timestamp lands in the same unit.
    """

    def __init__(self, model: PartitionModel, columns: ColumnsInput, table: str = "<table>"):
        self.model = model
        self.columns = tuple(columns)
        self.types: Optional[Dict[str, ColumnType]] = None
        if isinstance(columns, Mapping):
            self.types = {name: ColumnType(kind) for name, kind in columns.items()}
        self.table = table
        self._column_set = frozenset(self.columns)

    def _validate_schema(self, row: Row, index: int) -> None:
        keys = set(row.keys())
        if keys == self._column_set:
            return
        raise SchemaMismatch(
            self.table,
            index,
            missing=list(self._column_set - keys),
            unexpected=[str(k) for k in keys - self._column_set],
        )

    def _check_key(self, row: Row, index: int) -> None:
        for col in self.model.key_columns:
            value = row[col]
            if _is_null(value):
                raise KeyExtractionError(self.table, index, col, value, "key value is null")
            try:
                hash(value)
            except TypeError:
                raise KeyExtractionError(
                    self.table, index, col, value, f"unhashable type {type(value).__name__}"
                )

    def _cast_row(self, row: Row, index: int) -> Dict[str, Any]:
        if self.types is None:
            return dict(row)
        record = {}
        for col in self.columns:
            try:
                record[col] = cast_value(row[col], self.types[col])
            except ValueError as e:
                raise SchemaMismatch(self.table, index, column=col, reason=str(e)) from e
        return record

    def key_for(self, values: Sequence[Any], index: int = 0) -> PartitionKey:
        """Key for caller-supplied values, cast the way ingest casts rows.

        Raises:
            KeyExtractionError: A value does not fit its key column's type.
        """
        if self.types is None or len(values) != len(self.model.key_columns):
            # arity errors are reported by the layout
            return PartitionKey(tuple(values))
        cast = []
        for col, value in zip(self.model.key_columns, values):
            try:
                cast.append(cast_value(value, self.types[col]))
            except ValueError as e:
                raise KeyExtractionError(self.table, index, col, value, str(e)) from e
            if cast[-1] is None:
                raise KeyExtractionError(self.table, index, col, value, "key value is null")
        return PartitionKey(tuple(cast))

    def ingest(self, rows: RowsInput) -> Dict[PartitionKey, PartitionBatch]:
        """Group ``rows`` into one PartitionBatch per distinct key.

        Args:
            rows: Iterable of row mappings, or a pandas DataFrame.

        Returns:
            Mapping of key -> batch. Emission order is unspecified.

        Raises:
            SchemaMismatch: A row has missing or unexpected columns, or a
                value that does not fit its column type.
            KeyExtractionError: A key component is null or unhashable.
        """
        start_time = time.time()
        grouped: Dict[PartitionKey, List[Dict[str, Any]]] = {}
        total = 0

        for index, row in enumerate(_iter_rows(rows)):
            self._validate_schema(row, index)
            self._check_key(row, index)
            record = self._cast_row(row, index)
            key = PartitionKey(tuple(record[col] for col in self.model.key_columns))
            grouped.setdefault(key, []).append(record)
            total += 1

        batches = {
            key: PartitionBatch(
                key=key,
                rows=tuple(group),
                row_count=len(group),
                checksum=compute_rows_hash(group, self.columns),
            )
            for key, group in grouped.items()
        }

        logger.info(
            "Ingest complete",
            table=self.table,
            rows=total,
            batches=len(batches),
            elapsed_ms=round((time.time() - start_time) * 1000, 2),
        )
        return batches

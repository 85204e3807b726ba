"""Content hashing utilities for idempotent overwrites.

Batch checksums are compared against the commit log to decide whether a unit
needs to be rewritten, so they must not depend on the order rows arrived in.
"""

import hashlib
import json
import math
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Iterable, List, Mapping, Optional, Sequence

if TYPE_CHECKING:
    import pandas as pd

EMPTY_CONTENT_HASH = hashlib.sha256(b"EMPTY_DATAFRAME").hexdigest()


def _canonical(value: Any) -> Any:
    """Normalize a scalar so equal values serialize identically."""
    if value is None:
        return None
    if isinstance(value, (datetime, date)) or hasattr(value, "isoformat"):
        return value.isoformat()
    # numpy scalars
    if hasattr(value, "item") and not isinstance(value, (str, bytes)):
        try:
            value = value.item()
        except (TypeError, ValueError):
            pass
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, bytes):
        return value.hex()
    return value


def compute_row_hash(row: Mapping[str, Any], columns: Sequence[str]) -> str:
    """SHA256 of one row's values in column order."""
    payload = json.dumps([_canonical(row.get(col)) for col in columns], default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def compute_rows_hash(rows: Iterable[Mapping[str, Any]], columns: Sequence[str]) -> str:
    """Compute an order-independent SHA256 hash over a collection of rows.

    Each row is hashed on its own and the sorted row digests are hashed
    together, so permuting the rows never changes the result while
    duplicate rows still count.

    Args:
        rows: Row mappings (column name -> value)
        columns: Columns to include, in a fixed order

    Returns:
        SHA256 hex digest string (64 characters)

    Example:
        >>> a = compute_rows_hash([{"id": 1}, {"id": 2}], ["id"])
        >>> b = compute_rows_hash([{"id": 2}, {"id": 1}], ["id"])
        >>> assert a == b
    """
    digests = sorted(compute_row_hash(row, columns) for row in rows)
    if not digests:
        return EMPTY_CONTENT_HASH
    hasher = hashlib.sha256()
    for digest in digests:
        hasher.update(digest.encode("ascii"))
    return hasher.hexdigest()


def compute_dataframe_hash(
    df: "pd.DataFrame",
    columns: Optional[List[str]] = None,
    sort_columns: Optional[List[str]] = None,
) -> str:
    """Compute a deterministic SHA256 hash of a DataFrame's content.

    Used to verify that a stored unit is byte-for-byte unchanged between two
    reads of the same store.

    Args:
        df: Pandas DataFrame to hash
        columns: Subset of columns to include in hash. If None, all columns.
        sort_columns: Columns to sort by for deterministic ordering.
            If None, DataFrame is not sorted (assumes consistent order).

    Returns:
        SHA256 hex digest string (64 characters)
    """
    if df.empty:
        return EMPTY_CONTENT_HASH

    work_df = df

    if columns:
        missing = set(columns) - set(df.columns)
        if missing:
            raise ValueError(f"Hash columns not found in DataFrame: {missing}")
        work_df = work_df[columns]

    if sort_columns:
        missing = set(sort_columns) - set(df.columns)
        if missing:
            raise ValueError(f"Sort columns not found in DataFrame: {missing}")
        work_df = work_df.sort_values(sort_columns).reset_index(drop=True)

    csv_bytes = work_df.to_csv(index=False).encode("utf-8")
    return hashlib.sha256(csv_bytes).hexdigest()

"""Physical table stores.

The Delta backend is imported on demand so the local backend works without
``deltalake`` loaded.
"""

from partover.config import StorageBackend, TableConfig

from .base import (
    BuildAborted,
    StagedCommit,
    TableSnapshot,
    TableStore,
    UnitReplacement,
    UnitVersion,
    arrow_schema,
)
from .local import LocalTableSnapshot, LocalTableStore


def open_store(config: TableConfig) -> TableStore:
    """Return the store implementation for ``config.backend``."""
    if config.backend == StorageBackend.DELTA:
        from .delta import DeltaTableStore

        return DeltaTableStore(config)
    return LocalTableStore(config)


__all__ = [
    "BuildAborted",
    "StagedCommit",
    "TableSnapshot",
    "TableStore",
    "UnitReplacement",
    "UnitVersion",
    "arrow_schema",
    "LocalTableSnapshot",
    "LocalTableStore",
    "open_store",
]

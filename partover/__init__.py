"""partover - Partition-aware incremental overwrite engine."""

__version__ = "0.3.0"

from partover.aggregator import BatchAggregator, PartitionBatch
from partover.commit_log import CommitLog, CommitRecord
from partover.committer import AtomicCommitter, CommitState, retry_commit
from partover.config import (
    EngineConfig,
    LayoutKind,
    StorageBackend,
    TableConfig,
    load_config,
)
from partover.engine import CommitResult, OverwriteEngine
from partover.layout import (
    ExplicitPartition,
    PartitionKey,
    PartitionModel,
    PredicateRegion,
)
from partover.planner import OverwritePlan, OverwritePlanner, PlanEntry, ReplaceMode

__all__ = [
    "AtomicCommitter",
    "BatchAggregator",
    "CommitLog",
    "CommitRecord",
    "CommitResult",
    "CommitState",
    "EngineConfig",
    "ExplicitPartition",
    "LayoutKind",
    "OverwriteEngine",
    "OverwritePlan",
    "OverwritePlanner",
    "PartitionBatch",
    "PartitionKey",
    "PartitionModel",
    "PlanEntry",
    "PredicateRegion",
    "ReplaceMode",
    "StorageBackend",
    "TableConfig",
    "load_config",
    "retry_commit",
    "__version__",
]

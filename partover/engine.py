"""OverwriteEngine: ingest, plan and commit for one target table."""

import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from partover.aggregator import BatchAggregator, PartitionBatch, RowsInput
from partover.commit_log import CommitLog, CommitRecord
from partover.committer import AtomicCommitter, retry_commit
from partover.config import RetryConfig, TableConfig, load_config
from partover.layout import PartitionKey
from partover.planner import OverwritePlan, OverwritePlanner
from partover.storage import TableSnapshot, TableStore, open_store
from partover.utils.logging import configure_logging, get_logging_context, logger

DEFAULT_VACUUM_RETENTION_SECONDS = 7 * 24 * 3600


def _as_key(value: Any) -> PartitionKey:
    if isinstance(value, PartitionKey):
        return value
    if isinstance(value, (tuple, list)):
        return PartitionKey(tuple(value))
    return PartitionKey((value,))


@dataclass
class CommitResult:
    """Outcome of one ``OverwriteEngine.run``."""

    table: str
    records: List[CommitRecord]
    plan: OverwritePlan
    elapsed: float

    @property
    def replaced_unit_ids(self) -> List[str]:
        return [e.unit_id for e in self.plan.replacements]

    @property
    def noop_unit_ids(self) -> List[str]:
        return [e.unit_id for e in self.plan.noops]

    @property
    def sequence(self) -> Optional[int]:
        """Sequence of the commit this run produced (None if nothing was replaced)."""
        replaced = set(self.replaced_unit_ids)
        for record in self.records:
            if record.unit_id in replaced:
                return record.sequence
        return None

    def as_tuples(self) -> List[Tuple[str, int, str, int]]:
        """``(unit_id, row_count, checksum, sequence)`` per planned unit."""
        return [record.as_tuple() for record in self.records]


class OverwriteEngine:
    """Partition-aware incremental overwrite of one table.

    Holds no state between calls beyond handles to the store and the commit
    log; every decision is re-derived from them.

    Example:
        >>> engine = OverwriteEngine.from_config("partover.yaml", "orders_daily")
        >>> engine.create_table()
        >>> result = engine.run(rows)
        >>> result.as_tuples()
    """

    def __init__(
        self,
        table_config: TableConfig,
        store: Optional[TableStore] = None,
        log: Optional[CommitLog] = None,
        retry: Optional[RetryConfig] = None,
    ):
        self.config = table_config
        self.name = table_config.name
        self.store = store or open_store(table_config)
        self.log = log or CommitLog(table_config.resolved_commit_log_path)
        self.retry = retry or RetryConfig()
        self.model = self.store.model
        self.aggregator = BatchAggregator(self.model, table_config.columns, table=self.name)
        self.planner = OverwritePlanner()
        self.ctx = get_logging_context(table=self.name)

        for value in table_config.storage_options.values():
            logger.register_secret(str(value))

        if self.store.exists():
            self.recover()

    @classmethod
    def from_config(cls, path: str, table: str, env: Optional[str] = None) -> "OverwriteEngine":
        """Open the engine for ``table`` as declared in a YAML config file."""
        config = load_config(path, env=env)
        configure_logging(config.logging.structured, config.logging.level.value)
        return cls(config.table(table), retry=config.retry)

    def _committer(self) -> AtomicCommitter:
        return AtomicCommitter(self.store, self.log)

    def _with_retry(self, func):
        if self.retry.max_retries > 0:
            return retry_commit(func, self.retry.max_retries, self.retry.base_delay)
        return func()

    def _key(self, value: Any, index: int = 0) -> PartitionKey:
        return self.aggregator.key_for(_as_key(value), index)

    def _catch_up_log(self) -> None:
        # the table runs ahead of the log after a CommitLogWriteError
        if self.store.current_sequence() > self.log.last_sequence():
            self.recover()

    def create_table(self) -> None:
        self.store.create()

    def ingest(self, rows: RowsInput) -> Dict[PartitionKey, PartitionBatch]:
        return self.aggregator.ingest(rows)

    def plan(self, rows: RowsInput, force_full_rebuild: bool = False) -> OverwritePlan:
        """Dry run: the plan ``run`` would commit for ``rows``, without committing."""
        batches = self.ingest(rows)
        self._catch_up_log()
        return self.planner.plan(
            batches,
            self.model,
            self.log,
            force_full_rebuild=force_full_rebuild,
            table=self.name,
        )

    def run(
        self,
        rows: RowsInput,
        force_full_rebuild: bool = False,
        cancel: Optional[threading.Event] = None,
    ) -> CommitResult:
        """Overwrite exactly the units named by ``rows``.

        Raises:
            EmptyBatchSet: ``rows`` is empty.
            CommitAborted: The commit failed before the swap (after retries).
            CommitLogWriteError: Data committed, log not; call ``recover``.
        """
        start_time = time.time()
        batches = self.ingest(rows)

        def attempt() -> CommitResult:
            self._catch_up_log()
            # re-plan on every attempt: a retried commit may find units already written
            plan = self.planner.plan(
                batches,
                self.model,
                self.log,
                force_full_rebuild=force_full_rebuild,
                table=self.name,
            )
            records = self._committer().commit(plan, cancel=cancel)
            return CommitResult(
                table=self.name,
                records=records,
                plan=plan,
                elapsed=time.time() - start_time,
            )

        result = self._with_retry(attempt)
        self.ctx.info(
            "Run complete",
            replaced=len(result.replaced_unit_ids),
            unchanged=len(result.noop_unit_ids),
            sequence=result.sequence,
            elapsed_ms=round(result.elapsed * 1000, 2),
        )
        return result

    def snapshot(self) -> TableSnapshot:
        return self.store.snapshot()

    def history(
        self,
        key: Optional[Any] = None,
        since_sequence: Optional[int] = None,
    ) -> List[CommitRecord]:
        """Commit records, optionally for one key and/or after a sequence."""
        unit_id = self.model.unit_for(self._key(key)).unit_id if key is not None else None
        return self.log.history(unit_id=unit_id, since_sequence=since_sequence)

    def purge(
        self,
        keys: Iterable[Any],
        cancel: Optional[threading.Event] = None,
    ) -> List[CommitRecord]:
        """Remove the units for ``keys`` in one atomic commit.

        Units are only ever removed when named here; a regular ``run`` never
        deletes units missing from its input.
        """
        units = {}
        for index, key in enumerate(keys):
            unit = self.model.unit_for(self._key(key, index))
            units[unit.unit_id] = unit
        ordered = [units[unit_id] for unit_id in sorted(units)]
        with self.ctx.timed("Purge complete", units=[u.unit_id for u in ordered]) as fields:
            records = self._with_retry(lambda: self._committer().purge(ordered, cancel=cancel))
            fields["sequence"] = records[0].sequence if records else None
        return records

    def vacuum(self, retention_seconds: float = DEFAULT_VACUUM_RETENTION_SECONDS) -> List[str]:
        """Delete data files no longer referenced by the current table version."""
        with self.ctx.timed("Vacuum finished", level="DEBUG", retention_seconds=retention_seconds) as fields:
            removed = self.store.vacuum(retention_seconds)
            fields["removed_files"] = len(removed)
        return removed

    def recover(self) -> List[CommitRecord]:
        """Reconcile the commit log with the table after an interrupted commit."""
        return self.log.reconcile(self.store)

    def __repr__(self) -> str:
        return f"OverwriteEngine(table={self.name!r}, store={self.store!r})"

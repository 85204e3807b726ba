"""Atomic committer: builds replacement content, then swaps it in at once.

A commit moves through ``PLANNING -> BUILDING -> SWAPPING -> COMMITTED``.
Any failure before the swap completes moves it to ``ABORTED``, discards the
staged files and leaves the target table exactly as it was.
"""

import random
import threading
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Sequence, TypeVar

from partover.commit_log import CommitLog, CommitRecord
from partover.exceptions import (
    CommitAborted,
    CommitCancelled,
    CommitLogWriteError,
    ConcurrentCommitInProgress,
    LayoutMismatch,
    TableNotFound,
)
from partover.layout import PhysicalUnit
from partover.planner import OverwritePlan, ReplaceMode
from partover.storage.base import BuildAborted, StagedCommit, TableStore, UnitReplacement
from partover.utils.logging import get_logging_context, logger

T = TypeVar("T")


class CommitState(str, Enum):
    PLANNING = "planning"
    BUILDING = "building"
    SWAPPING = "swapping"
    COMMITTED = "committed"
    ABORTED = "aborted"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AtomicCommitter:
    """Applies overwrite plans to one table store and records them in its log.

    At most one commit per table runs at a time: the store's commit lock is
    taken before building and held until the log append returns.
    """

    def __init__(
        self,
        store: TableStore,
        log: CommitLog,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.log = log
        self.clock = clock or _utc_now
        self.state: Optional[CommitState] = None
        self.ctx = get_logging_context(table=store.name)

    def _transition(self, state: CommitState, **context) -> None:
        self.state = state
        self.ctx.debug("Commit state", state=state.value, **context)

    def _check_cancel(self, cancel: Optional[threading.Event], unit_ids: Sequence[str]) -> None:
        if cancel is not None and cancel.is_set():
            self._transition(CommitState.ABORTED)
            self.ctx.warning(
                "Commit cancelled",
                state=CommitState.PLANNING.value,
                units=list(unit_ids),
            )
            raise CommitCancelled(
                self.store.name,
                unit_ids,
                "cancelled by caller",
                state=CommitState.PLANNING.value,
            )

    def _require_table(self) -> None:
        if not self.store.exists():
            raise TableNotFound(self.store.name, self.store.config.path)

    def commit(
        self,
        plan: OverwritePlan,
        cancel: Optional[threading.Event] = None,
    ) -> List[CommitRecord]:
        """Apply ``plan``.

        Args:
            plan: Output of ``OverwritePlanner.plan``.
            cancel: Optional event; honoured until the swap starts.

        Returns:
            One record per plan entry, in plan order. Entries planned as
            no-ops report their previous record.

        Raises:
            CommitAborted: Build or swap failed; the table is unchanged.
            CommitCancelled: ``cancel`` was set before the swap.
            ConcurrentCommitInProgress: Another writer holds the table lock.
            CommitLogWriteError: Data is committed but the log append failed.
        """
        self._transition(CommitState.PLANNING, units=len(plan.entries))
        self._require_table()
        self._check_cancel(cancel, plan.unit_ids)

        for entry in plan.entries:
            if entry.unit.kind != self.store.layout:
                raise LayoutMismatch(
                    f"plan targets {entry.unit.kind.value} units, table '{self.store.name}' "
                    f"is {self.store.layout.value}",
                    key_columns=entry.unit.key_columns,
                    keys=[entry.key],
                )

        if plan.is_noop():
            self._transition(CommitState.COMMITTED, noop=True)
            self.ctx.info(
                "All planned units unchanged, nothing to commit",
                units=len(plan.entries),
            )
            return [entry.previous for entry in plan.entries]

        replacements = [
            UnitReplacement(unit=entry.unit, batch=entry.batch) for entry in plan.replacements
        ]
        committed = self._apply(replacements, [], cancel)
        by_unit = {record.unit_id: record for record in committed}
        return [
            by_unit[entry.unit_id] if entry.mode == ReplaceMode.REPLACE else entry.previous
            for entry in plan.entries
        ]

    def purge(
        self,
        units: Sequence[PhysicalUnit],
        cancel: Optional[threading.Event] = None,
    ) -> List[CommitRecord]:
        """Atomically remove ``units`` from the table and log purge records."""
        unit_ids = [u.unit_id for u in units]
        self._transition(CommitState.PLANNING, units=len(units), purge=True)
        self._require_table()
        self._check_cancel(cancel, unit_ids)
        if not units:
            self._transition(CommitState.COMMITTED, noop=True)
            return []
        return self._apply([], list(units), cancel)

    def _apply(
        self,
        replacements: List[UnitReplacement],
        removals: List[PhysicalUnit],
        cancel: Optional[threading.Event],
    ) -> List[CommitRecord]:
        unit_ids = [r.unit.unit_id for r in replacements] + [u.unit_id for u in removals]
        table = self.store.name

        with self.store.commit_lock(unit_ids):
            start_time = time.time()
            sequence = max(self.log.last_sequence(), self.store.current_sequence()) + 1
            committed_at = self.clock().isoformat()

            self._transition(CommitState.BUILDING, sequence=sequence)
            try:
                staged = self.store.build(
                    replacements,
                    removals,
                    sequence,
                    committed_at,
                    should_abort=cancel.is_set if cancel is not None else None,
                )
            except BuildAborted as e:
                raise self._abort(
                    CommitCancelled(table, unit_ids, str(e), state=CommitState.BUILDING.value)
                ) from e
            except Exception as e:
                raise self._abort(
                    CommitAborted(
                        table,
                        unit_ids,
                        f"build failed: {e}",
                        state=CommitState.BUILDING.value,
                        original_error=e,
                    )
                ) from e

            if cancel is not None and cancel.is_set():
                self.store.discard(staged)
                raise self._abort(
                    CommitCancelled(
                        table, unit_ids, "cancelled by caller", state=CommitState.BUILDING.value
                    )
                )

            self._transition(CommitState.SWAPPING, sequence=sequence)
            try:
                self.store.swap(staged)
            except Exception as e:
                self.store.discard(staged)
                raise self._abort(
                    CommitAborted(
                        table,
                        unit_ids,
                        f"swap failed: {e}",
                        state=CommitState.SWAPPING.value,
                        original_error=e,
                    )
                ) from e

            self._transition(CommitState.COMMITTED, sequence=sequence)
            records = self._records_for(staged)
            try:
                self.log.append(records)
            except Exception as e:
                self.ctx.error(
                    "Commit visible but not logged",
                    sequence=sequence,
                    units=unit_ids,
                    error=str(e),
                )
                raise CommitLogWriteError(table, unit_ids, sequence, e) from e

        self.ctx.info(
            "Commit complete",
            sequence=sequence,
            replaced=len(replacements),
            purged=len(removals),
            rows=sum(r.batch.row_count for r in replacements),
            elapsed_ms=round((time.time() - start_time) * 1000, 2),
        )
        return records

    def _abort(self, error: CommitAborted) -> CommitAborted:
        self._transition(CommitState.ABORTED)
        log = self.ctx.warning if isinstance(error, CommitCancelled) else self.ctx.error
        log(
            "Commit aborted",
            state=error.state,
            units=error.unit_ids,
            reason=error.reason,
        )
        return error

    @staticmethod
    def _records_for(staged: StagedCommit) -> List[CommitRecord]:
        return [
            CommitRecord(
                table=v.table,
                unit_id=v.unit_id,
                key=tuple(v.key),
                row_count=v.row_count,
                checksum=v.checksum,
                sequence=v.sequence,
                committed_at=v.committed_at,
                operation=v.operation,
            )
            for v in staged.versions
        ]


def retry_commit(func: Callable[[], T], max_retries: int = 3, base_delay: float = 1.0) -> T:
    """Retry a commit with exponential backoff on retriable failures.

    Retries ``CommitAborted`` and ``ConcurrentCommitInProgress``. A
    ``CommitCancelled`` is never retried.

    Args:
        func: Callable performing one full commit attempt.
        max_retries: Maximum retry attempts after the first.
        base_delay: Base delay in seconds (doubles each retry).
    """
    for attempt in range(max_retries + 1):
        try:
            return func()
        except CommitCancelled:
            raise
        except (CommitAborted, ConcurrentCommitInProgress) as e:
            if attempt >= max_retries:
                raise
            delay = base_delay * (2**attempt) + random.uniform(0, 1.0)
            logger.debug(
                f"Commit failed (attempt {attempt + 1}/{max_retries + 1}), "
                f"retrying in {delay:.2f}s...",
                error_type=type(e).__name__,
            )
            time.sleep(delay)

import json
import os
import threading
from datetime import datetime, timezone
from unittest.mock import Mock, patch

import pytest
from conftest import daily_rows, day

from partover.aggregator import BatchAggregator
from partover.commit_log import OPERATION_PURGE, CommitLog
from partover.committer import AtomicCommitter, CommitState, retry_commit
from partover.config import LayoutKind
from partover.exceptions import (
    CommitAborted,
    CommitCancelled,
    CommitLogWriteError,
    ConcurrentCommitInProgress,
    LayoutMismatch,
    TableNotFound,
)
from partover.layout import PartitionKey, PartitionModel
from partover.planner import OverwritePlanner
from partover.storage.local import LocalTableStore


@pytest.fixture
def store(daily_config):
    store = LocalTableStore(daily_config)
    store.create()
    return store


@pytest.fixture
def log(daily_config):
    return CommitLog(daily_config.resolved_commit_log_path)


@pytest.fixture
def committer(store, log):
    return AtomicCommitter(store, log, clock=lambda: datetime(2024, 4, 1, tzinfo=timezone.utc))


def _plan(store, log, rows, force_full_rebuild=False):
    batches = BatchAggregator(store.model, store.columns, table=store.name).ingest(rows)
    return OverwritePlanner().plan(
        batches, store.model, log, force_full_rebuild=force_full_rebuild, table=store.name
    )


def _data_files(store):
    found = []
    for root, _, files in os.walk(os.path.join(store.path, "data")):
        found.extend(os.path.join(root, f) for f in files)
    return sorted(found)


def _manifest_temp_files(store):
    return [n for n in os.listdir(store.path) if n.endswith(".tmp")]


class TestCommit:
    def test_commit_makes_units_visible(self, store, log, committer):
        records = committer.commit(_plan(store, log, daily_rows([2, 1])))

        assert [r.unit_id for r in records] == ["order_date=2024-01-01", "order_date=2024-01-02"]
        assert {r.sequence for r in records} == {1}
        assert records[0].committed_at == "2024-04-01T00:00:00+00:00"
        assert committer.state == CommitState.COMMITTED

        snapshot = store.snapshot()
        assert snapshot.sequence == 1
        assert snapshot.unit_ids() == ["order_date=2024-01-01", "order_date=2024-01-02"]
        assert snapshot.row_count(PartitionKey((day(1),))) == 1
        assert log.lookup("order_date=2024-01-02").as_tuple() == records[1].as_tuple()

    def test_sequences_increase(self, store, log, committer):
        committer.commit(_plan(store, log, daily_rows([1])))
        records = committer.commit(_plan(store, log, daily_rows([2])))
        assert records[0].sequence == 2
        assert store.current_sequence() == 2

    def test_all_noop_plan_commits_nothing(self, store, log, committer):
        first = committer.commit(_plan(store, log, daily_rows([1, 2])))
        files_before = _data_files(store)

        again = committer.commit(_plan(store, log, daily_rows([1, 2])))

        assert [r.as_tuple() for r in again] == [r.as_tuple() for r in first]
        assert store.current_sequence() == 1
        assert len(log.records()) == 2
        assert _data_files(store) == files_before

    def test_mixed_plan_reports_previous_for_noops(self, store, log, committer):
        first = committer.commit(_plan(store, log, daily_rows([1, 2])))
        rows = daily_rows([1]) + daily_rows([2], orders=9)

        records = committer.commit(_plan(store, log, rows))

        assert records[0].as_tuple() == first[0].as_tuple()
        assert records[1].sequence == 2
        assert records[1].checksum != first[1].checksum

    def test_missing_table(self, daily_config, log):
        store = LocalTableStore(daily_config)
        plan = _plan(store, log, daily_rows([1]))
        with pytest.raises(TableNotFound):
            AtomicCommitter(store, log).commit(plan)

    def test_plan_for_other_layout(self, store, log, committer):
        other = PartitionModel(LayoutKind.PREDICATE, ["order_date"])
        batches = BatchAggregator(other, store.columns).ingest(daily_rows([1]))
        plan = OverwritePlanner().plan(batches, other, log)
        with pytest.raises(LayoutMismatch, match="predicate units"):
            committer.commit(plan)


class TestAtomicity:
    def test_build_failure_leaves_table_unchanged(self, store, log, committer):
        committer.commit(_plan(store, log, daily_rows([1])))
        before = store.snapshot().read_table()
        files_before = _data_files(store)

        with patch(
            "partover.storage.local._write_parquet", side_effect=OSError("disk full")
        ):
            with pytest.raises(CommitAborted) as exc_info:
                committer.commit(_plan(store, log, daily_rows([1, 2], orders=5)))

        assert exc_info.value.state == CommitState.BUILDING.value
        assert isinstance(exc_info.value.original_error, OSError)
        assert committer.state == CommitState.ABORTED
        assert store.current_sequence() == 1
        assert store.snapshot().read_table().equals(before)
        assert _data_files(store) == files_before
        assert log.last_sequence() == 1

    def test_swap_failure_discards_staged_files(self, store, log, committer):
        committer.commit(_plan(store, log, daily_rows([1])))
        files_before = _data_files(store)

        with patch("partover.storage.local.os.replace", side_effect=OSError("rename failed")):
            with pytest.raises(CommitAborted) as exc_info:
                committer.commit(_plan(store, log, daily_rows([1, 2], orders=5)))

        assert exc_info.value.state == CommitState.SWAPPING.value
        assert store.current_sequence() == 1
        assert _data_files(store) == files_before
        assert _manifest_temp_files(store) == []
        assert len(log.records()) == 1

    def test_same_plan_can_be_retried_after_abort(self, store, log, committer):
        plan = _plan(store, log, daily_rows([1, 2]))
        with patch("partover.storage.local.os.replace", side_effect=OSError("rename failed")):
            with pytest.raises(CommitAborted):
                committer.commit(plan)

        records = committer.commit(plan)
        assert [r.sequence for r in records] == [1, 1]
        assert store.snapshot().unit_ids() == [r.unit_id for r in records]

    def test_manifest_moved_during_build(self, store, log, committer):
        original_build = store.build

        def build_then_race(*args, **kwargs):
            staged = original_build(*args, **kwargs)
            # another writer bypassing the lock bumps the manifest
            manifest = store.load_manifest()
            manifest["sequence"] += 10
            with open(store.manifest_path, "w", encoding="utf-8") as f:
                json.dump(manifest, f)
            return staged

        with patch.object(store, "build", side_effect=build_then_race):
            with pytest.raises(CommitAborted, match="changed during commit"):
                committer.commit(_plan(store, log, daily_rows([1])))


class TestLogWriteFailure:
    def test_data_committed_and_recoverable(self, store, log, committer):
        with patch.object(log, "append", side_effect=OSError("read-only file system")):
            with pytest.raises(CommitLogWriteError) as exc_info:
                committer.commit(_plan(store, log, daily_rows([1, 2])))

        assert exc_info.value.sequence == 1
        assert store.current_sequence() == 1
        assert log.lookup("order_date=2024-01-01") is None

        recovered = log.reconcile(store)

        assert sorted(r.unit_id for r in recovered) == [
            "order_date=2024-01-01",
            "order_date=2024-01-02",
        ]
        assert log.lookup("order_date=2024-01-01").recovered
        # after recovery the same input is a no-op
        assert _plan(store, log, daily_rows([1, 2])).is_noop()


class TestConcurrency:
    def test_second_writer_is_rejected(self, store, log, committer):
        with store.commit_lock():
            with pytest.raises(ConcurrentCommitInProgress) as exc_info:
                committer.commit(_plan(store, log, daily_rows([1])))
        assert exc_info.value.unit_ids == ["order_date=2024-01-01"]
        assert store.current_sequence() == 0

    def test_lock_released_after_commit(self, store, log, committer):
        committer.commit(_plan(store, log, daily_rows([1])))
        with store.commit_lock():
            pass

    def test_lock_released_after_abort(self, store, log, committer):
        with patch("partover.storage.local._write_parquet", side_effect=OSError("disk full")):
            with pytest.raises(CommitAborted):
                committer.commit(_plan(store, log, daily_rows([1])))
        with store.commit_lock():
            pass


class TestCancellation:
    def test_cancel_before_commit(self, store, log, committer):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(CommitCancelled) as exc_info:
            committer.commit(_plan(store, log, daily_rows([1])), cancel=cancel)
        assert exc_info.value.state == CommitState.PLANNING.value
        assert store.current_sequence() == 0

    def test_cancel_during_build(self, store, log, committer):
        cancel = Mock()
        cancel.is_set.side_effect = [False] + [True] * 10

        with pytest.raises(CommitCancelled) as exc_info:
            committer.commit(_plan(store, log, daily_rows([1, 2])), cancel=cancel)

        assert exc_info.value.state == CommitState.BUILDING.value
        assert store.current_sequence() == 0
        assert _data_files(store) == []
        assert log.records() == []


class TestPurge:
    def test_purge_removes_units(self, store, log, committer):
        committer.commit(_plan(store, log, daily_rows([1, 2])))
        unit = store.model.unit_for(PartitionKey((day(1),)))

        records = committer.purge([unit])

        assert records[0].operation == OPERATION_PURGE
        assert records[0].row_count == 0
        assert store.snapshot().unit_ids() == ["order_date=2024-01-02"]
        assert log.lookup(unit.unit_id).operation == OPERATION_PURGE

    def test_purge_nothing(self, store, log, committer):
        assert committer.purge([]) == []
        assert store.current_sequence() == 0


class TestRetryCommit:
    def test_success_first_try(self):
        assert retry_commit(lambda: 42) == 42

    def test_retries_aborted_commits(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise CommitAborted("orders", ["d=1"], "swap failed")
            return "ok"

        with patch("partover.committer.time.sleep") as sleep:
            assert retry_commit(flaky, max_retries=5) == "ok"
        assert len(calls) == 3
        assert sleep.call_count == 2

    def test_retries_concurrent_commits(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 2:
                raise ConcurrentCommitInProgress("orders", ["d=1"], "/tmp/lock")
            return "ok"

        with patch("partover.committer.time.sleep"):
            assert retry_commit(flaky, max_retries=2) == "ok"

    def test_never_retries_cancellation(self):
        fn = Mock(side_effect=CommitCancelled("orders", ["d=1"], "cancelled"))
        with patch("partover.committer.time.sleep") as sleep:
            with pytest.raises(CommitCancelled):
                retry_commit(fn, max_retries=5)
        assert fn.call_count == 1
        sleep.assert_not_called()

    def test_other_errors_propagate(self):
        def fails():
            raise ValueError("not retriable")

        with pytest.raises(ValueError, match="not retriable"):
            retry_commit(fails)

    def test_max_retries_exhausted(self):
        fn = Mock(side_effect=CommitAborted("orders", ["d=1"], "swap failed"))
        with patch("partover.committer.time.sleep"):
            with pytest.raises(CommitAborted):
                retry_commit(fn, max_retries=2)
        assert fn.call_count == 3

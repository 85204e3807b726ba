"""Overwrite planner: decides, per incoming batch, whether its unit is rewritten."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Union

from partover.aggregator import PartitionBatch
from partover.commit_log import CommitLog, CommitRecord
from partover.exceptions import EmptyBatchSet, LayoutMismatch
from partover.layout import PartitionKey, PartitionModel, PhysicalUnit
from partover.utils.logging import logger

BatchesInput = Union[Mapping[PartitionKey, PartitionBatch], Iterable[PartitionBatch]]


class ReplaceMode(str, Enum):
    """What the committer does with one planned unit."""

    REPLACE = "replace"
    NOOP = "noop"


@dataclass(frozen=True)
class PlanEntry:
    key: PartitionKey
    batch: PartitionBatch
    unit: PhysicalUnit
    mode: ReplaceMode
    previous: Optional[CommitRecord] = None

    @property
    def unit_id(self) -> str:
        return self.unit.unit_id


@dataclass(frozen=True)
class OverwritePlan:
    """Entries ordered by unit id; one entry per unit, scope = input keys only."""

    table: str
    entries: List[PlanEntry] = field(default_factory=list)
    force_full_rebuild: bool = False

    @property
    def unit_ids(self) -> List[str]:
        return [e.unit_id for e in self.entries]

    @property
    def replacements(self) -> List[PlanEntry]:
        return [e for e in self.entries if e.mode == ReplaceMode.REPLACE]

    @property
    def noops(self) -> List[PlanEntry]:
        return [e for e in self.entries if e.mode == ReplaceMode.NOOP]

    def is_noop(self) -> bool:
        return not self.replacements

    def summary(self) -> Dict[str, int]:
        return {
            "units": len(self.entries),
            "replace": len(self.replacements),
            "noop": len(self.noops),
            "rows": sum(e.batch.row_count for e in self.replacements),
        }


def _as_batch_list(batches: BatchesInput) -> List[PartitionBatch]:
    if isinstance(batches, Mapping):
        return list(batches.values())
    return list(batches)


class OverwritePlanner:
    """Builds an OverwritePlan from aggregated batches and the commit log.

    The planner never looks at the target table's contents: only the units
    named by the input batches are considered, so units missing from the
    input are never touched.
    """

    def plan(
        self,
        batches: BatchesInput,
        layout: PartitionModel,
        log: CommitLog,
        force_full_rebuild: bool = False,
        table: str = "<table>",
    ) -> OverwritePlan:
        """Plan one overwrite.

        Args:
            batches: Output of ``BatchAggregator.ingest`` (mapping or iterable).
            layout: Partition model of the target table.
            log: Commit log consulted for the no-op shortcut.
            force_full_rebuild: Replace every planned unit even if unchanged.
            table: Table name used in errors and logs.

        Raises:
            EmptyBatchSet: No batches were supplied.
            LayoutMismatch: Two keys resolve to the same unit, or a key has
                the wrong arity.
        """
        start_time = time.time()
        batch_list = _as_batch_list(batches)
        if not batch_list:
            raise EmptyBatchSet(table)

        resolved: Dict[str, PlanEntry] = {}
        latest = log.latest_by_unit()
        for batch in batch_list:
            unit = layout.unit_for(batch.key)
            if unit.unit_id in resolved:
                raise LayoutMismatch(
                    f"keys resolve to the same unit '{unit.unit_id}'",
                    key_columns=layout.key_columns,
                    keys=[resolved[unit.unit_id].key, batch.key],
                )

            previous = latest.get(unit.unit_id)
            unchanged = (
                previous is not None
                and previous.checksum == batch.checksum
                and previous.row_count == batch.row_count
            )
            mode = ReplaceMode.NOOP if unchanged and not force_full_rebuild else ReplaceMode.REPLACE
            resolved[unit.unit_id] = PlanEntry(
                key=batch.key,
                batch=batch,
                unit=unit,
                mode=mode,
                previous=previous,
            )

        plan = OverwritePlan(
            table=table,
            entries=[resolved[unit_id] for unit_id in sorted(resolved)],
            force_full_rebuild=force_full_rebuild,
        )
        logger.info(
            "Overwrite planned",
            table=table,
            force_full_rebuild=force_full_rebuild,
            elapsed_ms=round((time.time() - start_time) * 1000, 2),
            **plan.summary(),
        )
        return plan

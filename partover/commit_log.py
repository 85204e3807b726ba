"""Append-only commit log.

One JSON object per line. The log answers "was this exact content already
written to this unit" for the planner and is the audit trail of every
overwrite. It never caches: every read goes back to the file, so a lookup
always sees the most recent successful commit.
"""

import json
import os
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Tuple

import portalocker

from partover.exceptions import CommitLogCorrupted
from partover.utils.logging import logger

if TYPE_CHECKING:
    from partover.storage.base import TableStore

OPERATION_OVERWRITE = "overwrite"
OPERATION_PURGE = "purge"


@dataclass(frozen=True)
class CommitRecord:
    """One unit touched by one commit."""

    table: str
    unit_id: str
    key: Tuple[Any, ...]
    row_count: int
    checksum: str
    sequence: int
    committed_at: str
    operation: str = OPERATION_OVERWRITE
    recovered: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["key"] = list(self.key)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CommitRecord":
        return cls(
            table=data["table"],
            unit_id=data["unit_id"],
            key=tuple(data.get("key") or ()),
            row_count=int(data["row_count"]),
            checksum=data["checksum"],
            sequence=int(data["sequence"]),
            committed_at=data["committed_at"],
            operation=data.get("operation", OPERATION_OVERWRITE),
            recovered=bool(data.get("recovered", False)),
        )

    def as_tuple(self) -> Tuple[str, int, str, int]:
        return (self.unit_id, self.row_count, self.checksum, self.sequence)


class CommitLog:
    """JSON Lines commit log for one target table."""

    def __init__(self, path: str):
        self.path = path
        self.lock_path = path + ".lock"

    def _read_lines(self) -> List[CommitRecord]:
        if not os.path.exists(self.path):
            return []

        with open(self.path, "r", encoding="utf-8") as f:
            lines = f.read().split("\n")

        # A crash mid-append can leave an unterminated final line
        tail_complete = lines[-1] == ""
        if tail_complete:
            lines = lines[:-1]

        records = []
        for number, line in enumerate(lines, 1):
            if not line.strip():
                continue
            try:
                records.append(CommitRecord.from_dict(json.loads(line)))
            except (ValueError, KeyError, TypeError) as e:
                if number == len(lines) and not tail_complete:
                    logger.warning(
                        "Ignoring torn final commit log line",
                        path=self.path,
                        line=number,
                    )
                    continue
                raise CommitLogCorrupted(self.path, number, str(e)) from e
        return records

    def records(self) -> List[CommitRecord]:
        """All records in append order."""
        return self._read_lines()

    def lookup(self, unit_id: str) -> Optional[CommitRecord]:
        """Most recent record for ``unit_id``, or None if it was never committed."""
        latest = None
        for record in self._read_lines():
            if record.unit_id == unit_id:
                latest = record
        return latest

    def latest_by_unit(self) -> Dict[str, CommitRecord]:
        result: Dict[str, CommitRecord] = {}
        for record in self._read_lines():
            result[record.unit_id] = record
        return result

    def last_sequence(self) -> int:
        records = self._read_lines()
        return max((r.sequence for r in records), default=0)

    def history(
        self,
        unit_id: Optional[str] = None,
        since_sequence: Optional[int] = None,
    ) -> List[CommitRecord]:
        """Query the audit trail.

        Args:
            unit_id: Only records for this unit.
            since_sequence: Only records with a sequence strictly greater than this.
        """
        result = []
        for record in self._read_lines():
            if unit_id is not None and record.unit_id != unit_id:
                continue
            if since_sequence is not None and record.sequence <= since_sequence:
                continue
            result.append(record)
        return result

    def append(self, records: Iterable[CommitRecord]) -> None:
        """Durably append records; returns only after fsync."""
        records = list(records)
        if not records:
            return

        parent = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(parent, exist_ok=True)
        payload = "".join(json.dumps(r.to_dict(), default=str) + "\n" for r in records)

        with portalocker.Lock(self.lock_path, timeout=60):
            with open(self.path, "a+b") as f:
                f.seek(0, os.SEEK_END)
                if f.tell() > 0:
                    f.seek(-1, os.SEEK_END)
                    if f.read(1) != b"\n":
                        # drop a torn, never-acknowledged tail; reconcile restores it
                        f.seek(0)
                        content = f.read()
                        f.truncate(content.rfind(b"\n") + 1)
                        logger.warning("Truncated torn commit log tail", path=self.path)
                f.write(payload.encode("utf-8"))
                f.flush()
                os.fsync(f.fileno())

        logger.debug(
            "Commit log appended",
            path=self.path,
            records=len(records),
            sequence=records[-1].sequence,
        )

    def reconcile(self, store: "TableStore") -> List[CommitRecord]:
        """Append records for unit versions visible in ``store`` but missing here.

        Repairs the gap left when a process dies between the atomic swap and
        the log append. The data is never touched.

        Returns:
            The records appended (empty if the log was already consistent).
        """
        logged = {(r.unit_id, r.sequence) for r in self._read_lines()}
        missing = [
            CommitRecord(
                table=version.table,
                unit_id=version.unit_id,
                key=tuple(version.key),
                row_count=version.row_count,
                checksum=version.checksum,
                sequence=version.sequence,
                committed_at=version.committed_at,
                operation=version.operation,
                recovered=True,
            )
            for version in store.unit_versions()
            if (version.unit_id, version.sequence) not in logged
        ]
        missing.sort(key=lambda r: (r.sequence, r.unit_id))

        if missing:
            self.append(missing)
            logger.warning(
                "Commit log reconciled with table",
                path=self.path,
                recovered_records=len(missing),
                units=[r.unit_id for r in missing],
            )
        else:
            logger.debug("Commit log consistent with table", path=self.path)
        return missing

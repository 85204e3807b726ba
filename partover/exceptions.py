"""Custom exceptions for partover."""

from typing import Any, List, Optional, Sequence


def _format_units(unit_ids: Sequence[str], limit: int = 10) -> str:
    shown = list(unit_ids[:limit])
    text = ", ".join(shown)
    if len(unit_ids) > limit:
        text += f", ... ({len(unit_ids) - limit} more)"
    return text


class PartoverError(Exception):
    """Base exception for all partover errors."""

    pass


class ConfigValidationError(PartoverError):
    """Configuration validation failed."""

    def __init__(self, message: str, file: Optional[str] = None, line: Optional[int] = None):
        self.message = message
        self.file = file
        self.line = line
        super().__init__(self._format_error())

    def _format_error(self) -> str:
        """Format error message with location info."""
        parts = ["Configuration validation error"]
        if self.file:
            parts.append(f"\n  File: {self.file}")
        if self.line:
            parts.append(f"\n  Line: {self.line}")
        parts.append(f"\n  Error: {self.message}")
        return "".join(parts)


class SchemaMismatch(PartoverError):
    """Incoming row does not match the table's fixed schema."""

    def __init__(
        self,
        table: str,
        row_index: int,
        missing: Optional[List[str]] = None,
        unexpected: Optional[List[str]] = None,
        column: Optional[str] = None,
        reason: Optional[str] = None,
    ):
        self.table = table
        self.row_index = row_index
        self.missing = sorted(missing or [])
        self.unexpected = sorted(unexpected or [])
        self.column = column
        self.reason = reason
        super().__init__(self._format_error())

    def _format_error(self) -> str:
        parts = [f"✗ Schema mismatch for table '{self.table}' at row {self.row_index}"]
        if self.missing:
            parts.append(f"\n  Missing columns: {self.missing}")
        if self.unexpected:
            parts.append(f"\n  Unexpected columns: {self.unexpected}")
        if self.column:
            parts.append(f"\n  Column '{self.column}': {self.reason}")
        return "".join(parts)


class KeyExtractionError(PartoverError):
    """A row's partition key could not be extracted (null or unhashable)."""

    def __init__(self, table: str, row_index: int, column: str, value: Any, reason: str):
        self.table = table
        self.row_index = row_index
        self.column = column
        self.value = value
        self.reason = reason
        super().__init__(self._format_error())

    def _format_error(self) -> str:
        return (
            f"✗ Key extraction failed for table '{self.table}'"
            f"\n  Row: {self.row_index}"
            f"\n  Column: {self.column}"
            f"\n  Value: {self.value!r}"
            f"\n  Reason: {self.reason}"
            "\n\n  No batches were produced; fix the input and re-run."
        )


class LayoutMismatch(PartoverError):
    """Key arity or layout kind is inconsistent with the table layout."""

    def __init__(
        self,
        message: str,
        key_columns: Optional[Sequence[str]] = None,
        keys: Optional[Sequence[Any]] = None,
    ):
        self.message = message
        self.key_columns = list(key_columns or [])
        self.keys = list(keys or [])
        super().__init__(self._format_error())

    def _format_error(self) -> str:
        parts = [f"✗ Layout mismatch: {self.message}"]
        if self.key_columns:
            parts.append(f"\n  Key columns: {self.key_columns}")
        if self.keys:
            parts.append(f"\n  Offending keys: {[tuple(k) for k in self.keys]}")
        return "".join(parts)


class EmptyBatchSet(PartoverError):
    """Ingest produced no partition batches.

    Not fatal by itself: the caller decides whether an empty run is an error.
    """

    def __init__(self, table: str):
        self.table = table
        super().__init__(f"No partition batches to plan for table '{table}'")


class CommitAborted(PartoverError):
    """Commit failed before the atomic swap; the target is unchanged.

    Safe to retry with the same plan.
    """

    def __init__(
        self,
        table: str,
        unit_ids: Sequence[str],
        reason: str,
        state: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.table = table
        self.unit_ids = list(unit_ids)
        self.reason = reason
        self.state = state
        self.original_error = original_error
        super().__init__(self._format_error())

    def _format_error(self) -> str:
        parts = [f"✗ Commit aborted for table '{self.table}'"]
        if self.state:
            parts.append(f"\n  State: {self.state}")
        parts.append(f"\n  Units: {_format_units(self.unit_ids)}")
        parts.append(f"\n  Reason: {self.reason}")
        if self.original_error is not None:
            parts.append(f"\n  Type: {type(self.original_error).__name__}")
        parts.append("\n\n  Target table is unchanged; the plan can be retried.")
        return "".join(parts)


class CommitCancelled(CommitAborted):
    """Caller cancelled the commit during planning or building."""

    pass


class ConcurrentCommitInProgress(PartoverError):
    """Another writer holds the commit lock for this table."""

    def __init__(self, table: str, unit_ids: Sequence[str], lock_path: str):
        self.table = table
        self.unit_ids = list(unit_ids)
        self.lock_path = lock_path
        super().__init__(self._format_error())

    def _format_error(self) -> str:
        return (
            f"✗ Concurrent commit in progress for table '{self.table}'"
            f"\n  Lock: {self.lock_path}"
            f"\n  Units: {_format_units(self.unit_ids)}"
            "\n\n  Retry after backoff."
        )


class CommitLogWriteError(PartoverError):
    """The swap succeeded but the commit log append failed.

    Data is committed. The log is repaired by reconciling it against the
    store (``OverwriteEngine.recover``).
    """

    def __init__(self, table: str, unit_ids: Sequence[str], sequence: int, original_error: Exception):
        self.table = table
        self.unit_ids = list(unit_ids)
        self.sequence = sequence
        self.original_error = original_error
        super().__init__(self._format_error())

    def _format_error(self) -> str:
        return (
            f"✗ Commit {self.sequence} on table '{self.table}' is visible but was not logged"
            f"\n  Units: {_format_units(self.unit_ids)}"
            f"\n  Error: {self.original_error}"
            "\n\n  Run recover() to reconcile the commit log with the table."
        )


class CommitLogCorrupted(PartoverError):
    """A commit log line in the middle of the file could not be parsed."""

    def __init__(self, path: str, line_number: int, reason: str):
        self.path = path
        self.line_number = line_number
        self.reason = reason
        super().__init__(f"✗ Commit log corrupted: {path}:{line_number}\n  Reason: {reason}")


class TableNotFound(PartoverError):
    """The target table has not been created yet."""

    def __init__(self, table: str, path: str):
        self.table = table
        self.path = path
        super().__init__(f"✗ Table '{table}' does not exist at {path}\n  Call create_table() first.")


class ManifestConflict(PartoverError):
    """The table moved to a new version while a commit was being built."""

    def __init__(
        self,
        table: str,
        expected_sequence: int,
        actual_sequence: int,
        counter: str = "sequence",
    ):
        self.table = table
        self.expected_sequence = expected_sequence
        self.actual_sequence = actual_sequence
        # "version" when the numbers are Delta table versions
        self.counter = counter
        super().__init__(
            f"✗ Table '{table}' changed during commit"
            f"\n  Expected {counter}: {expected_sequence}"
            f"\n  Found {counter}: {actual_sequence}"
        )

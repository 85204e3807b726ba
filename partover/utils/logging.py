"""Logging for partover.

``logger`` is the process-wide StructuredLogger. Components that work on one
table log through a LoggingContext (``logger.bind(table=...)``) so every line
carries the table name without repeating it at each call site.
"""

import json
import logging
import sys
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "partover"
REDACTED = "[REDACTED]"

# Storage libraries are chatty; never more verbose than WARNING
QUIET_LOGGERS = ("deltalake", "pyarrow", "fsspec", "portalocker")

_TEXT_PREFIX = {
    "DEBUG": "[DEBUG] ",
    "INFO": "",
    "WARNING": "[WARN] ",
    "ERROR": "[ERROR] ",
}


def _rich_handler() -> RichHandler:
    console = Console(force_terminal=True, legacy_windows=False) if sys.platform == "win32" else None
    return RichHandler(rich_tracebacks=True, markup=False, show_path=False, console=console)


class StructuredLogger:
    """Logger that supports both human-readable and JSON output with secret redaction."""

    def __init__(self, structured: bool = False, level: str = "INFO", force: bool = False):
        self._secrets = set()
        self._configure(structured, level, force)

    def _configure(self, structured: bool, level: str, force: bool) -> None:
        self.structured = structured
        self.level = getattr(logging, level.upper(), logging.INFO)

        if structured:
            logging.basicConfig(level=self.level, format="%(message)s", stream=sys.stdout, force=force)
        else:
            logging.basicConfig(
                level=self.level,
                format="%(message)s",
                datefmt="[%X]",
                force=force,
                handlers=[_rich_handler()],
            )

        self.logger = logging.getLogger(LOGGER_NAME)
        self.logger.setLevel(self.level)
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(max(self.level, logging.WARNING))

    def reconfigure(self, structured: bool, level: str) -> None:
        """Switch output mode and level; registered secrets are kept."""
        self._configure(structured, level, force=True)

    def register_secret(self, secret: str) -> None:
        """Register a secret string to be redacted from logs."""
        if secret and isinstance(secret, str) and secret.strip():
            self._secrets.add(secret)

    def _redact(self, value: Any) -> Any:
        if not self._secrets:
            return value
        if isinstance(value, str):
            for secret in self._secrets:
                value = value.replace(secret, REDACTED)
            return value
        if isinstance(value, (list, tuple)):
            return [self._redact(v) for v in value]
        if isinstance(value, dict):
            return {k: self._redact(v) for k, v in value.items()}
        return value

    def bind(self, **context: Any) -> "LoggingContext":
        return LoggingContext(self, context)

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log("DEBUG", message, kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._log("INFO", message, kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log("WARNING", message, kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._log("ERROR", message, kwargs)

    def _log(self, level: str, message: str, context: Dict[str, Any]) -> None:
        level_val = getattr(logging, level)
        if level_val < self.level:
            return

        message = self._redact(str(message))
        context = {k: self._redact(v) for k, v in context.items()}

        if self.structured:
            entry = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "level": level,
                "logger": LOGGER_NAME,
                "message": message,
                **context,
            }
            print(json.dumps(entry, default=str))
            return

        text = message
        if context:
            text += " (" + ", ".join(f"{k}={v}" for k, v in context.items()) + ")"
        self.logger.log(level_val, _TEXT_PREFIX[level] + text)


class LoggingContext:
    """Context bound to one table or operation.

    Example:
        >>> ctx = logger.bind(table="orders_daily")
        >>> with ctx.timed("Commit complete", sequence=4):
        ...     ...
    """

    def __init__(self, parent: StructuredLogger, context: Dict[str, Any]):
        self.parent = parent
        self.context = dict(context)

    def bind(self, **context: Any) -> "LoggingContext":
        return LoggingContext(self.parent, {**self.context, **context})

    def _merged(self, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        return {**self.context, **kwargs}

    def debug(self, message: str, **kwargs: Any) -> None:
        self.parent._log("DEBUG", message, self._merged(kwargs))

    def info(self, message: str, **kwargs: Any) -> None:
        self.parent._log("INFO", message, self._merged(kwargs))

    def warning(self, message: str, **kwargs: Any) -> None:
        self.parent._log("WARNING", message, self._merged(kwargs))

    def error(self, message: str, **kwargs: Any) -> None:
        self.parent._log("ERROR", message, self._merged(kwargs))

    @contextmanager
    def timed(self, message: str, level: str = "INFO", **kwargs: Any) -> Iterator[Dict[str, Any]]:
        """Log ``message`` with ``elapsed_ms`` when the block exits normally.

        The yielded dict can be filled with fields known only at the end.
        """
        start_time = time.time()
        extra: Dict[str, Any] = {}
        yield extra
        fields = {**kwargs, **extra, "elapsed_ms": round((time.time() - start_time) * 1000, 2)}
        self.parent._log(level, message, self._merged(fields))


# Global instance to be initialized
logger = StructuredLogger()


def configure_logging(structured: bool, level: str) -> None:
    """Configure the global logger in place so existing imports pick it up."""
    logger.reconfigure(structured=structured, level=level)


def get_logging_context(table: Optional[str] = None, **context: Any) -> LoggingContext:
    """LoggingContext on the global logger, optionally bound to a table."""
    if table is not None:
        context["table"] = table
    return logger.bind(**context)

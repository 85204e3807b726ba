"""Utilities for partover.

Includes:
- Configuration loading with env var substitution
- Structured logging
- Order-independent content hashing
"""

from .config_loader import load_yaml_with_env
from .content_hash import (
    EMPTY_CONTENT_HASH,
    compute_dataframe_hash,
    compute_row_hash,
    compute_rows_hash,
)
from .logging import LoggingContext, StructuredLogger, configure_logging, get_logging_context, logger

__all__ = [
    "load_yaml_with_env",
    "EMPTY_CONTENT_HASH",
    "compute_dataframe_hash",
    "compute_row_hash",
    "compute_rows_hash",
    "LoggingContext",
    "StructuredLogger",
    "configure_logging",
    "get_logging_context",
    "logger",
]

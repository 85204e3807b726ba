"""Configuration models for partover."""

import os
from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator, model_validator

from partover.exceptions import ConfigValidationError
from partover.utils.config_loader import load_yaml_with_env


class LayoutKind(str, Enum):
    """Physical organization of a target table. Fixed at creation time."""

    EXPLICIT = "explicit"  # disjoint partitions addressed by exact key
    PREDICATE = "predicate"  # clustered store, scope defined by key predicate


class StorageBackend(str, Enum):
    """Supported storage backends."""

    LOCAL = "local"
    DELTA = "delta"


class ColumnType(str, Enum):
    """Logical column types a table schema may declare."""

    STRING = "string"
    INT64 = "int64"
    FLOAT64 = "float64"
    BOOL = "bool"
    DATE = "date"
    TIMESTAMP = "timestamp"


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


def _as_list(value: Union[str, List[str], None]) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


class TableConfig(BaseModel):
    """
    Configuration for one overwrite target table.

    The layout can be given explicitly or through the dbt-style shorthands
    `partition_by` (explicit partitions) and `clustered_by` /
    `liquid_clustered_by` (predicate-scoped clustering).

    Example:
    ```yaml
    tables:
      - name: orders_mart_partitioned
        path: ./warehouse/orders_mart_partitioned
        partition_by: order_date
        columns:
          order_date: date
          total_orders: int64
          total_revenue: float64

      - name: orders_mart_liquid
        path: ./warehouse/orders_mart_liquid
        liquid_clustered_by: [customer_id, order_date]
        backend: delta
        columns:
          customer_id: string
          order_date: date
          total_spent: float64
    ```
    """

    name: str = Field(description="Logical table name used in logs and errors")
    path: str = Field(description="Root directory (or URI for delta) of the table")
    layout: Optional[LayoutKind] = None
    key_columns: List[str] = Field(default_factory=list)
    partition_by: Optional[Union[str, List[str]]] = None
    clustered_by: Optional[Union[str, List[str]]] = Field(
        default=None,
        validation_alias=AliasChoices("clustered_by", "liquid_clustered_by"),
    )
    columns: Dict[str, ColumnType] = Field(description="Fixed schema: column name -> type")
    backend: StorageBackend = StorageBackend.LOCAL
    commit_log_path: Optional[str] = Field(
        default=None,
        description="Commit log location. Defaults to <path>/_commit_log.jsonl",
    )
    storage_options: Dict[str, str] = Field(default_factory=dict)
    description: Optional[str] = None

    @field_validator("columns")
    @classmethod
    def columns_not_empty(cls, v):
        if not v:
            raise ValueError("Table schema must declare at least one column")
        return v

    @model_validator(mode="after")
    def resolve_layout(self):
        partition_by = _as_list(self.partition_by)
        clustered_by = _as_list(self.clustered_by)

        if partition_by and clustered_by:
            raise ValueError(
                f"Table '{self.name}': use either partition_by or clustered_by, not both"
            )

        if partition_by:
            implied, implied_keys = LayoutKind.EXPLICIT, partition_by
        elif clustered_by:
            implied, implied_keys = LayoutKind.PREDICATE, clustered_by
        else:
            implied, implied_keys = None, []

        if implied is not None:
            if self.layout is not None and self.layout != implied:
                raise ValueError(
                    f"Table '{self.name}': layout '{self.layout.value}' conflicts with "
                    f"shorthand implying '{implied.value}'"
                )
            if self.key_columns and self.key_columns != implied_keys:
                raise ValueError(
                    f"Table '{self.name}': key_columns {self.key_columns} conflict with "
                    f"{implied_keys}"
                )
            self.layout = implied
            self.key_columns = implied_keys

        if self.layout is None:
            raise ValueError(
                f"Table '{self.name}': set layout, partition_by or clustered_by"
            )
        if not self.key_columns:
            raise ValueError(f"Table '{self.name}': at least one key column is required")
        if len(set(self.key_columns)) != len(self.key_columns):
            raise ValueError(f"Table '{self.name}': duplicate key columns {self.key_columns}")

        undeclared = [c for c in self.key_columns if c not in self.columns]
        if undeclared:
            raise ValueError(
                f"Table '{self.name}': key columns {undeclared} are not declared in columns"
            )
        return self

    @property
    def resolved_commit_log_path(self) -> str:
        if self.commit_log_path:
            return self.commit_log_path
        if self.backend == StorageBackend.DELTA:
            # delta tables may live on object storage; keep the log beside them
            return self.path.rstrip("/") + "_commit_log.jsonl"
        return os.path.join(self.path, "_commit_log.jsonl")


class RetryConfig(BaseModel):
    """Backoff settings for retriable commit failures."""

    max_retries: int = Field(default=0, ge=0)
    base_delay: float = Field(default=1.0, ge=0)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: LogLevel = LogLevel.INFO
    structured: bool = Field(default=False, description="Emit one JSON object per line")


class EngineConfig(BaseModel):
    """Top-level configuration: a set of tables plus ambient settings."""

    tables: List[TableConfig] = Field(default_factory=list)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def unique_table_names(self):
        names = [t.name for t in self.tables]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate table names: {duplicates}")
        return self

    def table(self, name: str) -> TableConfig:
        for table in self.tables:
            if table.name == name:
                return table
        raise ConfigValidationError(
            f"Table '{name}' not found. Available: {[t.name for t in self.tables]}"
        )


def load_config(path: str, env: Optional[str] = None) -> EngineConfig:
    """Load and validate an engine configuration file.

    Relative table and commit log paths are resolved against the directory
    holding the configuration file.
    """
    data = load_yaml_with_env(path, env=env)
    base_dir = os.path.dirname(os.path.abspath(path))

    for table in data.get("tables") or []:
        if not isinstance(table, dict):
            continue
        for key in ("path", "commit_log_path"):
            value = table.get(key)
            if value and "://" not in value and not os.path.isabs(value):
                table[key] = os.path.normpath(os.path.join(base_dir, value))

    try:
        return EngineConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigValidationError(str(e), file=path) from e

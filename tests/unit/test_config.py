import os

import pytest
import yaml

from partover.config import (
    ColumnType,
    EngineConfig,
    LayoutKind,
    StorageBackend,
    TableConfig,
    load_config,
)
from partover.exceptions import ConfigValidationError
from partover.utils import load_yaml_with_env

COLUMNS = {"order_date": "date", "total_orders": "int64"}


class TestTableConfig:
    def test_partition_by_implies_explicit_layout(self):
        config = TableConfig(name="t", path="/tmp/t", partition_by="order_date", columns=COLUMNS)
        assert config.layout == LayoutKind.EXPLICIT
        assert config.key_columns == ["order_date"]
        assert config.columns["order_date"] == ColumnType.DATE

    def test_liquid_clustered_by_implies_predicate_layout(self):
        config = TableConfig(
            name="t",
            path="/tmp/t",
            liquid_clustered_by=["customer_id", "order_date"],
            columns={**COLUMNS, "customer_id": "string"},
        )
        assert config.layout == LayoutKind.PREDICATE
        assert config.key_columns == ["customer_id", "order_date"]

    def test_clustered_by_alias(self):
        config = TableConfig(name="t", path="/tmp/t", clustered_by="order_date", columns=COLUMNS)
        assert config.layout == LayoutKind.PREDICATE

    def test_explicit_layout_and_key_columns(self):
        config = TableConfig(
            name="t", path="/tmp/t", layout="explicit", key_columns=["order_date"], columns=COLUMNS
        )
        assert config.layout == LayoutKind.EXPLICIT
        assert config.backend == StorageBackend.LOCAL

    def test_both_shorthands_rejected(self):
        with pytest.raises(ValueError, match="either partition_by or clustered_by"):
            TableConfig(
                name="t",
                path="/tmp/t",
                partition_by="order_date",
                clustered_by="order_date",
                columns=COLUMNS,
            )

    def test_layout_conflicting_with_shorthand(self):
        with pytest.raises(ValueError, match="conflicts with"):
            TableConfig(
                name="t", path="/tmp/t", layout="predicate", partition_by="order_date", columns=COLUMNS
            )

    def test_missing_layout(self):
        with pytest.raises(ValueError, match="set layout"):
            TableConfig(name="t", path="/tmp/t", key_columns=["order_date"], columns=COLUMNS)

    def test_undeclared_key_column(self):
        with pytest.raises(ValueError, match="not declared in columns"):
            TableConfig(name="t", path="/tmp/t", partition_by="region", columns=COLUMNS)

    def test_duplicate_key_columns(self):
        with pytest.raises(ValueError, match="duplicate key columns"):
            TableConfig(
                name="t",
                path="/tmp/t",
                layout="explicit",
                key_columns=["order_date", "order_date"],
                columns=COLUMNS,
            )

    def test_empty_schema(self):
        with pytest.raises(ValueError, match="at least one column"):
            TableConfig(name="t", path="/tmp/t", partition_by="order_date", columns={})

    def test_default_commit_log_path(self):
        local = TableConfig(name="t", path="/data/t", partition_by="order_date", columns=COLUMNS)
        assert local.resolved_commit_log_path == os.path.join("/data/t", "_commit_log.jsonl")

        delta = TableConfig(
            name="t",
            path="s3://bucket/t/",
            partition_by="order_date",
            backend="delta",
            columns=COLUMNS,
        )
        assert delta.resolved_commit_log_path == "s3://bucket/t_commit_log.jsonl"

        custom = TableConfig(
            name="t",
            path="/data/t",
            partition_by="order_date",
            columns=COLUMNS,
            commit_log_path="/logs/t.jsonl",
        )
        assert custom.resolved_commit_log_path == "/logs/t.jsonl"


class TestEngineConfig:
    def test_duplicate_table_names(self):
        table = {"name": "t", "path": "/tmp/t", "partition_by": "order_date", "columns": COLUMNS}
        with pytest.raises(ValueError, match="Duplicate table names"):
            EngineConfig.model_validate({"tables": [table, dict(table)]})

    def test_table_lookup(self):
        config = EngineConfig.model_validate(
            {"tables": [{"name": "t", "path": "/tmp/t", "partition_by": "order_date", "columns": COLUMNS}]}
        )
        assert config.table("t").name == "t"
        with pytest.raises(ConfigValidationError, match="not found"):
            config.table("missing")

    def test_defaults(self):
        config = EngineConfig()
        assert config.retry.max_retries == 0
        assert config.logging.structured is False


def _write(path, data):
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f)
    return str(path)


class TestLoadConfig:
    def test_resolves_relative_paths(self, tmp_path):
        path = _write(
            tmp_path / "partover.yaml",
            {
                "tables": [
                    {
                        "name": "orders",
                        "path": "./warehouse/orders",
                        "partition_by": "order_date",
                        "columns": COLUMNS,
                    }
                ]
            },
        )
        config = load_config(path)
        assert config.table("orders").path == os.path.normpath(
            os.path.join(str(tmp_path), "warehouse", "orders")
        )

    def test_keeps_uris(self, tmp_path):
        path = _write(
            tmp_path / "partover.yaml",
            {
                "tables": [
                    {
                        "name": "orders",
                        "path": "abfss://lake@acct.dfs.core.windows.net/orders",
                        "backend": "delta",
                        "partition_by": "order_date",
                        "columns": COLUMNS,
                    }
                ]
            },
        )
        assert load_config(path).table("orders").path.startswith("abfss://")

    def test_env_substitution_and_environment_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("WAREHOUSE", str(tmp_path / "wh"))
        content = """
tables:
  - name: orders
    path: ${WAREHOUSE}/orders
    partition_by: order_date
    columns:
      order_date: date
      total_orders: int64
retry:
  max_retries: 0
environments:
  prod:
    retry:
      max_retries: 5
      base_delay: 0.5
    logging:
      structured: true
"""
        path = tmp_path / "partover.yaml"
        path.write_text(content)

        dev = load_config(str(path))
        assert dev.retry.max_retries == 0
        assert dev.table("orders").path == os.path.join(str(tmp_path / "wh"), "orders")

        prod = load_config(str(path), env="prod")
        assert prod.retry.max_retries == 5
        assert prod.retry.base_delay == 0.5
        assert prod.logging.structured is True

    def test_imports_append_tables(self, tmp_path):
        _write(
            tmp_path / "more.yaml",
            {
                "tables": [
                    {"name": "b", "path": "/tmp/b", "clustered_by": "order_date", "columns": COLUMNS}
                ]
            },
        )
        path = _write(
            tmp_path / "partover.yaml",
            {
                "imports": ["more.yaml"],
                "tables": [
                    {"name": "a", "path": "/tmp/a", "partition_by": "order_date", "columns": COLUMNS}
                ],
            },
        )
        config = load_config(path)
        assert sorted(t.name for t in config.tables) == ["a", "b"]

    def test_invalid_config_raises_config_validation_error(self, tmp_path):
        path = _write(
            tmp_path / "partover.yaml",
            {"tables": [{"name": "a", "path": "/tmp/a", "columns": COLUMNS}]},
        )
        with pytest.raises(ConfigValidationError) as exc_info:
            load_config(path)
        assert exc_info.value.file == path


class TestLoadYamlWithEnv:
    def test_missing_variable(self, tmp_path, monkeypatch):
        monkeypatch.delenv("PARTOVER_MISSING_VAR", raising=False)
        path = tmp_path / "c.yaml"
        path.write_text("key: ${PARTOVER_MISSING_VAR}")
        with pytest.raises(ValueError, match="Missing environment variable: PARTOVER_MISSING_VAR"):
            load_yaml_with_env(str(path))

    def test_env_prefix_syntax(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PARTOVER_VAR", "value")
        path = tmp_path / "c.yaml"
        path.write_text("key: ${env:PARTOVER_VAR}\nother: x_${PARTOVER_VAR}")
        data = load_yaml_with_env(str(path))
        assert data == {"key": "value", "other": "x_value"}

    def test_external_env_file(self, tmp_path):
        (tmp_path / "c.yaml").write_text("retry:\n  max_retries: 1\n")
        (tmp_path / "env.qa.yaml").write_text("retry:\n  max_retries: 2\n")
        assert load_yaml_with_env(str(tmp_path / "c.yaml"))["retry"]["max_retries"] == 1
        assert load_yaml_with_env(str(tmp_path / "c.yaml"), env="qa")["retry"]["max_retries"] == 2

    def test_file_not_found(self):
        with pytest.raises(FileNotFoundError):
            load_yaml_with_env("non_existent_file.yaml")

    def test_default_used_when_variable_unset(self, tmp_path, monkeypatch):
        monkeypatch.delenv("PARTOVER_LEVEL", raising=False)
        monkeypatch.setenv("PARTOVER_ROOT", "/data")
        path = tmp_path / "c.yaml"
        path.write_text("level: ${PARTOVER_LEVEL:-INFO}\nroot: ${env:PARTOVER_ROOT:-/tmp}\nempty: '${PARTOVER_LEVEL:-}'")
        assert load_yaml_with_env(str(path)) == {"level": "INFO", "root": "/data", "empty": ""}

    def test_inline_environment_applied_before_env_file(self, tmp_path):
        (tmp_path / "c.yaml").write_text(
            "retry:\n  max_retries: 1\n  base_delay: 1.0\n"
            "environments:\n  qa:\n    retry:\n      max_retries: 2\n      base_delay: 0.5\n"
        )
        (tmp_path / "env.qa.yaml").write_text("retry:\n  max_retries: 3\n")
        data = load_yaml_with_env(str(tmp_path / "c.yaml"), env="qa")
        assert data == {"retry": {"max_retries": 3, "base_delay": 0.5}}

    def test_missing_import(self, tmp_path):
        path = tmp_path / "c.yaml"
        path.write_text("imports:\n  - missing.yaml\n")
        with pytest.raises(FileNotFoundError, match="missing.yaml"):
            load_yaml_with_env(str(path))

    def test_circular_import(self, tmp_path):
        (tmp_path / "a.yaml").write_text("imports: b.yaml\n")
        (tmp_path / "b.yaml").write_text("imports: a.yaml\n")
        with pytest.raises(ValueError, match="Circular config import"):
            load_yaml_with_env(str(tmp_path / "a.yaml"))

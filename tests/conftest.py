import logging
from datetime import date

import pytest

from partover.config import TableConfig


@pytest.fixture(autouse=True)
def configure_logging():
    """Configure logging to avoid Rich Text object issues in tests."""
    # Disable Rich handlers and use basic logging
    root = logging.getLogger()
    for handler in root.handlers[:]:
        if "Rich" in handler.__class__.__name__:
            root.removeHandler(handler)
    # Set to WARNING level to reduce noise in tests
    logging.basicConfig(level=logging.WARNING, format="%(message)s", force=True)
    yield
    logging.basicConfig(level=logging.INFO, force=True)


DAILY_COLUMNS = {
    "order_date": "date",
    "total_orders": "int64",
    "total_revenue": "float64",
}

CUSTOMER_COLUMNS = {
    "customer_id": "string",
    "order_date": "date",
    "total_orders": "int64",
    "total_spent": "float64",
}


def day(n: int) -> date:
    """Day ``n`` of a 90 day window (D1 = 2024-01-01)."""
    return date.fromordinal(date(2024, 1, 1).toordinal() + n - 1)


def daily_rows(days, orders: int = 3, revenue: float = 30.0):
    return [
        {"order_date": day(n), "total_orders": orders, "total_revenue": revenue + n}
        for n in days
    ]


def customer_rows(pairs, spent: float = 10.0):
    return [
        {
            "customer_id": customer,
            "order_date": day(n),
            "total_orders": 1,
            "total_spent": spent + n,
        }
        for customer, n in pairs
    ]


@pytest.fixture
def daily_config(tmp_path):
    """Explicitly partitioned table keyed by order_date."""
    return TableConfig(
        name="orders_mart_partitioned",
        path=str(tmp_path / "orders_mart_partitioned"),
        partition_by="order_date",
        columns=DAILY_COLUMNS,
    )


@pytest.fixture
def clustered_config(tmp_path):
    """Clustered table keyed by (customer_id, order_date)."""
    return TableConfig(
        name="orders_mart_liquid",
        path=str(tmp_path / "orders_mart_liquid"),
        liquid_clustered_by=["customer_id", "order_date"],
        columns=CUSTOMER_COLUMNS,
    )


@pytest.fixture
def daily_engine(daily_config):
    from partover.engine import OverwriteEngine

    engine = OverwriteEngine(daily_config)
    engine.create_table()
    return engine


@pytest.fixture
def clustered_engine(clustered_config):
    from partover.engine import OverwriteEngine

    engine = OverwriteEngine(clustered_config)
    engine.create_table()
    return engine

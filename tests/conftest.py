"""Pytest configuration and fixtures."""

from pathlib import Path

import pytest

from cutly.db import _connect, ensure_schema
from cutly.events import feed
from cutly.services.catalog import create_product


@pytest.fixture(scope="function")
def conn():
    """Fresh in-memory database with the full schema."""
    connection = _connect(Path(":memory:"))
    ensure_schema(connection)
    yield connection
    connection.close()


@pytest.fixture(autouse=True)
def clean_feed():
    feed.clear()
    yield
    feed.clear()


@pytest.fixture
def tenant_id() -> str:
    return "salon-a"


@pytest.fixture
def product(conn, tenant_id):
    """A shampoo with a reorder threshold of 15."""
    return create_product(
        conn,
        tenant_id,
        {
            "sku": "sh-001",
            "name": "Shampoing Doux",
            "brand": "CoiffIA",
            "category": "shampoings",
            "retail_price": "9.90",
            "min_stock_threshold": 15,
        },
    )

from __future__ import annotations

import logging
from datetime import date, timedelta

from cutly.db import q, run, transaction
from cutly.services.catalog import create_product, ensure_tenant
from cutly.services.ledger import StockReceipt, receive_stock

logger = logging.getLogger(__name__)

DEMO_TENANT = "demo"

DEMO_PRODUCTS = [
    {"sku": "SKU-DEM-1", "name": "Shampoing Doux", "brand": "CoiffIA", "category": "shampoings",
     "unit": "u", "retail_price": 9.9, "cost_price": 4.0, "min_stock_threshold": 5},
    {"sku": "SKU-DEM-2", "name": "Coloration Intense", "brand": "CoiffIA", "category": "colorations",
     "unit": "u", "retail_price": 19.9, "cost_price": 9.0, "min_stock_threshold": 3, "expires_in_days": 365},
    {"sku": "SKU-DEM-3", "name": "Soin Réparateur", "brand": "CoiffIA", "category": "soins",
     "unit": "u", "retail_price": 14.9, "cost_price": 6.0, "min_stock_threshold": 10},
]

# (sku, batch_code, qty, cost, days until expiry or None)
DEMO_BATCHES = [
    ("SKU-DEM-1", "BATCH-A", 2, 4.0, None),
    ("SKU-DEM-1", "BATCH-B", 1, 4.0, None),
    ("SKU-DEM-2", "BATCH-C", 5, 9.0, 20),
]


def ensure_demo_seed(conn, tenant_id: str, *, demo_tenant: str = DEMO_TENANT) -> bool:
    """
    Seed the demo tenant once. Other tenants and a demo tenant that already
    has products are left untouched. Stock goes through the ledger so every
    batch has its IN movement.
    """
    if tenant_id != demo_tenant:
        return False
    if q(conn, "SELECT id FROM products WHERE tenant_id=? LIMIT 1", (tenant_id,)):
        return False

    ensure_tenant(conn, tenant_id, name="Salon démo")
    ids = {}
    for p in DEMO_PRODUCTS:
        ids[p["sku"]] = create_product(conn, tenant_id, p)["id"]

    today = date.today()
    for sku, code, qty, cost, exp_in in DEMO_BATCHES:
        exp = (today + timedelta(days=exp_in)).isoformat() if exp_in is not None else None
        receive_stock(
            conn,
            tenant_id,
            ids[sku],
            StockReceipt(batch_code=code, exp_date=exp, unit_cost=cost),
            qty,
        )

    logger.info("Seeded demo data for tenant %s", tenant_id)
    return True


def wipe_tenant(conn, tenant_id: str) -> None:
    # Keep schema, delete data (order matters for FKs).
    with transaction(conn):
        for t in ["stock_movements", "product_batches", "products"]:
            run(conn, f"DELETE FROM {t} WHERE tenant_id=?", (tenant_id,))
    logger.info("Wiped data for tenant %s", tenant_id)


def table_counts(conn, tenant_id: str):
    return q(
        conn,
        """
        SELECT 'products' AS table_name, COUNT(*) AS n FROM products WHERE tenant_id=?
        UNION ALL SELECT 'product_batches', COUNT(*) FROM product_batches WHERE tenant_id=?
        UNION ALL SELECT 'stock_movements', COUNT(*) FROM stock_movements WHERE tenant_id=?
        """,
        (tenant_id, tenant_id, tenant_id),
    )

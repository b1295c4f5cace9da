from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Mapping, Optional

from cutly.errors import CutlyError
from cutly.services import catalog, csv_import, ledger, search
from cutly.services.ledger import StockReceipt
from cutly.services.search import SearchFilters

logger = logging.getLogger(__name__)


@dataclass
class ActionResult:
    ok: bool
    message: str = ""
    data: Any = None


@contextmanager
def telemetry(name: str, tenant_id: Optional[str]) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    except Exception:
        logger.exception("%s tenant=%s failed", name, tenant_id or "-")
        raise
    finally:
        logger.debug("%s tenant=%s duration_ms=%.1f", name, tenant_id or "-", (time.perf_counter() - start) * 1000)


def _call(name: str, tenant_id: Optional[str], fn: Callable[[], Any], success: str) -> ActionResult:
    """
    Run one service call and turn its outcome into an ActionResult.

    Expected failures (CutlyError) become ok=False with the error text; they
    are logged at INFO, not as errors. Anything else propagates.
    """
    with telemetry(name, tenant_id):
        try:
            data = fn()
        except CutlyError as e:
            logger.info("%s tenant=%s rejected: %s", name, tenant_id or "-", e)
            return ActionResult(ok=False, message=e.message)
    return ActionResult(ok=True, message=success, data=data)


def create_product(conn, tenant_id: str, form: Mapping[str, Any]) -> ActionResult:
    return _call(
        "create_product",
        tenant_id,
        lambda: catalog.create_product(conn, tenant_id, form),
        "Produit créé.",
    )


def update_product(conn, tenant_id: str, product_id: str, form: Mapping[str, Any]) -> ActionResult:
    return _call(
        "update_product",
        tenant_id,
        lambda: catalog.update_product(conn, tenant_id, product_id, form),
        "Produit mis à jour.",
    )


def archive_product(conn, tenant_id: str, product_id: str) -> ActionResult:
    return _call(
        "archive_product",
        tenant_id,
        lambda: catalog.archive_product(conn, tenant_id, product_id),
        "Produit archivé.",
    )


def restore_product(conn, tenant_id: str, product_id: str) -> ActionResult:
    return _call(
        "restore_product",
        tenant_id,
        lambda: catalog.restore_product(conn, tenant_id, product_id),
        "Produit réactivé.",
    )


def receive_stock(
    conn,
    tenant_id: str,
    product_id: str,
    form: Mapping[str, Any],
) -> ActionResult:
    receipt = StockReceipt(
        batch_id=form.get("batch_id"),
        batch_code=form.get("batch_code"),
        exp_date=form.get("exp_date"),
        supplier_id=form.get("supplier_id"),
        unit_cost=form.get("unit_cost"),
    )
    return _call(
        "receive_stock",
        tenant_id,
        lambda: ledger.receive_stock(conn, tenant_id, product_id, receipt, form.get("qty_in")),
        "Réception enregistrée.",
    )


def adjust_stock(
    conn,
    tenant_id: str,
    product_id: str,
    batch_id: str,
    delta: Any,
    reason: Optional[str] = None,
) -> ActionResult:
    return _call(
        "adjust_stock",
        tenant_id,
        lambda: ledger.adjust_stock(conn, tenant_id, product_id, batch_id, delta, reason),
        "Ajustement enregistré.",
    )


def import_products_csv(conn, tenant_id: str, source: Any, *, chunk_size: Optional[int] = None) -> ActionResult:
    def go():
        rows = csv_import.read_products_csv(source)
        return csv_import.import_products(conn, tenant_id, rows, chunk_size=chunk_size)

    res = _call("import_products_csv", tenant_id, go, "")
    if res.ok:
        report = res.data
        res.message = f"{report.created} créé(s), {report.updated} mis à jour, {len(report.errors)} erreur(s)."
    return res


def search_products(conn, tenant_id: str, filters: SearchFilters, **kwargs: Any) -> ActionResult:
    return _call(
        "search_products",
        tenant_id,
        lambda: search.search_products(conn, tenant_id, filters, **kwargs),
        "",
    )

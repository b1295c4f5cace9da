from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Iterable, Mapping, Optional

from cutly.db import q
from cutly.utils import parse_iso_date

DEFAULT_HORIZON_DAYS = 30


@dataclass(frozen=True)
class StockFigures:
    stock_total: int = 0
    expiring_count: int = 0


def _dedupe(product_ids: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for pid in product_ids:
        if pid and pid not in seen:
            seen[pid] = None
    return list(seen)


def project_stock(
    batch_rows: Iterable[Mapping[str, Any]],
    product_ids: Iterable[str],
    *,
    today: date,
    horizon_days: int = DEFAULT_HORIZON_DAYS,
) -> dict[str, StockFigures]:
    """
    Fold batch rows into per-product stock totals and expiring-batch counts.

    A batch is "expiring" when it has an exp_date on or before today + horizon
    (already expired batches included). Ids with no batches get zeros; rows
    for ids outside the requested set are ignored. Order of rows is irrelevant.
    """
    ids = _dedupe(product_ids)
    totals = {pid: 0 for pid in ids}
    expiring = {pid: 0 for pid in ids}
    limit = today + timedelta(days=int(horizon_days))

    for b in batch_rows:
        pid = b["product_id"]
        if pid not in totals:
            continue
        totals[pid] += int(b["qty_on_hand"] or 0)
        exp = parse_iso_date(b["exp_date"])
        if exp is not None and exp <= limit:
            expiring[pid] += 1

    return {pid: StockFigures(stock_total=totals[pid], expiring_count=expiring[pid]) for pid in ids}


def fetch_batches_for(conn, tenant_id: str, product_ids: list[str]):
    if not product_ids:
        return []
    placeholders = ", ".join("?" for _ in product_ids)
    return q(
        conn,
        f"""
        SELECT product_id, qty_on_hand, exp_date
        FROM product_batches
        WHERE tenant_id=? AND product_id IN ({placeholders})
        """,
        (tenant_id, *product_ids),
    )


def stock_projection(
    conn,
    tenant_id: str,
    product_ids: Iterable[str],
    *,
    today: Optional[date] = None,
    horizon_days: Optional[int] = None,
) -> dict[str, StockFigures]:
    """One query over all requested products, then the pure fold."""
    ids = _dedupe(product_ids)
    rows = fetch_batches_for(conn, tenant_id, ids)
    return project_stock(
        rows,
        ids,
        today=today or date.today(),
        horizon_days=DEFAULT_HORIZON_DAYS if horizon_days is None else horizon_days,
    )

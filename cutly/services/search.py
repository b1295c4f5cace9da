from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Optional

from cutly.db import q
from cutly.services.catalog import PRODUCT_COLUMNS, require_tenant
from cutly.services.projection import DEFAULT_HORIZON_DAYS, stock_projection

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20

SEARCHABLE_COLUMNS = ("sku", "name", "brand", "category")


@dataclass
class SearchFilters:
    q: Optional[str] = None
    category: Optional[str] = None
    active_only: bool = False
    under_threshold: bool = False
    expiring_soon: bool = False
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE


@dataclass
class SearchResult:
    rows: list[dict[str, Any]] = field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE

    @property
    def first_index(self) -> int:
        return 0 if self.total == 0 else (self.page - 1) * self.page_size + 1

    @property
    def last_index(self) -> int:
        return min(self.page * self.page_size, self.total)

    @property
    def has_previous(self) -> bool:
        return self.page > 1

    @property
    def has_next(self) -> bool:
        return self.page * self.page_size < self.total


def _clamp_page(page: Any) -> int:
    try:
        return max(1, int(page))
    except (TypeError, ValueError):
        return 1


def _clamp_page_size(page_size: Any) -> int:
    try:
        n = int(page_size)
    except (TypeError, ValueError):
        return DEFAULT_PAGE_SIZE
    return min(MAX_PAGE_SIZE, max(1, n))


def _like_pattern(text: str) -> str:
    escaped = text.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _where(tenant_id: str, filters: SearchFilters) -> tuple[str, list[Any]]:
    clauses = ["tenant_id=?"]
    params: list[Any] = [tenant_id]

    text = (filters.q or "").strip()
    if text:
        like = _like_pattern(text)
        clauses.append(
            "(" + " OR ".join(f"LOWER(COALESCE({c}, '')) LIKE ? ESCAPE '\\'" for c in SEARCHABLE_COLUMNS) + ")"
        )
        params.extend([like] * len(SEARCHABLE_COLUMNS))

    if filters.category:
        clauses.append("category=?")
        params.append(filters.category)

    if filters.active_only:
        clauses.append("is_active=1")

    return " AND ".join(clauses), params


def is_under_threshold(row: dict[str, Any]) -> bool:
    threshold = int(row.get("min_stock_threshold") or 0)
    return threshold > 0 and int(row.get("stock_total") or 0) <= threshold


def search_products(
    conn,
    tenant_id: str,
    filters: Optional[SearchFilters] = None,
    *,
    today: Optional[date] = None,
    horizon_days: int = DEFAULT_HORIZON_DAYS,
) -> SearchResult:
    """
    One page of the catalog, enriched with stock figures.

    under_threshold and expiring_soon are applied to the fetched page only, so
    a filtered page may hold fewer than page_size rows while `total` still
    counts the unfiltered matches.
    """
    tenant_id = require_tenant(tenant_id)
    filters = filters or SearchFilters()
    page = _clamp_page(filters.page)
    page_size = _clamp_page_size(filters.page_size)
    offset = (page - 1) * page_size

    where, params = _where(tenant_id, filters)
    total = int(q(conn, f"SELECT COUNT(*) AS n FROM products WHERE {where}", params)[0]["n"])

    rows = q(
        conn,
        f"""
        SELECT {', '.join(PRODUCT_COLUMNS)}
        FROM products
        WHERE {where}
        ORDER BY name COLLATE NOCASE ASC, updated_at DESC, id ASC
        LIMIT ? OFFSET ?
        """,
        [*params, page_size, offset],
    )

    products = [dict(r) for r in rows]
    figures = stock_projection(
        conn,
        tenant_id,
        [p["id"] for p in products],
        today=today,
        horizon_days=horizon_days,
    )

    out: list[dict[str, Any]] = []
    for p in products:
        fig = figures[p["id"]]
        p["is_active"] = bool(p["is_active"])
        p["stock_total"] = fig.stock_total
        p["expiring_count"] = fig.expiring_count
        p["under_threshold"] = is_under_threshold(p)
        out.append(p)

    if filters.under_threshold:
        out = [p for p in out if p["under_threshold"]]
    if filters.expiring_soon:
        out = [p for p in out if p["expiring_count"] > 0]

    return SearchResult(rows=out, total=total, page=page, page_size=page_size)

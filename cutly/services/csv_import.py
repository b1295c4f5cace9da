from __future__ import annotations

import csv
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

import pandas as pd

from cutly.db import q, run_many, transaction, x
from cutly.errors import StoreError, ValidationError
from cutly.events import publish
from cutly.services.catalog import (
    ProductInput,
    ensure_tenant,
    product_values,
    require_tenant,
    validate_product,
)
from cutly.utils import iso_now, new_id

logger = logging.getLogger(__name__)

MIN_CHUNK_SIZE = 50
MAX_CHUNK_SIZE = 100
DEFAULT_CHUNK_SIZE = 50

# Existence lookups are split so the IN (...) list stays well under SQLite's variable limit.
_LOOKUP_SLICE = 500


@dataclass
class RowError:
    index: int
    message: str
    sku: Optional[str] = None


@dataclass
class ImportReport:
    created: int = 0
    updated: int = 0
    errors: list[RowError] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.created + self.updated + len(self.errors)


def read_products_csv(source: Any) -> list[dict[str, Any]]:
    """
    Parse a CSV (path or file-like) into row dicts.

    Every cell is read as text; validation and coercion happen per row later.
    The delimiter is sniffed so both "," and ";" exports work.
    """
    try:
        df = pd.read_csv(
            source,
            dtype=str,
            keep_default_na=False,
            sep=None,
            engine="python",
            encoding="utf-8-sig",
            skipinitialspace=True,
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError, csv.Error, UnicodeDecodeError) as e:
        raise ValidationError(f"CSV invalide: {e}") from e

    df.columns = [str(c).replace("\ufeff", "").strip().lower() for c in df.columns]
    if "sku" not in df.columns:
        raise ValidationError("CSV invalide: colonne 'sku' manquante.")
    # Short rows leave NaN in the trailing columns.
    df = df.astype(object).where(df.notna(), None)
    return df.to_dict(orient="records")


def _chunk_size(requested: Optional[int]) -> int:
    n = DEFAULT_CHUNK_SIZE if requested is None else int(requested)
    return min(MAX_CHUNK_SIZE, max(MIN_CHUNK_SIZE, n))


def _existing_skus(conn, tenant_id: str, skus: list[str]) -> set[str]:
    found: set[str] = set()
    for start in range(0, len(skus), _LOOKUP_SLICE):
        part = skus[start : start + _LOOKUP_SLICE]
        placeholders = ", ".join("?" for _ in part)
        rows = q(
            conn,
            f"SELECT sku FROM products WHERE tenant_id=? AND sku IN ({placeholders})",
            (tenant_id, *part),
        )
        found.update(str(r["sku"]) for r in rows)
    return found


def _validate_rows(rows: list[Mapping[str, Any]], report: ImportReport) -> list[tuple[int, ProductInput]]:
    valid: list[tuple[int, ProductInput]] = []
    first_seen: dict[str, int] = {}

    for idx, raw in enumerate(rows):
        try:
            product = validate_product(raw)
        except ValidationError as e:
            sku = str(raw.get("sku") or "").strip() or None
            report.errors.append(RowError(index=idx, message=e.message, sku=sku))
            continue

        if product.sku in first_seen:
            report.errors.append(
                RowError(
                    index=idx,
                    message=f"SKU en double dans le fichier (déjà ligne {first_seen[product.sku] + 1}).",
                    sku=product.sku,
                )
            )
            continue

        first_seen[product.sku] = idx
        valid.append((idx, product))

    return valid


def _insert_chunks(
    conn,
    tenant_id: str,
    to_insert: list[tuple[int, ProductInput]],
    size: int,
    report: ImportReport,
) -> None:
    for start in range(0, len(to_insert), size):
        part = to_insert[start : start + size]
        now = iso_now()
        records = [
            {"id": new_id(), "tenant_id": tenant_id, **product_values(p), "updated_at": now}
            for _, p in part
        ]
        cols = list(records[0])
        try:
            with transaction(conn):
                run_many(
                    conn,
                    f"INSERT INTO products ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})",
                    [[r[c] for c in cols] for r in records],
                )
        except StoreError as e:
            # The whole chunk rolled back; every row in it gets the chunk's error.
            logger.warning("Import chunk at %s failed for tenant %s: %s", start, tenant_id, e)
            for idx, p in part:
                report.errors.append(RowError(index=idx, message=e.message, sku=p.sku))
            continue

        report.created += len(part)
        for r in records:
            publish("products", "INSERT", tenant_id, r)


def _update_rows(conn, tenant_id: str, to_update: list[tuple[int, ProductInput]], report: ImportReport) -> None:
    for idx, product in to_update:
        values = {**product_values(product), "updated_at": iso_now()}
        values.pop("sku")
        try:
            n = x(
                conn,
                f"UPDATE products SET {', '.join(f'{c}=?' for c in values)} WHERE tenant_id=? AND sku=?",
                [*values.values(), tenant_id, product.sku],
            )
        except StoreError as e:
            report.errors.append(RowError(index=idx, message=e.message, sku=product.sku))
            continue

        if n == 0:
            report.errors.append(RowError(index=idx, message="Produit introuvable pour ce SKU.", sku=product.sku))
            continue

        report.updated += 1
        publish("products", "UPDATE", tenant_id, {"tenant_id": tenant_id, "sku": product.sku, **values})


def import_products(
    conn,
    tenant_id: str,
    rows: Iterable[Mapping[str, Any]],
    *,
    chunk_size: Optional[int] = None,
) -> ImportReport:
    """
    Upsert catalog rows by (tenant, SKU).

    Each row is validated on its own; a bad row is reported and skipped.
    New SKUs are inserted in chunks, known SKUs are updated one by one.
    Every input row ends up counted exactly once: created, updated or in
    `errors` (indexed by its position in `rows`). Only a failure of the
    existence lookup raises.
    """
    tenant_id = require_tenant(tenant_id)
    rows = list(rows)
    report = ImportReport()

    valid = _validate_rows(rows, report)
    if valid:
        ensure_tenant(conn, tenant_id)
        existing = _existing_skus(conn, tenant_id, [p.sku for _, p in valid])

        to_insert = [(i, p) for i, p in valid if p.sku not in existing]
        to_update = [(i, p) for i, p in valid if p.sku in existing]

        _insert_chunks(conn, tenant_id, to_insert, _chunk_size(chunk_size), report)
        _update_rows(conn, tenant_id, to_update, report)

    report.errors.sort(key=lambda e: e.index)
    logger.info(
        "CSV import for tenant %s: %s row(s), %s created, %s updated, %s error(s)",
        tenant_id, len(rows), report.created, report.updated, len(report.errors),
    )
    return report

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Optional

from cutly.db import q, run, transaction
from cutly.errors import IntegrityViolation, NegativeStockError, NotFoundError, ValidationError
from cutly.events import publish
from cutly.services.catalog import require_tenant
from cutly.utils import blank_to_none, iso_now, new_id, parse_iso_date

logger = logging.getLogger(__name__)

MOVEMENT_IN = "IN"
MOVEMENT_ADJUST = "ADJUST"

DEFAULT_RECEIPT_REASON = "reception"
DEFAULT_ADJUST_REASON = "ajustement"

# Largest value a SQLite INTEGER column can hold.
MAX_QUANTITY = 2**63 - 1

BATCH_COLUMNS = (
    "id, tenant_id, product_id, batch_code, exp_date, supplier_id, cost_price, qty_on_hand, received_at"
)


@dataclass
class StockReceipt:
    """Where a receipt lands: an explicit batch, a batch found by code, or a new batch."""

    batch_id: Optional[str] = None
    batch_code: Optional[str] = None
    exp_date: Optional[str] = None  # ISO date
    supplier_id: Optional[str] = None
    unit_cost: Optional[float] = None


@dataclass
class LedgerResult:
    batch_id: str
    movement_id: str
    qty_on_hand: int


@dataclass
class Reconciliation:
    batch_id: str
    qty_on_hand: int
    movement_total: int

    @property
    def consistent(self) -> bool:
        return self.qty_on_hand == self.movement_total


def _whole_quantity(value: Any, label: str) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        n = value
    else:
        try:
            f = float(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{label} doit être un nombre.")
        if not math.isfinite(f):
            raise ValidationError(f"{label} doit être un nombre fini.")
        if f != int(f):
            raise ValidationError(f"{label} doit être un nombre entier d'unités.")
        n = int(f)
    if abs(n) > MAX_QUANTITY:
        raise ValidationError(f"{label} trop grand.")
    return n


def _require_product(conn, tenant_id: str, product_id: str) -> None:
    if not q(conn, "SELECT id FROM products WHERE id=? AND tenant_id=?", (product_id, tenant_id)):
        raise NotFoundError("Produit introuvable.")


def _normalize_receipt(receipt: Optional[StockReceipt]) -> StockReceipt:
    r = receipt or StockReceipt()
    batch_code = blank_to_none(r.batch_code)
    exp = blank_to_none(r.exp_date)
    try:
        exp_date = parse_iso_date(exp).isoformat() if exp is not None else None
    except ValueError:
        raise ValidationError("Date d'expiration invalide (AAAA-MM-JJ).")

    unit_cost = blank_to_none(r.unit_cost)
    if unit_cost is not None:
        try:
            unit_cost = float(unit_cost)
        except (TypeError, ValueError):
            raise ValidationError("Coût unitaire invalide.")
        if not math.isfinite(unit_cost) or unit_cost < 0:
            raise ValidationError("Coût unitaire invalide.")

    return StockReceipt(
        batch_id=blank_to_none(r.batch_id),
        batch_code=str(batch_code).strip() if batch_code else None,
        exp_date=exp_date,
        supplier_id=blank_to_none(r.supplier_id),
        unit_cost=unit_cost,
    )


def _resolve_batch(conn, tenant_id: str, product_id: str, receipt: StockReceipt) -> tuple[str, bool]:
    """Returns (batch_id, created)."""
    if receipt.batch_id:
        rows = q(
            conn,
            "SELECT id FROM product_batches WHERE id=? AND tenant_id=? AND product_id=?",
            (receipt.batch_id, tenant_id, product_id),
        )
        if not rows:
            raise NotFoundError("Lot introuvable.")
        return str(rows[0]["id"]), False

    if receipt.batch_code:
        rows = q(
            conn,
            "SELECT id FROM product_batches WHERE tenant_id=? AND product_id=? AND batch_code=? LIMIT 1",
            (tenant_id, product_id, receipt.batch_code),
        )
        if rows:
            return str(rows[0]["id"]), False

    batch = {
        "id": new_id(),
        "tenant_id": tenant_id,
        "product_id": product_id,
        "batch_code": receipt.batch_code,
        "exp_date": receipt.exp_date,
        "supplier_id": receipt.supplier_id,
        "cost_price": receipt.unit_cost if receipt.unit_cost is not None else 0.0,
        "qty_on_hand": 0,
        "received_at": iso_now(),
    }
    run(
        conn,
        f"INSERT INTO product_batches ({', '.join(batch)}) VALUES ({', '.join('?' for _ in batch)})",
        batch.values(),
    )
    logger.info("Created batch %s (%s) for product %s", batch["id"], batch["batch_code"] or "-", product_id)
    return str(batch["id"]), True


def _append_movement(
    conn,
    *,
    tenant_id: str,
    product_id: str,
    batch_id: str,
    kind: str,
    qty: int,
    reason: Optional[str],
) -> dict[str, Any]:
    movement = {
        "id": new_id(),
        "tenant_id": tenant_id,
        "product_id": product_id,
        "batch_id": batch_id,
        "type": kind,
        "qty": int(qty),
        "reason": reason,
        "created_at": iso_now(),
    }
    run(
        conn,
        f"INSERT INTO stock_movements ({', '.join(movement)}) VALUES ({', '.join('?' for _ in movement)})",
        movement.values(),
    )
    return movement


def _qty_on_hand(conn, tenant_id: str, batch_id: str) -> int:
    rows = q(conn, "SELECT qty_on_hand FROM product_batches WHERE id=? AND tenant_id=?", (batch_id, tenant_id))
    if not rows:
        raise NotFoundError("Lot introuvable.")
    return int(rows[0]["qty_on_hand"])


def _publish_ledger_change(tenant_id: str, batch: dict, movement: dict, batch_event: str) -> None:
    publish("product_batches", batch_event, tenant_id, batch)
    publish("stock_movements", "INSERT", tenant_id, movement)


def receive_stock(
    conn,
    tenant_id: str,
    product_id: str,
    receipt: Optional[StockReceipt],
    qty_in: Any,
) -> LedgerResult:
    """
    Book an IN movement.

    Batch resolution: explicit batch_id, else an existing batch with the same
    code for this product, else a new batch starting at zero. The batch
    creation, the increment and the movement row commit together.
    """
    tenant_id = require_tenant(tenant_id)
    if not product_id:
        raise ValidationError("Identifiant produit manquant.")
    qty = _whole_quantity(qty_in, "Quantité (IN)")
    if qty <= 0:
        raise ValidationError("Quantité (IN) requise et strictement positive.")
    receipt = _normalize_receipt(receipt)

    with transaction(conn):
        _require_product(conn, tenant_id, product_id)
        batch_id, created = _resolve_batch(conn, tenant_id, product_id, receipt)
        run(
            conn,
            "UPDATE product_batches SET qty_on_hand = qty_on_hand + ? WHERE id=? AND tenant_id=?",
            (qty, batch_id, tenant_id),
        )
        movement = _append_movement(
            conn,
            tenant_id=tenant_id,
            product_id=product_id,
            batch_id=batch_id,
            kind=MOVEMENT_IN,
            qty=qty,
            reason=DEFAULT_RECEIPT_REASON,
        )
        batch = get_batch(conn, tenant_id, batch_id)

    logger.info(
        "Received %s unit(s) into batch %s (product %s, tenant %s), on hand %s",
        qty, batch_id, product_id, tenant_id, batch["qty_on_hand"],
    )
    _publish_ledger_change(tenant_id, batch, movement, "INSERT" if created else "UPDATE")
    return LedgerResult(batch_id=batch_id, movement_id=movement["id"], qty_on_hand=int(batch["qty_on_hand"]))


def adjust_stock(
    conn,
    tenant_id: str,
    product_id: str,
    batch_id: str,
    delta: Any,
    reason: Optional[str] = None,
) -> LedgerResult:
    """
    Book a signed ADJUST movement (stocktake, loss, breakage...).

    Quantity may never drop below zero: the guarded UPDATE only matches when
    qty_on_hand + delta >= 0, and the CHECK constraint backs it at the store.
    A rejected adjustment writes nothing.
    """
    tenant_id = require_tenant(tenant_id)
    if not product_id or not batch_id:
        raise ValidationError("Identifiants manquants.")
    d = _whole_quantity(delta, "Delta")
    if d == 0:
        raise ValidationError("Delta requis (peut être négatif).")
    reason = (str(reason).strip() if reason is not None else "") or DEFAULT_ADJUST_REASON

    with transaction(conn):
        rows = q(
            conn,
            "SELECT qty_on_hand FROM product_batches WHERE id=? AND tenant_id=? AND product_id=?",
            (batch_id, tenant_id, product_id),
        )
        if not rows:
            raise NotFoundError("Lot introuvable.")
        current = int(rows[0]["qty_on_hand"])
        if current + d < 0:
            raise NegativeStockError(f"Stock négatif interdit (en stock: {current}, ajustement: {d}).")

        try:
            n = run(
                conn,
                """
                UPDATE product_batches
                SET qty_on_hand = qty_on_hand + ?
                WHERE id=? AND tenant_id=? AND qty_on_hand + ? >= 0
                """,
                (d, batch_id, tenant_id, d),
            )
        except IntegrityViolation as e:
            raise NegativeStockError("Stock négatif interdit.") from e
        if n == 0:
            raise NegativeStockError("Stock négatif interdit.")

        movement = _append_movement(
            conn,
            tenant_id=tenant_id,
            product_id=product_id,
            batch_id=batch_id,
            kind=MOVEMENT_ADJUST,
            qty=d,
            reason=reason,
        )
        batch = get_batch(conn, tenant_id, batch_id)

    logger.info(
        "Adjusted batch %s by %+d (%s), tenant %s, on hand %s",
        batch_id, d, reason, tenant_id, batch["qty_on_hand"],
    )
    _publish_ledger_change(tenant_id, batch, movement, "UPDATE")
    return LedgerResult(batch_id=batch_id, movement_id=movement["id"], qty_on_hand=int(batch["qty_on_hand"]))


def get_batch(conn, tenant_id: str, batch_id: str) -> dict[str, Any]:
    rows = q(conn, f"SELECT {BATCH_COLUMNS} FROM product_batches WHERE id=? AND tenant_id=?", (batch_id, tenant_id))
    if not rows:
        raise NotFoundError("Lot introuvable.")
    return dict(rows[0])


def list_batches(conn, tenant_id: str, product_id: str) -> list[dict[str, Any]]:
    rows = q(
        conn,
        f"""
        SELECT {BATCH_COLUMNS}
        FROM product_batches
        WHERE tenant_id=? AND product_id=?
        ORDER BY received_at DESC, id
        """,
        (tenant_id, product_id),
    )
    return [dict(r) for r in rows]


def list_movements(
    conn,
    tenant_id: str,
    *,
    product_id: Optional[str] = None,
    batch_id: Optional[str] = None,
    limit: int = 50,
) -> list[dict[str, Any]]:
    sql = """
        SELECT m.id, m.product_id, m.batch_id, b.batch_code, m.type, m.qty, m.reason, m.created_at
        FROM stock_movements m
        LEFT JOIN product_batches b ON b.id = m.batch_id
        WHERE m.tenant_id=?
    """
    params: list[Any] = [tenant_id]
    if product_id:
        sql += " AND m.product_id=?"
        params.append(product_id)
    if batch_id:
        sql += " AND m.batch_id=?"
        params.append(batch_id)
    sql += " ORDER BY m.created_at DESC, m.rowid DESC LIMIT ?"
    params.append(max(1, int(limit)))
    return [dict(r) for r in q(conn, sql, params)]


def reconcile_batch(conn, tenant_id: str, batch_id: str) -> Reconciliation:
    """qty_on_hand must equal the sum of the batch's movements."""
    qty = _qty_on_hand(conn, tenant_id, batch_id)
    total = q(
        conn,
        "SELECT COALESCE(SUM(qty),0) AS total FROM stock_movements WHERE tenant_id=? AND batch_id=?",
        (tenant_id, batch_id),
    )[0]["total"]
    rec = Reconciliation(batch_id=batch_id, qty_on_hand=qty, movement_total=int(total))
    if not rec.consistent:
        logger.warning("Batch %s out of balance: on hand %s, movements %s", batch_id, qty, total)
    return rec

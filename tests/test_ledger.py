"""Tests for the batch ledger: receipts, adjustments and the movement log."""

import sqlite3
import threading
from pathlib import Path

import pytest

from cutly.db import _connect, ensure_schema, q
from cutly.errors import NegativeStockError, NotFoundError, StoreError, ValidationError
from cutly.events import feed
from cutly.services.catalog import create_product
from cutly.services.ledger import (
    StockReceipt,
    adjust_stock,
    get_batch,
    list_batches,
    list_movements,
    receive_stock,
    reconcile_batch,
)


def _movements(conn, batch_id):
    return q(conn, "SELECT type, qty, reason FROM stock_movements WHERE batch_id=? ORDER BY rowid", (batch_id,))


# ============== Receipts ==============


def test_receive_creates_batch_and_in_movement(conn, tenant_id, product):
    res = receive_stock(conn, tenant_id, product["id"], StockReceipt(batch_code="LOT-1"), 10)

    batch = get_batch(conn, tenant_id, res.batch_id)
    assert batch["qty_on_hand"] == 10
    assert batch["batch_code"] == "LOT-1"
    assert res.qty_on_hand == 10

    moves = _movements(conn, res.batch_id)
    assert [(m["type"], m["qty"], m["reason"]) for m in moves] == [("IN", 10, "reception")]


def test_receive_reuses_batch_with_same_code(conn, tenant_id, product):
    first = receive_stock(conn, tenant_id, product["id"], StockReceipt(batch_code="LOT-1"), 4)
    second = receive_stock(conn, tenant_id, product["id"], StockReceipt(batch_code="LOT-1"), 6)

    assert first.batch_id == second.batch_id
    assert second.qty_on_hand == 10
    assert len(list_batches(conn, tenant_id, product["id"])) == 1


def test_receive_without_code_creates_new_batch_each_time(conn, tenant_id, product):
    a = receive_stock(conn, tenant_id, product["id"], None, 1)
    b = receive_stock(conn, tenant_id, product["id"], StockReceipt(), 1)
    assert a.batch_id != b.batch_id


def test_receive_into_explicit_batch(conn, tenant_id, product):
    first = receive_stock(conn, tenant_id, product["id"], StockReceipt(exp_date="2027-01-31", unit_cost="3.5"), 2)
    again = receive_stock(conn, tenant_id, product["id"], StockReceipt(batch_id=first.batch_id), 3)

    assert again.batch_id == first.batch_id
    batch = get_batch(conn, tenant_id, first.batch_id)
    assert batch["qty_on_hand"] == 5
    assert batch["exp_date"] == "2027-01-31"
    assert batch["cost_price"] == 3.5


@pytest.mark.parametrize("qty", [0, -1, "abc", None, float("nan"), float("inf"), 2.5, 10**19, "1e19"])
def test_receive_rejects_bad_quantity(conn, tenant_id, product, qty):
    with pytest.raises(ValidationError):
        receive_stock(conn, tenant_id, product["id"], StockReceipt(batch_code="X"), qty)
    assert q(conn, "SELECT COUNT(*) AS n FROM product_batches")[0]["n"] == 0
    assert q(conn, "SELECT COUNT(*) AS n FROM stock_movements")[0]["n"] == 0


def test_receive_accepts_integral_float(conn, tenant_id, product):
    assert receive_stock(conn, tenant_id, product["id"], None, "3.0").qty_on_hand == 3


def test_receive_requires_ids(conn, tenant_id, product):
    with pytest.raises(ValidationError):
        receive_stock(conn, "", product["id"], None, 1)
    with pytest.raises(ValidationError):
        receive_stock(conn, tenant_id, "", None, 1)


def test_receive_rejects_bad_expiry_date(conn, tenant_id, product):
    with pytest.raises(ValidationError):
        receive_stock(conn, tenant_id, product["id"], StockReceipt(exp_date="31/01/2027"), 1)


def test_receive_unknown_product(conn, tenant_id):
    with pytest.raises(NotFoundError):
        receive_stock(conn, tenant_id, "nope", None, 1)


def test_receive_into_other_tenants_batch_is_rejected(conn, tenant_id, product):
    res = receive_stock(conn, tenant_id, product["id"], None, 5)
    other = create_product(conn, "salon-b", {"sku": "SH-001", "name": "Autre", "category": "soins"})

    with pytest.raises(NotFoundError):
        receive_stock(conn, "salon-b", other["id"], StockReceipt(batch_id=res.batch_id), 1)
    assert get_batch(conn, tenant_id, res.batch_id)["qty_on_hand"] == 5


def test_receive_rolls_back_when_movement_insert_fails(conn, tenant_id, product):
    conn.execute("DROP TABLE stock_movements")

    with pytest.raises(StoreError):
        receive_stock(conn, tenant_id, product["id"], StockReceipt(batch_code="LOT-1"), 10)

    assert q(conn, "SELECT COUNT(*) AS n FROM product_batches")[0]["n"] == 0
    assert not conn.in_transaction


# ============== Adjustments ==============


def test_adjust_applies_signed_delta(conn, tenant_id, product):
    batch_id = receive_stock(conn, tenant_id, product["id"], None, 10).batch_id

    res = adjust_stock(conn, tenant_id, product["id"], batch_id, -3, "perte")

    assert res.qty_on_hand == 7
    moves = _movements(conn, batch_id)
    assert (moves[-1]["type"], moves[-1]["qty"], moves[-1]["reason"]) == ("ADJUST", -3, "perte")


def test_adjust_default_reason(conn, tenant_id, product):
    batch_id = receive_stock(conn, tenant_id, product["id"], None, 1).batch_id
    adjust_stock(conn, tenant_id, product["id"], batch_id, 2, "  ")
    assert _movements(conn, batch_id)[-1]["reason"] == "ajustement"


def test_adjust_to_exactly_zero_is_allowed(conn, tenant_id, product):
    batch_id = receive_stock(conn, tenant_id, product["id"], None, 4).batch_id
    assert adjust_stock(conn, tenant_id, product["id"], batch_id, -4).qty_on_hand == 0


def test_adjust_rejects_negative_stock_without_writing(conn, tenant_id, product):
    batch_id = receive_stock(conn, tenant_id, product["id"], None, 7).batch_id

    with pytest.raises(NegativeStockError):
        adjust_stock(conn, tenant_id, product["id"], batch_id, -10, "casse")

    assert get_batch(conn, tenant_id, batch_id)["qty_on_hand"] == 7
    assert len(_movements(conn, batch_id)) == 1


@pytest.mark.parametrize("delta", [0, "", None, "x", 1.5, -(10**19)])
def test_adjust_rejects_bad_delta(conn, tenant_id, product, delta):
    batch_id = receive_stock(conn, tenant_id, product["id"], None, 1).batch_id
    with pytest.raises(ValidationError):
        adjust_stock(conn, tenant_id, product["id"], batch_id, delta)


def test_adjust_unknown_batch(conn, tenant_id, product):
    with pytest.raises(NotFoundError):
        adjust_stock(conn, tenant_id, product["id"], "missing", 1)


def test_adjust_batch_of_another_product(conn, tenant_id, product):
    other = create_product(conn, tenant_id, {"sku": "CO-1", "name": "Coloration", "category": "colorations"})
    batch_id = receive_stock(conn, tenant_id, product["id"], None, 3).batch_id
    with pytest.raises(NotFoundError):
        adjust_stock(conn, tenant_id, other["id"], batch_id, -1)


def test_store_rejects_negative_quantity_directly(conn, tenant_id, product):
    batch_id = receive_stock(conn, tenant_id, product["id"], None, 1).batch_id
    with pytest.raises(sqlite3.IntegrityError):
        conn.execute("UPDATE product_batches SET qty_on_hand = -1 WHERE id=?", (batch_id,))
    conn.rollback()


def test_receive_then_adjust_scenario(conn, tenant_id, product):
    batch_id = receive_stock(conn, tenant_id, product["id"], StockReceipt(batch_code="B"), 10).batch_id
    assert get_batch(conn, tenant_id, batch_id)["qty_on_hand"] == 10

    adjust_stock(conn, tenant_id, product["id"], batch_id, -3, "perte")
    assert get_batch(conn, tenant_id, batch_id)["qty_on_hand"] == 7

    with pytest.raises(NegativeStockError):
        adjust_stock(conn, tenant_id, product["id"], batch_id, -10)

    assert get_batch(conn, tenant_id, batch_id)["qty_on_hand"] == 7
    assert [m["qty"] for m in _movements(conn, batch_id)] == [10, -3]


# ============== Invariants ==============


def test_quantity_matches_movement_sum_after_mixed_sequence(conn, tenant_id, product):
    batch_id = receive_stock(conn, tenant_id, product["id"], StockReceipt(batch_code="L"), 5).batch_id
    for delta in [3, -2, -6, 4, -20, 1]:
        try:
            adjust_stock(conn, tenant_id, product["id"], batch_id, delta)
        except NegativeStockError:
            pass
        assert get_batch(conn, tenant_id, batch_id)["qty_on_hand"] >= 0
    receive_stock(conn, tenant_id, product["id"], StockReceipt(batch_code="L"), 2)

    rec = reconcile_batch(conn, tenant_id, batch_id)
    assert rec.consistent
    assert rec.qty_on_hand == 5 + 3 - 2 - 6 + 4 + 1 + 2


def test_reconcile_detects_drift(conn, tenant_id, product):
    batch_id = receive_stock(conn, tenant_id, product["id"], None, 5).batch_id
    conn.execute("UPDATE product_batches SET qty_on_hand = 9 WHERE id=?", (batch_id,))
    conn.commit()

    rec = reconcile_batch(conn, tenant_id, batch_id)
    assert not rec.consistent
    assert (rec.qty_on_hand, rec.movement_total) == (9, 5)


def test_concurrent_receipts_do_not_lose_updates(tmp_path: Path, tenant_id):
    db_path = tmp_path / "ledger.db"
    setup = _connect(db_path)
    ensure_schema(setup)
    product_id = create_product(setup, tenant_id, {"sku": "SH-9", "name": "Shampoing", "category": "shampoings"})["id"]
    batch_id = receive_stock(setup, tenant_id, product_id, StockReceipt(batch_code="SHARED"), 1).batch_id

    errors = []

    def worker():
        c = _connect(db_path)
        try:
            for _ in range(25):
                receive_stock(c, tenant_id, product_id, StockReceipt(batch_id=batch_id), 1)
        except Exception as e:  # pragma: no cover - surfaced by the assertion below
            errors.append(e)
        finally:
            c.close()

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    rec = reconcile_batch(setup, tenant_id, batch_id)
    assert rec.qty_on_hand == 101
    assert rec.consistent
    setup.close()


def test_concurrent_adjustments_never_go_negative(tmp_path: Path, tenant_id):
    db_path = tmp_path / "ledger.db"
    setup = _connect(db_path)
    ensure_schema(setup)
    product_id = create_product(setup, tenant_id, {"sku": "SH-8", "name": "Shampoing", "category": "shampoings"})["id"]
    batch_id = receive_stock(setup, tenant_id, product_id, StockReceipt(batch_code="SHARED"), 30).batch_id

    lock = threading.Lock()
    applied = []
    refused = []
    errors = []

    def worker():
        c = _connect(db_path)
        try:
            for _ in range(10):
                try:
                    adjust_stock(c, tenant_id, product_id, batch_id, -1, "vente")
                except NegativeStockError:
                    with lock:
                        refused.append(1)
                else:
                    with lock:
                        applied.append(1)
        except Exception as e:  # pragma: no cover - surfaced by the assertion below
            errors.append(e)
        finally:
            c.close()

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert (len(applied), len(refused)) == (30, 10)
    rec = reconcile_batch(setup, tenant_id, batch_id)
    assert rec.qty_on_hand == 0
    assert rec.consistent
    setup.close()


# ============== Reads & events ==============


def test_list_movements_filters_and_orders(conn, tenant_id, product):
    a = receive_stock(conn, tenant_id, product["id"], StockReceipt(batch_code="A"), 1).batch_id
    b = receive_stock(conn, tenant_id, product["id"], StockReceipt(batch_code="B"), 2).batch_id
    adjust_stock(conn, tenant_id, product["id"], a, 1)

    only_a = list_movements(conn, tenant_id, batch_id=a)
    assert [m["qty"] for m in only_a] == [1, 1]
    assert all(m["batch_code"] == "A" for m in only_a)

    everything = list_movements(conn, tenant_id, product_id=product["id"])
    assert len(everything) == 3
    assert everything[0]["type"] == "ADJUST"
    assert list_movements(conn, "salon-b") == []
    assert b


def test_ledger_publishes_batch_and_movement_events(conn, tenant_id, product):
    seen = []
    feed.subscribe("product_batches", tenant_id, lambda e: seen.append(("batch", e.event_type)))
    feed.subscribe("stock_movements", tenant_id, lambda e: seen.append(("move", e.row["type"])))

    batch_id = receive_stock(conn, tenant_id, product["id"], StockReceipt(batch_code="E"), 2).batch_id
    adjust_stock(conn, tenant_id, product["id"], batch_id, -1)
    with pytest.raises(NegativeStockError):
        adjust_stock(conn, tenant_id, product["id"], batch_id, -5)

    assert seen == [("batch", "INSERT"), ("move", "IN"), ("batch", "UPDATE"), ("move", "ADJUST")]

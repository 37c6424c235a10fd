import json
from decimal import Decimal

import pytest
from fastapi import HTTPException

from posrd.app.routers import purchase_orders as po_module
from posrd.app.routers import sales as sales_module
from posrd.app.routers.purchase_orders import PurchaseOrderUpdate
from posrd.app.routers.sales import SaleCancelIn, SaleIn

CASHIER = {"user_id": "u1", "role": "CASHIER"}
ADMIN = {"user_id": "u0", "role": "ADMIN"}


class _ScriptedCursor:
    """fetchone()/fetchall() pop from their own queues in call order."""

    def __init__(self, one=(), many=()):
        self._one = list(one)
        self._many = list(many)
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((sql, params))

    def fetchone(self):
        return self._one.pop(0)

    def fetchall(self):
        return self._many.pop(0)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


class _DummyConn:
    def __init__(self, cursor):
        self._cursor = cursor

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def transaction(self):
        return self

    def cursor(self):
        return self._cursor


def _statements(cur, fragment):
    return [params for sql, params in cur.executed if fragment in sql]


def _audit_actions(cur):
    return [p[1] for p in _statements(cur, "INSERT INTO audit_logs")]


def _no_db():
    raise AssertionError("database should not be touched")


PRODUCTS = [
    {"id": "p1", "name": "Coca Cola 2L", "price": Decimal("89.00"), "stock": 10, "taxable": True, "is_active": True},
    {"id": "p2", "name": "Arroz Blanquita 5lb", "price": Decimal("165.00"), "stock": 5, "taxable": False, "is_active": True},
]
B02_SEQUENCE = {"id": "q1", "type": "B02", "current_number": 5, "max_number": 50_000_000, "expiry_date": None}


def test_b01_without_customer_is_rejected_before_db(monkeypatch):
    monkeypatch.setattr(sales_module, "get_conn", _no_db)
    data = SaleIn(items=[{"product_id": "p1", "quantity": 1}], payment_method="cash", ncf_type="B01")
    with pytest.raises(HTTPException) as exc:
        sales_module.create_sale(data, user=CASHIER)
    assert exc.value.status_code == 400


def test_b01_customer_without_rnc_is_rejected(monkeypatch):
    cur = _ScriptedCursor(one=[{"id": "c1", "name": "Ana Rodríguez", "rnc": None, "is_active": True}])
    monkeypatch.setattr(sales_module, "get_conn", lambda: _DummyConn(cur))
    data = SaleIn(items=[{"product_id": "p1", "quantity": 1}], payment_method="CARD", ncf_type="B01", customer_id="c1")
    with pytest.raises(HTTPException) as exc:
        sales_module.create_sale(data, user=CASHIER)
    assert exc.value.status_code == 400
    assert "RNC" in exc.value.detail


def test_insufficient_stock_stops_before_ncf(monkeypatch):
    low = [{**PRODUCTS[1], "stock": 1}]
    cur = _ScriptedCursor(many=[low])
    monkeypatch.setattr(sales_module, "get_conn", lambda: _DummyConn(cur))
    data = SaleIn(items=[{"product_id": "p2", "quantity": 2}], payment_method="CASH")
    with pytest.raises(HTTPException) as exc:
        sales_module.create_sale(data, user=CASHIER)
    assert exc.value.status_code == 400
    assert exc.value.detail.startswith("Stock insuficiente para Arroz Blanquita 5lb")
    assert not _statements(cur, "ncf_sequences")
    assert not _statements(cur, "UPDATE products")


def test_missing_ncf_sequence_is_409(monkeypatch):
    cur = _ScriptedCursor(one=[None], many=[PRODUCTS])
    monkeypatch.setattr(sales_module, "get_conn", lambda: _DummyConn(cur))
    data = SaleIn(items=[{"product_id": "p1", "quantity": 1}], payment_method="CASH")
    with pytest.raises(HTTPException) as exc:
        sales_module.create_sale(data, user=CASHIER)
    assert exc.value.status_code == 409


def test_create_sale_allocates_ncf_and_moves_stock(monkeypatch):
    cur = _ScriptedCursor(
        one=[B02_SEQUENCE, {"doc_no": "V-000042"}, {"id": "s1"}, {"id": "s1", "sale_number": "V-000042"}],
        many=[PRODUCTS, []],
    )
    monkeypatch.setattr(sales_module, "get_conn", lambda: _DummyConn(cur))
    data = SaleIn(
        items=[
            {"product_id": "p1", "quantity": 2},
            {"product_id": "p1", "quantity": 1, "unit_price": "80.00"},
            {"product_id": "p2", "quantity": 1},
        ],
        payment_method="cash",
    )

    out = sales_module.create_sale(data, user=CASHIER)

    assert out["sale"]["sale_number"] == "V-000042"
    assert _statements(cur, "UPDATE ncf_sequences") == [(6, "q1")]
    (sale_params,) = _statements(cur, "INSERT INTO sales")
    assert sale_params[0] == "V-000042"
    assert sale_params[1] == "B0200000006"
    # 178 + 80 taxable, 165 exempt.
    assert sale_params[4:7] == (Decimal("423.00"), Decimal("46.44"), Decimal("469.44"))
    assert sale_params[7] == "CASH"
    assert len(_statements(cur, "INSERT INTO sale_items")) == 3
    assert _statements(cur, "UPDATE products SET stock = stock - %s") == [(3, "p1"), (1, "p2")]
    assert _audit_actions(cur) == ["SALE_CREATE"]
    audit = _statements(cur, "INSERT INTO audit_logs")[0]
    assert json.loads(audit[5])["ncf"] == "B0200000006"


def test_cancel_restores_stock(monkeypatch):
    cur = _ScriptedCursor(
        one=[{"id": "s1", "sale_number": "V-000042", "status": "COMPLETED"}, {"id": "s1", "status": "CANCELLED"}],
        many=[[]],
    )
    monkeypatch.setattr(sales_module, "get_conn", lambda: _DummyConn(cur))

    out = sales_module.cancel_sale("s1", SaleCancelIn(reason=" Cliente devolvió "), user=ADMIN)

    assert out["sale"]["status"] == "CANCELLED"
    assert _statements(cur, "SET stock = p.stock + x.qty") == [("s1",)]
    assert _statements(cur, "SET status = 'CANCELLED'") == [("Cliente devolvió", "Cliente devolvió", "s1")]
    assert _audit_actions(cur) == ["SALE_CANCEL"]


def test_second_cancel_is_409(monkeypatch):
    cur = _ScriptedCursor(one=[{"id": "s1", "sale_number": "V-000042", "status": "CANCELLED"}])
    monkeypatch.setattr(sales_module, "get_conn", lambda: _DummyConn(cur))
    with pytest.raises(HTTPException) as exc:
        sales_module.cancel_sale("s1", SaleCancelIn(), user=ADMIN)
    assert exc.value.status_code == 409
    assert not _statements(cur, "UPDATE products")


def test_receive_purchase_order_updates_stock_and_cost(monkeypatch):
    items = [{"id": "i1", "product_id": "p1", "quantity_ordered": 12, "unit_cost": Decimal("65.00")}]
    cur = _ScriptedCursor(
        one=[{"id": "po1", "po_number": "OC-000001", "status": "ORDERED"}, {"id": "po1", "status": "RECEIVED"}],
        many=[items, []],
    )
    monkeypatch.setattr(po_module, "get_conn", lambda: _DummyConn(cur))

    out = po_module.update_purchase_order("po1", PurchaseOrderUpdate(action="receive"), user=ADMIN)

    assert out["purchase_order"]["status"] == "RECEIVED"
    assert _statements(cur, "SET status = 'RECEIVED'") == [("u0", "po1")]
    assert _statements(cur, "SET stock = stock + %s, cost = %s") == [(12, Decimal("65.00"), "p1")]
    assert _statements(cur, "SET quantity_received") == [(12, "i1")]
    assert _audit_actions(cur) == ["PURCHASE_ORDER_RECEIVE"]


def test_receive_twice_is_409(monkeypatch):
    cur = _ScriptedCursor(one=[{"id": "po1", "po_number": "OC-000001", "status": "RECEIVED"}])
    monkeypatch.setattr(po_module, "get_conn", lambda: _DummyConn(cur))
    with pytest.raises(HTTPException) as exc:
        po_module.update_purchase_order("po1", PurchaseOrderUpdate(action="receive"), user=ADMIN)
    assert exc.value.status_code == 409
    assert not _statements(cur, "UPDATE products")


def test_received_purchase_order_cannot_be_edited(monkeypatch):
    cur = _ScriptedCursor(one=[{"id": "po1", "po_number": "OC-000001", "status": "RECEIVED"}])
    monkeypatch.setattr(po_module, "get_conn", lambda: _DummyConn(cur))
    with pytest.raises(HTTPException) as exc:
        po_module.update_purchase_order("po1", PurchaseOrderUpdate(notes="tarde"), user=ADMIN)
    assert exc.value.status_code == 409


def test_delete_received_purchase_order_is_400(monkeypatch):
    cur = _ScriptedCursor(one=[{"id": "po1", "po_number": "OC-000001", "status": "RECEIVED"}])
    monkeypatch.setattr(po_module, "get_conn", lambda: _DummyConn(cur))
    with pytest.raises(HTTPException) as exc:
        po_module.delete_purchase_order("po1", user=ADMIN)
    assert exc.value.status_code == 400
    assert not _statements(cur, "DELETE FROM purchase_orders")


def test_delete_pending_purchase_order(monkeypatch):
    cur = _ScriptedCursor(one=[{"id": "po1", "po_number": "OC-000001", "status": "PENDING"}])
    monkeypatch.setattr(po_module, "get_conn", lambda: _DummyConn(cur))
    assert po_module.delete_purchase_order("po1", user=ADMIN) == {"ok": True}
    assert _statements(cur, "DELETE FROM purchase_orders") == [("po1",)]
    assert _audit_actions(cur) == ["PURCHASE_ORDER_DELETE"]

from decimal import Decimal

import pytest
from fastapi import HTTPException

from posrd.app.routers import categories as categories_module
from posrd.app.routers import customers as customers_module
from posrd.app.routers import products as products_module
from posrd.app.routers.categories import CategoryIn
from posrd.app.routers.customers import CustomerIn, CustomerUpdate
from posrd.app.routers.products import ProductIn

ADMIN = {"user_id": "u0", "role": "ADMIN"}
CASHIER = {"user_id": "u1", "role": "CASHIER"}


class _ScriptedCursor:
    def __init__(self, one=()):
        self._one = list(one)
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((sql, params))

    def fetchone(self):
        return self._one.pop(0)

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


def _patch_db(monkeypatch, module, cursor):
    monkeypatch.setattr(module, "get_conn", lambda: _DummyConn(cursor))


def _no_db():
    raise AssertionError("database should not be touched")


def _ran(cur, fragment):
    return [params for sql, params in cur.executed if fragment in sql]


def test_category_in_use_cannot_be_deleted(monkeypatch):
    cur = _ScriptedCursor(one=[{"id": "c1", "name": "Bebidas"}, {"n": 3}])
    _patch_db(monkeypatch, categories_module, cur)
    with pytest.raises(HTTPException) as exc:
        categories_module.delete_category("c1", user=ADMIN)
    assert exc.value.status_code == 400
    assert not _ran(cur, "DELETE FROM categories")


def test_empty_category_is_deleted(monkeypatch):
    cur = _ScriptedCursor(one=[{"id": "c1", "name": "Bebidas"}, {"n": 0}])
    _patch_db(monkeypatch, categories_module, cur)
    assert categories_module.delete_category("c1", user=ADMIN) == {"ok": True}
    assert _ran(cur, "DELETE FROM categories") == [("c1",)]
    assert [p[1] for p in _ran(cur, "INSERT INTO audit_logs")] == ["DELETE"]


def test_category_name_required(monkeypatch):
    monkeypatch.setattr(categories_module, "get_conn", _no_db)
    with pytest.raises(HTTPException) as exc:
        categories_module.create_category(CategoryIn(name="   "), user=ADMIN)
    assert exc.value.status_code == 400


def test_duplicate_product_code(monkeypatch):
    cur = _ScriptedCursor(one=[{"?column?": 1}])
    _patch_db(monkeypatch, products_module, cur)
    data = ProductIn(code=" 7401005988967 ", name="Coca Cola 2L", price="89.00")
    with pytest.raises(HTTPException) as exc:
        products_module.create_product(data, user=ADMIN)
    assert exc.value.status_code == 400
    assert exc.value.detail == "Ya existe un producto con este código"
    assert cur.executed[0][1] == ("7401005988967",)
    assert not _ran(cur, "INSERT INTO products")


def _product_row():
    return {"id": "p1", "code": "7401005988967", "name": "Coca Cola 2L",
            "price": Decimal("89.00"), "cost": Decimal("65.00"), "stock": 120}


def test_product_cost_hidden_from_cashier(monkeypatch):
    _patch_db(monkeypatch, products_module, _ScriptedCursor(one=[_product_row()]))
    out = products_module.get_product("p1", user=CASHIER)
    assert "cost" not in out["product"]
    assert out["product"]["price"] == Decimal("89.00")


def test_product_cost_visible_to_admin(monkeypatch):
    _patch_db(monkeypatch, products_module, _ScriptedCursor(one=[_product_row()]))
    out = products_module.get_product("p1", user=ADMIN)
    assert out["product"]["cost"] == Decimal("65.00")


def test_invalid_customer_rnc_is_rejected_before_db(monkeypatch):
    monkeypatch.setattr(customers_module, "get_conn", _no_db)
    data = CustomerIn(name="Tienda X", document_type="rnc", document_number="12345")
    with pytest.raises(HTTPException) as exc:
        customers_module.create_customer(data, user=CASHIER)
    assert exc.value.status_code == 400
    assert exc.value.detail == "RNC inválido"


def test_duplicate_customer_document(monkeypatch):
    cur = _ScriptedCursor(one=[{"?column?": 1}])
    _patch_db(monkeypatch, customers_module, cur)
    data = CustomerIn(name="Supermercado La Familia", document_type="RNC", document_number="1-30-12345-6")
    with pytest.raises(HTTPException) as exc:
        customers_module.create_customer(data, user=CASHIER)
    assert exc.value.status_code == 400
    assert cur.executed[0][1] == ("130123456",)


def test_customer_cedula_is_normalized(monkeypatch):
    row = {"id": "c9", "name": "María González", "document_number": "00112345678"}
    cur = _ScriptedCursor(one=[None, row])
    _patch_db(monkeypatch, customers_module, cur)
    data = CustomerIn(name=" María González ", document_type="cedula", document_number="001-1234567-8")

    out = customers_module.create_customer(data, user=CASHIER)

    assert out["customer"]["id"] == "c9"
    (params,) = _ran(cur, "INSERT INTO customers")
    assert params[0] == "María González"
    assert params[4:8] == ("CEDULA", "00112345678", None, "00112345678")


def test_customer_update_checks_document_against_others(monkeypatch):
    before = {"id": "c1", "document_type": "CEDULA", "document_number": "00112345678"}
    cur = _ScriptedCursor(one=[before, {"?column?": 1}])
    _patch_db(monkeypatch, customers_module, cur)
    with pytest.raises(HTTPException) as exc:
        customers_module.update_customer("c1", CustomerUpdate(document_number="40212345678"), user=CASHIER)
    assert exc.value.status_code == 400
    assert _ran(cur, "AND id <> %s") == [("40212345678", "c1")]

import pytest
from fastapi import HTTPException

from posrd.app.routers import delivery as delivery_module
from posrd.app.routers.delivery import AssignIn, StatusIn

USER = {"user_id": "u1", "role": "CASHIER"}


class _ScriptedCursor:
    """Returns queued rows for each fetchone() in call order."""

    def __init__(self, rows):
        self._rows = list(rows)
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((sql, params))

    def fetchone(self):
        return self._rows.pop(0)

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


def _patch_db(monkeypatch, cursor):
    monkeypatch.setattr(delivery_module, "get_conn", lambda: _DummyConn(cursor))


def _order(status, driver_id="d1"):
    return {"id": "o1", "status": status, "driver_id": driver_id}


def test_unknown_status_is_rejected_before_db(monkeypatch):
    def _no_db():
        raise AssertionError("database should not be touched")

    monkeypatch.setattr(delivery_module, "get_conn", _no_db)
    with pytest.raises(HTTPException) as exc:
        delivery_module.update_status(StatusIn(order_id="o1", status="BOGUS"), user=USER)
    assert exc.value.status_code == 400
    assert exc.value.detail == "Estado inválido"


def test_delivered_sets_timestamp_and_frees_driver(monkeypatch):
    cur = _ScriptedCursor([{"id": "o1"}, _order("IN_TRANSIT"), {"n": 0}, _order("DELIVERED")])
    _patch_db(monkeypatch, cur)

    out = delivery_module.update_status(StatusIn(order_id="o1", status="delivered"), user=USER)

    assert out["order"]["status"] == "DELIVERED"
    update_sql, params = cur.executed[2]
    assert "actual_delivery" in update_sql
    assert params == ("DELIVERED", "DELIVERED", "DELIVERED", "DELIVERED", "o1")
    assert any("SET status = 'AVAILABLE'" in sql for sql, _ in cur.executed)
    assert any("INSERT INTO audit_logs" in sql and p[1] == "DELIVERY_STATUS" for sql, p in cur.executed)


def test_driver_with_other_active_orders_stays_busy(monkeypatch):
    cur = _ScriptedCursor([{"id": "o1"}, _order("IN_TRANSIT"), {"n": 1}, _order("CANCELLED")])
    _patch_db(monkeypatch, cur)

    delivery_module.update_status(StatusIn(order_id="o1", status="CANCELLED"), user=USER)

    assert not any("SET status = 'AVAILABLE'" in sql for sql, _ in cur.executed)


def test_back_to_pending_unassigns_and_frees_driver(monkeypatch):
    cur = _ScriptedCursor([{"id": "o1"}, _order("ASSIGNED"), {"n": 0}, _order("PENDING", driver_id=None)])
    _patch_db(monkeypatch, cur)

    out = delivery_module.update_status(StatusIn(order_id="o1", status="PENDING"), user=USER)

    assert out["order"]["driver_id"] is None
    update_sql, params = cur.executed[2]
    assert "driver_id = CASE WHEN" in update_sql
    assert "assigned_at = CASE WHEN" in update_sql
    assert params == ("PENDING", "PENDING", "PENDING", "PENDING", "o1")
    released = [p for sql, p in cur.executed if "SET status = 'AVAILABLE'" in sql]
    assert released == [("d1",)]


def test_closed_order_cannot_change(monkeypatch):
    _patch_db(monkeypatch, _ScriptedCursor([{"id": "o1"}, _order("DELIVERED")]))
    with pytest.raises(HTTPException) as exc:
        delivery_module.update_status(StatusIn(order_id="o1", status="IN_TRANSIT"), user=USER)
    assert exc.value.status_code == 409


def test_in_transit_requires_driver(monkeypatch):
    _patch_db(monkeypatch, _ScriptedCursor([{"id": "o1"}, _order("PENDING", driver_id=None)]))
    with pytest.raises(HTTPException) as exc:
        delivery_module.update_status(StatusIn(order_id="o1", status="IN_TRANSIT"), user=USER)
    assert exc.value.status_code == 400


def test_missing_order_is_404(monkeypatch):
    _patch_db(monkeypatch, _ScriptedCursor([None]))
    with pytest.raises(HTTPException) as exc:
        delivery_module.update_status(StatusIn(order_id="nope", status="DELIVERED"), user=USER)
    assert exc.value.status_code == 404


def test_assign_rejects_offline_driver(monkeypatch):
    cur = _ScriptedCursor([
        {"id": "o1"},
        _order("PENDING", driver_id=None),
        {"id": "d2", "name": "Pedro", "status": "OFFLINE", "is_active": True},
    ])
    _patch_db(monkeypatch, cur)
    with pytest.raises(HTTPException) as exc:
        delivery_module.assign_driver(AssignIn(order_id="o1", driver_id="d2"), user=USER)
    assert exc.value.status_code == 409


def test_assign_only_open_orders(monkeypatch):
    _patch_db(monkeypatch, _ScriptedCursor([{"id": "o1"}, _order("IN_TRANSIT")]))
    with pytest.raises(HTTPException) as exc:
        delivery_module.assign_driver(AssignIn(order_id="o1", driver_id="d2"), user=USER)
    assert exc.value.status_code == 409


def test_reassign_releases_previous_driver(monkeypatch):
    cur = _ScriptedCursor([
        {"id": "o1"},
        _order("ASSIGNED", driver_id="d1"),
        {"id": "d2", "name": "Pedro", "status": "AVAILABLE", "is_active": True},
        {"n": 0},
        _order("ASSIGNED", driver_id="d2"),
    ])
    _patch_db(monkeypatch, cur)

    out = delivery_module.assign_driver(AssignIn(order_id="o1", driver_id="d2"), user=USER)

    assert out["order"]["driver_id"] == "d2"
    released = [p for sql, p in cur.executed if "SET status = 'AVAILABLE'" in sql]
    assert released == [("d1",)]
    assert any("SET status = 'BUSY'" in sql for sql, _ in cur.executed)

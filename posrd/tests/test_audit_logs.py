import pytest
from fastapi import HTTPException

from posrd.app.routers import audit as audit_module


class _DummyCursor:
    def __init__(self):
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((sql, params))

    def fetchall(self):
        return [{"id": "a1", "action": "SALE_CREATE"}]

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

    def cursor(self):
        return self._cursor


def _patch_db(monkeypatch):
    cur = _DummyCursor()
    monkeypatch.setattr(audit_module, "get_conn", lambda: _DummyConn(cur))
    return cur


@pytest.mark.parametrize("limit,offset", [(0, 0), (501, 0), (10, -1)])
def test_paging_bounds(monkeypatch, limit, offset):
    _patch_db(monkeypatch)
    with pytest.raises(HTTPException) as exc:
        audit_module.list_audit_logs(limit=limit, offset=offset)
    assert exc.value.status_code == 400


def test_user_id_must_be_uuid(monkeypatch):
    _patch_db(monkeypatch)
    with pytest.raises(HTTPException) as exc:
        audit_module.list_audit_logs(user_id="not-a-uuid", limit=10, offset=0)
    assert exc.value.status_code == 400


def test_filters_are_parameterized(monkeypatch):
    cur = _patch_db(monkeypatch)
    out = audit_module.list_audit_logs(
        entity_type="Sale",
        entity_id="scheduled",
        action_prefix="SALE_",
        user_id="8A5C7E1B-3C4D-4E5F-8A9B-0C1D2E3F4A5B",
        limit=25,
        offset=50,
    )
    assert out == {"audit_logs": [{"id": "a1", "action": "SALE_CREATE"}]}
    sql, params = cur.executed[0]
    assert "l.entity_type = %s" in sql
    assert "l.action LIKE %s" in sql
    assert params == ["Sale", "scheduled", "8a5c7e1b-3c4d-4e5f-8a9b-0c1d2e3f4a5b", r"SALE\_%", 25, 50]

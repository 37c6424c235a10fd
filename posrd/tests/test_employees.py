from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi import HTTPException

from posrd.app.routers import employees as employees_module
from posrd.app.routers.employees import TimeClockIn, username_base

USER = {"user_id": "u1", "role": "MANAGER", "ip_address": "10.0.0.5"}

EMPLOYEE = {"id": "e1", "user_id": "u9", "first_name": "Ana", "last_name": "Rodríguez", "employee_code": "EMP-001"}


class _ScriptedCursor:
    def __init__(self, rows, fetchall_rows=None):
        self._rows = list(rows)
        self._all = fetchall_rows or []
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((sql, params))

    def fetchone(self):
        return self._rows.pop(0)

    def fetchall(self):
        return self._all

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
    monkeypatch.setattr(employees_module, "get_conn", lambda: _DummyConn(cursor))


def _open(minutes_ago=120, break_start=None, break_end=None):
    now = datetime.now(timezone.utc)
    return {
        "id": "t1",
        "clock_in": now - timedelta(minutes=minutes_ago),
        "break_start": break_start,
        "break_end": break_end,
        "status": "ACTIVE",
    }


def test_username_base():
    assert username_base("Ana María", "Rodríguez") == "anamaria.rodriguez"
    assert username_base("Juan", "Pérez Gómez") == "juan.perezgomez"
    assert username_base("!!", "??") == "empleado"


def test_clock_in_twice_is_rejected(monkeypatch):
    _patch_db(monkeypatch, _ScriptedCursor([EMPLOYEE, _open()]))
    with pytest.raises(HTTPException) as exc:
        employees_module.time_clock(TimeClockIn(action="CLOCK_IN", employee_id="e1"), user=USER)
    assert exc.value.status_code == 400
    assert exc.value.detail == "El empleado ya está registrado para hoy"


def test_clock_out_without_open_entry_is_404(monkeypatch):
    _patch_db(monkeypatch, _ScriptedCursor([EMPLOYEE, None]))
    with pytest.raises(HTTPException) as exc:
        employees_module.time_clock(TimeClockIn(action="CLOCK_OUT", employee_id="e1"), user=USER)
    assert exc.value.status_code == 404


def test_unknown_employee_is_404(monkeypatch):
    _patch_db(monkeypatch, _ScriptedCursor([None]))
    with pytest.raises(HTTPException) as exc:
        employees_module.time_clock(TimeClockIn(action="CLOCK_IN", employee_id="nope"), user=USER)
    assert exc.value.status_code == 404


def test_break_requires_type(monkeypatch):
    _patch_db(monkeypatch, _ScriptedCursor([EMPLOYEE, _open()]))
    with pytest.raises(HTTPException) as exc:
        employees_module.time_clock(TimeClockIn(action="BREAK", employee_id="e1"), user=USER)
    assert exc.value.detail == "Tipo de descanso inválido"


def test_break_start_while_on_break(monkeypatch):
    entry = _open(break_start=datetime.now(timezone.utc) - timedelta(minutes=5))
    _patch_db(monkeypatch, _ScriptedCursor([EMPLOYEE, entry]))
    with pytest.raises(HTTPException) as exc:
        employees_module.time_clock(TimeClockIn(action="BREAK", employee_id="e1", break_type="START"), user=USER)
    assert exc.value.detail == "El empleado ya está en descanso"


def test_break_end_when_not_on_break(monkeypatch):
    _patch_db(monkeypatch, _ScriptedCursor([EMPLOYEE, _open()]))
    with pytest.raises(HTTPException) as exc:
        employees_module.time_clock(TimeClockIn(action="BREAK", employee_id="e1", break_type="END"), user=USER)
    assert exc.value.detail == "El empleado no está en descanso"


def test_clock_out_records_hours(monkeypatch):
    completed = {"id": "t1", "status": "COMPLETED"}
    cur = _ScriptedCursor([EMPLOYEE, _open(minutes_ago=9 * 60 + 1), completed])
    _patch_db(monkeypatch, cur)

    out = employees_module.time_clock(TimeClockIn(action="CLOCK_OUT", employee_id="e1", notes="fin"), user=USER)

    assert out["time_entry"] == completed
    assert out["message"] == "Ana Rodríguez salida registrada exitosamente"
    update_sql, params = next((s, p) for s, p in cur.executed if s.strip().startswith("UPDATE time_entries"))
    assert "status = 'COMPLETED'" in update_sql
    assert params[2] == Decimal("9.02")
    assert params[3] == Decimal("1.02")
    assert params[4] == "fin"


def test_performance_rejects_inverted_period():
    with pytest.raises(HTTPException) as exc:
        employees_module.commissions("e1", datetime(2024, 5, 31), datetime(2024, 5, 1))
    assert exc.value.status_code == 400

from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException

from posrd.app.ncf import allocate_ncf, sequence_status


class _DummyCursor:
    def __init__(self, row):
        self._row = row
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((sql, params))

    def fetchone(self):
        return self._row


def _seq(**overrides):
    row = {"id": "seq-1", "type": "B01", "current_number": 41, "max_number": 5000, "expiry_date": None}
    row.update(overrides)
    return row


def test_sequence_status_thresholds():
    assert sequence_status(0, 5000)["status"] == "active"
    assert sequence_status(4500, 5000)["status"] == "warning"
    assert sequence_status(4950, 5000)["status"] == "critical"
    s = sequence_status(5000, 5000)
    assert s["status"] == "exhausted"
    assert s["remaining"] == 0
    assert s["usage_percentage"] == 100


def test_sequence_status_expiry():
    now = datetime(2024, 6, 1, tzinfo=timezone.utc)
    assert sequence_status(1, 10, now - timedelta(days=1), now=now)["is_expired"] is True
    assert sequence_status(1, 10, now + timedelta(days=1), now=now)["is_expired"] is False
    assert sequence_status(1, 10, None, now=now)["is_expired"] is False


def test_allocate_ncf_takes_next_number_under_lock():
    cur = _DummyCursor(_seq())
    out = allocate_ncf(cur, "B01")
    assert out == {"ncf": "B0100000042", "sequence_id": "seq-1", "number": 42}
    select_sql, _ = cur.executed[0]
    assert "FOR UPDATE" in select_sql
    update_sql, params = cur.executed[1]
    assert "UPDATE ncf_sequences" in update_sql
    assert params == (42, "seq-1")


def test_allocate_ncf_without_sequence_is_409():
    with pytest.raises(HTTPException) as exc:
        allocate_ncf(_DummyCursor(None), "B02")
    assert exc.value.status_code == 409


def test_allocate_ncf_expired_sequence_is_409():
    expired = datetime.now(timezone.utc) - timedelta(days=1)
    cur = _DummyCursor(_seq(expiry_date=expired))
    with pytest.raises(HTTPException) as exc:
        allocate_ncf(cur, "B01")
    assert exc.value.status_code == 409
    assert len(cur.executed) == 1


def test_allocate_ncf_exhausted_sequence_is_409():
    with pytest.raises(HTTPException) as exc:
        allocate_ncf(_DummyCursor(_seq(current_number=5000)), "B01")
    assert exc.value.status_code == 409
    assert "agotada" in exc.value.detail

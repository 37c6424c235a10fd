from datetime import date, datetime, timezone
from decimal import Decimal

from posrd.app.roles import has_permission
from posrd.app.routers import finance as finance_module
from posrd.app.routers.finance import monthly_trend, next_filing_date, period_window, profit_summary


class _DummyCursor:
    def __init__(self, *, one=None, rows=None):
        self._one = one
        self._rows = rows or []
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((sql, params))

    def fetchone(self):
        return self._one

    def fetchall(self):
        return self._rows

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


def test_period_windows():
    today = date(2024, 5, 31)
    assert period_window("daily", today) == (today, today)
    assert period_window("weekly", today) == (date(2024, 5, 24), today)
    assert period_window("monthly", date(2024, 2, 10)) == (date(2024, 2, 1), date(2024, 2, 29))
    # Day clamps to the shorter month.
    assert period_window("quarterly", today) == (date(2024, 2, 29), today)
    assert period_window("yearly", date(2024, 2, 29)) == (date(2023, 2, 28), date(2024, 2, 29))


def test_next_filing_date_rolls_into_next_year():
    assert next_filing_date(date(2024, 3, 5)) == date(2024, 4, 20)
    assert next_filing_date(date(2024, 12, 28)) == date(2025, 1, 20)


def test_profit_is_net_of_itbis():
    out = profit_summary(Decimal("1180.00"), Decimal("180.00"), Decimal("600.00"))
    assert out["net_revenue"] == Decimal("1000.00")
    assert out["gross_profit"] == Decimal("400.00")
    assert out["gross_profit_margin"] == 40.0


def test_profit_without_sales():
    out = profit_summary(None, None, None)
    assert out["gross_profit"] == Decimal("0.00")
    assert out["gross_profit_margin"] == 0.0


def test_monthly_trend_fills_missing_months():
    rows = [{"month": date(2024, 3, 1), "revenue": Decimal("236.00"), "itbis": Decimal("36.00"), "cogs": Decimal("150.00")}]
    out = monthly_trend(rows, date(2024, 5, 15), months=4)
    assert [m["month"] for m in out] == ["2024-02", "2024-03", "2024-04", "2024-05"]
    assert out[1]["revenue"] == Decimal("200.00")
    assert out[1]["profit"] == Decimal("50.00")
    assert out[1]["profit_margin"] == 25.0
    assert out[0]["revenue"] == Decimal("0.00")


def test_dashboard_reads_completed_sales(monkeypatch):
    monkeypatch.setattr(finance_module, "local_today", lambda: date(2024, 5, 15))
    monkeypatch.setattr(finance_module.settings, "business_timezone", "America/Santo_Domingo")
    cur = _DummyCursor(
        one={"sales_count": 3, "revenue": Decimal("1180.00"), "itbis": Decimal("180.00"), "cogs": Decimal("700.00")},
        rows=[{"month": date(2024, 5, 1), "revenue": Decimal("1180.00"), "itbis": Decimal("180.00"), "cogs": Decimal("700.00")}],
    )
    monkeypatch.setattr(finance_module, "get_conn", lambda: _DummyConn(cur))

    out = finance_module.dashboard(period="monthly")

    assert out["sales_count"] == 3
    assert out["profit_loss"]["gross_profit"] == Decimal("300.00")
    assert out["tax_summary"]["itbis_collected"] == Decimal("180.00")
    assert out["tax_summary"]["next_filing_date"] == date(2024, 6, 20)
    assert len(out["monthly_comparison"]) == 6
    assert out["monthly_comparison"][-1]["month"] == "2024-05"

    totals_sql, totals_params = cur.executed[0]
    assert "s.status = 'COMPLETED'" in totals_sql
    assert totals_params[0] == finance_module.COST_FALLBACK_RATIO
    trend_sql, trend_params = cur.executed[1]
    assert "AT TIME ZONE %s" in trend_sql
    assert trend_params[0] == finance_module.settings.business_timezone
    assert out["date_range"]["start"].astimezone(timezone.utc) == datetime(2024, 5, 1, 4, 0, tzinfo=timezone.utc)


def test_cashier_cannot_view_profit_margins():
    assert has_permission("ADMIN", "financial:view_profit_margins")
    assert has_permission("MANAGER", "financial:view_profit_margins")
    assert not has_permission("CASHIER", "financial:view_profit_margins")

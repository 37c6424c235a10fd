from datetime import datetime, timedelta, timezone
from decimal import Decimal

from posrd.app.payroll import (
    base_salary_portion,
    commission,
    compensation,
    overtime_pay,
    performance_score,
    period_days,
    worked_hours,
)

T0 = datetime(2024, 5, 6, 8, 0, tzinfo=timezone.utc)


def test_worked_hours_with_break_and_overtime():
    out = worked_hours(T0, T0 + timedelta(hours=10), T0 + timedelta(hours=4), T0 + timedelta(hours=4, minutes=30))
    assert out["break_minutes"] == 30
    assert out["total_hours"] == Decimal("9.50")
    assert out["overtime_hours"] == Decimal("1.50")


def test_worked_hours_open_break_ends_at_clock_out():
    out = worked_hours(T0, T0 + timedelta(hours=6), T0 + timedelta(hours=5))
    assert out["break_minutes"] == 60
    assert out["total_hours"] == Decimal("5.00")
    assert out["overtime_hours"] == Decimal("0.00")


def test_worked_hours_counts_whole_minutes():
    out = worked_hours(T0, T0 + timedelta(minutes=20, seconds=59))
    assert out["total_hours"] == Decimal("0.33")


def test_period_days_rounds_up():
    assert period_days(T0, T0 + timedelta(days=14)) == 14
    assert period_days(T0, T0 + timedelta(days=14, hours=1)) == 15
    assert period_days(T0, T0 - timedelta(days=1)) == 0


def test_base_salary_by_type():
    end = T0 + timedelta(days=15)
    assert base_salary_portion({"salary_type": "FIXED", "base_salary": "30000"}, T0, end, Decimal("0")) == Decimal("15000.00")
    assert base_salary_portion({"salary_type": "HOURLY", "hourly_rate": "150"}, T0, end, Decimal("40.5")) == Decimal("6075.00")
    assert base_salary_portion({"salary_type": "COMMISSION"}, T0, end, Decimal("40")) == Decimal("0.00")


def test_commission_overtime_and_score():
    assert commission(Decimal("1234.56"), Decimal("2.5")) == Decimal("30.86")
    assert overtime_pay({"hourly_rate": "200"}, Decimal("2")) == Decimal("600.00")
    assert performance_score(Decimal("5000"), Decimal("10000")) == Decimal("50.00")
    assert performance_score(Decimal("25000"), Decimal("10000")) == Decimal("100.00")
    assert performance_score(Decimal("5000"), None) == Decimal("0.00")


def test_compensation_totals():
    profile = {"salary_type": "HYBRID", "base_salary": "15000", "hourly_rate": "100", "commission_rate": "5"}
    sales = [
        {"id": "s1", "sale_number": "V-1", "total": Decimal("1000.00"), "created_at": T0},
        {"id": "s2", "sale_number": "V-2", "total": Decimal("500.00"), "created_at": T0},
    ]
    out = compensation(profile, sales, T0, T0 + timedelta(days=10), Decimal("80"), Decimal("2"))
    assert out["metrics"]["total_sales"] == 2
    assert out["metrics"]["total_sales_amount"] == Decimal("1500.00")
    assert out["metrics"]["average_sale_amount"] == Decimal("750.00")
    assert out["compensation"] == {
        "base_salary": Decimal("5000.00"),
        "commission": Decimal("75.00"),
        "overtime_pay": Decimal("300.00"),
        "total_compensation": Decimal("5375.00"),
    }
    assert out["breakdown"][0]["commission_earned"] == Decimal("50.00")

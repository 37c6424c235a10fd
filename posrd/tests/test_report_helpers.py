from datetime import datetime, timezone
from decimal import Decimal

from posrd.app.routers.analytics import comparison_window, customer_segment, peak_breakdown, trend_summary
from posrd.app.routers.reports import stock_status


def test_stock_status_levels():
    assert stock_status(0, 5, 20)["status"] == "out_of_stock"
    assert stock_status(5, 5, 0) == {"stock_days": 999, "status": "low_stock"}
    assert stock_status(6, 5, 86) == {"stock_days": 2, "status": "reorder_soon"}
    assert stock_status(43, 5, 43) == {"stock_days": 30, "status": "in_stock"}


def test_comparison_window_previous_period():
    start = datetime(2024, 3, 1, tzinfo=timezone.utc)
    end = datetime(2024, 3, 31, tzinfo=timezone.utc)
    assert comparison_window(start, end, "previous") == (datetime(2024, 1, 31, tzinfo=timezone.utc), start)


def test_comparison_window_year_over_year_handles_leap_day():
    start = datetime(2024, 2, 29, tzinfo=timezone.utc)
    end = datetime(2024, 3, 1, tzinfo=timezone.utc)
    c_start, c_end = comparison_window(start, end, "year-over-year")
    assert c_start.year == 2023
    assert c_end.year == 2023


def test_trend_summary():
    rows = [
        {"period": "2024-01", "total_sales": Decimal("100.00"), "transaction_count": 2},
        {"period": "2024-02", "total_sales": Decimal("50.00"), "transaction_count": 1},
        {"period": "2024-03", "total_sales": Decimal("150.00"), "transaction_count": 3},
    ]
    s = trend_summary(rows)
    assert s["total_sales"] == Decimal("300.00")
    assert s["total_transactions"] == 6
    assert s["average_transaction_value"] == Decimal("50.00")
    assert s["growth_rate"] == 50.0
    assert s["best_period"]["period"] == "2024-03"
    assert s["worst_period"]["period"] == "2024-02"


def test_trend_summary_empty():
    s = trend_summary([])
    assert s["total_transactions"] == 0
    assert s["best_period"] is None


def test_peak_breakdown():
    rows = [
        {"hour": 9, "dow": 1, "transaction_count": 3, "total_sales": Decimal("300")},
        {"hour": 18, "dow": 5, "transaction_count": 7, "total_sales": Decimal("420")},
        {"hour": 18, "dow": 6, "transaction_count": 2, "total_sales": Decimal("80")},
    ]
    out = peak_breakdown(rows)
    assert len(out["hourly"]) == 24
    assert out["peak_hour"]["hour"] == 18
    assert out["peak_hour"]["transaction_count"] == 9
    assert out["peak_hour"]["time_range"] == "18:00 - 19:00"
    assert out["peak_day"]["day"] == "Viernes"


def test_customer_segment():
    assert customer_segment(1) == "NEW"
    assert customer_segment(2) == "REGULAR"
    assert customer_segment(5) == "FREQUENT"
    assert customer_segment(12) == "VIP"

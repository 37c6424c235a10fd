from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query

from ..config import settings
from ..db import get_conn
from ..deps import get_current_user, require_permission, user_can
from ..dominican import day_range, local_today, q_money

router = APIRouter(prefix="/analytics", tags=["analytics"])

_ANALYTICS = Depends(require_permission("sales:view_reports", "financial:view_reports"))

# date_trunc units; whitelisted because they are interpolated into SQL.
_TRUNC = {"daily": "day", "weekly": "week", "monthly": "month", "yearly": "year"}

DAY_NAMES = ["Domingo", "Lunes", "Martes", "Miércoles", "Jueves", "Viernes", "Sábado"]


def _window(start_date: Optional[date], end_date: Optional[date], default_days: int):
    end_d = end_date or local_today()
    start_d = start_date or (end_d - timedelta(days=default_days))
    return day_range(start_d, end_d)


def comparison_window(start: datetime, end: datetime, mode: str):
    """Previous period of equal length, or the same window one year earlier."""
    if mode == "year-over-year":
        try:
            return start.replace(year=start.year - 1), end.replace(year=end.year - 1)
        except ValueError:
            # Feb 29 -> Feb 28
            return (start - timedelta(days=365)), (end - timedelta(days=365))
    length = end - start
    return start - length, start


def trend_summary(rows: List[dict]) -> dict:
    if not rows:
        return {"total_sales": Decimal("0.00"), "total_transactions": 0, "average_transaction_value": Decimal("0.00"),
                "growth_rate": 0.0, "best_period": None, "worst_period": None}
    total = sum((Decimal(r["total_sales"]) for r in rows), Decimal("0"))
    count = sum(int(r["transaction_count"]) for r in rows)
    first, last = Decimal(rows[0]["total_sales"]), Decimal(rows[-1]["total_sales"])
    growth = float(round((last - first) / first * 100, 2)) if len(rows) > 1 and first else 0.0
    return {
        "total_sales": q_money(total),
        "total_transactions": count,
        "average_transaction_value": q_money(total / count) if count else Decimal("0.00"),
        "growth_rate": growth,
        "best_period": max(rows, key=lambda r: Decimal(r["total_sales"])),
        "worst_period": min(rows, key=lambda r: Decimal(r["total_sales"])),
    }


def peak_breakdown(rows: List[dict]) -> dict:
    """rows: [{hour, dow, transaction_count, total_sales}] grouped by hour and weekday."""
    hours = [{"hour": h, "transaction_count": 0, "total_sales": Decimal("0")} for h in range(24)]
    days = [{"day": DAY_NAMES[d], "day_number": d, "transaction_count": 0, "total_sales": Decimal("0")} for d in range(7)]
    for r in rows:
        h, d = int(r["hour"]), int(r["dow"])
        for bucket in (hours[h], days[d]):
            bucket["transaction_count"] += int(r["transaction_count"])
            bucket["total_sales"] += Decimal(r["total_sales"])
    peak_hour = max(hours, key=lambda b: b["transaction_count"])
    peak_day = max(days, key=lambda b: b["transaction_count"])
    return {
        "hourly": hours,
        "daily": days,
        "peak_hour": {**peak_hour, "time_range": f"{peak_hour['hour']}:00 - {peak_hour['hour'] + 1}:00"},
        "peak_day": peak_day,
    }


def _trend_rows(cur, unit: str, start: datetime, end: datetime) -> List[dict]:
    cur.execute(
        f"""
        SELECT date_trunc('{unit}', s.created_at AT TIME ZONE %s) AS period,
               COUNT(*) AS transaction_count,
               SUM(s.total) AS total_sales,
               SUM(s.subtotal) AS subtotal,
               SUM(s.itbis) AS total_tax,
               ROUND(AVG(s.total), 2) AS average_transaction,
               MIN(s.total) AS min_transaction,
               MAX(s.total) AS max_transaction,
               COUNT(DISTINCT s.customer_id) AS unique_customers,
               COUNT(*) FILTER (WHERE s.customer_id IS NULL) AS walk_in_sales
        FROM sales s
        WHERE s.status = 'COMPLETED' AND s.created_at >= %s AND s.created_at < %s
        GROUP BY 1
        ORDER BY 1
        """,
        (settings.business_timezone, start, end),
    )
    return cur.fetchall()


@router.get("/sales-trends", dependencies=[_ANALYTICS])
def sales_trends(
    period: Literal["daily", "weekly", "monthly", "yearly"] = "monthly",
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    comparison: Literal["none", "previous", "year-over-year"] = "none",
):
    start, end = _window(start_date, end_date, 30)
    unit = _TRUNC[period]
    with get_conn() as conn:
        with conn.cursor() as cur:
            rows = _trend_rows(cur, unit, start, end)
            comparison_rows = None
            if comparison != "none":
                c_start, c_end = comparison_window(start, end, comparison)
                comparison_rows = _trend_rows(cur, unit, c_start, c_end)
            cur.execute(
                """
                SELECT EXTRACT(hour FROM local_at)::int AS hour,
                       EXTRACT(dow FROM local_at)::int AS dow,
                       COUNT(*) AS transaction_count,
                       SUM(total) AS total_sales
                FROM (
                  SELECT created_at AT TIME ZONE %s AS local_at, total
                  FROM sales
                  WHERE status = 'COMPLETED' AND created_at >= %s AND created_at < %s
                ) t
                GROUP BY 1, 2
                """,
                (settings.business_timezone, start, end),
            )
            peaks = peak_breakdown(cur.fetchall())
    out = {
        "period": period,
        "date_range": {"start": start, "end": end},
        "sales_data": rows,
        "comparison_data": comparison_rows,
        "peak_hours": peaks,
        "summary": trend_summary(rows),
    }
    if comparison_rows is not None:
        out["comparison_summary"] = trend_summary(comparison_rows)
    return out


def customer_segment(transactions: int) -> str:
    if transactions >= 10:
        return "VIP"
    if transactions >= 5:
        return "FREQUENT"
    if transactions >= 2:
        return "REGULAR"
    return "NEW"


@router.get("/customer-insights", dependencies=[_ANALYTICS])
def customer_insights(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    limit: int = Query(20, ge=1, le=100),
):
    start, end = _window(start_date, end_date, 90)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT c.id, c.name, c.email, c.phone, c.rnc,
                       COUNT(s.id) AS total_transactions,
                       SUM(s.total) AS total_spent,
                       ROUND(AVG(s.total), 2) AS average_transaction_value,
                       MIN(s.created_at) AS first_purchase_date,
                       MAX(s.created_at) AS last_purchase_date,
                       (SELECT MIN(s2.created_at) FROM sales s2
                         WHERE s2.customer_id = c.id AND s2.status = 'COMPLETED') AS first_ever_purchase
                FROM customers c
                JOIN sales s ON s.customer_id = c.id
                WHERE s.status = 'COMPLETED' AND s.created_at >= %s AND s.created_at < %s
                GROUP BY c.id
                ORDER BY total_spent DESC
                """,
                (start, end),
            )
            buyers = cur.fetchall()
            cur.execute(
                """
                SELECT COUNT(*) AS transactions,
                       COUNT(*) FILTER (WHERE customer_id IS NULL) AS walk_in_transactions,
                       COALESCE(SUM(total), 0) AS revenue,
                       COALESCE(SUM(total) FILTER (WHERE customer_id IS NULL), 0) AS walk_in_revenue
                FROM sales
                WHERE status = 'COMPLETED' AND created_at >= %s AND created_at < %s
                """,
                (start, end),
            )
            totals = cur.fetchone()
            cur.execute(
                """
                SELECT COUNT(*) AS total_customers,
                       COUNT(*) FILTER (WHERE rnc IS NOT NULL) AS rnc_customers
                FROM customers
                WHERE is_active = true
                """
            )
            counts = cur.fetchone()

    new_customers = sum(1 for b in buyers if b["first_ever_purchase"] and b["first_ever_purchase"] >= start)
    for b in buyers:
        b["customer_segment"] = customer_segment(int(b["total_transactions"]))
        b.pop("first_ever_purchase", None)
    revenue = Decimal(totals["revenue"] or 0)
    walk_in_share = round(Decimal(totals["walk_in_revenue"]) / revenue * 100, 1) if revenue else Decimal("0")
    return {
        "date_range": {"start": start, "end": end},
        "top_customers": buyers[:limit],
        "new_vs_returning": {"new": new_customers, "returning": len(buyers) - new_customers},
        "walk_in": {
            "transactions": totals["walk_in_transactions"],
            "revenue": totals["walk_in_revenue"],
            "revenue_share": walk_in_share,
        },
        "summary": {
            "total_customers": counts["total_customers"],
            "rnc_customers": counts["rnc_customers"],
            "active_customers": len(buyers),
            "total_transactions": totals["transactions"],
            "total_revenue": totals["revenue"],
        },
    }


@router.get("/product-performance", dependencies=[_ANALYTICS])
def product_performance(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    limit: int = Query(10, ge=1, le=100),
    user=Depends(get_current_user),
):
    start, end = _window(start_date, end_date, 30)
    show_margins = user_can(user, "financial:view_profit_margins")
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT p.id, p.code, p.name, COALESCE(c.name, 'Sin categoría') AS category,
                       p.price, p.cost, p.stock,
                       COALESCE(SUM(i.quantity), 0) AS quantity_sold,
                       COALESCE(SUM(i.total), 0) AS revenue
                FROM products p
                LEFT JOIN categories c ON c.id = p.category_id
                LEFT JOIN sale_items i ON i.product_id = p.id
                  AND EXISTS (SELECT 1 FROM sales s WHERE s.id = i.sale_id AND s.status = 'COMPLETED'
                              AND s.created_at >= %s AND s.created_at < %s)
                WHERE p.is_active = true
                GROUP BY p.id, c.name
                """,
                (start, end),
            )
            products = cur.fetchall()

    for p in products:
        if show_margins:
            cost_total = Decimal(p["cost"] or 0) * int(p["quantity_sold"])
            p["gross_profit"] = q_money(Decimal(p["revenue"]) - cost_total)
            p["margin_percentage"] = (
                round(p["gross_profit"] / Decimal(p["revenue"]) * 100, 1) if Decimal(p["revenue"]) else Decimal("0")
            )
        else:
            p.pop("cost", None)
    sold = [p for p in products if int(p["quantity_sold"]) > 0]
    out = {
        "date_range": {"start": start, "end": end},
        "top_by_quantity": sorted(sold, key=lambda p: int(p["quantity_sold"]), reverse=True)[:limit],
        "top_by_revenue": sorted(sold, key=lambda p: Decimal(p["revenue"]), reverse=True)[:limit],
        "slow_movers": sorted(
            (p for p in products if int(p["quantity_sold"]) == 0 and int(p["stock"]) > 0),
            key=lambda p: int(p["stock"]),
            reverse=True,
        )[:limit],
    }
    if show_margins:
        out["top_by_margin"] = sorted(sold, key=lambda p: p["gross_profit"], reverse=True)[:limit]
    return out

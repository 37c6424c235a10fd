from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import List, Literal, Tuple

from fastapi import APIRouter, Depends

from ..config import settings
from ..db import get_conn
from ..deps import require_permission
from ..dominican import day_range, local_today, q_money

router = APIRouter(prefix="/finance", tags=["finance"])

FinancePeriod = Literal["daily", "weekly", "monthly", "quarterly", "yearly"]

# Share of the unit price booked as cost when a product has no cost on file.
COST_FALLBACK_RATIO = Decimal("0.60")
TREND_MONTHS = 6
# DGII IT-1 (ITBIS) returns are due on the 20th of the following month.
ITBIS_FILING_DAY = 20

_SALE_COST = """
    (SELECT COALESCE(SUM(i.quantity * COALESCE(NULLIF(p.cost, 0), i.unit_price * %s)), 0)
       FROM sale_items i JOIN products p ON p.id = i.product_id
      WHERE i.sale_id = s.id)
"""


def _months_back(d: date, months: int) -> date:
    y, m = divmod(d.year * 12 + (d.month - 1) - months, 12)
    m += 1
    for day in (d.day, 30, 29, 28):
        try:
            return date(y, m, day)
        except ValueError:
            continue
    raise ValueError(d)


def _month_end(d: date) -> date:
    return _months_back(d.replace(day=1), -1) - timedelta(days=1)


def period_window(period: str, today: date) -> Tuple[date, date]:
    """Inclusive local-calendar dates covered by `period`, ending today (or at month end)."""
    if period == "daily":
        return today, today
    if period == "weekly":
        return today - timedelta(days=7), today
    if period == "quarterly":
        return _months_back(today, 3), today
    if period == "yearly":
        return _months_back(today, 12), today
    return today.replace(day=1), _month_end(today)


def next_filing_date(today: date) -> date:
    return _months_back(today.replace(day=1), -1).replace(day=ITBIS_FILING_DAY)


def profit_summary(revenue, itbis, cogs) -> dict:
    """Profit and margin are computed on revenue net of ITBIS."""
    revenue, itbis, cogs = Decimal(revenue or 0), Decimal(itbis or 0), Decimal(cogs or 0)
    net = revenue - itbis
    gross = net - cogs
    return {
        "gross_revenue": q_money(revenue),
        "itbis_collected": q_money(itbis),
        "net_revenue": q_money(net),
        "total_cogs": q_money(cogs),
        "gross_profit": q_money(gross),
        "gross_profit_margin": float(round(gross / net * 100, 2)) if net else 0.0,
    }


def monthly_trend(rows: List[dict], last_month: date, months: int = TREND_MONTHS) -> List[dict]:
    """One entry per month, oldest first; months without sales are zero."""
    by_month = {(r["month"].year, r["month"].month): r for r in rows}
    out = []
    for back in range(months - 1, -1, -1):
        m = _months_back(last_month.replace(day=1), back)
        r = by_month.get((m.year, m.month)) or {}
        summary = profit_summary(r.get("revenue"), r.get("itbis"), r.get("cogs"))
        out.append({
            "month": m.strftime("%Y-%m"),
            "revenue": summary["net_revenue"],
            "cost": summary["total_cogs"],
            "profit": summary["gross_profit"],
            "profit_margin": summary["gross_profit_margin"],
        })
    return out


@router.get("/dashboard", dependencies=[Depends(require_permission("financial:view_profit_margins"))])
def dashboard(period: FinancePeriod = "monthly"):
    today = local_today()
    d_from, d_to = period_window(period, today)
    start, end = day_range(d_from, d_to)
    trend_start, trend_end = day_range(_months_back(today.replace(day=1), TREND_MONTHS - 1), today)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT COUNT(*) AS sales_count,
                       COALESCE(SUM(s.total), 0) AS revenue,
                       COALESCE(SUM(s.itbis), 0) AS itbis,
                       COALESCE(SUM({_SALE_COST}), 0) AS cogs
                FROM sales s
                WHERE s.status = 'COMPLETED' AND s.created_at >= %s AND s.created_at < %s
                """,
                (COST_FALLBACK_RATIO, start, end),
            )
            totals = cur.fetchone()
            cur.execute(
                f"""
                SELECT date_trunc('month', s.created_at AT TIME ZONE %s)::date AS month,
                       SUM(s.total) AS revenue,
                       SUM(s.itbis) AS itbis,
                       SUM({_SALE_COST}) AS cogs
                FROM sales s
                WHERE s.status = 'COMPLETED' AND s.created_at >= %s AND s.created_at < %s
                GROUP BY 1
                ORDER BY 1
                """,
                (settings.business_timezone, COST_FALLBACK_RATIO, trend_start, trend_end),
            )
            trend_rows = cur.fetchall()

    profit_loss = profit_summary(totals["revenue"], totals["itbis"], totals["cogs"])
    return {
        "period": period,
        "date_range": {"start": start, "end": end},
        "sales_count": int(totals["sales_count"]),
        "profit_loss": profit_loss,
        "tax_summary": {
            "itbis_collected": profit_loss["itbis_collected"],
            "next_filing_date": next_filing_date(today),
        },
        "monthly_comparison": monthly_trend(trend_rows, today),
        "generated_at": datetime.now(start.tzinfo),
    }

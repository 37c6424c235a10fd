from datetime import datetime, timedelta

from fastapi import APIRouter, Depends

from ..db import get_conn
from ..deps import require_permission
from ..dominican import day_range, local_today
from ..ncf import sequence_status

router = APIRouter(prefix="/dashboard", tags=["dashboard"])


@router.get("/stats", dependencies=[Depends(require_permission("sales:read"))])
def stats():
    """
    Landing-page counters: today's and this month's sales, stock alerts,
    catalog sizes and NCF sequences that need attention.
    """
    local = local_today()
    today, _ = day_range(local, local)
    month_start, _ = day_range(local.replace(day=1), local)
    now = datetime.now(today.tzinfo)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT COUNT(*) FILTER (WHERE created_at >= %s) AS today_count,
                       COALESCE(SUM(total) FILTER (WHERE created_at >= %s), 0) AS today_total,
                       COALESCE(SUM(itbis) FILTER (WHERE created_at >= %s), 0) AS today_itbis,
                       COUNT(*) AS month_count,
                       COALESCE(SUM(total), 0) AS month_total,
                       COALESCE(SUM(itbis), 0) AS month_itbis
                FROM sales
                WHERE status = 'COMPLETED' AND created_at >= %s
                """,
                (today, today, today, month_start),
            )
            sales = cur.fetchone()
            cur.execute(
                """
                SELECT COUNT(*) AS count, COALESCE(SUM(total), 0) AS total
                FROM sales
                WHERE status = 'COMPLETED' AND created_at >= %s AND created_at < %s
                """,
                (today - timedelta(days=1), today),
            )
            yesterday = cur.fetchone()
            cur.execute(
                """
                SELECT COUNT(*) FILTER (WHERE is_active) AS active_products,
                       COUNT(*) FILTER (WHERE is_active AND stock <= min_stock) AS low_stock,
                       COUNT(*) FILTER (WHERE is_active AND stock <= 0) AS out_of_stock
                FROM products
                """
            )
            products = cur.fetchone()
            cur.execute("SELECT COUNT(*) AS n FROM customers WHERE is_active = true")
            customers = cur.fetchone()["n"]
            cur.execute(
                """
                SELECT id, type, current_number, max_number, expiry_date
                FROM ncf_sequences
                WHERE is_active = true
                ORDER BY type
                """
            )
            ncf_alerts = []
            for r in cur.fetchall():
                st = sequence_status(r["current_number"], r["max_number"], r["expiry_date"], now=now)
                if st["status"] != "active" or st["is_expired"]:
                    ncf_alerts.append({"id": r["id"], "type": r["type"], **st})
            cur.execute(
                """
                SELECT s.id, s.sale_number, s.ncf, s.total, s.payment_method, s.created_at,
                       COALESCE(c.name, s.customer_name) AS customer_name
                FROM sales s
                LEFT JOIN customers c ON c.id = s.customer_id
                ORDER BY s.created_at DESC
                LIMIT 5
                """
            )
            recent = cur.fetchall()
    return {
        "today": {"sales_count": sales["today_count"], "sales_total": sales["today_total"], "itbis": sales["today_itbis"]},
        "yesterday": {"sales_count": yesterday["count"], "sales_total": yesterday["total"]},
        "month": {"sales_count": sales["month_count"], "sales_total": sales["month_total"], "itbis": sales["month_itbis"]},
        "inventory": products,
        "customers": customers,
        "ncf_alerts": ncf_alerts,
        "recent_sales": recent,
    }

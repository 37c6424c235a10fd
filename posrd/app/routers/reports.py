from fastapi import APIRouter, Depends, Query, Response, HTTPException
from datetime import date
from typing import Literal, Optional
from decimal import Decimal
import csv
import io
from ..config import settings
from ..db import get_conn
from ..deps import require_permission, get_current_user, user_can
from ..dominican import NCF_TYPE_NAMES, day_range, q_money
from ..ncf import sequence_status

router = APIRouter(prefix="/reports", tags=["reports"])

_REPORTS = Depends(require_permission("sales:view_reports", "financial:view_reports"))

ReportType = Literal["daily", "itbis", "ncf", "inventory", "customers", "audit"]

# Weeks in the 30-day sales window used for stock-days estimates.
_WEEKS_IN_WINDOW = Decimal("4.3")


def _range(date_from: Optional[date], date_to: Optional[date]):
    if not date_from or not date_to:
        raise HTTPException(status_code=400, detail="Fechas de inicio y fin son requeridas")
    if date_to < date_from:
        raise HTTPException(status_code=400, detail="La fecha final no puede ser anterior a la inicial")
    return day_range(date_from, date_to)


def stock_status(stock: int, min_stock: int, sold_30d: int) -> dict:
    weekly = Decimal(sold_30d) / _WEEKS_IN_WINDOW if sold_30d else Decimal("0")
    stock_days = int((Decimal(stock) / weekly * 7).to_integral_value()) if weekly > 0 else 999
    if stock <= 0:
        status = "out_of_stock"
    elif stock <= min_stock:
        status = "low_stock"
    elif stock_days < 7:
        status = "reorder_soon"
    else:
        status = "in_stock"
    return {"stock_days": stock_days, "status": status}


def _daily(cur, start, end, user) -> dict:
    cur.execute(
        """
        SELECT COUNT(*) AS total_sales,
               COALESCE(SUM(total), 0) AS total_amount,
               COALESCE(SUM(itbis), 0) AS total_tax,
               COALESCE(SUM(total) FILTER (WHERE payment_method = 'CASH'), 0) AS total_cash,
               COALESCE(SUM(total) FILTER (WHERE payment_method = 'CARD'), 0) AS total_card,
               COALESCE(SUM(total) FILTER (WHERE payment_method = 'TRANSFER'), 0) AS total_transfer
        FROM sales
        WHERE status = 'COMPLETED' AND created_at >= %s AND created_at < %s
        """,
        (start, end),
    )
    summary = cur.fetchone()
    summary["average_ticket"] = q_money(summary["total_amount"] / summary["total_sales"]) if summary["total_sales"] else Decimal("0.00")

    cur.execute(
        """
        SELECT ncf_type, COUNT(*) AS count, COALESCE(SUM(total), 0) AS amount
        FROM sales
        WHERE status = 'COMPLETED' AND created_at >= %s AND created_at < %s
        GROUP BY ncf_type
        ORDER BY ncf_type
        """,
        (start, end),
    )
    ncf_breakdown = {r["ncf_type"]: {"count": r["count"], "amount": r["amount"]} for r in cur.fetchall()}

    cur.execute(
        """
        SELECT (created_at AT TIME ZONE %s)::date AS day, COUNT(*) AS sales,
               COALESCE(SUM(total), 0) AS amount, COALESCE(SUM(itbis), 0) AS itbis
        FROM sales
        WHERE status = 'COMPLETED' AND created_at >= %s AND created_at < %s
        GROUP BY 1
        ORDER BY 1
        """,
        (settings.business_timezone, start, end),
    )
    by_day = cur.fetchall()

    cur.execute(
        """
        SELECT p.id, p.name, COALESCE(c.name, 'Sin categoría') AS category,
               SUM(i.quantity) AS quantity, SUM(i.total) AS revenue
        FROM sale_items i
        JOIN sales s ON s.id = i.sale_id
        JOIN products p ON p.id = i.product_id
        LEFT JOIN categories c ON c.id = p.category_id
        WHERE s.status = 'COMPLETED' AND s.created_at >= %s AND s.created_at < %s
        GROUP BY p.id, p.name, c.name
        ORDER BY revenue DESC
        LIMIT 10
        """,
        (start, end),
    )
    top_products = cur.fetchall()

    cur.execute(
        """
        SELECT c.id, c.name, COALESCE(c.rnc, c.cedula) AS document,
               COUNT(*) AS total_purchases, SUM(s.total) AS total_amount
        FROM sales s
        JOIN customers c ON c.id = s.customer_id
        WHERE s.status = 'COMPLETED' AND s.created_at >= %s AND s.created_at < %s
        GROUP BY c.id, c.name, c.rnc, c.cedula
        ORDER BY total_amount DESC
        LIMIT 10
        """,
        (start, end),
    )
    top_customers = cur.fetchall()

    cur.execute(
        """
        SELECT u.id, u.first_name || ' ' || u.last_name AS cashier, COUNT(*) AS sales, SUM(s.total) AS amount
        FROM sales s
        JOIN users u ON u.id = s.cashier_id
        WHERE s.status = 'COMPLETED' AND s.created_at >= %s AND s.created_at < %s
        GROUP BY u.id, u.first_name, u.last_name
        ORDER BY amount DESC
        """,
        (start, end),
    )
    cashiers = cur.fetchall()

    cur.execute(
        """
        SELECT COUNT(*) FILTER (WHERE stock <= 0) AS critical_stock,
               COUNT(*) FILTER (WHERE stock > 0 AND stock <= min_stock) AS low_stock
        FROM products
        WHERE is_active = true
        """
    )
    alerts = cur.fetchone()
    return {
        "sales_summary": summary,
        "ncf_breakdown": ncf_breakdown,
        "sales_by_day": by_day,
        "top_products": top_products,
        "top_customers": top_customers,
        "cashier_performance": cashiers,
        "alerts": alerts,
        "rows": by_day,
    }


def _itbis(cur, start, end, user) -> dict:
    cur.execute(
        """
        SELECT COUNT(*) AS transactions,
               COALESCE(SUM(subtotal), 0) AS subtotal,
               COALESCE(SUM(itbis), 0) AS itbis,
               COALESCE(SUM(total), 0) AS total
        FROM sales
        WHERE status = 'COMPLETED' AND created_at >= %s AND created_at < %s
        """,
        (start, end),
    )
    summary = cur.fetchone()
    subtotal = Decimal(summary["subtotal"] or 0)
    summary["effective_rate"] = round(Decimal(summary["itbis"]) / subtotal * 100, 2) if subtotal else Decimal("0")
    summary["average_itbis_per_transaction"] = (
        q_money(Decimal(summary["itbis"]) / summary["transactions"]) if summary["transactions"] else Decimal("0.00")
    )
    cur.execute(
        """
        SELECT ncf_type, COUNT(*) AS transactions, SUM(subtotal) AS subtotal, SUM(itbis) AS itbis, SUM(total) AS total
        FROM sales
        WHERE status = 'COMPLETED' AND created_at >= %s AND created_at < %s
        GROUP BY ncf_type
        ORDER BY ncf_type
        """,
        (start, end),
    )
    by_ncf = cur.fetchall()
    cur.execute(
        """
        SELECT payment_method, COUNT(*) AS transactions, SUM(subtotal) AS subtotal, SUM(itbis) AS itbis
        FROM sales
        WHERE status = 'COMPLETED' AND created_at >= %s AND created_at < %s
        GROUP BY payment_method
        ORDER BY payment_method
        """,
        (start, end),
    )
    by_payment = cur.fetchall()
    cur.execute(
        """
        SELECT (created_at AT TIME ZONE %s)::date AS day, COUNT(*) AS transactions,
               SUM(subtotal) AS subtotal, SUM(itbis) AS itbis, SUM(total) AS total
        FROM sales
        WHERE status = 'COMPLETED' AND created_at >= %s AND created_at < %s
        GROUP BY 1
        ORDER BY 1
        """,
        (settings.business_timezone, start, end),
    )
    daily = cur.fetchall()
    cur.execute(
        """
        SELECT COALESCE(SUM(tax_amount), 0) AS itbis_paid, COALESCE(SUM(subtotal), 0) AS purchases
        FROM purchase_orders
        WHERE status = 'RECEIVED' AND received_date >= %s AND received_date < %s
        """,
        (start, end),
    )
    purchases = cur.fetchone()
    summary["itbis_paid_on_purchases"] = purchases["itbis_paid"]
    summary["net_itbis_payable"] = q_money(Decimal(summary["itbis"]) - Decimal(purchases["itbis_paid"]))
    return {"summary": summary, "by_ncf_type": by_ncf, "by_payment_method": by_payment, "daily": daily, "rows": daily}


def _ncf(cur, start, end, user) -> dict:
    cur.execute(
        """
        SELECT q.id, q.type, q.current_number, q.max_number, q.expiry_date, q.is_active,
               COUNT(s.id) AS sales_in_period,
               COALESCE(SUM(s.total), 0) AS revenue_in_period,
               COALESCE(SUM(s.itbis), 0) AS itbis_in_period,
               MAX(s.created_at) AS last_used
        FROM ncf_sequences q
        LEFT JOIN sales s ON s.ncf_sequence_id = q.id AND s.created_at >= %s AND s.created_at < %s
        GROUP BY q.id
        ORDER BY q.type, q.created_at DESC
        """,
        (start, end),
    )
    sequences = []
    for r in cur.fetchall():
        r.update(sequence_status(r["current_number"], r["max_number"], r["expiry_date"]))
        r["description"] = NCF_TYPE_NAMES.get(r["type"], r["type"])
        r["average_ticket"] = q_money(Decimal(r["revenue_in_period"]) / r["sales_in_period"]) if r["sales_in_period"] else Decimal("0.00")
        sequences.append(r)
    cur.execute(
        """
        SELECT s.ncf, s.ncf_type, s.sale_number, s.status, s.subtotal, s.itbis, s.total, s.created_at,
               COALESCE(c.name, s.customer_name) AS customer_name,
               COALESCE(c.rnc, s.customer_rnc) AS customer_rnc
        FROM sales s
        LEFT JOIN customers c ON c.id = s.customer_id
        WHERE s.ncf IS NOT NULL AND s.created_at >= %s AND s.created_at < %s
        ORDER BY s.ncf
        """,
        (start, end),
    )
    issued = cur.fetchall()
    alerts = [
        {"type": s["type"], "status": s["status"], "remaining": s["remaining"]}
        for s in sequences
        if s["is_active"] and (s["status"] != "active" or s["is_expired"])
    ]
    return {"sequences": sequences, "issued": issued, "alerts": alerts, "rows": issued}


def _inventory(cur, start, end, user) -> dict:
    show_cost = user_can(user, "inventory:view_costs")
    cur.execute(
        """
        SELECT p.id, p.code, p.name, p.category_id, COALESCE(c.name, 'Sin categoría') AS category,
               p.stock, p.min_stock, p.price, p.cost,
               COALESCE(x.sold, 0) AS sold_30d, COALESCE(x.revenue, 0) AS revenue_30d, x.last_sold
        FROM products p
        LEFT JOIN categories c ON c.id = p.category_id
        LEFT JOIN (
          SELECT i.product_id, SUM(i.quantity) AS sold, SUM(i.total) AS revenue, MAX(s.created_at) AS last_sold
          FROM sale_items i
          JOIN sales s ON s.id = i.sale_id
          WHERE s.status = 'COMPLETED' AND s.created_at >= now() - interval '30 days'
          GROUP BY i.product_id
        ) x ON x.product_id = p.id
        WHERE p.is_active = true
        ORDER BY p.name
        """
    )
    products = []
    totals = {"total_products": 0, "total_value": Decimal("0"), "total_cost_value": Decimal("0"),
              "low_stock": 0, "out_of_stock": 0, "reorder_soon": 0}
    for p in cur.fetchall():
        p.update(stock_status(int(p["stock"]), int(p["min_stock"]), int(p["sold_30d"])))
        p["value"] = q_money(Decimal(p["stock"]) * Decimal(p["price"]))
        cost_value = q_money(Decimal(p["stock"]) * Decimal(p["cost"] or 0))
        totals["total_products"] += 1
        totals["total_value"] += p["value"]
        totals["total_cost_value"] += cost_value
        if p["status"] in totals:
            totals[p["status"]] += 1
        if show_cost:
            p["cost_value"] = cost_value
            price = Decimal(p["price"])
            p["margin"] = round((price - Decimal(p["cost"] or 0)) / price * 100, 1) if price > 0 else Decimal("0")
        else:
            p.pop("cost", None)
        products.append(p)
    if not show_cost:
        totals.pop("total_cost_value")
    slow_moving = sorted(
        (p for p in products if p["sold_30d"] == 0 and p["stock"] > 0), key=lambda p: p["value"], reverse=True
    )[:10]
    top_selling = sorted(products, key=lambda p: p["sold_30d"], reverse=True)[:10]
    return {
        "summary": totals,
        "products": products,
        "top_selling": top_selling,
        "slow_moving": slow_moving,
        "rows": products,
    }


def _customers(cur, start, end, user) -> dict:
    cur.execute(
        """
        SELECT c.id, c.name, c.document_type, c.document_number, c.email, c.phone,
               COUNT(s.id) AS purchases, COALESCE(SUM(s.total), 0) AS total_amount,
               MAX(s.created_at) AS last_purchase
        FROM customers c
        JOIN sales s ON s.customer_id = c.id
        WHERE s.status = 'COMPLETED' AND s.created_at >= %s AND s.created_at < %s
        GROUP BY c.id
        ORDER BY total_amount DESC
        """,
        (start, end),
    )
    customers = cur.fetchall()
    cur.execute(
        """
        SELECT COUNT(*) FILTER (WHERE created_at >= %s AND created_at < %s) AS new_customers,
               COUNT(*) FILTER (WHERE is_active) AS active_customers,
               COUNT(*) AS total_customers
        FROM customers
        """,
        (start, end),
    )
    counts = cur.fetchone()
    cur.execute(
        """
        SELECT COUNT(*) FILTER (WHERE customer_id IS NULL) AS walk_in_sales,
               COUNT(*) FILTER (WHERE customer_id IS NOT NULL) AS registered_sales
        FROM sales
        WHERE status = 'COMPLETED' AND created_at >= %s AND created_at < %s
        """,
        (start, end),
    )
    counts.update(cur.fetchone())
    counts["buying_customers"] = len(customers)
    return {"summary": counts, "customers": customers, "rows": customers}


def _audit(cur, start, end, user) -> dict:
    cur.execute(
        """
        SELECT s.id, s.sale_number, s.ncf, s.ncf_type, s.status, s.payment_method,
               s.subtotal, s.itbis, s.total, s.created_at,
               u.username AS cashier_username, u.first_name || ' ' || u.last_name AS cashier_name, u.role AS cashier_role,
               COALESCE(c.name, s.customer_name) AS customer_name,
               (SELECT COUNT(*) FROM sale_items i WHERE i.sale_id = s.id) AS item_count
        FROM sales s
        JOIN users u ON u.id = s.cashier_id
        LEFT JOIN customers c ON c.id = s.customer_id
        WHERE s.created_at >= %s AND s.created_at < %s
        ORDER BY s.created_at DESC
        """,
        (start, end),
    )
    transactions = cur.fetchall()
    completed = [t for t in transactions if t["status"] == "COMPLETED"]
    revenue = sum((Decimal(t["total"]) for t in completed), Decimal("0"))
    items = sum(int(t["item_count"]) for t in completed)
    cur.execute(
        """
        SELECT a.action, COUNT(*) AS count
        FROM audit_logs a
        WHERE a.created_at >= %s AND a.created_at < %s
        GROUP BY a.action
        ORDER BY count DESC
        """,
        (start, end),
    )
    actions = cur.fetchall()
    summary = {
        "total_transactions": len(transactions),
        "completed": len(completed),
        "cancelled": sum(1 for t in transactions if t["status"] == "CANCELLED"),
        "total_revenue": q_money(revenue),
        "total_tax": q_money(sum((Decimal(t["itbis"]) for t in completed), Decimal("0"))),
        "average_transaction": q_money(revenue / len(completed)) if completed else Decimal("0.00"),
        "average_items_per_sale": round(items / len(completed), 2) if completed else 0,
        "sales_without_ncf": sum(1 for t in completed if not t["ncf"]),
    }
    return {"summary": summary, "transactions": transactions, "actions": actions, "rows": transactions}


_BUILDERS = {
    "daily": _daily,
    "itbis": _itbis,
    "ncf": _ncf,
    "inventory": _inventory,
    "customers": _customers,
    "audit": _audit,
}

_EXPORT_COLUMNS = {
    "daily": ["day", "sales", "amount", "itbis"],
    "itbis": ["day", "transactions", "subtotal", "itbis", "total"],
    "ncf": ["ncf", "ncf_type", "sale_number", "status", "customer_name", "customer_rnc", "subtotal", "itbis", "total", "created_at"],
    "inventory": ["code", "name", "category", "stock", "min_stock", "price", "value", "sold_30d", "stock_days", "status"],
    "customers": ["name", "document_type", "document_number", "email", "phone", "purchases", "total_amount", "last_purchase"],
    "audit": ["sale_number", "ncf", "status", "payment_method", "cashier_name", "customer_name", "subtotal", "itbis", "total", "created_at"],
}


def build_report(cur, report_type: str, date_from: Optional[date], date_to: Optional[date], user) -> dict:
    if report_type == "inventory":
        start = end = None
    else:
        start, end = _range(date_from, date_to)
    return _BUILDERS[report_type](cur, start, end, user)


@router.get("", dependencies=[_REPORTS])
def get_report(
    type: ReportType = "daily",
    date_from: Optional[date] = Query(None, alias="from"),
    date_to: Optional[date] = Query(None, alias="to"),
    user=Depends(get_current_user),
):
    with get_conn() as conn:
        with conn.cursor() as cur:
            data = build_report(cur, type, date_from, date_to, user)
    data.pop("rows", None)
    return {"type": type, "from": date_from, "to": date_to, "data": data}


@router.get("/export", dependencies=[_REPORTS])
def export_report(
    type: ReportType = "daily",
    format: Literal["csv"] = "csv",
    date_from: Optional[date] = Query(None, alias="from"),
    date_to: Optional[date] = Query(None, alias="to"),
    user=Depends(get_current_user),
):
    with get_conn() as conn:
        with conn.cursor() as cur:
            rows = build_report(cur, type, date_from, date_to, user)["rows"]
    cols = _EXPORT_COLUMNS[type]
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(cols)
    for r in rows:
        writer.writerow([r.get(c) for c in cols])
    suffix = f"_{date_from}_{date_to}" if date_from and date_to else ""
    return Response(
        content=output.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="reporte_{type}{suffix}.csv"'},
    )

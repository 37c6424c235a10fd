from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from ..audit_log import record_audit
from ..config import settings
from ..db import get_conn
from ..deps import require_permission, get_current_user
from ..dominican import calculate_itbis, q_money, validate_rnc, digits_only
from ..ncf import allocate_ncf
from ..pagination import page_offset, pagination
from ..validation import Money, PaymentMethod, SaleNcfType, SaleStatus

router = APIRouter(prefix="/sales", tags=["sales"])


class SaleItemIn(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    # Omitted -> current product price.
    unit_price: Optional[Money] = None


class SaleIn(BaseModel):
    items: List[SaleItemIn] = Field(..., min_length=1)
    payment_method: PaymentMethod
    ncf_type: SaleNcfType = "B02"
    customer_id: Optional[str] = None
    customer_rnc: Optional[str] = None
    customer_name: Optional[str] = None
    notes: Optional[str] = None


class SaleCancelIn(BaseModel):
    reason: Optional[str] = None


def sale_totals(lines: List[dict], rate: Decimal) -> dict:
    """
    lines: [{"quantity", "unit_price", "taxable"}]. ITBIS applies to taxable
    lines only and is rounded half-up once on the taxable base.
    """
    subtotal = Decimal("0")
    taxable_base = Decimal("0")
    totals = []
    for ln in lines:
        line_total = q_money(Decimal(ln["quantity"]) * Decimal(str(ln["unit_price"])))
        totals.append(line_total)
        subtotal += line_total
        if ln.get("taxable", True):
            taxable_base += line_total
    subtotal = q_money(subtotal)
    itbis = calculate_itbis(taxable_base, rate)
    return {"line_totals": totals, "subtotal": subtotal, "itbis": itbis, "total": q_money(subtotal + itbis)}


def sale_detail(cur, sale_id: str):
    cur.execute(
        """
        SELECT s.id, s.sale_number, s.ncf, s.ncf_type, s.subtotal, s.itbis, s.total,
               s.payment_method, s.status, s.notes, s.created_at, s.updated_at,
               s.cashier_id, u.username AS cashier_username,
               u.first_name || ' ' || u.last_name AS cashier_name,
               s.customer_id, c.name AS customer_db_name, c.rnc AS customer_db_rnc, c.cedula AS customer_cedula,
               c.email AS customer_email, c.phone AS customer_phone, c.address AS customer_address,
               s.customer_rnc, s.customer_name
        FROM sales s
        JOIN users u ON u.id = s.cashier_id
        LEFT JOIN customers c ON c.id = s.customer_id
        WHERE s.id = %s
        """,
        (sale_id,),
    )
    sale = cur.fetchone()
    if not sale:
        raise HTTPException(status_code=404, detail="Venta no encontrada")
    cur.execute(
        """
        SELECT i.id, i.product_id, p.code AS product_code, p.name AS product_name, p.taxable,
               i.quantity, i.unit_price, i.total
        FROM sale_items i
        JOIN products p ON p.id = i.product_id
        WHERE i.sale_id = %s
        ORDER BY i.created_at, i.id
        """,
        (sale_id,),
    )
    sale["items"] = cur.fetchall()
    return sale


@router.post("", dependencies=[Depends(require_permission("sales:create"))])
def create_sale(data: SaleIn, user=Depends(get_current_user)):
    one_time_rnc = digits_only(data.customer_rnc) if data.customer_rnc else None
    if one_time_rnc and not validate_rnc(one_time_rnc):
        raise HTTPException(status_code=400, detail="RNC del cliente inválido")
    if data.ncf_type == "B01" and not data.customer_id and not one_time_rnc:
        raise HTTPException(status_code=400, detail="Para emitir factura B01 se requiere cliente con RNC válido")

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                customer = None
                if data.customer_id:
                    cur.execute("SELECT id, name, rnc, is_active FROM customers WHERE id = %s", (data.customer_id,))
                    customer = cur.fetchone()
                    if not customer:
                        raise HTTPException(status_code=400, detail="Cliente no encontrado")
                    if data.ncf_type == "B01" and not customer["rnc"] and not one_time_rnc:
                        raise HTTPException(
                            status_code=400,
                            detail="El cliente seleccionado no tiene RNC registrado para factura B01",
                        )

                # Lock in a stable order so concurrent sales of the same products can't deadlock.
                product_ids = sorted({it.product_id for it in data.items})
                cur.execute(
                    """
                    SELECT id, name, price, stock, taxable, is_active
                    FROM products
                    WHERE id = ANY(%s::uuid[])
                    ORDER BY id
                    FOR UPDATE
                    """,
                    (product_ids,),
                )
                products = {str(r["id"]): r for r in cur.fetchall()}

                needed: dict = {}
                lines = []
                for it in data.items:
                    prod = products.get(it.product_id)
                    if not prod:
                        raise HTTPException(status_code=400, detail=f"Producto no encontrado: {it.product_id}")
                    if not prod["is_active"]:
                        raise HTTPException(status_code=400, detail=f"El producto {prod['name']} no está activo")
                    needed[it.product_id] = needed.get(it.product_id, 0) + it.quantity
                    unit_price = it.unit_price if it.unit_price is not None else prod["price"]
                    lines.append({"item": it, "quantity": it.quantity, "unit_price": q_money(unit_price), "taxable": prod["taxable"]})
                for pid, qty in needed.items():
                    if int(products[pid]["stock"]) < qty:
                        raise HTTPException(
                            status_code=400,
                            detail=f"Stock insuficiente para {products[pid]['name']} (disponible: {products[pid]['stock']})",
                        )

                totals = sale_totals(lines, settings.itbis_rate)
                ncf = allocate_ncf(cur, data.ncf_type)
                cur.execute("SELECT next_document_no('SALE') AS doc_no")
                sale_number = cur.fetchone()["doc_no"]

                cur.execute(
                    """
                    INSERT INTO sales (id, sale_number, ncf, ncf_type, ncf_sequence_id, subtotal, itbis, total,
                                       payment_method, status, notes, cashier_id, customer_id,
                                       customer_rnc, customer_name)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, 'COMPLETED', %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        sale_number,
                        ncf["ncf"],
                        data.ncf_type,
                        ncf["sequence_id"],
                        totals["subtotal"],
                        totals["itbis"],
                        totals["total"],
                        data.payment_method,
                        (data.notes or "").strip() or None,
                        user["user_id"],
                        data.customer_id,
                        one_time_rnc,
                        (data.customer_name or "").strip() or None,
                    ),
                )
                sale_id = cur.fetchone()["id"]
                for ln, line_total in zip(lines, totals["line_totals"]):
                    it = ln["item"]
                    cur.execute(
                        """
                        INSERT INTO sale_items (id, sale_id, product_id, quantity, unit_price, total)
                        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s)
                        """,
                        (sale_id, it.product_id, it.quantity, ln["unit_price"], line_total),
                    )
                for pid, qty in needed.items():
                    cur.execute(
                        "UPDATE products SET stock = stock - %s, updated_at = now() WHERE id = %s",
                        (qty, pid),
                    )
                record_audit(
                    cur, user, "SALE_CREATE", "Sale", sale_id,
                    new_value={"sale_number": sale_number, "total": totals["total"], "ncf": ncf["ncf"]},
                )
                return {"sale": sale_detail(cur, sale_id)}


@router.get("", dependencies=[Depends(require_permission("sales:read"))])
def list_sales(
    status: Optional[SaleStatus] = None,
    cashier_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
):
    where = ["1=1"]
    params: list = []
    if status:
        where.append("s.status = %s")
        params.append(status)
    if cashier_id:
        where.append("s.cashier_id = %s")
        params.append(cashier_id)
    if customer_id:
        where.append("s.customer_id = %s")
        params.append(customer_id)
    if start_date:
        where.append("s.created_at >= %s")
        params.append(start_date)
    if end_date:
        where.append("s.created_at <= %s")
        params.append(end_date)
    where_sql = " AND ".join(where)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT COUNT(*) AS n FROM sales s WHERE {where_sql}", params)
            total = cur.fetchone()["n"]
            cur.execute(
                f"""
                SELECT s.id, s.sale_number, s.ncf, s.ncf_type, s.subtotal, s.itbis, s.total,
                       s.payment_method, s.status, s.created_at,
                       s.cashier_id, u.first_name || ' ' || u.last_name AS cashier_name,
                       s.customer_id, COALESCE(c.name, s.customer_name) AS customer_name,
                       COALESCE(c.rnc, s.customer_rnc) AS customer_rnc,
                       (SELECT COUNT(*) FROM sale_items i WHERE i.sale_id = s.id) AS item_count
                FROM sales s
                JOIN users u ON u.id = s.cashier_id
                LEFT JOIN customers c ON c.id = s.customer_id
                WHERE {where_sql}
                ORDER BY s.created_at DESC
                LIMIT %s OFFSET %s
                """,
                params + [limit, page_offset(page, limit)],
            )
            return {"sales": cur.fetchall(), "pagination": pagination(page, limit, total)}


@router.get("/{sale_id}", dependencies=[Depends(require_permission("sales:read"))])
def get_sale(sale_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"sale": sale_detail(cur, sale_id)}


@router.post("/{sale_id}/cancel", dependencies=[Depends(require_permission("sales:refund"))])
def cancel_sale(sale_id: str, data: SaleCancelIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, sale_number, status FROM sales WHERE id = %s FOR UPDATE", (sale_id,))
                sale = cur.fetchone()
                if not sale:
                    raise HTTPException(status_code=404, detail="Venta no encontrada")
                if sale["status"] != "COMPLETED":
                    raise HTTPException(status_code=409, detail="Solo se pueden cancelar ventas completadas")
                cur.execute(
                    """
                    UPDATE products p
                    SET stock = p.stock + x.qty, updated_at = now()
                    FROM (
                      SELECT product_id, SUM(quantity) AS qty
                      FROM sale_items
                      WHERE sale_id = %s
                      GROUP BY product_id
                    ) x
                    WHERE p.id = x.product_id
                    """,
                    (sale_id,),
                )
                reason = (data.reason or "").strip() or None
                cur.execute(
                    """
                    UPDATE sales
                    SET status = 'CANCELLED',
                        notes = CASE WHEN %s::text IS NULL THEN notes
                                     ELSE concat_ws(E'\\n', notes, 'Cancelada: ' || %s::text) END,
                        updated_at = now()
                    WHERE id = %s
                    """,
                    (reason, reason, sale_id),
                )
                record_audit(
                    cur, user, "SALE_CANCEL", "Sale", sale_id,
                    old_value={"status": "COMPLETED"},
                    new_value={"status": "CANCELLED", "reason": reason},
                )
                return {"sale": sale_detail(cur, sale_id)}

from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from ..audit_log import record_audit
from ..config import settings
from ..db import get_conn
from ..deps import require_permission, require_role, get_current_user
from ..dominican import calculate_itbis, q_money
from ..pagination import page_offset, pagination
from ..validation import Money, PurchaseOrderStatus

router = APIRouter(prefix="/purchase-orders", tags=["purchase-orders"])

_MANAGE = Depends(require_permission("inventory:manage_suppliers"))


class PurchaseOrderItemIn(BaseModel):
    product_id: str
    quantity_ordered: int = Field(..., gt=0)
    unit_cost: Money


class PurchaseOrderIn(BaseModel):
    supplier_id: str
    items: List[PurchaseOrderItemIn] = Field(..., min_length=1)
    supplier_ncf: Optional[str] = None
    expected_date: Optional[datetime] = None
    notes: Optional[str] = None


class PurchaseOrderUpdate(BaseModel):
    action: Optional[Literal["receive"]] = None
    status: Optional[PurchaseOrderStatus] = None
    expected_date: Optional[datetime] = None
    notes: Optional[str] = None
    supplier_ncf: Optional[str] = None


def po_totals(items, rate: Decimal) -> dict:
    lines = []
    subtotal = Decimal("0")
    for it in items:
        line_total = q_money(Decimal(it.quantity_ordered) * Decimal(str(it.unit_cost)))
        subtotal += line_total
        lines.append({"item": it, "total_cost": line_total})
    subtotal = q_money(subtotal)
    tax = calculate_itbis(subtotal, rate)
    return {"lines": lines, "subtotal": subtotal, "tax_amount": tax, "total_amount": q_money(subtotal + tax)}


def _load_po(cur, po_id: str):
    cur.execute(
        """
        SELECT po.id, po.po_number, po.supplier_id, s.name AS supplier_name, s.rnc AS supplier_rnc,
               po.supplier_ncf, po.status, po.order_date, po.expected_date, po.received_date,
               po.subtotal, po.tax_amount, po.total_amount, po.notes,
               po.created_by, cu.first_name || ' ' || cu.last_name AS created_by_name,
               po.received_by, ru.first_name || ' ' || ru.last_name AS received_by_name,
               po.created_at, po.updated_at
        FROM purchase_orders po
        JOIN suppliers s ON s.id = po.supplier_id
        JOIN users cu ON cu.id = po.created_by
        LEFT JOIN users ru ON ru.id = po.received_by
        WHERE po.id = %s
        """,
        (po_id,),
    )
    po = cur.fetchone()
    if not po:
        raise HTTPException(status_code=404, detail="Orden de compra no encontrada")
    cur.execute(
        """
        SELECT i.id, i.product_id, p.code AS product_code, p.name AS product_name,
               i.quantity_ordered, i.quantity_received, i.unit_cost, i.total_cost
        FROM purchase_order_items i
        JOIN products p ON p.id = i.product_id
        WHERE i.purchase_order_id = %s
        ORDER BY p.name
        """,
        (po_id,),
    )
    po["items"] = cur.fetchall()
    return po


@router.get("", dependencies=[_MANAGE])
def list_purchase_orders(
    supplier_id: Optional[str] = None,
    status: Optional[PurchaseOrderStatus] = None,
    date_from: Optional[datetime] = Query(None, alias="from"),
    date_to: Optional[datetime] = Query(None, alias="to"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
):
    where = ["1=1"]
    params: list = []
    if supplier_id:
        where.append("po.supplier_id = %s")
        params.append(supplier_id)
    if status:
        where.append("po.status = %s")
        params.append(status)
    if date_from:
        where.append("po.order_date >= %s")
        params.append(date_from)
    if date_to:
        where.append("po.order_date <= %s")
        params.append(date_to)
    where_sql = " AND ".join(where)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT COUNT(*) AS n FROM purchase_orders po WHERE {where_sql}", params)
            total = cur.fetchone()["n"]
            cur.execute(
                f"""
                SELECT po.id, po.po_number, po.supplier_id, s.name AS supplier_name, po.supplier_ncf,
                       po.status, po.order_date, po.expected_date, po.received_date,
                       po.subtotal, po.tax_amount, po.total_amount,
                       (SELECT COUNT(*) FROM purchase_order_items i WHERE i.purchase_order_id = po.id) AS item_count
                FROM purchase_orders po
                JOIN suppliers s ON s.id = po.supplier_id
                WHERE {where_sql}
                ORDER BY po.order_date DESC
                LIMIT %s OFFSET %s
                """,
                params + [limit, page_offset(page, limit)],
            )
            return {"purchase_orders": cur.fetchall(), "pagination": pagination(page, limit, total)}


@router.get("/{po_id}", dependencies=[_MANAGE])
def get_purchase_order(po_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"purchase_order": _load_po(cur, po_id)}


@router.post("", dependencies=[_MANAGE])
def create_purchase_order(data: PurchaseOrderIn, user=Depends(get_current_user)):
    totals = po_totals(data.items, settings.itbis_rate)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, is_active FROM suppliers WHERE id = %s", (data.supplier_id,))
                sup = cur.fetchone()
                if not sup or not sup["is_active"]:
                    raise HTTPException(status_code=400, detail="Proveedor inválido")
                product_ids = sorted({it.product_id for it in data.items})
                cur.execute("SELECT id FROM products WHERE id = ANY(%s::uuid[])", (product_ids,))
                found = {str(r["id"]) for r in cur.fetchall()}
                missing = [p for p in product_ids if p not in found]
                if missing:
                    raise HTTPException(status_code=400, detail=f"Producto no encontrado: {missing[0]}")

                cur.execute("SELECT next_document_no('PO') AS doc_no")
                po_number = cur.fetchone()["doc_no"]
                cur.execute(
                    """
                    INSERT INTO purchase_orders (id, po_number, supplier_id, supplier_ncf, status, expected_date,
                                                 subtotal, tax_amount, total_amount, notes, created_by)
                    VALUES (gen_random_uuid(), %s, %s, %s, 'PENDING', %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        po_number,
                        data.supplier_id,
                        (data.supplier_ncf or "").strip().upper() or None,
                        data.expected_date,
                        totals["subtotal"],
                        totals["tax_amount"],
                        totals["total_amount"],
                        (data.notes or "").strip() or None,
                        user["user_id"],
                    ),
                )
                po_id = cur.fetchone()["id"]
                for line in totals["lines"]:
                    it = line["item"]
                    cur.execute(
                        """
                        INSERT INTO purchase_order_items (id, purchase_order_id, product_id, quantity_ordered,
                                                          unit_cost, total_cost)
                        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s)
                        """,
                        (po_id, it.product_id, it.quantity_ordered, it.unit_cost, line["total_cost"]),
                    )
                record_audit(
                    cur, user, "PURCHASE_ORDER_CREATE", "PurchaseOrder", po_id,
                    new_value={"po_number": po_number, "total_amount": totals["total_amount"]},
                )
                return {"id": po_id, "po_number": po_number, "subtotal": totals["subtotal"],
                        "tax_amount": totals["tax_amount"], "total_amount": totals["total_amount"]}


@router.patch("/{po_id}", dependencies=[_MANAGE])
def update_purchase_order(po_id: str, data: PurchaseOrderUpdate, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, po_number, status FROM purchase_orders WHERE id = %s FOR UPDATE", (po_id,))
                po = cur.fetchone()
                if not po:
                    raise HTTPException(status_code=404, detail="Orden de compra no encontrada")

                if data.action == "receive":
                    if po["status"] == "RECEIVED":
                        raise HTTPException(status_code=409, detail="La orden de compra ya fue recibida")
                    if po["status"] == "CANCELLED":
                        raise HTTPException(status_code=409, detail="No se puede recibir una orden cancelada")
                    cur.execute(
                        """
                        UPDATE purchase_orders
                        SET status = 'RECEIVED', received_date = now(), received_by = %s, updated_at = now()
                        WHERE id = %s
                        """,
                        (user["user_id"], po_id),
                    )
                    cur.execute(
                        """
                        SELECT id, product_id, quantity_ordered, unit_cost
                        FROM purchase_order_items
                        WHERE purchase_order_id = %s
                        """,
                        (po_id,),
                    )
                    for item in cur.fetchall():
                        cur.execute(
                            """
                            UPDATE products
                            SET stock = stock + %s, cost = %s, updated_at = now()
                            WHERE id = %s
                            """,
                            (item["quantity_ordered"], item["unit_cost"], item["product_id"]),
                        )
                        cur.execute(
                            "UPDATE purchase_order_items SET quantity_received = %s WHERE id = %s",
                            (item["quantity_ordered"], item["id"]),
                        )
                    record_audit(
                        cur, user, "PURCHASE_ORDER_RECEIVE", "PurchaseOrder", po_id,
                        old_value={"status": po["status"]}, new_value={"status": "RECEIVED"},
                    )
                    return {"purchase_order": _load_po(cur, po_id), "message": "Orden recibida e inventario actualizado"}

                patch = data.model_dump(exclude_unset=True, exclude={"action"})
                if not patch:
                    return {"purchase_order": _load_po(cur, po_id)}
                if po["status"] == "RECEIVED":
                    raise HTTPException(status_code=409, detail="No se puede modificar una orden ya recibida")
                if patch.get("status") == "RECEIVED":
                    raise HTTPException(status_code=400, detail="Use la acción 'receive' para recibir la orden")
                if "status" in patch and patch["status"] is None:
                    patch.pop("status")
                if "notes" in patch:
                    patch["notes"] = (patch["notes"] or "").strip() or None
                if "supplier_ncf" in patch:
                    patch["supplier_ncf"] = (patch["supplier_ncf"] or "").strip().upper() or None
                if patch:
                    fields = [f"{k} = %s" for k in patch]
                    cur.execute(
                        f"""
                        UPDATE purchase_orders
                        SET {', '.join(fields)}, updated_at = now()
                        WHERE id = %s
                        """,
                        list(patch.values()) + [po_id],
                    )
                    record_audit(cur, user, "PURCHASE_ORDER_UPDATE", "PurchaseOrder", po_id, new_value=patch)
                return {"purchase_order": _load_po(cur, po_id)}


@router.delete("/{po_id}", dependencies=[Depends(require_role("ADMIN"))])
def delete_purchase_order(po_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, po_number, status FROM purchase_orders WHERE id = %s FOR UPDATE", (po_id,))
                po = cur.fetchone()
                if not po:
                    raise HTTPException(status_code=404, detail="Orden de compra no encontrada")
                if po["status"] == "RECEIVED":
                    raise HTTPException(status_code=400, detail="No se puede eliminar una orden de compra recibida")
                cur.execute("DELETE FROM purchase_orders WHERE id = %s", (po_id,))
                record_audit(cur, user, "PURCHASE_ORDER_DELETE", "PurchaseOrder", po_id, old_value={"po_number": po["po_number"]})
                return {"ok": True}

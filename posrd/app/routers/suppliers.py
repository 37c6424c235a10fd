from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import Optional

from ..audit_log import record_audit
from ..db import get_conn
from ..deps import require_permission, get_current_user
from ..validation import Email, OptionalRnc

router = APIRouter(prefix="/suppliers", tags=["suppliers"])

_SUPPLIER_COLUMNS = """
    s.id, s.name, s.rnc, s.contact_name, s.email, s.phone, s.address,
    s.payment_terms_days, s.is_active, s.created_at, s.updated_at
"""


class SupplierIn(BaseModel):
    name: str
    rnc: OptionalRnc = None
    contact_name: str
    email: Optional[Email] = None
    phone: str
    address: Optional[str] = None
    payment_terms_days: int = Field(0, ge=0, le=365)
    is_active: bool = True


class SupplierUpdate(BaseModel):
    name: Optional[str] = None
    rnc: OptionalRnc = None
    contact_name: Optional[str] = None
    email: Optional[Email] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    payment_terms_days: Optional[int] = Field(None, ge=0, le=365)
    is_active: Optional[bool] = None


@router.get("", dependencies=[Depends(require_permission("inventory:manage_suppliers"))])
def list_suppliers(q: str = "", include_inactive: bool = False):
    sql = f"""
        SELECT {_SUPPLIER_COLUMNS},
               (SELECT COUNT(*) FROM purchase_orders po WHERE po.supplier_id = s.id) AS purchase_order_count
        FROM suppliers s
        WHERE (%s OR s.is_active = true)
    """
    params: list = [bool(include_inactive)]
    qq = (q or "").strip()
    if qq:
        like = f"%{qq}%"
        sql += " AND (s.name ILIKE %s OR s.rnc ILIKE %s OR s.contact_name ILIKE %s)"
        params.extend([like, like, like])
    sql += " ORDER BY s.name"
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return {"suppliers": cur.fetchall()}


@router.get("/{supplier_id}", dependencies=[Depends(require_permission("inventory:manage_suppliers"))])
def get_supplier(supplier_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {_SUPPLIER_COLUMNS} FROM suppliers s WHERE s.id = %s", (supplier_id,))
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="Proveedor no encontrado")
            cur.execute(
                """
                SELECT id, po_number, status, order_date, total_amount
                FROM purchase_orders
                WHERE supplier_id = %s
                ORDER BY order_date DESC
                LIMIT 10
                """,
                (supplier_id,),
            )
            row["recent_purchase_orders"] = cur.fetchall()
            return {"supplier": row}


@router.post("", dependencies=[Depends(require_permission("inventory:manage_suppliers"))])
def create_supplier(data: SupplierIn, user=Depends(get_current_user)):
    name = (data.name or "").strip()
    contact_name = (data.contact_name or "").strip()
    phone = (data.phone or "").strip()
    if not name or not contact_name or not phone:
        raise HTTPException(status_code=400, detail="Nombre, contacto y teléfono son requeridos")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO suppliers (id, name, rnc, contact_name, email, phone, address, payment_terms_days, is_active)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        name,
                        data.rnc,
                        contact_name,
                        data.email,
                        phone,
                        (data.address or "").strip() or None,
                        data.payment_terms_days,
                        bool(data.is_active),
                    ),
                )
                sid = cur.fetchone()["id"]
                record_audit(cur, user, "CREATE", "Supplier", sid, new_value={"name": name, "rnc": data.rnc})
                return {"id": sid}


@router.patch("/{supplier_id}", dependencies=[Depends(require_permission("inventory:manage_suppliers"))])
def update_supplier(supplier_id: str, data: SupplierUpdate, user=Depends(get_current_user)):
    patch = data.model_dump(exclude_unset=True)
    if not patch:
        return {"ok": True}
    for k in ("name", "contact_name", "phone"):
        if k in patch:
            patch[k] = (patch[k] or "").strip()
            if not patch[k]:
                raise HTTPException(status_code=400, detail="Nombre, contacto y teléfono son requeridos")
    if "address" in patch:
        patch["address"] = (patch["address"] or "").strip() or None
    for k in ("payment_terms_days", "is_active"):
        if k in patch and patch[k] is None:
            patch.pop(k)
    if not patch:
        return {"ok": True}

    fields = [f"{k} = %s" for k in patch]
    params = list(patch.values()) + [supplier_id]
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE suppliers
                    SET {', '.join(fields)}, updated_at = now()
                    WHERE id = %s
                    RETURNING id
                    """,
                    params,
                )
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="Proveedor no encontrado")
                record_audit(cur, user, "UPDATE", "Supplier", supplier_id, new_value=patch)
                return {"ok": True}


@router.delete("/{supplier_id}", dependencies=[Depends(require_permission("inventory:manage_suppliers"))])
def delete_supplier(supplier_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE suppliers
                    SET is_active = false, updated_at = now()
                    WHERE id = %s
                    RETURNING name
                    """,
                    (supplier_id,),
                )
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="Proveedor no encontrado")
                record_audit(cur, user, "DELETE", "Supplier", supplier_id, old_value={"name": row["name"]})
                return {"ok": True}

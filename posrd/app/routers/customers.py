from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from typing import Optional

from ..audit_log import record_audit
from ..db import get_conn
from ..deps import require_permission, get_current_user
from ..dominican import digits_only, validate_cedula, validate_rnc
from ..pagination import page_offset, pagination
from ..validation import DocumentType, Email

router = APIRouter(prefix="/customers", tags=["customers"])

# Customers are managed at the counter: every role that can sell can manage them.
_READ = Depends(require_permission("sales:create"))
_WRITE = Depends(require_permission("sales:create"))
_DELETE = Depends(require_permission("sales:update"))

_CUSTOMER_COLUMNS = """
    id, name, email, phone, address, document_type, document_number,
    rnc, cedula, is_active, created_at, updated_at
"""


class CustomerIn(BaseModel):
    name: str
    email: Optional[Email] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    document_type: DocumentType
    document_number: str
    is_active: bool = True


class CustomerUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[Email] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    document_type: Optional[DocumentType] = None
    document_number: Optional[str] = None
    is_active: Optional[bool] = None


def normalize_document(document_type: str, document_number: str) -> dict:
    """
    Validate a customer document and derive the `rnc`/`cedula` columns.
    Raises 400 with the Spanish message shown at the counter.
    """
    number = digits_only(document_number)
    if document_type == "RNC":
        if not validate_rnc(number):
            raise HTTPException(status_code=400, detail="RNC inválido")
        return {"document_number": number, "rnc": number, "cedula": None}
    if not validate_cedula(number):
        raise HTTPException(status_code=400, detail="Cédula inválida")
    return {"document_number": number, "rnc": None, "cedula": number}


@router.get("", dependencies=[_READ])
def list_customers(
    search: str = "",
    document_type: Optional[DocumentType] = None,
    is_active: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
):
    where = ["1=1"]
    params: list = []
    s = (search or "").strip()
    if s:
        like = f"%{s}%"
        where.append("(name ILIKE %s OR email ILIKE %s OR phone ILIKE %s OR document_number ILIKE %s)")
        params.extend([like, like, like, f"%{digits_only(s) or s}%"])
    if document_type:
        where.append("document_type = %s")
        params.append(document_type)
    if is_active is not None:
        where.append("is_active = %s")
        params.append(bool(is_active))
    where_sql = " AND ".join(where)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT COUNT(*) AS n FROM customers WHERE {where_sql}", params)
            total = cur.fetchone()["n"]
            cur.execute(
                f"""
                SELECT {_CUSTOMER_COLUMNS}
                FROM customers
                WHERE {where_sql}
                ORDER BY name
                LIMIT %s OFFSET %s
                """,
                params + [limit, page_offset(page, limit)],
            )
            return {"customers": cur.fetchall(), "pagination": pagination(page, limit, total)}


@router.get("/{customer_id}", dependencies=[_READ])
def get_customer(customer_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {_CUSTOMER_COLUMNS} FROM customers WHERE id = %s", (customer_id,))
            customer = cur.fetchone()
            if not customer:
                raise HTTPException(status_code=404, detail="Cliente no encontrado")
            cur.execute(
                """
                SELECT id, sale_number, ncf, total, status, payment_method, created_at
                FROM sales
                WHERE customer_id = %s
                ORDER BY created_at DESC
                LIMIT 10
                """,
                (customer_id,),
            )
            customer["recent_sales"] = cur.fetchall()
            return {"customer": customer}


@router.post("", dependencies=[_WRITE])
def create_customer(data: CustomerIn, user=Depends(get_current_user)):
    name = (data.name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="Nombre requerido")
    doc = normalize_document(data.document_type, data.document_number)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM customers WHERE document_number = %s", (doc["document_number"],))
                if cur.fetchone():
                    raise HTTPException(status_code=400, detail="Ya existe un cliente con este número de documento")
                cur.execute(
                    f"""
                    INSERT INTO customers (id, name, email, phone, address, document_type, document_number,
                                           rnc, cedula, is_active)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_CUSTOMER_COLUMNS}
                    """,
                    (
                        name,
                        data.email,
                        (data.phone or "").strip() or None,
                        (data.address or "").strip() or None,
                        data.document_type,
                        doc["document_number"],
                        doc["rnc"],
                        doc["cedula"],
                        bool(data.is_active),
                    ),
                )
                row = cur.fetchone()
                record_audit(
                    cur, user, "CREATE", "Customer", row["id"],
                    new_value={"name": name, "document_type": data.document_type, "document_number": doc["document_number"]},
                )
                return {"customer": row}


@router.patch("/{customer_id}", dependencies=[_WRITE])
def update_customer(customer_id: str, data: CustomerUpdate, user=Depends(get_current_user)):
    patch = data.model_dump(exclude_unset=True)
    if not patch:
        return {"ok": True}
    if "name" in patch:
        patch["name"] = (patch["name"] or "").strip()
        if not patch["name"]:
            raise HTTPException(status_code=400, detail="Nombre requerido")
    for k in ("phone", "address"):
        if k in patch:
            patch[k] = (patch[k] or "").strip() or None
    if "is_active" in patch and patch["is_active"] is None:
        patch.pop("is_active")

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(f"SELECT {_CUSTOMER_COLUMNS} FROM customers WHERE id = %s FOR UPDATE", (customer_id,))
                before = cur.fetchone()
                if not before:
                    raise HTTPException(status_code=404, detail="Cliente no encontrado")

                if "document_type" in patch or "document_number" in patch:
                    doc_type = patch.pop("document_type", None) or before["document_type"]
                    doc_number = patch.pop("document_number", None) or before["document_number"]
                    doc = normalize_document(doc_type, doc_number)
                    cur.execute(
                        "SELECT 1 FROM customers WHERE document_number = %s AND id <> %s",
                        (doc["document_number"], customer_id),
                    )
                    if cur.fetchone():
                        raise HTTPException(status_code=400, detail="Ya existe un cliente con este número de documento")
                    patch.update({"document_type": doc_type, **doc})

                if not patch:
                    return {"customer": before}
                fields = [f"{k} = %s" for k in patch]
                params = list(patch.values()) + [customer_id]
                cur.execute(
                    f"""
                    UPDATE customers
                    SET {', '.join(fields)}, updated_at = now()
                    WHERE id = %s
                    RETURNING {_CUSTOMER_COLUMNS}
                    """,
                    params,
                )
                row = cur.fetchone()
                record_audit(
                    cur, user, "UPDATE", "Customer", customer_id,
                    old_value={k: before.get(k) for k in patch},
                    new_value=patch,
                )
                return {"customer": row}


@router.delete("/{customer_id}", dependencies=[_DELETE])
def delete_customer(customer_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE customers
                    SET is_active = false, updated_at = now()
                    WHERE id = %s
                    RETURNING name, document_number
                    """,
                    (customer_id,),
                )
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="Cliente no encontrado")
                record_audit(cur, user, "DELETE", "Customer", customer_id, old_value=row)
                return {"ok": True}

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from typing import Optional

from ..audit_log import record_audit
from ..db import get_conn
from ..deps import require_permission, get_current_user, user_can
from ..pagination import page_offset, pagination
from ..validation import Money

router = APIRouter(prefix="/products", tags=["products"])

_PRODUCT_COLUMNS = """
    p.id, p.code, p.name, p.description, p.price, p.cost, p.stock, p.min_stock,
    p.taxable, p.category_id, c.name AS category_name, p.is_active,
    p.created_at, p.updated_at
"""


class ProductIn(BaseModel):
    code: str
    name: str
    description: Optional[str] = None
    price: Money
    cost: Optional[Money] = None
    stock: int = Field(0, ge=0)
    min_stock: int = Field(0, ge=0)
    taxable: bool = True
    category_id: Optional[str] = None


class ProductUpdate(BaseModel):
    code: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Money] = None
    cost: Optional[Money] = None
    stock: Optional[int] = Field(None, ge=0)
    min_stock: Optional[int] = Field(None, ge=0)
    taxable: Optional[bool] = None
    category_id: Optional[str] = None
    is_active: Optional[bool] = None


def _strip_cost(rows, user):
    if user_can(user, "inventory:view_costs"):
        return rows
    for r in rows:
        r.pop("cost", None)
    return rows


@router.get("", dependencies=[Depends(require_permission("inventory:read"))])
def list_products(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    search: str = "",
    category_id: Optional[str] = None,
    low_stock: bool = False,
    is_active: Optional[bool] = None,
    user=Depends(get_current_user),
):
    where = ["1=1"]
    params: list = []
    s = (search or "").strip()
    if s:
        like = f"%{s}%"
        where.append("(p.code ILIKE %s OR p.name ILIKE %s OR p.description ILIKE %s)")
        params.extend([like, like, like])
    if category_id:
        where.append("p.category_id = %s")
        params.append(category_id)
    if low_stock:
        where.append("p.stock <= p.min_stock")
    if is_active is not None:
        where.append("p.is_active = %s")
        params.append(bool(is_active))
    where_sql = " AND ".join(where)

    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT COUNT(*) AS n FROM products p WHERE {where_sql}", params)
            total = cur.fetchone()["n"]
            cur.execute(
                f"""
                SELECT {_PRODUCT_COLUMNS}
                FROM products p
                LEFT JOIN categories c ON c.id = p.category_id
                WHERE {where_sql}
                ORDER BY p.name
                LIMIT %s OFFSET %s
                """,
                params + [limit, page_offset(page, limit)],
            )
            rows = _strip_cost(cur.fetchall(), user)
            return {"products": rows, "pagination": pagination(page, limit, total)}


@router.get("/{product_id}", dependencies=[Depends(require_permission("inventory:read"))])
def get_product(product_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {_PRODUCT_COLUMNS}
                FROM products p
                LEFT JOIN categories c ON c.id = p.category_id
                WHERE p.id = %s
                """,
                (product_id,),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="Producto no encontrado")
            return {"product": _strip_cost([row], user)[0]}


@router.post("", dependencies=[Depends(require_permission("inventory:create"))])
def create_product(data: ProductIn, user=Depends(get_current_user)):
    code = (data.code or "").strip()
    name = (data.name or "").strip()
    if not code:
        raise HTTPException(status_code=400, detail="Código requerido")
    if not name:
        raise HTTPException(status_code=400, detail="Nombre requerido")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM products WHERE code = %s", (code,))
                if cur.fetchone():
                    raise HTTPException(status_code=400, detail="Ya existe un producto con este código")
                if data.category_id:
                    cur.execute("SELECT 1 FROM categories WHERE id = %s", (data.category_id,))
                    if not cur.fetchone():
                        raise HTTPException(status_code=400, detail="Categoría inválida")
                cur.execute(
                    """
                    INSERT INTO products (id, code, name, description, price, cost, stock, min_stock, taxable, category_id)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        code,
                        name,
                        (data.description or "").strip() or None,
                        data.price,
                        data.cost,
                        data.stock,
                        data.min_stock,
                        bool(data.taxable),
                        data.category_id,
                    ),
                )
                pid = cur.fetchone()["id"]
                record_audit(cur, user, "CREATE", "Product", pid, new_value={"code": code, "name": name})
                return {"id": pid}


@router.patch("/{product_id}", dependencies=[Depends(require_permission("inventory:update"))])
def update_product(product_id: str, data: ProductUpdate, user=Depends(get_current_user)):
    patch = data.model_dump(exclude_unset=True)
    if not patch:
        return {"ok": True}
    for k in ("code", "name"):
        if k in patch:
            patch[k] = (patch[k] or "").strip()
            if not patch[k]:
                raise HTTPException(status_code=400, detail=f"{'Código' if k == 'code' else 'Nombre'} requerido")
    if "description" in patch:
        patch["description"] = (patch["description"] or "").strip() or None
    for k in ("price", "stock", "min_stock", "taxable", "is_active"):
        if k in patch and patch[k] is None:
            raise HTTPException(status_code=400, detail=f"{k} no puede ser nulo")

    fields = [f"{k} = %s" for k in patch]
    params = list(patch.values())

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT code, name, price, cost, stock, min_stock, taxable, category_id, is_active FROM products WHERE id = %s",
                    (product_id,),
                )
                before = cur.fetchone()
                if not before:
                    raise HTTPException(status_code=404, detail="Producto no encontrado")
                if "code" in patch and patch["code"] != before["code"]:
                    cur.execute("SELECT 1 FROM products WHERE code = %s AND id <> %s", (patch["code"], product_id))
                    if cur.fetchone():
                        raise HTTPException(status_code=400, detail="Ya existe un producto con este código")
                params.append(product_id)
                cur.execute(
                    f"""
                    UPDATE products
                    SET {', '.join(fields)}, updated_at = now()
                    WHERE id = %s
                    """,
                    params,
                )
                record_audit(
                    cur, user, "UPDATE", "Product", product_id,
                    old_value={k: before.get(k) for k in patch},
                    new_value=patch,
                )
                return {"ok": True}


@router.delete("/{product_id}", dependencies=[Depends(require_permission("inventory:delete"))])
def delete_product(product_id: str, user=Depends(get_current_user)):
    # Soft delete: sales history keeps referencing the product.
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE products
                    SET is_active = false, updated_at = now()
                    WHERE id = %s
                    RETURNING code, name
                    """,
                    (product_id,),
                )
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="Producto no encontrado")
                record_audit(cur, user, "DELETE", "Product", product_id, old_value={"code": row["code"], "name": row["name"]})
                return {"ok": True}

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import Optional

from ..audit_log import record_audit
from ..db import get_conn
from ..deps import require_permission, get_current_user

router = APIRouter(prefix="/categories", tags=["categories"])


class CategoryIn(BaseModel):
    name: str
    description: Optional[str] = None
    is_active: bool = True


class CategoryUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None


@router.get("", dependencies=[Depends(require_permission("inventory:read"))])
def list_categories(include_inactive: bool = False):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT c.id, c.name, c.description, c.is_active, c.created_at, c.updated_at,
                       (SELECT COUNT(*) FROM products p WHERE p.category_id = c.id) AS product_count
                FROM categories c
                WHERE (%s OR c.is_active = true)
                ORDER BY c.name
                """,
                (bool(include_inactive),),
            )
            return {"categories": cur.fetchall()}


@router.get("/{category_id}", dependencies=[Depends(require_permission("inventory:read"))])
def get_category(category_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT c.id, c.name, c.description, c.is_active, c.created_at, c.updated_at,
                       (SELECT COUNT(*) FROM products p WHERE p.category_id = c.id) AS product_count
                FROM categories c
                WHERE c.id = %s
                """,
                (category_id,),
            )
            cat = cur.fetchone()
            if not cat:
                raise HTTPException(status_code=404, detail="Categoría no encontrada")
            cur.execute(
                """
                SELECT id, code, name, price, stock, is_active
                FROM products
                WHERE category_id = %s AND is_active = true
                ORDER BY name
                """,
                (category_id,),
            )
            cat["products"] = cur.fetchall()
            return {"category": cat}


@router.post("", dependencies=[Depends(require_permission("inventory:create"))])
def create_category(data: CategoryIn, user=Depends(get_current_user)):
    name = (data.name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="El nombre es requerido")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO categories (id, name, description, is_active)
                    VALUES (gen_random_uuid(), %s, %s, %s)
                    RETURNING id, name, description, is_active, created_at, updated_at
                    """,
                    (name, (data.description or "").strip() or None, bool(data.is_active)),
                )
                row = cur.fetchone()
                record_audit(cur, user, "CREATE", "Category", row["id"], new_value={"name": name})
                return {"category": row}


@router.patch("/{category_id}", dependencies=[Depends(require_permission("inventory:update"))])
def update_category(category_id: str, data: CategoryUpdate, user=Depends(get_current_user)):
    patch = data.model_dump(exclude_unset=True)
    if not patch:
        return {"ok": True}
    fields = []
    params = []
    if "name" in patch:
        nm = (patch["name"] or "").strip()
        if not nm:
            raise HTTPException(status_code=400, detail="El nombre no puede estar vacío")
        fields.append("name = %s")
        params.append(nm)
    if "description" in patch:
        fields.append("description = %s")
        params.append((patch["description"] or "").strip() or None)
    if "is_active" in patch and patch["is_active"] is not None:
        fields.append("is_active = %s")
        params.append(bool(patch["is_active"]))
    if not fields:
        return {"ok": True}

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT name, description, is_active FROM categories WHERE id = %s", (category_id,))
                before = cur.fetchone()
                if not before:
                    raise HTTPException(status_code=404, detail="Categoría no encontrada")
                params.append(category_id)
                cur.execute(
                    f"""
                    UPDATE categories
                    SET {', '.join(fields)}, updated_at = now()
                    WHERE id = %s
                    RETURNING id, name, description, is_active, created_at, updated_at
                    """,
                    params,
                )
                row = cur.fetchone()
                record_audit(cur, user, "UPDATE", "Category", category_id, old_value=before, new_value=patch)
                return {"category": row}


@router.delete("/{category_id}", dependencies=[Depends(require_permission("inventory:delete"))])
def delete_category(category_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, name FROM categories WHERE id = %s", (category_id,))
                cat = cur.fetchone()
                if not cat:
                    raise HTTPException(status_code=404, detail="Categoría no encontrada")
                cur.execute("SELECT COUNT(*) AS n FROM products WHERE category_id = %s", (category_id,))
                if int(cur.fetchone()["n"]) > 0:
                    raise HTTPException(
                        status_code=400,
                        detail="No se puede eliminar una categoría que tiene productos asignados",
                    )
                cur.execute("DELETE FROM categories WHERE id = %s", (category_id,))
                record_audit(cur, user, "DELETE", "Category", category_id, old_value={"name": cat["name"]})
                return {"ok": True}

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import Optional

from ..audit_log import record_audit
from ..db import get_conn
from ..deps import get_current_user, require_permission, user_can
from ..roles import role_options, validate_role_assignment
from ..security import hash_password
from ..validation import Email, UserRole

router = APIRouter(prefix="/users", tags=["users"])

MIN_PASSWORD_LENGTH = 8

_USER_COLUMNS = """
    id, username, email, first_name, last_name, phone, role, is_active,
    last_login_at, created_at, updated_at
"""


class UserIn(BaseModel):
    username: str
    email: Email
    password: str
    first_name: str
    last_name: str
    phone: Optional[str] = None
    role: UserRole = "CASHIER"
    is_active: bool = True


class UserUpdate(BaseModel):
    email: Optional[Email] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    role: Optional[UserRole] = None
    is_active: Optional[bool] = None
    password: Optional[str] = None


def _active_admin_count(cur, exclude_user_id) -> int:
    cur.execute(
        """
        SELECT COUNT(*) AS n
        FROM users
        WHERE role = 'ADMIN' AND is_active = true AND id <> %s
        """,
        (exclude_user_id,),
    )
    return int(cur.fetchone()["n"])


@router.get("/roles", dependencies=[Depends(require_permission("users:read"))])
def list_roles():
    return {"roles": role_options()}


@router.get("", dependencies=[Depends(require_permission("users:read"))])
def list_users(q: str = "", role: Optional[UserRole] = None, include_inactive: bool = True):
    sql = f"SELECT {_USER_COLUMNS} FROM users WHERE 1=1"
    params: list = []
    qq = (q or "").strip()
    if qq:
        like = f"%{qq}%"
        sql += " AND (username ILIKE %s OR email ILIKE %s OR first_name ILIKE %s OR last_name ILIKE %s)"
        params.extend([like, like, like, like])
    if role:
        sql += " AND role = %s"
        params.append(role)
    if not include_inactive:
        sql += " AND is_active = true"
    sql += " ORDER BY created_at DESC"
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return {"users": cur.fetchall()}


@router.get("/{user_id}", dependencies=[Depends(require_permission("users:read"))])
def get_user(user_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s", (user_id,))
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="Usuario no encontrado")
            return {"user": row}


@router.post("", dependencies=[Depends(require_permission("users:create"))])
def create_user(data: UserIn, user=Depends(get_current_user)):
    username = (data.username or "").strip()
    first_name = (data.first_name or "").strip()
    last_name = (data.last_name or "").strip()
    if not username or not first_name or not last_name:
        raise HTTPException(status_code=400, detail="Usuario, nombre y apellido son requeridos")
    if len(data.password or "") < MIN_PASSWORD_LENGTH:
        raise HTTPException(status_code=400, detail=f"La contraseña debe tener al menos {MIN_PASSWORD_LENGTH} caracteres")
    if not validate_role_assignment(user["role"], data.role):
        raise HTTPException(status_code=403, detail="No tiene permisos para asignar este rol")

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT 1 FROM users WHERE username = %s OR lower(email) = lower(%s)",
                    (username, data.email),
                )
                if cur.fetchone():
                    raise HTTPException(status_code=400, detail="El usuario o correo electrónico ya existe")
                cur.execute(
                    f"""
                    INSERT INTO users (id, username, email, hashed_password, first_name, last_name, phone, role, is_active)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        username,
                        data.email,
                        hash_password(data.password),
                        first_name,
                        last_name,
                        (data.phone or "").strip() or None,
                        data.role,
                        bool(data.is_active),
                    ),
                )
                row = cur.fetchone()
                record_audit(
                    cur, user, "USER_CREATE", "User", row["id"],
                    new_value={"username": username, "email": data.email, "role": data.role},
                )
                return {"user": row}


@router.patch("/{user_id}", dependencies=[Depends(require_permission("users:update"))])
def update_user(user_id: str, data: UserUpdate, user=Depends(get_current_user)):
    patch = data.model_dump(exclude_unset=True)
    if not patch:
        return {"ok": True}

    fields = []
    params = []
    for k in ("first_name", "last_name"):
        if k in patch:
            v = (patch[k] or "").strip()
            if not v:
                raise HTTPException(status_code=400, detail="El nombre y apellido no pueden estar vacíos")
            fields.append(f"{k} = %s")
            params.append(v)
    if "email" in patch:
        if not patch["email"]:
            raise HTTPException(status_code=400, detail="El correo electrónico es requerido")
        fields.append("email = %s")
        params.append(patch["email"])
    if "phone" in patch:
        fields.append("phone = %s")
        params.append((patch["phone"] or "").strip() or None)
    if "password" in patch and patch["password"]:
        if len(patch["password"]) < MIN_PASSWORD_LENGTH:
            raise HTTPException(status_code=400, detail=f"La contraseña debe tener al menos {MIN_PASSWORD_LENGTH} caracteres")
        fields.append("hashed_password = %s")
        params.append(hash_password(patch["password"]))
    if "role" in patch and patch["role"]:
        if not user_can(user, "users:change_role"):
            raise HTTPException(status_code=403, detail="No tiene permisos para cambiar roles")
        if not validate_role_assignment(user["role"], patch["role"]):
            raise HTTPException(status_code=403, detail="No tiene permisos para asignar este rol")
        fields.append("role = %s")
        params.append(patch["role"])
    if "is_active" in patch and patch["is_active"] is not None:
        if patch["is_active"] is False and str(user_id) == str(user["user_id"]):
            raise HTTPException(status_code=400, detail="No puede desactivar su propia cuenta")
        fields.append("is_active = %s")
        params.append(bool(patch["is_active"]))
    if not fields:
        return {"ok": True}

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s FOR UPDATE", (user_id,))
                before = cur.fetchone()
                if not before:
                    raise HTTPException(status_code=404, detail="Usuario no encontrado")
                demoting = before["role"] == "ADMIN" and patch.get("role") not in (None, "ADMIN")
                deactivating = before["role"] == "ADMIN" and patch.get("is_active") is False
                if (demoting or deactivating) and before["is_active"] and _active_admin_count(cur, user_id) == 0:
                    raise HTTPException(status_code=400, detail="Debe existir al menos un administrador activo")

                if "email" in patch:
                    cur.execute(
                        "SELECT 1 FROM users WHERE lower(email) = lower(%s) AND id <> %s",
                        (patch["email"], user_id),
                    )
                    if cur.fetchone():
                        raise HTTPException(status_code=400, detail="El correo electrónico ya está en uso")

                params.append(user_id)
                cur.execute(
                    f"""
                    UPDATE users
                    SET {', '.join(fields)}, updated_at = now()
                    WHERE id = %s
                    RETURNING {_USER_COLUMNS}
                    """,
                    params,
                )
                row = cur.fetchone()
                patch.pop("password", None)
                record_audit(
                    cur, user, "USER_UPDATE", "User", user_id,
                    old_value={k: before.get(k) for k in patch},
                    new_value=patch,
                )
                return {"user": row}


@router.delete("/{user_id}", dependencies=[Depends(require_permission("users:delete"))])
def deactivate_user(user_id: str, user=Depends(get_current_user)):
    if str(user_id) == str(user["user_id"]):
        raise HTTPException(status_code=400, detail="No puede desactivar su propia cuenta")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, role, is_active FROM users WHERE id = %s FOR UPDATE", (user_id,))
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="Usuario no encontrado")
                if row["role"] == "ADMIN" and row["is_active"] and _active_admin_count(cur, user_id) == 0:
                    raise HTTPException(status_code=400, detail="Debe existir al menos un administrador activo")
                cur.execute("UPDATE users SET is_active = false, updated_at = now() WHERE id = %s", (user_id,))
                cur.execute("UPDATE auth_sessions SET is_active = false WHERE user_id = %s", (user_id,))
                record_audit(cur, user, "USER_DEACTIVATE", "User", user_id, old_value={"is_active": row["is_active"]})
                return {"ok": True}

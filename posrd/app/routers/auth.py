from fastapi import APIRouter, HTTPException, Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from datetime import datetime, timedelta, timezone
from typing import Optional
from ..audit_log import record_audit
from ..config import settings
from ..db import get_conn
from ..deps import get_session, get_current_user, client_ip, SESSION_COOKIE_NAME
from ..roles import permissions_for, ROLE_NAMES
from ..security import hash_password, verify_password, needs_rehash, hash_session_token, new_session_token
from ..validation import Email

router = APIRouter(prefix="/auth", tags=["auth"])

MIN_PASSWORD_LENGTH = 8

_PROFILE_COLUMNS = """
    id, username, email, first_name, last_name, phone, role, is_active, last_login_at
"""


class LoginIn(BaseModel):
    username: Optional[str] = None
    email: Optional[str] = None
    password: str


def _profile(row: dict) -> dict:
    return {
        "id": row["id"],
        "username": row["username"],
        "email": row["email"],
        "first_name": row["first_name"],
        "last_name": row["last_name"],
        "phone": row.get("phone"),
        "role": row["role"],
        "role_name": ROLE_NAMES.get(row["role"], row["role"]),
        "is_active": row["is_active"],
        "last_login_at": row.get("last_login_at"),
        "permissions": permissions_for(row["role"]),
    }


@router.post("/login")
def login(data: LoginIn, request: Request):
    login_id = (data.username or data.email or "").strip()
    if not login_id or not data.password:
        raise HTTPException(status_code=400, detail="Usuario y contraseña son requeridos")
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {_PROFILE_COLUMNS}, hashed_password
                FROM users
                WHERE username = %s OR lower(email) = lower(%s)
                """,
                (login_id, login_id),
            )
            user = cur.fetchone()
            if not user or not user["is_active"]:
                raise HTTPException(status_code=401, detail="Credenciales inválidas")
            if not verify_password(data.password, user["hashed_password"]):
                raise HTTPException(status_code=401, detail="Credenciales inválidas")

            if needs_rehash(user["hashed_password"]):
                cur.execute(
                    """
                    UPDATE users
                    SET hashed_password = %s
                    WHERE id = %s
                    """,
                    (hash_password(data.password), user["id"]),
                )

            # Only a one-way hash of the token is stored.
            token = new_session_token()
            expires = datetime.now(timezone.utc) + timedelta(days=settings.session_days)
            ip = client_ip(request)
            user_agent = request.headers.get("user-agent")
            cur.execute(
                """
                INSERT INTO auth_sessions (id, user_id, token, expires_at, ip_address, user_agent)
                VALUES (gen_random_uuid(), %s, %s, %s, %s, %s)
                """,
                (user["id"], hash_session_token(token), expires, ip, user_agent),
            )
            cur.execute("UPDATE users SET last_login_at = now() WHERE id = %s", (user["id"],))
            record_audit(
                cur,
                {"user_id": user["id"], "ip_address": ip, "user_agent": user_agent},
                "LOGIN",
                "User",
                user["id"],
            )

    resp = JSONResponse(
        jsonable_encoder({"token": token, "expires_at": expires, "user": _profile(user)})
    )
    resp.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=not settings.is_dev,
        max_age=settings.session_days * 24 * 60 * 60,
        path="/",
    )
    return resp


@router.post("/logout")
def logout(session=Depends(get_session), user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE auth_sessions
                SET is_active = false
                WHERE id = %s
                """,
                (session["session_id"],),
            )
            record_audit(cur, user, "LOGOUT", "User", user["user_id"])
    resp = JSONResponse({"ok": True, "message": "Sesión cerrada exitosamente"})
    resp.delete_cookie(key=SESSION_COOKIE_NAME, path="/")
    return resp


@router.get("/profile")
def get_profile(user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {_PROFILE_COLUMNS} FROM users WHERE id = %s", (user["user_id"],))
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="Usuario no encontrado")
            return {"user": _profile(row)}


class ProfileUpdateIn(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[Email] = None
    phone: Optional[str] = None
    current_password: Optional[str] = None
    new_password: Optional[str] = None


@router.patch("/profile")
def update_profile(data: ProfileUpdateIn, user=Depends(get_current_user)):
    patch = data.model_dump(exclude_unset=True)
    current_password = patch.pop("current_password", None)
    new_password = patch.pop("new_password", None)

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

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                if new_password:
                    if len(new_password) < MIN_PASSWORD_LENGTH:
                        raise HTTPException(
                            status_code=400,
                            detail=f"La nueva contraseña debe tener al menos {MIN_PASSWORD_LENGTH} caracteres",
                        )
                    if not current_password:
                        raise HTTPException(status_code=400, detail="Se requiere la contraseña actual")
                    cur.execute("SELECT hashed_password FROM users WHERE id = %s", (user["user_id"],))
                    row = cur.fetchone()
                    if not row or not verify_password(current_password, row["hashed_password"]):
                        raise HTTPException(status_code=400, detail="La contraseña actual es incorrecta")
                    fields.append("hashed_password = %s")
                    params.append(hash_password(new_password))

                if "email" in patch:
                    cur.execute(
                        "SELECT 1 FROM users WHERE lower(email) = lower(%s) AND id <> %s",
                        (patch["email"], user["user_id"]),
                    )
                    if cur.fetchone():
                        raise HTTPException(status_code=400, detail="El correo electrónico ya está en uso")

                if not fields:
                    return {"ok": True}

                params.append(user["user_id"])
                cur.execute(
                    f"""
                    UPDATE users
                    SET {', '.join(fields)}, updated_at = now()
                    WHERE id = %s
                    RETURNING {_PROFILE_COLUMNS}
                    """,
                    params,
                )
                row = cur.fetchone()
                changed = sorted(patch.keys()) + (["password"] if new_password else [])
                record_audit(cur, user, "PROFILE_UPDATE", "User", user["user_id"], new_value={"fields": changed})
                return {"user": _profile(row)}

from fastapi import Header, HTTPException, Depends, Cookie, Request
from .db import get_conn
from .roles import has_permission, has_any_permission
from .security import hash_session_token
from datetime import datetime, timezone
from typing import Optional


SESSION_COOKIE_NAME = "posrd_session"


def _extract_session_token(authorization: Optional[str], cookie_token: Optional[str]) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
        if token:
            return token
    if cookie_token:
        return cookie_token
    raise HTTPException(status_code=401, detail="No autorizado")


def client_ip(request: Optional[Request]) -> Optional[str]:
    if request is None:
        return None
    fwd = (request.headers.get("x-forwarded-for") or "").split(",", 1)[0].strip()
    if fwd:
        return fwd
    real = (request.headers.get("x-real-ip") or "").strip()
    if real:
        return real
    return request.client.host if request.client else None


def get_session(
    authorization: Optional[str] = Header(None),
    cookie_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
):
    token = _extract_session_token(authorization, cookie_token)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id AS session_id, s.user_id, s.expires_at, s.is_active,
                       u.username, u.email, u.role, u.first_name, u.last_name,
                       u.is_active AS user_active
                FROM auth_sessions s
                JOIN users u ON u.id = s.user_id
                WHERE s.token = %s
                """,
                (hash_session_token(token),),
            )
            row = cur.fetchone()
            now = datetime.now(timezone.utc)
            if not row or not row["is_active"] or not row["user_active"] or row["expires_at"] < now:
                raise HTTPException(status_code=401, detail="No autorizado")
            return {
                "session_id": row["session_id"],
                "user_id": row["user_id"],
                "username": row["username"],
                "email": row["email"],
                "role": row["role"],
                "name": f"{row['first_name']} {row['last_name']}".strip(),
                "token": token,
            }


def get_current_user(request: Request, session=Depends(get_session)):
    return {
        "user_id": session["user_id"],
        "username": session["username"],
        "email": session["email"],
        "role": session["role"],
        "name": session["name"],
        "ip_address": client_ip(request),
        "user_agent": request.headers.get("user-agent"),
    }


def require_permission(*codes: str):
    """
    Dependency factory: the caller's role must grant at least one of `codes`.
    """
    def _dep(user=Depends(get_current_user)):
        if not has_any_permission(user["role"], codes):
            raise HTTPException(status_code=403, detail="Acceso denegado")
        return True
    return _dep


def require_role(*roles: str):
    def _dep(user=Depends(get_current_user)):
        if user["role"] not in roles:
            raise HTTPException(status_code=403, detail="Acceso denegado")
        return True
    return _dep


def user_can(user: dict, code: str) -> bool:
    return has_permission(user.get("role"), code)

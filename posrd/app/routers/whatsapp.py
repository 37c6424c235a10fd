import uuid
from datetime import datetime, timezone
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from ..audit_log import record_audit
from ..config import settings
from ..db import get_conn
from ..deps import get_current_user, require_permission, require_role
from ..logging_utils import json_log
from ..pagination import page_offset, pagination
from ..whatsapp_api import WhatsappError, normalize_phone, render_template, send_text, template_variables

router = APIRouter(prefix="/whatsapp", tags=["whatsapp"])

_READ = Depends(require_permission("sales:read"))
_SEND = Depends(require_permission("sales:create"))
_MANAGE = Depends(require_role("ADMIN", "MANAGER"))

_MESSAGE_COLUMNS = """
    m.id, m.customer_id, c.name AS customer_name, m.phone, m.message, m.type, m.status,
    m.provider_message_id, m.broadcast_id, m.error, m.sent_by, m.created_at, m.sent_at
"""


class TemplateIn(BaseModel):
    name: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    template: str = Field(..., min_length=1)


class MessageIn(BaseModel):
    phone: str = Field(..., min_length=7)
    message: str = Field(..., min_length=1, max_length=4096)
    type: str = "SUPPORT"
    customer_id: Optional[str] = None


class BroadcastIn(BaseModel):
    message: Optional[str] = Field(None, max_length=4096)
    template_id: Optional[str] = None
    variables: Dict[str, str] = Field(default_factory=dict)
    type: str = "PROMOTION"


def dispatch(phone: str, message: str) -> dict:
    """
    Hand one message to the Cloud API. Without credentials the message is
    only stored as QUEUED.
    """
    if not settings.whatsapp_enabled:
        return {"status": "QUEUED", "provider_message_id": None, "error": None, "sent_at": None}
    try:
        provider_id = send_text(phone, message)
    except WhatsappError as ex:
        json_log("warn", "whatsapp.send_failed", phone=normalize_phone(phone), error=str(ex))
        return {"status": "FAILED", "provider_message_id": None, "error": str(ex)[:500], "sent_at": None}
    return {"status": "SENT", "provider_message_id": provider_id or None, "error": None,
            "sent_at": datetime.now(timezone.utc)}


def _insert_message(cur, *, phone, message, type_, customer_id, user_id, result, broadcast_id=None):
    cur.execute(
        """
        INSERT INTO whatsapp_messages (id, customer_id, phone, message, type, status, provider_message_id,
                                       broadcast_id, error, sent_by, sent_at)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (
            customer_id,
            phone,
            message,
            type_,
            result["status"],
            result["provider_message_id"],
            broadcast_id,
            result["error"],
            user_id,
            result["sent_at"],
        ),
    )
    return cur.fetchone()["id"]


@router.get("/templates", dependencies=[_READ])
def list_templates(include_inactive: bool = False):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT id, name, type, template, variables, is_active, created_at
                FROM whatsapp_templates
                {"" if include_inactive else "WHERE is_active = true"}
                ORDER BY name
                """
            )
            return {"templates": cur.fetchall()}


@router.post("/templates", dependencies=[_MANAGE], status_code=201)
def create_template(data: TemplateIn, user=Depends(get_current_user)):
    variables = template_variables(data.template)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO whatsapp_templates (id, name, type, template, variables, is_active)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, true)
                    RETURNING id, name, type, template, variables, is_active, created_at
                    """,
                    (data.name.strip(), data.type.strip().upper(), data.template, variables),
                )
                row = cur.fetchone()
                record_audit(cur, user, "CREATE", "WhatsappTemplate", row["id"], new_value={"name": row["name"]})
                return {"template": row}


@router.get("/messages", dependencies=[_READ])
def list_messages(
    phone: Optional[str] = None,
    customer_id: Optional[str] = None,
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
):
    where = ["1=1"]
    params: list = []
    if phone:
        where.append("m.phone = %s")
        params.append(normalize_phone(phone))
    if customer_id:
        where.append("m.customer_id = %s")
        params.append(customer_id)
    if status:
        where.append("m.status::text = %s")
        params.append(status.strip().upper())
    where_sql = " AND ".join(where)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT COUNT(*) AS n FROM whatsapp_messages m WHERE {where_sql}", params)
            total = cur.fetchone()["n"]
            cur.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS}
                FROM whatsapp_messages m
                LEFT JOIN customers c ON c.id = m.customer_id
                WHERE {where_sql}
                ORDER BY m.created_at DESC
                LIMIT %s OFFSET %s
                """,
                params + [limit, page_offset(page, limit)],
            )
            return {"messages": cur.fetchall(), "pagination": pagination(page, limit, total)}


@router.post("/messages", dependencies=[_SEND])
def send_message(data: MessageIn, user=Depends(get_current_user)):
    phone = normalize_phone(data.phone)
    if len(phone) < 10:
        raise HTTPException(status_code=400, detail="Número de teléfono inválido")
    result = dispatch(phone, data.message)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                message_id = _insert_message(
                    cur, phone=phone, message=data.message, type_=data.type.strip().upper(),
                    customer_id=data.customer_id, user_id=user["user_id"], result=result,
                )
                cur.execute(
                    f"SELECT {_MESSAGE_COLUMNS} FROM whatsapp_messages m "
                    "LEFT JOIN customers c ON c.id = m.customer_id WHERE m.id = %s",
                    (message_id,),
                )
                return {"message": cur.fetchone()}


@router.post("/broadcast", dependencies=[_MANAGE])
def broadcast(data: BroadcastIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            template = None
            if data.template_id:
                cur.execute(
                    "SELECT id, template FROM whatsapp_templates WHERE id = %s AND is_active = true",
                    (data.template_id,),
                )
                template = cur.fetchone()
                if not template:
                    raise HTTPException(status_code=404, detail="Plantilla no encontrada")
            body = template["template"] if template else (data.message or "").strip()
            if not body:
                raise HTTPException(status_code=400, detail="Mensaje es requerido")
            cur.execute(
                """
                SELECT id, name, phone
                FROM customers
                WHERE is_active = true AND phone IS NOT NULL AND phone <> ''
                ORDER BY name
                """
            )
            customers = cur.fetchall()

    broadcast_id = str(uuid.uuid4())
    results = []
    for c in customers:
        phone = normalize_phone(c["phone"])
        text = render_template(body, {**data.variables, "customer_name": c["name"]})
        results.append({"customer": c, "phone": phone, "text": text, "result": dispatch(phone, text)})

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                for r in results:
                    r["message_id"] = _insert_message(
                        cur, phone=r["phone"], message=r["text"], type_=data.type.strip().upper(),
                        customer_id=r["customer"]["id"], user_id=user["user_id"], result=r["result"],
                        broadcast_id=broadcast_id,
                    )
                record_audit(
                    cur, user, "WHATSAPP_BROADCAST", "WhatsappMessage", broadcast_id,
                    new_value={"recipients": len(results), "template_id": data.template_id},
                )
    json_log("info", "whatsapp.broadcast", broadcast_id=broadcast_id, recipients=len(results))
    return {
        "broadcast_id": broadcast_id,
        "total_sent": sum(1 for r in results if r["result"]["status"] == "SENT"),
        "total_queued": sum(1 for r in results if r["result"]["status"] == "QUEUED"),
        "total_failed": sum(1 for r in results if r["result"]["status"] == "FAILED"),
        "results": [
            {
                "message_id": r["message_id"],
                "customer_id": r["customer"]["id"],
                "customer_name": r["customer"]["name"],
                "phone": r["phone"],
                "status": r["result"]["status"],
                "error": r["result"]["error"],
            }
            for r in results
        ],
    }

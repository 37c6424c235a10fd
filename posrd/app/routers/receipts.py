from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel

from ..audit_log import record_audit
from ..config import settings
from ..db import get_conn
from ..deps import get_current_user, require_permission, require_role
from ..mailer import MailError, send_email
from ..receipt_format import render_html, render_thermal
from ..validation import Email
from .business_settings import default_settings
from .sales import sale_detail

router = APIRouter(prefix="/receipts", tags=["receipts"])

_READ = Depends(require_permission("sales:read"))


class ReceiptEmailIn(BaseModel):
    email: Email


def build_receipt(cur, sale_id: str) -> dict:
    sale = sale_detail(cur, sale_id)
    business = default_settings(cur)
    if not business:
        raise HTTPException(status_code=500, detail="No se encontraron configuraciones del negocio")

    customer = None
    if sale.get("customer_id"):
        customer = {
            "id": sale["customer_id"],
            "name": sale["customer_db_name"],
            "rnc": sale["customer_db_rnc"],
            "cedula": sale["customer_cedula"],
            "email": sale["customer_email"],
            "phone": sale["customer_phone"],
            "address": sale["customer_address"],
        }
    elif sale.get("customer_name") or sale.get("customer_rnc"):
        # One-time customer typed at the register.
        customer = {"id": None, "name": sale.get("customer_name") or "Cliente", "rnc": sale.get("customer_rnc")}

    return {
        "business": {
            k: business.get(k)
            for k in ("name", "rnc", "address", "phone", "email", "website", "slogan", "logo",
                      "receipt_footer", "warranty_info")
        },
        "sale": sale,
        "cashier_name": sale.get("cashier_name"),
        "customer": customer,
    }


@router.get("/{sale_id}", dependencies=[_READ])
def get_receipt(sale_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"receipt": build_receipt(cur, sale_id)}


@router.get("/{sale_id}/thermal", dependencies=[_READ])
def get_thermal_receipt(sale_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            receipt = build_receipt(cur, sale_id)
    return Response(content=render_thermal(receipt), media_type="text/plain; charset=utf-8")


@router.post("/{sale_id}/email", dependencies=[Depends(require_role("ADMIN", "MANAGER", "CASHIER"))])
def email_receipt(sale_id: str, data: ReceiptEmailIn, user=Depends(get_current_user)):
    if not settings.smtp_enabled:
        raise HTTPException(status_code=503, detail="El envío de correos no está configurado")
    with get_conn() as conn:
        with conn.cursor() as cur:
            receipt = build_receipt(cur, sale_id)
    sale = receipt["sale"]
    subject = f"Recibo {sale['sale_number']} - {receipt['business']['name']}"
    try:
        send_email(data.email, subject, text=render_thermal(receipt), html=render_html(receipt))
    except MailError:
        raise HTTPException(status_code=502, detail="No se pudo enviar el correo")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                record_audit(
                    cur, user, "RECEIPT_EMAIL", "Sale", sale["id"],
                    new_value={"email": data.email, "sale_number": sale["sale_number"]},
                )
    return {"message": "Recibo enviado exitosamente", "email": data.email}

import os
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, Response, UploadFile
from pydantic import BaseModel, Field, field_validator

from ..audit_log import record_audit
from ..config import settings
from ..db import get_conn
from ..deps import get_current_user, require_permission
from ..dominican import digits_only
from ..logging_utils import json_log
from ..storage.s3 import delete_object, get_bytes, object_key, put_bytes, s3_enabled
from ..validation import Email

router = APIRouter(tags=["business-settings"])

_MANAGE = Depends(require_permission("system:manage_settings"))

_COLUMNS = """
    id, name, rnc, address, phone, email, website, slogan, city, province, country,
    postal_code, tax_regime, economic_activity, receipt_footer, invoice_terms, warranty_info,
    logo, is_default, is_active, created_at, updated_at
"""

_OPTIONAL_TEXT = ("website", "slogan", "postal_code", "economic_activity", "receipt_footer", "invoice_terms", "warranty_info")

LOGO_TYPES = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/svg+xml": "svg",
    "image/webp": "webp",
    "image/gif": "gif",
}
_EXT_TYPES = {"png": "image/png", "jpg": "image/jpeg", "svg": "image/svg+xml", "webp": "image/webp", "gif": "image/gif"}
_S3_PREFIX = "s3:"


class BusinessSettingsIn(BaseModel):
    name: str = Field(..., min_length=1)
    rnc: str
    address: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    email: Email
    website: Optional[str] = None
    slogan: Optional[str] = None
    city: str = Field(..., min_length=1)
    province: str = Field(..., min_length=1)
    country: str = "República Dominicana"
    postal_code: Optional[str] = None
    tax_regime: str = "Régimen Ordinario"
    economic_activity: Optional[str] = None
    receipt_footer: Optional[str] = None
    invoice_terms: Optional[str] = None
    warranty_info: Optional[str] = None
    is_default: bool = False

    @field_validator("rnc")
    @classmethod
    def _rnc_length(cls, v: str) -> str:
        v = digits_only(v)
        if not 9 <= len(v) <= 11:
            raise ValueError("RNC debe tener entre 9 y 11 dígitos")
        return v

    @field_validator("name", "address", "phone", "city", "province")
    @classmethod
    def _required(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("campo requerido")
        return v


def _values(data: BusinessSettingsIn) -> dict:
    out = data.model_dump(exclude={"is_default"})
    for k in _OPTIONAL_TEXT:
        out[k] = (out.get(k) or "").strip() or None
    return out


def default_settings(cur, *, for_update: bool = False):
    cur.execute(
        f"""
        SELECT {_COLUMNS}
        FROM business_settings
        WHERE is_default = true AND is_active = true
        ORDER BY created_at
        LIMIT 1
        {"FOR UPDATE" if for_update else ""}
        """
    )
    return cur.fetchone()


@router.get("/business-settings")
def get_business_settings(_user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            row = default_settings(cur)
            if not row:
                raise HTTPException(status_code=404, detail="No se encontraron configuraciones del negocio")
            return {"business_settings": row}


@router.put("/business-settings", dependencies=[_MANAGE])
def put_business_settings(data: BusinessSettingsIn, user=Depends(get_current_user)):
    values = _values(data)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                current = default_settings(cur, for_update=True)
                if current:
                    fields = [f"{k} = %s" for k in values]
                    cur.execute(
                        f"""
                        UPDATE business_settings
                        SET {', '.join(fields)}, updated_at = now()
                        WHERE id = %s
                        RETURNING {_COLUMNS}
                        """,
                        list(values.values()) + [current["id"]],
                    )
                    row = cur.fetchone()
                    record_audit(
                        cur, user, "UPDATE", "BusinessSettings", row["id"],
                        old_value={k: current.get(k) for k in values}, new_value=values,
                    )
                else:
                    row = _insert(cur, values, is_default=True)
                    record_audit(cur, user, "CREATE", "BusinessSettings", row["id"], new_value=values)
                return {"business_settings": row}


def _insert(cur, values: dict, *, is_default: bool):
    cols = list(values.keys())
    cur.execute(
        f"""
        INSERT INTO business_settings (id, {', '.join(cols)}, is_default, is_active)
        VALUES (gen_random_uuid(), {', '.join(['%s'] * len(cols))}, %s, true)
        RETURNING {_COLUMNS}
        """,
        list(values.values()) + [is_default],
    )
    return cur.fetchone()


@router.post("/business-settings", dependencies=[_MANAGE], status_code=201)
def create_business_settings(data: BusinessSettingsIn, user=Depends(get_current_user)):
    values = _values(data)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                if data.is_default:
                    cur.execute("UPDATE business_settings SET is_default = false, updated_at = now() WHERE is_default = true")
                row = _insert(cur, values, is_default=bool(data.is_default))
                record_audit(cur, user, "CREATE", "BusinessSettings", row["id"], new_value=values)
                return {"business_settings": row}


def _remove_logo(ref: Optional[str]) -> None:
    if not ref:
        return
    try:
        if ref.startswith(_S3_PREFIX):
            delete_object(key=ref[len(_S3_PREFIX):])
        else:
            path = os.path.join(settings.logo_dir, os.path.basename(ref))
            if os.path.exists(path):
                os.remove(path)
    except Exception as ex:
        # A stale logo file must not block the new upload.
        json_log("warn", "logo.remove_failed", ref=ref, error=str(ex))


@router.post("/upload/logo", dependencies=[_MANAGE])
def upload_logo(logo: UploadFile = File(...), user=Depends(get_current_user)):
    content_type = (logo.content_type or "").strip().lower()
    ext = LOGO_TYPES.get(content_type)
    if not ext:
        raise HTTPException(
            status_code=400,
            detail=f"Formato no soportado: {content_type or 'desconocido'}. Formatos permitidos: PNG, JPG, JPEG, SVG, WebP, GIF",
        )
    raw = logo.file.read() or b""
    if not raw:
        raise HTTPException(status_code=400, detail="No se proporcionó ningún archivo")
    if len(raw) > settings.logo_max_mb * 1024 * 1024:
        raise HTTPException(
            status_code=400,
            detail=f"El archivo es demasiado grande. Tamaño máximo: {settings.logo_max_mb}MB",
        )

    filename = f"logo.{ext}"
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                current = default_settings(cur, for_update=True)
                if not current:
                    raise HTTPException(status_code=404, detail="No se encontraron configuraciones del negocio")
                previous = current.get("logo")
                if s3_enabled():
                    key = object_key(f"logos/{filename}")
                    put_bytes(key=key, data=raw, content_type=content_type)
                    ref = f"{_S3_PREFIX}{key}"
                else:
                    os.makedirs(settings.logo_dir, exist_ok=True)
                    with open(os.path.join(settings.logo_dir, filename), "wb") as f:
                        f.write(raw)
                    ref = f"/{filename}"
                if previous and previous != ref:
                    _remove_logo(previous)
                cur.execute(
                    "UPDATE business_settings SET logo = %s, updated_at = now() WHERE id = %s",
                    (ref, current["id"]),
                )
                record_audit(
                    cur, user, "LOGO_UPLOAD", "BusinessSettings", current["id"],
                    old_value={"logo": previous}, new_value={"logo": ref, "size": len(raw), "type": content_type},
                )
    json_log("info", "logo.uploaded", ref=ref, size=len(raw))
    return {
        "message": "Logo subido exitosamente",
        "logo": {"filename": filename, "path": ref, "size": len(raw), "type": content_type},
    }


@router.get("/logo")
def get_logo():
    with get_conn() as conn:
        with conn.cursor() as cur:
            row = default_settings(cur)
    ref = (row or {}).get("logo")
    if not ref:
        raise HTTPException(status_code=404, detail="Logo no encontrado")
    if ref.startswith(_S3_PREFIX):
        data, content_type = get_bytes(key=ref[len(_S3_PREFIX):])
    else:
        name = os.path.basename(ref)
        path = os.path.join(settings.logo_dir, name)
        if not os.path.exists(path):
            raise HTTPException(status_code=404, detail="Logo no encontrado")
        with open(path, "rb") as f:
            data = f.read()
        content_type = _EXT_TYPES.get(name.rsplit(".", 1)[-1], "application/octet-stream")
    return Response(content=data, media_type=content_type, headers={"Cache-Control": "public, max-age=300"})

from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from pydantic import BaseModel, Field

from ..audit_log import record_audit
from ..config import settings
from ..db import get_conn
from ..deps import get_current_user, require_permission, require_role
from ..dominican import digits_only, format_rnc, validate_rnc
from ..logging_utils import json_log
from ..rnc_sync import RncSyncError, load_schedule, registry_status, save_schedule, sync_registry
from ..validation import HHMM

router = APIRouter(prefix="/rnc", tags=["rnc"])

_RNC_COLUMNS = "rnc, name, commercial_name, category, status, last_sync"

# Any signed-in role can look up an RNC while selling or registering suppliers.
_LOOKUP = Depends(require_permission("sales:read", "inventory:read"))


class RncSearchIn(BaseModel):
    query: str
    limit: int = Field(20, ge=1)


class RncScheduleIn(BaseModel):
    enabled: bool
    schedule_time: HHMM = "02:00"
    timezone: Optional[str] = None
    auto_sync_enabled: Optional[bool] = None


def _with_display(row: dict) -> dict:
    row["formatted_rnc"] = format_rnc(row["rnc"])
    return row


@router.get("/validate", dependencies=[_LOOKUP])
def validate(rnc: Optional[str] = None):
    if not rnc or not rnc.strip():
        raise HTTPException(status_code=400, detail="RNC es requerido")
    clean = digits_only(rnc)
    if not validate_rnc(clean):
        return {"success": False, "error": "Formato de RNC inválido", "data": None}
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {_RNC_COLUMNS} FROM rnc_registry WHERE rnc = %s", (clean,))
            row = cur.fetchone()
    if not row:
        return {"success": False, "error": "RNC no encontrado en la base de datos de la DGII", "data": None}
    row = _with_display(row)
    if (row["status"] or "").upper() != "ACTIVO":
        return {"success": False, "error": f"RNC está {row['status'].lower()} en la DGII", "data": row}
    return {"success": True, "message": "RNC válido y activo", "data": row}


@router.post("/validate", dependencies=[_LOOKUP])
def search_registry(data: RncSearchIn):
    q = (data.query or "").strip()
    if len(q) < 3:
        raise HTTPException(status_code=400, detail="Query debe tener al menos 3 caracteres")
    limit = min(data.limit, 50)
    digits = digits_only(q)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {_RNC_COLUMNS}
                FROM rnc_registry
                WHERE status = 'ACTIVO'
                  AND ((%s <> '' AND rnc LIKE %s) OR name ILIKE %s OR commercial_name ILIKE %s)
                ORDER BY name
                LIMIT %s
                """,
                (digits, f"{digits}%", f"%{q}%", f"%{q}%", limit),
            )
            rows = [_with_display(r) for r in cur.fetchall()]
    return {"success": True, "data": rows, "total": len(rows)}


@router.get("/search", dependencies=[_LOOKUP])
def quick_search(q: str = ""):
    q = (q or "").strip()
    if len(q) < 3:
        return {"results": []}
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {_RNC_COLUMNS}
                FROM rnc_registry
                WHERE name ILIKE %s OR commercial_name ILIKE %s OR rnc LIKE %s
                ORDER BY name
                LIMIT 10
                """,
                (f"%{q}%", f"%{q}%", f"{digits_only(q) or q}%"),
            )
            return {"results": [_with_display(r) for r in cur.fetchall()]}


@router.get("/sync", dependencies=[_LOOKUP])
def sync_status():
    with get_conn() as conn:
        with conn.cursor() as cur:
            return registry_status(cur)


@router.post("/sync", dependencies=[Depends(require_role("ADMIN"))])
def sync(file: Optional[UploadFile] = File(None), user=Depends(get_current_user)):
    raw = file.file.read() if file is not None else None
    if raw is not None and not raw:
        raise HTTPException(status_code=400, detail="El archivo está vacío")
    try:
        with get_conn() as conn:
            result = sync_registry(
                conn,
                raw=raw,
                url=settings.dgii_rnc_url,
                timeout=settings.dgii_rnc_timeout_seconds,
            )
            with conn.transaction():
                with conn.cursor() as cur:
                    record_audit(cur, user, "RNC_SYNC", "RncRegistry", None, new_value=result)
    except RncSyncError as e:
        json_log("error", "rnc.sync.failed", error=str(e))
        raise HTTPException(status_code=400 if raw is not None else 502, detail=str(e))
    return {"success": True, "message": "Sincronización de RNC completada", "data": result}


@router.get("/schedule", dependencies=[_LOOKUP])
def get_schedule():
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"schedule": load_schedule(cur)}


@router.put("/schedule", dependencies=[Depends(require_role("ADMIN"))])
def update_schedule(data: RncScheduleIn, user=Depends(get_current_user)):
    if data.timezone:
        try:
            ZoneInfo(data.timezone.strip())
        except (ZoneInfoNotFoundError, ValueError):
            raise HTTPException(status_code=400, detail="Zona horaria inválida")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                before = load_schedule(cur)
                patch = {
                    "enabled": data.enabled,
                    "schedule_time": data.schedule_time,
                    "timezone": (data.timezone or "").strip() or before["timezone"] or settings.rnc_sync_timezone,
                    "auto_sync_enabled": data.enabled if data.auto_sync_enabled is None else data.auto_sync_enabled,
                    "last_scheduled_run": before.get("last_scheduled_run"),
                }
                saved = save_schedule(cur, patch)
                record_audit(cur, user, "RNC_SCHEDULE_UPDATE", "AppSetting", "rnc_sync_schedule",
                             old_value=before, new_value=saved)
                return {"schedule": saved}

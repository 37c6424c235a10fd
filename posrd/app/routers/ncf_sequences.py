from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..audit_log import record_audit
from ..db import get_conn
from ..deps import require_permission, get_current_user
from ..dominican import NCF_MAX_NUMBER, NCF_TYPE_NAMES
from ..ncf import sequence_status
from ..validation import NcfType

router = APIRouter(prefix="/ncf-sequences", tags=["ncf-sequences"])

_ADMIN = Depends(require_permission("financial:manage_ncf"))

_SEQ_COLUMNS = "id, type, current_number, max_number, expiry_date, is_active, created_at, updated_at"


class NcfSequenceIn(BaseModel):
    type: NcfType
    current_number: int = Field(0, ge=0, le=NCF_MAX_NUMBER)
    max_number: int = Field(..., ge=1, le=NCF_MAX_NUMBER)
    expiry_date: Optional[datetime] = None
    is_active: bool = True


class NcfSequenceUpdate(BaseModel):
    current_number: Optional[int] = Field(None, ge=0, le=NCF_MAX_NUMBER)
    max_number: Optional[int] = Field(None, ge=1, le=NCF_MAX_NUMBER)
    expiry_date: Optional[datetime] = None
    is_active: Optional[bool] = None


def _with_status(row: dict) -> dict:
    row.update(sequence_status(row["current_number"], row["max_number"], row.get("expiry_date")))
    row["type_name"] = NCF_TYPE_NAMES.get(row["type"], row["type"])
    return row


# Cashiers read the sequences to pick a receipt type at the counter.
@router.get("", dependencies=[Depends(require_permission("sales:create"))])
def list_sequences():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {_SEQ_COLUMNS} FROM ncf_sequences ORDER BY type, created_at DESC")
            return {"sequences": [_with_status(r) for r in cur.fetchall()]}


@router.get("/{sequence_id}", dependencies=[_ADMIN])
def get_sequence(sequence_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {_SEQ_COLUMNS} FROM ncf_sequences WHERE id = %s", (sequence_id,))
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="Secuencia NCF no encontrada")
            cur.execute(
                """
                SELECT id, sale_number, ncf, total, status, created_at
                FROM sales
                WHERE ncf_sequence_id = %s
                ORDER BY created_at DESC
                LIMIT 10
                """,
                (sequence_id,),
            )
            row = _with_status(row)
            row["recent_sales"] = cur.fetchall()
            return {"sequence": row}


@router.post("", dependencies=[_ADMIN])
def create_sequence(data: NcfSequenceIn, user=Depends(get_current_user)):
    if data.current_number > data.max_number:
        raise HTTPException(status_code=400, detail="El número actual no puede ser mayor que el número máximo")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                if data.is_active:
                    cur.execute(
                        "SELECT 1 FROM ncf_sequences WHERE type = %s AND is_active = true",
                        (data.type,),
                    )
                    if cur.fetchone():
                        raise HTTPException(
                            status_code=400,
                            detail=f"Ya existe una secuencia activa para el tipo {data.type}",
                        )
                cur.execute(
                    f"""
                    INSERT INTO ncf_sequences (id, type, current_number, max_number, expiry_date, is_active)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s)
                    RETURNING {_SEQ_COLUMNS}
                    """,
                    (data.type, data.current_number, data.max_number, data.expiry_date, bool(data.is_active)),
                )
                row = cur.fetchone()
                record_audit(cur, user, "CREATE", "NCF_SEQUENCE", row["id"], new_value=row)
                return {"sequence": _with_status(row)}


@router.patch("/{sequence_id}", dependencies=[_ADMIN])
def update_sequence(sequence_id: str, data: NcfSequenceUpdate, user=Depends(get_current_user)):
    patch = data.model_dump(exclude_unset=True)
    for k in ("current_number", "max_number", "is_active"):
        if k in patch and patch[k] is None:
            patch.pop(k)
    if not patch:
        return {"ok": True}
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(f"SELECT {_SEQ_COLUMNS} FROM ncf_sequences WHERE id = %s FOR UPDATE", (sequence_id,))
                before = cur.fetchone()
                if not before:
                    raise HTTPException(status_code=404, detail="Secuencia NCF no encontrada")
                current = patch.get("current_number", before["current_number"])
                maximum = patch.get("max_number", before["max_number"])
                if current > maximum:
                    if "max_number" in patch and "current_number" not in patch:
                        raise HTTPException(status_code=400, detail="El número máximo no puede ser menor que el número actual")
                    raise HTTPException(status_code=400, detail="El número actual no puede ser mayor que el número máximo")
                if patch.get("is_active") and not before["is_active"]:
                    cur.execute(
                        "SELECT 1 FROM ncf_sequences WHERE type = %s AND is_active = true AND id <> %s",
                        (before["type"], sequence_id),
                    )
                    if cur.fetchone():
                        raise HTTPException(
                            status_code=400,
                            detail=f"Ya existe una secuencia activa para el tipo {before['type']}",
                        )
                fields = [f"{k} = %s" for k in patch]
                cur.execute(
                    f"""
                    UPDATE ncf_sequences
                    SET {', '.join(fields)}, updated_at = now()
                    WHERE id = %s
                    RETURNING {_SEQ_COLUMNS}
                    """,
                    list(patch.values()) + [sequence_id],
                )
                row = cur.fetchone()
                record_audit(
                    cur, user, "UPDATE", "NCF_SEQUENCE", sequence_id,
                    old_value={k: before.get(k) for k in patch},
                    new_value=patch,
                )
                return {"sequence": _with_status(row)}


@router.delete("/{sequence_id}", dependencies=[_ADMIN])
def delete_sequence(sequence_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(f"SELECT {_SEQ_COLUMNS} FROM ncf_sequences WHERE id = %s FOR UPDATE", (sequence_id,))
                seq = cur.fetchone()
                if not seq:
                    raise HTTPException(status_code=404, detail="Secuencia NCF no encontrada")
                cur.execute("SELECT 1 FROM sales WHERE ncf_sequence_id = %s LIMIT 1", (sequence_id,))
                if cur.fetchone():
                    # Issued NCFs must stay traceable: deactivate instead of deleting.
                    cur.execute(
                        "UPDATE ncf_sequences SET is_active = false, updated_at = now() WHERE id = %s",
                        (sequence_id,),
                    )
                    record_audit(cur, user, "DEACTIVATE", "NCF_SEQUENCE", sequence_id, old_value={"is_active": seq["is_active"]})
                    return {"deleted": False, "deactivated": True,
                            "message": "La secuencia tiene ventas asociadas y fue desactivada"}
                cur.execute("DELETE FROM ncf_sequences WHERE id = %s", (sequence_id,))
                record_audit(cur, user, "DELETE", "NCF_SEQUENCE", sequence_id, old_value=seq)
                return {"deleted": True, "deactivated": False}

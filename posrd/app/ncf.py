from datetime import datetime, timezone
from typing import Optional

from fastapi import HTTPException

from .dominican import generate_ncf
from .logging_utils import json_log

CRITICAL_REMAINING = 100
WARNING_REMAINING = 1000


def sequence_status(current_number: int, max_number: int, expiry_date: Optional[datetime] = None, *, now=None) -> dict:
    """
    Usage figures shown next to each sequence. `status` is one of
    exhausted / critical / warning / active.
    """
    now = now or datetime.now(timezone.utc)
    remaining = int(max_number) - int(current_number)
    usage = round((int(current_number) / int(max_number)) * 100) if max_number else 100
    if remaining <= 0:
        status = "exhausted"
    elif remaining <= CRITICAL_REMAINING:
        status = "critical"
    elif remaining <= WARNING_REMAINING:
        status = "warning"
    else:
        status = "active"
    return {
        "total": int(max_number),
        "remaining": remaining,
        "usage_percentage": usage,
        "status": status,
        "is_expired": bool(expiry_date and expiry_date < now),
    }


def allocate_ncf(cur, ncf_type: str) -> dict:
    """
    Take the next number from the active sequence of `ncf_type`.

    Must run inside the caller's transaction: the row lock is held until the
    sale is committed, so concurrent sales never receive the same NCF.
    """
    cur.execute(
        """
        SELECT id, type, current_number, max_number, expiry_date
        FROM ncf_sequences
        WHERE type = %s AND is_active = true
        ORDER BY created_at
        LIMIT 1
        FOR UPDATE
        """,
        (ncf_type,),
    )
    seq = cur.fetchone()
    if not seq:
        raise HTTPException(status_code=409, detail=f"No hay secuencia NCF activa para el tipo {ncf_type}")
    if seq["expiry_date"] and seq["expiry_date"] < datetime.now(timezone.utc):
        raise HTTPException(status_code=409, detail=f"La secuencia NCF {ncf_type} está vencida")
    next_number = int(seq["current_number"]) + 1
    if next_number > int(seq["max_number"]):
        raise HTTPException(status_code=409, detail=f"La secuencia NCF {ncf_type} está agotada")

    cur.execute(
        """
        UPDATE ncf_sequences
        SET current_number = %s, updated_at = now()
        WHERE id = %s
        """,
        (next_number, seq["id"]),
    )
    remaining = int(seq["max_number"]) - next_number
    if remaining <= CRITICAL_REMAINING:
        json_log("warning", "ncf.sequence_low", ncf_type=ncf_type, sequence_id=seq["id"], remaining=remaining)
    return {"ncf": generate_ncf(ncf_type, next_number), "sequence_id": seq["id"], "number": next_number}

import re
import unicodedata
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from ..audit_log import record_audit
from ..db import get_conn
from ..deps import get_current_user, require_role
from ..dominican import day_range, local_today
from ..payroll import compensation, commission, performance_score, worked_hours
from ..roles import validate_role_assignment
from ..security import generate_temp_password, hash_password
from ..validation import Email, Money, SalaryType, UserRole

router = APIRouter(prefix="/employees", tags=["employees"])

_STAFF = Depends(require_role("ADMIN", "MANAGER", "CASHIER"))
_MANAGERS = Depends(require_role("ADMIN", "MANAGER"))

_PROFILE_FIELDS = (
    "employee_code", "position", "department", "salary_type", "base_salary", "hourly_rate",
    "commission_rate", "target_sales", "emergency_contact", "emergency_phone", "address", "hire_date",
)

_EMPLOYEE_SELECT = """
    SELECT e.id, e.user_id, e.employee_code, e.position, e.department, e.salary_type,
           e.base_salary, e.hourly_rate, e.commission_rate, e.target_sales,
           e.emergency_contact, e.emergency_phone, e.address, e.hire_date, e.is_active,
           e.created_at, e.updated_at,
           u.username, u.first_name, u.last_name, u.email, u.phone, u.role
    FROM employee_profiles e
    JOIN users u ON u.id = e.user_id
"""


class EmployeeIn(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: Email
    phone: Optional[str] = None
    role: UserRole = "CASHIER"
    employee_code: str = Field(..., min_length=1)
    position: str = Field(..., min_length=1)
    department: Optional[str] = None
    salary_type: SalaryType = "FIXED"
    base_salary: Optional[Money] = None
    hourly_rate: Optional[Money] = None
    commission_rate: Decimal = Field(Decimal("0"), ge=0, le=100)
    target_sales: Optional[Money] = None
    emergency_contact: Optional[str] = None
    emergency_phone: Optional[str] = None
    address: Optional[str] = None
    hire_date: date


class EmployeeUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    employee_code: Optional[str] = None
    position: Optional[str] = None
    department: Optional[str] = None
    salary_type: Optional[SalaryType] = None
    base_salary: Optional[Money] = None
    hourly_rate: Optional[Money] = None
    commission_rate: Optional[Decimal] = Field(None, ge=0, le=100)
    target_sales: Optional[Money] = None
    emergency_contact: Optional[str] = None
    emergency_phone: Optional[str] = None
    address: Optional[str] = None
    hire_date: Optional[date] = None
    is_active: Optional[bool] = None


class TimeClockIn(BaseModel):
    action: Literal["CLOCK_IN", "CLOCK_OUT", "BREAK"]
    employee_id: str
    location: Optional[str] = None
    notes: Optional[str] = None
    break_type: Optional[Literal["START", "END"]] = None


class PerformanceIn(BaseModel):
    employee_id: str
    start_date: datetime
    end_date: datetime


def username_base(first_name: str, last_name: str) -> str:
    raw = unicodedata.normalize("NFKD", f"{first_name}.{last_name}".lower())
    raw = "".join(c for c in raw if not unicodedata.combining(c))
    base = re.sub(r"[^a-z0-9._-]", "", re.sub(r"\s+", "", raw))
    return base if re.search(r"[a-z0-9]", base) else "empleado"


def _unique_username(cur, base: str) -> str:
    cur.execute("SELECT username FROM users WHERE username = %s OR username LIKE %s", (base, f"{base}%"))
    taken = {r["username"] for r in cur.fetchall()}
    if base not in taken:
        return base
    n = 2
    while f"{base}{n}" in taken:
        n += 1
    return f"{base}{n}"


def _employee(cur, employee_id: str, *, for_update: bool = False):
    cur.execute(
        _EMPLOYEE_SELECT + " WHERE e.id = %s" + (" FOR UPDATE OF e" if for_update else ""),
        (employee_id,),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Empleado no encontrado")
    return row


@router.get("", dependencies=[_STAFF])
def list_employees(include_inactive: bool = False):
    sql = _EMPLOYEE_SELECT
    if not include_inactive:
        sql += " WHERE e.is_active = true"
    sql += " ORDER BY e.created_at DESC"
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(sql)
            return {"employees": cur.fetchall()}


@router.post("", dependencies=[_MANAGERS], status_code=201)
def create_employee(data: EmployeeIn, user=Depends(get_current_user)):
    if not validate_role_assignment(user["role"], data.role):
        raise HTTPException(status_code=403, detail="No tiene permisos para asignar este rol")
    if data.salary_type == "HOURLY" and data.hourly_rate is None:
        raise HTTPException(status_code=400, detail="La tarifa por hora es requerida para empleados por hora")
    temp_password = generate_temp_password()
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                username = _unique_username(cur, username_base(data.first_name, data.last_name))
                cur.execute(
                    """
                    INSERT INTO users (id, username, email, hashed_password, first_name, last_name, phone, role, is_active)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, true)
                    RETURNING id
                    """,
                    (
                        username,
                        data.email,
                        hash_password(temp_password),
                        data.first_name.strip(),
                        data.last_name.strip(),
                        (data.phone or "").strip() or None,
                        data.role,
                    ),
                )
                user_id = cur.fetchone()["id"]
                profile = {k: getattr(data, k) for k in _PROFILE_FIELDS}
                profile["employee_code"] = data.employee_code.strip().upper()
                cols = list(profile.keys())
                cur.execute(
                    f"""
                    INSERT INTO employee_profiles (id, user_id, {', '.join(cols)})
                    VALUES (gen_random_uuid(), %s, {', '.join(['%s'] * len(cols))})
                    RETURNING id
                    """,
                    [user_id] + list(profile.values()),
                )
                employee_id = cur.fetchone()["id"]
                record_audit(
                    cur, user, "CREATE", "EmployeeProfile", employee_id,
                    new_value={"username": username, "role": data.role, **profile},
                )
                return {
                    "employee": _employee(cur, employee_id),
                    # Shown once; only the hash is stored.
                    "temporary_password": temp_password,
                }


@router.patch("/{employee_id}", dependencies=[_MANAGERS])
def update_employee(employee_id: str, data: EmployeeUpdate, user=Depends(get_current_user)):
    patch = data.model_dump(exclude_unset=True)
    if not patch:
        raise HTTPException(status_code=400, detail="No hay cambios para actualizar")
    user_patch = {k: patch.pop(k) for k in ("first_name", "last_name", "phone") if k in patch}
    if "employee_code" in patch and patch["employee_code"]:
        patch["employee_code"] = patch["employee_code"].strip().upper()
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                current = _employee(cur, employee_id, for_update=True)
                if patch:
                    fields = [f"{k} = %s" for k in patch]
                    cur.execute(
                        f"UPDATE employee_profiles SET {', '.join(fields)}, updated_at = now() WHERE id = %s",
                        list(patch.values()) + [employee_id],
                    )
                if user_patch:
                    fields = [f"{k} = %s" for k in user_patch]
                    cur.execute(
                        f"UPDATE users SET {', '.join(fields)}, updated_at = now() WHERE id = %s",
                        list(user_patch.values()) + [current["user_id"]],
                    )
                changes = {**patch, **user_patch}
                record_audit(
                    cur, user, "UPDATE", "EmployeeProfile", employee_id,
                    old_value={k: current.get(k) for k in changes}, new_value=changes,
                )
                return {"employee": _employee(cur, employee_id)}


@router.delete("/{employee_id}", dependencies=[_MANAGERS])
def delete_employee(employee_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                current = _employee(cur, employee_id, for_update=True)
                if str(current["user_id"]) == str(user["user_id"]):
                    raise HTTPException(status_code=400, detail="No puede eliminar su propio perfil de empleado")
                cur.execute("DELETE FROM employee_profiles WHERE id = %s", (employee_id,))
                # The user row is kept (sales reference it) but can no longer sign in.
                cur.execute("UPDATE users SET is_active = false, updated_at = now() WHERE id = %s", (current["user_id"],))
                cur.execute("UPDATE auth_sessions SET is_active = false WHERE user_id = %s", (current["user_id"],))
                record_audit(
                    cur, user, "DELETE", "EmployeeProfile", employee_id,
                    old_value={"employee_code": current["employee_code"], "username": current["username"]},
                )
                return {"ok": True}


_ENTRY_SELECT = """
    SELECT t.id, t.employee_id, t.clock_in, t.clock_out, t.break_start, t.break_end,
           t.total_hours, t.overtime_hours, t.location, t.notes, t.status,
           e.employee_code, u.first_name, u.last_name
    FROM time_entries t
    JOIN employee_profiles e ON e.id = t.employee_id
    JOIN users u ON u.id = e.user_id
"""


@router.get("/time-tracking", dependencies=[_STAFF])
def list_time_entries(employee_id: Optional[str] = None, day: Optional[date] = Query(None, alias="date")):
    day = day or local_today()
    start, end = day_range(day, day)
    sql = _ENTRY_SELECT + " WHERE t.clock_in >= %s AND t.clock_in < %s"
    params: list = [start, end]
    if employee_id:
        sql += " AND t.employee_id = %s"
        params.append(employee_id)
    sql += " ORDER BY t.clock_in DESC"
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            entries = cur.fetchall()
    active = [e for e in entries if e["clock_out"] is None]
    return {"time_entries": entries, "active_entries": active, "total_active": len(active)}


def _open_entry(cur, employee_id: str):
    cur.execute(
        """
        SELECT id, clock_in, break_start, break_end, status
        FROM time_entries
        WHERE employee_id = %s AND clock_out IS NULL
        ORDER BY clock_in DESC
        LIMIT 1
        FOR UPDATE
        """,
        (employee_id,),
    )
    return cur.fetchone()


def _entry(cur, entry_id):
    cur.execute(_ENTRY_SELECT + " WHERE t.id = %s", (entry_id,))
    return cur.fetchone()


@router.post("/time-tracking", dependencies=[_STAFF])
def time_clock(data: TimeClockIn, user=Depends(get_current_user)):
    now = datetime.now(timezone.utc)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                employee = _employee(cur, data.employee_id)
                name = f"{employee['first_name']} {employee['last_name']}"
                entry = _open_entry(cur, data.employee_id)

                if data.action == "CLOCK_IN":
                    if entry:
                        raise HTTPException(status_code=400, detail="El empleado ya está registrado para hoy")
                    cur.execute(
                        """
                        INSERT INTO time_entries (id, employee_id, clock_in, location, ip_address, status)
                        VALUES (gen_random_uuid(), %s, %s, %s, %s, 'ACTIVE')
                        RETURNING id
                        """,
                        (data.employee_id, now, data.location, user.get("ip_address")),
                    )
                    entry_id = cur.fetchone()["id"]
                    record_audit(
                        cur, user, "CLOCK_IN", "TimeEntry", entry_id,
                        new_value={"employee_code": employee["employee_code"], "time": now, "location": data.location},
                    )
                    return {"time_entry": _entry(cur, entry_id), "message": f"{name} registrado exitosamente"}

                if not entry:
                    raise HTTPException(status_code=404, detail="No se encontró un registro activo para este empleado")

                if data.action == "CLOCK_OUT":
                    hours = worked_hours(entry["clock_in"], now, entry["break_start"], entry["break_end"])
                    cur.execute(
                        """
                        UPDATE time_entries
                        SET clock_out = %s,
                            break_end = CASE WHEN break_start IS NOT NULL AND break_end IS NULL THEN %s ELSE break_end END,
                            total_hours = %s, overtime_hours = %s, notes = %s, status = 'COMPLETED'
                        WHERE id = %s
                        """,
                        (now, now, hours["total_hours"], hours["overtime_hours"], data.notes, entry["id"]),
                    )
                    record_audit(
                        cur, user, "CLOCK_OUT", "TimeEntry", entry["id"],
                        new_value={
                            "employee_code": employee["employee_code"],
                            "clock_out": now,
                            "total_hours": hours["total_hours"],
                            "overtime_hours": hours["overtime_hours"],
                        },
                    )
                    return {"time_entry": _entry(cur, entry["id"]), "message": f"{name} salida registrada exitosamente"}

                if data.break_type is None:
                    raise HTTPException(status_code=400, detail="Tipo de descanso inválido")
                on_break = entry["break_start"] is not None and entry["break_end"] is None
                if data.break_type == "START":
                    if on_break:
                        raise HTTPException(status_code=400, detail="El empleado ya está en descanso")
                    cur.execute(
                        "UPDATE time_entries SET break_start = %s, break_end = NULL, status = 'BREAK' WHERE id = %s",
                        (now, entry["id"]),
                    )
                    message = f"{name} inició descanso"
                else:
                    if not on_break:
                        raise HTTPException(status_code=400, detail="El empleado no está en descanso")
                    cur.execute(
                        "UPDATE time_entries SET break_end = %s, status = 'ACTIVE' WHERE id = %s",
                        (now, entry["id"]),
                    )
                    message = f"{name} terminó descanso"
                return {"time_entry": _entry(cur, entry["id"]), "message": message}


def _period_activity(cur, employee: dict, start: datetime, end: datetime):
    cur.execute(
        """
        SELECT id, sale_number, total, created_at
        FROM sales
        WHERE cashier_id = %s AND status = 'COMPLETED' AND created_at >= %s AND created_at <= %s
        ORDER BY created_at DESC
        """,
        (employee["user_id"], start, end),
    )
    sales = cur.fetchall()
    cur.execute(
        """
        SELECT COALESCE(SUM(total_hours), 0) AS hours, COALESCE(SUM(overtime_hours), 0) AS overtime
        FROM time_entries
        WHERE employee_id = %s AND status = 'COMPLETED' AND clock_in >= %s AND clock_in <= %s
        """,
        (employee["id"], start, end),
    )
    hours = cur.fetchone()
    return sales, Decimal(hours["hours"]), Decimal(hours["overtime"])


@router.get("/commissions", dependencies=[_MANAGERS])
def commissions(employee_id: str, start_date: datetime, end_date: datetime):
    if end_date < start_date:
        raise HTTPException(status_code=400, detail="La fecha de fin debe ser posterior a la de inicio")
    with get_conn() as conn:
        with conn.cursor() as cur:
            employee = _employee(cur, employee_id)
            sales, hours, overtime = _period_activity(cur, employee, start_date, end_date)
    calc = compensation(employee, sales, start_date, end_date, hours, overtime)
    return {
        "employee": {
            "id": employee["id"],
            "code": employee["employee_code"],
            "name": f"{employee['first_name']} {employee['last_name']}",
            "position": employee["position"],
            "salary_type": employee["salary_type"],
            "commission_rate": employee["commission_rate"],
        },
        "period": {"start": start_date, "end": end_date},
        **calc,
    }


@router.post("/commissions", dependencies=[_MANAGERS], status_code=201)
def record_performance(data: PerformanceIn, user=Depends(get_current_user)):
    if data.end_date < data.start_date:
        raise HTTPException(status_code=400, detail="La fecha de fin debe ser posterior a la de inicio")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT 1 FROM employee_performance
                    WHERE employee_id = %s AND period_start = %s AND period_end = %s
                    """,
                    (data.employee_id, data.start_date, data.end_date),
                )
                if cur.fetchone():
                    raise HTTPException(status_code=400, detail="Ya existe un registro de rendimiento para este período")
                employee = _employee(cur, data.employee_id)
                sales, hours, _overtime = _period_activity(cur, employee, data.start_date, data.end_date)
                amount = sum((Decimal(s["total"]) for s in sales), Decimal("0"))
                target = Decimal(employee["target_sales"] or 0)
                cur.execute(
                    """
                    INSERT INTO employee_performance
                      (id, employee_id, period_start, period_end, sales_count, sales_amount,
                       commission_earned, hours_worked, targets_met, performance_score)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id, employee_id, period_start, period_end, sales_count, sales_amount,
                              commission_earned, hours_worked, targets_met, performance_score, created_at
                    """,
                    (
                        data.employee_id,
                        data.start_date,
                        data.end_date,
                        len(sales),
                        amount,
                        commission(amount, employee["commission_rate"]),
                        hours,
                        1 if target > 0 and amount >= target else 0,
                        performance_score(amount, target),
                    ),
                )
                row = cur.fetchone()
                record_audit(cur, user, "CREATE", "EmployeePerformance", row["id"], new_value=row)
                return {"performance": row}

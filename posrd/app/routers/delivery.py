from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..audit_log import record_audit
from ..db import get_conn
from ..deps import get_current_user, require_permission
from ..validation import DeliveryStatus

router = APIRouter(prefix="/delivery", tags=["delivery"])

_READ = Depends(require_permission("sales:read"))
_WRITE = Depends(require_permission("sales:create"))

DELIVERY_STATUSES = ("PENDING", "ASSIGNED", "IN_TRANSIT", "DELIVERED", "CANCELLED")
ACTIVE_STATUSES = ("ASSIGNED", "IN_TRANSIT")
FINAL_STATUSES = ("DELIVERED", "CANCELLED")

_ORDER_SELECT = """
    SELECT o.id, o.sale_id, s.sale_number, s.total, o.customer_name, o.customer_phone,
           o.customer_address, o.latitude, o.longitude, o.status, o.driver_id,
           d.name AS driver_name, d.phone AS driver_phone,
           o.assigned_at, o.estimated_delivery, o.actual_delivery, o.notes,
           o.created_at, o.updated_at
    FROM delivery_orders o
    JOIN sales s ON s.id = o.sale_id
    LEFT JOIN delivery_drivers d ON d.id = o.driver_id
"""


class DeliveryOrderIn(BaseModel):
    sale_id: str
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_address: str = Field(..., min_length=1)
    latitude: Optional[Decimal] = Field(None, ge=-90, le=90)
    longitude: Optional[Decimal] = Field(None, ge=-180, le=180)
    estimated_delivery: Optional[datetime] = None
    notes: Optional[str] = None


class DriverIn(BaseModel):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    vehicle: Optional[str] = None


class AssignIn(BaseModel):
    order_id: str
    driver_id: str


class StatusIn(BaseModel):
    order_id: str
    # Plain str so an unknown status gets its own message instead of a validation error.
    status: str


def _order(cur, order_id, *, for_update: bool = False):
    if for_update:
        cur.execute("SELECT id FROM delivery_orders WHERE id = %s FOR UPDATE", (order_id,))
        if not cur.fetchone():
            raise HTTPException(status_code=404, detail="Pedido no encontrado")
    cur.execute(_ORDER_SELECT + " WHERE o.id = %s", (order_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Pedido no encontrado")
    return row


def _release_driver(cur, driver_id, *, except_order_id=None) -> None:
    """Driver goes back to AVAILABLE once it has no other active deliveries."""
    if not driver_id:
        return
    cur.execute(
        """
        SELECT COUNT(*) AS n
        FROM delivery_orders
        WHERE driver_id = %s AND status::text = ANY(%s) AND id <> %s
        """,
        (driver_id, list(ACTIVE_STATUSES), except_order_id),
    )
    if int(cur.fetchone()["n"]) == 0:
        cur.execute(
            "UPDATE delivery_drivers SET status = 'AVAILABLE' WHERE id = %s AND status = 'BUSY'",
            (driver_id,),
        )


@router.get("/orders", dependencies=[_READ])
def list_orders(status: Optional[DeliveryStatus] = None):
    sql = _ORDER_SELECT
    params: list = []
    if status:
        sql += " WHERE o.status = %s"
        params.append(status)
    sql += " ORDER BY o.created_at DESC"
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return {"orders": cur.fetchall()}


@router.post("/orders", dependencies=[_WRITE], status_code=201)
def create_order(data: DeliveryOrderIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT s.id, s.sale_number, s.status, COALESCE(c.name, s.customer_name) AS customer_name,
                           c.phone AS customer_phone
                    FROM sales s
                    LEFT JOIN customers c ON c.id = s.customer_id
                    WHERE s.id = %s
                    """,
                    (data.sale_id,),
                )
                sale = cur.fetchone()
                if not sale:
                    raise HTTPException(status_code=404, detail="Venta no encontrada")
                if sale["status"] != "COMPLETED":
                    raise HTTPException(status_code=409, detail="Solo se pueden despachar ventas completadas")
                name = (data.customer_name or sale["customer_name"] or "").strip()
                phone = (data.customer_phone or sale["customer_phone"] or "").strip()
                if not name or not phone:
                    raise HTTPException(status_code=400, detail="Nombre y teléfono del cliente son requeridos")
                cur.execute(
                    """
                    INSERT INTO delivery_orders (id, sale_id, customer_name, customer_phone, customer_address,
                                                 latitude, longitude, estimated_delivery, notes, status)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, 'PENDING')
                    RETURNING id
                    """,
                    (
                        data.sale_id,
                        name,
                        phone,
                        data.customer_address.strip(),
                        data.latitude,
                        data.longitude,
                        data.estimated_delivery,
                        (data.notes or "").strip() or None,
                    ),
                )
                order_id = cur.fetchone()["id"]
                record_audit(
                    cur, user, "CREATE", "DeliveryOrder", order_id,
                    new_value={"sale_number": sale["sale_number"], "address": data.customer_address},
                )
                return {"order": _order(cur, order_id)}


@router.get("/drivers", dependencies=[_READ])
def list_drivers(include_inactive: bool = False):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT d.id, d.name, d.phone, d.vehicle, d.status, d.rating, d.is_active, d.created_at,
                       COUNT(o.id) FILTER (WHERE o.status IN ('ASSIGNED', 'IN_TRANSIT')) AS current_deliveries,
                       COUNT(o.id) FILTER (WHERE o.status = 'DELIVERED') AS total_deliveries
                FROM delivery_drivers d
                LEFT JOIN delivery_orders o ON o.driver_id = d.id
                {"" if include_inactive else "WHERE d.is_active = true"}
                GROUP BY d.id
                ORDER BY d.name
                """
            )
            return {"drivers": cur.fetchall()}


@router.post("/drivers", dependencies=[_WRITE], status_code=201)
def create_driver(data: DriverIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO delivery_drivers (id, name, phone, vehicle, status, is_active)
                    VALUES (gen_random_uuid(), %s, %s, %s, 'AVAILABLE', true)
                    RETURNING id, name, phone, vehicle, status, rating, is_active, created_at
                    """,
                    (data.name.strip(), data.phone.strip(), (data.vehicle or "").strip() or None),
                )
                row = cur.fetchone()
                record_audit(cur, user, "CREATE", "DeliveryDriver", row["id"], new_value={"name": row["name"]})
                return {"driver": row}


@router.post("/assign", dependencies=[_WRITE])
def assign_driver(data: AssignIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                order = _order(cur, data.order_id, for_update=True)
                if order["status"] not in ("PENDING", "ASSIGNED"):
                    raise HTTPException(status_code=409, detail="Solo se pueden asignar pedidos pendientes")
                cur.execute(
                    "SELECT id, name, status, is_active FROM delivery_drivers WHERE id = %s FOR UPDATE",
                    (data.driver_id,),
                )
                driver = cur.fetchone()
                if not driver or not driver["is_active"]:
                    raise HTTPException(status_code=404, detail="Repartidor no encontrado")
                if driver["status"] == "OFFLINE":
                    raise HTTPException(status_code=409, detail="El repartidor no está disponible")
                previous = order["driver_id"]
                now = datetime.now(timezone.utc)
                cur.execute(
                    """
                    UPDATE delivery_orders
                    SET driver_id = %s, status = 'ASSIGNED', assigned_at = %s, assigned_by = %s, updated_at = now()
                    WHERE id = %s
                    """,
                    (data.driver_id, now, user["user_id"], data.order_id),
                )
                cur.execute("UPDATE delivery_drivers SET status = 'BUSY' WHERE id = %s", (data.driver_id,))
                if previous and str(previous) != str(data.driver_id):
                    _release_driver(cur, previous, except_order_id=data.order_id)
                record_audit(
                    cur, user, "DELIVERY_ASSIGN", "DeliveryOrder", data.order_id,
                    old_value={"driver_id": previous, "status": order["status"]},
                    new_value={"driver_id": data.driver_id, "status": "ASSIGNED"},
                )
                return {"message": "Repartidor asignado exitosamente", "order": _order(cur, data.order_id)}


@router.post("/update-status", dependencies=[_WRITE])
def update_status(data: StatusIn, user=Depends(get_current_user)):
    status = (data.status or "").strip().upper()
    if status not in DELIVERY_STATUSES:
        raise HTTPException(status_code=400, detail="Estado inválido")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                order = _order(cur, data.order_id, for_update=True)
                if order["status"] in FINAL_STATUSES and status != order["status"]:
                    raise HTTPException(status_code=409, detail="El pedido ya fue cerrado")
                if status in ACTIVE_STATUSES and not order["driver_id"]:
                    raise HTTPException(status_code=400, detail="El pedido no tiene repartidor asignado")
                # Back to PENDING unassigns the driver.
                cur.execute(
                    """
                    UPDATE delivery_orders
                    SET status = %s,
                        actual_delivery = CASE WHEN %s::text = 'DELIVERED' THEN now() ELSE actual_delivery END,
                        driver_id = CASE WHEN %s::text = 'PENDING' THEN NULL ELSE driver_id END,
                        assigned_at = CASE WHEN %s::text = 'PENDING' THEN NULL ELSE assigned_at END,
                        updated_at = now()
                    WHERE id = %s
                    """,
                    (status, status, status, status, data.order_id),
                )
                if status in FINAL_STATUSES or status == "PENDING":
                    _release_driver(cur, order["driver_id"], except_order_id=data.order_id)
                record_audit(
                    cur, user, "DELIVERY_STATUS", "DeliveryOrder", data.order_id,
                    old_value={"status": order["status"], "driver_id": order["driver_id"]},
                    new_value={"status": status, "driver_id": None if status == "PENDING" else order["driver_id"]},
                )
                return {"message": "Estado actualizado exitosamente", "order": _order(cur, data.order_id)}

from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel

from ..config import settings
from ..db import get_conn
from ..deps import require_permission
from ..dgii_xml import build_606_xml, build_607_xml, validate_dgii_xml
from ..dominican import (
    calculate_itbis,
    day_range,
    dgii_date,
    dgii_period,
    digits_only,
    local_today,
    month_range,
    q_money,
    tipo_identificacion,
    validate_rnc,
)
from ..logging_utils import json_log
from ..ncf import sequence_status
from ..validation import DgiiReportType

router = APIRouter(tags=["dgii"])

_REPORTS = Depends(require_permission("financial:view_reports"))

WALK_IN_DOCUMENT = "000000000"
PREVIEW_ROWS = 100


class DgiiRangeIn(BaseModel):
    report_type: Literal["sales", "purchase", "both", "606", "607"]
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    # Alternative to from/to: "YYYYMMDD-YYYYMMDD".
    period: Optional[str] = None


def _tax_ok(base, itbis, rate: Decimal) -> bool:
    return abs(calculate_itbis(base or 0, rate) - q_money(itbis or 0)) <= Decimal("0.01")


def _company(cur, start: datetime) -> dict:
    cur.execute(
        """
        SELECT name, rnc
        FROM business_settings
        WHERE is_active = true
        ORDER BY is_default DESC, created_at
        LIMIT 1
        """
    )
    row = cur.fetchone()
    if not row or not (row.get("rnc") or "").strip():
        raise HTTPException(status_code=400, detail="El RNC de la empresa no está configurado en la configuración del negocio")
    return {"rnc": digits_only(row["rnc"]), "razon_social": row["name"] or "Empresa", "periodo": dgii_period(start)}


def purchase_rows(cur, start: datetime, end: datetime, rate: Decimal = Decimal("0.18")) -> List[dict]:
    """606 rows: received purchase orders with a valid supplier RNC."""
    cur.execute(
        """
        SELECT po.po_number, po.supplier_ncf, po.received_date, po.subtotal, po.tax_amount,
               s.name AS supplier_name, s.rnc AS supplier_rnc
        FROM purchase_orders po
        JOIN suppliers s ON s.id = po.supplier_id
        WHERE po.status = 'RECEIVED'
          AND po.received_date >= %s AND po.received_date < %s
        ORDER BY po.received_date, po.po_number
        """,
        (start, end),
    )
    rows = []
    skipped = 0
    for po in cur.fetchall():
        rnc = digits_only(po["supplier_rnc"])
        if not validate_rnc(rnc):
            skipped += 1
            json_log("warn", "dgii.606.skipped", po_number=po["po_number"],
                     supplier=po["supplier_name"], supplier_rnc=po["supplier_rnc"])
            continue
        tax_valid = _tax_ok(po["subtotal"], po["tax_amount"], rate)
        if not tax_valid:
            json_log("warn", "dgii.tax_mismatch", document=po["po_number"],
                     expected=calculate_itbis(po["subtotal"], rate), actual=po["tax_amount"])
        rows.append({
            "rnc": rnc,
            "tipo_id": tipo_identificacion(rnc),
            "numero_comprobante": po["supplier_ncf"] or po["po_number"],
            "fecha_comprobante": dgii_date(po["received_date"]),
            "monto_facturado": q_money(po["subtotal"]),
            "itbis_facturado": q_money(po["tax_amount"]),
            "tax_valid": tax_valid,
        })
    if skipped:
        json_log("info", "dgii.606.summary", included=len(rows), skipped=skipped)
    return rows


def sale_document(customer_rnc: Optional[str], one_time_rnc: Optional[str], customer_cedula: Optional[str]) -> str:
    return digits_only(customer_rnc or one_time_rnc or customer_cedula) or WALK_IN_DOCUMENT


def sales_rows(cur, start: datetime, end: datetime, rate: Decimal = Decimal("0.18")) -> List[dict]:
    """607 rows: completed sales carrying an NCF."""
    cur.execute(
        """
        SELECT s.sale_number, s.ncf, s.ncf_type, s.created_at, s.subtotal, s.itbis,
               s.customer_rnc AS one_time_rnc, c.rnc AS customer_rnc, c.cedula AS customer_cedula,
               (SELECT COALESCE(SUM(i.total), 0)
                  FROM sale_items i JOIN products p ON p.id = i.product_id
                 WHERE i.sale_id = s.id AND p.taxable) AS taxable_base
        FROM sales s
        LEFT JOIN customers c ON c.id = s.customer_id
        WHERE s.status = 'COMPLETED'
          AND s.ncf IS NOT NULL
          AND s.created_at >= %s AND s.created_at < %s
        ORDER BY s.created_at, s.sale_number
        """,
        (start, end),
    )
    rows = []
    for s in cur.fetchall():
        doc = sale_document(s["customer_rnc"], s["one_time_rnc"], s["customer_cedula"])
        tax_valid = _tax_ok(s["taxable_base"], s["itbis"], rate)
        if not tax_valid:
            json_log("warn", "dgii.tax_mismatch", document=s["sale_number"],
                     expected=calculate_itbis(s["taxable_base"], rate), actual=s["itbis"])
        rows.append({
            "rnc": doc,
            "tipo_id": tipo_identificacion(doc),
            "numero_comprobante": s["ncf"],
            "fecha_comprobante": dgii_date(s["created_at"]),
            "monto_facturado": q_money(s["subtotal"]),
            "itbis_facturado": q_money(s["itbis"]),
            "tax_valid": tax_valid,
        })
    return rows


def _totals(rows: List[dict]) -> dict:
    return {
        "total_records": len(rows),
        "total_amount": q_money(sum((r["monto_facturado"] for r in rows), Decimal("0"))),
        "total_tax": q_money(sum((r["itbis_facturado"] for r in rows), Decimal("0"))),
    }


def summarize_606(rows: List[dict]) -> dict:
    out = _totals(rows)
    out["supplier_count"] = len({r["rnc"] for r in rows})
    out["validation_status"] = {
        "all_suppliers_have_rnc": all(r["rnc"] != WALK_IN_DOCUMENT for r in rows),
        "tax_calculations_valid": all(r["tax_valid"] for r in rows),
    }
    return out


def summarize_607(rows: List[dict]) -> dict:
    out = _totals(rows)
    breakdown: dict = {}
    for r in rows:
        key = (r["numero_comprobante"] or "")[:3] or "SIN_NCF"
        breakdown[key] = breakdown.get(key, 0) + 1
    walk_in = sum(1 for r in rows if r["rnc"] == WALK_IN_DOCUMENT)
    out["customer_count"] = len({r["rnc"] for r in rows if r["rnc"] != WALK_IN_DOCUMENT})
    out["ncf_breakdown"] = breakdown
    out["customer_types"] = {
        "with_rnc": sum(1 for r in rows if r["rnc"] != WALK_IN_DOCUMENT and r["tipo_id"] == "1"),
        "with_cedula": sum(1 for r in rows if r["tipo_id"] == "2"),
        "walk_in": walk_in,
    }
    out["validation_status"] = {
        "all_sales_have_ncf": all(r["numero_comprobante"] for r in rows),
        "tax_calculations_valid": all(r["tax_valid"] for r in rows),
    }
    return out


@router.get("/dgii-reports", dependencies=[_REPORTS])
def dgii_report(type: DgiiReportType, month: str, format: Literal["preview", "xml"] = "preview"):
    try:
        start, end = month_range(month)
    except ValueError:
        raise HTTPException(status_code=400, detail="El mes debe tener el formato YYYY-MM")
    with get_conn() as conn:
        with conn.cursor() as cur:
            company = _company(cur, start)
            if type == "606":
                rows = purchase_rows(cur, start, end, settings.itbis_rate)
            else:
                rows = sales_rows(cur, start, end, settings.itbis_rate)

    if format == "xml":
        build = build_606_xml if type == "606" else build_607_xml
        xml = build(company, rows)
        ok, errors = validate_dgii_xml(xml, type)
        if not ok:
            json_log("error", "dgii.xml.invalid", report_type=type, period=company["periodo"], errors=errors)
            raise HTTPException(status_code=500, detail="El XML generado no es válido")
        return Response(
            content=xml,
            media_type="application/xml",
            headers={"Content-Disposition": f'attachment; filename="{type}_{company["periodo"]}.xml"'},
        )

    summary = summarize_606(rows) if type == "606" else summarize_607(rows)
    summary["date_range"] = {"from": start.date().isoformat(), "to": (end - timedelta(days=1)).date().isoformat()}
    if not rows:
        message = (
            "No hay órdenes de compra recibidas en este período"
            if type == "606"
            else "No hay ventas con NCF en este período"
        )
    else:
        message = f"Listo para generar el XML {type} con {len(rows)} registros"
    return {
        "report_type": type,
        "period": company["periodo"],
        "company": company,
        "summary": summary,
        "data": rows[:PREVIEW_ROWS],
        "message": message,
    }


def _parse_range(data: DgiiRangeIn):
    if data.from_date and data.to_date:
        d_from, d_to = data.from_date, data.to_date
    elif data.period:
        try:
            a, b = data.period.strip().split("-", 1)
            d_from = datetime.strptime(a, "%Y%m%d").date()
            d_to = datetime.strptime(b, "%Y%m%d").date()
        except ValueError:
            raise HTTPException(status_code=400, detail="Período inválido: use YYYYMMDD-YYYYMMDD")
    else:
        raise HTTPException(status_code=400, detail="Debe indicar from_date/to_date o period")
    if d_to < d_from:
        raise HTTPException(status_code=400, detail="La fecha final no puede ser anterior a la inicial")
    return day_range(d_from, d_to)


@router.post("/dgii-reports", dependencies=[_REPORTS])
def dgii_report_range(data: DgiiRangeIn):
    start, end = _parse_range(data)
    out: dict = {"from": start.date().isoformat(), "to": (end - timedelta(days=1)).date().isoformat()}
    with get_conn() as conn:
        with conn.cursor() as cur:
            if data.report_type in {"sales", "607", "both"}:
                rows = sales_rows(cur, start, end, settings.itbis_rate)
                out["sales_report"] = {"summary": summarize_607(rows), "records": rows}
            if data.report_type in {"purchase", "606", "both"}:
                rows = purchase_rows(cur, start, end, settings.itbis_rate)
                out["purchase_report"] = {"summary": summarize_606(rows), "records": rows}
    return out


def _rate(part: int, whole: int) -> Optional[float]:
    return round(part / whole * 100, 1) if whole else None


@router.get("/dgii-status", dependencies=[_REPORTS])
def dgii_status(check: Literal["all", "business", "sales", "purchases", "ncf"] = "all"):
    today = local_today()
    start, end = month_range(today.strftime("%Y-%m"))
    now = datetime.now(start.tzinfo)
    out: dict = {"timestamp": now, "period": dgii_period(today)}
    issues: List[str] = []
    with get_conn() as conn:
        with conn.cursor() as cur:
            if check in {"all", "business"}:
                cur.execute(
                    """
                    SELECT name, rnc FROM business_settings
                    WHERE is_active = true
                    ORDER BY is_default DESC, created_at
                    LIMIT 1
                    """
                )
                bs = cur.fetchone()
                rnc = digits_only(bs["rnc"]) if bs else ""
                out["business_config"] = {
                    "exists": bool(bs),
                    "has_rnc": bool(rnc),
                    "rnc_valid": validate_rnc(rnc),
                    "company_name": bs["name"] if bs else None,
                    "rnc": rnc or None,
                }
                if not validate_rnc(rnc):
                    issues.append("El RNC de la empresa no está configurado o es inválido")

            if check in {"all", "sales"}:
                cur.execute(
                    """
                    SELECT COUNT(*) AS total,
                           COUNT(*) FILTER (WHERE s.ncf IS NOT NULL) AS with_ncf,
                           COUNT(*) FILTER (WHERE c.rnc IS NOT NULL OR s.customer_rnc IS NOT NULL) AS with_rnc
                    FROM sales s
                    LEFT JOIN customers c ON c.id = s.customer_id
                    WHERE s.status = 'COMPLETED' AND s.created_at >= %s AND s.created_at < %s
                    """,
                    (start, end),
                )
                r = cur.fetchone()
                out["sales_data"] = {
                    "total_sales": r["total"],
                    "sales_with_ncf": r["with_ncf"],
                    "sales_with_customer_rnc": r["with_rnc"],
                    "ncf_compliance_rate": _rate(r["with_ncf"], r["total"]),
                    "rnc_capture_rate": _rate(r["with_rnc"], r["total"]),
                    "ready_607": r["with_ncf"] > 0,
                }
                if not r["with_ncf"]:
                    issues.append("No hay ventas con NCF para el reporte 607")

            if check in {"all", "purchases"}:
                cur.execute(
                    """
                    SELECT
                      (SELECT COUNT(*) FROM purchase_orders WHERE created_at >= %s AND created_at < %s) AS total,
                      (SELECT COUNT(*) FROM purchase_orders
                        WHERE status = 'RECEIVED' AND received_date >= %s AND received_date < %s) AS received,
                      (SELECT COUNT(*) FROM suppliers WHERE rnc IS NOT NULL) AS suppliers_with_rnc,
                      (SELECT COUNT(*) FROM suppliers) AS suppliers
                    """,
                    (start, end, start, end),
                )
                r = cur.fetchone()
                ready = r["received"] > 0 and r["suppliers_with_rnc"] > 0
                out["purchase_data"] = {
                    "total_purchase_orders": r["total"],
                    "received_purchase_orders": r["received"],
                    "suppliers_with_rnc": r["suppliers_with_rnc"],
                    "total_suppliers": r["suppliers"],
                    "supplier_rnc_rate": _rate(r["suppliers_with_rnc"], r["suppliers"]),
                    "ready_606": ready,
                }
                if not ready:
                    issues.append("No hay órdenes recibidas de proveedores con RNC para el reporte 606")

            if check in {"all", "ncf"}:
                cur.execute(
                    "SELECT type, current_number, max_number, expiry_date, is_active FROM ncf_sequences ORDER BY type"
                )
                out["ncf_status"] = [
                    {**r, **sequence_status(r["current_number"], r["max_number"], r["expiry_date"], now=now)}
                    for r in cur.fetchall()
                ]

    out["system_health"] = {"status": "HEALTHY" if not issues else "NEEDS_ATTENTION", "issues": issues}
    return out

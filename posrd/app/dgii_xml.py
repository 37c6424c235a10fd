"""
DGII 606 (purchases) and 607 (sales) XML documents.

Rows are plain dicts with keys: rnc, tipo_id, numero_comprobante,
fecha_comprobante (YYYY-MM-DD), monto_facturado, itbis_facturado and, for
607 only, an optional ncf_modificado.
"""
from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, List, Tuple

from .dominican import q_money

XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"

_LAYOUT = {
    "606": {
        "root": "DGII:RC606",
        "ns": "http://www.dgii.gov.do/rc/schemas/rc606",
        "xsd": "RC606.xsd",
        "total_tag": "DGII:MontoTotalCompras",
        "detail": "DGII:DetalleCompras",
        "record": "DGII:Compra",
        "party_tag": "DGII:RNCProveedor",
    },
    "607": {
        "root": "DGII:RC607",
        "ns": "http://www.dgii.gov.do/rc/schemas/rc607",
        "xsd": "RC607.xsd",
        "total_tag": "DGII:MontoTotalVentas",
        "detail": "DGII:DetalleVentas",
        "record": "DGII:Venta",
        "party_tag": "DGII:RNCComprador",
    },
}

_REQUIRED = {
    "606": ("RNCEmisor", "Periodo", "DetalleCompras"),
    "607": ("RNCEmisor", "Periodo", "DetalleVentas"),
}


def _amount(v) -> str:
    return f"{q_money(v):.2f}"


def _sub(parent: ET.Element, tag: str, value) -> None:
    # Empty nodes are omitted rather than written as <tag/>.
    if value is None or value == "":
        return
    ET.SubElement(parent, tag).text = str(value)


def _build(report_type: str, company: dict, rows: List[dict], generated_at: datetime | None) -> str:
    layout = _LAYOUT[report_type]
    generated_at = generated_at or datetime.now(timezone.utc)

    root = ET.Element(
        layout["root"],
        {
            "xmlns:DGII": layout["ns"],
            "xmlns:xsi": XSI_NS,
            "xsi:schemaLocation": f"{layout['ns']} {layout['xsd']}",
        },
    )
    head = ET.SubElement(root, "DGII:Encabezado")
    _sub(head, "DGII:RNCEmisor", company.get("rnc"))
    _sub(head, "DGII:RazonSocial", company.get("razon_social"))
    _sub(head, "DGII:Periodo", company.get("periodo"))
    _sub(head, "DGII:FechaHoraGeneracion", generated_at.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"))
    _sub(head, "DGII:TotalRegistros", len(rows))
    _sub(head, layout["total_tag"], _amount(sum((Decimal(str(r["monto_facturado"])) for r in rows), Decimal("0"))))
    _sub(head, "DGII:MontoTotalITBIS", _amount(sum((Decimal(str(r["itbis_facturado"])) for r in rows), Decimal("0"))))

    detail = ET.SubElement(root, layout["detail"])
    for r in rows:
        rec = ET.SubElement(detail, layout["record"])
        _sub(rec, layout["party_tag"], r.get("rnc"))
        _sub(rec, "DGII:TipoIdentificacion", r.get("tipo_id"))
        _sub(rec, "DGII:NumeroComprobanteFiscal", r.get("numero_comprobante"))
        if report_type == "607":
            _sub(rec, "DGII:NCFModificado", r.get("ncf_modificado"))
        _sub(rec, "DGII:FechaComprobante", r.get("fecha_comprobante"))
        _sub(rec, "DGII:MontoFacturado", _amount(r.get("monto_facturado")))
        _sub(rec, "DGII:ITBISFacturado", _amount(r.get("itbis_facturado")))

    ET.indent(root, space="  ")
    return '<?xml version="1.0" encoding="UTF-8"?>\n' + ET.tostring(root, encoding="unicode") + "\n"


def build_606_xml(company: dict, purchases: List[dict], *, generated_at: datetime | None = None) -> str:
    return _build("606", company, purchases, generated_at)


def build_607_xml(company: dict, sales: List[dict], *, generated_at: datetime | None = None) -> str:
    return _build("607", company, sales, generated_at)


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _texts(root: ET.Element, name: str) -> Iterable[str]:
    for el in root.iter():
        if _local(el.tag) == name:
            yield (el.text or "").strip()


def validate_dgii_xml(xml_content: str, report_type: str) -> Tuple[bool, List[str]]:
    """
    Structural checks before a file is handed to the user: required
    elements present, emitter RNC of 9/11 digits, period as YYYYMM.
    """
    errors: List[str] = []
    try:
        root = ET.fromstring(xml_content.encode("utf-8"))
    except ET.ParseError as exc:
        return False, [f"XML mal formado: {exc}"]

    present = {_local(el.tag) for el in root.iter()}
    for name in _REQUIRED[report_type]:
        if name not in present:
            errors.append(f"Falta el elemento requerido: {name}")

    rnc = next(iter(_texts(root, "RNCEmisor")), "")
    if not re.fullmatch(r"\d{9}|\d{11}", rnc):
        errors.append("RNC del emisor inválido o ausente")

    periodo = next(iter(_texts(root, "Periodo")), "")
    if not re.fullmatch(r"\d{6}", periodo):
        errors.append("Período inválido o ausente (debe ser YYYYMM)")

    return not errors, errors

from datetime import datetime, timezone
from decimal import Decimal

from posrd.app.dgii_xml import build_606_xml, build_607_xml, validate_dgii_xml

_COMPANY = {"rnc": "130123456", "razon_social": "POS Dominicana", "periodo": "202403"}
_GENERATED = datetime(2024, 4, 2, 12, 30, tzinfo=timezone.utc)


def _row(ncf, amount, itbis, rnc="130987654", tipo="1"):
    return {
        "rnc": rnc,
        "tipo_id": tipo,
        "numero_comprobante": ncf,
        "fecha_comprobante": "2024-03-15",
        "monto_facturado": Decimal(amount),
        "itbis_facturado": Decimal(itbis),
    }


def test_607_header_totals_and_records():
    xml = build_607_xml(
        _COMPANY,
        [_row("B0100000001", "100", "18"), _row("B0200000002", "50.5", "9.09", rnc="000000000")],
        generated_at=_GENERATED,
    )
    assert xml.startswith('<?xml version="1.0" encoding="UTF-8"?>')
    assert 'xmlns:DGII="http://www.dgii.gov.do/rc/schemas/rc607"' in xml
    assert "<DGII:TotalRegistros>2</DGII:TotalRegistros>" in xml
    assert "<DGII:MontoTotalVentas>150.50</DGII:MontoTotalVentas>" in xml
    assert "<DGII:MontoTotalITBIS>27.09</DGII:MontoTotalITBIS>" in xml
    assert "<DGII:FechaHoraGeneracion>2024-04-02T12:30:00.000Z</DGII:FechaHoraGeneracion>" in xml
    assert xml.count("<DGII:Venta>") == 2
    assert "NCFModificado" not in xml
    assert validate_dgii_xml(xml, "607") == (True, [])


def test_606_uses_purchase_layout():
    xml = build_606_xml(_COMPANY, [_row("B1100000007", "1000", "180")], generated_at=_GENERATED)
    assert "<DGII:RC606" in xml
    assert "<DGII:RNCProveedor>130987654</DGII:RNCProveedor>" in xml
    assert "<DGII:MontoTotalCompras>1000.00</DGII:MontoTotalCompras>" in xml
    ok, errors = validate_dgii_xml(xml, "606")
    assert ok, errors


def test_empty_report_still_has_detail_section():
    xml = build_607_xml(_COMPANY, [], generated_at=_GENERATED)
    assert "<DGII:TotalRegistros>0</DGII:TotalRegistros>" in xml
    assert validate_dgii_xml(xml, "607")[0] is True


def test_validate_reports_bad_emitter_and_period():
    xml = build_607_xml({"rnc": "123", "razon_social": "X", "periodo": "2024-03"}, [], generated_at=_GENERATED)
    ok, errors = validate_dgii_xml(xml, "607")
    assert ok is False
    assert "RNC del emisor inválido o ausente" in errors
    assert any(e.startswith("Período inválido") for e in errors)


def test_validate_rejects_malformed_xml():
    ok, errors = validate_dgii_xml("<DGII:RC607>", "607")
    assert ok is False
    assert errors[0].startswith("XML mal formado")

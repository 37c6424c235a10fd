from datetime import datetime
from decimal import Decimal

import pytest
from fastapi import HTTPException

from posrd.app.mailer import MailError
from posrd.app.receipt_format import THERMAL_WIDTH, render_html, render_thermal
from posrd.app.routers import receipts as receipts_module


def _receipt(**sale_overrides):
    sale = {
        "id": "sale-1",
        "sale_number": "V-000123",
        "ncf": "B0100000042",
        "ncf_type": "B01",
        "created_at": datetime(2024, 3, 10, 15, 4, 5),
        "subtotal": Decimal("450.00"),
        "itbis": Decimal("51.30"),
        "total": Decimal("501.30"),
        "payment_method": "CASH",
        "status": "COMPLETED",
        "items": [
            {"product_name": "Arroz Blanquita 5lb", "quantity": 1, "unit_price": Decimal("165.00"), "total": Decimal("165.00")},
            {"product_name": "Cerveza Presidente 355ml edición especial de aniversario", "quantity": 3,
             "unit_price": Decimal("95.00"), "total": Decimal("285.00")},
        ],
    }
    sale.update(sale_overrides)
    return {
        "business": {
            "name": "Pos Dominicana",
            "rnc": "130123456",
            "address": "Calle Principal #123, Ensanche Naco, Santo Domingo, Distrito Nacional",
            "phone": "(809) 555-0123",
            "slogan": "Tu punto de venta de confianza",
            "receipt_footer": None,
            "warranty_info": None,
        },
        "sale": sale,
        "cashier_name": "Juan Pérez",
        "customer": {"id": "c1", "name": "Supermercado La Familia", "rnc": "130987654", "cedula": None},
    }


def test_thermal_receipt_fits_paper_width():
    text = render_thermal(_receipt())
    assert text.endswith("\n")
    assert all(len(line) <= THERMAL_WIDTH for line in text.splitlines())


def test_thermal_receipt_content():
    lines = render_thermal(_receipt()).splitlines()
    assert lines[0].strip() == "POS DOMINICANA"
    assert "RNC: 1-30-12345-6" in [ln.strip() for ln in lines]
    assert "CRÉDITO FISCAL" in [ln.strip() for ln in lines]
    assert "NCF: B0100000042" in lines
    assert "Fecha: 10/03/2024 15:04:05" in lines
    assert "Cliente: Supermercado La Familia" in lines
    assert "RNC: 1-30-98765-4" in lines
    assert any(ln.startswith("ITBIS (18%):") and ln.endswith("RD$51.30") for ln in lines)
    assert any(ln.startswith("TOTAL:") and ln.endswith("RD$501.30") for ln in lines)
    assert any(ln.startswith("Pago:") and ln.endswith("Efectivo") for ln in lines)
    assert lines[-1].strip() == "¡Gracias por su compra!"


def test_thermal_receipt_marks_cancelled_sales():
    text = render_thermal(_receipt(status="CANCELLED", ncf=None))
    assert "*** VENTA CANCELADA ***" in text
    assert "NCF:" not in text


def test_html_receipt_escapes_names():
    r = _receipt()
    r["customer"]["name"] = "<b>Ana & Co</b>"
    out = render_html(r, logo_url="https://cdn.example/logo.png")
    assert "&lt;b&gt;Ana &amp; Co&lt;/b&gt;" in out
    assert "<img src='https://cdn.example/logo.png'" in out
    assert "TOTAL: RD$501.30" in out


def test_email_receipt_requires_smtp(monkeypatch):
    monkeypatch.setattr(receipts_module.settings, "smtp_host", None)
    data = receipts_module.ReceiptEmailIn(email="cliente@example.com")
    with pytest.raises(HTTPException) as exc:
        receipts_module.email_receipt("sale-1", data, user={"user_id": "u1"})
    assert exc.value.status_code == 503


class _DummyConn:
    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def transaction(self):
        return self

    def cursor(self):
        return self


def _patch_email(monkeypatch, send):
    monkeypatch.setattr(receipts_module.settings, "smtp_host", "smtp.example.com")
    monkeypatch.setattr(receipts_module, "get_conn", lambda: _DummyConn())
    monkeypatch.setattr(receipts_module, "build_receipt", lambda cur, sale_id: _receipt())
    monkeypatch.setattr(receipts_module, "send_email", send)
    audits = []
    monkeypatch.setattr(receipts_module, "record_audit", lambda cur, user, action, *a, **kw: audits.append(action))
    return audits


def test_email_receipt_sends_and_audits(monkeypatch):
    sent = []
    audits = _patch_email(monkeypatch, lambda to, subject, **kw: sent.append((to, subject, kw)))

    out = receipts_module.email_receipt("sale-1", receipts_module.ReceiptEmailIn(email="Cliente@Example.com"), user={"user_id": "u1"})

    assert out == {"message": "Recibo enviado exitosamente", "email": "cliente@example.com"}
    to, subject, kw = sent[0]
    assert subject == "Recibo V-000123 - Pos Dominicana"
    assert "NCF: B0100000042" in kw["text"]
    assert kw["html"].startswith("<!DOCTYPE html>")
    assert audits == ["RECEIPT_EMAIL"]


def test_email_receipt_send_failure_is_502(monkeypatch):
    def boom(*a, **kw):
        raise MailError("smtp down")

    audits = _patch_email(monkeypatch, boom)
    with pytest.raises(HTTPException) as exc:
        receipts_module.email_receipt("sale-1", receipts_module.ReceiptEmailIn(email="a@b.do"), user={"user_id": "u1"})
    assert exc.value.status_code == 502
    assert audits == []

"""
Receipt rendering for 80 mm thermal printers (42 characters per line) and
for e-mail (HTML).

`receipt` is the payload built by `routers/receipts.py`:
{business, sale: {..., items}, cashier_name, customer}
"""
import html
from decimal import Decimal
from typing import List, Optional

from .dominican import NCF_TYPE_NAMES, format_currency, format_datetime, format_rnc

THERMAL_WIDTH = 42

PAYMENT_LABELS = {
    "CASH": "Efectivo",
    "CARD": "Tarjeta",
    "TRANSFER": "Transferencia",
    "CHECK": "Cheque",
    "CREDIT": "Crédito",
}


def _center(text: str, width: int) -> str:
    return text[:width].center(width).rstrip()


def _pair(left: str, right: str, width: int) -> str:
    space = width - len(right)
    return f"{left[:max(space - 1, 0)]:<{space}}{right}"


def _money(v) -> str:
    return format_currency(Decimal(str(v)))


def _wrap(text: str, width: int) -> List[str]:
    words = (text or "").split()
    lines: List[str] = []
    cur = ""
    for w in words:
        if cur and len(cur) + 1 + len(w) > width:
            lines.append(cur)
            cur = w
        else:
            cur = f"{cur} {w}" if cur else w
    if cur:
        lines.append(cur)
    return lines


def render_thermal(receipt: dict, width: int = THERMAL_WIDTH) -> str:
    biz = receipt["business"]
    sale = receipt["sale"]
    sep = "-" * width
    lines: List[str] = []

    lines.append(_center(biz["name"].upper(), width))
    if biz.get("slogan"):
        lines.append(_center(biz["slogan"], width))
    lines.append(_center(f"RNC: {format_rnc(biz['rnc'])}", width))
    for ln in _wrap(biz.get("address") or "", width):
        lines.append(_center(ln, width))
    if biz.get("phone"):
        lines.append(_center(f"Tel: {biz['phone']}", width))
    lines.append(sep)

    if sale.get("ncf"):
        lines.append(_center(NCF_TYPE_NAMES.get(sale.get("ncf_type"), "Comprobante").upper(), width))
        lines.append(f"NCF: {sale['ncf']}")
    lines.append(f"Factura: {sale['sale_number']}")
    lines.append(f"Fecha: {format_datetime(sale['created_at'])}")
    lines.append(f"Cajero: {receipt.get('cashier_name') or ''}".rstrip())
    customer = receipt.get("customer")
    if customer:
        lines.append(f"Cliente: {customer['name']}"[:width])
        if customer.get("rnc"):
            lines.append(f"RNC: {format_rnc(customer['rnc'])}")
        elif customer.get("cedula"):
            lines.append(f"Cédula: {customer['cedula']}")
    lines.append(sep)

    for it in sale["items"]:
        lines.append(it["product_name"][:width])
        lines.append(_pair(f"  {it['quantity']} x {_money(it['unit_price'])}", _money(it["total"]), width))
    lines.append(sep)

    lines.append(_pair("Subtotal:", _money(sale["subtotal"]), width))
    lines.append(_pair("ITBIS (18%):", _money(sale["itbis"]), width))
    lines.append(_pair("TOTAL:", _money(sale["total"]), width))
    lines.append(_pair("Pago:", PAYMENT_LABELS.get(sale["payment_method"], sale["payment_method"]), width))
    if sale.get("status") == "CANCELLED":
        lines.append(_center("*** VENTA CANCELADA ***", width))
    lines.append(sep)

    footer = biz.get("receipt_footer") or "¡Gracias por su compra!"
    for ln in _wrap(footer, width):
        lines.append(_center(ln, width))
    if biz.get("warranty_info"):
        for ln in _wrap(biz["warranty_info"], width):
            lines.append(_center(ln, width))
    return "\n".join(lines) + "\n"


def render_html(receipt: dict, *, logo_url: Optional[str] = None) -> str:
    biz = receipt["business"]
    sale = receipt["sale"]
    e = html.escape
    rows = "".join(
        f"<tr><td>{e(it['product_name'])}</td><td style='text-align:center'>{it['quantity']}</td>"
        f"<td style='text-align:right'>{_money(it['unit_price'])}</td>"
        f"<td style='text-align:right'>{_money(it['total'])}</td></tr>"
        for it in sale["items"]
    )
    customer = receipt.get("customer")
    customer_html = ""
    if customer:
        doc = customer.get("rnc") or customer.get("cedula") or ""
        customer_html = f"<p><strong>Cliente:</strong> {e(customer['name'])} {e(doc)}</p>"
    ncf_html = f"<p><strong>NCF:</strong> {e(sale['ncf'])}</p>" if sale.get("ncf") else ""
    logo_html = f"<img src='{e(logo_url)}' alt='logo' style='max-height:80px'/>" if logo_url else ""
    return f"""<!DOCTYPE html>
<html lang="es"><head><meta charset="utf-8"><title>Recibo {e(sale['sale_number'])}</title></head>
<body style="font-family:Arial,sans-serif;max-width:600px;margin:auto">
<div style="text-align:center">{logo_html}
<h2>{e(biz['name'])}</h2>
<p>RNC: {e(format_rnc(biz['rnc']))}<br/>{e(biz.get('address') or '')}<br/>{e(biz.get('phone') or '')}</p>
</div>
<p><strong>Factura:</strong> {e(sale['sale_number'])}<br/>
<strong>Fecha:</strong> {e(format_datetime(sale['created_at']))}</p>
{ncf_html}{customer_html}
<table style="width:100%;border-collapse:collapse">
<thead><tr><th style="text-align:left">Producto</th><th>Cant.</th><th style="text-align:right">Precio</th><th style="text-align:right">Total</th></tr></thead>
<tbody>{rows}</tbody></table>
<p style="text-align:right">Subtotal: {_money(sale['subtotal'])}<br/>
ITBIS (18%): {_money(sale['itbis'])}<br/>
<strong>TOTAL: {_money(sale['total'])}</strong></p>
<p style="text-align:center">{e(biz.get('receipt_footer') or '¡Gracias por su compra!')}</p>
</body></html>
"""

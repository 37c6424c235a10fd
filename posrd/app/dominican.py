"""
Dominican Republic specific helpers: RNC/cédula/NCF formats, ITBIS math,
RD$ formatting and DGII date conventions.

RNC validation is format-only (9 or 11 digits); there is no checksum.
"""
from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .config import settings

DEFAULT_TIMEZONE = "America/Santo_Domingo"

NCF_TYPES = ("B01", "B02", "B03", "B04", "B11", "B12", "B13", "B14", "B15")
NCF_MAX_NUMBER = 99_999_999

NCF_TYPE_NAMES = {
    "B01": "Crédito Fiscal",
    "B02": "Consumo",
    "B03": "Nota de Débito",
    "B04": "Nota de Crédito",
    "B11": "Comprobante de Compras",
    "B12": "Registro Único de Ingresos",
    "B13": "Gastos Menores",
    "B14": "Regímenes Especiales",
    "B15": "Gubernamental",
}

_NON_DIGITS = re.compile(r"\D")
_RNC_RE = re.compile(r"^(\d{9}|\d{11})$")
_CEDULA_RE = re.compile(r"^\d{11}$")
_NCF_RE = re.compile(r"^[A-Z]\d{2}\d{8}$")
_MONTH_RE = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")

_CENT = Decimal("0.01")


def digits_only(value: Optional[str]) -> str:
    return _NON_DIGITS.sub("", value or "")


def validate_rnc(rnc: Optional[str]) -> bool:
    if not rnc:
        return False
    return bool(_RNC_RE.match(digits_only(rnc)))


def format_rnc(rnc: str) -> str:
    clean = digits_only(rnc)
    if len(clean) == 9:
        return f"{clean[0]}-{clean[1:3]}-{clean[3:8]}-{clean[8]}"
    if len(clean) == 11:
        return f"{clean[:3]}-{clean[3:10]}-{clean[10]}"
    return rnc


def validate_cedula(cedula: Optional[str]) -> bool:
    if not cedula:
        return False
    return bool(_CEDULA_RE.match(digits_only(cedula)))


def format_cedula(cedula: str) -> str:
    clean = digits_only(cedula)
    if len(clean) == 11:
        return f"{clean[:3]}-{clean[3:10]}-{clean[10]}"
    return cedula


def validate_ncf(ncf: Optional[str]) -> bool:
    if not ncf:
        return False
    return bool(_NCF_RE.match(ncf.strip().upper()))


def generate_ncf(ncf_type: str, number: int) -> str:
    if ncf_type not in NCF_TYPES:
        raise ValueError(f"invalid NCF type: {ncf_type}")
    if number < 1 or number > NCF_MAX_NUMBER:
        raise ValueError(f"NCF number out of range: {number}")
    return f"{ncf_type}{number:08d}"


def q_money(v) -> Decimal:
    return Decimal(str(v or 0)).quantize(_CENT, rounding=ROUND_HALF_UP)


def calculate_itbis(amount, rate=Decimal("0.18")) -> Decimal:
    return q_money(Decimal(str(amount or 0)) * Decimal(str(rate)))


def format_currency(amount) -> str:
    value = q_money(amount)
    sign = "-" if value < 0 else ""
    return f"{sign}RD${abs(value):,.2f}"


def format_date(d) -> str:
    return d.strftime("%d/%m/%Y")


def format_datetime(dt: datetime) -> str:
    return dt.strftime("%d/%m/%Y %H:%M:%S")


def dgii_period(d) -> str:
    return d.strftime("%Y%m")


def dgii_date(d, tz=None) -> str:
    """Aware datetimes are reported on the business calendar day (`tz`)."""
    if isinstance(d, datetime):
        if d.tzinfo is not None:
            d = d.astimezone(tz or business_tz())
        d = d.date()
    return d.isoformat()


def tipo_identificacion(document: Optional[str]) -> str:
    """
    DGII identification type: 1 = RNC (9 digits), 2 = cédula (11 digits),
    3 = anything else (passport, foreign id).
    """
    clean = re.sub(r"[\s-]", "", document or "")
    if re.fullmatch(r"\d{9}", clean):
        return "1"
    if re.fullmatch(r"\d{11}", clean):
        return "2"
    return "3"


def business_tz(name: Optional[str] = None) -> ZoneInfo:
    try:
        return ZoneInfo(name or settings.business_timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(DEFAULT_TIMEZONE)


def local_today(tz=None, *, now: Optional[datetime] = None) -> date:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(tz or business_tz()).date()


def day_range(date_from: date, date_to: date, tz=None) -> Tuple[datetime, datetime]:
    """
    [local midnight of `date_from`, local midnight after `date_to`) as aware
    datetimes in `tz`.
    """
    tz = tz or business_tz()
    start = datetime.combine(date_from, time.min, tzinfo=tz)
    end = datetime.combine(date_to + timedelta(days=1), time.min, tzinfo=tz)
    return start, end


def month_range(month: str, tz=None) -> Tuple[datetime, datetime]:
    """
    `YYYY-MM` -> [first instant of month, first instant of next month) in the
    business timezone.
    """
    m = _MONTH_RE.match((month or "").strip())
    if not m:
        raise ValueError("month must be YYYY-MM")
    year, mon = int(m.group(1)), int(m.group(2))
    first = date(year, mon, 1)
    last = (date(year + 1, 1, 1) if mon == 12 else date(year, mon + 1, 1)) - timedelta(days=1)
    return day_range(first, last, tz)

from __future__ import annotations

import re
from decimal import Decimal
from typing import Annotated, Literal, Optional

from pydantic import AfterValidator, BeforeValidator, Field, StringConstraints

from .dominican import validate_rnc


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


def _strip_separators(v):
    if v is None:
        return v
    return re.sub(r"[\s.-]", "", str(v))


def _blank_to_none(v):
    if v is None:
        return v
    s = str(v).strip()
    return s or None


def _check_rnc(v):
    if v is not None and not validate_rnc(v):
        raise ValueError("RNC inválido: debe tener 9 u 11 dígitos")
    return v


# Canonical codes mirror Postgres enums in `posrd/db/migrations/001_init.sql`.
UserRole = Annotated[Literal["ADMIN", "MANAGER", "CASHIER", "REPORTER"], BeforeValidator(_to_upper_str)]
DocumentType = Annotated[Literal["RNC", "CEDULA"], BeforeValidator(_to_upper_str)]
NcfType = Annotated[
    Literal["B01", "B02", "B03", "B04", "B11", "B12", "B13", "B14", "B15"],
    BeforeValidator(_to_upper_str),
]
SaleNcfType = Annotated[Literal["B01", "B02"], BeforeValidator(_to_upper_str)]
PaymentMethod = Annotated[
    Literal["CASH", "CARD", "TRANSFER", "CHECK", "CREDIT"],
    BeforeValidator(_to_upper_str),
]
SaleStatus = Annotated[Literal["COMPLETED", "CANCELLED", "REFUNDED"], BeforeValidator(_to_upper_str)]
PurchaseOrderStatus = Annotated[
    Literal["PENDING", "ORDERED", "RECEIVED", "CANCELLED"],
    BeforeValidator(_to_upper_str),
]
SalaryType = Annotated[Literal["FIXED", "HOURLY", "COMMISSION", "HYBRID"], BeforeValidator(_to_upper_str)]
DeliveryStatus = Annotated[
    Literal["PENDING", "ASSIGNED", "IN_TRANSIT", "DELIVERED", "CANCELLED"],
    BeforeValidator(_to_upper_str),
]
DriverStatus = Annotated[Literal["AVAILABLE", "BUSY", "OFFLINE"], BeforeValidator(_to_upper_str)]
DgiiReportType = Annotated[Literal["606", "607"], BeforeValidator(lambda v: str(v).strip() if v is not None else v)]

# Separators stripped; the 9/11-digit rule is enforced where an RNC is mandatory.
DigitsStr = Annotated[str, BeforeValidator(_strip_separators)]
OptionalRnc = Annotated[Optional[str], BeforeValidator(_blank_to_none), BeforeValidator(_strip_separators), AfterValidator(_check_rnc)]

# Money accepts strings or numbers (front ends send "125.50").
Money = Annotated[Decimal, Field(ge=0, max_digits=12, decimal_places=2)]

Email = Annotated[
    str,
    BeforeValidator(_to_lower_str),
    StringConstraints(max_length=254, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$"),
]
HHMM = Annotated[str, StringConstraints(pattern=r"^([01]\d|2[0-3]):[0-5]\d$")]

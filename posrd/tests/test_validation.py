import pytest
from pydantic import BaseModel, ValidationError

from posrd.app.validation import DeliveryStatus, Email, NcfType, OptionalRnc, PaymentMethod, UserRole


class _M(BaseModel):
    role: UserRole
    method: PaymentMethod
    ncf_type: NcfType
    status: DeliveryStatus


class _Contact(BaseModel):
    email: Email
    rnc: OptionalRnc = None


def test_validation_types_normalize_case():
    m = _M(role="cashier", method=" Cash ", ncf_type="b01", status="in_transit")
    assert m.role == "CASHIER"
    assert m.method == "CASH"
    assert m.ncf_type == "B01"
    assert m.status == "IN_TRANSIT"


def test_unknown_codes_are_rejected():
    with pytest.raises(ValidationError):
        _M(role="OWNER", method="cash", ncf_type="B01", status="PENDING")
    with pytest.raises(ValidationError):
        _M(role="ADMIN", method="cash", ncf_type="E31", status="PENDING")


def test_rnc_separators_are_stripped():
    c = _Contact(email=" Ventas@Tienda.DO ", rnc="1-30-12345-6")
    assert c.email == "ventas@tienda.do"
    assert c.rnc == "130123456"


def test_blank_rnc_becomes_none():
    assert _Contact(email="a@b.do", rnc="  ").rnc is None


def test_rnc_with_wrong_length_is_rejected():
    with pytest.raises(ValidationError):
        _Contact(email="a@b.do", rnc="12345")

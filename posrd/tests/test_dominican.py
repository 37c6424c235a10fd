from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest

from posrd.app.dominican import (
    calculate_itbis,
    day_range,
    dgii_date,
    dgii_period,
    format_cedula,
    format_date,
    format_currency,
    format_rnc,
    generate_ncf,
    local_today,
    month_range,
    tipo_identificacion,
    validate_cedula,
    validate_ncf,
    validate_rnc,
)


def test_rnc_is_nine_or_eleven_digits():
    assert validate_rnc("130123456") is True
    assert validate_rnc("1-30-12345-6") is True
    assert validate_rnc("00112345678") is True
    assert validate_rnc("12345") is False
    assert validate_rnc("1234567890") is False
    assert validate_rnc(None) is False


def test_format_rnc_and_cedula():
    assert format_rnc("130123456") == "1-30-12345-6"
    assert format_rnc("00112345678") == "001-1234567-8"
    assert format_rnc("abc") == "abc"
    assert format_cedula("00112345678") == "001-1234567-8"
    assert validate_cedula("001-1234567-8") is True
    assert validate_cedula("130123456") is False


def test_generate_ncf_pads_to_eight_digits():
    assert generate_ncf("B01", 1) == "B0100000001"
    assert generate_ncf("B02", 99_999_999) == "B0299999999"
    assert validate_ncf("b0100000001") is True
    assert validate_ncf("B01000001") is False


@pytest.mark.parametrize("ncf_type,number", [("B99", 1), ("B01", 0), ("B01", 100_000_000)])
def test_generate_ncf_rejects_bad_input(ncf_type, number):
    with pytest.raises(ValueError):
        generate_ncf(ncf_type, number)


def test_itbis_rounds_half_up():
    assert calculate_itbis(Decimal("100")) == Decimal("18.00")
    assert calculate_itbis(Decimal("10.25")) == Decimal("1.85")
    assert calculate_itbis(None) == Decimal("0.00")


def test_format_currency():
    assert format_currency(Decimal("1234.5")) == "RD$1,234.50"
    assert format_currency(Decimal("-5")) == "-RD$5.00"


def test_tipo_identificacion():
    assert tipo_identificacion("130123456") == "1"
    assert tipo_identificacion("001-1234567-8") == "2"
    assert tipo_identificacion("PA123456") == "3"
    assert tipo_identificacion(None) == "3"


SANTO_DOMINGO = ZoneInfo("America/Santo_Domingo")
UTC_MINUS_4 = timezone(timedelta(hours=-4))


def test_month_range_crosses_year_end():
    start, end = month_range("2024-12", SANTO_DOMINGO)
    assert start == datetime(2024, 12, 1, 4, 0, tzinfo=timezone.utc)
    assert end == datetime(2025, 1, 1, 4, 0, tzinfo=timezone.utc)


def test_month_range_keeps_last_evening_in_the_month():
    start, end = month_range("2024-03", SANTO_DOMINGO)
    late_sale = datetime(2024, 3, 31, 21, 30, tzinfo=UTC_MINUS_4)
    assert start <= late_sale < end
    assert not (start <= datetime(2024, 4, 1, 0, 30, tzinfo=UTC_MINUS_4) < end)


def test_day_range_uses_local_midnight():
    start, end = day_range(date(2024, 3, 10), date(2024, 3, 11), SANTO_DOMINGO)
    assert start == datetime(2024, 3, 10, 4, 0, tzinfo=timezone.utc)
    assert end == datetime(2024, 3, 12, 4, 0, tzinfo=timezone.utc)


def test_local_today_follows_business_calendar():
    now = datetime(2024, 3, 11, 1, 30, tzinfo=timezone.utc)
    assert local_today(SANTO_DOMINGO, now=now) == date(2024, 3, 10)


@pytest.mark.parametrize("raw", ["2024-13", "2024/01", "", "24-01"])
def test_month_range_rejects_bad_month(raw):
    with pytest.raises(ValueError):
        month_range(raw)


def test_dgii_dates():
    assert dgii_period(date(2024, 3, 9)) == "202403"
    late = datetime(2024, 4, 1, 2, 0, tzinfo=timezone.utc)
    assert dgii_date(late, SANTO_DOMINGO) == "2024-03-31"
    assert dgii_date(datetime(2024, 3, 31, 22, 0, tzinfo=UTC_MINUS_4), SANTO_DOMINGO) == "2024-03-31"
    assert dgii_date(date(2024, 3, 9)) == "2024-03-09"


def test_format_date_is_day_month_year():
    assert format_date(date(2024, 3, 9)) == "09/03/2024"
    assert format_date(datetime(2024, 12, 31, 23, 59)) == "31/12/2024"

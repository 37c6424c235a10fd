"""
Time-clock and compensation math for employee profiles.

Hours are rounded to two decimals; overtime is anything past a regular
8-hour day and is paid at 1.5x the hourly rate.
"""
import math
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from .dominican import q_money

REGULAR_HOURS = Decimal("8")
OVERTIME_FACTOR = Decimal("1.5")
DAYS_PER_MONTH = Decimal("30")

_HUNDREDTH = Decimal("0.01")


def _minutes(delta) -> int:
    return int(delta.total_seconds() // 60)


def _hours(minutes: int) -> Decimal:
    return (Decimal(minutes) / Decimal(60)).quantize(_HUNDREDTH, rounding=ROUND_HALF_UP)


def worked_hours(
    clock_in: datetime,
    clock_out: datetime,
    break_start: Optional[datetime] = None,
    break_end: Optional[datetime] = None,
) -> dict:
    """
    Whole minutes between clock-in and clock-out, minus the break. An open
    break is closed at clock-out.
    """
    total = _minutes(clock_out - clock_in)
    brk = 0
    if break_start:
        brk = max(0, _minutes((break_end or clock_out) - break_start))
    work = max(0, total - brk)
    hours = _hours(work)
    return {
        "total_hours": hours,
        "overtime_hours": max(Decimal("0.00"), hours - REGULAR_HOURS),
        "break_minutes": brk,
    }


def period_days(start: datetime, end: datetime) -> int:
    return max(0, math.ceil((end - start).total_seconds() / 86400))


def base_salary_portion(profile: dict, start: datetime, end: datetime, hours: Decimal) -> Decimal:
    salary_type = profile.get("salary_type")
    if salary_type in ("FIXED", "HYBRID"):
        monthly = Decimal(profile.get("base_salary") or 0)
        return q_money(monthly / DAYS_PER_MONTH * period_days(start, end))
    if salary_type == "HOURLY":
        return q_money(Decimal(profile.get("hourly_rate") or 0) * Decimal(hours))
    return Decimal("0.00")


def commission(amount, rate) -> Decimal:
    return q_money(Decimal(amount) * Decimal(rate or 0) / Decimal(100))


def overtime_pay(profile: dict, overtime_hours: Decimal) -> Decimal:
    return q_money(Decimal(profile.get("hourly_rate") or 0) * Decimal(overtime_hours) * OVERTIME_FACTOR)


def performance_score(sales_amount, target) -> Decimal:
    target = Decimal(target or 0)
    if target <= 0:
        return Decimal("0.00")
    return min(Decimal("100.00"), q_money(Decimal(sales_amount) / target * 100))


def compensation(profile: dict, sales: Iterable[dict], start: datetime, end: datetime,
                 hours: Decimal, overtime_hours: Decimal) -> dict:
    rate = Decimal(profile.get("commission_rate") or 0)
    breakdown = [
        {
            "sale_id": s["id"],
            "sale_number": s["sale_number"],
            "sale_amount": s["total"],
            "commission_rate": rate,
            "commission_earned": commission(s["total"], rate),
            "date": s["created_at"],
        }
        for s in sales
    ]
    total_sales = q_money(sum((Decimal(b["sale_amount"]) for b in breakdown), Decimal("0")))
    total_commission = q_money(sum((b["commission_earned"] for b in breakdown), Decimal("0")))
    base = base_salary_portion(profile, start, end, hours)
    overtime = overtime_pay(profile, overtime_hours)
    return {
        "metrics": {
            "total_sales": len(breakdown),
            "total_sales_amount": total_sales,
            "total_hours": hours,
            "total_overtime_hours": overtime_hours,
            "average_sale_amount": q_money(total_sales / len(breakdown)) if breakdown else Decimal("0.00"),
        },
        "compensation": {
            "base_salary": base,
            "commission": total_commission,
            "overtime_pay": overtime,
            "total_compensation": q_money(base + total_commission + overtime),
        },
        "breakdown": breakdown,
    }

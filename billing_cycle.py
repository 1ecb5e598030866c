"""
Credit-card billing cycles and installment dates.

A billing cycle for month M runs from the day after the closing day of month
M-1 to the closing day of month M. With ``closing_day=20`` the February cycle
is Jan 21 -> Feb 20. Purchases after the closing day fall into the next
month's cycle. Closing days that do not exist in a month (31 in April, 30 in
February) are clamped to that month's last day.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from errors import ValidationError


@dataclass(frozen=True)
class BillingCycle:
    start: date
    end: date

    def __contains__(self, day: date) -> bool:
        return self.start <= day <= self.end


@dataclass(frozen=True)
class BillingMonth:
    year: int
    month: int


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def clamp_day(year: int, month: int, day: int) -> int:
    return min(day, days_in_month(year, month))


def add_months(base: date, months: int, *, desired_day: Optional[int] = None) -> date:
    """Move ``base`` by whole months, snapping the day to the target month's end."""
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = desired_day if desired_day is not None else base.day
    return date(year, month, clamp_day(year, month, day))


def _check_closing_day(closing_day: int) -> None:
    if not 1 <= closing_day <= 31:
        raise ValidationError("Closing day must be between 1 and 31")


def cycle_dates(closing_day: int, year: int, month: int) -> BillingCycle:
    _check_closing_day(closing_day)
    if not 1 <= month <= 12:
        raise ValidationError("Month must be between 1 and 12")

    end = date(year, month, clamp_day(year, month, closing_day))

    prev_year, prev_month = (year - 1, 12) if month == 1 else (year, month - 1)
    start_day = clamp_day(prev_year, prev_month, closing_day) + 1
    if start_day > days_in_month(prev_year, prev_month):
        start = date(year, month, 1)
    else:
        start = date(prev_year, prev_month, start_day)
    return BillingCycle(start=start, end=end)


def classify_billing_month(transaction_date: date, closing_day: int) -> BillingMonth:
    _check_closing_day(closing_day)
    effective_closing = clamp_day(
        transaction_date.year, transaction_date.month, closing_day
    )
    if transaction_date.day > effective_closing:
        next_month = add_months(transaction_date.replace(day=1), 1)
        return BillingMonth(year=next_month.year, month=next_month.month)
    return BillingMonth(year=transaction_date.year, month=transaction_date.month)


def installment_dates(first_date: date, count: int) -> list[date]:
    """Dates of ``count`` monthly installments anchored on ``first_date``.

    The day of month is kept for every installment and clamped where the
    target month is shorter: Jan 31 -> Feb 28 -> Mar 31.
    """
    if count < 1:
        raise ValidationError("Installment count must be at least 1")
    return [
        add_months(first_date, offset, desired_day=first_date.day)
        for offset in range(count)
    ]


def first_installment_date(purchase_date: date, closing_day: int) -> date:
    billing = classify_billing_month(purchase_date, closing_day)
    return date(
        billing.year,
        billing.month,
        clamp_day(billing.year, billing.month, closing_day),
    )


def schedule_installments(
    purchase_date: date, count: int, closing_day: Optional[int] = None
) -> list[date]:
    if closing_day:
        return installment_dates(first_installment_date(purchase_date, closing_day), count)
    return installment_dates(purchase_date, count)


def split_installments(total_cents: int, count: int) -> int:
    # half-up rounding; the drift against the total is accepted
    if count < 1:
        raise ValidationError("Installment count must be at least 1")
    share = (Decimal(total_cents) / Decimal(count)).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return int(share)

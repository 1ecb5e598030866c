from dataclasses import dataclass
from datetime import date
from typing import Optional

from billing_cycle import days_in_month
from errors import ValidationError


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    def days(self) -> list[date]:
        return [
            date(self.start.year, self.start.month, day)
            for day in range(self.start.day, self.end.day + 1)
        ]


def month_period(year: int, month: int) -> Period:
    if not 1 <= month <= 12:
        raise ValidationError("Month must be between 1 and 12")
    start = date(year, month, 1)
    end = date(year, month, days_in_month(year, month))
    return Period(f"{year:04d}-{month:02d}", start, end)


def current_month(today: Optional[date] = None) -> Period:
    today = today or date.today()
    return month_period(today.year, today.month)

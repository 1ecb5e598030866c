import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import insert, select
from sqlalchemy.orm import Session

from billing_cycle import clamp_day
from config import get_settings
from database import unit_of_work
from models import (
    Account,
    Frequency,
    IncomeSource,
    RecurringBill,
    Transaction,
    TransactionSource,
    TransactionStatus,
    TransactionType,
)
from periods import Period, current_month, month_period


logger = logging.getLogger(__name__)


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def weekday_sunday_first(day: date) -> int:
    """Weekday number with 0=Sunday ... 6=Saturday, as templates store it."""
    return (day.weekday() + 1) % 7


@dataclass(frozen=True)
class DueRule:
    day: Optional[int] = None
    month: Optional[int] = None


class Schedule:
    """Due-date strategy for one template frequency."""

    dedupe_by_date = False

    def due_dates(self, rule: DueRule, period: Period) -> list[date]:
        raise NotImplementedError

    def describe(self, name: str, day: date) -> str:
        return name


class WeeklySchedule(Schedule):
    dedupe_by_date = True

    def __init__(self, default_weekday: int) -> None:
        self.default_weekday = default_weekday

    def due_dates(self, rule: DueRule, period: Period) -> list[date]:
        weekday = rule.day if rule.day is not None else self.default_weekday
        return [d for d in period.days() if weekday_sunday_first(d) == weekday]

    def describe(self, name: str, day: date) -> str:
        return f"{name} ({day.day}/{day.month})"


class BiweeklySchedule(Schedule):
    dedupe_by_date = True

    def __init__(self, default_day: int = 15) -> None:
        self.default_day = default_day

    def due_dates(self, rule: DueRule, period: Period) -> list[date]:
        base_day = rule.day if rule.day else self.default_day
        year, month = period.start.year, period.start.month
        dates: list[date] = []
        for day in (base_day, base_day + 14):
            due = date(year, month, clamp_day(year, month, day))
            if due not in dates:
                dates.append(due)
        return dates

    def describe(self, name: str, day: date) -> str:
        return f"{name} (day {day.day})"


class MonthlySchedule(Schedule):
    def due_dates(self, rule: DueRule, period: Period) -> list[date]:
        year, month = period.start.year, period.start.month
        return [date(year, month, clamp_day(year, month, rule.day or 1))]


class YearlySchedule(MonthlySchedule):
    def due_dates(self, rule: DueRule, period: Period) -> list[date]:
        if rule.month != period.start.month:
            return []
        return super().due_dates(rule, period)


BILL_SCHEDULES: dict[Frequency, Schedule] = {
    Frequency.weekly: WeeklySchedule(default_weekday=1),
    Frequency.monthly: MonthlySchedule(),
    Frequency.yearly: YearlySchedule(),
}

INCOME_SCHEDULES: dict[Frequency, Schedule] = {
    Frequency.weekly: WeeklySchedule(default_weekday=5),
    Frequency.biweekly: BiweeklySchedule(default_day=15),
    Frequency.monthly: MonthlySchedule(),
    Frequency.yearly: YearlySchedule(),
}


@dataclass(frozen=True)
class EnsureResult:
    created: int
    expenses: int
    income: int
    already_existed: bool


@dataclass
class _Materialized:
    template_ids: set[int] = field(default_factory=set)
    dates: dict[int, set[date]] = field(default_factory=dict)

    def add(self, template_id: int, day: date) -> None:
        self.template_ids.add(template_id)
        self.dates.setdefault(template_id, set()).add(day)

    def has(self, template_id: int, day: date, schedule: Schedule) -> bool:
        if schedule.dedupe_by_date:
            return day in self.dates.get(template_id, set())
        return template_id in self.template_ids


class PendingTransactionGenerator:
    """Materializes pending transactions for recurring bills and income sources.

    Generation is lazy: it runs when a month is viewed and only inserts the
    occurrences that are not already present, so calling it again for the
    same month is a no-op.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def ensure_current_month(
        self, budget_id: int, today: Optional[date] = None
    ) -> EnsureResult:
        period = current_month(today or local_today())
        return self.ensure_pending_for_month(
            budget_id, period.start.year, period.start.month
        )

    def ensure_pending_for_month(
        self, budget_id: int, year: int, month: int
    ) -> EnsureResult:
        period = month_period(year, month)

        default_account_id = self._default_account_id(budget_id)
        if default_account_id is None:
            logger.warning(
                f"pending_skipped: budget_id={budget_id} period={period.slug} "
                "reason=no_accounts"
            )
            return EnsureResult(created=0, expenses=0, income=0, already_existed=True)

        bills_done, income_done = self._materialized(budget_id, period)
        rows = self._bill_rows(budget_id, period, bills_done, default_account_id)
        rows += self._income_rows(budget_id, period, income_done, default_account_id)

        if not rows:
            return EnsureResult(created=0, expenses=0, income=0, already_existed=True)

        with unit_of_work(self.session):
            inserted_types = self._insert_ignoring_duplicates(rows)

        expenses = sum(1 for t in inserted_types if t == TransactionType.expense)
        income = sum(1 for t in inserted_types if t == TransactionType.income)
        created = expenses + income
        logger.info(
            f"pending_generated: budget_id={budget_id} period={period.slug} "
            f"created={created} expenses={expenses} income={income}"
        )
        return EnsureResult(
            created=created,
            expenses=expenses,
            income=income,
            already_existed=created == 0,
        )

    def _default_account_id(self, budget_id: int) -> Optional[int]:
        stmt = (
            select(Account.id)
            .where(Account.budget_id == budget_id, Account.is_archived.is_(False))
            .order_by(Account.display_order, Account.id)
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def _materialized(
        self, budget_id: int, period: Period
    ) -> tuple[_Materialized, _Materialized]:
        stmt = select(
            Transaction.recurring_bill_id,
            Transaction.income_source_id,
            Transaction.date,
        ).where(
            Transaction.budget_id == budget_id,
            Transaction.date.between(period.start, period.end),
        )
        bills = _Materialized()
        income = _Materialized()
        for bill_id, source_id, day in self.session.execute(stmt):
            if bill_id is not None:
                bills.add(bill_id, day)
            if source_id is not None:
                income.add(source_id, day)
        return bills, income

    def _bill_rows(
        self,
        budget_id: int,
        period: Period,
        done: _Materialized,
        default_account_id: int,
    ) -> list[dict]:
        stmt = (
            select(RecurringBill)
            .where(
                RecurringBill.budget_id == budget_id,
                RecurringBill.is_active.is_(True),
            )
            .order_by(RecurringBill.id)
        )
        rows: list[dict] = []
        for bill in self.session.scalars(stmt):
            if bill.amount_cents <= 0:
                continue
            schedule = BILL_SCHEDULES[bill.frequency]
            rule = DueRule(day=bill.due_day, month=bill.due_month)
            for day in schedule.due_dates(rule, period):
                if done.has(bill.id, day, schedule):
                    continue
                rows.append(
                    _pending_row(
                        budget_id=budget_id,
                        account_id=bill.account_id or default_account_id,
                        type=TransactionType.expense,
                        amount_cents=bill.amount_cents,
                        day=day,
                        description=schedule.describe(bill.name, day),
                        source=TransactionSource.recurring,
                        category_id=bill.category_id,
                        recurring_bill_id=bill.id,
                    )
                )
        return rows

    def _income_rows(
        self,
        budget_id: int,
        period: Period,
        done: _Materialized,
        default_account_id: int,
    ) -> list[dict]:
        stmt = (
            select(IncomeSource)
            .where(
                IncomeSource.budget_id == budget_id,
                IncomeSource.is_active.is_(True),
                IncomeSource.day_of_month.is_not(None),
            )
            .order_by(IncomeSource.id)
        )
        rows: list[dict] = []
        for source in self.session.scalars(stmt):
            if source.amount_cents <= 0:
                continue
            schedule = INCOME_SCHEDULES[source.frequency]
            rule = DueRule(day=source.day_of_month, month=source.due_month)
            for day in schedule.due_dates(rule, period):
                if done.has(source.id, day, schedule):
                    continue
                rows.append(
                    _pending_row(
                        budget_id=budget_id,
                        account_id=source.account_id or default_account_id,
                        type=TransactionType.income,
                        amount_cents=source.amount_cents,
                        day=day,
                        description=schedule.describe(source.name, day),
                        source=TransactionSource.scheduled,
                        member_id=source.member_id,
                        income_source_id=source.id,
                    )
                )
        return rows

    def _insert_ignoring_duplicates(self, rows: list[dict]) -> list[TransactionType]:
        dialect = self.session.get_bind().dialect.name
        if dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert as dialect_insert
        elif dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert as dialect_insert
        else:
            self.session.execute(insert(Transaction), rows)
            return [row["type"] for row in rows]

        stmt = (
            dialect_insert(Transaction)
            .values(rows)
            .on_conflict_do_nothing()
            .returning(Transaction.type)
        )
        return list(self.session.scalars(stmt))


def _pending_row(
    *,
    budget_id: int,
    account_id: int,
    type: TransactionType,
    amount_cents: int,
    day: date,
    description: str,
    source: TransactionSource,
    category_id: Optional[int] = None,
    member_id: Optional[int] = None,
    recurring_bill_id: Optional[int] = None,
    income_source_id: Optional[int] = None,
) -> dict:
    now = datetime.utcnow()
    return {
        "budget_id": budget_id,
        "account_id": account_id,
        "category_id": category_id,
        "member_id": member_id,
        "recurring_bill_id": recurring_bill_id,
        "income_source_id": income_source_id,
        "type": type,
        "status": TransactionStatus.pending,
        "amount_cents": amount_cents,
        "description": description,
        "date": day,
        "is_installment": False,
        "source": source,
        "balance_applied": False,
        "created_at": now,
        "updated_at": now,
    }

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional, TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_cycle import clamp_day, schedule_installments, split_installments
from config import get_settings
from database import Base, unit_of_work
from errors import NotFoundError, ReferentialError, StateError, ValidationError
from models import (
    Account,
    AccountType,
    Budget,
    BudgetMember,
    Category,
    Frequency,
    Goal,
    GoalContribution,
    IncomeSource,
    RecurringBill,
    Transaction,
    TransactionSource,
    TransactionStatus,
    TransactionType,
)
from recurrence import local_today
from schemas import (
    AccountIn,
    ConfirmScheduledIn,
    GoalContributionIn,
    GoalIn,
    GoalUpdateIn,
    IncomeSourceIn,
    RecurringBillIn,
    TransactionIn,
)


logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=Base)

SETTLED_STATUSES = (TransactionStatus.cleared, TransactionStatus.reconciled)

OCCURRENCE_CONSTRAINTS = ("uq_txn_bill_occurrence", "uq_txn_income_occurrence")
OCCURRENCE_COLUMNS = ("transactions.recurring_bill_id", "transactions.income_source_id")


def is_occurrence_conflict(exc: IntegrityError) -> bool:
    """True when ``exc`` comes from a template+date occurrence constraint."""
    message = str(exc.orig)
    if any(name in message for name in OCCURRENCE_CONSTRAINTS):
        return True
    # SQLite reports the columns instead of the constraint name
    return "UNIQUE constraint failed" in message and any(
        column in message for column in OCCURRENCE_COLUMNS
    )


def get_owned(
    session: Session, model: type[ModelT], obj_id: int, budget_id: int, label: str
) -> ModelT:
    obj = session.get(model, obj_id)
    if obj is None:
        raise NotFoundError(f"{label} not found")
    if obj.budget_id != budget_id:
        raise ReferentialError(f"{label} does not belong to this budget")
    return obj


def transaction_legs(
    txn_type: TransactionType,
    amount_cents: int,
    account_id: int,
    to_account_id: Optional[int] = None,
) -> list[tuple[int, int]]:
    """Signed balance delta per account for one transaction row."""
    if txn_type == TransactionType.income:
        return [(account_id, amount_cents)]
    legs = [(account_id, -amount_cents)]
    if txn_type == TransactionType.transfer and to_account_id is not None:
        legs.append((to_account_id, amount_cents))
    return legs


@dataclass
class BalanceChanges:
    """Pending additive balance updates, applied in ascending account id order."""

    balance: dict[int, int] = field(default_factory=dict)
    cleared: dict[int, int] = field(default_factory=dict)

    def add(self, account_id: int, delta: int, *, cleared: bool = False) -> None:
        self.balance[account_id] = self.balance.get(account_id, 0) + delta
        if cleared:
            self.add_cleared(account_id, delta)

    def add_cleared(self, account_id: int, delta: int) -> None:
        self.cleared[account_id] = self.cleared.get(account_id, 0) + delta

    def apply(self, session: Session) -> None:
        touched = sorted(set(self.balance) | set(self.cleared))
        now = datetime.utcnow()
        for account_id in touched:
            values: dict[str, object] = {"updated_at": now}
            if self.balance.get(account_id):
                values["balance_cents"] = (
                    Account.balance_cents + self.balance[account_id]
                )
            if self.cleared.get(account_id):
                values["cleared_balance_cents"] = (
                    Account.cleared_balance_cents + self.cleared[account_id]
                )
            session.execute(
                update(Account)
                .where(Account.id == account_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        touched_ids = set(touched)
        for obj in list(session.identity_map.values()):
            if isinstance(obj, Account) and obj.id in touched_ids:
                session.expire(obj)


@dataclass(frozen=True)
class ConfirmResult:
    transaction: Transaction
    action: str


@dataclass(frozen=True)
class ContributionResult:
    contribution: GoalContribution
    transaction: Optional[Transaction]
    goal: Goal
    just_completed: bool


def validate_frequency_fields(
    frequency: Frequency,
    due_day: Optional[int],
    due_month: Optional[int],
    *,
    allow_biweekly: bool,
) -> None:
    if frequency == Frequency.biweekly and not allow_biweekly:
        raise ValidationError("Biweekly frequency is only available for income")
    if frequency == Frequency.yearly and not due_month:
        raise ValidationError("Yearly templates require a due month")
    if due_day is None:
        return
    if frequency == Frequency.weekly:
        if not 0 <= due_day <= 6:
            raise ValidationError(
                "Weekly templates use a weekday from 0 (Sunday) to 6 (Saturday)"
            )
    elif not 1 <= due_day <= 31:
        raise ValidationError("Due day must be between 1 and 31")


class AccountService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, account_id: int, budget_id: int) -> Account:
        return get_owned(self.session, Account, account_id, budget_id, "Account")

    def list(self, budget_id: int, include_archived: bool = False) -> list[Account]:
        stmt = select(Account).where(Account.budget_id == budget_id)
        if not include_archived:
            stmt = stmt.where(Account.is_archived.is_(False))
        stmt = stmt.order_by(Account.display_order, Account.id)
        return self.session.scalars(stmt).all()

    def create(self, data: AccountIn) -> Account:
        if self.session.get(Budget, data.budget_id) is None:
            raise NotFoundError("Budget not found")
        is_card = data.type == AccountType.credit_card
        if not is_card and (data.closing_day or data.due_day):
            raise ValidationError("Closing and due days only apply to credit cards")
        account = Account(
            budget_id=data.budget_id,
            name=data.name,
            type=data.type,
            balance_cents=data.balance_cents,
            cleared_balance_cents=data.balance_cents,
            credit_limit_cents=data.credit_limit_cents,
            closing_day=data.closing_day,
            due_day=data.due_day,
            display_order=data.display_order,
        )
        with unit_of_work(self.session):
            self.session.add(account)
        self.session.refresh(account)
        return account

    def archive(self, account_id: int, budget_id: int) -> Account:
        account = self.get(account_id, budget_id)
        with unit_of_work(self.session):
            account.is_archived = True
        return account


class LedgerService:
    """Atomic write boundary for transactions and account balances.

    Every public method validates its input first and then performs all row
    inserts and balance updates inside one unit of work. Balances are only
    ever changed with ``balance = balance + delta`` evaluated by the database.
    """

    def __init__(self, session: Session) -> None:
        self.session = session
        self.settings = get_settings()

    def get(self, transaction_id: int, budget_id: Optional[int] = None) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if txn is None:
            raise NotFoundError("Transaction not found")
        if budget_id is not None and txn.budget_id != budget_id:
            raise ReferentialError("Transaction does not belong to this budget")
        return txn

    def create_transaction(
        self, data: TransactionIn
    ) -> Transaction | list[Transaction]:
        account, to_account = self._validate(data)
        try:
            if data.is_installment and (data.total_installments or 0) > 1:
                return self._create_installments(data, account, to_account)
            return self._create_single(data)
        except IntegrityError as exc:
            if not is_occurrence_conflict(exc):
                raise
            raise StateError(
                "A transaction for this template and date already exists"
            ) from exc

    def _validate(self, data: TransactionIn) -> tuple[Account, Optional[Account]]:
        if data.amount_cents <= 0:
            raise ValidationError("Amount must be positive")
        if data.type == TransactionType.transfer:
            if data.to_account_id is None:
                raise ValidationError("Transfer requires a destination account")
            if data.to_account_id == data.account_id:
                raise ValidationError("Transfer accounts must differ")
        elif data.to_account_id is not None:
            raise ValidationError("Only transfers can have a destination account")
        if data.is_installment:
            if not data.total_installments or data.total_installments < 2:
                raise ValidationError("Installments require at least 2 payments")
            if data.total_installments > self.settings.max_installments:
                raise ValidationError(
                    f"At most {self.settings.max_installments} installments allowed"
                )
        if data.recurring_bill_id and data.type != TransactionType.expense:
            raise ValidationError("Recurring bills only produce expenses")
        if data.income_source_id and data.type != TransactionType.income:
            raise ValidationError("Income sources only produce income")

        budget_id = data.budget_id
        account = self._open_account(data.account_id, budget_id)
        to_account = None
        if data.to_account_id is not None:
            to_account = self._open_account(data.to_account_id, budget_id)
        if data.category_id is not None:
            get_owned(self.session, Category, data.category_id, budget_id, "Category")
        if data.member_id is not None:
            get_owned(self.session, BudgetMember, data.member_id, budget_id, "Member")
        if data.recurring_bill_id is not None:
            get_owned(
                self.session,
                RecurringBill,
                data.recurring_bill_id,
                budget_id,
                "Recurring bill",
            )
        if data.income_source_id is not None:
            get_owned(
                self.session,
                IncomeSource,
                data.income_source_id,
                budget_id,
                "Income source",
            )
        if data.goal_id is not None:
            get_owned(self.session, Goal, data.goal_id, budget_id, "Goal")
        return account, to_account

    def _open_account(self, account_id: int, budget_id: int) -> Account:
        account = get_owned(self.session, Account, account_id, budget_id, "Account")
        if account.is_archived:
            raise StateError("Account is archived")
        return account

    def _new_row(self, data: TransactionIn, **overrides) -> Transaction:
        fields = dict(
            budget_id=data.budget_id,
            account_id=data.account_id,
            to_account_id=data.to_account_id,
            category_id=data.category_id,
            member_id=data.member_id,
            income_source_id=data.income_source_id,
            recurring_bill_id=data.recurring_bill_id,
            goal_id=data.goal_id,
            type=data.type,
            status=data.status,
            amount_cents=data.amount_cents,
            description=data.description,
            notes=data.notes,
            date=data.date,
            source=data.source,
            balance_applied=True,
        )
        fields.update(overrides)
        return Transaction(**fields)

    def _create_single(self, data: TransactionIn) -> Transaction:
        txn = self._new_row(data)
        settled = data.status in SETTLED_STATUSES
        changes = BalanceChanges()
        for account_id, delta in transaction_legs(
            data.type, data.amount_cents, data.account_id, data.to_account_id
        ):
            changes.add(account_id, delta, cleared=settled)

        with unit_of_work(self.session):
            self.session.add(txn)
            self.session.flush()
            changes.apply(self.session)
        self.session.refresh(txn)
        logger.info(
            f"transaction_created: id={txn.id} budget_id={txn.budget_id} "
            f"type={txn.type.value} amount_cents={txn.amount_cents}"
        )
        return txn

    def _create_installments(
        self, data: TransactionIn, account: Account, to_account: Optional[Account]
    ) -> list[Transaction]:
        count = data.total_installments
        per_installment = split_installments(data.amount_cents, count)
        if per_installment <= 0:
            raise ValidationError("Amount is too small to split into installments")
        closing_day = account.closing_day if account.is_credit_card else None
        dates = schedule_installments(data.date, count, closing_day)

        source_full = account.is_credit_card
        dest_full = to_account is not None and to_account.is_credit_card
        children_settled = source_full and (to_account is None or dest_full)

        parent = self._new_row(
            data,
            amount_cents=per_installment,
            date=dates[0],
            is_installment=True,
            installment_number=1,
            total_installments=count,
        )

        # credit lines take the whole purchase now; other accounts pay per installment
        changes = BalanceChanges()
        parent_settled = data.status in SETTLED_STATUSES
        full_legs = transaction_legs(
            data.type, data.amount_cents, data.account_id, data.to_account_id
        )
        installment_legs = transaction_legs(
            data.type, per_installment, data.account_id, data.to_account_id
        )
        for (account_id, full_delta), (_, delta) in zip(full_legs, installment_legs):
            upfront = source_full if account_id == data.account_id else dest_full
            changes.add(account_id, full_delta if upfront else delta)
            if parent_settled:
                changes.add_cleared(account_id, delta)

        with unit_of_work(self.session):
            self.session.add(parent)
            self.session.flush()
            children = [
                self._new_row(
                    data,
                    amount_cents=per_installment,
                    date=dates[number - 1],
                    status=TransactionStatus.pending,
                    is_installment=True,
                    installment_number=number,
                    total_installments=count,
                    parent_transaction_id=parent.id,
                    balance_applied=children_settled,
                )
                for number in range(2, count + 1)
            ]
            self.session.add_all(children)
            self.session.flush()
            changes.apply(self.session)

        created = [parent, *children]
        for txn in created:
            self.session.refresh(txn)
        logger.info(
            f"installments_created: parent_id={parent.id} budget_id={data.budget_id} "
            f"count={count} installment_cents={per_installment} "
            f"credit_card={account.is_credit_card}"
        )
        return created

    def _unapplied_legs(self, txn: Transaction) -> list[tuple[int, int]]:
        if txn.balance_applied:
            return []
        legs = transaction_legs(
            txn.type, txn.amount_cents, txn.account_id, txn.to_account_id
        )
        if txn.parent_transaction_id is not None:
            # installment children on a credit card were charged with the parent
            legs = [
                (account_id, delta)
                for account_id, delta in legs
                if not self.session.get(Account, account_id).is_credit_card
            ]
        return legs

    def _mark_cleared(self, txn: Transaction, **values) -> None:
        result = self.session.execute(
            update(Transaction)
            .where(
                Transaction.id == txn.id,
                Transaction.status == TransactionStatus.pending,
            )
            .values(
                status=TransactionStatus.cleared,
                balance_applied=True,
                updated_at=datetime.utcnow(),
                **values,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StateError("Transaction is no longer pending")
        self.session.expire(txn)

    def clear_transaction(
        self, transaction_id: int, budget_id: Optional[int] = None
    ) -> Transaction:
        txn = self.get(transaction_id, budget_id)
        if txn.status != TransactionStatus.pending:
            raise StateError(f"Transaction is already {txn.status.value}")

        changes = BalanceChanges()
        for account_id, delta in transaction_legs(
            txn.type, txn.amount_cents, txn.account_id, txn.to_account_id
        ):
            changes.add_cleared(account_id, delta)
        for account_id, delta in self._unapplied_legs(txn):
            changes.add(account_id, delta)

        with unit_of_work(self.session):
            self._mark_cleared(txn)
            changes.apply(self.session)
        self.session.refresh(txn)
        logger.info(f"transaction_cleared: id={txn.id} budget_id={txn.budget_id}")
        return txn

    def reconcile_transaction(
        self, transaction_id: int, budget_id: Optional[int] = None
    ) -> Transaction:
        txn = self.get(transaction_id, budget_id)
        if txn.status != TransactionStatus.cleared:
            raise StateError("Only cleared transactions can be reconciled")
        with unit_of_work(self.session):
            txn.status = TransactionStatus.reconciled
        return txn

    def confirm_scheduled(self, budget_id: int, data: ConfirmScheduledIn) -> ConfirmResult:
        """Confirm one occurrence of a recurring bill or income source.

        A pending occurrence on the same calendar day is flipped to cleared
        with the confirmed amount and account. Without one, a new cleared
        transaction is created. An occurrence that was already confirmed is
        never recreated.
        """
        if data.type == TransactionType.transfer:
            raise ValidationError("Only income and expenses can be confirmed")
        if data.amount_cents <= 0:
            raise ValidationError("Amount must be positive")
        if data.recurring_bill_id and data.type != TransactionType.expense:
            raise ValidationError("Recurring bills only produce expenses")
        if data.income_source_id and data.type != TransactionType.income:
            raise ValidationError("Income sources only produce income")
        self._open_account(data.account_id, budget_id)
        if data.category_id is not None:
            get_owned(self.session, Category, data.category_id, budget_id, "Category")

        template_filter = None
        if data.income_source_id is not None:
            get_owned(
                self.session,
                IncomeSource,
                data.income_source_id,
                budget_id,
                "Income source",
            )
            template_filter = Transaction.income_source_id == data.income_source_id
        elif data.recurring_bill_id is not None:
            get_owned(
                self.session,
                RecurringBill,
                data.recurring_bill_id,
                budget_id,
                "Recurring bill",
            )
            template_filter = Transaction.recurring_bill_id == data.recurring_bill_id

        existing = None
        if template_filter is not None:
            existing = self.session.scalar(
                select(Transaction)
                .where(
                    Transaction.budget_id == budget_id,
                    Transaction.type == data.type,
                    template_filter,
                    Transaction.date == data.date,
                )
                .order_by(Transaction.id)
                .limit(1)
            )

        if existing is not None and existing.status != TransactionStatus.pending:
            raise StateError("This scheduled transaction was already confirmed")

        new_legs = transaction_legs(data.type, data.amount_cents, data.account_id)
        changes = BalanceChanges()
        for account_id, delta in new_legs:
            changes.add(account_id, delta, cleared=True)

        if existing is not None:
            if existing.balance_applied:
                for account_id, delta in transaction_legs(
                    existing.type, existing.amount_cents, existing.account_id
                ):
                    changes.add(account_id, -delta)
            with unit_of_work(self.session):
                self._mark_cleared(
                    existing,
                    amount_cents=data.amount_cents,
                    account_id=data.account_id,
                    description=data.description or existing.description,
                )
                changes.apply(self.session)
            self.session.refresh(existing)
            logger.info(
                f"scheduled_confirmed: id={existing.id} budget_id={budget_id} "
                "action=updated"
            )
            return ConfirmResult(transaction=existing, action="updated")

        txn = Transaction(
            budget_id=budget_id,
            account_id=data.account_id,
            category_id=data.category_id,
            income_source_id=data.income_source_id,
            recurring_bill_id=data.recurring_bill_id,
            type=data.type,
            status=TransactionStatus.cleared,
            amount_cents=data.amount_cents,
            description=data.description,
            date=data.date,
            source=TransactionSource.manual,
            balance_applied=True,
        )
        try:
            with unit_of_work(self.session):
                self.session.add(txn)
                self.session.flush()
                changes.apply(self.session)
        except IntegrityError as exc:
            if not is_occurrence_conflict(exc):
                raise
            raise StateError("This scheduled transaction was already confirmed") from exc
        self.session.refresh(txn)
        logger.info(
            f"scheduled_confirmed: id={txn.id} budget_id={budget_id} action=created"
        )
        return ConfirmResult(transaction=txn, action="created")


class GoalService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, goal_id: int) -> Goal:
        goal = self.session.get(Goal, goal_id)
        if goal is None:
            raise NotFoundError("Goal not found")
        return goal

    def create_goal(self, data: GoalIn) -> Goal:
        if self.session.get(Budget, data.budget_id) is None:
            raise NotFoundError("Budget not found")
        if data.account_id is not None:
            get_owned(self.session, Account, data.account_id, data.budget_id, "Account")
        goal = Goal(
            budget_id=data.budget_id,
            account_id=data.account_id,
            name=data.name,
            target_amount_cents=data.target_amount_cents,
            current_amount_cents=0,
            target_date=data.target_date,
        )
        with unit_of_work(self.session):
            self.session.add(goal)
        self.session.refresh(goal)
        return goal

    def update_goal(self, goal_id: int, budget_id: int, data: GoalUpdateIn) -> Goal:
        """Apply the fields present in ``data``; the saved amount is never touched here."""
        goal = get_owned(self.session, Goal, goal_id, budget_id, "Goal")
        changes = data.model_dump(exclude_unset=True)
        if changes.get("account_id") is not None:
            get_owned(self.session, Account, changes["account_id"], budget_id, "Account")
        for name in ("name", "target_amount_cents", "target_date"):
            if name in changes and changes[name] is None:
                raise ValidationError(f"{name} cannot be empty")

        completed = changes.pop("is_completed", None)
        with unit_of_work(self.session):
            for name, value in changes.items():
                setattr(goal, name, value)
            if completed is True and not goal.is_completed:
                goal.is_completed = True
                goal.completed_at = datetime.utcnow()
            elif completed is False:
                goal.is_completed = False
                goal.completed_at = None
        logger.info(f"goal_updated: goal_id={goal.id} fields={sorted(data.model_fields_set)}")
        return goal

    def archive(self, goal_id: int, budget_id: int) -> Goal:
        goal = get_owned(self.session, Goal, goal_id, budget_id, "Goal")
        with unit_of_work(self.session):
            goal.is_archived = True
        logger.info(f"goal_archived: goal_id={goal.id} budget_id={budget_id}")
        return goal

    def contribute(self, goal_id: int, data: GoalContributionIn) -> ContributionResult:
        goal = self.get(goal_id)
        if goal.is_archived:
            raise StateError("Goal is archived")
        if data.amount_cents <= 0:
            raise ValidationError("Contribution must be positive")

        from_account = None
        if data.from_account_id is not None:
            from_account = get_owned(
                self.session, Account, data.from_account_id, goal.budget_id, "Account"
            )
            if from_account.is_archived:
                raise StateError("Account is archived")
            if from_account.id == goal.account_id:
                raise ValidationError("Source account is the goal's own account")

        txn = None
        changes = BalanceChanges()
        if from_account is not None and goal.account_id is not None:
            txn = Transaction(
                budget_id=goal.budget_id,
                account_id=from_account.id,
                to_account_id=goal.account_id,
                goal_id=goal.id,
                type=TransactionType.transfer,
                status=TransactionStatus.cleared,
                amount_cents=data.amount_cents,
                description=f"Goal: {goal.name}",
                date=_contribution_date(data.year, data.month),
                source=TransactionSource.manual,
                balance_applied=True,
            )
            for account_id, delta in transaction_legs(
                txn.type, txn.amount_cents, txn.account_id, txn.to_account_id
            ):
                changes.add(account_id, delta, cleared=True)

        now = datetime.utcnow()
        with unit_of_work(self.session):
            if txn is not None:
                self.session.add(txn)
                self.session.flush()
                changes.apply(self.session)
            contribution = GoalContribution(
                goal_id=goal.id,
                from_account_id=data.from_account_id,
                transaction_id=txn.id if txn is not None else None,
                year=data.year,
                month=data.month,
                amount_cents=data.amount_cents,
            )
            self.session.add(contribution)
            self.session.execute(
                update(Goal)
                .where(Goal.id == goal.id)
                .values(
                    current_amount_cents=Goal.current_amount_cents
                    + data.amount_cents,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            current = self.session.scalar(
                select(Goal.current_amount_cents).where(Goal.id == goal.id)
            )
            just_completed = False
            if current >= goal.target_amount_cents:
                result = self.session.execute(
                    update(Goal)
                    .where(
                        Goal.id == goal.id,
                        Goal.is_completed.is_(False),
                        Goal.current_amount_cents >= Goal.target_amount_cents,
                    )
                    .values(is_completed=True, completed_at=now)
                    .execution_options(synchronize_session=False)
                )
                just_completed = result.rowcount == 1
            self.session.flush()
        self.session.refresh(goal)
        self.session.refresh(contribution)
        if txn is not None:
            self.session.refresh(txn)
        logger.info(
            f"goal_contribution: goal_id={goal.id} amount_cents={data.amount_cents} "
            f"current_cents={goal.current_amount_cents} just_completed={just_completed}"
        )
        return ContributionResult(
            contribution=contribution,
            transaction=txn,
            goal=goal,
            just_completed=just_completed,
        )


def _contribution_date(year: int, month: int) -> date:
    today = local_today()
    if (today.year, today.month) == (year, month):
        return today
    return date(year, month, clamp_day(year, month, today.day))


class RecurringTemplateService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_bills(self, budget_id: int, include_inactive: bool = False) -> list[RecurringBill]:
        stmt = select(RecurringBill).where(RecurringBill.budget_id == budget_id)
        if not include_inactive:
            stmt = stmt.where(RecurringBill.is_active.is_(True))
        return self.session.scalars(stmt.order_by(RecurringBill.id)).all()

    def list_income_sources(
        self, budget_id: int, include_inactive: bool = False
    ) -> list[IncomeSource]:
        stmt = select(IncomeSource).where(IncomeSource.budget_id == budget_id)
        if not include_inactive:
            stmt = stmt.where(IncomeSource.is_active.is_(True))
        return self.session.scalars(stmt.order_by(IncomeSource.id)).all()

    def _check_bill(self, data: RecurringBillIn) -> None:
        validate_frequency_fields(
            data.frequency, data.due_day, data.due_month, allow_biweekly=False
        )
        get_owned(self.session, Category, data.category_id, data.budget_id, "Category")
        if data.account_id is not None:
            get_owned(self.session, Account, data.account_id, data.budget_id, "Account")

    def _check_income(self, data: IncomeSourceIn) -> None:
        validate_frequency_fields(
            data.frequency, data.day_of_month, data.due_month, allow_biweekly=True
        )
        if data.account_id is not None:
            get_owned(self.session, Account, data.account_id, data.budget_id, "Account")
        if data.member_id is not None:
            get_owned(
                self.session, BudgetMember, data.member_id, data.budget_id, "Member"
            )

    def create_bill(self, data: RecurringBillIn) -> RecurringBill:
        self._check_bill(data)
        bill = RecurringBill(**data.model_dump())
        with unit_of_work(self.session):
            self.session.add(bill)
        self.session.refresh(bill)
        return bill

    def update_bill(self, bill_id: int, data: RecurringBillIn) -> RecurringBill:
        bill = get_owned(
            self.session, RecurringBill, bill_id, data.budget_id, "Recurring bill"
        )
        self._check_bill(data)
        with unit_of_work(self.session):
            for name, value in data.model_dump().items():
                setattr(bill, name, value)
        return bill

    def deactivate_bill(self, bill_id: int, budget_id: int) -> RecurringBill:
        bill = get_owned(
            self.session, RecurringBill, bill_id, budget_id, "Recurring bill"
        )
        with unit_of_work(self.session):
            bill.is_active = False
        return bill

    def create_income_source(self, data: IncomeSourceIn) -> IncomeSource:
        self._check_income(data)
        source = IncomeSource(**data.model_dump())
        with unit_of_work(self.session):
            self.session.add(source)
        self.session.refresh(source)
        return source

    def update_income_source(self, source_id: int, data: IncomeSourceIn) -> IncomeSource:
        source = get_owned(
            self.session, IncomeSource, source_id, data.budget_id, "Income source"
        )
        self._check_income(data)
        with unit_of_work(self.session):
            for name, value in data.model_dump().items():
                setattr(source, name, value)
        return source

    def deactivate_income_source(self, source_id: int, budget_id: int) -> IncomeSource:
        source = get_owned(
            self.session, IncomeSource, source_id, budget_id, "Income source"
        )
        with unit_of_work(self.session):
            source.is_active = False
        return source


@dataclass(frozen=True)
class AutoClearResult:
    expenses: int
    income: int


class AutoClearService:
    """Clears due occurrences of auto-debit bills and auto-confirm income."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def clear_due(self, today: Optional[date] = None) -> AutoClearResult:
        today = today or local_today()
        expenses = 0
        income = 0
        for budget_id in self.session.scalars(select(Budget.id).order_by(Budget.id)).all():
            result = self.clear_due_for_budget(budget_id, today)
            expenses += result.expenses
            income += result.income
        return AutoClearResult(expenses=expenses, income=income)

    def clear_due_for_budget(self, budget_id: int, today: date) -> AutoClearResult:
        expense_ids = self.session.scalars(
            select(Transaction.id)
            .join(RecurringBill, Transaction.recurring_bill_id == RecurringBill.id)
            .where(
                Transaction.budget_id == budget_id,
                Transaction.status == TransactionStatus.pending,
                Transaction.type == TransactionType.expense,
                Transaction.date <= today,
                RecurringBill.is_active.is_(True),
                RecurringBill.is_auto_debit.is_(True),
            )
            .order_by(Transaction.date, Transaction.id)
        ).all()
        income_ids = self.session.scalars(
            select(Transaction.id)
            .join(IncomeSource, Transaction.income_source_id == IncomeSource.id)
            .where(
                Transaction.budget_id == budget_id,
                Transaction.status == TransactionStatus.pending,
                Transaction.type == TransactionType.income,
                Transaction.date <= today,
                IncomeSource.is_active.is_(True),
                IncomeSource.is_auto_confirm.is_(True),
            )
            .order_by(Transaction.date, Transaction.id)
        ).all()

        ledger = LedgerService(self.session)
        cleared_expenses = self._clear_all(ledger, budget_id, expense_ids)
        cleared_income = self._clear_all(ledger, budget_id, income_ids)
        if cleared_expenses or cleared_income:
            logger.info(
                f"auto_clear: budget_id={budget_id} expenses={cleared_expenses} "
                f"income={cleared_income}"
            )
        return AutoClearResult(expenses=cleared_expenses, income=cleared_income)

    def _clear_all(
        self, ledger: LedgerService, budget_id: int, transaction_ids: list[int]
    ) -> int:
        cleared = 0
        for transaction_id in transaction_ids:
            try:
                ledger.clear_transaction(transaction_id, budget_id)
            except StateError:
                logger.warning(
                    f"auto_clear_skipped: transaction_id={transaction_id} "
                    "reason=not_pending"
                )
                continue
            cleared += 1
        return cleared

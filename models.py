from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class AccountType(str, Enum):
    checking = "checking"
    savings = "savings"
    credit_card = "credit_card"
    cash = "cash"
    investment = "investment"
    benefit = "benefit"


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"


class TransactionStatus(str, Enum):
    pending = "pending"
    cleared = "cleared"
    reconciled = "reconciled"


class TransactionSource(str, Enum):
    manual = "manual"
    web = "web"
    recurring = "recurring"
    scheduled = "scheduled"
    import_ = "import"


TRANSACTION_SOURCE_ENUM = SAEnum(
    TransactionSource,
    name="transactionsource",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class Frequency(str, Enum):
    weekly = "weekly"
    biweekly = "biweekly"
    monthly = "monthly"
    yearly = "yearly"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)

    accounts: Mapped[list["Account"]] = relationship(
        "Account", back_populates="budget"
    )


class BudgetMember(Base, TimestampMixin):
    __tablename__ = "budget_members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    __table_args__ = (
        UniqueConstraint("budget_id", "name", name="uq_category_budget_name"),
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    type: Mapped[AccountType] = mapped_column(SAEnum(AccountType), nullable=False)
    balance_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    cleared_balance_cents: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0
    )
    credit_limit_cents: Mapped[Optional[int]] = mapped_column(BigInteger)
    closing_day: Mapped[Optional[int]] = mapped_column(Integer)
    due_day: Mapped[Optional[int]] = mapped_column(Integer)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    budget: Mapped["Budget"] = relationship("Budget", back_populates="accounts")

    __table_args__ = (
        CheckConstraint(
            "closing_day IS NULL OR (closing_day BETWEEN 1 AND 31)",
            name="ck_account_closing_day",
        ),
        CheckConstraint(
            "due_day IS NULL OR (due_day BETWEEN 1 AND 31)",
            name="ck_account_due_day",
        ),
        Index("ix_accounts_budget", "budget_id"),
    )

    @property
    def is_credit_card(self) -> bool:
        return self.type == AccountType.credit_card


class RecurringBill(Base, TimestampMixin):
    __tablename__ = "recurring_bills"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    frequency: Mapped[Frequency] = mapped_column(
        SAEnum(Frequency), nullable=False, default=Frequency.monthly
    )
    # weekday (0=Sunday) for weekly bills, day of month otherwise
    due_day: Mapped[Optional[int]] = mapped_column(Integer)
    due_month: Mapped[Optional[int]] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_auto_debit: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    category: Mapped["Category"] = relationship("Category")
    account: Mapped[Optional["Account"]] = relationship("Account")

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_bill_amount_positive"),
        Index("ix_recurring_bills_budget", "budget_id"),
    )


class IncomeSource(Base, TimestampMixin):
    __tablename__ = "income_sources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    member_id: Mapped[Optional[int]] = mapped_column(ForeignKey("budget_members.id"))
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    frequency: Mapped[Frequency] = mapped_column(
        SAEnum(Frequency), nullable=False, default=Frequency.monthly
    )
    # weekday (0=Sunday) for weekly income, day of month otherwise
    day_of_month: Mapped[Optional[int]] = mapped_column(Integer)
    due_month: Mapped[Optional[int]] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_auto_confirm: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    account: Mapped[Optional["Account"]] = relationship("Account")

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_income_amount_positive"),
        Index("ix_income_sources_budget", "budget_id"),
    )


class Goal(Base, TimestampMixin):
    __tablename__ = "goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    target_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    current_amount_cents: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0
    )
    target_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    contributions: Mapped[list["GoalContribution"]] = relationship(
        "GoalContribution", back_populates="goal"
    )

    __table_args__ = (
        CheckConstraint("target_amount_cents > 0", name="ck_goal_target_positive"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    to_account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    member_id: Mapped[Optional[int]] = mapped_column(ForeignKey("budget_members.id"))
    income_source_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("income_sources.id")
    )
    recurring_bill_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurring_bills.id")
    )
    goal_id: Mapped[Optional[int]] = mapped_column(ForeignKey("goals.id"))
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    status: Mapped[TransactionStatus] = mapped_column(
        SAEnum(TransactionStatus), nullable=False, default=TransactionStatus.pending
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(200))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    is_installment: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    installment_number: Mapped[Optional[int]] = mapped_column(Integer)
    total_installments: Mapped[Optional[int]] = mapped_column(Integer)
    parent_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id")
    )
    source: Mapped[TransactionSource] = mapped_column(
        TRANSACTION_SOURCE_ENUM, nullable=False, default=TransactionSource.web
    )
    balance_applied: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    account: Mapped["Account"] = relationship("Account", foreign_keys=[account_id])
    to_account: Mapped[Optional["Account"]] = relationship(
        "Account", foreign_keys=[to_account_id]
    )
    children: Mapped[list["Transaction"]] = relationship(
        "Transaction",
        back_populates="parent",
        order_by="Transaction.installment_number",
    )
    parent: Mapped[Optional["Transaction"]] = relationship(
        "Transaction", back_populates="children", remote_side=[id]
    )

    __table_args__ = (
        UniqueConstraint(
            "budget_id",
            "recurring_bill_id",
            "date",
            name="uq_txn_bill_occurrence",
        ),
        UniqueConstraint(
            "budget_id",
            "income_source_id",
            "date",
            name="uq_txn_income_occurrence",
        ),
        Index("ix_transactions_budget_date", "budget_id", "date"),
        Index("ix_transactions_account", "account_id"),
        Index("ix_transactions_budget_status_date", "budget_id", "status", "date"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )


class GoalContribution(Base):
    __tablename__ = "goal_contributions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    goal_id: Mapped[int] = mapped_column(ForeignKey("goals.id"), nullable=False)
    from_account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id")
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    goal: Mapped["Goal"] = relationship("Goal", back_populates="contributions")

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_contribution_amount_positive"),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_contribution_month"),
        Index("ix_goal_contributions_goal_period", "goal_id", "year", "month"),
    )

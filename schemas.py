import datetime as dt
from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import (
    AccountType,
    Frequency,
    TransactionSource,
    TransactionStatus,
    TransactionType,
)


class AccountIn(BaseModel):
    budget_id: int
    name: str = Field(..., min_length=1, max_length=120)
    type: AccountType
    balance_cents: int = 0
    credit_limit_cents: Optional[int] = Field(default=None, ge=0)
    closing_day: Optional[int] = Field(default=None, ge=1, le=31)
    due_day: Optional[int] = Field(default=None, ge=1, le=31)
    display_order: int = 0


class TransactionIn(BaseModel):
    budget_id: int
    account_id: int
    type: TransactionType
    amount_cents: int = Field(..., ge=0)
    date: dt.date
    status: TransactionStatus = TransactionStatus.pending
    to_account_id: Optional[int] = None
    category_id: Optional[int] = None
    member_id: Optional[int] = None
    income_source_id: Optional[int] = None
    recurring_bill_id: Optional[int] = None
    goal_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=200)
    notes: Optional[str] = None
    source: TransactionSource = TransactionSource.web
    is_installment: bool = False
    total_installments: Optional[int] = Field(default=None, ge=2, le=72)


class ConfirmScheduledIn(BaseModel):
    type: TransactionType
    amount_cents: int = Field(..., ge=0)
    account_id: int
    date: dt.date
    category_id: Optional[int] = None
    income_source_id: Optional[int] = None
    recurring_bill_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=200)


class RecurringBillIn(BaseModel):
    budget_id: int
    category_id: int
    account_id: Optional[int] = None
    name: str = Field(..., min_length=1, max_length=100)
    amount_cents: int = Field(..., ge=0, le=1_000_000_000)
    frequency: Frequency = Frequency.monthly
    due_day: Optional[int] = Field(default=None, ge=0, le=31)
    due_month: Optional[int] = Field(default=None, ge=1, le=12)
    is_auto_debit: bool = False
    is_active: bool = True


class IncomeSourceIn(BaseModel):
    budget_id: int
    account_id: Optional[int] = None
    member_id: Optional[int] = None
    name: str = Field(..., min_length=1, max_length=100)
    amount_cents: int = Field(..., ge=0, le=1_000_000_000)
    frequency: Frequency = Frequency.monthly
    day_of_month: Optional[int] = Field(default=None, ge=0, le=31)
    due_month: Optional[int] = Field(default=None, ge=1, le=12)
    is_auto_confirm: bool = False
    is_active: bool = True


class GoalIn(BaseModel):
    budget_id: int
    account_id: Optional[int] = None
    name: str = Field(..., min_length=1, max_length=120)
    target_amount_cents: int = Field(..., gt=0)
    target_date: date


class GoalUpdateIn(BaseModel):
    account_id: Optional[int] = None
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    target_amount_cents: Optional[int] = Field(default=None, gt=0)
    target_date: Optional[date] = None
    is_completed: Optional[bool] = None


class GoalContributionIn(BaseModel):
    amount_cents: int = Field(..., ge=0)
    year: int = Field(..., ge=2020, le=2100)
    month: int = Field(..., ge=1, le=12)
    from_account_id: Optional[int] = None


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    budget_id: int
    account_id: int
    to_account_id: Optional[int]
    category_id: Optional[int]
    income_source_id: Optional[int]
    recurring_bill_id: Optional[int]
    goal_id: Optional[int]
    type: TransactionType
    status: TransactionStatus
    amount_cents: int
    description: Optional[str]
    date: dt.date
    is_installment: bool
    installment_number: Optional[int]
    total_installments: Optional[int]
    parent_transaction_id: Optional[int]
    source: TransactionSource


class GoalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    account_id: Optional[int]
    target_date: dt.date
    target_amount_cents: int
    current_amount_cents: int
    is_completed: bool
    completed_at: Optional[dt.datetime]
    is_archived: bool


class ContributionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    goal_id: int
    from_account_id: Optional[int]
    transaction_id: Optional[int]
    year: int
    month: int
    amount_cents: int


class EnsureResultOut(BaseModel):
    created: int
    expenses: int
    income: int
    already_existed: bool


class BillingCycleOut(BaseModel):
    start: date
    end: date


class BudgetIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    budget_id: int
    name: str
    type: AccountType
    balance_cents: int
    cleared_balance_cents: int
    closing_day: Optional[int]
    due_day: Optional[int]
    is_archived: bool


class RecurringBillOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    amount_cents: int
    frequency: Frequency
    due_day: Optional[int]
    due_month: Optional[int]
    is_active: bool
    is_auto_debit: bool


class IncomeSourceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    amount_cents: int
    frequency: Frequency
    day_of_month: Optional[int]
    due_month: Optional[int]
    is_active: bool
    is_auto_confirm: bool


class ConfirmOut(BaseModel):
    action: str
    transaction: TransactionOut


class ContributionResultOut(BaseModel):
    contribution: ContributionOut
    transaction: Optional[TransactionOut]
    goal: GoalOut
    just_completed: bool


class BillingMonthOut(BaseModel):
    year: int
    month: int

from datetime import date

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from database import Base
from models import (
    Account,
    AccountType,
    Budget,
    Category,
    IncomeSource,
    RecurringBill,
    Transaction,
    TransactionStatus,
)
from recurrence import PendingTransactionGenerator
from services import AutoClearService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def test_auto_clear_only_touches_due_auto_flagged_rows():
    session = make_session()
    budget = Budget(name="Home")
    session.add(budget)
    session.flush()
    checking = Account(budget_id=budget.id, name="Checking", type=AccountType.checking)
    category = Category(budget_id=budget.id, name="Utilities")
    session.add_all([checking, category])
    session.flush()
    session.add_all(
        [
            RecurringBill(
                budget_id=budget.id,
                category_id=category.id,
                name="Internet",
                amount_cents=10_000,
                due_day=3,
                is_auto_debit=True,
            ),
            RecurringBill(
                budget_id=budget.id,
                category_id=category.id,
                name="Water",
                amount_cents=7_000,
                due_day=4,
            ),
            RecurringBill(
                budget_id=budget.id,
                category_id=category.id,
                name="Phone",
                amount_cents=5_000,
                due_day=20,
                is_auto_debit=True,
            ),
            IncomeSource(
                budget_id=budget.id,
                name="Salary",
                amount_cents=300_000,
                day_of_month=5,
                is_auto_confirm=True,
            ),
        ]
    )
    session.commit()
    PendingTransactionGenerator(session).ensure_pending_for_month(budget.id, 2025, 7)

    result = AutoClearService(session).clear_due(date(2025, 7, 10))

    assert (result.expenses, result.income) == (1, 1)
    statuses = {
        t.description: t.status
        for t in session.scalars(select(Transaction).order_by(Transaction.id))
    }
    assert statuses == {
        "Internet": TransactionStatus.cleared,
        "Water": TransactionStatus.pending,
        "Phone": TransactionStatus.pending,
        "Salary": TransactionStatus.cleared,
    }
    session.refresh(checking)
    # pending rows carry no delta until they are cleared
    assert checking.balance_cents == 300_000 - 10_000
    assert checking.cleared_balance_cents == 300_000 - 10_000

    again = AutoClearService(session).clear_due(date(2025, 7, 10))
    assert (again.expenses, again.income) == (0, 0)
    session.refresh(checking)
    assert checking.balance_cents == 290_000

from datetime import date

from hypothesis import given, settings
from hypothesis import strategies as st
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from database import Base
from models import Account, AccountType, Budget, Transaction, TransactionType
from schemas import TransactionIn
from services import LedgerService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def seed(session):
    budget = Budget(name="Home")
    session.add(budget)
    session.flush()
    accounts = [
        Account(budget_id=budget.id, name="Checking", type=AccountType.checking),
        Account(budget_id=budget.id, name="Savings", type=AccountType.savings),
        Account(
            budget_id=budget.id,
            name="Card",
            type=AccountType.credit_card,
            closing_day=15,
        ),
    ]
    session.add_all(accounts)
    session.commit()
    return budget, accounts


operation = st.tuples(
    st.sampled_from(
        [TransactionType.income, TransactionType.expense, TransactionType.transfer]
    ),
    st.integers(min_value=1, max_value=1_000_000),
    st.integers(min_value=0, max_value=2),
    st.integers(min_value=1, max_value=2),
)


@settings(max_examples=40, deadline=None)
@given(ops=st.lists(operation, min_size=1, max_size=12))
def test_balances_equal_sum_of_signed_deltas(ops):
    session = make_session()
    budget, accounts = seed(session)
    ledger = LedgerService(session)
    expected = [0, 0, 0]

    for txn_type, amount, source, offset in ops:
        target = (source + offset) % 3
        ledger.create_transaction(
            TransactionIn(
                budget_id=budget.id,
                account_id=accounts[source].id,
                to_account_id=(
                    accounts[target].id
                    if txn_type == TransactionType.transfer
                    else None
                ),
                type=txn_type,
                amount_cents=amount,
                date=date(2025, 4, 1),
            )
        )
        if txn_type == TransactionType.income:
            expected[source] += amount
        elif txn_type == TransactionType.expense:
            expected[source] -= amount
        else:
            expected[source] -= amount
            expected[target] += amount

    for account in accounts:
        session.refresh(account)
    assert [a.balance_cents for a in accounts] == expected
    assert session.scalar(select(func.count(Transaction.id))) == len(ops)


@settings(max_examples=40, deadline=None)
@given(
    amount=st.integers(min_value=100, max_value=5_000_000),
    count=st.integers(min_value=2, max_value=24),
    purchase=st.dates(min_value=date(2024, 1, 1), max_value=date(2026, 12, 31)),
    on_card=st.booleans(),
)
def test_installments_round_trip_to_the_purchase(amount, count, purchase, on_card):
    session = make_session()
    budget, accounts = seed(session)
    account = accounts[2] if on_card else accounts[0]

    created = LedgerService(session).create_transaction(
        TransactionIn(
            budget_id=budget.id,
            account_id=account.id,
            type=TransactionType.expense,
            amount_cents=amount,
            date=purchase,
            is_installment=True,
            total_installments=count,
        )
    )

    assert len(created) == count
    assert [t.installment_number for t in created] == list(range(1, count + 1))
    assert abs(sum(t.amount_cents for t in created) - amount) <= count - 1
    dates = [t.date for t in created]
    assert dates == sorted(dates)
    assert len(set((d.year, d.month) for d in dates)) == count
    if not on_card:
        assert dates[0] == purchase

    session.refresh(account)
    if on_card:
        # the card takes the whole purchase up front
        assert account.balance_cents == -amount
    else:
        assert account.balance_cents == -created[0].amount_cents

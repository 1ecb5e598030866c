from datetime import date

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import NotFoundError, ReferentialError, StateError, ValidationError
from models import (
    Account,
    AccountType,
    Budget,
    Category,
    RecurringBill,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from schemas import TransactionIn
from services import BalanceChanges, LedgerService, is_occurrence_conflict


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def seed(session):
    budget = Budget(name="Home")
    other = Budget(name="Neighbours")
    session.add_all([budget, other])
    session.flush()
    checking = Account(
        budget_id=budget.id,
        name="Checking",
        type=AccountType.checking,
        balance_cents=100_000,
        cleared_balance_cents=100_000,
    )
    savings = Account(budget_id=budget.id, name="Savings", type=AccountType.savings)
    card = Account(
        budget_id=budget.id,
        name="Card",
        type=AccountType.credit_card,
        closing_day=10,
        due_day=20,
    )
    foreign = Account(budget_id=other.id, name="Theirs", type=AccountType.checking)
    food = Category(budget_id=budget.id, name="Food")
    session.add_all([checking, savings, card, foreign, food])
    session.commit()
    return budget, checking, savings, card, foreign, food


def balances(session, *accounts):
    for account in accounts:
        session.refresh(account)
    return [a.balance_cents for a in accounts]


def test_expense_debits_account_and_updates_cleared_balance():
    session = make_session()
    budget, checking, _, _, _, food = seed(session)

    txn = LedgerService(session).create_transaction(
        TransactionIn(
            budget_id=budget.id,
            account_id=checking.id,
            category_id=food.id,
            type=TransactionType.expense,
            status=TransactionStatus.cleared,
            amount_cents=2_500,
            date=date(2025, 3, 2),
        )
    )
    assert txn.id is not None
    assert txn.balance_applied is True
    session.refresh(checking)
    assert checking.balance_cents == 97_500
    assert checking.cleared_balance_cents == 97_500


def test_pending_income_changes_balance_but_not_cleared_balance():
    session = make_session()
    budget, checking, _, _, _, _ = seed(session)

    LedgerService(session).create_transaction(
        TransactionIn(
            budget_id=budget.id,
            account_id=checking.id,
            type=TransactionType.income,
            amount_cents=10_000,
            date=date(2025, 3, 2),
        )
    )
    session.refresh(checking)
    assert checking.balance_cents == 110_000
    assert checking.cleared_balance_cents == 100_000


def test_transfer_moves_money_between_accounts():
    session = make_session()
    budget, checking, savings, _, _, _ = seed(session)

    LedgerService(session).create_transaction(
        TransactionIn(
            budget_id=budget.id,
            account_id=checking.id,
            to_account_id=savings.id,
            type=TransactionType.transfer,
            amount_cents=30_000,
            date=date(2025, 3, 2),
        )
    )
    assert balances(session, checking, savings) == [70_000, 30_000]


def test_transfer_requires_distinct_destination():
    session = make_session()
    budget, checking, _, _, _, _ = seed(session)
    service = LedgerService(session)

    with pytest.raises(ValidationError):
        service.create_transaction(
            TransactionIn(
                budget_id=budget.id,
                account_id=checking.id,
                type=TransactionType.transfer,
                amount_cents=1_000,
                date=date(2025, 3, 2),
            )
        )
    with pytest.raises(ValidationError):
        service.create_transaction(
            TransactionIn(
                budget_id=budget.id,
                account_id=checking.id,
                to_account_id=checking.id,
                type=TransactionType.transfer,
                amount_cents=1_000,
                date=date(2025, 3, 2),
            )
        )


def test_zero_amount_rejected_before_any_write():
    session = make_session()
    budget, checking, _, _, _, _ = seed(session)

    with pytest.raises(ValidationError):
        LedgerService(session).create_transaction(
            TransactionIn(
                budget_id=budget.id,
                account_id=checking.id,
                type=TransactionType.expense,
                amount_cents=0,
                date=date(2025, 3, 2),
            )
        )
    assert session.scalar(select(func.count(Transaction.id))) == 0


def test_cross_budget_references_are_rejected():
    session = make_session()
    budget, checking, _, _, foreign, _ = seed(session)
    service = LedgerService(session)

    with pytest.raises(ReferentialError):
        service.create_transaction(
            TransactionIn(
                budget_id=budget.id,
                account_id=foreign.id,
                type=TransactionType.expense,
                amount_cents=1_000,
                date=date(2025, 3, 2),
            )
        )
    with pytest.raises(ReferentialError):
        service.create_transaction(
            TransactionIn(
                budget_id=budget.id,
                account_id=checking.id,
                to_account_id=foreign.id,
                type=TransactionType.transfer,
                amount_cents=1_000,
                date=date(2025, 3, 2),
            )
        )
    with pytest.raises(NotFoundError):
        service.create_transaction(
            TransactionIn(
                budget_id=budget.id,
                account_id=checking.id,
                category_id=9_999,
                type=TransactionType.expense,
                amount_cents=1_000,
                date=date(2025, 3, 2),
            )
        )
    assert balances(session, checking, foreign) == [100_000, 0]


def test_archived_account_cannot_receive_transactions():
    session = make_session()
    budget, checking, _, _, _, _ = seed(session)
    checking.is_archived = True
    session.commit()

    with pytest.raises(StateError):
        LedgerService(session).create_transaction(
            TransactionIn(
                budget_id=budget.id,
                account_id=checking.id,
                type=TransactionType.expense,
                amount_cents=1_000,
                date=date(2025, 3, 2),
            )
        )


def test_credit_card_installments_follow_billing_cycle():
    session = make_session()
    budget, _, _, card, _, food = seed(session)

    created = LedgerService(session).create_transaction(
        TransactionIn(
            budget_id=budget.id,
            account_id=card.id,
            category_id=food.id,
            type=TransactionType.expense,
            amount_cents=30_000,
            date=date(2025, 3, 15),
            is_installment=True,
            total_installments=3,
        )
    )

    assert [t.date for t in created] == [
        date(2025, 4, 10),
        date(2025, 5, 10),
        date(2025, 6, 10),
    ]
    assert [t.installment_number for t in created] == [1, 2, 3]
    assert all(t.amount_cents == 10_000 for t in created)
    parent = created[0]
    assert parent.parent_transaction_id is None
    assert all(t.parent_transaction_id == parent.id for t in created[1:])
    assert all(t.total_installments == 3 for t in created)
    # the card is charged the full purchase immediately
    assert balances(session, card) == [-30_000]


def test_installments_on_debit_account_charge_first_payment_only():
    session = make_session()
    budget, checking, _, _, _, _ = seed(session)

    created = LedgerService(session).create_transaction(
        TransactionIn(
            budget_id=budget.id,
            account_id=checking.id,
            type=TransactionType.expense,
            amount_cents=10_000,
            date=date(2025, 1, 31),
            is_installment=True,
            total_installments=3,
        )
    )

    assert [t.date for t in created] == [
        date(2025, 1, 31),
        date(2025, 2, 28),
        date(2025, 3, 31),
    ]
    assert [t.amount_cents for t in created] == [3_333, 3_333, 3_333]
    assert [t.balance_applied for t in created] == [True, False, False]
    assert all(t.status == TransactionStatus.pending for t in created[1:])
    assert balances(session, checking) == [96_667]


def test_installment_count_limits(monkeypatch):
    session = make_session()
    budget, checking, _, _, _, _ = seed(session)
    service = LedgerService(session)
    monkeypatch.setattr(service.settings, "max_installments", 12)

    with pytest.raises(ValidationError):
        service.create_transaction(
            TransactionIn(
                budget_id=budget.id,
                account_id=checking.id,
                type=TransactionType.expense,
                amount_cents=10_000,
                date=date(2025, 1, 31),
                is_installment=True,
                total_installments=24,
            )
        )
    assert session.scalar(select(func.count(Transaction.id))) == 0


def test_failed_installment_batch_leaves_no_partial_writes(monkeypatch):
    session = make_session()
    budget, checking, _, _, _, _ = seed(session)

    def explode(self, _session):
        raise RuntimeError("storage went away")

    monkeypatch.setattr(BalanceChanges, "apply", explode)

    with pytest.raises(RuntimeError):
        LedgerService(session).create_transaction(
            TransactionIn(
                budget_id=budget.id,
                account_id=checking.id,
                type=TransactionType.expense,
                amount_cents=12_000,
                date=date(2025, 1, 10),
                is_installment=True,
                total_installments=4,
            )
        )

    assert session.scalar(select(func.count(Transaction.id))) == 0
    assert balances(session, checking) == [100_000]


def test_manual_duplicate_of_scheduled_occurrence_is_a_state_error():
    session = make_session()
    budget, checking, _, _, _, food = seed(session)
    bill = RecurringBill(
        budget_id=budget.id,
        category_id=food.id,
        name="Groceries box",
        amount_cents=9_000,
        due_day=8,
    )
    session.add(bill)
    session.commit()
    service = LedgerService(session)
    payload = TransactionIn(
        budget_id=budget.id,
        account_id=checking.id,
        recurring_bill_id=bill.id,
        type=TransactionType.expense,
        amount_cents=9_000,
        date=date(2025, 3, 8),
    )

    service.create_transaction(payload)
    with pytest.raises(StateError):
        service.create_transaction(payload)
    assert balances(session, checking) == [91_000]


def test_clear_then_reconcile_state_machine():
    session = make_session()
    budget, checking, _, _, _, _ = seed(session)
    service = LedgerService(session)
    txn = service.create_transaction(
        TransactionIn(
            budget_id=budget.id,
            account_id=checking.id,
            type=TransactionType.expense,
            amount_cents=4_000,
            date=date(2025, 3, 2),
        )
    )

    with pytest.raises(StateError):
        service.reconcile_transaction(txn.id)

    cleared = service.clear_transaction(txn.id, budget.id)
    assert cleared.status == TransactionStatus.cleared
    session.refresh(checking)
    # applied once at creation; clearing only moves the cleared balance
    assert checking.balance_cents == 96_000
    assert checking.cleared_balance_cents == 96_000

    with pytest.raises(StateError):
        service.clear_transaction(txn.id)

    reconciled = service.reconcile_transaction(txn.id)
    assert reconciled.status == TransactionStatus.reconciled


def test_clearing_debit_installment_applies_its_delta():
    session = make_session()
    budget, checking, _, _, _, _ = seed(session)
    service = LedgerService(session)
    created = service.create_transaction(
        TransactionIn(
            budget_id=budget.id,
            account_id=checking.id,
            type=TransactionType.expense,
            amount_cents=6_000,
            date=date(2025, 1, 5),
            is_installment=True,
            total_installments=2,
        )
    )
    assert balances(session, checking) == [97_000]

    service.clear_transaction(created[1].id)
    assert balances(session, checking) == [94_000]


def test_clearing_card_installment_does_not_charge_twice():
    session = make_session()
    budget, _, _, card, _, _ = seed(session)
    service = LedgerService(session)
    created = service.create_transaction(
        TransactionIn(
            budget_id=budget.id,
            account_id=card.id,
            type=TransactionType.expense,
            amount_cents=6_000,
            date=date(2025, 1, 5),
            is_installment=True,
            total_installments=2,
        )
    )
    service.clear_transaction(created[1].id)
    session.refresh(card)
    assert card.balance_cents == -6_000
    assert card.cleared_balance_cents == -3_000


def test_clear_transaction_checks_budget():
    session = make_session()
    budget, checking, _, _, _, _ = seed(session)
    service = LedgerService(session)
    txn = service.create_transaction(
        TransactionIn(
            budget_id=budget.id,
            account_id=checking.id,
            type=TransactionType.expense,
            amount_cents=1_000,
            date=date(2025, 3, 2),
        )
    )
    with pytest.raises(ReferentialError):
        service.clear_transaction(txn.id, budget.id + 1)
    with pytest.raises(NotFoundError):
        service.clear_transaction(9_999)


def test_only_occurrence_conflicts_become_state_errors(monkeypatch):
    session = make_session()
    budget, checking, _, _, _, _ = seed(session)

    def violate_check(self, _session):
        raise IntegrityError(
            "UPDATE accounts",
            {},
            Exception("CHECK constraint failed: ck_transactions_amount_positive"),
        )

    monkeypatch.setattr(BalanceChanges, "apply", violate_check)

    with pytest.raises(IntegrityError):
        LedgerService(session).create_transaction(
            TransactionIn(
                budget_id=budget.id,
                account_id=checking.id,
                type=TransactionType.expense,
                amount_cents=1_000,
                date=date(2025, 3, 2),
            )
        )
    assert session.scalar(select(func.count(Transaction.id))) == 0


def test_occurrence_conflict_detection():
    def conflict(message):
        return IntegrityError("INSERT INTO transactions", {}, Exception(message))

    assert is_occurrence_conflict(
        conflict(
            "UNIQUE constraint failed: transactions.budget_id, "
            "transactions.recurring_bill_id, transactions.date"
        )
    )
    assert is_occurrence_conflict(
        conflict(
            'duplicate key value violates unique constraint "uq_txn_income_occurrence"'
        )
    )
    assert not is_occurrence_conflict(conflict("FOREIGN KEY constraint failed"))
    assert not is_occurrence_conflict(
        conflict("UNIQUE constraint failed: categories.budget_id, categories.name")
    )

"""initial ledger schema

Revision ID: 202601150900
Revises:
Create Date: 2026-01-15 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202601150900"
down_revision = None
branch_labels = None
depends_on = None


TRANSACTION_TYPE = sa.Enum("income", "expense", "transfer", name="transactiontype")
FREQUENCY = sa.Enum("weekly", "biweekly", "monthly", "yearly", name="frequency")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "budget_members",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False
        ),
        sa.Column("name", sa.String(length=120), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("budget_id", "name", name="uq_category_budget_name"),
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False
        ),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column(
            "type",
            sa.Enum(
                "checking",
                "savings",
                "credit_card",
                "cash",
                "investment",
                "benefit",
                name="accounttype",
            ),
            nullable=False,
        ),
        sa.Column("balance_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column(
            "cleared_balance_cents", sa.BigInteger(), nullable=False, server_default="0"
        ),
        sa.Column("credit_limit_cents", sa.BigInteger()),
        sa.Column("closing_day", sa.Integer()),
        sa.Column("due_day", sa.Integer()),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint(
            "closing_day IS NULL OR (closing_day BETWEEN 1 AND 31)",
            name="ck_account_closing_day",
        ),
        sa.CheckConstraint(
            "due_day IS NULL OR (due_day BETWEEN 1 AND 31)",
            name="ck_account_due_day",
        ),
    )
    op.create_index("ix_accounts_budget", "accounts", ["budget_id"])

    op.create_table(
        "recurring_bills",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("frequency", FREQUENCY, nullable=False, server_default="monthly"),
        sa.Column("due_day", sa.Integer()),
        sa.Column("due_month", sa.Integer()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "is_auto_debit", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_bill_amount_positive"),
    )
    op.create_index("ix_recurring_bills_budget", "recurring_bills", ["budget_id"])

    op.create_table(
        "income_sources",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False
        ),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("member_id", sa.Integer(), sa.ForeignKey("budget_members.id")),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("frequency", FREQUENCY, nullable=False, server_default="monthly"),
        sa.Column("day_of_month", sa.Integer()),
        sa.Column("due_month", sa.Integer()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "is_auto_confirm", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_income_amount_positive"),
    )
    op.create_index("ix_income_sources_budget", "income_sources", ["budget_id"])

    op.create_table(
        "goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False
        ),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("target_amount_cents", sa.BigInteger(), nullable=False),
        sa.Column(
            "current_amount_cents", sa.BigInteger(), nullable=False, server_default="0"
        ),
        sa.Column("target_date", sa.Date(), nullable=False),
        sa.Column(
            "is_completed", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("completed_at", sa.DateTime()),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.CheckConstraint("target_amount_cents > 0", name="ck_goal_target_positive"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False
        ),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("to_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("member_id", sa.Integer(), sa.ForeignKey("budget_members.id")),
        sa.Column("income_source_id", sa.Integer(), sa.ForeignKey("income_sources.id")),
        sa.Column(
            "recurring_bill_id", sa.Integer(), sa.ForeignKey("recurring_bills.id")
        ),
        sa.Column("goal_id", sa.Integer(), sa.ForeignKey("goals.id")),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "cleared", "reconciled", name="transactionstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=200)),
        sa.Column("notes", sa.Text()),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column(
            "is_installment", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("installment_number", sa.Integer()),
        sa.Column("total_installments", sa.Integer()),
        sa.Column(
            "parent_transaction_id", sa.Integer(), sa.ForeignKey("transactions.id")
        ),
        sa.Column(
            "source",
            sa.Enum(
                "manual",
                "web",
                "recurring",
                "scheduled",
                "import",
                name="transactionsource",
            ),
            nullable=False,
            server_default="web",
        ),
        sa.Column(
            "balance_applied", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        *_timestamps(),
        sa.UniqueConstraint(
            "budget_id", "recurring_bill_id", "date", name="uq_txn_bill_occurrence"
        ),
        sa.UniqueConstraint(
            "budget_id", "income_source_id", "date", name="uq_txn_income_occurrence"
        ),
        sa.CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )
    op.create_index(
        "ix_transactions_budget_date", "transactions", ["budget_id", "date"]
    )
    op.create_index("ix_transactions_account", "transactions", ["account_id"])
    op.create_index(
        "ix_transactions_budget_status_date",
        "transactions",
        ["budget_id", "status", "date"],
    )

    op.create_table(
        "goal_contributions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("goal_id", sa.Integer(), sa.ForeignKey("goals.id"), nullable=False),
        sa.Column("from_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("transaction_id", sa.Integer(), sa.ForeignKey("transactions.id")),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="ck_contribution_amount_positive"),
        sa.CheckConstraint("month BETWEEN 1 AND 12", name="ck_contribution_month"),
    )
    op.create_index(
        "ix_goal_contributions_goal_period",
        "goal_contributions",
        ["goal_id", "year", "month"],
    )


def downgrade():
    op.drop_index("ix_goal_contributions_goal_period", table_name="goal_contributions")
    op.drop_table("goal_contributions")
    op.drop_index("ix_transactions_budget_status_date", table_name="transactions")
    op.drop_index("ix_transactions_account", table_name="transactions")
    op.drop_index("ix_transactions_budget_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("goals")
    op.drop_index("ix_income_sources_budget", table_name="income_sources")
    op.drop_table("income_sources")
    op.drop_index("ix_recurring_bills_budget", table_name="recurring_bills")
    op.drop_table("recurring_bills")
    op.drop_index("ix_accounts_budget", table_name="accounts")
    op.drop_table("accounts")
    op.drop_table("categories")
    op.drop_table("budget_members")
    op.drop_table("budgets")

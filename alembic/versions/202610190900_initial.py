"""initial schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


def _money() -> sa.Numeric:
    return sa.Numeric(12, 2)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
    ]


TRANSACTION_TYPE = sa.Enum("INCOME", "EXPENSE", name="transactiontype")


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "financial_groups",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column(
            "type",
            sa.Enum("PERSONAL", "COLLABORATIVE", name="grouptype"),
            nullable=False,
        ),
        sa.Column(
            "created_by_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False
        ),
        *_timestamps(),
    )
    op.create_index(
        "ix_financial_groups_created_by", "financial_groups", ["created_by_id"]
    )

    op.create_table(
        "financial_group_members",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "financial_group_id",
            sa.Integer(),
            sa.ForeignKey("financial_groups.id"),
            nullable=False,
        ),
        sa.Column("is_owner", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "joined_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.UniqueConstraint(
            "user_id", "financial_group_id", name="uq_member_user_group"
        ),
    )

    op.create_table(
        "group_invitations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sender_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "receiver_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False
        ),
        sa.Column(
            "group_id",
            sa.Integer(),
            sa.ForeignKey("financial_groups.id"),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum("PENDING", "ACCEPTED", "REJECTED", name="invitationstatus"),
            nullable=False,
        ),
        *_timestamps(),
    )
    op.create_index(
        "ix_invitation_receiver_status",
        "group_invitations",
        ["receiver_id", "status"],
    )

    op.create_table(
        "financial_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "group_id",
            sa.Integer(),
            sa.ForeignKey("financial_groups.id"),
            nullable=False,
        ),
        *_timestamps(),
        sa.UniqueConstraint("group_id", "name", name="uq_category_group_name"),
    )

    op.create_table(
        "payment_methods",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type",
            sa.Enum(
                "PIX",
                "CREDIT_CARD",
                "DEBIT_CARD",
                "CASH",
                "BANK_TRANSFER",
                "CHECK",
                "OTHER",
                name="paymentmethodtype",
            ),
            nullable=False,
        ),
        sa.Column("description", sa.String(length=255)),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "bank_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("bank", sa.String(length=100), nullable=False),
        sa.Column("balance", _money(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index(
        "ix_bank_accounts_user_active", "bank_accounts", ["user_id", "is_active"]
    )

    op.create_table(
        "credit_cards",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("last4_digits", sa.String(length=4), nullable=False),
        sa.Column("brand", sa.String(length=50), nullable=False),
        sa.Column(
            "type",
            sa.Enum("CREDIT", "DEBIT", "BOTH", name="cardtype"),
            nullable=False,
        ),
        sa.Column("credit_limit", _money()),
        sa.Column("closing_day", sa.Integer()),
        sa.Column("due_day", sa.Integer()),
        sa.Column("bank_account_id", sa.Integer(), sa.ForeignKey("bank_accounts.id")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint(
            "closing_day IS NULL OR (closing_day BETWEEN 1 AND 31)",
            name="ck_card_closing_day",
        ),
        sa.CheckConstraint(
            "due_day IS NULL OR (due_day BETWEEN 1 AND 31)", name="ck_card_due_day"
        ),
    )
    op.create_index(
        "ix_credit_cards_user_active", "credit_cards", ["user_id", "is_active"]
    )

    op.create_table(
        "recurring_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.String(length=255)),
        sa.Column("amount", _money(), nullable=False),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column(
            "frequency",
            sa.Enum("DAILY", "WEEKLY", "MONTHLY", "YEARLY", name="recurringfrequency"),
            nullable=False,
        ),
        sa.Column("total_installments", sa.Integer()),
        sa.Column(
            "executed_installments", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("next_execution_date", sa.Date(), nullable=False),
        sa.Column(
            "group_id",
            sa.Integer(),
            sa.ForeignKey("financial_groups.id"),
            nullable=False,
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("financial_categories.id")
        ),
        sa.Column(
            "payment_method_id", sa.Integer(), sa.ForeignKey("payment_methods.id")
        ),
        sa.Column("bank_account_id", sa.Integer(), sa.ForeignKey("bank_accounts.id")),
        sa.Column("credit_card_id", sa.Integer(), sa.ForeignKey("credit_cards.id")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("amount >= 0", name="ck_recurring_amount_positive"),
    )
    op.create_index(
        "ix_recurring_active_next",
        "recurring_transactions",
        ["is_active", "next_execution_date"],
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("amount", _money(), nullable=False),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "PENDING",
                "PAID",
                "OVERDUE",
                "CANCELLED",
                "PARTIALLY_PAID",
                name="transactionstatus",
            ),
            nullable=False,
        ),
        sa.Column("is_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("description", sa.String(length=255)),
        sa.Column("transaction_date", sa.DateTime(), nullable=False),
        sa.Column("due_date", sa.DateTime()),
        sa.Column("paid_at", sa.DateTime()),
        sa.Column(
            "group_id",
            sa.Integer(),
            sa.ForeignKey("financial_groups.id"),
            nullable=False,
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("financial_categories.id")
        ),
        sa.Column("bank_account_id", sa.Integer(), sa.ForeignKey("bank_accounts.id")),
        sa.Column("credit_card_id", sa.Integer(), sa.ForeignKey("credit_cards.id")),
        sa.Column(
            "payment_method_id", sa.Integer(), sa.ForeignKey("payment_methods.id")
        ),
        sa.Column(
            "created_by_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False
        ),
        sa.Column("installment_number", sa.Integer()),
        sa.Column("total_installments", sa.Integer()),
        sa.Column(
            "recurring_transaction_id",
            sa.Integer(),
            sa.ForeignKey("recurring_transactions.id"),
        ),
        sa.Column("occurrence_date", sa.Date()),
        *_timestamps(),
        sa.UniqueConstraint(
            "recurring_transaction_id",
            "occurrence_date",
            name="uq_txn_recurring_occurrence",
        ),
        sa.CheckConstraint("amount >= 0", name="ck_transactions_amount_positive"),
        sa.CheckConstraint(
            "bank_account_id IS NULL OR credit_card_id IS NULL",
            name="ck_transactions_single_funding_source",
        ),
    )
    op.create_index(
        "ix_transactions_group_date", "transactions", ["group_id", "transaction_date"]
    )
    op.create_index(
        "ix_transactions_bank_paid", "transactions", ["bank_account_id", "is_paid"]
    )
    op.create_index(
        "ix_transactions_card_date",
        "transactions",
        ["credit_card_id", "transaction_date"],
    )
    op.create_index("ix_transactions_creator", "transactions", ["created_by_id"])


def downgrade() -> None:
    op.drop_index("ix_transactions_creator", table_name="transactions")
    op.drop_index("ix_transactions_card_date", table_name="transactions")
    op.drop_index("ix_transactions_bank_paid", table_name="transactions")
    op.drop_index("ix_transactions_group_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_recurring_active_next", table_name="recurring_transactions")
    op.drop_table("recurring_transactions")
    op.drop_index("ix_credit_cards_user_active", table_name="credit_cards")
    op.drop_table("credit_cards")
    op.drop_index("ix_bank_accounts_user_active", table_name="bank_accounts")
    op.drop_table("bank_accounts")
    op.drop_table("payment_methods")
    op.drop_table("financial_categories")
    op.drop_index("ix_invitation_receiver_status", table_name="group_invitations")
    op.drop_table("group_invitations")
    op.drop_table("financial_group_members")
    op.drop_index("ix_financial_groups_created_by", table_name="financial_groups")
    op.drop_table("financial_groups")
    op.drop_table("users")

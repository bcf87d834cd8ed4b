"""ledger tables

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


UTC_NOW = sa.func.now()
EXTERNAL_ONLY = sa.text("kind = 'EXTERNAL'")

ENUMS = {
    "account_kind": ("WALLET", "EXTERNAL"),
    "split_policy": ("EQUAL", "PERCENTAGE", "SHARES", "CUSTOM"),
    "transaction_type": ("TRANSFER", "EXPENSE_CHARGE", "SETTLEMENT", "REFUND"),
    "transaction_status": ("PENDING", "PROCESSING", "COMPLETED", "FAILED", "CANCELLED"),
}


def _is_postgres() -> bool:
    return op.get_bind().dialect.name == "postgresql"


def _enum(name: str) -> sa.Enum:
    if _is_postgres():
        # Created explicitly in upgrade(); table DDL must not emit CREATE TYPE again.
        return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)
    return sa.Enum(*ENUMS[name], name=name)


def _pk() -> sa.Column:
    return sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), primary_key=True, autoincrement=True)


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=UTC_NOW, nullable=False)


def upgrade() -> None:
    if _is_postgres():
        bind = op.get_bind()
        for name in ENUMS:
            _enum(name).create(bind, checkfirst=True)

    op.create_table(
        "groups",
        _pk(),
        sa.Column("tg_chat_id", sa.BigInteger(), nullable=True),
        sa.Column("title", sa.String(length=255), nullable=True),
        _created_at(),
        sa.UniqueConstraint("tg_chat_id", name="uq_groups_tg_chat_id"),
    )

    op.create_table(
        "users",
        _pk(),
        sa.Column("tg_user_id", sa.BigInteger(), nullable=True),
        sa.Column("username", sa.String(length=64), nullable=True),
        sa.Column("first_name", sa.String(length=255), nullable=True),
        _created_at(),
        sa.UniqueConstraint("tg_user_id", name="uq_users_tg_user_id"),
    )

    op.create_table(
        "group_members",
        _pk(),
        sa.Column("group_id", sa.BigInteger(), sa.ForeignKey("groups.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        _created_at(),
        sa.UniqueConstraint("group_id", "user_id", name="uq_group_members_group_user"),
    )
    op.create_index("ix_group_members_group_id", "group_members", ["group_id"])
    op.create_index("ix_group_members_user_id", "group_members", ["user_id"])

    op.create_table(
        "accounts",
        _pk(),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=True),
        sa.Column("kind", _enum("account_kind"), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("balance", sa.BigInteger(), server_default=sa.text("0"), nullable=False),
        sa.Column("allow_overdraft", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        _created_at(),
        sa.UniqueConstraint("user_id", "currency", name="uq_accounts_user_currency"),
    )
    op.create_index("ix_accounts_kind", "accounts", ["kind"])
    op.create_index(
        "uq_accounts_external_currency",
        "accounts",
        ["currency"],
        unique=True,
        sqlite_where=EXTERNAL_ONLY,
        postgresql_where=EXTERNAL_ONLY,
    )

    op.create_table(
        "expenses",
        _pk(),
        sa.Column("group_id", sa.BigInteger(), sa.ForeignKey("groups.id", ondelete="RESTRICT"), nullable=True),
        sa.Column("payer_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("created_by_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("total_amount", sa.BigInteger(), nullable=False),
        sa.Column("split_policy", _enum("split_policy"), nullable=False),
        sa.Column("is_settled", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_expenses_group_id", "expenses", ["group_id"])
    op.create_index("ix_expenses_payer_id", "expenses", ["payer_id"])

    op.create_table(
        "expense_shares",
        _pk(),
        sa.Column("expense_id", sa.BigInteger(), sa.ForeignKey("expenses.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("value", sa.String(length=32), nullable=True),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("settled_amount", sa.BigInteger(), server_default=sa.text("0"), nullable=False),
        sa.Column("settled", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("expense_id", "user_id", name="uq_expense_share_user"),
    )
    op.create_index("ix_expense_shares_expense_id", "expense_shares", ["expense_id"])
    op.create_index("ix_expense_shares_user_id", "expense_shares", ["user_id"])

    op.create_table(
        "transactions",
        _pk(),
        sa.Column("reference", sa.String(length=32), nullable=False),
        sa.Column("type", _enum("transaction_type"), nullable=False),
        sa.Column("status", _enum("transaction_status"), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("from_account_id", sa.BigInteger(), sa.ForeignKey("accounts.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("to_account_id", sa.BigInteger(), sa.ForeignKey("accounts.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("from_balance_before", sa.BigInteger(), nullable=True),
        sa.Column("from_balance_after", sa.BigInteger(), nullable=True),
        sa.Column("to_balance_before", sa.BigInteger(), nullable=True),
        sa.Column("to_balance_after", sa.BigInteger(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("max_retries", sa.Integer(), server_default=sa.text("3"), nullable=False),
        sa.Column("is_retryable", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("related_expense_id", sa.BigInteger(), sa.ForeignKey("expenses.id", ondelete="RESTRICT"), nullable=True),
        sa.Column("related_share_id", sa.BigInteger(), sa.ForeignKey("expense_shares.id", ondelete="RESTRICT"), nullable=True),
        sa.Column("related_group_id", sa.BigInteger(), sa.ForeignKey("groups.id", ondelete="RESTRICT"), nullable=True),
        sa.Column(
            "related_transaction_id",
            sa.BigInteger(),
            sa.ForeignKey("transactions.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("reference", name="uq_transactions_reference"),
    )
    op.create_index("ix_transactions_from_account_id", "transactions", ["from_account_id"])
    op.create_index("ix_transactions_to_account_id", "transactions", ["to_account_id"])
    op.create_index("ix_transactions_status", "transactions", ["status"])
    op.create_index("ix_transactions_group_created_at", "transactions", ["related_group_id", "created_at"])
    op.create_index("ix_transactions_expense_id", "transactions", ["related_expense_id"])

    op.create_table(
        "group_member_balances",
        _pk(),
        sa.Column("group_id", sa.BigInteger(), sa.ForeignKey("groups.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("total_paid", sa.BigInteger(), server_default=sa.text("0"), nullable=False),
        sa.Column("total_owed", sa.BigInteger(), server_default=sa.text("0"), nullable=False),
        sa.Column("net_balance", sa.BigInteger(), server_default=sa.text("0"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("group_id", "user_id", name="uq_group_balance_group_user"),
    )
    op.create_index("ix_group_member_balances_group_id", "group_member_balances", ["group_id"])


def downgrade() -> None:
    op.drop_index("ix_group_member_balances_group_id", table_name="group_member_balances")
    op.drop_table("group_member_balances")

    for ix in (
        "ix_transactions_expense_id",
        "ix_transactions_group_created_at",
        "ix_transactions_status",
        "ix_transactions_to_account_id",
        "ix_transactions_from_account_id",
    ):
        op.drop_index(ix, table_name="transactions")
    op.drop_table("transactions")

    op.drop_index("ix_expense_shares_user_id", table_name="expense_shares")
    op.drop_index("ix_expense_shares_expense_id", table_name="expense_shares")
    op.drop_table("expense_shares")

    op.drop_index("ix_expenses_payer_id", table_name="expenses")
    op.drop_index("ix_expenses_group_id", table_name="expenses")
    op.drop_table("expenses")

    op.drop_index("uq_accounts_external_currency", table_name="accounts")
    op.drop_index("ix_accounts_kind", table_name="accounts")
    op.drop_table("accounts")

    op.drop_index("ix_group_members_user_id", table_name="group_members")
    op.drop_index("ix_group_members_group_id", table_name="group_members")
    op.drop_table("group_members")

    op.drop_table("users")
    op.drop_table("groups")

    if _is_postgres():
        bind = op.get_bind()
        for name in reversed(list(ENUMS)):
            _enum(name).drop(bind, checkfirst=True)

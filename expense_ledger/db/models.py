from __future__ import annotations

import enum
from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy import BigInteger, Boolean, DateTime, Enum, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from expense_ledger.core.splits import SplitPolicy


UTC_NOW = sa.func.now()


class Base(DeclarativeBase):
    pass


class Group(Base):
    __tablename__ = "groups"
    __table_args__ = (UniqueConstraint("tg_chat_id", name="uq_groups_tg_chat_id"),)

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    # Telegram chat id (group id) is a signed 64-bit integer.
    tg_chat_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=UTC_NOW, nullable=False)

    members: Mapped[list[GroupMember]] = relationship(back_populates="group", cascade="all, delete-orphan")


class User(Base):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("tg_user_id", name="uq_users_tg_user_id"),)

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    tg_user_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    username: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=UTC_NOW, nullable=False)


class GroupMember(Base):
    __tablename__ = "group_members"
    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="uq_group_members_group_user"),
        Index("ix_group_members_user_id", "user_id"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    group_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("groups.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=sa.true())
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=UTC_NOW, nullable=False)

    group: Mapped[Group] = relationship(back_populates="members")
    user: Mapped[User] = relationship()


class AccountKind(str, enum.Enum):
    WALLET = "WALLET"
    EXTERNAL = "EXTERNAL"


EXTERNAL_ONLY = sa.text("kind = 'EXTERNAL'")


class Account(Base):
    __tablename__ = "accounts"
    __table_args__ = (
        UniqueConstraint("user_id", "currency", name="uq_accounts_user_currency"),
        Index("ix_accounts_kind", "kind"),
        # NULL user_ids never collide, so external accounts need their own guard.
        Index(
            "uq_accounts_external_currency",
            "currency",
            unique=True,
            sqlite_where=EXTERNAL_ONLY,
            postgresql_where=EXTERNAL_ONLY,
        ),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    # NULL for the system external account.
    user_id: Mapped[Optional[int]] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="RESTRICT"), nullable=True)
    kind: Mapped[AccountKind] = mapped_column(Enum(AccountKind, name="account_kind"), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    # Minor units of `currency`.
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    allow_overdraft: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=UTC_NOW, nullable=False)

    # Every flush of a balance change is a compare-and-swap on `version`.
    __mapper_args__ = {"version_id_col": version}


class Expense(Base):
    __tablename__ = "expenses"
    __table_args__ = (
        Index("ix_expenses_group_id", "group_id"),
        Index("ix_expenses_payer_id", "payer_id"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    group_id: Mapped[Optional[int]] = mapped_column(BigInteger, ForeignKey("groups.id", ondelete="RESTRICT"), nullable=True)
    payer_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    created_by_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    split_policy: Mapped[SplitPolicy] = mapped_column(Enum(SplitPolicy, name="split_policy"), nullable=False)
    is_settled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=UTC_NOW, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    shares: Mapped[list[ExpenseShare]] = relationship(
        back_populates="expense",
        cascade="all, delete-orphan",
        order_by="ExpenseShare.position",
        lazy="selectin",
    )


class ExpenseShare(Base):
    __tablename__ = "expense_shares"
    __table_args__ = (
        UniqueConstraint("expense_id", "user_id", name="uq_expense_share_user"),
        Index("ix_expense_shares_user_id", "user_id"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    expense_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("expenses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    # Input order; the equal policy hands remainder units out by it.
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    # Percentage or weight as entered, kept as text to stay exact.
    value: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    settled_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    settled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    expense: Mapped[Expense] = relationship(back_populates="shares")

    @property
    def outstanding(self) -> int:
        return self.amount - self.settled_amount


class TransactionType(str, enum.Enum):
    TRANSFER = "TRANSFER"
    EXPENSE_CHARGE = "EXPENSE_CHARGE"
    SETTLEMENT = "SETTLEMENT"
    REFUND = "REFUND"


class TransactionStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("reference", name="uq_transactions_reference"),
        Index("ix_transactions_from_account_id", "from_account_id"),
        Index("ix_transactions_to_account_id", "to_account_id"),
        Index("ix_transactions_status", "status"),
        Index("ix_transactions_group_created_at", "related_group_id", "created_at"),
        Index("ix_transactions_expense_id", "related_expense_id"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    reference: Mapped[str] = mapped_column(String(32), nullable=False)
    type: Mapped[TransactionType] = mapped_column(Enum(TransactionType, name="transaction_type"), nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus, name="transaction_status"),
        nullable=False,
        default=TransactionStatus.PENDING,
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    from_account_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("accounts.id", ondelete="RESTRICT"), nullable=False)
    to_account_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("accounts.id", ondelete="RESTRICT"), nullable=False)

    # Snapshots: intended values on entering PROCESSING, overwritten with the
    # real values at the instant the deltas are applied.
    from_balance_before: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    from_balance_after: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    to_balance_before: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    to_balance_after: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    is_retryable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    related_expense_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("expenses.id", ondelete="RESTRICT"), nullable=True
    )
    related_share_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("expense_shares.id", ondelete="RESTRICT"), nullable=True
    )
    related_group_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("groups.id", ondelete="RESTRICT"), nullable=True
    )
    related_transaction_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("transactions.id", ondelete="RESTRICT"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=UTC_NOW, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_terminal(self) -> bool:
        """Nothing can move money any more, not even a manual retry."""
        if self.status is TransactionStatus.FAILED:
            return self.retry_count >= self.max_retries
        return self.status in (TransactionStatus.COMPLETED, TransactionStatus.CANCELLED)


class GroupMemberBalance(Base):
    __tablename__ = "group_member_balances"
    __table_args__ = (UniqueConstraint("group_id", "user_id", name="uq_group_balance_group_user"),)

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    group_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("groups.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    total_paid: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_owed: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    # Positive: the member is owed money. Negative: the member owes.
    net_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

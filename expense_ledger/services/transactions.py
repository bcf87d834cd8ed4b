"""
Transaction state machine.

    PENDING -> PROCESSING -> COMPLETED
    PROCESSING -> FAILED -> PROCESSING (retry, while retry_count < max_retries)
    PENDING | PROCESSING -> CANCELLED

Every failure in PROCESSING counts against max_retries. `is_retryable` only
says whether the driver may retry on its own; a caller can retry any failure
that still has attempts left, e.g. after topping up a wallet.

COMPLETED and CANCELLED are final. Every status change is one
`UPDATE ... WHERE status IN (...)`; the row count decides who won, so a
cancel racing a completion can only succeed if it lands first.

The functions here work inside the caller's DB transaction and only flush;
committing each step is the caller's job.
"""

from __future__ import annotations

import logging
import secrets
import time
from datetime import datetime
from typing import Iterable, Optional, Sequence

import sqlalchemy as sa
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from expense_ledger.core.errors import InvalidStateError, LedgerError, NotFoundError, RetryLimitExceededError
from expense_ledger.db.models import Account, ExpenseShare, Transaction, TransactionStatus, TransactionType
from expense_ledger.services import expenses, ledger

logger = logging.getLogger(__name__)

S = TransactionStatus


def generate_reference(type: TransactionType) -> str:
    # e.g. T48213377K9QF: type letter, clock digits, random suffix.
    prefix = type.value[0]
    stamp = str(time.time_ns() // 1_000_000)[-8:]
    return f"{prefix}{stamp}{secrets.token_hex(3).upper()}"


async def create_transaction(
    session: AsyncSession,
    *,
    type: TransactionType,
    amount: int,
    currency: str,
    from_account_id: int,
    to_account_id: int,
    max_retries: int,
    description: Optional[str] = None,
    related_expense_id: Optional[int] = None,
    related_share_id: Optional[int] = None,
    related_group_id: Optional[int] = None,
    related_transaction_id: Optional[int] = None,
) -> Transaction:
    tx = Transaction(
        reference=generate_reference(type),
        type=type,
        status=S.PENDING,
        currency=currency,
        amount=int(amount),
        from_account_id=from_account_id,
        to_account_id=to_account_id,
        description=(description.strip() if description and description.strip() else None),
        retry_count=0,
        max_retries=max_retries,
        is_retryable=True,
        related_expense_id=related_expense_id,
        related_share_id=related_share_id,
        related_group_id=related_group_id,
        related_transaction_id=related_transaction_id,
    )
    session.add(tx)
    await session.flush()
    logger.info("Transaction %s (%s) created: %s %s %s->%s", tx.id, tx.reference, tx.type.value, amount, currency, from_account_id, to_account_id)
    return tx


async def get_transaction(session: AsyncSession, transaction_id: int) -> Transaction:
    tx = await session.scalar(
        select(Transaction).where(Transaction.id == transaction_id).execution_options(populate_existing=True)
    )
    if tx is None:
        raise NotFoundError(f"Transaction {transaction_id} not found.", transaction_id=transaction_id)
    return tx


async def list_transactions(
    session: AsyncSession,
    *,
    account_ids: Optional[Sequence[int]] = None,
    group_id: Optional[int] = None,
    statuses: Optional[Iterable[TransactionStatus]] = None,
    limit: int = 50,
) -> list[Transaction]:
    stmt = select(Transaction)
    if account_ids is not None:
        stmt = stmt.where(
            or_(Transaction.from_account_id.in_(account_ids), Transaction.to_account_id.in_(account_ids))
        )
    if group_id is not None:
        stmt = stmt.where(Transaction.related_group_id == group_id)
    if statuses is not None:
        stmt = stmt.where(Transaction.status.in_(list(statuses)))
    res = await session.scalars(stmt.order_by(Transaction.created_at.desc(), Transaction.id.desc()).limit(limit))
    return list(res)


async def _transition(
    session: AsyncSession,
    transaction_id: int,
    *,
    from_statuses: Sequence[TransactionStatus],
    to_status: TransactionStatus,
    extra_where: Sequence = (),
    **values,
) -> bool:
    res = await session.execute(
        sa.update(Transaction)
        .where(Transaction.id == transaction_id, Transaction.status.in_(from_statuses), *extra_where)
        .values(status=to_status, **values)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


async def _record_intent(session: AsyncSession, tx: Transaction) -> Transaction:
    src = await ledger.get_account(session, tx.from_account_id)
    dst = await ledger.get_account(session, tx.to_account_id)
    await session.refresh(src)
    await session.refresh(dst)
    tx.from_balance_before = src.balance
    tx.from_balance_after = src.balance - tx.amount
    tx.to_balance_before = dst.balance
    tx.to_balance_after = dst.balance + tx.amount
    await session.flush()
    return tx


async def start_processing(session: AsyncSession, transaction_id: int, *, now: datetime) -> Transaction:
    """PENDING -> PROCESSING, recording the intended before/after balances."""
    if not await _transition(session, transaction_id, from_statuses=(S.PENDING,), to_status=S.PROCESSING, updated_at=now):
        tx = await get_transaction(session, transaction_id)
        raise InvalidStateError(
            f"Transaction {transaction_id} is {tx.status.value}, not PENDING.",
            transaction_id=transaction_id,
            status=tx.status.value,
        )
    tx = await get_transaction(session, transaction_id)
    return await _record_intent(session, tx)


async def begin_retry(session: AsyncSession, transaction_id: int, *, now: datetime) -> Transaction:
    """FAILED -> PROCESSING, only while the retry bound has not been reached."""
    tx = await get_transaction(session, transaction_id)
    if tx.status is not S.FAILED:
        raise InvalidStateError(
            "Only failed transactions can be retried.",
            transaction_id=transaction_id,
            status=tx.status.value,
        )
    if tx.retry_count >= tx.max_retries:
        raise RetryLimitExceededError(
            "Maximum retry limit reached.",
            transaction_id=transaction_id,
            retry_count=tx.retry_count,
            max_retries=tx.max_retries,
        )
    ok = await _transition(
        session,
        transaction_id,
        from_statuses=(S.FAILED,),
        to_status=S.PROCESSING,
        extra_where=(Transaction.retry_count < Transaction.max_retries,),
        updated_at=now,
    )
    if not ok:
        raise InvalidStateError("Transaction changed state concurrently.", transaction_id=transaction_id)
    tx = await get_transaction(session, transaction_id)
    logger.info("Transaction %s retry %s/%s", tx.id, tx.retry_count, tx.max_retries)
    return await _record_intent(session, tx)


async def validate(session: AsyncSession, transaction_id: int) -> Transaction:
    """Check funds and share bounds against current state without changing anything."""
    tx = await get_transaction(session, transaction_id)
    src = await ledger.get_account(session, tx.from_account_id)
    await session.refresh(src)
    ledger.check_debit(src, tx.amount)
    if tx.type is TransactionType.SETTLEMENT and tx.related_share_id is not None:
        share = await session.get(ExpenseShare, tx.related_share_id, populate_existing=True)
        if share is not None:
            expenses.check_share_payment(share, tx.amount)
    return tx


async def _user_ids(session: AsyncSession, tx: Transaction) -> tuple[Optional[int], Optional[int]]:
    rows = dict(
        (await session.execute(select(Account.id, Account.user_id).where(Account.id.in_([tx.from_account_id, tx.to_account_id])))).all()
    )
    return rows.get(tx.from_account_id), rows.get(tx.to_account_id)


async def apply_and_complete(session: AsyncSession, transaction_id: int, *, now: datetime) -> Transaction:
    """
    PROCESSING -> COMPLETED with the balance deltas, in one DB transaction.

    The status flip goes first so a concurrent cancel or a second resume can
    not also apply. Any error afterwards must roll the whole unit back.
    """
    if not await _transition(
        session,
        transaction_id,
        from_statuses=(S.PROCESSING,),
        to_status=S.COMPLETED,
        processed_at=now,
        updated_at=now,
        failure_reason=None,
    ):
        tx = await get_transaction(session, transaction_id)
        raise InvalidStateError(
            f"Transaction {transaction_id} is {tx.status.value}, not PROCESSING.",
            transaction_id=transaction_id,
            status=tx.status.value,
        )
    tx = await get_transaction(session, transaction_id)

    debit, credit = await ledger.apply_transfer(
        session,
        from_account_id=tx.from_account_id,
        to_account_id=tx.to_account_id,
        amount=tx.amount,
    )
    tx.from_balance_before = debit.before
    tx.from_balance_after = debit.after
    tx.to_balance_before = credit.before
    tx.to_balance_after = credit.after

    if tx.related_share_id is not None:
        if tx.type is TransactionType.SETTLEMENT:
            await expenses.apply_share_payment(session, share_id=tx.related_share_id, amount=tx.amount, now=now)
        elif tx.type is TransactionType.REFUND:
            await expenses.revert_share_payment(session, share_id=tx.related_share_id, amount=tx.amount, now=now)

    if tx.related_group_id is not None and tx.type in ledger.GROUP_PAYMENT_TYPES:
        from_user_id, to_user_id = await _user_ids(session, tx)
        if from_user_id is not None and to_user_id is not None:
            await ledger.record_group_payment(
                session,
                group_id=tx.related_group_id,
                from_user_id=from_user_id,
                to_user_id=to_user_id,
                amount=tx.amount,
                now=now,
            )

    await session.flush()
    logger.info("Transaction %s completed", tx.id)
    return tx


async def record_failure(
    session: AsyncSession,
    transaction_id: int,
    *,
    error: LedgerError,
    now: datetime,
) -> Transaction:
    """PROCESSING -> FAILED. Every failure uses up one attempt; only transient ones allow an automatic retry."""
    ok = await _transition(
        session,
        transaction_id,
        from_statuses=(S.PROCESSING,),
        to_status=S.FAILED,
        failure_reason=f"{error.kind}: {error.message}",
        updated_at=now,
        is_retryable=error.retryable,
        retry_count=Transaction.retry_count + 1,
    )
    tx = await get_transaction(session, transaction_id)
    if ok:
        logger.warning("Transaction %s failed (%s), retries %s/%s", tx.id, error.kind, tx.retry_count, tx.max_retries)
    return tx


async def cancel(session: AsyncSession, transaction_id: int, *, now: datetime) -> Transaction:
    if not await _transition(
        session,
        transaction_id,
        from_statuses=(S.PENDING, S.PROCESSING),
        to_status=S.CANCELLED,
        updated_at=now,
    ):
        tx = await get_transaction(session, transaction_id)
        raise InvalidStateError(
            "Only pending or processing transactions can be cancelled.",
            transaction_id=transaction_id,
            status=tx.status.value,
        )
    tx = await get_transaction(session, transaction_id)
    logger.info("Transaction %s cancelled", tx.id)
    return tx


def _still_live() -> sa.ColumnElement[bool]:
    # Anything that has moved money or may still move it.
    exhausted = sa.and_(Transaction.status == S.FAILED, Transaction.retry_count >= Transaction.max_retries)
    return sa.and_(Transaction.status != S.CANCELLED, sa.not_(exhausted))


async def find_refund(session: AsyncSession, transaction_id: int) -> Optional[Transaction]:
    return await session.scalar(
        select(Transaction).where(
            Transaction.related_transaction_id == transaction_id,
            Transaction.type == TransactionType.REFUND,
            _still_live(),
        )
    )


async def find_expense_charge(session: AsyncSession, expense_id: int) -> Optional[Transaction]:
    return await session.scalar(
        select(Transaction).where(
            Transaction.related_expense_id == expense_id,
            Transaction.type == TransactionType.EXPENSE_CHARGE,
            _still_live(),
        )
    )


async def list_stalled(session: AsyncSession, *, older_than: datetime) -> list[int]:
    res = await session.scalars(
        select(Transaction.id)
        .where(
            Transaction.status.in_((S.PENDING, S.PROCESSING)),
            Transaction.created_at <= older_than,
        )
        .order_by(Transaction.id.asc())
    )
    return list(res)

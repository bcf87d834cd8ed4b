from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from expense_ledger.core.errors import AlreadySettledError, InvalidAmountError, InvalidSplitError, NotFoundError
from expense_ledger.core.splits import ParticipantShare, SplitInput, SplitPolicy, compute_split
from expense_ledger.db.models import Expense, ExpenseShare, Transaction, TransactionStatus, TransactionType
from expense_ledger.services import ledger

logger = logging.getLogger(__name__)


def _build_shares(split: list[ParticipantShare], *, payer_id: int, now: datetime) -> list[ExpenseShare]:
    shares = []
    for pos, s in enumerate(split):
        own = int(s.participant_id) == payer_id
        shares.append(
            ExpenseShare(
                user_id=int(s.participant_id),
                position=pos,
                value=str(s.value) if s.value is not None else None,
                amount=s.amount,
                # The payer never owes themselves.
                settled_amount=s.amount if own else 0,
                settled=own,
                settled_at=now if own else None,
            )
        )
    return shares


def _refresh_settled_flag(expense: Expense, now: datetime) -> None:
    done = all(s.settled for s in expense.shares)
    if done and not expense.is_settled:
        expense.is_settled = True
        expense.settled_at = now
    elif not done and expense.is_settled:
        expense.is_settled = False
        expense.settled_at = None


async def create_expense(
    session: AsyncSession,
    *,
    payer_id: int,
    created_by_id: int,
    currency: str,
    total: int,
    policy: SplitPolicy,
    participants: Sequence[SplitInput],
    group_id: Optional[int] = None,
    description: Optional[str] = None,
    now: datetime,
) -> Expense:
    # Split first: an invalid split must fail before anything is written.
    split = compute_split(total, policy, participants)
    expense = Expense(
        group_id=group_id,
        payer_id=payer_id,
        created_by_id=created_by_id,
        description=(description.strip() if description and description.strip() else None),
        currency=currency,
        total_amount=total,
        split_policy=SplitPolicy(policy),
        is_settled=False,
        shares=_build_shares(split, payer_id=payer_id, now=now),
    )
    _refresh_settled_flag(expense, now)
    session.add(expense)
    await session.flush()
    await ledger.record_expense(session, expense, now=now)
    logger.info("Expense %s created: %s %s split %s ways (%s)", expense.id, total, currency, len(split), expense.split_policy.value)
    return expense


async def get_expense(session: AsyncSession, expense_id: int) -> Expense:
    expense = await session.scalar(
        select(Expense).where(Expense.id == expense_id).execution_options(populate_existing=True)
    )
    if expense is None:
        raise NotFoundError(f"Expense {expense_id} not found.", expense_id=expense_id)
    return expense


async def _ensure_mutable(session: AsyncSession, expense: Expense) -> None:
    if expense.is_settled:
        raise AlreadySettledError("Expense is already settled.", expense_id=expense.id)
    if any(s.settled_amount > 0 for s in expense.shares if s.user_id != expense.payer_id):
        raise AlreadySettledError("Expense has settled shares and can no longer change.", expense_id=expense.id)
    in_flight = await session.scalar(
        select(Transaction.id)
        .where(
            Transaction.related_expense_id == expense.id,
            Transaction.type == TransactionType.SETTLEMENT,
            Transaction.status.in_((TransactionStatus.PENDING, TransactionStatus.PROCESSING)),
        )
        .limit(1)
    )
    if in_flight is not None:
        raise AlreadySettledError("Expense has a settlement in progress.", expense_id=expense.id, transaction_id=in_flight)


async def resplit_expense(
    session: AsyncSession,
    expense: Expense,
    *,
    total: int,
    policy: SplitPolicy,
    participants: Sequence[SplitInput],
    now: datetime,
) -> Expense:
    await _ensure_mutable(session, expense)
    split = compute_split(total, policy, participants)

    await ledger.record_expense(session, expense, sign=-1, now=now)
    # Flush the deletes before inserting replacements (unique expense/user).
    expense.shares.clear()
    await session.flush()

    expense.total_amount = total
    expense.split_policy = SplitPolicy(policy)
    expense.shares.extend(_build_shares(split, payer_id=expense.payer_id, now=now))
    expense.updated_at = now
    _refresh_settled_flag(expense, now)
    await session.flush()
    await ledger.record_expense(session, expense, now=now)
    logger.info("Expense %s re-split: %s %s (%s)", expense.id, total, expense.currency, expense.split_policy.value)
    return expense


async def update_expense_amount(session: AsyncSession, expense: Expense, *, total: int, now: datetime) -> Expense:
    if expense.split_policy is SplitPolicy.CUSTOM:
        raise InvalidSplitError("A custom split needs new amounts; update the split instead.", expense_id=expense.id)
    participants = [SplitInput(participant_id=s.user_id, value=s.value) for s in expense.shares]
    return await resplit_expense(
        session,
        expense,
        total=total,
        policy=expense.split_policy,
        participants=participants,
        now=now,
    )


async def get_share(session: AsyncSession, *, expense_id: int, user_id: int) -> ExpenseShare:
    share = await session.scalar(
        select(ExpenseShare).where(ExpenseShare.expense_id == expense_id, ExpenseShare.user_id == user_id)
    )
    if share is None:
        raise NotFoundError("User is not a participant of this expense.", expense_id=expense_id, user_id=user_id)
    return share


async def _lock_share(session: AsyncSession, share_id: int) -> ExpenseShare:
    share = await session.scalar(
        select(ExpenseShare)
        .where(ExpenseShare.id == share_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if share is None:
        raise NotFoundError(f"Expense share {share_id} not found.", share_id=share_id)
    return share


def check_share_payment(share: ExpenseShare, amount: int) -> None:
    if share.settled:
        raise AlreadySettledError("This share is already settled.", share_id=share.id)
    if amount <= 0:
        raise InvalidAmountError("Settlement amount must be positive.")
    if amount > share.outstanding:
        raise InvalidAmountError(
            "Settlement amount cannot exceed the outstanding share.",
            share_id=share.id,
            outstanding=share.outstanding,
            amount=amount,
        )


async def apply_share_payment(session: AsyncSession, *, share_id: int, amount: int, now: datetime) -> ExpenseShare:
    share = await _lock_share(session, share_id)
    check_share_payment(share, amount)
    share.settled_amount += amount
    if share.settled_amount == share.amount:
        share.settled = True
        share.settled_at = now
    await session.flush()
    expense = await get_expense(session, share.expense_id)
    _refresh_settled_flag(expense, now)
    await session.flush()
    return share


async def revert_share_payment(session: AsyncSession, *, share_id: int, amount: int, now: datetime) -> ExpenseShare:
    share = await _lock_share(session, share_id)
    share.settled_amount = max(0, share.settled_amount - amount)
    share.settled = share.settled_amount == share.amount
    if not share.settled:
        share.settled_at = None
    await session.flush()
    expense = await get_expense(session, share.expense_id)
    _refresh_settled_flag(expense, now)
    await session.flush()
    return share


async def list_pending_shares(session: AsyncSession, *, user_id: int) -> list[ExpenseShare]:
    res = await session.scalars(
        select(ExpenseShare)
        .join(Expense, Expense.id == ExpenseShare.expense_id)
        .where(
            ExpenseShare.user_id == user_id,
            ExpenseShare.settled.is_(False),
            Expense.payer_id != user_id,
        )
        .order_by(Expense.created_at.asc(), Expense.id.asc())
    )
    return list(res)

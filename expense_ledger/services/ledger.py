"""
Balance ledger.

The only code that writes `Account.balance` and `GroupMemberBalance` rows.

Account deltas run inside the caller's DB transaction. Rows are locked with
SELECT ... FOR UPDATE in ascending id order (so two transfers over the same
pair of accounts cannot deadlock) and each balance write is a compare-and-swap
on `Account.version`. A lost race shows up as StaleDataError on flush.

Group member balances are a projection. They are bumped incrementally as
expenses and group payments happen, and `recompute_group_balances` rebuilds
them from the expense and transaction history for reconciliation.
"""

from __future__ import annotations

import enum
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

import sqlalchemy as sa
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from expense_ledger.core.errors import InsufficientFundsError, LedgerConsistencyError, NotFoundError
from expense_ledger.db.models import (
    EXTERNAL_ONLY,
    Account,
    AccountKind,
    Expense,
    ExpenseShare,
    GroupMember,
    GroupMemberBalance,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from expense_ledger.db.upsert import dialect_insert

logger = logging.getLogger(__name__)

# Completed transactions of these types move group balances when tagged with a group.
GROUP_PAYMENT_TYPES = (TransactionType.SETTLEMENT, TransactionType.TRANSFER, TransactionType.REFUND)


class Direction(str, enum.Enum):
    DEBIT = "DEBIT"
    CREDIT = "CREDIT"


@dataclass(frozen=True)
class DeltaResult:
    account_id: int
    before: int
    after: int


@dataclass(frozen=True)
class MemberBalance:
    group_id: int
    user_id: int
    total_paid: int
    total_owed: int
    net_balance: int


@dataclass(frozen=True)
class BalanceDrift:
    user_id: int
    stored: Optional[MemberBalance]
    recomputed: MemberBalance


@dataclass(frozen=True)
class ReconciliationReport:
    group_id: int
    balances: list[MemberBalance]
    drift: list[BalanceDrift]
    repaired: bool

    @property
    def consistent(self) -> bool:
        return not self.drift


# --- accounts -----------------------------------------------------------------


async def get_or_create_wallet(
    session: AsyncSession,
    *,
    user_id: int,
    currency: str,
    allow_overdraft: bool = False,
) -> Account:
    acc = await session.scalar(
        select(Account).where(
            Account.user_id == user_id,
            Account.currency == currency,
            Account.kind == AccountKind.WALLET,
        )
    )
    if acc is not None:
        return acc
    await session.execute(
        dialect_insert(session, Account)
        .values(
            user_id=user_id,
            kind=AccountKind.WALLET,
            currency=currency,
            balance=0,
            allow_overdraft=allow_overdraft,
            version=1,
        )
        .on_conflict_do_nothing(index_elements=[Account.user_id, Account.currency])
    )
    return await session.scalar(
        select(Account).where(Account.user_id == user_id, Account.currency == currency)
    )


async def get_external_account(session: AsyncSession, *, currency: str) -> Account:
    """The system counterparty for money entering or leaving the ledger."""
    stmt = select(Account).where(Account.kind == AccountKind.EXTERNAL, Account.currency == currency)
    acc = await session.scalar(stmt)
    if acc is not None:
        return acc
    await session.execute(
        dialect_insert(session, Account)
        .values(kind=AccountKind.EXTERNAL, currency=currency, balance=0, allow_overdraft=True, version=1)
        .on_conflict_do_nothing(index_elements=[Account.currency], index_where=EXTERNAL_ONLY)
    )
    return await session.scalar(stmt)


async def get_account(session: AsyncSession, account_id: int) -> Account:
    acc = await session.get(Account, account_id)
    if acc is None:
        raise NotFoundError(f"Account {account_id} not found.", account_id=account_id)
    return acc


async def lock_accounts(session: AsyncSession, account_ids: Iterable[int]) -> dict[int, Account]:
    ids = sorted(set(account_ids))
    rows = (
        await session.scalars(
            select(Account)
            .where(Account.id.in_(ids))
            .order_by(Account.id.asc())
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).all()
    accounts = {a.id: a for a in rows}
    missing = [i for i in ids if i not in accounts]
    if missing:
        raise NotFoundError(f"Accounts not found: {missing}", account_ids=missing)
    return accounts


def check_debit(account: Account, amount: int) -> int:
    after = account.balance - amount
    if after < 0 and not account.allow_overdraft:
        raise InsufficientFundsError(
            "Insufficient wallet balance.",
            account_id=account.id,
            balance=account.balance,
            amount=amount,
        )
    return after


def apply_delta(account: Account, amount: int, direction: Direction) -> DeltaResult:
    """Mutate a locked account in memory; the caller's flush persists it."""
    if amount <= 0:
        raise ValueError("Delta amount must be positive.")
    before = account.balance
    if direction is Direction.DEBIT:
        after = check_debit(account, amount)
    else:
        after = before + amount
    account.balance = after
    return DeltaResult(account_id=account.id, before=before, after=after)


async def apply_transfer(
    session: AsyncSession,
    *,
    from_account_id: int,
    to_account_id: int,
    amount: int,
) -> tuple[DeltaResult, DeltaResult]:
    """Debit one account and credit the other. Both or neither: nothing is flushed on error."""
    accounts = await lock_accounts(session, [from_account_id, to_account_id])
    debit = apply_delta(accounts[from_account_id], amount, Direction.DEBIT)
    credit = apply_delta(accounts[to_account_id], amount, Direction.CREDIT)
    await session.flush()
    return debit, credit


# --- group projection ---------------------------------------------------------


async def ensure_balance_rows(session: AsyncSession, *, group_id: int, user_ids: Iterable[int]) -> None:
    rows = [{"group_id": group_id, "user_id": uid, "total_paid": 0, "total_owed": 0, "net_balance": 0} for uid in set(user_ids)]
    if not rows:
        return
    await session.execute(
        dialect_insert(session, GroupMemberBalance)
        .values(rows)
        .on_conflict_do_nothing(index_elements=[GroupMemberBalance.group_id, GroupMemberBalance.user_id])
    )


async def bump_member_balance(
    session: AsyncSession,
    *,
    group_id: int,
    user_id: int,
    paid: int = 0,
    owed: int = 0,
    now: Optional[datetime] = None,
) -> None:
    if not paid and not owed:
        return
    await ensure_balance_rows(session, group_id=group_id, user_ids=[user_id])
    # Single UPDATE with column arithmetic so concurrent bumps never lose a write.
    await session.execute(
        sa.update(GroupMemberBalance)
        .where(GroupMemberBalance.group_id == group_id, GroupMemberBalance.user_id == user_id)
        .values(
            total_paid=GroupMemberBalance.total_paid + paid,
            total_owed=GroupMemberBalance.total_owed + owed,
            net_balance=GroupMemberBalance.net_balance + paid - owed,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )


async def record_expense(session: AsyncSession, expense: Expense, *, sign: int = 1, now: Optional[datetime] = None) -> None:
    """Add (sign=1) or remove (sign=-1) an expense's effect on its group's balances."""
    if expense.group_id is None:
        return
    await bump_member_balance(session, group_id=expense.group_id, user_id=expense.payer_id, paid=sign * expense.total_amount, now=now)
    for share in expense.shares:
        await bump_member_balance(session, group_id=expense.group_id, user_id=share.user_id, owed=sign * share.amount, now=now)


async def record_group_payment(
    session: AsyncSession,
    *,
    group_id: int,
    from_user_id: int,
    to_user_id: int,
    amount: int,
    now: Optional[datetime] = None,
) -> None:
    # The payer has now paid `amount` more; the receiver has been repaid `amount`.
    await bump_member_balance(session, group_id=group_id, user_id=from_user_id, paid=amount, now=now)
    await bump_member_balance(session, group_id=group_id, user_id=to_user_id, owed=amount, now=now)


def _as_member_balance(row: GroupMemberBalance) -> MemberBalance:
    return MemberBalance(
        group_id=row.group_id,
        user_id=row.user_id,
        total_paid=row.total_paid,
        total_owed=row.total_owed,
        net_balance=row.net_balance,
    )


async def get_group_balances(session: AsyncSession, *, group_id: int) -> list[MemberBalance]:
    member_ids = (
        await session.scalars(
            select(GroupMember.user_id).where(GroupMember.group_id == group_id, GroupMember.is_active.is_(True))
        )
    ).all()
    await ensure_balance_rows(session, group_id=group_id, user_ids=member_ids)
    rows = (
        await session.scalars(
            select(GroupMemberBalance)
            .where(GroupMemberBalance.group_id == group_id)
            .order_by(GroupMemberBalance.user_id.asc())
            .execution_options(populate_existing=True)
        )
    ).all()
    return [_as_member_balance(r) for r in rows]


async def recompute_group_balances(session: AsyncSession, *, group_id: int) -> list[MemberBalance]:
    """Rebuild every member's totals by replaying the group's expenses and completed payments."""
    paid: dict[int, int] = defaultdict(int)
    owed: dict[int, int] = defaultdict(int)

    member_ids = (await session.scalars(select(GroupMember.user_id).where(GroupMember.group_id == group_id))).all()
    for uid in member_ids:
        paid[int(uid)] += 0

    expense_rows = (
        await session.execute(select(Expense.payer_id, Expense.total_amount).where(Expense.group_id == group_id))
    ).all()
    for payer_id, total in expense_rows:
        paid[int(payer_id)] += int(total)

    share_rows = (
        await session.execute(
            select(ExpenseShare.user_id, ExpenseShare.amount)
            .join(Expense, Expense.id == ExpenseShare.expense_id)
            .where(Expense.group_id == group_id)
        )
    ).all()
    for user_id, amount in share_rows:
        owed[int(user_id)] += int(amount)

    src = aliased(Account)
    dst = aliased(Account)
    payment_rows = (
        await session.execute(
            select(src.user_id, dst.user_id, Transaction.amount)
            .join(src, src.id == Transaction.from_account_id)
            .join(dst, dst.id == Transaction.to_account_id)
            .where(
                Transaction.related_group_id == group_id,
                Transaction.status == TransactionStatus.COMPLETED,
                Transaction.type.in_(GROUP_PAYMENT_TYPES),
            )
        )
    ).all()
    for from_user_id, to_user_id, amount in payment_rows:
        if from_user_id is not None:
            paid[int(from_user_id)] += int(amount)
        if to_user_id is not None:
            owed[int(to_user_id)] += int(amount)

    user_ids = sorted(set(paid) | set(owed))
    return [
        MemberBalance(
            group_id=group_id,
            user_id=uid,
            total_paid=paid[uid],
            total_owed=owed[uid],
            net_balance=paid[uid] - owed[uid],
        )
        for uid in user_ids
    ]


async def reconcile_group(
    session: AsyncSession,
    *,
    group_id: int,
    repair: bool = False,
    now: Optional[datetime] = None,
) -> ReconciliationReport:
    """
    Compare the stored projection with a full replay.

    Drift raises LedgerConsistencyError unless `repair` is set, in which case
    the stored rows are overwritten with the replayed values and the drift is
    reported (and logged) in the returned report. A replay that does not sum
    to zero always raises.
    """
    recomputed = await recompute_group_balances(session, group_id=group_id)
    replay_sum = sum(b.net_balance for b in recomputed)
    if replay_sum != 0:
        logger.error("Group %s history does not sum to zero (drift=%s)", group_id, replay_sum)
        raise LedgerConsistencyError(
            "Group history does not sum to zero.",
            group_id=group_id,
            drift=replay_sum,
        )

    stored_rows = (
        await session.scalars(
            select(GroupMemberBalance)
            .where(GroupMemberBalance.group_id == group_id)
            .execution_options(populate_existing=True)
        )
    ).all()
    stored = {r.user_id: _as_member_balance(r) for r in stored_rows}

    drift: list[BalanceDrift] = []
    for b in recomputed:
        s = stored.get(b.user_id)
        if s is None:
            if b.total_paid or b.total_owed:
                drift.append(BalanceDrift(user_id=b.user_id, stored=None, recomputed=b))
            continue
        if (s.total_paid, s.total_owed, s.net_balance) != (b.total_paid, b.total_owed, b.net_balance):
            drift.append(BalanceDrift(user_id=b.user_id, stored=s, recomputed=b))
    recomputed_ids = {b.user_id for b in recomputed}
    for uid, s in stored.items():
        if uid not in recomputed_ids and (s.total_paid or s.total_owed or s.net_balance):
            drift.append(BalanceDrift(user_id=uid, stored=s, recomputed=MemberBalance(group_id, uid, 0, 0, 0)))

    if drift and not repair:
        logger.error("Group %s balance drift for users %s", group_id, [d.user_id for d in drift])
        raise LedgerConsistencyError(
            "Stored group balances differ from the replayed history.",
            group_id=group_id,
            user_ids=[d.user_id for d in drift],
        )

    if drift:
        logger.warning("Repairing group %s balances for users %s", group_id, [d.user_id for d in drift])
        await ensure_balance_rows(session, group_id=group_id, user_ids=[d.user_id for d in drift])
        for d in drift:
            await session.execute(
                sa.update(GroupMemberBalance)
                .where(GroupMemberBalance.group_id == group_id, GroupMemberBalance.user_id == d.user_id)
                .values(
                    total_paid=d.recomputed.total_paid,
                    total_owed=d.recomputed.total_owed,
                    net_balance=d.recomputed.net_balance,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )

    return ReconciliationReport(group_id=group_id, balances=recomputed, drift=drift, repaired=bool(drift) and repair)

"""
Ledger facade: the entry points the bot (or any other API layer) calls.

Each step of a multi-step operation runs in its own DB transaction and is
committed before the next one starts, so an interrupted operation leaves a
transaction in PENDING or PROCESSING that `resume_transaction` can finish.
Balances are only ever touched through `services.ledger`.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol, Sequence, Union

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from expense_ledger.config import settings
from expense_ledger.core.errors import (
    ConcurrentModificationError,
    CurrencyMismatchError,
    InvalidAmountError,
    InvalidRecipientError,
    InvalidStateError,
    LedgerError,
    MembershipError,
    NotFoundError,
    TransientLedgerError,
)
from expense_ledger.core.money import Money
from expense_ledger.core.settlement import BalanceEntry, Transfer, optimize
from expense_ledger.core.splits import SplitInput, SplitPolicy
from expense_ledger.db.models import Account, Expense, ExpenseShare, Transaction, TransactionStatus, TransactionType
from expense_ledger.services import expenses, ledger, transactions
from expense_ledger.services.ledger import MemberBalance, ReconciliationReport
from expense_ledger.services.members import SqlDirectory

logger = logging.getLogger(__name__)

Amount = Union[Money, int]
Clock = Callable[[], datetime]


class Directory(Protocol):
    async def user_exists(self, session: AsyncSession, user_id: int) -> bool: ...

    async def is_active_member(self, session: AsyncSession, group_id: int, user_id: int) -> bool: ...


class PaymentGateway(Protocol):
    """Called after PENDING -> PROCESSING, outside any balance lock."""

    async def authorize(self, transaction: Transaction) -> None: ...


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SettlementAttempt:
    from_user_id: int
    to_user_id: int
    amount: int
    transaction: Optional[Transaction] = None
    error: Optional[LedgerError] = None

    @property
    def ok(self) -> bool:
        return self.transaction is not None and self.transaction.status is TransactionStatus.COMPLETED


@dataclass
class SettlementReport:
    subject_id: int  # expense id or group id
    net_balance: int = 0
    attempts: list[SettlementAttempt] = field(default_factory=list)

    @property
    def succeeded(self) -> list[SettlementAttempt]:
        return [a for a in self.attempts if a.ok]

    @property
    def failed(self) -> list[SettlementAttempt]:
        return [a for a in self.attempts if not a.ok]


class LedgerFacade:
    def __init__(
        self,
        *,
        sessionmaker: async_sessionmaker[AsyncSession],
        directory: Optional[Directory] = None,
        gateway: Optional[PaymentGateway] = None,
        clock: Clock = utc_now,
        currency: Optional[str] = None,
        max_retries: Optional[int] = None,
        auto_retry: Optional[bool] = None,
        allow_overdraft: Optional[bool] = None,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._directory = directory or SqlDirectory()
        self._gateway = gateway
        self._clock = clock
        self.currency = (currency or settings.currency).upper()
        self._max_retries = settings.max_retries if max_retries is None else max_retries
        self._auto_retry = settings.auto_retry_transient if auto_retry is None else auto_retry
        self._allow_overdraft = settings.allow_wallet_overdraft if allow_overdraft is None else allow_overdraft

    # --- plumbing ---------------------------------------------------------------

    @asynccontextmanager
    async def _unit(self) -> AsyncIterator[AsyncSession]:
        async with self._sessionmaker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    def _minor(self, amount: Amount) -> int:
        if isinstance(amount, Money):
            if amount.currency != self.currency:
                raise CurrencyMismatchError(f"This ledger is in {self.currency}, got {amount.currency}.")
            value = amount.minor
        elif isinstance(amount, int) and not isinstance(amount, bool):
            value = amount
        else:
            raise InvalidAmountError("Amounts must be Money or integer minor units.")
        if value <= 0:
            raise InvalidAmountError("Amount must be greater than 0.")
        return value

    def _split_inputs(self, participants: Sequence[SplitInput]) -> list[SplitInput]:
        out = []
        for p in participants:
            if isinstance(p.value, Money):
                if p.value.currency != self.currency:
                    raise CurrencyMismatchError(f"This ledger is in {self.currency}, got {p.value.currency}.")
                p = SplitInput(participant_id=p.participant_id, value=p.value.minor)
            out.append(p)
        return out

    async def _require_user(self, session: AsyncSession, user_id: int) -> None:
        if not await self._directory.user_exists(session, user_id):
            raise NotFoundError(f"User {user_id} not found.", user_id=user_id)

    async def _require_member(self, session: AsyncSession, group_id: int, user_id: int) -> None:
        if not await self._directory.is_active_member(session, group_id, user_id):
            raise MembershipError(
                f"User {user_id} is not an active member of group {group_id}.",
                group_id=group_id,
                user_id=user_id,
            )

    async def _wallet(self, session: AsyncSession, user_id: int) -> Account:
        return await ledger.get_or_create_wallet(
            session,
            user_id=user_id,
            currency=self.currency,
            allow_overdraft=self._allow_overdraft,
        )

    # --- state machine driver ---------------------------------------------------

    async def _apply(self, transaction_id: int) -> Transaction:
        try:
            async with self._unit() as session:
                return await transactions.apply_and_complete(session, transaction_id, now=self._clock())
        except (StaleDataError, OperationalError) as e:
            raise ConcurrentModificationError(
                "Account was modified concurrently.",
                transaction_id=transaction_id,
                cause=type(e).__name__,
            ) from e

    async def _process(self, transaction_id: int) -> Transaction:
        while True:
            try:
                async with self._unit() as session:
                    tx = await transactions.validate(session, transaction_id)
                if self._gateway is not None:
                    await self._gateway.authorize(tx)
                return await self._apply(transaction_id)
            except TransientLedgerError as e:
                async with self._unit() as session:
                    tx = await transactions.record_failure(session, transaction_id, error=e, now=self._clock())
                if tx.status is TransactionStatus.FAILED and self._auto_retry and tx.retry_count < tx.max_retries:
                    async with self._unit() as session:
                        await transactions.begin_retry(session, transaction_id, now=self._clock())
                    continue
                return tx
            except InvalidStateError:
                # Lost a race with cancel or another driver; report where it ended up.
                return await self.get_transaction(transaction_id)
            except LedgerError as e:
                async with self._unit() as session:
                    await transactions.record_failure(session, transaction_id, error=e, now=self._clock())
                raise

    async def _drive(self, transaction_id: int) -> Transaction:
        tx = await self.get_transaction(transaction_id)
        if tx.is_terminal or tx.status is TransactionStatus.FAILED:
            # A live failure waits for retry_transaction.
            return tx
        if tx.status is TransactionStatus.PENDING:
            try:
                async with self._unit() as session:
                    await transactions.start_processing(session, transaction_id, now=self._clock())
            except InvalidStateError:
                return await self.get_transaction(transaction_id)
        return await self._process(transaction_id)

    # --- expenses ---------------------------------------------------------------

    async def create_expense(
        self,
        payer_id: int,
        amount: Amount,
        policy: Union[SplitPolicy, str],
        participants: Sequence[SplitInput],
        *,
        group_id: Optional[int] = None,
        description: Optional[str] = None,
        created_by_id: Optional[int] = None,
    ) -> Expense:
        total = self._minor(amount)
        participants = self._split_inputs(participants)
        async with self._unit() as session:
            involved = [payer_id] + [int(p.participant_id) for p in participants]
            for uid in dict.fromkeys(involved):
                await self._require_user(session, uid)
                if group_id is not None:
                    await self._require_member(session, group_id, uid)
            return await expenses.create_expense(
                session,
                payer_id=payer_id,
                created_by_id=created_by_id or payer_id,
                currency=self.currency,
                total=total,
                policy=SplitPolicy(policy),
                participants=participants,
                group_id=group_id,
                description=description,
                now=self._clock(),
            )

    async def get_expense(self, expense_id: int) -> Expense:
        async with self._unit() as session:
            return await expenses.get_expense(session, expense_id)

    async def update_expense_amount(self, expense_id: int, new_amount: Amount) -> Expense:
        total = self._minor(new_amount)
        async with self._unit() as session:
            expense = await expenses.get_expense(session, expense_id)
            return await expenses.update_expense_amount(session, expense, total=total, now=self._clock())

    async def update_expense_split(
        self,
        expense_id: int,
        policy: Union[SplitPolicy, str],
        participants: Sequence[SplitInput],
        *,
        amount: Optional[Amount] = None,
    ) -> Expense:
        participants = self._split_inputs(participants)
        async with self._unit() as session:
            expense = await expenses.get_expense(session, expense_id)
            for p in participants:
                await self._require_user(session, int(p.participant_id))
                if expense.group_id is not None:
                    await self._require_member(session, expense.group_id, int(p.participant_id))
            total = expense.total_amount if amount is None else self._minor(amount)
            return await expenses.resplit_expense(
                session,
                expense,
                total=total,
                policy=SplitPolicy(policy),
                participants=participants,
                now=self._clock(),
            )

    async def list_pending_shares(self, user_id: int) -> list[ExpenseShare]:
        async with self._unit() as session:
            return await expenses.list_pending_shares(session, user_id=user_id)

    async def settle_expense_share(self, expense_id: int, participant_id: int, amount: Optional[Amount] = None) -> Transaction:
        async with self._unit() as session:
            expense = await expenses.get_expense(session, expense_id)
            share = await expenses.get_share(session, expense_id=expense_id, user_id=participant_id)
            value = share.outstanding if amount is None else self._minor(amount)
            expenses.check_share_payment(share, value)
            src = await self._wallet(session, participant_id)
            dst = await self._wallet(session, expense.payer_id)
            tx = await transactions.create_transaction(
                session,
                type=TransactionType.SETTLEMENT,
                amount=value,
                currency=self.currency,
                from_account_id=src.id,
                to_account_id=dst.id,
                max_retries=self._max_retries,
                description=f"Settlement for expense #{expense.id}",
                related_expense_id=expense.id,
                related_share_id=share.id,
                related_group_id=expense.group_id,
            )
            tx_id = tx.id
        return await self._drive(tx_id)

    async def settle_expense(self, expense_id: int) -> SettlementReport:
        """Settle every outstanding participant share of an expense, reporting each attempt."""
        expense = await self.get_expense(expense_id)
        report = SettlementReport(subject_id=expense_id)
        for share in expense.shares:
            if share.settled or share.user_id == expense.payer_id:
                continue
            try:
                tx = await self.settle_expense_share(expense_id, share.user_id)
                report.attempts.append(SettlementAttempt(share.user_id, expense.payer_id, tx.amount, transaction=tx))
            except LedgerError as e:
                logger.warning("Settling expense %s share of user %s failed: %s", expense_id, share.user_id, e.kind)
                report.attempts.append(SettlementAttempt(share.user_id, expense.payer_id, share.outstanding, error=e))
        return report

    async def charge_expense(self, expense_id: int) -> Transaction:
        """Debit the payer's wallet for the expense total (money leaves the ledger)."""
        async with self._unit() as session:
            expense = await expenses.get_expense(session, expense_id)
            existing = await transactions.find_expense_charge(session, expense_id)
            if existing is not None:
                tx_id = existing.id
                retry = existing.status is TransactionStatus.FAILED
            else:
                src = await self._wallet(session, expense.payer_id)
                dst = await ledger.get_external_account(session, currency=self.currency)
                tx = await transactions.create_transaction(
                    session,
                    type=TransactionType.EXPENSE_CHARGE,
                    amount=expense.total_amount,
                    currency=self.currency,
                    from_account_id=src.id,
                    to_account_id=dst.id,
                    max_retries=self._max_retries,
                    description=expense.description or f"Expense #{expense.id}",
                    related_expense_id=expense.id,
                    related_group_id=expense.group_id,
                )
                tx_id = tx.id
                retry = False
        if retry:
            return await self.retry_transaction(tx_id)
        return await self._drive(tx_id)

    # --- money movement ---------------------------------------------------------

    async def transfer(
        self,
        from_id: int,
        to_id: int,
        amount: Amount,
        description: Optional[str] = None,
        *,
        group_id: Optional[int] = None,
    ) -> Transaction:
        value = self._minor(amount)
        if from_id == to_id:
            raise InvalidRecipientError("Cannot send money to yourself.", user_id=from_id)
        async with self._unit() as session:
            await self._require_user(session, from_id)
            if not await self._directory.user_exists(session, to_id):
                raise InvalidRecipientError("Recipient not found.", user_id=to_id)
            if group_id is not None:
                await self._require_member(session, group_id, from_id)
                await self._require_member(session, group_id, to_id)
            src = await self._wallet(session, from_id)
            dst = await self._wallet(session, to_id)
            tx = await transactions.create_transaction(
                session,
                type=TransactionType.TRANSFER,
                amount=value,
                currency=self.currency,
                from_account_id=src.id,
                to_account_id=dst.id,
                max_retries=self._max_retries,
                description=description,
                related_group_id=group_id,
            )
            tx_id = tx.id
        return await self._drive(tx_id)

    async def deposit(self, user_id: int, amount: Amount, description: Optional[str] = None) -> Transaction:
        value = self._minor(amount)
        async with self._unit() as session:
            await self._require_user(session, user_id)
            src = await ledger.get_external_account(session, currency=self.currency)
            dst = await self._wallet(session, user_id)
            tx = await transactions.create_transaction(
                session,
                type=TransactionType.TRANSFER,
                amount=value,
                currency=self.currency,
                from_account_id=src.id,
                to_account_id=dst.id,
                max_retries=self._max_retries,
                description=description or "Wallet top-up",
            )
            tx_id = tx.id
        return await self._drive(tx_id)

    async def refund_transaction(self, transaction_id: int, description: Optional[str] = None) -> Transaction:
        async with self._unit() as session:
            original = await transactions.get_transaction(session, transaction_id)
            if original.status is not TransactionStatus.COMPLETED:
                raise InvalidStateError("Only completed transactions can be refunded.", transaction_id=transaction_id)
            if original.type is TransactionType.REFUND:
                raise InvalidStateError("A refund cannot be refunded.", transaction_id=transaction_id)
            existing = await transactions.find_refund(session, transaction_id)
            if existing is not None and existing.status is TransactionStatus.FAILED:
                raise InvalidStateError(
                    f"Refund {existing.reference} failed; retry it instead.",
                    transaction_id=transaction_id,
                    refund_transaction_id=existing.id,
                )
            if existing is not None:
                raise InvalidStateError("Transaction has already been refunded.", transaction_id=transaction_id)
            tx = await transactions.create_transaction(
                session,
                type=TransactionType.REFUND,
                amount=original.amount,
                currency=original.currency,
                from_account_id=original.to_account_id,
                to_account_id=original.from_account_id,
                max_retries=self._max_retries,
                description=description or f"Refund of {original.reference}",
                related_expense_id=original.related_expense_id,
                related_share_id=original.related_share_id,
                related_group_id=original.related_group_id,
                related_transaction_id=original.id,
            )
            tx_id = tx.id
        return await self._drive(tx_id)

    async def retry_transaction(self, transaction_id: int) -> Transaction:
        tx = await self.get_transaction(transaction_id)
        if tx.status is TransactionStatus.COMPLETED:
            logger.info("Retry of completed transaction %s ignored", transaction_id)
            return tx
        async with self._unit() as session:
            await transactions.begin_retry(session, transaction_id, now=self._clock())
        return await self._process(transaction_id)

    async def cancel_transaction(self, transaction_id: int) -> Transaction:
        async with self._unit() as session:
            return await transactions.cancel(session, transaction_id, now=self._clock())

    async def resume_transaction(self, transaction_id: int) -> Transaction:
        """Drive a PENDING or PROCESSING transaction to an outcome, e.g. after a crash."""
        return await self._drive(transaction_id)

    async def resume_stalled(self, *, older_than: timedelta = timedelta(0)) -> list[Transaction]:
        async with self._unit() as session:
            ids = await transactions.list_stalled(session, older_than=self._clock() - older_than)
        out = []
        for tx_id in ids:
            try:
                out.append(await self._drive(tx_id))
            except LedgerError as e:
                # The failure is recorded on the transaction itself.
                logger.warning("Resuming transaction %s failed: %s", tx_id, e.kind)
                out.append(await self.get_transaction(tx_id))
        return out

    # --- queries ----------------------------------------------------------------

    async def get_transaction(self, transaction_id: int) -> Transaction:
        async with self._unit() as session:
            return await transactions.get_transaction(session, transaction_id)

    async def list_transactions(
        self,
        *,
        user_id: Optional[int] = None,
        group_id: Optional[int] = None,
        limit: int = 50,
    ) -> list[Transaction]:
        async with self._unit() as session:
            account_ids = None
            if user_id is not None:
                account_ids = [(await self._wallet(session, user_id)).id]
            return await transactions.list_transactions(session, account_ids=account_ids, group_id=group_id, limit=limit)

    async def get_wallet_balance(self, user_id: int) -> Money:
        async with self._unit() as session:
            await self._require_user(session, user_id)
            acc = await self._wallet(session, user_id)
            return Money(acc.balance, acc.currency)

    # --- groups -----------------------------------------------------------------

    async def get_group_balances(self, group_id: int) -> list[MemberBalance]:
        async with self._unit() as session:
            return await ledger.get_group_balances(session, group_id=group_id)

    async def suggest_settlements(self, group_id: int) -> list[Transfer]:
        balances = await self.get_group_balances(group_id)
        try:
            return optimize(BalanceEntry(account_id=b.user_id, net_balance=b.net_balance) for b in balances)
        except LedgerError:
            logger.error("Group %s balances are inconsistent; run reconciliation", group_id)
            raise

    async def settle_group(self, group_id: int, user_id: int) -> SettlementReport:
        """Pay every creditor the suggested settlement plan assigns to `user_id`."""
        async with self._unit() as session:
            await self._require_member(session, group_id, user_id)
        balances = {b.user_id: b.net_balance for b in await self.get_group_balances(group_id)}
        report = SettlementReport(subject_id=group_id, net_balance=balances.get(user_id, 0))
        for t in await self.suggest_settlements(group_id):
            if t.from_id != user_id:
                continue
            try:
                tx = await self.transfer(user_id, int(t.to_id), t.amount, "Group settlement", group_id=group_id)
                report.attempts.append(SettlementAttempt(user_id, int(t.to_id), t.amount, transaction=tx))
            except LedgerError as e:
                logger.warning("Group %s settlement %s->%s failed: %s", group_id, user_id, t.to_id, e.kind)
                report.attempts.append(SettlementAttempt(user_id, int(t.to_id), t.amount, error=e))
        logger.info(
            "Group %s settle-up by user %s: %s ok, %s failed",
            group_id,
            user_id,
            len(report.succeeded),
            len(report.failed),
        )
        return report

    async def recompute_group_balances(self, group_id: int) -> list[MemberBalance]:
        async with self._unit() as session:
            return await ledger.recompute_group_balances(session, group_id=group_id)

    async def reconcile_group(self, group_id: int, *, repair: bool = False) -> ReconciliationReport:
        async with self._unit() as session:
            return await ledger.reconcile_group(session, group_id=group_id, repair=repair, now=self._clock())

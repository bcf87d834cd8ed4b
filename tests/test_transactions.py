from __future__ import annotations

import asyncio

import pytest
import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError

from expense_ledger.core.errors import (
    InsufficientFundsError,
    InvalidAmountError,
    InvalidRecipientError,
    InvalidStateError,
    RetryLimitExceededError,
    TransientLedgerError,
)
from expense_ledger.core.money import Money
from expense_ledger.db.models import Account, AccountKind, TransactionStatus, TransactionType
from expense_ledger.services import ledger as balance_ledger
from expense_ledger.services import transactions
from expense_ledger.services.facade import LedgerFacade, utc_now


class FlakyGateway:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    async def authorize(self, transaction) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientLedgerError("Gateway timed out.")


class CancellingGateway:
    """Cancels the transaction while it is being authorized."""

    def __init__(self) -> None:
        self.ledger = None

    async def authorize(self, transaction) -> None:
        await self.ledger.cancel_transaction(transaction.id)


async def _pending_transfer(sessionmaker, from_user: int, to_user: int, amount: int) -> int:
    async with sessionmaker() as session:
        src = await balance_ledger.get_or_create_wallet(session, user_id=from_user, currency="USD")
        dst = await balance_ledger.get_or_create_wallet(session, user_id=to_user, currency="USD")
        tx = await transactions.create_transaction(
            session,
            type=TransactionType.TRANSFER,
            amount=amount,
            currency="USD",
            from_account_id=src.id,
            to_account_id=dst.id,
            max_retries=3,
        )
        await session.commit()
        return tx.id


async def test_deposit_and_transfer(ledger, make_group):
    _, (a, b) = await make_group("ann", "bob", group=False)

    dep = await ledger.deposit(a, Money.parse("100.00"))
    assert dep.status is TransactionStatus.COMPLETED
    assert dep.to_balance_before == 0
    assert dep.to_balance_after == 10000

    tx = await ledger.transfer(a, b, Money.parse("40.00"), "rent")
    assert tx.status is TransactionStatus.COMPLETED
    assert tx.type is TransactionType.TRANSFER
    assert (tx.from_balance_before, tx.from_balance_after) == (10000, 6000)
    assert (tx.to_balance_before, tx.to_balance_after) == (0, 4000)
    assert tx.processed_at is not None

    assert await ledger.get_wallet_balance(a) == Money(6000)
    assert await ledger.get_wallet_balance(b) == Money(4000)
    history = await ledger.list_transactions(user_id=a)
    assert [t.id for t in history] == [tx.id, dep.id]


async def test_insufficient_funds_fails_without_moving_money(ledger, make_group):
    _, (a, b) = await make_group("ann", "bob", group=False)
    await ledger.deposit(a, 500)

    with pytest.raises(InsufficientFundsError):
        await ledger.transfer(a, b, 501)

    assert await ledger.get_wallet_balance(a) == Money(500)
    assert await ledger.get_wallet_balance(b) == Money(0)
    failed = (await ledger.list_transactions(user_id=b))[0]
    assert failed.status is TransactionStatus.FAILED
    # Not retried automatically, but the attempt still counts.
    assert failed.is_retryable is False
    assert failed.retry_count == 1
    assert failed.is_terminal is False
    assert failed.failure_reason.startswith("insufficient_funds")

    with pytest.raises(InsufficientFundsError):
        await ledger.retry_transaction(failed.id)
    assert (await ledger.get_transaction(failed.id)).retry_count == 2

    await ledger.deposit(a, 1)
    tx = await ledger.retry_transaction(failed.id)
    assert tx.status is TransactionStatus.COMPLETED
    assert tx.retry_count == 2
    assert await ledger.get_wallet_balance(a) == Money(0)
    assert await ledger.get_wallet_balance(b) == Money(501)


async def test_invalid_transfers_are_rejected_up_front(ledger, make_group):
    _, (a, b) = await make_group("ann", "bob", group=False)
    with pytest.raises(InvalidRecipientError):
        await ledger.transfer(a, a, 100)
    with pytest.raises(InvalidRecipientError):
        await ledger.transfer(a, 9999, 100)
    with pytest.raises(InvalidAmountError):
        await ledger.transfer(a, b, 0)
    with pytest.raises(InvalidAmountError):
        await ledger.transfer(a, b, 1.5)
    assert await ledger.list_transactions(user_id=a) == []


async def test_transient_failures_are_retried(sessionmaker, make_group):
    _, (a,) = await make_group("ann", group=False)
    gateway = FlakyGateway(failures=2)
    flaky = LedgerFacade(sessionmaker=sessionmaker, gateway=gateway, max_retries=3, auto_retry=True)

    tx = await flaky.deposit(a, 1000)

    assert tx.status is TransactionStatus.COMPLETED
    assert tx.retry_count == 2
    assert gateway.calls == 3
    assert await flaky.get_wallet_balance(a) == Money(1000)


async def test_retry_limit_is_enforced(sessionmaker, make_group):
    _, (a,) = await make_group("ann", group=False)
    broken = LedgerFacade(sessionmaker=sessionmaker, gateway=FlakyGateway(failures=100), max_retries=3, auto_retry=True)

    tx = await broken.deposit(a, 1000)

    assert tx.status is TransactionStatus.FAILED
    assert tx.retry_count == 3
    assert tx.is_retryable is True
    assert tx.is_terminal is True
    with pytest.raises(RetryLimitExceededError):
        await broken.retry_transaction(tx.id)
    tx = await broken.get_transaction(tx.id)
    assert tx.status is TransactionStatus.FAILED
    assert tx.retry_count == 3
    assert await broken.get_wallet_balance(a) == Money(0)


async def test_manual_retry_without_auto_retry(sessionmaker, make_group):
    _, (a,) = await make_group("ann", group=False)
    gateway = FlakyGateway(failures=1)
    manual = LedgerFacade(sessionmaker=sessionmaker, gateway=gateway, max_retries=3, auto_retry=False)

    tx = await manual.deposit(a, 700)
    assert tx.status is TransactionStatus.FAILED
    assert tx.retry_count == 1

    tx = await manual.retry_transaction(tx.id)
    assert tx.status is TransactionStatus.COMPLETED
    assert await manual.get_wallet_balance(a) == Money(700)


async def test_retrying_a_completed_transaction_is_a_no_op(ledger, make_group):
    _, (a,) = await make_group("ann", group=False)
    tx = await ledger.deposit(a, 300)

    again = await ledger.retry_transaction(tx.id)

    assert again.status is TransactionStatus.COMPLETED
    assert again.retry_count == 0
    assert await ledger.get_wallet_balance(a) == Money(300)


async def test_cancel_pending(ledger, sessionmaker, make_group):
    _, (a, b) = await make_group("ann", "bob", group=False)
    await ledger.deposit(a, 1000)
    tx_id = await _pending_transfer(sessionmaker, a, b, 400)

    tx = await ledger.cancel_transaction(tx_id)
    assert tx.status is TransactionStatus.CANCELLED

    # A cancelled transaction never applies.
    tx = await ledger.resume_transaction(tx_id)
    assert tx.status is TransactionStatus.CANCELLED
    assert await ledger.get_wallet_balance(a) == Money(1000)
    assert await ledger.get_wallet_balance(b) == Money(0)

    with pytest.raises(InvalidStateError):
        await ledger.cancel_transaction(tx_id)
    with pytest.raises(InvalidStateError):
        await ledger.retry_transaction(tx_id)


async def test_completed_transaction_cannot_be_cancelled(ledger, make_group):
    _, (a,) = await make_group("ann", group=False)
    tx = await ledger.deposit(a, 100)
    with pytest.raises(InvalidStateError):
        await ledger.cancel_transaction(tx.id)
    assert (await ledger.get_transaction(tx.id)).status is TransactionStatus.COMPLETED


async def test_cancel_while_processing_wins_over_apply(ledger, sessionmaker, make_group):
    _, (a, b) = await make_group("ann", "bob", group=False)
    await ledger.deposit(a, 1000)
    gateway = CancellingGateway()
    racing = LedgerFacade(sessionmaker=sessionmaker, gateway=gateway)
    gateway.ledger = racing

    tx = await racing.transfer(a, b, 250)

    assert tx.status is TransactionStatus.CANCELLED
    assert await ledger.get_wallet_balance(a) == Money(1000)
    assert await ledger.get_wallet_balance(b) == Money(0)


async def test_resume_stalled_finishes_interrupted_work(ledger, sessionmaker, make_group):
    _, (a, b) = await make_group("ann", "bob", group=False)
    await ledger.deposit(a, 1000)
    pending_id = await _pending_transfer(sessionmaker, a, b, 600)
    async with sessionmaker() as session:
        await transactions.start_processing(session, pending_id, now=utc_now())
        await session.commit()
    second_id = await _pending_transfer(sessionmaker, a, b, 300)

    resumed = await ledger.resume_stalled()

    assert [t.id for t in resumed] == [pending_id, second_id]
    assert all(t.status is TransactionStatus.COMPLETED for t in resumed)
    assert await ledger.get_wallet_balance(a) == Money(100)
    assert await ledger.get_wallet_balance(b) == Money(900)
    assert await ledger.resume_stalled() == []


async def test_refund(ledger, make_group):
    _, (a, b) = await make_group("ann", "bob", group=False)
    await ledger.deposit(a, 10000)
    tx = await ledger.transfer(a, b, 4000)

    refund = await ledger.refund_transaction(tx.id)

    assert refund.type is TransactionType.REFUND
    assert refund.status is TransactionStatus.COMPLETED
    assert refund.related_transaction_id == tx.id
    assert refund.from_account_id == tx.to_account_id
    assert await ledger.get_wallet_balance(a) == Money(10000)
    assert await ledger.get_wallet_balance(b) == Money(0)
    assert (await ledger.get_transaction(tx.id)).status is TransactionStatus.COMPLETED

    with pytest.raises(InvalidStateError):
        await ledger.refund_transaction(tx.id)
    with pytest.raises(InvalidStateError):
        await ledger.refund_transaction(refund.id)


async def test_failed_refund_blocks_a_second_refund(ledger, sessionmaker, make_group):
    _, (a, b) = await make_group("ann", "bob", group=False)
    await ledger.deposit(a, 10000)
    tx = await ledger.transfer(a, b, 4000)
    manual = LedgerFacade(sessionmaker=sessionmaker, gateway=FlakyGateway(failures=1), max_retries=3, auto_retry=False)

    refund = await manual.refund_transaction(tx.id)
    assert refund.status is TransactionStatus.FAILED
    assert refund.retry_count == 1
    assert refund.is_retryable is True

    with pytest.raises(InvalidStateError) as exc:
        await ledger.refund_transaction(tx.id)
    assert exc.value.details["refund_transaction_id"] == refund.id

    refund = await manual.retry_transaction(refund.id)
    assert refund.status is TransactionStatus.COMPLETED
    with pytest.raises(InvalidStateError):
        await ledger.refund_transaction(tx.id)

    assert await ledger.get_wallet_balance(a) == Money(10000)
    assert await ledger.get_wallet_balance(b) == Money(0)


async def test_refund_with_no_attempts_left_can_be_replaced(ledger, sessionmaker, make_group):
    _, (a, b) = await make_group("ann", "bob", group=False)
    await ledger.deposit(a, 1000)
    tx = await ledger.transfer(a, b, 1000)
    broken = LedgerFacade(sessionmaker=sessionmaker, gateway=FlakyGateway(failures=100), max_retries=1, auto_retry=True)

    dead = await broken.refund_transaction(tx.id)
    assert dead.status is TransactionStatus.FAILED
    assert dead.is_terminal is True

    refund = await ledger.refund_transaction(tx.id)
    assert refund.id != dead.id
    assert refund.status is TransactionStatus.COMPLETED
    assert await ledger.get_wallet_balance(a) == Money(1000)
    assert await ledger.get_wallet_balance(b) == Money(0)


async def test_concurrent_transfers_from_one_wallet_never_overdraw(ledger, make_group):
    _, (a, b, c) = await make_group("ann", "bob", "cid", group=False)
    await ledger.deposit(a, 1000)

    results = await asyncio.gather(
        ledger.transfer(a, b, 600),
        ledger.transfer(a, c, 600),
        return_exceptions=True,
    )

    completed = [r for r in results if not isinstance(r, Exception) and r.status is TransactionStatus.COMPLETED]
    assert len(completed) == 1
    loser = next(r for r in results if r is not completed[0])
    assert isinstance(loser, InsufficientFundsError) or loser.status is TransactionStatus.FAILED

    assert await ledger.get_wallet_balance(a) == Money(400)
    assert sorted([(await ledger.get_wallet_balance(b)).minor, (await ledger.get_wallet_balance(c)).minor]) == [0, 600]


def _bump_version_once(monkeypatch, account_id: int) -> list[int]:
    """Make the first balance write to `account_id` lose its compare-and-swap."""
    real_lock = balance_ledger.lock_accounts
    fired: list[int] = []

    async def lock_then_interfere(session, account_ids):
        accounts = await real_lock(session, account_ids)
        if not fired and account_id in accounts:
            fired.append(account_id)
            await session.execute(
                sa.update(Account)
                .where(Account.id == account_id)
                .values(version=Account.version + 1)
                .execution_options(synchronize_session=False)
            )
        return accounts

    monkeypatch.setattr(balance_ledger, "lock_accounts", lock_then_interfere)
    return fired


async def test_version_conflict_is_recorded_as_transient(monkeypatch, sessionmaker, make_group):
    _, (a, b) = await make_group("ann", "bob", group=False)
    manual = LedgerFacade(sessionmaker=sessionmaker, max_retries=3, auto_retry=False)
    await manual.deposit(a, 1000)
    src_id = (await manual.list_transactions(user_id=a))[0].to_account_id
    fired = _bump_version_once(monkeypatch, src_id)

    tx = await manual.transfer(a, b, 300)

    assert fired == [src_id]
    assert tx.status is TransactionStatus.FAILED
    assert tx.is_retryable is True
    assert tx.retry_count == 1
    assert tx.failure_reason.startswith("concurrent_modification")
    assert await manual.get_wallet_balance(a) == Money(1000)
    assert await manual.get_wallet_balance(b) == Money(0)

    tx = await manual.retry_transaction(tx.id)
    assert tx.status is TransactionStatus.COMPLETED
    assert (tx.from_balance_before, tx.from_balance_after) == (1000, 700)
    assert await manual.get_wallet_balance(a) == Money(700)
    assert await manual.get_wallet_balance(b) == Money(300)


async def test_version_conflict_is_retried_automatically(monkeypatch, ledger, make_group):
    _, (a, b) = await make_group("ann", "bob", group=False)
    dep = await ledger.deposit(a, 1000)
    _bump_version_once(monkeypatch, dep.to_account_id)

    tx = await ledger.transfer(a, b, 250)

    assert tx.status is TransactionStatus.COMPLETED
    assert tx.retry_count == 1
    assert tx.failure_reason is None
    assert await ledger.get_wallet_balance(a) == Money(750)
    assert await ledger.get_wallet_balance(b) == Money(250)


async def test_external_account_is_created_once_per_currency(sessionmaker):
    async def fetch(currency: str) -> int:
        async with sessionmaker() as session:
            acc = await balance_ledger.get_external_account(session, currency=currency)
            acc_id = acc.id
            await session.commit()
        return acc_id

    first, second = await asyncio.gather(fetch("USD"), fetch("USD"))
    assert first == second
    assert await fetch("EUR") != first

    async with sessionmaker() as session:
        session.add(Account(kind=AccountKind.EXTERNAL, currency="USD", balance=0, allow_overdraft=True))
        with pytest.raises(IntegrityError):
            await session.flush()

from __future__ import annotations

from html import escape
from typing import Optional

from expense_ledger.core.errors import LedgerError
from expense_ledger.core.money import Money
from expense_ledger.db.models import Transaction, TransactionStatus, User


def user_label(u: Optional[User], fallback: object = "?") -> str:
    if u is None:
        return str(fallback)
    if u.username:
        return f"@{u.username}"
    if u.first_name:
        return escape(u.first_name)
    return str(u.tg_user_id or u.id)


def format_amount(minor: int, currency: str, *, signed: bool = False) -> str:
    text = Money(minor, currency).format()
    if signed and minor > 0:
        return f"+{text}"
    return text


_STATUS_MARK = {
    TransactionStatus.PENDING: "⏳",
    TransactionStatus.PROCESSING: "⏳",
    TransactionStatus.COMPLETED: "✅",
    TransactionStatus.FAILED: "❌",
    TransactionStatus.CANCELLED: "🚫",
}


def format_transaction(tx: Transaction) -> str:
    line = (
        f"{_STATUS_MARK[tx.status]} <b>#{tx.id}</b> {tx.type.value.lower()} "
        f"{format_amount(tx.amount, tx.currency)} [{tx.status.value.lower()}]"
    )
    if tx.status is TransactionStatus.FAILED and tx.failure_reason:
        line += f"\n{escape(tx.failure_reason)} (retries {tx.retry_count}/{tx.max_retries})"
    return line


def format_error(e: LedgerError) -> str:
    return f"⚠️ {escape(e.message)} <i>({e.kind})</i>"

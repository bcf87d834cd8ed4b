from __future__ import annotations

from typing import Any


class LedgerError(Exception):
    """Base for every error the ledger reports to callers."""

    kind = "ledger_error"
    retryable = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class InvalidSplitError(LedgerError):
    kind = "invalid_split"


class InvalidAmountError(LedgerError):
    kind = "invalid_amount"


class CurrencyMismatchError(LedgerError):
    kind = "currency_mismatch"


class InsufficientFundsError(LedgerError):
    kind = "insufficient_funds"


class AlreadySettledError(LedgerError):
    kind = "already_settled"


class InvalidStateError(LedgerError):
    kind = "invalid_state"


class RetryLimitExceededError(LedgerError):
    kind = "retry_limit_exceeded"


class LedgerConsistencyError(LedgerError):
    kind = "ledger_inconsistency"


class NotFoundError(LedgerError):
    kind = "not_found"


class InvalidRecipientError(LedgerError):
    kind = "invalid_recipient"


class MembershipError(LedgerError):
    kind = "not_a_member"


class TransientLedgerError(LedgerError):
    kind = "transient"
    retryable = True


class ConcurrentModificationError(TransientLedgerError):
    kind = "concurrent_modification"

"""
Split calculator.

Turns a total (integer minor units) plus a split policy into one amount per
participant. Every policy reconciles exactly: the returned amounts always sum
to the total, with no penny lost or gained.

  equal       total // n each, the remainder handed out one unit at a time to
              the first participants in input order
  percentage  floor(total * pct / 100), leftovers by largest remainder
  shares      floor(total * weight / sum(weights)), leftovers by largest remainder
  custom      amounts given directly, only validated against the total

Largest-remainder ties are broken by input order.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from fractions import Fraction
from typing import Hashable, Optional, Sequence, Union

from expense_ledger.core.errors import InvalidAmountError, InvalidSplitError

Number = Union[int, str, Decimal]

_PERCENT_QUANT = Decimal("0.01")


class SplitPolicy(str, enum.Enum):
    EQUAL = "equal"
    PERCENTAGE = "percentage"
    SHARES = "shares"
    CUSTOM = "custom"


@dataclass(frozen=True)
class SplitInput:
    participant_id: Hashable
    # percentage for PERCENTAGE, weight for SHARES, minor units for CUSTOM, unused for EQUAL
    value: Optional[Number] = None


@dataclass(frozen=True)
class ParticipantShare:
    participant_id: Hashable
    value: Optional[Decimal]
    amount: int
    percentage: Decimal


def _to_fraction(value: Optional[Number], *, what: str) -> Fraction:
    if value is None:
        raise InvalidSplitError(f"Missing {what} value.")
    if isinstance(value, float):
        raise InvalidSplitError(f"Float {what} values are not accepted.")
    try:
        dec = Decimal(str(value))
    except InvalidOperation:
        raise InvalidSplitError(f"Invalid {what} value: {value!r}") from None
    if not dec.is_finite():
        raise InvalidSplitError(f"Invalid {what} value: {value!r}")
    return Fraction(dec)


def display_percentage(amount: int, total: int) -> Decimal:
    return (Decimal(amount) * 100 / Decimal(total)).quantize(_PERCENT_QUANT, rounding=ROUND_HALF_UP)


def _largest_remainder(total: int, weights: list[Fraction]) -> list[int]:
    weight_sum = sum(weights, Fraction(0))
    exact = [Fraction(total) * w / weight_sum for w in weights]
    floors = [q.numerator // q.denominator for q in exact]
    leftover = total - sum(floors)
    # Stable sort keeps input order among equal remainders.
    order = sorted(range(len(exact)), key=lambda i: exact[i] - floors[i], reverse=True)
    for i in order[:leftover]:
        floors[i] += 1
    return floors


def _equal(total: int, n: int) -> list[int]:
    share = total // n
    rem = total % n
    return [share + (1 if i < rem else 0) for i in range(n)]


def compute_split(total: int, policy: Union[SplitPolicy, str], participants: Sequence[SplitInput]) -> list[ParticipantShare]:
    if isinstance(total, bool) or not isinstance(total, int):
        raise InvalidAmountError("Total must be given in integer minor units.")
    if total <= 0:
        raise InvalidAmountError("Total must be positive.")
    try:
        policy = SplitPolicy(policy)
    except ValueError:
        raise InvalidSplitError(f"Unknown split policy: {policy!r}") from None
    if not participants:
        raise InvalidSplitError("Participant list is empty.")

    ids = [p.participant_id for p in participants]
    if len(set(ids)) != len(ids):
        raise InvalidSplitError("Participants must be unique.")

    values: list[Optional[Decimal]] = [None] * len(participants)

    if policy is SplitPolicy.EQUAL:
        amounts = _equal(total, len(participants))

    elif policy is SplitPolicy.PERCENTAGE:
        pcts = [_to_fraction(p.value, what="percentage") for p in participants]
        if any(p < 0 for p in pcts):
            raise InvalidSplitError("Percentages cannot be negative.")
        pct_sum = sum(pcts, Fraction(0))
        if pct_sum != 100:
            raise InvalidSplitError("Percentages must add up to exactly 100.", total_percentage=str(pct_sum))
        amounts = _largest_remainder(total, pcts)
        values = [Decimal(str(p.value)) for p in participants]

    elif policy is SplitPolicy.SHARES:
        weights = [_to_fraction(p.value, what="weight") for p in participants]
        bad = [str(ids[i]) for i, w in enumerate(weights) if w <= 0]
        if bad:
            raise InvalidSplitError("Share weights must be positive.", participants=bad)
        amounts = _largest_remainder(total, weights)
        values = [Decimal(str(p.value)) for p in participants]

    else:
        amounts = []
        for p in participants:
            if isinstance(p.value, bool) or not isinstance(p.value, int):
                raise InvalidSplitError("Custom amounts must be integer minor units.", participant=str(p.participant_id))
            if p.value < 0:
                raise InvalidSplitError("Custom amounts cannot be negative.", participant=str(p.participant_id))
            amounts.append(p.value)
        if sum(amounts) != total:
            raise InvalidSplitError(
                "Custom amounts must add up to the total.",
                expected=total,
                got=sum(amounts),
            )
        values = [Decimal(a) for a in amounts]

    return [
        ParticipantShare(
            participant_id=pid,
            value=val,
            amount=amt,
            percentage=display_percentage(amt, total),
        )
        for pid, val, amt in zip(ids, values, amounts)
    ]

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from expense_ledger.core.errors import InvalidAmountError
from expense_ledger.core.money import Money
from expense_ledger.core.splits import SplitPolicy


class CommandParseError(ValueError):
    pass


@dataclass(frozen=True)
class ParticipantArg:
    username: str
    value: Optional[str] = None


@dataclass(frozen=True)
class ExpenseArgs:
    amount: Money
    policy: SplitPolicy
    participants: list[ParticipantArg] = field(default_factory=list)
    description: Optional[str] = None


@dataclass(frozen=True)
class SendArgs:
    username: str
    amount: Money
    description: Optional[str] = None


def parse_amount(text: str, currency: str) -> Money:
    try:
        amount = Money.parse(text, currency)
    except InvalidAmountError:
        raise CommandParseError(f"Not an amount: {text}") from None
    if amount.minor <= 0:
        raise CommandParseError("Amount must be greater than 0.")
    return amount


def parse_id(text: str) -> int:
    text = text.strip().lstrip("#")
    if not text.isdigit():
        raise CommandParseError(f"Not an id: {text}")
    return int(text)


def _username(token: str) -> str:
    if not token.startswith("@") or len(token) < 2:
        raise CommandParseError(f"Expected @username, got {token}")
    return token[1:].lower()


def parse_expense(args: Optional[str], currency: str) -> ExpenseArgs:
    """
    /expense <amount> [equal|percentage|shares|custom] [@user[=value] ...] [| description]

    Without participants the expense is split among all active group members.
    Values are percentages, weights or amounts depending on the policy.
    """
    if not args or not args.strip():
        raise CommandParseError("Usage: /expense <amount> [policy] [@user[=value] ...] [| description]")
    head, _, description = args.partition("|")
    tokens = head.split()
    if not tokens:
        raise CommandParseError("Usage: /expense <amount> [policy] [@user[=value] ...] [| description]")
    amount = parse_amount(tokens[0], currency)
    rest = tokens[1:]

    policy = SplitPolicy.EQUAL
    if rest and not rest[0].startswith("@"):
        try:
            policy = SplitPolicy(rest[0].lower())
        except ValueError:
            raise CommandParseError(f"Unknown split policy: {rest[0]}") from None
        rest = rest[1:]

    participants = []
    for token in rest:
        name, sep, value = token.partition("=")
        if policy is SplitPolicy.EQUAL and sep:
            raise CommandParseError("The equal split takes no per-user values.")
        if policy is not SplitPolicy.EQUAL and not value:
            raise CommandParseError(f"Missing value for {name} ({policy.value} split).")
        if policy is SplitPolicy.CUSTOM:
            value = str(parse_amount(value, currency).minor)
        participants.append(ParticipantArg(username=_username(name), value=value or None))

    if policy is not SplitPolicy.EQUAL and not participants:
        raise CommandParseError(f"A {policy.value} split needs @user=value entries.")

    return ExpenseArgs(
        amount=amount,
        policy=policy,
        participants=participants,
        description=description.strip() or None,
    )


def parse_send(args: Optional[str], currency: str) -> SendArgs:
    """/send @user <amount> [description]"""
    tokens = (args or "").split(maxsplit=2)
    if len(tokens) < 2:
        raise CommandParseError("Usage: /send @user <amount> [description]")
    return SendArgs(
        username=_username(tokens[0]),
        amount=parse_amount(tokens[1], currency),
        description=tokens[2].strip() if len(tokens) > 2 else None,
    )


def parse_id_and_amount(args: Optional[str], currency: str) -> tuple[int, Optional[Money]]:
    """<id> [amount]"""
    tokens = (args or "").split()
    if not tokens or len(tokens) > 2:
        raise CommandParseError("Usage: <id> [amount]")
    amount = parse_amount(tokens[1], currency) if len(tokens) == 2 else None
    return parse_id(tokens[0]), amount

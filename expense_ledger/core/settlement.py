from __future__ import annotations

from dataclasses import dataclass
from typing import Hashable, Iterable

from expense_ledger.core.errors import LedgerConsistencyError


@dataclass(frozen=True)
class BalanceEntry:
    account_id: Hashable
    net_balance: int  # positive is owed money, negative owes


@dataclass(frozen=True)
class Transfer:
    from_id: Hashable  # debtor
    to_id: Hashable  # creditor
    amount: int


def optimize(entries: Iterable[BalanceEntry]) -> list[Transfer]:
    """
    Greedy debt netting over integer net balances.

    Creditors and debtors are each sorted by magnitude (largest first, ties in
    input order) and swept with two pointers, moving min(credit, debt) per
    step. The result zeroes every balance in at most n - 1 transfers, but it
    is an approximation: it does not always find the minimum possible number
    of transfers.

    Raises LedgerConsistencyError when the balances do not sum to zero.
    """
    entries = list(entries)
    total = sum(e.net_balance for e in entries)
    if total != 0:
        raise LedgerConsistencyError(
            "Group balances do not sum to zero.",
            drift=total,
        )

    creditors: list[list] = []  # [account_id, to_receive]
    debtors: list[list] = []  # [account_id, to_pay]
    for e in entries:
        if e.net_balance > 0:
            creditors.append([e.account_id, e.net_balance])
        elif e.net_balance < 0:
            debtors.append([e.account_id, -e.net_balance])

    creditors.sort(key=lambda x: x[1], reverse=True)
    debtors.sort(key=lambda x: x[1], reverse=True)

    out: list[Transfer] = []
    i = 0
    j = 0
    while i < len(debtors) and j < len(creditors):
        d_id, owe = debtors[i]
        c_id, recv = creditors[j]
        amt = min(owe, recv)
        if amt:
            out.append(Transfer(from_id=d_id, to_id=c_id, amount=amt))
        debtors[i][1] = owe - amt
        creditors[j][1] = recv - amt
        if debtors[i][1] == 0:
            i += 1
        if creditors[j][1] == 0:
            j += 1
    return out


def apply_transfers(entries: Iterable[BalanceEntry], transfers: Iterable[Transfer]) -> dict[Hashable, int]:
    """Net balances after the given transfers are paid."""
    balances = {e.account_id: e.net_balance for e in entries}
    for t in transfers:
        balances[t.from_id] = balances.get(t.from_id, 0) + t.amount
        balances[t.to_id] = balances.get(t.to_id, 0) - t.amount
    return balances

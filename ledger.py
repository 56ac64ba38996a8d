"""Balance mutation rules for single transactions.

Every write to an account balance goes through :class:`LedgerEngine`.
The engine never touches storage: callers hand it the affected accounts
(anything with a mutable ``balance_cents``) and persist the result.

Adjustments are an absolute set of the account balance. When one is applied
the engine records the signed change it produced on the entry
(``balance_delta_cents``); reversing subtracts that recorded change, so an
apply/reverse pair always restores the prior balance and leaves the effect of
unrelated transactions alone.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Protocol, assert_never

from errors import InvalidReference, InvalidTransfer, LedgerValidationError
from models import MAX_CENTS, TransactionType


class BalanceHolder(Protocol):
    balance_cents: int


class LedgerEntry(Protocol):
    type: TransactionType
    amount_cents: int
    account_id: int
    to_account_id: Optional[int]
    balance_delta_cents: Optional[int]


@dataclass(frozen=True)
class Posting:
    """Immutable snapshot of the balance-relevant fields of a transaction."""

    type: TransactionType
    amount_cents: int
    account_id: int
    to_account_id: Optional[int] = None
    balance_delta_cents: Optional[int] = None

    @classmethod
    def of(cls, entry: LedgerEntry) -> "Posting":
        return cls(
            type=entry.type,
            amount_cents=entry.amount_cents,
            account_id=entry.account_id,
            to_account_id=entry.to_account_id,
            balance_delta_cents=entry.balance_delta_cents,
        )


def validate_entry(entry: LedgerEntry) -> None:
    if entry.amount_cents < 0:
        raise LedgerValidationError("Amount must not be negative")
    if entry.type is TransactionType.transfer:
        if entry.to_account_id is None:
            raise InvalidTransfer("Transfers require a destination account")
        if entry.to_account_id == entry.account_id:
            raise InvalidTransfer("Source and destination accounts must differ")


def balance_effect(entry: LedgerEntry) -> dict[int, int]:
    """Signed balance change per account produced by applying ``entry``.

    An adjustment only has an effect once applied: it reports the change
    recorded on it at that time.
    """
    amount = entry.amount_cents
    kind = entry.type
    if kind is TransactionType.income:
        return {entry.account_id: amount}
    elif kind is TransactionType.expense:
        return {entry.account_id: -amount}
    elif kind is TransactionType.transfer:
        if entry.to_account_id is None:
            raise InvalidTransfer("Transfers require a destination account")
        return {entry.account_id: -amount, entry.to_account_id: amount}
    elif kind is TransactionType.adjustment:
        if entry.balance_delta_cents is None:
            raise LedgerValidationError("Adjustment has no recorded balance change")
        return {entry.account_id: entry.balance_delta_cents}
    else:
        assert_never(kind)


class LedgerEngine:
    def __init__(self, accounts: Mapping[int, BalanceHolder]) -> None:
        self.accounts = accounts

    def apply(self, entry: LedgerEntry) -> dict[int, int]:
        scratch: dict[int, int] = {}
        recorded = self._apply_into(scratch, entry)
        return self._write(scratch, entry, recorded)

    def reverse(self, entry: LedgerEntry) -> dict[int, int]:
        scratch: dict[int, int] = {}
        self._reverse_into(scratch, entry)
        return self._write(scratch, None, None)

    def replace(self, old: LedgerEntry, new: LedgerEntry) -> dict[int, int]:
        """Revert ``old`` and apply ``new`` as one write.

        Both halves are folded into one scratch mapping first, so no account
        ever holds the reverted-but-not-reapplied balance.
        """
        scratch: dict[int, int] = {}
        self._reverse_into(scratch, old)
        recorded = self._apply_into(scratch, new)
        return self._write(scratch, new, recorded)

    def _balance(self, scratch: dict[int, int], account_id: Optional[int]) -> int:
        if account_id in scratch:
            return scratch[account_id]
        account = self.accounts.get(account_id) if account_id is not None else None
        if account is None:
            raise InvalidReference("Account", account_id)
        return account.balance_cents

    def _apply_into(self, scratch: dict[int, int], entry: LedgerEntry) -> Optional[int]:
        validate_entry(entry)
        if entry.type is TransactionType.adjustment:
            current = self._balance(scratch, entry.account_id)
            scratch[entry.account_id] = entry.amount_cents
            return entry.amount_cents - current
        # read every balance first so an unknown account leaves scratch untouched
        effect = balance_effect(entry)
        balances = {account_id: self._balance(scratch, account_id) for account_id in effect}
        for account_id, delta in effect.items():
            scratch[account_id] = balances[account_id] + delta
        return None

    def _reverse_into(self, scratch: dict[int, int], entry: LedgerEntry) -> None:
        effect = balance_effect(entry)
        balances = {account_id: self._balance(scratch, account_id) for account_id in effect}
        for account_id, delta in effect.items():
            scratch[account_id] = balances[account_id] - delta

    def _write(
        self,
        scratch: dict[int, int],
        entry: Optional[LedgerEntry],
        recorded_delta: Optional[int],
    ) -> dict[int, int]:
        for value in (*scratch.values(), recorded_delta or 0):
            if abs(value) > MAX_CENTS:
                raise LedgerValidationError("Resulting balance is out of range")
        for account_id, balance in scratch.items():
            self.accounts[account_id].balance_cents = balance
        if entry is not None:
            entry.balance_delta_cents = recorded_delta
        return dict(scratch)

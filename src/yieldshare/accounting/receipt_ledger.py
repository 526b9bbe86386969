"""Receipt ledger — non-transferable receipts kept 1:1 with principal.

Receipts are minted on stake and burned on unstake by the distribution
engine, which is the only account allowed to do either. Their total
supply is the denominator of every community-value computation, so it
must track total_user_principal exactly. Transfer and approve always fail.
"""

from __future__ import annotations

from typing import Dict

from yieldshare.errors import (
    InsufficientPrincipal,
    NonTransferableReceipt,
    Unauthorized,
    ZeroAmount,
)


class ReceiptLedger:
    """Mint/burn bookkeeping for vault receipts."""

    def __init__(self, minter: str) -> None:
        self._minter = minter
        self._balances: Dict[str, int] = {}
        self._total_supply = 0

    def mint(self, caller: str, to: str, amount: int) -> None:
        self._require_minter(caller)
        if amount <= 0:
            raise ZeroAmount("Mint amount must be positive")
        self._balances[to] = self._balances.get(to, 0) + amount
        self._total_supply += amount

    def burn(self, caller: str, account: str, amount: int) -> None:
        self._require_minter(caller)
        if amount <= 0:
            raise ZeroAmount("Burn amount must be positive")
        balance = self._balances.get(account, 0)
        if amount > balance:
            raise InsufficientPrincipal(
                f"Burn of {amount} exceeds receipt balance {balance} of {account}"
            )
        self._balances[account] = balance - amount
        self._total_supply -= amount

    def total_supply(self) -> int:
        return self._total_supply

    def balance_of(self, account: str) -> int:
        return self._balances.get(account, 0)

    def transfer(self, sender: str, to: str, amount: int) -> None:
        raise NonTransferableReceipt("Receipts are non-transferable")

    def approve(self, owner: str, spender: str, amount: int) -> None:
        raise NonTransferableReceipt("Receipts are non-transferable")

    def _require_minter(self, caller: str) -> None:
        if caller != self._minter:
            raise Unauthorized(f"Caller is not the receipt minter: {caller}")

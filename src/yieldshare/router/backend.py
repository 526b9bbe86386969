"""Vault backend and payout rail contracts.

The migration coordinator never talks to a yield source directly; it
talks to whatever satisfies the VaultBackend Protocol. Swapping one
yield source for another is a migration, not a code change: implement
this Protocol and pass the instance to finalize_migration().

Backends report value net of any queued withdrawals: once
request_withdrawal() returns, the requested amount no longer counts
toward get_total_deposited_value(). Finalization is long-running and
polled through is_withdrawal_finalized(); nothing in YieldShare blocks
waiting for it.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class VaultBackend(Protocol):
    """Abstract contract for one generation of the vault integration."""

    @property
    def backend_id(self) -> str:
        """Unique identifier (e.g., 'lido_v1', 'aave_v3_usdc')."""
        ...

    def deposit(self, amount: int) -> int:
        """Deposit value; returns the amount credited."""
        ...

    def request_withdrawal(self, amount: int) -> int:
        """Queue a withdrawal; returns the backend-native request id."""
        ...

    def is_withdrawal_finalized(self, request_id: int) -> bool:
        """Non-blocking status check for a queued withdrawal."""
        ...

    def claim_withdrawal(self, request_id: int, recipient: str) -> int:
        """Release a finalized withdrawal to recipient; returns the amount."""
        ...

    def get_total_deposited_value(self) -> int:
        """Current value held by this backend, excluding queued withdrawals."""
        ...

    def transfer_value(self, recipient: str, amount: int) -> None:
        """Transfer value held by this backend directly to recipient."""
        ...


@runtime_checkable
class PayoutRail(Protocol):
    """Moves value out of the coordinator's own held balance."""

    def send(self, recipient: str, amount: int) -> None:
        """Send amount to recipient. Raises TransferFailed on failure."""
        ...

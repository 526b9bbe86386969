"""In-memory vault backend and payout rail.

A rebasing yield source with a withdrawal queue: balances grow on
rebase(), shrink on report_loss(), and queued withdrawals stay unclaimable
until finalize_withdrawal() is called. Used by the test-suite and by the
CLI simulator. Request ids start at 1 in every instance, so two
generations routinely issue the same numeric id.

Failure injection:
    backend.fail_transfers = True     every outbound transfer raises
    backend.on_transfer = callback    called with (recipient, amount)
                                      before value moves
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from yieldshare.errors import (
    AlreadyClaimed,
    InsufficientLiquidity,
    TransferFailed,
    UnknownRequest,
    WithdrawalNotFinalized,
    ZeroAmount,
)


TransferHook = Callable[[str, int], None]


@dataclass
class QueuedWithdrawal:
    """A withdrawal sitting in the backend's queue."""
    amount: int
    finalized: bool = False
    claimed: bool = False


class InMemoryVaultBackend:
    """Rebasing yield source satisfying the VaultBackend Protocol.

    Usage:
        backend = InMemoryVaultBackend("lido_mock")
        backend.deposit(10 * UNIT)
        backend.rebase(UNIT)                 # +1 unit of yield
        request_id = backend.request_withdrawal(2 * UNIT)
        backend.finalize_withdrawal(request_id)
        backend.claim_withdrawal(request_id, "alice")
    """

    def __init__(self, backend_id: str) -> None:
        self._backend_id = backend_id
        self._balance = 0
        self._requests: Dict[int, QueuedWithdrawal] = {}
        self._next_request_id = 1
        self.payouts: Dict[str, int] = {}
        self.fail_transfers = False
        self.on_transfer: Optional[TransferHook] = None

    @property
    def backend_id(self) -> str:
        return self._backend_id

    # ------------------------------------------------------------------
    # VaultBackend
    # ------------------------------------------------------------------

    def deposit(self, amount: int) -> int:
        if amount <= 0:
            raise ZeroAmount("Must deposit a positive amount")
        self._balance += amount
        return amount

    def request_withdrawal(self, amount: int) -> int:
        if amount <= 0:
            raise ZeroAmount("Amount must be greater than zero")
        if amount > self._balance:
            raise InsufficientLiquidity(
                f"Insufficient backend balance: requested {amount}, held {self._balance}"
            )
        request_id = self._next_request_id
        self._next_request_id += 1
        self._balance -= amount
        self._requests[request_id] = QueuedWithdrawal(amount=amount)
        return request_id

    def is_withdrawal_finalized(self, request_id: int) -> bool:
        return self._get(request_id).finalized

    def claim_withdrawal(self, request_id: int, recipient: str) -> int:
        queued = self._get(request_id)
        if not queued.finalized:
            raise WithdrawalNotFinalized(f"Withdrawal not finalized: {request_id}")
        if queued.claimed:
            raise AlreadyClaimed(f"Withdrawal already claimed: {request_id}")
        self._pay(recipient, queued.amount)
        queued.claimed = True
        return queued.amount

    def get_total_deposited_value(self) -> int:
        return self._balance

    def transfer_value(self, recipient: str, amount: int) -> None:
        if amount <= 0:
            raise ZeroAmount("Transfer amount must be positive")
        if amount > self._balance:
            raise InsufficientLiquidity(
                f"Insufficient backend balance: transfer {amount}, held {self._balance}"
            )
        self._pay(recipient, amount)
        self._balance -= amount

    # ------------------------------------------------------------------
    # Yield source simulation
    # ------------------------------------------------------------------

    def rebase(self, amount: int) -> None:
        """Simulate yield: the held balance grows by amount."""
        if amount <= 0:
            raise ZeroAmount("Rebase amount must be positive")
        self._balance += amount

    def report_loss(self, amount: int) -> None:
        """Simulate slashing: the held balance shrinks by amount."""
        if amount <= 0:
            raise ZeroAmount("Loss amount must be positive")
        self._balance -= min(amount, self._balance)

    def finalize_withdrawal(self, request_id: int) -> None:
        self._get(request_id).finalized = True

    def finalize_all(self) -> List[int]:
        """Finalize every queued withdrawal; returns the ids that changed."""
        changed = [rid for rid, q in self._requests.items() if not q.finalized]
        for rid in changed:
            self._requests[rid].finalized = True
        return changed

    def queued(self, request_id: int) -> QueuedWithdrawal:
        return self._get(request_id)

    def _pay(self, recipient: str, amount: int) -> None:
        if self.fail_transfers:
            raise TransferFailed(f"{self._backend_id}: transfer to {recipient} failed")
        if self.on_transfer is not None:
            self.on_transfer(recipient, amount)
        self.payouts[recipient] = self.payouts.get(recipient, 0) + amount

    def _get(self, request_id: int) -> QueuedWithdrawal:
        queued = self._requests.get(request_id)
        if queued is None:
            raise UnknownRequest(f"{self._backend_id}: unknown request id {request_id}")
        return queued


class InMemoryPayoutRail:
    """Records payouts from the coordinator's held balance.

    Supports the same failure injection as InMemoryVaultBackend.
    """

    def __init__(self) -> None:
        self.payouts: Dict[str, int] = {}
        self.fail_transfers = False
        self.on_transfer: Optional[TransferHook] = None

    def send(self, recipient: str, amount: int) -> None:
        if self.fail_transfers:
            raise TransferFailed(f"payout rail: transfer to {recipient} failed")
        if self.on_transfer is not None:
            self.on_transfer(recipient, amount)
        self.payouts[recipient] = self.payouts.get(recipient, 0) + amount

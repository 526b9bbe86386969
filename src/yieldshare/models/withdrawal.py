"""Withdrawal request and migration models.

A withdrawal request id lives in one of two namespaces:

    NativeRequest(generation, request_id)
        issued by a vault backend; always resolved against the backend
        generation that issued it, even after that backend is retired.
    PendingRequest(request_id)
        issued by the migration coordinator while a migration is in
        progress; resolved against the coordinator's own table and held
        balance. Numbered from PENDING_REQUEST_ID_OFFSET so the integer
        forms of the two namespaces never overlap.

Migration state machine:
    STABLE → MIGRATING     (initiate_migration)
    MIGRATING → STABLE     (finalize_migration)
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Dict, Optional, Union

from yieldshare.errors import UnknownRequest


class MigrationState(str, enum.Enum):
    """Lifecycle state of the router migration coordinator."""
    STABLE = "stable"
    MIGRATING = "migrating"


MIGRATION_TRANSITIONS: Dict[MigrationState, frozenset] = {
    MigrationState.STABLE: frozenset({MigrationState.MIGRATING}),
    MigrationState.MIGRATING: frozenset({MigrationState.STABLE}),
}


@dataclass(frozen=True)
class NativeRequest:
    """A request id issued by a vault backend generation."""
    generation: int
    request_id: int

    @property
    def label(self) -> str:
        return f"native:{self.generation}:{self.request_id}"


@dataclass(frozen=True)
class PendingRequest:
    """A request id issued internally while a migration was in progress."""
    request_id: int

    @property
    def label(self) -> str:
        return f"pending:{self.request_id}"


RequestRef = Union[NativeRequest, PendingRequest]


@dataclass
class WithdrawalRequest:
    """A depositor's unstake request as tracked by the distribution engine.

    Never deleted. ``claimed`` flips once and then acts as a tombstone.
    """
    ref: RequestRef
    owner: str
    community_id: str
    amount: int
    claimed: bool = False


@dataclass
class PendingWithdrawal:
    """An entry in the coordinator's internal withdrawal table.

    ``generation`` is the backend generation whose migration withdrawal
    must land before this request can be paid; ``funded`` flips once that
    migration is finalized.
    """
    ref: PendingRequest
    amount: int
    generation: int
    funded: bool = False
    claimed: bool = False


@dataclass
class DeferredPayout:
    """A yield or donation payout owed while a migration held no liquidity.

    Counted as a liability against pool value until finalize pays it out
    of the released funds.
    """
    recipient: str
    amount: int
    generation: int


@dataclass
class MigrationRecord:
    """Bookkeeping for one backend migration."""
    generation: int
    requested_amount: int
    request_id: Optional[int] = None
    released_amount: Optional[int] = None
    state: MigrationState = MigrationState.MIGRATING

    def transition_to(self, new_state: MigrationState) -> None:
        """Transition to a new state, validating the transition is legal."""
        allowed = MIGRATION_TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise ValueError(
                f"Invalid migration transition: {self.state.value} → {new_state.value}"
            )
        self.state = new_state


def parse_request_ref(label: str) -> RequestRef:
    """Inverse of ``.label``: ``native:<gen>:<id>`` or ``pending:<id>``."""
    parts = label.strip().split(":")
    try:
        if parts[0] == "native" and len(parts) == 3:
            return NativeRequest(int(parts[1]), int(parts[2]))
        if parts[0] == "pending" and len(parts) == 2:
            return PendingRequest(int(parts[1]))
    except ValueError:
        pass
    raise UnknownRequest(f"Malformed withdrawal request label: {label!r}")

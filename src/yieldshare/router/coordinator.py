"""Router migration coordinator — swaps vault backends without breaking
withdrawal requests already in flight.

The coordinator is the vault indirection used by the distribution engine.
In STABLE state it forwards deposits, withdrawal requests and transfers to
the single active backend. Migration is a two-step state machine:

    STABLE → MIGRATING (initiate_migration)
        The full reported value of the outgoing backend is queued for
        withdrawal and the backend is retired into the generation
        registry. Deposits are buffered in the coordinator's held balance
        and new withdrawal requests get ids from the internal namespace.

    MIGRATING → STABLE (finalize_migration)
        Once the outgoing withdrawal is finalized it is claimed into the
        held balance and deferred payouts are paid from it. The new backend
        becomes active and everything the coordinator holds, buffered
        deposits included, is deposited into it except the amount reserved
        for unclaimed internal requests.

Payouts requested while migrating are paid from the held balance when it
can cover them. Otherwise they are deferred: recorded as a liability
against pool value and paid when the migration is finalized.

Request routing is centralised in _route(): NativeRequest ids go to the
generation that issued them, PendingRequest ids to the internal table.

Admin fee: while STABLE, growth of the active backend's value over the
last checkpoint accrues ``growth × admin_fee_percent / DENOM`` before the
engine ever sees it as yield. Losses move the checkpoint down and accrue
nothing.

Every state-mutating operation holds the coordinator's execution lock.
Rejected calls leave no trace. A finalize whose deferred payout or
deposit into the new backend fails keeps the claimed funds in the held
balance and stays MIGRATING, so it can be retried.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Union

from yieldshare.errors import (
    AlreadyClaimed,
    InsufficientLiquidity,
    InvalidAdminFee,
    MigrationInProgress,
    NoActiveBackend,
    NoMigrationInProgress,
    NothingToClaim,
    Unauthorized,
    UnknownRequest,
    WithdrawalNotFinalized,
    ZeroAmount,
)
from yieldshare.execution import ExecutionLock
from yieldshare.models.community import DONATION_DENOMINATOR
from yieldshare.models.withdrawal import (
    DeferredPayout,
    MigrationRecord,
    MigrationState,
    NativeRequest,
    PendingRequest,
    PendingWithdrawal,
    RequestRef,
)
from yieldshare.persistence.event_log import EventKind, EventRecorder
from yieldshare.policy.resolver import RoleBindings, VaultParams
from yieldshare.router.backend import PayoutRail, VaultBackend
from yieldshare.router.registry import GenerationRegistry


logger = logging.getLogger("yieldshare.router")


class RouterMigrationCoordinator:
    """Vault indirection with backend-generation migration.

    Usage:
        coordinator = RouterMigrationCoordinator(params, roles, backend, rail)
        coordinator.deposit(roles.router_manager, amount)
        ref = coordinator.request_withdrawal(roles.router_manager, amount)

        coordinator.initiate_migration(roles.admin)
        # ... poll until the outgoing withdrawal is finalized ...
        coordinator.finalize_migration(roles.admin, new_backend)

        if coordinator.is_withdrawal_finalized(ref):
            coordinator.claim_withdrawal(roles.router_manager, ref, "alice")
    """

    def __init__(
        self,
        params: VaultParams,
        roles: RoleBindings,
        backend: Optional[VaultBackend],
        payout_rail: PayoutRail,
        recorder: Optional[EventRecorder] = None,
        address: str = "router",
    ) -> None:
        self._params = params
        self._roles = roles
        self._payout_rail = payout_rail
        self._recorder = recorder if recorder is not None else EventRecorder()
        self.address = address
        self._lock = ExecutionLock("coordinator")

        self._backend: Optional[VaultBackend] = None
        self._registry = GenerationRegistry()
        self._state = MigrationState.STABLE
        self._migration: Optional[MigrationRecord] = None
        self._migrations: List[MigrationRecord] = []

        self._held_balance = 0
        self._pending_deposits = 0
        self._in_flight = 0
        self._pending: Dict[int, PendingWithdrawal] = {}
        self._deferred: List[DeferredPayout] = []
        self._next_pending_id = params.pending_request_id_offset
        self._native: Dict[NativeRequest, bool] = {}

        self._admin_fee_percent = params.admin_fee_percent
        self._accrued_fees = 0
        self._fee_checkpoint = 0

        if backend is not None:
            self._require_backend_protocol(backend)
            self._backend = backend
            self._fee_checkpoint = backend.get_total_deposited_value()

    # ------------------------------------------------------------------
    # Read-only surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> MigrationState:
        return self._state

    @property
    def active_backend(self) -> Optional[VaultBackend]:
        return self._backend

    @property
    def registry(self) -> GenerationRegistry:
        return self._registry

    @property
    def held_balance(self) -> int:
        return self._held_balance

    @property
    def pending_deposits(self) -> int:
        return self._pending_deposits

    @property
    def deferred_payouts(self) -> List[DeferredPayout]:
        return list(self._deferred)

    @property
    def admin_fee_percent(self) -> int:
        return self._admin_fee_percent

    @property
    def migrations(self) -> List[MigrationRecord]:
        return list(self._migrations)

    def get_total_deposited_value(self) -> int:
        """Aggregate pool value visible to the accounting layer.

        active backend + retired generations + in-flight migration
        withdrawal + held balance, less what is already owed to unclaimed
        internal withdrawal requests, deferred payouts and the admin.
        """
        total = self._registry.retired_value() + self._in_flight + self._held_balance
        if self._state == MigrationState.STABLE and self._backend is not None:
            total += self._backend.get_total_deposited_value()
        total -= self._liabilities()
        total -= self.accrued_admin_fees()
        return max(0, total)

    def accrued_admin_fees(self) -> int:
        """Fees accrued so far, including growth not yet checkpointed."""
        return self._accrued_fees + self._unaccrued_fee()

    def is_withdrawal_finalized(self, ref: RequestRef) -> bool:
        """Non-blocking status check. Callers re-poll until True."""
        route = self._route(ref)
        if isinstance(route, PendingWithdrawal):
            return route.funded
        return route.is_withdrawal_finalized(ref.request_id)

    def pending_withdrawal(self, ref: PendingRequest) -> PendingWithdrawal:
        route = self._route(ref)
        if not isinstance(route, PendingWithdrawal):
            raise UnknownRequest(f"Not an internal withdrawal request: {ref.label}")
        return route

    # ------------------------------------------------------------------
    # Vault indirection (router manager)
    # ------------------------------------------------------------------

    def deposit(self, caller: str, amount: int) -> int:
        """Deposit into the active backend, or buffer while migrating."""
        with self._lock.guard("deposit"):
            self._require_manager(caller)
            if amount <= 0:
                raise ZeroAmount("Must deposit a positive amount")

            if self._state == MigrationState.MIGRATING:
                self._held_balance += amount
                self._pending_deposits += amount
                return amount

            backend = self._require_backend()
            self._accrue_admin_fees()
            credited = backend.deposit(amount)
            self._sync_fee_checkpoint()
            return credited

    def request_withdrawal(self, caller: str, amount: int) -> RequestRef:
        """Open a withdrawal request; returns its namespaced id."""
        with self._lock.guard("request_withdrawal"):
            self._require_manager(caller)
            if amount <= 0:
                raise ZeroAmount("Amount must be greater than zero")

            if self._state == MigrationState.MIGRATING:
                available = self.get_total_deposited_value()
                if amount > available:
                    raise InsufficientLiquidity(
                        f"Insufficient pool value: requested {amount}, available {available}"
                    )
                migration = self._migration
                if migration is None:
                    raise NoMigrationInProgress("No migration in progress")
                ref = PendingRequest(self._next_pending_id)
                self._next_pending_id += 1
                self._pending[ref.request_id] = PendingWithdrawal(
                    ref=ref,
                    amount=amount,
                    generation=migration.generation,
                )
                return ref

            backend = self._require_backend()
            self._accrue_admin_fees()
            available = backend.get_total_deposited_value() - self._accrued_fees
            if amount > available:
                raise InsufficientLiquidity(
                    f"Insufficient backend balance: requested {amount}, available {available}"
                )
            request_id = backend.request_withdrawal(amount)
            generation = self._registry.next_generation
            native = NativeRequest(generation, request_id)
            if native in self._native:
                raise UnknownRequest(f"Backend reissued request id {native.label}")
            self._native[native] = False
            self._registry.open_request(generation)
            self._sync_fee_checkpoint()
            return native

    def claim_withdrawal(self, caller: str, ref: RequestRef, recipient: str) -> int:
        """Claim a finalized request to recipient, exactly once."""
        with self._lock.guard("claim_withdrawal"):
            self._require_manager(caller)
            route = self._route(ref)

            if isinstance(route, PendingWithdrawal):
                return self._claim_pending(route, recipient)

            if not isinstance(ref, NativeRequest):
                raise UnknownRequest(f"Unrecognised request id: {ref!r}")
            if self._native[ref]:
                raise AlreadyClaimed(f"Withdrawal already claimed: {ref.label}")
            if not route.is_withdrawal_finalized(ref.request_id):
                raise WithdrawalNotFinalized(f"Withdrawal not finalized: {ref.label}")
            self._native[ref] = True
            try:
                released = route.claim_withdrawal(ref.request_id, recipient)
            except Exception:
                self._native[ref] = False
                raise
            self._registry.close_request(ref.generation)
            return released

    def transfer_value(self, caller: str, recipient: str, amount: int) -> None:
        """Pay recipient out of pool value (yield and donation payouts).

        While migrating, a payout the held balance cannot cover is deferred
        until finalize instead of failing.
        """
        with self._lock.guard("transfer_value"):
            self._require_manager(caller)
            if amount <= 0:
                raise ZeroAmount("Transfer amount must be positive")

            if self._state == MigrationState.MIGRATING:
                migration = self._migration
                if migration is None:
                    raise NoMigrationInProgress("No migration in progress")
                free = (
                    self._held_balance
                    - self._reserved_for_funded_pending()
                    - self._deferred_total()
                )
                if amount > free:
                    available = self.get_total_deposited_value()
                    if amount > available:
                        raise InsufficientLiquidity(
                            f"Insufficient pool value during migration: "
                            f"transfer {amount}, available {available}"
                        )
                    self._deferred.append(DeferredPayout(
                        recipient=recipient,
                        amount=amount,
                        generation=migration.generation,
                    ))
                    logger.info(
                        "Payout of %d to %s deferred until generation %d is released",
                        amount, recipient, migration.generation,
                    )
                    return
                prev_held, prev_pending = self._held_balance, self._pending_deposits
                self._held_balance -= amount
                self._pending_deposits -= min(self._pending_deposits, amount)
                try:
                    self._payout_rail.send(recipient, amount)
                except Exception:
                    self._held_balance, self._pending_deposits = prev_held, prev_pending
                    raise
                return

            backend = self._require_backend()
            self._accrue_admin_fees()
            available = backend.get_total_deposited_value() - self._accrued_fees
            if amount > available:
                raise InsufficientLiquidity(
                    f"Insufficient backend balance: transfer {amount}, available {available}"
                )
            backend.transfer_value(recipient, amount)
            self._sync_fee_checkpoint()

    # ------------------------------------------------------------------
    # Migration (admin)
    # ------------------------------------------------------------------

    def initiate_migration(self, caller: str) -> MigrationRecord:
        """STABLE → MIGRATING. Queues the outgoing backend's full value."""
        with self._lock.guard("initiate_migration"):
            self._require_admin(caller)
            if self._state == MigrationState.MIGRATING:
                raise MigrationInProgress("Migration already in progress")
            backend = self._require_backend()

            self._accrue_admin_fees()
            value = backend.get_total_deposited_value()
            request_id = backend.request_withdrawal(value) if value > 0 else None

            generation = self._registry.retire(backend)
            record = MigrationRecord(
                generation=generation,
                requested_amount=value,
                request_id=request_id,
            )
            self._migration = record
            self._migrations.append(record)
            self._in_flight = value
            self._state = MigrationState.MIGRATING

        logger.info(
            "Migration initiated: generation %d (%s), %d queued as request %s",
            generation, backend.backend_id, value, request_id,
        )
        self._recorder.record(EventKind.MIGRATION_INITIATED, caller, {
            "generation": generation,
            "backend_id": backend.backend_id,
            "requested_amount": value,
            "request_id": request_id,
        })
        return record

    def finalize_migration(self, caller: str, new_backend: VaultBackend) -> MigrationRecord:
        """MIGRATING → STABLE. Requires the outgoing withdrawal to be finalized."""
        with self._lock.guard("finalize_migration"):
            self._require_admin(caller)
            if self._state != MigrationState.MIGRATING or self._migration is None:
                raise NoMigrationInProgress("No migration in progress")
            self._require_backend_protocol(new_backend)

            record = self._migration
            outgoing = self._registry.handle(record.generation)
            if record.request_id is not None:
                if not outgoing.is_withdrawal_finalized(record.request_id):
                    raise WithdrawalNotFinalized(
                        f"Outgoing withdrawal {record.request_id} not finalized"
                    )
                released = outgoing.claim_withdrawal(record.request_id, self.address)
                # Claimed funds now sit in the held balance; a retry after a
                # failed deposit below must not claim again.
                record.request_id = None
                record.released_amount = released
                self._held_balance += released
                self._in_flight = 0
            elif record.released_amount is None:
                record.released_amount = 0

            try:
                self._pay_deferred()
                self._backend = new_backend
                self._state = MigrationState.STABLE
                # Buffered deposits and released funds move together; only
                # unclaimed internal requests and unpaid deferrals stay held.
                forward = max(0, self._held_balance - self._liabilities())
                if forward > 0:
                    new_backend.deposit(forward)
                    self._held_balance -= forward
                self._pending_deposits = 0
            except Exception:
                # Balances only move after a payout or deposit succeeds, so
                # they are already consistent; retry with the same backend.
                self._backend = outgoing
                self._state = MigrationState.MIGRATING
                logger.error(
                    "Payout or deposit into %s failed during finalize; "
                    "migration of generation %d stays open",
                    new_backend.backend_id, record.generation,
                )
                raise

            for pending in self._pending.values():
                if pending.generation == record.generation:
                    pending.funded = True
            record.transition_to(MigrationState.STABLE)
            self._migration = None
            self._fee_checkpoint = new_backend.get_total_deposited_value()

            shortfall = self._liabilities() - self._held_balance
            if shortfall > 0:
                logger.warning(
                    "Held balance %d short of unclaimed withdrawals and deferred payouts by %d",
                    self._held_balance, shortfall,
                )

        logger.info(
            "Migration finalized: generation %d released %d, new backend %s",
            record.generation, record.released_amount, new_backend.backend_id,
        )
        self._recorder.record(EventKind.MIGRATION_FINALIZED, caller, {
            "generation": record.generation,
            "released_amount": record.released_amount,
            "new_backend_id": new_backend.backend_id,
            "new_generation": self._registry.next_generation,
            "held_balance": self._held_balance,
        })
        return record

    # ------------------------------------------------------------------
    # Admin fee (admin)
    # ------------------------------------------------------------------

    def set_admin_fee_percent(self, caller: str, percent: int) -> None:
        with self._lock.guard("set_admin_fee_percent"):
            self._require_admin(caller)
            if not 0 <= percent <= self._params.max_admin_fee_percent:
                raise InvalidAdminFee(
                    f"Admin fee exceeds maximum limit: {percent} "
                    f"(max {self._params.max_admin_fee_percent})"
                )
            # Growth observed so far is charged at the old rate.
            self._accrue_admin_fees()
            previous = self._admin_fee_percent
            self._admin_fee_percent = percent

        self._recorder.record(EventKind.ADMIN_FEE_UPDATED, caller, {
            "previous_percent": previous,
            "percent": percent,
        })

    def withdraw_admin_fees(self, caller: str, recipient: str) -> int:
        with self._lock.guard("withdraw_admin_fees"):
            self._require_admin(caller)
            if self._state == MigrationState.MIGRATING:
                raise MigrationInProgress("Admin fees cannot be withdrawn during migration")
            backend = self._require_backend()
            self._accrue_admin_fees()
            fees = self._accrued_fees
            if fees <= 0:
                raise NothingToClaim("No admin fees accrued")
            self._accrued_fees = 0
            try:
                backend.transfer_value(recipient, fees)
            except Exception:
                self._accrued_fees = fees
                raise
            self._sync_fee_checkpoint()

        self._recorder.record(EventKind.ADMIN_FEES_WITHDRAWN, caller, {
            "recipient": recipient,
            "amount": fees,
        })
        return fees

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _route(self, ref: RequestRef) -> Union[PendingWithdrawal, VaultBackend]:
        """Resolve a request id to the internal table entry or its backend."""
        if isinstance(ref, PendingRequest):
            pending = self._pending.get(ref.request_id)
            if pending is None:
                raise UnknownRequest(f"Unknown withdrawal request: {ref.label}")
            return pending
        if isinstance(ref, NativeRequest):
            if ref not in self._native:
                raise UnknownRequest(f"Unknown withdrawal request: {ref.label}")
            return self._registry.handle(ref.generation, self._backend)
        raise UnknownRequest(f"Unrecognised request id: {ref!r}")

    def _claim_pending(self, pending: PendingWithdrawal, recipient: str) -> int:
        if pending.claimed:
            raise AlreadyClaimed(f"Withdrawal already claimed: {pending.ref.label}")
        if not pending.funded:
            raise WithdrawalNotFinalized(f"Withdrawal not finalized: {pending.ref.label}")
        if pending.amount > self._held_balance:
            raise InsufficientLiquidity(
                f"Held balance {self._held_balance} cannot cover {pending.amount}"
            )
        pending.claimed = True
        self._held_balance -= pending.amount
        try:
            self._payout_rail.send(recipient, pending.amount)
        except Exception:
            pending.claimed = False
            self._held_balance += pending.amount
            raise
        return pending.amount

    def _owed_pending(self) -> int:
        return sum(p.amount for p in self._pending.values() if not p.claimed)

    def _deferred_total(self) -> int:
        return sum(d.amount for d in self._deferred)

    def _liabilities(self) -> int:
        return self._owed_pending() + self._deferred_total()

    def _pay_deferred(self) -> None:
        """Pay deferred payouts from the held balance, oldest first.

        Each payout leaves the list only once it has been sent. A payout
        the held balance cannot cover stays deferred for the next finalize.
        """
        remaining: List[DeferredPayout] = []
        for index, payout in enumerate(self._deferred):
            if payout.amount > self._held_balance:
                logger.warning(
                    "Held balance %d cannot cover deferred payout of %d to %s",
                    self._held_balance, payout.amount, payout.recipient,
                )
                remaining.append(payout)
                continue
            try:
                self._payout_rail.send(payout.recipient, payout.amount)
            except Exception:
                self._deferred = remaining + self._deferred[index:]
                raise
            self._held_balance -= payout.amount
        self._deferred = remaining

    def _reserved_for_funded_pending(self) -> int:
        return sum(
            p.amount for p in self._pending.values() if p.funded and not p.claimed
        )

    def _unaccrued_fee(self) -> int:
        if self._state != MigrationState.STABLE or self._backend is None:
            return 0
        growth = self._backend.get_total_deposited_value() - self._fee_checkpoint
        if growth <= 0:
            return 0
        return growth * self._admin_fee_percent // DONATION_DENOMINATOR

    def _accrue_admin_fees(self) -> None:
        if self._state != MigrationState.STABLE or self._backend is None:
            return
        self._accrued_fees += self._unaccrued_fee()
        self._sync_fee_checkpoint()

    def _sync_fee_checkpoint(self) -> None:
        if self._backend is not None:
            self._fee_checkpoint = self._backend.get_total_deposited_value()

    def _require_backend(self) -> VaultBackend:
        if self._backend is None:
            raise NoActiveBackend("No vault backend configured")
        return self._backend

    def _require_manager(self, caller: str) -> None:
        if caller != self._roles.router_manager:
            raise Unauthorized(f"Caller is not router manager: {caller}")

    def _require_admin(self, caller: str) -> None:
        if caller != self._roles.admin:
            raise Unauthorized(f"Caller is not admin: {caller}")

    @staticmethod
    def _require_backend_protocol(backend: object) -> None:
        if not isinstance(backend, VaultBackend):
            raise TypeError(
                f"Backend must satisfy VaultBackend Protocol, got {type(backend)}"
            )

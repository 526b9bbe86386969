"""YieldShare service — unified facade over the vault components.

This is the primary interface for programmatic access to YieldShare.
It wires together:
- Community listing (register, rotate recipient)
- Yield distribution (stake, change rate, unstake, claims, donations)
- Router migration (initiate, finalize, admin fee)
- Audit trail (event log, Merkle commitment)

Every mutating operation returns a ServiceResult. Domain failures
(YieldShareError) become ``success=False`` with the error message; the
components have already rolled back by the time the facade sees them.
Programming errors such as re-entrancy propagate unchanged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Union

from yieldshare.accounting.communities import CommunityRegistry
from yieldshare.accounting.engine import YieldDistributionEngine
from yieldshare.accounting.receipt_ledger import ReceiptLedger
from yieldshare.crypto.merkle import LogCommitment, commit_event_log
from yieldshare.errors import YieldShareError
from yieldshare.models.withdrawal import RequestRef, parse_request_ref
from yieldshare.persistence.event_log import EventLog, EventRecorder
from yieldshare.policy.resolver import PolicyResolver, RoleBindings
from yieldshare.router.backend import PayoutRail, VaultBackend
from yieldshare.router.coordinator import RouterMigrationCoordinator
from yieldshare.router.memory import InMemoryPayoutRail, InMemoryVaultBackend


logger = logging.getLogger("yieldshare.service")


@dataclass
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)


RequestLike = Union[RequestRef, str]


class YieldShareService:
    """Facade over the listing registry, engine and coordinator.

    Usage:
        resolver = PolicyResolver.from_config_dir(config_dir)
        service = YieldShareService(resolver)
        roles = service.roles

        service.register_community(roles.listing_authority, "c1", 10_000, "c1_wallet")
        service.stake("alice", "c1", donation_percent=10_000, amount=UNIT)
        result = service.unstake("alice", "c1", UNIT)
        service.claim_withdrawal("alice", result.data["request_id"])

    Persistence (optional):
        service = YieldShareService(resolver, event_log=EventLog(path))
    """

    def __init__(
        self,
        resolver: PolicyResolver,
        backend: Optional[VaultBackend] = None,
        payout_rail: Optional[PayoutRail] = None,
        event_log: Optional[EventLog] = None,
    ) -> None:
        self._resolver = resolver
        self._params = resolver.vault_params()
        self._roles = resolver.roles()

        self._recorder = EventRecorder(event_log)
        self._backend = backend if backend is not None else InMemoryVaultBackend("backend-0")
        self._payout_rail = payout_rail if payout_rail is not None else InMemoryPayoutRail()

        self._communities = CommunityRegistry(self._roles.listing_authority, self._recorder)
        self._receipts = ReceiptLedger(self._roles.router_manager)
        self._coordinator = RouterMigrationCoordinator(
            self._params,
            self._roles,
            self._backend,
            self._payout_rail,
            recorder=self._recorder,
        )
        self._engine = YieldDistributionEngine(
            self._communities,
            self._coordinator,
            self._receipts,
            engine_id=self._roles.router_manager,
            recorder=self._recorder,
        )

    # ------------------------------------------------------------------
    # Component access
    # ------------------------------------------------------------------

    @property
    def roles(self) -> RoleBindings:
        return self._roles

    @property
    def engine(self) -> YieldDistributionEngine:
        return self._engine

    @property
    def coordinator(self) -> RouterMigrationCoordinator:
        return self._coordinator

    @property
    def receipts(self) -> ReceiptLedger:
        return self._receipts

    @property
    def communities(self) -> CommunityRegistry:
        return self._communities

    @property
    def event_log(self) -> EventLog:
        return self._recorder.log

    @property
    def payout_rail(self) -> PayoutRail:
        return self._payout_rail

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def register_community(
        self,
        caller: str,
        community_id: str,
        min_donation_percent: int,
        recipient: str,
    ) -> ServiceResult:
        return self._run(lambda: {
            "community_id": self._communities.register_community(
                caller, community_id, min_donation_percent, recipient,
            ).community_id,
        })

    def rotate_recipient(self, caller: str, community_id: str, recipient: str) -> ServiceResult:
        return self._run(lambda: {
            "community_id": community_id,
            "recipient": self._communities.rotate_recipient(
                caller, community_id, recipient,
            ).recipient,
        })

    # ------------------------------------------------------------------
    # Depositors
    # ------------------------------------------------------------------

    def stake(self, user: str, community_id: str, donation_percent: int, amount: int) -> ServiceResult:
        def _op() -> dict[str, Any]:
            paid = self._engine.stake(user, community_id, donation_percent, amount)
            position = self._engine.get_position(user, community_id)
            return {"principal": position.principal, "yield_paid": paid}
        return self._run(_op)

    def change_donation_rate(self, user: str, community_id: str, new_percent: int) -> ServiceResult:
        def _op() -> dict[str, Any]:
            paid = self._engine.change_donation_rate(user, community_id, new_percent)
            community = self._engine.get_community(community_id)
            return {
                "donation_percent": new_percent,
                "unified_donation_rate": community.unified_donation_rate,
                "yield_paid": paid,
            }
        return self._run(_op)

    def unstake(self, user: str, community_id: str, amount: int) -> ServiceResult:
        def _op() -> dict[str, Any]:
            ref = self._engine.unstake(user, community_id, amount)
            return {"request_id": ref.label, "amount": amount}
        return self._run(_op)

    def claim_yield(self, user: str, community_id: str) -> ServiceResult:
        return self._run(lambda: {"amount": self._engine.claim_yield(user, community_id)})

    def claim_withdrawal(self, user: str, request: RequestLike) -> ServiceResult:
        def _op() -> dict[str, Any]:
            ref = parse_request_ref(request) if isinstance(request, str) else request
            return {
                "request_id": ref.label,
                "amount": self._engine.claim_withdrawal(user, ref),
            }
        return self._run(_op)

    def withdraw_community_donations(self, caller: str, community_id: str) -> ServiceResult:
        return self._run(lambda: {
            "community_id": community_id,
            "amount": self._engine.withdraw_community_donations(caller, community_id),
        })

    def pending_yield(self, user: str, community_id: str) -> int:
        return self._engine.pending_yield(user, community_id)

    # ------------------------------------------------------------------
    # Router administration
    # ------------------------------------------------------------------

    def initiate_migration(self, caller: str) -> ServiceResult:
        def _op() -> dict[str, Any]:
            record = self._coordinator.initiate_migration(caller)
            return {
                "generation": record.generation,
                "requested_amount": record.requested_amount,
                "request_id": record.request_id,
            }
        return self._run(_op)

    def finalize_migration(self, caller: str, new_backend: VaultBackend) -> ServiceResult:
        def _op() -> dict[str, Any]:
            record = self._coordinator.finalize_migration(caller, new_backend)
            return {
                "generation": record.generation,
                "released_amount": record.released_amount,
                "backend_id": new_backend.backend_id,
            }
        return self._run(_op)

    def set_admin_fee_percent(self, caller: str, percent: int) -> ServiceResult:
        def _op() -> dict[str, Any]:
            self._coordinator.set_admin_fee_percent(caller, percent)
            return {"admin_fee_percent": percent}
        return self._run(_op)

    def withdraw_admin_fees(self, caller: str, recipient: str) -> ServiceResult:
        return self._run(lambda: {
            "recipient": recipient,
            "amount": self._coordinator.withdraw_admin_fees(caller, recipient),
        })

    # ------------------------------------------------------------------
    # Audit and status
    # ------------------------------------------------------------------

    def commitment(self) -> LogCommitment:
        """Merkle commitment over the event log as it stands now."""
        return commit_event_log(self._recorder.log)

    def status(self) -> dict[str, Any]:
        """Snapshot of vault accounting for display."""
        coordinator = self._coordinator
        backend = coordinator.active_backend
        return {
            "state": coordinator.state.value,
            "active_backend": backend.backend_id if backend is not None else None,
            "generations_retired": len(coordinator.registry),
            "total_deposited_value": coordinator.get_total_deposited_value(),
            "held_balance": coordinator.held_balance,
            "pending_deposits": coordinator.pending_deposits,
            "deferred_payouts": sum(p.amount for p in coordinator.deferred_payouts),
            "admin_fee_percent": coordinator.admin_fee_percent,
            "accrued_admin_fees": coordinator.accrued_admin_fees(),
            "total_user_principal": self._engine.total_user_principal,
            "receipt_supply": self._receipts.total_supply(),
            "communities": {
                c.community_id: {
                    "recipient": c.recipient,
                    "total_staked_principal": c.total_staked_principal,
                    "unified_donation_rate": c.unified_donation_rate,
                    "accumulator_per_share": c.accumulator_per_share,
                    "total_donations_accrued": c.total_donations_accrued,
                    "unabsorbed_loss": c.unabsorbed_loss,
                }
                for c in self._communities.all()
            },
            "event_count": self._recorder.log.count,
            "event_log_root": self.commitment().root,
            "event_log_degraded": self._recorder.degraded,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _run(operation: Callable[[], Dict[str, Any]]) -> ServiceResult:
        try:
            data = operation()
        except YieldShareError as e:
            logger.debug("Operation rejected: %s", e)
            return ServiceResult(success=False, errors=[str(e)])
        return ServiceResult(success=True, data=data)

"""Yield distribution engine — splits pool yield between depositors and
their chosen communities.

Each community keeps a reward-per-share accumulator over its staked
principal. Before any mutating call the engine syncs the accumulators
against the pool value reported by the router:

    community_value = staked_principal × pool_value / receipt_supply
    delta = community_value − last_observed_value

    delta > 0:
        donation_portion = delta × unified_donation_rate / DENOM
        staker_portion   = delta − donation_portion
        accumulator     += staker_portion × PRECISION / staked_principal

    delta < 0 (loss socialization):
        donation_loss = donations_accrued × |delta| / community_value
                        (capped at donations_accrued)
        stakers_loss  = |delta| − donation_loss
        accumulator  −= stakers_loss × PRECISION / staked_principal
                        (floored at 0; the remainder is recorded as
                        unabsorbed_loss)

A depositor's pending yield is principal × accumulator / PRECISION minus
the reward debt checkpointed at their last settlement. The unified
donation rate is the principal-weighted average of every position's
donation percent and only applies to yield observed after it changes.

Receipts are minted 1:1 with principal while the pool value per receipt
drifts, so any value moving into or out of the pool would register as
yield or loss in every other community. Operations that move value
therefore sync every community first and re-baseline every community's
last_observed_value afterwards.

Atomicity: position-mutating calls run in two phases, each of which
either completes or is rolled back before the error propagates:
    1. settle: checkpoint the reward debt, then pay pending yield out.
    2. mutate: update principal / donation percent bookkeeping and mint or
       burn receipts, then deposit or request the withdrawal through the
       router. Receipt changes are undone if the router call fails.

During a migration the router may defer yield and donation payouts until
it is finalized; the engine settles them exactly as if they were paid.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Tuple

from yieldshare.accounting.communities import CommunityRegistry
from yieldshare.accounting.receipt_ledger import ReceiptLedger
from yieldshare.errors import (
    AlreadyClaimed,
    InsufficientDonations,
    InsufficientPrincipal,
    InvalidDonationPercent,
    NoPosition,
    NothingToClaim,
    NotRequestOwner,
    Unauthorized,
    UnknownRequest,
    WithdrawalNotFinalized,
    ZeroAmount,
)
from yieldshare.execution import ExecutionLock
from yieldshare.models.community import (
    ACCUMULATOR_PRECISION,
    DONATION_DENOMINATOR,
    Community,
    DepositorPosition,
    weighted_principal,
)
from yieldshare.models.withdrawal import RequestRef, WithdrawalRequest
from yieldshare.persistence.event_log import EventKind, EventRecorder
from yieldshare.router.coordinator import RouterMigrationCoordinator


logger = logging.getLogger("yieldshare.engine")


@dataclass(frozen=True)
class SyncOutcome:
    """Result of syncing one community against the current pool value."""
    community_value: Optional[int]
    delta: int = 0
    donation_portion: int = 0
    staker_portion: int = 0
    donation_loss: int = 0
    stakers_loss: int = 0
    unabsorbed_loss: int = 0
    accumulator_per_share: int = 0
    total_donations_accrued: int = 0
    applies: bool = False


def project_sync(community: Community, pool_value: int, pool_supply: int) -> SyncOutcome:
    """Compute a community's sync without mutating it.

    Shared by the mutating sync path and the read-only pending_yield
    projection, so both always agree.
    """
    unchanged = SyncOutcome(
        community_value=community.last_observed_value,
        accumulator_per_share=community.accumulator_per_share,
        total_donations_accrued=community.total_donations_accrued,
    )
    staked = community.total_staked_principal
    if staked == 0 or pool_supply == 0:
        return unchanged

    value = staked * pool_value // pool_supply
    if community.last_observed_value is None:
        return replace(unchanged, community_value=value, applies=True)

    delta = value - community.last_observed_value
    accumulator = community.accumulator_per_share
    donations = community.total_donations_accrued

    if delta > 0:
        donation_portion = delta * community.unified_donation_rate // DONATION_DENOMINATOR
        staker_portion = delta - donation_portion
        return SyncOutcome(
            community_value=value,
            delta=delta,
            donation_portion=donation_portion,
            staker_portion=staker_portion,
            accumulator_per_share=accumulator + staker_portion * ACCUMULATOR_PRECISION // staked,
            total_donations_accrued=donations + donation_portion,
            applies=True,
        )

    if delta < 0:
        loss = -delta
        if value > 0:
            donation_loss = donations * loss // value
        else:
            donation_loss = donations
        donation_loss = min(donation_loss, donations, loss)
        stakers_loss = loss - donation_loss
        reduction = stakers_loss * ACCUMULATOR_PRECISION // staked
        unabsorbed = 0
        if reduction > accumulator:
            unabsorbed = (reduction - accumulator) * staked // ACCUMULATOR_PRECISION
            reduction = accumulator
        return SyncOutcome(
            community_value=value,
            delta=delta,
            donation_loss=donation_loss,
            stakers_loss=stakers_loss,
            unabsorbed_loss=unabsorbed,
            accumulator_per_share=accumulator - reduction,
            total_donations_accrued=donations - donation_loss,
            applies=True,
        )

    return replace(unchanged, community_value=value, applies=True)


class YieldDistributionEngine:
    """Per-community yield accounting with donation splitting.

    Usage:
        engine = YieldDistributionEngine(communities, coordinator, receipts, "engine")
        engine.stake("alice", "c1", donation_percent=10_000, amount=UNIT)
        engine.pending_yield("alice", "c1")
        ref = engine.unstake("alice", "c1", UNIT)
        engine.claim_withdrawal("alice", ref)
    """

    def __init__(
        self,
        communities: CommunityRegistry,
        router: RouterMigrationCoordinator,
        receipts: ReceiptLedger,
        engine_id: str,
        recorder: Optional[EventRecorder] = None,
    ) -> None:
        self._communities = communities
        self._router = router
        self._receipts = receipts
        self._engine_id = engine_id
        self._recorder = recorder if recorder is not None else EventRecorder()
        self._lock = ExecutionLock("engine")

        self._positions: Dict[Tuple[str, str], DepositorPosition] = {}
        self._active: Dict[str, List[str]] = {}
        self._requests: Dict[RequestRef, WithdrawalRequest] = {}
        self._total_user_principal = 0
        self._loss_notices: List[Tuple[str, int]] = []

    # ------------------------------------------------------------------
    # Read-only surface
    # ------------------------------------------------------------------

    @property
    def total_user_principal(self) -> int:
        return self._total_user_principal

    def get_community(self, community_id: str) -> Community:
        return self._communities.get(community_id)

    def get_position(self, user: str, community_id: str) -> Optional[DepositorPosition]:
        return self._positions.get((user, community_id))

    def active_communities(self, user: str) -> List[str]:
        return list(self._active.get(user, []))

    def get_withdrawal_request(self, ref: RequestRef) -> WithdrawalRequest:
        request = self._requests.get(ref)
        if request is None:
            raise UnknownRequest(f"Unknown withdrawal request: {ref.label}")
        return request

    def pending_yield(self, user: str, community_id: str) -> int:
        """Yield the user could claim right now, without mutating anything."""
        community = self._communities.get(community_id)
        position = self._positions.get((user, community_id))
        if position is None:
            return 0
        outcome = project_sync(
            community,
            self._router.get_total_deposited_value(),
            self._receipts.total_supply(),
        )
        return position.pending_yield(outcome.accumulator_per_share)

    # ------------------------------------------------------------------
    # Depositor operations
    # ------------------------------------------------------------------

    def stake(self, user: str, community_id: str, donation_percent: int, amount: int) -> int:
        """Stake amount into a community at the given donation percent.

        Returns the pending yield paid out before the stake was applied.
        """
        with self._lock.guard("stake"):
            if amount <= 0:
                raise ZeroAmount("Stake amount must be positive")
            community = self._communities.get(community_id)
            self._check_donation_percent(community, donation_percent)
            key = (user, community_id)

            paid = self._settle_phase(user, community)

            rollback = self._snapshot(user, community_id)
            minted = False
            try:
                position = self._positions.get(key)
                if position is None:
                    position = DepositorPosition(user_id=user, community_id=community_id)
                    self._positions[key] = position
                    self._active.setdefault(user, []).append(community_id)
                self._reweight(community, position, position.principal + amount, donation_percent)
                position.checkpoint(community.accumulator_per_share)
                self._total_user_principal += amount
                self._receipts.mint(self._engine_id, user, amount)
                minted = True
                self._router.deposit(self._engine_id, amount)
                self._rebaseline()
            except Exception:
                if minted:
                    self._receipts.burn(self._engine_id, user, amount)
                rollback()
                raise

            self._flush_loss_notices()
            self._recorder.record(EventKind.STAKED, user, {
                "community_id": community_id,
                "amount": amount,
                "donation_percent": donation_percent,
                "principal": position.principal,
                "yield_paid": paid,
            })
            return paid

    def change_donation_rate(self, user: str, community_id: str, new_percent: int) -> int:
        """Change the donation percent of an existing position.

        Yield earned so far is settled at the old rate; the new rate only
        affects yield observed afterwards.
        """
        with self._lock.guard("change_donation_rate"):
            community = self._communities.get(community_id)
            self._check_donation_percent(community, new_percent)
            position = self._require_position(user, community_id)
            previous = position.donation_percent

            paid = self._settle_phase(user, community)

            self._reweight(community, position, position.principal, new_percent)
            position.checkpoint(community.accumulator_per_share)

            self._flush_loss_notices()
            self._recorder.record(EventKind.DONATION_RATE_CHANGED, user, {
                "community_id": community_id,
                "previous_percent": previous,
                "donation_percent": new_percent,
                "unified_donation_rate": community.unified_donation_rate,
                "yield_paid": paid,
            })
            return paid

    def unstake(self, user: str, community_id: str, amount: int) -> RequestRef:
        """Burn receipts and open a withdrawal request for amount."""
        with self._lock.guard("unstake"):
            if amount <= 0:
                raise ZeroAmount("Unstake amount must be positive")
            community = self._communities.get(community_id)
            key = (user, community_id)
            position = self._positions.get(key)
            principal = position.principal if position is not None else 0
            if amount > principal:
                raise InsufficientPrincipal(
                    f"Unstake of {amount} exceeds principal {principal} "
                    f"of {user} in {community_id}"
                )

            paid = self._settle_phase(user, community)

            rollback = self._snapshot(user, community_id)
            burned = False
            try:
                self._reweight(community, position, position.principal - amount,
                               position.donation_percent)
                position.checkpoint(community.accumulator_per_share)
                self._total_user_principal -= amount
                self._receipts.burn(self._engine_id, user, amount)
                burned = True
                ref = self._router.request_withdrawal(self._engine_id, amount)
            except Exception:
                if burned:
                    self._receipts.mint(self._engine_id, user, amount)
                rollback()
                raise
            self._requests[ref] = WithdrawalRequest(
                ref=ref, owner=user, community_id=community_id, amount=amount,
            )
            if position.principal == 0:
                del self._positions[key]
                self._compact_active(user, community_id)
            self._rebaseline()

            self._flush_loss_notices()
            self._recorder.record(EventKind.UNSTAKE_REQUESTED, user, {
                "community_id": community_id,
                "amount": amount,
                "request_id": ref.label,
                "remaining_principal": position.principal,
                "yield_paid": paid,
            })
            return ref

    def claim_yield(self, user: str, community_id: str) -> int:
        """Pay out the user's pending yield in a community."""
        with self._lock.guard("claim_yield"):
            community = self._communities.get(community_id)
            position = self._require_position(user, community_id)

            rollback = self._snapshot(user, community_id)
            try:
                self._sync_all()
                pending = position.pending_yield(community.accumulator_per_share)
                if pending == 0:
                    raise NothingToClaim(f"No pending yield for {user} in {community_id}")
                position.checkpoint(community.accumulator_per_share)
                self._router.transfer_value(self._engine_id, user, pending)
                self._rebaseline()
            except Exception:
                rollback()
                raise

            self._flush_loss_notices()
            self._recorder.record(EventKind.YIELD_CLAIMED, user, {
                "community_id": community_id,
                "amount": pending,
            })
            return pending

    def claim_withdrawal(self, user: str, ref: RequestRef) -> int:
        """Claim a finalized withdrawal request, exactly once, to its owner."""
        with self._lock.guard("claim_withdrawal"):
            request = self.get_withdrawal_request(ref)
            if request.owner != user:
                raise NotRequestOwner(f"{user} does not own withdrawal {ref.label}")
            if request.claimed:
                raise AlreadyClaimed(f"Withdrawal already claimed: {ref.label}")
            if not self._router.is_withdrawal_finalized(ref):
                raise WithdrawalNotFinalized(f"Withdrawal not finalized: {ref.label}")

            request.claimed = True
            try:
                released = self._router.claim_withdrawal(self._engine_id, ref, user)
            except Exception:
                request.claimed = False
                raise

            self._recorder.record(EventKind.WITHDRAWAL_CLAIMED, user, {
                "community_id": request.community_id,
                "request_id": ref.label,
                "amount": released,
            })
            return released

    # ------------------------------------------------------------------
    # Community operations
    # ------------------------------------------------------------------

    def withdraw_community_donations(self, caller: str, community_id: str) -> int:
        """Pay a community's accrued donations to its recipient."""
        with self._lock.guard("withdraw_community_donations"):
            community = self._communities.get(community_id)
            if caller != community.recipient:
                raise Unauthorized(
                    f"Caller is not the recipient of {community_id}: {caller}"
                )

            rollback = self._snapshot(caller, community_id)
            try:
                self._sync_all()
                donations = community.total_donations_accrued
                if donations == 0:
                    raise InsufficientDonations(f"No donations accrued for {community_id}")
                community.total_donations_accrued = 0
                self._router.transfer_value(self._engine_id, community.recipient, donations)
                self._rebaseline()
            except Exception:
                rollback()
                raise

            self._flush_loss_notices()
            self._recorder.record(EventKind.DONATIONS_WITHDRAWN, caller, {
                "community_id": community_id,
                "recipient": community.recipient,
                "amount": donations,
            })
            return donations

    def sync_community(self, community_id: str) -> SyncOutcome:
        """Bring one community's accumulator up to the current pool value.

        Moves no value, so syncing a single community is safe on its own.
        """
        with self._lock.guard("sync_community"):
            community = self._communities.get(community_id)
            outcome = self._apply_sync(
                community,
                self._router.get_total_deposited_value(),
                self._receipts.total_supply(),
            )
            self._flush_loss_notices()
            return outcome

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _settle_phase(self, user: str, community: Community) -> int:
        """Sync everything and pay the position's pending yield.

        Rolled back as a unit if the payout fails.
        """
        key = (user, community.community_id)
        rollback = self._snapshot(user, community.community_id)
        try:
            self._sync_all()
            position = self._positions.get(key)
            if position is None:
                return 0
            pending = position.pending_yield(community.accumulator_per_share)
            position.checkpoint(community.accumulator_per_share)
            if pending > 0:
                self._router.transfer_value(self._engine_id, user, pending)
                self._rebaseline()
            return pending
        except Exception:
            rollback()
            raise

    def _sync_all(self) -> None:
        pool_value = self._router.get_total_deposited_value()
        pool_supply = self._receipts.total_supply()
        for community in self._communities.all():
            self._apply_sync(community, pool_value, pool_supply)

    def _apply_sync(self, community: Community, pool_value: int, pool_supply: int) -> SyncOutcome:
        outcome = project_sync(community, pool_value, pool_supply)
        if not outcome.applies:
            return outcome
        community.accumulator_per_share = outcome.accumulator_per_share
        community.total_donations_accrued = outcome.total_donations_accrued
        community.last_observed_value = outcome.community_value
        if outcome.unabsorbed_loss > 0:
            community.unabsorbed_loss += outcome.unabsorbed_loss
            self._loss_notices.append((community.community_id, outcome.unabsorbed_loss))
        return outcome

    def _rebaseline(self) -> None:
        """Reset every community's baseline to its current attributed value."""
        pool_value = self._router.get_total_deposited_value()
        pool_supply = self._receipts.total_supply()
        for community in self._communities.all():
            staked = community.total_staked_principal
            if staked == 0 or pool_supply == 0:
                community.last_observed_value = None
            else:
                community.last_observed_value = staked * pool_value // pool_supply

    def _reweight(
        self,
        community: Community,
        position: DepositorPosition,
        new_principal: int,
        new_percent: int,
    ) -> None:
        community.total_donation_weighted_principal -= weighted_principal(
            position.principal, position.donation_percent,
        )
        community.total_staked_principal += new_principal - position.principal
        position.principal = new_principal
        position.donation_percent = new_percent
        community.total_donation_weighted_principal += weighted_principal(
            new_principal, new_percent,
        )
        community.recompute_unified_rate()

    def _snapshot(self, user: str, community_id: str) -> Callable[[], None]:
        """Capture engine state touched by one phase; returns the rollback."""
        key = (user, community_id)
        saved_communities = [(c, replace(c)) for c in self._communities.all()]
        position = self._positions.get(key)
        saved_position = replace(position) if position is not None else None
        had_active = user in self._active
        saved_active = list(self._active.get(user, []))
        saved_total = self._total_user_principal
        saved_notices = len(self._loss_notices)

        def _rollback() -> None:
            for live, saved in saved_communities:
                live.__dict__.update(saved.__dict__)
            if position is None:
                self._positions.pop(key, None)
            else:
                position.__dict__.update(saved_position.__dict__)
                self._positions[key] = position
            if had_active:
                self._active[user] = saved_active
            else:
                self._active.pop(user, None)
            self._total_user_principal = saved_total
            del self._loss_notices[saved_notices:]

        return _rollback

    def _flush_loss_notices(self) -> None:
        for community_id, amount in self._loss_notices:
            logger.warning(
                "Loss of %d in community %s exceeded socializable value and was dropped",
                amount, community_id,
            )
            self._recorder.record(EventKind.LOSS_UNABSORBED, self._engine_id, {
                "community_id": community_id,
                "amount": amount,
            })
        self._loss_notices.clear()

    def _compact_active(self, user: str, community_id: str) -> None:
        remaining = [c for c in self._active.get(user, []) if c != community_id]
        if remaining:
            self._active[user] = remaining
        else:
            self._active.pop(user, None)

    def _require_position(self, user: str, community_id: str) -> DepositorPosition:
        position = self._positions.get((user, community_id))
        if position is None:
            raise NoPosition(f"{user} has no position in {community_id}")
        return position

    @staticmethod
    def _check_donation_percent(community: Community, percent: int) -> None:
        if not community.min_donation_percent <= percent <= DONATION_DENOMINATOR:
            raise InvalidDonationPercent(
                f"Donation percent {percent} outside "
                f"[{community.min_donation_percent}, {DONATION_DENOMINATOR}] "
                f"for {community.community_id}"
            )

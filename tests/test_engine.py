"""Tests for the yield distribution engine — proves accumulator, donation
and loss-socialization invariants hold."""

import logging
from dataclasses import dataclass

import pytest

from yieldshare.accounting.communities import CommunityRegistry
from yieldshare.accounting.engine import YieldDistributionEngine
from yieldshare.accounting.receipt_ledger import ReceiptLedger
from yieldshare.errors import (
    AlreadyClaimed,
    InsufficientDonations,
    InsufficientPrincipal,
    InvalidDonationPercent,
    NoPosition,
    NothingToClaim,
    NotRequestOwner,
    ReentrancyError,
    TransferFailed,
    Unauthorized,
    UnknownCommunity,
    UnknownRequest,
    WithdrawalNotFinalized,
    ZeroAmount,
)
from yieldshare.models.community import UNIT
from yieldshare.models.withdrawal import MigrationState, NativeRequest, PendingRequest
from yieldshare.persistence.event_log import EventKind, EventRecorder
from yieldshare.policy.resolver import RoleBindings, VaultParams
from yieldshare.router.coordinator import RouterMigrationCoordinator
from yieldshare.router.memory import InMemoryPayoutRail, InMemoryVaultBackend


ROLES = RoleBindings(admin="admin", router_manager="engine", listing_authority="lister")
OFFSET = 10**18


class _FlakyDepositBackend(InMemoryVaultBackend):
    """Backend whose deposits and withdrawal requests can be made to fail."""

    def __init__(self, backend_id: str) -> None:
        super().__init__(backend_id)
        self.fail_deposits = False
        self.fail_requests = False

    def deposit(self, amount: int) -> int:
        if self.fail_deposits:
            raise TransferFailed(f"{self.backend_id}: deposit failed")
        return super().deposit(amount)

    def request_withdrawal(self, amount: int) -> int:
        if self.fail_requests:
            raise TransferFailed(f"{self.backend_id}: withdrawal request failed")
        return super().request_withdrawal(amount)


@dataclass
class _Vault:
    backend: _FlakyDepositBackend
    rail: InMemoryPayoutRail
    recorder: EventRecorder
    communities: CommunityRegistry
    receipts: ReceiptLedger
    coordinator: RouterMigrationCoordinator
    engine: YieldDistributionEngine

    def register(self, community_id: str = "c1", floor: int = 10_000) -> None:
        self.communities.register_community(
            ROLES.listing_authority, community_id, floor, f"{community_id}_wallet",
        )

    def events(self, kind: EventKind) -> list:
        return self.recorder.log.events(kind)


def _vault(admin_fee_percent: int = 0) -> _Vault:
    params = VaultParams(
        admin_fee_percent=admin_fee_percent,
        max_admin_fee_percent=10_000,
        pending_request_id_offset=OFFSET,
    )
    backend = _FlakyDepositBackend("lido_mock")
    rail = InMemoryPayoutRail()
    recorder = EventRecorder()
    communities = CommunityRegistry(ROLES.listing_authority, recorder)
    receipts = ReceiptLedger(ROLES.router_manager)
    coordinator = RouterMigrationCoordinator(params, ROLES, backend, rail, recorder=recorder)
    engine = YieldDistributionEngine(
        communities, coordinator, receipts, ROLES.router_manager, recorder=recorder,
    )
    return _Vault(backend, rail, recorder, communities, receipts, coordinator, engine)


@pytest.fixture
def vault() -> _Vault:
    v = _vault()
    v.register("c1", floor=10_000)
    return v


class TestDonationSplit:
    def test_single_staker_ten_percent(self, vault: _Vault) -> None:
        vault.engine.stake("alice", "c1", 10_000, UNIT)
        vault.backend.rebase(UNIT // 10)

        outcome = vault.engine.sync_community("c1")
        assert outcome.delta == UNIT // 10
        assert outcome.donation_portion == UNIT // 100
        assert outcome.staker_portion == 9 * UNIT // 100
        assert vault.engine.pending_yield("alice", "c1") == 9 * UNIT // 100
        assert vault.engine.get_community("c1").total_donations_accrued == UNIT // 100

    def test_unified_rate_is_principal_weighted(self) -> None:
        v = _vault()
        v.register("c1", floor=0)
        v.engine.stake("alice", "c1", 0, UNIT)
        v.engine.stake("bob", "c1", 20_000, UNIT)
        assert v.engine.get_community("c1").unified_donation_rate == 10_000

    def test_rate_tracks_unstake(self) -> None:
        v = _vault()
        v.register("c1", floor=0)
        v.engine.stake("alice", "c1", 0, UNIT)
        v.engine.stake("bob", "c1", 20_000, UNIT)
        v.engine.unstake("alice", "c1", UNIT)
        community = v.engine.get_community("c1")
        assert community.unified_donation_rate == 20_000
        assert community.total_staked_principal == UNIT

    def test_first_sync_only_sets_baseline(self, vault: _Vault) -> None:
        vault.engine.stake("alice", "c1", 10_000, UNIT)
        community = vault.engine.get_community("c1")
        assert community.last_observed_value == UNIT
        assert community.accumulator_per_share == 0

    def test_empty_community_sync_is_noop(self, vault: _Vault) -> None:
        outcome = vault.engine.sync_community("c1")
        assert not outcome.applies
        assert vault.engine.get_community("c1").last_observed_value is None


class TestConservation:
    def test_yield_is_fully_attributed(self) -> None:
        v = _vault()
        v.register("c1", floor=10_000)
        v.register("c2", floor=0)
        v.engine.stake("alice", "c1", 10_000, 3 * UNIT)
        v.engine.stake("bob", "c1", 50_000, UNIT)
        v.engine.stake("carol", "c2", 0, 2 * UNIT)

        v.backend.rebase(6 * UNIT // 10)
        v.engine.sync_community("c1")
        v.engine.sync_community("c2")

        assert v.engine.get_community("c1").unified_donation_rate == 20_000
        assert v.engine.pending_yield("alice", "c1") == 24 * UNIT // 100
        assert v.engine.pending_yield("bob", "c1") == 8 * UNIT // 100
        assert v.engine.pending_yield("carol", "c2") == 2 * UNIT // 10
        assert v.engine.get_community("c1").total_donations_accrued == 8 * UNIT // 100
        assert v.engine.get_community("c2").total_donations_accrued == 0

    def test_conservation_across_claims(self) -> None:
        v = _vault()
        v.register("c1", floor=10_000)
        v.register("c2", floor=0)
        v.engine.stake("alice", "c1", 10_000, 3 * UNIT)
        v.engine.stake("bob", "c1", 50_000, UNIT)
        v.engine.stake("carol", "c2", 0, 2 * UNIT)

        total_yield = 0
        for amount in (6 * UNIT // 10, UNIT // 7, 3 * UNIT // 11):
            v.backend.rebase(amount)
            total_yield += amount
            v.engine.claim_yield("alice", "c1")

        v.engine.sync_community("c1")
        v.engine.sync_community("c2")
        claimed = v.backend.payouts.get("alice", 0)
        pending = (
            v.engine.pending_yield("alice", "c1")
            + v.engine.pending_yield("bob", "c1")
            + v.engine.pending_yield("carol", "c2")
        )
        donations = sum(c.total_donations_accrued for c in v.communities.all())

        attributed = claimed + pending + donations
        assert abs(total_yield - attributed) <= 20

    def test_principal_totals_match_positions(self) -> None:
        v = _vault()
        v.register("c1", floor=0)
        v.engine.stake("alice", "c1", 0, 5 * UNIT)
        v.engine.stake("bob", "c1", 30_000, 2 * UNIT)
        v.engine.unstake("alice", "c1", 2 * UNIT)
        v.engine.stake("bob", "c1", 30_000, UNIT)
        v.engine.unstake("bob", "c1", 3 * UNIT)

        community = v.engine.get_community("c1")
        positions = [v.engine.get_position(u, "c1") for u in ("alice", "bob")]
        assert community.total_staked_principal == sum(p.principal for p in positions if p)
        assert v.engine.total_user_principal == v.receipts.total_supply() == 3 * UNIT

    def test_accumulator_non_decreasing_without_loss(self, vault: _Vault) -> None:
        vault.engine.stake("alice", "c1", 10_000, UNIT)
        seen = [vault.engine.get_community("c1").accumulator_per_share]
        for i in range(1, 6):
            vault.backend.rebase(UNIT // (10 * i))
            if i % 2:
                vault.engine.claim_yield("alice", "c1")
            else:
                vault.engine.stake("bob", "c1", 20_000, UNIT // 2)
            seen.append(vault.engine.get_community("c1").accumulator_per_share)
        assert seen == sorted(seen)
        assert seen[-1] > 0


class TestLossSocialization:
    def test_loss_charged_to_donations_then_stakers(self) -> None:
        v = _vault()
        v.register("c1", floor=0)
        v.engine.stake("alice", "c1", 50_000, UNIT)
        v.backend.rebase(UNIT)
        v.engine.sync_community("c1")
        assert v.engine.get_community("c1").total_donations_accrued == UNIT // 2
        assert v.engine.get_community("c1").accumulator_per_share == 500_000_000_000

        v.backend.report_loss(UNIT // 2)
        outcome = v.engine.sync_community("c1")

        assert outcome.donation_loss == 166_666_666_666_666_666
        assert outcome.stakers_loss == 333_333_333_333_333_334
        community = v.engine.get_community("c1")
        assert community.total_donations_accrued == 333_333_333_333_333_334
        assert community.accumulator_per_share == 166_666_666_667
        assert community.unabsorbed_loss == 0
        assert v.engine.pending_yield("alice", "c1") == 166_666_666_667_000_000

    def test_loss_beyond_accumulator_is_recorded(self, caplog) -> None:
        v = _vault()
        v.register("c1", floor=0)
        v.engine.stake("alice", "c1", 0, UNIT)
        v.backend.rebase(UNIT // 10)
        v.engine.sync_community("c1")

        v.backend.report_loss(UNIT // 2)
        with caplog.at_level(logging.WARNING, logger="yieldshare.engine"):
            outcome = v.engine.sync_community("c1")

        community = v.engine.get_community("c1")
        assert outcome.unabsorbed_loss == 4 * UNIT // 10
        assert community.accumulator_per_share == 0
        assert community.unabsorbed_loss == 4 * UNIT // 10
        assert v.engine.pending_yield("alice", "c1") == 0
        assert "exceeded socializable value" in caplog.text

        notices = v.events(EventKind.LOSS_UNABSORBED)
        assert len(notices) == 1
        assert notices[0].payload == {"community_id": "c1", "amount": 4 * UNIT // 10}

    def test_pending_never_negative_after_loss(self) -> None:
        v = _vault()
        v.register("c1", floor=0)
        v.engine.stake("alice", "c1", 0, UNIT)
        v.backend.rebase(UNIT // 10)
        v.engine.claim_yield("alice", "c1")
        v.backend.report_loss(UNIT // 20)
        v.engine.sync_community("c1")
        assert v.engine.pending_yield("alice", "c1") == 0
        with pytest.raises(NothingToClaim):
            v.engine.claim_yield("alice", "c1")


class TestStake:
    def test_stake_mints_and_deposits(self, vault: _Vault) -> None:
        vault.engine.stake("alice", "c1", 10_000, 2 * UNIT)
        assert vault.receipts.balance_of("alice") == 2 * UNIT
        assert vault.backend.get_total_deposited_value() == 2 * UNIT
        assert vault.engine.active_communities("alice") == ["c1"]
        assert len(vault.events(EventKind.STAKED)) == 1

    def test_rejected_mint_never_reaches_backend(self) -> None:
        v = _vault()
        v.register("c1", floor=0)
        engine = YieldDistributionEngine(
            v.communities, v.coordinator, ReceiptLedger("someone_else"), ROLES.router_manager,
        )
        with pytest.raises(Unauthorized):
            engine.stake("alice", "c1", 0, UNIT)

        assert v.backend.get_total_deposited_value() == 0
        assert engine.get_position("alice", "c1") is None
        assert engine.total_user_principal == 0
        assert v.communities.get("c1").total_staked_principal == 0

    def test_zero_amount_rejected(self, vault: _Vault) -> None:
        with pytest.raises(ZeroAmount):
            vault.engine.stake("alice", "c1", 10_000, 0)

    def test_unknown_community_rejected(self, vault: _Vault) -> None:
        with pytest.raises(UnknownCommunity):
            vault.engine.stake("alice", "nope", 10_000, UNIT)

    @pytest.mark.parametrize("percent", [9_999, 100_001, -1])
    def test_donation_percent_bounds(self, vault: _Vault, percent: int) -> None:
        with pytest.raises(InvalidDonationPercent):
            vault.engine.stake("alice", "c1", percent, UNIT)
        assert vault.engine.get_position("alice", "c1") is None

    def test_full_donation_allowed(self, vault: _Vault) -> None:
        vault.engine.stake("alice", "c1", 100_000, UNIT)
        vault.backend.rebase(UNIT // 10)
        assert vault.engine.pending_yield("alice", "c1") == 0

    def test_restake_settles_pending_first(self, vault: _Vault) -> None:
        vault.engine.stake("alice", "c1", 10_000, UNIT)
        vault.backend.rebase(UNIT // 10)
        paid = vault.engine.stake("alice", "c1", 10_000, UNIT)
        assert paid == 9 * UNIT // 100
        assert vault.backend.payouts["alice"] == 9 * UNIT // 100
        assert vault.engine.get_position("alice", "c1").principal == 2 * UNIT
        assert vault.engine.pending_yield("alice", "c1") == 0

    def test_other_community_unaffected_by_deposit(self) -> None:
        v = _vault()
        v.register("c1", floor=0)
        v.register("c2", floor=0)
        v.engine.stake("alice", "c1", 0, UNIT)
        v.backend.rebase(UNIT // 10)
        v.engine.stake("bob", "c2", 0, 5 * UNIT)
        v.engine.sync_community("c1")
        v.engine.sync_community("c2")
        assert v.engine.pending_yield("alice", "c1") == UNIT // 10
        assert v.engine.pending_yield("bob", "c2") == 0

    def test_failed_deposit_rolls_back(self, vault: _Vault) -> None:
        vault.engine.stake("alice", "c1", 10_000, UNIT)
        vault.backend.fail_deposits = True
        with pytest.raises(TransferFailed):
            vault.engine.stake("bob", "c1", 20_000, UNIT)

        community = vault.engine.get_community("c1")
        assert vault.engine.get_position("bob", "c1") is None
        assert vault.engine.active_communities("bob") == []
        assert community.total_staked_principal == UNIT
        assert community.unified_donation_rate == 10_000
        assert vault.engine.total_user_principal == UNIT
        assert vault.receipts.total_supply() == UNIT
        assert len(vault.events(EventKind.STAKED)) == 1


class TestChangeDonationRate:
    def test_change_settles_at_old_rate(self, vault: _Vault) -> None:
        vault.engine.stake("alice", "c1", 10_000, UNIT)
        vault.backend.rebase(UNIT // 10)
        paid = vault.engine.change_donation_rate("alice", "c1", 50_000)

        assert paid == 9 * UNIT // 100
        community = vault.engine.get_community("c1")
        assert community.unified_donation_rate == 50_000
        assert community.total_donations_accrued == UNIT // 100

        vault.backend.rebase(UNIT // 10)
        assert vault.engine.pending_yield("alice", "c1") == 5 * UNIT // 100
        vault.engine.sync_community("c1")
        assert community.total_donations_accrued == 6 * UNIT // 100

    def test_change_below_floor_rejected(self, vault: _Vault) -> None:
        vault.engine.stake("alice", "c1", 10_000, UNIT)
        with pytest.raises(InvalidDonationPercent):
            vault.engine.change_donation_rate("alice", "c1", 5_000)
        assert vault.engine.get_position("alice", "c1").donation_percent == 10_000

    def test_change_without_position_rejected(self, vault: _Vault) -> None:
        with pytest.raises(NoPosition):
            vault.engine.change_donation_rate("alice", "c1", 20_000)

    def test_event_recorded(self, vault: _Vault) -> None:
        vault.engine.stake("alice", "c1", 10_000, UNIT)
        vault.engine.change_donation_rate("alice", "c1", 30_000)
        events = vault.events(EventKind.DONATION_RATE_CHANGED)
        assert len(events) == 1
        assert events[0].payload["previous_percent"] == 10_000
        assert events[0].payload["donation_percent"] == 30_000


class TestUnstake:
    def test_unstake_beyond_principal_changes_nothing(self, vault: _Vault) -> None:
        vault.engine.stake("alice", "c1", 10_000, 2 * UNIT)
        before = vault.engine.get_community("c1").__dict__.copy()

        with pytest.raises(InsufficientPrincipal):
            vault.engine.unstake("alice", "c1", 3 * UNIT)

        assert vault.engine.get_community("c1").__dict__ == before
        assert vault.engine.get_position("alice", "c1").principal == 2 * UNIT
        assert vault.receipts.balance_of("alice") == 2 * UNIT
        assert vault.backend.get_total_deposited_value() == 2 * UNIT
        assert vault.events(EventKind.UNSTAKE_REQUESTED) == []

    def test_unstake_without_position(self, vault: _Vault) -> None:
        with pytest.raises(InsufficientPrincipal):
            vault.engine.unstake("alice", "c1", UNIT)

    def test_full_unstake_compacts_position(self) -> None:
        v = _vault()
        v.register("c1", floor=0)
        v.register("c2", floor=0)
        v.engine.stake("alice", "c1", 0, UNIT)
        v.engine.stake("alice", "c2", 0, UNIT)

        ref = v.engine.unstake("alice", "c1", UNIT)

        assert ref == NativeRequest(0, 1)
        assert v.engine.get_position("alice", "c1") is None
        assert v.engine.active_communities("alice") == ["c2"]
        assert v.receipts.balance_of("alice") == UNIT
        assert v.engine.get_community("c1").last_observed_value is None

    def test_unstake_pays_pending_first(self, vault: _Vault) -> None:
        vault.engine.stake("alice", "c1", 10_000, UNIT)
        vault.backend.rebase(UNIT // 10)
        ref = vault.engine.unstake("alice", "c1", UNIT // 2)

        assert vault.backend.payouts["alice"] == 9 * UNIT // 100
        request = vault.engine.get_withdrawal_request(ref)
        assert request.owner == "alice"
        assert request.amount == UNIT // 2
        assert vault.engine.get_position("alice", "c1").principal == UNIT // 2

    def test_failed_payout_keeps_principal(self, vault: _Vault) -> None:
        vault.engine.stake("alice", "c1", 10_000, UNIT)
        vault.backend.rebase(UNIT // 10)
        vault.backend.fail_transfers = True

        with pytest.raises(TransferFailed):
            vault.engine.unstake("alice", "c1", UNIT)

        assert vault.engine.get_position("alice", "c1").principal == UNIT
        assert vault.receipts.balance_of("alice") == UNIT
        assert vault.backend.get_total_deposited_value() == UNIT + UNIT // 10
        assert vault.engine.pending_yield("alice", "c1") == 9 * UNIT // 100

    def test_failed_request_restores_receipts(self, vault: _Vault) -> None:
        vault.engine.stake("alice", "c1", 10_000, 2 * UNIT)
        vault.backend.fail_requests = True

        with pytest.raises(TransferFailed):
            vault.engine.unstake("alice", "c1", UNIT)

        assert vault.receipts.balance_of("alice") == 2 * UNIT
        assert vault.receipts.total_supply() == 2 * UNIT
        assert vault.engine.get_position("alice", "c1").principal == 2 * UNIT
        assert vault.engine.total_user_principal == 2 * UNIT
        assert vault.events(EventKind.UNSTAKE_REQUESTED) == []


class TestClaims:
    def test_claim_yield(self, vault: _Vault) -> None:
        vault.engine.stake("alice", "c1", 10_000, UNIT)
        vault.backend.rebase(UNIT // 10)
        assert vault.engine.claim_yield("alice", "c1") == 9 * UNIT // 100
        assert vault.backend.payouts["alice"] == 9 * UNIT // 100
        assert vault.engine.pending_yield("alice", "c1") == 0
        with pytest.raises(NothingToClaim):
            vault.engine.claim_yield("alice", "c1")
        assert len(vault.events(EventKind.YIELD_CLAIMED)) == 1

    def test_claim_yield_without_position(self, vault: _Vault) -> None:
        with pytest.raises(NoPosition):
            vault.engine.claim_yield("alice", "c1")

    def test_failed_transfer_rolls_back_claim(self, vault: _Vault) -> None:
        vault.engine.stake("alice", "c1", 10_000, UNIT)
        vault.backend.rebase(UNIT // 10)
        vault.backend.fail_transfers = True

        with pytest.raises(TransferFailed):
            vault.engine.claim_yield("alice", "c1")

        community = vault.engine.get_community("c1")
        assert community.accumulator_per_share == 0
        assert community.last_observed_value == UNIT
        assert vault.engine.get_position("alice", "c1").reward_debt == 0

        vault.backend.fail_transfers = False
        assert vault.engine.claim_yield("alice", "c1") == 9 * UNIT // 100

    def test_claim_withdrawal_lifecycle(self, vault: _Vault) -> None:
        vault.engine.stake("alice", "c1", 10_000, UNIT)
        ref = vault.engine.unstake("alice", "c1", UNIT)

        with pytest.raises(WithdrawalNotFinalized):
            vault.engine.claim_withdrawal("alice", ref)
        vault.backend.finalize_withdrawal(ref.request_id)
        with pytest.raises(NotRequestOwner):
            vault.engine.claim_withdrawal("bob", ref)

        assert vault.engine.claim_withdrawal("alice", ref) == UNIT
        assert vault.backend.payouts["alice"] == UNIT
        with pytest.raises(AlreadyClaimed):
            vault.engine.claim_withdrawal("alice", ref)
        assert vault.backend.payouts["alice"] == UNIT
        assert vault.engine.get_withdrawal_request(ref).claimed

    def test_unknown_request(self, vault: _Vault) -> None:
        with pytest.raises(UnknownRequest):
            vault.engine.claim_withdrawal("alice", NativeRequest(0, 99))

    def test_failed_withdrawal_transfer_can_be_retried(self, vault: _Vault) -> None:
        vault.engine.stake("alice", "c1", 10_000, UNIT)
        ref = vault.engine.unstake("alice", "c1", UNIT)
        vault.backend.finalize_withdrawal(ref.request_id)
        vault.backend.fail_transfers = True

        with pytest.raises(TransferFailed):
            vault.engine.claim_withdrawal("alice", ref)
        assert not vault.engine.get_withdrawal_request(ref).claimed

        vault.backend.fail_transfers = False
        assert vault.engine.claim_withdrawal("alice", ref) == UNIT


class TestCommunityDonations:
    def test_recipient_withdraws_donations(self, vault: _Vault) -> None:
        vault.engine.stake("alice", "c1", 10_000, UNIT)
        vault.backend.rebase(UNIT // 10)

        assert vault.engine.withdraw_community_donations("c1_wallet", "c1") == UNIT // 100
        assert vault.backend.payouts["c1_wallet"] == UNIT // 100
        assert vault.engine.get_community("c1").total_donations_accrued == 0
        assert vault.engine.pending_yield("alice", "c1") == 9 * UNIT // 100

        with pytest.raises(InsufficientDonations):
            vault.engine.withdraw_community_donations("c1_wallet", "c1")

    def test_only_recipient_may_withdraw(self, vault: _Vault) -> None:
        vault.engine.stake("alice", "c1", 10_000, UNIT)
        vault.backend.rebase(UNIT // 10)
        with pytest.raises(Unauthorized):
            vault.engine.withdraw_community_donations("mallory", "c1")

    def test_rotated_recipient(self, vault: _Vault) -> None:
        vault.engine.stake("alice", "c1", 10_000, UNIT)
        vault.backend.rebase(UNIT // 10)
        vault.communities.rotate_recipient(ROLES.listing_authority, "c1", "new_wallet")
        with pytest.raises(Unauthorized):
            vault.engine.withdraw_community_donations("c1_wallet", "c1")
        assert vault.engine.withdraw_community_donations("new_wallet", "c1") == UNIT // 100


class TestPendingYieldProjection:
    def test_projection_matches_sync(self) -> None:
        v = _vault()
        v.register("c1", floor=0)
        v.register("c2", floor=0)
        v.engine.stake("alice", "c1", 25_000, 3 * UNIT)
        v.engine.stake("bob", "c2", 5_000, 7 * UNIT)
        v.backend.rebase(UNIT // 3)
        v.backend.report_loss(UNIT // 17)
        v.backend.rebase(UNIT // 5)

        projected = (v.engine.pending_yield("alice", "c1"), v.engine.pending_yield("bob", "c2"))
        v.engine.sync_community("c1")
        v.engine.sync_community("c2")
        synced = (v.engine.pending_yield("alice", "c1"), v.engine.pending_yield("bob", "c2"))
        assert projected == synced

    def test_projection_does_not_mutate(self, vault: _Vault) -> None:
        vault.engine.stake("alice", "c1", 10_000, UNIT)
        vault.backend.rebase(UNIT // 10)
        before = vault.engine.get_community("c1").__dict__.copy()
        vault.engine.pending_yield("alice", "c1")
        assert vault.engine.get_community("c1").__dict__ == before

    def test_no_position_projects_zero(self, vault: _Vault) -> None:
        assert vault.engine.pending_yield("nobody", "c1") == 0


class TestReentrancy:
    def test_transfer_callback_cannot_reenter(self, vault: _Vault) -> None:
        vault.engine.stake("alice", "c1", 10_000, UNIT)
        vault.backend.rebase(UNIT // 10)
        vault.backend.on_transfer = lambda recipient, amount: vault.engine.claim_yield("alice", "c1")

        with pytest.raises(ReentrancyError):
            vault.engine.claim_yield("alice", "c1")
        assert vault.backend.payouts == {}
        assert vault.engine.pending_yield("alice", "c1") == 9 * UNIT // 100

        vault.backend.on_transfer = None
        assert vault.engine.claim_yield("alice", "c1") == 9 * UNIT // 100


class TestAcrossMigration:
    def test_requests_survive_migration(self, vault: _Vault) -> None:
        vault.engine.stake("alice", "c1", 10_000, 2 * UNIT)
        native = vault.engine.unstake("alice", "c1", UNIT)
        vault.coordinator.initiate_migration(ROLES.admin)

        vault.engine.stake("bob", "c1", 10_000, UNIT)
        assert vault.coordinator.held_balance == UNIT
        assert vault.coordinator.get_total_deposited_value() == 2 * UNIT

        pending = vault.engine.unstake("alice", "c1", UNIT // 2)
        assert pending == PendingRequest(OFFSET)
        with pytest.raises(WithdrawalNotFinalized):
            vault.engine.claim_withdrawal("alice", pending)

        vault.backend.finalize_all()
        new_backend = InMemoryVaultBackend("aave_mock")
        vault.coordinator.finalize_migration(ROLES.admin, new_backend)

        assert vault.coordinator.state == MigrationState.STABLE
        assert new_backend.get_total_deposited_value() == 3 * UNIT // 2
        assert vault.coordinator.held_balance == UNIT // 2

        assert vault.engine.claim_withdrawal("alice", pending) == UNIT // 2
        assert vault.rail.payouts["alice"] == UNIT // 2
        assert vault.engine.claim_withdrawal("alice", native) == UNIT
        assert vault.backend.payouts["alice"] == UNIT
        assert vault.coordinator.get_total_deposited_value() == 3 * UNIT // 2

    def test_yield_before_migration_is_kept(self, vault: _Vault) -> None:
        vault.engine.stake("alice", "c1", 10_000, UNIT)
        vault.backend.rebase(UNIT // 10)
        vault.coordinator.initiate_migration(ROLES.admin)
        vault.backend.finalize_all()
        vault.coordinator.finalize_migration(ROLES.admin, InMemoryVaultBackend("next"))
        assert vault.engine.pending_yield("alice", "c1") == 9 * UNIT // 100
        assert vault.engine.claim_yield("alice", "c1") == 9 * UNIT // 100

    def test_unstake_with_yield_during_migration(self, vault: _Vault) -> None:
        vault.engine.stake("alice", "c1", 10_000, UNIT)
        vault.backend.rebase(UNIT // 10)
        vault.coordinator.initiate_migration(ROLES.admin)

        ref = vault.engine.unstake("alice", "c1", UNIT // 2)
        assert ref == PendingRequest(OFFSET)
        assert [p.amount for p in vault.coordinator.deferred_payouts] == [9 * UNIT // 100]
        assert "alice" not in vault.rail.payouts
        assert vault.engine.get_position("alice", "c1").principal == UNIT // 2
        assert vault.engine.pending_yield("alice", "c1") == 0

        vault.backend.finalize_all()
        new_backend = InMemoryVaultBackend("aave_mock")
        vault.coordinator.finalize_migration(ROLES.admin, new_backend)
        assert vault.rail.payouts["alice"] == 9 * UNIT // 100
        assert new_backend.get_total_deposited_value() == 51 * UNIT // 100

        assert vault.engine.claim_withdrawal("alice", ref) == UNIT // 2
        assert vault.rail.payouts["alice"] == 59 * UNIT // 100
        assert vault.engine.withdraw_community_donations("c1_wallet", "c1") == UNIT // 100
        assert new_backend.payouts["c1_wallet"] == UNIT // 100

    def test_claim_yield_during_migration(self, vault: _Vault) -> None:
        vault.engine.stake("alice", "c1", 10_000, UNIT)
        vault.backend.rebase(UNIT // 10)
        vault.coordinator.initiate_migration(ROLES.admin)

        assert vault.engine.claim_yield("alice", "c1") == 9 * UNIT // 100
        with pytest.raises(NothingToClaim):
            vault.engine.claim_yield("alice", "c1")
        assert vault.coordinator.get_total_deposited_value() == UNIT + UNIT // 100

        vault.backend.finalize_all()
        new_backend = InMemoryVaultBackend("aave_mock")
        vault.coordinator.finalize_migration(ROLES.admin, new_backend)
        assert vault.rail.payouts["alice"] == 9 * UNIT // 100
        assert new_backend.get_total_deposited_value() == UNIT + UNIT // 100

    def test_rate_change_during_migration_with_retired_growth(self, vault: _Vault) -> None:
        vault.engine.stake("alice", "c1", 10_000, UNIT)
        vault.backend.rebase(UNIT // 10)
        vault.coordinator.initiate_migration(ROLES.admin)

        assert vault.engine.change_donation_rate("alice", "c1", 20_000) == 9 * UNIT // 100
        assert vault.engine.get_community("c1").unified_donation_rate == 20_000

        # The retired generation keeps reporting value after it was queued.
        vault.backend.rebase(UNIT // 10)
        assert vault.coordinator.get_total_deposited_value() == UNIT + 11 * UNIT // 100
        assert vault.engine.pending_yield("alice", "c1") == 8 * UNIT // 100

        vault.backend.finalize_all()
        new_backend = InMemoryVaultBackend("aave_mock")
        vault.coordinator.finalize_migration(ROLES.admin, new_backend)
        assert vault.rail.payouts["alice"] == 9 * UNIT // 100
        assert vault.engine.pending_yield("alice", "c1") == 8 * UNIT // 100
        assert vault.engine.claim_yield("alice", "c1") == 8 * UNIT // 100
        assert new_backend.payouts["alice"] == 8 * UNIT // 100

    def test_donations_paid_from_buffered_deposits(self, vault: _Vault) -> None:
        vault.engine.stake("alice", "c1", 10_000, UNIT)
        vault.backend.rebase(UNIT // 10)
        vault.coordinator.initiate_migration(ROLES.admin)
        vault.engine.stake("bob", "c1", 10_000, UNIT)

        assert vault.engine.withdraw_community_donations("c1_wallet", "c1") == UNIT // 100
        assert vault.rail.payouts["c1_wallet"] == UNIT // 100
        assert vault.coordinator.held_balance == UNIT - UNIT // 100
        assert vault.coordinator.deferred_payouts == []

    def test_unstake_of_buffered_stake_is_claimable(self, vault: _Vault) -> None:
        vault.engine.stake("alice", "c1", 10_000, UNIT)
        vault.coordinator.initiate_migration(ROLES.admin)
        vault.engine.stake("bob", "c1", 10_000, 2 * UNIT)
        ref = vault.engine.unstake("bob", "c1", 2 * UNIT)

        vault.backend.finalize_all()
        new_backend = InMemoryVaultBackend("aave_mock")
        vault.coordinator.finalize_migration(ROLES.admin, new_backend)
        assert new_backend.get_total_deposited_value() == UNIT

        assert vault.engine.claim_withdrawal("bob", ref) == 2 * UNIT
        assert vault.rail.payouts["bob"] == 2 * UNIT
        assert vault.coordinator.held_balance == 0
        assert vault.coordinator.get_total_deposited_value() == UNIT
        assert vault.engine.pending_yield("alice", "c1") == 0

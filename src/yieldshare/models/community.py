"""Community and depositor position models.

All amounts are integer base units (1 unit = 10**18 base units).
No floats in finance: percentages are integers over DONATION_DENOMINATOR
and the accumulator is fixed-point scaled by ACCUMULATOR_PRECISION.

Invariants enforced by these models:
- unified_donation_rate == weighted_principal * DENOM / staked_principal
  (0 when nothing is staked)
- pending_yield == principal * accumulator / PRECISION - reward_debt,
  never reported below zero
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


UNIT = 10**18
DONATION_DENOMINATOR = 100_000
ACCUMULATOR_PRECISION = 10**12


def weighted_principal(principal: int, donation_percent: int) -> int:
    """A position's contribution to total_donation_weighted_principal."""
    return principal * donation_percent // DONATION_DENOMINATOR


@dataclass
class Community:
    """A beneficiary community and its yield accumulator.

    Mutable. Metadata (min_donation_percent, recipient) is owned by the
    listing registry; everything else is owned by the distribution engine.
    """
    community_id: str
    min_donation_percent: int
    recipient: str
    total_donations_accrued: int = 0
    accumulator_per_share: int = 0
    total_staked_principal: int = 0
    last_observed_value: Optional[int] = None
    total_donation_weighted_principal: int = 0
    unified_donation_rate: int = 0
    unabsorbed_loss: int = 0

    def recompute_unified_rate(self) -> int:
        """Refresh the blended donation rate from the weighted principal."""
        if self.total_staked_principal == 0:
            self.unified_donation_rate = 0
        else:
            self.unified_donation_rate = (
                self.total_donation_weighted_principal
                * DONATION_DENOMINATOR
                // self.total_staked_principal
            )
        return self.unified_donation_rate


@dataclass
class DepositorPosition:
    """One depositor's stake in one community."""
    user_id: str
    community_id: str
    principal: int = 0
    reward_debt: int = 0
    donation_percent: int = 0

    def accrued(self, accumulator_per_share: int) -> int:
        return self.principal * accumulator_per_share // ACCUMULATOR_PRECISION

    def pending_yield(self, accumulator_per_share: int) -> int:
        """Yield earned since the last checkpoint.

        Clamped at zero: a loss that lowered the accumulator below this
        position's checkpoint leaves nothing to pay, never a debt.
        """
        return max(0, self.accrued(accumulator_per_share) - self.reward_debt)

    def checkpoint(self, accumulator_per_share: int) -> None:
        self.reward_debt = self.accrued(accumulator_per_share)

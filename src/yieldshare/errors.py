"""Error hierarchy for YieldShare.

Every domain failure is a ValueError subclass, so callers that only know
"the operation was rejected" can keep catching ValueError. The finer
classes let the service layer and tests tell the failure families apart:

    PreconditionError  bad input or caller; nothing was touched
    InvariantError     the request is well-formed but would break an
                       accounting invariant
    MigrationError     the coordinator is in the wrong migration state
    TransferFailed     an external value transfer failed; the enclosing
                       phase has been rolled back

All of them are raised before any state is mutated, or after the
mutation has been rolled back. There are no automatic retries.
"""

from __future__ import annotations


class YieldShareError(ValueError):
    """Base class for all rejected YieldShare operations."""


# ------------------------------------------------------------------
# Precondition violations
# ------------------------------------------------------------------

class PreconditionError(YieldShareError):
    """Input or caller failed validation."""


class ZeroAmount(PreconditionError):
    """An amount that must be positive was zero or negative."""


class UnknownCommunity(PreconditionError):
    """No community is registered under the given id."""


class CommunityExists(PreconditionError):
    """A community with the given id is already registered."""


class InvalidDonationPercent(PreconditionError):
    """Donation percent outside [community floor, 100%]."""


class Unauthorized(PreconditionError):
    """Caller does not hold the role required for the operation."""


class NotRequestOwner(PreconditionError):
    """Caller tried to claim a withdrawal request opened by someone else."""


class UnknownRequest(PreconditionError):
    """The withdrawal request id does not resolve to any known request."""


class InvalidAdminFee(PreconditionError):
    """Admin fee outside the configured bounds."""


class NoPosition(PreconditionError):
    """The depositor has no position in the community."""


# ------------------------------------------------------------------
# Invariant protection
# ------------------------------------------------------------------

class InvariantError(YieldShareError):
    """The operation would violate an accounting invariant."""


class InsufficientPrincipal(InvariantError):
    """Unstake amount exceeds the position's principal."""


class InsufficientDonations(InvariantError):
    """No accrued donations are available to withdraw."""


class NothingToClaim(InvariantError):
    """No pending yield or fees are available to claim."""


class WithdrawalNotFinalized(InvariantError):
    """The withdrawal request has not been finalized by its backend yet."""


class AlreadyClaimed(InvariantError):
    """The withdrawal request has already been claimed."""


class InsufficientLiquidity(InvariantError):
    """The coordinator cannot cover a transfer from its held balance."""


# ------------------------------------------------------------------
# Migration state
# ------------------------------------------------------------------

class MigrationError(YieldShareError):
    """Operation not allowed in the coordinator's current migration state."""


class MigrationInProgress(MigrationError):
    """A migration is already in progress."""


class NoMigrationInProgress(MigrationError):
    """finalize_migration was called without initiate_migration."""


class NoActiveBackend(MigrationError):
    """No vault backend is configured."""


# ------------------------------------------------------------------
# External dependencies
# ------------------------------------------------------------------

class TransferFailed(YieldShareError):
    """An external value transfer failed."""


class NonTransferableReceipt(YieldShareError):
    """Receipts can only be minted and burned, never transferred."""


class ReentrancyError(RuntimeError):
    """A guarded entry point was re-entered before the first call returned."""

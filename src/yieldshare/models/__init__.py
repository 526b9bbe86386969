"""Core data models for YieldShare."""

from yieldshare.models.community import (
    ACCUMULATOR_PRECISION,
    DONATION_DENOMINATOR,
    UNIT,
    Community,
    DepositorPosition,
)
from yieldshare.models.withdrawal import (
    DeferredPayout,
    MigrationRecord,
    MigrationState,
    NativeRequest,
    PendingRequest,
    PendingWithdrawal,
    RequestRef,
    WithdrawalRequest,
    parse_request_ref,
)

__all__ = [
    "ACCUMULATOR_PRECISION",
    "DONATION_DENOMINATOR",
    "UNIT",
    "Community",
    "DeferredPayout",
    "DepositorPosition",
    "MigrationRecord",
    "MigrationState",
    "NativeRequest",
    "PendingRequest",
    "PendingWithdrawal",
    "RequestRef",
    "WithdrawalRequest",
    "parse_request_ref",
]

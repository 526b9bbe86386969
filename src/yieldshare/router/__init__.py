"""Vault router — backend contracts, generation registry, migration coordinator."""

from yieldshare.router.backend import PayoutRail, VaultBackend
from yieldshare.router.coordinator import RouterMigrationCoordinator
from yieldshare.router.memory import InMemoryPayoutRail, InMemoryVaultBackend
from yieldshare.router.registry import GenerationRegistry

__all__ = [
    "GenerationRegistry",
    "InMemoryPayoutRail",
    "InMemoryVaultBackend",
    "PayoutRail",
    "RouterMigrationCoordinator",
    "VaultBackend",
]

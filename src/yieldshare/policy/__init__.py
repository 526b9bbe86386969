"""Configuration — vault parameters and role bindings."""

from yieldshare.policy.resolver import PolicyResolver, RoleBindings, VaultParams

__all__ = ["PolicyResolver", "RoleBindings", "VaultParams"]

"""Policy resolver — loads vault parameters and role bindings from config.

Configuration lives in ``config/vault_params.json`` at the project root.
Fixed-point constants (donation denominator, accumulator precision) are
not configurable; they are part of the accounting math and live in
yieldshare.models.community.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from yieldshare.models.community import DONATION_DENOMINATOR


DEFAULT_CONFIG_DIR = Path(__file__).resolve().parents[3] / "config"
PARAMS_FILE = "vault_params.json"


@dataclass(frozen=True)
class VaultParams:
    """Resolved vault parameters."""
    admin_fee_percent: int
    max_admin_fee_percent: int
    pending_request_id_offset: int

    def __post_init__(self) -> None:
        if not 0 <= self.max_admin_fee_percent <= DONATION_DENOMINATOR:
            raise ValueError(
                f"max_admin_fee_percent must be within [0, {DONATION_DENOMINATOR}], "
                f"got {self.max_admin_fee_percent}"
            )
        if not 0 <= self.admin_fee_percent <= self.max_admin_fee_percent:
            raise ValueError(
                f"admin_fee_percent {self.admin_fee_percent} exceeds "
                f"max_admin_fee_percent {self.max_admin_fee_percent}"
            )
        if self.pending_request_id_offset <= 0:
            raise ValueError("pending_request_id_offset must be positive")


@dataclass(frozen=True)
class RoleBindings:
    """Actor ids holding each privileged role."""
    admin: str
    router_manager: str
    listing_authority: str


class PolicyResolver:
    """Resolves vault parameters and roles from a config directory.

    Usage:
        resolver = PolicyResolver.from_config_dir(config_dir)
        params = resolver.vault_params()
        roles = resolver.roles()
    """

    def __init__(self, params: dict[str, Any]) -> None:
        self._params = params

    @classmethod
    def from_config_dir(cls, config_dir: Path = DEFAULT_CONFIG_DIR) -> PolicyResolver:
        """Load from ``vault_params.json`` in the given directory."""
        path = config_dir / PARAMS_FILE
        if not path.exists():
            raise FileNotFoundError(f"Vault parameters not found: {path}")
        return cls(json.loads(path.read_text(encoding="utf-8")))

    def vault_params(self) -> VaultParams:
        vp = self._params["vault_params"]
        return VaultParams(
            admin_fee_percent=int(vp["admin_fee_percent"]),
            max_admin_fee_percent=int(vp["max_admin_fee_percent"]),
            pending_request_id_offset=int(vp["pending_request_id_offset"]),
        )

    def roles(self) -> RoleBindings:
        r = self._params["roles"]
        return RoleBindings(
            admin=r["admin"],
            router_manager=r["router_manager"],
            listing_authority=r["listing_authority"],
        )

    def as_dict(self) -> dict[str, Any]:
        """Return the raw parameter mapping (for display)."""
        return json.loads(json.dumps(self._params))

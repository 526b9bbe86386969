"""Generation registry — append-only arena of retired vault backends.

Every backend that has ever been active gets a generation index. The
active backend's index is ``len(registry)``: the slot it will occupy
once a migration retires it. A native withdrawal request is tagged with
the generation that issued it and is always resolved against that
handle, however many migrations happen afterwards.

Generations are never removed. Migrations are rare administrative
events, so permanent growth is acceptable, and it means a generation
with outstanding unclaimed requests can never be dropped. Outstanding
request counts are tracked per generation for observability.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from yieldshare.errors import UnknownRequest
from yieldshare.router.backend import VaultBackend


class GenerationRegistry:
    """Append-only list of retired backend handles."""

    def __init__(self) -> None:
        self._retired: List[VaultBackend] = []
        self._outstanding: Dict[int, int] = {}

    def __len__(self) -> int:
        return len(self._retired)

    @property
    def next_generation(self) -> int:
        """Generation index of the currently active backend."""
        return len(self._retired)

    def retire(self, backend: VaultBackend) -> int:
        """Append a backend to the registry; returns its generation index."""
        self._retired.append(backend)
        return len(self._retired) - 1

    def handle(
        self,
        generation: int,
        active: Optional[VaultBackend] = None,
    ) -> VaultBackend:
        """Resolve a generation index to its backend handle."""
        if 0 <= generation < len(self._retired):
            return self._retired[generation]
        if generation == len(self._retired) and active is not None:
            return active
        raise UnknownRequest(f"Unknown backend generation: {generation}")

    def retired(self) -> List[VaultBackend]:
        return list(self._retired)

    def retired_value(self) -> int:
        """Value still reported by every retired generation."""
        return sum(b.get_total_deposited_value() for b in self._retired)

    def open_request(self, generation: int) -> None:
        self._outstanding[generation] = self._outstanding.get(generation, 0) + 1

    def close_request(self, generation: int) -> None:
        count = self._outstanding.get(generation, 0)
        if count <= 0:
            raise ValueError(f"No outstanding requests for generation {generation}")
        self._outstanding[generation] = count - 1

    def outstanding(self, generation: int) -> int:
        return self._outstanding.get(generation, 0)

"""Scoped execution lock for state-mutating entry points.

Each component owns one lock. Every public operation that mutates state
holds it for its whole duration, so a synchronous callback fired by an
external transfer cannot re-enter any guarded operation of the same
component before the first call returns.

Usage:
    lock = ExecutionLock("engine")
    with lock.guard("claim_yield"):
        ...
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from yieldshare.errors import ReentrancyError


class ExecutionLock:
    """Non-reentrant call-depth guard shared by a component's entry points."""

    def __init__(self, owner: str) -> None:
        self._owner = owner
        self._held_by: Optional[str] = None

    @property
    def held(self) -> bool:
        return self._held_by is not None

    @contextmanager
    def guard(self, operation: str) -> Iterator[None]:
        if self._held_by is not None:
            raise ReentrancyError(
                f"{self._owner}.{operation} re-entered while "
                f"{self._owner}.{self._held_by} is executing"
            )
        self._held_by = operation
        try:
            yield
        finally:
            self._held_by = None

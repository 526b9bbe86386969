"""Merkle commitment over the vault event log.

The event log is ordered, so leaves keep append order: the root commits
to the sequence of events, not just the set. An odd node at any level is
paired with itself. An empty log commits to the hash of the empty string.

Leaf and node hashes carry the ``sha256:`` prefix used by EventRecord.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import List, Optional, Tuple

from yieldshare.persistence.event_log import EventLog


_PREFIX = "sha256:"


@dataclass(frozen=True)
class MerkleProof:
    """Inclusion proof for the leaf at ``index``."""
    index: int
    leaf_hash: str
    path: List[Tuple[str, str]]  # (sibling_hash, "L" | "R")
    root: str

    def verify(self) -> bool:
        node = self.leaf_hash
        for sibling, side in self.path:
            node = _hash_pair(sibling, node) if side == "L" else _hash_pair(node, sibling)
        return node == self.root


@dataclass(frozen=True)
class LogCommitment:
    """Merkle root of an event log at a given length."""
    root: str
    event_count: int
    last_event_id: Optional[str]

    @property
    def digest_hex(self) -> str:
        """Bare hex digest, as embedded in an anchor transaction."""
        return self.root[len(_PREFIX):]


class MerkleTree:
    """Ordered SHA-256 Merkle tree.

    Usage:
        tree = MerkleTree(log.event_hashes())
        root = tree.root
        proof = tree.inclusion_proof(3)
        assert proof.verify()
    """

    def __init__(self, leaves: Optional[List[str]] = None) -> None:
        self._levels: List[List[str]] = [list(leaves or [])]
        self._build()

    @property
    def leaf_count(self) -> int:
        return len(self._levels[0])

    @property
    def root(self) -> str:
        if not self._levels[0]:
            return _PREFIX + hashlib.sha256(b"").hexdigest()
        return self._levels[-1][0]

    def inclusion_proof(self, index: int) -> MerkleProof:
        if not 0 <= index < self.leaf_count:
            raise IndexError(f"Leaf index {index} out of range (0..{self.leaf_count - 1})")
        path: List[Tuple[str, str]] = []
        position = index
        for level in self._levels[:-1]:
            if position % 2 == 0:
                sibling = level[position + 1] if position + 1 < len(level) else level[position]
                path.append((sibling, "R"))
            else:
                path.append((level[position - 1], "L"))
            position //= 2
        return MerkleProof(
            index=index,
            leaf_hash=self._levels[0][index],
            path=path,
            root=self.root,
        )

    def _build(self) -> None:
        level = self._levels[0]
        while len(level) > 1:
            parents = []
            for i in range(0, len(level), 2):
                left = level[i]
                right = level[i + 1] if i + 1 < len(level) else left
                parents.append(_hash_pair(left, right))
            self._levels.append(parents)
            level = parents


def commit_event_log(log: EventLog) -> LogCommitment:
    """Merkle commitment to every event currently in the log."""
    last = log.last_event
    return LogCommitment(
        root=MerkleTree(log.event_hashes()).root,
        event_count=log.count,
        last_event_id=last.event_id if last is not None else None,
    )


def _hash_pair(left: str, right: str) -> str:
    combined = (left.removeprefix(_PREFIX) + right.removeprefix(_PREFIX)).encode("utf-8")
    return _PREFIX + hashlib.sha256(combined).hexdigest()

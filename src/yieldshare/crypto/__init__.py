"""Event-log commitments — Merkle roots and chain anchoring."""

from yieldshare.crypto.anchor import AnchorRecord, anchor_commitment
from yieldshare.crypto.merkle import LogCommitment, MerkleProof, MerkleTree, commit_event_log

__all__ = [
    "AnchorRecord",
    "LogCommitment",
    "MerkleProof",
    "MerkleTree",
    "anchor_commitment",
    "commit_event_log",
]

"""Accounting — yield distribution, receipts and the community listing."""

from yieldshare.accounting.communities import CommunityRegistry
from yieldshare.accounting.engine import SyncOutcome, YieldDistributionEngine, project_sync
from yieldshare.accounting.receipt_ledger import ReceiptLedger

__all__ = [
    "CommunityRegistry",
    "ReceiptLedger",
    "SyncOutcome",
    "YieldDistributionEngine",
    "project_sync",
]

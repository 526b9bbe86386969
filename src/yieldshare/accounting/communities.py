"""Community registry — the listing surface for beneficiary communities.

Only the listing authority may register a community or rotate its
donation recipient. The registry touches metadata fields only
(min_donation_percent, recipient); accumulator and principal fields
belong to the distribution engine. Communities are never deleted.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from yieldshare.errors import (
    CommunityExists,
    InvalidDonationPercent,
    PreconditionError,
    Unauthorized,
    UnknownCommunity,
)
from yieldshare.models.community import DONATION_DENOMINATOR, Community
from yieldshare.persistence.event_log import EventKind, EventRecorder


class CommunityRegistry:
    """Registry of beneficiary communities.

    Usage:
        registry = CommunityRegistry("listing_authority")
        registry.register_community("listing_authority", "c1", 10_000, "c1_wallet")
        community = registry.get("c1")
    """

    def __init__(
        self,
        listing_authority: str,
        recorder: Optional[EventRecorder] = None,
    ) -> None:
        self._listing_authority = listing_authority
        self._recorder = recorder if recorder is not None else EventRecorder()
        self._communities: Dict[str, Community] = {}

    def register_community(
        self,
        caller: str,
        community_id: str,
        min_donation_percent: int,
        recipient: str,
    ) -> Community:
        self._require_listing_authority(caller)
        community_id = community_id.strip()
        if not community_id:
            raise PreconditionError("Community id must not be empty")
        if community_id in self._communities:
            raise CommunityExists(f"Community already registered: {community_id}")
        if not 0 <= min_donation_percent <= DONATION_DENOMINATOR:
            raise InvalidDonationPercent(
                f"Minimum donation percent {min_donation_percent} outside "
                f"[0, {DONATION_DENOMINATOR}]"
            )
        if not recipient:
            raise PreconditionError("Community recipient must not be empty")

        community = Community(
            community_id=community_id,
            min_donation_percent=min_donation_percent,
            recipient=recipient,
        )
        self._communities[community_id] = community
        self._recorder.record(EventKind.COMMUNITY_REGISTERED, caller, {
            "community_id": community_id,
            "min_donation_percent": min_donation_percent,
            "recipient": recipient,
        })
        return community

    def rotate_recipient(self, caller: str, community_id: str, recipient: str) -> Community:
        self._require_listing_authority(caller)
        if not recipient:
            raise PreconditionError("Community recipient must not be empty")
        community = self.get(community_id)
        previous = community.recipient
        community.recipient = recipient
        self._recorder.record(EventKind.RECIPIENT_ROTATED, caller, {
            "community_id": community_id,
            "previous_recipient": previous,
            "recipient": recipient,
        })
        return community

    def get(self, community_id: str) -> Community:
        community = self._communities.get(community_id)
        if community is None:
            raise UnknownCommunity(f"Unknown community: {community_id}")
        return community

    def __contains__(self, community_id: str) -> bool:
        return community_id in self._communities

    def all(self) -> List[Community]:
        return list(self._communities.values())

    def _require_listing_authority(self, caller: str) -> None:
        if caller != self._listing_authority:
            raise Unauthorized(f"Caller is not the listing authority: {caller}")

"""Persistence boundary used by the dedup components."""

from collections.abc import Iterable
from datetime import timedelta
from typing import Protocol

from listing_dedup.models import (
    CandidateStatus,
    DedupCandidate,
    DedupStats,
    DedupStatus,
    Listing,
    ListingGroup,
    ListingGroupStatus,
    RemovalOutcome,
)
from listing_dedup.utils.geo import BoundingBox


class DedupRepository(Protocol):
    """What the dedup engine needs from storage.

    ``DedupStorage`` is the production implementation; tests run it against
    ``":memory:"``. Conditional transitions return False/None instead of
    raising so that the service decides how to report a lost race.
    """

    async def get_listing(self, listing_id: int) -> Listing | None: ...

    async def get_listings(self, listing_ids: Iterable[int]) -> dict[int, Listing]: ...

    async def find_listings_in_box(
        self, box: BoundingBox, *, exclude_listing_id: int
    ) -> list[Listing]: ...

    async def get_group_listing_ids(self, group_id: int) -> list[int]: ...

    async def get_pending_listing_ids(self, limit: int) -> list[int]: ...

    async def claim_listing(self, listing_id: int) -> bool: ...

    async def release_listing(self, listing_id: int) -> bool: ...

    async def mark_listing_unique(self, listing_id: int) -> bool: ...

    async def mark_listing_completed(
        self,
        listing_id: int,
        *,
        property_id: int | None = None,
        expected: tuple[DedupStatus, ...] | None = None,
    ) -> bool: ...

    async def mark_listing_waiting(self, listing_id: int, group_id: int) -> bool: ...

    async def upsert_candidate(
        self,
        listing_a_id: int,
        listing_b_id: int,
        *,
        coordinate_score: float,
        address_score: float,
        features_score: float,
        overall_score: float,
        distance_meters: float | None,
        status: CandidateStatus,
    ) -> DedupCandidate: ...

    async def get_candidates_between(
        self, listing_id: int, other_listing_ids: Iterable[int]
    ) -> list[DedupCandidate]: ...

    async def get_group(self, group_id: int) -> ListingGroup | None: ...

    async def get_group_listings(self, group_id: int) -> list[Listing]: ...

    async def get_group_candidates(self, group_id: int) -> list[DedupCandidate]: ...

    async def get_groups_by_status(
        self, status: ListingGroupStatus, *, limit: int = 100
    ) -> list[ListingGroup]: ...

    async def create_group(
        self,
        listing_ids: list[int],
        *,
        status: ListingGroupStatus,
        match_score: float,
        matched_property_id: int | None = None,
    ) -> ListingGroup | None: ...

    async def join_group(
        self,
        group_id: int,
        listing_id: int,
        *,
        match_score: float,
        status: ListingGroupStatus,
        expected_member_ids: list[int],
    ) -> bool: ...

    async def approve_group(self, group_id: int) -> list[int] | None: ...

    async def reject_group(self, group_id: int, reason: str | None) -> list[int] | None: ...

    async def remove_listing_from_group(
        self, group_id: int, listing_id: int
    ) -> RemovalOutcome | None: ...

    async def claim_group(self, group_id: int) -> bool: ...

    async def complete_group(self, group_id: int, property_id: int) -> list[int] | None: ...

    async def release_group(
        self,
        group_id: int,
        status: ListingGroupStatus,
        *,
        reason: str | None = None,
    ) -> bool: ...

    async def reopen_group(self, group_id: int) -> bool: ...

    async def mark_property_for_reanalysis(self, property_id: int) -> bool: ...

    async def reset_stale_processing(self, older_than: timedelta) -> tuple[int, int]: ...

    async def get_stats(self) -> DedupStats: ...

"""Decide where a listing goes given its matching candidates."""

from collections.abc import Iterable
from dataclasses import dataclass, field

from listing_dedup.db.repository import DedupRepository
from listing_dedup.logging import get_logger
from listing_dedup.models import (
    CandidateStatus,
    DedupCandidate,
    Listing,
    ListingGroup,
    ListingGroupStatus,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class Unique:
    """No usable match: the listing stands alone."""


@dataclass(frozen=True)
class JoinGroup:
    """The listing matches every current member of an open group."""

    group: ListingGroup
    member_ids: tuple[int, ...]
    match_score: float
    status: ListingGroupStatus


@dataclass(frozen=True)
class SeedGroup:
    """Start a new group, either with an ungrouped peer or against a finished property."""

    status: ListingGroupStatus
    match_score: float
    peer_listing_id: int | None = None
    matched_property_id: int | None = None


@dataclass(frozen=True)
class Wait:
    """The listing matches part of a group, or the group is busy; re-check later."""

    group: ListingGroup
    missing_member_ids: tuple[int, ...] = field(default=())


Resolution = Unique | JoinGroup | SeedGroup | Wait


class GroupConsistencyResolver:
    """Enforce direct pairwise evidence for group membership.

    A listing joins a group only if it has a matching candidate against every
    current member. Matching one member is never taken as evidence of matching
    the others.
    """

    def __init__(self, repository: DedupRepository) -> None:
        self._repository = repository

    async def resolve(self, listing: Listing, candidates: list[DedupCandidate]) -> Resolution:
        """Pick the placement for ``listing``.

        Args:
            listing: The listing being processed (not in any group).
            candidates: Candidates from CandidateMatcherService, any status.

        Returns:
            Unique, JoinGroup, SeedGroup or Wait.
        """
        matching = sorted(
            (c for c in candidates if c.status.is_match),
            key=lambda c: c.strength,
            reverse=True,
        )
        if not matching:
            return Unique()

        counterparts = await self._repository.get_listings(
            c.other_listing_id(listing.id) for c in matching
        )
        groups = await self._load_groups(counterparts.values())

        # Any open group the listing is consistent with wins, strongest first
        checked: dict[int, tuple[tuple[int, ...], tuple[int, ...]]] = {}
        for candidate in matching:
            other = counterparts.get(candidate.other_listing_id(listing.id))
            if other is None or other.listing_group_id is None:
                continue
            group = groups.get(other.listing_group_id)
            if group is None or not group.status.is_open or group.id in checked:
                continue
            member_ids, missing, member_candidates = await self._check_members(listing, group)
            checked[group.id] = (member_ids, missing)
            if not missing:
                return self._join(group, member_ids, member_candidates)

        # Otherwise the strongest counterpart decides
        for candidate in matching:
            other = counterparts.get(candidate.other_listing_id(listing.id))
            if other is None:
                continue
            group = groups.get(other.listing_group_id) if other.listing_group_id else None

            if group is not None:
                if group.status.is_open:
                    _, missing = checked[group.id]
                    logger.debug(
                        "group_consistency_failed",
                        listing_id=listing.id,
                        group_id=group.id,
                        missing_member_ids=list(missing),
                    )
                    return Wait(group=group, missing_member_ids=missing)
                if group.status == ListingGroupStatus.PROCESSING_AI:
                    return Wait(group=group)
                if group.status == ListingGroupStatus.COMPLETED:
                    property_id = other.property_id or group.property_id
                    if property_id is not None:
                        return SeedGroup(
                            status=ListingGroupStatus.for_candidate(candidate.status),
                            match_score=candidate.overall_score,
                            matched_property_id=property_id,
                        )
                # Rejected groups no longer hold listings; a stale reference is ignored
                continue

            if other.property_id is not None:
                return SeedGroup(
                    status=ListingGroupStatus.for_candidate(candidate.status),
                    match_score=candidate.overall_score,
                    matched_property_id=other.property_id,
                )
            return SeedGroup(
                status=ListingGroupStatus.for_candidate(candidate.status),
                match_score=candidate.overall_score,
                peer_listing_id=other.id,
            )

        return Unique()

    async def _load_groups(self, listings: Iterable[Listing]) -> dict[int, ListingGroup]:
        groups: dict[int, ListingGroup] = {}
        for other in listings:
            group_id = other.listing_group_id
            if group_id is None or group_id in groups:
                continue
            group = await self._repository.get_group(group_id)
            if group is not None:
                groups[group_id] = group
        return groups

    async def _check_members(
        self, listing: Listing, group: ListingGroup
    ) -> tuple[tuple[int, ...], tuple[int, ...], list[DedupCandidate]]:
        """Return (member_ids, members without a matching candidate, matching candidates)."""
        member_ids = tuple(await self._repository.get_group_listing_ids(group.id))
        member_candidates = [
            c
            for c in await self._repository.get_candidates_between(listing.id, member_ids)
            if c.status.is_match
        ]
        matched = {c.other_listing_id(listing.id) for c in member_candidates}
        missing = tuple(m for m in member_ids if m not in matched)
        return member_ids, missing, member_candidates

    @staticmethod
    def _join(
        group: ListingGroup,
        member_ids: tuple[int, ...],
        member_candidates: list[DedupCandidate],
    ) -> JoinGroup:
        weakest = min(c.overall_score for c in member_candidates)
        match_score = min(group.match_score, weakest) if group.match_score is not None else weakest
        status = group.status
        if status == ListingGroupStatus.PENDING_AI and any(
            c.status == CandidateStatus.NEEDS_REVIEW for c in member_candidates
        ):
            status = ListingGroupStatus.PENDING_REVIEW
        return JoinGroup(
            group=group,
            member_ids=member_ids,
            match_score=match_score,
            status=status,
        )

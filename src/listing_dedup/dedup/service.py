"""Top-level dedup state machine for listings and listing groups."""

from dataclasses import dataclass
from datetime import timedelta
from enum import StrEnum
from typing import Final

from listing_dedup.db.repository import DedupRepository
from listing_dedup.dedup.matcher import CandidateMatcherService
from listing_dedup.dedup.resolver import (
    GroupConsistencyResolver,
    JoinGroup,
    Resolution,
    SeedGroup,
    Unique,
    Wait,
)
from listing_dedup.errors import (
    GroupNotAvailableError,
    ListingNotAvailableError,
    NotFoundError,
    PreconditionFailedError,
    ResolutionConflictError,
    is_rate_limit_error,
)
from listing_dedup.logging import get_logger
from listing_dedup.models import (
    DedupCandidate,
    DedupStats,
    DedupStatus,
    GeocodeStatus,
    Listing,
    ListingGroup,
    ListingGroupStatus,
    MatchingConfig,
    RemovalOutcome,
)

logger = get_logger(__name__)

# Re-resolve attempts when a concurrent worker invalidates the chosen placement
_MAX_APPLY_ATTEMPTS: Final = 3


class ProcessOutcome(StrEnum):
    """What ``process_listing`` did with a listing."""

    SKIPPED = "skipped"
    COMPLETED = "completed"
    UNIQUE = "unique"
    GROUPED = "grouped"
    WAITING = "waiting"


@dataclass(frozen=True)
class ProcessResult:
    listing_id: int
    outcome: ProcessOutcome
    group_id: int | None = None
    candidates: int = 0


@dataclass(frozen=True)
class GroupDetail:
    """A group with its members and per-pair scores, as shown to reviewers and the AI worker."""

    group: ListingGroup
    listings: list[Listing]
    candidates: list[DedupCandidate]


class DeduplicationService:
    """Owns every listing and group state transition.

    Workers call ``process_listing`` once per normalized listing. Reviewers
    call ``approve_group``/``reject_group``/``remove_listing_from_group``;
    the AI-unification worker calls ``claim_group_for_ai`` and reports back
    through ``complete_group`` or ``fail_group_processing``.
    """

    def __init__(
        self,
        repository: DedupRepository,
        config: MatchingConfig | None = None,
        *,
        matcher: CandidateMatcherService | None = None,
        resolver: GroupConsistencyResolver | None = None,
    ) -> None:
        self._repository = repository
        self._config = config or MatchingConfig()
        self._matcher = matcher or CandidateMatcherService(repository, self._config)
        self._resolver = resolver or GroupConsistencyResolver(repository)

    # ------------------------------------------------------------------
    # Listing processing
    # ------------------------------------------------------------------

    async def process_listing(self, listing_id: int) -> ProcessResult:
        """Run candidate matching and group placement for one listing.

        Args:
            listing_id: Listing to process.

        Returns:
            ProcessResult describing the terminal state reached.

        Raises:
            NotFoundError: If the listing does not exist.
            ListingNotAvailableError: If another worker holds the listing or it
                is not pending/waiting.
            ResolutionConflictError: If concurrent writers kept invalidating
                the placement; the listing is back in Pending.
        """
        listing = await self._require_listing(listing_id)
        log = logger.bind(listing_id=listing_id)

        if listing.listing_group_id is not None:
            log.debug("listing_already_grouped", group_id=listing.listing_group_id)
            return ProcessResult(listing_id, ProcessOutcome.SKIPPED, listing.listing_group_id)

        if listing.property_id is not None:
            if listing.dedup_status != DedupStatus.COMPLETED:
                await self._repository.mark_listing_completed(listing_id)
                log.info("listing_completed_fast_path", property_id=listing.property_id)
            return ProcessResult(listing_id, ProcessOutcome.COMPLETED)

        if listing.geocode_status == GeocodeStatus.NOT_ATTEMPTED:
            log.debug("listing_awaiting_geocode")
            return ProcessResult(listing_id, ProcessOutcome.SKIPPED)

        if not await self._repository.claim_listing(listing_id):
            raise ListingNotAvailableError(listing_id, listing.dedup_status)

        try:
            result = await self._match_and_place(listing_id)
        except Exception:
            await self._repository.release_listing(listing_id)
            log.error("listing_processing_failed", exc_info=True)
            raise

        log.info(
            "listing_processed",
            outcome=result.outcome,
            group_id=result.group_id,
            candidates=result.candidates,
        )
        return result

    async def _match_and_place(self, listing_id: int) -> ProcessResult:
        listing = await self._require_listing(listing_id)
        candidates = await self._matcher.find_candidates(listing)

        for attempt in range(1, _MAX_APPLY_ATTEMPTS + 1):
            resolution = await self._resolver.resolve(listing, candidates)
            result = await self._apply(listing, resolution, len(candidates))
            if result is not None:
                return result

            logger.warning(
                "listing_placement_conflict",
                listing_id=listing_id,
                attempt=attempt,
                resolution=type(resolution).__name__,
            )
            listing = await self._require_listing(listing_id)
            if listing.listing_group_id is not None:
                # Another worker seeded a group with this listing as its peer
                return ProcessResult(
                    listing_id, ProcessOutcome.GROUPED, listing.listing_group_id, len(candidates)
                )

        raise ResolutionConflictError(listing_id, _MAX_APPLY_ATTEMPTS)

    async def _apply(
        self, listing: Listing, resolution: Resolution, n_candidates: int
    ) -> ProcessResult | None:
        """Persist a resolution. Returns None when a concurrent write got there first."""
        match resolution:
            case Unique():
                if not await self._repository.mark_listing_unique(listing.id):
                    return None
                return ProcessResult(listing.id, ProcessOutcome.UNIQUE, None, n_candidates)

            case JoinGroup(group=group, member_ids=member_ids):
                joined = await self._repository.join_group(
                    group.id,
                    listing.id,
                    match_score=resolution.match_score,
                    status=resolution.status,
                    expected_member_ids=list(member_ids),
                )
                if not joined:
                    return None
                logger.info(
                    "listing_joined_group",
                    listing_id=listing.id,
                    group_id=group.id,
                    group_status=resolution.status,
                    match_score=resolution.match_score,
                )
                if group.matched_property_id is not None:
                    await self._flag_reanalysis(group.matched_property_id, group.id)
                return ProcessResult(listing.id, ProcessOutcome.GROUPED, group.id, n_candidates)

            case SeedGroup():
                # The peer was there first, so it is the group's primary listing
                listing_ids = [listing.id]
                if resolution.peer_listing_id is not None:
                    listing_ids.insert(0, resolution.peer_listing_id)
                new_group = await self._repository.create_group(
                    listing_ids,
                    status=resolution.status,
                    match_score=resolution.match_score,
                    matched_property_id=resolution.matched_property_id,
                )
                if new_group is None:
                    return None
                logger.info(
                    "listing_group_created",
                    group_id=new_group.id,
                    listing_ids=listing_ids,
                    group_status=new_group.status,
                    match_score=new_group.match_score,
                    matched_property_id=new_group.matched_property_id,
                )
                if resolution.matched_property_id is not None:
                    await self._flag_reanalysis(resolution.matched_property_id, new_group.id)
                return ProcessResult(
                    listing.id, ProcessOutcome.GROUPED, new_group.id, n_candidates
                )

            case Wait(group=group):
                if not await self._repository.mark_listing_waiting(listing.id, group.id):
                    return None
                logger.info(
                    "listing_waiting_for_group",
                    listing_id=listing.id,
                    group_id=group.id,
                    group_status=group.status,
                    missing_member_ids=list(resolution.missing_member_ids),
                )
                return ProcessResult(listing.id, ProcessOutcome.WAITING, group.id, n_candidates)

        raise TypeError(f"Unknown resolution: {resolution!r}")

    async def _flag_reanalysis(self, property_id: int, group_id: int) -> None:
        await self._repository.mark_property_for_reanalysis(property_id)
        logger.info("property_marked_for_reanalysis", property_id=property_id, group_id=group_id)

    async def complete_unique_listing(self, listing_id: int, property_id: int) -> None:
        """Link a Unique listing to the property created directly from it."""
        if not await self._repository.mark_listing_completed(
            listing_id, property_id=property_id, expected=(DedupStatus.UNIQUE,)
        ):
            listing = await self._require_listing(listing_id)
            raise PreconditionFailedError(
                "listing",
                listing_id,
                expected=DedupStatus.UNIQUE,
                actual=listing.dedup_status,
            )
        logger.info("unique_listing_completed", listing_id=listing_id, property_id=property_id)

    # ------------------------------------------------------------------
    # Human review
    # ------------------------------------------------------------------

    async def approve_group(self, group_id: int) -> None:
        """Confirm a PendingReview group and hand it to the AI worker.

        Raises:
            NotFoundError: If the group does not exist.
            PreconditionFailedError: If the group is not pending review.
        """
        requeued = await self._repository.approve_group(group_id)
        if requeued is None:
            raise await self._group_state_error(group_id, ListingGroupStatus.PENDING_REVIEW)
        logger.info("listing_group_approved", group_id=group_id, requeued_listing_ids=requeued)

    async def reject_group(self, group_id: int, reason: str | None = None) -> None:
        """Reject a PendingReview group and release its listings.

        Raises:
            NotFoundError: If the group does not exist.
            PreconditionFailedError: If the group is not pending review.
        """
        reset = await self._repository.reject_group(group_id, reason)
        if reset is None:
            raise await self._group_state_error(group_id, ListingGroupStatus.PENDING_REVIEW)
        logger.info(
            "listing_group_rejected", group_id=group_id, reason=reason, reset_listing_ids=reset
        )

    async def remove_listing_from_group(self, group_id: int, listing_id: int) -> RemovalOutcome:
        """Take one listing out of a PendingReview group."""
        outcome = await self._repository.remove_listing_from_group(group_id, listing_id)
        if outcome is None:
            group = await self._repository.get_group(group_id)
            if group is None:
                raise NotFoundError("listing_group", group_id)
            if group.status != ListingGroupStatus.PENDING_REVIEW:
                raise PreconditionFailedError(
                    "listing_group",
                    group_id,
                    expected=ListingGroupStatus.PENDING_REVIEW,
                    actual=group.status,
                )
            raise PreconditionFailedError(
                "listing",
                listing_id,
                expected=f"member of group {group_id}",
                actual=None,
                message=f"Listing {listing_id} is not a member of group {group_id}",
            )
        logger.info(
            "listing_removed_from_group",
            group_id=group_id,
            listing_id=listing_id,
            outcome=outcome,
        )
        return outcome

    async def get_group_detail(self, group_id: int) -> GroupDetail:
        group = await self._repository.get_group(group_id)
        if group is None:
            raise NotFoundError("listing_group", group_id)
        return GroupDetail(
            group=group,
            listings=await self._repository.get_group_listings(group_id),
            candidates=await self._repository.get_group_candidates(group_id),
        )

    async def list_groups(
        self, status: ListingGroupStatus, *, limit: int = 100
    ) -> list[ListingGroup]:
        return await self._repository.get_groups_by_status(status, limit=limit)

    # ------------------------------------------------------------------
    # AI-unification worker
    # ------------------------------------------------------------------

    async def claim_group_for_ai(self, group_id: int) -> GroupDetail:
        """Atomically move a PendingAi group to ProcessingAi.

        Returns:
            The claimed group with its members and candidates.

        Raises:
            GroupNotAvailableError: If the group is not pending AI, including
                when another worker claimed it first.
        """
        if not await self._repository.claim_group(group_id):
            group = await self._repository.get_group(group_id)
            logger.warning(
                "listing_group_claim_failed",
                group_id=group_id,
                status=group.status if group else None,
            )
            raise GroupNotAvailableError(group_id, group.status if group else None)
        logger.info("listing_group_claimed", group_id=group_id)
        return await self.get_group_detail(group_id)

    async def complete_group(self, group_id: int, property_id: int) -> None:
        """Record the canonical property produced for a ProcessingAi group."""
        requeued = await self._repository.complete_group(group_id, property_id)
        if requeued is None:
            raise await self._group_state_error(group_id, ListingGroupStatus.PROCESSING_AI)
        logger.info(
            "listing_group_completed",
            group_id=group_id,
            property_id=property_id,
            requeued_listing_ids=requeued,
        )

    async def fail_group_processing(
        self, group_id: int, error: BaseException
    ) -> ListingGroupStatus:
        """Record an AI-unification failure for a ProcessingAi group.

        Rate limiting sends the group back to PendingAi for a retry. Anything
        else goes to PendingReview with the failure as rejection reason.

        Returns:
            The group's new status.
        """
        if is_rate_limit_error(error):
            status = ListingGroupStatus.PENDING_AI
            reason = None
        else:
            status = ListingGroupStatus.PENDING_REVIEW
            reason = f"AI processing failed: {error}"

        if not await self._repository.release_group(group_id, status, reason=reason):
            raise await self._group_state_error(group_id, ListingGroupStatus.PROCESSING_AI)

        if status == ListingGroupStatus.PENDING_AI:
            logger.warning("listing_group_rate_limited", group_id=group_id, error=str(error))
        else:
            logger.error(
                "listing_group_ai_failed",
                group_id=group_id,
                error=str(error),
                error_type=type(error).__name__,
            )
        return status

    async def reopen_group_for_reanalysis(self, group_id: int) -> None:
        """Send a Completed group back to PendingAi so its property is re-unified."""
        if not await self._repository.reopen_group(group_id):
            raise await self._group_state_error(group_id, ListingGroupStatus.COMPLETED)
        logger.info("listing_group_reopened", group_id=group_id)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def get_stats(self) -> DedupStats:
        return await self._repository.get_stats()

    async def reset_stale_processing(self, older_than_minutes: int) -> tuple[int, int]:
        """Requeue listings and groups abandoned mid-processing.

        Returns:
            Tuple of (listings_reset, groups_reset).
        """
        listings_reset, groups_reset = await self._repository.reset_stale_processing(
            timedelta(minutes=older_than_minutes)
        )
        if listings_reset or groups_reset:
            logger.warning(
                "stale_processing_reset",
                listings_reset=listings_reset,
                groups_reset=groups_reset,
                older_than_minutes=older_than_minutes,
            )
        return listings_reset, groups_reset

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _require_listing(self, listing_id: int) -> Listing:
        listing = await self._repository.get_listing(listing_id)
        if listing is None:
            raise NotFoundError("listing", listing_id)
        return listing

    async def _group_state_error(
        self, group_id: int, expected: ListingGroupStatus
    ) -> NotFoundError | PreconditionFailedError:
        group = await self._repository.get_group(group_id)
        if group is None:
            return NotFoundError("listing_group", group_id)
        logger.warning(
            "listing_group_precondition_failed",
            group_id=group_id,
            expected=expected,
            actual=group.status,
        )
        return PreconditionFailedError(
            "listing_group", group_id, expected=expected, actual=group.status
        )

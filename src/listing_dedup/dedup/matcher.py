"""Candidate discovery: geo search, hard-reject filters, scoring and upsert."""

from listing_dedup.db.repository import DedupRepository
from listing_dedup.dedup.geo import GeoCandidateSearch
from listing_dedup.dedup.scoring import ScoreEngine, relative_difference
from listing_dedup.logging import get_logger
from listing_dedup.models import DedupCandidate, Listing, MatchingConfig, NewListing

logger = get_logger(__name__)


def hard_reject_reason(a: NewListing, b: NewListing, config: MatchingConfig) -> str | None:
    """Return why two listings obviously cannot match, or None if they may.

    Each check only fires when both listings report the field. Prices in
    different currencies are not compared.

    Args:
        a: First listing.
        b: Second listing.
        config: Thresholds for price and size differences.

    Returns:
        A short reason code such as ``"property_type"``, or None.
    """
    if a.property_type and b.property_type and a.property_type != b.property_type:
        return "property_type"
    if a.operation_type and b.operation_type and a.operation_type != b.operation_type:
        return "operation_type"
    if (
        a.price
        and b.price
        and a.currency == b.currency
        and relative_difference(a.price, b.price) > config.max_price_difference
    ):
        return "price"
    if (
        a.built_size_m2
        and b.built_size_m2
        and relative_difference(a.built_size_m2, b.built_size_m2) > config.max_size_difference
    ):
        return "built_size"
    if (
        a.lot_size_m2
        and b.lot_size_m2
        and relative_difference(a.lot_size_m2, b.lot_size_m2) > config.max_size_difference
    ):
        return "lot_size"
    return None


class CandidateMatcherService:
    """Create or refresh DedupCandidate rows for one listing.

    Mutates no listing or group state; it only writes candidates, and a
    repeated call for the same neighborhood refreshes the same rows.
    """

    def __init__(
        self,
        repository: DedupRepository,
        config: MatchingConfig | None = None,
        *,
        geo_search: GeoCandidateSearch | None = None,
        score_engine: ScoreEngine | None = None,
    ) -> None:
        self._repository = repository
        self._config = config or MatchingConfig()
        self._geo_search = geo_search or GeoCandidateSearch(repository, self._config)
        self._score_engine = score_engine or ScoreEngine(self._config)

    async def find_candidates(self, listing: Listing) -> list[DedupCandidate]:
        """Score every nearby listing that survives the hard-reject filters.

        Args:
            listing: The listing being processed.

        Returns:
            Persisted candidates (any status), in geo-proximity order.
        """
        if not listing.has_coordinates:
            logger.debug(
                "candidate_search_skipped",
                listing_id=listing.id,
                geocode_status=listing.geocode_status,
            )
            return []

        nearby = await self._geo_search.find_nearby(listing)
        candidates: list[DedupCandidate] = []
        rejected = 0

        for other in nearby:
            reason = hard_reject_reason(listing, other, self._config)
            if reason is not None:
                rejected += 1
                logger.debug(
                    "candidate_hard_rejected",
                    listing_id=listing.id,
                    other_listing_id=other.id,
                    reason=reason,
                )
                continue

            breakdown = self._score_engine.score(listing, other)
            overall = breakdown.overall
            candidate = await self._repository.upsert_candidate(
                listing.id,
                other.id,
                coordinate_score=breakdown.coordinate,
                address_score=breakdown.address,
                features_score=breakdown.features,
                overall_score=overall,
                distance_meters=breakdown.distance_meters,
                status=self._score_engine.determine_status(overall),
            )
            logger.debug(
                "candidate_scored",
                listing_id=listing.id,
                other_listing_id=other.id,
                candidate_id=candidate.id,
                status=candidate.status,
                **breakdown.to_dict(),
            )
            candidates.append(candidate)

        logger.info(
            "candidates_found",
            listing_id=listing.id,
            nearby=len(nearby),
            hard_rejected=rejected,
            candidates=len(candidates),
        )
        return candidates

"""Bounded-radius search for listings near a geocoded listing."""

from listing_dedup.db.repository import DedupRepository
from listing_dedup.logging import get_logger
from listing_dedup.models import Listing, MatchingConfig
from listing_dedup.utils.geo import bounding_box, haversine_distance

logger = get_logger(__name__)


class GeoCandidateSearch:
    """Find geocoded listings within ``geo_search_radius_meters`` of a listing.

    A bounding-box query narrows the rows in SQL; the exact great-circle
    distance then filters the box down to the circle.
    """

    def __init__(self, repository: DedupRepository, config: MatchingConfig | None = None) -> None:
        self._repository = repository
        self._config = config or MatchingConfig()

    async def find_nearby(self, listing: Listing) -> list[Listing]:
        """Return nearby listings, closest first.

        Excludes the listing itself and listings already confirmed different
        from it. A listing without a successful geocode yields no results.
        """
        if not listing.has_coordinates:
            logger.debug("geo_search_skipped_no_coordinates", listing_id=listing.id)
            return []

        lat, lon = listing.latitude, listing.longitude
        assert lat is not None and lon is not None
        radius = self._config.geo_search_radius_meters

        box = bounding_box(lat, lon, radius)
        in_box = await self._repository.find_listings_in_box(box, exclude_listing_id=listing.id)

        nearby: list[tuple[float, Listing]] = []
        for other in in_box:
            distance = haversine_distance(
                lat,
                lon,
                other.latitude,  # type: ignore[arg-type]
                other.longitude,  # type: ignore[arg-type]
            )
            if distance <= radius:
                nearby.append((distance, other))

        nearby.sort(key=lambda item: (item[0], item[1].id))
        results = [other for _, other in nearby[: self._config.max_nearby_results]]

        logger.debug(
            "geo_search_complete",
            listing_id=listing.id,
            in_box=len(in_box),
            within_radius=len(nearby),
            returned=len(results),
        )
        return results

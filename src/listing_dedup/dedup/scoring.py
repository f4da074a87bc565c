"""Pure scoring functions for listing deduplication matching."""

from dataclasses import dataclass
from typing import Final

from listing_dedup.models import CandidateStatus, MatchingConfig, NewListing
from listing_dedup.utils.address import normalize_place_name, normalize_street, text_similarity
from listing_dedup.utils.geo import haversine_distance

# Overall score weights. Features dominate: two listings at the same address
# with different bedroom/size counts are different units of one building.
WEIGHT_COORDINATE: Final = 0.20
WEIGHT_ADDRESS: Final = 0.15
WEIGHT_FEATURES: Final = 0.65

# Address component weights (normalized over components either side reports)
ADDRESS_WEIGHTS: Final[dict[str, float]] = {
    "street": 0.35,
    "neighborhood": 0.35,
    "city": 0.20,
    "state": 0.10,
}

# Feature component weights (normalized over components both sides report)
FEATURE_WEIGHTS: Final[dict[str, float]] = {
    "bedrooms": 0.30,
    "bathrooms": 0.20,
    "built_size": 0.30,
    "lot_size": 0.20,
}

# Score when neither listing reports any comparable feature
NEUTRAL_FEATURES_SCORE: Final = 0.5

# Score at the edge of the size tolerance band
_SIZE_SCORE_AT_TOLERANCE: Final = 0.9

_DEFAULT_CONFIG: Final = MatchingConfig()


@dataclass(frozen=True)
class ScoreBreakdown:
    """Per-dimension similarity of two listings, each in [0, 1]."""

    coordinate: float = 0.0
    address: float = 0.0
    features: float = 0.0
    distance_meters: float | None = None

    @property
    def overall(self) -> float:
        return calculate_overall_score(self.coordinate, self.address, self.features)

    def to_dict(self) -> dict[str, float | None]:
        """Convert to dict for logging."""
        return {
            "coordinate": self.coordinate,
            "address": self.address,
            "features": self.features,
            "overall": self.overall,
            "distance_meters": self.distance_meters,
        }


def calculate_overall_score(coordinate: float, address: float, features: float) -> float:
    """Combine component scores into the weighted overall score.

    Returns:
        ``0.20 * coordinate + 0.15 * address + 0.65 * features`` rounded to
        4 decimal places.
    """
    weighted = (
        WEIGHT_COORDINATE * coordinate + WEIGHT_ADDRESS * address + WEIGHT_FEATURES * features
    )
    return round(weighted, 4)


def determine_status(
    overall_score: float, config: MatchingConfig = _DEFAULT_CONFIG
) -> CandidateStatus:
    """Derive a candidate status from its overall score."""
    if overall_score >= config.auto_match_threshold:
        return CandidateStatus.CONFIRMED_MATCH
    if overall_score >= config.review_threshold:
        return CandidateStatus.NEEDS_REVIEW
    return CandidateStatus.CONFIRMED_DIFFERENT


def listing_distance(a: NewListing, b: NewListing) -> float | None:
    """Distance in meters between two geocoded listings, or None."""
    if not a.has_coordinates or not b.has_coordinates:
        return None
    return haversine_distance(
        a.latitude,  # type: ignore[arg-type]
        a.longitude,  # type: ignore[arg-type]
        b.latitude,  # type: ignore[arg-type]
        b.longitude,  # type: ignore[arg-type]
    )


def relative_difference(a: float, b: float) -> float:
    """Absolute difference of two positive values relative to the smaller one."""
    smaller = min(a, b)
    if smaller <= 0:
        return 0.0 if a == b else float("inf")
    return abs(a - b) / smaller


def coordinate_score(distance_meters: float | None, radius_meters: float) -> float:
    """Linear proximity score: 1.0 at 0m, 0.0 at ``radius_meters`` and beyond."""
    if distance_meters is None or distance_meters >= radius_meters:
        return 0.0
    return 1.0 - distance_meters / radius_meters


def size_score(size1: float, size2: float, tolerance: float, cutoff: float) -> float:
    """Graduated size similarity.

    Returns 1.0 for identical sizes, 0.9 at ``tolerance`` (5%), then decays
    linearly to 0.0 at ``cutoff`` (15%). A 22 m² vs 24 m² pair (9.1%) lands
    around 0.53, well short of a confirmed match.

    Args:
        size1: First size in m².
        size2: Second size in m².
        tolerance: Relative difference that still scores near 1.0.
        cutoff: Relative difference at which the score reaches 0.

    Returns:
        Score in [0.0, 1.0].
    """
    if size1 == size2:
        return 1.0
    pct = relative_difference(size1, size2)
    if pct <= tolerance:
        return 1.0 - (pct / tolerance) * (1.0 - _SIZE_SCORE_AT_TOLERANCE)
    if pct < cutoff:
        return _SIZE_SCORE_AT_TOLERANCE * (cutoff - pct) / (cutoff - tolerance)
    return 0.0


def bedrooms_score(beds1: int, beds2: int) -> float:
    return 1.0 if beds1 == beds2 else 0.0


def bathrooms_score(baths1: float, baths2: float) -> float:
    """Exact bathroom counts score 1.0, a half-bath difference 0.5."""
    diff = abs(baths1 - baths2)
    if diff == 0:
        return 1.0
    if diff <= 0.5:
        return 0.5
    return 0.0


def address_score(a: NewListing, b: NewListing) -> float:
    """Weighted textual similarity of street, neighborhood, city and state.

    Components missing on both sides are ignored; a component reported by
    only one side counts as a mismatch. Matching neighborhood/city gives
    partial credit even when the street differs or is absent.
    """
    pairs = {
        "street": (normalize_street(a.address), normalize_street(b.address)),
        "neighborhood": (
            normalize_place_name(a.neighborhood),
            normalize_place_name(b.neighborhood),
        ),
        "city": (normalize_place_name(a.city), normalize_place_name(b.city)),
        "state": (normalize_place_name(a.state), normalize_place_name(b.state)),
    }

    total_weight = 0.0
    weighted = 0.0
    for field, (value_a, value_b) in pairs.items():
        if not value_a and not value_b:
            continue
        weight = ADDRESS_WEIGHTS[field]
        total_weight += weight
        weighted += weight * text_similarity(value_a, value_b)

    if total_weight == 0:
        return 0.0
    return min(1.0, weighted / total_weight)


def features_score(
    a: NewListing, b: NewListing, config: MatchingConfig = _DEFAULT_CONFIG
) -> float:
    """Structural similarity across bedrooms, bathrooms, built and lot size."""
    components: dict[str, float] = {}

    if a.bedrooms is not None and b.bedrooms is not None:
        components["bedrooms"] = bedrooms_score(a.bedrooms, b.bedrooms)
    if a.bathrooms is not None and b.bathrooms is not None:
        components["bathrooms"] = bathrooms_score(a.bathrooms, b.bathrooms)
    if a.built_size_m2 and b.built_size_m2:
        components["built_size"] = size_score(
            a.built_size_m2, b.built_size_m2, config.size_tolerance, config.max_size_difference
        )
    if a.lot_size_m2 and b.lot_size_m2:
        components["lot_size"] = size_score(
            a.lot_size_m2, b.lot_size_m2, config.size_tolerance, config.max_size_difference
        )

    if not components:
        return NEUTRAL_FEATURES_SCORE

    total_weight = sum(FEATURE_WEIGHTS[name] for name in components)
    weighted = sum(FEATURE_WEIGHTS[name] * value for name, value in components.items())
    return weighted / total_weight


class ScoreEngine:
    """Computes per-dimension similarity between two listings. No I/O."""

    def __init__(self, config: MatchingConfig | None = None) -> None:
        self.config = config or _DEFAULT_CONFIG

    def score(self, a: NewListing, b: NewListing) -> ScoreBreakdown:
        """Score a pair of listings.

        Args:
            a: First listing.
            b: Second listing.

        Returns:
            ScoreBreakdown with coordinate, address and features scores.
        """
        distance = listing_distance(a, b)
        return ScoreBreakdown(
            coordinate=round(
                coordinate_score(distance, self.config.coordinate_score_radius_meters), 4
            ),
            address=round(address_score(a, b), 4),
            features=round(features_score(a, b, self.config), 4),
            distance_meters=round(distance, 2) if distance is not None else None,
        )

    def determine_status(self, overall_score: float) -> CandidateStatus:
        return determine_status(overall_score, self.config)

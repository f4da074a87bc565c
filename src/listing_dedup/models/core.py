"""Core listing, candidate and group models."""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Final, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class GeocodeStatus(StrEnum):
    """Outcome of the (external) geocoding step for a listing."""

    NOT_ATTEMPTED = "not_attempted"
    SUCCESS = "success"
    FAILED = "failed"


class PropertyType(StrEnum):
    """Normalized property types shared by every platform."""

    HOUSE = "house"
    APARTMENT = "apartment"
    OFFICE = "office"
    COMMERCIAL = "commercial"
    LAND = "land"
    WAREHOUSE = "warehouse"
    BUILDING = "building"
    HOTEL = "hotel"
    RANCH = "ranch"
    INDUSTRIAL = "industrial"
    PARKING = "parking"
    ROOM = "room"


class OperationType(StrEnum):
    """Whether a listing offers the property for sale or for rent."""

    SALE = "sale"
    RENT = "rent"


class DedupStatus(StrEnum):
    """Per-listing dedup state.

    Pending -> Processing -> {Unique | Grouped | Waiting} -> Completed.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    UNIQUE = "unique"
    GROUPED = "grouped"
    WAITING = "waiting"
    COMPLETED = "completed"

    @property
    def is_claimable(self) -> bool:
        """Whether a worker may claim a listing in this state."""
        return self in _CLAIMABLE_DEDUP_STATUSES


_CLAIMABLE_DEDUP_STATUSES: Final = frozenset({DedupStatus.PENDING, DedupStatus.WAITING})


class CandidateStatus(StrEnum):
    """Derived status of a pairwise comparison."""

    PENDING = "pending"
    CONFIRMED_MATCH = "confirmed_match"
    NEEDS_REVIEW = "needs_review"
    CONFIRMED_DIFFERENT = "confirmed_different"

    @property
    def is_match(self) -> bool:
        """Whether this status still allows the pair to be grouped."""
        return self in (CandidateStatus.CONFIRMED_MATCH, CandidateStatus.NEEDS_REVIEW)

    @property
    def rank(self) -> int:
        """Strength ordering: higher is a stronger match."""
        return _CANDIDATE_RANK[self]


_CANDIDATE_RANK: Final[dict[CandidateStatus, int]] = {
    CandidateStatus.CONFIRMED_MATCH: 2,
    CandidateStatus.NEEDS_REVIEW: 1,
    CandidateStatus.PENDING: 0,
    CandidateStatus.CONFIRMED_DIFFERENT: -1,
}


class ListingGroupStatus(StrEnum):
    """Lifecycle of a listing group."""

    PENDING_REVIEW = "pending_review"
    PENDING_AI = "pending_ai"
    PROCESSING_AI = "processing_ai"
    COMPLETED = "completed"
    REJECTED = "rejected"

    @property
    def is_open(self) -> bool:
        """Whether new listings may still join a group in this state."""
        return self in (ListingGroupStatus.PENDING_REVIEW, ListingGroupStatus.PENDING_AI)

    @classmethod
    def for_candidate(cls, status: CandidateStatus) -> "ListingGroupStatus":
        """Group status implied by the strongest candidate that justified it."""
        if status == CandidateStatus.CONFIRMED_MATCH:
            return cls.PENDING_AI
        return cls.PENDING_REVIEW


class RemovalOutcome(StrEnum):
    """What happened to a group after a listing was removed from it during review."""

    KEPT = "kept"
    DISSOLVED = "dissolved"
    DELETED = "deleted"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class NewListing(BaseModel):
    """A structured listing as produced by the normalization pipeline.

    Every platform's markup is normalized into this one schema; the dedup
    engine never branches on platform identity.
    """

    model_config = ConfigDict(frozen=True)

    platform: str = Field(min_length=1, description="Source platform identifier")
    external_id: str | None = Field(default=None, description="ID on the source platform")
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    geocode_status: GeocodeStatus = GeocodeStatus.NOT_ATTEMPTED
    property_type: PropertyType | None = None
    operation_type: OperationType | None = None
    price: float | None = Field(default=None, ge=0)
    currency: str = Field(default="MXN", min_length=3, max_length=3)
    built_size_m2: float | None = Field(default=None, ge=0)
    lot_size_m2: float | None = Field(default=None, ge=0)
    bedrooms: int | None = Field(default=None, ge=0)
    bathrooms: float | None = Field(default=None, ge=0)
    address: str | None = None
    neighborhood: str | None = Field(default=None, description="Colonia / neighborhood")
    city: str | None = None
    state: str | None = None

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        """Normalize currency codes to uppercase."""
        return v.upper()

    @model_validator(mode="after")
    def check_coordinates(self) -> Self:
        """Ensure both lat and lon are present or both are absent."""
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("Both latitude and longitude must be provided, or neither")
        return self

    @property
    def has_coordinates(self) -> bool:
        """Whether this listing can take part in geo candidate search."""
        return (
            self.geocode_status == GeocodeStatus.SUCCESS
            and self.latitude is not None
            and self.longitude is not None
        )


class Listing(NewListing):
    """A stored listing with its dedup state."""

    id: int
    dedup_status: DedupStatus = DedupStatus.PENDING
    listing_group_id: int | None = None
    waiting_for_group_id: int | None = None
    is_primary_in_group: bool = False
    property_id: int | None = None
    dedup_checked_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class DedupCandidate(BaseModel):
    """A scored comparison between exactly two listings.

    The pair is stored in canonical order (``listing_a_id < listing_b_id``) so
    the same unordered pair can never be recorded twice.
    """

    model_config = ConfigDict(frozen=True)

    id: int
    listing_a_id: int
    listing_b_id: int
    coordinate_score: float = Field(ge=0, le=1)
    address_score: float = Field(ge=0, le=1)
    features_score: float = Field(ge=0, le=1)
    overall_score: float = Field(ge=0, le=1)
    distance_meters: float | None = Field(default=None, ge=0)
    status: CandidateStatus
    resolved_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def check_canonical_order(self) -> Self:
        """Ensure the pair is stored lower id first."""
        if self.listing_a_id >= self.listing_b_id:
            raise ValueError("listing_a_id must be lower than listing_b_id")
        return self

    def other_listing_id(self, listing_id: int) -> int:
        """Return the counterpart of ``listing_id`` in this pair."""
        if listing_id == self.listing_a_id:
            return self.listing_b_id
        if listing_id == self.listing_b_id:
            return self.listing_a_id
        raise ValueError(f"Listing {listing_id} is not part of candidate {self.id}")

    @property
    def strength(self) -> tuple[int, float]:
        """Sort key: status rank first, then overall score."""
        return (self.status.rank, self.overall_score)


class ListingGroup(BaseModel):
    """A cluster of listings believed to be one physical property."""

    model_config = ConfigDict(frozen=True)

    id: int
    status: ListingGroupStatus
    match_score: float | None = Field(default=None, ge=0, le=1)
    matched_property_id: int | None = None
    property_id: int | None = None
    rejection_reason: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class PropertyRecord(BaseModel):
    """The dedup engine's view of an external canonical property."""

    model_config = ConfigDict(frozen=True)

    id: int
    needs_reanalysis: bool = False
    created_at: datetime = Field(default_factory=_utcnow)


class MatchingConfig(BaseModel):
    """Tunables for candidate search, scoring and status derivation."""

    model_config = ConfigDict(frozen=True)

    geo_search_radius_meters: float = Field(default=150.0, gt=0)
    coordinate_score_radius_meters: float = Field(default=150.0, gt=0)
    max_nearby_results: int = Field(default=25, ge=1)
    auto_match_threshold: float = Field(default=0.92, gt=0, le=1)
    review_threshold: float = Field(default=0.65, gt=0, le=1)
    max_price_difference: float = Field(default=0.20, gt=0)
    max_size_difference: float = Field(default=0.15, gt=0)
    size_tolerance: float = Field(default=0.05, gt=0)

    @model_validator(mode="after")
    def check_threshold_order(self) -> Self:
        """Ensure review_threshold < auto_match_threshold."""
        if self.review_threshold >= self.auto_match_threshold:
            raise ValueError("review_threshold must be < auto_match_threshold")
        return self

    @model_validator(mode="after")
    def check_size_curve(self) -> Self:
        """Ensure the full-credit size band sits inside the hard-reject band."""
        if self.size_tolerance >= self.max_size_difference:
            raise ValueError("size_tolerance must be < max_size_difference")
        return self


class DedupStats(BaseModel):
    """Counts of listings and groups by status."""

    model_config = ConfigDict(frozen=True)

    listings: dict[DedupStatus, int] = Field(default_factory=dict)
    groups: dict[ListingGroupStatus, int] = Field(default_factory=dict)

    def listing_count(self, status: DedupStatus) -> int:
        return self.listings.get(status, 0)

    def group_count(self, status: ListingGroupStatus) -> int:
        return self.groups.get(status, 0)

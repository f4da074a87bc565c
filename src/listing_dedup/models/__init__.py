"""Pydantic models for listings, candidates, groups and matching config."""

from listing_dedup.models.core import (
    CandidateStatus,
    DedupCandidate,
    DedupStats,
    DedupStatus,
    GeocodeStatus,
    Listing,
    ListingGroup,
    ListingGroupStatus,
    MatchingConfig,
    NewListing,
    OperationType,
    PropertyRecord,
    PropertyType,
    RemovalOutcome,
)

__all__ = [
    "CandidateStatus",
    "DedupCandidate",
    "DedupStats",
    "DedupStatus",
    "GeocodeStatus",
    "Listing",
    "ListingGroup",
    "ListingGroupStatus",
    "MatchingConfig",
    "NewListing",
    "OperationType",
    "PropertyRecord",
    "PropertyType",
    "RemovalOutcome",
]

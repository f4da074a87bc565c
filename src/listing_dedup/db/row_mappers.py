"""Shared row-mapping utilities for database modules."""

from __future__ import annotations

from typing import Any, Final

import aiosqlite

from listing_dedup.models import (
    DedupCandidate,
    Listing,
    ListingGroup,
    NewListing,
    PropertyRecord,
)

# NewListing fields persisted as-is, in column order
LISTING_DATA_COLUMNS: Final = tuple(NewListing.model_fields)


def build_listing_insert(listing: NewListing, *, now: str) -> tuple[list[str], list[Any]]:
    """Build column names and values for inserting a normalized listing.

    Args:
        listing: Structured listing from the normalization pipeline.
        now: ISO timestamp used for created_at/updated_at.

    Returns:
        Tuple of (column_names, values).
    """
    data = listing.model_dump(mode="json")
    columns = [*LISTING_DATA_COLUMNS, "dedup_status", "created_at", "updated_at"]
    values = [*(data[c] for c in LISTING_DATA_COLUMNS), "pending", now, now]
    return columns, values


def row_to_listing(row: aiosqlite.Row) -> Listing:
    """Convert a listings row to a Listing model."""
    return Listing.model_validate(dict(row))


def row_to_candidate(row: aiosqlite.Row) -> DedupCandidate:
    """Convert a dedup_candidates row to a DedupCandidate model."""
    return DedupCandidate.model_validate(dict(row))


def row_to_group(row: aiosqlite.Row) -> ListingGroup:
    """Convert a listing_groups row to a ListingGroup model."""
    return ListingGroup.model_validate(dict(row))


def row_to_property(row: aiosqlite.Row) -> PropertyRecord:
    """Convert a properties row to a PropertyRecord model."""
    return PropertyRecord.model_validate(dict(row))


def placeholders(values: list[Any] | tuple[Any, ...] | set[Any]) -> str:
    """Return ``?, ?, ?`` for an IN clause of the given size."""
    return ", ".join("?" for _ in values)

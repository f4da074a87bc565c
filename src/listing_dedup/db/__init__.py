"""Database storage for listings, candidates and listing groups."""

from listing_dedup.db.repository import DedupRepository
from listing_dedup.db.storage import DedupStorage

__all__ = ["DedupRepository", "DedupStorage"]

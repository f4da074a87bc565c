"""SQLite storage for listings, dedup candidates and listing groups."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Iterable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import aiosqlite

from listing_dedup.db.row_mappers import (
    build_listing_insert,
    placeholders,
    row_to_candidate,
    row_to_group,
    row_to_listing,
    row_to_property,
)
from listing_dedup.logging import get_logger
from listing_dedup.models import (
    CandidateStatus,
    DedupCandidate,
    DedupStats,
    DedupStatus,
    GeocodeStatus,
    Listing,
    ListingGroup,
    ListingGroupStatus,
    NewListing,
    PropertyRecord,
    RemovalOutcome,
)
from listing_dedup.utils.geo import BoundingBox

logger = get_logger(__name__)


def _now() -> str:
    return datetime.now(UTC).isoformat()


class DedupStorage:
    """SQLite-based persistence for the dedup engine.

    Every multi-statement state change runs inside ``_transaction``, which
    serialises writers on the shared connection and commits or rolls back as
    a unit. Conditional transitions (claims, joins) are expressed as
    ``UPDATE ... WHERE status = ...`` and report success via rowcount.
    """

    def __init__(self, db_path: str) -> None:
        """Initialize storage with database path.

        Args:
            db_path: Path to SQLite database file, or ":memory:" for in-memory.
        """
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()
        self._ensure_directory()

    def _ensure_directory(self) -> None:
        """Ensure the directory for the database exists."""
        if self.db_path != ":memory:":
            path = Path(self.db_path)
            path.parent.mkdir(parents=True, exist_ok=True)

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create the database connection."""
        if self._conn is None:
            self._conn = await aiosqlite.connect(self.db_path)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA busy_timeout=5000")
            await self._conn.execute("PRAGMA synchronous=NORMAL")
            await self._conn.execute("PRAGMA foreign_keys=ON")
        return self._conn

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    @contextlib.asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a block of writes atomically on the shared connection."""
        async with self._write_lock:
            conn = await self._get_connection()
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            await conn.commit()

    async def initialize(self) -> None:
        """Initialize the database schema."""
        async with self._transaction() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS properties (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    needs_reanalysis BOOLEAN NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS listing_groups (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    status TEXT NOT NULL,
                    match_score REAL,
                    matched_property_id INTEGER REFERENCES properties(id),
                    property_id INTEGER REFERENCES properties(id),
                    rejection_reason TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_listing_groups_status
                ON listing_groups(status)
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS listings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    platform TEXT NOT NULL,
                    external_id TEXT,
                    latitude REAL,
                    longitude REAL,
                    geocode_status TEXT NOT NULL DEFAULT 'not_attempted',
                    property_type TEXT,
                    operation_type TEXT,
                    price REAL,
                    currency TEXT NOT NULL DEFAULT 'MXN',
                    built_size_m2 REAL,
                    lot_size_m2 REAL,
                    bedrooms INTEGER,
                    bathrooms REAL,
                    address TEXT,
                    neighborhood TEXT,
                    city TEXT,
                    state TEXT,
                    dedup_status TEXT NOT NULL DEFAULT 'pending',
                    listing_group_id INTEGER
                        REFERENCES listing_groups(id) ON DELETE SET NULL,
                    waiting_for_group_id INTEGER
                        REFERENCES listing_groups(id) ON DELETE SET NULL,
                    is_primary_in_group BOOLEAN NOT NULL DEFAULT 0,
                    property_id INTEGER REFERENCES properties(id),
                    dedup_checked_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE(platform, external_id)
                )
            """)
            for name, column in [
                ("idx_listings_dedup_status", "dedup_status"),
                ("idx_listings_group", "listing_group_id"),
                ("idx_listings_waiting_for", "waiting_for_group_id"),
                ("idx_listings_property", "property_id"),
                ("idx_listings_coordinates", "latitude, longitude"),
            ]:
                await conn.execute(f"CREATE INDEX IF NOT EXISTS {name} ON listings({column})")

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS dedup_candidates (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    listing_a_id INTEGER NOT NULL
                        REFERENCES listings(id) ON DELETE CASCADE,
                    listing_b_id INTEGER NOT NULL
                        REFERENCES listings(id) ON DELETE CASCADE,
                    coordinate_score REAL NOT NULL,
                    address_score REAL NOT NULL,
                    features_score REAL NOT NULL,
                    overall_score REAL NOT NULL,
                    distance_meters REAL,
                    status TEXT NOT NULL,
                    resolved_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE(listing_a_id, listing_b_id),
                    CHECK(listing_a_id < listing_b_id)
                )
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_dedup_candidates_b
                ON dedup_candidates(listing_b_id)
            """)

        logger.info("database_initialized", db_path=self.db_path)

    # ------------------------------------------------------------------
    # Properties (external entity; only the reanalysis flag is ours)
    # ------------------------------------------------------------------

    async def create_property(self) -> PropertyRecord:
        """Create a canonical property placeholder row.

        Returns:
            The stored PropertyRecord.
        """
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "INSERT INTO properties (needs_reanalysis, created_at) VALUES (0, ?)",
                (_now(),),
            )
            property_id = cursor.lastrowid
        prop = await self.get_property(property_id)  # type: ignore[arg-type]
        assert prop is not None
        return prop

    async def get_property(self, property_id: int) -> PropertyRecord | None:
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT * FROM properties WHERE id = ?", (property_id,))
        row = await cursor.fetchone()
        return row_to_property(row) if row else None

    async def mark_property_for_reanalysis(self, property_id: int) -> bool:
        """Set needs_reanalysis on a property.

        Returns:
            True if the property exists.
        """
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "UPDATE properties SET needs_reanalysis = 1 WHERE id = ?",
                (property_id,),
            )
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    async def add_listing(self, listing: NewListing) -> Listing:
        """Store a normalized listing in Pending state.

        Args:
            listing: Structured listing from the normalization pipeline.

        Returns:
            The stored Listing with its assigned id.
        """
        columns, values = build_listing_insert(listing, now=_now())
        col_list = ", ".join(columns)
        async with self._transaction() as conn:
            cursor = await conn.execute(
                f"INSERT INTO listings ({col_list}) VALUES ({placeholders(values)})",
                values,
            )
            listing_id = cursor.lastrowid
        stored = await self.get_listing(listing_id)  # type: ignore[arg-type]
        assert stored is not None
        return stored

    async def get_listing(self, listing_id: int) -> Listing | None:
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT * FROM listings WHERE id = ?", (listing_id,))
        row = await cursor.fetchone()
        return row_to_listing(row) if row else None

    async def get_listings(self, listing_ids: Iterable[int]) -> dict[int, Listing]:
        """Load several listings keyed by id (unknown ids are omitted)."""
        ids = list(set(listing_ids))
        if not ids:
            return {}
        conn = await self._get_connection()
        cursor = await conn.execute(
            f"SELECT * FROM listings WHERE id IN ({placeholders(ids)})",
            ids,
        )
        rows = await cursor.fetchall()
        return {row["id"]: row_to_listing(row) for row in rows}

    async def find_listings_in_box(
        self,
        box: BoundingBox,
        *,
        exclude_listing_id: int,
    ) -> list[Listing]:
        """Load geocoded listings inside a bounding box.

        Excludes ``exclude_listing_id`` itself and every listing already
        confirmed different from it.
        """
        conn = await self._get_connection()
        cursor = await conn.execute(
            """
            SELECT * FROM listings
            WHERE geocode_status = ?
              AND latitude IS NOT NULL AND longitude IS NOT NULL
              AND latitude BETWEEN ? AND ?
              AND longitude BETWEEN ? AND ?
              AND id != ?
              AND id NOT IN (
                  SELECT CASE WHEN listing_a_id = ? THEN listing_b_id ELSE listing_a_id END
                  FROM dedup_candidates
                  WHERE (listing_a_id = ? OR listing_b_id = ?) AND status = ?
              )
            """,
            (
                GeocodeStatus.SUCCESS.value,
                box.min_lat,
                box.max_lat,
                box.min_lon,
                box.max_lon,
                exclude_listing_id,
                exclude_listing_id,
                exclude_listing_id,
                exclude_listing_id,
                CandidateStatus.CONFIRMED_DIFFERENT.value,
            ),
        )
        rows = await cursor.fetchall()
        return [row_to_listing(row) for row in rows]

    async def get_group_listings(self, group_id: int) -> list[Listing]:
        """Load the current members of a group, primary first."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            """
            SELECT * FROM listings WHERE listing_group_id = ?
            ORDER BY is_primary_in_group DESC, id
            """,
            (group_id,),
        )
        rows = await cursor.fetchall()
        return [row_to_listing(row) for row in rows]

    async def get_group_listing_ids(self, group_id: int) -> list[int]:
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT id FROM listings WHERE listing_group_id = ? ORDER BY id",
            (group_id,),
        )
        return [row["id"] for row in await cursor.fetchall()]

    async def get_listing_ids_for_property(self, property_id: int) -> list[int]:
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT id FROM listings WHERE property_id = ? ORDER BY id",
            (property_id,),
        )
        return [row["id"] for row in await cursor.fetchall()]

    async def get_pending_listing_ids(self, limit: int) -> list[int]:
        """Oldest listings awaiting dedup processing (geocoding must have run)."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            """
            SELECT id FROM listings
            WHERE dedup_status = ? AND geocode_status != ?
            ORDER BY id LIMIT ?
            """,
            (DedupStatus.PENDING.value, GeocodeStatus.NOT_ATTEMPTED.value, limit),
        )
        return [row["id"] for row in await cursor.fetchall()]

    async def claim_listing(self, listing_id: int) -> bool:
        """Atomically move a Pending/Waiting listing to Processing.

        Returns:
            True if this caller won the claim.
        """
        claimable = [s.value for s in DedupStatus if s.is_claimable]
        async with self._transaction() as conn:
            cursor = await conn.execute(
                f"""
                UPDATE listings SET dedup_status = ?, updated_at = ?
                WHERE id = ? AND dedup_status IN ({placeholders(claimable)})
                """,
                [DedupStatus.PROCESSING.value, _now(), listing_id, *claimable],
            )
            return cursor.rowcount == 1

    async def release_listing(self, listing_id: int) -> bool:
        """Return a Processing listing to Pending (after a failed attempt)."""
        return await self._transition_listing(
            listing_id, DedupStatus.PENDING, expected=(DedupStatus.PROCESSING,)
        )

    async def mark_listing_unique(self, listing_id: int) -> bool:
        return await self._transition_listing(
            listing_id, DedupStatus.UNIQUE, expected=(DedupStatus.PROCESSING,)
        )

    async def mark_listing_completed(
        self,
        listing_id: int,
        *,
        property_id: int | None = None,
        expected: tuple[DedupStatus, ...] | None = None,
    ) -> bool:
        """Mark a listing Completed, optionally linking it to a property.

        Args:
            listing_id: Listing to update.
            property_id: Property to link; keeps the current link when None.
            expected: Statuses the listing must currently be in (any if None).

        Returns:
            True if the listing was updated.
        """
        now = _now()
        sql = """
            UPDATE listings
            SET dedup_status = ?, property_id = COALESCE(?, property_id),
                waiting_for_group_id = NULL, dedup_checked_at = ?, updated_at = ?
            WHERE id = ?
        """
        params: list[object] = [DedupStatus.COMPLETED.value, property_id, now, now, listing_id]
        if expected:
            sql += f" AND dedup_status IN ({placeholders(expected)})"
            params.extend(s.value for s in expected)
        async with self._transaction() as conn:
            cursor = await conn.execute(sql, params)
            return cursor.rowcount == 1

    async def mark_listing_waiting(self, listing_id: int, group_id: int) -> bool:
        """Park a Processing listing until ``group_id`` changes."""
        now = _now()
        async with self._transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE listings
                SET dedup_status = ?, waiting_for_group_id = ?,
                    dedup_checked_at = ?, updated_at = ?
                WHERE id = ? AND dedup_status = ?
                """,
                (
                    DedupStatus.WAITING.value,
                    group_id,
                    now,
                    now,
                    listing_id,
                    DedupStatus.PROCESSING.value,
                ),
            )
            return cursor.rowcount == 1

    async def _transition_listing(
        self,
        listing_id: int,
        status: DedupStatus,
        *,
        expected: tuple[DedupStatus, ...],
    ) -> bool:
        now = _now()
        async with self._transaction() as conn:
            cursor = await conn.execute(
                f"""
                UPDATE listings
                SET dedup_status = ?, waiting_for_group_id = NULL,
                    dedup_checked_at = ?, updated_at = ?
                WHERE id = ? AND dedup_status IN ({placeholders(expected)})
                """,
                [status.value, now, now, listing_id, *(s.value for s in expected)],
            )
            return cursor.rowcount == 1

    # ------------------------------------------------------------------
    # Candidates
    # ------------------------------------------------------------------

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
    ) -> DedupCandidate:
        """Insert or refresh the candidate for an unordered listing pair.

        The pair is stored lower id first, so evaluating A-against-B and
        B-against-A hit the same row. Scores are always refreshed; the status
        is only refreshed while no review action has resolved the pair.

        Returns:
            The stored candidate.
        """
        a_id, b_id = sorted((listing_a_id, listing_b_id))
        if a_id == b_id:
            raise ValueError("A listing cannot be compared with itself")
        now = _now()
        async with self._transaction() as conn:
            await conn.execute(
                """
                INSERT INTO dedup_candidates (
                    listing_a_id, listing_b_id, coordinate_score, address_score,
                    features_score, overall_score, distance_meters, status,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(listing_a_id, listing_b_id) DO UPDATE SET
                    coordinate_score = excluded.coordinate_score,
                    address_score = excluded.address_score,
                    features_score = excluded.features_score,
                    overall_score = excluded.overall_score,
                    distance_meters = excluded.distance_meters,
                    status = CASE
                        WHEN dedup_candidates.resolved_at IS NULL THEN excluded.status
                        ELSE dedup_candidates.status
                    END,
                    updated_at = excluded.updated_at
                """,
                (
                    a_id,
                    b_id,
                    coordinate_score,
                    address_score,
                    features_score,
                    overall_score,
                    distance_meters,
                    status.value,
                    now,
                    now,
                ),
            )
            cursor = await conn.execute(
                "SELECT * FROM dedup_candidates WHERE listing_a_id = ? AND listing_b_id = ?",
                (a_id, b_id),
            )
            row = await cursor.fetchone()
        assert row is not None
        return row_to_candidate(row)

    async def get_candidate(self, listing_id: int, other_listing_id: int) -> DedupCandidate | None:
        a_id, b_id = sorted((listing_id, other_listing_id))
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT * FROM dedup_candidates WHERE listing_a_id = ? AND listing_b_id = ?",
            (a_id, b_id),
        )
        row = await cursor.fetchone()
        return row_to_candidate(row) if row else None

    async def get_candidates_between(
        self, listing_id: int, other_listing_ids: Iterable[int]
    ) -> list[DedupCandidate]:
        """Candidates pairing ``listing_id`` with any of ``other_listing_ids``."""
        others = [i for i in set(other_listing_ids) if i != listing_id]
        if not others:
            return []
        conn = await self._get_connection()
        marks = placeholders(others)
        cursor = await conn.execute(
            f"""
            SELECT * FROM dedup_candidates
            WHERE (listing_a_id = ? AND listing_b_id IN ({marks}))
               OR (listing_b_id = ? AND listing_a_id IN ({marks}))
            ORDER BY id
            """,
            [listing_id, *others, listing_id, *others],
        )
        return [row_to_candidate(row) for row in await cursor.fetchall()]

    async def get_group_candidates(self, group_id: int) -> list[DedupCandidate]:
        """Per-pair scores behind a group (review surface).

        Covers every pair of current members and, for a group matched against
        an existing property, each member against that property's listings.
        """
        conn = await self._get_connection()
        cursor = await conn.execute(
            """
            SELECT c.* FROM dedup_candidates c
            JOIN listings a ON a.id = c.listing_a_id
            JOIN listings b ON b.id = c.listing_b_id
            WHERE (a.listing_group_id = :group_id AND b.listing_group_id = :group_id)
               OR (a.listing_group_id = :group_id AND b.property_id = (
                      SELECT matched_property_id FROM listing_groups WHERE id = :group_id))
               OR (b.listing_group_id = :group_id AND a.property_id = (
                      SELECT matched_property_id FROM listing_groups WHERE id = :group_id))
            ORDER BY c.id
            """,
            {"group_id": group_id},
        )
        return [row_to_candidate(row) for row in await cursor.fetchall()]

    async def _set_candidate_status_between(
        self,
        conn: aiosqlite.Connection,
        ids_a: list[int],
        ids_b: list[int],
        status: CandidateStatus,
        *,
        only_status: CandidateStatus | None = None,
    ) -> int:
        """Resolve every candidate pairing a listing in ``ids_a`` with one in ``ids_b``."""
        if not ids_a or not ids_b:
            return 0
        now = _now()
        marks_a = placeholders(ids_a)
        marks_b = placeholders(ids_b)
        sql = f"""
            UPDATE dedup_candidates
            SET status = ?, resolved_at = ?, updated_at = ?
            WHERE ((listing_a_id IN ({marks_a}) AND listing_b_id IN ({marks_b}))
                OR (listing_a_id IN ({marks_b}) AND listing_b_id IN ({marks_a})))
        """
        params: list[object] = [status.value, now, now, *ids_a, *ids_b, *ids_b, *ids_a]
        if only_status is not None:
            sql += " AND status = ?"
            params.append(only_status.value)
        cursor = await conn.execute(sql, params)
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    async def get_group(self, group_id: int) -> ListingGroup | None:
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT * FROM listing_groups WHERE id = ?", (group_id,))
        row = await cursor.fetchone()
        return row_to_group(row) if row else None

    async def get_groups_by_status(
        self, status: ListingGroupStatus, *, limit: int = 100
    ) -> list[ListingGroup]:
        """Groups in a status, oldest first (AI worker and review queues)."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT * FROM listing_groups WHERE status = ? ORDER BY id LIMIT ?",
            (status.value, limit),
        )
        return [row_to_group(row) for row in await cursor.fetchall()]

    async def create_group(
        self,
        listing_ids: list[int],
        *,
        status: ListingGroupStatus,
        match_score: float,
        matched_property_id: int | None = None,
    ) -> ListingGroup | None:
        """Create a group and attach listings to it, the first one as primary.

        Every listing must still be ungrouped and unlinked to a property; if
        another worker grouped or completed any of them first, nothing is
        written.

        Returns:
            The new group, or None when a listing was taken meanwhile.
        """
        now = _now()
        async with self._transaction() as conn:
            cursor = await conn.execute(
                f"""
                SELECT COUNT(*) AS n FROM listings
                WHERE id IN ({placeholders(listing_ids)}) AND listing_group_id IS NULL
                  AND property_id IS NULL AND dedup_status != ?
                """,
                [*listing_ids, DedupStatus.COMPLETED.value],
            )
            row = await cursor.fetchone()
            if row is None or row["n"] != len(set(listing_ids)):
                return None

            cursor = await conn.execute(
                """
                INSERT INTO listing_groups
                    (status, match_score, matched_property_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (status.value, match_score, matched_property_id, now, now),
            )
            group_id = cursor.lastrowid
            for position, listing_id in enumerate(listing_ids):
                await conn.execute(
                    """
                    UPDATE listings
                    SET listing_group_id = ?, is_primary_in_group = ?, dedup_status = ?,
                        waiting_for_group_id = NULL, dedup_checked_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (group_id, position == 0, DedupStatus.GROUPED.value, now, now, listing_id),
                )
            cursor = await conn.execute(
                "SELECT * FROM listing_groups WHERE id = ?", (group_id,)
            )
            group_row = await cursor.fetchone()
        assert group_row is not None
        return row_to_group(group_row)

    async def join_group(
        self,
        group_id: int,
        listing_id: int,
        *,
        match_score: float,
        status: ListingGroupStatus,
        expected_member_ids: list[int],
    ) -> bool:
        """Attach an ungrouped listing to an open group.

        The group's match_score drops to the weakest link seen so far and its
        status is set to ``status``. The membership must still be exactly
        ``expected_member_ids``, the set the listing was checked against.

        Returns:
            False if the group is no longer open, its membership changed, or
            the listing was grouped by someone else meanwhile.
        """
        now = _now()
        async with self._transaction() as conn:
            cursor = await conn.execute(
                f"""
                UPDATE listing_groups
                SET status = ?, match_score = MIN(COALESCE(match_score, 1.0), ?), updated_at = ?
                WHERE id = ? AND status IN ({placeholders(_OPEN_GROUP_STATUSES)})
                  AND EXISTS (
                      SELECT 1 FROM listings WHERE id = ? AND listing_group_id IS NULL
                  )
                  AND (SELECT COUNT(*) FROM listings WHERE listing_group_id = ?) = ?
                  AND (
                      SELECT COUNT(*) FROM listings
                      WHERE listing_group_id = ? AND id IN ({placeholders(expected_member_ids)})
                  ) = ?
                """,
                [
                    status.value,
                    match_score,
                    now,
                    group_id,
                    *_OPEN_GROUP_STATUSES,
                    listing_id,
                    group_id,
                    len(expected_member_ids),
                    group_id,
                    *expected_member_ids,
                    len(expected_member_ids),
                ],
            )
            if cursor.rowcount != 1:
                return False
            await conn.execute(
                """
                UPDATE listings
                SET listing_group_id = ?, is_primary_in_group = 0, dedup_status = ?,
                    waiting_for_group_id = NULL, dedup_checked_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (group_id, DedupStatus.GROUPED.value, now, now, listing_id),
            )
            return True

    async def approve_group(self, group_id: int) -> list[int] | None:
        """PendingReview -> PendingAi, upgrading NeedsReview pairs to ConfirmedMatch.

        Returns:
            Ids of waiting listings re-queued, or None if the group was not
            pending review.
        """
        async with self._transaction() as conn:
            if not await self._set_group_status(
                conn, group_id, ListingGroupStatus.PENDING_AI,
                expected=ListingGroupStatus.PENDING_REVIEW,
            ):
                return None
            member_ids = await self._member_ids(conn, group_id)
            await self._set_candidate_status_between(
                conn,
                member_ids,
                member_ids,
                CandidateStatus.CONFIRMED_MATCH,
                only_status=CandidateStatus.NEEDS_REVIEW,
            )
            return await self._requeue_waiting(conn, group_id)

    async def reject_group(self, group_id: int, reason: str | None) -> list[int] | None:
        """PendingReview -> Rejected, releasing members and remembering the rejection.

        Every candidate among the members (and, for groups matched against an
        existing property, between the members and every listing of that
        property) becomes ConfirmedDifferent.

        Returns:
            Ids of member and waiting listings reset to Pending, or None if the
            group was not pending review.
        """
        now = _now()
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "SELECT * FROM listing_groups WHERE id = ?", (group_id,)
            )
            row = await cursor.fetchone()
            if row is None or row["status"] != ListingGroupStatus.PENDING_REVIEW.value:
                return None
            group = row_to_group(row)

            member_ids = await self._member_ids(conn, group_id)
            await self._set_candidate_status_between(
                conn, member_ids, member_ids, CandidateStatus.CONFIRMED_DIFFERENT
            )
            if group.matched_property_id is not None:
                property_listing_ids = await self.get_listing_ids_for_property(
                    group.matched_property_id
                )
                await self._set_candidate_status_between(
                    conn, member_ids, property_listing_ids, CandidateStatus.CONFIRMED_DIFFERENT
                )

            await self._reset_listings_to_pending(conn, member_ids)
            await conn.execute(
                """
                UPDATE listing_groups SET status = ?, rejection_reason = ?, updated_at = ?
                WHERE id = ?
                """,
                (ListingGroupStatus.REJECTED.value, reason, now, group_id),
            )
            waiting_ids = await self._requeue_waiting(conn, group_id)
            return [*member_ids, *waiting_ids]

    async def remove_listing_from_group(
        self, group_id: int, listing_id: int
    ) -> RemovalOutcome | None:
        """Detach one listing from a PendingReview group.

        The removed listing is marked different from the remaining members and
        reset to Pending. An emptied group is deleted; a group left with a
        single listing is dissolved unless it was matched against an existing
        property. Listings waiting on the group are re-queued either way,
        since the removed listing may be the one they failed against.

        Returns:
            What happened to the group, or None if the group is not pending
            review or the listing is not a member.
        """
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "SELECT * FROM listing_groups WHERE id = ?", (group_id,)
            )
            row = await cursor.fetchone()
            if row is None or row["status"] != ListingGroupStatus.PENDING_REVIEW.value:
                return None
            group = row_to_group(row)
            member_ids = await self._member_ids(conn, group_id)
            if listing_id not in member_ids:
                return None

            remaining = [i for i in member_ids if i != listing_id]
            await self._set_candidate_status_between(
                conn, [listing_id], remaining, CandidateStatus.CONFIRMED_DIFFERENT
            )
            await self._reset_listings_to_pending(conn, [listing_id])
            await self._requeue_waiting(conn, group_id)

            if len(remaining) >= 2 or (remaining and group.matched_property_id is not None):
                await conn.execute(
                    """
                    UPDATE listings SET is_primary_in_group = 1
                    WHERE id = ? AND NOT EXISTS (
                        SELECT 1 FROM listings
                        WHERE listing_group_id = ? AND is_primary_in_group = 1
                    )
                    """,
                    (remaining[0], group_id),
                )
                return RemovalOutcome.KEPT

            await self._reset_listings_to_pending(conn, remaining)
            await conn.execute("DELETE FROM listing_groups WHERE id = ?", (group_id,))
            return RemovalOutcome.DISSOLVED if remaining else RemovalOutcome.DELETED

    async def claim_group(self, group_id: int) -> bool:
        """Atomically claim a PendingAi group for AI processing.

        A single conditional UPDATE; two concurrent callers can never both win.
        """
        async with self._transaction() as conn:
            return await self._set_group_status(
                conn, group_id, ListingGroupStatus.PROCESSING_AI,
                expected=ListingGroupStatus.PENDING_AI,
            )

    async def complete_group(self, group_id: int, property_id: int) -> list[int] | None:
        """ProcessingAi -> Completed, linking the group and its members to a property.

        Returns:
            Ids of waiting listings re-queued, or None if the group was not
            being processed.
        """
        now = _now()
        async with self._transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE listing_groups
                SET status = ?, property_id = ?, rejection_reason = NULL, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    ListingGroupStatus.COMPLETED.value,
                    property_id,
                    now,
                    group_id,
                    ListingGroupStatus.PROCESSING_AI.value,
                ),
            )
            if cursor.rowcount != 1:
                return None
            await conn.execute(
                """
                UPDATE listings
                SET dedup_status = ?, property_id = ?, dedup_checked_at = ?, updated_at = ?
                WHERE listing_group_id = ?
                """,
                (DedupStatus.COMPLETED.value, property_id, now, now, group_id),
            )
            await conn.execute(
                "UPDATE properties SET needs_reanalysis = 0 WHERE id = ?", (property_id,)
            )
            return await self._requeue_waiting(conn, group_id)

    async def release_group(
        self,
        group_id: int,
        status: ListingGroupStatus,
        *,
        reason: str | None = None,
    ) -> bool:
        """Move a ProcessingAi group back to ``status`` after an AI failure."""
        now = _now()
        async with self._transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE listing_groups
                SET status = ?, rejection_reason = COALESCE(?, rejection_reason), updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (status.value, reason, now, group_id, ListingGroupStatus.PROCESSING_AI.value),
            )
            return cursor.rowcount == 1

    async def reopen_group(self, group_id: int) -> bool:
        """Completed -> PendingAi so the property is re-unified."""
        async with self._transaction() as conn:
            return await self._set_group_status(
                conn, group_id, ListingGroupStatus.PENDING_AI,
                expected=ListingGroupStatus.COMPLETED,
            )

    async def _set_group_status(
        self,
        conn: aiosqlite.Connection,
        group_id: int,
        status: ListingGroupStatus,
        *,
        expected: ListingGroupStatus,
    ) -> bool:
        cursor = await conn.execute(
            "UPDATE listing_groups SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
            (status.value, _now(), group_id, expected.value),
        )
        return cursor.rowcount == 1

    async def _member_ids(self, conn: aiosqlite.Connection, group_id: int) -> list[int]:
        cursor = await conn.execute(
            "SELECT id FROM listings WHERE listing_group_id = ? ORDER BY id", (group_id,)
        )
        return [row["id"] for row in await cursor.fetchall()]

    async def _reset_listings_to_pending(
        self, conn: aiosqlite.Connection, listing_ids: list[int]
    ) -> None:
        if not listing_ids:
            return
        await conn.execute(
            f"""
            UPDATE listings
            SET listing_group_id = NULL, is_primary_in_group = 0, dedup_status = ?,
                dedup_checked_at = NULL, updated_at = ?
            WHERE id IN ({placeholders(listing_ids)})
            """,
            [DedupStatus.PENDING.value, _now(), *listing_ids],
        )

    async def _requeue_waiting(self, conn: aiosqlite.Connection, group_id: int) -> list[int]:
        """Reset listings waiting on ``group_id`` to Pending."""
        cursor = await conn.execute(
            "SELECT id FROM listings WHERE waiting_for_group_id = ? AND dedup_status = ?",
            (group_id, DedupStatus.WAITING.value),
        )
        waiting_ids = [row["id"] for row in await cursor.fetchall()]
        if waiting_ids:
            await conn.execute(
                f"""
                UPDATE listings
                SET dedup_status = ?, waiting_for_group_id = NULL,
                    dedup_checked_at = NULL, updated_at = ?
                WHERE id IN ({placeholders(waiting_ids)})
                """,
                [DedupStatus.PENDING.value, _now(), *waiting_ids],
            )
        return waiting_ids

    # ------------------------------------------------------------------
    # Maintenance and stats
    # ------------------------------------------------------------------

    async def reset_stale_processing(self, older_than: timedelta) -> tuple[int, int]:
        """Return abandoned Processing listings and ProcessingAi groups to the queue.

        Returns:
            Tuple of (listings_reset, groups_reset).
        """
        cutoff = (datetime.now(UTC) - older_than).isoformat()
        now = _now()
        async with self._transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE listings SET dedup_status = ?, updated_at = ?
                WHERE dedup_status = ? AND updated_at < ?
                """,
                (DedupStatus.PENDING.value, now, DedupStatus.PROCESSING.value, cutoff),
            )
            listings_reset = cursor.rowcount
            cursor = await conn.execute(
                """
                UPDATE listing_groups SET status = ?, updated_at = ?
                WHERE status = ? AND updated_at < ?
                """,
                (
                    ListingGroupStatus.PENDING_AI.value,
                    now,
                    ListingGroupStatus.PROCESSING_AI.value,
                    cutoff,
                ),
            )
            groups_reset = cursor.rowcount
        return listings_reset, groups_reset

    async def get_stats(self) -> DedupStats:
        """Count listings by dedup status and groups by status."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT dedup_status, COUNT(*) AS n FROM listings GROUP BY dedup_status"
        )
        listings = {DedupStatus(row["dedup_status"]): row["n"] for row in await cursor.fetchall()}
        cursor = await conn.execute(
            "SELECT status, COUNT(*) AS n FROM listing_groups GROUP BY status"
        )
        groups = {ListingGroupStatus(row["status"]): row["n"] for row in await cursor.fetchall()}
        return DedupStats(listings=listings, groups=groups)


_OPEN_GROUP_STATUSES = (
    ListingGroupStatus.PENDING_REVIEW.value,
    ListingGroupStatus.PENDING_AI.value,
)

"""Tests for candidate discovery and hard-reject filters."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import pytest

from listing_dedup.db import DedupStorage
from listing_dedup.dedup.matcher import CandidateMatcherService, hard_reject_reason
from listing_dedup.models import (
    CandidateStatus,
    GeocodeStatus,
    Listing,
    MatchingConfig,
    NewListing,
    OperationType,
    PropertyType,
)

AddListing = Callable[..., Awaitable[Listing]]


@pytest.fixture
def matcher(storage: DedupStorage) -> CandidateMatcherService:
    return CandidateMatcherService(storage)


class TestHardRejectReason:
    @pytest.mark.parametrize(
        ("overrides", "reason"),
        [
            ({"property_type": PropertyType.HOUSE}, "property_type"),
            ({"operation_type": OperationType.RENT}, "operation_type"),
            ({"price": 5_500_000}, "price"),
            ({"built_size_m2": 120}, "built_size"),
        ],
    )
    def test_rejects(
        self,
        make_listing: Callable[..., NewListing],
        overrides: dict[str, Any],
        reason: str,
    ) -> None:
        assert hard_reject_reason(make_listing(), make_listing(**overrides), MatchingConfig()) == (
            reason
        )

    def test_lot_size(self, make_listing: Callable[..., NewListing]) -> None:
        a = make_listing(property_type=PropertyType.HOUSE, lot_size_m2=200)
        b = make_listing(property_type=PropertyType.HOUSE, lot_size_m2=240)
        assert hard_reject_reason(a, b, MatchingConfig()) == "lot_size"

    def test_price_relative_to_lower(self, make_listing: Callable[..., NewListing]) -> None:
        """1.0M vs 1.2M is exactly 20% of the lower price: still allowed."""
        a = make_listing(price=1_000_000)
        assert hard_reject_reason(a, make_listing(price=1_200_000), MatchingConfig()) is None
        assert hard_reject_reason(a, make_listing(price=1_210_000), MatchingConfig()) == "price"

    def test_size_relative_to_smaller(self, make_listing: Callable[..., NewListing]) -> None:
        a = make_listing(built_size_m2=100)
        assert hard_reject_reason(a, make_listing(built_size_m2=115), MatchingConfig()) is None
        assert hard_reject_reason(a, make_listing(built_size_m2=116), MatchingConfig()) == (
            "built_size"
        )

    def test_missing_fields_do_not_reject(self, make_listing: Callable[..., NewListing]) -> None:
        a = make_listing()
        b = make_listing(
            property_type=None, operation_type=None, price=None, built_size_m2=None
        )
        assert hard_reject_reason(a, b, MatchingConfig()) is None

    def test_different_currencies_skip_price_check(
        self, make_listing: Callable[..., NewListing]
    ) -> None:
        a = make_listing(price=4_500_000, currency="MXN")
        b = make_listing(price=250_000, currency="USD")
        assert hard_reject_reason(a, b, MatchingConfig()) is None


class TestFindCandidates:
    @pytest.mark.asyncio
    async def test_near_identical_listings_confirmed_match(
        self, matcher: CandidateMatcherService, add_listing: AddListing
    ) -> None:
        a = await add_listing(price=4_500_000)
        b = await add_listing(price=4_600_000, platform="vivanuncios")

        candidates = await matcher.find_candidates(a)

        assert len(candidates) == 1
        candidate = candidates[0]
        assert (candidate.listing_a_id, candidate.listing_b_id) == (a.id, b.id)
        assert candidate.status == CandidateStatus.CONFIRMED_MATCH
        assert candidate.overall_score == 1.0

    @pytest.mark.asyncio
    async def test_small_unit_regression_needs_review(
        self, matcher: CandidateMatcherService, add_listing: AddListing
    ) -> None:
        """22 m² vs 24 m² at the same spot and price: a candidate, never a confirmed match."""
        a = await add_listing(built_size_m2=22, bedrooms=1, bathrooms=1)
        await add_listing(built_size_m2=24, bedrooms=1, bathrooms=1)

        candidates = await matcher.find_candidates(a)

        assert len(candidates) == 1
        assert candidates[0].status == CandidateStatus.NEEDS_REVIEW
        assert candidates[0].overall_score < 0.92

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"property_type": PropertyType.HOUSE},
            {"operation_type": OperationType.RENT},
            {"price": 6_000_000},
            {"built_size_m2": 130},
        ],
    )
    async def test_hard_rejected_pairs_are_never_persisted(
        self,
        storage: DedupStorage,
        matcher: CandidateMatcherService,
        add_listing: AddListing,
        overrides: dict[str, Any],
    ) -> None:
        a = await add_listing()
        b = await add_listing(**overrides)

        assert await matcher.find_candidates(a) == []
        assert await matcher.find_candidates(b) == []
        assert await storage.get_candidate(a.id, b.id) is None

    @pytest.mark.asyncio
    async def test_low_score_persisted_as_confirmed_different(
        self, matcher: CandidateMatcherService, add_listing: AddListing
    ) -> None:
        a = await add_listing(bedrooms=2, bathrooms=1, built_size_m2=100)
        await add_listing(bedrooms=3, bathrooms=2, built_size_m2=112, address="Calle Colima 9")

        candidates = await matcher.find_candidates(a)

        assert len(candidates) == 1
        assert candidates[0].status == CandidateStatus.CONFIRMED_DIFFERENT

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"geocode_status": GeocodeStatus.FAILED},
            {"geocode_status": GeocodeStatus.NOT_ATTEMPTED},
            {"latitude": None, "longitude": None},
        ],
    )
    async def test_listing_without_location_yields_nothing(
        self,
        matcher: CandidateMatcherService,
        add_listing: AddListing,
        overrides: dict[str, Any],
    ) -> None:
        await add_listing()
        listing = await add_listing(**overrides)
        assert await matcher.find_candidates(listing) == []

    @pytest.mark.asyncio
    async def test_repeated_calls_reuse_candidate(
        self, storage: DedupStorage, matcher: CandidateMatcherService, add_listing: AddListing
    ) -> None:
        a = await add_listing()
        b = await add_listing()
        c = await add_listing(built_size_m2=104)

        first = await matcher.find_candidates(a)
        second = await matcher.find_candidates(a)

        assert {x.id for x in first} == {x.id for x in second}
        assert len(await storage.get_candidates_between(a.id, [b.id, c.id])) == 2

    @pytest.mark.asyncio
    async def test_both_directions_share_one_record(
        self, matcher: CandidateMatcherService, add_listing: AddListing
    ) -> None:
        a = await add_listing()
        b = await add_listing()

        from_a = await matcher.find_candidates(a)
        from_b = await matcher.find_candidates(b)

        assert from_a[0].id == from_b[0].id
        assert (from_b[0].listing_a_id, from_b[0].listing_b_id) == (a.id, b.id)

    @pytest.mark.asyncio
    async def test_concurrent_evaluation_creates_single_record(
        self, storage: DedupStorage, matcher: CandidateMatcherService, add_listing: AddListing
    ) -> None:
        a = await add_listing()
        b = await add_listing()

        from_a, from_b = await asyncio.gather(
            matcher.find_candidates(a), matcher.find_candidates(b)
        )

        assert from_a[0].id == from_b[0].id
        assert len(await storage.get_candidates_between(a.id, [b.id])) == 1

    @pytest.mark.asyncio
    async def test_refresh_keeps_identity_and_updates_scores(
        self, storage: DedupStorage, add_listing: AddListing
    ) -> None:
        a = await add_listing()
        await add_listing(built_size_m2=104)

        strict = CandidateMatcherService(storage, MatchingConfig(size_tolerance=0.01))
        loose = CandidateMatcherService(storage, MatchingConfig(size_tolerance=0.1))
        first = (await strict.find_candidates(a))[0]
        second = (await loose.find_candidates(a))[0]

        assert first.id == second.id
        assert second.features_score > first.features_score

    @pytest.mark.asyncio
    async def test_does_not_touch_listing_state(
        self, storage: DedupStorage, matcher: CandidateMatcherService, add_listing: AddListing
    ) -> None:
        a = await add_listing()
        b = await add_listing()

        await matcher.find_candidates(a)

        for listing_id in (a.id, b.id):
            stored = await storage.get_listing(listing_id)
            assert stored is not None
            assert stored.dedup_status == "pending"
            assert stored.listing_group_id is None

"""Shared pytest fixtures."""

import gc
import os
import sys
import threading
from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
import pytest_asyncio
from hypothesis import HealthCheck, settings

from listing_dedup.config import Settings
from listing_dedup.db import DedupStorage
from listing_dedup.dedup import DeduplicationService
from listing_dedup.models import (
    GeocodeStatus,
    Listing,
    MatchingConfig,
    NewListing,
    OperationType,
    PropertyType,
)

# Roma Norte, Mexico City
BASE_LAT = 19.4180
BASE_LON = -99.1620


def pytest_configure(config: pytest.Config) -> None:
    """Force line-buffered stdout when piped."""
    if hasattr(sys.stdout, "reconfigure") and not sys.stdout.isatty():
        sys.stdout.reconfigure(line_buffering=True)
    if hasattr(sys.stderr, "reconfigure") and not sys.stderr.isatty():
        sys.stderr.reconfigure(line_buffering=True)


# Hypothesis settings profiles for different environments
settings.register_profile("fast", max_examples=10)
settings.register_profile(
    "ci",
    max_examples=200,
    suppress_health_check=[HealthCheck.too_slow],
)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "fast"))


@pytest.fixture(autouse=True)
def _isolate_settings_from_dotenv(monkeypatch: pytest.MonkeyPatch) -> None:
    """Prevent the local .env file from leaking into test Settings instances."""
    monkeypatch.setattr(
        Settings,
        "model_config",
        {**Settings.model_config, "env_file": None},
    )


@pytest.fixture(autouse=True)
def _cleanup_aiosqlite_threads():
    """Safety net: detect and stop leaked aiosqlite worker threads.

    aiosqlite creates a non-daemon worker thread per connection. A test that
    forgets ``await storage.close()`` would otherwise keep the process alive.
    """
    yield

    from aiosqlite.core import _STOP_RUNNING_SENTINEL, Connection

    leaked = False

    gc.collect()
    for obj in gc.get_objects():
        if isinstance(obj, Connection) and obj._connection is not None:
            leaked = True
            obj.stop()

    for thread in threading.enumerate():
        if "_connection_worker_thread" in (thread.name or "") and thread.is_alive():
            leaked = True
            tx = getattr(thread, "_args", (None,))[0]
            if tx is not None and hasattr(tx, "put_nowait"):
                tx.put_nowait((None, lambda: _STOP_RUNNING_SENTINEL))
                thread.join(timeout=1.0)

    if leaked:
        import warnings

        warnings.warn(
            "Test leaked aiosqlite connection(s): add 'await storage.close()' to fixture teardown",
            ResourceWarning,
            stacklevel=1,
        )


@pytest.fixture
def make_listing() -> Callable[..., NewListing]:
    """Factory for normalized listings; defaults describe one Roma Norte apartment."""
    counter = iter(range(1, 1_000_000))

    def _make(**overrides: Any) -> NewListing:
        data: dict[str, Any] = {
            "platform": "inmuebles24",
            "external_id": f"ext-{next(counter)}",
            "latitude": BASE_LAT,
            "longitude": BASE_LON,
            "geocode_status": GeocodeStatus.SUCCESS,
            "property_type": PropertyType.APARTMENT,
            "operation_type": OperationType.SALE,
            "price": 4_500_000,
            "currency": "MXN",
            "built_size_m2": 100,
            "bedrooms": 2,
            "bathrooms": 2,
            "address": "Av. Álvaro Obregón 120",
            "neighborhood": "Roma Norte",
            "city": "Cuauhtémoc",
            "state": "Ciudad de México",
        }
        data.update(overrides)
        return NewListing(**data)

    return _make


@pytest.fixture
def matching_config() -> MatchingConfig:
    return MatchingConfig()


@pytest_asyncio.fixture
async def storage() -> AsyncGenerator[DedupStorage, None]:
    """Create an in-memory storage instance."""
    storage = DedupStorage(":memory:")
    await storage.initialize()
    yield storage
    await storage.close()


@pytest.fixture
def service(storage: DedupStorage, matching_config: MatchingConfig) -> DeduplicationService:
    return DeduplicationService(storage, matching_config)


@pytest.fixture
def add_listing(
    storage: DedupStorage, make_listing: Callable[..., NewListing]
) -> Callable[..., Any]:
    """Store a listing built by ``make_listing`` and return it."""

    async def _add(**overrides: Any) -> Listing:
        return await storage.add_listing(make_listing(**overrides))

    return _add

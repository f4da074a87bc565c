"""Exception taxonomy for the dedup engine.

No-op conditions (listing without coordinates, listing already linked to a
property) never raise; they short-circuit. Everything here is either an
invariant violation that callers must not retry blindly, or a classification
helper for failures reported back by the AI-unification worker.
"""

from typing import Final

_RATE_LIMIT_MARKERS: Final = ("429", "rate_limit", "rate limit")


class DedupError(Exception):
    """Base class for dedup engine errors."""


class NotFoundError(DedupError):
    """Raised when a listing, group or property id does not exist."""

    def __init__(self, entity: str, entity_id: int) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class PreconditionFailedError(DedupError):
    """Raised when an operation targets an entity in the wrong state.

    Non-retryable: the caller's view of the entity is stale, so retrying the
    same call without re-fetching state will fail the same way.
    """

    def __init__(
        self,
        entity: str,
        entity_id: int,
        *,
        expected: str,
        actual: str | None,
        message: str | None = None,
    ) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            message or f"{entity} {entity_id} must be {expected} (current: {actual})"
        )


class GroupNotAvailableError(PreconditionFailedError):
    """Raised when an atomic group claim loses the race or the group is not pending_ai."""

    def __init__(self, group_id: int, actual: str | None) -> None:
        super().__init__(
            "listing_group",
            group_id,
            expected="pending_ai",
            actual=actual,
            message=f"Group {group_id} is not available for processing (status: {actual})",
        )


class ListingNotAvailableError(PreconditionFailedError):
    """Raised when a listing cannot be claimed for dedup processing."""

    def __init__(self, listing_id: int, actual: str | None) -> None:
        super().__init__(
            "listing",
            listing_id,
            expected="pending or waiting",
            actual=actual,
            message=f"Listing {listing_id} is not available for processing (status: {actual})",
        )


class ResolutionConflictError(DedupError):
    """Raised when concurrent writers kept invalidating a listing's placement.

    Retryable: the listing is returned to pending before this propagates.
    """

    def __init__(self, listing_id: int, attempts: int) -> None:
        self.listing_id = listing_id
        self.attempts = attempts
        super().__init__(f"Listing {listing_id} could not be placed after {attempts} attempts")


class RateLimitedError(DedupError):
    """Retryable downstream failure (e.g. HTTP 429 from the AI provider)."""


def is_rate_limit_error(error: BaseException) -> bool:
    """Classify a downstream failure as rate limiting.

    Recognises our own RateLimitedError, SDK/HTTP errors carrying
    ``status_code == 429`` and messages mentioning the status or the
    provider's ``rate_limit`` error type.
    """
    if isinstance(error, RateLimitedError):
        return True
    if getattr(error, "status_code", None) == 429:
        return True
    message = str(error).lower()
    return any(marker in message for marker in _RATE_LIMIT_MARKERS)

"""Candidate matching, group consistency and the dedup state machine."""

import importlib
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from listing_dedup.dedup.geo import GeoCandidateSearch  # noqa: F401
    from listing_dedup.dedup.matcher import CandidateMatcherService  # noqa: F401
    from listing_dedup.dedup.resolver import (  # noqa: F401
        GroupConsistencyResolver,
        JoinGroup,
        SeedGroup,
        Unique,
        Wait,
    )
    from listing_dedup.dedup.scoring import (  # noqa: F401
        ScoreBreakdown,
        ScoreEngine,
        calculate_overall_score,
    )
    from listing_dedup.dedup.service import (  # noqa: F401
        DeduplicationService,
        GroupDetail,
        ProcessOutcome,
        ProcessResult,
    )
    from listing_dedup.dedup.worker import BatchResult, DedupWorkerPool  # noqa: F401

__all__ = [
    "BatchResult",
    "calculate_overall_score",
    "CandidateMatcherService",
    "DedupWorkerPool",
    "DeduplicationService",
    "GeoCandidateSearch",
    "GroupConsistencyResolver",
    "GroupDetail",
    "JoinGroup",
    "ProcessOutcome",
    "ProcessResult",
    "ScoreBreakdown",
    "ScoreEngine",
    "SeedGroup",
    "Unique",
    "Wait",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "BatchResult": (".worker", "BatchResult"),
    "calculate_overall_score": (".scoring", "calculate_overall_score"),
    "CandidateMatcherService": (".matcher", "CandidateMatcherService"),
    "DedupWorkerPool": (".worker", "DedupWorkerPool"),
    "DeduplicationService": (".service", "DeduplicationService"),
    "GeoCandidateSearch": (".geo", "GeoCandidateSearch"),
    "GroupConsistencyResolver": (".resolver", "GroupConsistencyResolver"),
    "GroupDetail": (".service", "GroupDetail"),
    "JoinGroup": (".resolver", "JoinGroup"),
    "ProcessOutcome": (".service", "ProcessOutcome"),
    "ProcessResult": (".service", "ProcessResult"),
    "ScoreBreakdown": (".scoring", "ScoreBreakdown"),
    "ScoreEngine": (".scoring", "ScoreEngine"),
    "SeedGroup": (".resolver", "SeedGroup"),
    "Unique": (".resolver", "Unique"),
    "Wait": (".resolver", "Wait"),
}


def __getattr__(name: str) -> type:
    if name in _LAZY_IMPORTS:
        module_path, attr = _LAZY_IMPORTS[name]
        mod = importlib.import_module(module_path, __name__)
        val = getattr(mod, attr)
        globals()[name] = val  # Cache so __getattr__ is only called once
        return val  # type: ignore[no-any-return]
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

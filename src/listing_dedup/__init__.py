"""Cross-platform real-estate listing deduplication and grouping engine."""

__version__ = "0.1.0"

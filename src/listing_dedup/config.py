"""Application configuration using pydantic-settings."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from listing_dedup.models import MatchingConfig


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="LISTING_DEDUP_",
        extra="ignore",
    )

    enabled: bool = Field(
        default=True,
        description="Master switch for dedup processing",
    )

    # Geo candidate search
    geo_search_radius_meters: float = Field(
        default=150.0,
        gt=0,
        le=5000,
        description="Radius (meters) within which listings are compared at all",
    )
    coordinate_score_radius_meters: float = Field(
        default=150.0,
        gt=0,
        le=5000,
        description="Distance (meters) at which the coordinate score decays to 0",
    )
    max_nearby_results: int = Field(
        default=25,
        ge=1,
        le=500,
        description="Maximum nearby listings scored per processed listing",
    )

    # Status thresholds
    auto_match_threshold: float = Field(
        default=0.92,
        gt=0,
        le=1,
        description="Overall score at or above which a pair is a confirmed match",
    )
    review_threshold: float = Field(
        default=0.65,
        gt=0,
        le=1,
        description="Overall score at or above which a pair needs human review",
    )

    # Hard-reject filters and size scoring
    max_price_difference: float = Field(
        default=0.20,
        gt=0,
        description="Relative price difference (vs lower price) that rejects a pair",
    )
    max_size_difference: float = Field(
        default=0.15,
        gt=0,
        description="Relative size difference (vs smaller size) that rejects a pair",
    )
    size_tolerance: float = Field(
        default=0.05,
        gt=0,
        description="Relative size difference that still scores near 1.0",
    )

    # Worker pool
    batch_size: int = Field(default=100, ge=1, le=10000)
    worker_concurrency: int = Field(default=4, ge=1, le=64)
    worker_interval_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Seconds between batches in serve mode",
    )
    stale_processing_minutes: int = Field(
        default=5,
        ge=1,
        description="Minutes after which a processing row is considered abandoned",
    )

    # Database
    database_path: str = Field(default="data/dedup.db")

    def get_matching_config(self) -> MatchingConfig:
        """Build MatchingConfig from settings."""
        return MatchingConfig(
            geo_search_radius_meters=self.geo_search_radius_meters,
            coordinate_score_radius_meters=self.coordinate_score_radius_meters,
            max_nearby_results=self.max_nearby_results,
            auto_match_threshold=self.auto_match_threshold,
            review_threshold=self.review_threshold,
            max_price_difference=self.max_price_difference,
            max_size_difference=self.max_size_difference,
            size_tolerance=self.size_tolerance,
        )

"""Settings for refspine.

All knobs are read from ``REFSPINE_*`` environment variables or a ``.env``
file. Defaults match the production deployment: hourly sync, 30-day cache
lifetime, pages of 100 items, exponential backoff starting at two seconds.

Examples:
    >>> from refspine.core.settings import RefSpineSettings
    >>> settings = RefSpineSettings(cache_ttl_days=7)
    >>> settings.cache_ttl
    datetime.timedelta(days=7)

Tags:
    settings, configuration, pydantic, environment, refspine
"""

from __future__ import annotations

from datetime import timedelta

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RefSpineSettings(BaseSettings):
    """Runtime configuration.

    Fields
    ──────
    database_url         : SQLAlchemy URL; ``None`` keeps everything in memory
    finto_api_url        : Skosmos REST root serving the unit vocabulary
    ogcapi_base_url      : OGC API Features root for external features
    ogcapi_collections   : Collections mirrored by feature sync passes
    sync_interval_minutes: Scheduler tick interval
    cache_ttl_days       : Default expiry horizon for cached records
    ttl_overrides_days   : Per-category expiry (dimension, collection, association type)
    """

    model_config = SettingsConfigDict(
        env_prefix="REFSPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Storage ──────────────────────────────────────────────────
    database_url: str | None = None

    # ── Sources ──────────────────────────────────────────────────
    finto_api_url: str = "https://api.finto.fi/rest/v1"
    finto_vocabulary: str = "ucum"
    finto_language: str = "en"
    ogcapi_base_url: str | None = None
    ogcapi_collections: list[str] = Field(default_factory=list)
    api_key: str | None = None
    http_timeout_seconds: float = 30.0
    ucum_sync_enabled: bool = True
    feature_sync_enabled: bool = True

    # ── Sync ─────────────────────────────────────────────────────
    sync_interval_minutes: int = Field(default=60, gt=0)
    page_size: int = Field(default=100, gt=0, le=1000)
    retry_base_delay: float = Field(default=2.0, ge=0)
    retry_max_retries: int = Field(default=4, ge=0)
    retry_max_delay: float = Field(default=60.0, gt=0)
    max_consecutive_page_failures: int = Field(default=3, gt=0)

    # ── Cache ────────────────────────────────────────────────────
    cache_ttl_days: int = Field(default=30, gt=0)
    ttl_overrides_days: dict[str, int] = Field(default_factory=dict)
    error_retry_seconds: int = Field(default=300, ge=0)

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None

    @field_validator("finto_api_url", "ogcapi_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str | None) -> str | None:
        return value.rstrip("/") if value else value

    @field_validator("ttl_overrides_days")
    @classmethod
    def _positive_overrides(cls, value: dict[str, int]) -> dict[str, int]:
        for category, days in value.items():
            if days <= 0:
                raise ValueError(f"TTL override for {category!r} must be positive")
        return value

    @property
    def cache_ttl(self) -> timedelta:
        return timedelta(days=self.cache_ttl_days)

    @property
    def ttl_overrides(self) -> dict[str, timedelta]:
        return {k: timedelta(days=v) for k, v in self.ttl_overrides_days.items()}

    @property
    def error_retry(self) -> timedelta:
        return timedelta(seconds=self.error_retry_seconds)

    @property
    def sync_interval(self) -> timedelta:
        return timedelta(minutes=self.sync_interval_minutes)

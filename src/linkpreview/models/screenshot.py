from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class RefreshSource(StrEnum):
    """Which pathway triggered a screenshot capture."""

    ON_DEMAND = "on-demand-fallback"
    STALE = "async-stale-refresh"
    SCHEDULED = "scheduled-refresh"


class ScreenshotCacheEntry(BaseModel):
    """Persisted screenshot for one normalized URL."""

    model_config = ConfigDict(frozen=True)

    image: str  # data URL or opaque reference returned by the worker
    captured_at: int  # Unix seconds
    expires_at: int  # captured_at + screenshot TTL
    source: str
    last_error: str | None = None


class ScreenshotCacheIndex(BaseModel):
    """On-disk layout of the screenshot cache file."""

    entries: dict[str, ScreenshotCacheEntry] = Field(default_factory=dict)


class RefreshSummary(BaseModel):
    """Response body of the batch refresh endpoint."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    ok: bool = True
    requested_urls: int
    refreshed: int
    invalid: int
    failed: int

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)

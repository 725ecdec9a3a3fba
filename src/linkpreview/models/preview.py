from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict


class PreviewPayload(BaseModel):
    """JSON body of ``GET /api/preview``. Absent fields are omitted on the wire."""

    model_config = ConfigDict(frozen=True)

    ok: bool
    url: str | None = None
    title: str | None = None
    description: str | None = None
    image: str | None = None
    error: str | None = None

    @classmethod
    def failure(cls, message: str) -> PreviewPayload:
        return cls(ok=False, error=message)

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


class ExtractedMetadata(BaseModel):
    """Social-preview fields found in a page. Empty values are None, never ""."""

    model_config = ConfigDict(frozen=True)

    title: str | None = None
    description: str | None = None
    image: str | None = None


@dataclass(frozen=True)
class CacheEntry:
    """One preview cache slot. Timestamps come from the cache's monotonic clock."""

    created_at: float
    expires_at: float
    value: PreviewPayload

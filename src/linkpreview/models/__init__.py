from __future__ import annotations

from linkpreview.models.preview import CacheEntry, ExtractedMetadata, PreviewPayload
from linkpreview.models.screenshot import (
    RefreshSource,
    RefreshSummary,
    ScreenshotCacheEntry,
    ScreenshotCacheIndex,
)

__all__ = [
    # preview
    "PreviewPayload",
    "ExtractedMetadata",
    "CacheEntry",
    # screenshots
    "RefreshSource",
    "RefreshSummary",
    "ScreenshotCacheEntry",
    "ScreenshotCacheIndex",
]

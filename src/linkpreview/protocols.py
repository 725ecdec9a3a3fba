"""Protocol interfaces for swappable components.

Handlers and AppState reference these protocols, not the concrete
implementations, so tests can substitute lightweight fakes for the network
fetcher, the capture worker and the preview cache.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from linkpreview.fetcher import FetchResult
    from linkpreview.models.preview import PreviewPayload
    from linkpreview.urls import TargetUrl


class PreviewCacheProtocol(Protocol):
    """Interface for the in-memory preview cache."""

    async def get(self, key: str) -> PreviewPayload | None: ...

    async def put(self, key: str, value: PreviewPayload) -> None: ...


class FetcherProtocol(Protocol):
    """Interface for the pinned page fetcher."""

    async def fetch(self, url: TargetUrl | str) -> FetchResult: ...


class CaptureProtocol(Protocol):
    """Interface for the screenshot-capture worker client."""

    @property
    def configured(self) -> bool: ...

    async def capture(self, target: TargetUrl, request_id: str | None = None) -> str | None: ...

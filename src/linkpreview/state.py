"""Application state container.

AppState is created once at server startup (inside the Starlette lifespan) and
handed to every request handler. Tests build one directly with fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import httpx

    from linkpreview.config import Settings
    from linkpreview.protocols import FetcherProtocol, PreviewCacheProtocol
    from linkpreview.screenshots import ScreenshotService


@dataclass
class AppState:
    """Holds all shared runtime state. Passed to every handler."""

    settings: Settings
    preview_cache: PreviewCacheProtocol
    fetcher: FetcherProtocol
    screenshots: ScreenshotService

    # Owned by the lifespan; None when the caller injected its own components.
    http_client: httpx.AsyncClient | None = None
    worker_client: httpx.AsyncClient | None = None

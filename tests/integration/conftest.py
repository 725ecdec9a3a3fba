"""Integration test fixtures.

Provides a fully wired AppState: real preview cache, real fetcher on a mocked
HTTP client with an in-memory resolver, a screenshot store in a temp directory
and a fake capture worker. ``client`` talks to the Starlette app through
httpx's ASGI transport.
"""

from __future__ import annotations

import socket
from pathlib import Path
from typing import TYPE_CHECKING

import httpx
import pytest

from linkpreview.cache import PreviewCache
from linkpreview.fetcher import Fetcher
from linkpreview.screenshots import ScreenshotService, ScreenshotStore
from linkpreview.server import create_app
from linkpreview.state import AppState
from tests.conftest import FakeCapture

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from linkpreview.config import Settings

PUBLIC_IP = "93.184.216.34"
PUBLIC_IP_2 = "93.184.216.35"

DNS = {
    "example.com": [PUBLIC_IP],
    "www.example.com": [PUBLIC_IP_2],
}


async def fake_resolver(host: str, port: int) -> list[str]:
    if host not in DNS:
        raise socket.gaierror(f"unknown host {host}")
    return DNS[host]


@pytest.fixture()
def capture() -> FakeCapture:
    return FakeCapture(image="data:image/png;base64,WORKER")


@pytest.fixture()
async def app_state(settings: Settings, capture: FakeCapture) -> AsyncIterator[AppState]:
    async with httpx.AsyncClient(follow_redirects=False) as http_client:
        fetcher = Fetcher(
            http_client,
            settings.fetcher,
            max_body_bytes=settings.preview.response_max_bytes,
            resolver=fake_resolver,
        )
        screenshots = ScreenshotService(
            ScreenshotStore.load(Path(settings.screenshot.cache_index_path)),
            capture,
            settings.screenshot,
        )
        state = AppState(
            settings=settings,
            preview_cache=PreviewCache(
                ttl_seconds=settings.preview.cache_ttl_seconds,
                max_entries=settings.preview.cache_max_entries,
            ),
            fetcher=fetcher,
            screenshots=screenshots,
            http_client=http_client,
        )
        yield state
        await screenshots.aclose()


@pytest.fixture()
async def client(app_state: AppState) -> AsyncIterator[httpx.AsyncClient]:
    app = create_app(state=app_state)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as client:
        yield client

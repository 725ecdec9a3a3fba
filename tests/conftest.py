"""Shared test fixtures for the linkpreview test suite."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest

from linkpreview.config import Settings
from linkpreview.errors import CaptureError

if TYPE_CHECKING:
    from pathlib import Path

    from linkpreview.urls import TargetUrl


class FakeClock:
    """Manually advanced clock for cache expiry tests."""

    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCapture:
    """In-memory CaptureProtocol implementation.

    Returns ``image`` (or raises ``error``) for every call and records the
    highest number of calls that were in flight at once.
    """

    def __init__(
        self,
        image: str | None = "data:image/png;base64,AAAA",
        *,
        error: CaptureError | None = None,
        delay: float = 0.0,
        configured: bool = True,
    ) -> None:
        self.image = image
        self.error = error
        self.delay = delay
        self._configured = configured
        self.calls: list[tuple[str, str | None]] = []
        self.active = 0
        self.max_active = 0

    @property
    def configured(self) -> bool:
        return self._configured

    async def capture(self, target: TargetUrl, request_id: str | None = None) -> str | None:
        self.calls.append((target.url, request_id))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            return self.image
        finally:
            self.active -= 1


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def index_path(tmp_path: Path) -> Path:
    return tmp_path / "screenshots" / "preview-cache.json"


@pytest.fixture()
def settings(tmp_path: Path, index_path: Path) -> Settings:
    """Settings isolated from the environment's config file and data paths."""
    return Settings(
        server={"static_dir": str(tmp_path / "no-static")},
        screenshot={
            "worker_url": "http://worker.test/",
            "worker_token": "worker-secret",
            "refresh_token": "refresh-secret",
            "refresh_concurrency": 2,
            "cache_index_path": str(index_path),
            "refresh_urls_path": str(tmp_path / "preview-urls.json"),
        },
    )

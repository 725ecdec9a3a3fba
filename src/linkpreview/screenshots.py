"""Screenshot cache with stale-while-revalidate refresh.

The index maps normalized URLs to the last captured screenshot and lives in
memory; it is read once at startup and rewritten whole after every mutation.
A failed capture only records ``last_error`` on the existing entry, so an
older image keeps being served as a fallback.

Per URL the cache is in one of three states:

  fresh               now < expires_at                      serve cached image
  stale               expires_at <= now <= expires_at+grace serve cached image,
                                                            refresh in background
  missing_or_expired  no entry, or past the grace window    capture synchronously

Persistence failures are logged and reported as ``cache_write_ok=False``; they
never fail the in-memory operation that caused them.

Known limitation: during the grace window the stale image is served even when
the background refresh it triggered keeps failing.
"""

from __future__ import annotations

import asyncio
import json
import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

import structlog
from pydantic import BaseModel, TypeAdapter, ValidationError

from linkpreview.errors import CaptureError, UrlNotAllowedError
from linkpreview.models.screenshot import (
    RefreshSource,
    RefreshSummary,
    ScreenshotCacheEntry,
    ScreenshotCacheIndex,
)
from linkpreview.urls import TargetUrl, loggable_url, parse_preview_url

if TYPE_CHECKING:
    from linkpreview.config import ScreenshotSettings
    from linkpreview.protocols import CaptureProtocol

log = structlog.get_logger()


class ScreenshotDecision(StrEnum):
    FRESH = "fresh"
    STALE = "stale"
    MISSING_OR_EXPIRED = "missing_or_expired"


def decide_screenshot_action(
    now: int, entry: ScreenshotCacheEntry | None, stale_grace_seconds: int
) -> ScreenshotDecision:
    if entry is None:
        return ScreenshotDecision.MISSING_OR_EXPIRED
    if now < entry.expires_at:
        return ScreenshotDecision.FRESH
    if now <= entry.expires_at + stale_grace_seconds:
        return ScreenshotDecision.STALE
    return ScreenshotDecision.MISSING_OR_EXPIRED


# ---------------------------------------------------------------------------
# Persisted index
# ---------------------------------------------------------------------------


def read_index(path: Path) -> dict[str, ScreenshotCacheEntry]:
    """Read the index file. Raises OSError or ValidationError."""
    raw = path.read_text(encoding="utf-8")
    return ScreenshotCacheIndex.model_validate_json(raw).entries


def write_index(path: Path, entries: dict[str, ScreenshotCacheEntry]) -> None:
    """Rewrite the whole index file via a temp file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    index = ScreenshotCacheIndex(entries=entries)
    encoded = json.dumps(index.model_dump(mode="json", exclude_none=True), indent=2)
    tmp_path = path.with_name(f"{path.name}.tmp")
    tmp_path.write_text(encoded, encoding="utf-8")
    os.replace(tmp_path, path)


class _WrappedUrlList(BaseModel):
    urls: list[str]


_REFRESH_URL_LIST = TypeAdapter(list[str] | _WrappedUrlList)


def load_refresh_urls(path: Path) -> list[str]:
    """Read the scheduled-refresh URL list.

    Accepts a bare JSON array or ``{"urls": [...]}``. Entries are trimmed and
    blanks dropped. Raises OSError or ValidationError.
    """
    parsed = _REFRESH_URL_LIST.validate_json(path.read_bytes())
    raw_urls = parsed.urls if isinstance(parsed, _WrappedUrlList) else parsed
    return [url.strip() for url in raw_urls if url.strip()]


class ScreenshotStore:
    """In-memory screenshot index backed by a JSON file."""

    def __init__(
        self, path: Path, entries: dict[str, ScreenshotCacheEntry] | None = None
    ) -> None:
        self.path = path
        self._entries: dict[str, ScreenshotCacheEntry] = dict(entries or {})
        self._lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()

    @classmethod
    def load(cls, path: Path) -> ScreenshotStore:
        """Load the index from disk. A missing or unreadable file yields an empty store."""
        try:
            entries = read_index(path)
        except FileNotFoundError:
            log.info("screenshot_index_missing", path=str(path))
            entries = {}
        except (OSError, ValidationError):
            log.warning("screenshot_index_load_failed", path=str(path), exc_info=True)
            entries = {}
        else:
            log.info("screenshot_index_loaded", path=str(path), entries=len(entries))
        return cls(path, entries)

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> ScreenshotCacheEntry | None:
        return self._entries.get(key)

    def snapshot(self) -> dict[str, ScreenshotCacheEntry]:
        return dict(self._entries)

    async def put(self, key: str, entry: ScreenshotCacheEntry) -> bool:
        """Store ``entry`` and persist. Returns whether the disk write succeeded."""
        async with self._lock:
            self._entries[key] = entry
        return await self._persist()

    async def record_error(self, key: str, message: str) -> bool:
        """Set ``last_error`` on an existing entry, keeping its image, and persist."""
        async with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                self._entries[key] = entry.model_copy(update={"last_error": message})
        return await self._persist()

    async def _persist(self) -> bool:
        # The snapshot is taken inside the write lock so the last writer always
        # writes the newest state. Reads never wait on this lock.
        async with self._write_lock:
            snapshot = self.snapshot()
            try:
                await asyncio.to_thread(write_index, self.path, snapshot)
            except OSError:
                log.warning("screenshot_index_write_failed", path=str(self.path), exc_info=True)
                return False
        return True


# ---------------------------------------------------------------------------
# Refresh engine
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RefreshOutcome:
    image: str | None
    cache_write_ok: bool | None = None
    error_class: str | None = None
    worker_status_code: int | None = None
    worker_status_class: str | None = None
    worker_failure_reason: str | None = None


@dataclass(frozen=True)
class FallbackOutcome:
    image: str | None
    decision: ScreenshotDecision
    used_cached_image: bool = False
    worker_attempted: bool = False
    worker_succeeded: bool = False
    cache_write_ok: bool | None = None
    error_class: str | None = None
    worker_status_code: int | None = None
    worker_status_class: str | None = None
    worker_failure_reason: str | None = None

    def log_fields(self) -> dict[str, Any]:
        return {
            "screenshot_cache_decision": str(self.decision),
            "used_cached_image": self.used_cached_image,
            "worker_attempted": self.worker_attempted,
            "worker_succeeded": self.worker_succeeded,
            "cache_write_ok": self.cache_write_ok,
            "error_class": self.error_class,
            "worker_status_code": self.worker_status_code,
            "worker_status_class": self.worker_status_class,
            "worker_failure_reason": self.worker_failure_reason,
        }


class ScreenshotService:
    """Screenshot lookup, on-demand capture, background and batch refresh."""

    def __init__(
        self,
        store: ScreenshotStore,
        capture: CaptureProtocol,
        settings: ScreenshotSettings,
        *,
        url_mode: Literal["host", "full"] = "host",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self._capture = capture
        self._ttl_seconds = settings.ttl_seconds
        self._stale_grace_seconds = settings.stale_grace_seconds
        self._refresh_concurrency = settings.refresh_concurrency
        self._url_mode = url_mode
        self._clock = clock
        self._in_flight: set[str] = set()
        self._in_flight_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    def _now(self) -> int:
        return int(self._clock())

    async def refresh(
        self,
        target: TargetUrl,
        source: RefreshSource,
        request_id: str | None = None,
    ) -> RefreshOutcome:
        """Capture ``target`` and update its cache entry."""
        captured_at = self._now()
        key = target.url

        try:
            image = await self._capture.capture(target, request_id)
        except CaptureError as exc:
            cache_write_ok = await self.store.record_error(key, exc.message)
            outcome = RefreshOutcome(
                image=None,
                cache_write_ok=cache_write_ok,
                error_class=str(exc.code),
                worker_status_code=exc.status_code,
                worker_status_class=exc.status_class,
                worker_failure_reason=str(exc.failure_reason),
            )
            self._log_refresh_failure(target, source, request_id, outcome)
            return outcome

        if image is None:
            cache_write_ok = await self.store.record_error(key, "worker returned no image")
            outcome = RefreshOutcome(
                image=None,
                cache_write_ok=cache_write_ok,
                error_class="screenshot_worker_failed",
                worker_failure_reason="upstream",
            )
            self._log_refresh_failure(target, source, request_id, outcome)
            return outcome

        entry = ScreenshotCacheEntry(
            image=image,
            captured_at=captured_at,
            expires_at=captured_at + self._ttl_seconds,
            source=str(source),
        )
        cache_write_ok = await self.store.put(key, entry)
        return RefreshOutcome(
            image=image,
            cache_write_ok=cache_write_ok,
            error_class=None if cache_write_ok else "cache_write_failed",
        )

    def _log_refresh_failure(
        self,
        target: TargetUrl,
        source: RefreshSource,
        request_id: str | None,
        outcome: RefreshOutcome,
    ) -> None:
        log.info(
            "screenshot_refresh_failed",
            request_id=request_id,
            source=str(source),
            url=loggable_url(target, self._url_mode),
            error_class=outcome.error_class,
            worker_status_code=outcome.worker_status_code,
            worker_status_class=outcome.worker_status_class,
            worker_failure_reason=outcome.worker_failure_reason,
            cache_write_ok=outcome.cache_write_ok,
        )

    async def resolve_for_preview(self, target: TargetUrl, request_id: str) -> FallbackOutcome:
        """Pick a screenshot for a preview that has no metadata image."""
        cached = self.store.get(target.url)
        decision = decide_screenshot_action(self._now(), cached, self._stale_grace_seconds)

        if decision is ScreenshotDecision.FRESH and cached is not None:
            return FallbackOutcome(image=cached.image, decision=decision, used_cached_image=True)

        if decision is ScreenshotDecision.STALE and cached is not None:
            await self.start_background_refresh(target, request_id)
            return FallbackOutcome(image=cached.image, decision=decision, used_cached_image=True)

        refreshed = await self.refresh(target, RefreshSource.ON_DEMAND, request_id)
        return FallbackOutcome(
            image=refreshed.image,
            decision=decision,
            worker_attempted=True,
            worker_succeeded=refreshed.image is not None,
            cache_write_ok=refreshed.cache_write_ok,
            error_class=refreshed.error_class,
            worker_status_code=refreshed.worker_status_code,
            worker_status_class=refreshed.worker_status_class,
            worker_failure_reason=refreshed.worker_failure_reason,
        )

    async def start_background_refresh(self, target: TargetUrl, request_id: str | None) -> bool:
        """Launch a detached refresh unless one is already running for this URL.

        Returns True when this call claimed the URL and started the task.
        """
        async with self._in_flight_lock:
            if target.url in self._in_flight:
                return False
            self._in_flight.add(target.url)

        task = asyncio.create_task(self._background_refresh(target, request_id))
        # Keep a strong reference until the task finishes.
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _background_refresh(self, target: TargetUrl, request_id: str | None) -> None:
        """Fire-and-forget: all exceptions are caught and logged."""
        try:
            await self.refresh(target, RefreshSource.STALE, request_id)
        except Exception:
            log.warning(
                "stale_refresh_failed",
                request_id=request_id,
                url=loggable_url(target, self._url_mode),
                exc_info=True,
            )
        finally:
            async with self._in_flight_lock:
                self._in_flight.discard(target.url)

    async def refresh_many(self, raw_urls: list[str], request_id: str) -> RefreshSummary:
        """Refresh every valid URL with at most ``refresh_concurrency`` worker calls
        in flight. Blocks until all of them finish."""
        targets: list[TargetUrl] = []
        invalid = 0
        for raw_url in raw_urls:
            try:
                targets.append(parse_preview_url(raw_url))
            except UrlNotAllowedError:
                invalid += 1

        semaphore = asyncio.Semaphore(self._refresh_concurrency)

        async def _refresh_one(index: int, target: TargetUrl) -> bool:
            async with semaphore:
                outcome = await self.refresh(
                    target, RefreshSource.SCHEDULED, f"{request_id}-scheduled-{index}"
                )
            return outcome.image is not None

        results = await asyncio.gather(
            *(_refresh_one(index, target) for index, target in enumerate(targets)),
            return_exceptions=True,
        )

        refreshed = 0
        failed = 0
        for result in results:
            if result is True:
                refreshed += 1
                continue
            failed += 1
            if isinstance(result, BaseException):
                log.warning("scheduled_refresh_error", request_id=request_id, exc_info=result)

        return RefreshSummary(
            requested_urls=len(raw_urls),
            refreshed=refreshed,
            invalid=invalid,
            failed=failed,
        )

    async def wait_for_background(self) -> None:
        """Wait for all background refreshes started so far."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel background refreshes still running at shutdown."""
        for task in list(self._tasks):
            task.cancel()
        await self.wait_for_background()

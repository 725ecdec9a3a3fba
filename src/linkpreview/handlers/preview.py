"""Handler for GET /api/preview.

Receives AppState, orchestrates validation / cache lookup / metadata fetch /
screenshot fallback, and returns a PreviewPayload. No Starlette imports;
server.py handles the HTTP wiring.

A metadata fetch failure is not an error for the caller: the payload degrades
to the host name as title and the screenshot fallback still runs.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

import structlog

from linkpreview.errors import FetchError, UrlErrorCode, UrlNotAllowedError
from linkpreview.metadata import extract_metadata, minimal_metadata
from linkpreview.models.preview import PreviewPayload
from linkpreview.urls import loggable_url, parse_preview_url

if TYPE_CHECKING:
    from linkpreview.state import AppState
    from linkpreview.urls import TargetUrl


def _elapsed_ms(started_at: float) -> int:
    return int((time.perf_counter() - started_at) * 1000)


def _raw_host(raw_url: str | None) -> str:
    if not raw_url:
        return "unknown"
    try:
        return urlsplit(raw_url).hostname or "unknown"
    except ValueError:
        return "unknown"


async def handle(raw_url: str | None, request_id: str, state: AppState) -> PreviewPayload:
    """Handle a preview request. Raises UrlNotAllowedError for unusable input."""
    started_at = time.perf_counter()
    log = structlog.get_logger().bind(handler="preview", request_id=request_id)
    log.info("preview_request_start", url_host=_raw_host(raw_url))

    try:
        if raw_url is None:
            raise UrlNotAllowedError(UrlErrorCode.INVALID_URL, "missing url parameter")
        target = parse_preview_url(raw_url)
    except UrlNotAllowedError as exc:
        log.info(
            "preview_request_failed",
            error_class="invalid_url",
            code=str(exc.code),
            message=exc.message,
            duration_ms=_elapsed_ms(started_at),
        )
        raise

    logged_url = loggable_url(target, state.settings.logging.url_mode)

    cached = await state.preview_cache.get(target.url)
    log.info(
        "preview_cache_decision",
        url=logged_url,
        memory_cache="hit" if cached is not None else "miss",
    )
    if cached is not None:
        log.info(
            "preview_request_complete",
            status=200,
            cache="memory_hit",
            duration_ms=_elapsed_ms(started_at),
        )
        return cached

    payload = await build_payload(target, request_id, state, log=log, logged_url=logged_url)
    await state.preview_cache.put(target.url, payload)

    log.info(
        "preview_request_complete",
        status=200,
        cache="memory_miss",
        duration_ms=_elapsed_ms(started_at),
    )
    return payload


async def build_payload(
    target: TargetUrl,
    request_id: str,
    state: AppState,
    *,
    log: structlog.typing.FilteringBoundLogger,
    logged_url: str,
) -> PreviewPayload:
    """Fetch and extract metadata, falling back to a screenshot for the image."""
    try:
        result = await state.fetcher.fetch(target)
    except FetchError as exc:
        log.info(
            "preview_metadata_fetch_failed_recoverable",
            url=logged_url,
            error_class="metadata_fetch_failed_recoverable",
            code=str(exc.code),
            message=exc.message,
        )
        resolved = target
        metadata = minimal_metadata(target)
    else:
        resolved = result.final_url
        metadata = extract_metadata(result.body, resolved.url)

    log.info("preview_og_fetch_result", url=logged_url, has_og_image=metadata.image is not None)

    image = metadata.image
    if image is None:
        # Keyed by the final URL so redirects share one screenshot.
        fallback = await state.screenshots.resolve_for_preview(resolved, request_id)
        log.info("preview_screenshot_fallback", url=logged_url, **fallback.log_fields())
        image = fallback.image

    return PreviewPayload(
        ok=True,
        url=resolved.url,
        title=metadata.title,
        description=metadata.description,
        image=image,
    )

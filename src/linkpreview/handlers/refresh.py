"""Handler for POST /internal/refresh-screenshots.

Authenticates the caller with the configured refresh token, reads the URL list
and runs a bounded batch refresh. No Starlette imports; server.py maps
RefreshRejectedError codes to HTTP statuses.
"""

from __future__ import annotations

import secrets
import time
from pathlib import Path
from typing import TYPE_CHECKING

import structlog
from pydantic import ValidationError

from linkpreview.errors import RefreshErrorCode, RefreshRejectedError
from linkpreview.screenshots import load_refresh_urls

if TYPE_CHECKING:
    from linkpreview.models.screenshot import RefreshSummary
    from linkpreview.state import AppState


def is_authorized(provided: str | None, expected: str) -> bool:
    if not provided:
        return False
    return secrets.compare_digest(provided.encode(), expected.encode())


async def handle(bearer_token: str | None, request_id: str, state: AppState) -> RefreshSummary:
    """Handle a batch refresh request. Blocks until every capture has finished."""
    started_at = time.perf_counter()
    log = structlog.get_logger().bind(handler="refresh", request_id=request_id)
    log.info("refresh_request_start")

    def reject(code: RefreshErrorCode, message: str) -> RefreshRejectedError:
        log.info(
            "refresh_request_failed",
            error_class=str(code),
            message=message,
            duration_ms=int((time.perf_counter() - started_at) * 1000),
        )
        return RefreshRejectedError(code, message)

    expected = state.settings.screenshot.refresh_token
    if expected is None:
        raise reject(RefreshErrorCode.CONFIG_MISSING, "refresh token is not configured")

    if not is_authorized(bearer_token, expected):
        raise reject(RefreshErrorCode.AUTH_FAILED, "unauthorized")

    urls_path = Path(state.settings.screenshot.refresh_urls_path)
    try:
        raw_urls = load_refresh_urls(urls_path)
    except (OSError, ValidationError) as exc:
        raise reject(RefreshErrorCode.CONFIG_INVALID, "unable to read configured URL list") from exc

    summary = await state.screenshots.refresh_many(raw_urls, request_id)

    log.info(
        "refresh_request_complete",
        status=200,
        duration_ms=int((time.perf_counter() - started_at) * 1000),
        requested_urls=summary.requested_urls,
        refreshed=summary.refreshed,
        invalid=summary.invalid,
        failed=summary.failed,
    )
    return summary

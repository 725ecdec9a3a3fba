"""Client for the external screenshot-capture worker.

Contract: ``GET <worker>/capture?url=<target>`` with an optional bearer token
and the caller's ``x-request-id``. The worker answers
``{"ok": bool, "image"?: str, "imageDataUrl"?: str}``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING
from urllib.parse import urljoin

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from linkpreview.errors import CaptureError, CaptureErrorCode, CaptureFailureReason
from linkpreview.metadata import normalize_text
from linkpreview.transport import REQUEST_ID_HEADER

if TYPE_CHECKING:
    from linkpreview.config import FetcherSettings, ScreenshotSettings
    from linkpreview.urls import TargetUrl

log = structlog.get_logger()


class CaptureResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool
    image: str | None = None
    image_data_url: str | None = Field(default=None, alias="imageDataUrl")


def build_worker_client(
    screenshot: ScreenshotSettings, fetcher: FetcherSettings
) -> httpx.AsyncClient:
    """Create the httpx client used for capture calls. Called once at startup."""
    return httpx.AsyncClient(
        follow_redirects=False,
        timeout=httpx.Timeout(
            screenshot.worker_timeout_ms / 1000,
            connect=fetcher.connect_timeout_ms / 1000,
        ),
        headers={"User-Agent": fetcher.user_agent},
    )


def classify_status(status_code: int) -> CaptureFailureReason:
    if status_code in (401, 403):
        return CaptureFailureReason.AUTH
    if 400 <= status_code < 500:
        return CaptureFailureReason.VALIDATION
    return CaptureFailureReason.UPSTREAM


def _worker_failed(
    reason: CaptureFailureReason, message: str, status_code: int | None = None
) -> CaptureError:
    return CaptureError(
        CaptureErrorCode.WORKER_FAILED,
        message,
        failure_reason=reason,
        status_code=status_code,
    )


class CaptureClient:
    """Calls the capture worker. Implements CaptureProtocol."""

    def __init__(self, client: httpx.AsyncClient, settings: ScreenshotSettings) -> None:
        self._client = client
        self._worker_url = settings.worker_url
        self._token = settings.worker_token

    @property
    def configured(self) -> bool:
        return self._worker_url is not None

    async def capture(self, target: TargetUrl, request_id: str | None = None) -> str | None:
        """Request a screenshot of ``target``.

        Returns the image string, or None when the worker reported success
        without an image. Raises CaptureError on every failure.
        """
        if self._worker_url is None:
            raise CaptureError(
                CaptureErrorCode.WORKER_UNCONFIGURED,
                "screenshot worker is not configured",
                failure_reason=CaptureFailureReason.VALIDATION,
            )

        headers: dict[str, str] = {}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        if request_id:
            headers[REQUEST_ID_HEADER] = request_id

        capture_url = urljoin(self._worker_url, "capture")
        try:
            response = await self._client.get(
                capture_url, params={"url": target.url}, headers=headers
            )
        except httpx.HTTPError as exc:
            raise _worker_failed(
                CaptureFailureReason.UPSTREAM, f"worker request failed: {type(exc).__name__}"
            ) from exc

        if not response.is_success:
            raise _worker_failed(
                classify_status(response.status_code),
                f"worker returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            payload = CaptureResponse.model_validate_json(response.content)
        except ValidationError as exc:
            raise _worker_failed(
                CaptureFailureReason.UPSTREAM, "worker returned invalid JSON"
            ) from exc

        if not payload.ok:
            raise _worker_failed(CaptureFailureReason.UPSTREAM, "worker reported failure")

        log.debug("screenshot_worker_response", status_code=response.status_code)
        return normalize_text(payload.image) or normalize_text(payload.image_data_url)

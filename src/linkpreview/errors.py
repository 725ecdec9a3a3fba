from __future__ import annotations

from enum import StrEnum


class UrlErrorCode(StrEnum):
    INVALID_URL = "invalid_url"
    INVALID_SCHEME = "invalid_scheme"
    MISSING_HOST = "missing_host"
    LOCAL_HOST = "local_host"
    BLOCKED_IP = "blocked_ip"


class FetchErrorCode(StrEnum):
    DNS_TIMEOUT = "dns_timeout"
    DNS_FAILED = "dns_failed"
    REQUEST_FAILED = "request_failed"
    TIMEOUT = "timeout"
    NON_SUCCESS_STATUS = "non_success_status"
    BODY_TOO_LARGE = "body_too_large"
    BODY_READ_FAILED = "body_read_failed"
    TOO_MANY_REDIRECTS = "too_many_redirects"
    INVALID_REDIRECT = "invalid_redirect"
    UNSUPPORTED_ENCODING = "unsupported_encoding"


class CaptureErrorCode(StrEnum):
    WORKER_UNCONFIGURED = "screenshot_worker_unconfigured"
    WORKER_FAILED = "screenshot_worker_failed"


class CaptureFailureReason(StrEnum):
    VALIDATION = "validation"
    AUTH = "auth"
    UPSTREAM = "upstream"


class LinkPreviewError(Exception):
    """Base class for all expected failure conditions.

    ``recoverable`` tells the orchestrator whether the request can still be
    answered with a degraded payload.
    """

    def __init__(self, code: StrEnum, message: str, recoverable: bool = False) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.recoverable = recoverable

    def to_dict(self) -> dict:
        return {"ok": False, "error": self.message}


class UrlNotAllowedError(LinkPreviewError):
    """The URL is malformed or points at a blocked scheme, host or address."""

    def __init__(self, code: UrlErrorCode, message: str) -> None:
        super().__init__(code, message, recoverable=False)


class FetchError(LinkPreviewError):
    """The upstream page could not be fetched.

    Always recoverable: the preview degrades to host-only metadata. A redirect
    to a blocked address is reported with a ``UrlErrorCode`` wrapped here so
    the whole fetch fails.
    """

    def __init__(self, code: FetchErrorCode | UrlErrorCode, message: str) -> None:
        super().__init__(code, message, recoverable=True)


class CaptureError(LinkPreviewError):
    """The screenshot worker did not return a usable image."""

    def __init__(
        self,
        code: CaptureErrorCode,
        message: str,
        *,
        failure_reason: CaptureFailureReason,
        status_code: int | None = None,
    ) -> None:
        super().__init__(code, message, recoverable=True)
        self.failure_reason = failure_reason
        self.status_code = status_code

    @property
    def status_class(self) -> str | None:
        if self.status_code is None:
            return None
        if 100 <= self.status_code < 600:
            return f"{self.status_code // 100}xx"
        return "unknown"


class RefreshErrorCode(StrEnum):
    CONFIG_MISSING = "config_missing"
    AUTH_FAILED = "auth_failed"
    CONFIG_INVALID = "config_invalid"


class RefreshRejectedError(LinkPreviewError):
    """A batch refresh request was refused before any capture ran."""

    def __init__(self, code: RefreshErrorCode, message: str) -> None:
        super().__init__(code, message, recoverable=False)

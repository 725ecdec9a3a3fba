"""Pinned HTTP page fetcher with SSRF protection.

All network I/O for preview pages goes through a single Fetcher instance. The
Fetcher receives an httpx.AsyncClient via constructor injection; the lifespan
owns the client lifecycle.

Every hop is checked before it is sent. Hostnames are resolved here, every
resolved address is checked, and the request is sent to one of the checked
addresses directly: the URL host is swapped for the IP while the original
``Host`` header and TLS SNI name are kept. The TCP connection therefore goes to
exactly the address that was validated, closing the DNS-rebinding window.

Connections are never reused between requests; the pool key (scheme, IP,
port) does not include the SNI name, and every hostname must get its own
certificate check.

Bodies are requested uncompressed and capped on the raw bytes read from the
socket; a compressed response is refused.
"""

from __future__ import annotations

import asyncio
import ipaddress
import socket
import ssl
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import urljoin

import httpx
import structlog

from linkpreview.errors import FetchError, FetchErrorCode, UrlErrorCode, UrlNotAllowedError
from linkpreview.urls import IPAddress, TargetUrl, is_disallowed_ip, parse_preview_url

if TYPE_CHECKING:
    from linkpreview.config import FetcherSettings

log = structlog.get_logger()

Resolver = Callable[[str, int], Awaitable[list[str]]]


async def resolve_host(host: str, port: int) -> list[str]:
    """Resolve ``host`` with the event loop's getaddrinfo. Returns raw IP strings."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    return [str(info[4][0]) for info in infos]


def build_http_client(
    settings: FetcherSettings, *, verify: ssl.SSLContext | bool = True
) -> httpx.AsyncClient:
    """Create the shared httpx client. Called once at startup."""
    return httpx.AsyncClient(
        verify=verify,
        follow_redirects=False,
        timeout=httpx.Timeout(
            settings.request_timeout_ms / 1000,
            connect=settings.connect_timeout_ms / 1000,
        ),
        headers={"User-Agent": settings.user_agent, "Accept-Encoding": "identity"},
        limits=httpx.Limits(
            max_connections=20,
            max_keepalive_connections=0,
        ),
    )


def collect_validated_ips(raw_addresses: list[str]) -> list[IPAddress]:
    """Validate and deduplicate resolved addresses, preserving resolver order.

    A single blocked address fails the whole set.
    """
    selected: list[IPAddress] = []
    for raw in raw_addresses:
        try:
            address = ipaddress.ip_address(raw)
        except ValueError as exc:
            raise FetchError(FetchErrorCode.DNS_FAILED, "unable to resolve host") from exc
        if is_disallowed_ip(address):
            raise FetchError(UrlErrorCode.BLOCKED_IP, "host address is blocked")
        if address not in selected:
            selected.append(address)

    if not selected:
        raise FetchError(FetchErrorCode.DNS_FAILED, "unable to resolve host")
    return selected


@dataclass(frozen=True)
class FetchResult:
    final_url: TargetUrl
    body: str


class Fetcher:
    """Preview page fetcher with per-hop SSRF validation and IP pinning."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: FetcherSettings,
        *,
        max_body_bytes: int,
        resolver: Resolver = resolve_host,
    ) -> None:
        self._client = client
        self._max_redirects = settings.max_redirects
        self._max_ip_attempts = settings.max_resolved_ip_attempts
        self._dns_timeout = settings.dns_lookup_timeout_ms / 1000
        self._request_timeout = settings.request_timeout_ms / 1000
        self._max_body_bytes = max_body_bytes
        self._resolver = resolver

    async def fetch(self, url: TargetUrl | str) -> FetchResult:
        """Fetch a page, following redirects manually.

        Returns the final URL and decoded body. Raises FetchError on blocked
        hops, network errors, non-2xx responses, oversized bodies and redirect
        chains longer than ``max_redirects``.
        """
        current = self._check(url if isinstance(url, str) else url.url)

        for hop in range(self._max_redirects + 1):
            try:
                async with asyncio.timeout(self._request_timeout):
                    response = await self._send_pinned(current)
                    try:
                        if 300 <= response.status_code < 400:
                            if hop == self._max_redirects:
                                raise FetchError(
                                    FetchErrorCode.TOO_MANY_REDIRECTS, "too many redirects"
                                )
                            current = self._redirect_target(current, response)
                            continue

                        if not response.is_success:
                            raise FetchError(
                                FetchErrorCode.NON_SUCCESS_STATUS,
                                "received non-success response",
                            )

                        body = await self._read_limited_body(response)
                    finally:
                        await response.aclose()
            except TimeoutError as exc:
                raise FetchError(FetchErrorCode.TIMEOUT, "request timed out") from exc

            log.debug("fetch_complete", host=current.host, hops=hop, content_length=len(body))
            return FetchResult(final_url=current, body=body)

        # Unreachable but satisfies the type checker
        raise FetchError(FetchErrorCode.TOO_MANY_REDIRECTS, "too many redirects")

    @staticmethod
    def _check(url: str) -> TargetUrl:
        try:
            return parse_preview_url(url)
        except UrlNotAllowedError as exc:
            raise FetchError(UrlErrorCode(exc.code), exc.message) from exc

    def _redirect_target(self, current: TargetUrl, response: httpx.Response) -> TargetUrl:
        location = response.headers.get("location")
        if not location:
            raise FetchError(FetchErrorCode.INVALID_REDIRECT, "received redirect without location")
        next_url = self._check(urljoin(current.url, location.strip()))
        log.debug("fetch_redirect", status_code=response.status_code, next_host=next_url.host)
        return next_url

    async def _resolve(self, target: TargetUrl) -> list[IPAddress]:
        try:
            raw = await asyncio.wait_for(
                self._resolver(target.host, target.port), timeout=self._dns_timeout
            )
        except TimeoutError as exc:
            raise FetchError(FetchErrorCode.DNS_TIMEOUT, "host lookup timed out") from exc
        except OSError as exc:
            raise FetchError(FetchErrorCode.DNS_FAILED, "unable to resolve host") from exc
        return collect_validated_ips(raw)

    @staticmethod
    def _request_headers(target: TargetUrl) -> dict[str, str]:
        return {
            "Host": target.netloc,
            "Accept-Encoding": "identity",
            "Connection": "close",
        }

    async def _send_pinned(self, target: TargetUrl) -> httpx.Response:
        """Send a GET to one validated address of ``target``. Response is streamed."""
        if target.address is not None:
            try:
                return await self._client.send(
                    self._client.build_request(
                        "GET", target.url, headers=self._request_headers(target)
                    ),
                    stream=True,
                )
            except httpx.HTTPError as exc:
                raise FetchError(FetchErrorCode.REQUEST_FAILED, "failed to fetch URL") from exc

        addresses = await self._resolve(target)
        for address in addresses[: self._max_ip_attempts]:
            pinned_host = f"[{address}]" if address.version == 6 else str(address)
            request = self._client.build_request(
                "GET",
                httpx.URL(target.url).copy_with(host=pinned_host),
                headers=self._request_headers(target),
            )
            request.extensions["sni_hostname"] = target.host
            try:
                return await self._client.send(request, stream=True)
            except httpx.HTTPError as exc:
                log.debug("fetch_pinned_attempt_failed", host=target.host, error=type(exc).__name__)
                continue

        raise FetchError(FetchErrorCode.REQUEST_FAILED, "failed to fetch URL")

    async def _read_limited_body(self, response: httpx.Response) -> str:
        encoding = response.headers.get("content-encoding", "identity").strip().lower()
        if encoding not in ("", "identity"):
            raise FetchError(
                FetchErrorCode.UNSUPPORTED_ENCODING, "compressed response bodies are not accepted"
            )

        body = bytearray()
        try:
            async for chunk in response.aiter_raw():
                if len(body) + len(chunk) > self._max_body_bytes:
                    raise FetchError(FetchErrorCode.BODY_TOO_LARGE, "response body too large")
                body.extend(chunk)
        except httpx.HTTPError as exc:
            raise FetchError(
                FetchErrorCode.BODY_READ_FAILED, "failed reading response body"
            ) from exc

        try:
            return body.decode(response.charset_encoding or "utf-8", errors="replace")
        except LookupError:
            return body.decode("utf-8", errors="replace")

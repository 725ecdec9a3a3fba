"""Unit tests for linkpreview.fetcher."""

from __future__ import annotations

import asyncio
import gzip
import ipaddress
import socket

import httpx
import pytest
import respx

from linkpreview.config import FetcherSettings
from linkpreview.errors import FetchError, FetchErrorCode, UrlErrorCode
from linkpreview.fetcher import Fetcher, Resolver, build_http_client, collect_validated_ips

PUBLIC_IP = "93.184.216.34"
PUBLIC_IP_2 = "93.184.216.35"


def make_resolver(mapping: dict[str, list[str]]) -> Resolver:
    async def resolver(host: str, port: int) -> list[str]:
        if host not in mapping:
            raise socket.gaierror(f"unknown host {host}")
        return mapping[host]

    return resolver


def make_fetcher(
    client: httpx.AsyncClient,
    mapping: dict[str, list[str]] | None = None,
    *,
    max_body_bytes: int = 64 * 1024,
    **overrides: int,
) -> Fetcher:
    return Fetcher(
        client,
        FetcherSettings(**overrides),
        max_body_bytes=max_body_bytes,
        resolver=make_resolver(mapping or {"example.com": [PUBLIC_IP]}),
    )


# ---------------------------------------------------------------------------
# build_http_client
# ---------------------------------------------------------------------------


class TestBuildHttpClient:
    async def test_client_configuration(self) -> None:
        client = build_http_client(FetcherSettings())
        try:
            # follow_redirects is False (we handle redirects manually)
            assert client.follow_redirects is False
            assert client.headers["user-agent"] == "portfolio-preview-bot/1.0"
            assert client.timeout.connect == 3.0
            assert client.timeout.read == 6.0
            assert client.headers["accept-encoding"] == "identity"
        finally:
            await client.aclose()


# ---------------------------------------------------------------------------
# collect_validated_ips
# ---------------------------------------------------------------------------


class TestCollectValidatedIps:
    def test_deduplicates_preserving_order(self) -> None:
        result = collect_validated_ips([PUBLIC_IP_2, PUBLIC_IP, PUBLIC_IP_2])
        assert result == [ipaddress.ip_address(PUBLIC_IP_2), ipaddress.ip_address(PUBLIC_IP)]

    def test_single_blocked_address_fails_all(self) -> None:
        with pytest.raises(FetchError) as exc_info:
            collect_validated_ips([PUBLIC_IP, "10.0.0.7"])
        assert exc_info.value.code == UrlErrorCode.BLOCKED_IP

    def test_empty_result(self) -> None:
        with pytest.raises(FetchError) as exc_info:
            collect_validated_ips([])
        assert exc_info.value.code == FetchErrorCode.DNS_FAILED


# ---------------------------------------------------------------------------
# Fetcher
# ---------------------------------------------------------------------------


class TestFetcher:
    async def test_request_pinned_to_resolved_ip(self) -> None:
        with respx.mock:
            route = respx.get(f"https://{PUBLIC_IP}/page").mock(
                return_value=httpx.Response(200, html="<title>Hi</title>")
            )
            async with httpx.AsyncClient() as client:
                result = await make_fetcher(client).fetch("https://example.com/page")

        assert result.final_url.url == "https://example.com/page"
        assert result.body == "<title>Hi</title>"
        sent = route.calls.last.request
        assert sent.headers["host"] == "example.com"
        assert sent.extensions["sni_hostname"] == "example.com"
        assert sent.headers["connection"] == "close"
        assert sent.headers["accept-encoding"] == "identity"

    async def test_ipv6_address_pinned_with_brackets(self) -> None:
        with respx.mock:
            route = respx.get("https://[2606:2800:220:1::1]/").mock(
                return_value=httpx.Response(200, text="ok")
            )
            async with httpx.AsyncClient() as client:
                fetcher = make_fetcher(client, {"example.com": ["2606:2800:220:1::1"]})
                result = await fetcher.fetch("https://example.com/")

        assert result.body == "ok"
        assert route.calls.last.request.headers["host"] == "example.com"

    async def test_falls_back_to_next_address(self) -> None:
        with respx.mock:
            respx.get(f"https://{PUBLIC_IP}/").mock(side_effect=httpx.ConnectError("refused"))
            respx.get(f"https://{PUBLIC_IP_2}/").mock(return_value=httpx.Response(200, text="ok"))
            async with httpx.AsyncClient() as client:
                fetcher = make_fetcher(client, {"example.com": [PUBLIC_IP, PUBLIC_IP_2]})
                result = await fetcher.fetch("https://example.com/")

        assert result.body == "ok"

    async def test_attempt_limit(self) -> None:
        with respx.mock:
            first = respx.get(f"https://{PUBLIC_IP}/").mock(
                side_effect=httpx.ConnectError("refused")
            )
            async with httpx.AsyncClient() as client:
                fetcher = make_fetcher(
                    client,
                    {"example.com": [PUBLIC_IP, PUBLIC_IP_2]},
                    max_resolved_ip_attempts=1,
                )
                with pytest.raises(FetchError) as exc_info:
                    await fetcher.fetch("https://example.com/")

        assert exc_info.value.code == FetchErrorCode.REQUEST_FAILED
        assert exc_info.value.recoverable is True
        assert first.call_count == 1

    async def test_literal_ip_sent_directly(self) -> None:
        with respx.mock:
            respx.get(f"http://{PUBLIC_IP}/").mock(return_value=httpx.Response(200, text="ip"))
            async with httpx.AsyncClient() as client:
                # Empty resolver map: a lookup would fail the fetch.
                result = await make_fetcher(client, {}).fetch(f"http://{PUBLIC_IP}/")

        assert result.body == "ip"

    async def test_non_success_status(self) -> None:
        with respx.mock:
            respx.get(f"https://{PUBLIC_IP}/missing").mock(return_value=httpx.Response(404))
            async with httpx.AsyncClient() as client:
                with pytest.raises(FetchError) as exc_info:
                    await make_fetcher(client).fetch("https://example.com/missing")

        assert exc_info.value.code == FetchErrorCode.NON_SUCCESS_STATUS

    async def test_body_too_large(self) -> None:
        with respx.mock:
            respx.get(f"https://{PUBLIC_IP}/big").mock(
                return_value=httpx.Response(200, text="x" * 4096)
            )
            async with httpx.AsyncClient() as client:
                fetcher = make_fetcher(client, max_body_bytes=1024)
                with pytest.raises(FetchError) as exc_info:
                    await fetcher.fetch("https://example.com/big")

        assert exc_info.value.code == FetchErrorCode.BODY_TOO_LARGE

    async def test_compressed_body_refused(self) -> None:
        # Would inflate far past the cap if decoded.
        bomb = gzip.compress(b"x" * (1024 * 1024))
        with respx.mock:
            respx.get(f"https://{PUBLIC_IP}/packed").mock(
                return_value=httpx.Response(
                    200, content=bomb, headers={"content-encoding": "gzip"}
                )
            )
            async with httpx.AsyncClient() as client:
                fetcher = make_fetcher(client, max_body_bytes=64 * 1024)
                with pytest.raises(FetchError) as exc_info:
                    await fetcher.fetch("https://example.com/packed")

        assert exc_info.value.code == FetchErrorCode.UNSUPPORTED_ENCODING

    async def test_body_exactly_at_limit(self) -> None:
        with respx.mock:
            respx.get(f"https://{PUBLIC_IP}/fits").mock(
                return_value=httpx.Response(200, text="x" * 1024)
            )
            async with httpx.AsyncClient() as client:
                result = await make_fetcher(client, max_body_bytes=1024).fetch(
                    "https://example.com/fits"
                )

        assert len(result.body) == 1024

    async def test_unresolvable_host(self) -> None:
        async with httpx.AsyncClient() as client:
            with pytest.raises(FetchError) as exc_info:
                await make_fetcher(client, {}).fetch("https://nowhere.example/")

        assert exc_info.value.code == FetchErrorCode.DNS_FAILED

    async def test_dns_timeout(self) -> None:
        async def slow_resolver(host: str, port: int) -> list[str]:
            await asyncio.sleep(5)
            return [PUBLIC_IP]

        async with httpx.AsyncClient() as client:
            fetcher = Fetcher(
                client,
                FetcherSettings(dns_lookup_timeout_ms=100),
                max_body_bytes=1024,
                resolver=slow_resolver,
            )
            with pytest.raises(FetchError) as exc_info:
                await fetcher.fetch("https://example.com/")

        assert exc_info.value.code == FetchErrorCode.DNS_TIMEOUT

    async def test_hostname_resolving_to_private_address(self) -> None:
        async with httpx.AsyncClient() as client:
            fetcher = make_fetcher(client, {"internal.example": ["10.0.0.5"]})
            with pytest.raises(FetchError) as exc_info:
                await fetcher.fetch("https://internal.example/")

        assert exc_info.value.code == UrlErrorCode.BLOCKED_IP


# ---------------------------------------------------------------------------
# Redirects
# ---------------------------------------------------------------------------


class TestRedirects:
    async def test_relative_redirect_followed(self) -> None:
        with respx.mock:
            respx.get(f"https://{PUBLIC_IP}/old").mock(
                return_value=httpx.Response(301, headers={"location": "/new"})
            )
            respx.get(f"https://{PUBLIC_IP}/new").mock(
                return_value=httpx.Response(200, text="moved")
            )
            async with httpx.AsyncClient() as client:
                result = await make_fetcher(client).fetch("https://example.com/old")

        assert result.final_url.url == "https://example.com/new"
        assert result.body == "moved"

    async def test_redirect_to_other_host_is_revalidated(self) -> None:
        with respx.mock:
            respx.get(f"https://{PUBLIC_IP}/").mock(
                return_value=httpx.Response(302, headers={"location": "https://www.example.org/"})
            )
            route = respx.get(f"https://{PUBLIC_IP_2}/").mock(
                return_value=httpx.Response(200, text="final")
            )
            async with httpx.AsyncClient() as client:
                fetcher = make_fetcher(
                    client, {"example.com": [PUBLIC_IP], "www.example.org": [PUBLIC_IP_2]}
                )
                result = await fetcher.fetch("https://example.com/")

        assert result.final_url.url == "https://www.example.org/"
        assert route.calls.last.request.headers["host"] == "www.example.org"

    async def test_redirect_to_blocked_literal_fails_whole_fetch(self) -> None:
        with respx.mock:
            respx.get(f"https://{PUBLIC_IP}/go").mock(
                return_value=httpx.Response(302, headers={"location": "http://127.0.0.1/admin"})
            )
            async with httpx.AsyncClient() as client:
                with pytest.raises(FetchError) as exc_info:
                    await make_fetcher(client).fetch("https://example.com/go")

        assert exc_info.value.code == UrlErrorCode.BLOCKED_IP
        assert exc_info.value.recoverable is True

    async def test_redirect_to_host_resolving_private_fails(self) -> None:
        with respx.mock:
            respx.get(f"https://{PUBLIC_IP}/go").mock(
                return_value=httpx.Response(302, headers={"location": "https://intranet.example/"})
            )
            async with httpx.AsyncClient() as client:
                fetcher = make_fetcher(
                    client, {"example.com": [PUBLIC_IP], "intranet.example": ["192.168.0.10"]}
                )
                with pytest.raises(FetchError) as exc_info:
                    await fetcher.fetch("https://example.com/go")

        assert exc_info.value.code == UrlErrorCode.BLOCKED_IP

    async def test_redirect_without_location(self) -> None:
        with respx.mock:
            respx.get(f"https://{PUBLIC_IP}/").mock(return_value=httpx.Response(302))
            async with httpx.AsyncClient() as client:
                with pytest.raises(FetchError) as exc_info:
                    await make_fetcher(client).fetch("https://example.com/")

        assert exc_info.value.code == FetchErrorCode.INVALID_REDIRECT

    async def test_too_many_redirects(self) -> None:
        with respx.mock:
            route = respx.get(f"https://{PUBLIC_IP}/loop").mock(
                return_value=httpx.Response(302, headers={"location": "/loop"})
            )
            async with httpx.AsyncClient() as client:
                with pytest.raises(FetchError) as exc_info:
                    await make_fetcher(client, max_redirects=2).fetch("https://example.com/loop")

        assert exc_info.value.code == FetchErrorCode.TOO_MANY_REDIRECTS
        # Initial request plus two followed redirects
        assert route.call_count == 3

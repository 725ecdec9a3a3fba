"""URL normalization and SSRF policy.

Every URL that reaches the fetcher, the caches or the screenshot worker goes
through ``parse_preview_url`` first. The returned ``TargetUrl.url`` is the
normalized form used as the cache key, so trivially different spellings of the
same resource collide.

The same check runs again on every redirect target before it is followed.
Resolved addresses of hostnames are checked by the fetcher with
``is_disallowed_ip``.
"""

from __future__ import annotations

import ipaddress
import string
from dataclasses import dataclass
from typing import Literal
from urllib.parse import urlsplit, urlunsplit

from linkpreview.errors import UrlErrorCode, UrlNotAllowedError

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address

DEFAULT_PORTS = {"http": 80, "https": 443}

_IPV4_BROADCAST = ipaddress.IPv4Address("255.255.255.255")
_IPV4_DOCUMENTATION: list[ipaddress.IPv4Network] = [
    ipaddress.IPv4Network("192.0.2.0/24"),
    ipaddress.IPv4Network("198.51.100.0/24"),
    ipaddress.IPv4Network("203.0.113.0/24"),
]
_IPV6_UNIQUE_LOCAL = ipaddress.IPv6Network("fc00::/7")
_IPV6_DOCUMENTATION = ipaddress.IPv6Network("2001:db8::/32")

_FORBIDDEN_HOST_CHARS = frozenset(" \t\r\n#%/:<>?@[\\]^|\"'`{}")
_HEX_DIGITS = frozenset(string.hexdigits)
_OCT_DIGITS = frozenset(string.octdigits)
_DEC_DIGITS = frozenset(string.digits)


@dataclass(frozen=True)
class TargetUrl:
    """A parsed, normalized and policy-checked http(s) URL."""

    url: str
    scheme: str
    host: str  # ASCII, lowercase, no IPv6 brackets
    port: int  # Effective port, default filled in
    address: IPAddress | None  # Set when the host is a literal IP

    @property
    def netloc(self) -> str:
        host = f"[{self.host}]" if isinstance(self.address, ipaddress.IPv6Address) else self.host
        if self.port == DEFAULT_PORTS[self.scheme]:
            return host
        return f"{host}:{self.port}"

    def __str__(self) -> str:
        return self.url


def _embedded_ipv4(address: ipaddress.IPv6Address) -> ipaddress.IPv4Address | None:
    """Return the IPv4 address carried by a mapped (``::ffff:a.b.c.d``) or
    compatible (``::a.b.c.d``) IPv6 address."""
    if address.ipv4_mapped is not None:
        return address.ipv4_mapped
    if int(address) >> 32 == 0:
        return ipaddress.IPv4Address(int(address) & 0xFFFFFFFF)
    return None


def is_disallowed_ip(address: IPAddress) -> bool:
    """Return True for any address an outbound request must never reach."""
    if isinstance(address, ipaddress.IPv6Address):
        embedded = _embedded_ipv4(address)
        if embedded is not None:
            address = embedded

    if isinstance(address, ipaddress.IPv4Address):
        return (
            address.is_private
            or address.is_loopback
            or address.is_link_local
            or address.is_multicast
            or address.is_unspecified
            or address.is_reserved
            or address == _IPV4_BROADCAST
            or any(address in net for net in _IPV4_DOCUMENTATION)
            # 0.x.x.x: also what shortened legacy notations like "0x0" collapse to
            or address.packed[0] == 0
        )

    return (
        address.is_loopback
        or address.is_unspecified
        or address in _IPV6_UNIQUE_LOCAL
        or address.is_link_local
        or address.is_multicast
        or address in _IPV6_DOCUMENTATION
    )


def _parse_ipv4_part(part: str) -> int:
    if part[:2].lower() == "0x":
        digits, allowed, radix = part[2:], _HEX_DIGITS, 16
    elif len(part) > 1 and part.startswith("0"):
        digits, allowed, radix = part[1:], _OCT_DIGITS, 8
    else:
        digits, allowed, radix = part, _DEC_DIGITS, 10
    if not digits:
        return 0
    if not set(digits) <= allowed:
        raise ValueError(part)
    return int(digits, radix)


def _parse_legacy_ipv4(host: str) -> ipaddress.IPv4Address | None:
    """Interpret numeric hosts the way browsers do.

    ``2130706433``, ``0x7f.1`` and ``0177.0.0.1`` all mean 127.0.0.1. Returns
    None when the host is not purely numeric.
    """
    parts = host.split(".")
    if len(parts) > 1 and parts[-1] == "":
        parts.pop()
    if not parts or len(parts) > 4 or any(part == "" for part in parts):
        return None
    try:
        numbers = [_parse_ipv4_part(part) for part in parts]
    except ValueError:
        return None

    *leading, last = numbers
    if any(number > 255 for number in leading) or last >= 256 ** (5 - len(numbers)):
        raise UrlNotAllowedError(UrlErrorCode.INVALID_URL, "invalid URL")

    value = last
    for index, number in enumerate(leading):
        value += number * 256 ** (3 - index)
    return ipaddress.IPv4Address(value)


def _normalize_host(raw_host: str) -> tuple[str, IPAddress | None]:
    try:
        address = ipaddress.ip_address(raw_host)
    except ValueError:
        pass
    else:
        return str(address), address

    legacy = _parse_legacy_ipv4(raw_host)
    if legacy is not None:
        return str(legacy), legacy

    if any(char in _FORBIDDEN_HOST_CHARS for char in raw_host):
        raise UrlNotAllowedError(UrlErrorCode.INVALID_URL, "invalid URL")
    try:
        host = raw_host.encode("idna").decode("ascii")
    except UnicodeError as exc:
        raise UrlNotAllowedError(UrlErrorCode.INVALID_URL, "invalid URL") from exc
    return host.lower().rstrip("."), None


def parse_preview_url(raw_url: str) -> TargetUrl:
    """Parse, normalize and policy-check a URL.

    Raises ``UrlNotAllowedError`` for malformed URLs, non-http(s) schemes,
    missing hosts, ``localhost`` names and blocked literal addresses.
    """
    try:
        parts = urlsplit(raw_url.strip())
        raw_host = parts.hostname
        explicit_port = parts.port
    except ValueError as exc:
        raise UrlNotAllowedError(UrlErrorCode.INVALID_URL, "invalid URL") from exc

    scheme = parts.scheme.lower()
    if not scheme:
        raise UrlNotAllowedError(UrlErrorCode.INVALID_URL, "invalid URL")
    if scheme not in DEFAULT_PORTS:
        raise UrlNotAllowedError(UrlErrorCode.INVALID_SCHEME, "URL scheme must be http or https")
    if not raw_host:
        raise UrlNotAllowedError(UrlErrorCode.MISSING_HOST, "URL host is required")

    host, address = _normalize_host(raw_host)
    if not host:
        raise UrlNotAllowedError(UrlErrorCode.MISSING_HOST, "URL host is required")

    if host == "localhost" or host.endswith(".localhost"):
        raise UrlNotAllowedError(UrlErrorCode.LOCAL_HOST, "local addresses are not allowed")
    if address is not None and is_disallowed_ip(address):
        raise UrlNotAllowedError(UrlErrorCode.BLOCKED_IP, "host address is blocked")

    port = explicit_port if explicit_port is not None else DEFAULT_PORTS[scheme]
    target = TargetUrl(url="", scheme=scheme, host=host, port=port, address=address)
    url = urlunsplit((scheme, target.netloc, parts.path or "/", parts.query, ""))
    return TargetUrl(url=url, scheme=scheme, host=host, port=port, address=address)


def is_url_allowed(url: str) -> bool:
    """Boolean form of ``parse_preview_url`` for callers that only need a yes/no."""
    try:
        parse_preview_url(url)
    except UrlNotAllowedError:
        return False
    return True


def host_title(target: TargetUrl) -> str:
    """Bare hostname used as the title of a degraded preview."""
    return target.host.removeprefix("www.")


def loggable_url(target: TargetUrl, mode: Literal["host", "full"]) -> str:
    """Redact a URL for log output according to ``logging.url_mode``."""
    if mode == "full":
        return target.url
    return target.netloc

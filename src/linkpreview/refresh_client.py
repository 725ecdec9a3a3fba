"""``linkpreview-refresh``: trigger a scheduled screenshot refresh.

Meant to run from cron. Reads the endpoint and bearer token from
``SCREENSHOT_REFRESH_ENDPOINT`` and ``SCREENSHOT_REFRESH_TOKEN`` and exits
non-zero when either is missing or the request does not succeed.
"""

from __future__ import annotations

import asyncio
import os
import sys
from collections.abc import Mapping

import httpx

ENDPOINT_ENV = "SCREENSHOT_REFRESH_ENDPOINT"
TOKEN_ENV = "SCREENSHOT_REFRESH_TOKEN"

# A batch refresh blocks until every capture has finished.
REQUEST_TIMEOUT_SECONDS = 300.0


async def trigger_refresh(
    endpoint: str, token: str, client: httpx.AsyncClient | None = None
) -> httpx.Response:
    """POST to the refresh endpoint with the bearer token."""
    headers = {"Authorization": f"Bearer {token}"}
    if client is not None:
        return await client.post(endpoint, headers=headers)
    async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SECONDS) as owned:
        return await owned.post(endpoint, headers=headers)


def run(environ: Mapping[str, str] = os.environ) -> int:
    endpoint = environ.get(ENDPOINT_ENV, "").strip()
    token = environ.get(TOKEN_ENV, "").strip()

    if not endpoint:
        print(f"missing {ENDPOINT_ENV}", file=sys.stderr)
        return 1
    if not token:
        print(f"missing {TOKEN_ENV}", file=sys.stderr)
        return 1

    try:
        response = asyncio.run(trigger_refresh(endpoint, token))
    except httpx.HTTPError as exc:
        print(f"refresh request failed: {type(exc).__name__}: {exc}", file=sys.stderr)
        return 1

    if not response.is_success:
        print(f"refresh request failed ({response.status_code}): {response.text}", file=sys.stderr)
        return 1

    print(f"refresh request succeeded ({response.status_code}): {response.text}")
    return 0


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()

"""HTTP server entrypoint.

Responsibilities (and nothing more):
- Configure structlog
- Create AppState inside the Starlette lifespan
- Map handler results and errors to HTTP responses
- Serve the static single-page UI
- Start uvicorn
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

import structlog
import uvicorn
from starlette.applications import Starlette
from starlette.exceptions import HTTPException
from starlette.middleware import Middleware
from starlette.responses import JSONResponse
from starlette.routing import Mount, Route
from starlette.staticfiles import StaticFiles

import linkpreview.handlers.preview as h_preview
import linkpreview.handlers.refresh as h_refresh
from linkpreview import __version__
from linkpreview.cache import PreviewCache
from linkpreview.capture import CaptureClient, build_worker_client
from linkpreview.config import Settings
from linkpreview.errors import RefreshErrorCode, RefreshRejectedError, UrlNotAllowedError
from linkpreview.fetcher import Fetcher, build_http_client
from linkpreview.screenshots import ScreenshotService, ScreenshotStore
from linkpreview.state import AppState
from linkpreview.transport import RequestContextMiddleware, generate_request_id, read_bearer_token

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from starlette.requests import Request
    from starlette.responses import Response
    from starlette.types import Scope

log = structlog.get_logger()

NO_STORE = "no-store"

_REFRESH_STATUS: dict[RefreshErrorCode, int] = {
    RefreshErrorCode.CONFIG_MISSING: 503,
    RefreshErrorCode.AUTH_FAILED: 401,
    RefreshErrorCode.CONFIG_INVALID: 400,
}


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------


def _setup_logging(settings: Settings) -> None:
    """Configure structlog. Called once at startup before any log statements."""
    log_level = logging.getLevelNamesMapping()[settings.logging.level]

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.logging.format == "json":
        processors = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [*shared_processors, structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# State and lifespan
# ---------------------------------------------------------------------------


def build_state(settings: Settings) -> AppState:
    """Create every shared component. The caller owns the returned clients."""
    http_client = build_http_client(settings.fetcher)
    worker_client = build_worker_client(settings.screenshot, settings.fetcher)

    fetcher = Fetcher(
        http_client,
        settings.fetcher,
        max_body_bytes=settings.preview.response_max_bytes,
    )
    preview_cache = PreviewCache(
        ttl_seconds=settings.preview.cache_ttl_seconds,
        max_entries=settings.preview.cache_max_entries,
    )
    store = ScreenshotStore.load(Path(settings.screenshot.cache_index_path).expanduser())
    screenshots = ScreenshotService(
        store,
        CaptureClient(worker_client, settings.screenshot),
        settings.screenshot,
        url_mode=settings.logging.url_mode,
    )

    return AppState(
        settings=settings,
        preview_cache=preview_cache,
        fetcher=fetcher,
        screenshots=screenshots,
        http_client=http_client,
        worker_client=worker_client,
    )


async def close_state(state: AppState) -> None:
    await state.screenshots.aclose()
    if state.http_client is not None:
        await state.http_client.aclose()
    if state.worker_client is not None:
        await state.worker_client.aclose()


def _make_lifespan(settings: Settings):
    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncGenerator[None, None]:
        """Create and tear down all shared resources for the server's lifetime."""
        state = build_state(settings)
        app.state.linkpreview = state

        log.info(
            "server_started",
            version=__version__,
            host=settings.server.host,
            port=settings.server.port,
            screenshot_worker_configured=settings.screenshot.worker_url is not None,
            screenshot_index_entries=len(state.screenshots.store),
        )
        try:
            yield
        finally:
            await close_state(state)
            log.info("server_stopping")

    return lifespan


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


def _state(request: Request) -> AppState:
    return request.app.state.linkpreview


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or generate_request_id()


async def preview_endpoint(request: Request) -> Response:
    state = _state(request)
    try:
        payload = await h_preview.handle(
            request.query_params.get("url"), _request_id(request), state
        )
    except UrlNotAllowedError as exc:
        return JSONResponse(exc.to_dict(), status_code=400, headers={"Cache-Control": NO_STORE})
    except Exception:
        log.error("handler_unexpected_error", handler="preview", exc_info=True)
        raise

    return JSONResponse(
        payload.to_dict(),
        headers={
            "Cache-Control": f"public, max-age={state.settings.preview.cache_ttl_seconds}",
            "Vary": "Accept-Encoding",
        },
    )


async def refresh_endpoint(request: Request) -> Response:
    state = _state(request)
    try:
        summary = await h_refresh.handle(
            read_bearer_token(request.headers), _request_id(request), state
        )
    except RefreshRejectedError as exc:
        return JSONResponse(
            exc.to_dict(),
            status_code=_REFRESH_STATUS[RefreshErrorCode(exc.code)],
            headers={"Cache-Control": NO_STORE},
        )
    except Exception:
        log.error("handler_unexpected_error", handler="refresh", exc_info=True)
        raise

    return JSONResponse(
        summary.to_dict(),
        headers={"Cache-Control": NO_STORE, "Vary": "Authorization"},
    )


class SinglePageStaticFiles(StaticFiles):
    """Static files with fallback to ``index.html`` for unknown paths."""

    async def get_response(self, path: str, scope: Scope) -> Response:
        try:
            response = await super().get_response(path, scope)
        except HTTPException as exc:
            if exc.status_code != 404:
                raise
            return await super().get_response("index.html", scope)
        if response.status_code == 404:
            return await super().get_response("index.html", scope)
        return response


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


def create_app(settings: Settings | None = None, state: AppState | None = None) -> Starlette:
    """Build the Starlette app.

    When ``state`` is given it is used as-is and the lifespan is skipped; the
    caller then owns its lifecycle.
    """
    if settings is None:
        settings = state.settings if state is not None else Settings()

    routes: list[Route | Mount] = [
        Route("/api/preview", preview_endpoint, methods=["GET"]),
        Route("/internal/refresh-screenshots", refresh_endpoint, methods=["POST"]),
    ]

    static_dir = Path(settings.server.static_dir)
    if static_dir.is_dir():
        routes.append(Mount("/", SinglePageStaticFiles(directory=static_dir, html=True)))
    else:
        log.info("static_dir_missing", path=str(static_dir))

    app = Starlette(
        routes=routes,
        middleware=[Middleware(RequestContextMiddleware)],
        lifespan=_make_lifespan(settings) if state is None else None,
    )
    if state is not None:
        app.state.linkpreview = state
    return app


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def main() -> None:
    settings = Settings()
    _setup_logging(settings)

    uvicorn.run(
        create_app(settings),
        host=settings.server.host,
        port=settings.server.port,
        log_config=None,  # Disable uvicorn's default logging; structlog handles it
    )


if __name__ == "__main__":
    main()

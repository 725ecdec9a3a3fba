"""Configuration loading.

Settings are loaded in priority order (highest first):
  1. Environment variables  (LINKPREVIEW__PREVIEW__CACHE_TTL_SECONDS=600)
  2. linkpreview.yaml       (searched in cwd, then platform config dir)
  3. Hardcoded defaults

The config file is optional; all fields have sensible defaults. A value that
fails validation (out of bounds, unparsable, unknown literal) falls back to
the field default instead of aborting startup.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal
from urllib.parse import urlsplit

import platformdirs
from pydantic import (
    BaseModel,
    Field,
    ValidationError,
    ValidationInfo,
    ValidatorFunctionWrapHandler,
    field_validator,
)
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

_DEFAULT_CACHE_DIR = platformdirs.user_cache_dir("linkpreview")
_DEFAULT_SCREENSHOT_INDEX_PATH = str(Path(_DEFAULT_CACHE_DIR) / "preview-cache.json")

DAY_SECONDS = 24 * 60 * 60


def _find_config_file() -> str | None:
    """Return the path of the first linkpreview.yaml found, or None."""
    candidates = [
        Path("linkpreview.yaml"),
        Path(platformdirs.user_config_dir("linkpreview")) / "linkpreview.yaml",
    ]
    for path in candidates:
        if path.exists():
            return str(path)
    return None


class _Section(BaseModel):
    """Settings section whose invalid values revert to the declared default."""

    @field_validator("*", mode="wrap")
    @classmethod
    def _fallback_to_default(
        cls, value: Any, handler: ValidatorFunctionWrapHandler, info: ValidationInfo
    ) -> Any:
        try:
            return handler(value)
        except (ValidationError, ValueError):
            if info.field_name is None:
                raise
            return cls.model_fields[info.field_name].get_default(call_default_factory=True)


class ServerSettings(_Section):
    host: str = "0.0.0.0"
    port: int = Field(default=8080, ge=1, le=65535)
    static_dir: str = "dist"


class PreviewSettings(_Section):
    cache_ttl_seconds: int = Field(default=300, ge=1, le=DAY_SECONDS)
    cache_max_entries: int = Field(default=256, ge=1, le=10_000)
    response_max_bytes: int = Field(default=512 * 1024, ge=1024, le=10 * 1024 * 1024)


class FetcherSettings(_Section):
    request_timeout_ms: int = Field(default=6_000, ge=100, le=120_000)
    connect_timeout_ms: int = Field(default=3_000, ge=100, le=30_000)
    dns_lookup_timeout_ms: int = Field(default=2_000, ge=100, le=30_000)
    max_redirects: int = Field(default=4, ge=1, le=10)
    max_resolved_ip_attempts: int = Field(default=3, ge=1, le=10)
    user_agent: str = "portfolio-preview-bot/1.0"


class ScreenshotSettings(_Section):
    worker_url: str | None = None
    worker_token: str | None = None
    worker_timeout_ms: int = Field(default=8_000, ge=100, le=120_000)
    ttl_seconds: int = Field(default=7 * DAY_SECONDS, ge=60, le=365 * DAY_SECONDS)
    stale_grace_seconds: int = Field(default=14 * DAY_SECONDS, ge=0, le=365 * DAY_SECONDS)
    cache_index_path: str = _DEFAULT_SCREENSHOT_INDEX_PATH
    refresh_token: str | None = None
    refresh_concurrency: int = Field(default=3, ge=2, le=4)
    refresh_urls_path: str = "config/preview-urls.json"

    @field_validator("worker_url", "worker_token", "refresh_token", mode="before")
    @classmethod
    def _blank_is_unset(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value

    @field_validator("worker_url", mode="before")
    @classmethod
    def _http_only(cls, value: Any) -> Any:
        # A non-http(s) worker URL leaves the worker unconfigured.
        if isinstance(value, str) and urlsplit(value.strip()).scheme not in ("http", "https"):
            return None
        return value


class LoggingSettings(_Section):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "json"
    # "host" logs only host[:port]; "full" logs the whole normalized URL
    url_mode: Literal["host", "full"] = "host"

    @field_validator("level", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value

    @field_validator("format", "url_mode", mode="before")
    @classmethod
    def _lower(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Double-underscore separates nesting: LINKPREVIEW__SERVER__PORT=9090
        env_prefix="LINKPREVIEW__",
        env_nested_delimiter="__",
        yaml_file=_find_config_file(),
        yaml_file_encoding="utf-8",
    )

    server: ServerSettings = ServerSettings()
    preview: PreviewSettings = PreviewSettings()
    fetcher: FetcherSettings = FetcherSettings()
    screenshot: ScreenshotSettings = ScreenshotSettings()
    logging: LoggingSettings = LoggingSettings()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
        **kwargs: Any,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,  # Constructor args (highest priority)
            env_settings,  # Environment variables
            YamlConfigSettingsSource(settings_cls),  # YAML file
            # dotenv and file secrets intentionally excluded
        )

"""Configuration loading and logging setup.

Settings are loaded in priority order (highest first):
  1. Constructor arguments
  2. Environment variables  (LISTCACHE__API__BASE_URL=https://api.example.com)
  3. Hardcoded defaults
"""

from __future__ import annotations

import logging
import sys
from typing import Any, Literal

import structlog
from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from listcache.duration import parse_duration


class ApiSettings(BaseModel):
    base_url: str = "http://localhost:5000/api"
    timeout_seconds: float = 30.0
    retries: int = 2
    retry_delay: str | int = "2s"

    @field_validator("retry_delay")
    @classmethod
    def check_duration(cls, value: str | int) -> str | int:
        parse_duration(value)
        return value


class CacheSettings(BaseModel):
    stale_time: str | int = "30s"
    gc_time: str | int = "5m"
    max_items: int | None = None
    retries: int = 0
    retry_delay: str | int = "1s"

    @field_validator("stale_time", "gc_time", "retry_delay")
    @classmethod
    def check_duration(cls, value: str | int) -> str | int:
        parse_duration(value)
        return value


class LoggingSettings(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "text"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Double-underscore separates nesting: LISTCACHE__CACHE__GC_TIME=10m
        env_prefix="LISTCACHE__",
        env_nested_delimiter="__",
    )

    api: ApiSettings = ApiSettings()
    cache: CacheSettings = CacheSettings()
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
        return (init_settings, env_settings)


def setup_logging(settings: Settings) -> None:
    """Configure structlog. Call once at startup, before anything logs."""
    log_level = logging.getLevelNamesMapping()[settings.logging.level]

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.logging.format == "json":
        processors = [*shared_processors, structlog.processors.JSONRenderer(default=str)]
    else:
        processors = [*shared_processors, structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

_LOG_LEVEL_ALIASES = {"WARN": "WARNING"}


class Settings(BaseSettings):
    allowed_origin: str = "*"
    fast_path_timeout_ms: int = 20_000
    long_path_timeout_ms: int = 240_000
    max_response_size_bytes: int = 6_291_456
    enable_retry: bool = True
    enable_fallback: bool = True
    log_level: str = "INFO"
    gateway_prefix: str = "/gw"
    long_path_base_url: str | None = None
    long_path_shared_secret: str | None = None
    provider_overrides: str | None = None
    provider_overrides_path: str | None = None
    upstream_connect_timeout_seconds: float = 5.0
    upstream_read_timeout_seconds: float = 120.0
    upstream_write_timeout_seconds: float = 30.0
    upstream_pool_timeout_seconds: float = 5.0
    environment: str = "development"
    gateway_version: str = "1.0.0"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def normalized_prefix(self) -> str:
        prefix = self.gateway_prefix.strip().rstrip("/")
        if not prefix:
            return ""
        return prefix if prefix.startswith("/") else f"/{prefix}"

    @property
    def log_level_value(self) -> int:
        name = self.log_level.strip().upper()
        name = _LOG_LEVEL_ALIASES.get(name, name)
        value = logging.getLevelName(name)
        return value if isinstance(value, int) else logging.INFO


@lru_cache
def get_settings() -> Settings:
    return Settings()

"""Application configuration utilities."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", description="Root logger level")
    json_logs: bool = Field(default=True, description="Enable JSON formatted logs")


class Settings(BaseSettings):
    """Central application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=(Path(__file__).resolve().parent.parent / ".env"),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    app_name: str = Field(default="qrislink")
    environment: Literal["development", "staging", "production"] = Field(default="development")
    api_key: str = Field(default="dev-secret-key")
    database_url: str = Field(default="sqlite+aiosqlite:///./qrislink.db")
    unique_amount_pool_size: int = Field(default=200, ge=1, le=999)
    unique_amount_ttl_seconds: int = Field(default=3600, ge=60)
    match_window_seconds: int = Field(default=300, ge=30, le=3600)
    status_timeout_minutes: int = Field(default=15, ge=1)
    callback_api_key: str = Field(default="dev-secret-key")
    callback_timeout_seconds: float = Field(default=10.0, gt=0)
    allowed_origins: list[str] = Field(default_factory=lambda: ["*"])
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return memoized application settings."""

    return Settings()


settings = get_settings()

"""Configuration management for Baton."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError

MergeStrategyName = Literal["concatenate", "csv", "json", "markdown"]


class Settings(BaseSettings):
    """Runtime settings loaded from the environment or a .env file."""

    model_config = SettingsConfigDict(
        env_prefix="BATON_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Provider
    model: str | None = Field(default=None, description="Model in provider:model format")
    api_key: str | None = Field(default=None, description="API key for the model provider")
    api_base: str | None = Field(default=None, description="Optional API base URL")
    max_tokens: int = Field(default=4000, ge=1, description="Maximum tokens per provider response")

    # Runner
    max_turns: int = Field(default=10, ge=1, description="Default turn budget per run")
    continuation_enabled: bool = Field(default=True, description="Continue truncated responses")
    continuation_max_attempts: int = Field(default=3, ge=1, description="Total requests per continued response")
    continuation_merge_strategy: MergeStrategyName = "concatenate"

    # Storage
    sessions_dir: Path = Field(default=Path.home() / ".baton" / "sessions")

    # Logging
    log_level: str = Field(default="INFO", description="Log level")

    @field_validator("model")
    @classmethod
    def _check_model_format(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        if not value:
            return None
        provider, separator, name = value.partition(":")
        if not separator or not provider or not name:
            raise ValueError(f"model must use provider:model format, got {value!r}")
        return value


def load_settings(**overrides: object) -> Settings:
    """Load settings, applying explicit overrides on top of the environment."""
    cleaned = {key: value for key, value in overrides.items() if value is not None}
    try:
        return Settings(**cleaned)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid Baton settings: {exc}") from exc

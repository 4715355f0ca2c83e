"""Configuration management for kurostream."""

from __future__ import annotations

from typing import Any, Literal
from urllib.parse import urlparse

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from kurostream.errors import ConfigurationError
from kurostream.logging_utils import configure_logging


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="KURO_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Connection
    base_url: str = Field(default="http://localhost:3000", description="Inference service base URL")
    token: str | None = Field(default=None, description="Opaque bearer credential")
    connect_timeout_seconds: float = Field(default=10.0, gt=0)
    request_timeout_seconds: float = Field(default=30.0, gt=0)

    # Stream session
    stale_timeout_seconds: float = Field(default=30.0, gt=0, description="Idle window before a stream is dead")
    max_retries: int = Field(default=2, ge=0)
    retry_delays_seconds: tuple[float, ...] = Field(default=(1.0, 3.0))
    render_interval_seconds: float = Field(default=1 / 60, gt=0, description="Token render frame interval")
    notice_ttl_seconds: float = Field(default=3.0, gt=0)

    # Mid-stream correction
    correction_debounce_seconds: float = 0.5
    correction_min_chars: int = 8
    correction_min_words: int = 2
    correction_max_chars: int = 120
    correction_rate_limit: int = 5
    correction_rate_window_seconds: float = 60.0
    correction_grace_seconds: float = 0.6

    # Speculative preemption
    preempt_enabled: bool = True
    preempt_mode: str = "main"
    preempt_debounce_seconds: float = 0.8
    preempt_non_boundary_factor: float = 1.5
    preempt_min_words: int = 3
    preempt_max_chars: int = 1000
    preempt_loaded_after_seconds: float = 2.5

    # Request defaults; the server validates all of these
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    thinking: bool = True
    agent: str | None = None
    skill: str | None = None
    power_dial: str | None = None
    vision_preset: str = "draft"
    vision_aspect: str = "1:1"
    web_enabled: bool = Field(default=False, description="Search the web before each turn")

    log_level: str = Field(default="INFO", description="Log level")
    log_profile: Literal["default", "json"] = Field(default="default", description="stderr log layout")

    @model_validator(mode="after")
    def _check_consistency(self) -> Settings:
        if urlparse(self.base_url).scheme not in {"http", "https"}:
            raise ValueError(f"base_url must be http(s), got {self.base_url!r}")
        if len(self.retry_delays_seconds) < self.max_retries:
            raise ValueError("retry_delays_seconds must cover every retry attempt")
        return self

    def retry_delay(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        return self.retry_delays_seconds[attempt - 1]


def get_settings(**overrides: Any) -> Settings:
    """Get application settings.

    Args:
        overrides: Explicit field values taking precedence over the environment

    Returns:
        Settings instance

    Raises:
        ConfigurationError: When the resulting settings are invalid
    """
    try:
        settings = Settings(**overrides)
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc

    configure_logging(profile=settings.log_profile, level=settings.log_level)
    return settings

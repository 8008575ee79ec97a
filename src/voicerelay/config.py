"""Configuration management for voicerelay."""

from __future__ import annotations

from typing import Any

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from voicerelay.errors import ConfigurationError


class Settings(BaseSettings):
    """Engine settings, read from ``VOICERELAY_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="VOICERELAY_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Backend relay
    session_id: str = Field(default="local", description="Backend session the transcripts belong to")
    backend_url: str | None = Field(default=None, description="Base URL of the transcript relay service")
    backend_transcript_mode: bool = Field(default=True, description="Relay finalized transcripts to the backend")
    relay_max_attempts: int = Field(default=3, ge=1, description="Attempts per relay before giving up")
    relay_backoff_seconds: float = Field(default=0.25, ge=0, description="Delay before the first retry")
    relay_backoff_multiplier: float = Field(default=2.0, ge=1, description="Growth factor between retries")
    relay_timeout_seconds: float = Field(default=5.0, gt=0, description="HTTP timeout for one relay call")

    # Finalization
    force_finalize_after_seconds: float = Field(
        default=0.0, ge=0, description="Force-finalize a user utterance after this much delta silence (0 disables)"
    )
    unavailable_text: str = Field(default="[Speech not transcribed]", description="Sentinel for missing transcripts")
    rate_limited_text: str = Field(default="[Rate limit exceeded]", description="Sentinel for rate-limited failures")

    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    log_json: bool = Field(default=False, description="Emit log records as JSON lines from the stream command")

    @model_validator(mode="after")
    def _check_sentinels(self) -> Settings:
        if not self.unavailable_text.strip() or not self.rate_limited_text.strip():
            raise ValueError("sentinel texts must not be blank")
        return self

    def retry_delays(self) -> list[float]:
        """Backoff delays between consecutive attempts."""
        return [
            self.relay_backoff_seconds * self.relay_backoff_multiplier**attempt
            for attempt in range(self.relay_max_attempts - 1)
        ]


def get_settings(**overrides: Any) -> Settings:
    """Build settings from the environment with optional overrides.

    Raises:
        ConfigurationError: if any value fails validation
    """
    try:
        return Settings(**overrides)
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc

"""Settings for the Pass radar client."""

from __future__ import annotations

from typing import Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_field(default, *env_names: str):
    if env_names:
        alias = AliasChoices(*env_names) if len(env_names) > 1 else env_names[0]
        return Field(default=default, validation_alias=alias)
    return Field(default=default)


class Settings(BaseSettings):
    api_base_url: str = _env_field("https://cinespheres.org", "PASS_API_BASE_URL", "API_BASE_URL")
    # Socket.IO endpoint; falls back to the REST base when unset
    socket_url: Optional[str] = _env_field(None, "PASS_SOCKET_URL", "SOCKET_URL")
    request_timeout: float = _env_field(10.0, "PASS_REQUEST_TIMEOUT")

    # Presence
    poll_interval_seconds: float = _env_field(5.0, "PASS_POLL_INTERVAL_SECONDS")
    ping_interval_seconds: float = _env_field(30.0, "PASS_PING_INTERVAL_SECONDS")

    # Unlock sessions
    unlock_duration_seconds: float = _env_field(60.0, "PASS_UNLOCK_DURATION_SECONDS")
    countdown_tick_seconds: float = _env_field(1.0, "PASS_COUNTDOWN_TICK_SECONDS")

    # Push channel reconnection policy
    reconnection_attempts: int = _env_field(5, "PASS_RECONNECTION_ATTEMPTS")
    reconnection_delay: float = _env_field(1.0, "PASS_RECONNECTION_DELAY")
    reconnection_delay_max: float = _env_field(5.0, "PASS_RECONNECTION_DELAY_MAX")
    socket_connect_timeout: float = _env_field(20.0, "PASS_SOCKET_CONNECT_TIMEOUT")

    environment: str = _env_field("production", "ENV", "APP_ENV", "ENVIRONMENT")
    obs_log_level: str = _env_field("INFO", "LOG_LEVEL")
    obs_log_sampling_rate_info: float = _env_field(1.0, "LOG_SAMPLING_RATE_INFO")
    service_name: str = _env_field("passradar", "SERVICE_NAME")

    def is_prod(self) -> bool:
        return self.environment.lower() in ("prod", "production", "live")

    def is_dev(self) -> bool:
        return self.environment.lower() in ("dev", "development")

    @property
    def effective_socket_url(self) -> str:
        return self.socket_url or self.api_base_url

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("api_base_url", "socket_url", mode="before")
    def _strip_trailing_slash(cls, value):  # type: ignore[override]
        if isinstance(value, str):
            text = value.strip()
            return text.rstrip("/") or None
        return value

    @field_validator("poll_interval_seconds", "ping_interval_seconds", "countdown_tick_seconds", mode="after")
    def _positive_interval(cls, value: float) -> float:  # type: ignore[override]
        if value <= 0:
            raise ValueError("interval must be positive")
        return value


settings = Settings()

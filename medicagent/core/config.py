from __future__ import annotations

from functools import lru_cache
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field, RedisDsn
from pydantic_settings import BaseSettings, SettingsConfigDict


class RedisSettings(BaseModel):
    url: RedisDsn = Field(
        "redis://localhost:6379/0",
        description="Connection URL for the Redis instance backing the job queue and plan store.",
    )


class LLMSettings(BaseModel):
    provider: Literal["ollama"] = "ollama"
    host: str = Field("http://localhost", description="Base URL where Ollama is running.")
    port: int = Field(11434, ge=1, le=65535)
    model: str = Field("llama3.2:3b", description="Model used for routing and handler prompts.")
    default_temperature: float = Field(0.1, ge=0.0, le=2.0)
    request_timeout_seconds: float = Field(60.0, gt=0.0)
    max_retries: int = Field(3, ge=1, le=10)


class NotificationSettings(BaseModel):
    default_timezone: str = Field("Australia/Sydney", description="Fallback IANA zone for schedule resolution.")
    retry_attempts: int = Field(3, ge=1)
    retry_backoff_ms: int = Field(2000, ge=0)
    min_delay_seconds: int = Field(
        20,
        ge=0,
        description="Delay applied to jobs whose scheduled instant is not in the future.",
    )
    default_hour: int = Field(9, ge=0, le=23, description="Hour used when a day is named without a time.")
    queue_name: str = Field("notifications", min_length=1)
    dead_letter_queue_name: str = Field("notifications_dlq", min_length=1)
    key_namespace: str = Field("app:notifications", min_length=1)
    default_recipient: str | None = Field(
        default=None,
        description="Optional E.164 number used when a request names no recipient.",
    )


class CollaborationSettings(BaseModel):
    enabled: bool = True
    max_concurrent_executions: int = Field(
        2,
        ge=1,
        description="Process-wide number of concurrent collaboration branches.",
    )


class CalendarSettings(BaseModel):
    base_url: str = Field("https://www.googleapis.com/calendar/v3")
    calendar_id: str = Field("primary", min_length=1)
    timeout_seconds: float = Field(10.0, gt=0.0)
    max_retries: int = Field(2, ge=0, le=5)
    default_duration_minutes: int = Field(30, ge=5)


class ObservabilitySettings(BaseModel):
    prometheus_enabled: bool = Field(True)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


class Settings(BaseSettings):
    environment: Literal["local", "test", "production"] = Field("local")
    api_prefix: str = Field("/api")

    redis: RedisSettings = Field(default_factory=RedisSettings)  # type: ignore[arg-type]
    llm: LLMSettings = Field(default_factory=LLMSettings)  # type: ignore[arg-type]
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)  # type: ignore[arg-type]
    collaboration: CollaborationSettings = Field(default_factory=CollaborationSettings)  # type: ignore[arg-type]
    calendar: CalendarSettings = Field(default_factory=CalendarSettings)  # type: ignore[arg-type]
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)  # type: ignore[arg-type]

    frontend_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:5173", "http://127.0.0.1:5173"],
        description="Origins permitted to access the API via CORS.",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )


@lru_cache(maxsize=1)
def _get_cached_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def get_settings(overrides: Mapping[str, Any] | None = None) -> Settings:
    """Return settings, using cached defaults unless overrides are provided."""
    if overrides:
        return Settings(**dict(overrides))
    return _get_cached_settings()

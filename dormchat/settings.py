"""Settings for the dormchat sync client."""

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
    supabase_url: Optional[str] = _env_field(None, "SUPABASE_URL", "PUBLIC_SUPABASE_URL")
    supabase_key: Optional[str] = _env_field(None, "SUPABASE_ANON_KEY", "SUPABASE_KEY")

    environment: str = _env_field("production", "ENV", "APP_ENV", "ENVIRONMENT")
    service_name: str = _env_field("dormchat-client", "SERVICE_NAME")
    git_commit: str = _env_field("unknown", "GIT_COMMIT", "COMMIT_SHA", "SOURCE_VERSION")
    obs_enabled: bool = _env_field(True, "OBS_ENABLED")
    obs_log_level: str = _env_field("INFO", "LOG_LEVEL")
    obs_log_sampling_rate_info: float = _env_field(1.0, "LOG_SAMPLING_RATE_INFO")

    # Conversation list refreshes: one fetch per debounce window, and never
    # more often than the minimum interval.
    chat_refresh_debounce_seconds: float = _env_field(0.1, "CHAT_REFRESH_DEBOUNCE_SECONDS")
    chat_refresh_min_interval_seconds: float = _env_field(0.2, "CHAT_REFRESH_MIN_INTERVAL_SECONDS")
    chat_subscription_max_retries: int = _env_field(3, "CHAT_SUBSCRIPTION_MAX_RETRIES")
    chat_subscription_retry_delay_seconds: float = _env_field(1.0, "CHAT_SUBSCRIPTION_RETRY_DELAY_SECONDS")
    chat_read_receipt_delay_seconds: float = _env_field(0.5, "CHAT_READ_RECEIPT_DELAY_SECONDS")
    # Degraded mode only; realtime push stays the primary delivery path
    chat_polling_fallback_enabled: bool = _env_field(False, "CHAT_POLLING_FALLBACK_ENABLED")
    chat_polling_interval_seconds: float = _env_field(5.0, "CHAT_POLLING_INTERVAL_SECONDS")
    realtime_join_timeout_seconds: float = _env_field(10.0, "REALTIME_JOIN_TIMEOUT_SECONDS")

    deleted_account_name: str = _env_field("Deleted Account", "DELETED_ACCOUNT_NAME")
    deleted_account_avatar: str = _env_field("default-avatar.png", "DELETED_ACCOUNT_AVATAR")

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("chat_subscription_max_retries", mode="before")
    def _non_negative_retries(cls, value):  # type: ignore[override]
        if value in (None, ""):
            return 0
        return max(0, int(value))

    # Environment helpers
    def is_prod(self) -> bool:
        return self.environment.lower() in ("prod", "production", "live")

    def is_dev(self) -> bool:
        return self.environment.lower() in ("dev", "development")


def _normalise_level(level: str) -> str:
    return level.upper()


settings = Settings()
settings.obs_log_level = _normalise_level(settings.obs_log_level)

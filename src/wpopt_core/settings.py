from __future__ import annotations

from pydantic import SecretStr, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from wpopt_core.logging import get_log_level_value
from wpopt_core.providers.constants import DEFAULT_MODELS, ProviderName
from wpopt_core.rate_limiter import RateLimitStrategy

ENV_PREFIX = "WPOPT_"


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False)


class CoreSettings(BaseSettings):
    """Runtime settings for the generation backend and its dependency guards."""

    model_config = prefixed_settings_config(ENV_PREFIX)

    log_level: str = "INFO"

    provider: ProviderName = ProviderName.GOOGLE
    model: str | None = None
    google_api_key: SecretStr | None = None
    openrouter_api_key: SecretStr | None = None
    openai_api_key: SecretStr | None = None
    anthropic_api_key: SecretStr | None = None
    groq_api_key: SecretStr | None = None
    serper_api_key: SecretStr | None = None

    http_timeout_seconds: float = 30.0
    primary_call_timeout_seconds: float = 600.0
    discovery_call_timeout_seconds: float = 20.0

    breaker_failure_threshold: int = 5
    breaker_success_threshold: int = 3
    breaker_open_reset_seconds: float = 60.0

    rate_limit_max_requests: int = 60
    rate_limit_window_seconds: float = 60.0
    rate_limit_strategy: RateLimitStrategy = RateLimitStrategy.SLIDING_WINDOW

    bulkhead_max_concurrent: int = 5
    bulkhead_max_queued: int = 20
    bulkhead_queue_timeout_seconds: float = 30.0

    retry_max_retries: int = 3
    retry_backoff_multiplier: float = 2.0
    retry_max_backoff_seconds: float = 30.0
    discovery_max_retries: int = 1

    @field_validator("log_level", "provider", "rate_limit_strategy", mode="before")
    @classmethod
    def _normalize_case(cls, value: object, info: ValidationInfo) -> object:
        if not isinstance(value, str):
            return value
        normalized = value.strip()
        if info.field_name == "log_level":
            return normalized.upper()
        return normalized.lower()

    @field_validator(
        "google_api_key",
        "openrouter_api_key",
        "openai_api_key",
        "anthropic_api_key",
        "groq_api_key",
        "serper_api_key",
        "model",
        mode="before",
    )
    @classmethod
    def _blank_to_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        if isinstance(value, str):
            return value.strip()
        return value

    @model_validator(mode="after")
    def _validate_core_settings(self) -> CoreSettings:
        get_log_level_value(self.log_level)

        positive_ints = (
            "breaker_failure_threshold",
            "breaker_success_threshold",
            "rate_limit_max_requests",
            "bulkhead_max_concurrent",
        )
        for name in positive_ints:
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")

        positive_floats = (
            "http_timeout_seconds",
            "primary_call_timeout_seconds",
            "discovery_call_timeout_seconds",
            "rate_limit_window_seconds",
            "bulkhead_queue_timeout_seconds",
        )
        for name in positive_floats:
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")

        if self.breaker_open_reset_seconds < 0:
            raise ValueError("breaker_open_reset_seconds must be >= 0")
        if self.bulkhead_max_queued < 0:
            raise ValueError("bulkhead_max_queued must be >= 0")
        if self.retry_max_retries < 0 or self.discovery_max_retries < 0:
            raise ValueError("retry counts must be >= 0")
        if self.retry_backoff_multiplier < 1:
            raise ValueError("retry_backoff_multiplier must be >= 1")
        if self.retry_max_backoff_seconds < self.retry_backoff_multiplier:
            raise ValueError(
                "retry_max_backoff_seconds must be >= retry_backoff_multiplier"
            )
        return self

    def api_key_for(self, provider: ProviderName) -> str | None:
        """Return the configured API key of ``provider``, if any."""
        secret: SecretStr | None = getattr(self, f"{provider.value}_api_key")
        return None if secret is None else secret.get_secret_value()

    def model_for(self, provider: ProviderName) -> str:
        """Return the configured model, falling back to the provider default."""
        if self.model and provider == self.provider:
            return self.model
        return DEFAULT_MODELS[provider]

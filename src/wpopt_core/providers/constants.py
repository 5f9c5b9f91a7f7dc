"""Shared constants used by the wpopt_core LLM provider adapters."""

from enum import StrEnum


class ProviderName(StrEnum):
    """Interchangeable LLM providers."""

    GOOGLE = "google"
    OPENROUTER = "openrouter"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GROQ = "groq"


RETRY_STATUSES = {408, 425, 429, 500, 502, 503, 504}
AUTH_STATUSES = {401, 403}
MIN_RESPONSE_CHARS = 100
ANTHROPIC_VERSION = "2023-06-01"
JSON_ONLY_SUFFIX = "\n\nOutput ONLY valid JSON."
OPENROUTER_REFERER = "https://wp-optimizer-pro.app"
OPENROUTER_TITLE = "WP Optimizer Pro"

BASE_URLS: dict[ProviderName, str] = {
    ProviderName.GOOGLE: "https://generativelanguage.googleapis.com",
    ProviderName.OPENROUTER: "https://openrouter.ai/api",
    ProviderName.OPENAI: "https://api.openai.com",
    ProviderName.ANTHROPIC: "https://api.anthropic.com",
    ProviderName.GROQ: "https://api.groq.com/openai",
}

DEFAULT_MODELS: dict[ProviderName, str] = {
    ProviderName.GOOGLE: "gemini-2.5-flash",
    ProviderName.OPENROUTER: "google/gemini-2.5-flash-preview",
    ProviderName.OPENAI: "gpt-4o",
    ProviderName.ANTHROPIC: "claude-sonnet-4-20250514",
    ProviderName.GROQ: "llama-3.3-70b-versatile",
}

# OpenRouter only forwards response_format to models known to honour it.
OPENROUTER_JSON_MODE_MARKERS = ("gpt", "claude")

"""Request builders and response parsers for each provider wire format."""

from __future__ import annotations

from dataclasses import dataclass
from typing import cast

from wpopt_core.providers.constants import (
    ANTHROPIC_VERSION,
    JSON_ONLY_SUFFIX,
    OPENROUTER_JSON_MODE_MARKERS,
    OPENROUTER_REFERER,
    OPENROUTER_TITLE,
    ProviderName,
)


@dataclass(frozen=True)
class GenerationParams:
    """Sampling parameters forwarded to the provider."""

    temperature: float = 0.85
    max_tokens: int = 16_000


@dataclass(frozen=True)
class ProviderRequest:
    """One HTTP request ready to be sent to a provider."""

    path: str
    headers: dict[str, str]
    body: dict[str, object]


def build_request(
    provider: ProviderName,
    *,
    api_key: str,
    model: str,
    system_prompt: str,
    user_prompt: str,
    params: GenerationParams,
) -> ProviderRequest:
    """Build the provider-specific request for one JSON-mode completion."""
    if provider == ProviderName.GOOGLE:
        return ProviderRequest(
            path=f"/v1beta/models/{model}:generateContent",
            headers={"x-goog-api-key": api_key},
            body={
                "systemInstruction": {"parts": [{"text": system_prompt}]},
                "contents": [{"role": "user", "parts": [{"text": user_prompt}]}],
                "generationConfig": {
                    "responseMimeType": "application/json",
                    "temperature": params.temperature,
                    "topP": 0.95,
                    "maxOutputTokens": params.max_tokens,
                },
            },
        )

    if provider == ProviderName.ANTHROPIC:
        return ProviderRequest(
            path="/v1/messages",
            headers={"x-api-key": api_key, "anthropic-version": ANTHROPIC_VERSION},
            body={
                "model": model,
                "max_tokens": params.max_tokens,
                "system": system_prompt,
                "messages": [
                    {"role": "user", "content": user_prompt + JSON_ONLY_SUFFIX}
                ],
                "temperature": params.temperature,
            },
        )

    body: dict[str, object] = {
        "model": model,
        "messages": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
        "max_tokens": params.max_tokens,
        "temperature": params.temperature,
    }
    headers = {"Authorization": f"Bearer {api_key}"}
    json_mode = True
    if provider == ProviderName.OPENROUTER:
        headers["HTTP-Referer"] = OPENROUTER_REFERER
        headers["X-Title"] = OPENROUTER_TITLE
        json_mode = any(marker in model for marker in OPENROUTER_JSON_MODE_MARKERS)
    if json_mode:
        body["response_format"] = {"type": "json_object"}
    return ProviderRequest(path="/v1/chat/completions", headers=headers, body=body)


def _as_dict(value: object) -> dict[str, object]:
    if isinstance(value, dict):
        return cast(dict[str, object], value)
    return {}


def _first(value: object) -> dict[str, object]:
    if isinstance(value, list) and value:
        return _as_dict(value[0])
    return {}


def extract_text(provider: ProviderName, data: dict[str, object]) -> str:
    """Return the generated text of a provider response, ``""`` if absent."""
    if provider == ProviderName.GOOGLE:
        content = _as_dict(_first(data.get("candidates")).get("content"))
        parts = content.get("parts")
        if not isinstance(parts, list):
            return ""
        return "".join(
            str(part.get("text", "")) for part in parts if isinstance(part, dict)
        )

    if provider == ProviderName.ANTHROPIC:
        blocks = data.get("content")
        if not isinstance(blocks, list):
            return ""
        return "".join(
            str(block.get("text", ""))
            for block in blocks
            if isinstance(block, dict) and block.get("type", "text") == "text"
        )

    message = _as_dict(_first(data.get("choices")).get("message"))
    content = message.get("content")
    return content if isinstance(content, str) else ""


def extract_error(data: dict[str, object]) -> tuple[int | None, str] | None:
    """Return ``(code, message)`` for an error embedded in a 200 response."""
    error = data.get("error")
    if error is None:
        return None
    if isinstance(error, dict):
        code = error.get("code")
        message = error.get("message")
        return (
            code if isinstance(code, int) else None,
            message if isinstance(message, str) and message else str(error),
        )
    return None, str(error)

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import cast

import httpx

from wpopt_core.errors import DependencyError, PermanentError, TransientError
from wpopt_core.providers.constants import (
    AUTH_STATUSES,
    BASE_URLS,
    DEFAULT_MODELS,
    MIN_RESPONSE_CHARS,
    RETRY_STATUSES,
    ProviderName,
)
from wpopt_core.providers.payloads import (
    GenerationParams,
    build_request,
    extract_error,
    extract_text,
)

__all__ = [
    "DEFAULT_MODELS",
    "GenerationParams",
    "ProviderClient",
    "ProviderCredentials",
    "ProviderError",
    "ProviderName",
    "ProviderPermanentError",
    "ProviderTransientError",
]


class ProviderError(DependencyError):
    """Base exception for LLM provider request failures."""

    def __init__(
        self,
        message: str,
        *,
        provider: ProviderName,
        http_status: int | None = None,
        response_body: str | None = None,
    ) -> None:
        """Initialize provider-error metadata.

        Args:
            message: Human-readable error message.
            provider: Provider that produced the failure.
            http_status: Optional HTTP status observed from the provider.
            response_body: Optional response payload text.
        """
        super().__init__(message, http_status=http_status)
        self.provider = provider
        self.response_body = response_body


class ProviderTransientError(ProviderError, TransientError):
    """Raised for retryable provider failures."""


class ProviderPermanentError(ProviderError, PermanentError):
    """Raised when the provider rejects the request for good."""


@dataclass(frozen=True)
class ProviderCredentials:
    """API key for one provider."""

    api_key: str = field(repr=False)


class ProviderClient:
    """One-shot JSON-mode completion calls against the supported providers.

    The client never retries: every failure is classified by HTTP status into
    ``ProviderTransientError`` or ``ProviderPermanentError`` and left to the
    surrounding retry and breaker guards.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        base_urls: Mapping[ProviderName, str] | None = None,
        min_response_chars: int = MIN_RESPONSE_CHARS,
    ) -> None:
        """Create a provider client.

        Args:
            client: Shared async HTTP client.
            base_urls: Optional per-provider base URL overrides.
            min_response_chars: Shortest generated text accepted as a response.
        """
        self._client = client
        self._base_urls = dict(BASE_URLS)
        if base_urls:
            self._base_urls.update(base_urls)
        self._min_response_chars = min_response_chars

    async def call(
        self,
        provider: ProviderName,
        credentials: ProviderCredentials,
        model: str,
        system_prompt: str,
        user_prompt: str,
        params: GenerationParams | None = None,
        timeout: float | None = None,
    ) -> str:
        """Request one completion and return the generated text.

        Raises:
            ProviderTransientError: Network failure, timeout, retryable HTTP
                status, or an empty/too-short completion.
            ProviderPermanentError: Auth failure, any other HTTP error, or a
                body that is not a JSON object.
        """
        request = build_request(
            provider,
            api_key=credentials.api_key,
            model=model,
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            params=GenerationParams() if params is None else params,
        )
        url = f"{self._base_urls[provider].rstrip('/')}{request.path}"

        try:
            response = await self._client.post(
                url,
                headers=request.headers,
                json=request.body,
                timeout=httpx.USE_CLIENT_DEFAULT if timeout is None else timeout,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._raise_for_http_status(provider, exc)
        except httpx.RequestError as exc:
            raise ProviderTransientError(
                f"{provider.value} request failed: {type(exc).__name__}: {exc}",
                provider=provider,
            ) from exc

        data = self._parse_json_object(provider, response)
        self._raise_for_embedded_error(provider, data, response)

        text = extract_text(provider, data).strip()
        if len(text) < self._min_response_chars:
            raise ProviderTransientError(
                f"{provider.value} returned an empty or truncated completion "
                f"({len(text)} chars).",
                provider=provider,
                http_status=response.status_code,
                response_body=response.text,
            )
        return text

    @staticmethod
    def _raise_for_http_status(
        provider: ProviderName, exc: httpx.HTTPStatusError
    ) -> None:
        status = exc.response.status_code
        response_body = exc.response.text
        if status in RETRY_STATUSES:
            raise ProviderTransientError(
                f"{provider.value} transient failure (HTTP {status}).",
                provider=provider,
                http_status=status,
                response_body=response_body,
            ) from exc
        if status in AUTH_STATUSES:
            raise ProviderPermanentError(
                f"{provider.value} rejected the API key (HTTP {status}).",
                provider=provider,
                http_status=status,
                response_body=response_body,
            ) from exc
        raise ProviderPermanentError(
            f"{provider.value} returned HTTP {status}.",
            provider=provider,
            http_status=status,
            response_body=response_body,
        ) from exc

    @staticmethod
    def _parse_json_object(
        provider: ProviderName, response: httpx.Response
    ) -> dict[str, object]:
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderPermanentError(
                f"{provider.value} response is not valid JSON.",
                provider=provider,
                http_status=response.status_code,
                response_body=response.text,
            ) from exc

        if not isinstance(data, dict):
            raise ProviderPermanentError(
                f"{provider.value} response is not a JSON object.",
                provider=provider,
                http_status=response.status_code,
                response_body=response.text,
            )
        return cast(dict[str, object], data)

    @staticmethod
    def _raise_for_embedded_error(
        provider: ProviderName,
        data: dict[str, object],
        response: httpx.Response,
    ) -> None:
        embedded = extract_error(data)
        if embedded is None:
            return
        code, message = embedded
        error_type = ProviderPermanentError
        if code is None or code in RETRY_STATUSES:
            error_type = ProviderTransientError
        raise error_type(
            f"{provider.value} error: {message}",
            provider=provider,
            http_status=code,
            response_body=response.text,
        )

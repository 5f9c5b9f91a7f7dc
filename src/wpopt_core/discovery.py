"""Discovery subtasks backed by the Serper search API.

Both discoverers make one request per call and never retry; failures are
classified by HTTP status exactly like the provider adapters, so the same
breaker and retry guards apply to them.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import cast
from urllib.parse import urlsplit

import httpx

from wpopt_core.errors import PermanentError, TransientError
from wpopt_core.providers.constants import AUTH_STATUSES, RETRY_STATUSES

SERPER_BASE_URL = "https://google.serper.dev"
MIN_VIDEO_TITLE_CHARS = 10
MAX_VIDEO_TITLE_CHARS = 80

_VIEWS = re.compile(r"(\d+(?:,\d+)*(?:\.\d+)?)\s*([KMB])?", re.IGNORECASE)
_VIEW_MULTIPLIERS = {"K": 1_000, "M": 1_000_000, "B": 1_000_000_000}
_VIDEO_ID = re.compile(r"(?:v=|youtu\.be/)([A-Za-z0-9_-]{11})")


class DiscoveryTransientError(TransientError):
    """Raised for retryable discovery service failures."""


class DiscoveryPermanentError(PermanentError):
    """Raised when the discovery service rejects the request for good."""


@dataclass(frozen=True)
class VideoRef:
    """A YouTube video selected for embedding."""

    video_id: str
    title: str
    channel: str
    views: int
    views_label: str

    @property
    def url(self) -> str:
        return f"https://www.youtube.com/watch?v={self.video_id}"


@dataclass(frozen=True)
class Reference:
    """An external source cited by the article."""

    title: str
    url: str
    source: str


@dataclass(frozen=True)
class VideoConstraints:
    """Selection rules for video discovery."""

    min_views: int = 10_000
    max_candidates: int = 10
    country: str = "us"
    language: str = "en"


@dataclass(frozen=True)
class ReferenceConstraints:
    """Selection rules for reference discovery."""

    max_results: int = 10
    excluded_domains: frozenset[str] = field(default_factory=frozenset)
    country: str = "us"
    language: str = "en"


def content_year(today: date | None = None) -> int:
    """Year used in search queries; December already targets next year."""
    today = datetime.now(UTC).date() if today is None else today
    return today.year + 1 if today.month == 12 else today.year


def parse_view_count(label: object) -> int:
    """Parse ``"1.2M views"``, ``"45K"`` or ``"12,345"`` into an integer."""
    if not isinstance(label, str):
        return 0
    match = _VIEWS.search(label)
    if match is None:
        return 0
    value = float(match.group(1).replace(",", ""))
    suffix = match.group(2)
    if suffix:
        value *= _VIEW_MULTIPLIERS[suffix.upper()]
    return int(value)


def extract_video_id(link: str) -> str | None:
    """Return the 11-character YouTube id embedded in ``link``."""
    if "youtube.com/watch" not in link and "youtu.be" not in link:
        return None
    match = _VIDEO_ID.search(link)
    return None if match is None else match.group(1)


def domain_of(url: str) -> str:
    """Hostname of ``url`` without a leading ``www.``."""
    host = (urlsplit(url).hostname or "").lower()
    return host.removeprefix("www.")


def _is_excluded(domain: str, excluded: frozenset[str]) -> bool:
    return any(domain == item or domain.endswith(f".{item}") for item in excluded)


class _SerperEndpoint:
    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        path: str,
        base_url: str = SERPER_BASE_URL,
    ) -> None:
        self._client = client
        self._url = f"{base_url.rstrip('/')}{path}"

    async def _post(self, api_key: str, body: dict[str, object]) -> dict[str, object]:
        try:
            response = await self._client.post(
                self._url,
                headers={"X-API-KEY": api_key},
                json=body,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status in RETRY_STATUSES:
                raise DiscoveryTransientError(
                    f"Serper transient failure (HTTP {status}).", http_status=status
                ) from exc
            if status in AUTH_STATUSES:
                raise DiscoveryPermanentError(
                    f"Serper rejected the API key (HTTP {status}).", http_status=status
                ) from exc
            raise DiscoveryPermanentError(
                f"Serper returned HTTP {status}.", http_status=status
            ) from exc
        except httpx.RequestError as exc:
            raise DiscoveryTransientError(
                f"Serper request failed: {type(exc).__name__}: {exc}"
            ) from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise DiscoveryPermanentError(
                "Serper response is not valid JSON.", http_status=response.status_code
            ) from exc
        if not isinstance(data, dict):
            raise DiscoveryPermanentError(
                "Serper response is not a JSON object.",
                http_status=response.status_code,
            )
        return cast(dict[str, object], data)


class VideoDiscovery(_SerperEndpoint):
    """Find one popular YouTube tutorial for a topic."""

    def __init__(
        self, *, client: httpx.AsyncClient, base_url: str = SERPER_BASE_URL
    ) -> None:
        super().__init__(client=client, path="/videos", base_url=base_url)

    async def discover(
        self,
        topic: str,
        api_key: str,
        constraints: VideoConstraints | None = None,
    ) -> VideoRef | None:
        """Return the first qualifying video, or ``None`` when none qualifies."""
        constraints = VideoConstraints() if constraints is None else constraints
        data = await self._post(
            api_key,
            {
                "q": f"{topic} tutorial guide how to {content_year()}",
                "num": constraints.max_candidates,
                "gl": constraints.country,
                "hl": constraints.language,
            },
        )
        videos = data.get("videos")
        if not isinstance(videos, list):
            return None

        for item in videos:
            if not isinstance(item, dict):
                continue
            link = item.get("link")
            title = item.get("title")
            if not isinstance(link, str) or not isinstance(title, str):
                continue
            if len(title) < MIN_VIDEO_TITLE_CHARS:
                continue
            video_id = extract_video_id(link)
            if video_id is None:
                continue
            views_label = item.get("views")
            views = parse_view_count(views_label)
            if views < constraints.min_views:
                continue
            channel = item.get("channel")
            return VideoRef(
                video_id=video_id,
                title=title[:MAX_VIDEO_TITLE_CHARS],
                channel=channel if isinstance(channel, str) and channel else "Unknown",
                views=views,
                views_label=views_label if isinstance(views_label, str) else "",
            )
        return None


class ReferenceDiscovery(_SerperEndpoint):
    """Collect authoritative external references for a topic."""

    def __init__(
        self, *, client: httpx.AsyncClient, base_url: str = SERPER_BASE_URL
    ) -> None:
        super().__init__(client=client, path="/search", base_url=base_url)

    async def discover(
        self,
        topic: str,
        api_key: str,
        constraints: ReferenceConstraints | None = None,
    ) -> list[Reference] | None:
        """Return up to ``max_results`` references, one per domain.

        Returns ``None`` when the search yields no usable result.
        """
        constraints = ReferenceConstraints() if constraints is None else constraints
        data = await self._post(
            api_key,
            {
                "q": f"{topic} research guide {content_year()}",
                "num": max(constraints.max_results * 2, 10),
                "gl": constraints.country,
                "hl": constraints.language,
            },
        )
        organic = data.get("organic")
        if not isinstance(organic, list):
            return None

        excluded = frozenset(
            item.lower().removeprefix("www.") for item in constraints.excluded_domains
        )
        seen: set[str] = set()
        references: list[Reference] = []
        for item in organic:
            if len(references) >= constraints.max_results:
                break
            if not isinstance(item, dict):
                continue
            url = item.get("link")
            if not isinstance(url, str) or not url.startswith("http"):
                continue
            domain = domain_of(url)
            if not domain or domain in seen or _is_excluded(domain, excluded):
                continue
            seen.add(domain)
            title = item.get("title")
            references.append(
                Reference(
                    title=(
                        title
                        if isinstance(title, str) and title
                        else "Untitled Source"
                    ),
                    url=url,
                    source=domain,
                )
            )
        return references or None

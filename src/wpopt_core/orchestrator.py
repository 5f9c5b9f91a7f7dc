"""Fan-out/fan-in coordination of one article generation request.

The primary provider call and every requested discovery subtask are started
before any of them is awaited, each behind its own bulkhead, breaker, retry
loop and rate limiter. All started tasks are joined exactly once before the
result is composed, including when the primary task fails.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, TypeVar

from wpopt_core.discovery import (
    Reference,
    ReferenceConstraints,
    ReferenceDiscovery,
    VideoConstraints,
    VideoDiscovery,
    VideoRef,
)
from wpopt_core.errors import DependencyError, ErrorKind
from wpopt_core.healing import ResponseHealer
from wpopt_core.logging import (
    LoggerLike,
    bound_log_context,
    get_logger,
    log_error,
    log_info,
    log_warning,
)
from wpopt_core.providers import (
    GenerationParams,
    ProviderClient,
    ProviderCredentials,
    ProviderName,
)
from wpopt_core.registry import PRIMARY, REFERENCES, VIDEO, DependencyRegistry
from wpopt_core.retry import RetryOptions

T = TypeVar("T")

WORDS_PER_MINUTE = 1500
TIMEOUT_SAFETY_FACTOR = 1.5
MIN_GENERATION_TIMEOUT = 180.0
MAX_GENERATION_TIMEOUT = 600.0


class ProgressStage(StrEnum):
    """Coarse milestones reported to ``on_progress``."""

    STARTED = "started"
    PRIMARY_SUCCEEDED = "primary_succeeded"
    HEALED = "healed"
    JOINED = "joined"


_STAGE_PERCENT = {
    ProgressStage.STARTED: 5,
    ProgressStage.PRIMARY_SUCCEEDED: 70,
    ProgressStage.HEALED: 80,
    ProgressStage.JOINED: 100,
}

ProgressCallback = Callable[[str, int, str], None]


def adaptive_generation_timeout(target_words: int) -> float:
    """Seconds allowed for one primary call producing ``target_words`` words."""
    calculated = target_words / WORDS_PER_MINUTE * 60 * TIMEOUT_SAFETY_FACTOR
    return max(MIN_GENERATION_TIMEOUT, min(calculated, MAX_GENERATION_TIMEOUT))


@dataclass(frozen=True)
class GenerationRequest:
    """Everything needed to generate one article."""

    topic: str
    provider: ProviderName
    credentials: ProviderCredentials
    model: str
    system_prompt: str
    user_prompt: str
    params: GenerationParams = field(default_factory=GenerationParams)
    target_words: int = 4500
    timeout: float | None = None
    discovery_api_key: str | None = field(default=None, repr=False)
    include_video: bool = True
    include_references: bool = True
    video_constraints: VideoConstraints = field(default_factory=VideoConstraints)
    reference_constraints: ReferenceConstraints = field(
        default_factory=ReferenceConstraints
    )
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(frozen=True)
class GenerationResult:
    """Healed primary payload plus the outcome of every requested subtask.

    ``subtask_results`` holds one key per requested subtask; ``None`` means
    the subtask ran but failed or had nothing to offer.
    """

    payload: dict[str, object]
    attempts: int
    elapsed_ms: int
    subtask_results: dict[str, Any]
    method: str = "primary"

    @property
    def video(self) -> VideoRef | None:
        return self.subtask_results.get(VIDEO)

    @property
    def references(self) -> list[Reference] | None:
        return self.subtask_results.get(REFERENCES)


class GenerationFailedError(RuntimeError):
    """Raised when the primary task fails for good.

    The last underlying failure is chained as ``__cause__``.
    """

    def __init__(self, kind: ErrorKind, attempts: int, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.attempts = attempts


class Orchestrator:
    """Run one primary generation and its discovery subtasks concurrently."""

    def __init__(
        self,
        *,
        registry: DependencyRegistry,
        provider_client: ProviderClient,
        video_discovery: VideoDiscovery | None = None,
        reference_discovery: ReferenceDiscovery | None = None,
        healer: ResponseHealer | None = None,
        retry_options: RetryOptions | None = None,
        logger: LoggerLike | None = None,
    ) -> None:
        """Create an orchestrator.

        Args:
            registry: Guards for the ``primary``, ``video`` and ``references``
                dependencies.
            provider_client: Client used for the primary completion call.
            video_discovery: Video discoverer; ``None`` makes the video
                subtask resolve to ``None``.
            reference_discovery: Reference discoverer; ``None`` makes the
                references subtask resolve to ``None``.
            healer: Response healer. Defaults to ``ResponseHealer()``.
            retry_options: Primary retry policy override. Defaults to the
                retry options registered for ``primary``.
            logger: Optional logger override.
        """
        self._registry = registry
        self._provider_client = provider_client
        self._video_discovery = video_discovery
        self._reference_discovery = reference_discovery
        self._healer = ResponseHealer() if healer is None else healer
        self._retry_options = retry_options
        self._logger = get_logger(__name__) if logger is None else logger

    async def generate(
        self,
        request: GenerationRequest,
        on_progress: ProgressCallback | None = None,
    ) -> GenerationResult:
        """Generate one article payload.

        Raises:
            GenerationFailedError: When the primary task exhausts its retries
                or is rejected by one of its guards. Raised only after every
                discovery subtask has settled.
        """
        started_at = time.monotonic()
        with bound_log_context(request_id=request.request_id, topic=request.topic):
            self._report(on_progress, ProgressStage.STARTED, "Generation started.")
            attempts = [0]

            primary = asyncio.create_task(
                self._run_primary(request, attempts, on_progress)
            )
            subtasks: dict[str, asyncio.Task[Any]] = {}
            if request.include_video:
                subtasks[VIDEO] = asyncio.create_task(
                    self._run_subtask(VIDEO, self._discover_video(request))
                )
            if request.include_references:
                subtasks[REFERENCES] = asyncio.create_task(
                    self._run_subtask(REFERENCES, self._discover_references(request))
                )

            outcomes = await asyncio.gather(
                primary, *subtasks.values(), return_exceptions=True
            )
            self._report(on_progress, ProgressStage.JOINED, "All tasks settled.")

            subtask_results = {
                name: None if isinstance(outcome, BaseException) else outcome
                for name, outcome in zip(subtasks, outcomes[1:], strict=True)
            }
            primary_outcome = outcomes[0]
            elapsed_ms = int((time.monotonic() - started_at) * 1000)

            if isinstance(primary_outcome, BaseException):
                if not isinstance(primary_outcome, Exception):
                    raise primary_outcome
                kind = (
                    primary_outcome.kind
                    if isinstance(primary_outcome, DependencyError)
                    else ErrorKind.PERMANENT
                )
                log_error(
                    self._logger,
                    "orchestrator.primary_failed",
                    error_kind=kind.value,
                    error_type=type(primary_outcome).__name__,
                    attempts=attempts[0],
                    elapsed_ms=elapsed_ms,
                )
                raise GenerationFailedError(
                    kind,
                    attempts[0],
                    f"Primary generation failed after {attempts[0]} attempt(s): "
                    f"{primary_outcome}",
                ) from primary_outcome

            log_info(
                self._logger,
                "orchestrator.generation_succeeded",
                attempts=attempts[0],
                elapsed_ms=elapsed_ms,
                subtasks={
                    name: value is not None for name, value in subtask_results.items()
                },
            )
            return GenerationResult(
                payload=primary_outcome,
                attempts=attempts[0],
                elapsed_ms=elapsed_ms,
                subtask_results=subtask_results,
            )

    async def _run_primary(
        self,
        request: GenerationRequest,
        attempts: list[int],
        on_progress: ProgressCallback | None,
    ) -> dict[str, object]:
        timeout = (
            adaptive_generation_timeout(request.target_words)
            if request.timeout is None
            else request.timeout
        )
        # The breaker enforces its own call timeout around each attempt.
        breaker_timeout = self._registry.get(PRIMARY).breaker.config.call_timeout
        if breaker_timeout is not None and timeout > breaker_timeout:
            log_warning(
                self._logger,
                "orchestrator.timeout_clamped",
                requested=timeout,
                applied=breaker_timeout,
            )
            timeout = breaker_timeout

        async def attempt() -> dict[str, object]:
            attempts[0] += 1
            raw = await self._provider_client.call(
                request.provider,
                request.credentials,
                request.model,
                request.system_prompt,
                request.user_prompt,
                request.params,
                timeout,
            )
            payload = self._healer.heal_or_raise(raw)
            self._report(
                on_progress,
                ProgressStage.PRIMARY_SUCCEEDED,
                f"Provider returned {len(raw)} chars on attempt {attempts[0]}.",
            )
            self._report(on_progress, ProgressStage.HEALED, "Response decoded.")
            return payload

        return await self._guarded(PRIMARY, attempt, self._retry_options)

    async def _discover_video(self, request: GenerationRequest) -> VideoRef | None:
        api_key = request.discovery_api_key
        discovery = self._video_discovery
        if discovery is None or not api_key:
            log_info(self._logger, "orchestrator.subtask_skipped", subtask=VIDEO)
            return None
        return await self._guarded(
            VIDEO,
            lambda: discovery.discover(
                request.topic, api_key, request.video_constraints
            ),
        )

    async def _discover_references(
        self, request: GenerationRequest
    ) -> list[Reference] | None:
        api_key = request.discovery_api_key
        discovery = self._reference_discovery
        if discovery is None or not api_key:
            log_info(self._logger, "orchestrator.subtask_skipped", subtask=REFERENCES)
            return None
        return await self._guarded(
            REFERENCES,
            lambda: discovery.discover(
                request.topic, api_key, request.reference_constraints
            ),
        )

    async def _guarded(
        self,
        name: str,
        work: Callable[[], Awaitable[T]],
        retry_options: RetryOptions | None = None,
    ) -> T:
        guards = self._registry.get(name)
        options = guards.retry_options if retry_options is None else retry_options

        async def limited() -> T:
            guards.limiter.acquire()
            return await work()

        return await guards.bulkhead.run(
            lambda: guards.breaker.execute(limited, options)
        )

    async def _run_subtask(self, name: str, work: Awaitable[T]) -> T | None:
        try:
            return await work
        except Exception as exc:
            log_warning(
                self._logger,
                "orchestrator.subtask_failed",
                subtask=name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

    def _report(
        self,
        on_progress: ProgressCallback | None,
        stage: ProgressStage,
        message: str,
    ) -> None:
        if on_progress is None:
            return
        try:
            on_progress(stage.value, _STAGE_PERCENT[stage], message)
        except Exception as exc:
            log_warning(
                self._logger,
                "orchestrator.progress_callback_failed",
                stage=stage.value,
                error_type=type(exc).__name__,
            )

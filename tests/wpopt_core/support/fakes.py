from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from wpopt_core.circuit_breaker import CircuitState, CircuitStats
from wpopt_core.providers import GenerationParams, ProviderCredentials, ProviderName


class FakeLogger:
    """Capture structured logger events for assertions."""

    def __init__(self) -> None:
        self.events: list[str] = []
        self.calls: list[tuple[str, str, dict[str, object]]] = []

    def _record(self, level: str, event: str, **kwargs: object) -> None:
        self.events.append(event)
        self.calls.append((level, event, kwargs))

    def info(self, event: str, **kwargs: object) -> None:
        self._record("info", event, **kwargs)

    def warning(self, event: str, **kwargs: object) -> None:
        self._record("warning", event, **kwargs)

    def error(self, event: str, **kwargs: object) -> None:
        self._record("error", event, **kwargs)

    def fields_for(self, event: str) -> list[dict[str, object]]:
        return [fields for _, name, fields in self.calls if name == event]


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass(slots=True)
class RecordingListener:
    """Breaker listener recording every hook invocation."""

    events: list[tuple[str, object]] = field(default_factory=list)
    transitions: list[tuple[CircuitState, CircuitState]] = field(default_factory=list)

    def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState, stats: CircuitStats
    ) -> None:
        self.events.append(("state", (old, new)))
        self.transitions.append((old, new))

    def on_call_rejected(self, name: str, retry_after: float) -> None:
        self.events.append(("rejected", retry_after))

    def on_success(self, name: str, stats: CircuitStats, elapsed: float) -> None:
        self.events.append(("success", stats.consecutive_successes))

    def on_failure(
        self, name: str, stats: CircuitStats, exc: Exception, elapsed: float
    ) -> None:
        self.events.append(("failure", type(exc).__name__))


class ExplodingListener:
    """Breaker listener whose every hook raises."""

    def on_state_change(self, *args: object) -> None:
        raise RuntimeError("boom")

    def on_call_rejected(self, *args: object) -> None:
        raise RuntimeError("boom")

    def on_success(self, *args: object) -> None:
        raise RuntimeError("boom")

    def on_failure(self, *args: object) -> None:
        raise RuntimeError("boom")


class ScriptedProviderClient:
    """Provider client returning (or raising) scripted outcomes in order."""

    def __init__(self, *outcomes: str | Exception, delay: float = 0.0) -> None:
        self._outcomes = list(outcomes)
        self._delay = delay
        self.calls: list[dict[str, object]] = []

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
        self.calls.append({"provider": provider, "model": model, "timeout": timeout})
        if self._delay:
            await asyncio.sleep(self._delay)
        # The last outcome repeats once the script is exhausted.
        if len(self._outcomes) > 1:
            outcome = self._outcomes.pop(0)
        else:
            outcome = self._outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class ScriptedDiscovery:
    """Discoverer returning a fixed value or raising a fixed error."""

    def __init__(
        self,
        result: object = None,
        *,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self._result = result
        self._error = error
        self._delay = delay
        self.calls: list[tuple[str, str]] = []
        self.finished = False

    async def discover(self, topic: str, api_key: str, constraints: object) -> object:
        self.calls.append((topic, api_key))
        try:
            if self._delay:
                await asyncio.sleep(self._delay)
            if self._error is not None:
                raise self._error
            return self._result
        finally:
            self.finished = True

"""Shared error types for wpopt_core.

Every failure raised by a dependency adapter or a resilience guard carries an
``ErrorKind`` and an explicit ``retryable`` flag. Retry policies read the flag;
they never inspect message text.
"""

from enum import StrEnum


class ErrorKind(StrEnum):
    """Failure taxonomy shared by adapters, guards and the orchestrator."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    ADMISSION = "admission"
    DECODE = "decode"


class DependencyError(RuntimeError):
    """Base exception for a failed call to (or guard around) a dependency.

    Attributes:
        kind: Failure category.
        retryable: Whether a fresh attempt may succeed.
        http_status: HTTP status observed from the dependency, when known.
    """

    kind: ErrorKind = ErrorKind.PERMANENT
    retryable: bool = False

    def __init__(self, message: str, *, http_status: int | None = None) -> None:
        super().__init__(message)
        self.http_status = http_status


class TransientError(DependencyError):
    """Generic retry-safe transient dependency failure."""

    kind = ErrorKind.TRANSIENT
    retryable = True


class PermanentError(DependencyError):
    """Dependency answered with an error that retrying cannot fix."""

    kind = ErrorKind.PERMANENT
    retryable = False


class AdmissionRejectedError(DependencyError):
    """A local guard refused to start the call.

    Distinguishes "the dependency is unhealthy or saturated" from "the
    dependency answered with an error".
    """

    kind = ErrorKind.ADMISSION
    retryable = False


class CallTimeoutError(TransientError):
    """Raised when a guarded call exceeds its per-call timeout."""

    def __init__(self, operation: str, timeout: float, elapsed: float) -> None:
        self.operation = operation
        self.timeout = timeout
        self.elapsed = elapsed
        super().__init__(
            f"{operation} timed out after {elapsed:.2f}s (limit: {timeout:g}s)"
        )


class ResponseDecodeError(DependencyError):
    """Raised when a provider response cannot be healed into a payload.

    Retryable: the orchestrator answers it with a fresh provider call, since
    the same text never heals differently.
    """

    kind = ErrorKind.DECODE
    retryable = True

    def __init__(self, message: str, *, preview: str = "") -> None:
        super().__init__(message)
        self.preview = preview

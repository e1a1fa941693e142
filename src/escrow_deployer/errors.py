#!/usr/bin/env python3
"""Error taxonomy for the deployment resolution pipeline.

Every stage raises a subclass of DeploymentError. The orchestrator turns
these into a DeploymentResult so that raw httpx/web3 exceptions never reach
the caller.
"""

from enum import Enum
from typing import Any


class ErrorKind(Enum):
    """Failure classification reported to callers."""
    LOCK_CONTENTION = "LockContention"
    SUBMISSION_FAILED = "SubmissionFailed"
    SETTLEMENT_TIMEOUT = "SettlementTimeout"
    LOGS_UNAVAILABLE = "LogsUnavailable"
    EVENT_NOT_FOUND = "EventNotFound"
    VALIDATION_MISMATCH = "ValidationMismatch"
    CANCELLED = "Cancelled"

    @property
    def retryable(self) -> bool:
        """Whether a caller may reasonably retry the job later."""
        return self in (ErrorKind.LOCK_CONTENTION, ErrorKind.SETTLEMENT_TIMEOUT)


class RelayError(RuntimeError):
    """Raised when the account-abstraction relay rejects or fails a request."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DeploymentError(Exception):
    """Base class for classified pipeline failures."""

    kind: ErrorKind

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = details


class LockContentionError(DeploymentError):
    kind = ErrorKind.LOCK_CONTENTION


class SubmissionFailedError(DeploymentError):
    kind = ErrorKind.SUBMISSION_FAILED


class SettlementTimeoutError(DeploymentError):
    """Polling gave up. The operation may still settle on-chain later."""

    kind = ErrorKind.SETTLEMENT_TIMEOUT

    def __init__(self, handle: str, attempts: int, last_error: str | None = None) -> None:
        super().__init__(
            f"Operation {handle} did not settle after {attempts} attempts",
            operation_handle=handle,
            attempts=attempts,
            last_error=last_error,
        )
        self.handle = handle
        self.attempts = attempts


class LogsUnavailableError(DeploymentError):
    """Every configured provider failed for the same query."""

    kind = ErrorKind.LOGS_UNAVAILABLE

    def __init__(self, query: str, failures: list[tuple[str, str]]) -> None:
        summary = "; ".join(f"{name}: {reason}" for name, reason in failures)
        super().__init__(
            f"All providers failed for {query}: {summary}",
            providers_tried=[name for name, _ in failures],
            provider_failures=dict(failures),
        )
        self.failures = failures


class EventNotFoundError(DeploymentError):
    kind = ErrorKind.EVENT_NOT_FOUND


class ValidationMismatchError(DeploymentError):
    kind = ErrorKind.VALIDATION_MISMATCH


class DeploymentCancelledError(DeploymentError):
    """Caller stopped waiting. Does not undo an already-submitted operation."""

    kind = ErrorKind.CANCELLED

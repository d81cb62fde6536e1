"""
Error taxonomy for SEO Autopilot.

Every exception raised by the core derives from SeoAutopilotError.  Each
class carries a ``retryable`` flag that RetryPolicy consults before spending
another attempt:

    RemoteError            -- permanent collaborator failure (4xx, bad request)
    TransientRemoteError   -- network, timeout, 429 or 5xx; retried locally
    OperationTimeout       -- raised by with_timeout()
    ServiceUnavailable     -- circuit open and no fallback supplied
    PhaseFailed            -- a pipeline phase exhausted its retries
    PipelineAborted        -- validation failure or halt before a remote call
    PublishRejected        -- publishing target explicitly refused a document
"""

from __future__ import annotations

import time
from typing import Optional


class SeoAutopilotError(Exception):
    """Base exception for the job-processing core."""

    retryable: bool = True


# ---------------------------------------------------------------------------
# Remote collaborator errors
# ---------------------------------------------------------------------------


class RemoteError(SeoAutopilotError):
    """A collaborator returned a failure that retrying will not fix."""

    retryable = False

    def __init__(self, message: str, status_code: int = 0, response_body: str = ""):
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(message)


class TransientRemoteError(RemoteError):
    """Network error, timeout, rate limit or server error."""

    retryable = True


class OperationTimeout(TransientRemoteError):
    """An awaited operation did not settle within its time budget."""

    def __init__(self, label: str, seconds: float):
        self.label = label
        self.seconds = seconds
        super().__init__(f"{label} timed out after {seconds:g}s")


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------


class ServiceUnavailable(SeoAutopilotError):
    """Raised when a call is rejected because the service's circuit is OPEN."""

    retryable = False

    def __init__(
        self,
        service: str,
        recovery_timeout: float = 0.0,
        last_failure_time: Optional[float] = None,
    ):
        self.service = service
        self.recovery_timeout = recovery_timeout
        remaining = 0.0
        if last_failure_time is not None:
            remaining = max(0.0, recovery_timeout - (time.time() - last_failure_time))
        self.remaining_seconds = round(remaining, 1)
        super().__init__(
            f"Service '{service}' is temporarily unavailable "
            f"(circuit OPEN, retry in {self.remaining_seconds}s)"
        )


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class PhaseFailed(SeoAutopilotError):
    """A pipeline phase failed after its own retries were exhausted."""

    retryable = False

    def __init__(self, phase: str, cause: BaseException):
        self.phase = phase
        self.cause = cause
        super().__init__(f"Phase '{phase}' failed: {cause}")


class PipelineAborted(SeoAutopilotError):
    """The pipeline refused to start or was halted between phases."""

    retryable = False


class PublishRejected(SeoAutopilotError):
    """The publishing target returned an explicit failure."""

    retryable = False

    def __init__(self, reason: str, item_id: str = ""):
        self.reason = reason
        self.item_id = item_id
        prefix = f"Publish rejected for '{item_id}'" if item_id else "Publish rejected"
        super().__init__(f"{prefix}: {reason}")

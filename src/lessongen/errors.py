"""Exception types shared across the generation and governance layers."""

from __future__ import annotations

from enum import Enum


class ProviderError(Exception):
    """Transient failure talking to the completion provider."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ProviderTimeoutError(ProviderError):
    """Raised when a provider call exceeds its timeout."""


class ProviderRateLimitError(ProviderError):
    """Raised when the provider answers 429."""

    def __init__(self, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(f"Provider rate limited. Retry after: {retry_after}s", status_code=429)


class ProviderPaymentRequiredError(Exception):
    """Provider credits or quota are exhausted (402). Not worth retrying."""

    def __init__(self, message: str = "Provider payment required") -> None:
        self.status_code = 402
        super().__init__(message)


class CircuitOpenError(ProviderError):
    """Raised when the provider circuit breaker is open."""

    def __init__(self, retry_in: float) -> None:
        self.retry_in = retry_in
        super().__init__(f"Circuit breaker open. Retry in {retry_in:.0f}s")


class BatchAbortedError(Exception):
    """Raised inside a batch run to stop every remaining work unit."""


class JobAlreadyRunningError(Exception):
    """Another process holds the leader lock for this job."""

    def __init__(self, job_name: str, holder: str | None = None) -> None:
        self.job_name = job_name
        self.holder = holder
        super().__init__(f"Job '{job_name}' is already running (holder={holder})")


class UnauthenticatedError(Exception):
    """Raised when an operation is invoked without a resolved actor."""


class DenialReason(str, Enum):
    """Machine-readable reasons a single-item request can be refused."""

    UNAUTHORIZED = "unauthorized"
    INVALID_TARGET = "invalid_target"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    QUOTA_EXHAUSTED = "quota_exhausted"
    MODERATION_REJECTED = "moderation_rejected"
    DUPLICATE_REQUEST = "duplicate_request"


class RequestDeniedError(Exception):
    """A gate refused a request. Terminal for that request, never retried."""

    def __init__(
        self,
        reason: DenialReason,
        message: str,
        retry_after_seconds: int | None = None,
        quota_remaining: int | None = None,
    ) -> None:
        self.reason = reason
        self.message = message
        self.retry_after_seconds = retry_after_seconds
        self.quota_remaining = quota_remaining
        super().__init__(f"{reason.value}: {message}")

    def to_dict(self) -> dict:
        data: dict = {
            "success": False,
            "error": self.reason.value,
            "message": self.message,
        }
        if self.retry_after_seconds is not None:
            data["retry_after"] = self.retry_after_seconds
        if self.quota_remaining is not None:
            data["quota_remaining"] = self.quota_remaining
        return data


class GenerationDeniedError(RequestDeniedError):
    """A single-item generation request was refused."""


class GenerationFailedError(Exception):
    """Generation could not complete after bounded retries."""

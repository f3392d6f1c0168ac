"""Domain exceptions for the image gateway.

Provider- and credential-level errors are absorbed and retried inside the
gateway; only the exhaustion errors and the caller-facing signals
(rate limit, queue administration) reach API handlers.
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for all gateway errors."""

    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# ---------------------------------------------------------------------------
# Provider-level (retried internally)
# ---------------------------------------------------------------------------


class ProviderError(GatewayError):
    """A single provider call failed."""

    status_code = 502

    def __init__(self, message: str, status: int = 0, error_code: str = "", provider: str = ""):
        super().__init__(message)
        self.status = status
        self.error_code = error_code
        self.provider = provider


class QuotaExceededError(ProviderError):
    """The credential used for the call ran out of quota (recoverable after cooldown)."""


class TransientProviderError(ProviderError):
    """Timeout or 5xx from a provider (recoverable quickly)."""


# ---------------------------------------------------------------------------
# Terminal for one request
# ---------------------------------------------------------------------------


class AllCredentialsExhaustedError(GatewayError):
    """Every credential in the pool was tried and none succeeded."""

    status_code = 502

    def __init__(
        self,
        message: str,
        attempts: int = 0,
        tried: list[int] | None = None,
        statuses: list[str] | None = None,
    ):
        super().__init__(message)
        self.attempts = attempts
        self.tried = tried or []
        self.statuses = statuses or []


class AllProvidersFailedError(GatewayError):
    """Every stage of the provider fallback chain failed."""

    status_code = 502

    def __init__(self, message: str, stages: list[str] | None = None):
        super().__init__(message)
        self.stages = stages or []


class RateLimitedError(GatewayError):
    """The caller's identity is blocked by the rate limiter."""

    status_code = 429

    def __init__(self, message: str, retry_after_seconds: int = 0):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


# ---------------------------------------------------------------------------
# Queue administration
# ---------------------------------------------------------------------------


class QueueClearedError(GatewayError):
    """A pending task was dropped by an explicit queue clear."""

    status_code = 503


class QueueShutdownError(GatewayError):
    """A pending task was dropped because the queue shut down."""

    status_code = 503


class QueueRetryExhaustedError(GatewayError):
    """A queued task kept failing after all queue-level retries."""

    status_code = 502

    def __init__(self, message: str, retry_count: int = 0):
        super().__init__(message)
        self.retry_count = retry_count


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


class ConfigurationError(GatewayError):
    """Fatal misconfiguration detected at startup (e.g. no credentials)."""

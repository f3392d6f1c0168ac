"""Credential Rotator — round-robin API key pool with failure-aware cooldowns.

Selection:
  A persistent cursor walks the *full* pool and advances on every
  examination, whether or not the credential it lands on is usable. Skipped
  credentials therefore keep their place in the cycle, and over any N
  consecutive selections no credential is chosen more than once more than
  any other.

Health:
  - success: error count cleared, cooldown cleared
  - quota error: quota_exhausted + long cooldown (default 1h)
  - generic error: short cooldown (default 30s)
  - too many errors: deactivated with a medium cooldown (default 5 min).
    Quota errors deactivate after ``max_errors``; generic errors are given
    ``max_errors * deactivation_multiplier``.

Cooldowns are finite, so every credential eventually becomes available again;
an expired cooldown is reinstated on the next selection or by the periodic
sweep.

Backoff while waiting for a credential:
  delay = min(base * multiplier^round, max_delay)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from image_gateway.core.exceptions import (
    AllCredentialsExhaustedError,
    ConfigurationError,
    GatewayError,
    QuotaExceededError,
)
from image_gateway.core.metrics import CREDENTIAL_EVENTS
from image_gateway.gateway.background import PeriodicSweeper
from image_gateway.gateway.types import Credential, CredentialPolicy, RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Matched case-insensitively against the error message and its string form
QUOTA_KEYWORDS = (
    "quota exceeded",
    "rate limit",
    "too many requests",
    "resource exhausted",
    "resource_exhausted",
    "quota_exceeded",
    "rate_limit_exceeded",
    "user rate limit exceeded",
    "requests per minute exceeded",
    "daily limit exceeded",
    "billing quota exceeded",
    "api quota exceeded",
    "usage limit exceeded",
    "insufficient quota",
    "quota insufficient",
    "429",
    "throttled",
    "rate limited",
)


def extract_status(error: BaseException) -> int | None:
    """Best-effort upstream HTTP status code from an exception.

    ``GatewayError.status_code`` is the status this service answers with, not
    what the provider returned, so gateway errors only report ``status``.
    """
    if isinstance(error, GatewayError):
        status = getattr(error, "status", 0)
        return status if isinstance(status, int) and status > 0 else None
    for attr in ("status", "status_code", "code"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and value > 0:
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int):
        return value
    return None


def classify_error(error: BaseException) -> bool:
    """Return True if *error* looks like a quota / rate-limit error.

    Server faults (5xx) are never quota errors, even if their message happens
    to contain a quota keyword.
    """
    if isinstance(error, QuotaExceededError):
        return True

    status = extract_status(error)
    if status is not None and 500 <= status < 600:
        logger.debug("Status %d treated as a transient server error", status)
        return False

    if status == 429:
        return True

    message = str(getattr(error, "message", "") or "").lower()
    text = str(error).lower()
    matched = [k for k in QUOTA_KEYWORDS if k in message or k in text]
    if matched:
        logger.debug("Quota error detected (keywords=%s)", matched)
        return True
    return False


class CredentialRotator:
    """Fixed pool of interchangeable credentials with round-robin selection.

    Usage:
        rotator = CredentialRotator(["key-a", "key-b", "key-c"])

        result = await rotator.execute_with_retry(
            lambda cred: provider.generate(prompt, style, credential=cred),
            label="gemini-imagen-4-fast",
        )
    """

    def __init__(
        self,
        secrets: list[str],
        policy: CredentialPolicy | None = None,
        retry: RetryConfig | None = None,
        sweep_interval: float = 30.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if not secrets:
            raise ConfigurationError("No API keys configured for the credential rotator")

        self.policy = policy or CredentialPolicy()
        self.retry = retry or RetryConfig()
        self._clock = clock
        self._sleep = sleep
        self._credentials = [Credential(index=i, secret=s) for i, s in enumerate(secrets)]
        self._cursor = 0
        self._sweeper = PeriodicSweeper("key_rotator", self.reinstate_recovered, sweep_interval)

        logger.info("Credential rotator initialized with %d keys", len(self._credentials))

    # -- lifecycle -----------------------------------------------------------

    def start(self) -> None:
        self._sweeper.start()

    async def close(self) -> None:
        await self._sweeper.stop()

    # -- pool access ---------------------------------------------------------

    def __len__(self) -> int:
        return len(self._credentials)

    @property
    def credentials(self) -> list[Credential]:
        return list(self._credentials)

    @property
    def cursor(self) -> int:
        return self._cursor

    def get(self, index: int) -> Credential | None:
        if 0 <= index < len(self._credentials):
            return self._credentials[index]
        return None

    # -- selection -----------------------------------------------------------

    def reinstate_recovered(self) -> int:
        """Bring back credentials whose cooldown has elapsed. Returns count reinstated."""
        now = self._clock()
        reinstated = 0
        for cred in self._credentials:
            if now < cred.next_available_at:
                continue
            if cred.quota_exhausted:
                cred.quota_exhausted = False
                cred.is_active = True
                cred.error_count = 0
                reinstated += 1
                CREDENTIAL_EVENTS.labels(event="recovered").inc()
                logger.info("Key %d recovered from quota cooldown", cred.index)
            elif not cred.is_active:
                cred.is_active = True
                cred.error_count = 0
                reinstated += 1
                CREDENTIAL_EVENTS.labels(event="recovered").inc()
                logger.info("Key %d reactivated after error cooldown", cred.index)
        return reinstated

    def next_available(self) -> Credential | None:
        """Next usable credential in round-robin order, or None."""
        self.reinstate_recovered()
        now = self._clock()
        pool_size = len(self._credentials)

        for _ in range(pool_size):
            cred = self._credentials[self._cursor]
            self._cursor = (self._cursor + 1) % pool_size

            if cred.is_available(now):
                CREDENTIAL_EVENTS.labels(event="selected").inc()
                logger.debug(
                    "Key %d selected (requests=%d, errors=%d, cursor=%d)",
                    cred.index,
                    cred.request_count,
                    cred.error_count,
                    self._cursor,
                )
                return cred

            logger.debug(
                "Key %d skipped (%s, cooldown %.1fs)",
                cred.index,
                self._skip_reason(cred, now),
                max(0.0, cred.next_available_at - now),
            )

        logger.warning(
            "No keys available (total=%d, active=%d, quota_exhausted=%d)",
            pool_size,
            sum(1 for c in self._credentials if c.is_active),
            sum(1 for c in self._credentials if c.quota_exhausted),
        )
        return None

    @staticmethod
    def _skip_reason(cred: Credential, now: float) -> str:
        if not cred.is_active:
            return "inactive"
        if cred.quota_exhausted:
            return "quota_exhausted"
        if now < cred.next_available_at:
            return "cooldown"
        return "unknown"

    # -- health bookkeeping ----------------------------------------------------

    def record_success(self, index: int) -> None:
        cred = self.get(index)
        if cred is None:
            return
        cred.error_count = 0
        cred.last_used_at = self._clock()
        cred.request_count += 1
        cred.next_available_at = 0.0
        CREDENTIAL_EVENTS.labels(event="success").inc()

    def record_error(self, index: int, is_quota_error: bool = False) -> None:
        cred = self.get(index)
        if cred is None:
            return

        now = self._clock()
        cred.error_count += 1
        cred.last_used_at = now

        if is_quota_error:
            cred.quota_exhausted = True
            cred.next_available_at = now + self.policy.quota_cooldown
            threshold = self.policy.max_errors
            CREDENTIAL_EVENTS.labels(event="quota").inc()
            logger.warning(
                "Key %d quota exhausted, cooling down for %.0fs",
                index,
                self.policy.quota_cooldown,
            )
        else:
            cred.next_available_at = max(cred.next_available_at, now + self.policy.error_cooldown)
            threshold = self.policy.generic_error_threshold
            CREDENTIAL_EVENTS.labels(event="error").inc()

        if cred.error_count >= threshold and cred.is_active:
            cred.is_active = False
            # Never shorten a longer pending (quota) cooldown
            cred.next_available_at = max(cred.next_available_at, now + self.policy.disabled_cooldown)
            CREDENTIAL_EVENTS.labels(event="disabled").inc()
            logger.error(
                "Key %d disabled after %d errors, reactivation in %.0fs",
                index,
                cred.error_count,
                cred.next_available_at - now,
            )

    # -- retry loop --------------------------------------------------------------

    def calculate_backoff(self, round_number: int) -> float:
        delay = self.retry.base_delay * (self.retry.backoff_multiplier**round_number)
        return min(delay, self.retry.max_delay)

    def max_attempts(self) -> int:
        """Two full passes over the pool, or the configured budget if larger."""
        return max(len(self._credentials) * 2, self.retry.max_retries)

    def _wait_budget(self, from_attempt: int, max_attempts: int) -> float:
        pool_size = len(self._credentials)
        return sum(self.calculate_backoff(a // pool_size) for a in range(from_attempt, max_attempts))

    def _earliest_recovery(self) -> float:
        now = self._clock()
        return min(max(0.0, c.next_available_at - now) for c in self._credentials)

    def _exhausted_error(
        self,
        label: str,
        attempts: int,
        tried: list[int],
        last_error: BaseException | None,
    ) -> AllCredentialsExhaustedError:
        statuses = [c.describe() for c in self._credentials]
        last = str(last_error) if last_error else "no credential became available"
        message = (
            f"{label} failed after {attempts} attempts across {len(self._credentials)} keys. "
            f"Keys tried: [{', '.join(str(i) for i in tried)}]. "
            f"Key statuses: {'; '.join(statuses)}. "
            f"Last error: {last}"
        )
        return AllCredentialsExhaustedError(message, attempts=attempts, tried=tried, statuses=statuses)

    async def execute_with_retry(
        self,
        operation: Callable[[Credential], Awaitable[T]],
        label: str = "API request",
    ) -> T:
        """Run *operation* with successive credentials until one succeeds.

        Every credential is tried at least once before giving up. When no
        credential is currently available the loop waits with capped
        exponential backoff, but only while some credential can recover
        within the remaining wait budget.
        """
        pool_size = len(self._credentials)
        max_attempts = self.max_attempts()
        tried: list[int] = []
        last_error: BaseException | None = None

        for attempt in range(max_attempts):
            cred = self.next_available()

            if cred is None:
                budget = self._wait_budget(attempt, max_attempts)
                earliest = self._earliest_recovery()
                if attempt >= max_attempts - 1 or earliest > budget:
                    logger.error(
                        "%s: all keys exhausted (attempt %d/%d, earliest recovery %.0fs, wait budget %.0fs)",
                        label,
                        attempt + 1,
                        max_attempts,
                        earliest,
                        budget,
                    )
                    raise self._exhausted_error(label, attempt, tried, last_error)

                wait = self.calculate_backoff(attempt // pool_size)
                logger.info(
                    "%s: waiting %.1fs for key recovery (tried %d/%d keys)",
                    label,
                    wait,
                    len(set(tried)),
                    pool_size,
                )
                await self._sleep(wait)
                continue

            if cred.index not in tried:
                tried.append(cred.index)

            logger.info(
                "%s: attempt %d/%d with key %d (%s)",
                label,
                attempt + 1,
                max_attempts,
                cred.index,
                cred.masked,
            )

            try:
                result = await operation(cred)
            except Exception as e:
                last_error = e
                is_quota = classify_error(e)
                self.record_error(cred.index, is_quota_error=is_quota)
                logger.warning(
                    "%s: key %d failed (quota=%s): %s",
                    label,
                    cred.index,
                    is_quota,
                    e,
                )
                if attempt < max_attempts - 1:
                    delay = min(self.calculate_backoff(attempt // pool_size), self.retry.inter_attempt_delay_cap)
                    await self._sleep(delay)
                continue

            self.record_success(cred.index)
            logger.info("%s: succeeded with key %d on attempt %d", label, cred.index, attempt + 1)
            return result

        raise self._exhausted_error(label, max_attempts, tried, last_error)

    # -- admin & diagnostics -------------------------------------------------------

    def emergency_reset_all(self) -> int:
        """Reactivate every credential immediately. Returns how many needed it."""
        now = self._clock()
        reset = sum(1 for c in self._credentials if not c.is_available(now))
        for cred in self._credentials:
            cred.is_active = True
            cred.quota_exhausted = False
            cred.error_count = 0
            cred.next_available_at = 0.0
        logger.warning("Emergency reset reactivated %d of %d keys", reset, len(self._credentials))
        return reset

    def is_evenly_distributed(self, tolerance: int = 2) -> bool:
        counts = [c.request_count for c in self._credentials]
        return max(counts) - min(counts) <= tolerance

    def get_stats(self) -> dict:
        return {
            "total_keys": len(self._credentials),
            "active_keys": sum(1 for c in self._credentials if c.is_active),
            "quota_exhausted_keys": sum(1 for c in self._credentials if c.quota_exhausted),
            "total_requests": sum(c.request_count for c in self._credentials),
            "total_errors": sum(c.error_count for c in self._credentials),
            "retry_config": {
                "max_retries": self.retry.max_retries,
                "base_delay": self.retry.base_delay,
                "max_delay": self.retry.max_delay,
                "backoff_multiplier": self.retry.backoff_multiplier,
            },
            "key_stats": [
                {
                    "index": c.index,
                    "is_active": c.is_active,
                    "quota_exhausted": c.quota_exhausted,
                    "error_count": c.error_count,
                    "request_count": c.request_count,
                    "last_used_at": c.last_used_at,
                    "next_available_at": c.next_available_at,
                }
                for c in self._credentials
            ],
        }

    def get_distribution_debug_info(self) -> dict:
        now = self._clock()

        def _status(c: Credential) -> str:
            if c.quota_exhausted:
                return "quota_exhausted"
            if not c.is_active:
                return "disabled"
            if now < c.next_available_at:
                return "cooldown"
            return "available"

        return {
            "current_rotation_index": self._cursor,
            "next_key": self._credentials[self._cursor].index,
            "rotation_sequence": [c.index for c in self._credentials],
            "keys": [
                {
                    "index": c.index,
                    "status": _status(c),
                    "error_count": c.error_count,
                    "request_count": c.request_count,
                    "cooldown_remaining_seconds": max(0, int(c.next_available_at - now + 0.999)),
                }
                for c in self._credentials
            ],
            "distribution": [c.request_count for c in self._credentials],
            "is_evenly_distributed": self.is_evenly_distributed(),
        }

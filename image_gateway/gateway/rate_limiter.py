"""Per-identity Rate Limiter — sliding window with sticky block state.

Each identity moves between two states:

    UNRESTRICTED --(window full on check)--> BLOCKED --(now >= block_until)--> UNRESTRICTED

Checking is what detects a full window, so a check can itself put the
identity into BLOCKED; the caller gets the rejection reason in the same call.
A block lasts exactly ``block_duration_seconds``: further rejected calls do
not extend it. When it lapses the window history is discarded, so the
identity starts over with a full allowance.

Identities idle for longer than the retention horizon are dropped by a
periodic cleanup; blocked identities are kept until their block lapses.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import asdict

from image_gateway.gateway.background import PeriodicSweeper
from image_gateway.gateway.types import RateLimitConfig, RateLimitInfo, RateWindowState

logger = logging.getLogger(__name__)


class UserRateLimiter:
    """Sliding-window request gate keyed by caller identity.

    Usage:
        limiter = UserRateLimiter(RateLimitConfig(max_requests=5, window_seconds=60))

        if not limiter.record_request(user_id):
            info = limiter.check_limit(user_id)
            raise RateLimitedError(..., retry_after_seconds=info.block_until - now)
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        cleanup_interval: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._identities: dict[str, RateWindowState] = {}
        self._sweeper = PeriodicSweeper("rate_limiter", self.cleanup, cleanup_interval)

        logger.info(
            "Rate limiter initialized (max_requests=%d, window=%.0fs, block=%.0fs)",
            self.config.max_requests,
            self.config.window_seconds,
            self.config.block_duration_seconds,
        )

    def start(self) -> None:
        self._sweeper.start()

    async def close(self) -> None:
        await self._sweeper.stop()

    def _get_state(self, identity: str, now: float) -> RateWindowState:
        state = self._identities.get(identity)
        if state is None:
            state = RateWindowState(first_request_at=now, last_seen_at=now)
            self._identities[identity] = state
        return state

    def _prune(self, state: RateWindowState, now: float) -> None:
        window_start = now - self.config.window_seconds
        while state.requests and state.requests[0] <= window_start:
            state.requests.popleft()

    def check_limit(self, identity: str) -> RateLimitInfo:
        """Report the identity's allowance, blocking it if the window is full."""
        now = self._clock()
        state = self._get_state(identity, now)
        state.last_seen_at = now

        if state.block_until is not None:
            if now < state.block_until:
                return RateLimitInfo(
                    remaining=0,
                    reset_time=state.block_until,
                    blocked=True,
                    block_until=state.block_until,
                )
            # Block served: start over
            state.block_until = None
            state.requests.clear()
            logger.info("Rate limit block lifted for %s", identity)

        self._prune(state, now)

        if len(state.requests) >= self.config.max_requests:
            state.block_until = now + self.config.block_duration_seconds
            logger.warning(
                "Rate limit exceeded for %s, blocked for %.0fs",
                identity,
                self.config.block_duration_seconds,
            )
            return RateLimitInfo(
                remaining=0,
                reset_time=state.block_until,
                blocked=True,
                block_until=state.block_until,
            )

        remaining = self.config.max_requests - len(state.requests)
        oldest = state.requests[0] if state.requests else now
        reset_time = oldest + self.config.window_seconds

        logger.debug("Rate limit for %s: %d remaining", identity, remaining)
        return RateLimitInfo(remaining=remaining, reset_time=reset_time, blocked=False)

    def record_request(self, identity: str) -> bool:
        """Consume one request from the identity's allowance.

        Returns False (recording nothing) if the identity is blocked.
        """
        if self.check_limit(identity).blocked:
            return False

        now = self._clock()
        state = self._get_state(identity, now)
        state.requests.append(now)
        state.total_requests += 1
        state.last_seen_at = now
        if state.total_requests == 1:
            state.first_request_at = now

        logger.debug(
            "Rate limit request recorded for %s (window=%d, total=%d)",
            identity,
            len(state.requests),
            state.total_requests,
        )
        return True

    def cleanup(self) -> int:
        """Drop identities idle beyond the retention horizon. Returns count removed."""
        now = self._clock()
        removed = 0

        for identity, state in list(self._identities.items()):
            if state.block_until is not None:
                if now < state.block_until:
                    continue
                state.block_until = None
                state.requests.clear()
            if now - state.last_seen_at > self.config.retention_seconds:
                del self._identities[identity]
                removed += 1

        if removed:
            logger.info(
                "Rate limiter cleanup removed %d identities, %d tracked",
                removed,
                len(self._identities),
            )
        return removed

    # -- admin ---------------------------------------------------------------

    def reset_user(self, identity: str) -> None:
        self._identities.pop(identity, None)
        logger.warning("Rate limit state reset for %s", identity)

    def bypass_limit(self, identity: str, reason: str) -> None:
        """Lift the block and clear history for an identity (audit-logged)."""
        state = self._get_state(identity, self._clock())
        state.block_until = None
        state.requests.clear()
        logger.warning("Rate limit bypassed for %s: %s", identity, reason)

    def update_config(self, **changes) -> None:
        for name, value in changes.items():
            if not hasattr(self.config, name):
                raise ValueError(f"Unknown rate limit option: {name}")
            setattr(self.config, name, value)
        logger.info("Rate limit config updated: %s", asdict(self.config))

    # -- introspection -------------------------------------------------------

    def is_blocked(self, identity: str) -> bool:
        state = self._identities.get(identity)
        if state is None or state.block_until is None:
            return False
        return self._clock() < state.block_until

    def get_cooldown_time(self, identity: str) -> float:
        """Seconds until the identity's block lapses (0 if not blocked)."""
        state = self._identities.get(identity)
        if state is None or state.block_until is None:
            return 0.0
        return max(0.0, state.block_until - self._clock())

    def get_status(self, identity: str) -> RateLimitInfo:
        """Read-only view of the identity's allowance.

        Unlike check_limit this never creates state, lifts a lapsed block or
        blocks a full window.
        """
        now = self._clock()
        window_start = now - self.config.window_seconds
        state = self._identities.get(identity)

        if state is not None and state.block_until is not None and now < state.block_until:
            return RateLimitInfo(
                remaining=0,
                reset_time=state.block_until,
                blocked=True,
                block_until=state.block_until,
            )

        lapsed = state is None or state.block_until is not None
        recent = [] if lapsed else [t for t in state.requests if t > window_start]
        oldest = recent[0] if recent else now
        return RateLimitInfo(
            remaining=max(0, self.config.max_requests - len(recent)),
            reset_time=oldest + self.config.window_seconds,
            blocked=False,
        )

    def tracked_identities(self) -> int:
        return len(self._identities)

    def get_stats(self) -> dict:
        now = self._clock()
        blocked = sum(
            1 for s in self._identities.values() if s.block_until is not None and now < s.block_until
        )
        return {
            "total_users": len(self._identities),
            "active_users": len(self._identities) - blocked,
            "blocked_users": blocked,
            "total_requests": sum(s.total_requests for s in self._identities.values()),
            "config": asdict(self.config),
        }

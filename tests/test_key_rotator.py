"""Tests for the credential rotator: round-robin, cooldowns, retry loop."""

from __future__ import annotations

from collections import Counter

import httpx
import pytest

from image_gateway.core.exceptions import (
    AllCredentialsExhaustedError,
    ConfigurationError,
    ProviderError,
    QuotaExceededError,
    TransientProviderError,
)
from image_gateway.gateway.key_rotator import CredentialRotator, classify_error, extract_status
from image_gateway.gateway.types import CredentialPolicy, RetryConfig

SECRETS = ["secret-key-zero-0000", "secret-key-one-11111", "secret-key-two-22222", "secret-key-three-333"]


@pytest.fixture
def rotator(clock, sleep):
    return CredentialRotator(list(SECRETS), clock=clock, sleep=sleep)


class TestClassifyError:
    def test_429_is_quota(self):
        assert classify_error(ProviderError("Too Many Requests", status=429)) is True

    def test_keyword_is_quota(self):
        assert classify_error(RuntimeError("RESOURCE_EXHAUSTED: daily limit exceeded")) is True

    def test_5xx_never_quota(self):
        assert classify_error(TransientProviderError("quota exceeded upstream", status=503)) is False

    def test_500_not_quota(self):
        assert classify_error(ProviderError("internal", status=500)) is False

    def test_generic_error(self):
        assert classify_error(ValueError("bad prompt")) is False

    def test_extract_status_from_httpx_error(self):
        request = httpx.Request("POST", "https://example.test")
        response = httpx.Response(429, request=request)
        error = httpx.HTTPStatusError("boom", request=request, response=response)
        assert extract_status(error) == 429

    def test_quota_error_without_status_is_quota(self):
        error = QuotaExceededError("RESOURCE_EXHAUSTED")
        assert extract_status(error) is None
        assert classify_error(error) is True

    def test_quota_message_without_status_is_quota(self):
        error = ProviderError("Quota exceeded for this API key")
        assert extract_status(error) is None
        assert classify_error(error) is True

    def test_gateway_response_status_not_mistaken_for_upstream(self):
        assert classify_error(ProviderError("connection reset")) is False
        assert extract_status(ProviderError("connection reset")) is None


class TestSelection:
    def test_requires_credentials(self):
        with pytest.raises(ConfigurationError):
            CredentialRotator([])

    def test_round_robin_cycles(self, rotator):
        picks = [rotator.next_available().index for _ in range(8)]
        assert picks == [0, 1, 2, 3, 0, 1, 2, 3]

    def test_exhausted_credential_skipped_but_cursor_advances(self, rotator):
        rotator.record_error(2, is_quota_error=True)
        picks = []
        for _ in range(30):
            cred = rotator.next_available()
            picks.append(cred.index)
            rotator.record_success(cred.index)

        assert 2 not in picks
        counts = Counter(picks)
        assert max(counts.values()) - min(counts.values()) <= 1
        assert rotator.is_evenly_distributed(tolerance=1) is False  # key 2 has 0 requests

    def test_none_when_all_unavailable(self, rotator):
        for i in range(len(SECRETS)):
            rotator.record_error(i, is_quota_error=True)
        assert rotator.next_available() is None

    def test_secret_never_in_repr(self, rotator):
        cred = rotator.get(0)
        assert SECRETS[0] not in repr(cred)
        assert cred.masked == "secr..."


class TestHealth:
    def test_quota_cooldown_and_recovery(self, rotator, clock):
        rotator.record_error(0, is_quota_error=True)
        cred = rotator.get(0)
        assert cred.quota_exhausted
        assert not cred.is_available(clock.now)

        clock.advance(3600)
        assert rotator.reinstate_recovered() == 1
        assert cred.is_available(clock.now)
        assert cred.error_count == 0

    def test_generic_error_short_cooldown(self, rotator, clock):
        rotator.record_error(1)
        cred = rotator.get(1)
        assert cred.is_active
        assert not cred.is_available(clock.now)
        clock.advance(30)
        assert cred.is_available(clock.now)

    def test_generic_errors_deactivate_at_multiplied_threshold(self, rotator):
        for _ in range(5):
            rotator.record_error(1)
        assert rotator.get(1).is_active
        rotator.record_error(1)
        assert not rotator.get(1).is_active

    def test_quota_errors_deactivate_at_max_errors(self, rotator, clock):
        for _ in range(3):
            rotator.record_error(0, is_quota_error=True)
        cred = rotator.get(0)
        assert not cred.is_active
        # Deactivation never shortens the quota cooldown
        assert cred.next_available_at == pytest.approx(clock.now + 3600)

    def test_disabled_reactivates_after_cooldown(self, rotator, clock):
        for _ in range(6):
            rotator.record_error(3)
        clock.advance(299)
        assert rotator.reinstate_recovered() == 0
        clock.advance(1)
        assert rotator.reinstate_recovered() == 1
        assert rotator.get(3).is_active

    def test_success_clears_errors(self, rotator):
        rotator.record_error(0)
        rotator.record_success(0)
        cred = rotator.get(0)
        assert cred.error_count == 0
        assert cred.request_count == 1
        assert cred.next_available_at == 0.0

    def test_emergency_reset(self, rotator, clock):
        rotator.record_error(0, is_quota_error=True)
        for _ in range(6):
            rotator.record_error(1)
        assert rotator.emergency_reset_all() == 2
        assert all(c.is_available(clock.now) for c in rotator.credentials)


class TestBackoff:
    def test_calculate_backoff_capped(self, rotator):
        assert [rotator.calculate_backoff(r) for r in range(6)] == [1, 2, 4, 8, 8, 8]

    def test_max_attempts(self, rotator):
        assert rotator.max_attempts() == 11
        big = CredentialRotator([f"k{i}" for i in range(8)])
        assert big.max_attempts() == 16


class TestExecuteWithRetry:
    @pytest.mark.asyncio
    async def test_success_first_try(self, rotator):
        async def op(cred):
            return f"ok-{cred.index}"

        assert await rotator.execute_with_retry(op) == "ok-0"
        assert rotator.get(0).request_count == 1

    @pytest.mark.asyncio
    async def test_rotates_past_failures(self, rotator, sleep):
        async def op(cred):
            if cred.index < 2:
                raise TransientProviderError("timeout", status=504)
            return cred.index

        assert await rotator.execute_with_retry(op) == 2
        assert rotator.get(0).error_count == 1
        assert rotator.get(1).error_count == 1
        # Pause between failed attempts is capped at 1s
        assert sleep.calls == [1.0, 1.0]

    @pytest.mark.asyncio
    async def test_all_quota_errors_try_every_credential(self, rotator):
        attempted = []

        async def op(cred):
            attempted.append(cred.index)
            raise QuotaExceededError("quota exceeded", status=429)

        with pytest.raises(AllCredentialsExhaustedError) as exc_info:
            await rotator.execute_with_retry(op, label="imagen")

        error = exc_info.value
        assert sorted(set(attempted)) == [0, 1, 2, 3]
        assert sorted(error.tried) == [0, 1, 2, 3]
        assert "Keys tried: [0, 1, 2, 3]" in error.message
        for secret in SECRETS:
            assert secret not in error.message

    @pytest.mark.asyncio
    async def test_statusless_quota_error_gets_quota_cooldown(self, rotator, clock):
        async def op(cred):
            raise ProviderError("Quota exceeded for this API key")

        with pytest.raises(AllCredentialsExhaustedError):
            await rotator.execute_with_retry(op)

        cred = rotator.get(0)
        assert cred.quota_exhausted
        assert cred.next_available_at >= clock.now + 3000

    @pytest.mark.asyncio
    async def test_fails_fast_when_recovery_beyond_budget(self, clock, sleep):
        rotator = CredentialRotator(["only-key-000000"], clock=clock, sleep=sleep)
        rotator.record_error(0, is_quota_error=True)

        async def op(cred):
            return "never"

        with pytest.raises(AllCredentialsExhaustedError):
            await rotator.execute_with_retry(op)
        assert sleep.calls == []

    @pytest.mark.asyncio
    async def test_waits_for_short_cooldown(self, clock, sleep):
        rotator = CredentialRotator(
            ["only-key-000000"],
            policy=CredentialPolicy(error_cooldown=3),
            retry=RetryConfig(max_retries=11),
            clock=clock,
            sleep=sleep,
        )
        calls = 0

        async def op(cred):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise TransientProviderError("server error", status=500)
            return "recovered"

        assert await rotator.execute_with_retry(op) == "recovered"
        assert calls == 2
        assert sum(sleep.calls) >= 3


class TestDiagnostics:
    def test_stats(self, rotator):
        rotator.record_success(0)
        rotator.record_error(1, is_quota_error=True)
        stats = rotator.get_stats()
        assert stats["total_keys"] == 4
        assert stats["quota_exhausted_keys"] == 1
        assert stats["total_requests"] == 1
        assert len(stats["key_stats"]) == 4

    def test_distribution_debug_info(self, rotator):
        rotator.next_available()
        rotator.record_error(2, is_quota_error=True)
        info = rotator.get_distribution_debug_info()
        assert info["current_rotation_index"] == 1
        assert info["next_key"] == 1
        assert info["keys"][2]["status"] == "quota_exhausted"
        assert info["keys"][2]["cooldown_remaining_seconds"] == 3600
        assert info["is_evenly_distributed"] is True

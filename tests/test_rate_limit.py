"""Tests for the per-endpoint rate limiter."""

import json
import logging
import random
import threading
from unittest.mock import MagicMock

import pytest
import redis

from governor.app.exceptions import ConfigurationError, RateLimitError, StorageError
from governor.app.rate_limit import (
    RATE_LIMITS,
    BucketStore,
    DenialReason,
    Environment,
    InMemoryStorage,
    RateLimiter,
    RedisStorage,
)


def make_limiter(endpoint_key, clock, store, override=None):
    return RateLimiter(
        endpoint_key,
        override,
        store=store,
        environment=Environment.DEVELOPMENT,
        clock=clock,
    )


class FailingStorage(InMemoryStorage):
    """Storage whose writes always fail."""

    def set(self, key, value):
        raise StorageError(key, "quota exceeded")


class TestConfiguration:
    """Tests for preset selection and overrides."""

    def test_preset_selected_by_endpoint_key(self, clock, store):
        limiter = make_limiter("AUTH_LOGIN", clock, store)
        assert limiter.config == RATE_LIMITS["AUTH_LOGIN"]

    def test_unknown_endpoint_falls_back_to_query(self, clock, store):
        limiter = make_limiter("SOMETHING_ELSE", clock, store)
        assert limiter.config == RATE_LIMITS["QUERY"]

    def test_override_inherits_unspecified_fields(self, clock, store):
        limiter = make_limiter("AUTH_LOGIN", clock, store, {"max_requests": 10})
        assert limiter.config.max_requests == 10
        assert limiter.config.window_ms == 60_000
        assert limiter.config.min_delay_ms == 2000

    def test_unknown_override_field_rejected(self, clock, store):
        with pytest.raises(ConfigurationError):
            make_limiter("QUERY", clock, store, {"maxRequests": 10})

    def test_invalid_override_value_rejected(self, clock, store):
        with pytest.raises(ConfigurationError):
            make_limiter("QUERY", clock, store, {"refill_rate": 0})

    def test_initial_bucket_is_full(self, clock, store):
        limiter = make_limiter("MFA_VERIFY", clock, store)
        state = limiter.snapshot()
        assert state.tokens == 3
        assert state.requests == []
        assert state.last_refill == clock.now


class TestWindowGate:
    """Tests for the sliding window gate."""

    def test_nth_request_allowed_and_next_denied(self, clock, store):
        limiter = make_limiter("QUERY", clock, store, {"max_requests": 3})

        results = [limiter.attempt() for _ in range(4)]

        assert [r.allowed for r in results] == [True, True, True, False]
        denied = results[-1]
        assert denied.reason == DenialReason.WINDOW
        assert denied.retry_after == 60_000
        assert denied.reset_at == clock.now + 60_000

    def test_window_reopens_when_oldest_request_leaves(self, clock, store):
        limiter = make_limiter("QUERY", clock, store, {"max_requests": 2})
        limiter.attempt()
        clock.advance(10_000)
        limiter.attempt()

        denied = limiter.attempt()
        assert denied.allowed is False
        assert denied.retry_after == 50_000

        clock.advance(denied.retry_after)
        assert limiter.attempt().allowed is True

    def test_denial_reports_remaining_tokens(self, clock, store):
        limiter = make_limiter("QUERY", clock, store, {"max_requests": 2})
        limiter.attempt()
        limiter.attempt()

        denied = limiter.attempt()
        assert denied.tokens_remaining == 98


class TestTokenGate:
    """Tests for the token bucket gate."""

    @pytest.fixture
    def limiter(self, clock, store):
        return make_limiter(
            "QUERY", clock, store,
            {"max_tokens": 2, "refill_rate": 1, "max_requests": 10},
        )

    def test_denied_when_bucket_empty(self, limiter):
        assert limiter.attempt().allowed is True
        assert limiter.attempt().allowed is True

        denied = limiter.attempt()
        assert denied.allowed is False
        assert denied.reason == DenialReason.TOKENS
        assert denied.retry_after == 1000
        assert denied.tokens_remaining == 0

    def test_refill_recovers_after_one_token_interval(self, limiter, clock):
        limiter.attempt()
        limiter.attempt()
        assert limiter.attempt().allowed is False

        clock.advance(1000)  # 1 / refill_rate seconds
        assert limiter.attempt().allowed is True

    def test_partial_refill_shortens_retry_after(self, limiter, clock):
        limiter.attempt()
        limiter.attempt()
        clock.advance(400)

        denied = limiter.attempt()
        assert denied.reason == DenialReason.TOKENS
        assert denied.retry_after == 600
        assert denied.reset_at == clock.now + 600

    def test_refill_never_exceeds_capacity(self, limiter, clock):
        limiter.attempt()
        clock.advance(3_600_000)
        assert limiter.get_status().tokens_remaining == 2


class TestSpacingGate:
    """Tests for the minimum spacing gate."""

    def test_requests_too_close_are_denied(self, clock, store):
        limiter = make_limiter("AUTH_LOGIN", clock, store)
        assert limiter.attempt().allowed is True

        clock.advance(500)
        denied = limiter.attempt()

        assert denied.allowed is False
        assert denied.reason == DenialReason.SPACING
        assert denied.retry_after == 1500
        assert denied.reset_at == clock.now + 1500

    def test_spacing_satisfied_after_min_delay(self, clock, store):
        limiter = make_limiter("AUTH_LOGIN", clock, store)
        limiter.attempt()
        clock.advance(2000)
        assert limiter.attempt().allowed is True

    def test_spacing_outlives_window_pruning(self, clock, store):
        limiter = make_limiter(
            "QUERY", clock, store, {"window_ms": 1000, "min_delay_ms": 5000}
        )
        limiter.attempt()
        clock.advance(2000)

        denied = limiter.attempt()
        assert limiter.snapshot().requests == []
        assert denied.reason == DenialReason.SPACING
        assert denied.retry_after == 3000

    def test_zero_min_delay_disables_gate(self, clock, store):
        limiter = make_limiter("QUERY", clock, store)
        assert all(limiter.attempt().allowed for _ in range(5))


class TestGateOrder:
    """Window beats tokens beats spacing."""

    def test_window_reported_before_tokens_and_spacing(self, clock, store):
        limiter = make_limiter(
            "QUERY", clock, store,
            {"max_requests": 1, "max_tokens": 1, "refill_rate": 0.001, "min_delay_ms": 10_000},
        )
        limiter.attempt()
        assert limiter.attempt().reason == DenialReason.WINDOW

    def test_tokens_reported_before_spacing(self, clock, store):
        limiter = make_limiter(
            "QUERY", clock, store,
            {"max_tokens": 1, "refill_rate": 0.001, "min_delay_ms": 10_000},
        )
        limiter.attempt()
        assert limiter.attempt().reason == DenialReason.TOKENS


class TestDenialHasNoSideEffects:
    """Only accepted requests mutate or persist the bucket."""

    def test_denial_does_not_change_state(self, clock, store):
        limiter = make_limiter("QUERY", clock, store, {"max_requests": 1})
        limiter.attempt()
        before = limiter.snapshot()

        for _ in range(5):
            assert limiter.attempt().allowed is False

        assert limiter.snapshot() == before

    def test_denial_is_not_persisted(self, clock, storage, store):
        limiter = make_limiter("AUTH_LOGIN", clock, store)
        limiter.attempt()
        persisted = storage.get(limiter.storage_key)

        clock.advance(100)
        assert limiter.attempt().allowed is False
        assert storage.get(limiter.storage_key) == persisted

    def test_acceptance_is_persisted(self, clock, storage, store):
        limiter = make_limiter("QUERY", clock, store)
        limiter.attempt()

        record = json.loads(storage.get("rate_limit_QUERY"))
        assert record["tokens"] == 99
        assert record["lastRefill"] == clock.now
        assert record["requests"] == [clock.now]


class TestStatusAndReset:
    """Tests for get_status() and reset()."""

    def test_get_status_is_idempotent(self, clock, store):
        limiter = make_limiter("AUTH_LOGIN", clock, store)
        limiter.attempt()
        clock.advance(700)
        before = limiter.snapshot()

        results = [limiter.get_status() for _ in range(5)]

        assert all(r == results[0] for r in results)
        after = limiter.snapshot()
        assert after.tokens == pytest.approx(before.tokens + 0.07)
        assert after.requests == before.requests

    def test_get_status_does_not_consume(self, clock, store):
        limiter = make_limiter("MFA_VERIFY", clock, store)
        for _ in range(10):
            status = limiter.get_status()
        assert status.allowed is True
        assert status.tokens_remaining == 3
        assert limiter.snapshot().requests == []

    def test_get_status_reports_denial(self, clock, store):
        limiter = make_limiter("AUTH_LOGIN", clock, store)
        limiter.attempt()
        clock.advance(500)

        status = limiter.get_status()
        assert status.allowed is False
        assert status.retry_after == 1500

    def test_allowed_result_has_no_retry_after(self, clock, store):
        limiter = make_limiter("QUERY", clock, store)
        result = limiter.attempt()
        assert result.retry_after is None
        assert result.reason is None

    def test_allowed_reset_at_is_time_to_full_bucket(self, clock, store):
        limiter = make_limiter("QUERY", clock, store)
        result = limiter.attempt()
        # one missing token at 5 tokens per second
        assert result.reset_at == clock.now + 200

    def test_reset_restores_initial_state(self, clock, storage, store):
        limiter = make_limiter("AUTH_LOGIN", clock, store)
        for _ in range(5):
            limiter.attempt()
            clock.advance(2100)
        limiter.attempt()

        limiter.reset()
        status = limiter.get_status()

        assert status.allowed is True
        assert status.tokens_remaining == 5
        assert json.loads(storage.get(limiter.storage_key))["requests"] == []

    def test_attempt_or_raise(self, clock, store):
        limiter = make_limiter("AUTH_LOGIN", clock, store)
        limiter.attempt_or_raise()

        with pytest.raises(RateLimitError) as exc_info:
            limiter.attempt_or_raise()
        assert exc_info.value.retry_after == 2000
        assert exc_info.value.endpoint_key == "AUTH_LOGIN"
        assert exc_info.value.reason == "spacing"


class TestPersistence:
    """Tests for loading and saving through the bucket store."""

    def test_state_survives_new_instance(self, clock, store):
        first = make_limiter("QUERY", clock, store)
        first.attempt()
        first.attempt()

        second = make_limiter("QUERY", clock, store)
        state = second.snapshot()
        assert state.tokens == 98
        assert len(state.requests) == 2

    def test_corrupt_record_yields_fresh_bucket(self, clock, storage, store):
        storage.set("rate_limit_AUTH_LOGIN", "{not json")

        limiter = make_limiter("AUTH_LOGIN", clock, store)

        assert limiter.snapshot().tokens == 5
        assert limiter.attempt().allowed is True

    def test_save_failure_does_not_block_request(self, clock):
        store = BucketStore(FailingStorage(), Environment.PRODUCTION)
        limiter = RateLimiter("QUERY", store=store, clock=clock)

        assert limiter.attempt().allowed is True

    def test_redis_timeout_does_not_block_request(self, clock):
        client = MagicMock()
        client.get.side_effect = redis.TimeoutError("Timeout reading from socket")
        client.set.side_effect = redis.TimeoutError("Timeout writing to socket")
        store = BucketStore(RedisStorage(client=client), Environment.PRODUCTION)
        limiter = RateLimiter("AUTH_LOGIN", store=store, clock=clock)

        result = limiter.attempt()

        assert result.allowed is True
        assert result.tokens_remaining == 4
        client.set.assert_called_once()

    def test_requests_stamped_ahead_of_clock_do_not_block(self, clock, storage, store):
        record = {"tokens": 5, "lastRefill": clock.now, "requests": [clock.now + 3_600_000]}
        storage.set("rate_limit_AUTH_LOGIN", json.dumps(record))

        result = make_limiter("AUTH_LOGIN", clock, store).attempt()

        assert result.allowed is True
        assert result.tokens_remaining == 4

    def test_save_failure_logged_only_in_development(self, clock, caplog):
        dev = BucketStore(FailingStorage(), Environment.DEVELOPMENT)
        prod = BucketStore(FailingStorage(), Environment.PRODUCTION)

        with caplog.at_level(logging.DEBUG, logger="governor"):
            RateLimiter("QUERY", store=prod, clock=clock).attempt()
            assert not [r for r in caplog.records if "Failed to save" in r.getMessage()]

            make_limiter("QUERY", clock, dev).attempt()
            assert [r for r in caplog.records if "Failed to save" in r.getMessage()]

    def test_two_tabs_sharing_storage_can_both_admit(self, clock, store):
        """Buckets are advisory: no cross-instance locking on shared storage."""
        tab_a = make_limiter("QUERY", clock, store, {"max_requests": 1})
        tab_b = make_limiter("QUERY", clock, store, {"max_requests": 1})

        assert tab_a.attempt().allowed is True
        assert tab_b.attempt().allowed is True


class TestProperties:
    """Invariants and end-to-end scenarios."""

    def test_tokens_stay_within_bounds(self, clock, store):
        rng = random.Random(1234)
        limiter = make_limiter("MUTATION", clock, store)

        for _ in range(2000):
            clock.advance(rng.choice([0, 0, 10, 100, 1000, 5000]))
            if rng.random() < 0.1:
                limiter.get_status()
            else:
                limiter.attempt()
            tokens = limiter.snapshot().tokens
            assert 0 <= tokens <= limiter.config.max_tokens

    def test_burst_of_n_plus_one(self, clock, store):
        limiter = make_limiter("MUTATION", clock, store, {"min_delay_ms": 0})
        results = [limiter.attempt() for _ in range(31)]

        assert all(r.allowed for r in results[:30])
        assert results[30].allowed is False
        assert results[30].retry_after > 0

    def test_login_brute_force(self, clock, store):
        limiter = make_limiter("AUTH_LOGIN", clock, store)
        first = clock.now

        for i in range(5):
            if i:
                clock.advance(2100)
            assert limiter.attempt().allowed is True

        denied = limiter.attempt()
        assert denied.allowed is False
        assert denied.reason == DenialReason.WINDOW
        assert denied.retry_after == first + 60_000 - clock.now
        assert denied.retry_after == 51_600

    def test_query_burst_hits_window_gate(self, clock, store):
        limiter = make_limiter("QUERY", clock, store)

        assert all(limiter.attempt().allowed for _ in range(100))

        denied = limiter.attempt()
        assert denied.reason == DenialReason.WINDOW
        assert denied.retry_after == 60_000

    def test_query_burst_with_wider_window_hits_token_gate(self, clock, store):
        limiter = make_limiter("QUERY", clock, store, {"max_requests": 200})

        assert all(limiter.attempt().allowed for _ in range(100))

        denied = limiter.attempt()
        assert denied.reason == DenialReason.TOKENS
        assert denied.retry_after == 200

        clock.advance(200)
        assert limiter.attempt().allowed is True

    def test_concurrent_attempts_are_serialized(self, clock, store):
        limiter = make_limiter("QUERY", clock, store, {"max_requests": 50})
        allowed = []
        barrier = threading.Barrier(20)

        def worker():
            barrier.wait()
            for _ in range(10):
                allowed.append(limiter.attempt().allowed)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert allowed.count(True) == 50
        assert len(limiter.snapshot().requests) == 50

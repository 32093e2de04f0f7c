"""
Unit tests for the fixed-window rate limiter.

Tests cover:
- Exactly N calls allowed per key per window, N+1 rejected
- Window rollover resets the counter
- DynamoDB counter store (atomic ADD, TTL attribute)
- Fail-closed behavior on store errors
"""

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest

from maintenance.credentials.rate_limiter import (
    DynamoCounterStore,
    InMemoryCounterStore,
    RateLimiter,
)
from maintenance.shared.exceptions import PersistenceError

WINDOW = 300


class TestRateLimiterInMemory:
    """Limiter semantics against the in-memory store."""

    def test_exactly_n_allowed(self, frozen_time):
        limiter = RateLimiter(InMemoryCounterStore())

        decisions = [limiter.allow("ip:10.0.0.1", 5, WINDOW, now=frozen_time) for _ in range(6)]

        assert [d.allowed for d in decisions] == [True] * 5 + [False]
        assert decisions[4].count == 5
        assert decisions[5].count == 6

    def test_retry_after_is_rest_of_window(self, frozen_time):
        limiter = RateLimiter(InMemoryCounterStore())
        now = frozen_time + 120  # frozen_time is window aligned

        limiter.allow("ip:10.0.0.1", 1, WINDOW, now=now)
        decision = limiter.allow("ip:10.0.0.1", 1, WINDOW, now=now)

        assert decision.allowed is False
        assert decision.retry_after == WINDOW - 120

    def test_window_rollover_resets(self, frozen_time):
        limiter = RateLimiter(InMemoryCounterStore())
        for _ in range(3):
            limiter.allow("ip:10.0.0.1", 2, WINDOW, now=frozen_time)

        decision = limiter.allow("ip:10.0.0.1", 2, WINDOW, now=frozen_time + WINDOW)

        assert decision.allowed is True
        assert decision.count == 1

    def test_keys_are_independent(self, frozen_time):
        limiter = RateLimiter(InMemoryCounterStore())
        limiter.allow("ip:10.0.0.1", 1, WINDOW, now=frozen_time)

        assert limiter.allow("ip:10.0.0.2", 1, WINDOW, now=frozen_time).allowed is True
        assert limiter.allow("ip:10.0.0.1", 1, WINDOW, now=frozen_time).allowed is False

    def test_concurrent_increments_are_not_lost(self, frozen_time):
        limiter = RateLimiter(InMemoryCounterStore())

        with ThreadPoolExecutor(max_workers=8) as pool:
            decisions = list(
                pool.map(lambda _: limiter.allow("ip:burst", 10, WINDOW, now=frozen_time), range(50))
            )

        assert sum(d.allowed for d in decisions) == 10
        assert max(d.count for d in decisions) == 50

    def test_store_failure_rejects(self, frozen_time):
        store = MagicMock()
        store.increment.side_effect = PersistenceError("update", "TestMaintenancePortal", "throttled")
        limiter = RateLimiter(store)

        decision = limiter.allow("ip:10.0.0.1", 5, WINDOW, now=frozen_time)

        assert decision.allowed is False
        assert decision.retry_after == WINDOW


class TestDynamoCounterStore:
    """Counter store backed by the mocked table."""

    def test_increments_atomically_per_window(self, mock_dynamodb, frozen_time):
        store = DynamoCounterStore()

        counts = [store.increment("ip:10.0.0.1", frozen_time, frozen_time + 600) for _ in range(3)]

        assert counts == [1, 2, 3]
        item = mock_dynamodb.get_item(
            Key={"PK": "RATELIMIT#ip:10.0.0.1", "SK": f"WINDOW#{frozen_time}"}
        )["Item"]
        assert item["count"] == 3
        assert item["expires_at"] == frozen_time + 600
        assert item["window_start"] == frozen_time

    def test_limiter_over_dynamodb(self, mock_dynamodb, frozen_time):
        limiter = RateLimiter(DynamoCounterStore())

        allowed = [limiter.allow("code:10.0.0.1:ABC", 5, WINDOW, now=frozen_time).allowed for _ in range(6)]
        assert allowed == [True] * 5 + [False]

        assert limiter.allow("code:10.0.0.1:ABC", 5, WINDOW, now=frozen_time + WINDOW).allowed is True

    def test_counter_expires_after_window(self, mock_dynamodb, frozen_time):
        limiter = RateLimiter(DynamoCounterStore())
        limiter.allow("ip:10.0.0.1", 5, WINDOW, now=frozen_time + 10)

        item = mock_dynamodb.get_item(
            Key={"PK": "RATELIMIT#ip:10.0.0.1", "SK": f"WINDOW#{frozen_time}"}
        )["Item"]
        assert item["expires_at"] > frozen_time + WINDOW

    def test_client_error_becomes_persistence_error(self, frozen_time):
        from botocore.exceptions import ClientError

        table = MagicMock()
        table.update_item.side_effect = ClientError(
            {"Error": {"Code": "ProvisionedThroughputExceededException", "Message": "slow down"}},
            "UpdateItem",
        )
        store = DynamoCounterStore(table=table)

        with pytest.raises(PersistenceError) as exc_info:
            store.increment("ip:10.0.0.1", frozen_time, frozen_time + 600)

        assert exc_info.value.operation == "update"

"""
Rate Limiter

Fixed-window throttle on session validation attempts. Counting is
delegated to a CounterStore so deployed handlers share one authoritative
DynamoDB counter while tests run against memory.
"""

import threading
import time
from dataclasses import dataclass
from typing import Protocol

from botocore.exceptions import BotoCoreError, ClientError
import structlog

from maintenance.shared.config import get_settings
from maintenance.shared.exceptions import PersistenceError
from maintenance.shared.tools.dynamodb import get_table

log = structlog.get_logger()


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of a single rate-limit check."""

    allowed: bool
    count: int
    retry_after: int | None = None


class CounterStore(Protocol):
    def increment(self, key: str, window_start: int, expires_at: int) -> int:
        """Atomically add one to the window counter and return the new count."""
        ...


class DynamoCounterStore:
    """
    Authoritative counter store backed by atomic ADD updates.

    PK: RATELIMIT#<key>
    SK: WINDOW#<window_start>

    Windows are reaped by DynamoDB TTL on expires_at.
    """

    def __init__(self, table=None) -> None:
        self._table = table

    @property
    def table(self):
        if self._table is None:
            self._table = get_table()
        return self._table

    def increment(self, key: str, window_start: int, expires_at: int) -> int:
        try:
            response = self.table.update_item(
                Key={"PK": f"RATELIMIT#{key}", "SK": f"WINDOW#{window_start}"},
                UpdateExpression="ADD #count :one SET #window_start = :window_start, #ttl = :ttl",
                ExpressionAttributeNames={
                    "#count": "count",
                    "#window_start": "window_start",
                    "#ttl": "expires_at",
                },
                ExpressionAttributeValues={
                    ":one": 1,
                    ":window_start": window_start,
                    ":ttl": expires_at,
                },
                ReturnValues="UPDATED_NEW",
            )
        except (ClientError, BotoCoreError) as e:
            raise PersistenceError(
                operation="update",
                table_name=get_settings().dynamodb_table_name,
                error_message=str(e),
            ) from e
        return int(response["Attributes"]["count"])


class InMemoryCounterStore:
    """Process-local counter store. Advisory only; used by tests and local runs."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: dict[tuple[str, int], tuple[int, int]] = {}

    def increment(self, key: str, window_start: int, expires_at: int) -> int:
        with self._lock:
            self._evict(window_start)
            count, _ = self._counts.get((key, window_start), (0, expires_at))
            count += 1
            self._counts[(key, window_start)] = (count, expires_at)
            return count

    def _evict(self, now: int) -> None:
        expired = [k for k, (_, expires_at) in self._counts.items() if expires_at <= now]
        for k in expired:
            del self._counts[k]


class RateLimiter:
    """
    Fixed-window limiter.

    Exactly max_per_window calls are allowed in a window; later calls are
    rejected with retry_after set to the seconds left in the window.
    Counter-store failures reject the call.
    """

    def __init__(self, store: CounterStore) -> None:
        self.store = store

    def allow(
        self,
        key: str,
        max_per_window: int,
        window_seconds: int,
        now: int | None = None,
    ) -> RateLimitDecision:
        if now is None:
            now = int(time.time())
        window_start = now - now % window_seconds
        window_end = window_start + window_seconds

        try:
            count = self.store.increment(key, window_start, window_end + window_seconds)
        except PersistenceError as e:
            log.error("rate_limit_store_failed", scope=key.split(":", 1)[0], error=str(e))
            return RateLimitDecision(allowed=False, count=0, retry_after=window_end - now)

        if count > max_per_window:
            log.info("rate_limit_exceeded", scope=key.split(":", 1)[0], count=count, limit=max_per_window)
            return RateLimitDecision(allowed=False, count=count, retry_after=window_end - now)
        return RateLimitDecision(allowed=True, count=count)

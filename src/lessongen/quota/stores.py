"""
Counter stores backing the quota ledger.

Each store exposes a compare-and-swap increment
(``atomic_increment_if_below``) so concurrent callers can never jointly
exceed a limit:
- InMemory: asyncio lock around a dict, for tests and single-process use
- SQL: lazily created row plus one conditional UPDATE
- Redis: a Lua script evaluated atomically by the server
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from lessongen.db.base import utcnow
from lessongen.db.manager import DatabaseManager
from lessongen.db.models import QuotaCounter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CounterKey:
    """Address of one counter inside one window bucket."""

    scope: str
    """Counter family (e.g. 'rate:generate-custom-lesson', 'daily:custom-lessons')."""

    subject_key: str
    """Actor or resource the counter belongs to."""

    window_start: datetime
    """Start of the bucket (naive UTC)."""

    window_seconds: int
    """Bucket length in seconds."""

    @property
    def window_end(self) -> datetime:
        return self.window_start + timedelta(seconds=self.window_seconds)

    def as_string(self) -> str:
        return f"{self.scope}:{self.subject_key}:{int(self.window_start.timestamp())}"


@dataclass
class IncrementResult:
    """Outcome of a compare-and-swap increment."""

    applied: bool
    """True if the counter was below the limit and has been incremented."""

    count: int
    """Counter value after the operation."""

    limit: int


class CounterStore(ABC):
    """Abstract base class for counter stores."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Store backend name."""
        ...

    @abstractmethod
    async def atomic_increment_if_below(self, key: CounterKey, limit: int) -> IncrementResult:
        """
        Increment the counter only if its current value is below ``limit``.

        Must be a single atomic operation from the caller's point of view.

        Args:
            key: Counter address
            limit: Maximum value the counter may reach

        Returns:
            IncrementResult with the post-operation count
        """
        ...

    @abstractmethod
    async def get_count(self, key: CounterKey) -> int:
        """Current counter value (0 if the bucket was never touched)."""
        ...

    @abstractmethod
    async def set_count(self, key: CounterKey, count: int, limit: int) -> None:
        """Overwrite a counter. Administrative use only."""
        ...

    async def close(self) -> None:
        """Release backend resources."""
        return None


class InMemoryCounterStore(CounterStore):
    """
    Dictionary-backed store guarded by an asyncio lock.

    Satisfies the same compare-and-swap contract as the durable stores,
    but state is per-process and lost on restart.
    """

    def __init__(self) -> None:
        self._counts: dict[CounterKey, int] = {}
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return "memory"

    async def atomic_increment_if_below(self, key: CounterKey, limit: int) -> IncrementResult:
        async with self._lock:
            current = self._counts.get(key, 0)
            if current < limit:
                current += 1
                self._counts[key] = current
                return IncrementResult(applied=True, count=current, limit=limit)
            return IncrementResult(applied=False, count=current, limit=limit)

    async def get_count(self, key: CounterKey) -> int:
        async with self._lock:
            return self._counts.get(key, 0)

    async def set_count(self, key: CounterKey, count: int, limit: int) -> None:
        async with self._lock:
            self._counts[key] = count

    async def prune(self, before: datetime) -> int:
        """Drop buckets that ended before ``before``."""
        async with self._lock:
            expired = [k for k in self._counts if k.window_end <= before]
            for k in expired:
                del self._counts[k]
            return len(expired)


class SqlCounterStore(CounterStore):
    """
    Counter rows in the relational store.

    Rows are created lazily and the row-level uniqueness constraint on
    (scope, subject_key, window_start) resolves creation races. The
    increment itself is one conditional UPDATE (``count < limit``); the
    affected row count decides the outcome.
    """

    def __init__(self, db_manager: DatabaseManager) -> None:
        self._db = db_manager

    @property
    def name(self) -> str:
        return "sql"

    @staticmethod
    def _where(key: CounterKey) -> tuple[Any, ...]:
        return (
            QuotaCounter.scope == key.scope,
            QuotaCounter.subject_key == key.subject_key,
            QuotaCounter.window_start == key.window_start,
        )

    def _ensure_row(self, key: CounterKey, limit: int) -> None:
        try:
            with self._db.get_session() as session:
                existing = session.execute(select(QuotaCounter.id).where(*self._where(key))).first()
                if existing is None:
                    session.add(
                        QuotaCounter(
                            scope=key.scope,
                            subject_key=key.subject_key,
                            window_start=key.window_start,
                            window_seconds=key.window_seconds,
                            count=0,
                            count_limit=limit,
                            expires_at=key.window_end,
                        )
                    )
        except IntegrityError:
            # Another caller created the bucket first
            logger.debug(f"Counter row already created for {key.as_string()}")

    def _increment_sync(self, key: CounterKey, limit: int) -> IncrementResult:
        self._ensure_row(key, limit)

        with self._db.get_session() as session:
            result = session.execute(
                update(QuotaCounter)
                .where(*self._where(key), QuotaCounter.count < limit)
                .values(count=QuotaCounter.count + 1, count_limit=limit, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            applied = result.rowcount == 1
            count = session.execute(select(QuotaCounter.count).where(*self._where(key))).scalar_one()

        return IncrementResult(applied=applied, count=count, limit=limit)

    def _get_count_sync(self, key: CounterKey) -> int:
        with self._db.get_session() as session:
            count = session.execute(select(QuotaCounter.count).where(*self._where(key))).scalar_one_or_none()
        return count or 0

    def _set_count_sync(self, key: CounterKey, count: int, limit: int) -> None:
        self._ensure_row(key, limit)
        with self._db.get_session() as session:
            session.execute(
                update(QuotaCounter)
                .where(*self._where(key))
                .values(count=count, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )

    async def atomic_increment_if_below(self, key: CounterKey, limit: int) -> IncrementResult:
        return await asyncio.to_thread(self._increment_sync, key, limit)

    async def get_count(self, key: CounterKey) -> int:
        return await asyncio.to_thread(self._get_count_sync, key)

    async def set_count(self, key: CounterKey, count: int, limit: int) -> None:
        await asyncio.to_thread(self._set_count_sync, key, count, limit)

    def prune(self, before: datetime) -> int:
        """Delete counter rows whose window ended before ``before``."""
        with self._db.get_session() as session:
            result = session.execute(
                delete(QuotaCounter)
                .where(QuotaCounter.expires_at < before)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0


# Increment only while below ARGV[1]; expire the bucket with the window
_INCREMENT_IF_BELOW = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
if current < tonumber(ARGV[1]) then
  current = redis.call('INCR', KEYS[1])
  redis.call('EXPIRE', KEYS[1], ARGV[2])
  return {1, current}
end
return {0, current}
"""


class RedisCounterStore(CounterStore):
    """
    Redis-backed store for multi-instance deployments.

    The compare-and-swap runs server-side as a Lua script, so it is atomic
    across every instance sharing the Redis database.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        prefix: str = "lessongen:",
        socket_timeout: float = 5.0,
        client: Any = None,
    ) -> None:
        self._url = url
        self._prefix = prefix
        self._socket_timeout = socket_timeout
        self._client = client

    @property
    def name(self) -> str:
        return "redis"

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = aioredis.from_url(
                self._url,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_timeout,
                decode_responses=True,
            )
        return self._client

    def _redis_key(self, key: CounterKey) -> str:
        return f"{self._prefix}quota:{key.as_string()}"

    @staticmethod
    def _ttl(key: CounterKey) -> int:
        # Keep the bucket a minute past its window for late readers
        return key.window_seconds + 60

    async def atomic_increment_if_below(self, key: CounterKey, limit: int) -> IncrementResult:
        client = self._get_client()
        applied, count = await client.eval(
            _INCREMENT_IF_BELOW, 1, self._redis_key(key), limit, self._ttl(key)
        )
        return IncrementResult(applied=bool(int(applied)), count=int(count), limit=limit)

    async def get_count(self, key: CounterKey) -> int:
        value = await self._get_client().get(self._redis_key(key))
        return int(value) if value is not None else 0

    async def set_count(self, key: CounterKey, count: int, limit: int) -> None:
        await self._get_client().set(self._redis_key(key), count, ex=self._ttl(key))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("Redis counter store closed")


def create_counter_store(
    backend: str,
    db_manager: DatabaseManager | None = None,
    redis_url: str | None = None,
    redis_prefix: str = "lessongen:",
) -> CounterStore:
    """
    Create a counter store for the configured backend.

    Args:
        backend: "sql", "memory" or "redis"
        db_manager: Required for the SQL backend
        redis_url: Required for the Redis backend

    Raises:
        ValueError: If backend type is unknown or missing its dependency
    """
    if backend == "memory":
        return InMemoryCounterStore()

    if backend == "sql":
        if db_manager is None:
            raise ValueError("SQL counter store requires a DatabaseManager")
        return SqlCounterStore(db_manager)

    if backend == "redis":
        if not redis_url:
            raise ValueError("Redis counter store requires REDIS_URL to be set")
        return RedisCounterStore(url=redis_url, prefix=redis_prefix)

    raise ValueError(f"Unknown counter backend: {backend}")

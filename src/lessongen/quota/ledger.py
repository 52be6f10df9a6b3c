"""
Quota ledger.

Tracks per-key counters inside fixed windows (rate limits) and calendar-day
buckets (daily quotas). Every check is a single compare-and-swap on the
counter store. When the store itself is unreachable the ledger fails open
and says so in the returned decision.
"""

from __future__ import annotations

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

from lessongen.db.base import utcnow
from lessongen.db.manager import DatabaseManager
from lessongen.db.models import RateLimitViolation
from lessongen.quota.stores import CounterKey, CounterStore

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1)


class LedgerOutcome(str, Enum):
    """Tagged result of a ledger check."""

    ALLOWED = "allowed"
    DENIED = "denied"
    DEPENDENCY_UNAVAILABLE = "dependency_unavailable"


@dataclass(frozen=True)
class Window:
    """A fixed-length window or a UTC calendar day."""

    seconds: int
    calendar_day: bool = False

    @classmethod
    def minutes(cls, minutes: int) -> Window:
        if minutes <= 0:
            raise ValueError("Window must be at least one minute")
        return cls(seconds=minutes * 60)

    @classmethod
    def daily(cls) -> Window:
        return cls(seconds=86400, calendar_day=True)

    @property
    def window_minutes(self) -> int:
        return self.seconds // 60

    def bucket_start(self, now: datetime) -> datetime:
        """Start of the bucket containing ``now``."""
        if self.calendar_day:
            return datetime(now.year, now.month, now.day)
        elapsed = int((now - _EPOCH).total_seconds())
        return _EPOCH + timedelta(seconds=elapsed - elapsed % self.seconds)

    def retry_after(self, now: datetime) -> int:
        """Whole seconds until the bucket rolls over, within (0, window]."""
        end = self.bucket_start(now) + timedelta(seconds=self.seconds)
        remaining = math.ceil((end - now).total_seconds())
        return max(1, min(self.seconds, remaining))


@dataclass
class LedgerDecision:
    """Result of a ledger check."""

    outcome: LedgerOutcome
    """Allowed, denied, or allowed because the store was unreachable."""

    remaining: int
    """Uses left in the current bucket after this check."""

    limit: int
    """Configured limit for the bucket."""

    reset_at: datetime
    """When the current bucket rolls over."""

    retry_after_seconds: int | None = None
    """Seconds to wait before retrying (if denied)."""

    fallback_action: str | None = None
    """Action taken when the store was unavailable."""

    @property
    def allowed(self) -> bool:
        return self.outcome != LedgerOutcome.DENIED

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "allowed": self.allowed,
            "remaining": self.remaining,
            "limit": self.limit,
            "reset_at": self.reset_at.isoformat(),
            "retry_after": self.retry_after_seconds,
            "fallback_action": self.fallback_action,
        }


class ViolationLog(ABC):
    """Audit trail for denied requests."""

    @abstractmethod
    async def record(self, actor_id: str, endpoint: str, configured_limit: int, window_minutes: int) -> None:
        ...


class SqlViolationLog(ViolationLog):
    """Writes violations to the rate_limit_violations table."""

    def __init__(self, db_manager: DatabaseManager) -> None:
        self._db = db_manager

    def _record_sync(self, actor_id: str, endpoint: str, configured_limit: int, window_minutes: int) -> None:
        with self._db.get_session() as session:
            session.add(
                RateLimitViolation(
                    actor_id=actor_id,
                    endpoint=endpoint,
                    configured_limit=configured_limit,
                    window_minutes=window_minutes,
                )
            )

    async def record(self, actor_id: str, endpoint: str, configured_limit: int, window_minutes: int) -> None:
        await asyncio.to_thread(self._record_sync, actor_id, endpoint, configured_limit, window_minutes)


class QuotaLedger:
    """
    Check-and-increment front end over a counter store.

    Two counter flavors share the same code path: sliding/fixed window rate
    limits (``Window.minutes``) and per-resource daily quotas
    (``Window.daily``).
    """

    FALLBACK_ACTION = "allow"

    def __init__(
        self,
        store: CounterStore,
        violation_log: ViolationLog | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._violation_log = violation_log
        self._clock = clock

    @property
    def store(self) -> CounterStore:
        return self._store

    def _key(self, scope: str, subject_key: str, window: Window, now: datetime) -> CounterKey:
        return CounterKey(
            scope=scope,
            subject_key=subject_key,
            window_start=window.bucket_start(now),
            window_seconds=window.seconds,
        )

    def _unavailable(self, limit: int, window: Window, now: datetime) -> LedgerDecision:
        return LedgerDecision(
            outcome=LedgerOutcome.DEPENDENCY_UNAVAILABLE,
            remaining=limit,
            limit=limit,
            reset_at=window.bucket_start(now) + timedelta(seconds=window.seconds),
            fallback_action=self.FALLBACK_ACTION,
        )

    async def check_and_increment(
        self,
        scope: str,
        subject_key: str,
        limit: int,
        window: Window,
        actor_id: str | None = None,
        endpoint: str | None = None,
    ) -> LedgerDecision:
        """
        Consume one use from the bucket if any remain.

        Args:
            scope: Counter family
            subject_key: Actor or resource identifier
            limit: Maximum uses per bucket
            window: Bucket definition
            actor_id: Actor to attribute a denial to in the audit trail
            endpoint: Endpoint name recorded with a denial

        Returns:
            LedgerDecision tagged allowed, denied or dependency_unavailable
        """
        now = self._clock()
        key = self._key(scope, subject_key, window, now)

        try:
            result = await self._store.atomic_increment_if_below(key, limit)
        except Exception as e:
            logger.warning(
                f"Counter store '{self._store.name}' unavailable for {scope}/{subject_key}; "
                f"failing open: {e}"
            )
            return self._unavailable(limit, window, now)

        if result.applied:
            return LedgerDecision(
                outcome=LedgerOutcome.ALLOWED,
                remaining=max(0, limit - result.count),
                limit=limit,
                reset_at=key.window_end,
            )

        decision = LedgerDecision(
            outcome=LedgerOutcome.DENIED,
            remaining=0,
            limit=limit,
            reset_at=key.window_end,
            retry_after_seconds=window.retry_after(now),
        )
        logger.info(f"Quota denied for {scope}/{subject_key}: {result.count}/{limit}")

        if self._violation_log is not None and actor_id is not None:
            try:
                await self._violation_log.record(
                    actor_id=actor_id,
                    endpoint=endpoint or scope,
                    configured_limit=limit,
                    window_minutes=window.window_minutes,
                )
            except Exception as e:
                logger.error(f"Failed to record quota violation for {actor_id}: {e}")

        return decision

    async def peek(self, scope: str, subject_key: str, limit: int, window: Window) -> LedgerDecision:
        """Report the bucket state without consuming a use."""
        now = self._clock()
        key = self._key(scope, subject_key, window, now)

        try:
            count = await self._store.get_count(key)
        except Exception as e:
            logger.warning(f"Counter store '{self._store.name}' unavailable for peek: {e}")
            return self._unavailable(limit, window, now)

        remaining = max(0, limit - count)
        if remaining > 0:
            return LedgerDecision(
                outcome=LedgerOutcome.ALLOWED,
                remaining=remaining,
                limit=limit,
                reset_at=key.window_end,
            )
        return LedgerDecision(
            outcome=LedgerOutcome.DENIED,
            remaining=0,
            limit=limit,
            reset_at=key.window_end,
            retry_after_seconds=window.retry_after(now),
        )

    async def override(
        self,
        scope: str,
        subject_key: str,
        window: Window,
        limit: int,
        count: int = 0,
    ) -> None:
        """
        Administrative override of the current bucket.

        The only path that may lower a counter.
        """
        now = self._clock()
        key = self._key(scope, subject_key, window, now)
        await self._store.set_count(key, max(0, count), limit)
        logger.info(f"Quota override for {scope}/{subject_key}: count set to {count}")

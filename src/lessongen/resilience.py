"""Resilience utilities: provider circuit breaker and data pruning."""

import logging
import time
from datetime import timedelta
from enum import Enum
from typing import Any, Callable

from lessongen.config import settings
from lessongen.db.base import utcnow
from lessongen.errors import CircuitOpenError

logger = logging.getLogger(__name__)


# --- Circuit Breaker ---


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Stops calling the provider after repeated consecutive failures.

    After ``failure_threshold`` failures in a row the circuit opens and
    every call fails fast with CircuitOpenError for ``reset_seconds``.
    The first call after that window is let through as a probe: success
    closes the circuit, failure opens it again. Other callers keep failing
    fast while the probe is in flight.
    """

    def __init__(
        self,
        failure_threshold: int = 10,
        reset_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Consecutive failures before opening
            reset_seconds: How long the circuit stays open
            clock: Monotonic time source
        """
        self._failure_threshold = failure_threshold
        self._reset_seconds = reset_seconds
        self._clock = clock
        self._failures = 0
        self._opened_at: float | None = None
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        if self._opened_at is None:
            return CircuitState.CLOSED
        if self._clock() - self._opened_at >= self._reset_seconds:
            return CircuitState.HALF_OPEN
        return CircuitState.OPEN

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def before_call(self) -> bool:
        """
        Raise if the circuit is open.

        Returns:
            True if this call is the half-open probe

        Raises:
            CircuitOpenError: While the open window has not elapsed, or
                while another caller's probe is in flight
        """
        state = self.state
        if state == CircuitState.OPEN:
            retry_in = self._reset_seconds - (self._clock() - self._opened_at)
            raise CircuitOpenError(retry_in=max(0.0, retry_in))
        if state == CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                raise CircuitOpenError(retry_in=0.0)
            self._probe_in_flight = True
            return True
        return False

    def release_probe(self) -> None:
        """End a probe whose outcome says nothing about provider health."""
        self._probe_in_flight = False

    def record_success(self) -> None:
        if self._opened_at is not None:
            logger.info("Circuit breaker closed after successful probe")
        self._failures = 0
        self._opened_at = None
        self._probe_in_flight = False

    def record_failure(self) -> None:
        self._failures += 1
        self._probe_in_flight = False
        if self.state == CircuitState.HALF_OPEN:
            self._opened_at = self._clock()
            logger.warning("Circuit breaker probe failed; reopening")
        elif self._opened_at is None and self._failures >= self._failure_threshold:
            self._opened_at = self._clock()
            logger.warning(
                f"Circuit breaker opened after {self._failures} consecutive failures "
                f"for {self._reset_seconds:.0f}s"
            )

    def reset(self) -> None:
        self._failures = 0
        self._opened_at = None
        self._probe_in_flight = False


# --- Data Pruning Job ---


class DataPruner:
    """
    Cleans expired governance rows from the database.

    Runs as a scheduled job to prevent unbounded growth of quota
    counters, idempotency records and stale job locks.
    """

    def __init__(
        self,
        retention_days: int = 7,
        db_manager: Any = None,
    ) -> None:
        """
        Initialize data pruner.

        Args:
            retention_days: Days to keep counter rows after their window ends
            db_manager: Database manager instance
        """
        self._retention_days = retention_days
        self._db_manager = db_manager

    def set_db_manager(self, db_manager: Any) -> None:
        """Set database manager (for deferred initialization)."""
        self._db_manager = db_manager

    def prune_counters(self) -> int:
        """
        Delete quota counters whose window ended before the retention cutoff.

        Returns:
            Number of deleted records
        """
        if self._db_manager is None:
            logger.error("DataPruner: No database manager configured")
            return 0

        from lessongen.quota.stores import SqlCounterStore

        cutoff = utcnow() - timedelta(days=self._retention_days)

        try:
            count = SqlCounterStore(self._db_manager).prune(cutoff)
            if count > 0:
                logger.info(f"Pruned {count} quota counters older than {self._retention_days} days")
            else:
                logger.debug("No quota counters to prune")
            return count

        except Exception as e:
            logger.error(f"Failed to prune quota counters: {e}")
            return 0

    def prune_idempotency_records(self) -> int:
        """
        Delete idempotency records past their expiry.

        Returns:
            Number of deleted records
        """
        if self._db_manager is None:
            logger.error("DataPruner: No database manager configured")
            return 0

        from lessongen.db.models import IdempotencyRecord

        try:
            with self._db_manager.get_session() as session:
                count = (
                    session.query(IdempotencyRecord)
                    .filter(IdempotencyRecord.expires_at < utcnow())
                    .delete(synchronize_session=False)
                )
            if count > 0:
                logger.info(f"Pruned {count} expired idempotency records")
            return count

        except Exception as e:
            logger.error(f"Failed to prune idempotency records: {e}")
            return 0

    def prune_expired_locks(self) -> int:
        """
        Delete job locks past their expiry (holder presumed dead).

        Returns:
            Number of deleted locks
        """
        if self._db_manager is None:
            logger.error("DataPruner: No database manager configured")
            return 0

        from lessongen.db.models import JobLock

        try:
            with self._db_manager.get_session() as session:
                count = (
                    session.query(JobLock)
                    .filter(JobLock.expires_at < utcnow())
                    .delete(synchronize_session=False)
                )
            if count > 0:
                logger.warning(f"Released {count} expired job locks")
            return count

        except Exception as e:
            logger.error(f"Failed to prune job locks: {e}")
            return 0

    def run_all(self) -> dict[str, int]:
        """
        Run all pruning tasks.

        Returns:
            Dict with counts for each pruning operation
        """
        return {
            "counters_pruned": self.prune_counters(),
            "idempotency_records_pruned": self.prune_idempotency_records(),
            "locks_released": self.prune_expired_locks(),
        }


# Default pruner instance
default_data_pruner = DataPruner(retention_days=settings.counter_retention_days)

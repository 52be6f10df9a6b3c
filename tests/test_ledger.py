"""Tests for the quota ledger and its counter stores."""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select

from lessongen.db.manager import DatabaseManager
from lessongen.db.models import QuotaCounter, RateLimitViolation
from lessongen.quota.ledger import LedgerOutcome, QuotaLedger, SqlViolationLog, Window
from lessongen.quota.stores import (
    CounterKey,
    InMemoryCounterStore,
    RedisCounterStore,
    SqlCounterStore,
    create_counter_store,
)


class MutableClock:
    """Settable time source."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class TestWindow:
    """Tests for Window bucket arithmetic."""

    def test_minutes_bucket_alignment(self) -> None:
        """Test fixed windows align on multiples of their length."""
        window = Window.minutes(15)
        start = window.bucket_start(datetime(2025, 3, 1, 10, 37, 12))

        assert start == datetime(2025, 3, 1, 10, 30, 0)

    def test_daily_bucket_is_calendar_day(self) -> None:
        """Test daily windows start at UTC midnight."""
        start = Window.daily().bucket_start(datetime(2025, 3, 1, 23, 59, 59))

        assert start == datetime(2025, 3, 1)

    def test_retry_after_within_window(self) -> None:
        """Test retry_after is always in (0, window]."""
        window = Window.minutes(15)
        base = datetime(2025, 3, 1, 10, 30, 0)
        for offset in (0, 1, 450, 899, 900 - 0.001):
            retry = window.retry_after(base + timedelta(seconds=offset))
            assert 0 < retry <= window.seconds

    def test_retry_after_at_bucket_start(self) -> None:
        """Test retry_after equals the window at the start of a bucket."""
        window = Window.minutes(1)

        assert window.retry_after(datetime(2025, 3, 1, 10, 30, 0)) == 60

    def test_daily_retry_after_until_midnight(self) -> None:
        """Test daily retry_after counts down to the next UTC day."""
        retry = Window.daily().retry_after(datetime(2025, 3, 1, 23, 0, 0))

        assert retry == 3600

    def test_invalid_minutes(self) -> None:
        """Test zero-length windows are rejected."""
        with pytest.raises(ValueError):
            Window.minutes(0)


class TestInMemoryCounterStore:
    """Tests for InMemoryCounterStore."""

    @pytest.fixture
    def key(self) -> CounterKey:
        return CounterKey("rate:test", "account:1", datetime(2025, 1, 1), 60)

    @pytest.mark.asyncio
    async def test_increment_until_limit(self, key: CounterKey) -> None:
        """Test increments stop at the limit."""
        store = InMemoryCounterStore()

        results = [await store.atomic_increment_if_below(key, 2) for _ in range(3)]

        assert [r.applied for r in results] == [True, True, False]
        assert results[-1].count == 2
        assert await store.get_count(key) == 2

    @pytest.mark.asyncio
    async def test_prune_expired_buckets(self, key: CounterKey) -> None:
        """Test prune drops buckets whose window has ended."""
        store = InMemoryCounterStore()
        await store.atomic_increment_if_below(key, 5)

        assert await store.prune(key.window_start) == 0
        assert await store.prune(key.window_end) == 1
        assert await store.get_count(key) == 0


class TestSqlCounterStore:
    """Tests for SqlCounterStore."""

    @pytest.mark.asyncio
    async def test_row_created_lazily(self, db_manager: DatabaseManager) -> None:
        """Test the first increment creates the counter row."""
        store = SqlCounterStore(db_manager)
        key = CounterKey("daily:custom-lessons", "child:1", datetime(2025, 1, 1), 86400)

        result = await store.atomic_increment_if_below(key, 3)

        assert result.applied is True
        assert result.count == 1
        with db_manager.get_session() as session:
            row = session.execute(select(QuotaCounter)).scalar_one()
            assert row.count == 1
            assert row.count_limit == 3
            assert row.expires_at == datetime(2025, 1, 2)

    @pytest.mark.asyncio
    async def test_set_count_overrides(self, db_manager: DatabaseManager) -> None:
        """Test set_count writes the given value."""
        store = SqlCounterStore(db_manager)
        key = CounterKey("rate:test", "account:1", datetime(2025, 1, 1), 60)
        await store.atomic_increment_if_below(key, 5)

        await store.set_count(key, 0, 5)

        assert await store.get_count(key) == 0

    def test_prune(self, db_manager: DatabaseManager) -> None:
        """Test prune deletes counters that expired before the cutoff."""
        store = SqlCounterStore(db_manager)
        old = CounterKey("rate:test", "account:1", datetime(2025, 1, 1), 60)
        new = CounterKey("rate:test", "account:1", datetime(2025, 2, 1), 60)
        asyncio.run(store.atomic_increment_if_below(old, 5))
        asyncio.run(store.atomic_increment_if_below(new, 5))

        assert store.prune(datetime(2025, 1, 15)) == 1
        assert asyncio.run(store.get_count(new)) == 1


class TestConcurrentApprovals:
    """N concurrent checks against limit L approve exactly L."""

    async def _race(self, ledger: QuotaLedger, attempts: int, limit: int) -> list:
        window = Window.minutes(60)
        return await asyncio.gather(
            *[ledger.check_and_increment("rate:race", "account:1", limit, window) for _ in range(attempts)]
        )

    @pytest.mark.asyncio
    async def test_in_memory_store(self) -> None:
        """Test exactly L approvals with the in-memory store."""
        ledger = QuotaLedger(InMemoryCounterStore())

        decisions = await self._race(ledger, attempts=25, limit=7)

        assert sum(d.outcome == LedgerOutcome.ALLOWED for d in decisions) == 7
        assert sum(d.outcome == LedgerOutcome.DENIED for d in decisions) == 18

    @pytest.mark.asyncio
    async def test_sql_store(self, db_manager: DatabaseManager) -> None:
        """Test exactly L approvals with the SQL store."""
        ledger = QuotaLedger(SqlCounterStore(db_manager))

        decisions = await self._race(ledger, attempts=12, limit=5)

        assert sum(d.outcome == LedgerOutcome.ALLOWED for d in decisions) == 5
        assert sum(d.outcome == LedgerOutcome.DENIED for d in decisions) == 7
        with db_manager.get_session() as session:
            assert session.execute(select(func.count(QuotaCounter.id))).scalar() == 1
            assert session.execute(select(QuotaCounter.count)).scalar() == 5


class TestQuotaLedger:
    """Tests for QuotaLedger decisions."""

    @pytest.fixture
    def clock(self) -> MutableClock:
        return MutableClock(datetime(2025, 3, 1, 9, 0, 0))

    @pytest.fixture
    def ledger(self, clock: MutableClock) -> QuotaLedger:
        return QuotaLedger(InMemoryCounterStore(), clock=clock)

    @pytest.mark.asyncio
    async def test_remaining_counts_down(self, ledger: QuotaLedger) -> None:
        """Test remaining decreases with each approval."""
        window = Window.daily()

        remaining = [
            (await ledger.check_and_increment("daily:x", "child:1", 3, window)).remaining for _ in range(3)
        ]

        assert remaining == [2, 1, 0]

    @pytest.mark.asyncio
    async def test_denial_has_retry_after(self, ledger: QuotaLedger) -> None:
        """Test a denial carries retry_after within the window."""
        window = Window.minutes(15)
        await ledger.check_and_increment("rate:x", "account:1", 1, window)

        decision = await ledger.check_and_increment("rate:x", "account:1", 1, window)

        assert decision.allowed is False
        assert decision.outcome == LedgerOutcome.DENIED
        assert decision.remaining == 0
        assert 0 < decision.retry_after_seconds <= 900

    @pytest.mark.asyncio
    async def test_new_day_resets(self, ledger: QuotaLedger, clock: MutableClock) -> None:
        """Test a daily quota is available again after UTC midnight."""
        window = Window.daily()
        for _ in range(3):
            await ledger.check_and_increment("daily:x", "child:1", 3, window)
        assert not (await ledger.check_and_increment("daily:x", "child:1", 3, window)).allowed

        clock.now = datetime(2025, 3, 2, 0, 0, 1)

        decision = await ledger.check_and_increment("daily:x", "child:1", 3, window)
        assert decision.allowed is True
        assert decision.remaining == 2

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, ledger: QuotaLedger) -> None:
        """Test counters do not leak across subjects."""
        window = Window.daily()
        await ledger.check_and_increment("daily:x", "child:1", 1, window)

        decision = await ledger.check_and_increment("daily:x", "child:2", 1, window)

        assert decision.allowed is True

    @pytest.mark.asyncio
    async def test_fails_open_when_store_unavailable(self) -> None:
        """Test an unreachable store yields an allowed, tagged decision."""
        store = MagicMock()
        store.name = "broken"
        store.atomic_increment_if_below = AsyncMock(side_effect=ConnectionError("down"))
        ledger = QuotaLedger(store)

        decision = await ledger.check_and_increment("rate:x", "account:1", 5, Window.minutes(1))

        assert decision.allowed is True
        assert decision.outcome == LedgerOutcome.DEPENDENCY_UNAVAILABLE
        assert decision.fallback_action == "allow"

    @pytest.mark.asyncio
    async def test_peek_does_not_consume(self, ledger: QuotaLedger) -> None:
        """Test peek reports without incrementing."""
        window = Window.daily()
        await ledger.check_and_increment("daily:x", "child:1", 3, window)

        first = await ledger.peek("daily:x", "child:1", 3, window)
        second = await ledger.peek("daily:x", "child:1", 3, window)

        assert first.remaining == second.remaining == 2

    @pytest.mark.asyncio
    async def test_override_resets_counter(self, ledger: QuotaLedger) -> None:
        """Test an administrative override lowers the counter."""
        window = Window.daily()
        for _ in range(3):
            await ledger.check_and_increment("daily:x", "child:1", 3, window)

        await ledger.override("daily:x", "child:1", window, limit=3, count=0)

        assert (await ledger.check_and_increment("daily:x", "child:1", 3, window)).allowed


class TestViolationLog:
    """Tests for the denial audit trail."""

    @pytest.mark.asyncio
    async def test_denial_recorded(self, db_manager: DatabaseManager) -> None:
        """Test a denial with an actor writes one violation row."""
        ledger = QuotaLedger(InMemoryCounterStore(), violation_log=SqlViolationLog(db_manager))
        window = Window.minutes(15)

        await ledger.check_and_increment("rate:x", "account:1", 1, window, actor_id="account:1", endpoint="x")
        await ledger.check_and_increment("rate:x", "account:1", 1, window, actor_id="account:1", endpoint="x")

        with db_manager.get_session() as session:
            rows = session.execute(select(RateLimitViolation)).scalars().all()
            assert len(rows) == 1
            assert rows[0].actor_id == "account:1"
            assert rows[0].endpoint == "x"
            assert rows[0].configured_limit == 1
            assert rows[0].window_minutes == 15

    @pytest.mark.asyncio
    async def test_recording_failure_keeps_denial(self) -> None:
        """Test the decision survives a failing audit write."""
        log = MagicMock()
        log.record = AsyncMock(side_effect=RuntimeError("db down"))
        ledger = QuotaLedger(InMemoryCounterStore(), violation_log=log)
        window = Window.minutes(1)
        await ledger.check_and_increment("rate:x", "a", 1, window, actor_id="a")

        decision = await ledger.check_and_increment("rate:x", "a", 1, window, actor_id="a")

        assert decision.outcome == LedgerOutcome.DENIED
        log.record.assert_awaited_once()


class TestRedisCounterStore:
    """Tests for RedisCounterStore with a mocked client."""

    @pytest.mark.asyncio
    async def test_increment_uses_script(self) -> None:
        """Test the compare-and-swap runs as one script call."""
        client = MagicMock()
        client.eval = AsyncMock(return_value=[1, 3])
        store = RedisCounterStore(prefix="t:", client=client)
        key = CounterKey("rate:x", "account:1", datetime(2025, 1, 1), 60)

        result = await store.atomic_increment_if_below(key, 5)

        assert result.applied is True
        assert result.count == 3
        args = client.eval.await_args.args
        assert args[1] == 1
        assert args[2].startswith("t:quota:rate:x:account:1:")
        assert args[3] == 5

    @pytest.mark.asyncio
    async def test_denied_when_script_refuses(self) -> None:
        """Test a refused script call maps to not applied."""
        client = MagicMock()
        client.eval = AsyncMock(return_value=[0, 5])
        store = RedisCounterStore(client=client)
        key = CounterKey("rate:x", "account:1", datetime(2025, 1, 1), 60)

        result = await store.atomic_increment_if_below(key, 5)

        assert result.applied is False
        assert result.count == 5


class TestCreateCounterStore:
    """Tests for the store factory."""

    def test_memory(self) -> None:
        assert create_counter_store("memory").name == "memory"

    def test_sql_requires_db(self) -> None:
        with pytest.raises(ValueError):
            create_counter_store("sql")

    def test_redis_requires_url(self) -> None:
        with pytest.raises(ValueError):
            create_counter_store("redis")

    def test_unknown_backend(self) -> None:
        with pytest.raises(ValueError, match="Unknown counter backend"):
            create_counter_store("etcd")

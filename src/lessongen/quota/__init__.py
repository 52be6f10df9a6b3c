"""
Quota management for generation requests.

Provides the quota ledger (windowed counters and daily quotas over a
compare-and-swap counter store) and the per-endpoint rate limiter.
"""

from lessongen.quota.ledger import (
    LedgerDecision,
    LedgerOutcome,
    QuotaLedger,
    SqlViolationLog,
    ViolationLog,
    Window,
)
from lessongen.quota.limiter import RateLimiter, RateLimitResult, RateLimitRule, default_rules
from lessongen.quota.stores import (
    CounterKey,
    CounterStore,
    InMemoryCounterStore,
    RedisCounterStore,
    SqlCounterStore,
    create_counter_store,
)

__all__ = [
    "CounterKey",
    "CounterStore",
    "InMemoryCounterStore",
    "LedgerDecision",
    "LedgerOutcome",
    "QuotaLedger",
    "RateLimitResult",
    "RateLimitRule",
    "RateLimiter",
    "RedisCounterStore",
    "SqlCounterStore",
    "SqlViolationLog",
    "ViolationLog",
    "Window",
    "create_counter_store",
    "default_rules",
]

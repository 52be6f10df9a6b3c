"""
Per-actor, per-endpoint rate limiting.

A thin policy layer over the quota ledger: each rule names an endpoint,
a request budget and a window. Denials carry a human-readable wait time
and are written to the violation audit trail by the ledger.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from lessongen.config import Settings, get_settings
from lessongen.errors import UnauthenticatedError
from lessongen.quota.ledger import LedgerOutcome, QuotaLedger, Window
from lessongen.security import Actor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    """Request budget for one endpoint."""

    endpoint: str
    max_requests: int
    window_minutes: int

    @property
    def scope(self) -> str:
        return f"rate:{self.endpoint}"

    @property
    def window(self) -> Window:
        return Window.minutes(self.window_minutes)


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""

    allowed: bool
    """Whether the request is allowed."""

    remaining: int
    """Remaining requests in the current window."""

    limit: int
    """Maximum requests allowed in the window."""

    reset_at: datetime
    """When the rate limit window resets."""

    retry_after_seconds: int | None = None
    """Seconds to wait before retrying (if not allowed)."""

    outcome: LedgerOutcome = LedgerOutcome.ALLOWED

    @property
    def message(self) -> str | None:
        if self.allowed or self.retry_after_seconds is None:
            return None
        minutes = max(1, math.ceil(self.retry_after_seconds / 60))
        unit = "minute" if minutes == 1 else "minutes"
        return f"Rate limit exceeded. Try again in {minutes} {unit}."

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "limit": self.limit,
            "reset_at": self.reset_at.isoformat(),
            "retry_after": self.retry_after_seconds,
            "outcome": self.outcome.value,
            "message": self.message,
        }


class RateLimiter:
    """
    Enforces rate limit rules per actor.

    Usage:
        limiter = RateLimiter(ledger)
        result = await limiter.check(actor, limiter.rules["generate-custom-lesson"])
        if not result.allowed:
            ...
    """

    def __init__(self, ledger: QuotaLedger, rules: dict[str, RateLimitRule] | None = None) -> None:
        self._ledger = ledger
        self.rules = rules if rules is not None else default_rules()

    def rule(self, endpoint: str) -> RateLimitRule:
        """Look up a configured rule by endpoint name."""
        try:
            return self.rules[endpoint]
        except KeyError:
            raise ValueError(f"No rate limit rule for endpoint: {endpoint}") from None

    async def check(self, actor: Actor | None, rule: RateLimitRule) -> RateLimitResult:
        """
        Count one request against the rule for this actor.

        Args:
            actor: Resolved caller
            rule: Rule to enforce

        Returns:
            RateLimitResult (allowed requests pass through unchanged)

        Raises:
            UnauthenticatedError: If no actor was resolved
        """
        if actor is None:
            raise UnauthenticatedError(f"Authentication required for {rule.endpoint}")

        decision = await self._ledger.check_and_increment(
            scope=rule.scope,
            subject_key=actor.key,
            limit=rule.max_requests,
            window=rule.window,
            actor_id=actor.key,
            endpoint=rule.endpoint,
        )

        result = RateLimitResult(
            allowed=decision.allowed,
            remaining=decision.remaining,
            limit=rule.max_requests,
            reset_at=decision.reset_at,
            retry_after_seconds=decision.retry_after_seconds,
            outcome=decision.outcome,
        )
        if not result.allowed:
            logger.info(f"Rate limit hit: {actor.key} on {rule.endpoint}")
        return result


def default_rules(settings: Settings | None = None) -> dict[str, RateLimitRule]:
    """Built-in rules, sized from settings."""
    s = settings or get_settings()
    rules = [
        RateLimitRule("signup", s.signup_rate_limit, s.signup_rate_window_minutes),
        RateLimitRule("submit-feedback", s.feedback_rate_limit, s.feedback_rate_window_minutes),
        RateLimitRule("password-reset", s.password_reset_rate_limit, s.password_reset_rate_window_minutes),
        RateLimitRule(
            "generate-custom-lesson", s.custom_lesson_rate_limit, s.custom_lesson_rate_window_minutes
        ),
        RateLimitRule("request-lesson-share", s.share_request_rate_limit, s.share_request_rate_window_minutes),
        RateLimitRule(
            "request-collaboration", s.collaboration_rate_limit, s.collaboration_rate_window_minutes
        ),
    ]
    return {rule.endpoint: rule for rule in rules}

"""
Idempotency keys for side-effecting requests.

A key is claimed by inserting a row; the unique constraint on
(scope, owner, key) is the only arbiter of "already processed". The stored
result of a completed claim is replayed to the same owner only.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError

from lessongen.db.base import utcnow
from lessongen.db.manager import DatabaseManager
from lessongen.db.models import IdempotencyRecord

logger = logging.getLogger(__name__)

PENDING = "pending"
COMPLETED = "completed"


@dataclass
class ClaimResult:
    """Outcome of claiming an idempotency key."""

    claimed: bool
    """True if this caller owns the key and should perform the operation."""

    status: str | None = None
    """Status of the existing claim when not claimed."""

    result: dict[str, Any] | None = None
    """Stored result of a completed claim."""


class IdempotencyStore:
    """Claims, completes and releases idempotency keys."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        ttl_hours: int = 24,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """
        Initialize the store.

        Args:
            db_manager: Database manager instance
            ttl_hours: How long a key is remembered
            clock: Time source (naive UTC)
        """
        self._db = db_manager
        self._ttl = timedelta(hours=ttl_hours)
        self._clock = clock

    def _claim_filter(self, key: str, scope: str, owner: str) -> tuple:
        return (
            IdempotencyRecord.key == key,
            IdempotencyRecord.scope == scope,
            IdempotencyRecord.owner == owner,
        )

    def _claim_sync(self, key: str, scope: str, owner: str) -> ClaimResult:
        now = self._clock()
        match = self._claim_filter(key, scope, owner)

        # An expired key may be reused
        with self._db.get_session() as session:
            session.query(IdempotencyRecord).filter(
                *match, IdempotencyRecord.expires_at < now
            ).delete(synchronize_session=False)

        try:
            with self._db.get_session() as session:
                session.add(
                    IdempotencyRecord(
                        key=key,
                        scope=scope,
                        owner=owner,
                        status=PENDING,
                        expires_at=now + self._ttl,
                    )
                )
            return ClaimResult(claimed=True)
        except IntegrityError:
            pass

        with self._db.get_session() as session:
            record = session.query(IdempotencyRecord).filter(*match).first()
            if record is None:
                # Released between our insert and this read
                return ClaimResult(claimed=False, status=PENDING)
            result = json.loads(record.result_json) if record.result_json else None
            return ClaimResult(claimed=False, status=record.status, result=result)

    def _complete_sync(self, key: str, scope: str, owner: str, result: dict[str, Any]) -> None:
        with self._db.get_session() as session:
            session.query(IdempotencyRecord).filter(*self._claim_filter(key, scope, owner)).update(
                {
                    IdempotencyRecord.status: COMPLETED,
                    IdempotencyRecord.result_json: json.dumps(result, default=str),
                },
                synchronize_session=False,
            )

    def _release_sync(self, key: str, scope: str, owner: str) -> None:
        with self._db.get_session() as session:
            session.query(IdempotencyRecord).filter(
                *self._claim_filter(key, scope, owner),
                IdempotencyRecord.status == PENDING,
            ).delete(synchronize_session=False)

    async def claim(self, key: str, scope: str, owner: str) -> ClaimResult:
        """
        Claim a key on behalf of an owner.

        The same key sent by a different owner is an unrelated claim, so a
        stored result is only ever replayed to the owner that produced it.

        Args:
            key: Caller-supplied idempotency key
            scope: Operation family (e.g. 'generate-custom-lesson')
            owner: Actor key of the caller

        Returns:
            ClaimResult; claimed=False means a duplicate submission
        """
        result = await asyncio.to_thread(self._claim_sync, key, scope, owner)
        if not result.claimed:
            logger.info(f"Duplicate submission for idempotency key {key} from {owner} ({result.status})")
        return result

    async def complete(self, key: str, scope: str, owner: str, result: dict[str, Any]) -> None:
        """Store the result of a claimed operation."""
        await asyncio.to_thread(self._complete_sync, key, scope, owner, result)

    async def release(self, key: str, scope: str, owner: str) -> None:
        """Drop a pending claim so the operation can be retried."""
        await asyncio.to_thread(self._release_sync, key, scope, owner)

"""
Collaboration and lesson share requests.

Collaboration requests are idempotency-keyed per requesting child: the
unique constraint on (requester_child_id, key) is the only duplicate
detector. Share requests move a private child lesson to pending_approval,
behind a per-actor rate limit.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import IntegrityError

from lessongen.db.base import utcnow
from lessongen.db.manager import DatabaseManager
from lessongen.db.models import CollaborationRequest
from lessongen.errors import DenialReason, RequestDeniedError
from lessongen.generation.repository import LessonRepository
from lessongen.quota.limiter import RateLimiter
from lessongen.security import Actor

logger = logging.getLogger(__name__)

COLLABORATION_ENDPOINT = "request-collaboration"
SHARE_ENDPOINT = "request-lesson-share"

SHARE_PRIVATE = "private"
SHARE_PENDING = "pending_approval"


def collaboration_key(requester_child_id: int, recipient_child_id: int, lesson_id: int | None) -> str:
    """Default key for clients that do not send one."""
    timestamp = int(utcnow().timestamp() * 1000)
    return f"collab-{requester_child_id}-{recipient_child_id}-{lesson_id}-{timestamp}"


@dataclass
class CollaborationResult:
    """Outcome of a collaboration request."""

    request_id: int | None
    idempotency_key: str
    duplicate: bool = False
    status: str = "pending"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": not self.duplicate,
            "request_id": self.request_id,
            "idempotency_key": self.idempotency_key,
            "duplicate": self.duplicate,
            "status": self.status,
        }
        if self.duplicate:
            data["error"] = DenialReason.DUPLICATE_REQUEST.value
        return data


class CollaborationService:
    """Creates collaboration requests and lesson share requests."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        repository: LessonRepository,
        limiter: RateLimiter,
    ) -> None:
        self._db = db_manager
        self._repository = repository
        self._limiter = limiter

    def _find_request(self, requester_child_id: int, key: str) -> CollaborationRequest | None:
        with self._db.get_session() as session:
            return (
                session.query(CollaborationRequest)
                .filter(
                    CollaborationRequest.requester_child_id == requester_child_id,
                    CollaborationRequest.idempotency_key == key,
                )
                .first()
            )

    def _insert_request(
        self,
        requester_child_id: int,
        recipient_child_id: int,
        lesson_id: int | None,
        key: str,
    ) -> int | None:
        """Insert a request. Returns its id, or None if the key was taken."""
        try:
            with self._db.get_session() as session:
                request = CollaborationRequest(
                    requester_child_id=requester_child_id,
                    recipient_child_id=recipient_child_id,
                    lesson_id=lesson_id,
                    idempotency_key=key,
                )
                session.add(request)
                session.flush()
                return request.id
        except IntegrityError:
            return None

    async def _require_owned_child(self, actor: Actor | None, child_id: int) -> None:
        if actor is None:
            raise RequestDeniedError(DenialReason.UNAUTHORIZED, "Authentication required")
        child = await asyncio.to_thread(self._repository.get_child, child_id)
        if child is None:
            raise RequestDeniedError(DenialReason.INVALID_TARGET, "Child not found")
        if child.parent_id != actor.account_id:
            raise RequestDeniedError(DenialReason.UNAUTHORIZED, "Child not found or unauthorized")

    async def _check_rate(self, actor: Actor, endpoint: str) -> None:
        result = await self._limiter.check(actor, self._limiter.rule(endpoint))
        if not result.allowed:
            raise RequestDeniedError(
                DenialReason.RATE_LIMIT_EXCEEDED,
                result.message or "Rate limit exceeded",
                retry_after_seconds=result.retry_after_seconds,
            )

    async def request_collaboration(
        self,
        actor: Actor | None,
        requester_child_id: int,
        recipient_child_id: int,
        lesson_id: int | None = None,
        idempotency_key: str | None = None,
    ) -> CollaborationResult:
        """
        Ask another child to collaborate on a lesson.

        Args:
            actor: Resolved caller; must own the requesting child
            requester_child_id: Child sending the request
            recipient_child_id: Child receiving the request
            lesson_id: Optional lesson to collaborate on
            idempotency_key: Client key; repeats return a duplicate signal

        Returns:
            CollaborationResult (duplicate=True for a repeated key)

        Raises:
            RequestDeniedError: unauthorized, invalid_target or rate_limit_exceeded
        """
        await self._require_owned_child(actor, requester_child_id)

        if requester_child_id == recipient_child_id:
            raise RequestDeniedError(DenialReason.INVALID_TARGET, "A child cannot collaborate with themselves")

        recipient = await asyncio.to_thread(self._repository.get_child, recipient_child_id)
        if recipient is None:
            raise RequestDeniedError(DenialReason.INVALID_TARGET, "Collaborator not found")

        key = idempotency_key or collaboration_key(requester_child_id, recipient_child_id, lesson_id)

        # Fast path only; the insert below is what decides
        existing = await asyncio.to_thread(self._find_request, requester_child_id, key)
        if existing is not None:
            return CollaborationResult(
                request_id=existing.id, idempotency_key=key, duplicate=True, status=existing.status
            )

        await self._check_rate(actor, COLLABORATION_ENDPOINT)

        request_id = await asyncio.to_thread(
            self._insert_request, requester_child_id, recipient_child_id, lesson_id, key
        )
        if request_id is None:
            existing = await asyncio.to_thread(self._find_request, requester_child_id, key)
            logger.info(f"Duplicate collaboration request for key {key}")
            return CollaborationResult(
                request_id=existing.id if existing else None,
                idempotency_key=key,
                duplicate=True,
                status=existing.status if existing else "pending",
            )

        logger.info(f"Collaboration request {request_id}: child {requester_child_id} -> {recipient_child_id}")
        return CollaborationResult(request_id=request_id, idempotency_key=key)

    async def request_share(self, actor: Actor | None, child_id: int, lesson_id: int) -> dict[str, Any]:
        """
        Submit a child's private lesson for sharing approval.

        Returns:
            {success, lesson_id, share_status}

        Raises:
            RequestDeniedError: unauthorized, invalid_target or rate_limit_exceeded
        """
        await self._require_owned_child(actor, child_id)

        lesson = await asyncio.to_thread(self._repository.get_child_lesson, lesson_id)
        if lesson is None or lesson["creator_child_id"] != child_id:
            raise RequestDeniedError(DenialReason.INVALID_TARGET, "Lesson not found or not owned by this child")

        if lesson["share_status"] != SHARE_PRIVATE:
            # Already submitted; repeating is harmless
            return {"success": True, "lesson_id": lesson_id, "share_status": lesson["share_status"]}

        await self._check_rate(actor, SHARE_ENDPOINT)

        await asyncio.to_thread(self._repository.set_share_status, lesson_id, SHARE_PENDING)
        logger.info(f"Share requested for lesson {lesson_id} by child {child_id}")
        return {"success": True, "lesson_id": lesson_id, "share_status": SHARE_PENDING}

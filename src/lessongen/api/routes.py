"""API routes for lesson generation and governance."""

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from lessongen.api.dependencies import ServiceContainer, get_services, require_actor
from lessongen.errors import DenialReason, JobAlreadyRunningError, RequestDeniedError
from lessongen.generation.models import GRADES, MAX_GRADE, MIN_GRADE, Subject, WorkMatrix
from lessongen.generation.orchestrator import DAILY_CUSTOM_SCOPE
from lessongen.quota.ledger import Window
from lessongen.security import Actor

logger = logging.getLogger(__name__)
router = APIRouter()


# --- Request/Response Models ---


class SeedRequest(BaseModel):
    """Bulk seeding request."""

    grades: list[int] | None = Field(default=None, description="Grades to fill (default: all, 0 = Kindergarten)")
    subjects: list[Subject] | None = Field(default=None, description="Subjects to fill (default: all)")
    lessons_per_subject: int | None = Field(default=None, ge=1, le=50, description="Target lessons per cell")


class SeedResponse(BaseModel):
    """Bulk seeding summary."""

    success: bool
    created: int
    skipped: int
    errors: list[dict[str, Any]]
    total: int
    aborted: bool
    abort_reason: str | None = None
    cancelled: bool = False
    job_id: int | None = None


class CustomLessonRequest(BaseModel):
    """Single custom lesson request."""

    child_id: int
    topic: str = Field(..., min_length=1, max_length=200)
    subject: str = Field(..., min_length=1, max_length=50)
    grade_level: int = Field(..., ge=MIN_GRADE, le=MAX_GRADE)
    idempotency_key: str | None = Field(default=None, max_length=255)


class CollaborationRequestBody(BaseModel):
    """Collaboration request."""

    requester_child_id: int
    recipient_child_id: int
    lesson_id: int | None = None
    idempotency_key: str | None = Field(default=None, max_length=255)


class ShareRequestBody(BaseModel):
    """Share request for a child lesson."""

    child_id: int


# --- Admin ---


def _require_admin(actor: Actor) -> None:
    if not actor.is_admin:
        logger.warning(f"Non-admin {actor.key} attempted an admin operation")
        raise RequestDeniedError(DenialReason.UNAUTHORIZED, "Administrator access required")


@router.post("/admin/lessons/seed", response_model=SeedResponse)
async def seed_lessons(
    body: SeedRequest | None = None,
    actor: Actor = Depends(require_actor),
    services: ServiceContainer = Depends(get_services),
) -> SeedResponse:
    """Fill the lesson catalog. Blocks until the run finishes."""
    _require_admin(actor)
    body = body or SeedRequest()

    try:
        matrix = WorkMatrix(
            grades=tuple(body.grades) if body.grades is not None else GRADES,
            subjects=tuple(body.subjects) if body.subjects is not None else tuple(Subject),
            target_per_cell=body.lessons_per_subject or services.settings.batch_lessons_per_subject,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(f"Bulk seeding triggered by {actor.key}")
    try:
        summary = await services.orchestrator.run(matrix)
    except JobAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return SeedResponse(**summary.to_dict())


@router.get("/admin/jobs/{job_id}")
async def get_job(
    job_id: int,
    actor: Actor = Depends(require_actor),
    services: ServiceContainer = Depends(get_services),
) -> dict[str, Any]:
    """Status of a bulk run."""
    _require_admin(actor)
    run = await asyncio.to_thread(services.jobs.get_run, job_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return run


@router.post("/admin/jobs/{job_id}/cancel")
async def cancel_job(
    job_id: int,
    actor: Actor = Depends(require_actor),
    services: ServiceContainer = Depends(get_services),
) -> dict[str, Any]:
    """Ask a running bulk job to stop before its next work unit."""
    _require_admin(actor)
    accepted = await asyncio.to_thread(services.orchestrator.cancel, job_id)
    if not accepted:
        raise HTTPException(status_code=404, detail=f"No running job {job_id}")
    return {"success": True, "job_id": job_id, "cancel_requested": True}


# --- Per-user operations ---


@router.post("/lessons/custom")
async def generate_custom_lesson(
    body: CustomLessonRequest,
    actor: Actor = Depends(require_actor),
    services: ServiceContainer = Depends(get_services),
) -> dict[str, Any]:
    """Generate a private lesson for one child."""
    try:
        result = await services.orchestrator.generate_one(
            actor,
            child_id=body.child_id,
            topic=body.topic,
            subject=body.subject,
            grade_level=body.grade_level,
            idempotency_key=body.idempotency_key,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return result.to_dict()


@router.post("/collaborations")
async def request_collaboration(
    body: CollaborationRequestBody,
    actor: Actor = Depends(require_actor),
    services: ServiceContainer = Depends(get_services),
) -> dict[str, Any]:
    """Ask another child to collaborate."""
    result = await services.collaboration.request_collaboration(
        actor,
        requester_child_id=body.requester_child_id,
        recipient_child_id=body.recipient_child_id,
        lesson_id=body.lesson_id,
        idempotency_key=body.idempotency_key,
    )
    return result.to_dict()


@router.post("/lessons/{lesson_id}/share")
async def request_share(
    lesson_id: int,
    body: ShareRequestBody,
    actor: Actor = Depends(require_actor),
    services: ServiceContainer = Depends(get_services),
) -> dict[str, Any]:
    """Submit a child lesson for sharing approval."""
    return await services.collaboration.request_share(actor, child_id=body.child_id, lesson_id=lesson_id)


@router.get("/children/{child_id}/quota")
async def get_child_quota(
    child_id: int,
    actor: Actor = Depends(require_actor),
    services: ServiceContainer = Depends(get_services),
) -> dict[str, Any]:
    """Today's custom lesson quota for a child."""
    child = await asyncio.to_thread(services.repository.get_child, child_id)
    if child is None:
        raise RequestDeniedError(DenialReason.INVALID_TARGET, "Child not found")
    if child.parent_id != actor.account_id:
        raise RequestDeniedError(DenialReason.UNAUTHORIZED, "Child not found or unauthorized")

    limit = child.custom_generation_limit
    if limit is None:
        limit = services.settings.custom_lessons_per_child_per_day

    decision = await services.ledger.peek(DAILY_CUSTOM_SCOPE, f"child:{child_id}", limit, Window.daily())
    return {"child_id": child_id, **decision.to_dict()}

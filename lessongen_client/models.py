"""
Dataclasses for Lesson Generation API responses.
"""

from dataclasses import dataclass, field
from typing import Optional


class LessonGenAPIError(Exception):
    """The API answered with an error payload."""

    def __init__(
        self,
        status_code: int,
        error: str,
        message: str,
        retry_after: Optional[int] = None,
    ):
        self.status_code = status_code
        self.error = error
        self.message = message
        self.retry_after = retry_after
        super().__init__(f"{status_code} {error}: {message}")

    @classmethod
    def from_response(cls, status_code: int, data: dict, headers: Optional[dict] = None) -> "LessonGenAPIError":
        headers = headers or {}
        retry_after = data.get("retry_after") or headers.get("retry-after")
        return cls(
            status_code=status_code,
            error=data.get("error", "http_error"),
            # FastAPI's HTTPException bodies carry "detail" instead
            message=data.get("message") or str(data.get("detail", "")),
            retry_after=int(retry_after) if retry_after is not None else None,
        )


@dataclass
class SeedSummary:
    """Outcome of a bulk seeding run."""

    success: bool
    created: int
    skipped: int
    total: int
    aborted: bool
    errors: list[dict] = field(default_factory=list)
    abort_reason: Optional[str] = None
    cancelled: bool = False
    job_id: Optional[int] = None

    @classmethod
    def from_dict(cls, data: dict) -> "SeedSummary":
        return cls(
            success=data.get("success", False),
            created=data.get("created", 0),
            skipped=data.get("skipped", 0),
            total=data.get("total", 0),
            aborted=data.get("aborted", False),
            errors=data.get("errors", []),
            abort_reason=data.get("abort_reason"),
            cancelled=data.get("cancelled", False),
            job_id=data.get("job_id"),
        )


@dataclass
class JobRun:
    """Status row of a bulk run."""

    job_id: int
    job_name: str
    status: str
    total: int
    created: int
    skipped: int
    failed: int
    cancel_requested: bool
    errors: list[dict] = field(default_factory=list)
    abort_reason: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "JobRun":
        return cls(
            job_id=data.get("job_id", 0),
            job_name=data.get("job_name", ""),
            status=data.get("status", "unknown"),
            total=data.get("total", 0),
            created=data.get("created", 0),
            skipped=data.get("skipped", 0),
            failed=data.get("failed", 0),
            cancel_requested=data.get("cancel_requested", False),
            errors=data.get("errors", []),
            abort_reason=data.get("abort_reason"),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
        )


@dataclass
class CustomLesson:
    """A generated private lesson."""

    id: int
    child_id: int
    title: str
    subject: str
    grade_level: int
    content_markdown: str
    quiz_questions: list[dict]
    quota_remaining: Optional[int]
    share_status: str = "private"
    duplicate: bool = False
    used_fallback: bool = False
    notes: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "CustomLesson":
        item = data.get("item", {})
        return cls(
            id=item.get("id", 0),
            child_id=item.get("creator_child_id", 0),
            title=item.get("title", ""),
            subject=item.get("subject", ""),
            grade_level=item.get("grade_level", 0),
            content_markdown=item.get("content_markdown", ""),
            quiz_questions=item.get("quiz_questions", []),
            quota_remaining=data.get("quota_remaining"),
            share_status=item.get("share_status", "private"),
            duplicate=data.get("duplicate", False),
            used_fallback=data.get("used_fallback", False),
            notes=data.get("notes", []),
        )


@dataclass
class QuotaStatus:
    """Daily custom lesson quota for a child."""

    child_id: int
    remaining: int
    limit: int
    reset_at: Optional[str]
    outcome: str

    @classmethod
    def from_dict(cls, data: dict) -> "QuotaStatus":
        return cls(
            child_id=data.get("child_id", 0),
            remaining=data.get("remaining", 0),
            limit=data.get("limit", 0),
            reset_at=data.get("reset_at"),
            outcome=data.get("outcome", ""),
        )

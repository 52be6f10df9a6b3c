"""Database package for lesson generation."""

from lessongen.db.base import Base, utcnow
from lessongen.db.manager import DatabaseManager
from lessongen.db.models import (
    Account,
    Child,
    ChildLesson,
    CollaborationRequest,
    IdempotencyRecord,
    JobLock,
    JobRun,
    Lesson,
    QuotaCounter,
    RateLimitViolation,
)

__all__ = [
    "Base",
    "DatabaseManager",
    "utcnow",
    "Account",
    "Child",
    "ChildLesson",
    "CollaborationRequest",
    "IdempotencyRecord",
    "JobLock",
    "JobRun",
    "Lesson",
    "QuotaCounter",
    "RateLimitViolation",
]

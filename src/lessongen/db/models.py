"""SQLAlchemy models for the lesson generation database."""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from lessongen.db.base import Base


class Account(Base):
    """Parent or administrator account, resolved from a bearer token."""

    __tablename__ = "accounts"

    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    token_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    children: Mapped[list["Child"]] = relationship("Child", back_populates="parent", cascade="all, delete-orphan")


class Child(Base):
    """Child profile owned by a parent account."""

    __tablename__ = "children"

    parent_id: Mapped[int] = mapped_column(ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    grade_level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Per-child override of the daily custom generation cap
    custom_generation_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    parent: Mapped["Account"] = relationship("Account", back_populates="children")


class Lesson(Base):
    """Platform catalog lesson produced by the batch pipeline."""

    __tablename__ = "lessons"

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    subject: Mapped[str] = mapped_column(String(50), nullable=False)
    grade_level: Mapped[int] = mapped_column(Integer, nullable=False)
    slot_index: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    content_markdown: Mapped[str] = mapped_column(Text, nullable=False)
    quiz_questions_json: Mapped[str] = mapped_column(Text, nullable=False)
    estimated_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    points_value: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    used_fallback: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # One lesson per work unit
    __table_args__ = (
        Index("ix_lessons_unit", "grade_level", "subject", "slot_index", unique=True),
        Index("ix_lessons_grade_subject", "grade_level", "subject"),
    )


class ChildLesson(Base):
    """Private lesson generated on request for a single child."""

    __tablename__ = "child_generated_lessons"

    creator_child_id: Mapped[int] = mapped_column(
        ForeignKey("children.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    topic: Mapped[str] = mapped_column(String(255), nullable=False)
    subject: Mapped[str] = mapped_column(String(50), nullable=False)
    grade_level: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    content_markdown: Mapped[str] = mapped_column(Text, nullable=False)
    quiz_questions_json: Mapped[str] = mapped_column(Text, nullable=False)
    estimated_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    points_value: Mapped[int] = mapped_column(Integer, nullable=False)
    share_status: Mapped[str] = mapped_column(String(30), default="private", nullable=False)
    used_fallback: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class QuotaCounter(Base):
    """Counter for one key inside one window or day bucket."""

    __tablename__ = "quota_counters"

    scope: Mapped[str] = mapped_column(String(100), nullable=False)
    subject_key: Mapped[str] = mapped_column(String(255), nullable=False)
    window_start: Mapped[datetime] = mapped_column(nullable=False)
    window_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    count_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(nullable=False, index=True)

    __table_args__ = (
        Index("ix_quota_counters_bucket", "scope", "subject_key", "window_start", unique=True),
    )


class RateLimitViolation(Base):
    """Audit trail of denied requests."""

    __tablename__ = "rate_limit_violations"

    actor_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    endpoint: Mapped[str] = mapped_column(String(100), nullable=False)
    violation_type: Mapped[str] = mapped_column(String(50), default="api_rate_limit", nullable=False)
    configured_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    window_minutes: Mapped[int] = mapped_column(Integer, nullable=False)


class IdempotencyRecord(Base):
    """Claim on an idempotency key. Keys are unique per scope and owner."""

    __tablename__ = "idempotency_records"

    key: Mapped[str] = mapped_column(String(255), nullable=False)
    scope: Mapped[str] = mapped_column(String(100), nullable=False)
    owner: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    result_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(nullable=False, index=True)

    __table_args__ = (
        Index("ix_idempotency_records_claim", "scope", "owner", "key", unique=True),
    )


class CollaborationRequest(Base):
    """Request for two children to work through a lesson together."""

    __tablename__ = "collaboration_requests"

    requester_child_id: Mapped[int] = mapped_column(ForeignKey("children.id", ondelete="CASCADE"), nullable=False)
    recipient_child_id: Mapped[int] = mapped_column(ForeignKey("children.id", ondelete="CASCADE"), nullable=False)
    lesson_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(30), default="pending", nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)

    __table_args__ = (
        Index("ix_collaboration_requests_key", "requester_child_id", "idempotency_key", unique=True),
    )


class JobRun(Base):
    """Status record of one batch run, observable from other processes."""

    __tablename__ = "job_runs"

    job_name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    holder: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="running", nullable=False)
    created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    errors_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    abort_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)


class JobLock(Base):
    """Leader lock row; at most one per job name."""

    __tablename__ = "job_locks"

    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    holder: Mapped[str] = mapped_column(String(100), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)

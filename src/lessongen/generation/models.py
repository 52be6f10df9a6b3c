"""Domain models for lesson generation."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator


class Subject(str, Enum):
    """Catalog subjects."""

    READING = "Reading"
    MATH = "Math"
    SCIENCE = "Science"
    SOCIAL_STUDIES = "Social Studies"
    ART = "Art"
    LIFE_SKILLS = "Life Skills"


# Kindergarten is grade 0
GRADES: tuple[int, ...] = tuple(range(13))
MIN_GRADE = 0
MAX_GRADE = 12


@dataclass(frozen=True)
class WorkUnit:
    """One (grade, subject, slot) cell of the catalog."""

    grade_level: int
    subject: Subject
    slot_index: int

    def __post_init__(self) -> None:
        if not MIN_GRADE <= self.grade_level <= MAX_GRADE:
            raise ValueError(f"grade_level must be between {MIN_GRADE} and {MAX_GRADE}")
        if self.slot_index < 1:
            raise ValueError("slot_index must be >= 1")

    @property
    def label(self) -> str:
        return f"grade {self.grade_level} / {self.subject.value} / slot {self.slot_index}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "grade_level": self.grade_level,
            "subject": self.subject.value,
            "slot_index": self.slot_index,
        }


@dataclass(frozen=True)
class WorkMatrix:
    """Grades x subjects x target lessons per cell."""

    grades: tuple[int, ...] = GRADES
    subjects: tuple[Subject, ...] = tuple(Subject)
    target_per_cell: int = 1

    def __post_init__(self) -> None:
        if self.target_per_cell < 1:
            raise ValueError("target_per_cell must be >= 1")
        for grade in self.grades:
            if not MIN_GRADE <= grade <= MAX_GRADE:
                raise ValueError(f"Invalid grade in matrix: {grade}")

    @property
    def per_grade_target(self) -> int:
        return len(self.subjects) * self.target_per_cell

    @property
    def size(self) -> int:
        return len(self.grades) * self.per_grade_target


class QuizItem(BaseModel):
    """One assessment question."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)

    question_text: str = Field(
        min_length=1,
        validation_alias=AliasChoices("question_text", "question", "questionText"),
    )
    options: list[str] = Field(min_length=2)
    correct: int | str = Field(
        validation_alias=AliasChoices("correct", "correct_answer", "correctAnswer", "correct_option"),
    )
    explanation: str | None = None

    @model_validator(mode="after")
    def _check_correct(self) -> QuizItem:
        if isinstance(self.correct, int):
            if not 0 <= self.correct < len(self.options):
                raise ValueError("correct index out of range")
        elif self.correct not in self.options:
            raise ValueError("correct value is not one of the options")
        return self

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "question": self.question_text,
            "options": self.options,
            "correct_answer": self.correct,
        }
        if self.explanation:
            data["explanation"] = self.explanation
        return data


class GenerationResult(BaseModel):
    """Validated lesson content, ready to persist."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)

    title: str = Field(min_length=1, max_length=255)
    description: str = ""
    body_markdown: str = Field(
        min_length=1,
        validation_alias=AliasChoices("body_markdown", "content_markdown", "content"),
    )
    assessment_items: list[QuizItem] = Field(
        min_length=1,
        validation_alias=AliasChoices("assessment_items", "quiz_questions", "quiz"),
    )
    estimated_minutes: int | None = None
    point_value: int | None = None

    def quiz_json(self) -> str:
        return json.dumps([item.to_dict() for item in self.assessment_items])

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "body_markdown": self.body_markdown,
            "assessment_items": [item.to_dict() for item in self.assessment_items],
            "estimated_minutes": self.estimated_minutes,
            "point_value": self.point_value,
        }


@dataclass
class UnitError:
    """A work unit that failed after bounded retries."""

    unit: WorkUnit
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"unit": self.unit.to_dict(), "label": self.unit.label, "message": self.message}


@dataclass
class BatchSummary:
    """Aggregate outcome of a bulk run."""

    created: int = 0
    """Units generated and persisted in this run."""

    skipped: int = 0
    """Units already satisfied, or lost to a concurrent insert."""

    errors: list[UnitError] = field(default_factory=list)
    """Units that failed after bounded retries."""

    total: int = 0
    """Units in the matrix."""

    aborted: bool = False
    """Run stopped on a terminal provider failure."""

    abort_reason: str | None = None

    cancelled: bool = False
    """Run stopped by an operator between units."""

    job_id: int | None = None

    @property
    def failed(self) -> int:
        return len(self.errors)

    @property
    def success(self) -> bool:
        return not self.aborted and not self.cancelled

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "created": self.created,
            "skipped": self.skipped,
            "errors": [e.to_dict() for e in self.errors],
            "total": self.total,
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
            "cancelled": self.cancelled,
            "job_id": self.job_id,
        }

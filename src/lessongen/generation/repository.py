"""Repository for catalog lessons, child lessons and child ownership."""

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from lessongen.db.manager import DatabaseManager
from lessongen.db.models import Child, ChildLesson, Lesson
from lessongen.generation.models import GenerationResult, Subject, WorkUnit

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChildInfo:
    """Ownership and quota facts about a child profile."""

    id: int
    parent_id: int
    grade_level: int
    custom_generation_limit: int | None = None


def child_lesson_to_dict(lesson: ChildLesson) -> dict[str, Any]:
    return {
        "id": lesson.id,
        "creator_child_id": lesson.creator_child_id,
        "title": lesson.title,
        "topic": lesson.topic,
        "subject": lesson.subject,
        "grade_level": lesson.grade_level,
        "description": lesson.description,
        "content_markdown": lesson.content_markdown,
        "quiz_questions": json.loads(lesson.quiz_questions_json),
        "estimated_minutes": lesson.estimated_minutes,
        "points_value": lesson.points_value,
        "share_status": lesson.share_status,
        "used_fallback": lesson.used_fallback,
        "created_at": lesson.created_at.isoformat() if lesson.created_at else None,
    }


class LessonRepository:
    """
    Persistence for generated content.

    Every method opens and commits its own short session, so no
    transaction is ever held open across a provider call.
    """

    def __init__(self, db_manager: DatabaseManager) -> None:
        """
        Initialize the repository.

        Args:
            db_manager: Database manager instance
        """
        self._db = db_manager

    # --- Catalog lessons ---

    def count_for_grade(self, grade_level: int, subjects: Iterable[Subject]) -> int:
        """Count catalog lessons for a grade across the given subjects."""
        names = [s.value for s in subjects]
        with self._db.get_session() as session:
            return (
                session.query(func.count(Lesson.id))
                .filter(Lesson.grade_level == grade_level, Lesson.subject.in_(names))
                .scalar()
                or 0
            )

    def count_for_cell(self, grade_level: int, subject: Subject) -> int:
        """Count catalog lessons for one (grade, subject) pair."""
        with self._db.get_session() as session:
            return (
                session.query(func.count(Lesson.id))
                .filter(Lesson.grade_level == grade_level, Lesson.subject == subject.value)
                .scalar()
                or 0
            )

    def occupied_slots(self, grade_level: int, subject: Subject) -> set[int]:
        """Slot indices already filled for a (grade, subject) pair."""
        with self._db.get_session() as session:
            rows = (
                session.query(Lesson.slot_index)
                .filter(Lesson.grade_level == grade_level, Lesson.subject == subject.value)
                .all()
            )
        return {row[0] for row in rows}

    def exists(self, unit: WorkUnit) -> bool:
        """Check whether a work unit already has a lesson."""
        with self._db.get_session() as session:
            return (
                session.query(Lesson.id)
                .filter(
                    Lesson.grade_level == unit.grade_level,
                    Lesson.subject == unit.subject.value,
                    Lesson.slot_index == unit.slot_index,
                )
                .first()
                is not None
            )

    def insert_lesson(self, unit: WorkUnit, result: GenerationResult, used_fallback: bool = False) -> bool:
        """
        Persist a lesson for a work unit unless one already exists.

        The existence check narrows the race with a concurrent run; the
        unique index on (grade_level, subject, slot_index) closes it.

        Returns:
            True if inserted, False if the unit was already filled
        """
        if self.exists(unit):
            logger.info(f"Skipping {unit.label}: created by a concurrent run")
            return False

        try:
            with self._db.get_session() as session:
                session.add(
                    Lesson(
                        title=result.title,
                        subject=unit.subject.value,
                        grade_level=unit.grade_level,
                        slot_index=unit.slot_index,
                        description=result.description,
                        content_markdown=result.body_markdown,
                        quiz_questions_json=result.quiz_json(),
                        estimated_minutes=result.estimated_minutes or 0,
                        points_value=result.point_value or 0,
                        is_active=True,
                        used_fallback=used_fallback,
                    )
                )
        except IntegrityError:
            logger.info(f"Skipping {unit.label}: uniqueness conflict on insert")
            return False

        return True

    # --- Children and child lessons ---

    def get_child(self, child_id: int) -> ChildInfo | None:
        with self._db.get_session() as session:
            child = session.get(Child, child_id)
            if child is None:
                return None
            return ChildInfo(
                id=child.id,
                parent_id=child.parent_id,
                grade_level=child.grade_level,
                custom_generation_limit=child.custom_generation_limit,
            )

    def create_child(
        self,
        parent_id: int,
        display_name: str,
        grade_level: int = 0,
        custom_generation_limit: int | None = None,
    ) -> ChildInfo:
        with self._db.get_session() as session:
            child = Child(
                parent_id=parent_id,
                display_name=display_name,
                grade_level=grade_level,
                custom_generation_limit=custom_generation_limit,
            )
            session.add(child)
            session.flush()
            return ChildInfo(
                id=child.id,
                parent_id=child.parent_id,
                grade_level=child.grade_level,
                custom_generation_limit=child.custom_generation_limit,
            )

    def insert_child_lesson(
        self,
        child_id: int,
        topic: str,
        subject: str,
        grade_level: int,
        result: GenerationResult,
        used_fallback: bool = False,
    ) -> dict[str, Any]:
        """
        Persist a private lesson for a child.

        Returns:
            The stored lesson as a dict
        """
        with self._db.get_session() as session:
            lesson = ChildLesson(
                creator_child_id=child_id,
                title=result.title,
                topic=topic,
                subject=subject,
                grade_level=grade_level,
                description=result.description,
                content_markdown=result.body_markdown,
                quiz_questions_json=result.quiz_json(),
                estimated_minutes=result.estimated_minutes or 0,
                points_value=result.point_value or 0,
                share_status="private",
                used_fallback=used_fallback,
            )
            session.add(lesson)
            session.flush()
            return child_lesson_to_dict(lesson)

    def get_child_lesson(self, lesson_id: int) -> dict[str, Any] | None:
        with self._db.get_session() as session:
            lesson = session.get(ChildLesson, lesson_id)
            return child_lesson_to_dict(lesson) if lesson else None

    def set_share_status(self, lesson_id: int, status: str) -> bool:
        """
        Update a child lesson's share status.

        Returns:
            True if updated, False if the lesson does not exist
        """
        with self._db.get_session() as session:
            lesson = session.get(ChildLesson, lesson_id)
            if lesson is None:
                return False
            lesson.share_status = status
            return True

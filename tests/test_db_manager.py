"""Tests for the DatabaseManager."""

import pytest
from sqlalchemy.exc import IntegrityError

from lessongen.db.manager import DatabaseManager
from lessongen.db.models import Account, Lesson


def make_lesson(slot: int = 1) -> Lesson:
    return Lesson(
        title="Counting",
        subject="Math",
        grade_level=0,
        slot_index=slot,
        description="Count to ten",
        content_markdown="# Counting",
        quiz_questions_json="[]",
        estimated_minutes=15,
        points_value=60,
    )


class TestDatabaseManager:
    """Tests for DatabaseManager."""

    def test_init_db(self, temp_db_path: str) -> None:
        """Test database initialization."""
        manager = DatabaseManager(database_url=f"sqlite:///{temp_db_path}")
        manager.init_db()

        # Tables should exist
        assert manager.health_check()
        manager.close()

    def test_health_check(self, db_manager: DatabaseManager) -> None:
        """Test health check."""
        assert db_manager.health_check() is True

    def test_session_context_manager(self, db_manager: DatabaseManager) -> None:
        """Test session context manager."""
        with db_manager.get_session() as session:
            session.add(Account(email="a@example.com", token_hash="h" * 64))

        # Should be committed
        with db_manager.get_session() as session:
            result = session.query(Account).filter_by(email="a@example.com").first()
            assert result is not None
            assert result.is_admin is False

    def test_session_rollback_on_exception(self, db_manager: DatabaseManager) -> None:
        """Test that sessions rollback on exception."""
        try:
            with db_manager.get_session() as session:
                session.add(Account(email="b@example.com", token_hash="b" * 64))
                raise ValueError("Simulated error")
        except ValueError:
            pass

        # Should NOT be committed
        with db_manager.get_session() as session:
            result = session.query(Account).filter_by(email="b@example.com").first()
            assert result is None

    def test_one_lesson_per_unit(self, db_manager: DatabaseManager) -> None:
        """Test the unique index on (grade, subject, slot)."""
        with db_manager.get_session() as session:
            session.add(make_lesson())

        with pytest.raises(IntegrityError):
            with db_manager.get_session() as session:
                session.add(make_lesson())

        with db_manager.get_session() as session:
            session.add(make_lesson(slot=2))
            assert session.query(Lesson).count() == 2

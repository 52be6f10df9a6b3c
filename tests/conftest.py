"""Pytest configuration and fixtures."""

import json
import os
import tempfile
from collections.abc import Callable, Generator
from typing import Any

import pytest

from lessongen.api.dependencies import ServiceContainer, build_services
from lessongen.config import Settings
from lessongen.db.manager import DatabaseManager
from lessongen.generation.orchestrator import BatchPolicy
from lessongen.generation.prompts import MODERATION_SYSTEM_PROMPT


@pytest.fixture
def temp_db_path() -> Generator[str, None, None]:
    """Create a temporary database file."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    yield db_path
    # Cleanup
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(db_path + suffix)
        except OSError:
            pass


@pytest.fixture
def db_manager(temp_db_path: str) -> Generator[DatabaseManager, None, None]:
    """Create a DatabaseManager with a temporary database."""
    manager = DatabaseManager(database_url=f"sqlite:///{temp_db_path}")
    manager.init_db()
    yield manager
    manager.close()


def make_lesson_reply(title: str = "Counting Fun", questions: int = 2) -> str:
    """A provider reply carrying a valid lesson inside a json fence."""
    payload = {
        "title": title,
        "description": "Practice counting with everyday objects",
        "content_markdown": f"# {title}\n\nLet's count apples, birds and stars!",
        "quiz_questions": [
            {
                "question": f"Question {i + 1}: how many apples?",
                "options": ["One", "Two", "Three", "Four"],
                "correct_answer": 1,
                "explanation": "Count them one by one.",
            }
            for i in range(questions)
        ],
        "estimated_minutes": 99,
    }
    return "Here is your lesson:\n```json\n" + json.dumps(payload) + "\n```"


@pytest.fixture
def lesson_reply() -> Callable[..., str]:
    """Factory for valid lesson replies."""
    return make_lesson_reply


class FakeCompletionClient:
    """
    Scripted stand-in for CompletionClient.

    Lesson calls pop from ``replies`` (falling back to a valid lesson);
    moderation calls return ``moderation_reply``. Exceptions are raised.
    """

    def __init__(self, replies: list[Any] | None = None, moderation_reply: Any = '{"appropriate": true}'):
        self.replies = list(replies or [])
        self.moderation_reply = moderation_reply
        self.calls: list[str] = []
        self.moderation_calls: list[str] = []
        self.on_call: Callable[[int], None] | None = None

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.7,
        timeout: float | None = None,
        model: str | None = None,
    ) -> str:
        if system_prompt == MODERATION_SYSTEM_PROMPT:
            self.moderation_calls.append(user_prompt)
            reply = self.moderation_reply
        else:
            self.calls.append(user_prompt)
            if self.on_call is not None:
                self.on_call(len(self.calls))
            reply = self.replies.pop(0) if self.replies else make_lesson_reply()
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def close(self) -> None:
        return None


class RecordingSleep:
    """Async sleep that returns immediately and remembers the delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def fake_client() -> FakeCompletionClient:
    """Scripted completion client."""
    return FakeCompletionClient()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    """No-op sleep recorder."""
    return RecordingSleep()


@pytest.fixture
def test_settings(temp_db_path: str) -> Settings:
    """Settings pointing at the temporary database."""
    return Settings(
        database_url=f"sqlite:///{temp_db_path}",
        counter_backend="sql",
        generation_api_key="test-key",
    )


@pytest.fixture
def batch_policy() -> BatchPolicy:
    """Default production pacing; sleeps are recorded, not awaited."""
    return BatchPolicy(
        max_attempts=3,
        retry_backoff_seconds=2.0,
        rate_limit_backoff_seconds=20.0,
        max_rate_limit_waits=5,
        unit_delay_seconds=1.0,
        grade_delay_seconds=10.0,
    )


@pytest.fixture
def services(
    test_settings: Settings,
    db_manager: DatabaseManager,
    fake_client: FakeCompletionClient,
    batch_policy: BatchPolicy,
    recording_sleep: RecordingSleep,
) -> ServiceContainer:
    """Fully wired services over a temp database and a scripted provider."""
    return build_services(
        test_settings,
        db_manager=db_manager,
        client=fake_client,  # type: ignore[arg-type]
        policy=batch_policy,
        sleep=recording_sleep,
    )


@pytest.fixture
def parent(services: ServiceContainer) -> tuple[Any, str]:
    """A parent account and its bearer token."""
    return services.resolver.create_account("parent@example.com")


@pytest.fixture
def admin(services: ServiceContainer) -> tuple[Any, str]:
    """An administrator account and its bearer token."""
    return services.resolver.create_account("admin@example.com", is_admin=True)


@pytest.fixture
def child(services: ServiceContainer, parent: tuple[Any, str]) -> Any:
    """A child owned by ``parent``."""
    actor, _ = parent
    return services.repository.create_child(actor.account_id, "Ada", grade_level=3)

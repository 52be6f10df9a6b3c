"""Tests for collaboration and share requests."""

import asyncio

import pytest
from sqlalchemy import func, select

from lessongen.api.dependencies import ServiceContainer, build_services
from lessongen.collaboration import SHARE_PENDING
from lessongen.db.models import CollaborationRequest
from lessongen.errors import DenialReason, RequestDeniedError


@pytest.fixture
def friend(services: ServiceContainer):
    """A child in another family."""
    other, _ = services.resolver.create_account("other-parent@example.com")
    return services.repository.create_child(other.account_id, "Grace", grade_level=3)


def request_count(services: ServiceContainer) -> int:
    with services.db_manager.get_session() as session:
        return session.execute(select(func.count()).select_from(CollaborationRequest)).scalar_one()


class TestCollaborationRequests:
    """Tests for CollaborationService.request_collaboration."""

    @pytest.mark.asyncio
    async def test_creates_request(self, services: ServiceContainer, parent, child, friend) -> None:
        actor, _ = parent

        result = await services.collaboration.request_collaboration(actor, child.id, friend.id, idempotency_key="c-1")

        assert result.duplicate is False
        assert result.request_id is not None
        assert result.to_dict()["success"] is True
        assert request_count(services) == 1

    @pytest.mark.asyncio
    async def test_repeated_key_is_duplicate(self, services: ServiceContainer, parent, child, friend) -> None:
        """Test a resubmitted key yields one record and a duplicate signal."""
        actor, _ = parent

        first = await services.collaboration.request_collaboration(actor, child.id, friend.id, idempotency_key="c-2")
        second = await services.collaboration.request_collaboration(actor, child.id, friend.id, idempotency_key="c-2")

        assert second.duplicate is True
        assert second.request_id == first.request_id
        assert second.to_dict() == {
            "success": False,
            "request_id": first.request_id,
            "idempotency_key": "c-2",
            "duplicate": True,
            "status": "pending",
            "error": "duplicate_request",
        }
        assert request_count(services) == 1

    @pytest.mark.asyncio
    async def test_concurrent_submissions(self, services: ServiceContainer, parent, child, friend) -> None:
        """Test simultaneous submissions with one key create exactly one record."""
        actor, _ = parent

        results = await asyncio.gather(
            *[
                services.collaboration.request_collaboration(actor, child.id, friend.id, idempotency_key="c-3")
                for _ in range(5)
            ]
        )

        assert sum(1 for r in results if not r.duplicate) == 1
        assert request_count(services) == 1

    @pytest.mark.asyncio
    async def test_same_key_from_another_family(self, services: ServiceContainer, parent, child, friend) -> None:
        """Test another family's request with a colliding key is stored as its own."""
        actor, _ = parent
        other, _ = services.resolver.create_account("third-parent@example.com")
        other_child = services.repository.create_child(other.account_id, "Lin", grade_level=3)

        first = await services.collaboration.request_collaboration(actor, child.id, friend.id, idempotency_key="c-4")
        second = await services.collaboration.request_collaboration(
            other, other_child.id, friend.id, idempotency_key="c-4"
        )

        assert second.duplicate is False
        assert second.request_id != first.request_id
        assert request_count(services) == 2

    @pytest.mark.asyncio
    async def test_generated_key(self, services: ServiceContainer, parent, child, friend) -> None:
        actor, _ = parent

        result = await services.collaboration.request_collaboration(actor, child.id, friend.id)

        assert result.idempotency_key.startswith(f"collab-{child.id}-{friend.id}-None-")

    @pytest.mark.asyncio
    async def test_self_collaboration(self, services: ServiceContainer, parent, child) -> None:
        actor, _ = parent

        with pytest.raises(RequestDeniedError) as exc_info:
            await services.collaboration.request_collaboration(actor, child.id, child.id)

        assert exc_info.value.reason == DenialReason.INVALID_TARGET

    @pytest.mark.asyncio
    async def test_missing_recipient(self, services: ServiceContainer, parent, child) -> None:
        actor, _ = parent

        with pytest.raises(RequestDeniedError) as exc_info:
            await services.collaboration.request_collaboration(actor, child.id, 9999)

        assert exc_info.value.reason == DenialReason.INVALID_TARGET
        assert exc_info.value.message == "Collaborator not found"

    @pytest.mark.asyncio
    async def test_requester_not_owned(self, services: ServiceContainer, parent, child, friend) -> None:
        """Test a parent cannot send requests on behalf of another family's child."""
        actor, _ = parent

        with pytest.raises(RequestDeniedError) as exc_info:
            await services.collaboration.request_collaboration(actor, friend.id, child.id)

        assert exc_info.value.reason == DenialReason.UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_unauthenticated(self, services: ServiceContainer, child, friend) -> None:
        with pytest.raises(RequestDeniedError) as exc_info:
            await services.collaboration.request_collaboration(None, child.id, friend.id)

        assert exc_info.value.reason == DenialReason.UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_rate_limited(
        self, test_settings, db_manager, fake_client, batch_policy, recording_sleep, parent, child, friend
    ) -> None:
        """Test new requests past the budget are refused; duplicates are not counted."""
        limited = build_services(
            test_settings.model_copy(update={"collaboration_rate_limit": 2}),
            db_manager=db_manager,
            client=fake_client,
            policy=batch_policy,
            sleep=recording_sleep,
        )
        actor, _ = parent

        await limited.collaboration.request_collaboration(actor, child.id, friend.id, idempotency_key="r-1")
        await limited.collaboration.request_collaboration(actor, child.id, friend.id, idempotency_key="r-1")
        await limited.collaboration.request_collaboration(actor, child.id, friend.id, idempotency_key="r-2")

        with pytest.raises(RequestDeniedError) as exc_info:
            await limited.collaboration.request_collaboration(actor, child.id, friend.id, idempotency_key="r-3")

        assert exc_info.value.reason == DenialReason.RATE_LIMIT_EXCEEDED
        assert exc_info.value.retry_after_seconds is not None


class TestShareRequests:
    """Tests for CollaborationService.request_share."""

    @pytest.mark.asyncio
    async def test_private_to_pending(self, services: ServiceContainer, parent, child) -> None:
        actor, _ = parent
        created = await services.orchestrator.generate_one(actor, child.id, "Bees", "Science", 3)
        lesson_id = created.item["id"]

        result = await services.collaboration.request_share(actor, child.id, lesson_id)

        assert result == {"success": True, "lesson_id": lesson_id, "share_status": SHARE_PENDING}
        assert services.repository.get_child_lesson(lesson_id)["share_status"] == SHARE_PENDING

    @pytest.mark.asyncio
    async def test_repeat_is_harmless(self, services: ServiceContainer, parent, child) -> None:
        """Test a second share request reports the current status."""
        actor, _ = parent
        created = await services.orchestrator.generate_one(actor, child.id, "Bees", "Science", 3)
        lesson_id = created.item["id"]

        await services.collaboration.request_share(actor, child.id, lesson_id)
        again = await services.collaboration.request_share(actor, child.id, lesson_id)

        assert again["share_status"] == SHARE_PENDING

    @pytest.mark.asyncio
    async def test_lesson_of_another_child(self, services: ServiceContainer, parent, child) -> None:
        actor, _ = parent
        sibling = services.repository.create_child(actor.account_id, "Linus", grade_level=5)
        created = await services.orchestrator.generate_one(actor, sibling.id, "Bees", "Science", 5)

        with pytest.raises(RequestDeniedError) as exc_info:
            await services.collaboration.request_share(actor, child.id, created.item["id"])

        assert exc_info.value.reason == DenialReason.INVALID_TARGET

    @pytest.mark.asyncio
    async def test_missing_lesson(self, services: ServiceContainer, parent, child) -> None:
        actor, _ = parent

        with pytest.raises(RequestDeniedError) as exc_info:
            await services.collaboration.request_share(actor, child.id, 9999)

        assert exc_info.value.reason == DenialReason.INVALID_TARGET

"""Tests for API endpoints."""

import time
from typing import Any, Generator

import pytest
from fastapi.testclient import TestClient

from lessongen.api.app import create_app
from lessongen.api.dependencies import ServiceContainer, set_services
from lessongen.errors import ProviderError
from lessongen.generation.jobs import JobControl


@pytest.fixture
def client(services: ServiceContainer) -> Generator[TestClient, None, None]:
    """Create test client over the fixture services."""
    set_services(services)
    yield TestClient(create_app())
    set_services(None)


def auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def lesson_body(child_id: int, **overrides: Any) -> dict[str, Any]:
    body = {"child_id": child_id, "topic": "Volcanoes", "subject": "Science", "grade_level": 3}
    body.update(overrides)
    return body


class TestHealthCheck:
    """Tests for health check endpoint."""

    def test_health_check(self, client: TestClient) -> None:
        """Test health check returns healthy."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["counter_backend"] == "sql"
        assert data["provider_circuit"] == "closed"

    def test_root(self, client: TestClient) -> None:
        response = client.get("/")

        assert response.status_code == 200
        assert "Lesson Generation" in response.json()["name"]
        assert "X-Process-Time-Ms" in response.headers


class TestAuthentication:
    """Tests for bearer token handling."""

    def test_missing_token(self, client: TestClient, child) -> None:
        response = client.post("/v1/lessons/custom", json=lesson_body(child.id))

        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized"
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_unknown_token(self, client: TestClient, child) -> None:
        response = client.post("/v1/lessons/custom", json=lesson_body(child.id), headers=auth("nope"))

        assert response.status_code == 401


class TestSeeding:
    """Tests for the admin seeding endpoints."""

    def test_requires_admin(self, client: TestClient, parent) -> None:
        _, token = parent

        response = client.post("/v1/admin/lessons/seed", json={}, headers=auth(token))

        assert response.status_code == 403

    def test_seed_and_job_status(self, client: TestClient, admin) -> None:
        """Test a seed run reports its summary and its job row."""
        _, token = admin

        response = client.post(
            "/v1/admin/lessons/seed",
            json={"grades": [0], "subjects": ["Math", "Art"], "lessons_per_subject": 1},
            headers=auth(token),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["created"] == 2
        assert data["total"] == 2

        job = client.get(f"/v1/admin/jobs/{data['job_id']}", headers=auth(token))
        assert job.status_code == 200
        assert job.json()["status"] == "completed"

    def test_invalid_grade(self, client: TestClient, admin) -> None:
        _, token = admin

        response = client.post("/v1/admin/lessons/seed", json={"grades": [14]}, headers=auth(token))

        assert response.status_code == 400

    def test_seed_while_running(self, client: TestClient, services: ServiceContainer, admin) -> None:
        """Test a second seed while the lock is held is a conflict."""
        JobControl(services.db_manager, services.settings.batch_job_name, holder="other:1").acquire_lock()
        _, token = admin

        response = client.post("/v1/admin/lessons/seed", json={"grades": [0]}, headers=auth(token))

        assert response.status_code == 409

    def test_unknown_job(self, client: TestClient, admin) -> None:
        _, token = admin

        assert client.get("/v1/admin/jobs/999", headers=auth(token)).status_code == 404
        assert client.post("/v1/admin/jobs/999/cancel", headers=auth(token)).status_code == 404


class TestCustomLessons:
    """Tests for the custom lesson endpoint."""

    def test_generate(self, client: TestClient, parent, child) -> None:
        _, token = parent

        response = client.post("/v1/lessons/custom", json=lesson_body(child.id), headers=auth(token))

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["quota_remaining"] == 2
        assert data["item"]["creator_child_id"] == child.id

    def test_quota_exhausted(self, client: TestClient, services: ServiceContainer, parent) -> None:
        """Test the daily cap maps to 429 with Retry-After."""
        actor, token = parent
        child = services.repository.create_child(actor.account_id, "Bo", grade_level=1, custom_generation_limit=1)
        client.post("/v1/lessons/custom", json=lesson_body(child.id), headers=auth(token))

        response = client.post("/v1/lessons/custom", json=lesson_body(child.id), headers=auth(token))

        assert response.status_code == 429
        data = response.json()
        assert data["error"] == "quota_exhausted"
        assert data["quota_remaining"] == 0
        assert int(response.headers["Retry-After"]) == data["retry_after"]
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert int(response.headers["X-RateLimit-Reset"]) > time.time() * 1000

    def test_denials_without_rate_headers(self, client: TestClient, fake_client, parent, child) -> None:
        """Test non-429 denials carry no rate limit headers."""
        _, token = parent
        fake_client.moderation_reply = '{"appropriate": false}'

        response = client.post("/v1/lessons/custom", json=lesson_body(child.id), headers=auth(token))

        assert response.status_code == 400
        assert "X-RateLimit-Remaining" not in response.headers

    def test_moderation_rejected(self, client: TestClient, fake_client, parent, child) -> None:
        _, token = parent
        fake_client.moderation_reply = '{"appropriate": false, "reason": "Unsafe activity"}'

        response = client.post("/v1/lessons/custom", json=lesson_body(child.id), headers=auth(token))

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "moderation_rejected", "message": "Unsafe activity"}

    def test_not_owner(self, client: TestClient, services: ServiceContainer, child) -> None:
        _, token = services.resolver.create_account("stranger@example.com")

        response = client.post("/v1/lessons/custom", json=lesson_body(child.id), headers=auth(token))

        assert response.status_code == 403

    def test_generation_failed(self, client: TestClient, fake_client, parent, child) -> None:
        """Test provider failures surface as a generic 502."""
        _, token = parent
        fake_client.replies = [ProviderError("secret upstream detail")] * 3

        response = client.post("/v1/lessons/custom", json=lesson_body(child.id), headers=auth(token))

        assert response.status_code == 502
        assert "secret upstream detail" not in response.text

    def test_validation(self, client: TestClient, parent, child) -> None:
        _, token = parent

        response = client.post("/v1/lessons/custom", json=lesson_body(child.id, grade_level=13), headers=auth(token))

        assert response.status_code == 422

    def test_quota_endpoint(self, client: TestClient, parent, child) -> None:
        _, token = parent
        client.post("/v1/lessons/custom", json=lesson_body(child.id), headers=auth(token))

        response = client.get(f"/v1/children/{child.id}/quota", headers=auth(token))

        assert response.status_code == 200
        data = response.json()
        assert data["child_id"] == child.id
        assert data["remaining"] == 2
        assert data["limit"] == 3


class TestCollaboration:
    """Tests for collaboration and share endpoints."""

    def test_duplicate_key(self, client: TestClient, services: ServiceContainer, parent, child) -> None:
        """Test a repeated key answers with the duplicate signal, not an error status."""
        _, token = parent
        other, _ = services.resolver.create_account("other@example.com")
        friend = services.repository.create_child(other.account_id, "Grace", grade_level=3)
        body = {"requester_child_id": child.id, "recipient_child_id": friend.id, "idempotency_key": "dup-1"}

        first = client.post("/v1/collaborations", json=body, headers=auth(token))
        second = client.post("/v1/collaborations", json=body, headers=auth(token))

        assert first.status_code == 200
        assert first.json()["success"] is True
        assert second.status_code == 200
        assert second.json()["duplicate"] is True
        assert second.json()["error"] == "duplicate_request"

    def test_share(self, client: TestClient, parent, child) -> None:
        _, token = parent
        created = client.post("/v1/lessons/custom", json=lesson_body(child.id), headers=auth(token)).json()
        lesson_id = created["item"]["id"]

        response = client.post(f"/v1/lessons/{lesson_id}/share", json={"child_id": child.id}, headers=auth(token))

        assert response.status_code == 200
        assert response.json()["share_status"] == "pending_approval"

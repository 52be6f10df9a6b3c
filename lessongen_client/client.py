"""
Lesson Generation API Client
HTTP client with sync and async support.
"""

from __future__ import annotations

import os
from typing import Any, Optional

import httpx

from .models import CustomLesson, JobRun, LessonGenAPIError, QuotaStatus, SeedSummary


def _raise_for_error(response: httpx.Response) -> None:
    """Turn an error response into LessonGenAPIError."""
    if response.status_code < 400:
        return
    try:
        data = response.json()
    except ValueError:
        data = {"message": response.text}
    if not isinstance(data, dict):
        data = {"message": str(data)}
    raise LessonGenAPIError.from_response(response.status_code, data, dict(response.headers))


def _seed_payload(
    grades: Optional[list[int]],
    subjects: Optional[list[str]],
    lessons_per_subject: Optional[int],
) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    if grades is not None:
        payload["grades"] = grades
    if subjects is not None:
        payload["subjects"] = subjects
    if lessons_per_subject is not None:
        payload["lessons_per_subject"] = lessons_per_subject
    return payload


class LessonGenClient:
    """
    Python client for the Lesson Generation API.

    Example:
        ```python
        client = LessonGenClient(token="...")

        # Generate a private lesson for a child
        lesson = client.generate_custom_lesson(
            child_id=7, topic="Volcanoes", subject="Science", grade_level=3,
        )
        print(lesson.title, lesson.quota_remaining)

        # Remaining daily quota
        quota = client.child_quota(7)
        ```
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        token: Optional[str] = None,
        timeout: float = 600.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: API server URL (default: localhost:8000)
            token: Bearer token (falls back to LESSONGEN_TOKEN)
            timeout: Request timeout in seconds; seeding blocks until the run ends
            transport: Optional httpx transport (tests, proxies)
        """
        self.base_url = base_url.rstrip("/")
        self.token = token or os.getenv("LESSONGEN_TOKEN")
        self.timeout = timeout

        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        self._client = httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def __enter__(self) -> LessonGenClient:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    # =========================================================================
    # Health
    # =========================================================================

    def health(self) -> dict:
        """Check API health status."""
        response = self._client.get("/health")
        _raise_for_error(response)
        return response.json()

    def is_healthy(self) -> bool:
        """Quick health check returning boolean."""
        try:
            return self.health().get("status") == "healthy"
        except (httpx.HTTPError, LessonGenAPIError):
            return False

    # =========================================================================
    # Bulk seeding (admin)
    # =========================================================================

    def seed(
        self,
        grades: Optional[list[int]] = None,
        subjects: Optional[list[str]] = None,
        lessons_per_subject: Optional[int] = None,
    ) -> SeedSummary:
        """
        Fill the lesson catalog. Blocks until the run finishes.

        Args:
            grades: Grades to fill (0 = Kindergarten), default all
            subjects: Subject names, default all
            lessons_per_subject: Target lessons per (grade, subject) cell

        Returns:
            SeedSummary with created/skipped/error counts
        """
        response = self._client.post(
            "/v1/admin/lessons/seed",
            json=_seed_payload(grades, subjects, lessons_per_subject),
        )
        _raise_for_error(response)
        return SeedSummary.from_dict(response.json())

    def get_job(self, job_id: int) -> JobRun:
        """Get the status of a bulk run."""
        response = self._client.get(f"/v1/admin/jobs/{job_id}")
        _raise_for_error(response)
        return JobRun.from_dict(response.json())

    def cancel_job(self, job_id: int) -> bool:
        """Ask a running bulk job to stop."""
        response = self._client.post(f"/v1/admin/jobs/{job_id}/cancel")
        _raise_for_error(response)
        return response.json().get("cancel_requested", False)

    # =========================================================================
    # Per-child operations
    # =========================================================================

    def generate_custom_lesson(
        self,
        child_id: int,
        topic: str,
        subject: str,
        grade_level: int,
        idempotency_key: Optional[str] = None,
    ) -> CustomLesson:
        """
        Generate a private lesson for one child.

        Raises:
            LessonGenAPIError: On denial (quota, rate limit, moderation, ...)
        """
        payload: dict[str, Any] = {
            "child_id": child_id,
            "topic": topic,
            "subject": subject,
            "grade_level": grade_level,
        }
        if idempotency_key:
            payload["idempotency_key"] = idempotency_key

        response = self._client.post("/v1/lessons/custom", json=payload)
        _raise_for_error(response)
        return CustomLesson.from_dict(response.json())

    def request_collaboration(
        self,
        requester_child_id: int,
        recipient_child_id: int,
        lesson_id: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        """Ask another child to collaborate. A repeated key returns success=False, duplicate=True."""
        payload: dict[str, Any] = {
            "requester_child_id": requester_child_id,
            "recipient_child_id": recipient_child_id,
        }
        if lesson_id is not None:
            payload["lesson_id"] = lesson_id
        if idempotency_key:
            payload["idempotency_key"] = idempotency_key

        response = self._client.post("/v1/collaborations", json=payload)
        _raise_for_error(response)
        return response.json()

    def request_share(self, child_id: int, lesson_id: int) -> dict:
        """Submit a child lesson for sharing approval."""
        response = self._client.post(
            f"/v1/lessons/{lesson_id}/share",
            json={"child_id": child_id},
        )
        _raise_for_error(response)
        return response.json()

    def child_quota(self, child_id: int) -> QuotaStatus:
        """Today's custom lesson quota for a child."""
        response = self._client.get(f"/v1/children/{child_id}/quota")
        _raise_for_error(response)
        return QuotaStatus.from_dict(response.json())


class AsyncLessonGenClient:
    """Async version of LessonGenClient."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        token: Optional[str] = None,
        timeout: float = 600.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token or os.getenv("LESSONGEN_TOKEN")

        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> AsyncLessonGenClient:
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def health(self) -> dict:
        response = await self._client.get("/health")
        _raise_for_error(response)
        return response.json()

    async def seed(
        self,
        grades: Optional[list[int]] = None,
        subjects: Optional[list[str]] = None,
        lessons_per_subject: Optional[int] = None,
    ) -> SeedSummary:
        response = await self._client.post(
            "/v1/admin/lessons/seed",
            json=_seed_payload(grades, subjects, lessons_per_subject),
        )
        _raise_for_error(response)
        return SeedSummary.from_dict(response.json())

    async def generate_custom_lesson(
        self,
        child_id: int,
        topic: str,
        subject: str,
        grade_level: int,
        idempotency_key: Optional[str] = None,
    ) -> CustomLesson:
        payload: dict[str, Any] = {
            "child_id": child_id,
            "topic": topic,
            "subject": subject,
            "grade_level": grade_level,
        }
        if idempotency_key:
            payload["idempotency_key"] = idempotency_key

        response = await self._client.post("/v1/lessons/custom", json=payload)
        _raise_for_error(response)
        return CustomLesson.from_dict(response.json())

    async def child_quota(self, child_id: int) -> QuotaStatus:
        response = await self._client.get(f"/v1/children/{child_id}/quota")
        _raise_for_error(response)
        return QuotaStatus.from_dict(response.json())

"""
Generation orchestrator.

Drives the external completion service for two entry points:
- Bulk mode: fill a grade x subject x slot matrix of catalog lessons,
  skipping everything that already exists, so a rerun is always safe.
- Single-item mode: one private lesson for one child, behind the rate
  limiter, the per-child daily quota and the moderation gate.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from lessongen.config import Settings, get_settings
from lessongen.errors import (
    BatchAbortedError,
    DenialReason,
    GenerationDeniedError,
    GenerationFailedError,
    ProviderError,
    ProviderPaymentRequiredError,
    ProviderRateLimitError,
)
from lessongen.generation.client import CompletionClient
from lessongen.generation.jobs import CancellationToken, JobControl, JobStatus
from lessongen.generation.models import (
    BatchSummary,
    GenerationResult,
    MAX_GRADE,
    MIN_GRADE,
    UnitError,
    WorkMatrix,
    WorkUnit,
)
from lessongen.generation.parsing import Fallback, parse_generation
from lessongen.generation.prompts import (
    BATCH_SYSTEM_PROMPT,
    CUSTOM_ESTIMATED_MINUTES,
    CUSTOM_POINT_VALUE,
    CUSTOM_SYSTEM_PROMPT,
    build_custom_prompt,
    build_lesson_prompt,
    estimated_minutes,
    fallback_custom_lesson,
    fallback_lesson,
    point_value,
)
from lessongen.generation.repository import LessonRepository
from lessongen.idempotency import COMPLETED, IdempotencyStore
from lessongen.moderation.gate import ModerationGate, ModerationOutcome, ModerationRequest
from lessongen.quota.ledger import LedgerOutcome, QuotaLedger, Window
from lessongen.quota.limiter import RateLimiter
from lessongen.security import Actor

logger = logging.getLogger(__name__)

CUSTOM_LESSON_ENDPOINT = "generate-custom-lesson"
DAILY_CUSTOM_SCOPE = "daily:custom-lessons"


@dataclass
class BatchPolicy:
    """Retry bounds and pacing for provider calls."""

    max_attempts: int = 3
    """Hard attempts per unit (timeouts, 5xx, malformed replies)."""

    retry_backoff_seconds: float = 2.0
    """Base delay between hard attempts, doubled each time."""

    rate_limit_backoff_seconds: float = 20.0
    """Wait after a provider 429. Does not consume an attempt."""

    max_rate_limit_waits: int = 5
    """429 waits per unit before they start consuming attempts."""

    unit_delay_seconds: float = 1.0
    """Pause after each successfully created unit."""

    grade_delay_seconds: float = 10.0
    """Pause between grades that made provider calls."""

    @classmethod
    def from_settings(cls, settings: Settings) -> "BatchPolicy":
        return cls(
            max_attempts=settings.batch_max_attempts,
            retry_backoff_seconds=settings.batch_retry_backoff_seconds,
            rate_limit_backoff_seconds=settings.batch_rate_limit_backoff_seconds,
            max_rate_limit_waits=settings.batch_max_rate_limit_waits,
            unit_delay_seconds=settings.batch_unit_delay_seconds,
            grade_delay_seconds=settings.batch_grade_delay_seconds,
        )


@dataclass
class CustomGenerationResult:
    """Outcome of a single-item generation."""

    item: dict[str, Any]
    """The persisted private lesson."""

    quota_remaining: int | None
    """Uses left today for the child (None if the ledger was unavailable)."""

    duplicate: bool = False
    """True when replayed from an earlier request with the same key."""

    used_fallback: bool = False
    notes: list[str] = field(default_factory=list)
    """Fail-open paths taken while serving the request."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "item": self.item,
            "quota_remaining": self.quota_remaining,
            "duplicate": self.duplicate,
            "used_fallback": self.used_fallback,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], duplicate: bool = False) -> "CustomGenerationResult":
        return cls(
            item=data.get("item", {}),
            quota_remaining=data.get("quota_remaining"),
            duplicate=duplicate,
            used_fallback=data.get("used_fallback", False),
            notes=data.get("notes", []),
        )


class GenerationOrchestrator:
    """
    Top-level driver for lesson generation.

    Usage:
        orchestrator = GenerationOrchestrator(client, repository, jobs, gate, limiter, ledger, idempotency)
        summary = await orchestrator.run(WorkMatrix(target_per_cell=2))
        result = await orchestrator.generate_one(actor, child_id, "volcanoes", "Science", 3)
    """

    def __init__(
        self,
        client: CompletionClient,
        repository: LessonRepository,
        jobs: JobControl,
        gate: ModerationGate,
        limiter: RateLimiter,
        ledger: QuotaLedger,
        idempotency: IdempotencyStore,
        policy: BatchPolicy | None = None,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            client: Completion client
            repository: Lesson persistence
            jobs: Leader lock and job status for bulk runs
            gate: Moderation gate for free-text topics
            limiter: Per-actor rate limiter
            ledger: Quota ledger for per-child daily caps
            idempotency: Idempotency key store
            policy: Retry and pacing policy (defaults from settings)
            settings: Settings instance (defaults to cached settings)
            sleep: Awaitable sleep, injectable for tests
        """
        self._settings = settings or get_settings()
        self._client = client
        self._repository = repository
        self._jobs = jobs
        self._gate = gate
        self._limiter = limiter
        self._ledger = ledger
        self._idempotency = idempotency
        self._policy = policy or BatchPolicy.from_settings(self._settings)
        self._sleep = sleep
        self._active: dict[int, CancellationToken] = {}

    @property
    def policy(self) -> BatchPolicy:
        return self._policy

    @property
    def jobs(self) -> JobControl:
        return self._jobs

    # --- Provider calls ---

    async def _complete_with_retries(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        label: str,
        max_rate_limit_waits: int,
    ) -> str:
        """
        Call the provider with bounded retries.

        Raises:
            ProviderPaymentRequiredError: Terminal; never retried
            GenerationFailedError: All attempts failed
        """
        attempts = 0
        waits = 0
        last_error: Exception | None = None

        while attempts < self._policy.max_attempts:
            try:
                return await self._client.complete(system_prompt, user_prompt, temperature=temperature)
            except ProviderRateLimitError as e:
                if waits < max_rate_limit_waits:
                    waits += 1
                    logger.warning(
                        f"Provider rate limited on {label}; waiting "
                        f"{self._policy.rate_limit_backoff_seconds}s (wait {waits}/{max_rate_limit_waits})"
                    )
                    await self._sleep(self._policy.rate_limit_backoff_seconds)
                    continue
                attempts += 1
                last_error = e
            except ProviderError as e:
                attempts += 1
                last_error = e
                logger.warning(f"Attempt {attempts}/{self._policy.max_attempts} failed for {label}: {e}")

            if attempts < self._policy.max_attempts:
                await self._sleep(self._policy.retry_backoff_seconds * (2 ** (attempts - 1)))

        raise GenerationFailedError(f"Generation failed after {attempts} attempts: {last_error}")

    # --- Bulk mode ---

    def cancel(self, job_id: int) -> bool:
        """
        Request cancellation of a bulk run.

        The running loop stops before its next work unit.

        Returns:
            True if the job is running (here or in another process)
        """
        token = self._active.get(job_id)
        if token is not None:
            token.cancel()
        requested = self._jobs.request_cancel(job_id)
        return requested or token is not None

    async def _is_cancelled(self, token: CancellationToken, job_id: int) -> bool:
        if token.cancelled:
            return True
        return await asyncio.to_thread(self._jobs.cancel_requested, job_id)

    async def _generate_unit(self, unit: WorkUnit) -> tuple[GenerationResult, bool]:
        """
        Produce content for one unit.

        Returns:
            (result, used_fallback)

        Raises:
            BatchAbortedError: Provider payment required
            GenerationFailedError: Retries exhausted
        """
        try:
            reply = await self._complete_with_retries(
                BATCH_SYSTEM_PROMPT,
                build_lesson_prompt(unit),
                temperature=self._settings.generation_temperature,
                label=unit.label,
                max_rate_limit_waits=self._policy.max_rate_limit_waits,
            )
        except ProviderPaymentRequiredError as e:
            raise BatchAbortedError(f"Provider payment required at {unit.label}: {e}") from e

        parsed = parse_generation(reply, lambda text: fallback_lesson(unit, text))
        used_fallback = isinstance(parsed, Fallback)
        if used_fallback:
            logger.warning(f"Using fallback content for {unit.label} ({parsed.reason})")

        result = parsed.result.model_copy(
            update={
                "estimated_minutes": estimated_minutes(unit.grade_level),
                "point_value": point_value(unit.grade_level, unit.subject),
            }
        )
        return result, used_fallback

    async def _process_unit(self, unit: WorkUnit, summary: BatchSummary) -> bool:
        """Generate and persist one unit. Returns True if a lesson was created."""
        try:
            result, used_fallback = await self._generate_unit(unit)
        except GenerationFailedError as e:
            logger.error(f"Failed to generate {unit.label}: {e}")
            summary.errors.append(UnitError(unit=unit, message=str(e)))
            return False

        inserted = await asyncio.to_thread(self._repository.insert_lesson, unit, result, used_fallback)
        if not inserted:
            summary.skipped += 1
            return False

        summary.created += 1
        logger.info(f"Created lesson for {unit.label}")
        return True

    async def _run_grade(
        self,
        grade: int,
        matrix: WorkMatrix,
        summary: BatchSummary,
        token: CancellationToken,
        job_id: int,
    ) -> bool:
        """
        Fill one grade. Returns True if any provider call was made.

        Sets ``summary.cancelled`` and returns early on cancellation.
        """
        existing = await asyncio.to_thread(self._repository.count_for_grade, grade, matrix.subjects)
        if existing >= matrix.per_grade_target:
            logger.info(f"Grade {grade} already has {existing} lessons; skipping")
            summary.skipped += matrix.per_grade_target
            return False

        called = False
        for subject in matrix.subjects:
            count = await asyncio.to_thread(self._repository.count_for_cell, grade, subject)
            deficit = matrix.target_per_cell - count
            if deficit <= 0:
                summary.skipped += matrix.target_per_cell
                continue

            occupied = await asyncio.to_thread(self._repository.occupied_slots, grade, subject)
            missing = [
                slot for slot in range(1, matrix.target_per_cell + 1) if slot not in occupied
            ][:deficit]
            summary.skipped += matrix.target_per_cell - len(missing)

            for slot in missing:
                if await self._is_cancelled(token, job_id):
                    summary.cancelled = True
                    return called

                called = True
                created = await self._process_unit(WorkUnit(grade, subject, slot), summary)
                if created:
                    await self._sleep(self._policy.unit_delay_seconds)

            await asyncio.to_thread(self._jobs.update_progress, job_id, summary)

        return called

    async def run(self, matrix: WorkMatrix, cancel: CancellationToken | None = None) -> BatchSummary:
        """
        Fill the catalog for a work matrix.

        Args:
            matrix: Grades, subjects and target lessons per cell
            cancel: Optional token checked between work units

        Returns:
            BatchSummary; partial runs are a valid outcome

        Raises:
            JobAlreadyRunningError: Another run holds the leader lock
        """
        await asyncio.to_thread(self._jobs.acquire_lock)
        token = cancel or CancellationToken()
        summary = BatchSummary(total=matrix.size)
        job_id: int | None = None

        try:
            job_id = await asyncio.to_thread(self._jobs.start_run, matrix.size)
            summary.job_id = job_id
            self._active[job_id] = token
            logger.info(
                f"Starting bulk run {job_id}: {len(matrix.grades)} grades x "
                f"{len(matrix.subjects)} subjects x {matrix.target_per_cell} slots"
            )

            status = JobStatus.COMPLETED
            try:
                for index, grade in enumerate(matrix.grades):
                    if await self._is_cancelled(token, job_id):
                        summary.cancelled = True
                    if summary.cancelled:
                        break

                    called = await self._run_grade(grade, matrix, summary, token, job_id)
                    if summary.cancelled:
                        break

                    await asyncio.to_thread(self._jobs.refresh_lock)
                    if called and index < len(matrix.grades) - 1:
                        logger.info(f"Waiting {self._policy.grade_delay_seconds}s before next grade")
                        await self._sleep(self._policy.grade_delay_seconds)
            except BatchAbortedError as e:
                logger.error(f"Bulk run {job_id} aborted: {e}")
                summary.aborted = True
                summary.abort_reason = str(e)
                status = JobStatus.ABORTED
            except Exception:
                await asyncio.to_thread(self._jobs.finish_run, job_id, JobStatus.FAILED, summary)
                raise

            if summary.cancelled:
                logger.warning(f"Bulk run {job_id} cancelled by operator")
                status = JobStatus.CANCELLED

            await asyncio.to_thread(self._jobs.finish_run, job_id, status, summary)
            logger.info(
                f"Bulk run {job_id} done: created={summary.created} skipped={summary.skipped} "
                f"failed={summary.failed} total={summary.total}"
            )
            return summary
        finally:
            if job_id is not None:
                self._active.pop(job_id, None)
            await asyncio.to_thread(self._jobs.release_lock)

    # --- Single-item mode ---

    def _daily_limit(self, custom_limit: int | None) -> int:
        if custom_limit is not None:
            return custom_limit
        return self._settings.custom_lessons_per_child_per_day

    @staticmethod
    def _quota_exhausted(limit: int, retry_after_seconds: int | None) -> GenerationDeniedError:
        return GenerationDeniedError(
            DenialReason.QUOTA_EXHAUSTED,
            f"Daily custom lesson limit of {limit} reached",
            retry_after_seconds=retry_after_seconds,
            quota_remaining=0,
        )

    async def generate_one(
        self,
        actor: Actor | None,
        child_id: int,
        topic: str,
        subject: str,
        grade_level: int,
        idempotency_key: str | None = None,
    ) -> CustomGenerationResult:
        """
        Generate one private lesson for a child.

        Gates run in order: ownership, rate limit, daily quota, moderation.
        The quota gate only reads the counter; the use is reserved atomically
        after moderation passes, just before the provider call, and is not
        refunded if generation later fails.

        Args:
            actor: Resolved caller (None if unauthenticated)
            child_id: Child the lesson is for
            topic: Free-text topic
            subject: Subject name
            grade_level: Grade 0-12
            idempotency_key: Optional key; repeats by the same caller replay the first result

        Returns:
            CustomGenerationResult

        Raises:
            GenerationDeniedError: A gate refused the request
            GenerationFailedError: The provider failed after bounded retries
            ValueError: Invalid input
        """
        if actor is None:
            raise GenerationDeniedError(DenialReason.UNAUTHORIZED, "Authentication required")

        topic = (topic or "").strip()
        subject = (subject or "").strip()
        if not topic or not subject:
            raise ValueError("topic and subject are required")
        if not MIN_GRADE <= grade_level <= MAX_GRADE:
            raise ValueError(f"grade_level must be between {MIN_GRADE} and {MAX_GRADE}")

        child = await asyncio.to_thread(self._repository.get_child, child_id)
        if child is None:
            raise GenerationDeniedError(DenialReason.INVALID_TARGET, "Child not found")
        if child.parent_id != actor.account_id:
            logger.warning(f"{actor.key} attempted generation for child {child_id} they do not own")
            raise GenerationDeniedError(DenialReason.UNAUTHORIZED, "Child not found or unauthorized")

        if idempotency_key:
            claim = await self._idempotency.claim(idempotency_key, CUSTOM_LESSON_ENDPOINT, actor.key)
            if not claim.claimed:
                if claim.status == COMPLETED and claim.result is not None:
                    return CustomGenerationResult.from_dict(claim.result, duplicate=True)
                raise GenerationDeniedError(
                    DenialReason.DUPLICATE_REQUEST, "This request is already being processed"
                )

        completed = False
        try:
            result = await self._generate_for_child(
                actor, child.id, child.custom_generation_limit, topic, subject, grade_level
            )
            completed = True
        finally:
            # A refused or failed request may be retried with the same key
            if idempotency_key and not completed:
                await self._idempotency.release(idempotency_key, CUSTOM_LESSON_ENDPOINT, actor.key)

        if idempotency_key:
            await self._idempotency.complete(
                idempotency_key, CUSTOM_LESSON_ENDPOINT, actor.key, result.to_dict()
            )
        return result

    async def _generate_for_child(
        self,
        actor: Actor,
        child_id: int,
        custom_limit: int | None,
        topic: str,
        subject: str,
        grade_level: int,
    ) -> CustomGenerationResult:
        notes: list[str] = []

        rate = await self._limiter.check(actor, self._limiter.rule(CUSTOM_LESSON_ENDPOINT))
        if not rate.allowed:
            raise GenerationDeniedError(
                DenialReason.RATE_LIMIT_EXCEEDED,
                rate.message or "Rate limit exceeded",
                retry_after_seconds=rate.retry_after_seconds,
            )
        if rate.outcome == LedgerOutcome.DEPENDENCY_UNAVAILABLE:
            notes.append("rate_limit_unavailable")

        limit = self._daily_limit(custom_limit)
        subject_key = f"child:{child_id}"
        # Exhausted children are refused before the classifier is called
        available = await self._ledger.peek(DAILY_CUSTOM_SCOPE, subject_key, limit, Window.daily())
        if not available.allowed:
            raise self._quota_exhausted(limit, available.retry_after_seconds)

        verdict = await self._gate.classify(ModerationRequest(topic, subject, grade_level))
        if not verdict.appropriate:
            raise GenerationDeniedError(
                DenialReason.MODERATION_REJECTED,
                verdict.reason or "Content may not be appropriate for children",
            )

        # The use is consumed only once the topic has passed moderation
        quota = await self._ledger.check_and_increment(
            scope=DAILY_CUSTOM_SCOPE,
            subject_key=subject_key,
            limit=limit,
            window=Window.daily(),
            actor_id=actor.key,
            endpoint=CUSTOM_LESSON_ENDPOINT,
        )
        if not quota.allowed:
            raise self._quota_exhausted(limit, quota.retry_after_seconds)
        quota_remaining: int | None = quota.remaining
        if quota.outcome == LedgerOutcome.DEPENDENCY_UNAVAILABLE:
            notes.append("quota_unavailable")
            quota_remaining = None
        if verdict.outcome == ModerationOutcome.DEPENDENCY_UNAVAILABLE:
            notes.append("moderation_unavailable")

        label = f"custom lesson for child {child_id}"
        try:
            reply = await self._complete_with_retries(
                CUSTOM_SYSTEM_PROMPT,
                build_custom_prompt(topic, subject, grade_level),
                temperature=self._settings.custom_generation_temperature,
                label=label,
                max_rate_limit_waits=0,
            )
        except ProviderPaymentRequiredError as e:
            logger.error(f"Provider payment required during {label}: {e}")
            raise GenerationFailedError("Lesson generation is temporarily unavailable") from e
        except GenerationFailedError as e:
            logger.error(f"Failed {label}: {e}")
            raise GenerationFailedError("Lesson generation failed. Please try again later.") from e

        parsed = parse_generation(reply, lambda text: fallback_custom_lesson(topic, subject, text))
        used_fallback = isinstance(parsed, Fallback)
        if used_fallback:
            logger.warning(f"Using fallback content for {label} ({parsed.reason})")

        content = parsed.result.model_copy(
            update={"estimated_minutes": CUSTOM_ESTIMATED_MINUTES, "point_value": CUSTOM_POINT_VALUE}
        )
        item = await asyncio.to_thread(
            self._repository.insert_child_lesson,
            child_id,
            topic,
            subject,
            grade_level,
            content,
            used_fallback,
        )
        logger.info(f"Custom lesson {item['id']} created for child {child_id}")

        return CustomGenerationResult(
            item=item,
            quota_remaining=quota_remaining,
            used_fallback=used_fallback,
            notes=notes,
        )

"""Service container and FastAPI dependencies."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from fastapi import Depends, Request

from lessongen.collaboration import CollaborationService
from lessongen.config import Settings, get_settings
from lessongen.db.manager import DatabaseManager
from lessongen.errors import UnauthenticatedError
from lessongen.generation.client import CompletionClient
from lessongen.generation.jobs import JobControl
from lessongen.generation.orchestrator import BatchPolicy, GenerationOrchestrator
from lessongen.generation.repository import LessonRepository
from lessongen.idempotency import IdempotencyStore
from lessongen.moderation.gate import ModerationGate
from lessongen.quota.ledger import QuotaLedger, SqlViolationLog
from lessongen.quota.limiter import RateLimiter, default_rules
from lessongen.quota.stores import CounterStore, create_counter_store
from lessongen.resilience import CircuitBreaker
from lessongen.security import Actor, ActorResolver, get_bearer_token

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Everything a request handler may need, wired once per process."""

    settings: Settings
    db_manager: DatabaseManager
    counter_store: CounterStore
    ledger: QuotaLedger
    limiter: RateLimiter
    breaker: CircuitBreaker
    client: CompletionClient
    gate: ModerationGate
    repository: LessonRepository
    jobs: JobControl
    idempotency: IdempotencyStore
    orchestrator: GenerationOrchestrator
    collaboration: CollaborationService
    resolver: ActorResolver

    async def close(self) -> None:
        await self.client.close()
        await self.counter_store.close()
        self.db_manager.close()


def build_services(
    settings: Settings | None = None,
    db_manager: DatabaseManager | None = None,
    client: CompletionClient | None = None,
    counter_store: CounterStore | None = None,
    policy: BatchPolicy | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> ServiceContainer:
    """
    Wire the service graph from settings.

    Any collaborator can be supplied to replace the configured one.
    """
    settings = settings or get_settings()
    db_manager = db_manager or DatabaseManager(database_url=settings.database_url)

    breaker = CircuitBreaker(
        failure_threshold=settings.circuit_failure_threshold,
        reset_seconds=settings.circuit_reset_seconds,
    )
    client = client or CompletionClient(
        base_url=settings.generation_api_url,
        api_key=settings.generation_api_key,
        model=settings.generation_model,
        timeout=settings.generation_timeout_seconds,
        breaker=breaker,
    )

    counter_store = counter_store or create_counter_store(
        settings.counter_backend,
        db_manager=db_manager,
        redis_url=settings.redis_url,
        redis_prefix=settings.redis_prefix,
    )
    ledger = QuotaLedger(counter_store, violation_log=SqlViolationLog(db_manager))
    limiter = RateLimiter(ledger, default_rules(settings))

    gate = ModerationGate(
        client,
        model=settings.moderation_model,
        temperature=settings.moderation_temperature,
        timeout_seconds=settings.moderation_timeout_seconds,
    )
    repository = LessonRepository(db_manager)
    jobs = JobControl(db_manager, settings.batch_job_name, lock_ttl_minutes=settings.batch_lock_ttl_minutes)
    idempotency = IdempotencyStore(db_manager, ttl_hours=settings.idempotency_ttl_hours)

    orchestrator = GenerationOrchestrator(
        client=client,
        repository=repository,
        jobs=jobs,
        gate=gate,
        limiter=limiter,
        ledger=ledger,
        idempotency=idempotency,
        policy=policy,
        settings=settings,
        sleep=sleep,
    )
    collaboration = CollaborationService(db_manager, repository, limiter)

    logger.info(f"Services wired (counter backend: {counter_store.name})")
    return ServiceContainer(
        settings=settings,
        db_manager=db_manager,
        counter_store=counter_store,
        ledger=ledger,
        limiter=limiter,
        breaker=breaker,
        client=client,
        gate=gate,
        repository=repository,
        jobs=jobs,
        idempotency=idempotency,
        orchestrator=orchestrator,
        collaboration=collaboration,
        resolver=ActorResolver(db_manager),
    )


# Process-wide container, created lazily
_services: ServiceContainer | None = None


def get_services() -> ServiceContainer:
    """Get the service container instance."""
    global _services
    if _services is None:
        _services = build_services()
    return _services


def set_services(services: ServiceContainer | None) -> None:
    """Replace the service container (tests, embedding)."""
    global _services
    _services = services


async def get_actor(
    request: Request,
    services: ServiceContainer = Depends(get_services),
) -> Actor | None:
    """Resolve the caller from the bearer token, if any."""
    return await services.resolver.resolve(get_bearer_token(request))


async def require_actor(actor: Actor | None = Depends(get_actor)) -> Actor:
    """Resolved caller, or 401."""
    if actor is None:
        raise UnauthenticatedError("Authentication required")
    return actor

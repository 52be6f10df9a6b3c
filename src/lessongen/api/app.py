"""FastAPI application for lesson generation."""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from lessongen import __version__
from lessongen.api.dependencies import get_services
from lessongen.api.routes import router as api_router
from lessongen.errors import (
    DenialReason,
    GenerationFailedError,
    RequestDeniedError,
    UnauthenticatedError,
)

logger = logging.getLogger(__name__)

# HTTP status for each denial reason
DENIAL_STATUS = {
    DenialReason.UNAUTHORIZED: 403,
    DenialReason.INVALID_TARGET: 404,
    DenialReason.RATE_LIMIT_EXCEEDED: 429,
    DenialReason.QUOTA_EXHAUSTED: 429,
    DenialReason.MODERATION_REJECTED: 400,
    DenialReason.DUPLICATE_REQUEST: 409,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan events."""
    # Startup
    logger.info("Starting lesson generation API...")
    services = get_services()
    services.db_manager.init_db()
    logger.info("Database initialized")
    yield
    # Shutdown
    logger.info("Shutting down lesson generation API...")
    await services.close()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Lesson Generation Service",
        description="Batch lesson generation with quota, rate limit and moderation governance",
        version=__version__,
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request timing middleware
    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        start_time = time.perf_counter()
        response = await call_next(request)
        process_time = (time.perf_counter() - start_time) * 1000
        response.headers["X-Process-Time-Ms"] = f"{process_time:.2f}"
        return response

    @app.exception_handler(UnauthenticatedError)
    async def unauthenticated_handler(request: Request, exc: UnauthenticatedError) -> JSONResponse:
        return JSONResponse(
            status_code=401,
            content={"success": False, "error": DenialReason.UNAUTHORIZED.value, "message": str(exc)},
            headers={"WWW-Authenticate": "Bearer"},
        )

    @app.exception_handler(RequestDeniedError)
    async def denied_handler(request: Request, exc: RequestDeniedError) -> JSONResponse:
        status_code = DENIAL_STATUS.get(exc.reason, 400)
        headers = {}
        if exc.retry_after_seconds is not None:
            headers["Retry-After"] = str(exc.retry_after_seconds)
        if status_code == 429:
            # Reset is epoch milliseconds
            retry_after = exc.retry_after_seconds or 60
            headers["X-RateLimit-Remaining"] = "0"
            headers["X-RateLimit-Reset"] = str(int(time.time() * 1000) + retry_after * 1000)
        return JSONResponse(
            status_code=status_code,
            content=exc.to_dict(),
            headers=headers,
        )

    @app.exception_handler(GenerationFailedError)
    async def generation_failed_handler(request: Request, exc: GenerationFailedError) -> JSONResponse:
        return JSONResponse(
            status_code=502,
            content={"success": False, "error": "generation_failed", "message": str(exc)},
        )

    # Include API routes
    app.include_router(api_router, prefix="/v1")

    # Health check
    @app.get("/health")
    async def health_check():
        services = get_services()
        database_ok = services.db_manager.health_check()
        return {
            "status": "healthy" if database_ok else "degraded",
            "version": __version__,
            "database": database_ok,
            "counter_backend": services.counter_store.name,
            "provider_circuit": services.breaker.state.value,
        }

    # Root
    @app.get("/")
    async def root():
        return {
            "name": "Lesson Generation Service",
            "version": __version__,
            "docs": "/docs",
            "openapi": "/openapi.json",
        }

    return app


# Create app instance
app = create_app()

"""
Generation Credits Ledger - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Callable, Dict, List, Tuple

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import engine, Base, async_session_maker
import models  # noqa: F401
from routers import admin, credits, generations, health, profile, purchases
from services.credits import recover_stuck_slots
from services.errors import LedgerError, RateLimitedError
from services.ledger_queue import enqueue_daily_jobs, enqueue_slot_recovery_jobs
from services.ledger_store import SqlLedgerRepository

logger = logging.getLogger(__name__)


def scheduled_job_loops() -> List[Tuple[str, int, Callable[[], Dict[str, str]]]]:
    """(label, interval minutes, enqueuer) for each periodic loop started at startup."""
    return [
        ("daily ledger jobs", int(settings.SCHEDULED_JOBS_INTERVAL_MINUTES), enqueue_daily_jobs),
        ("stuck slot recovery", int(settings.STUCK_SLOT_RECOVERY_INTERVAL_MINUTES), enqueue_slot_recovery_jobs),
    ]


async def _periodic_enqueue(label: str, interval_minutes: int, enqueue: Callable[[], Dict[str, str]]) -> None:
    # First tick runs immediately; job ids are timestamped so a restart burst is harmless.
    interval_minutes = max(int(interval_minutes), 0)
    if interval_minutes <= 0:
        return
    while True:
        try:
            job_ids = await asyncio.to_thread(enqueue)
            logger.info("Scheduled %s enqueued: %s", label, job_ids)
        except Exception as exc:
            logger.warning("Scheduled %s tick failed: %s", label, exc)
        await asyncio.sleep(interval_minutes * 60)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    logger.info("Starting Generation Credits Ledger API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database schema verified.")
        except Exception as e:
            logger.warning("Database bootstrap skipped: %s", e)
    try:
        async with async_session_maker() as db:
            result = await recover_stuck_slots(SqlLedgerRepository(db))
        if result["recovered"]:
            logger.info("Recovered %s stuck generation counters after startup.", result["recovered"])
    except Exception as exc:
        logger.warning("Stuck slot recovery skipped: %s", exc)
    job_tasks = []
    if settings.SCHEDULED_JOBS_ENABLED:
        for label, interval_minutes, enqueue in scheduled_job_loops():
            if interval_minutes <= 0:
                continue
            job_tasks.append(asyncio.create_task(_periodic_enqueue(label, interval_minutes, enqueue)))
            logger.info("Scheduled %s loop enabled (every %s min).", label, interval_minutes)
    yield
    # Shutdown
    for task in job_tasks:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    logger.info("Shutting down API...")


app = FastAPI(
    title="Generation Credits Ledger API",
    description="Server-authoritative credit ledger for metered image generation",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    headers = None
    if isinstance(exc, RateLimitedError) and exc.retry_after_seconds is not None:
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()}, headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "detail": {
                "code": "invalid_argument",
                "message": "Request body failed validation.",
                "errors": jsonable_encoder(exc.errors()),
            }
        },
    )


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(credits.router, prefix="/credits", tags=["Credits"])
app.include_router(purchases.router, prefix="/purchases", tags=["Purchases"])
app.include_router(generations.router, prefix="/generations", tags=["Generations"])
app.include_router(profile.router, prefix="/profile", tags=["Profile"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Generation Credits Ledger API",
        "version": "0.1.0",
        "status": "running"
    }

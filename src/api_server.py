"""
API Endpoints:
- GET|POST /api/cron/sync-stats: Reconcile Redis counters into the database (cron secret)
- POST /videos/{video_id}/like: Toggle the caller's like
- GET /videos/{video_id}/like: Like status for the caller
- POST /videos/{video_id}/view: Count a view
- POST /likes/warmup: Warm the caller's like memberships for a page of videos
- GET /admin/jobs/{job_name}/logs: Recent background job logs (cron secret)
- GET /health: Health check
- GET /metrics: Prometheus metrics
"""

import os
import re
import time
import logging
import asyncio
from typing import List, Optional
from contextlib import asynccontextmanager

import sentry_sdk
from sentry_sdk.integrations.starlette import StarletteIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration

from utils.common_utils import filter_transient_errors, utc_now_iso
from config import SENTRY_DSN, SENTRY_TRACES_SAMPLE_RATE, ENVIRONMENT, APP_VERSION

# Initialize Sentry before FastAPI app
sentry_sdk.init(
    dsn=SENTRY_DSN,
    send_default_pii=False,
    traces_sample_rate=SENTRY_TRACES_SAMPLE_RATE,
    environment=ENVIRONMENT,
    release=f"engagement-counters@{APP_VERSION}",
    integrations=[
        StarletteIntegration(),
        FastApiIntegration(),
    ],
    before_send=filter_transient_errors,
)

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from pydantic import BaseModel, Field
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from prometheus_client import REGISTRY, CollectorRegistry, generate_latest, CONTENT_TYPE_LATEST
from prometheus_client.multiprocess import MultiProcessCollector

from counter_sync import (
    COUNTER_SYNC_JOB,
    run_counter_sync,
    run_scheduled_counter_sync,
    verify_cron_secret,
)
from database import create_engine, create_session_factory
from engagement import LikeEngine
from errors import EngagementError, RateLimited
from job_logger import get_job_logger, get_job_logs
from like_store import LikeRepository
from page_cache import PageCache
from utils.async_redis_utils import AsyncRedisService
from utils.metrics_utils import ACTIVE_REQUESTS, REQUEST_COUNT, REQUEST_LATENCY
from utils.rate_limiter import SlidingWindowRateLimiter
from config import (
    REDIS_CONFIG,
    DATABASE_URL,
    CORS_ORIGINS,
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_HEADERS,
    CRON_SECRET,
    COUNTER_SYNC_INTERVAL,
    ENABLE_INTERNAL_SCHEDULER,
    RATE_LIMIT_LIKE,
    RATE_LIMIT_VIEW,
    RATE_LIMIT_WINDOW,
    RATE_LIMIT_LIKE_PREFIX,
    RATE_LIMIT_VIEW_PREFIX,
    USER_ID_HEADER,
    LOG_LEVEL,
    LOG_FORMAT,
)

logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
logger = logging.getLogger(__name__)

# Global instances (initialized in lifespan)
redis_service: Optional[AsyncRedisService] = None
like_repository: Optional[LikeRepository] = None
like_engine: Optional[LikeEngine] = None
scheduler: Optional[AsyncIOScheduler] = None
db_engine = None


# ============================================================================
# Pydantic Models
# ============================================================================


class LikeResponse(BaseModel):
    liked: bool
    count: int


class ViewResponse(BaseModel):
    video_id: str
    views: int


class WarmupRequest(BaseModel):
    video_ids: List[str] = Field(default_factory=list, max_length=200)


class WarmupResponse(BaseModel):
    warmed: int


class HealthResponse(BaseModel):
    status: str
    timestamp: int
    redis_connected: bool
    scheduler_running: bool
    uptime_seconds: float


# ============================================================================
# Background Jobs
# ============================================================================


async def scheduled_counter_sync():
    """
    Internal fallback for the external cron: runs every COUNTER_SYNC_INTERVAL
    seconds on every worker, but the job lock lets only one of them work.
    """
    try:
        await run_scheduled_counter_sync(redis_service, like_repository)
    except Exception as e:
        logger.error(f"Scheduled counter sync failed: {e}", exc_info=True)
        # Don't raise - let scheduler retry at next interval


def job_listener(event):
    """Listen to job events for monitoring."""
    if event.exception:
        logger.error(f"Job {event.job_id} crashed: {event.exception}")
    else:
        logger.debug(f"Job {event.job_id} executed successfully")


# ============================================================================
# FastAPI App with Async Lifespan
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
    - Connect the Redis pool and create the database engine
    - Build rate limiters, page cache and the like engine
    - Start the internal scheduler when enabled

    Shutdown:
    - Stop scheduler
    - Wait for in-flight durable writes
    - Close Redis pool and database engine
    """
    global redis_service, like_repository, like_engine, scheduler, db_engine

    logger.info("Starting engagement counter service...")

    try:
        redis_service = AsyncRedisService(**REDIS_CONFIG)
        await asyncio.wait_for(redis_service.connect(), timeout=30.0)
        logger.info("Async Redis connection pool established")
    except asyncio.TimeoutError:
        logger.error("Redis connection timeout after 30s - check REDIS_HOST and network")
        raise

    db_engine = create_engine(DATABASE_URL)
    like_repository = LikeRepository(create_session_factory(db_engine))

    like_engine = LikeEngine(
        redis_service,
        like_repository,
        like_limiter=SlidingWindowRateLimiter(
            redis_service, RATE_LIMIT_LIKE, RATE_LIMIT_WINDOW, RATE_LIMIT_LIKE_PREFIX
        ),
        view_limiter=SlidingWindowRateLimiter(
            redis_service, RATE_LIMIT_VIEW, RATE_LIMIT_WINDOW, RATE_LIMIT_VIEW_PREFIX
        ),
        page_cache=PageCache(redis_service),
    )
    logger.info("Like engine initialized")

    if ENABLE_INTERNAL_SCHEDULER:
        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            scheduled_counter_sync,
            "interval",
            seconds=COUNTER_SYNC_INTERVAL,
            id=COUNTER_SYNC_JOB,
            replace_existing=True,
            max_instances=1,  # Prevent concurrent execution
            misfire_grace_time=60,
        )
        scheduler.add_listener(job_listener, EVENT_JOB_ERROR | EVENT_JOB_EXECUTED)
        scheduler.start()
        logger.info(f"Internal counter sync scheduled every {COUNTER_SYNC_INTERVAL}s")
    else:
        logger.info("Internal scheduler disabled - relying on external cron")

    app.state.start_time = time.time()

    yield

    logger.info("Shutting down engagement counter service...")

    if scheduler:
        scheduler.shutdown(wait=True)
        logger.info("Background scheduler stopped")

    if like_engine:
        await like_engine.drain()

    if redis_service:
        await redis_service.close()

    if db_engine:
        await db_engine.dispose()
        logger.info("Database engine disposed")


app = FastAPI(
    title="Engagement Counters API",
    description="Like and view counters with Redis fast path and DB reconciliation",
    version=APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)


# ============================================================================
# Dependencies
# ============================================================================


def get_like_engine() -> LikeEngine:
    return like_engine


def get_redis_service() -> AsyncRedisService:
    return redis_service


def get_like_repository() -> LikeRepository:
    return like_repository


async def get_current_user_id(
    x_user_id: Optional[str] = Header(None, alias=USER_ID_HEADER),
) -> Optional[str]:
    """Signed-in caller as asserted by the site's gateway; None when anonymous."""
    return x_user_id or None


async def verify_cron_caller(authorization: Optional[str] = Header(None)):
    verify_cron_secret(authorization, CRON_SECRET)
    return True


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


# ============================================================================
# API Endpoints
# ============================================================================


@app.api_route("/api/cron/sync-stats", methods=["GET", "POST"])
async def sync_stats(
    authorization: Optional[str] = Header(None),
    service: AsyncRedisService = Depends(get_redis_service),
    repository: LikeRepository = Depends(get_like_repository),
):
    """
    Reconcile Redis like/view counters into the database.

    Called by the external scheduler with ``Authorization: Bearer <CRON_SECRET>``.
    Answers ``{success, duration, stats, timestamp}``, or ``{error, timestamp}``
    with 401 (bad secret) / 500 (misconfigured or failed pass).
    """
    try:
        verify_cron_secret(authorization, CRON_SECRET)
    except EngagementError as e:
        return JSONResponse(
            status_code=e.status_code,
            content={"error": e.message, "timestamp": utc_now_iso()},
        )

    job_logger = get_job_logger(COUNTER_SYNC_JOB, service.client)
    try:
        result = await run_counter_sync(service, repository, job_logger=job_logger)
    except Exception as e:
        job_logger.error(f"Cron sync error: {e}")
        logger.error(f"Cron sync error: {e}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": str(e) or "Sync failed", "timestamp": utc_now_iso()},
        )

    return result.to_response()


@app.post("/videos/{video_id}/like", response_model=LikeResponse)
async def toggle_like(
    video_id: str,
    user_id: Optional[str] = Depends(get_current_user_id),
    engine: LikeEngine = Depends(get_like_engine),
):
    result = await engine.toggle_like(user_id, video_id)
    return LikeResponse(**result.to_dict())


@app.get("/videos/{video_id}/like", response_model=LikeResponse)
async def get_like_status(
    video_id: str,
    user_id: Optional[str] = Depends(get_current_user_id),
    engine: LikeEngine = Depends(get_like_engine),
):
    result = await engine.get_like_status(user_id, video_id)
    return LikeResponse(**result.to_dict())


@app.post("/videos/{video_id}/view", response_model=ViewResponse)
async def record_view(
    video_id: str,
    request: Request,
    engine: LikeEngine = Depends(get_like_engine),
):
    views = await engine.record_view(video_id, _client_ip(request))
    return ViewResponse(video_id=video_id, views=views)


@app.post("/likes/warmup", response_model=WarmupResponse)
async def warmup_likes(
    body: WarmupRequest,
    user_id: Optional[str] = Depends(get_current_user_id),
    engine: LikeEngine = Depends(get_like_engine),
):
    warmed = await engine.warmup_likes_cache(user_id, body.video_ids)
    return WarmupResponse(warmed=warmed)


@app.get("/admin/jobs/{job_name}/logs")
async def job_logs(
    job_name: str,
    limit: int = Query(default=100, ge=1, le=1000),
    _: bool = Depends(verify_cron_caller),
    service: AsyncRedisService = Depends(get_redis_service),
):
    logs = await get_job_logs(service.client, job_name, limit)
    return {"job_name": job_name, "count": len(logs), "logs": logs}


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Health check endpoint.

    ``degraded`` when Redis is unreachable; the scheduler only counts when
    the internal scheduler is enabled.
    """
    redis_connected = await redis_service.verify_connection() if redis_service else False
    scheduler_running = scheduler.running if scheduler else False
    uptime = time.time() - app.state.start_time if hasattr(app.state, "start_time") else 0

    healthy = redis_connected and (scheduler_running or not ENABLE_INTERNAL_SCHEDULER)
    return HealthResponse(
        status="healthy" if healthy else "degraded",
        timestamp=int(time.time()),
        redis_connected=redis_connected,
        scheduler_running=scheduler_running,
        uptime_seconds=uptime,
    )


@app.get("/metrics")
async def metrics():
    """Expose Prometheus metrics, aggregated across workers in multiprocess mode."""
    if "PROMETHEUS_MULTIPROC_DIR" in os.environ:
        registry = CollectorRegistry()
        MultiProcessCollector(registry)
        output = generate_latest(registry)
    else:
        output = generate_latest(REGISTRY)

    return PlainTextResponse(content=output, media_type=CONTENT_TYPE_LATEST)


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "service": "Engagement Counters API",
        "version": APP_VERSION,
        "endpoints": [
            "/api/cron/sync-stats",
            "/videos/{video_id}/like",
            "/videos/{video_id}/view",
            "/likes/warmup",
            "/admin/jobs/{job_name}/logs",
            "/health",
            "/metrics",
        ],
    }


# ============================================================================
# Error Handlers
# ============================================================================


@app.exception_handler(EngagementError)
async def engagement_exception_handler(request: Request, exc: EngagementError):
    """Map engine errors to their status codes with a stable error code."""
    headers = None
    if isinstance(exc, RateLimited) and exc.retry_after:
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation errors with better formatting."""
    return JSONResponse(
        status_code=422,
        content={"error": "validation_error", "details": exc.errors()},
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions with consistent formatting."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail, "path": request.url.path},
    )


# ============================================================================
# Middleware for Request Logging and Prometheus Metrics
# ============================================================================


def _normalize_endpoint(path: str) -> str:
    """
    Replace video ids and job names with placeholders so metric label
    cardinality stays bounded.
    """
    path = re.sub(r"^/videos/[^/]+", "/videos/{video_id}", path)
    path = re.sub(r"^/admin/jobs/[^/]+", "/admin/jobs/{job_name}", path)
    return path


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """
    Middleware for request logging and Prometheus metrics.

    Algorithm:
        1. Skip the /metrics endpoint itself
        2. Track active requests, time the request
        3. Record latency histogram and request counter
        4. Log response at DEBUG level
    """
    if request.url.path == "/metrics":
        return await call_next(request)

    endpoint = _normalize_endpoint(request.url.path)
    ACTIVE_REQUESTS.inc()
    start_time = time.time()

    try:
        response = await call_next(request)
        duration = time.time() - start_time

        REQUEST_COUNT.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=response.status_code,
        ).inc()
        REQUEST_LATENCY.labels(method=request.method, endpoint=endpoint).observe(duration)

        logger.debug(
            f"Response: {request.method} {request.url.path} "
            f"status={response.status_code} duration={duration:.3f}s"
        )

        response.headers["X-Process-Time"] = str(duration)
        return response
    finally:
        ACTIVE_REQUESTS.dec()


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    logger.info("Starting Engagement Counters API")
    logger.info(f"Environment: {ENVIRONMENT}")
    logger.info(f"Redis Host: {REDIS_CONFIG['host']}")

    uvicorn.run(
        "api_server:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        workers=2,
        reload=False,
        log_level=LOG_LEVEL.lower(),
    )

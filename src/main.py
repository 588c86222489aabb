"""
Farm Imagery Acquisition Service - Main Application

FastAPI application with:
- API versioning (/api/v1/)
- Structured logging with structlog
- Prometheus metrics
- Global exception handling
- Celery (production) or in-process (local) fetch job queue
"""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import redis.asyncio as redis

from src.core.config import settings
from src.core.database import Database
from src.core.logging import setup_logging, get_logger
from src.core.exceptions import register_exception_handlers
from src.core.metrics import set_app_info, http_requests_total, http_request_duration_seconds
from src.core.storage import build_storage
from src.api.v1 import api_v1_router
from src.pipeline.queue import InMemoryJobQueue, JobHandler, JobQueue
from src.pipeline.sentinel import build_providers
from src.pipeline.tasks import build_celery_queue, build_retry_policy, register_job_listeners
from src.pipeline.worker import AcquisitionParams, AcquisitionWorker


# =============================================================================
# Initialize Logging
# =============================================================================
setup_logging(
    log_level=settings.LOG_LEVEL,
    json_format=settings.LOG_FORMAT_JSON
)
logger = get_logger(__name__)

# Seconds between drains of the in-process queue
IN_MEMORY_POLL_INTERVAL = 1.0


async def drain_in_memory_queue(queue: InMemoryJobQueue, handler: JobHandler):
    """Run queued jobs in the API process (QUEUE_BACKEND=memory)."""
    while True:
        await queue.dispatch(handler)
        await asyncio.sleep(IN_MEMORY_POLL_INTERVAL)


def create_app(
    database: Optional[Database] = None,
    job_queue: Optional[JobQueue] = None
) -> FastAPI:
    """
    Build the FastAPI application.

    Injected ``database`` / ``job_queue`` are used as-is and not closed on
    shutdown; anything missing is built from settings in the lifespan.
    """

    # =========================================================================
    # Lifespan Handler
    # =========================================================================
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler - startup and shutdown."""
        startup_start = time.time()

        logger.info(
            "application_starting",
            app_name=settings.APP_NAME,
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            queue_backend=settings.QUEUE_BACKEND
        )

        owned_database = None
        if app.state.database is None:
            owned_database = Database(settings.DATABASE_URL, echo=settings.DEBUG)
            app.state.database = owned_database
        await app.state.database.create_all()
        logger.info("database_initialized")

        owned_queue = None
        drain_task = None
        storage = None
        if app.state.job_queue is None:
            if settings.QUEUE_BACKEND == "memory":
                owned_queue = InMemoryJobQueue(build_retry_policy(settings), sleep=asyncio.sleep)
                storage = build_storage(settings)
                auth, imagery = build_providers(settings)
                worker = AcquisitionWorker(
                    database=app.state.database,
                    auth=auth,
                    imagery=imagery,
                    storage=storage,
                    params=AcquisitionParams.from_settings(settings)
                )
                drain_task = asyncio.create_task(drain_in_memory_queue(owned_queue, worker.handle))
            else:
                owned_queue = build_celery_queue(settings)
                # Broker connection used by the readiness probe
                app.state.redis = redis.from_url(
                    settings.REDIS_URL,
                    encoding="utf-8",
                    decode_responses=True
                )
                logger.info("redis_connected", url=settings.REDIS_URL)
            register_job_listeners(owned_queue.events)
            app.state.job_queue = owned_queue

        # Set Prometheus app info
        set_app_info(
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT
        )

        startup_time = time.time() - startup_start
        logger.info("application_ready", startup_time_seconds=startup_time)

        yield

        # Shutdown
        logger.info("application_shutting_down")
        if drain_task is not None:
            drain_task.cancel()
            try:
                await drain_task
            except asyncio.CancelledError:
                pass
        if owned_queue is not None:
            await owned_queue.close()
        if storage is not None:
            await storage.close()
        if app.state.redis is not None:
            await app.state.redis.aclose()
        if owned_database is not None:
            await owned_database.dispose()
        logger.info("application_shutdown_complete")

    # =========================================================================
    # Create FastAPI Application
    # =========================================================================
    app = FastAPI(
        title=settings.APP_NAME,
        description="""
        Farm satellite imagery acquisition service:

        - **Coordinate ingestion**: idempotent per (farm, clientEventId)
        - **Offline sync**: batch replay with per-event results
        - **Acquisition pipeline**: Sentinel-2 true-colour TIFFs to blob storage
        - **Observability**: Structured logging, Prometheus metrics

        All endpoints are versioned under `/api/v1/`. Callers identify
        themselves with the `X-User-Id` header.
        """,
        version=settings.APP_VERSION,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json"
    )
    app.state.database = database
    app.state.job_queue = job_queue
    app.state.redis = None

    # =========================================================================
    # Middleware
    # =========================================================================

    # CORS
    cors_origins = settings.CORS_ORIGINS.split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request timing middleware
    @app.middleware("http")
    async def add_request_timing(request: Request, call_next):
        """Track request timing for metrics."""
        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time

        # Route template keeps label cardinality bounded
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint
        ).observe(duration)

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status=response.status_code
        ).inc()

        response.headers["X-Process-Time"] = str(duration)
        return response

    # =========================================================================
    # Exception Handlers & Routers
    # =========================================================================
    register_exception_handlers(app)
    app.include_router(api_v1_router)

    # =========================================================================
    # Root Endpoints
    # =========================================================================

    @app.get("/", tags=["root"])
    async def root():
        """Root endpoint with API information."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "docs": "/api/docs",
            "api_v1": "/api/v1",
            "metrics": "/api/v1/metrics"
        }

    @app.get("/health", tags=["health"])
    async def health():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": settings.APP_VERSION
        }

    @app.get("/ready", tags=["health"])
    async def ready(request: Request):
        """Readiness check - verifies dependencies are available."""
        checks = {"database": False}

        try:
            await request.app.state.database.ping()
            checks["database"] = True
        except Exception as e:
            logger.warning("readiness_check_failed", dependency="database", error=str(e))

        if request.app.state.redis is not None:
            checks["redis"] = False
            try:
                await request.app.state.redis.ping()
                checks["redis"] = True
            except Exception as e:
                logger.warning("readiness_check_failed", dependency="redis", error=str(e))

        all_ready = all(checks.values())
        return JSONResponse(
            status_code=200 if all_ready else 503,
            content={"ready": all_ready, "checks": checks}
        )

    return app


app = create_app()


# =============================================================================
# Development Server
# =============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "src.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )

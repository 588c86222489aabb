"""
Celery Tasks for the Imagery Acquisition Pipeline

Each pool process owns one ``WorkerRuntime``: an event loop plus the
database handle, blob storage, Sentinel providers and acquisition worker.
It is built when the process starts and closed when it stops, so
connections are never shared across forked processes.

Retries are driven by ``execute_attempt``: a ``RetryRequested`` becomes
``self.retry`` with the policy's backoff, anything else ends the task.
"""

import asyncio
from typing import Any, Dict, Optional

from celery.signals import worker_process_init, worker_process_shutdown

from src.core.celery_app import celery_app
from src.core.config import Settings, settings
from src.core.database import Database
from src.core.logging import get_logger, setup_logging, set_job_context, clear_job_context
from src.core.metrics import record_job_completion
from src.core.storage import build_storage
from src.pipeline.queue import (
    CeleryJobQueue,
    FetchImageJob,
    QueueEvents,
    RetryPolicy,
    RetryRequested,
    execute_attempt,
)
from src.pipeline.sentinel import build_providers
from src.pipeline.worker import AcquisitionParams, AcquisitionWorker

logger = get_logger(__name__)


def build_retry_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.FETCH_MAX_ATTEMPTS,
        backoff=settings.FETCH_BACKOFF_STRATEGY,
        delay_seconds=settings.FETCH_BACKOFF_DELAY_SECONDS
    )


def log_job_completed(job: FetchImageJob, result: Any = None, attempts: int = 0):
    record_job_completion("completed")
    logger.info(
        "fetch_job_completed",
        coordinate_id=job.coordinate_id,
        attempts=attempts,
        result=result
    )


def log_job_failed(job: FetchImageJob, error: Optional[BaseException] = None, attempts: int = 0):
    record_job_completion("failed")
    logger.error(
        "fetch_job_failed",
        coordinate_id=job.coordinate_id,
        attempts=attempts,
        error=str(error),
        error_type=type(error).__name__ if error else None
    )


def register_job_listeners(events: QueueEvents):
    """Attach the logging + metrics listeners to a queue's events."""
    events.on(QueueEvents.COMPLETED, log_job_completed)
    events.on(QueueEvents.FAILED, log_job_failed)


class WorkerRuntime:
    """Per-process resources for running fetch jobs."""

    def __init__(self, settings: Settings):
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)

        self.database = Database(settings.DATABASE_URL, echo=settings.DEBUG)
        self.storage = build_storage(settings)
        auth, imagery = build_providers(settings)
        self.worker = AcquisitionWorker(
            database=self.database,
            auth=auth,
            imagery=imagery,
            storage=self.storage,
            params=AcquisitionParams.from_settings(settings)
        )

        self.retry_policy = build_retry_policy(settings)
        self.events = QueueEvents()
        register_job_listeners(self.events)

    def run(self, coro):
        return self.loop.run_until_complete(coro)

    def close(self):
        try:
            self.run(self.storage.close())
            self.run(self.database.dispose())
        finally:
            self.loop.close()


_runtime: Optional[WorkerRuntime] = None


def get_runtime() -> WorkerRuntime:
    """Runtime of the current process, built on first use outside a pool."""
    global _runtime
    if _runtime is None:
        _runtime = WorkerRuntime(settings)
    return _runtime


@worker_process_init.connect
def init_worker_process(**kwargs):
    global _runtime
    setup_logging(log_level=settings.LOG_LEVEL, json_format=settings.LOG_FORMAT_JSON)
    _runtime = WorkerRuntime(settings)
    logger.info("worker_process_started", queue=settings.FETCH_QUEUE_NAME)


@worker_process_shutdown.connect
def shutdown_worker_process(**kwargs):
    global _runtime
    if _runtime is None:
        return
    logger.info("worker_process_stopping")
    _runtime.close()
    _runtime = None


# =============================================================================
# Fetch Task
# =============================================================================

@celery_app.task(
    bind=True,
    name="src.pipeline.tasks.fetch_coordinate_image",
    acks_late=True
)
def fetch_coordinate_image(self, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Celery task for fetching the satellite image of one coordinate.

    Args:
        payload: ``FetchImageJob`` in its camelCase wire form

    Returns:
        {"imageId": ...}
    """
    job = FetchImageJob.model_validate(payload)
    runtime = get_runtime()
    attempt = self.request.retries + 1
    set_job_context(self.request.id, coordinate_id=job.coordinate_id, stage="start")

    try:
        logger.info("fetch_job_started", attempt=attempt)
        return runtime.run(
            execute_attempt(
                runtime.worker.handle,
                job,
                attempt,
                runtime.retry_policy,
                runtime.events
            )
        )
    except RetryRequested as retry:
        raise self.retry(
            exc=retry.cause,
            countdown=retry.delay,
            max_retries=runtime.retry_policy.max_attempts - 1
        )
    finally:
        clear_job_context()


def build_celery_queue(settings: Settings) -> CeleryJobQueue:
    """Queue handle the API uses to enqueue fetch jobs."""
    return CeleryJobQueue(
        fetch_coordinate_image,
        queue_name=settings.FETCH_QUEUE_NAME,
        retry_policy=build_retry_policy(settings)
    )

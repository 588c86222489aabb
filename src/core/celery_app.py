"""
Celery Application Configuration

Configures Celery with:
- Task routing to the imagery queue
- Late acknowledgement so an interrupted job is redelivered
- One job at a time per pool process
"""

from celery import Celery
from kombu import Queue

from src.core.config import settings

# Create Celery app
celery_app = Celery(
    "farm_imagery",
    broker=settings.CELERY_BROKER_URL or settings.REDIS_URL,
    backend=settings.CELERY_RESULT_BACKEND or settings.REDIS_URL,
    include=[
        "src.pipeline.tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task tracking
    task_track_started=True,
    task_time_limit=300,  # 5 minute hard limit per attempt
    task_soft_time_limit=240,  # 4 minute soft limit

    # Result expiration
    result_expires=86400,  # 24 hours

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.WORKER_CONCURRENCY,

    # Queue definitions
    task_default_queue=settings.FETCH_QUEUE_NAME,
    task_queues=(
        Queue(settings.FETCH_QUEUE_NAME, routing_key=f"{settings.FETCH_QUEUE_NAME}.#"),
    ),

    # Task routing
    task_routes={
        "src.pipeline.tasks.fetch_coordinate_image": {"queue": settings.FETCH_QUEUE_NAME},
    },

    # Late acknowledgment for reliability
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

import asyncio
import pytest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

from celery.exceptions import Retry
from prometheus_client import REGISTRY

from src.core.config import Settings
from src.core.exceptions import ExhaustedRetriesError, NotFoundError, ProviderError
from src.pipeline import tasks
from src.pipeline.queue import FetchImageJob, QueueEvents, RetryPolicy

PAYLOAD = {"coordinateId": "c-1", "farmId": "f-1", "lat": 12.97, "lng": 77.59}


def _jobs_total(status: str) -> float:
    return REGISTRY.get_sample_value("fetch_jobs_total", {"status": status}) or 0.0


class FakeRuntime:
    """Stands in for WorkerRuntime without database or network."""

    def __init__(self, handler, policy=None):
        self.worker = SimpleNamespace(handle=handler)
        self.retry_policy = policy or RetryPolicy(max_attempts=3)
        self.events = QueueEvents()

    def run(self, coro):
        loop = asyncio.new_event_loop()
        try:
            return loop.run_until_complete(coro)
        finally:
            loop.close()


def test_retry_policy_from_settings():
    settings = Settings(FETCH_MAX_ATTEMPTS=3, FETCH_BACKOFF_STRATEGY="fixed", FETCH_BACKOFF_DELAY_SECONDS=2.0)

    policy = tasks.build_retry_policy(settings)

    assert policy.max_attempts == 3
    assert policy.backoff_delay(2) == 2.0


def test_fetch_task_runs_handler_with_parsed_job(monkeypatch):
    handler = AsyncMock(return_value={"imageId": "img-1"})
    runtime = FakeRuntime(handler)
    completed = MagicMock()
    runtime.events.on(QueueEvents.COMPLETED, completed)
    monkeypatch.setattr(tasks, "get_runtime", lambda: runtime)

    result = tasks.fetch_coordinate_image(payload=PAYLOAD)

    assert result == {"imageId": "img-1"}
    job = handler.await_args.args[0]
    assert isinstance(job, FetchImageJob)
    assert job.coordinate_id == "c-1"
    completed.assert_called_once()


def test_fetch_task_does_not_retry_permanent_errors(monkeypatch):
    handler = AsyncMock(side_effect=NotFoundError("Coordinate", "c-1"))
    runtime = FakeRuntime(handler)
    monkeypatch.setattr(tasks, "get_runtime", lambda: runtime)

    with pytest.raises(NotFoundError):
        tasks.fetch_coordinate_image(payload=PAYLOAD)

    handler.assert_awaited_once()


def test_job_listeners_record_outcomes():
    events = QueueEvents()
    tasks.register_job_listeners(events)
    job = FetchImageJob.model_validate(PAYLOAD)

    before = _jobs_total("completed"), _jobs_total("failed")

    events.emit(QueueEvents.COMPLETED, job, result={"imageId": "img-1"}, attempts=1)
    events.emit(QueueEvents.FAILED, job, error=RuntimeError("boom"), attempts=5)

    assert _jobs_total("completed") == before[0] + 1
    assert _jobs_total("failed") == before[1] + 1


def run_task_as_redelivery(retries: int):
    """Run the task body with a request that has already been retried ``retries`` times."""
    task = tasks.fetch_coordinate_image
    task.push_request(id="task-1", retries=retries)
    try:
        return task.run(payload=PAYLOAD)
    finally:
        task.pop_request()


def test_fetch_task_schedules_retry_with_policy_backoff(monkeypatch):
    handler = AsyncMock(side_effect=ProviderError("HTTP 503", service="sentinel_hub", http_status=503))
    runtime = FakeRuntime(handler, RetryPolicy(max_attempts=3, delay_seconds=5))
    monkeypatch.setattr(tasks, "get_runtime", lambda: runtime)
    retry_calls = []

    def fake_retry(exc=None, countdown=None, max_retries=None):
        retry_calls.append({"exc": exc, "countdown": countdown, "max_retries": max_retries})
        return Retry(exc=exc, when=countdown)

    monkeypatch.setattr(tasks.fetch_coordinate_image, "retry", fake_retry)

    with pytest.raises(Retry):
        run_task_as_redelivery(retries=1)

    # Second delivery: exponential backoff 5 * 2**(2-1)
    assert retry_calls[0]["countdown"] == 10.0
    assert retry_calls[0]["max_retries"] == 2
    assert isinstance(retry_calls[0]["exc"], ProviderError)
    assert handler.await_args.kwargs["final_attempt"] is False


def test_fetch_task_last_delivery_exhausts_retries(monkeypatch):
    handler = AsyncMock(side_effect=ProviderError("HTTP 503", service="sentinel_hub", http_status=503))
    runtime = FakeRuntime(handler, RetryPolicy(max_attempts=3, delay_seconds=5))
    failed = MagicMock()
    runtime.events.on(QueueEvents.FAILED, failed)
    monkeypatch.setattr(tasks, "get_runtime", lambda: runtime)
    retry = MagicMock()
    monkeypatch.setattr(tasks.fetch_coordinate_image, "retry", retry)

    with pytest.raises(ExhaustedRetriesError) as exc_info:
        run_task_as_redelivery(retries=2)

    assert exc_info.value.details["attempts"] == 3
    assert handler.await_args.kwargs["final_attempt"] is True
    retry.assert_not_called()
    failed.assert_called_once()

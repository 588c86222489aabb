"""
Job Queue Contract

Durable, at-least-once delivery of fetch jobs with queue-level retry:

- ``FetchImageJob`` is the payload: a snapshot of the coordinate that is
  enough to redo the fetch without re-reading it first.
- ``RetryPolicy`` holds the attempt limit and backoff schedule.
- ``execute_attempt`` runs one delivery of a job and decides whether the
  failure is redelivered, is permanent, or exhausted the attempts.
- ``CeleryJobQueue`` is the production backend (Redis broker);
  ``InMemoryJobQueue`` runs the same attempt logic in-process for tests
  and local development.

Both backends emit ``completed`` / ``failed`` notifications through
``QueueEvents`` for observability.
"""

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.core.exceptions import EnqueueError, ExhaustedRetriesError, is_retryable
from src.core.logging import get_logger, LogContext

logger = get_logger(__name__)


# =============================================================================
# Payload & Policy
# =============================================================================

class FetchImageJob(BaseModel):
    """Queue payload instructing the worker to fetch imagery for one coordinate."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    coordinate_id: str
    farm_id: str
    lat: float
    lng: float

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class RetryPolicy(BaseModel):
    """Attempt limit and backoff schedule for a job."""
    max_attempts: int = Field(default=5, ge=1)
    backoff: str = Field(default="exponential", pattern="^(exponential|fixed)$")
    delay_seconds: float = Field(default=5.0, ge=0)

    def is_final(self, attempt: int) -> bool:
        return attempt >= self.max_attempts

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait before the delivery that follows ``attempt`` (1-based)."""
        if self.backoff == "fixed":
            return self.delay_seconds
        # Exponential: 5, 10, 20, 40 ... seconds
        return self.delay_seconds * (2 ** (attempt - 1))


class RetryRequested(Exception):
    """Raised by ``execute_attempt`` when the job should be redelivered later."""

    def __init__(self, delay: float, cause: BaseException):
        self.delay = delay
        self.cause = cause
        super().__init__(f"Retry in {delay}s: {cause}")


# Handler signature: await handler(job, final_attempt=bool)
JobHandler = Callable[..., Awaitable[Any]]


# =============================================================================
# Notifications
# =============================================================================

class QueueEvents:
    """Listener registry for job outcome notifications."""

    COMPLETED = "completed"
    FAILED = "failed"

    def __init__(self):
        self._listeners: Dict[str, List[Callable[..., None]]] = {
            self.COMPLETED: [],
            self.FAILED: [],
        }

    def on(self, event: str, listener: Callable[..., None]):
        if event not in self._listeners:
            raise ValueError(f"Unknown queue event: {event}")
        self._listeners[event].append(listener)

    def emit(self, event: str, job: FetchImageJob, **info: Any):
        for listener in self._listeners[event]:
            try:
                listener(job, **info)
            except Exception:
                # A broken listener must not change the job outcome
                logger.exception("queue_listener_failed", queue_event=event)


async def execute_attempt(
    handler: JobHandler,
    job: FetchImageJob,
    attempt: int,
    policy: RetryPolicy,
    events: Optional[QueueEvents] = None
) -> Any:
    """
    Run one delivery attempt of ``job``.

    Returns the handler result on success. On failure:
    - retryable error with attempts left -> ``RetryRequested``
    - retryable error on the final attempt -> ``ExhaustedRetriesError``
    - non-retryable error -> re-raised as is
    """
    final = policy.is_final(attempt)

    try:
        result = await handler(job, final_attempt=final)
    except Exception as exc:
        retryable = is_retryable(exc)

        if retryable and not final:
            delay = policy.backoff_delay(attempt)
            logger.warning(
                "fetch_job_attempt_failed",
                coordinate_id=job.coordinate_id,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                retry_in_seconds=delay,
                error=str(exc),
                error_type=type(exc).__name__
            )
            raise RetryRequested(delay, exc) from exc

        if events:
            events.emit(QueueEvents.FAILED, job, error=exc, attempts=attempt)

        if retryable:
            raise ExhaustedRetriesError(
                f"Fetch job for coordinate {job.coordinate_id} failed after {attempt} attempts: {exc}",
                attempts=attempt
            ) from exc
        raise

    if events:
        events.emit(QueueEvents.COMPLETED, job, result=result, attempts=attempt)
    return result


# =============================================================================
# Queue Backends
# =============================================================================

class JobQueue(ABC):
    """Interface the ingestion service uses to hand off fetch jobs."""

    def __init__(self, retry_policy: Optional[RetryPolicy] = None, events: Optional[QueueEvents] = None):
        self.retry_policy = retry_policy or RetryPolicy()
        self.events = events or QueueEvents()

    def on(self, event: str, listener: Callable[..., None]):
        self.events.on(event, listener)

    @abstractmethod
    async def enqueue(self, job: FetchImageJob) -> str:
        """
        Durably enqueue ``job`` and return the queue's job id.

        Raises:
            EnqueueError: the broker did not accept the job.
        """
        pass

    async def close(self):
        """Release broker connections."""
        pass


class CeleryJobQueue(JobQueue):
    """Enqueue fetch jobs as Celery tasks on the imagery queue."""

    def __init__(self, task, queue_name: str, retry_policy: Optional[RetryPolicy] = None):
        super().__init__(retry_policy)
        self.task = task
        self.queue_name = queue_name

    async def enqueue(self, job: FetchImageJob) -> str:
        try:
            # apply_async blocks on the broker round-trip
            result = await asyncio.to_thread(
                self.task.apply_async,
                kwargs={"payload": job.to_payload()},
                queue=self.queue_name
            )
        except Exception as e:
            raise EnqueueError(f"Failed to enqueue fetch job: {e}") from e
        return str(result.id)

    async def close(self):
        self.task.app.close()


class JobOutcome(BaseModel):
    """Final result of one job drained by ``InMemoryJobQueue``."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    job_id: str
    job: FetchImageJob
    status: str  # completed, failed
    attempts: int
    result: Any = None
    error: Optional[BaseException] = None


class _Delivery(NamedTuple):
    job_id: str
    job: FetchImageJob
    attempt: int
    not_before: float


class InMemoryJobQueue(JobQueue):
    """
    In-process queue that applies the same retry policy as Celery.

    ``dispatch`` drains the queue, redelivering failed jobs until they
    succeed or run out of attempts. A redelivery is scheduled ``delay``
    seconds out and jobs that are already due run first, so one job's
    backoff never holds up the others. Backoff delays are recorded in
    ``delays``; ``sleep`` is only awaited when nothing is due yet.
    """

    def __init__(
        self,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        super().__init__(retry_policy)
        self._sleep = sleep
        self._clock = clock
        self.pending: List[_Delivery] = []
        self.enqueued: List[FetchImageJob] = []
        self.delays: List[float] = []

    async def enqueue(self, job: FetchImageJob) -> str:
        job_id = str(uuid.uuid4())
        self.pending.append(_Delivery(job_id, job, 1, self._clock()))
        self.enqueued.append(job)
        logger.info("fetch_job_enqueued", job_id=job_id, coordinate_id=job.coordinate_id)
        return job_id

    def _pop_due(self) -> Optional[_Delivery]:
        now = self._clock()
        for index, delivery in enumerate(self.pending):
            if delivery.not_before <= now:
                return self.pending.pop(index)
        return None

    async def _next_delivery(self) -> _Delivery:
        delivery = self._pop_due()
        if delivery is not None:
            return delivery

        earliest = min(self.pending, key=lambda d: d.not_before)
        wait = earliest.not_before - self._clock()
        if self._sleep is not None and wait > 0:
            await self._sleep(wait)
        # Anything enqueued while waiting goes first
        delivery = self._pop_due()
        if delivery is not None:
            return delivery
        self.pending.remove(earliest)
        return earliest

    async def dispatch(self, handler: JobHandler) -> List[JobOutcome]:
        """Process every pending job, including redeliveries."""
        outcomes = []

        while self.pending:
            job_id, job, attempt, _ = await self._next_delivery()

            with LogContext(job_id=job_id, coordinate_id=job.coordinate_id):
                try:
                    result = await execute_attempt(handler, job, attempt, self.retry_policy, self.events)
                except RetryRequested as retry:
                    self.delays.append(retry.delay)
                    self.pending.append(
                        _Delivery(job_id, job, attempt + 1, self._clock() + retry.delay)
                    )
                    continue
                except Exception as e:
                    logger.error(
                        "fetch_job_failed",
                        attempts=attempt,
                        error=str(e),
                        error_type=type(e).__name__
                    )
                    outcomes.append(JobOutcome(
                        job_id=job_id, job=job, status="failed", attempts=attempt, error=e
                    ))
                    continue

                outcomes.append(JobOutcome(
                    job_id=job_id, job=job, status="completed", attempts=attempt, result=result
                ))

        return outcomes

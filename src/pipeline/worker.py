"""
Acquisition Worker

Consumes one ``FetchImageJob`` delivery:

    fetching -> token -> fetch image -> upload -> Image record -> fetched
             -> post-process -> processed

Each status write commits on its own. Errors propagate to the job queue,
which owns retry decisions; the worker only marks the coordinate
``failed`` when told this is the final attempt or the error can never
succeed on redelivery.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from src.core.config import Settings
from src.core.database import Database
from src.core.exceptions import (
    InvalidStatusTransitionError,
    NotFoundError,
    StorageError,
    is_retryable,
)
from src.core.logging import get_logger, set_stage
from src.core.metrics import track_stage_latency
from src.core.storage import IStorage
from src.modules.coordinates.models import Coordinate, CoordinateStatus
from src.modules.coordinates.repositories import CoordinateStore
from src.modules.imagery.models import BoundingBox, Image, TimeRange
from src.modules.imagery.repositories import ImageStore
from src.pipeline.queue import FetchImageJob
from src.pipeline.sentinel import ImageryAuthProvider, ImageryProvider

logger = get_logger(__name__)

# Hook run between fetched and processed
PostProcessor = Callable[[Coordinate, Optional[Image]], Awaitable[None]]


async def no_post_processing(coordinate: Coordinate, image: Optional[Image]) -> None:
    return None


class AcquisitionParams(BaseModel):
    """Imagery search parameters applied to every coordinate."""
    padding_degrees: float = 0.1
    time_window_days: int = 30
    max_cloud_coverage: int = 20

    @classmethod
    def from_settings(cls, settings: Settings) -> "AcquisitionParams":
        return cls(
            padding_degrees=settings.BBOX_PADDING_DEGREES,
            time_window_days=settings.TIME_WINDOW_DAYS,
            max_cloud_coverage=settings.MAX_CLOUD_COVERAGE,
        )


def build_image_key(farm_id: str, coordinate_id: str, at: datetime) -> str:
    """Blob key: satellites/farm-{farmId}/{coordinateId}-{epochMillis}.tiff"""
    epoch_millis = int(at.timestamp() * 1000)
    return f"satellites/farm-{farm_id}/{coordinate_id}-{epoch_millis}.tiff"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@asynccontextmanager
async def _datastore_errors(action: str):
    try:
        yield
    except SQLAlchemyError as e:
        raise StorageError(f"Datastore error while trying to {action}: {e}") from e


class AcquisitionWorker:
    """Runs the fetch pipeline for a single coordinate per call."""

    def __init__(
        self,
        database: Database,
        auth: ImageryAuthProvider,
        imagery: ImageryProvider,
        storage: IStorage,
        params: Optional[AcquisitionParams] = None,
        clock: Callable[[], datetime] = _utcnow,
        post_process: PostProcessor = no_post_processing
    ):
        self.database = database
        self.auth = auth
        self.imagery = imagery
        self.storage = storage
        self.params = params or AcquisitionParams()
        self.clock = clock
        self.post_process = post_process

    async def handle(self, job: FetchImageJob, final_attempt: bool = True) -> Dict[str, Any]:
        """
        Process one delivery of ``job``.

        Args:
            job: Queue payload for the coordinate
            final_attempt: No redelivery follows if this attempt fails

        Returns:
            {"imageId": ...} of the linked image

        Raises:
            NotFoundError: the coordinate does not exist
            AuthError / ProviderError / StorageError: a pipeline step failed
        """
        async with self.database.session() as session:
            coordinates = CoordinateStore(session)
            images = ImageStore(session)

            async with _datastore_errors("load coordinate"):
                coordinate = await coordinates.find_by_id(job.coordinate_id)
            if coordinate is None:
                raise NotFoundError("Coordinate", job.coordinate_id)

            status = coordinate.status_enum
            if status.is_terminal:
                # Redelivery of work that already finished
                logger.info(
                    "fetch_job_already_finished",
                    coordinate_id=coordinate.id,
                    status=status.value
                )
                return {"imageId": coordinate.fetched_image_id}

            try:
                image: Optional[Image] = None
                if status == CoordinateStatus.FETCHED:
                    logger.info("fetch_job_resuming_post_processing", coordinate_id=coordinate.id)
                    if coordinate.fetched_image_id:
                        async with _datastore_errors("load image"):
                            image = await images.find_by_id(coordinate.fetched_image_id)
                else:
                    set_stage("mark_fetching")
                    async with _datastore_errors("mark coordinate fetching"):
                        coordinate = await coordinates.update_status(coordinate.id, CoordinateStatus.FETCHING)
                    coordinate, image = await self._acquire(job, coordinate, coordinates, images)

                coordinate = await self._finish(coordinate, image, coordinates)
            except InvalidStatusTransitionError:
                # A concurrent delivery may have finished the coordinate first
                finished = await self._reload_finished(session, coordinates, job.coordinate_id)
                if finished is None:
                    raise
                logger.info(
                    "fetch_job_superseded",
                    coordinate_id=finished.id,
                    status=finished.status
                )
                return {"imageId": finished.fetched_image_id}
            except Exception as exc:
                await self._record_failure(session, coordinates, job, exc, final_attempt)
                raise

        logger.info(
            "fetch_job_succeeded",
            coordinate_id=coordinate.id,
            image_id=coordinate.fetched_image_id
        )
        return {"imageId": coordinate.fetched_image_id}

    async def _acquire(
        self,
        job: FetchImageJob,
        coordinate: Coordinate,
        coordinates: CoordinateStore,
        images: ImageStore
    ):
        """Token, fetch, upload and record. Leaves the coordinate ``fetched``."""
        bbox = BoundingBox.around(job.lat, job.lng, self.params.padding_degrees)
        now = self.clock()
        time_range = TimeRange.last_days(self.params.time_window_days, now=now)

        set_stage("auth")
        with track_stage_latency("auth"):
            token = await self.auth.get_token()

        set_stage("fetch_image")
        with track_stage_latency("fetch_image"):
            image_bytes = await self.imagery.fetch_image(
                token, bbox, time_range, self.params.max_cloud_coverage
            )

        set_stage("upload")
        key = build_image_key(job.farm_id, coordinate.id, now)
        with track_stage_latency("upload"):
            stored = await self.storage.upload(image_bytes, key, content_type="image/tiff")

        set_stage("record_image")
        async with _datastore_errors("record image"):
            image = await images.create(
                key=stored.key,
                bbox=bbox,
                meta={
                    "uploadedAt": now.isoformat(),
                    "size": len(image_bytes),
                    "location": stored.location,
                }
            )
            coordinate = await coordinates.update_status(
                coordinate.id,
                CoordinateStatus.FETCHED,
                fetched_image_id=image.id
            )

        logger.info("image_recorded", image_id=image.id, key=stored.key, size=len(image_bytes))
        return coordinate, image

    async def _finish(
        self,
        coordinate: Coordinate,
        image: Optional[Image],
        coordinates: CoordinateStore
    ) -> Coordinate:
        set_stage("post_process")
        with track_stage_latency("post_process"):
            await self.post_process(coordinate, image)

        async with _datastore_errors("mark coordinate processed"):
            return await coordinates.update_status(
                coordinate.id,
                CoordinateStatus.PROCESSED,
                processed_at=self.clock()
            )

    async def _reload_finished(
        self,
        session,
        coordinates: CoordinateStore,
        coordinate_id: str
    ) -> Optional[Coordinate]:
        """The coordinate if it is already in a terminal status, else None."""
        async with _datastore_errors("reload coordinate"):
            await session.rollback()
            current = await coordinates.find_by_id(coordinate_id)
        if current is not None and current.status_enum.is_terminal:
            return current
        return None

    async def _record_failure(
        self,
        session,
        coordinates: CoordinateStore,
        job: FetchImageJob,
        exc: Exception,
        final_attempt: bool
    ):
        """
        Log a step failure and mark the coordinate ``failed`` when no
        redelivery will follow. Never raises: the caller re-raises ``exc``.
        """
        retryable = is_retryable(exc)
        logger.error(
            "fetch_job_step_failed",
            coordinate_id=job.coordinate_id,
            error=str(exc),
            error_type=type(exc).__name__,
            retryable=retryable,
            final_attempt=final_attempt
        )

        if retryable and not final_attempt:
            # Left as is; the next delivery continues from there
            return

        try:
            await session.rollback()
            current = await coordinates.find_by_id(job.coordinate_id)
            if current is None or current.status_enum.is_terminal:
                logger.warning(
                    "coordinate_not_marked_failed",
                    coordinate_id=job.coordinate_id,
                    status=current.status if current else None
                )
                return
            await coordinates.update_status(job.coordinate_id, CoordinateStatus.FAILED)
        except Exception:
            logger.exception(
                "coordinate_failure_not_recorded",
                coordinate_id=job.coordinate_id,
                original_error_type=type(exc).__name__
            )

"""
Coordinate Ingestion Service

Admits coordinate submissions:

1. Validate the event
2. Check the caller owns the farm
3. Return the existing coordinate for a repeated (farm, clientEventId)
4. Otherwise commit a ``queued`` coordinate, then enqueue one fetch job

The commit always happens before the enqueue so a worker that picks the
job up immediately finds the row. A failed enqueue leaves the row
``queued`` and is reported to the caller, never retried here.
"""

import math
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from src.core.exceptions import (
    AcquisitionBaseException,
    EnqueueError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from src.core.logging import get_logger
from src.core.metrics import record_submission
from src.modules.coordinates.models import Coordinate
from src.modules.coordinates.repositories import CoordinateStore
from src.modules.farms.models import Farm
from src.modules.farms.repositories import FarmStore
from src.modules.imagery.models import Image
from src.modules.imagery.repositories import ImageStore
from src.pipeline.queue import FetchImageJob, JobQueue

logger = get_logger(__name__)

LAT_RANGE = (-90.0, 90.0)
LNG_RANGE = (-180.0, 180.0)


def _require_number(field: str, value: Any, required: bool = True) -> Optional[float]:
    if value is None:
        if required:
            raise ValidationError(f"{field} is required", field=field)
        return None
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{field} must be a number", field=field)
    if not math.isfinite(value):
        raise ValidationError(f"{field} must be a finite number", field=field)
    return float(value)


def validate_event(
    client_event_id: Any,
    lat: Any,
    lng: Any,
    accuracy: Any = None,
    enforce_range: bool = False
) -> Tuple[str, float, float, Optional[float]]:
    """
    Check a submission and return its normalized values.

    Zero is a valid latitude/longitude. Range checks only apply when
    ``enforce_range`` is set.

    Raises:
        ValidationError: a field is missing or malformed
    """
    if not isinstance(client_event_id, str) or not client_event_id.strip():
        raise ValidationError("clientEventId is required", field="clientEventId")

    lat_value = _require_number("lat", lat)
    lng_value = _require_number("lng", lng)
    accuracy_value = _require_number("accuracy", accuracy, required=False)

    if enforce_range:
        if not LAT_RANGE[0] <= lat_value <= LAT_RANGE[1]:
            raise ValidationError("lat must be between -90 and 90", field="lat")
        if not LNG_RANGE[0] <= lng_value <= LNG_RANGE[1]:
            raise ValidationError("lng must be between -180 and 180", field="lng")
        if accuracy_value is not None and accuracy_value < 0:
            raise ValidationError("accuracy must not be negative", field="accuracy")

    return client_event_id, lat_value, lng_value, accuracy_value


class IngestionService:
    """Validates, deduplicates, persists and enqueues coordinate submissions."""

    def __init__(
        self,
        farm_store: FarmStore,
        coordinate_store: CoordinateStore,
        image_store: ImageStore,
        job_queue: JobQueue,
        enforce_range: bool = False
    ):
        self.farms = farm_store
        self.coordinates = coordinate_store
        self.images = image_store
        self.job_queue = job_queue
        self.enforce_range = enforce_range

    async def _owned_farm(self, farm_id: Any, user_id: str) -> Farm:
        if not isinstance(farm_id, str) or not farm_id:
            raise ValidationError("farmId is required", field="farmId")

        farm = await self.farms.find_by_id(farm_id)
        if farm is None:
            raise NotFoundError("Farm", farm_id)
        if farm.owner_id != user_id:
            raise ForbiddenError("Farm", farm_id)
        return farm

    async def submit(
        self,
        farm_id: str,
        client_event_id: str,
        lat: float,
        lng: float,
        accuracy: Optional[float] = None,
        user_id: Optional[str] = None
    ) -> Coordinate:
        """Admit one coordinate and return it (new or existing)."""
        coordinate, _ = await self.submit_with_outcome(
            farm_id, client_event_id, lat, lng, accuracy, user_id
        )
        return coordinate

    async def submit_with_outcome(
        self,
        farm_id: str,
        client_event_id: str,
        lat: float,
        lng: float,
        accuracy: Optional[float] = None,
        user_id: Optional[str] = None
    ) -> Tuple[Coordinate, bool]:
        """
        Admit one coordinate.

        Returns:
            (coordinate, created) where ``created`` is False for a repeat
            of an already admitted event

        Raises:
            ValidationError, NotFoundError, ForbiddenError: rejected input
            EnqueueError: the row was committed but the job was not queued
        """
        try:
            client_event_id, lat, lng, accuracy = validate_event(
                client_event_id, lat, lng, accuracy, self.enforce_range
            )
            await self._owned_farm(farm_id, user_id)
        except (ValidationError, NotFoundError, ForbiddenError):
            record_submission("rejected")
            raise

        existing = await self.coordinates.find_by_farm_and_client_event_id(farm_id, client_event_id)
        if existing is not None:
            logger.info(
                "coordinate_already_submitted",
                coordinate_id=existing.id,
                farm_id=farm_id,
                client_event_id=client_event_id
            )
            record_submission("exists")
            return existing, False

        try:
            coordinate = await self.coordinates.create(
                farm_id=farm_id,
                client_event_id=client_event_id,
                lat=lat,
                lng=lng,
                accuracy=accuracy
            )
        except IntegrityError:
            # A concurrent submission of the same event won the insert
            await self.coordinates.session.rollback()
            existing = await self.coordinates.find_by_farm_and_client_event_id(farm_id, client_event_id)
            if existing is None:
                raise
            record_submission("exists")
            return existing, False

        job = FetchImageJob(
            coordinate_id=coordinate.id,
            farm_id=farm_id,
            lat=lat,
            lng=lng
        )
        try:
            job_id = await self.job_queue.enqueue(job)
        except Exception as e:
            logger.error(
                "fetch_job_enqueue_failed",
                coordinate_id=coordinate.id,
                farm_id=farm_id,
                error=str(e)
            )
            record_submission("enqueue_failed")
            if isinstance(e, EnqueueError):
                raise
            raise EnqueueError(f"Failed to enqueue fetch job for coordinate {coordinate.id}: {e}") from e

        logger.info(
            "coordinate_queued",
            coordinate_id=coordinate.id,
            farm_id=farm_id,
            client_event_id=client_event_id,
            job_id=job_id
        )
        record_submission("created")
        return coordinate, True

    async def sync_events(self, events: List[Any], user_id: str) -> List[Dict[str, Any]]:
        """
        Apply ``submit`` to a batch of offline-buffered events.

        One result per event, in input order. A failing element is reported
        as ``error`` and the rest of the batch still runs.
        """
        results = []

        for event in events:
            client_event_id = event.get("clientEventId") if isinstance(event, dict) else None
            try:
                if not isinstance(event, dict):
                    raise ValidationError("Each event must be an object")
                coordinate, created = await self.submit_with_outcome(
                    farm_id=event.get("farmId"),
                    client_event_id=client_event_id,
                    lat=event.get("lat"),
                    lng=event.get("lng"),
                    accuracy=event.get("accuracy"),
                    user_id=user_id
                )
            except Exception as e:
                await self.coordinates.session.rollback()
                message = e.message if isinstance(e, AcquisitionBaseException) else "Internal error"
                logger.warning(
                    "sync_event_failed",
                    client_event_id=client_event_id,
                    error=str(e),
                    error_type=type(e).__name__
                )
                results.append({
                    "clientEventId": client_event_id,
                    "status": "error",
                    "error": message,
                })
                continue

            results.append({
                "clientEventId": client_event_id,
                "status": "created" if created else "exists",
                "coordinate": coordinate.to_response_dict(),
            })

        logger.info(
            "sync_events_processed",
            total=len(results),
            errors=sum(1 for r in results if r["status"] == "error")
        )
        return results

    async def get_status(self, coordinate_id: str, user_id: str) -> Tuple[Coordinate, Optional[Image]]:
        """
        Coordinate with its linked image, for the caller's own farms.

        Raises:
            NotFoundError: the coordinate (or its farm) does not exist
            ForbiddenError: the farm belongs to another user
        """
        coordinate = await self.coordinates.find_by_id(coordinate_id)
        if coordinate is None:
            raise NotFoundError("Coordinate", coordinate_id)

        farm = await self.farms.find_by_id(coordinate.farm_id)
        if farm is None:
            raise NotFoundError("Farm", coordinate.farm_id)
        if farm.owner_id != user_id:
            raise ForbiddenError("Coordinate", coordinate_id)

        image = None
        if coordinate.fetched_image_id:
            image = await self.images.find_by_id(coordinate.fetched_image_id)
        return coordinate, image

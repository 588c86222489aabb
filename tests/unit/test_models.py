import pytest
from datetime import datetime, timedelta, timezone

from src.core.exceptions import InvalidStatusTransitionError, NotFoundError
from src.modules.coordinates.models import CoordinateStatus
from src.modules.coordinates.repositories import CoordinateStore
from src.modules.imagery.models import BoundingBox, TimeRange


def test_allowed_transitions_follow_linear_progression():
    assert CoordinateStatus.QUEUED.can_transition_to(CoordinateStatus.FETCHING)
    assert CoordinateStatus.FETCHING.can_transition_to(CoordinateStatus.FETCHED)
    assert CoordinateStatus.FETCHING.can_transition_to(CoordinateStatus.FAILED)
    assert CoordinateStatus.FETCHED.can_transition_to(CoordinateStatus.PROCESSED)


def test_any_unfinished_status_can_fail():
    for status in (CoordinateStatus.QUEUED, CoordinateStatus.FETCHING, CoordinateStatus.FETCHED):
        assert status.can_transition_to(CoordinateStatus.FAILED)


def test_rewriting_current_status_is_allowed():
    for status in CoordinateStatus:
        assert status.can_transition_to(status)


@pytest.mark.parametrize("current,target", [
    (CoordinateStatus.FETCHED, CoordinateStatus.QUEUED),
    (CoordinateStatus.FETCHING, CoordinateStatus.QUEUED),
    (CoordinateStatus.PROCESSED, CoordinateStatus.FETCHING),
    (CoordinateStatus.FAILED, CoordinateStatus.FETCHING),
    (CoordinateStatus.QUEUED, CoordinateStatus.FETCHED),
    (CoordinateStatus.PROCESSED, CoordinateStatus.FAILED),
    (CoordinateStatus.FAILED, CoordinateStatus.PROCESSED),
])
def test_regressions_and_skips_are_rejected(current, target):
    assert not current.can_transition_to(target)


def test_terminal_statuses():
    assert CoordinateStatus.PROCESSED.is_terminal
    assert CoordinateStatus.FAILED.is_terminal
    assert not CoordinateStatus.FETCHED.is_terminal


def test_bbox_around_point():
    bbox = BoundingBox.around(23.0, 87.0)

    assert bbox.to_record() == {
        "minLat": 22.9,
        "maxLat": 23.1,
        "minLng": 86.9,
        "maxLng": 87.1,
    }


def test_bbox_rounds_float_noise():
    bbox = BoundingBox.around(12.97, 77.59)

    assert bbox.min_lat == 12.87
    assert bbox.max_lat == 13.07
    assert bbox.as_lng_lat_list() == [77.49, 12.87, 77.69, 13.07]


def test_time_range_last_days():
    now = datetime(2026, 10, 19, tzinfo=timezone.utc)
    time_range = TimeRange.last_days(30, now=now)

    assert time_range.end == now
    assert time_range.end - time_range.start == timedelta(days=30)


@pytest.mark.asyncio
async def test_store_creates_queued_coordinate(session, farm):
    store = CoordinateStore(session)

    coordinate = await store.create(farm.id, "e1", 12.97, 77.59, accuracy=5.0)

    assert coordinate.status == "queued"
    assert coordinate.fetched_image_id is None
    assert coordinate.to_response_dict()["clientEventId"] == "e1"


@pytest.mark.asyncio
async def test_store_rejects_status_regression(session, farm):
    store = CoordinateStore(session)
    coordinate = await store.create(farm.id, "e1", 12.97, 77.59)
    await store.update_status(coordinate.id, CoordinateStatus.FETCHING)

    with pytest.raises(InvalidStatusTransitionError):
        await store.update_status(coordinate.id, CoordinateStatus.QUEUED)


@pytest.mark.asyncio
async def test_store_same_status_write_is_noop(session, farm):
    store = CoordinateStore(session)
    coordinate = await store.create(farm.id, "e1", 12.97, 77.59)
    await store.update_status(coordinate.id, CoordinateStatus.FETCHING)

    updated = await store.update_status(coordinate.id, CoordinateStatus.FETCHING)

    assert updated.status == "fetching"


@pytest.mark.asyncio
async def test_store_update_missing_coordinate(session):
    with pytest.raises(NotFoundError):
        await CoordinateStore(session).update_status("missing", CoordinateStatus.FETCHING)


@pytest.mark.asyncio
async def test_store_guard_uses_current_row_not_stale_copy(database, session, farm):
    stale = CoordinateStore(session)
    coordinate = await stale.create(farm.id, "e1", 12.97, 77.59)
    await stale.update_status(coordinate.id, CoordinateStatus.FETCHING)

    # Another session finishes the coordinate meanwhile
    async with database.session() as other:
        store = CoordinateStore(other)
        await store.update_status(coordinate.id, CoordinateStatus.FETCHED)
        await store.update_status(coordinate.id, CoordinateStatus.PROCESSED)

    with pytest.raises(InvalidStatusTransitionError):
        await stale.update_status(coordinate.id, CoordinateStatus.FETCHED)

    assert (await stale.find_by_id(coordinate.id)).status == "processed"


@pytest.mark.asyncio
async def test_store_sets_extra_fields_with_status(session, farm):
    store = CoordinateStore(session)
    coordinate = await store.create(farm.id, "e1", 12.97, 77.59)
    await store.update_status(coordinate.id, CoordinateStatus.FETCHING)
    finished_at = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

    await store.update_status(coordinate.id, CoordinateStatus.FETCHED)
    updated = await store.update_status(
        coordinate.id, CoordinateStatus.PROCESSED, processed_at=finished_at
    )

    assert updated.status == "processed"
    assert updated.processed_at.replace(tzinfo=None) == finished_at.replace(tzinfo=None)

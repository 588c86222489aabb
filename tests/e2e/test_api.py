import pytest

OWNER = {"X-User-Id": "user-1"}
OTHER = {"X-User-Id": "user-2"}


async def create_farm(client, headers=OWNER, name="North Field"):
    response = await client.post(
        "/api/v1/farms",
        json={"name": name, "centerLat": 12.97, "centerLng": 77.59},
        headers=headers
    )
    assert response.status_code == 201
    return response.json()


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_ready_checks_database(client):
    response = await client.get("/ready")
    assert response.status_code == 200
    assert response.json()["checks"] == {"database": True}


@pytest.mark.asyncio
async def test_requests_without_identity_are_rejected(client):
    response = await client.get("/api/v1/farms")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_farm_registration_and_listing(client):
    farm = await create_farm(client)

    assert farm["ownerId"] == "user-1"
    listed = (await client.get("/api/v1/farms", headers=OWNER)).json()
    assert [f["id"] for f in listed] == [farm["id"]]
    assert (await client.get("/api/v1/farms", headers=OTHER)).json() == []

    response = await client.get(f"/api/v1/farms/{farm['id']}", headers=OTHER)
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_submit_coordinate_is_idempotent(client, job_queue):
    farm = await create_farm(client)
    body = {"clientEventId": "e1", "lat": 12.97, "lng": 77.59, "accuracy": 3.5}

    first = await client.post(f"/api/v1/farms/{farm['id']}/coords", json=body, headers=OWNER)
    second = await client.post(f"/api/v1/farms/{farm['id']}/coords", json=body, headers=OWNER)

    assert first.status_code == 201
    assert second.status_code == 200
    assert first.json()["status"] == "queued"
    assert second.json()["id"] == first.json()["id"]
    assert len(job_queue.enqueued) == 1


@pytest.mark.asyncio
async def test_submit_coordinate_errors(client):
    farm = await create_farm(client)

    missing = await client.post(
        "/api/v1/farms/no-such-farm/coords",
        json={"clientEventId": "e1", "lat": 1.0, "lng": 2.0},
        headers=OWNER
    )
    forbidden = await client.post(
        f"/api/v1/farms/{farm['id']}/coords",
        json={"clientEventId": "e1", "lat": 1.0, "lng": 2.0},
        headers=OTHER
    )
    invalid = await client.post(
        f"/api/v1/farms/{farm['id']}/coords",
        json={"clientEventId": "e1", "lat": "north", "lng": 2.0},
        headers=OWNER
    )

    assert missing.status_code == 404
    assert forbidden.status_code == 403
    assert invalid.status_code == 400
    assert invalid.json()["details"]["field"] == "lat"
    assert set(invalid.json()) >= {"error", "code", "timestamp"}


@pytest.mark.asyncio
async def test_status_reflects_worker_progress(client, job_queue, worker):
    farm = await create_farm(client)
    created = (await client.post(
        f"/api/v1/farms/{farm['id']}/coords",
        json={"clientEventId": "e1", "lat": 12.97, "lng": 77.59},
        headers=OWNER
    )).json()

    queued = (await client.get(f"/api/v1/coords/{created['id']}/status", headers=OWNER)).json()
    assert queued["status"] == "queued"
    assert queued["image"] is None

    await job_queue.dispatch(worker.handle)

    response = await client.get(f"/api/v1/coords/{created['id']}/status", headers=OWNER)
    status = response.json()
    assert status["status"] == "processed"
    assert status["fetchedImageId"] == status["image"]["id"]
    assert status["image"]["bbox"] == {"minLat": 12.87, "maxLat": 13.07, "minLng": 77.49, "maxLng": 77.69}

    forbidden = await client.get(f"/api/v1/coords/{created['id']}/status", headers=OTHER)
    assert forbidden.status_code == 403


@pytest.mark.asyncio
async def test_sync_events_partial_success(client, job_queue):
    farm = await create_farm(client)

    response = await client.post(
        "/api/v1/sync/events",
        json={"events": [
            {"farmId": farm["id"], "clientEventId": "a", "lat": 12.97, "lng": 77.59},
            {"farmId": "missing", "clientEventId": "b", "lat": 1.0, "lng": 2.0},
            {"farmId": farm["id"], "clientEventId": "a", "lat": 12.97, "lng": 77.59},
        ]},
        headers=OWNER
    )

    assert response.status_code == 200
    results = response.json()
    assert [r["status"] for r in results] == ["created", "error", "exists"]
    assert results[0]["coordinate"]["id"] == results[2]["coordinate"]["id"]
    assert len(job_queue.enqueued) == 1


@pytest.mark.asyncio
async def test_metrics_endpoint(client):
    response = await client.get("/api/v1/metrics")
    assert response.status_code == 200
    assert "coordinate_submissions_total" in response.text

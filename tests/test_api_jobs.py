import httpx
import pytest
import pytest_asyncio

from chatblast.api.deps import get_job_store
from chatblast.main import app

HEADERS = {"X-API-Key": "test-key", "X-User-Id": "1"}


@pytest_asyncio.fixture
async def client(store):
    app.dependency_overrides[get_job_store] = lambda: store
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def _create(client, **overrides):
    body = {"device_id": "dev-1", "recipients": ["111", "222"], "data": {"message": "hi"}}
    body.update(overrides)
    return await client.post("/jobs", json=body, headers=HEADERS)


@pytest.mark.asyncio
async def test_requires_api_key(client):
    r = await client.get("/jobs")
    assert r.status_code == 401

    r = await client.get("/jobs", headers={"X-API-Key": "wrong"})
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_create_and_read_job(client):
    r = await _create(client)
    assert r.status_code == 201
    job = r.json()
    assert job["status"] == "queued"
    assert job["type"] == "send-text"
    assert job["user_id"] == 1
    assert job["progress"] == {"total": 2, "sent": 0, "failed": 0}

    r = await client.get(f"/jobs/{job['id']}", headers=HEADERS)
    assert r.status_code == 200
    assert r.json()["id"] == job["id"]

    r = await client.get(f"/jobs/{job['id']}/items", headers=HEADERS)
    assert [i["recipient"] for i in r.json()] == ["111", "222"]
    assert {i["status"] for i in r.json()} == {"pending"}


@pytest.mark.asyncio
async def test_create_rejects_invalid_input(client):
    r = await _create(client, recipients=[])
    assert r.status_code == 400
    assert "recipients" in r.json()["detail"]

    r = await _create(client, data={"message": "hi", "delay": 100000})
    assert r.status_code == 400

    r = await client.post(
        "/jobs",
        json={"device_id": "dev-1", "recipients": ["111"], "data": {"message": "hi"}},
        headers={"X-API-Key": "test-key"},
    )
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_unknown_or_foreign_job_is_404(client):
    r = await client.get("/jobs/does-not-exist", headers=HEADERS)
    assert r.status_code == 404

    job = (await _create(client)).json()
    r = await client.get(f"/jobs/{job['id']}", headers={"X-API-Key": "test-key", "X-User-Id": "2"})
    assert r.status_code == 404

    r = await client.post(f"/jobs/{job['id']}/cancel", headers={"X-API-Key": "test-key", "X-User-Id": "2"})
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_pause_resume_cancel_flow(client):
    job = (await _create(client)).json()
    job_id = job["id"]

    r = await client.post(f"/jobs/{job_id}/pause", headers=HEADERS)
    assert r.json() == {"id": job_id, "ok": True, "status": "paused"}

    r = await client.post(f"/jobs/{job_id}/pause", headers=HEADERS)
    assert r.json()["ok"] is False

    r = await client.post(f"/jobs/{job_id}/resume", headers=HEADERS)
    assert r.json() == {"id": job_id, "ok": True, "status": "queued"}

    r = await client.post(f"/jobs/{job_id}/cancel", headers=HEADERS)
    assert r.json() == {"id": job_id, "ok": True, "status": "cancelled"}

    r = await client.post(f"/jobs/{job_id}/cancel", headers=HEADERS)
    assert r.json() == {"id": job_id, "ok": False, "status": "cancelled"}


@pytest.mark.asyncio
async def test_retry_endpoint(client):
    job = (await _create(client)).json()

    r = await client.post(f"/jobs/{job['id']}/retry", headers=HEADERS)
    assert r.status_code == 400

    await client.post(f"/jobs/{job['id']}/cancel", headers=HEADERS)
    r = await client.post(f"/jobs/{job['id']}/retry", headers=HEADERS)
    assert r.status_code == 201
    retried = r.json()
    assert retried["id"] != job["id"]
    assert retried["progress"]["total"] == 2


@pytest.mark.asyncio
async def test_list_and_stats(client):
    a = (await _create(client)).json()
    b = (await _create(client, recipients=["333"])).json()
    await client.post(f"/jobs/{b['id']}/pause", headers=HEADERS)

    r = await client.get("/jobs", headers=HEADERS)
    assert [j["id"] for j in r.json()] == [b["id"], a["id"]]

    r = await client.get("/jobs", params={"status": "paused"}, headers=HEADERS)
    assert [j["id"] for j in r.json()] == [b["id"]]

    r = await client.get("/jobs", headers={"X-API-Key": "test-key", "X-User-Id": "2"})
    assert r.json() == []

    r = await client.get("/jobs/stats", headers=HEADERS)
    stats = r.json()
    assert stats["queued"] == 1
    assert stats["paused"] == 1
    assert stats["total"] == 2


@pytest.mark.asyncio
async def test_health_reports_db_state(client, monkeypatch, session_factory):
    from chatblast.api import routes_health
    from chatblast.storage.db import db_ping

    monkeypatch.setattr(routes_health, "db_ping", lambda: db_ping(session_factory))
    r = await client.get("/health")
    assert r.json() == {"status": "ok"}

    async def broken():
        raise ConnectionRefusedError("no db")

    monkeypatch.setattr(routes_health, "db_ping", broken)
    r = await client.get("/health")
    assert r.status_code == 503

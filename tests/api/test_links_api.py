"""API integration tests: in-memory app, async client, fake gateway channel."""

import json
import os
import tempfile
from types import SimpleNamespace

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Force test config BEFORE any app imports
os.environ["DEBUG"] = "true"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["LOG_DIR"] = tempfile.mkdtemp(prefix="adaptive-sqm-logs-")

import adaptive_sqm.database as db_mod
import adaptive_sqm.dependencies as dep_mod
from adaptive_sqm.transport.remote import CommandResult

from conftest import FakeChannel, link_fields

SPEEDTEST_OUTPUT = json.dumps({
    "type": "result",
    "ping": {"latency": 11.9},
    "download": {"bandwidth": 37_500_000},
    "upload": {"bandwidth": 2_500_000},
    "server": {"id": 1234, "name": "Comcast"},
})


def _reset_singletons():
    """Reset all module-level singletons so each test starts clean."""
    db_mod._engine = None
    db_mod._session_factory = None
    dep_mod._config_instance = None
    dep_mod._clock = None
    dep_mod._scheduler = None
    dep_mod._registry = None
    dep_mod._baseline_store = None
    dep_mod._alert_manager = None
    dep_mod._remote_channel = None
    dep_mod._actuator = None
    dep_mod._controller = None
    dep_mod._sampler = None
    dep_mod._latency_monitor = None


@pytest_asyncio.fixture
async def api():
    """App client over a shared in-memory database with a fake gateway."""
    _reset_singletons()

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    factory = async_sessionmaker(engine, expire_on_commit=False)
    db_mod._engine = engine
    db_mod._session_factory = factory

    dep_mod.get_app_config()
    channel = FakeChannel()
    dep_mod._remote_channel = channel

    from adaptive_sqm.models.base import Base
    from adaptive_sqm.main import app

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield SimpleNamespace(client=client, channel=channel, factory=factory)

    if dep_mod._scheduler is not None:
        await dep_mod._scheduler.shutdown()
    await engine.dispose()
    _reset_singletons()


async def _create(api, **overrides) -> dict:
    resp = await api.client.post("/api/v1/links/", json=link_fields(**overrides))
    assert resp.status_code == 201, resp.text
    return resp.json()


class TestLinksCrud:
    @pytest.mark.asyncio
    async def test_create_and_list(self, api):
        created = await _create(api)
        assert created["name"] == "wan1"
        assert created["floor_download_mbps"] == 125.0
        assert created["mode"] == "learning"
        assert created["shaping"]["applied_down_mbps"] is None

        resp = await api.client.get("/api/v1/links/")
        assert resp.status_code == 200
        assert [link["id"] for link in resp.json()] == [created["id"]]

    @pytest.mark.asyncio
    async def test_get_link_status(self, api):
        created = await _create(api)
        resp = await api.client.get(f"/api/v1/links/{created['id']}")
        assert resp.status_code == 200
        body = resp.json()
        assert body["link"]["interface"] == "eth8"
        assert body["learning"]["total_buckets"] == 168

    @pytest.mark.asyncio
    async def test_update_link(self, api):
        created = await _create(api)
        resp = await api.client.put(f"/api/v1/links/{created['id']}", json={"profile": "fiber"})
        assert resp.status_code == 200
        assert resp.json()["profile"] == "fiber"

    @pytest.mark.asyncio
    async def test_empty_update_rejected(self, api):
        created = await _create(api)
        resp = await api.client.put(f"/api/v1/links/{created['id']}", json={})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "No fields to update"

    @pytest.mark.asyncio
    async def test_delete_link(self, api):
        created = await _create(api)
        resp = await api.client.delete(f"/api/v1/links/{created['id']}")
        assert resp.status_code == 200
        assert resp.json() == {"deleted": created["id"]}

        resp = await api.client.get(f"/api/v1/links/{created['id']}")
        assert resp.status_code == 404


class TestErrorResponses:
    @pytest.mark.asyncio
    async def test_inconsistent_definition_is_400(self, api):
        resp = await api.client.post("/api/v1/links/", json=link_fields(floor_download_mbps=600.0))
        assert resp.status_code == 400
        body = resp.json()
        assert body["error"] is True
        assert body["status_code"] == 400
        assert "floor" in body["detail"]

    @pytest.mark.asyncio
    async def test_unsafe_interface_is_400(self, api):
        resp = await api.client.post("/api/v1/links/", json=link_fields(interface="eth8;reboot"))
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_profile_is_422(self, api):
        resp = await api.client.post("/api/v1/links/", json=link_fields(profile="dsl"))
        assert resp.status_code == 422
        body = resp.json()
        assert body["detail"] == "Validation error"
        assert body["errors"]

    @pytest.mark.asyncio
    async def test_unknown_link_is_404(self, api):
        resp = await api.client.get("/api/v1/links/99", headers={"X-Request-ID": "req-123"})
        assert resp.status_code == 404
        body = resp.json()
        assert body["detail"] == "WAN link 99 not found"
        assert body["request_id"] == "req-123"
        assert resp.headers["X-Request-ID"] == "req-123"

    @pytest.mark.asyncio
    async def test_redeploy_before_measurement_is_409(self, api):
        created = await _create(api)
        resp = await api.client.post(f"/api/v1/links/{created['id']}/redeploy")
        assert resp.status_code == 409
        assert api.channel.upload_attempts == 0


class TestMeasurementFlow:
    @pytest.mark.asyncio
    async def test_test_now_deploys_and_reports_status(self, api):
        api.channel.responses["speedtest"] = CommandResult(success=True, output=SPEEDTEST_OUTPUT, exit_code=0)
        created = await _create(api)

        resp = await api.client.post(f"/api/v1/links/{created['id']}/test-now")
        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["measurement"]["download_mbps"] == 300.0
        assert body["measurement"]["source"] == "manual"
        assert body["status"]["shaping"]["applied_down_mbps"] == 276.0

        path, content = api.channel.uploads[0]
        assert path == "/data/on_boot.d/25-adaptive-sqm-wan1.sh"
        assert 'DOWNLOAD_RATE="276000kbit"' in content

        status = (await api.client.get("/api/v1/sqm/status")).json()
        assert status["ifbeth8"]["current_rate"] == 276.0
        assert status["ifbeth8"]["last_speedtest"] == {"measured": 300.0, "adjusted": 276.0}
        assert status["eth8"]["current_rate"] == 18.4

        baselines = (await api.client.get(f"/api/v1/links/{created['id']}/baselines")).json()
        assert len(baselines["buckets"]) == 1
        assert baselines["buckets"][0]["mean"] == 300.0

        resp = await api.client.post(f"/api/v1/links/{created['id']}/redeploy")
        assert resp.status_code == 200
        assert resp.json()["changed"] is True
        assert len(api.channel.uploads) == 2

    @pytest.mark.asyncio
    async def test_update_keeps_applied_rate_in_range_and_delete_cleans_gateway(self, api):
        api.channel.responses["speedtest"] = CommandResult(success=True, output=SPEEDTEST_OUTPUT, exit_code=0)
        created = await _create(api)
        await api.client.post(f"/api/v1/links/{created['id']}/test-now")

        resp = await api.client.put(
            f"/api/v1/links/{created['id']}", json={"nominal_download_mbps": 200.0, "name": "primary"}
        )
        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["shaping"]["applied_down_mbps"] == 200.0
        assert body["shaping"]["applied_down_mbps"] <= body["nominal_download_mbps"]
        assert list(api.channel.files) == ["/data/on_boot.d/25-adaptive-sqm-primary.sh"]
        assert 'DOWNLOAD_RATE="200000kbit"' in api.channel.files["/data/on_boot.d/25-adaptive-sqm-primary.sh"]

        resp = await api.client.delete(f"/api/v1/links/{created['id']}")
        assert resp.status_code == 200
        assert api.channel.files == {}

    @pytest.mark.asyncio
    async def test_failed_speed_test_is_503(self, api):
        api.channel.responses["speedtest"] = CommandResult(success=False, output="No servers", exit_code=2)
        created = await _create(api)

        resp = await api.client.post(f"/api/v1/links/{created['id']}/test-now")

        assert resp.status_code == 503
        assert api.channel.upload_attempts == 0

    @pytest.mark.asyncio
    async def test_rejected_deploy_raises_alert(self, api):
        api.channel.responses["speedtest"] = CommandResult(success=True, output=SPEEDTEST_OUTPUT, exit_code=0)
        api.channel.exec_result = CommandResult(success=False, output="Cannot find device", exit_code=1)
        created = await _create(api)

        resp = await api.client.post(f"/api/v1/links/{created['id']}/test-now")
        assert resp.status_code == 200

        alerts = (await api.client.get("/api/v1/alerts/", params={"wan_link_id": created["id"]})).json()
        assert [a["title"] for a in alerts] == ["Shaping deployment rejected: wan1"]
        assert alerts[0]["details"]["exit_code"] == 1

        resp = await api.client.post("/api/v1/alerts/acknowledge", json={"alert_ids": [alerts[0]["id"]]})
        assert resp.status_code == 200
        remaining = (await api.client.get("/api/v1/alerts/", params={"unacknowledged_only": True})).json()
        assert remaining == []


class TestReadOnlyEndpoints:
    @pytest.mark.asyncio
    async def test_profiles(self, api):
        resp = await api.client.get("/api/v1/profiles/")
        assert resp.status_code == 200
        assert resp.json()["docsis"]["safety_margin_factor"] == 0.92

    @pytest.mark.asyncio
    async def test_learning_progress(self, api):
        created = await _create(api)
        resp = await api.client.get("/api/v1/sqm/learning-progress")
        assert resp.status_code == 200
        entry = resp.json()[0]
        assert entry["link_id"] == created["id"]
        assert entry["link_name"] == "wan1"
        assert entry["sampling_phase"] == "dense"
        assert entry["progress"] == 0.0

    @pytest.mark.asyncio
    async def test_health(self, api):
        resp = await api.client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert set(body["modules"]) == {"sampler", "latency_monitor"}
        assert resp.headers["X-Request-ID"]

"""Shared test fixtures."""

import asyncio
import shlex
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from adaptive_sqm.alerting.manager import AlertManager
from adaptive_sqm.config import SqmConfig
from adaptive_sqm.core.clock import ManualClock
from adaptive_sqm.core.errors import RemoteUnreachable
from adaptive_sqm.engine.actuator import GatewayActuator
from adaptive_sqm.engine.baseline_store import BaselineStore
from adaptive_sqm.engine.blending import BlendingEngine
from adaptive_sqm.engine.controller import AdaptiveSqmController
from adaptive_sqm.engine.decision import DecisionEngine
from adaptive_sqm.engine.registry import WanLinkRegistry
from adaptive_sqm.transport.remote import CommandResult

# 2024-01-01 is a Monday
MONDAY_18 = datetime(2024, 1, 1, 18, 0, tzinfo=timezone.utc)


async def settle(rounds: int = 25) -> None:
    """Let pending tasks run up to their next real suspension point."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class InstantClock(ManualClock):
    """ManualClock whose sleeps return at once, moving time forward."""

    def __init__(self, start: datetime | None = None):
        super().__init__(start or MONDAY_18)
        self.sleeps: list[float] = []

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self._now += timedelta(seconds=seconds)
        await asyncio.sleep(0)


class FakeChannel:
    """In-memory gateway command channel.

    ``unreachable_for`` holds substrings; an upload whose path contains one
    raises RemoteUnreachable. ``fail_uploads`` makes the next N uploads
    unreachable regardless of path. ``rm -f`` commands delete from ``files``.
    """

    def __init__(self):
        self.uploads: list[tuple[str, str]] = []
        self.executions: list[str] = []
        self.files: dict[str, str] = {}
        self.unreachable_for: set[str] = set()
        self.fail_uploads = 0
        self.upload_attempts = 0
        self.upload_result = CommandResult(success=True, output="", exit_code=0)
        self.exec_result = CommandResult(success=True, output="", exit_code=0)
        self.responses: dict[str, CommandResult] = {}
        self.in_flight = 0
        self.max_in_flight = 0

    async def upload_content(self, host, content, remote_path, timeout):
        self.upload_attempts += 1
        if self.fail_uploads > 0:
            self.fail_uploads -= 1
            raise RemoteUnreachable("connection refused")
        if any(s in remote_path for s in self.unreachable_for):
            raise RemoteUnreachable("no route to host")
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await settle(3)
        finally:
            self.in_flight -= 1
        self.uploads.append((remote_path, content))
        if self.upload_result.success:
            self.files[remote_path] = content
        return self.upload_result

    async def execute(self, host, command, timeout):
        self.executions.append(command)
        for prefix, result in self.responses.items():
            if command.startswith(prefix):
                return result
        if command.startswith("rm -f ") and self.exec_result.success:
            for path in shlex.split(command)[2:]:
                self.files.pop(path, None)
        return self.exec_result


@dataclass
class FakeSpeedProvider:
    download_mbps: float = 300.0
    upload_mbps: float = 20.0
    calls: int = 0
    error: Exception | None = None
    gate: asyncio.Event | None = None

    async def run_speed_test(self, link):
        from adaptive_sqm.measurement.providers import SpeedTestResult

        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return SpeedTestResult(download_mbps=self.download_mbps, upload_mbps=self.upload_mbps, latency_ms=12.0)


def link_fields(**overrides) -> dict:
    fields = {
        "name": "wan1",
        "interface": "eth8",
        "profile": "docsis",
        "nominal_download_mbps": 500.0,
        "nominal_upload_mbps": 40.0,
    }
    fields.update(overrides)
    return fields


@pytest.fixture
def sqm_config():
    return SqmConfig(_env_file=None)


def build_pipeline(config: SqmConfig, clock=None, db_session_factory=None) -> SimpleNamespace:
    clock = clock or InstantClock()
    channel = FakeChannel()
    registry = WanLinkRegistry(config=config, db_session_factory=db_session_factory)
    store = BaselineStore(
        min_bucket_samples=config.min_bucket_samples,
        single_sample_cv=config.single_sample_cv,
        tz=config.baseline_timezone,
        db_session_factory=db_session_factory,
    )
    actuator = GatewayActuator(
        registry=registry,
        channel=channel,
        host="192.168.1.1",
        boot_dir=config.boot_script_dir,
        timeout=config.remote_timeout_seconds,
        max_attempts=config.deploy_max_attempts,
        backoff_base=config.deploy_backoff_base_seconds,
        backoff_max=config.deploy_backoff_max_seconds,
        clock=clock,
    )
    alerts = AlertManager(dedup_ttl=config.alert_dedup_seconds)
    controller = AdaptiveSqmController(
        registry=registry,
        baseline_store=store,
        blending=BlendingEngine(store),
        decision=DecisionEngine(hysteresis_min_delta=config.hysteresis_min_delta),
        actuator=actuator,
        alert_manager=alerts,
        config=config,
        clock=clock,
    )
    registry.add_teardown_hook(controller.teardown_link)
    return SimpleNamespace(
        clock=clock,
        channel=channel,
        registry=registry,
        store=store,
        actuator=actuator,
        alerts=alerts,
        controller=controller,
        config=config,
    )


@pytest.fixture
def pipeline(sqm_config):
    return build_pipeline(sqm_config)


@pytest_asyncio.fixture
async def db_session_factory():
    """Fresh in-memory database shared across sessions via StaticPool."""
    from adaptive_sqm.models.base import Base
    import adaptive_sqm.models  # noqa: F401  registers every table

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()

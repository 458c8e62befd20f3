"""WAN link registry: link definitions, profile presets and per-link runtimes."""

import itertools
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from ..config import SqmConfig
from ..core.errors import LinkConfigurationError, LinkNotFound
from ..core.profiles import PROFILE_PRESETS, ConnectionProfile
from ..utils.input_validators import (
    sanitize_connection_name,
    validate_interface_name,
    validate_ping_host,
    validate_speedtest_server_id,
    validate_time_of_day,
)
from ..utils.logging import get_logger
from .state import LinkRuntime, ShapingState, WanLinkConfig

logger = get_logger("engine.registry")

TeardownHook = Callable[[int], Awaitable[None]]

_EDITABLE_FIELDS = {
    "name",
    "interface",
    "profile",
    "nominal_download_mbps",
    "nominal_upload_mbps",
    "floor_download_mbps",
    "floor_upload_mbps",
    "enabled",
    "ping_host",
    "speedtest_server_id",
    "baseline_latency_ms",
    "speedtest_morning_hour",
    "speedtest_morning_minute",
    "speedtest_evening_hour",
    "speedtest_evening_minute",
}


class WanLinkRegistry:
    """CRUD for WAN links; owns one LinkRuntime per managed link.

    Works in memory when no session factory is attached; otherwise every
    change is written through to the ``wan_links`` / ``shaping_states``
    tables and ``initialize`` restores them on start-up.
    """

    def __init__(self, config: Optional[SqmConfig] = None, db_session_factory=None):
        self._config = config or SqmConfig()
        self._db_session_factory = db_session_factory
        self._runtimes: dict[int, LinkRuntime] = {}
        self._ids = itertools.count(1)
        self._teardown_hooks: list[TeardownHook] = []

    def set_db_session_factory(self, factory) -> None:
        self._db_session_factory = factory

    def add_teardown_hook(self, hook: TeardownHook) -> None:
        """Register a coroutine called with the link id when a link is deleted."""
        self._teardown_hooks.append(hook)

    # --- Profiles ---

    @staticmethod
    def list_profiles() -> dict[str, dict]:
        return {profile.value: params.to_dict() for profile, params in PROFILE_PRESETS.items()}

    # --- Lookup ---

    def get(self, link_id: int) -> LinkRuntime:
        runtime = self._runtimes.get(link_id)
        if runtime is None:
            raise LinkNotFound(f"WAN link {link_id} not found")
        return runtime

    def get_link(self, link_id: int) -> WanLinkConfig:
        return self.get(link_id).link

    def runtimes(self) -> list[LinkRuntime]:
        return [self._runtimes[k] for k in sorted(self._runtimes)]

    def list_links(self) -> list[WanLinkConfig]:
        return [rt.link for rt in self.runtimes()]

    def __len__(self) -> int:
        return len(self._runtimes)

    # --- Validation ---

    def _build_config(self, link_id: int, fields: dict, created_at: datetime | None) -> WanLinkConfig:
        try:
            profile = ConnectionProfile(fields["profile"])
        except (KeyError, ValueError):
            raise LinkConfigurationError(
                f"profile must be one of {[p.value for p in ConnectionProfile]}"
            )

        try:
            interface = validate_interface_name(fields.get("interface", ""))
            # ingress is shaped on ifb<interface>, which must fit IFNAMSIZ too
            validate_interface_name(f"ifb{interface}")
            ping_host = validate_ping_host(fields.get("ping_host") or "1.1.1.1")
            server_id = validate_speedtest_server_id(fields.get("speedtest_server_id"))
            morning = validate_time_of_day(
                int(fields.get("speedtest_morning_hour", 6)), int(fields.get("speedtest_morning_minute", 0))
            )
            evening = validate_time_of_day(
                int(fields.get("speedtest_evening_hour", 18)), int(fields.get("speedtest_evening_minute", 30))
            )
        except ValueError as e:
            raise LinkConfigurationError(str(e))

        name = (fields.get("name") or "").strip()
        if not name or len(name) > 100:
            raise LinkConfigurationError("name is required (max 100 characters)")
        # The slug names the boot script; two links must never share one
        slug = sanitize_connection_name(name)
        for other in self._runtimes.values():
            if other.link_id == link_id:
                continue
            if other.link.name == name:
                raise LinkConfigurationError(f"WAN link name {name!r} already in use")
            if sanitize_connection_name(other.link.name) == slug:
                raise LinkConfigurationError(
                    f"WAN link name {name!r} collides with {other.link.name!r} (both map to {slug!r})"
                )

        nominal_down = float(fields.get("nominal_download_mbps") or 0)
        nominal_up = float(fields.get("nominal_upload_mbps") or 0)
        if nominal_down <= 0 or nominal_up <= 0:
            raise LinkConfigurationError("nominal download/upload rates must be positive")

        fraction = self._config.default_floor_fraction
        floor_down = fields.get("floor_download_mbps")
        floor_up = fields.get("floor_upload_mbps")
        floor_down = float(floor_down) if floor_down is not None else round(nominal_down * fraction, 1)
        floor_up = float(floor_up) if floor_up is not None else round(nominal_up * fraction, 1)
        if not 0 < floor_down <= nominal_down or not 0 < floor_up <= nominal_up:
            raise LinkConfigurationError("floor rates must be positive and not exceed the nominal rates")

        baseline_latency = fields.get("baseline_latency_ms")
        if baseline_latency is not None and float(baseline_latency) < 0:
            raise LinkConfigurationError("baseline_latency_ms cannot be negative")

        return WanLinkConfig(
            id=link_id,
            name=name,
            interface=interface,
            profile=profile,
            nominal_download_mbps=nominal_down,
            nominal_upload_mbps=nominal_up,
            floor_download_mbps=floor_down,
            floor_upload_mbps=floor_up,
            enabled=bool(fields.get("enabled", True)),
            ping_host=ping_host,
            speedtest_server_id=server_id,
            baseline_latency_ms=float(baseline_latency) if baseline_latency is not None else None,
            speedtest_morning_hour=morning[0],
            speedtest_morning_minute=morning[1],
            speedtest_evening_hour=evening[0],
            speedtest_evening_minute=evening[1],
            created_at=created_at or datetime.now(timezone.utc),
        )

    def _new_runtime(self, link: WanLinkConfig, shaping: ShapingState | None = None) -> LinkRuntime:
        return LinkRuntime(
            link=link,
            shaping=shaping or ShapingState(),
            latency_window_size=self._config.latency_window_size,
        )

    # --- CRUD ---

    async def create_link(self, **fields) -> LinkRuntime:
        unknown = set(fields) - _EDITABLE_FIELDS
        if unknown:
            raise LinkConfigurationError(f"unknown WAN link fields: {sorted(unknown)}")

        # Validate before touching storage; the id is provisional until persisted.
        provisional = self._build_config(0, fields, None)

        link_id = await self._persist_new(provisional)
        if link_id is None:
            link_id = next(self._ids)
            while link_id in self._runtimes:
                link_id = next(self._ids)

        link = self._build_config(link_id, fields, provisional.created_at)
        runtime = self._new_runtime(link)
        self._runtimes[link_id] = runtime
        logger.info("wan_link_created", link_id=link_id, name=link.name, interface=link.interface,
                    profile=link.profile.value)
        return runtime

    async def update_link(self, link_id: int, **changes) -> LinkRuntime:
        runtime = self.get(link_id)
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise LinkConfigurationError(f"unknown WAN link fields: {sorted(unknown)}")

        current = runtime.link.to_dict()
        merged = {k: v for k, v in current.items() if k in _EDITABLE_FIELDS}
        if "nominal_download_mbps" in changes and "floor_download_mbps" not in changes:
            merged["floor_download_mbps"] = min(merged["floor_download_mbps"], changes["nominal_download_mbps"])
        if "nominal_upload_mbps" in changes and "floor_upload_mbps" not in changes:
            merged["floor_upload_mbps"] = min(merged["floor_upload_mbps"], changes["nominal_upload_mbps"])
        merged.update(changes)

        runtime.link = self._build_config(link_id, merged, runtime.link.created_at)
        await self._persist_update(runtime.link)
        logger.info("wan_link_updated", link_id=link_id, fields=sorted(changes))
        return runtime

    async def delete_link(self, link_id: int) -> None:
        runtime = self.get(link_id)
        for hook in self._teardown_hooks:
            try:
                await hook(link_id)
            except Exception as e:
                logger.error("wan_link_teardown_hook_failed", link_id=link_id, error=str(e))
        if runtime.sample_task and not runtime.sample_task.done():
            runtime.sample_task.cancel()
        del self._runtimes[link_id]
        await self._persist_delete(link_id)
        logger.info("wan_link_deleted", link_id=link_id, name=runtime.link.name)

    # --- Persistence ---

    async def initialize(self) -> int:
        """Load links and their shaping states from the database."""
        if not self._db_session_factory:
            return 0
        from sqlalchemy import select
        from ..models.shaping_state import ShapingStateRecord
        from ..models.wan_link import WanLink

        async with self._db_session_factory() as session:
            links = (await session.execute(select(WanLink))).scalars().all()
            states = {
                s.wan_link_id: s
                for s in (await session.execute(select(ShapingStateRecord))).scalars().all()
            }

        for row in links:
            fields = {k: getattr(row, k) for k in _EDITABLE_FIELDS}
            created_at = row.created_at.replace(tzinfo=timezone.utc) if row.created_at else None
            try:
                link = self._build_config(row.id, fields, created_at)
            except LinkConfigurationError as e:
                logger.error("wan_link_load_invalid", link_id=row.id, error=str(e))
                continue
            shaping = None
            record = states.get(row.id)
            if record is not None:
                shaping = ShapingState(
                    applied_down_mbps=record.applied_down_mbps,
                    applied_up_mbps=record.applied_up_mbps,
                    last_applied_at=record.last_applied_at,
                    last_adjustment_reason=record.last_adjustment_reason,
                    last_deployed_content_hash=record.last_deployed_content_hash,
                    deployed_path=record.deployed_path,
                )
            runtime = self._new_runtime(link, shaping)
            runtime.has_rate_source = shaping is not None and shaping.is_applied
            self._runtimes[row.id] = runtime

        logger.info("wan_links_loaded", links=len(self._runtimes))
        return len(self._runtimes)

    async def _persist_new(self, link: WanLinkConfig) -> Optional[int]:
        if not self._db_session_factory:
            return None
        from ..models.wan_link import WanLink

        async with self._db_session_factory() as session:
            row = WanLink(**_row_fields(link))
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return row.id

    async def _persist_update(self, link: WanLinkConfig) -> None:
        if not self._db_session_factory:
            return
        from sqlalchemy import select
        from ..models.wan_link import WanLink

        async with self._db_session_factory() as session:
            row = (await session.execute(select(WanLink).where(WanLink.id == link.id))).scalar_one_or_none()
            if row is None:
                logger.warning("wan_link_row_missing", link_id=link.id)
                return
            for key, value in _row_fields(link).items():
                setattr(row, key, value)
            await session.commit()

    async def _persist_delete(self, link_id: int) -> None:
        if not self._db_session_factory:
            return
        from sqlalchemy import delete
        from ..models.hourly_baseline import HourlyBaseline
        from ..models.samples import PingRollup, PingSample, SpeedSample
        from ..models.shaping_state import ShapingStateRecord
        from ..models.wan_link import WanLink

        async with self._db_session_factory() as session:
            for model in (HourlyBaseline, SpeedSample, PingSample, PingRollup, ShapingStateRecord):
                await session.execute(delete(model).where(model.wan_link_id == link_id))
            await session.execute(delete(WanLink).where(WanLink.id == link_id))
            await session.commit()

    async def save_shaping_state(self, link_id: int, state: ShapingState) -> None:
        """Swap in a new shaping state and write it through."""
        runtime = self.get(link_id)
        runtime.shaping = state
        if not self._db_session_factory:
            return
        from sqlalchemy import select
        from ..models.shaping_state import ShapingStateRecord

        try:
            async with self._db_session_factory() as session:
                row = (
                    await session.execute(
                        select(ShapingStateRecord).where(ShapingStateRecord.wan_link_id == link_id)
                    )
                ).scalar_one_or_none()
                if row is None:
                    row = ShapingStateRecord(wan_link_id=link_id)
                    session.add(row)
                row.applied_down_mbps = state.applied_down_mbps
                row.applied_up_mbps = state.applied_up_mbps
                row.last_applied_at = state.last_applied_at
                row.last_adjustment_reason = state.last_adjustment_reason
                row.last_deployed_content_hash = state.last_deployed_content_hash
                row.deployed_path = state.deployed_path
                await session.commit()
        except Exception as e:
            logger.error("shaping_state_persist_failed", link_id=link_id, error=str(e))


def _row_fields(link: WanLinkConfig) -> dict:
    data = {k: getattr(link, k) for k in _EDITABLE_FIELDS}
    data["profile"] = link.profile.value
    return data

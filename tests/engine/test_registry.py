"""Tests for WanLinkRegistry."""

import pytest

from adaptive_sqm.core.errors import LinkConfigurationError, LinkNotFound
from adaptive_sqm.core.profiles import ConnectionProfile
from adaptive_sqm.engine.registry import WanLinkRegistry
from adaptive_sqm.engine.state import ShapingState

from conftest import MONDAY_18, link_fields


class TestCreateLink:
    @pytest.mark.asyncio
    async def test_defaults(self, sqm_config):
        registry = WanLinkRegistry(config=sqm_config)
        runtime = await registry.create_link(**link_fields())
        link = runtime.link

        assert link.id == 1
        assert link.profile == ConnectionProfile.DOCSIS
        assert link.floor_download_mbps == 125.0
        assert link.floor_upload_mbps == 10.0
        assert link.ping_host == "1.1.1.1"
        assert link.ifb_device == "ifbeth8"
        assert not runtime.has_rate_source
        assert not runtime.shaping.is_applied

    @pytest.mark.asyncio
    async def test_many_links_get_distinct_runtimes(self, sqm_config):
        registry = WanLinkRegistry(config=sqm_config)
        runtimes = [
            await registry.create_link(**link_fields(name=f"wan{i}", interface=f"eth{i}")) for i in range(1, 5)
        ]
        assert len(registry) == 4
        assert len({id(rt.deploy_lock) for rt in runtimes}) == 4
        assert [link.name for link in registry.list_links()] == ["wan1", "wan2", "wan3", "wan4"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"interface": "eth8; reboot"},
            {"interface": "enp0s31f6abcdef"},  # valid alone, but ifb<iface> overflows IFNAMSIZ
            {"profile": "dsl"},
            {"floor_download_mbps": 600.0},
            {"floor_upload_mbps": 0.0},
            {"nominal_upload_mbps": 0.0},
            {"ping_host": "1.1.1.1 && reboot"},
            {"speedtest_server_id": "12ab"},
            {"speedtest_morning_hour": 24},
            {"name": ""},
            {"color": "blue"},
        ],
    )
    async def test_invalid_definitions_rejected(self, sqm_config, overrides):
        registry = WanLinkRegistry(config=sqm_config)
        with pytest.raises(LinkConfigurationError):
            await registry.create_link(**link_fields(**overrides))
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_duplicate_name_rejected(self, sqm_config):
        registry = WanLinkRegistry(config=sqm_config)
        await registry.create_link(**link_fields())
        with pytest.raises(LinkConfigurationError):
            await registry.create_link(**link_fields(interface="eth9"))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["WAN 1", "wan_1", "Wan--1", "wan-1!"])
    async def test_name_sharing_boot_script_slug_rejected(self, sqm_config, name):
        registry = WanLinkRegistry(config=sqm_config)
        await registry.create_link(**link_fields(name="wan-1"))
        with pytest.raises(LinkConfigurationError, match="collides"):
            await registry.create_link(**link_fields(name=name, interface="eth9"))
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_rename_onto_another_links_slug_rejected(self, sqm_config):
        registry = WanLinkRegistry(config=sqm_config)
        await registry.create_link(**link_fields(name="WAN 1"))
        second = await registry.create_link(**link_fields(name="backup", interface="eth9"))
        with pytest.raises(LinkConfigurationError):
            await registry.update_link(second.link_id, name="wan_1")
        assert second.link.name == "backup"

    @pytest.mark.asyncio
    async def test_renaming_own_slug_variant_allowed(self, sqm_config):
        registry = WanLinkRegistry(config=sqm_config)
        runtime = await registry.create_link(**link_fields(name="wan 1"))
        await registry.update_link(runtime.link_id, name="WAN 1")
        assert runtime.link.name == "WAN 1"

    def test_list_profiles(self):
        profiles = WanLinkRegistry.list_profiles()
        assert set(profiles) == {"docsis", "fiber", "wireless", "starlink", "cellular"}
        assert profiles["docsis"]["safety_margin_factor"] == 0.92
        assert profiles["fiber"]["backoff_percent"] == 0.10


class TestUpdateDelete:
    @pytest.mark.asyncio
    async def test_lowering_nominal_pulls_floor_down(self, sqm_config):
        registry = WanLinkRegistry(config=sqm_config)
        runtime = await registry.create_link(**link_fields())
        await registry.update_link(runtime.link_id, nominal_download_mbps=100.0)

        assert runtime.link.nominal_download_mbps == 100.0
        assert runtime.link.floor_download_mbps == 100.0
        assert runtime.link.floor_upload_mbps == 10.0

    @pytest.mark.asyncio
    async def test_update_keeps_runtime_state(self, sqm_config):
        registry = WanLinkRegistry(config=sqm_config)
        runtime = await registry.create_link(**link_fields())
        runtime.has_rate_source = True
        updated = await registry.update_link(runtime.link_id, profile="fiber")

        assert updated is runtime
        assert runtime.has_rate_source
        assert runtime.link.params.safety_margin_factor == 0.95

    @pytest.mark.asyncio
    async def test_invalid_update_leaves_link_unchanged(self, sqm_config):
        registry = WanLinkRegistry(config=sqm_config)
        runtime = await registry.create_link(**link_fields())
        with pytest.raises(LinkConfigurationError):
            await registry.update_link(runtime.link_id, floor_upload_mbps=100.0)
        assert runtime.link.floor_upload_mbps == 10.0

    @pytest.mark.asyncio
    async def test_delete_runs_teardown_hooks(self, sqm_config):
        registry = WanLinkRegistry(config=sqm_config)
        torn_down = []

        async def hook(link_id):
            torn_down.append(link_id)

        registry.add_teardown_hook(hook)
        runtime = await registry.create_link(**link_fields())
        await registry.delete_link(runtime.link_id)

        assert torn_down == [runtime.link_id]
        with pytest.raises(LinkNotFound):
            registry.get(runtime.link_id)

    @pytest.mark.asyncio
    async def test_failing_hook_does_not_block_delete(self, sqm_config):
        registry = WanLinkRegistry(config=sqm_config)

        async def hook(link_id):
            raise RuntimeError("boom")

        registry.add_teardown_hook(hook)
        runtime = await registry.create_link(**link_fields())
        await registry.delete_link(runtime.link_id)
        assert len(registry) == 0

    def test_unknown_link_is_key_error(self, sqm_config):
        registry = WanLinkRegistry(config=sqm_config)
        with pytest.raises(KeyError):
            registry.get(42)


class TestPersistence:
    @pytest.mark.asyncio
    async def test_links_and_shaping_state_restored(self, sqm_config, db_session_factory):
        registry = WanLinkRegistry(config=sqm_config, db_session_factory=db_session_factory)
        runtime = await registry.create_link(**link_fields(speedtest_server_id="1234"))
        await registry.save_shaping_state(
            runtime.link_id,
            ShapingState(
                applied_down_mbps=276.0,
                applied_up_mbps=18.4,
                last_applied_at=MONDAY_18,
                last_adjustment_reason="initial",
                last_deployed_content_hash="ab" * 32,
                deployed_path="/data/on_boot.d/25-adaptive-sqm-wan1.sh",
            ),
        )

        restored = WanLinkRegistry(config=sqm_config, db_session_factory=db_session_factory)
        assert await restored.initialize() == 1

        again = restored.get(runtime.link_id)
        assert again.link.name == "wan1"
        assert again.link.speedtest_server_id == "1234"
        assert again.shaping.applied_down_mbps == 276.0
        assert again.shaping.last_deployed_content_hash == "ab" * 32
        assert again.shaping.deployed_path == "/data/on_boot.d/25-adaptive-sqm-wan1.sh"
        assert again.has_rate_source

    @pytest.mark.asyncio
    async def test_deleted_link_not_restored(self, sqm_config, db_session_factory):
        registry = WanLinkRegistry(config=sqm_config, db_session_factory=db_session_factory)
        first = await registry.create_link(**link_fields())
        await registry.create_link(**link_fields(name="wan2", interface="eth9"))
        await registry.delete_link(first.link_id)

        restored = WanLinkRegistry(config=sqm_config, db_session_factory=db_session_factory)
        assert await restored.initialize() == 1
        assert [link.name for link in restored.list_links()] == ["wan2"]

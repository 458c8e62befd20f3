"""Tests for the DecisionEngine: margin, clamping, hysteresis and backoff."""

import pytest

from adaptive_sqm.core.profiles import ConnectionProfile, Direction
from adaptive_sqm.engine.decision import REASON_BACKOFF, REASON_INITIAL, DecisionEngine
from adaptive_sqm.engine.state import ShapingState, WanLinkConfig


def _link(profile=ConnectionProfile.DOCSIS, **overrides) -> WanLinkConfig:
    fields = dict(
        id=1,
        name="wan1",
        interface="eth8",
        profile=profile,
        nominal_download_mbps=500.0,
        nominal_upload_mbps=40.0,
        floor_download_mbps=50.0,
        floor_upload_mbps=5.0,
    )
    fields.update(overrides)
    return WanLinkConfig(**fields)


def _applied(down, up) -> ShapingState:
    return ShapingState(applied_down_mbps=down, applied_up_mbps=up, last_deployed_content_hash="x")


class TestShapingRate:
    def test_cold_start_docsis(self):
        engine = DecisionEngine()
        decision = engine.decide(300.0, 20.0, _link(), ShapingState())
        assert decision.apply
        assert decision.reason == REASON_INITIAL
        assert decision.down_mbps == 276.0
        assert decision.up_mbps == 18.4

    def test_fiber_uses_smaller_margin(self):
        engine = DecisionEngine()
        result = engine.compute_shaping_rate(100.0, _link(ConnectionProfile.FIBER), ShapingState())
        assert result.rate == 95.0

    @pytest.mark.parametrize(
        "effective", [0.0, -5.0, 0.0001, 123.4, 1e9, float("inf"), float("-inf"), float("nan"), None]
    )
    @pytest.mark.parametrize("direction", [Direction.DOWNLOAD, Direction.UPLOAD])
    def test_never_leaves_floor_nominal_range(self, effective, direction):
        engine = DecisionEngine()
        link = _link()
        for previous in (ShapingState(), _applied(276.0, 18.4)):
            result = engine.compute_shaping_rate(effective, link, previous, direction)
            assert link.floor(direction) <= result.rate <= link.nominal(direction)
            assert link.floor(direction) <= result.candidate <= link.nominal(direction)

    def test_spike_clamped_to_nominal(self):
        engine = DecisionEngine()
        assert engine.candidate_rate(10_000.0, _link(), Direction.DOWNLOAD) == 500.0

    def test_zero_clamped_to_floor(self):
        engine = DecisionEngine()
        assert engine.candidate_rate(0.0, _link(), Direction.UPLOAD) == 5.0

    def test_ceiling_caps_candidate(self):
        engine = DecisionEngine()
        result = engine.compute_shaping_rate(
            300.0, _link(), _applied(200.0, 18.4), Direction.DOWNLOAD, ceiling=200.0
        )
        assert result.candidate == 200.0
        assert not result.changed


class TestHysteresis:
    def test_oscillation_inside_band_deploys_at_most_once(self):
        engine = DecisionEngine(hysteresis_min_delta=0.03)
        link = _link()
        state = ShapingState()
        deployments = 0
        for effective in (300.0, 303.0, 297.0, 301.5, 298.0, 302.0, 299.0, 300.5):
            decision = engine.decide(effective, 20.0, link, state)
            if decision.apply:
                deployments += 1
                state = _applied(decision.down_mbps, decision.up_mbps)
        assert deployments == 1
        assert state.applied_down_mbps == 276.0

    def test_change_beyond_band_applies(self):
        engine = DecisionEngine(hysteresis_min_delta=0.03)
        decision = engine.decide(320.0, 20.0, _link(), _applied(276.0, 18.4))
        assert decision.apply
        assert decision.down_mbps == 294.4
        # Upload moved less than the band and keeps its applied rate
        assert decision.up_mbps == 18.4

    def test_exceeds_hysteresis_boundary(self):
        engine = DecisionEngine(hysteresis_min_delta=0.03)
        assert not engine.exceeds_hysteresis(103.0, 100.0)
        assert engine.exceeds_hysteresis(103.5, 100.0)
        assert engine.exceeds_hysteresis(50.0, None)

    def test_force_ignores_band(self):
        engine = DecisionEngine()
        decision = engine.decide(301.0, 20.0, _link(), _applied(276.0, 18.4), reason="manual_redeploy", force=True)
        assert decision.apply
        assert decision.down_mbps == 276.92


class TestBackoff:
    def test_backoff_bypasses_hysteresis(self):
        engine = DecisionEngine()
        decision = engine.compute_backoff(_link(), _applied(276.0, 18.4))
        assert decision.apply
        assert decision.reason == REASON_BACKOFF
        assert decision.down_mbps == pytest.approx(234.6)
        assert decision.up_mbps == pytest.approx(15.64)

    def test_backoff_stops_at_floor(self):
        engine = DecisionEngine()
        decision = engine.compute_backoff(_link(), _applied(50.0, 5.0))
        assert not decision.apply
        assert (decision.down_mbps, decision.up_mbps) == (50.0, 5.0)

    def test_backoff_clamps_to_floor(self):
        engine = DecisionEngine()
        decision = engine.compute_backoff(_link(), _applied(55.0, 5.5))
        assert decision.apply
        assert decision.down_mbps == 50.0
        assert decision.up_mbps == 5.0

    def test_no_backoff_before_first_deploy(self):
        assert DecisionEngine().compute_backoff(_link(), ShapingState()) is None

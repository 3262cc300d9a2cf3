"""
Tests for thaw-front tracking and the surface wetting zones.
"""
import numpy as np
import pytest

from spasoil.core.config import SolverConfig
from spasoil.core.constants import FREEZE
from spasoil.core.exceptions import SoilDesiccated
from spasoil.core.types import StepDiagnostics
from spasoil.physics.freeze_thaw import FreezeThawTracker
from spasoil.physics.soil_properties import latent_heat_vaporisation
from spasoil.physics.state import WettingZone
from spasoil.physics.wetting import SurfaceWettingModel


class TestFreezeThawTracker:

    @pytest.fixture
    def tracker(self):
        return FreezeThawTracker()

    def test_thawed_column_has_no_ice(self, tracker, state):
        state.temperature[:] = FREEZE + 5.0
        fronts = tracker.update(state, FREEZE + 5.0)

        assert fronts == []
        assert np.all(state.ice_proportion[:4] == 0.0)

    def test_frozen_column_is_all_ice(self, tracker, state):
        state.temperature[:] = FREEZE - 5.0
        fronts = tracker.update(state, FREEZE - 5.0)

        assert fronts == []
        np.testing.assert_allclose(state.ice_proportion[:4], 1.0)

    def test_single_front_interpolated(self, tracker, state):
        """Thaw over frozen ground: one front between the first two nodes"""
        state.temperature[:] = FREEZE - 2.0
        state.temperature[0] = FREEZE + 1.85

        fronts = tracker.update(state, FREEZE + 1.85)

        assert len(fronts) == 1
        mid = state.midpoint_depth
        assert mid[0] < fronts[0] < mid[1]
        # temperature interpolated to the front is the freezing point
        t_front = np.interp(fronts[0], mid[:2], state.temperature[:2])
        assert t_front == pytest.approx(FREEZE, abs=1e-9)
        # thawed top half of layer 1 is above the front
        split = (fronts[0] - state.depth_to_top[1]) / (0.5 * state.thickness[1])
        assert state.ice_proportion[1] == pytest.approx(0.5 * (1 - split) + 0.5)
        assert state.ice_proportion[0] == 0.0

    def test_multiple_fronts(self, tracker, state):
        """A frozen band between thawed layers gives two fronts"""
        state.temperature[:] = [FREEZE + 2.0, FREEZE - 1.0, FREEZE - 1.0, FREEZE + 1.0, FREEZE + 3.0]

        fronts = tracker.update(state, FREEZE + 2.0)

        assert len(fronts) == 2
        assert fronts[0] < fronts[1]
        assert np.all(state.ice_proportion[:4] >= 0.0)
        assert np.all(state.ice_proportion[:4] <= 1.0)
        assert state.ice_proportion[2] == pytest.approx(1.0)
        assert 0.0 < state.ice_proportion[3] < 1.0

    def test_refreezing_from_the_surface(self, tracker, state):
        state.temperature[:] = FREEZE + 3.0
        state.temperature[0] = FREEZE - 3.0

        fronts = tracker.update(state, FREEZE - 3.0)

        assert len(fronts) == 1
        assert state.ice_proportion[0] == pytest.approx(1.0)
        assert 0.0 < state.ice_proportion[1] < 0.5

    def test_node_at_freezing_point_counts_as_frozen(self, tracker, state):
        """A node exactly at the freezing point is frozen in both pairs it belongs to"""
        state.temperature[:] = [FREEZE + 2.0, FREEZE, FREEZE - 1.0, FREEZE - 1.0, FREEZE - 1.0]

        fronts = tracker.update(state, FREEZE + 2.0)

        assert fronts == [pytest.approx(state.midpoint_depth[1])]
        assert state.ice_proportion[0] == 0.0
        assert state.ice_proportion[1] == pytest.approx(0.5)
        assert state.ice_proportion[2] == pytest.approx(1.0)
        assert state.ice_proportion[3] == pytest.approx(1.0)

    def test_core_node_untouched(self, tracker, state):
        state.ice_proportion[-1] = 0.25
        state.temperature[:] = FREEZE - 5.0
        tracker.update(state, FREEZE - 5.0)
        assert state.ice_proportion[-1] == 0.25

    def test_fronts_recorded_on_diagnostics(self, tracker, state):
        diagnostics = StepDiagnostics()
        state.temperature[:] = [FREEZE + 2.0, FREEZE - 1.0, FREEZE - 1.0, FREEZE + 1.0, FREEZE + 3.0]
        fronts = tracker.update(state, FREEZE + 2.0, diagnostics)
        assert diagnostics.thaw_depths_m == fronts


def latent_for(netc, state, air_temperature_k=288.15, step_seconds=3600.0):
    """Latent heat flux (W m-2) producing a net wetting ``netc`` (m)"""
    lam = latent_heat_vaporisation(air_temperature_k)
    return netc * state.porosity[0] * lam / (0.001 * step_seconds)


def rain_for(netc, state):
    """Surface water (mm) producing a net wetting ``netc`` (m)"""
    return netc * state.porosity[0] / 0.001


class TestSurfaceWettingModel:

    @pytest.fixture
    def wetting(self):
        return SurfaceWettingModel(SolverConfig())

    def update(self, wetting, state, netc_dry=0.0, netc_wet=0.0):
        return wetting.update(
            state,
            latent_for(netc_dry, state),
            rain_for(netc_wet, state),
            288.15,
            3600.0,
        )

    def test_net_change(self, wetting, state):
        netc = wetting.net_change(state, latent_for(-0.002, state), rain_for(0.001, state), 288.15, 3600.0)
        assert netc == pytest.approx(-0.001)

    def test_drying_deepens_dry_zone(self, wetting, state):
        drythick = self.update(wetting, state, netc_dry=-0.01)

        assert drythick == pytest.approx(0.01)
        assert state.drythick_m == drythick
        assert state.wetting_zones[0].top_m == pytest.approx(0.01)

    def test_rain_resaturates_primary_zone(self, wetting, state):
        """The primary zone is rewetted from the top but never deepens"""
        state.wetting_zones = [WettingZone(0.01, 0.05)]

        drythick = self.update(wetting, state, netc_wet=0.02)

        assert state.wetting_zones == [WettingZone(0.0, 0.05)]
        assert drythick == pytest.approx(wetting.config.min_drythick_m)

    def test_light_rain_creates_new_zone(self, wetting, state):
        state.wetting_zones = [WettingZone(0.02, 0.05)]

        self.update(wetting, state, netc_wet=0.005)

        assert len(state.wetting_zones) == 2
        assert state.wetting_zones[-1].top_m == 0.0
        assert state.wetting_zones[-1].bottom_m == pytest.approx(0.005)

    def test_deepening_zone_merges(self, wetting, state):
        state.wetting_zones = [WettingZone(0.02, 0.05), WettingZone(0.0, 0.005)]

        self.update(wetting, state, netc_wet=0.03)

        assert len(state.wetting_zones) == 1
        assert state.wetting_zones[0].top_m == 0.0
        assert state.wetting_zones[0].bottom_m == pytest.approx(0.05)

    def test_resaturation_merges(self, wetting, state):
        state.wetting_zones = [WettingZone(0.03, 0.05), WettingZone(0.004, 0.01)]

        self.update(wetting, state, netc_wet=0.03)

        assert len(state.wetting_zones) == 1
        assert state.wetting_zones[0].top_m == 0.0

    def test_drying_cascades_to_deeper_zone(self, wetting, state):
        state.wetting_zones = [WettingZone(0.02, 0.05), WettingZone(0.0, 0.005)]

        drythick = self.update(wetting, state, netc_dry=-0.01)

        assert len(state.wetting_zones) == 1
        # 0.005 m of drying left over after the shallow zone dried out
        assert state.wetting_zones[0].top_m == pytest.approx(0.025)
        assert drythick == pytest.approx(0.025)

    def test_drying_cascades_through_several_zones(self, wetting, state):
        state.wetting_zones = [
            WettingZone(0.03, 0.05), WettingZone(0.01, 0.012), WettingZone(0.0, 0.002)
        ]

        self.update(wetting, state, netc_dry=-0.008)

        assert len(state.wetting_zones) == 1
        assert state.wetting_zones[0].top_m == pytest.approx(0.034)

    def test_drying_out_last_zone_raises(self, wetting, state):
        state.wetting_zones = [WettingZone(0.04, 0.05)]

        with pytest.raises(SoilDesiccated):
            self.update(wetting, state, netc_dry=-0.02)

    def test_no_zones_raises(self, wetting, state):
        state.wetting_zones = []

        with pytest.raises(SoilDesiccated) as exc_info:
            self.update(wetting, state, netc_wet=0.01)

        assert exc_info.value.context.component == "SurfaceWettingModel"

"""
Integration tests for the timestep orchestrator.
"""
import json
import warnings
from datetime import date

import numpy as np
import pandas as pd
import pytest

from spasoil.core.config import BalanceConfig, LayerConfig, SiteParameters, SoilConfig, SpaConfig
from spasoil.core.constants import FREEZE
from spasoil.core.exceptions import EnergyBalanceWarning, NonConvergence, SoilDesiccated
from spasoil.core.types import Phase, StepDiagnostics
from spasoil.physics.freeze_thaw import FreezeThawTracker
from spasoil.physics.numerical_solver import BalanceCheck
from spasoil.physics.orchestrator import DailyStepOrchestrator
from spasoil.physics.state import SoilColumnState


def synthetic_forcings(n_steps: int, seed: int = 0) -> pd.DataFrame:
    """Hourly forcing with a diurnal cycle and a rain shower every 12 hours"""
    rng = np.random.default_rng(seed)
    hours = np.arange(n_steps)
    daylight = np.clip(np.sin(2 * np.pi * (hours % 24 - 6) / 24), 0, None)
    precipitation = np.where(hours % 12 == 3, 1.5, 0.0)
    return pd.DataFrame({
        "air_temperature_k": 285.0 + 5.0 * daylight + rng.normal(0, 0.3, n_steps),
        "vpd_kpa": 0.3 + 1.0 * daylight,
        "wind_speed_m_s": 1.5 + rng.uniform(0, 1, n_steps),
        "soil_radiation_w_m2": 250.0 * daylight,
        "precipitation_mm": precipitation,
        "canopy_net_radiation_w_m2": 300.0 * daylight,
        "transpiration_mm": 0.05 * daylight,
    })


class TestDailyStepOrchestrator:

    @pytest.fixture
    def orchestrator(self, small_config):
        return DailyStepOrchestrator(small_config)

    def test_single_step(self, orchestrator, make_context):
        diagnostics = orchestrator.run_step(make_context(), transpiration_mm=0.1)

        assert np.isfinite(diagnostics.surface_temperature_k)
        assert orchestrator.phase == Phase.DONE
        assert orchestrator.state.step_count == 1
        assert diagnostics.transpiration_mm == pytest.approx(0.1)
        assert diagnostics.soil_evaporation_mm > 0.0
        assert diagnostics.evapotranspiration_mm == pytest.approx(
            diagnostics.soil_evaporation_mm + diagnostics.canopy_evaporation_mm + 0.1
        )
        # mm per hour of water is about 685 W m-2 at 15 C
        assert diagnostics.evapotranspiration_w_m2 == pytest.approx(
            diagnostics.evapotranspiration_mm * 685.0, rel=0.01
        )

    def test_mass_balance_closes(self, orchestrator, make_context):
        for step in range(6):
            context = make_context(step=step, precipitation_mm=2.0 if step == 2 else 0.0)
            diagnostics = orchestrator.run_step(context, transpiration_mm=0.05)

            assert abs(diagnostics.mass_balance_error_mm) < 1e-6
            assert not [w for w in diagnostics.warnings if w[0] == "MassBalanceWarning"]

        report = orchestrator.balance.report()
        assert report["n_timesteps"] == 6
        assert report["n_mass_violations"] == 0

    def test_mass_balance_closes_through_a_freezing_spell(self, orchestrator, make_context):
        """Roots and evaporation draw only on liquid water while the top layers are frozen"""
        state = orchestrator.state
        state.temperature[:state.n_layers] = [FREEZE - 4.0, FREEZE - 2.0, FREEZE - 0.5, FREEZE + 1.0]
        FreezeThawTracker().update(state, FREEZE - 4.0)
        assert state.ice_proportion[0] == pytest.approx(1.0)

        for step in range(12):
            context = make_context(
                step=step, air_temperature_k=FREEZE - 3.0 + 0.5 * step,
                vpd_kpa=0.2, soil_radiation_w_m2=50.0,
            )
            diagnostics = orchestrator.run_step(context, transpiration_mm=0.2)

            assert abs(diagnostics.mass_balance_error_mm) < 1e-6
            assert abs(diagnostics.column_heat_error_w_m2) < 1e-3
            assert diagnostics.transpiration_mm <= 0.2 + 1e-12
            assert not [w for w in diagnostics.warnings if w[0] == "MassBalanceWarning"]
            assert not [w for w in diagnostics.warnings if "clamped" in w[1]]

        report = orchestrator.balance.report()
        assert report["n_mass_violations"] == 0
        assert report["n_column_heat_violations"] == 0

    def test_column_heat_budget_closes(self, make_context):
        """On a uniform column the heat content change is fully explained"""
        layers = [LayerConfig(thickness_m=0.1, thermal_conductivity_unfrozen=1.2) for _ in range(5)]
        orchestrator = DailyStepOrchestrator(SpaConfig(soil=SoilConfig(layers=layers)))

        for step in range(6):
            context = make_context(
                step=step, precipitation_mm=3.0 if step == 1 else 0.0, soil_radiation_w_m2=300.0
            )
            diagnostics = orchestrator.run_step(context, transpiration_mm=0.1)

            assert diagnostics.interface_imbalance_w_m2 == pytest.approx(0.0, abs=1e-12)
            assert diagnostics.conducted_heat_j_m2 != 0.0
            assert diagnostics.advected_heat_j_m2 != 0.0
            assert abs(diagnostics.column_heat_error_w_m2) < 1e-3

        assert orchestrator.balance.report()["n_column_heat_violations"] == 0

    def test_energy_balance_residual_small(self, orchestrator, make_context):
        diagnostics = orchestrator.run_step(make_context())
        assert abs(diagnostics.energy_balance_error_w_m2) < orchestrator.config.balance.energy_tolerance_w_m2

    def test_state_stays_in_bounds(self, orchestrator):
        orchestrator.run_period(synthetic_forcings(48))
        state = orchestrator.state
        n = state.n_layers

        assert np.all(state.water_fraction[:n] >= 0.0)
        assert np.all(state.water_fraction[:n] <= state.porosity[:n] + 1e-12)
        assert np.all(state.ice_proportion >= 0.0)
        assert np.all(state.ice_proportion <= 1.0)

    def test_measured_sapflow_replaces_transpiration(self, orchestrator, make_context):
        diagnostics = orchestrator.run_step(
            make_context(), transpiration_mm=0.3, measured_sapflow_mm=0.05
        )
        assert diagnostics.transpiration_mm == pytest.approx(0.05)

    def test_measured_sapflow_adds_in_add_mode(self, small_config, make_context):
        config = small_config.model_copy(update={"site": SiteParameters(sapflow_mode="add")})
        orchestrator = DailyStepOrchestrator(config)

        diagnostics = orchestrator.run_step(
            make_context(), transpiration_mm=0.3, measured_sapflow_mm=0.05
        )
        assert diagnostics.transpiration_mm == pytest.approx(0.35)

    def test_transpiration_follows_uptake_fractions(self, orchestrator, make_context):
        before = orchestrator.state.water_fraction.copy()
        orchestrator.run_step(make_context(), transpiration_mm=1.0, uptake_fractions=[0.0, 0.0, 0.0, 1.0])
        after = orchestrator.state.water_fraction

        # only the deepest active layer loses root water
        assert after[3] < before[3]
        assert after[2] == pytest.approx(before[2])

    def test_snowfall_accumulates_and_skips_canopy(self, orchestrator, make_context):
        diagnostics = orchestrator.run_step(
            make_context(air_temperature_k=268.15, precipitation_mm=5.0, vpd_kpa=0.1)
        )

        assert diagnostics.snow_water_mm == pytest.approx(5.0)
        assert diagnostics.surface_input_mm == 0.0
        assert diagnostics.canopy_store_mm == 0.0
        assert diagnostics.canopy_evaporation_mm == 0.0

    def test_snowmelt_reaches_soil(self, orchestrator, make_context):
        orchestrator.state.snow.water_mm = 10.0

        diagnostics = orchestrator.run_step(make_context(air_temperature_k=280.15, step=1))

        assert diagnostics.snow_water_mm == pytest.approx(9.0)
        assert diagnostics.surface_input_mm == pytest.approx(1.0)
        assert abs(diagnostics.mass_balance_error_mm) < 1e-6

    def test_round_trip_gives_identical_next_step(self, small_config, make_context):
        """A serialised and restored column continues bit-identically"""
        original = DailyStepOrchestrator(small_config)
        original.run_step(make_context(precipitation_mm=1.0), transpiration_mm=0.1)

        payload = json.dumps(original.state.to_dict())
        restored = DailyStepOrchestrator(
            small_config, state=SoilColumnState.from_dict(json.loads(payload))
        )

        context = make_context(step=1, air_temperature_k=290.15, soil_radiation_w_m2=350.0)
        a = original.run_step(context, transpiration_mm=0.2)
        b = restored.run_step(context, transpiration_mm=0.2)

        assert a.to_record() == b.to_record()
        for name in ("water_fraction", "temperature", "ice_proportion"):
            assert np.array_equal(getattr(original.state, name), getattr(restored.state, name))
        assert original.state.wetting_zones == restored.state.wetting_zones

    def test_desiccated_column_stops(self, orchestrator, make_context):
        orchestrator.state.wetting_zones = []

        with pytest.raises(SoilDesiccated) as exc_info:
            orchestrator.run_step(make_context(step=7))

        context = exc_info.value.context
        assert context.phase == Phase.WATER_FLUX.value
        assert context.step == 7
        assert context.site_id == orchestrator.site_id

    def test_non_convergence_stops(self, orchestrator, make_context):
        context = make_context(wind_speed_m_s=0.0, soil_radiation_w_m2=1e5)

        with pytest.raises(NonConvergence) as exc_info:
            orchestrator.run_step(context)

        assert exc_info.value.context.phase == Phase.SURFACE_TEMPERATURE.value
        assert orchestrator.state.step_count == 0

    def test_run_period(self, orchestrator):
        forcings = synthetic_forcings(24)
        results = orchestrator.run_period(forcings, start_date=date(2024, 6, 1))

        assert len(results) == 24
        for col in ("surface_temperature_k", "evapotranspiration_mm", "mass_balance_error_mm",
                    "water_fraction_0", "temperature_k_3", "ice_proportion_2", "time"):
            assert col in results.columns
        assert results["time"].iloc[1] - results["time"].iloc[0] == pd.Timedelta(hours=1)
        assert results["mass_balance_error_mm"].abs().max() < 1e-6
        assert orchestrator.state.step_count == 24

    def test_run_period_with_sapflow_column(self, orchestrator):
        forcings = synthetic_forcings(4)
        forcings["measured_sapflow_mm"] = [0.01, np.nan, 0.02, np.nan]

        results = orchestrator.run_period(forcings)

        assert results["transpiration_mm"].iloc[0] == pytest.approx(0.01)
        assert results["transpiration_mm"].iloc[1] == pytest.approx(forcings["transpiration_mm"].iloc[1])

    def test_run_period_missing_column(self, orchestrator):
        forcings = synthetic_forcings(3).drop(columns=["vpd_kpa"])
        with pytest.raises(ValueError, match="vpd_kpa"):
            orchestrator.run_period(forcings)

    def test_reset(self, orchestrator, make_context):
        orchestrator.run_step(make_context())
        orchestrator.reset()

        assert orchestrator.state.step_count == 0
        assert orchestrator.balance.report()["n_timesteps"] == 0

    def test_diagnostic_info(self, orchestrator, make_context):
        orchestrator.run_step(make_context())
        info = orchestrator.get_diagnostic_info()

        assert info["steps"] == 1
        assert info["balance"]["n_timesteps"] == 1
        assert info["integrator"]["n_integrations"] > 0


class TestBalanceCheck:

    @pytest.fixture
    def balance(self):
        return BalanceCheck(BalanceConfig())

    def test_column_heat_error_flagged(self, balance):
        diagnostics = StepDiagnostics()

        with pytest.warns(EnergyBalanceWarning, match="Column heat budget"):
            balance.check(100.0, 100.0, {}, {}, 0.0, diagnostics, column_heat_error_w_m2=3.0)

        assert diagnostics.column_heat_error_w_m2 == 3.0
        report = balance.report()
        assert report["n_column_heat_violations"] == 1
        assert report["max_column_heat_error_w_m2"] == 3.0
        assert report["n_energy_violations"] == 0

    def test_surface_residual_checked_separately(self, balance):
        diagnostics = StepDiagnostics()

        with pytest.warns(EnergyBalanceWarning, match="Surface energy balance"):
            balance.check(100.0, 100.0, {}, {}, 2.0, diagnostics, column_heat_error_w_m2=0.0)

        assert balance.report()["n_energy_violations"] == 1
        assert balance.report()["n_column_heat_violations"] == 0

    def test_small_errors_pass(self, balance):
        diagnostics = StepDiagnostics()

        with warnings.catch_warnings():
            warnings.simplefilter("error")
            balance.check(100.0, 99.5, {"rain": 0.5}, {"evaporation": 1.0}, 0.1, diagnostics,
                          column_heat_error_w_m2=0.01)

        assert diagnostics.mass_balance_error_mm == pytest.approx(0.0)
        assert diagnostics.warnings == []

    def test_reset(self, balance):
        with pytest.warns(EnergyBalanceWarning):
            balance.check(100.0, 100.0, {}, {}, 0.0, StepDiagnostics(), column_heat_error_w_m2=3.0)
        balance.reset()

        assert balance.report()["n_column_heat_violations"] == 0
        assert balance.report()["max_column_heat_error_w_m2"] == 0.0

"""
Tests for the heat diffusion solver and the surface energy balance.
"""
import numpy as np
import pytest

from spasoil.core.config import LayerConfig, SoilConfig, SolverConfig, SpaConfig, VegetationConfig
from spasoil.core.constants import FREEZE
from spasoil.core.exceptions import NonConvergence
from spasoil.physics.heat_diffusion import HeatDiffusionSolver
from spasoil.physics.state import SoilColumnState
from spasoil.physics.surface_energy import (
    SurfaceEnergyBalance,
    exchange_coefficient,
    saturation_vapour_pressure,
)


class TestHeatDiffusionSolver:

    @pytest.fixture
    def solver(self):
        return HeatDiffusionSolver(SolverConfig())

    def test_uniform_profile_is_steady(self, solver, state):
        """No gradient, no change"""
        state.temperature[:] = 280.0
        result = solver.solve(state, 280.0, 3600.0)

        np.testing.assert_allclose(state.temperature, 280.0, atol=1e-9)
        assert result.iterations >= 1

    def test_boundaries_are_fixed(self, solver, state):
        state.temperature[:] = np.linspace(283.0, 278.0, 5)
        core_before = state.temperature[-1]

        solver.solve(state, 295.0, 3600.0)

        assert state.temperature[0] == pytest.approx(295.0)
        assert state.temperature[-1] == core_before

    def test_surface_warming_propagates_down(self, solver, state):
        state.temperature[:] = 280.0
        solver.solve(state, 300.0, 3600.0)

        interior = state.temperature[1:4]
        assert np.all(interior > 280.0)
        assert np.all(interior < 300.0)
        # warming decays with depth
        assert np.all(np.diff(interior) < 0)

    def test_converged_sweep_is_idempotent(self, solver, state):
        """Relaxing an already converged profile changes no node beyond tolerance"""
        state.temperature[:] = np.linspace(283.0, 278.0, 5)
        temperature_n = state.temperature.copy()
        temperature_n[0] = 290.0
        diffusion = solver.diffusion_numbers(state, 3600.0)

        guess = temperature_n.copy()
        solver.relax(temperature_n, guess, diffusion)
        converged = guess.copy()
        solver.relax(temperature_n, guess, diffusion)

        assert np.max(np.abs(guess - converged)) <= solver.config.heat_tolerance

    def test_iteration_cap_raises(self, state):
        solver = HeatDiffusionSolver(SolverConfig(heat_max_iterations=1))
        state.temperature[:] = 280.0

        with pytest.raises(NonConvergence) as exc_info:
            solver.solve(state, 300.0, 3600.0)

        assert exc_info.value.context.iterations == 1
        assert exc_info.value.context.residual > 0

    def test_statistics(self, solver, state):
        solver.solve(state, 290.0, 3600.0)
        stats = solver.get_statistics()
        assert stats["max_iterations"] >= 1

    def test_heat_budget_closes(self, solver, state):
        """Heat gained by the solved layers is what crossed the boundaries and interfaces"""
        state.temperature[:] = np.linspace(283.0, 278.0, 5)
        heat_before = state.heat_content(first=1)

        result = solver.solve(state, 295.0, 3600.0)

        explained = (result.conducted_w_m2 + result.interface_imbalance_w_m2) * 3600.0 - result.latent_heat_j_m2
        assert result.surface_flux_w_m2 > 0.0
        assert result.latent_heat_j_m2 == 0.0
        assert state.heat_content(first=1) - heat_before == pytest.approx(explained, abs=1.0)

    def test_heat_budget_closes_in_freezing_range(self, solver, state):
        state.temperature[:] = FREEZE - 0.5
        heat_before = state.heat_content(first=1)

        result = solver.solve(state, FREEZE + 5.0, 3600.0)

        # warming inside the freezing range takes up latent heat
        assert result.latent_heat_j_m2 > 0.0
        explained = (result.conducted_w_m2 + result.interface_imbalance_w_m2) * 3600.0 - result.latent_heat_j_m2
        assert state.heat_content(first=1) - heat_before == pytest.approx(explained, abs=1.0)

    def test_uniform_column_has_no_interface_imbalance(self, solver):
        layers = [LayerConfig(thickness_m=0.1, thermal_conductivity_unfrozen=1.2) for _ in range(5)]
        state = SoilColumnState.from_config(SpaConfig(soil=SoilConfig(layers=layers)))
        state.temperature[:] = np.linspace(290.0, 280.0, 6)

        result = solver.solve(state, 300.0, 3600.0)

        assert result.interface_imbalance_w_m2 == pytest.approx(0.0, abs=1e-12)
        assert result.core_flux_w_m2 < 0.0


class TestSurfaceEnergyBalance:

    @pytest.fixture
    def balance(self):
        return SurfaceEnergyBalance(VegetationConfig(), SolverConfig())

    def test_exchange_coefficient(self):
        gah = exchange_coefficient(2.0, 9.0, 12.0)
        expected = 2.0 * 0.41 ** 2 / np.log(12.0 / (0.13 * 9.0)) ** 2
        assert gah == pytest.approx(expected)

    def test_saturation_vapour_pressure(self):
        # about 2.34 kPa at 20 C
        assert saturation_vapour_pressure(293.15) == pytest.approx(2.34, abs=0.03)

    def test_solve_closes_balance(self, balance, state, make_context):
        context = make_context()
        ts = balance.solve(state, context)

        assert context.air_temperature_k - 50 < ts < context.air_temperature_k + 50
        assert abs(balance.residual(ts, state, context)) < 0.5

    def test_components_sum_to_residual(self, balance, state, make_context):
        context = make_context()
        fluxes = balance.components(290.0, state, context)
        assert fluxes.residual == pytest.approx(balance.residual(290.0, state, context))

    def test_net_radiation_formula(self, balance, make_context):
        context = make_context(soil_radiation_w_m2=400.0)
        expected = 0.85 * 400.0 - 0.96 * 5.670373e-8 * 300.0 ** 4
        assert balance.net_radiation(300.0, context) == pytest.approx(expected)

    def test_conduction_uses_second_node(self, balance, state):
        state.temperature[1] = 280.0
        expected = -state.k_unfrozen[0] * (290.0 - 280.0) / (0.5 * state.thickness[0])
        assert balance.conduction(290.0, state) == pytest.approx(expected)

    def test_no_latent_flux_when_frozen_and_dry(self, balance, state, make_context):
        """A frozen surface layer without liquid water never exchanges latent heat"""
        state.temperature[0] = FREEZE - 5.0
        state.ice_proportion[0] = 1.0
        context = make_context(vpd_kpa=3.0, soil_radiation_w_m2=800.0)

        for ts in (FREEZE - 10.0, FREEZE + 0.5, FREEZE + 20.0):
            assert balance.components(ts, state, context).latent == 0.0

        ts = balance.solve(state, context)
        assert balance.components(ts, state, context).latent == 0.0

    def test_no_latent_flux_without_liquid_water(self, balance, state, make_context):
        state.water_fraction[0] = 0.0
        state.update_hydraulics()
        context = make_context()
        assert balance.components(295.0, state, context).latent == 0.0

    def test_latent_zero_below_freezing_surface(self, balance, state, make_context):
        assert balance.latent_heat(FREEZE - 1.0, state, make_context()) == 0.0

    def test_evaporation_is_negative(self, balance, state, make_context):
        context = make_context(vpd_kpa=1.0)
        assert balance.latent_heat(300.0, state, context) < 0.0

    def test_invalid_bracket_raises(self, balance, state, make_context):
        """Forcing without a root inside the bracket is a hard failure"""
        context = make_context(wind_speed_m_s=0.0, soil_radiation_w_m2=1e5)

        with pytest.raises(NonConvergence) as exc_info:
            balance.solve(state, context)

        assert exc_info.value.context.component == "SurfaceEnergyBalance"

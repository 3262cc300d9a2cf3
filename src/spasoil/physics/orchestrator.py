"""
Timestep driver for the soil column.

Sequences the physics components once per timestep as a state machine:

    SnowCheck -> CanopyPhase -> SurfaceTempSolve -> TranspirationDemand
    -> WaterFluxPhase -> HeatDiffusionPhase -> FreezeThawPhase
    -> BalanceCheck -> Done

CanopyPhase is skipped while the ground is snow-covered. Fatal errors
(NonConvergence, SoilDesiccated) are annotated with the phase and step and
re-raised; balance violations are only flagged.
"""

import logging
from datetime import date
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from spasoil.core.config import SpaConfig, get_config
from spasoil.core.exceptions import SpaError, with_context
from spasoil.core.types import Phase, StepDiagnostics, TimeStepContext
from spasoil.physics.canopy import CanopyInterceptionIntegrator
from spasoil.physics.drainage import GravitationalDrainageIntegrator
from spasoil.physics.freeze_thaw import FreezeThawTracker
from spasoil.physics.heat_diffusion import HeatDiffusionSolver, RelaxationResult
from spasoil.physics.numerical_solver import BalanceCheck, PseudoIntervalIntegrator
from spasoil.physics.snow import snow_covered, update_snow
from spasoil.physics.soil_properties import latent_heat_vaporisation
from spasoil.physics.state import SoilColumnState
from spasoil.physics.surface_energy import SurfaceEnergyBalance
from spasoil.physics.water_balance import WaterFluxPhase, reconcile_water_heat
from spasoil.physics.wetting import SurfaceWettingModel

logger = logging.getLogger(__name__)


# Forcing columns consumed by run_period
REQUIRED_FORCING_COLUMNS = [
    "air_temperature_k",
    "vpd_kpa",
    "wind_speed_m_s",
    "soil_radiation_w_m2",
    "precipitation_mm",
]
OPTIONAL_FORCING_COLUMNS = {
    "atmospheric_pressure_pa": 101325.0,
    "canopy_net_radiation_w_m2": 0.0,
    "transpiration_mm": 0.0,
}


class DailyStepOrchestrator:
    """
    Owns one soil column state and advances it one timestep at a time.

    Each ensemble replicate needs its own orchestrator (and state).
    """

    def __init__(
        self,
        config: Optional[SpaConfig] = None,
        state: Optional[SoilColumnState] = None
    ):
        self.config = config or get_config()
        self.state = state if state is not None else SoilColumnState.from_config(self.config)
        self.phase = Phase.DONE
        self._setup_logging()

        solver = self.config.solver
        self.integrator = PseudoIntervalIntegrator(solver)
        self.surface = SurfaceEnergyBalance(self.config.vegetation, solver)
        self.canopy = CanopyInterceptionIntegrator(self.config.vegetation, solver, self.integrator)
        self.heat = HeatDiffusionSolver(solver)
        self.freeze_thaw = FreezeThawTracker()
        self.water = WaterFluxPhase(
            self.config,
            drainage=GravitationalDrainageIntegrator(solver, self.config.site, self.integrator),
            wetting=SurfaceWettingModel(solver),
        )
        self.balance = BalanceCheck(self.config.balance)

    def _setup_logging(self):
        """Configure model-specific logging"""
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @property
    def site_id(self) -> str:
        return self.config.site.site_id

    def _enter(self, phase: Phase):
        self.phase = phase
        self.logger.debug(f"Step {self.state.step_count}: {phase.value}")

    def run_step(
        self,
        context: TimeStepContext,
        transpiration_mm: float = 0.0,
        uptake_fractions: Optional[Sequence[float]] = None,
        measured_sapflow_mm: Optional[float] = None
    ) -> StepDiagnostics:
        """
        Advance the column by one timestep.

        Args:
            context: Meteorological forcing of the step
            transpiration_mm: Modelled transpiration demand (mm per step)
            uptake_fractions: Per-layer root uptake shares; defaults to the
                vegetation configuration
            measured_sapflow_mm: Measured sap flow (mm per step) overriding
                or adding to the modelled transpiration

        Returns:
            StepDiagnostics of the step

        Raises:
            NonConvergence: if a solver fails; the state is left mid-step
            SoilDesiccated: if the column runs out of water
        """
        state = self.state
        diagnostics = StepDiagnostics(step=context.step)

        storage_before = state.total_water_mm()
        heat_before = state.heat_content()

        try:
            state.begin_timestep()
            state.update_hydraulics()

            self._enter(Phase.SNOW_CHECK)
            update_snow(state, context)

            self._enter(Phase.CANOPY)
            if snow_covered(context):
                self.logger.debug("Snow-covered surface, canopy interception suspended")
            else:
                self.canopy.integrate(state, context, diagnostics)
                diagnostics.canopy_evaporation_mm = state.canopy.evaporation_mm

            self._enter(Phase.SURFACE_TEMPERATURE)
            ts = self.surface.solve(state, context)
            fluxes = self.surface.components(ts, state, context)

            self._enter(Phase.TRANSPIRATION)
            demand = self.water.transpiration_demand(transpiration_mm, measured_sapflow_mm)

            self._enter(Phase.WATER_FLUX)
            water = self.water.run(
                state,
                latent_heat_w_m2=fluxes.latent,
                surface_temperature_k=ts,
                air_temperature_k=context.air_temperature_k,
                step_seconds=context.step_seconds,
                transpiration_demand_mm=demand,
                uptake_fractions=uptake_fractions,
            )
            heat_start = state.heat_content(first=1)
            reconciled = reconcile_water_heat(state, context.air_temperature_k, diagnostics)
            unattributed = water.withdraw_shortfall(reconciled.total_shortfall_mm)
            if unattributed > 0.0:
                self.logger.warning(f"{unattributed:.6f} mm of clamped water loss has no output to return to")

            self._enter(Phase.HEAT_DIFFUSION)
            relaxation = self.heat.solve(state, ts, context.step_seconds)
            advected = float(np.sum(reconciled.advected_heat_j_m2[1:]))
            column_heat_error = self._column_heat_error(
                heat_start, state.heat_content(first=1), advected, relaxation, context.step_seconds
            )

            self._enter(Phase.FREEZE_THAW)
            self.freeze_thaw.update(state, ts, diagnostics)
            state.update_hydraulics()

            self._enter(Phase.BALANCE_CHECK)
            storage_after = state.total_water_mm()
            water.overflow = 1000.0 * state.overflow_m
            water.underflow = 1000.0 * state.underflow_m
            self.balance.check(
                storage_before,
                storage_after,
                inputs_mm={"surface_input": water.surface_input},
                outputs_mm={
                    "soil_evaporation": water.soil_evaporation,
                    "transpiration": water.transpiration,
                    "overflow": water.overflow,
                    "underflow": water.underflow,
                },
                energy_residual_w_m2=fluxes.residual,
                diagnostics=diagnostics,
                column_heat_error_w_m2=column_heat_error,
            )

            diagnostics.surface_temperature_k = ts
            diagnostics.fluxes = fluxes
            diagnostics.soil_evaporation_w_m2 = -fluxes.latent
            diagnostics.soil_evaporation_mm = water.soil_evaporation
            diagnostics.transpiration_mm = water.transpiration
            diagnostics.evapotranspiration_w_m2 = (
                diagnostics.evapotranspiration_mm
                * latent_heat_vaporisation(context.air_temperature_k) / context.step_seconds
            )
            diagnostics.surface_input_mm = water.surface_input
            diagnostics.overflow_mm = water.overflow
            diagnostics.underflow_mm = water.underflow
            diagnostics.snow_water_mm = state.snow.water_mm
            diagnostics.canopy_store_mm = state.canopy.water_mm
            diagnostics.drythick_m = state.drythick_m
            diagnostics.storage_change_mm = storage_after - storage_before
            diagnostics.heat_content_change_j_m2 = state.heat_content() - heat_before
            diagnostics.conducted_heat_j_m2 = relaxation.conducted_w_m2 * context.step_seconds
            diagnostics.advected_heat_j_m2 = advected
            diagnostics.interface_imbalance_w_m2 = relaxation.interface_imbalance_w_m2

            state.step_count += 1
            self._enter(Phase.DONE)

        except SpaError as e:
            with_context(e, site_id=self.site_id, step=context.step, phase=self.phase.value)
            self.logger.error(f"Fatal error: {e}")
            raise

        return diagnostics

    @staticmethod
    def _column_heat_error(
        heat_start: float,
        heat_end: float,
        advected_j_m2: float,
        relaxation: RelaxationResult,
        step_seconds: float
    ) -> float:
        """
        Heat content change of layers 1..n-1 over water reconciliation and
        diffusion that the heat budget terms do not explain (W m-2).

        Layer 0 is the surface boundary node and the core node is the lower
        boundary; neither belongs to the budget.
        """
        explained = (
            advected_j_m2 - relaxation.latent_heat_j_m2
            + (relaxation.conducted_w_m2 + relaxation.interface_imbalance_w_m2) * step_seconds
        )
        return (heat_end - heat_start - explained) / step_seconds

    # ------------------------------------------------------------------
    # Period runs
    # ------------------------------------------------------------------

    def _validate_forcings(self, forcings: pd.DataFrame):
        """Validate input forcings DataFrame"""
        for col in REQUIRED_FORCING_COLUMNS:
            if col not in forcings.columns:
                raise ValueError(f"Missing required column: {col}")

        for col in ("precipitation_mm", "wind_speed_m_s", "transpiration_mm"):
            if col in forcings.columns and (forcings[col] < 0).any():
                self.logger.warning(f"Negative values found in {col}")

        if forcings[REQUIRED_FORCING_COLUMNS].isna().any().any():
            raise ValueError("Forcings contain missing values in required columns")

    def run_period(
        self,
        forcings: pd.DataFrame,
        step_seconds: float = 3600.0,
        uptake_fractions: Optional[Sequence[float]] = None,
        start_date: Optional[date] = None
    ) -> pd.DataFrame:
        """
        Run the column over a time series of forcings.

        Args:
            forcings: DataFrame, one row per step, with columns:
                - air_temperature_k, vpd_kpa, wind_speed_m_s,
                  soil_radiation_w_m2, precipitation_mm (required)
                - atmospheric_pressure_pa, canopy_net_radiation_w_m2,
                  transpiration_mm, measured_sapflow_mm (optional)
            step_seconds: Length of one step (s)
            uptake_fractions: Per-layer root uptake shares
            start_date: Date of the first step, adds a ``time`` column

        Returns:
            DataFrame of step diagnostics with per-layer water fraction,
            temperature and ice proportion columns

        Raises:
            NonConvergence, SoilDesiccated: the run stops at the failing step
        """
        self.logger.info(f"Running soil column for {len(forcings)} steps")
        self._validate_forcings(forcings)

        records: List[Dict[str, float]] = []
        for step, (_, row) in enumerate(forcings.iterrows()):
            context = TimeStepContext(
                air_temperature_k=float(row["air_temperature_k"]),
                vpd_kpa=float(row["vpd_kpa"]),
                wind_speed_m_s=float(row["wind_speed_m_s"]),
                soil_radiation_w_m2=float(row["soil_radiation_w_m2"]),
                precipitation_mm=float(row["precipitation_mm"]),
                atmospheric_pressure_pa=float(row.get(
                    "atmospheric_pressure_pa", OPTIONAL_FORCING_COLUMNS["atmospheric_pressure_pa"])),
                step_seconds=step_seconds,
                canopy_net_radiation_w_m2=float(row.get(
                    "canopy_net_radiation_w_m2", OPTIONAL_FORCING_COLUMNS["canopy_net_radiation_w_m2"])),
                step=step,
            )
            sapflow = row.get("measured_sapflow_mm")
            if sapflow is not None and pd.isna(sapflow):
                sapflow = None

            diagnostics = self.run_step(
                context,
                transpiration_mm=float(row.get("transpiration_mm", 0.0)),
                uptake_fractions=uptake_fractions,
                measured_sapflow_mm=None if sapflow is None else float(sapflow),
            )

            record = diagnostics.to_record()
            for i in range(self.state.n_layers):
                record[f"water_fraction_{i}"] = float(self.state.water_fraction[i])
                record[f"temperature_k_{i}"] = float(self.state.temperature[i])
                record[f"ice_proportion_{i}"] = float(self.state.ice_proportion[i])
            records.append(record)

        results = pd.DataFrame(records)
        if start_date is not None and len(results):
            results["time"] = pd.date_range(
                start=pd.Timestamp(start_date),
                periods=len(results),
                freq=pd.Timedelta(seconds=step_seconds),
            )

        report = self.balance.report()
        self.logger.info(
            f"Run complete. Max mass balance error: {report.get('max_mass_error_mm', 0.0):.2e} mm, "
            f"{report.get('n_mass_violations', 0)} mass and "
            f"{report.get('n_energy_violations', 0)} energy balance warnings"
        )
        return results

    def reset(self, state: Optional[SoilColumnState] = None):
        """Reset to the configured initial state or to ``state``"""
        self.state = state if state is not None else SoilColumnState.from_config(self.config)
        self.phase = Phase.DONE
        self.balance.reset()
        self.logger.info("Soil column reset to initial state")

    def get_diagnostic_info(self) -> Dict:
        """Solver and balance statistics of the run so far"""
        return {
            "site_id": self.site_id,
            "steps": self.state.step_count,
            "balance": self.balance.report(),
            "heat_diffusion": self.heat.get_statistics(),
            "integrator": self.integrator.get_statistics(),
            "total_water_mm": self.state.total_water_mm(),
            "runoff_mm": self.state.runoff_mm,
            "discharge_mm": self.state.discharge_mm,
            "snow_water_mm": self.state.snow.water_mm,
            "mean_temperature_k": float(np.mean(self.state.temperature[:self.state.n_layers])),
        }

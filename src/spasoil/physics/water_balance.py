"""
Water movement through the soil column within one timestep.

The water flux phase accumulates every water movement of the step in the
per-layer gain/loss accumulators of the column state:
1. Wetting/drying of the surface zone (dry-zone thickness)
2. Soil evaporation or dewfall at the surface
3. Root water uptake by transpiration, optionally overridden by measured sap flow
4. Gravitational drainage between layers
5. Infiltration of surface water into the remaining pore room

The reconciliation then applies the accumulated fluxes to the water and ice
contents and moves the heat carried by the water.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from spasoil.core.config import SpaConfig
from spasoil.core.constants import HEAT_CAPACITY_WATER
from spasoil.core.exceptions import ErrorContext, ParameterError, PhysicalBoundsWarning, SoilDesiccated
from spasoil.core.types import StepDiagnostics
from spasoil.physics.drainage import GravitationalDrainageIntegrator
from spasoil.physics.soil_properties import latent_heat_vaporisation
from spasoil.physics.state import SoilColumnState
from spasoil.physics.wetting import SurfaceWettingModel

logger = logging.getLogger(__name__)

# negative water below this (m) is round-off from exhausting a layer exactly
ROUNDOFF_M = 1e-12


@dataclass
class WaterFluxes:
    """Water fluxes of one step (all in mm per step)"""
    surface_input: float = 0.0  # water reaching the soil surface
    soil_evaporation: float = 0.0  # negative for dew
    transpiration: float = 0.0
    drainage: float = 0.0  # moved between layers
    infiltration: float = 0.0
    overflow: float = 0.0  # runoff
    underflow: float = 0.0  # deep drainage out of the column

    @property
    def total_input(self) -> float:
        return self.surface_input + max(0.0, -self.soil_evaporation)

    @property
    def total_output(self) -> float:
        return (max(0.0, self.soil_evaporation) + self.transpiration
                + self.overflow + self.underflow)

    def withdraw_shortfall(self, shortfall_mm: float) -> float:
        """
        Take back outputs that were posted but never left the soil, first
        from transpiration and then from evaporation.

        Returns:
            The part of ``shortfall_mm`` neither output could absorb
        """
        remaining = max(0.0, shortfall_mm)
        cut = min(remaining, self.transpiration)
        self.transpiration -= cut
        remaining -= cut
        if self.soil_evaporation > 0.0:
            cut = min(remaining, self.soil_evaporation)
            self.soil_evaporation -= cut
            remaining -= cut
        return remaining


@dataclass
class ReconciledLayers:
    """Per-layer outcome of applying the accumulated water fluxes"""
    shortfall_mm: np.ndarray  # loss beyond the liquid water, clamped away
    advected_heat_j_m2: np.ndarray  # heat carried in (positive) or out by water

    @property
    def total_shortfall_mm(self) -> float:
        return float(np.sum(self.shortfall_mm))


def infiltrate(state: SoilColumnState) -> float:
    """
    Distribute the surface water of this step over the layers, top down,
    into the pore room left after the other fluxes.

    Returns:
        Water that could not infiltrate (m), added to the overflow
    """
    add = state.snow.surface_water_mm * 0.001
    state.precipitation_gain[:] = 0.0
    for i in range(state.n_layers):
        if add <= 0.0:
            break
        room = max(0.0, (state.porosity[i] - state.water_fraction[i]) * state.thickness[i]
                   - state.water_gain[i] + state.water_loss[i])
        taken = min(add, room)
        state.precipitation_gain[i] = taken
        add -= taken

    overflow = max(0.0, add)
    state.overflow_m += overflow
    state.runoff_mm += overflow * 1000.0
    return overflow


def reconcile_water_heat(
    state: SoilColumnState,
    air_temperature_k: float,
    diagnostics: Optional[StepDiagnostics] = None
) -> ReconciledLayers:
    """
    Apply the accumulated gains and losses to every active layer and
    redistribute the heat carried by the moved water.

    Water leaving a layer carries the layer temperature, water arriving from
    another layer carries the receiving layer temperature and infiltrating
    water arrives at air temperature. Water pushed out as overflow takes its
    heat with it.

    Returns:
        ReconciledLayers with the clamped shortfall and advected heat per layer

    Raises:
        SoilDesiccated: if the active column holds no water at all
    """
    diagnostics = diagnostics or StepDiagnostics()
    shortfall = np.zeros(state.n_layers)
    advected = np.zeros(state.n_layers)

    for i in range(state.n_layers):
        thickness = state.thickness[i]
        temperature = state.temperature[i]
        volhc = state.volumetric_heat_capacity(i)
        heat = temperature * volhc * thickness
        heatloss = state.water_loss[i] * HEAT_CAPACITY_WATER * temperature
        heatgain = (state.water_gain[i] * HEAT_CAPACITY_WATER * temperature
                    + state.precipitation_gain[i] * HEAT_CAPACITY_WATER * air_temperature_k)

        water_content = state.water_fraction[i] * (1.0 - state.ice_proportion[i]) * thickness
        ice_content = state.water_fraction[i] * state.ice_proportion[i] * thickness

        water_content = (water_content + state.water_gain[i]
                         + state.precipitation_gain[i] - state.water_loss[i])
        if water_content < 0.0:
            if water_content < -ROUNDOFF_M:
                diagnostics.flag(
                    PhysicalBoundsWarning,
                    f"Water loss exceeds liquid water in layer {i} by {-1000.0 * water_content:.4f} mm; clamped",
                    logger,
                )
            shortfall[i] = -1000.0 * water_content
            water_content = 0.0

        # water beyond the pore space leaves as overflow
        excess = water_content + ice_content - state.porosity[i] * thickness
        if excess > 0.0:
            excess = min(excess, water_content)
            diagnostics.flag(
                PhysicalBoundsWarning,
                f"Layer {i} above porosity by {1000.0 * excess:.4f} mm; routed to overflow",
                logger,
            )
            water_content -= excess
            heatloss += excess * HEAT_CAPACITY_WATER * temperature
            state.overflow_m += excess
            state.runoff_mm += excess * 1000.0

        total = water_content + ice_content
        state.water_fraction[i] = total / thickness
        if total == 0.0:
            state.ice_proportion[i] = 0.0
            logger.warning(f"Layer {i} holds no water; ice proportion set to zero")
        else:
            state.ice_proportion[i] = ice_content / total

        if heatgain + heatloss != 0.0:
            advected[i] = heatgain - heatloss
            newheat = heat + advected[i]
            volhc = state.volumetric_heat_capacity(i)
            state.temperature[i] = newheat / (volhc * thickness)

    state.underflow_m = float(state.water_gain[state.n_layers])
    state.discharge_mm += state.underflow_m * 1e3

    if state.total_water_mm() <= 0.0:
        raise SoilDesiccated(
            "The soil column holds no water",
            ErrorContext(component="reconcile_water_heat"),
        )
    return ReconciledLayers(shortfall_mm=shortfall, advected_heat_j_m2=advected)


class WaterFluxPhase:
    """
    Accumulates the water fluxes of one timestep in the column state.
    """

    def __init__(
        self,
        config: Optional[SpaConfig] = None,
        drainage: Optional[GravitationalDrainageIntegrator] = None,
        wetting: Optional[SurfaceWettingModel] = None
    ):
        self.config = config or SpaConfig()
        self.drainage = drainage or GravitationalDrainageIntegrator(self.config.solver, self.config.site)
        self.wetting = wetting or SurfaceWettingModel(self.config.solver)
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    # ------------------------------------------------------------------
    # Transpiration
    # ------------------------------------------------------------------

    def transpiration_demand(
        self,
        transpiration_mm: float,
        measured_sapflow_mm: Optional[float] = None
    ) -> float:
        """
        Water to extract by roots this step (mm).

        Measured sap flow replaces the modelled transpiration, or is added to
        it for vegetation the canopy model does not represent.
        """
        demand = max(0.0, transpiration_mm)
        if measured_sapflow_mm is not None and np.isfinite(measured_sapflow_mm):
            sapflow = max(0.0, measured_sapflow_mm)
            if self.config.site.sapflow_mode == "replace":
                demand = sapflow
            else:
                demand += sapflow
        return demand

    def uptake_fractions(
        self,
        state: SoilColumnState,
        uptake_fractions: Optional[Sequence[float]] = None
    ) -> np.ndarray:
        """Per-layer share of root uptake, padded with zeros to the active layers"""
        if uptake_fractions is None:
            uptake_fractions = self.config.vegetation.uptake_fractions
        n = state.n_layers
        if len(uptake_fractions) == 0:
            return np.full(n, 1.0 / n)

        fractions = np.asarray(uptake_fractions, dtype=float)
        if len(fractions) > n:
            raise ParameterError(
                f"{len(fractions)} uptake fractions for {n} soil layers",
                ErrorContext(component="WaterFluxPhase"),
            )
        if np.any(fractions < 0.0):
            raise ParameterError(
                "Uptake fractions cannot be negative",
                ErrorContext(component="WaterFluxPhase"),
            )
        return np.concatenate((fractions, np.zeros(n - len(fractions))))

    def extract_transpiration(
        self,
        state: SoilColumnState,
        demand_mm: float,
        uptake_fractions: Optional[Sequence[float]] = None
    ) -> float:
        """
        Post root uptake to the loss accumulators.

        A layer gives at most the liquid water it still holds. Demand a dry
        or frozen layer cannot meet moves to the other rooted layers in
        proportion to their uptake fractions; demand no rooted layer can meet
        is not extracted.

        Returns:
            Water taken (mm)
        """
        fractions = self.uptake_fractions(state, uptake_fractions)
        n = state.n_layers
        available = np.maximum(
            0.0, state.liquid_fraction[:n] * state.thickness[:n] - state.water_loss[:n]
        )
        want = 0.001 * max(0.0, demand_mm) * fractions
        taken = np.minimum(want, available)
        shortfall = float(np.sum(want - taken))

        for _ in range(n):
            rooted = (fractions > 0.0) & (taken < available)
            if shortfall <= 0.0 or not np.any(rooted):
                break
            share = np.where(rooted, fractions, 0.0)
            extra = np.minimum(shortfall * share / np.sum(share), available - taken)
            taken += extra
            shortfall -= float(np.sum(extra))

        if shortfall > 0.0:
            self.logger.debug(
                f"Root uptake limited by liquid water: {1000.0 * shortfall:.4f} mm not extracted"
            )
        state.water_loss[:n] += taken
        return float(1000.0 * np.sum(taken))

    # ------------------------------------------------------------------
    # Surface exchange
    # ------------------------------------------------------------------

    def exchange_surface_water(
        self,
        state: SoilColumnState,
        latent_heat_w_m2: float,
        surface_temperature_k: float,
        step_seconds: float
    ) -> float:
        """
        Withdraw soil evaporation or add dew.

        Evaporation comes out of the second layer once the dry zone extends
        through the whole top layer, and never takes more than the liquid
        water left in that layer.

        Returns:
            Soil evaporation (mm, negative for dew)
        """
        lam = latent_heat_vaporisation(surface_temperature_k)
        water_m = 0.001 * (latent_heat_w_m2 / lam) * step_seconds
        if latent_heat_w_m2 < 0.0:
            layer = 0 if state.drythick_m < state.thickness[0] else 1
            available = max(0.0, state.liquid_fraction[layer] * state.thickness[layer]
                            - state.water_loss[layer])
            if -water_m > available:
                self.logger.debug(
                    f"Evaporation limited to the liquid water of layer {layer}: "
                    f"{1000.0 * available:.4f} of {-1000.0 * water_m:.4f} mm"
                )
                water_m = -available
            state.water_loss[layer] += -water_m
        else:
            state.water_gain[0] += water_m
        return -1000.0 * water_m

    # ------------------------------------------------------------------
    # Phase driver
    # ------------------------------------------------------------------

    def run(
        self,
        state: SoilColumnState,
        latent_heat_w_m2: float,
        surface_temperature_k: float,
        air_temperature_k: float,
        step_seconds: float,
        transpiration_demand_mm: float = 0.0,
        uptake_fractions: Optional[Sequence[float]] = None
    ) -> WaterFluxes:
        """
        Accumulate all water fluxes of the step; the water contents themselves
        are updated by ``reconcile_water_heat``.
        """
        fluxes = WaterFluxes(surface_input=state.snow.surface_water_mm)

        self.wetting.update(
            state, latent_heat_w_m2, state.snow.surface_water_mm, air_temperature_k, step_seconds
        )
        fluxes.soil_evaporation = self.exchange_surface_water(
            state, latent_heat_w_m2, surface_temperature_k, step_seconds
        )
        fluxes.transpiration = self.extract_transpiration(
            state, transpiration_demand_mm, uptake_fractions
        )

        drained: List = self.drainage.run(state, step_seconds)
        fluxes.drainage = 1000.0 * sum(d.change_m for d in drained)

        overflow = infiltrate(state)
        fluxes.infiltration = 1000.0 * float(np.sum(state.precipitation_gain))

        self.logger.debug(
            f"Water fluxes: input={fluxes.surface_input:.3f}mm, "
            f"evap={fluxes.soil_evaporation:.3f}mm, T={fluxes.transpiration:.3f}mm, "
            f"drain={fluxes.drainage:.3f}mm, runoff={1000.0 * overflow:.3f}mm"
        )
        return fluxes

"""
Canopy interception of rainfall.

Rain is split between the canopy store and the ground by the throughfall
fraction. The store evaporates at the wet-surface potential rate scaled by how
full it is, and drains exponentially once it exceeds its capacity. The
two-state system (canopy store, surface water) is integrated across one
timestep with the adaptive integrator.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Set

import numpy as np

from spasoil.core.config import SolverConfig, VegetationConfig
from spasoil.core.constants import (
    CANOPY_DRAINAGE_BASE,
    CANOPY_DRAINAGE_EXPONENT,
    CP_AIR,
    FREEZE,
    SURFACE_WATER_UNDERFLOW,
    VON_KARMAN,
)
from spasoil.core.exceptions import PhysicalBoundsWarning
from spasoil.core.types import StepDiagnostics, TimeStepContext
from spasoil.physics.numerical_solver import PseudoIntervalIntegrator
from spasoil.physics.soil_properties import latent_heat_vaporisation
from spasoil.physics.state import SoilColumnState

logger = logging.getLogger(__name__)


def wetted_surface_evaporation(
    context: TimeStepContext,
    canopy_height: float
) -> float:
    """
    Potential evaporation from wet canopy surfaces (mm per step).

    Penman-Monteith with zero surface resistance; zero when the available
    energy and vapour deficit would produce dewfall.
    """
    # boundary layer geometry
    d = 0.75 * canopy_height
    z0 = 0.1 * canopy_height
    z = canopy_height + 2.0
    htemp = context.air_temperature_k - FREEZE

    rho = 353.0 / context.air_temperature_k
    s = 6.1078 * 17.269 * 237.3 * np.exp(17.269 * htemp / (237.3 + htemp))
    slope = 100.0 * (s / (237.3 + htemp) ** 2)  # Pa K-1
    lam = latent_heat_vaporisation(context.air_temperature_k)
    psych = 100.0 * (0.646 * np.exp(0.00097 * htemp))  # Pa K-1

    radiative = slope * context.canopy_net_radiation_w_m2
    if context.wind_speed_m_s > 0.0:
        ra = np.log((z - d) / z0) ** 2 / (VON_KARMAN ** 2 * context.wind_speed_m_s)
        aerodynamic = rho * CP_AIR * context.vpd_kpa * 1000.0 / ra
    else:
        aerodynamic = 0.0

    if radiative + aerodynamic <= 0.0:
        # dewfall
        return 0.0

    evap = (radiative + aerodynamic) / (lam * (slope + psych))  # kg m-2 s-1
    return float(evap * context.step_seconds)


@dataclass
class CanopyResult:
    """Canopy water budget of one step (mm)"""
    store_before: float
    store_after: float
    surface_water_before: float
    surface_water_after: float
    precipitation: float
    evaporation: float
    potential_evaporation: float


class CanopyInterceptionIntegrator:
    """
    Integrates canopy storage and the water reaching the soil surface.

    State vector: [canopy store (mm), surface water (mm)], pseudo-time unit =
    one timestep.
    """

    def __init__(
        self,
        vegetation: Optional[VegetationConfig] = None,
        config: Optional[SolverConfig] = None,
        integrator: Optional[PseudoIntervalIntegrator] = None
    ):
        self.vegetation = vegetation or VegetationConfig()
        self.config = config or SolverConfig()
        self.integrator = integrator or PseudoIntervalIntegrator(self.config)
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def drainage_rate(self, store: float, step_seconds: float) -> float:
        """Drainage from an overfull store (mm per step)"""
        max_storage = self.vegetation.max_storage_mm
        if store <= max_storage:
            return 0.0
        a = np.log(CANOPY_DRAINAGE_BASE) - CANOPY_DRAINAGE_EXPONENT * max_storage
        minutes_per_step = step_seconds / 60.0
        return float(np.exp(a + CANOPY_DRAINAGE_EXPONENT * store) * minutes_per_step)

    def integrate(
        self,
        state: SoilColumnState,
        context: TimeStepContext,
        diagnostics: Optional[StepDiagnostics] = None
    ) -> CanopyResult:
        """
        Advance the canopy store and the surface water of ``state`` by one step.
        """
        diagnostics = diagnostics or StepDiagnostics(step=context.step)
        max_storage = self.vegetation.max_storage_mm
        throughfall = self.vegetation.throughfall_fraction

        # empty the store if it is tiny
        if state.canopy.water_mm < self.config.canopy_snap_fraction * max_storage:
            state.canopy.water_mm = 0.0

        add_store = (1.0 - throughfall) * context.precipitation_mm
        add_ground = throughfall * context.precipitation_mm
        potential_evap = wetted_surface_evaporation(context, self.vegetation.canopy_height_m)
        problems: Set[str] = set()

        def canopy_water_store(t, y):
            ratio = min(1.0, y[0] / max_storage)
            evap_store = potential_evap * ratio
            drain_store = self.drainage_rate(y[0], context.step_seconds)

            if 0.0 < y[1] < SURFACE_WATER_UNDERFLOW:
                problems.add(f"Surface water {y[1]:.3e} mm near underflow in canopy balance")

            dstore = add_store - drain_store - evap_store
            if dstore > self.config.canopy_rate_warning_mm:
                problems.add(f"Canopy store changing by {dstore:.1f} mm per step")
            return [dstore, add_ground + drain_store]

        store_before = state.canopy.water_mm
        surface_before = state.snow.surface_water_mm
        result = self.integrator.integrate(
            canopy_water_store,
            [store_before, surface_before],
            component="CanopyInterceptionIntegrator",
        )
        store_after, surface_after = float(result.y[0]), float(result.y[1])

        for message in sorted(problems):
            diagnostics.flag(PhysicalBoundsWarning, message, self.logger)

        if store_after < 0.0:
            diagnostics.flag(
                PhysicalBoundsWarning,
                f"Negative canopy store {store_after:.3e} mm clamped to zero",
                self.logger,
            )
            store_after = 0.0

        evaporation = (context.precipitation_mm
                       - (store_after - store_before)
                       - (surface_after - surface_before))

        state.canopy.water_mm = store_after
        state.canopy.evaporation_mm = evaporation
        state.snow.surface_water_mm = surface_after

        return CanopyResult(
            store_before=store_before,
            store_after=store_after,
            surface_water_before=surface_before,
            surface_water_after=surface_after,
            precipitation=context.precipitation_mm,
            evaporation=evaporation,
            potential_evaporation=potential_evap,
        )

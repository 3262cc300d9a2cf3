"""
Surface energy balance of the soil.

Finds the surface temperature Ts at which sensible, latent, net radiative and
conductive fluxes sum to zero (Hinzmann et al. 1998). Latent exchange depends
on the soil water potential of the surface layer and on the thickness of the
dry surface zone (Jones 1992, p. 110).

References:
- Hinzmann, L.D. et al. (1998) Hydrologic and thermal properties of the active
  layer in the Alaskan Arctic. Cold Reg. Sci. Technol. 27:3-18.
- Jones, H.G. (1992) Plants and Microclimate, 2nd ed.
"""

import logging
from typing import Optional

import numpy as np
from scipy.optimize import brentq

from spasoil.core.config import SolverConfig, VegetationConfig
from spasoil.core.constants import (
    BOLTZMANN,
    CP_AIR,
    EMISSIVITY,
    FREEZE,
    GAS_CONSTANT,
    PARTIAL_MOLAL_VOLUME_WATER,
    SURFACE_RADIATION_FACTOR,
    VON_KARMAN,
)
from spasoil.core.exceptions import ErrorContext, NonConvergence
from spasoil.core.types import SurfaceFluxes, TimeStepContext
from spasoil.physics.soil_properties import latent_heat_vaporisation, thermal_conductivity
from spasoil.physics.state import SoilColumnState

logger = logging.getLogger(__name__)


def air_density(air_temperature_k: float) -> float:
    """Density of air (kg m-3)"""
    return 353.0 / air_temperature_k


def saturation_vapour_pressure(temperature_k: float) -> float:
    """Saturation vapour pressure (kPa), Magnus-type fit in kelvin"""
    return 0.1 * np.exp(
        1.80956664 + (17.2693882 * temperature_k - 4717.306081) / (temperature_k - 35.86)
    )


def exchange_coefficient(wind_speed: float, canopy_height: float, tower_height: float) -> float:
    """
    Boundary layer conductance to heat or vapour at ground level (m s-1).
    Roughness length is 0.13 * canopy height.
    """
    log_frac = np.log(tower_height / (0.13 * canopy_height))
    return wind_speed * VON_KARMAN ** 2 / log_frac ** 2


class SurfaceEnergyBalance:
    """
    Solves the soil surface energy balance for Ts.

    Latent exchange is switched off entirely while the surface layer is frozen
    or holds no liquid water, so the residual is only piecewise smooth; the
    bracketing root-finder does not rely on derivatives.
    """

    def __init__(
        self,
        vegetation: Optional[VegetationConfig] = None,
        config: Optional[SolverConfig] = None
    ):
        self.vegetation = vegetation or VegetationConfig()
        self.config = config or SolverConfig()
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def conductance(self, context: TimeStepContext) -> float:
        return exchange_coefficient(
            context.wind_speed_m_s,
            self.vegetation.canopy_height_m,
            self.vegetation.tower_height_m,
        )

    def latent_enabled(self, state: SoilColumnState) -> bool:
        """No evaporation if the surface layer is frozen or holds no liquid water"""
        return state.temperature[0] > FREEZE and state.liquid_fraction[0] > 0.0

    # ------------------------------------------------------------------
    # Flux components (W m-2, positive towards the surface)
    # ------------------------------------------------------------------

    def sensible_heat(self, ts: float, state: SoilColumnState, context: TimeStepContext) -> float:
        tair = context.air_temperature_k
        return CP_AIR * air_density(tair) * self.conductance(context) * (tair - ts)

    def latent_heat(self, ts: float, state: SoilColumnState, context: TimeStepContext) -> float:
        """
        Latent energy exchange of the soil surface; negative for evaporation,
        positive for dew.
        """
        if ts < FREEZE:
            return 0.0

        tair = context.air_temperature_k
        porosity = state.porosity[0]
        lam = latent_heat_vaporisation(ts)
        gaw = self.conductance(context)
        if gaw <= 0.0:
            return 0.0
        rho = air_density(tair)

        # diffusion coefficient for water vapour (m2 s-1)
        diff = 24.2e-6 * (ts / 293.2) ** 1.75

        ea = saturation_vapour_pressure(tair) - context.vpd_kpa
        # vapour pressure in the soil air space depends on the water potential
        esurf = saturation_vapour_pressure(ts) * np.exp(
            1e6 * state.water_potential[0] * PARTIAL_MOLAL_VOLUME_WATER / (GAS_CONSTANT * ts)
        )
        # soil conductance to vapour diffusion through the dry zone (m s-1)
        gws = porosity * diff / (self.config.tortuosity * state.drythick_m)

        return (
            lam * rho * 0.622 / (0.001 * context.atmospheric_pressure_pa)
            * (ea - esurf) / (1.0 / gaw + 1.0 / gws)
        )

    def net_radiation(self, ts: float, context: TimeStepContext) -> float:
        # brackets keep ts**4 from swamping the small constants
        upwelling = (EMISSIVITY * BOLTZMANN) * ts ** 4
        return SURFACE_RADIATION_FACTOR * context.soil_radiation_w_m2 - upwelling

    def conduction(self, ts: float, state: SoilColumnState) -> float:
        k1 = thermal_conductivity(state.k_unfrozen[0], state.k_frozen[0], state.ice_proportion[0])
        return -k1 * (ts - state.temperature[1]) / (0.5 * state.thickness[0])

    def components(
        self,
        ts: float,
        state: SoilColumnState,
        context: TimeStepContext
    ) -> SurfaceFluxes:
        latent = self.latent_heat(ts, state, context) if self.latent_enabled(state) else 0.0
        return SurfaceFluxes(
            sensible=self.sensible_heat(ts, state, context),
            latent=latent,
            net_radiation=self.net_radiation(ts, context),
            conduction=self.conduction(ts, state),
        )

    def residual(self, ts: float, state: SoilColumnState, context: TimeStepContext) -> float:
        """Qh + Qe + Qn + Qc at surface temperature ``ts``"""
        return self.components(ts, state, context).residual

    # ------------------------------------------------------------------
    # Root-finding
    # ------------------------------------------------------------------

    def solve(self, state: SoilColumnState, context: TimeStepContext) -> float:
        """
        Surface temperature (K) closing the energy balance.

        Raises:
            NonConvergence: if the bracket around air temperature holds no root
                or the root-finder fails
        """
        t1 = context.air_temperature_k - self.config.surface_bracket_k
        t2 = context.air_temperature_k + self.config.surface_bracket_k

        f1 = self.residual(t1, state, context)
        f2 = self.residual(t2, state, context)
        if not (np.isfinite(f1) and np.isfinite(f2)) or f1 * f2 > 0.0:
            raise NonConvergence(
                f"Surface energy balance has no root in [{t1:.2f}, {t2:.2f}] K",
                ErrorContext(
                    component="SurfaceEnergyBalance",
                    layer=0,
                    iterations=0,
                    residual=float(min(abs(f1), abs(f2))),
                    details={"residual_low": f1, "residual_high": f2},
                ),
            )

        try:
            ts, result = brentq(
                self.residual,
                t1,
                t2,
                args=(state, context),
                xtol=self.config.surface_xtol_k,
                maxiter=self.config.surface_max_iterations,
                full_output=True,
                disp=False,
            )
        except (ValueError, RuntimeError) as e:
            raise NonConvergence(
                f"Surface energy balance root-finding failed: {e}",
                ErrorContext(component="SurfaceEnergyBalance", layer=0),
            ) from e

        if not result.converged:
            raise NonConvergence(
                f"Surface energy balance did not converge: {result.flag}",
                ErrorContext(
                    component="SurfaceEnergyBalance",
                    layer=0,
                    iterations=result.iterations,
                    residual=float(self.residual(ts, state, context)),
                ),
            )

        self.logger.debug(f"Ts={ts:.3f} K after {result.iterations} iterations")
        return float(ts)

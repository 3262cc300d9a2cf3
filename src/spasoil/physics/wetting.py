"""
Wetting and drying of the surface layer.

The top layer holds a stack of wet zones, ordered deepest first. The
shallowest zone exchanges water with the atmosphere: rain and dew wet it from
the top, evaporation dries it from the top. The depth of soil above the
shallowest wet zone is the dry-zone thickness ``drythick`` that limits vapour
diffusion in the surface latent flux.
"""

import logging
from typing import List, Optional

from spasoil.core.config import SolverConfig
from spasoil.core.exceptions import ErrorContext, SoilDesiccated
from spasoil.physics.soil_properties import latent_heat_vaporisation
from spasoil.physics.state import SoilColumnState, WettingZone

logger = logging.getLogger(__name__)


class SurfaceWettingModel:
    """
    Maintains the wetting zones of a soil column and its dry-zone thickness.

    The deepest zone (index 0) is the primary zone; its bottom never moves.
    """

    def __init__(self, config: Optional[SolverConfig] = None):
        self.config = config or SolverConfig()
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def net_change(
        self,
        state: SoilColumnState,
        latent_heat_w_m2: float,
        surface_water_mm: float,
        air_temperature_k: float,
        step_seconds: float
    ) -> float:
        """Net wetting of the surface zone (m of soil depth, negative for drying)"""
        airspace = state.porosity[0]
        lam = latent_heat_vaporisation(air_temperature_k)
        return ((0.001 * latent_heat_w_m2 / lam * step_seconds) / airspace
                + (surface_water_mm * 0.001) / airspace)

    def _check_zones(self, zones: List[WettingZone]):
        if not zones:
            raise SoilDesiccated(
                "There is no water left in any soil layer",
                ErrorContext(component="SurfaceWettingModel", layer=0),
            )

    @staticmethod
    def _merge(zones: List[WettingZone]):
        """Join the surface zone to the zone below once they touch"""
        if len(zones) < 2:
            return
        active, deeper = zones[-1], zones[-2]
        if active.bottom_m >= deeper.top_m:
            deeper.top_m = active.top_m
            zones.pop()

    def update(
        self,
        state: SoilColumnState,
        latent_heat_w_m2: float,
        surface_water_mm: float,
        air_temperature_k: float,
        step_seconds: float
    ) -> float:
        """
        Wet or dry the surface zone and update ``state.drythick_m``.

        Returns:
            The new dry-zone thickness (m)

        Raises:
            SoilDesiccated: if no wet zone remains
        """
        zones = state.live_wetting_zones
        self._check_zones(zones)
        dmin = self.config.min_drythick_m

        netc = self.net_change(
            state, latent_heat_w_m2, surface_water_mm, air_temperature_k, step_seconds
        )
        active = zones[-1]
        primary = len(zones) == 1

        if netc > 0.0:
            if netc > active.top_m > 0.0:
                # resaturate the dry top and deepen with the rest
                diff = netc - active.top_m
                active.top_m = 0.0
                if not primary:
                    active.bottom_m += diff
                    self._merge(zones)
            elif active.top_m == 0.0:
                # surface already wet, deepen this zone
                if not primary:
                    active.bottom_m += netc
                    self._merge(zones)
            else:
                zones.append(WettingZone(top_m=0.0, bottom_m=netc))
            drythick = dmin
        else:
            active.top_m -= netc
            while zones and zones[-1].extent_m <= 0.0:
                # zone dried out; carry the remaining drying into the next one
                excess = -zones[-1].extent_m
                zones.pop()
                if zones:
                    zones[-1].top_m += excess
            if zones:
                drythick = max(dmin, zones[-1].top_m)
            else:
                drythick = float(state.thickness[0])

        state.wetting_zones = zones
        state.drythick_m = drythick
        self.logger.debug(
            f"netc={netc:.3e} m, {len(zones)} wetting zone(s), drythick={drythick:.4f} m"
        )
        self._check_zones(zones)
        return drythick

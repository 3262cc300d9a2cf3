"""
Gravitational drainage between soil layers.

Each active layer drains into the layer below while its water fraction is
above the drainage threshold (field capacity unless the site overrides it).
The drainage rate is the hydraulic conductivity of the layer, converted to a
per-step length. It is capped by the liquid water that evaporation and root
uptake have not already claimed, and by the unsaturated room in the layer
below. Every layer is integrated against the state at the start of the
phase, so the integrations are independent and can run concurrently; their
results are reduced into the gain/loss accumulators afterwards.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from spasoil.core.config import SiteParameters, SolverConfig
from spasoil.physics.numerical_solver import PseudoIntervalIntegrator
from spasoil.physics.soil_properties import soil_conductivity
from spasoil.physics.state import SoilColumnState

logger = logging.getLogger(__name__)


@dataclass
class LayerDrainage:
    """Drainage of one layer into the layer below over one step"""
    layer: int
    initial_fraction: float
    final_fraction: float
    change_m: float  # water moved, m


class GravitationalDrainageIntegrator:
    """
    Integrates ``d(waterfrac)/dt = -drainage(waterfrac)`` per layer across the
    pseudo-time interval.
    """

    def __init__(
        self,
        config: Optional[SolverConfig] = None,
        site: Optional[SiteParameters] = None,
        integrator: Optional[PseudoIntervalIntegrator] = None
    ):
        self.config = config or SolverConfig()
        self.site = site or SiteParameters()
        self.integrator = integrator or PseudoIntervalIntegrator(self.config)
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def threshold(self, state: SoilColumnState, i: int) -> float:
        """Water fraction at or below which layer ``i`` does not drain"""
        if self.site.drainage_threshold is not None:
            return self.site.drainage_threshold
        return float(state.field_capacity[i])

    @staticmethod
    def liquid_available(state: SoilColumnState, i: int) -> float:
        return float(state.water_fraction[i] * (1.0 - state.ice_proportion[i]))

    def drainable_water(self, state: SoilColumnState, i: int) -> float:
        """Liquid water fraction of layer ``i`` not already claimed by evaporation or uptake"""
        claimed = state.water_loss[i] / state.thickness[i]
        return float(max(0.0, self.liquid_available(state, i) - claimed))

    @staticmethod
    def unsaturated_room(state: SoilColumnState, i: int) -> float:
        """Pore room of the layer below, expressed for layer ``i``"""
        below = i + 1
        room = (state.porosity[below] - state.water_fraction[below]) * state.thickness[below]
        return float(max(0.0, room / state.thickness[i]))

    def drainage_rate(
        self,
        state: SoilColumnState,
        i: int,
        water_fraction: float,
        step_seconds: float
    ) -> float:
        """
        Drainage out of layer ``i`` at ``water_fraction`` (per step).

        Never negative and never larger than the liquid water available or the
        unsaturated room below.
        """
        if water_fraction <= self.threshold(state, i):
            return 0.0
        drainage = soil_conductivity(
            water_fraction, state.sand_percent[i], state.clay_percent[i]
        ) * step_seconds
        # ice and water already claimed this step do not drain
        drainage = min(drainage, self.drainable_water(state, i))
        # the layer below cannot accept more than its pore room
        drainage = min(drainage, self.unsaturated_room(state, i))
        return float(max(0.0, drainage))

    def integrate_layer(
        self,
        state: SoilColumnState,
        i: int,
        step_seconds: float
    ) -> LayerDrainage:
        """Drain layer ``i`` without touching the accumulators"""
        initial = float(state.water_fraction[i])
        if self.drainable_water(state, i) <= 0.0:
            return LayerDrainage(layer=i, initial_fraction=initial, final_fraction=initial, change_m=0.0)

        def soil_water_store(t, y):
            return [-self.drainage_rate(state, i, y[0], step_seconds)]

        result = self.integrator.integrate(
            soil_water_store,
            [initial],
            component="GravitationalDrainageIntegrator",
            layer=i,
        )
        final = float(result.y[0])
        change = (initial - final) * float(state.thickness[i])
        return LayerDrainage(layer=i, initial_fraction=initial, final_fraction=final, change_m=change)

    def run(self, state: SoilColumnState, step_seconds: float) -> List[LayerDrainage]:
        """
        Drain every active layer and post the results to the accumulators.

        The deepest active layer drains into the core node.
        """
        layers = range(state.n_layers)
        if self.config.drainage_workers > 1:
            with ThreadPoolExecutor(max_workers=self.config.drainage_workers) as executor:
                results = list(executor.map(
                    lambda i: self.integrate_layer(state, i, step_seconds), layers
                ))
        else:
            results = [self.integrate_layer(state, i, step_seconds) for i in layers]

        # reduce in layer order
        for r in results:
            state.water_gain[r.layer + 1] += r.change_m
            state.water_loss[r.layer] += r.change_m
            if state.water_loss[r.layer] < 0.0:
                self.logger.warning(
                    f"Negative water loss {state.water_loss[r.layer]:.3e} m in layer {r.layer}"
                )

        total = float(np.sum([r.change_m for r in results]))
        self.logger.debug(f"Drainage moved {1000.0 * total:.4f} mm between layers")
        return results

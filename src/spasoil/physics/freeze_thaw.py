"""
Thaw-front location and layer ice proportions.

Each pair of vertically adjacent temperature nodes is inspected, starting with
the soil surface (at the surface temperature) over the midpoint of the top
layer. Where the pair straddles the freezing point a thaw front is located by
linear interpolation and the half-layers on either side are apportioned to
ice and water. Where both nodes are frozen the two half-layers they share are
frozen entirely. Any number of fronts may exist at once.
"""

import logging
from typing import List, Optional

import numpy as np

from spasoil.core.constants import FREEZE
from spasoil.core.types import StepDiagnostics
from spasoil.physics.state import SoilColumnState

logger = logging.getLogger(__name__)


class FreezeThawTracker:
    """Recomputes ice proportions from the temperature profile"""

    def __init__(self):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @staticmethod
    def liquid_nodes(state: SoilColumnState, surface_temperature: float) -> np.ndarray:
        """
        Liquid flags for the surface followed by every node, core included.
        """
        temps = np.concatenate(([surface_temperature], state.temperature))
        return temps > FREEZE

    def update(
        self,
        state: SoilColumnState,
        surface_temperature: float,
        diagnostics: Optional[StepDiagnostics] = None
    ) -> List[float]:
        """
        Recompute the ice proportion of every active layer.

        Returns:
            Thaw-front depths (m), shallowest first
        """
        n = state.n_layers
        thickness = state.thickness
        depth_to_top = state.depth_to_top
        midpoint = state.midpoint_depth
        temperature = state.temperature
        # liquid[k] refers to the node above node k, liquid[k + 1] to node k
        liquid = self.liquid_nodes(state, surface_temperature)

        ice = np.zeros(n + 1)
        fronts: List[float] = []

        # pair (k-1, k); k = 0 pairs the surface with the top layer and
        # k = n pairs the deepest layer with the core node
        for k in range(n + 1):
            if k == 0:
                top_thick = 0.0
                top_temperature = surface_temperature
            else:
                top_thick = thickness[k - 1]
                top_temperature = temperature[k - 1]

            if liquid[k] != liquid[k + 1]:
                # change of state: locate the front relative to midpoint k
                root = ((FREEZE - temperature[k]) * (0.5 * thickness[k] + 0.5 * top_thick)
                        / (top_temperature - temperature[k]))
                thaw = float(midpoint[k] - root)
                fronts.append(thaw)

                if thaw > depth_to_top[k] or k == 0:
                    # front is in the top half of layer k
                    split = (thaw - depth_to_top[k]) / (0.5 * thickness[k])
                    if not liquid[k + 1]:
                        ice[k] += 0.5 * (1.0 - split)
                    else:
                        ice[k] += 0.5 * split
                        if k > 0:
                            # bottom half of k-1 is frozen
                            ice[k - 1] += 0.5
                else:
                    # front is in the bottom half of layer k-1
                    split = (depth_to_top[k] - thaw) / (0.5 * thickness[k - 1])
                    if not liquid[k]:
                        ice[k - 1] += 0.5 * (1.0 - split)
                    else:
                        ice[k - 1] += 0.5 * split
                        # top half of layer k is frozen
                        ice[k] += 0.5
            elif not liquid[k + 1]:
                # both frozen
                ice[k] += 0.5
                if k > 0:
                    ice[k - 1] += 0.5

        ice = np.clip(ice, 0.0, 1.0)
        # the core node keeps its own ice proportion
        state.ice_proportion[:n] = ice[:n]

        if len(fronts) > 1:
            self.logger.debug(f"{len(fronts)} thaw fronts at {np.round(fronts, 3).tolist()} m")
        if diagnostics is not None:
            diagnostics.thaw_depths_m = list(fronts)
        return fronts

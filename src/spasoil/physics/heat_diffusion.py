"""
Soil temperature profile by implicit finite differences.

Solves the 1-D heat equation with a weighted (Crank-Nicolson, beta = 0.5)
scheme. The implicit system is relaxed by Gauss-Seidel sweeps over the
interior nodes until the summed absolute change of one sweep falls below the
tolerance. The surface node and the bottom (core) node are fixed boundaries.

Each solve also reports the terms of the heat budget of the solved layers:
    - conduction across the surface and core boundaries
    - latent heat taken up inside the freezing range
    - the imbalance the node scheme leaves wherever the conductance k / dz
      changes between neighbouring nodes
Together with the heat advected by moving water these close the budget.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import numpy as np

from spasoil.core.config import SolverConfig
from spasoil.core.exceptions import ErrorContext, NonConvergence
from spasoil.physics.soil_properties import apparent_heat_capacity, thermal_conductivity
from spasoil.physics.state import SoilColumnState

logger = logging.getLogger(__name__)


@dataclass
class RelaxationResult:
    """Outcome of one heat diffusion solve"""
    iterations: int
    final_error: float
    # heat budget of nodes 1..n-1 over the step, positive into the column
    surface_flux_w_m2: float = 0.0
    core_flux_w_m2: float = 0.0
    interface_imbalance_w_m2: float = 0.0
    latent_heat_j_m2: float = 0.0

    @property
    def conducted_w_m2(self) -> float:
        return self.surface_flux_w_m2 + self.core_flux_w_m2


class HeatDiffusionSolver:
    """
    Implicit heat diffusion over the soil column.

    Node ``i`` is the midpoint of layer ``i``. Nodes 1..n-1 of the
    ``n_layers + 1`` nodes are solved; node 0 takes the surface temperature and
    node n (the core node) keeps its temperature.
    """

    def __init__(self, config: Optional[SolverConfig] = None):
        self.config = config or SolverConfig()
        self.iteration_counts = []

    @staticmethod
    def node_properties(state: SoilColumnState) -> Tuple[np.ndarray, np.ndarray]:
        """Thermal conductivity and apparent heat capacity of nodes 1..n-1 (zero elsewhere)"""
        k = np.zeros(state.n_layers + 1)
        heatcap = np.zeros(state.n_layers + 1)
        for i in range(1, state.n_layers):
            k[i] = thermal_conductivity(state.k_unfrozen[i], state.k_frozen[i], state.ice_proportion[i])
            heatcap[i] = apparent_heat_capacity(
                state.temperature[i], state.water_fraction[i], state.ice_proportion[i],
                state.mineral_fraction[i], state.organic_fraction[i], state.thickness[i]
            )
        return k, heatcap

    def diffusion_numbers(self, state: SoilColumnState, step_seconds: float) -> np.ndarray:
        """
        Dimensionless diffusion number per node:
        conductivity / heat capacity * step length / thickness**2.
        """
        k, heatcap = self.node_properties(state)
        d = np.zeros(state.n_layers + 1)
        for i in range(1, state.n_layers):
            tdiffuse = step_seconds * k[i] / heatcap[i]
            d[i] = tdiffuse / (state.thickness[i] * state.thickness[i])
        return d

    def heat_budget(
        self,
        state: SoilColumnState,
        temperature_n: np.ndarray,
        temperature_new: np.ndarray
    ) -> Dict[str, float]:
        """
        Heat terms of one solve for nodes 1..n-1.

        At convergence every node satisfies
        ``Capp_i dz_i dT_i = dt g_i (dtheta_{i+1/2} - dtheta_{i-1/2})`` with
        ``g = k / dz`` and ``theta`` the beta-weighted temperature, so the
        column sum telescopes to the two boundary exchanges plus
        ``(g_i - g_{i+1}) dtheta_{i+1/2}`` at every interior interface.

        Args:
            state: Column state before the solve
            temperature_n: Profile at time n with the surface node at Ts
            temperature_new: Converged profile at time n+1
        """
        n = state.n_layers
        beta = self.config.heat_beta
        k, heatcap = self.node_properties(state)
        g = np.zeros(n + 1)
        g[1:n] = k[1:n] / state.thickness[1:n]
        theta = beta * temperature_new + (1.0 - beta) * temperature_n
        gradient = np.diff(theta)  # theta[i+1] - theta[i]

        latent = 0.0
        for i in range(1, n):
            sensible = state.volumetric_heat_capacity(i)
            latent += (heatcap[i] - sensible) * state.thickness[i] * (temperature_new[i] - temperature_n[i])

        return {
            "surface_flux_w_m2": float(-g[1] * gradient[0]),
            "core_flux_w_m2": float(g[n - 1] * gradient[n - 1]),
            "interface_imbalance_w_m2": float(np.sum((g[1:n - 1] - g[2:n]) * gradient[1:n - 1])),
            "latent_heat_j_m2": float(latent),
        }

    def relax(
        self,
        temperature_n: np.ndarray,
        guess: np.ndarray,
        diffusion: np.ndarray
    ) -> RelaxationResult:
        """
        Relax ``guess`` in place towards the implicit solution.

        Args:
            temperature_n: Profile at time n, including both boundary nodes
            guess: Profile at time n+1; boundary nodes are held fixed
            diffusion: Diffusion numbers per node

        Returns:
            RelaxationResult

        Raises:
            NonConvergence: if the sweep limit is reached
        """
        beta = self.config.heat_beta
        max_error = self.config.heat_tolerance
        n_nodes = len(temperature_n)
        error = 0.0

        for iteration in range(1, self.config.heat_max_iterations + 1):
            error = 0.0
            for i in range(1, n_nodes - 1):
                d = diffusion[i]
                old_value = guess[i]
                guess[i] = (
                    (d / (1.0 + 2.0 * beta * d))
                    * (beta * (guess[i + 1] + guess[i - 1])
                       + (1.0 - beta) * (temperature_n[i + 1] - 2.0 * temperature_n[i] + temperature_n[i - 1]))
                    + temperature_n[i] / (1.0 + 2.0 * beta * d)
                )
                error += abs(old_value - guess[i])

            if error <= max_error:
                self.iteration_counts.append(iteration)
                return RelaxationResult(iterations=iteration, final_error=error)

        self.iteration_counts.append(self.config.heat_max_iterations)
        raise NonConvergence(
            "Soil temperature relaxation did not converge",
            ErrorContext(
                component="HeatDiffusionSolver",
                iterations=self.config.heat_max_iterations,
                residual=error,
            ),
        )

    def solve(
        self,
        state: SoilColumnState,
        surface_temperature: float,
        step_seconds: float
    ) -> RelaxationResult:
        """
        Advance the column temperature profile by one step.

        The surface node is set to ``surface_temperature``; the temperature
        array of ``state`` is overwritten in place. The result carries the
        heat budget terms of the step.
        """
        temperature_n = state.temperature.copy()
        temperature_n[0] = surface_temperature

        diffusion = self.diffusion_numbers(state, step_seconds)

        guess = temperature_n.copy()
        result = self.relax(temperature_n, guess, diffusion)
        for name, value in self.heat_budget(state, temperature_n, guess).items():
            setattr(result, name, value)

        state.temperature[:] = guess
        logger.debug(
            f"Heat diffusion converged in {result.iterations} sweeps "
            f"(error {result.final_error:.2e} K)"
        )
        return result

    def get_statistics(self) -> Dict[str, float]:
        """Get solver statistics"""
        if not self.iteration_counts:
            return {}

        counts = np.array(self.iteration_counts)
        return {
            'mean_iterations': float(np.mean(counts)),
            'max_iterations': int(np.max(counts)),
        }

"""
Adaptive ODE integration and balance bookkeeping shared by the soil column
components.

Integration:
- Canopy storage and gravitational drainage are integrated over a unit
  pseudo-time interval (one interval = one model timestep) with an embedded
  Runge-Kutta pair (Dormand-Prince 5(4)) and relative error control.
- There is no minimum step: a step size collapsing below floating point
  resolution is reported as NonConvergence.

Balance:
- Mass and energy residuals are checked, never corrected. Violations are
  flagged as warnings and accumulated for reporting.

References:
- Dormand, J.R., Prince, P.J. (1980) A family of embedded Runge-Kutta formulae
- Press et al. (1992) Numerical Recipes, odeint/rkqs
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Sequence, Tuple

import numpy as np
from scipy.integrate import solve_ivp

from spasoil.core.config import BalanceConfig, SolverConfig
from spasoil.core.exceptions import (
    EnergyBalanceWarning,
    ErrorContext,
    MassBalanceWarning,
    NonConvergence,
)
from spasoil.core.types import StepDiagnostics

logger = logging.getLogger(__name__)


# =============================================================================
# ADAPTIVE INTEGRATION
# =============================================================================

@dataclass
class IntegrationResult:
    """Final state of one pseudo-interval integration"""
    y: np.ndarray
    n_evaluations: int


class PseudoIntervalIntegrator:
    """
    Integrates ``dy/dt = f(t, y)`` across the configured pseudo-time interval.
    """

    def __init__(self, config: Optional[SolverConfig] = None):
        self.config = config or SolverConfig()
        self.n_integrations = 0
        self.n_evaluations = 0
        # drainage layers may integrate concurrently
        self._lock = threading.Lock()

    def integrate(
        self,
        rhs: Callable[[float, np.ndarray], Sequence[float]],
        y0: Sequence[float],
        component: str = "integrator",
        layer: Optional[int] = None
    ) -> IntegrationResult:
        """
        Integrate from the start to the end of the pseudo-interval.

        Args:
            rhs: Right-hand side f(t, y)
            y0: Initial state
            component: Name used in error context
            layer: Layer index used in error context

        Returns:
            IntegrationResult with the state at the end of the interval

        Raises:
            NonConvergence: if the step size underflows or the integrator fails
        """
        t0, t1 = self.config.ode_interval
        sol = solve_ivp(
            rhs,
            (t0, t1),
            np.asarray(y0, dtype=float),
            method=self.config.ode_method,
            rtol=self.config.ode_rtol,
            atol=self.config.ode_atol,
            first_step=min(self.config.ode_first_step, t1 - t0),
            t_eval=[t1],
        )

        with self._lock:
            self.n_integrations += 1
            self.n_evaluations += sol.nfev

        if not sol.success or sol.y.shape[1] == 0:
            raise NonConvergence(
                f"Adaptive integration failed: {sol.message}",
                ErrorContext(
                    component=component,
                    layer=layer,
                    iterations=int(sol.nfev),
                    details={"t_reached": float(sol.t[-1]) if sol.t.size else t0},
                ),
            )

        return IntegrationResult(
            y=sol.y[:, -1].copy(),
            n_evaluations=int(sol.nfev),
        )

    def get_statistics(self) -> Dict[str, float]:
        """Get integrator statistics"""
        if not self.n_integrations:
            return {}
        return {
            "n_integrations": self.n_integrations,
            "mean_evaluations": self.n_evaluations / self.n_integrations,
        }


# =============================================================================
# BALANCE CHECKING
# =============================================================================

class BalanceCheck:
    """
    Tracks mass and energy balance residuals across timesteps.

    Mass balance: dS = inputs - outputs, checked against
    max(absolute tolerance, relative tolerance * storage).
    Energy balance: the change of the column heat content against the heat
    that entered it by conduction or with moving water, net of latent heat.
    The surface energy balance residual at the solved surface temperature is
    checked separately.
    """

    def __init__(self, config: Optional[BalanceConfig] = None):
        self.config = config or BalanceConfig()
        self.cumulative_mass_error_mm = 0.0
        self.max_mass_error_mm = 0.0
        self.max_energy_error_w_m2 = 0.0
        self.max_column_heat_error_w_m2 = 0.0
        self.n_mass_violations = 0
        self.n_energy_violations = 0
        self.n_column_heat_violations = 0
        self.n_timesteps = 0
        self.logger = logging.getLogger(f"{__name__}.BalanceCheck")

    def mass_tolerance(self, storage_mm: float) -> float:
        return max(self.config.mass_tolerance_mm,
                   self.config.mass_relative_tolerance * abs(storage_mm))

    def check(
        self,
        initial_storage_mm: float,
        final_storage_mm: float,
        inputs_mm: Dict[str, float],
        outputs_mm: Dict[str, float],
        energy_residual_w_m2: float,
        diagnostics: StepDiagnostics,
        column_heat_error_w_m2: Optional[float] = None
    ) -> Tuple[float, float]:
        """
        Check the balances and record them on the diagnostics.

        Args:
            energy_residual_w_m2: Surface energy balance residual
            column_heat_error_w_m2: Unexplained column heat change; not
                checked when None

        Returns:
            Tuple of (mass_error_mm, energy_error_w_m2)
        """
        self.n_timesteps += 1

        is_valid, mass_error, message = validate_mass_balance(
            initial_storage_mm, final_storage_mm, inputs_mm, outputs_mm,
            tolerance=self.mass_tolerance(final_storage_mm)
        )
        self.cumulative_mass_error_mm += mass_error
        self.max_mass_error_mm = max(self.max_mass_error_mm, abs(mass_error))
        if not is_valid:
            self.n_mass_violations += 1
            diagnostics.flag(MassBalanceWarning, message, self.logger)

        energy_error = float(energy_residual_w_m2)
        self.max_energy_error_w_m2 = max(self.max_energy_error_w_m2, abs(energy_error))
        if abs(energy_error) > self.config.energy_tolerance_w_m2:
            self.n_energy_violations += 1
            diagnostics.flag(
                EnergyBalanceWarning,
                f"Surface energy balance ERROR: residual {energy_error:.4f} W m-2",
                self.logger,
            )

        if column_heat_error_w_m2 is not None:
            column_error = float(column_heat_error_w_m2)
            self.max_column_heat_error_w_m2 = max(self.max_column_heat_error_w_m2, abs(column_error))
            if abs(column_error) > self.config.column_heat_tolerance_w_m2:
                self.n_column_heat_violations += 1
                diagnostics.flag(
                    EnergyBalanceWarning,
                    f"Column heat budget ERROR: {column_error:.4f} W m-2 unexplained",
                    self.logger,
                )
            diagnostics.column_heat_error_w_m2 = column_error

        diagnostics.mass_balance_error_mm = mass_error
        diagnostics.energy_balance_error_w_m2 = energy_error
        return mass_error, energy_error

    def reset(self):
        """Reset error tracking"""
        self.cumulative_mass_error_mm = 0.0
        self.max_mass_error_mm = 0.0
        self.max_energy_error_w_m2 = 0.0
        self.max_column_heat_error_w_m2 = 0.0
        self.n_mass_violations = 0
        self.n_energy_violations = 0
        self.n_column_heat_violations = 0
        self.n_timesteps = 0

    def report(self) -> Dict[str, float]:
        """Report balance statistics"""
        return {
            "cumulative_mass_error_mm": self.cumulative_mass_error_mm,
            "max_mass_error_mm": self.max_mass_error_mm,
            "max_energy_error_w_m2": self.max_energy_error_w_m2,
            "max_column_heat_error_w_m2": self.max_column_heat_error_w_m2,
            "n_mass_violations": self.n_mass_violations,
            "n_energy_violations": self.n_energy_violations,
            "n_column_heat_violations": self.n_column_heat_violations,
            "n_timesteps": self.n_timesteps,
        }


def validate_mass_balance(
    initial_storage: float,
    final_storage: float,
    inputs: Dict[str, float],
    outputs: Dict[str, float],
    tolerance: float = 1e-6
) -> Tuple[bool, float, str]:
    """
    Validate mass balance for a timestep.

    Args:
        initial_storage: Storage at start (mm)
        final_storage: Storage at end (mm)
        inputs: Dict of input fluxes (mm)
        outputs: Dict of output fluxes (mm)
        tolerance: Acceptable error (mm)

    Returns:
        Tuple of (is_valid, error_mm, message)
    """
    total_in = sum(inputs.values())
    total_out = sum(outputs.values())
    expected_change = total_in - total_out
    actual_change = final_storage - initial_storage
    error = actual_change - expected_change

    is_valid = abs(error) <= tolerance

    if is_valid:
        message = f"Mass balance OK (error={error:.2e} mm)"
    else:
        message = (
            f"Mass balance ERROR: {error:.2e} mm "
            f"(expected dS={expected_change:.6f}, actual={actual_change:.6f})"
        )

    return is_valid, error, message

"""
Custom exception hierarchy for the spa-soil engine.
Provides clear error categories and rich error information.

Fatal conditions are exceptions. Non-fatal physical conditions are warning
categories: they are logged and recorded in the step diagnostics, and the
simulation continues.
"""
from typing import Optional, Any, Dict
from dataclasses import dataclass


@dataclass
class ErrorContext:
    """Context information for errors"""
    site_id: Optional[str] = None
    step: Optional[int] = None
    phase: Optional[str] = None
    component: Optional[str] = None
    layer: Optional[int] = None
    iterations: Optional[int] = None
    residual: Optional[float] = None
    details: Optional[Dict[str, Any]] = None


class SpaError(Exception):
    """Base exception for all spa-soil errors"""

    def __init__(self, message: str, context: Optional[ErrorContext] = None):
        super().__init__(message)
        self.message = message
        self.context = context or ErrorContext()

    def __str__(self) -> str:
        context_str = ""
        if self.context.site_id:
            context_str += f" [Site: {self.context.site_id}]"
        if self.context.step is not None:
            context_str += f" [Step: {self.context.step}]"
        if self.context.phase:
            context_str += f" [Phase: {self.context.phase}]"
        if self.context.component:
            context_str += f" [Component: {self.context.component}]"
        if self.context.layer is not None:
            context_str += f" [Layer: {self.context.layer}]"
        if self.context.iterations is not None:
            context_str += f" [Iterations: {self.context.iterations}]"
        if self.context.residual is not None:
            context_str += f" [Residual: {self.context.residual:.3e}]"

        return f"{self.__class__.__name__}: {self.message}{context_str}"


# Physics model errors
class PhysicsModelError(SpaError):
    """Base class for physics model errors"""
    pass


class NonConvergence(PhysicsModelError):
    """Root-finder bracket invalid, integrator underflow or relaxation cap hit"""
    pass


class SoilDesiccated(PhysicsModelError):
    """No wetting zone or column water remains"""
    pass


class ParameterError(PhysicsModelError):
    """Invalid model parameters"""
    pass


# Configuration errors
class ConfigurationError(SpaError):
    """Configuration error"""
    pass


# Non-fatal physical conditions
class PhysicsWarning(UserWarning):
    """Base class for non-fatal physics conditions"""
    pass


class MassBalanceWarning(PhysicsWarning):
    """Column water change does not match the flux accounting"""
    pass


class EnergyBalanceWarning(PhysicsWarning):
    """Surface energy balance does not close at the solved temperature"""
    pass


class PhysicalBoundsWarning(PhysicsWarning):
    """A state variable left its physical range and was clamped"""
    pass


def with_context(exc: SpaError, **fields: Any) -> SpaError:
    """
    Fill unset context fields on an error as it propagates upward.
    Fields already set closer to the failure are kept.
    """
    for name, value in fields.items():
        if value is not None and getattr(exc.context, name, None) is None:
            setattr(exc.context, name, value)
    return exc

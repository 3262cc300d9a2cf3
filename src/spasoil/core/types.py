"""
Type definitions and type aliases for the spa-soil engine.
Provides strong typing throughout the codebase.
"""
import logging
import warnings
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple, Type

import numpy as np
from typing_extensions import TypeAlias

from spasoil.core.constants import FREEZE


# Type aliases for clarity
SiteID: TypeAlias = str
KelvinTemperature: TypeAlias = float
WaterFraction: TypeAlias = float  # m3/m3
WaterPotentialMPa: TypeAlias = float
DepthM: TypeAlias = float
WaterMm: TypeAlias = float

# Per-layer arrays, shape (n_layers + 1,): active layers plus the bottom core node
LayerArray: TypeAlias = np.ndarray


class Phase(str, Enum):
    """Phases of one timestep, in execution order"""
    SNOW_CHECK = "SnowCheck"
    CANOPY = "CanopyPhase"
    SURFACE_TEMPERATURE = "SurfaceTempSolve"
    TRANSPIRATION = "TranspirationDemand"
    WATER_FLUX = "WaterFluxPhase"
    HEAT_DIFFUSION = "HeatDiffusionPhase"
    FREEZE_THAW = "FreezeThawPhase"
    BALANCE_CHECK = "BalanceCheck"
    DONE = "Done"


@dataclass(frozen=True)
class TimeStepContext:
    """
    Read-only meteorological forcing for one timestep.

    Radiation terms come from the canopy radiative-transfer collaborator:
    ``soil_radiation_w_m2`` is the shortwave/net radiation reaching the soil
    surface and ``canopy_net_radiation_w_m2`` drives wet-canopy evaporation.
    """
    air_temperature_k: KelvinTemperature
    vpd_kpa: float
    wind_speed_m_s: float
    soil_radiation_w_m2: float
    precipitation_mm: float  # per step
    atmospheric_pressure_pa: float = 101325.0
    step_seconds: float = 3600.0
    canopy_net_radiation_w_m2: float = 0.0
    step: int = 0

    def __post_init__(self):
        if self.step_seconds <= 0:
            raise ValueError("step_seconds must be positive")
        if self.air_temperature_k <= 0:
            raise ValueError("air_temperature_k must be in kelvin")
        if self.wind_speed_m_s < 0:
            raise ValueError("wind_speed_m_s cannot be negative")

    @property
    def air_temperature_c(self) -> float:
        return self.air_temperature_k - FREEZE


@dataclass
class SurfaceFluxes:
    """Surface energy balance components at the solved temperature (W m-2)"""
    sensible: float = 0.0
    latent: float = 0.0
    net_radiation: float = 0.0
    conduction: float = 0.0

    @property
    def residual(self) -> float:
        return self.sensible + self.latent + self.net_radiation + self.conduction


@dataclass
class StepDiagnostics:
    """Per-step outputs of the soil column engine"""
    step: int = 0
    surface_temperature_k: float = np.nan
    fluxes: SurfaceFluxes = field(default_factory=SurfaceFluxes)
    soil_evaporation_w_m2: float = 0.0
    soil_evaporation_mm: float = 0.0
    canopy_evaporation_mm: float = 0.0
    transpiration_mm: float = 0.0
    evapotranspiration_w_m2: float = 0.0
    surface_input_mm: float = 0.0
    overflow_mm: float = 0.0
    underflow_mm: float = 0.0
    snow_water_mm: float = 0.0
    canopy_store_mm: float = 0.0
    drythick_m: float = 0.0
    thaw_depths_m: List[float] = field(default_factory=list)
    storage_change_mm: float = 0.0
    heat_content_change_j_m2: float = 0.0
    mass_balance_error_mm: float = 0.0
    energy_balance_error_w_m2: float = 0.0
    column_heat_error_w_m2: float = 0.0
    conducted_heat_j_m2: float = 0.0
    advected_heat_j_m2: float = 0.0
    interface_imbalance_w_m2: float = 0.0
    warnings: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def evapotranspiration_mm(self) -> float:
        return self.soil_evaporation_mm + self.canopy_evaporation_mm + self.transpiration_mm

    def flag(
        self,
        category: Type[Warning],
        message: str,
        logger: Optional[logging.Logger] = None
    ):
        """Record a non-fatal condition, log it and emit it as a warning"""
        self.warnings.append((category.__name__, message))
        (logger or logging.getLogger(__name__)).warning(message)
        warnings.warn(message, category, stacklevel=3)

    def to_record(self) -> Dict[str, float]:
        """Flat record for tabular output"""
        return {
            "step": self.step,
            "surface_temperature_k": self.surface_temperature_k,
            "qh_w_m2": self.fluxes.sensible,
            "qe_w_m2": self.fluxes.latent,
            "qn_w_m2": self.fluxes.net_radiation,
            "qc_w_m2": self.fluxes.conduction,
            "soil_evaporation_w_m2": self.soil_evaporation_w_m2,
            "soil_evaporation_mm": self.soil_evaporation_mm,
            "canopy_evaporation_mm": self.canopy_evaporation_mm,
            "transpiration_mm": self.transpiration_mm,
            "evapotranspiration_mm": self.evapotranspiration_mm,
            "evapotranspiration_w_m2": self.evapotranspiration_w_m2,
            "surface_input_mm": self.surface_input_mm,
            "overflow_mm": self.overflow_mm,
            "underflow_mm": self.underflow_mm,
            "snow_water_mm": self.snow_water_mm,
            "canopy_store_mm": self.canopy_store_mm,
            "drythick_m": self.drythick_m,
            "n_thaw_fronts": len(self.thaw_depths_m),
            "storage_change_mm": self.storage_change_mm,
            "heat_content_change_j_m2": self.heat_content_change_j_m2,
            "mass_balance_error_mm": self.mass_balance_error_mm,
            "energy_balance_error_w_m2": self.energy_balance_error_w_m2,
            "column_heat_error_w_m2": self.column_heat_error_w_m2,
            "conducted_heat_j_m2": self.conducted_heat_j_m2,
            "advected_heat_j_m2": self.advected_heat_j_m2,
            "interface_imbalance_w_m2": self.interface_imbalance_w_m2,
            "n_warnings": len(self.warnings),
        }

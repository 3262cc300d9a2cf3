"""
Configuration system with validation and environment awareness.
Based on Pydantic Settings for robust configuration management.

Static soil/vegetation tables and site parameters are resolved here once at
setup; the physics components only ever see the resolved values.
"""
import logging
from pathlib import Path
import yaml
from pydantic import BaseModel, Field, field_validator, model_validator, ConfigDict
from pydantic_settings import BaseSettings
from typing import List, Optional, Literal, Tuple, Union

from spasoil.core.exceptions import ConfigurationError


class LayerConfig(BaseModel):
    """Static description of one soil layer"""

    thickness_m: float = Field(0.1, gt=0, description="Layer thickness (m)")
    sand_percent: float = Field(40.0, ge=0, le=100, description="Sand content (%)")
    clay_percent: float = Field(20.0, gt=0, le=100, description="Clay content (%)")
    mineral_fraction: float = Field(0.5, ge=0, le=1, description="Volumetric mineral fraction")
    organic_fraction: float = Field(0.05, ge=0, le=1, description="Volumetric organic fraction")

    # Optional overrides of texture-derived values
    porosity: Optional[float] = Field(None, gt=0, lt=1, description="Porosity override")
    field_capacity: Optional[float] = Field(None, gt=0, lt=1, description="Field capacity override")
    thermal_conductivity_unfrozen: Optional[float] = Field(None, gt=0, description="W m-1 K-1")
    thermal_conductivity_frozen: Optional[float] = Field(None, gt=0, description="W m-1 K-1")

    # Initial conditions
    initial_water_fraction: Optional[float] = Field(
        None, ge=0, lt=1, description="Initial water fraction (defaults to field capacity)"
    )
    initial_temperature_k: float = Field(283.15, gt=0, description="Initial temperature (K)")
    initial_ice_proportion: float = Field(0.0, ge=0, le=1)

    @model_validator(mode="after")
    def check_texture(self):
        if self.sand_percent + self.clay_percent > 100:
            raise ValueError("sand_percent + clay_percent cannot exceed 100")
        return self


def _default_layers() -> List[LayerConfig]:
    thicknesses = (0.05, 0.1, 0.1, 0.15, 0.15, 0.2, 0.2, 0.25, 0.3, 0.5)
    return [LayerConfig(thickness_m=t) for t in thicknesses]


class SoilConfig(BaseSettings):
    """Static soil profile, ordered top to bottom"""

    layers: List[LayerConfig] = Field(default_factory=_default_layers)
    core_layer: LayerConfig = Field(
        default_factory=lambda: LayerConfig(thickness_m=1.0),
        description="Bottom node receiving deep drainage; its temperature is the lower boundary"
    )

    model_config = ConfigDict(env_prefix="SPASOIL_SOIL_", case_sensitive=False)

    @field_validator("layers")
    @classmethod
    def at_least_two_layers(cls, v):
        if len(v) < 2:
            raise ValueError("The soil column needs at least two active layers")
        return v

    @property
    def n_layers(self) -> int:
        return len(self.layers)


class VegetationConfig(BaseSettings):
    """Static vegetation parameters consumed by the soil column"""

    canopy_height_m: float = Field(9.0, gt=0)
    tower_height_m: float = Field(12.0, gt=0, description="Measurement height (m)")
    max_storage_mm: float = Field(1.0, gt=0, description="Maximum canopy water storage (mm)")
    throughfall_fraction: float = Field(0.5, ge=0, le=1)
    uptake_fractions: List[float] = Field(
        default_factory=list,
        description="Default per-layer root water uptake fractions (top to bottom)"
    )

    model_config = ConfigDict(env_prefix="SPASOIL_VEG_", case_sensitive=False)

    @field_validator("uptake_fractions")
    @classmethod
    def check_uptake(cls, v):
        if any(f < 0 for f in v):
            raise ValueError("Uptake fractions cannot be negative")
        if v and abs(sum(v) - 1.0) > 1e-6:
            raise ValueError(f"Uptake fractions must sum to 1, got {sum(v):.6f}")
        return v

    @model_validator(mode="after")
    def check_heights(self):
        if self.tower_height_m <= 0.13 * self.canopy_height_m:
            raise ValueError("tower_height_m must exceed the roughness length (0.13 * canopy height)")
        return self


class SiteParameters(BaseSettings):
    """Site-specific behaviour, resolved once and consumed generically"""

    site_id: str = Field("default")
    drainage_threshold: Optional[float] = Field(
        None, gt=0, lt=1,
        description="Water fraction below which no gravitational drainage occurs (overrides field capacity)"
    )
    sapflow_mode: Literal["replace", "add"] = Field(
        "replace",
        description="Measured sap flow replaces modelled transpiration, or adds non-modelled vegetation"
    )

    model_config = ConfigDict(env_prefix="SPASOIL_SITE_", case_sensitive=False)


class SolverConfig(BaseSettings):
    """Numerical tolerances and iteration caps"""

    # Surface energy balance root-finding
    surface_bracket_k: float = Field(50.0, gt=0, description="Half-width of the Ts bracket around air temperature")
    surface_xtol_k: float = Field(1e-4, gt=0)
    surface_max_iterations: int = Field(100, gt=0)

    # Heat diffusion relaxation
    heat_beta: float = Field(0.5, ge=0, le=1, description="Implicit weighting")
    heat_tolerance: float = Field(5e-7, gt=0, description="Summed absolute change per sweep (K)")
    heat_max_iterations: int = Field(10000, gt=0)

    # Adaptive ODE integration over the pseudo-time interval
    ode_method: Literal["RK45", "DOP853"] = "RK45"
    ode_rtol: float = Field(1e-4, gt=0)
    ode_atol: float = Field(1e-8, gt=0)
    ode_first_step: float = Field(1e-3, gt=0)
    ode_interval: Tuple[float, float] = (1.0, 2.0)

    # Canopy and surface
    canopy_snap_fraction: float = Field(1e-5, ge=0)
    canopy_rate_warning_mm: float = Field(100.0, gt=0)
    tortuosity: float = Field(2.5, gt=0)
    min_drythick_m: float = Field(0.001, gt=0)

    # Drainage integrations are layer independent
    drainage_workers: int = Field(1, ge=1)

    model_config = ConfigDict(env_prefix="SPASOIL_SOLVER_", case_sensitive=False)

    @field_validator("ode_interval")
    @classmethod
    def check_interval(cls, v):
        if v[1] <= v[0]:
            raise ValueError("ode_interval must be increasing")
        return v


class BalanceConfig(BaseSettings):
    """Tolerances of the end-of-step balance check"""

    mass_tolerance_mm: float = Field(1e-6, gt=0)
    mass_relative_tolerance: float = Field(1e-6, gt=0)
    energy_tolerance_w_m2: float = Field(0.5, gt=0, description="Surface energy balance residual")
    column_heat_tolerance_w_m2: float = Field(0.1, gt=0, description="Unexplained column heat change")

    model_config = ConfigDict(env_prefix="SPASOIL_BALANCE_", case_sensitive=False)


class MonitoringConfig(BaseSettings):
    """Configuration for logging"""

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: str = Field(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    model_config = ConfigDict(env_prefix="SPASOIL_MONITORING_", case_sensitive=False)


class SpaConfig(BaseSettings):
    """Main configuration for the soil column engine"""

    project_name: str = "spa-soil"

    soil: SoilConfig = Field(default_factory=SoilConfig)
    vegetation: VegetationConfig = Field(default_factory=VegetationConfig)
    site: SiteParameters = Field(default_factory=SiteParameters)
    solver: SolverConfig = Field(default_factory=SolverConfig)
    balance: BalanceConfig = Field(default_factory=BalanceConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = ConfigDict(
        env_prefix="SPASOIL_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_config(self):
        """Cross-field validation"""
        n_layers = self.soil.n_layers
        if len(self.vegetation.uptake_fractions) > n_layers:
            raise ValueError(
                f"{len(self.vegetation.uptake_fractions)} uptake fractions given "
                f"for {n_layers} soil layers"
            )
        for i, layer in enumerate(self.soil.layers):
            if (layer.field_capacity is not None and layer.porosity is not None
                    and layer.field_capacity > layer.porosity):
                raise ValueError(f"Layer {i}: field capacity exceeds porosity")
        return self

    @classmethod
    def from_yaml(cls, yaml_path: Union[str, Path]) -> "SpaConfig":
        """Load configuration from YAML file"""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Config file not found: {yaml_path}")

        with open(yaml_path, encoding="utf-8") as f:
            yaml_config = yaml.safe_load(f) or {}

        if not isinstance(yaml_config, dict):
            raise ConfigurationError(f"Config file {yaml_path} must contain a mapping")

        return cls(**yaml_config)

    def to_yaml(self, yaml_path: Union[str, Path]):
        """Save configuration to YAML file"""
        yaml_path = Path(yaml_path)
        yaml_path.parent.mkdir(parents=True, exist_ok=True)

        with open(yaml_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(self.model_dump(mode="json"), f, default_flow_style=False)


# Global configuration instance
_config: Optional[SpaConfig] = None


def get_config(config_path: Optional[Path] = None) -> SpaConfig:
    """Get or create configuration instance (singleton pattern)"""
    global _config

    if _config is None:
        if config_path and config_path.exists():
            _config = SpaConfig.from_yaml(config_path)
        else:
            # Try to load from environment
            _config = SpaConfig()

    return _config


def set_config(config: Optional[SpaConfig]):
    """Set configuration (useful for testing)"""
    global _config
    _config = config


def configure_logging(monitoring: Optional[MonitoringConfig] = None):
    """Apply the monitoring log level and format to the root logger"""
    monitoring = monitoring or get_config().monitoring
    logging.basicConfig(level=monitoring.log_level, format=monitoring.log_format)
    logging.getLogger("spasoil").setLevel(monitoring.log_level)

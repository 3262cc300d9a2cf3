"""
State of the soil column: per-layer arrays, wetting zones, snow and canopy
stores.

All per-layer arrays have ``n_layers + 1`` entries. The extra bottom entry is
the core node: it receives water draining out of the deepest active layer and
its temperature is the lower boundary of the heat diffusion problem.
"""
import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np

from spasoil.core.config import SpaConfig
from spasoil.core.types import LayerArray
from spasoil.physics.soil_properties import (
    default_thermal_conductivities,
    field_capacity,
    soil_conductivity,
    soil_porosity,
    soil_water_potential,
    volumetric_heat_capacity,
)

logger = logging.getLogger(__name__)

# Arrays saved by to_dict / from_dict
_ARRAY_FIELDS = (
    "thickness", "sand_percent", "clay_percent", "mineral_fraction",
    "organic_fraction", "porosity", "field_capacity", "k_unfrozen", "k_frozen",
    "water_fraction", "ice_proportion", "temperature", "conductivity",
    "water_potential", "water_gain", "water_loss", "precipitation_gain",
)


@dataclass
class SoilLayer:
    """Snapshot of one soil layer"""
    index: int
    thickness_m: float
    depth_to_top_m: float
    water_fraction: float
    ice_proportion: float
    temperature_k: float
    mineral_fraction: float
    organic_fraction: float
    porosity: float
    field_capacity: float
    conductivity_m_s: float
    water_gain_m: float
    water_loss_m: float
    precipitation_gain_m: float

    @property
    def liquid_fraction(self) -> float:
        """Liquid water fraction (m3/m3)"""
        return self.water_fraction * (1.0 - self.ice_proportion)

    @property
    def midpoint_depth_m(self) -> float:
        return self.depth_to_top_m + 0.5 * self.thickness_m

    @property
    def storage_mm(self) -> float:
        """Water and ice held in the layer (mm)"""
        return 1000.0 * self.water_fraction * self.thickness_m


@dataclass
class WettingZone:
    """Wet sub-layer within the top soil layer, depths in m from the surface"""
    top_m: float
    bottom_m: float

    @property
    def extent_m(self) -> float:
        return self.bottom_m - self.top_m


@dataclass
class SnowStore:
    """Snowpack and the water it releases to the soil surface this step"""
    water_mm: float = 0.0
    surface_water_mm: float = 0.0


@dataclass
class CanopyStore:
    """Water intercepted by the canopy"""
    water_mm: float = 0.0
    evaporation_mm: float = 0.0


@dataclass
class SoilColumnState:
    """
    Mutable state of one soil column.

    Constructed once from static configuration, then mutated in place by every
    timestep. Each ensemble replicate owns its own instance.
    """
    n_layers: int

    # Static properties
    thickness: LayerArray
    sand_percent: LayerArray
    clay_percent: LayerArray
    mineral_fraction: LayerArray
    organic_fraction: LayerArray
    porosity: LayerArray
    field_capacity: LayerArray
    k_unfrozen: LayerArray
    k_frozen: LayerArray

    # Prognostic state
    water_fraction: LayerArray
    ice_proportion: LayerArray
    temperature: LayerArray

    # Derived each step
    conductivity: Optional[LayerArray] = None
    water_potential: Optional[LayerArray] = None

    # Per-step flux accumulators (m of water)
    water_gain: Optional[LayerArray] = None
    water_loss: Optional[LayerArray] = None
    precipitation_gain: Optional[LayerArray] = None

    wetting_zones: List[WettingZone] = field(default_factory=list)
    drythick_m: float = 0.001
    snow: SnowStore = field(default_factory=SnowStore)
    canopy: CanopyStore = field(default_factory=CanopyStore)

    # Per-step outflows (m) and running totals (mm)
    overflow_m: float = 0.0
    underflow_m: float = 0.0
    runoff_mm: float = 0.0
    discharge_mm: float = 0.0
    step_count: int = 0

    def __post_init__(self):
        size = self.n_layers + 1
        for name in _ARRAY_FIELDS:
            value = getattr(self, name)
            if value is None:
                setattr(self, name, np.zeros(size))
            else:
                value = np.asarray(value, dtype=float)
                if value.shape != (size,):
                    raise ValueError(f"{name} must have shape ({size},), got {value.shape}")
                setattr(self, name, value)
        self.update_hydraulics()

    @classmethod
    def from_config(cls, config: SpaConfig) -> "SoilColumnState":
        """Build the initial column from the static soil configuration"""
        rows = list(config.soil.layers) + [config.soil.core_layer]
        n_layers = config.soil.n_layers

        arrays: Dict[str, List[float]] = {name: [] for name in (
            "thickness", "sand_percent", "clay_percent", "mineral_fraction",
            "organic_fraction", "porosity", "field_capacity", "k_unfrozen",
            "k_frozen", "water_fraction", "ice_proportion", "temperature",
        )}
        for i, row in enumerate(rows):
            porosity = row.porosity
            if porosity is None:
                porosity = soil_porosity(row.sand_percent, row.clay_percent)
            fc = row.field_capacity
            if fc is None:
                fc = min(field_capacity(row.sand_percent, row.clay_percent), porosity)
            k_unfrozen, k_frozen = default_thermal_conductivities(i)
            if row.thermal_conductivity_unfrozen is not None:
                k_unfrozen = row.thermal_conductivity_unfrozen
            if row.thermal_conductivity_frozen is not None:
                k_frozen = row.thermal_conductivity_frozen
            water = fc if row.initial_water_fraction is None else row.initial_water_fraction
            if water > porosity:
                logger.warning(
                    f"Initial water fraction {water:.3f} of layer {i} exceeds "
                    f"porosity {porosity:.3f}; clamped"
                )
                water = porosity

            arrays["thickness"].append(row.thickness_m)
            arrays["sand_percent"].append(row.sand_percent)
            arrays["clay_percent"].append(row.clay_percent)
            arrays["mineral_fraction"].append(row.mineral_fraction)
            arrays["organic_fraction"].append(row.organic_fraction)
            arrays["porosity"].append(porosity)
            arrays["field_capacity"].append(fc)
            arrays["k_unfrozen"].append(k_unfrozen)
            arrays["k_frozen"].append(k_frozen)
            arrays["water_fraction"].append(water)
            arrays["ice_proportion"].append(row.initial_ice_proportion)
            arrays["temperature"].append(row.initial_temperature_k)

        state = cls(n_layers=n_layers, **{k: np.array(v) for k, v in arrays.items()})
        # The whole top layer starts wet
        state.wetting_zones = [WettingZone(top_m=0.0, bottom_m=float(state.thickness[0]))]
        state.drythick_m = config.solver.min_drythick_m
        return state

    # ------------------------------------------------------------------
    # Step bookkeeping
    # ------------------------------------------------------------------

    def begin_timestep(self):
        """Reset the per-step accumulators"""
        self.water_gain[:] = 0.0
        self.water_loss[:] = 0.0
        self.precipitation_gain[:] = 0.0
        self.overflow_m = 0.0
        self.underflow_m = 0.0
        self.snow.surface_water_mm = 0.0
        self.canopy.evaporation_mm = 0.0

    def update_hydraulics(self):
        """Recompute conductivity and water potential from the water fractions"""
        for i in range(self.n_layers + 1):
            self.conductivity[i] = soil_conductivity(
                self.water_fraction[i], self.sand_percent[i], self.clay_percent[i]
            )
            self.water_potential[i] = soil_water_potential(
                self.water_fraction[i], self.sand_percent[i], self.clay_percent[i]
            )

    # ------------------------------------------------------------------
    # Derived quantities
    # ------------------------------------------------------------------

    @property
    def liquid_fraction(self) -> LayerArray:
        return self.water_fraction * (1.0 - self.ice_proportion)

    @property
    def depth_to_top(self) -> LayerArray:
        return np.concatenate(([0.0], np.cumsum(self.thickness)[:-1]))

    @property
    def midpoint_depth(self) -> LayerArray:
        return self.depth_to_top + 0.5 * self.thickness

    @property
    def water_mm(self) -> LayerArray:
        """Water and ice per active layer (mm)"""
        n = self.n_layers
        return 1000.0 * self.water_fraction[:n] * self.thickness[:n]

    def total_water_mm(self) -> float:
        """Water and ice held in the active layers (mm)"""
        return float(np.sum(self.water_mm))

    def volumetric_heat_capacity(self, i: int) -> float:
        return volumetric_heat_capacity(
            self.water_fraction[i], self.ice_proportion[i],
            self.mineral_fraction[i], self.organic_fraction[i]
        )

    def heat_content(self, first: int = 0) -> float:
        """Sensible heat content of the active layers from ``first`` down (J m-2)"""
        return float(sum(
            self.temperature[i] * self.volumetric_heat_capacity(i) * self.thickness[i]
            for i in range(first, self.n_layers)
        ))

    def layer(self, i: int) -> SoilLayer:
        """Snapshot of layer ``i`` (0 is the surface layer)"""
        return SoilLayer(
            index=i,
            thickness_m=float(self.thickness[i]),
            depth_to_top_m=float(self.depth_to_top[i]),
            water_fraction=float(self.water_fraction[i]),
            ice_proportion=float(self.ice_proportion[i]),
            temperature_k=float(self.temperature[i]),
            mineral_fraction=float(self.mineral_fraction[i]),
            organic_fraction=float(self.organic_fraction[i]),
            porosity=float(self.porosity[i]),
            field_capacity=float(self.field_capacity[i]),
            conductivity_m_s=float(self.conductivity[i]),
            water_gain_m=float(self.water_gain[i]),
            water_loss_m=float(self.water_loss[i]),
            precipitation_gain_m=float(self.precipitation_gain[i]),
        )

    @property
    def layers(self) -> List[SoilLayer]:
        return [self.layer(i) for i in range(self.n_layers)]

    @property
    def live_wetting_zones(self) -> List[WettingZone]:
        return [z for z in self.wetting_zones if z.bottom_m > 0.0]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Plain-Python representation; floats survive a round trip exactly"""
        data: Dict[str, Any] = {"n_layers": self.n_layers}
        for name in _ARRAY_FIELDS:
            data[name] = [float(v) for v in getattr(self, name)]
        data["wetting_zones"] = [[z.top_m, z.bottom_m] for z in self.wetting_zones]
        data["drythick_m"] = self.drythick_m
        data["snow"] = {"water_mm": self.snow.water_mm,
                        "surface_water_mm": self.snow.surface_water_mm}
        data["canopy"] = {"water_mm": self.canopy.water_mm,
                          "evaporation_mm": self.canopy.evaporation_mm}
        for name in ("overflow_m", "underflow_m", "runoff_mm", "discharge_mm", "step_count"):
            data[name] = getattr(self, name)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SoilColumnState":
        state = cls(
            n_layers=int(data["n_layers"]),
            **{name: np.array(data[name], dtype=float) for name in _ARRAY_FIELDS}
        )
        state.wetting_zones = [WettingZone(float(t), float(b)) for t, b in data["wetting_zones"]]
        state.drythick_m = float(data["drythick_m"])
        state.snow = SnowStore(**data["snow"])
        state.canopy = CanopyStore(**data["canopy"])
        for name in ("overflow_m", "underflow_m", "runoff_mm", "discharge_mm"):
            setattr(state, name, float(data[name]))
        state.step_count = int(data["step_count"])
        return state

    def copy(self) -> "SoilColumnState":
        return copy.deepcopy(self)

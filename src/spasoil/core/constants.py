"""
Physical constants and default numerical settings for the soil column engine.
"""
from typing import Final, Tuple

# Physical constants
FREEZE: Final[float] = 273.15  # K
BOLTZMANN: Final[float] = 5.670373e-8  # W m-2 K-4 (Stefan-Boltzmann)
GAS_CONSTANT: Final[float] = 8.3144  # J mol-1 K-1
CP_AIR: Final[float] = 1012.0  # J kg-1 K-1
EMISSIVITY: Final[float] = 0.96
VON_KARMAN: Final[float] = 0.41
GRAVITY: Final[float] = 9.8067  # m s-2
PARTIAL_MOLAL_VOLUME_WATER: Final[float] = 18.05e-6  # m3 mol-1 at 20C
LATENT_HEAT_FUSION: Final[float] = 334000.0  # J kg-1
WATER_DENSITY: Final[float] = 1000.0  # kg m-3

# Volumetric heat capacities (J m-3 K-1), Hillel 1980 p. 294
HEAT_CAPACITY_MINERAL: Final[float] = 2.0e6
HEAT_CAPACITY_ORGANIC: Final[float] = 2.5e6
HEAT_CAPACITY_WATER: Final[float] = 4.2e6
HEAT_CAPACITY_ICE: Final[float] = 1.9e6

# Temperature range over which freezing occurs (K)
FREEZING_RANGE: Final[float] = 1.0

# Fraction of incoming radiation absorbed at the soil surface
SURFACE_RADIATION_FACTOR: Final[float] = 0.85

# Thermal conductivity bands (W m-1 K-1): (number of layers, unfrozen, frozen).
# The last band applies to every deeper layer.
THERMAL_CONDUCTIVITY_BANDS: Final[Tuple[Tuple[int, float, float], ...]] = (
    (3, 0.34, 0.58),
    (6, 1.50, 2.05),
    (0, 1.69, 3.63),
)

# Canopy overflow drainage law: drain = exp(a + b * store) while store > max
CANOPY_DRAINAGE_EXPONENT: Final[float] = 3.7
CANOPY_DRAINAGE_BASE: Final[float] = 0.002

# Numerical stability
EPSILON: Final[float] = 1e-10
MIN_CONDUCTIVITY: Final[float] = 1e-30  # m s-1
DRY_SOIL_WATER_POTENTIAL: Final[float] = -9999.0  # MPa
FIELD_CAPACITY_POTENTIAL: Final[float] = -0.01  # MPa
SURFACE_WATER_UNDERFLOW: Final[float] = 7e-37  # mm

# Unit conversion factors
UNIT_CONVERSIONS = {
    "mm_to_m": 0.001,
    "m_to_mm": 1000.0,
    "celsius_to_kelvin": FREEZE,
    "kPa_to_Pa": 1000.0,
}

"""
Texture-based soil property functions.

Hydraulic curves follow Saxton et al. (1986), the calibration used by the SPA
soil model. Thermal properties follow Hillel (1980).

References:
- Saxton, K.E., Rawls, W.J., Romberger, J.S., Papendick, R.I. (1986).
  Estimating generalized soil-water characteristics from texture.
  Soil Sci. Soc. Am. J. 50:1031-1036.
- Hillel, D. (1980). Fundamentals of Soil Physics. Academic Press.
"""
from typing import Tuple

import numpy as np

from spasoil.core.constants import (
    DRY_SOIL_WATER_POTENTIAL,
    FIELD_CAPACITY_POTENTIAL,
    FREEZE,
    FREEZING_RANGE,
    HEAT_CAPACITY_ICE,
    HEAT_CAPACITY_MINERAL,
    HEAT_CAPACITY_ORGANIC,
    HEAT_CAPACITY_WATER,
    LATENT_HEAT_FUSION,
    MIN_CONDUCTIVITY,
    THERMAL_CONDUCTIVITY_BANDS,
    WATER_DENSITY,
)


# =============================================================================
# HYDRAULIC PROPERTIES (Saxton et al. 1986)
# =============================================================================

def soil_porosity(sand_percent: float, clay_percent: float) -> float:
    """Saturated water content (m3/m3)"""
    return 0.332 - 7.251e-4 * sand_percent + 0.1276 * np.log10(clay_percent)


def retention_coefficients(sand_percent: float, clay_percent: float) -> Tuple[float, float]:
    """
    Coefficients of the retention curve psi = A * theta**B (kPa).

    Returns:
        Tuple of (A, B)
    """
    sand2 = sand_percent ** 2
    pot_a = 100.0 * np.exp(
        -4.396 - 0.0715 * clay_percent - 4.880e-4 * sand2 - 4.285e-5 * sand2 * clay_percent
    )
    pot_b = -3.140 - 0.00222 * clay_percent ** 2 - 3.484e-5 * sand2 * clay_percent
    return pot_a, pot_b


def soil_water_potential(water_fraction: float, sand_percent: float, clay_percent: float) -> float:
    """Soil water potential (MPa), very negative for a dry layer"""
    if water_fraction <= 0.0:
        return DRY_SOIL_WATER_POTENTIAL
    pot_a, pot_b = retention_coefficients(sand_percent, clay_percent)
    return -0.001 * pot_a * water_fraction ** pot_b


def soil_conductivity(water_fraction: float, sand_percent: float, clay_percent: float) -> float:
    """
    Unsaturated hydraulic conductivity (m s-1).

    Monotone increasing in water fraction; floored at MIN_CONDUCTIVITY.
    """
    if water_fraction <= 0.0:
        return MIN_CONDUCTIVITY
    exponent = (
        12.012 - 7.55e-2 * sand_percent
        + (-3.895 + 3.671e-2 * sand_percent - 0.1103 * clay_percent
           + 8.7546e-4 * clay_percent ** 2) / water_fraction
    )
    return max(MIN_CONDUCTIVITY, 2.778e-6 * np.exp(exponent))


def field_capacity(
    sand_percent: float,
    clay_percent: float,
    potential_mpa: float = FIELD_CAPACITY_POTENTIAL
) -> float:
    """Water fraction at which the retention curve reaches ``potential_mpa``"""
    pot_a, pot_b = retention_coefficients(sand_percent, clay_percent)
    # -0.001 * A * theta**B = potential  =>  theta = (-1000 * potential / A)**(1/B)
    return float((-1000.0 * potential_mpa / pot_a) ** (1.0 / pot_b))


# =============================================================================
# THERMAL PROPERTIES
# =============================================================================

def volumetric_heat_capacity(
    water_fraction: float,
    ice_proportion: float,
    mineral_fraction: float,
    organic_fraction: float
) -> float:
    """Volumetric heat capacity without phase change (J m-3 K-1)"""
    return (
        HEAT_CAPACITY_MINERAL * mineral_fraction
        + HEAT_CAPACITY_ORGANIC * organic_fraction
        + HEAT_CAPACITY_WATER * water_fraction * (1.0 - ice_proportion)
        + HEAT_CAPACITY_ICE * water_fraction * ice_proportion
    )


def apparent_heat_capacity(
    temperature_k: float,
    water_fraction: float,
    ice_proportion: float,
    mineral_fraction: float,
    organic_fraction: float,
    thickness_m: float
) -> float:
    """
    Heat capacity including the latent heat of fusion while the layer lies in
    the freezing range (-1 C, 0 C].
    """
    volhc = volumetric_heat_capacity(
        water_fraction, ice_proportion, mineral_fraction, organic_fraction
    )
    temperature_c = temperature_k - FREEZE
    if -FREEZING_RANGE < temperature_c <= 0.0:
        # liquid water content, kg m-3 soil
        liquid_water = WATER_DENSITY * water_fraction * (thickness_m / 0.1)
        return volhc + LATENT_HEAT_FUSION * liquid_water / FREEZING_RANGE
    return volhc


def default_thermal_conductivities(layer_index: int) -> Tuple[float, float]:
    """Unfrozen and frozen thermal conductivity (W m-1 K-1) by depth band"""
    start = 0
    for n_band, unfrozen, frozen in THERMAL_CONDUCTIVITY_BANDS:
        if n_band == 0 or layer_index < start + n_band:
            return unfrozen, frozen
        start += n_band
    # Fall through to the deepest band
    _, unfrozen, frozen = THERMAL_CONDUCTIVITY_BANDS[-1]
    return unfrozen, frozen


def thermal_conductivity(unfrozen: float, frozen: float, ice_proportion: float) -> float:
    """Thermal conductivity interpolated on ice proportion (W m-1 K-1)"""
    return unfrozen + (frozen - unfrozen) * ice_proportion


def latent_heat_vaporisation(temperature_k: float) -> float:
    """Latent heat of vaporisation (J kg-1)"""
    return 1000.0 * (2501.0 - 2.364 * (temperature_k - FREEZE))

"""
Snowpack accumulation and melt at the top of the soil column.
"""

import logging

from spasoil.core.types import TimeStepContext
from spasoil.physics.state import SoilColumnState

logger = logging.getLogger(__name__)

# Air temperature above which the pack melts (C)
MELT_THRESHOLD_C = 1.0
# Fraction of the pack released per step while melting
MELT_FRACTION = 0.1
# Packs smaller than this are released as water (mm)
MIN_SNOW_MM = 0.01


def snow_covered(context: TimeStepContext) -> bool:
    """Precipitation falls as snow and canopy interception is suspended"""
    return context.air_temperature_c <= 0.0


def update_snow(state: SoilColumnState, context: TimeStepContext) -> float:
    """
    Accumulate snowfall and release melt water to the soil surface.

    Returns:
        Water released to the surface this step (mm)
    """
    snow = state.snow
    released = 0.0

    if context.precipitation_mm > 0.0 and snow_covered(context):
        snow.water_mm += context.precipitation_mm

    if snow.water_mm > 0.0 and context.air_temperature_c > MELT_THRESHOLD_C:
        melt = MELT_FRACTION * snow.water_mm
        snow.water_mm -= melt
        released += melt

    if 0.0 < snow.water_mm < MIN_SNOW_MM:
        released += snow.water_mm
        snow.water_mm = 0.0

    snow.surface_water_mm += released
    if released > 0.0:
        logger.debug(f"Snowpack released {released:.3f} mm, SWE {snow.water_mm:.2f} mm")
    return released

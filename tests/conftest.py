"""Shared fixtures for the soil column tests."""
import pytest

from spasoil.core.config import LayerConfig, SoilConfig, SpaConfig, set_config
from spasoil.core.types import TimeStepContext
from spasoil.physics.state import SoilColumnState


@pytest.fixture(autouse=True)
def reset_global_config():
    """Keep the configuration singleton out of test interactions"""
    set_config(None)
    yield
    set_config(None)


@pytest.fixture
def small_config():
    """Four-layer loam column with the default vegetation"""
    layers = [LayerConfig(thickness_m=t) for t in (0.05, 0.1, 0.15, 0.2)]
    return SpaConfig(soil=SoilConfig(layers=layers))


@pytest.fixture
def state(small_config):
    """Column initialised at field capacity, 10 C throughout"""
    return SoilColumnState.from_config(small_config)


@pytest.fixture
def make_context():
    """Factory for a mild summer hour, with overrides"""
    def _make(**overrides):
        values = dict(
            air_temperature_k=288.15,
            vpd_kpa=1.0,
            wind_speed_m_s=2.0,
            soil_radiation_w_m2=200.0,
            precipitation_mm=0.0,
        )
        values.update(overrides)
        return TimeStepContext(**values)
    return _make

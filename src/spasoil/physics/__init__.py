"""Physics components of the soil column engine."""
from spasoil.physics.state import (
    SoilColumnState,
    SoilLayer,
    WettingZone,
    SnowStore,
    CanopyStore,
)
from spasoil.physics.heat_diffusion import HeatDiffusionSolver
from spasoil.physics.surface_energy import SurfaceEnergyBalance
from spasoil.physics.canopy import CanopyInterceptionIntegrator, wetted_surface_evaporation
from spasoil.physics.drainage import GravitationalDrainageIntegrator
from spasoil.physics.freeze_thaw import FreezeThawTracker
from spasoil.physics.wetting import SurfaceWettingModel
from spasoil.physics.water_balance import WaterFluxPhase, infiltrate, reconcile_water_heat
from spasoil.physics.orchestrator import DailyStepOrchestrator

__all__ = [
    # State
    "SoilColumnState",
    "SoilLayer",
    "WettingZone",
    "SnowStore",
    "CanopyStore",
    # Components
    "HeatDiffusionSolver",
    "SurfaceEnergyBalance",
    "CanopyInterceptionIntegrator",
    "wetted_surface_evaporation",
    "GravitationalDrainageIntegrator",
    "FreezeThawTracker",
    "SurfaceWettingModel",
    "WaterFluxPhase",
    "infiltrate",
    "reconcile_water_heat",
    # Driver
    "DailyStepOrchestrator",
]

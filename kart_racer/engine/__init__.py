"""
Driving-AI core for the kart racer.

The package is split into racing-line synthesis, the per-vehicle driving
controller (with its corner and avoidance helpers), and the race director
that owns laps, standings and pacing. Headless stand-ins for the vehicle
and trigger collaborators live in ``harness``.
"""

from .controller import ControllerSettings, DrivingController  # noqa: F401
from .data_models import (  # noqa: F401
    Checkpoint,
    ControlCommand,
    DriveMode,
    DriverProfile,
    DriverRNG,
    NitroState,
    PeerSnapshot,
    RaceCarState,
    RacePhase,
    StandingEntry,
    VehicleState,
)
from .harness import GateTriggers, HeadlessRace, KinematicKart  # noqa: F401
from .race_director import RaceDirector, RaceSettings  # noqa: F401
from .racing_line import RacingLine, RacingLineSettings  # noqa: F401
from .registry import VehicleRegistry  # noqa: F401
from .scheduler import Scheduler, SimulationClock  # noqa: F401
from .telemetry import TelemetryCarFrame, TelemetryCollector, TelemetryFrame  # noqa: F401
from .track_registry import TrackDefinition, TrackDefinitionError, TrackRegistry  # noqa: F401

__all__ = [
    "ControllerSettings",
    "DrivingController",
    "Checkpoint",
    "ControlCommand",
    "DriveMode",
    "DriverProfile",
    "DriverRNG",
    "NitroState",
    "PeerSnapshot",
    "RaceCarState",
    "RacePhase",
    "StandingEntry",
    "VehicleState",
    "GateTriggers",
    "HeadlessRace",
    "KinematicKart",
    "RaceDirector",
    "RaceSettings",
    "RacingLine",
    "RacingLineSettings",
    "VehicleRegistry",
    "Scheduler",
    "SimulationClock",
    "TelemetryCarFrame",
    "TelemetryCollector",
    "TelemetryFrame",
    "TrackDefinition",
    "TrackDefinitionError",
    "TrackRegistry",
]

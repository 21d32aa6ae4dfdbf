from __future__ import annotations

import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Protocol, Tuple

import numpy as np


class DriveMode(Enum):
    """Mutually exclusive overtaking posture of a driver."""

    NORMAL = "normal"
    OVERTAKING = "overtaking"
    DEFENDING = "defending"


class NitroState(Enum):
    IDLE = "idle"
    FORCED_START = "forced_start"
    ACTIVE = "active"
    SLOWDOWN = "slowdown"


class RacePhase(Enum):
    IDLE = "idle"
    COUNTDOWN = "countdown"
    RACING = "racing"
    FINISHED = "finished"


@dataclass
class VehicleState:
    """Pose and velocity reported by the vehicle collaborator for one tick."""

    position: np.ndarray
    forward: np.ndarray
    velocity: np.ndarray
    max_speed: float
    nitro_amount: float = 100.0
    nitro_active: bool = False
    nitro_cooling_down: bool = False

    @property
    def speed(self) -> float:
        return float(np.linalg.norm(self.velocity))

    @property
    def normalized_speed(self) -> float:
        if self.max_speed <= 0.0:
            return 0.0
        return self.speed / self.max_speed


@dataclass(frozen=True)
class ControlCommand:
    steer: float = 0.0
    throttle: float = 0.0
    brake: float = 0.0
    handbrake: float = 0.0
    nitro: bool = False
    acceleration_scale: float = 1.0

    @classmethod
    def hold(cls) -> "ControlCommand":
        """Fail-safe command: full handbrake, no throttle."""
        return cls(steer=0.0, throttle=0.0, brake=0.0, handbrake=1.0, nitro=False)


@dataclass(frozen=True)
class DriverProfile:
    skill_level: float = 0.75
    aggressiveness: float = 0.6

    def __post_init__(self) -> None:
        for label, value in (("skill_level", self.skill_level), ("aggressiveness", self.aggressiveness)):
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{label} must be within [0, 1], got {value}")


@dataclass
class DriverRNG:
    """Seeded random streams for one driver, so a race replays identically."""

    seed: int

    personality: Optional[random.Random] = field(init=False, default=None)
    decision: Optional[random.Random] = field(init=False, default=None)
    noise_seed: float = field(init=False, default=0.0)

    def __post_init__(self) -> None:
        self.personality = random.Random(self.seed * 3 + 1)
        self.decision = random.Random(self.seed * 3 + 2)
        self.noise_seed = random.Random(self.seed * 3 + 3).uniform(0.0, 1000.0)


@dataclass(frozen=True, eq=False)
class PeerSnapshot:
    """Frozen view of one vehicle as of the end of the previous frame."""

    vehicle_id: str
    position: np.ndarray
    forward: np.ndarray
    velocity: np.ndarray
    race_progress: float = 0.0
    active: bool = True

    @property
    def speed(self) -> float:
        return float(np.linalg.norm(self.velocity))


@dataclass
class RaceCarState:
    """Lap and checkpoint bookkeeping for one entrant."""

    car_id: str
    name: str
    is_ai: bool = True
    lap: int = 1
    last_checkpoint: int = -1
    finished: bool = False
    finish_time: Optional[float] = None
    finish_position: Optional[int] = None
    rank: int = 0

    def reset(self) -> None:
        self.lap = 1
        self.last_checkpoint = -1
        self.finished = False
        self.finish_time = None
        self.finish_position = None
        self.rank = 0


@dataclass(frozen=True)
class StandingEntry:
    name: str
    rank: int
    progress: float
    car_id: str = ""
    finished: bool = False


@dataclass(frozen=True, eq=False)
class Checkpoint:
    """Ordered checkpoint gate; its pose doubles as the respawn point after a fall."""

    index: int
    position: np.ndarray
    forward: np.ndarray
    label: str = ""


class VehicleStateProvider(Protocol):
    def read_state(self) -> VehicleState:
        ...


class ControlSink(Protocol):
    def apply_controls(self, command: ControlCommand) -> None:
        ...


class Teleportable(Protocol):
    def teleport(self, position: np.ndarray, forward: np.ndarray) -> None:
        ...


GridSlot = Tuple[np.ndarray, np.ndarray]

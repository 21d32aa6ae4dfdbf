from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Sequence, Tuple


@dataclass
class TelemetryCarFrame:
    car_id: str
    name: str
    position: Tuple[float, float, float]
    progress: float
    lap: int
    rank: int
    finished: bool
    steer: float
    throttle: float
    brake: float
    handbrake: float
    nitro: bool
    drive_mode: str
    nitro_state: str
    rubber_banding: float = 1.0


@dataclass
class TelemetryFrame:
    tick: int
    time: float
    phase: str
    cars: List[TelemetryCarFrame] = field(default_factory=list)


class TelemetryCollector:
    def __init__(self) -> None:
        self.frames: List[TelemetryFrame] = []

    def record_frame(self, frame: TelemetryFrame) -> None:
        self.frames.append(frame)

    def export(self) -> Sequence[TelemetryFrame]:
        return tuple(self.frames)

    def to_dicts(self) -> List[Dict[str, Any]]:
        """Plain-dict view of every frame, ready for ``json.dump``."""
        return [asdict(frame) for frame in self.frames]

    def clear(self) -> None:
        self.frames.clear()

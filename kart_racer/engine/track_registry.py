from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from .data_models import Checkpoint
from .geometry import TrackTransform, horizontal, normalized
from .racing_line import RacingLine, RacingLineSettings

logger = logging.getLogger(__name__)


class TrackDefinitionError(ValueError):
    """Raised when a track file is missing fields or holds unusable geometry."""


def _default_track_directory() -> Path:
    return Path(__file__).resolve().parents[2] / "tracks"


@dataclass(frozen=True)
class TrackDefinition:
    track_id: str
    name: str
    vertices: Tuple[Tuple[float, float, float], ...]
    width: float
    resolution: int = 400
    corner_cutting_factor: float = 0.7
    checkpoint_fractions: Tuple[float, ...] = (0.25, 0.5, 0.75)
    origin: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    yaw_degrees: float = 0.0

    @property
    def transform(self) -> TrackTransform:
        return TrackTransform(origin=np.array(self.origin, dtype=float), yaw_degrees=self.yaw_degrees)

    def build_racing_line(self, settings: Optional[RacingLineSettings] = None) -> RacingLine:
        line = RacingLine()
        if settings is None:
            line.generate(self.vertices, self.width, self.resolution, self.corner_cutting_factor)
        else:
            line.generate_from_settings(self.vertices, self.width, settings)
        return line

    def build_checkpoints(self, line: RacingLine) -> List[Checkpoint]:
        """
        Places one checkpoint per fraction along ``line``, in world space.

        The start/finish line sits at index 0 and is not a checkpoint; the
        last checkpoint must be crossed before a lap counts.
        """
        if line.is_empty:
            return []
        transform = self.transform
        checkpoints: List[Checkpoint] = []
        for ordinal, fraction in enumerate(self.checkpoint_fractions):
            index = int(round(fraction * len(line))) % len(line)
            forward = normalized(horizontal(transform.direction_to_world(line.tangent_at(index))))
            checkpoints.append(
                Checkpoint(
                    index=index,
                    position=transform.to_world(line.point_at(index)),
                    forward=forward,
                    label=f"CP{ordinal + 1}",
                )
            )
        return checkpoints


def _parse_vertices(raw, track_id: str) -> Tuple[Tuple[float, float, float], ...]:
    vertices = []
    for item in raw:
        if len(item) == 2:
            vertices.append((float(item[0]), 0.0, float(item[1])))
        elif len(item) == 3:
            vertices.append((float(item[0]), float(item[1]), float(item[2])))
        else:
            raise TrackDefinitionError(f"Track '{track_id}': vertices must be [x, z] or [x, y, z], got {item!r}")
    return tuple(vertices)


def load_track_file(path: Path) -> TrackDefinition:
    path = Path(path)
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except ValueError as exc:
        raise TrackDefinitionError(f"Track file {path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise TrackDefinitionError(f"Track file {path} must hold a JSON object, got {type(data).__name__}")

    track_id = str(data.get("id", path.stem)).lower()
    try:
        vertices = _parse_vertices(data["vertices"], track_id)
        width = float(data["width"])
    except (KeyError, TypeError) as exc:
        raise TrackDefinitionError(f"Track file {path} is missing required field {exc}") from exc

    if len(vertices) < 3:
        raise TrackDefinitionError(f"Track '{track_id}' needs at least 3 vertices, got {len(vertices)}")
    if width <= 0.0:
        raise TrackDefinitionError(f"Track '{track_id}' width must be positive, got {width}")

    fractions = tuple(float(value) for value in data.get("checkpoints", (0.25, 0.5, 0.75)))
    if not fractions or any(not 0.0 < value < 1.0 for value in fractions) or list(fractions) != sorted(fractions):
        raise TrackDefinitionError(f"Track '{track_id}' checkpoints must be increasing fractions in (0, 1)")

    return TrackDefinition(
        track_id=track_id,
        name=str(data.get("name", path.stem)),
        vertices=vertices,
        width=width,
        resolution=int(data.get("resolution", 400)),
        corner_cutting_factor=float(data.get("corner_cutting_factor", 0.7)),
        checkpoint_fractions=fractions,
        origin=tuple(float(v) for v in data.get("origin", (0.0, 0.0, 0.0))),
        yaw_degrees=float(data.get("yaw_degrees", 0.0)),
    )


class TrackRegistry:
    """Loads and caches track definitions from JSON files."""

    def __init__(self, track_directory: Optional[Path] = None) -> None:
        self.track_directory = Path(track_directory) if track_directory else _default_track_directory()
        self._cache: Dict[str, TrackDefinition] = {}
        self._paths: Dict[str, Path] = {}
        self._index_directory()

    def _index_directory(self) -> None:
        if not self.track_directory.exists():
            logger.warning("Track directory %s does not exist", self.track_directory)
            return
        for track_file in sorted(self.track_directory.glob("*.json")):
            self._paths[track_file.stem.lower().replace(" ", "_")] = track_file

    def load(self, track_id: str) -> TrackDefinition:
        key = track_id.lower()
        if key in self._cache:
            return self._cache[key]

        path = self._paths.get(key)
        if path is None:
            raise KeyError(f"Track '{track_id}' not found in {self.track_directory}")

        track = load_track_file(path)
        self._cache[key] = track
        return track

    def list_tracks(self) -> Iterable[str]:
        return list(self._paths)


from __future__ import annotations

import math
from dataclasses import dataclass, field

import numpy as np

UP = np.array([0.0, 1.0, 0.0])

_EPSILON = 1e-9


def normalized(vector: np.ndarray) -> np.ndarray:
    magnitude = float(np.linalg.norm(vector))
    if magnitude < _EPSILON:
        return np.zeros(3)
    return vector / magnitude


def normalize_rows(vectors: np.ndarray) -> np.ndarray:
    """Normalizes each row, leaving zero-length rows at zero."""
    magnitudes = np.linalg.norm(vectors, axis=1, keepdims=True)
    safe = np.where(magnitudes < _EPSILON, 1.0, magnitudes)
    return np.where(magnitudes < _EPSILON, 0.0, vectors / safe)


def horizontal(vector: np.ndarray) -> np.ndarray:
    flat = np.array(vector, dtype=float)
    flat[1] = 0.0
    return flat


def right_of(direction: np.ndarray) -> np.ndarray:
    """Unit vector on the ground plane pointing to the right of ``direction``."""
    return normalized(np.cross(UP, direction))


def angle_between(a: np.ndarray, b: np.ndarray) -> float:
    """Unsigned angle in degrees; zero when either vector is degenerate."""
    a_norm = float(np.linalg.norm(a))
    b_norm = float(np.linalg.norm(b))
    if a_norm < _EPSILON or b_norm < _EPSILON:
        return 0.0
    dot = float(np.dot(a, b)) / (a_norm * b_norm)
    return math.degrees(math.acos(max(-1.0, min(1.0, dot))))


def clamp(value: float, minimum: float, maximum: float) -> float:
    return max(minimum, min(maximum, value))


def clamp01(value: float) -> float:
    return clamp(value, 0.0, 1.0)


def lerp(a: float, b: float, t: float) -> float:
    return a + (b - a) * clamp01(t)


def inverse_lerp(a: float, b: float, value: float) -> float:
    if a == b:
        return 0.0
    return clamp01((value - a) / (b - a))


def catmull_rom(p0: np.ndarray, p1: np.ndarray, p2: np.ndarray, p3: np.ndarray, t):
    """
    Evaluates a uniform Catmull-Rom segment between ``p1`` and ``p2``.

    ``t`` may be a scalar or an array; control points broadcast against it.
    """
    t = np.asarray(t, dtype=float)
    t2 = t * t
    t3 = t2 * t
    a = -0.5 * t3 + t2 - 0.5 * t
    b = 1.5 * t3 - 2.5 * t2 + 1.0
    c = -1.5 * t3 + 2.0 * t2 + 0.5 * t
    d = 0.5 * t3 - 0.5 * t2
    return a * p0 + b * p1 + c * p2 + d * p3


def _lattice_value(cell: int, seed: float) -> float:
    raw = math.sin(cell * 12.9898 + seed * 78.233) * 43758.5453
    return raw - math.floor(raw)


def smooth_noise(x: float, seed: float) -> float:
    """Continuous 1-D value noise in [0, 1]; same ``seed`` gives the same curve."""
    cell = math.floor(x)
    frac = x - cell
    fade = frac * frac * (3.0 - 2.0 * frac)
    left = _lattice_value(cell, seed)
    right = _lattice_value(cell + 1, seed)
    return left + (right - left) * fade


@dataclass(frozen=True, eq=False)
class TrackTransform:
    """Placement of the track-local frame in the world (translation plus yaw about Y)."""

    origin: np.ndarray = field(default_factory=lambda: np.zeros(3))
    yaw_degrees: float = 0.0

    def _rotation(self) -> np.ndarray:
        yaw = math.radians(self.yaw_degrees)
        cos_yaw = math.cos(yaw)
        sin_yaw = math.sin(yaw)
        return np.array(
            [
                [cos_yaw, 0.0, sin_yaw],
                [0.0, 1.0, 0.0],
                [-sin_yaw, 0.0, cos_yaw],
            ]
        )

    def to_world(self, point: np.ndarray) -> np.ndarray:
        return self._rotation() @ np.asarray(point, dtype=float) + np.asarray(self.origin, dtype=float)

    def to_local(self, point: np.ndarray) -> np.ndarray:
        relative = np.asarray(point, dtype=float) - np.asarray(self.origin, dtype=float)
        return self._rotation().T @ relative

    def direction_to_world(self, direction: np.ndarray) -> np.ndarray:
        return self._rotation() @ np.asarray(direction, dtype=float)


def local_direction(forward: np.ndarray, direction: np.ndarray) -> np.ndarray:
    """
    Expresses ``direction`` in a vehicle frame whose +Z is ``forward``.

    Returns (x=right, y=up, z=forward) components.
    """
    fwd = normalized(horizontal(forward))
    if not fwd.any():
        fwd = np.array([0.0, 0.0, 1.0])
    right = right_of(fwd)
    return np.array([float(np.dot(direction, right)), float(direction[1]), float(np.dot(direction, fwd))])

"""
Racing-line synthesis.

Turns a closed track polygon into a densified, corner-cutting, smoothed
path with a per-point recommended speed in [0.3, 1.0]. The line is built
once per track and is read-only afterwards; regenerating it notifies every
registered listener so followers can re-anchor their waypoint index.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Sequence, Tuple

import numpy as np

from kart_racer.config import settings_from_config

from .geometry import UP, catmull_rom, normalize_rows

logger = logging.getLogger(__name__)

MIN_SPEED = 0.3
MAX_SPEED = 1.0

SMOOTHING_WEIGHTS = (0.1, 0.2, 0.4, 0.2, 0.1)
FINAL_SMOOTHING_WEIGHTS = (0.25, 0.5, 0.25)
CLAMP_BLEND = 0.8
SPEED_CURVE_EXPONENT = 0.7
STRAIGHT_EPSILON = 1e-9


@dataclass(frozen=True)
class RacingLineSettings:
    resolution: int = 400
    corner_cutting_factor: float = 0.7
    max_offset_ratio: float = 0.4
    max_speed_step: float = 0.1

    @classmethod
    def from_config(cls) -> "RacingLineSettings":
        return settings_from_config(cls, "racing_line")


def densify(vertices: np.ndarray, resolution: int) -> np.ndarray:
    """
    Resamples a closed polygon to roughly ``resolution`` points.

    Each original edge receives ``resolution // len(vertices)`` samples (at
    least one, the edge's start vertex). Four or more vertices use a
    wrapping Catmull-Rom spline; fewer fall back to straight segments.
    """
    count = len(vertices)
    per_edge = max(1, resolution // count)
    t = (np.arange(per_edge, dtype=float) / per_edge)[None, :, None]

    p1 = vertices[:, None, :]
    p2 = np.roll(vertices, -1, axis=0)[:, None, :]
    if count < 4:
        dense = p1 + (p2 - p1) * t
    else:
        p0 = np.roll(vertices, 1, axis=0)[:, None, :]
        p3 = np.roll(vertices, -2, axis=0)[:, None, :]
        dense = catmull_rom(p0, p1, p2, p3, t)
    return dense.reshape(count * per_edge, 3)


def _circular_smooth(values: np.ndarray, weights: Sequence[float]) -> np.ndarray:
    half = len(weights) // 2
    result = np.zeros_like(values)
    for offset, weight in zip(range(-half, half + 1), weights):
        result += weight * np.roll(values, -offset, axis=0)
    return result


def _neighbour_directions(points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    to_prev = normalize_rows(np.roll(points, 1, axis=0) - points)
    to_next = normalize_rows(np.roll(points, -1, axis=0) - points)
    return to_prev, to_next


def _limit_speed_changes(speeds: np.ndarray, max_step: float) -> np.ndarray:
    """
    Bounds the change between neighbouring speeds (including the wrap).

    Violations are resolved by lowering the faster side, so a slow corner
    is never sped up; the result is the largest profile below ``speeds``
    whose circular steps stay within ``max_step``.
    """
    limited = np.array(speeds, dtype=float)
    count = len(limited)
    for _ in range(2):
        for idx in range(count):
            limited[idx] = min(limited[idx], limited[idx - 1] + max_step)
    for _ in range(2):
        for idx in range(count - 1, -1, -1):
            limited[idx] = min(limited[idx], limited[(idx + 1) % count] + max_step)
    return limited


class RacingLine:
    """Closed, speed-annotated path that every AI driver follows."""

    def __init__(self) -> None:
        self._points = np.empty((0, 3))
        self._speeds = np.empty(0)
        self._center_points = np.empty((0, 3))
        self._raw_speed_factors = np.empty(0)
        self._track_width = 0.0
        self._listeners: List[Callable[["RacingLine"], None]] = []

    # ------------------------------------------------------------------ #
    # Read-only views

    @property
    def points(self) -> np.ndarray:
        return self._points

    @property
    def recommended_speeds(self) -> np.ndarray:
        return self._speeds

    @property
    def center_points(self) -> np.ndarray:
        """Densified track centre points, index-aligned with :attr:`points`."""
        return self._center_points

    @property
    def raw_speed_factors(self) -> np.ndarray:
        """Angle-based speed factors recorded during the offset pass."""
        return self._raw_speed_factors

    @property
    def track_width(self) -> float:
        return self._track_width

    def __len__(self) -> int:
        return len(self._points)

    @property
    def is_empty(self) -> bool:
        return len(self._points) == 0

    def add_listener(self, callback: Callable[["RacingLine"], None]) -> None:
        """Registers ``callback`` to run after every successful regeneration."""
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[["RacingLine"], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    # ------------------------------------------------------------------ #
    # Generation

    def generate(
        self,
        track_vertices: Sequence[Sequence[float]],
        track_width: float,
        resolution: int,
        corner_cutting_factor: float = 0.7,
        *,
        max_offset_ratio: float = 0.4,
        max_speed_step: float = 0.1,
    ) -> bool:
        """
        Builds the line from the track's closed boundary polygon.

        Returns ``False`` and leaves the line untouched when fewer than three
        vertices are supplied; callers must not drive on an empty line.
        """
        if track_width <= 0.0:
            raise ValueError(f"track_width must be positive, got {track_width}")
        if resolution <= 0:
            raise ValueError(f"resolution must be positive, got {resolution}")

        vertices = np.asarray(track_vertices, dtype=float)
        if vertices.ndim != 2 or vertices.shape[0] < 3:
            logger.warning(
                "Racing line needs at least 3 track vertices, got %d; line left empty",
                0 if vertices.ndim != 2 else vertices.shape[0],
            )
            return False
        if vertices.shape[1] != 3:
            raise ValueError(f"Track vertices must be 3D points, got shape {vertices.shape}")

        centers = densify(vertices, resolution)
        max_offset = track_width * max_offset_ratio

        offset_points, raw_speeds = self._offset_pass(centers, track_width, corner_cutting_factor, max_offset)
        contained = self._smooth_within_bounds(offset_points, centers, max_offset)
        final_points = _circular_smooth(contained, FINAL_SMOOTHING_WEIGHTS)
        final_points = self._enforce_containment(final_points, centers, max_offset)
        speeds = self._derive_speeds(final_points, max_speed_step)

        self._center_points = self._freeze(centers)
        self._points = self._freeze(final_points)
        self._speeds = self._freeze(speeds)
        self._raw_speed_factors = self._freeze(raw_speeds)
        self._track_width = float(track_width)

        logger.info(
            "Generated racing line: %d points from %d vertices (width %.1f, cutting %.2f)",
            len(final_points),
            len(vertices),
            track_width,
            corner_cutting_factor,
        )
        for listener in list(self._listeners):
            listener(self)
        return True

    def generate_from_settings(
        self,
        track_vertices: Sequence[Sequence[float]],
        track_width: float,
        settings: RacingLineSettings,
    ) -> bool:
        return self.generate(
            track_vertices,
            track_width,
            settings.resolution,
            settings.corner_cutting_factor,
            max_offset_ratio=settings.max_offset_ratio,
            max_speed_step=settings.max_speed_step,
        )

    @staticmethod
    def _freeze(array: np.ndarray) -> np.ndarray:
        frozen = np.array(array, dtype=float)
        frozen.setflags(write=False)
        return frozen

    @staticmethod
    def _offset_pass(
        centers: np.ndarray,
        track_width: float,
        corner_cutting_factor: float,
        max_offset: float,
    ) -> Tuple[np.ndarray, np.ndarray]:
        to_prev, to_next = _neighbour_directions(centers)
        dots = np.clip(np.sum(to_prev * to_next, axis=1), -1.0, 1.0)
        angles = np.degrees(np.arccos(dots))

        # Negative Y cross component is a right-hand turn, positive a left-hand one.
        turn = np.cross(to_prev, to_next)[:, 1]
        turn_sign = np.where(np.abs(turn) < STRAIGHT_EPSILON, 0.0, np.sign(turn))
        tangents = normalize_rows(to_next - to_prev)
        rights = normalize_rows(np.cross(UP, tangents))

        sharpness_t = np.clip(angles / 90.0, 0.0, 1.0)
        offset_factor = 0.1 + (corner_cutting_factor * 0.5 - 0.1) * sharpness_t
        offset_distance = np.minimum(track_width * offset_factor, max_offset)
        offsets = -turn_sign[:, None] * rights * offset_distance[:, None]

        raw_speeds = MIN_SPEED + (MAX_SPEED - MIN_SPEED) * np.clip(angles / 180.0, 0.0, 1.0)
        return centers + offsets, raw_speeds

    @staticmethod
    def _smooth_within_bounds(points: np.ndarray, centers: np.ndarray, max_offset: float) -> np.ndarray:
        smoothed = _circular_smooth(points, SMOOTHING_WEIGHTS)
        center_to_point = smoothed - centers
        distances = np.linalg.norm(center_to_point, axis=1)
        outside = distances > max_offset
        safe_distances = np.where(outside, distances, 1.0)
        # Blend most of the way to the boundary target rather than snapping onto it.
        clamp_factor = np.where(outside, 1.0 + (max_offset / safe_distances - 1.0) * CLAMP_BLEND, 1.0)
        return centers + center_to_point * clamp_factor[:, None]

    @staticmethod
    def _enforce_containment(points: np.ndarray, centers: np.ndarray, max_offset: float) -> np.ndarray:
        center_to_point = points - centers
        distances = np.linalg.norm(center_to_point, axis=1)
        outside = distances > max_offset
        if not outside.any():
            return points
        scale = np.where(outside, max_offset / np.where(outside, distances, 1.0), 1.0)
        return centers + center_to_point * scale[:, None]

    @staticmethod
    def _derive_speeds(points: np.ndarray, max_speed_step: float) -> np.ndarray:
        incoming = normalize_rows(points - np.roll(points, 1, axis=0))
        outgoing = normalize_rows(np.roll(points, -1, axis=0) - points)
        # 0 where the line carries straight on, 1 for a full reversal
        dots = np.clip(np.sum(incoming * outgoing, axis=1), -1.0, 1.0)
        curvature = 1.0 - (dots + 1.0) / 2.0
        speeds = MIN_SPEED + (MAX_SPEED - MIN_SPEED) * np.power(1.0 - curvature, SPEED_CURVE_EXPONENT)
        speeds = _limit_speed_changes(speeds, max_speed_step)
        return _circular_smooth(speeds, FINAL_SMOOTHING_WEIGHTS)

    # ------------------------------------------------------------------ #
    # Queries

    def wrap_index(self, index: int) -> int:
        if self.is_empty:
            raise IndexError("Racing line is empty")
        return index % len(self._points)

    def point_at(self, index: int) -> np.ndarray:
        return self._points[self.wrap_index(index)]

    def speed_at(self, index: int) -> float:
        return float(self._speeds[self.wrap_index(index)])

    def tangent_at(self, index: int) -> np.ndarray:
        """Unit direction from point ``index`` to the next point."""
        direction = self.point_at(index + 1) - self.point_at(index)
        magnitude = float(np.linalg.norm(direction))
        if magnitude == 0.0:
            return np.zeros(3)
        return direction / magnitude

    def get_closest_point(self, position: Sequence[float]) -> Tuple[int, np.ndarray, float]:
        """Brute-force nearest line point; ``(-1, origin, 1.0)`` on an empty line."""
        if self.is_empty:
            return -1, np.zeros(3), 1.0
        deltas = self._points - np.asarray(position, dtype=float)
        index = int(np.argmin(np.einsum("ij,ij->i", deltas, deltas)))
        return index, self._points[index], float(self._speeds[index])

    def get_next_target_point(self, current_index: int, lookahead_points: int = 5) -> Tuple[np.ndarray, float]:
        if self.is_empty:
            return np.zeros(3), 1.0
        target = self.wrap_index(current_index + lookahead_points)
        return self._points[target], float(self._speeds[target])

    def path_distance(self, start_index: int, steps: int) -> float:
        """Summed segment length walking ``steps`` points forward from ``start_index``."""
        if self.is_empty or steps <= 0:
            return 0.0
        indices = (start_index + np.arange(steps + 1)) % len(self._points)
        segment = np.diff(self._points[indices], axis=0)
        return float(np.sum(np.linalg.norm(segment, axis=1)))

    def progress_at(self, position: Sequence[float]) -> Tuple[int, float]:
        """
        Returns the nearest index and lap fraction for ``position``.

        The fraction is ``(index + t) / N`` where ``t`` estimates how far the
        position is along the segment to the next point.
        """
        index, point, _ = self.get_closest_point(position)
        if index < 0:
            return -1, 0.0
        next_point = self.point_at(index + 1)
        segment_length = float(np.linalg.norm(next_point - point))
        distance_to_next = float(np.linalg.norm(np.asarray(position, dtype=float) - next_point))
        between = 0.0
        if segment_length > 0.0:
            between = min(1.0, max(0.0, 1.0 - distance_to_next / segment_length))
        return index, (index + between) / len(self._points)

from __future__ import annotations

import numpy as np

from .geometry import clamp01, lerp, normalized
from .racing_line import RacingLine

INITIAL_DETECTION_RATIO = 0.8
DISTANCE_WEIGHT_SPAN = 5.0
BRAKING_REACH = 2.5


def _curvature(p1: np.ndarray, p2: np.ndarray, p3: np.ndarray) -> float:
    """0 for a straight continuation, 1 for a full reversal."""
    v1 = normalized(p2 - p1)
    v2 = normalized(p3 - p2)
    return 1.0 - (float(np.dot(v1, v2)) + 1.0) / 2.0


def detect_upcoming_corners(line: RacingLine, index: int, settings, skill_level: float) -> float:
    """
    Distance-weighted sharpness of the worst corner ahead, in [0, 1].

    ``settings`` supplies ``corner_detection_lookahead``,
    ``corner_detection_threshold`` and ``braking_distance``. Sharp corners
    close to ``index`` dominate; less skilled drivers overestimate them.
    """
    if line.is_empty or index < 0:
        return 0.0

    braking_distance = settings.braking_distance
    detection_threshold = settings.corner_detection_threshold * INITIAL_DETECTION_RATIO
    max_weighted = 0.0
    distance_to_corner = float("inf")

    for step in range(1, settings.corner_detection_lookahead + 1):
        curvature = _curvature(line.point_at(index), line.point_at(index + step), line.point_at(index + step * 2))
        if curvature <= detection_threshold:
            continue
        distance = line.path_distance(index, step)
        weight = clamp01(1.0 - distance / (braking_distance * DISTANCE_WEIGHT_SPAN))
        weighted = curvature * weight
        if weighted > max_weighted:
            max_weighted = weighted
            distance_to_corner = distance

    if max_weighted <= 0.0:
        return 0.0
    proximity = clamp01(braking_distance * BRAKING_REACH / max(0.1, distance_to_corner))
    return clamp01(max_weighted * proximity * lerp(1.5, 1.0, skill_level))


def lookahead_corner_factor(line: RacingLine, index: int, lookahead_points: int, multiplier: float) -> float:
    """Single-window curvature ``round(lookahead * multiplier)`` points ahead; gates nitro."""
    if line.is_empty or index < 0:
        return 0.0
    span = int(round(lookahead_points * multiplier))
    return clamp01(_curvature(line.point_at(index), line.point_at(index + span), line.point_at(index + span * 2)))

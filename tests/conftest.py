import numpy as np
import pytest

from kart_racer.engine import RacingLine

# 400 x 120 rectangle sampled every 20 units, starting halfway along the
# bottom straight and heading +x. Laps run anticlockwise seen from above,
# so every corner is a left-hander and the infield lies toward +z.
RECT_LENGTH = 400.0
RECT_DEPTH = 120.0
RECT_SPACING = 20.0
RECT_RESOLUTION = 1040  # 20 samples per edge, one unit apart


def rectangle_vertices(length: float = RECT_LENGTH, depth: float = RECT_DEPTH, spacing: float = RECT_SPACING):
    corners = [(0.0, 0.0), (length, 0.0), (length, depth), (0.0, depth)]
    outline = []
    for start, end in zip(corners, corners[1:] + corners[:1]):
        steps = int(round(max(abs(end[0] - start[0]), abs(end[1] - start[1])) / spacing))
        for step in range(steps):
            t = step / steps
            outline.append((start[0] + (end[0] - start[0]) * t, 0.0, start[1] + (end[1] - start[1]) * t))
    half_straight = int(round(length / 2.0 / spacing))
    return outline[half_straight:] + outline[:half_straight]


@pytest.fixture
def rectangle_line():
    line = RacingLine()
    assert line.generate(rectangle_vertices(), 12.0, RECT_RESOLUTION, 0.7)
    return line


@pytest.fixture
def empty_line():
    return RacingLine()


def heading(vector) -> np.ndarray:
    direction = np.asarray(vector, dtype=float)
    return direction / np.linalg.norm(direction)

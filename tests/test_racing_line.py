import math
import random

import numpy as np
import pytest

from kart_racer.engine import RacingLine, RacingLineSettings, TrackRegistry
from kart_racer.engine.racing_line import densify


def _square(size: float = 100.0):
    half = size / 2.0
    return [(-half, 0.0, -half), (half, 0.0, -half), (half, 0.0, half), (-half, 0.0, half)]


def _diamond(radius: float = 100.0):
    return [(radius, 0.0, 0.0), (0.0, 0.0, radius), (-radius, 0.0, 0.0), (0.0, 0.0, -radius)]


def _random_convex(rng: random.Random, count: int, radius: float):
    angles = sorted(rng.uniform(0.0, 2.0 * math.pi) for _ in range(count))
    return [(math.cos(a) * radius * rng.uniform(0.9, 1.1), 0.0, math.sin(a) * radius * rng.uniform(0.9, 1.1)) for a in angles]


def _random_star(rng: random.Random, count: int, radius: float):
    points = []
    for idx in range(count):
        angle = 2.0 * math.pi * idx / count
        reach = radius if idx % 2 == 0 else radius * rng.uniform(0.35, 0.6)
        points.append((math.cos(angle) * reach, rng.uniform(-2.0, 2.0), math.sin(angle) * reach))
    return points


def _generated(vertices, width=12.0, resolution=400, cutting=0.7) -> RacingLine:
    line = RacingLine()
    assert line.generate(vertices, width, resolution, cutting)
    return line


def test_generate_produces_parallel_closed_sequences():
    line = _generated(_square(), resolution=400)
    assert len(line) == 400
    assert len(line.points) == len(line.recommended_speeds) == len(line.center_points) == 400
    assert not line.is_empty


def test_point_count_follows_interpolation_granularity():
    line = _generated(_square(), resolution=401)
    # 401 // 4 samples per edge
    assert len(line) == 400

    sparse = _generated(_square(), resolution=2)
    assert len(sparse) == 4


def test_triangle_uses_linear_interpolation():
    vertices = [(0.0, 0.0, 0.0), (90.0, 0.0, 0.0), (45.0, 0.0, 80.0)]
    dense = densify(np.asarray(vertices, dtype=float), 99)
    assert dense.shape == (99, 3)
    # every sample of the first edge lies on the straight segment between its vertices
    assert np.allclose(dense[:33, 2], 0.0)
    assert np.all(np.diff(dense[:33, 0]) > 0.0)

    line = _generated(vertices, resolution=99)
    assert len(line) == 99


def test_catmull_rom_passes_through_original_vertices():
    vertices = np.asarray(_square(), dtype=float)
    dense = densify(vertices, 40)
    assert np.allclose(dense[::10], vertices)


def test_index_arithmetic_wraps_in_both_directions():
    line = _generated(_square(), resolution=400)
    count = len(line)
    assert np.allclose(line.point_at(-1), line.points[count - 1])
    assert np.allclose(line.point_at(count), line.points[0])
    assert np.allclose(line.point_at(-count * 3 + 7), line.points[7])
    assert line.speed_at(count + 12) == pytest.approx(line.recommended_speeds[12])

    point, speed = line.get_next_target_point(count - 5, 10)
    assert np.allclose(point, line.points[5])
    assert speed == pytest.approx(line.recommended_speeds[5])

    point, _ = line.get_next_target_point(3, -10)
    assert np.allclose(point, line.points[count - 7])


def test_degenerate_polygon_leaves_line_empty():
    line = RacingLine()
    assert line.generate([(0.0, 0.0, 0.0), (10.0, 0.0, 0.0)], 10.0, 100) is False
    assert line.is_empty
    assert len(line) == 0

    index, point, speed = line.get_closest_point((1.0, 2.0, 3.0))
    assert index == -1
    assert np.allclose(point, 0.0)
    assert speed == 1.0

    point, speed = line.get_next_target_point(4, 5)
    assert np.allclose(point, 0.0)
    assert speed == 1.0


def test_failed_regeneration_keeps_previous_line():
    line = _generated(_square())
    before = line.points.copy()
    assert line.generate([], 10.0, 100) is False
    assert np.array_equal(line.points, before)


def test_invalid_parameters_raise():
    line = RacingLine()
    with pytest.raises(ValueError):
        line.generate(_square(), 0.0, 100)
    with pytest.raises(ValueError):
        line.generate(_square(), 10.0, 0)


def test_generated_arrays_are_read_only():
    line = _generated(_square())
    with pytest.raises(ValueError):
        line.points[0, 0] = 5.0
    with pytest.raises(ValueError):
        line.recommended_speeds[0] = 0.5


@pytest.mark.parametrize("seed", range(8))
def test_line_stays_within_forty_percent_of_width(seed):
    rng = random.Random(seed)
    width = rng.uniform(6.0, 20.0)
    if seed % 2 == 0:
        vertices = _random_convex(rng, rng.randint(3, 14), rng.uniform(60.0, 200.0))
    else:
        vertices = _random_star(rng, 2 * rng.randint(3, 7), rng.uniform(80.0, 200.0))
    line = _generated(vertices, width=width, resolution=rng.randint(60, 500), cutting=rng.uniform(0.0, 1.0))

    distances = np.linalg.norm(line.points - line.center_points, axis=1)
    assert np.all(distances <= width * 0.4 + 1e-6)


@pytest.mark.parametrize("seed", range(8))
def test_speed_profile_is_bounded_and_smooth(seed):
    rng = random.Random(100 + seed)
    vertices = _random_star(rng, 2 * rng.randint(3, 8), rng.uniform(50.0, 150.0))
    line = _generated(vertices, width=rng.uniform(8.0, 16.0), resolution=rng.randint(80, 600))

    speeds = line.recommended_speeds
    assert np.all(speeds >= 0.3 - 1e-9)
    assert np.all(speeds <= 1.0 + 1e-9)
    steps = np.abs(np.roll(speeds, -1) - speeds)
    assert np.all(steps <= 0.1 + 1e-9)


def test_corners_are_cut_toward_the_inside():
    line = _generated(_diamond(100.0), width=16.0, resolution=400)
    center_radius = np.linalg.norm(line.center_points, axis=1)
    line_radius = np.linalg.norm(line.points, axis=1)
    assert line_radius.mean() < center_radius.mean()
    # the apex of each corner moves toward the middle of the track
    for corner in range(0, 400, 100):
        assert line_radius[corner] < center_radius[corner]


def test_corners_are_slower_than_straights(rectangle_line):
    speeds = rectangle_line.recommended_speeds
    # index 60 is mid-straight, index 200 the first corner
    assert speeds[60] == pytest.approx(1.0)
    assert np.allclose(speeds[40:80], 1.0)
    assert speeds[190:211].min() < speeds[60] - 5e-5
    assert np.allclose(rectangle_line.points[40:80], rectangle_line.center_points[40:80])


def test_bundled_oval_is_fastest_where_it_is_straightest():
    line = TrackRegistry().load("oval").build_racing_line()
    speeds = line.recommended_speeds
    order = np.argsort(line.raw_speed_factors)
    sharpest, straightest = order[:20], order[-20:]
    assert speeds[straightest].mean() > speeds[sharpest].mean()
    assert speeds.max() > 0.9
    assert speeds.min() > 0.3


def test_raw_speed_factors_follow_turn_angle():
    line = _generated(_square(), resolution=400)
    raw = line.raw_speed_factors
    assert raw.shape == (400,)
    assert np.all((raw >= 0.3) & (raw <= 1.0))


def test_get_closest_point_finds_nearest_index():
    line = _generated(_square(), resolution=400)
    target = 137
    query = line.points[target] + np.array([0.0, 0.5, 0.0])
    index, point, speed = line.get_closest_point(query)
    assert index == target
    assert np.allclose(point, line.points[target])
    assert speed == pytest.approx(line.recommended_speeds[target])


def test_progress_is_fraction_of_lap():
    line = _generated(_square(), resolution=400)
    index, progress = line.progress_at(line.points[100])
    assert index == 100
    assert progress == pytest.approx(100 / 400)

    midway = (line.points[100] + line.points[101]) / 2.0
    index, progress = line.progress_at(midway)
    assert index in (100, 101)
    assert 100 / 400 <= progress <= 102 / 400


def test_regeneration_notifies_listeners():
    line = RacingLine()
    calls = []
    line.add_listener(lambda regenerated: calls.append(len(regenerated)))
    line.generate(_square(), 10.0, 200)
    line.generate(_square(), 10.0, 400)
    assert calls == [200, 400]

    line.generate([(0.0, 0.0, 0.0)], 10.0, 400)
    assert calls == [200, 400]


def test_removed_listener_is_not_called():
    line = RacingLine()
    calls = []

    def listener(regenerated):
        calls.append(len(regenerated))

    line.add_listener(listener)
    line.generate(_square(), 10.0, 200)
    line.remove_listener(listener)
    line.remove_listener(listener)
    line.generate(_square(), 10.0, 400)
    assert calls == [200]


def test_generate_from_settings_uses_every_field():
    settings = RacingLineSettings(resolution=120, corner_cutting_factor=0.2, max_offset_ratio=0.1, max_speed_step=0.05)
    line = RacingLine()
    assert line.generate_from_settings(_square(), 20.0, settings)
    assert len(line) == 120
    distances = np.linalg.norm(line.points - line.center_points, axis=1)
    assert np.all(distances <= 20.0 * 0.1 + 1e-6)
    steps = np.abs(np.roll(line.recommended_speeds, -1) - line.recommended_speeds)
    assert np.all(steps <= 0.05 + 1e-9)

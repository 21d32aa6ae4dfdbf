import json

import numpy as np
import pytest

from kart_racer.engine import RacingLineSettings, TrackDefinitionError, TrackRegistry
from kart_racer.engine.track_registry import load_track_file


def _write_track(directory, name, **payload):
    path = directory / f"{name}.json"
    path.write_text(json.dumps(payload))
    return path


def _triangle():
    return [[0.0, 0.0], [80.0, 0.0], [40.0, 60.0]]


def test_bundled_tracks_are_listed_and_loadable():
    registry = TrackRegistry()
    assert {"oval", "harbour"} <= set(registry.list_tracks())

    oval = registry.load("OVAL")
    assert oval.track_id == "oval"
    assert oval.name == "Sunset Oval"
    assert len(oval.vertices) == 12
    assert oval.width == pytest.approx(16.0)
    assert registry.load("oval") is oval

    harbour = registry.load("harbour")
    assert len(harbour.checkpoint_fractions) == 4
    assert any(vertex[1] != 0.0 for vertex in harbour.vertices)


def test_unknown_track_raises_key_error():
    with pytest.raises(KeyError):
        TrackRegistry().load("moon_base")


def test_missing_directory_lists_nothing(tmp_path):
    assert TrackRegistry(tmp_path / "absent").list_tracks() == []


def test_track_builds_line_and_checkpoints():
    oval = TrackRegistry().load("oval")
    line = oval.build_racing_line()
    # 400 // 12 samples on each of the 12 edges
    assert len(line) == 396

    checkpoints = oval.build_checkpoints(line)
    assert [checkpoint.index for checkpoint in checkpoints] == [99, 198, 297]
    assert [checkpoint.label for checkpoint in checkpoints] == ["CP1", "CP2", "CP3"]
    for checkpoint in checkpoints:
        assert np.allclose(checkpoint.position, line.point_at(checkpoint.index))
        assert np.linalg.norm(checkpoint.forward) == pytest.approx(1.0)
        assert checkpoint.forward[1] == 0.0


def test_settings_override_track_resolution():
    oval = TrackRegistry().load("oval")
    line = oval.build_racing_line(RacingLineSettings(resolution=120))
    assert len(line) == 120


def test_checkpoints_follow_track_placement(tmp_path):
    _write_track(
        tmp_path,
        "shifted",
        vertices=_triangle(),
        width=10.0,
        resolution=90,
        checkpoints=[0.5],
        origin=[100.0, 5.0, 0.0],
        yaw_degrees=90.0,
    )
    track = TrackRegistry(tmp_path).load("shifted")
    line = track.build_racing_line()
    (checkpoint,) = track.build_checkpoints(line)
    local = line.point_at(checkpoint.index)
    assert np.allclose(checkpoint.position, track.transform.to_world(local))
    assert not np.allclose(checkpoint.position, local)


def test_three_component_vertices_keep_height(tmp_path):
    path = _write_track(tmp_path, "hill", vertices=[[0, 0, 0], [50, 4, 0], [25, 8, 40]], width=8)
    track = load_track_file(path)
    assert track.vertices[1] == (50.0, 4.0, 0.0)
    assert track.track_id == "hill"


@pytest.mark.parametrize(
    "payload",
    [
        {"width": 10.0},
        {"vertices": _triangle()},
        {"vertices": _triangle()[:2], "width": 10.0},
        {"vertices": _triangle(), "width": 0.0},
        {"vertices": [[0.0], [1.0], [2.0]], "width": 10.0},
        {"vertices": _triangle(), "width": 10.0, "checkpoints": [0.6, 0.3]},
        {"vertices": _triangle(), "width": 10.0, "checkpoints": [0.0, 0.5]},
        {"vertices": _triangle(), "width": 10.0, "checkpoints": []},
    ],
)
def test_malformed_track_files_are_rejected(tmp_path, payload):
    path = _write_track(tmp_path, "broken", **payload)
    with pytest.raises(TrackDefinitionError):
        load_track_file(path)


def test_invalid_json_is_rejected(tmp_path):
    path = tmp_path / "garbled.json"
    path.write_text("{not json")
    with pytest.raises(TrackDefinitionError):
        load_track_file(path)
    # still a ValueError for callers that only know about that
    with pytest.raises(ValueError):
        load_track_file(path)


@pytest.mark.parametrize("text", ["[]", "42", '"oval"', "null"])
def test_non_object_json_is_rejected(tmp_path, text):
    path = tmp_path / "listy.json"
    path.write_text(text)
    with pytest.raises(TrackDefinitionError):
        load_track_file(path)

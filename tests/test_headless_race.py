import numpy as np
import pytest

from kart_racer.engine import (
    ControlCommand,
    GateTriggers,
    HeadlessRace,
    KinematicKart,
    RaceDirector,
    RacePhase,
    RaceSettings,
    TelemetryCollector,
    TrackRegistry,
)


def _track_race(track_id="oval", total_laps=1, num_ai=3):
    track = TrackRegistry().load(track_id)
    line = track.build_racing_line()
    checkpoints = track.build_checkpoints(line)
    telemetry = TelemetryCollector()
    director = RaceDirector(
        line,
        checkpoints,
        RaceSettings(total_laps=total_laps, num_ai_racers=num_ai),
        track_transform=track.transform,
        telemetry=telemetry,
        rng_seed=11,
    )
    race = HeadlessRace(director, GateTriggers(director, line, checkpoints, track.transform))
    director.spawn_ai_racers(race.kart_factory)
    return director, race, telemetry


def test_ai_field_drives_around_the_oval():
    director, race, telemetry = _track_race()
    grid = {car_id: kart.position.copy() for car_id, kart in race.karts.items()}

    standings = race.run(dt=1.0 / 30.0, max_time=30.0)

    assert director.phase in (RacePhase.RACING, RacePhase.FINISHED)
    assert sorted(entry.rank for entry in standings) == [1, 2, 3]
    for car_id, kart in race.karts.items():
        assert np.linalg.norm(kart.position - grid[car_id]) > 20.0
    assert any(state.last_checkpoint >= 0 or state.lap > 1 for state in director.cars.values())
    assert len(telemetry.frames) == director.tick_index


def test_karts_hold_on_the_grid_during_countdown():
    director, race, _ = _track_race()
    grid = {car_id: kart.position.copy() for car_id, kart in race.karts.items()}
    director.start()
    for _ in range(60):
        race.step(1.0 / 30.0)
    assert director.phase is RacePhase.COUNTDOWN
    for car_id, kart in race.karts.items():
        assert np.allclose(kart.position, grid[car_id])


def test_identical_seeds_replay_identically():
    finals = []
    for _ in range(2):
        director, race, _ = _track_race()
        race.run(dt=1.0 / 30.0, max_time=8.0)
        finals.append({car_id: kart.position.copy() for car_id, kart in race.karts.items()})
    for car_id in finals[0]:
        assert np.allclose(finals[0][car_id], finals[1][car_id])


def test_reset_clears_triggers_and_grid():
    director, race, _ = _track_race()
    race.run(dt=1.0 / 30.0, max_time=6.0)
    race.reset()
    assert director.phase is RacePhase.IDLE
    slots = director.grid_slots(3)
    for (position, _), kart in zip(slots, race.karts.values()):
        assert np.allclose(kart.position, position)


def test_handbrake_slows_a_kart_without_pinning_it():
    held = KinematicKart((0.0, 0.0, 0.0), (1.0, 0.0, 0.0))
    free = KinematicKart((0.0, 0.0, 0.0), (1.0, 0.0, 0.0))
    held.apply_controls(ControlCommand(throttle=0.3, handbrake=1.0))
    free.apply_controls(ControlCommand(throttle=0.3))
    for _ in range(300):
        held.step(1.0 / 30.0)
        free.step(1.0 / 30.0)
    assert 1.0 < held.speed < free.speed


@pytest.mark.parametrize("track_id", ["oval", "harbour"])
def test_ai_field_finishes_a_lap_on_every_bundled_track(track_id):
    director, race, _ = _track_race(track_id)
    standings = race.run(dt=1.0 / 30.0, max_time=240.0)

    assert director.phase is RacePhase.FINISHED
    assert all(state.finished for state in director.cars.values())
    assert sorted(director.finish_order) == sorted(race.karts)
    assert [entry.rank for entry in standings] == [1, 2, 3]

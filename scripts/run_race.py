"""
Runs a headless AI race on one of the bundled tracks.

Usage:
    python scripts/run_race.py --track oval --ai 4 --laps 2 --seed 7
    python scripts/run_race.py --track harbour --dump-json telemetry.json --log-level DEBUG
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import os
import sys

# Ensure repo root is on sys.path when script is executed from anywhere
REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if REPO_ROOT not in sys.path:
    sys.path.append(REPO_ROOT)

from kart_racer.engine import (  # noqa: E402
    ControllerSettings,
    GateTriggers,
    HeadlessRace,
    RaceDirector,
    RaceSettings,
    RacingLineSettings,
    TelemetryCollector,
    TrackRegistry,
)


def main() -> None:
    parser = argparse.ArgumentParser(description="Run a headless kart race with AI drivers.")
    parser.add_argument("--track", default="oval", help="Track id from the tracks/ directory.")
    parser.add_argument("--ai", type=int, default=None, help="Number of AI racers (defaults to config).")
    parser.add_argument("--laps", type=int, default=None, help="Number of laps (defaults to config).")
    parser.add_argument("--seed", type=int, default=42, help="Random seed for driver personalities.")
    parser.add_argument("--dt", type=float, default=1.0 / 30.0, help="Simulation step in seconds.")
    parser.add_argument("--max-time", type=float, default=900.0, help="Give up after this many simulated seconds.")
    parser.add_argument("--dump-json", default=None, help="Write per-frame telemetry to this JSON file.")
    parser.add_argument("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING...).")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    registry = TrackRegistry()
    try:
        track = registry.load(args.track)
    except KeyError:
        parser.error(f"unknown track '{args.track}' (available: {', '.join(registry.list_tracks())})")

    line_settings = dataclasses.replace(
        RacingLineSettings.from_config(),
        resolution=track.resolution,
        corner_cutting_factor=track.corner_cutting_factor,
    )
    racing_line = track.build_racing_line(line_settings)
    checkpoints = track.build_checkpoints(racing_line)
    if racing_line.is_empty:
        print(f"Track '{track.track_id}' produced no racing line; nothing to race.")
        sys.exit(1)

    race_settings = RaceSettings.from_config()
    overrides = {}
    if args.ai is not None:
        overrides["num_ai_racers"] = args.ai
    if args.laps is not None:
        overrides["total_laps"] = args.laps
    if overrides:
        race_settings = dataclasses.replace(race_settings, **overrides)

    telemetry = TelemetryCollector() if args.dump_json else None
    director = RaceDirector(
        racing_line,
        checkpoints,
        race_settings,
        controller_settings=ControllerSettings.from_config(),
        track_transform=track.transform,
        telemetry=telemetry,
        rng_seed=args.seed,
    )
    race = HeadlessRace(director, GateTriggers(director, racing_line, checkpoints, track.transform))
    director.spawn_ai_racers(race.kart_factory)

    standings = race.run(dt=args.dt, max_time=args.max_time)

    print(f"\n{track.name} - {race_settings.total_laps} laps")
    for entry in standings:
        state = director.car_state(entry.car_id)
        if state.finished:
            print(f"{entry.rank}. {entry.name} finished in {state.finish_time:.2f}s")
        else:
            print(f"{entry.rank}. {entry.name} (lap {state.lap}, progress {entry.progress:.2f})")

    if telemetry is not None:
        with open(args.dump_json, "w") as f:
            json.dump(telemetry.to_dicts(), f)
        print(f"\nTelemetry written to {args.dump_json} ({len(telemetry.frames)} frames)")


if __name__ == "__main__":
    main()

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from kart_racer.config import settings_from_config

from .controller import ControllerSettings, DrivingController
from .data_models import (
    Checkpoint,
    DriverProfile,
    DriverRNG,
    GridSlot,
    RaceCarState,
    RacePhase,
    StandingEntry,
    Teleportable,
)
from .geometry import UP, TrackTransform, clamp, horizontal, inverse_lerp, lerp, normalized
from .racing_line import RacingLine
from .registry import VehicleRegistry
from .scheduler import Scheduler, SimulationClock
from .telemetry import TelemetryCarFrame, TelemetryCollector, TelemetryFrame

logger = logging.getLogger(__name__)

CheckpointRef = Union[int, Checkpoint]
VehicleFactory = Callable[[str, GridSlot], Any]


def _teleport(vehicle: Teleportable, pose: GridSlot) -> None:
    position, forward = pose
    vehicle.teleport(position, forward)


@dataclass(frozen=True)
class RaceSettings:
    total_laps: int = 3
    num_ai_racers: int = 3

    min_skill_level: float = 0.5
    max_skill_level: float = 0.9
    skill_jitter: float = 0.1
    min_aggressiveness: float = 0.3
    max_aggressiveness: float = 0.8

    rubber_banding_enabled: bool = True
    rubber_band_strength: float = 1.0
    max_boost: float = 1.15
    max_penalty: float = 0.9
    leader_penalty_lead: float = 0.1
    leader_full_penalty_lead: float = 0.2
    full_boost_gap: float = 0.2

    countdown_steps: Tuple[int, ...] = (3, 2, 1)
    countdown_step_duration: float = 1.0
    ranking_interval: float = 1.0
    rubber_band_interval: float = 1.0
    overtake_interval: float = 10.0
    fall_check_interval: float = 0.5
    fall_threshold: float = -50.0

    starting_offset: float = 5.0
    spacing_distance: float = 10.0
    spawn_height: float = 0.5
    grid_heading_points: int = 5

    @classmethod
    def from_config(cls) -> "RaceSettings":
        return settings_from_config(cls, "race")


@dataclass
class Entrant:
    state: RaceCarState
    controller: Optional[Any] = None
    vehicle: Optional[Any] = None
    grid_slot: Optional[GridSlot] = None

    @property
    def is_ai(self) -> bool:
        return self.controller is not None


class RaceDirector:
    """
    Owns the race lifecycle: countdown, lap and checkpoint bookkeeping,
    standings, rubber-banding and overtake orders.

    Everything runs off one ``SimulationClock``; periodic passes are
    ``Scheduler`` tasks so a restart can cancel them in one call.
    """

    def __init__(
        self,
        racing_line: RacingLine,
        checkpoints: Sequence[Checkpoint],
        settings: Optional[RaceSettings] = None,
        *,
        registry: Optional[VehicleRegistry] = None,
        controller_settings: Optional[ControllerSettings] = None,
        track_transform: Optional[TrackTransform] = None,
        telemetry: Optional[TelemetryCollector] = None,
        rng_seed: int = 42,
    ) -> None:
        if not checkpoints:
            raise ValueError("A race needs at least one checkpoint")
        self.racing_line = racing_line
        self.checkpoints: List[Checkpoint] = list(checkpoints)
        self.settings = settings or RaceSettings()
        self.registry = registry if registry is not None else VehicleRegistry()
        self.controller_settings = controller_settings or ControllerSettings()
        self.track_transform = track_transform or TrackTransform()
        self.telemetry = telemetry
        self.rng_seed = rng_seed

        self.clock = SimulationClock()
        self.scheduler = Scheduler()
        self._rng = random.Random(rng_seed)
        self._entrants: Dict[str, Entrant] = {}
        self._finish_order: List[str] = []
        self._phase = RacePhase.IDLE
        self._countdown_index = 0
        self._race_start_time: Optional[float] = None
        self.tick_index = 0

    # ------------------------------------------------------------------ #
    # Roster

    @property
    def phase(self) -> RacePhase:
        return self._phase

    @property
    def total_checkpoints(self) -> int:
        return len(self.checkpoints)

    @property
    def countdown_value(self) -> Optional[int]:
        """Number currently shown by the countdown, or ``None`` outside it."""
        if self._phase is not RacePhase.COUNTDOWN:
            return None
        return self.settings.countdown_steps[self._countdown_index]

    @property
    def elapsed(self) -> float:
        if self._race_start_time is None:
            return 0.0
        return self.clock.now - self._race_start_time

    @property
    def cars(self) -> Dict[str, RaceCarState]:
        return {car_id: entrant.state for car_id, entrant in self._entrants.items()}

    @property
    def finish_order(self) -> List[str]:
        return list(self._finish_order)

    def car_state(self, car_id: str) -> RaceCarState:
        return self._entrant(car_id).state

    def controller_for(self, car_id: str) -> Optional[Any]:
        return self._entrant(car_id).controller

    def _entrant(self, car_id: str) -> Entrant:
        try:
            return self._entrants[car_id]
        except KeyError:
            raise KeyError(f"Unknown car id: {car_id}") from None

    def register_car(
        self,
        car_id: str,
        *,
        name: Optional[str] = None,
        controller: Optional[Any] = None,
        vehicle: Optional[Any] = None,
        grid_slot: Optional[GridSlot] = None,
    ) -> RaceCarState:
        """
        Adds an entrant. Cars with a ``controller`` are AI-driven; the
        ``vehicle`` (if any) is polled for falls and teleported on recovery.
        """
        if car_id in self._entrants:
            raise ValueError(f"Car '{car_id}' is already registered")
        state = RaceCarState(car_id=car_id, name=name or car_id, is_ai=controller is not None)
        self._entrants[car_id] = Entrant(state=state, controller=controller, vehicle=vehicle, grid_slot=grid_slot)
        if vehicle is not None and car_id not in self.registry:
            self.registry.register(car_id, vehicle, controller)
        logger.debug("Registered %s car %s", "AI" if state.is_ai else "human", state.name)
        return state

    # ------------------------------------------------------------------ #
    # Grid

    def grid_slots(self, count: int) -> List[GridSlot]:
        """World poses behind line point 0, facing along the start of the line."""
        if self.racing_line.is_empty:
            return []
        settings = self.settings
        start = self.track_transform.to_world(self.racing_line.point_at(0))
        ahead = self.track_transform.to_world(self.racing_line.point_at(settings.grid_heading_points))
        direction = normalized(horizontal(ahead - start))
        slots: List[GridSlot] = []
        for idx in range(count):
            position = start - direction * (settings.starting_offset + idx * settings.spacing_distance)
            position = position + UP * settings.spawn_height
            slots.append((position, direction.copy()))
        return slots

    def _roll_difficulty(self, index: int, count: int) -> DriverProfile:
        settings = self.settings
        normalized_index = index / max(1, count - 1)
        # Front of the grid gets the stronger drivers.
        skill = lerp(settings.max_skill_level, settings.min_skill_level, normalized_index)
        skill += self._rng.uniform(-settings.skill_jitter, settings.skill_jitter)
        skill = clamp(skill, settings.min_skill_level, settings.max_skill_level)
        aggressiveness = self._rng.uniform(settings.min_aggressiveness, settings.max_aggressiveness)
        return DriverProfile(skill_level=skill, aggressiveness=aggressiveness)

    def spawn_ai_racers(self, vehicle_factory: VehicleFactory, count: Optional[int] = None) -> List[DrivingController]:
        """
        Builds ``count`` AI entrants on the grid.

        ``vehicle_factory(car_id, grid_slot)`` must return an object that
        reads state, accepts controls and can be teleported.
        """
        if self.racing_line.is_empty:
            logger.warning("No racing line available; AI racers will not be spawned")
            return []

        total = self.settings.num_ai_racers if count is None else count
        controllers: List[DrivingController] = []
        for idx, slot in enumerate(self.grid_slots(total)):
            car_id = f"ai_{idx + 1}"
            name = f"AI_Racer_{idx + 1}"
            vehicle = vehicle_factory(car_id, slot)
            profile = self._roll_difficulty(idx, total)
            controller = DrivingController(
                car_id,
                self.racing_line,
                vehicle,
                vehicle,
                self.registry,
                profile=profile,
                settings=self.controller_settings,
                rng=DriverRNG(seed=self.rng_seed + idx * 11 + 1),
                track_transform=self.track_transform,
                name=name,
            )
            self.register_car(car_id, name=name, controller=controller, vehicle=vehicle, grid_slot=slot)
            controllers.append(controller)
            logger.info(
                "Spawned %s (skill %.2f, aggressiveness %.2f)", name, profile.skill_level, profile.aggressiveness
            )
        return controllers

    # ------------------------------------------------------------------ #
    # Lifecycle

    def start(self) -> bool:
        """Begins the countdown. Returns ``False`` (and stays idle) without a usable line."""
        if self._phase is not RacePhase.IDLE:
            logger.warning("Race already started (phase %s)", self._phase.value)
            return False
        if self.racing_line.is_empty:
            logger.error("Cannot start race: racing line is empty")
            return False
        if not self._entrants:
            logger.warning("Cannot start race: no cars registered")
            return False

        now = self.clock.now
        settings = self.settings
        self._countdown_index = 0
        self._set_phase(RacePhase.COUNTDOWN)
        logger.info("Countdown: %d", settings.countdown_steps[0])
        self.scheduler.add("countdown", settings.countdown_step_duration, self._advance_countdown, now)
        self.scheduler.add("ranking", settings.ranking_interval, self._ranking_pass, now)
        self.scheduler.add("fall_check", settings.fall_check_interval, self._check_falls, now)
        return True

    def _advance_countdown(self, now: float) -> None:
        self._countdown_index += 1
        if self._countdown_index < len(self.settings.countdown_steps):
            logger.info("Countdown: %d", self.settings.countdown_steps[self._countdown_index])
            return
        self.scheduler.cancel("countdown")
        self._begin_racing(now)

    def _begin_racing(self, now: float) -> None:
        self._race_start_time = now
        self._set_phase(RacePhase.RACING)
        for entrant in self._entrants.values():
            if entrant.controller is not None:
                entrant.controller.is_racing = True
        settings = self.settings
        if settings.rubber_banding_enabled:
            self.scheduler.add("rubber_banding", settings.rubber_band_interval, self._rubber_band_pass, now)
        self.scheduler.add("overtake_orders", settings.overtake_interval, self._overtake_pass, now)
        logger.info("GO! %d cars racing over %d laps", len(self._entrants), settings.total_laps)

    def _finish_race(self) -> None:
        self.scheduler.cancel_all()
        self._set_phase(RacePhase.FINISHED)
        logger.info("Race finished in %.2fs", self.elapsed)

    def _set_phase(self, phase: RacePhase) -> None:
        if phase is not self._phase:
            logger.info("Race phase %s -> %s", self._phase.value, phase.value)
        self._phase = phase

    def reset(self) -> None:
        """Cancels every periodic pass, clears per-race state and returns the grid to IDLE."""
        self.scheduler.cancel_all()
        self.registry.clear_requests()
        self.clock.reset()
        self._finish_order.clear()
        self._countdown_index = 0
        self._race_start_time = None
        self.tick_index = 0
        for entrant in self._entrants.values():
            entrant.state.reset()
            if entrant.controller is not None:
                entrant.controller.reset()
            if entrant.vehicle is not None and entrant.grid_slot is not None and hasattr(entrant.vehicle, "teleport"):
                _teleport(entrant.vehicle, entrant.grid_slot)
        self._set_phase(RacePhase.IDLE)
        logger.info("Race reset")

    def update(self, dt: float) -> RacePhase:
        """
        Advances the race by ``dt`` simulated seconds.

        Peer state is captured before any controller runs so every car sees
        the field as it stood at the end of the previous frame.
        """
        if dt < 0.0:
            raise ValueError(f"dt must be non-negative, got {dt}")
        self.registry.capture_snapshot()
        now = self.clock.advance(dt)
        self.scheduler.run_due(now)
        for entrant in self._entrants.values():
            if entrant.controller is not None:
                entrant.controller.tick(dt, now)
        if self.telemetry is not None:
            self._record_frame(now)
        self.tick_index += 1
        return self._phase

    def run_until_finished(
        self,
        dt: float = 1.0 / 60.0,
        on_update: Optional[Callable[["RaceDirector"], None]] = None,
        max_time: float = 600.0,
    ) -> List[StandingEntry]:
        if self._phase is RacePhase.IDLE and not self.start():
            return []
        max_ticks = int(max_time / dt) if dt > 0 else 0
        for _ in range(max_ticks):
            self.update(dt)
            if on_update:
                on_update(self)
            if self._phase is RacePhase.FINISHED:
                break
        else:
            logger.warning("Race did not finish within %.0fs of simulated time", max_time)
        return self.get_current_positions()

    # ------------------------------------------------------------------ #
    # Trigger events

    def _checkpoint_index(self, checkpoint: CheckpointRef) -> int:
        if isinstance(checkpoint, Checkpoint):
            for idx, candidate in enumerate(self.checkpoints):
                if candidate is checkpoint:
                    return idx
            raise ValueError(f"Checkpoint {checkpoint.label or checkpoint.index} is not part of this race")
        index = int(checkpoint)
        if not 0 <= index < len(self.checkpoints):
            raise ValueError(f"Checkpoint index {index} out of range (0..{len(self.checkpoints) - 1})")
        return index

    def handle_checkpoint(self, car_id: str, checkpoint: CheckpointRef) -> None:
        state = self._entrant(car_id).state
        index = self._checkpoint_index(checkpoint)
        if self._phase is not RacePhase.RACING or state.finished:
            return
        if state.last_checkpoint != index:
            state.last_checkpoint = index
            logger.debug("%s crossed checkpoint %d", state.name, index)

    def handle_start_finish(self, car_id: str) -> None:
        entrant = self._entrant(car_id)
        state = entrant.state
        if self._phase is not RacePhase.RACING or state.finished:
            return
        if state.last_checkpoint != self.total_checkpoints - 1:
            logger.debug("%s crossed the line without all checkpoints; lap not counted", state.name)
            return

        state.lap += 1
        state.last_checkpoint = -1
        if state.lap > self.settings.total_laps:
            self._finish_car(entrant)
        else:
            logger.info("%s started lap %d/%d", state.name, state.lap, self.settings.total_laps)

    def _finish_car(self, entrant: Entrant) -> None:
        state = entrant.state
        state.finished = True
        state.finish_time = self.elapsed
        self._finish_order.append(state.car_id)
        state.finish_position = len(self._finish_order)
        state.rank = state.finish_position
        if entrant.controller is not None:
            entrant.controller.is_racing = False
        logger.info("%s finished P%d in %.2fs", state.name, state.finish_position, state.finish_time)
        if all(other.state.finished for other in self._entrants.values()):
            self._finish_race()

    def respawn_pose(self, car_id: str) -> GridSlot:
        """Pose of the last checkpoint the car crossed, or the start line."""
        state = self._entrant(car_id).state
        if state.last_checkpoint >= 0:
            checkpoint = self.checkpoints[state.last_checkpoint]
            return np.array(checkpoint.position, dtype=float), np.array(checkpoint.forward, dtype=float)
        start = self.track_transform.to_world(self.racing_line.point_at(0))
        ahead = self.track_transform.to_world(self.racing_line.point_at(self.settings.grid_heading_points))
        return start + UP * self.settings.spawn_height, normalized(horizontal(ahead - start))

    def handle_fall(self, car_id: str) -> None:
        entrant = self._entrant(car_id)
        if entrant.vehicle is None or not hasattr(entrant.vehicle, "teleport"):
            logger.warning("%s fell but cannot be teleported", entrant.state.name)
            return
        _teleport(entrant.vehicle, self.respawn_pose(car_id))
        logger.info("%s fell off the track; respawned at checkpoint %d", entrant.state.name, entrant.state.last_checkpoint)

    def _check_falls(self, now: float) -> None:
        for car_id, entrant in self._entrants.items():
            if entrant.vehicle is None:
                continue
            position = entrant.vehicle.read_state().position
            if position[1] < self.settings.fall_threshold:
                self.handle_fall(car_id)

    # ------------------------------------------------------------------ #
    # Standings

    def composite_progress(self, car_id: str) -> float:
        """
        ``(lap - 1) + lap fraction``: the single progress metric used for
        ranking, rubber-banding and overtake orders.

        AI cars report their position along the racing line; other cars are
        measured by checkpoints. An AI car that has not yet reached a
        checkpoint but sits on the far half of the line is still behind the
        start line, so it counts as negative progress.
        """
        entrant = self._entrant(car_id)
        state = entrant.state
        if entrant.controller is not None:
            fraction = float(entrant.controller.race_progress)
            if state.last_checkpoint == -1 and fraction > 0.5:
                fraction -= 1.0
        else:
            fraction = (state.last_checkpoint + 1) / self.total_checkpoints
        return (state.lap - 1) + fraction

    def compute_standings(self) -> List[StandingEntry]:
        """Ranks every car still racing 1..N by descending progress (stable)."""
        running = [car_id for car_id, entrant in self._entrants.items() if not entrant.state.finished]
        progress = {car_id: self.composite_progress(car_id) for car_id in running}
        ordered = sorted(running, key=lambda car_id: progress[car_id], reverse=True)
        standings: List[StandingEntry] = []
        for rank, car_id in enumerate(ordered, start=1):
            state = self._entrants[car_id].state
            standings.append(StandingEntry(name=state.name, rank=rank, progress=progress[car_id], car_id=car_id))
        return standings

    def get_current_positions(self) -> List[StandingEntry]:
        """Finished cars in finishing order, then running cars by progress."""
        entries: List[StandingEntry] = []
        for car_id in self._finish_order:
            state = self._entrants[car_id].state
            entries.append(
                StandingEntry(
                    name=state.name,
                    rank=state.finish_position or len(entries) + 1,
                    progress=float(self.settings.total_laps),
                    car_id=car_id,
                    finished=True,
                )
            )
        offset = len(entries)
        for entry in self.compute_standings():
            entries.append(StandingEntry(name=entry.name, rank=entry.rank + offset, progress=entry.progress, car_id=entry.car_id))
        return entries

    def positions_by_car(self) -> Dict[str, int]:
        return {entry.car_id: entry.rank for entry in self.get_current_positions()}

    def _ranking_pass(self, now: float) -> None:
        for entry in self.get_current_positions():
            self._entrants[entry.car_id].state.rank = entry.rank

    # ------------------------------------------------------------------ #
    # Pacing policies

    def apply_rubber_banding(self) -> Dict[str, float]:
        """
        Sets every AI car's speed multiplier from the current standings.

        The leader is only held back once its lead over the next AI car
        exceeds ``leader_penalty_lead``; everyone else is boosted in
        proportion to how far behind the leader they are.
        """
        settings = self.settings
        standings = self.compute_standings()
        if not standings:
            return {}

        leader = standings[0]
        factors: Dict[str, float] = {}
        leader_entrant = self._entrants[leader.car_id]
        if leader_entrant.is_ai:
            chasers = [entry for entry in standings[1:] if self._entrants[entry.car_id].is_ai]
            lead = leader.progress - chasers[0].progress if chasers else 0.0
            penalty = 1.0
            if lead > settings.leader_penalty_lead:
                t = inverse_lerp(settings.leader_penalty_lead, settings.leader_full_penalty_lead, lead)
                penalty = lerp(1.0, settings.max_penalty, t * settings.rubber_band_strength)
            factors[leader.car_id] = penalty

        for entry in standings[1:]:
            if not self._entrants[entry.car_id].is_ai:
                continue
            behind = leader.progress - entry.progress
            t = inverse_lerp(0.0, settings.full_boost_gap, behind)
            factors[entry.car_id] = lerp(1.0, settings.max_boost, t * settings.rubber_band_strength)

        for car_id, factor in factors.items():
            self._entrants[car_id].controller.rubber_banding_factor = factor
        logger.debug("Rubber-banding factors: %s", {k: round(v, 3) for k, v in factors.items()})
        return factors

    def _rubber_band_pass(self, now: float) -> None:
        self.apply_rubber_banding()

    def orchestrate_overtakes(self) -> List[Tuple[str, str]]:
        """Orders each AI car to attack the AI car directly ahead of it."""
        standings = self.compute_standings()
        orders: List[Tuple[str, str]] = []
        for ahead, behind in zip(standings, standings[1:]):
            attacker = self._entrants[behind.car_id]
            if not attacker.is_ai or not self._entrants[ahead.car_id].is_ai:
                continue
            if attacker.controller.force_overtake(ahead.car_id):
                orders.append((behind.car_id, ahead.car_id))
        if orders:
            logger.info("Overtake orders issued: %s", ", ".join(f"{a}->{b}" for a, b in orders))
        return orders

    def _overtake_pass(self, now: float) -> None:
        self.orchestrate_overtakes()

    # ------------------------------------------------------------------ #
    # Telemetry

    def _record_frame(self, now: float) -> None:
        frames: List[TelemetryCarFrame] = []
        for car_id, entrant in self._entrants.items():
            state = entrant.state
            position = (0.0, 0.0, 0.0)
            if entrant.vehicle is not None:
                position = tuple(float(v) for v in entrant.vehicle.read_state().position)
            controller = entrant.controller
            command = getattr(controller, "last_command", None)
            frames.append(
                TelemetryCarFrame(
                    car_id=car_id,
                    name=state.name,
                    position=position,
                    progress=self.composite_progress(car_id),
                    lap=state.lap,
                    rank=state.rank,
                    finished=state.finished,
                    steer=command.steer if command else 0.0,
                    throttle=command.throttle if command else 0.0,
                    brake=command.brake if command else 0.0,
                    handbrake=command.handbrake if command else 0.0,
                    nitro=bool(command.nitro) if command else False,
                    drive_mode=controller.drive_mode.value if controller is not None else "human",
                    nitro_state=controller.nitro_state.value if controller is not None else "idle",
                    rubber_banding=float(getattr(controller, "rubber_banding_factor", 1.0)),
                )
            )
        self.telemetry.record_frame(TelemetryFrame(tick=self.tick_index, time=now, phase=self._phase.value, cars=frames))

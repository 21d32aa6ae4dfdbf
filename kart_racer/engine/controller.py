"""
Per-vehicle driving AI.

One ``DrivingController`` per kart turns "where am I relative to the racing
line, and who is around me" into steer/throttle/brake/handbrake/nitro
commands every simulation tick. Three concerns run side by side:

* race gating (waiting on the grid vs. racing),
* overtaking posture (normal, overtaking, defending),
* nitro (idle, forced launch, active, post-nitro slowdown).

Peers are only ever read from the registry's frame snapshot.
"""

from __future__ import annotations

import logging
import math
import zlib
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from kart_racer.config import settings_from_config

from .avoidance import DEFAULT_AVOIDANCE, AvoidanceSettings, avoidance_offset
from .corners import detect_upcoming_corners, lookahead_corner_factor
from .data_models import (
    ControlCommand,
    ControlSink,
    DriveMode,
    DriverProfile,
    DriverRNG,
    NitroState,
    PeerSnapshot,
    VehicleState,
    VehicleStateProvider,
)
from .geometry import TrackTransform, clamp, clamp01, lerp, local_direction, normalized, right_of, smooth_noise
from .racing_line import RacingLine
from .registry import VehicleRegistry

logger = logging.getLogger(__name__)

NITRO_SAFE_CORNER_FACTOR = 0.1
POST_NITRO_SPEED_RATIO = 0.9
# Below this normalized speed a kart keeps feeding throttle even with a corner ahead.
CORNER_CRAWL_SPEED = 0.2


@dataclass(frozen=True)
class ControllerSettings:
    lookahead_points: int = 8
    max_steering_angle: float = 0.7
    max_speed_multiplier: float = 0.85
    min_speed_multiplier: float = 0.6
    steering_speed: float = 2.5
    acceleration_speed: float = 1.5
    use_nitro_on_straights: bool = True

    corner_detection_lookahead: int = 25
    corner_speed_reduction_factor: float = 0.5
    corner_detection_threshold: float = 0.12
    braking_distance: float = 15.0
    braking_intensity_multiplier: float = 1.8

    path_randomness: float = 3.5
    randomness_change_rate: float = 0.2

    overtake_trigger_time: float = 2.0
    overtake_lane_offset: float = 3.0
    max_overtake_corner_factor: float = 0.2
    overtake_cooldown: float = 3.0
    overtake_detection_range: float = 15.0
    overtake_forward_dot: float = 0.6
    overtake_speed_margin: float = 1.05
    overtake_boost_range: Tuple[float, float] = (1.1, 1.3)

    defense_chance: float = 0.5
    defense_duration_range: Tuple[float, float] = (5.0, 10.0)

    avoidance_commitment: float = 1.5

    handbrake_threshold_range: Tuple[float, float] = (0.12, 0.19)
    nitro_cooldown_range: Tuple[float, float] = (22.0, 30.0)
    nitro_chance: float = 0.3
    nitro_min_amount: float = 10.0
    start_nitro_duration: float = 2.0
    nitro_slowdown_duration: float = 2.5

    @classmethod
    def from_config(cls) -> "ControllerSettings":
        return settings_from_config(cls, "driving")


class DrivingController:
    def __init__(
        self,
        vehicle_id: str,
        racing_line: RacingLine,
        vehicle: VehicleStateProvider,
        sink: ControlSink,
        registry: Optional[VehicleRegistry] = None,
        *,
        profile: Optional[DriverProfile] = None,
        settings: Optional[ControllerSettings] = None,
        rng: Optional[DriverRNG] = None,
        track_transform: Optional[TrackTransform] = None,
        avoidance: AvoidanceSettings = DEFAULT_AVOIDANCE,
        name: Optional[str] = None,
    ) -> None:
        self.vehicle_id = vehicle_id
        self.name = name or vehicle_id
        self.racing_line = racing_line
        self.vehicle = vehicle
        self.sink = sink
        self.registry = registry
        self.profile = profile or DriverProfile()
        self.settings = settings or ControllerSettings()
        self.rng = rng or DriverRNG(seed=zlib.crc32(vehicle_id.encode("utf-8")))
        self.track_transform = track_transform or TrackTransform()
        self.avoidance = avoidance

        self.is_racing = False
        self.rubber_banding_factor = 1.0
        self.last_command = ControlCommand.hold()

        personality = self.rng.personality
        self._handbrake_threshold = personality.uniform(*self.settings.handbrake_threshold_range)
        self._initial_nitro_cooldown = personality.uniform(*self.settings.nitro_cooldown_range)

        self._reset_transient_state()
        racing_line.add_listener(self._on_line_regenerated)

    # ------------------------------------------------------------------ #
    # Public surface

    @property
    def skill_level(self) -> float:
        return self.profile.skill_level

    @property
    def aggressiveness(self) -> float:
        return self.profile.aggressiveness

    def set_difficulty(self, skill_level: float, aggressiveness: float) -> None:
        self.profile = DriverProfile(skill_level=skill_level, aggressiveness=aggressiveness)

    @property
    def race_progress(self) -> float:
        """Lap fraction in [0, 1) along the racing line; lap count lives with the director."""
        return self._race_progress

    @property
    def waypoint_index(self) -> int:
        return self._waypoint_index

    @property
    def drive_mode(self) -> DriveMode:
        if self._is_overtaking:
            return DriveMode.OVERTAKING
        if self._is_defending:
            return DriveMode.DEFENDING
        return DriveMode.NORMAL

    @property
    def nitro_state(self) -> NitroState:
        if self._force_start_nitro:
            return NitroState.FORCED_START
        if self._nitro_active:
            return NitroState.ACTIVE
        if self._nitro_slowing_down:
            return NitroState.SLOWDOWN
        return NitroState.IDLE

    @property
    def overtake_target(self) -> Optional[str]:
        return self._overtake_target

    @property
    def target_overtake_offset(self) -> float:
        return self._target_overtake_offset

    @property
    def acceleration_scale(self) -> float:
        return self._acceleration_scale

    def reset(self) -> None:
        """Drops every piece of per-race transient state and returns to the grid."""
        self.is_racing = False
        self.rubber_banding_factor = 1.0
        self._reset_transient_state()
        if self.registry is not None:
            self.registry.pop_defense_requests(self.vehicle_id)
        self.last_command = ControlCommand.hold()

    def _reset_transient_state(self) -> None:
        self._waypoint_index = 0
        self._race_progress = 0.0
        self._was_racing = False

        self._steer = 0.0
        self._throttle = 0.0
        self._brake = 0.0
        self._handbrake = 0.0
        self._acceleration_scale = 1.0

        self._is_overtaking = False
        self._overtake_target: Optional[str] = None
        self._time_stuck = 0.0
        self._overtake_cooldown_timer = 0.0
        self._target_overtake_offset = 0.0
        self._current_overtake_offset = 0.0

        self._committed_avoidance_offset = 0.0
        self._last_avoidance_decision = -math.inf

        self._is_defending = False
        self._defense_timer = 0.0
        self._defense_duration = 0.0

        self._nitro_cooldown_timer = self._initial_nitro_cooldown
        self._nitro_slowdown_timer = 0.0
        self._nitro_slowing_down = False
        self._nitro_active = False
        self._force_start_nitro = False
        self._start_nitro_timer = 0.0

    def _on_line_regenerated(self, line: RacingLine) -> None:
        if line.is_empty:
            self._waypoint_index = 0
            return
        local = self.track_transform.to_local(self.vehicle.read_state().position)
        self._waypoint_index, self._race_progress = line.progress_at(local)
        logger.debug("%s re-anchored to waypoint %d after line regeneration", self.name, self._waypoint_index)

    # ------------------------------------------------------------------ #
    # Tick

    def tick(self, dt: float, now: float) -> ControlCommand:
        """Runs one decision step, hands the command to the sink and returns it."""
        command = self._decide(dt, now)
        self.last_command = command
        self.sink.apply_controls(command)
        return command

    def _decide(self, dt: float, now: float) -> ControlCommand:
        if self.is_racing and not self._was_racing:
            self._force_start_nitro = True
            self._start_nitro_timer = self.settings.start_nitro_duration
            logger.debug("%s launching, start nitro window %.1fs", self.name, self._start_nitro_timer)
        self._was_racing = self.is_racing

        if self.racing_line.is_empty:
            return ControlCommand.hold()

        state = self.vehicle.read_state()
        self._nitro_active = state.nitro_active
        local_position = self.track_transform.to_local(state.position)
        self._waypoint_index, self._race_progress = self.racing_line.progress_at(local_position)

        if not self.is_racing:
            return ControlCommand.hold()

        self._deliver_defense_requests()

        settings = self.settings
        skill = self.skill_level
        lookahead = int(round(settings.lookahead_points * (1.0 + skill)))
        target_point, recommended_speed = self.racing_line.get_next_target_point(self._waypoint_index, lookahead)

        corner_factor = self.detect_upcoming_corners()
        ideal_speed = self._ideal_target_speed(recommended_speed, corner_factor)

        self._update_overtaking(dt, state, ideal_speed)
        self._current_overtake_offset = lerp(self._current_overtake_offset, self._target_overtake_offset, dt * 2.0)
        self._update_avoidance(state, now)

        lateral = self._wander_offset(now) + self._current_overtake_offset + self._committed_avoidance_offset
        if lateral != 0.0:
            target_index = self._waypoint_index + lookahead
            target_point = target_point + right_of(self.racing_line.tangent_at(target_index)) * lateral
        world_target = self.track_transform.to_world(target_point)

        self._steer = lerp(self._steer, self._target_steer(state, world_target), dt * settings.steering_speed * (1.0 + skill))

        final_speed = ideal_speed * self.rubber_banding_factor
        self._update_pedals(dt, state, final_speed, corner_factor)
        self._update_handbrake(dt, corner_factor)

        nitro = self._update_nitro(dt, state, recommended_speed)
        self._update_defense(dt)

        return ControlCommand(
            steer=clamp(self._steer, -1.0, 1.0),
            throttle=clamp01(self._throttle),
            brake=clamp01(self._brake),
            handbrake=clamp01(self._handbrake),
            nitro=nitro,
            acceleration_scale=self._acceleration_scale,
        )

    # ------------------------------------------------------------------ #
    # Speed targets and corner sensing

    def detect_upcoming_corners(self) -> float:
        return detect_upcoming_corners(self.racing_line, self._waypoint_index, self.settings, self.skill_level)

    def lookahead_corner_factor(self, multiplier: float) -> float:
        return lookahead_corner_factor(self.racing_line, self._waypoint_index, self.settings.lookahead_points, multiplier)

    def _ideal_target_speed(self, recommended_speed: float, corner_factor: float) -> float:
        settings = self.settings
        speed = recommended_speed
        if corner_factor > 0.0:
            speed *= lerp(1.0, settings.corner_speed_reduction_factor, corner_factor ** 0.7)
        speed *= lerp(settings.min_speed_multiplier, settings.max_speed_multiplier, self.skill_level)
        speed *= 1.0 + self.aggressiveness * 0.2
        return speed

    # ------------------------------------------------------------------ #
    # Lateral composition

    def _wander_offset(self, now: float) -> float:
        amplitude = self.settings.path_randomness
        if amplitude <= 0.0:
            return 0.0
        noise = smooth_noise(now * self.settings.randomness_change_rate, self.rng.noise_seed)
        return (noise * 2.0 - 1.0) * amplitude

    def _own_snapshot(self, state: VehicleState) -> PeerSnapshot:
        return PeerSnapshot(
            vehicle_id=self.vehicle_id,
            position=np.asarray(state.position, dtype=float),
            forward=np.asarray(state.forward, dtype=float),
            velocity=np.asarray(state.velocity, dtype=float),
            race_progress=self._race_progress,
        )

    def _update_avoidance(self, state: VehicleState, now: float) -> None:
        if now - self._last_avoidance_decision <= self.settings.avoidance_commitment:
            return
        peers = self.registry.peers(self.vehicle_id) if self.registry is not None else []
        side = self._target_overtake_offset if self._is_overtaking and self._overtake_target else None
        self._committed_avoidance_offset = avoidance_offset(
            self._own_snapshot(state), peers, self.aggressiveness, side, self.avoidance
        )
        self._last_avoidance_decision = now

    def _target_steer(self, state: VehicleState, world_target: np.ndarray) -> float:
        direction = local_direction(state.forward, world_target - np.asarray(state.position, dtype=float))
        magnitude = float(np.linalg.norm(direction))
        if magnitude == 0.0:
            return 0.0
        max_angle = self.settings.max_steering_angle
        steer = clamp(direction[0] / magnitude, -max_angle, max_angle)
        return steer * lerp(1.5, 1.0, self.skill_level)

    # ------------------------------------------------------------------ #
    # Pedals

    def _update_pedals(self, dt: float, state: VehicleState, final_speed: float, corner_factor: float) -> None:
        settings = self.settings
        rate = dt * settings.acceleration_speed
        current_speed = state.normalized_speed

        corner_braking = (corner_factor ** 0.8) * 1.2
        if state.nitro_active and corner_factor > 0.1:
            corner_braking *= 2.0
        if corner_factor > 0.25:
            corner_braking *= 1.5

        should_accelerate = current_speed < final_speed and (corner_factor < 0.1 or current_speed < CORNER_CRAWL_SPEED)
        if state.nitro_active:
            needs_throttle_cut = corner_factor > 0.03 or current_speed > final_speed * 1.02
            needs_braking = current_speed > final_speed * 1.1 or corner_factor > 0.2
        else:
            needs_throttle_cut = corner_factor > 0.05 or current_speed > final_speed * 1.05
            needs_braking = current_speed > final_speed * 1.15 or corner_factor > 0.3

        overshoot = current_speed - final_speed
        if should_accelerate:
            throttle_target = max(0.05, 1.0 - corner_factor * 3.0)
            self._throttle = lerp(self._throttle, throttle_target, rate)
            self._brake = lerp(self._brake, 0.0, rate * 2.0)
        elif needs_braking:
            # Checked before the throttle cut, whose trigger is a superset of this one.
            intensity = clamp01(overshoot * settings.braking_intensity_multiplier * 0.8)
            if corner_factor > 0.3:
                intensity = max(intensity, corner_braking * 0.6)
            self._throttle = lerp(self._throttle, 0.0, rate * 2.0)
            self._brake = lerp(self._brake, intensity, rate * 1.5)
        elif needs_throttle_cut:
            self._throttle = lerp(self._throttle, 0.0, rate * 1.5)
            light_brake = 0.0
            if overshoot > 0.1:
                light_brake = clamp01(overshoot * settings.braking_intensity_multiplier * 0.3)
            self._brake = lerp(self._brake, light_brake, rate * 1.5)
        else:
            self._throttle = lerp(self._throttle, 0.0, rate)
            self._brake = lerp(self._brake, 0.0, rate)

    def _update_handbrake(self, dt: float, corner_factor: float) -> None:
        target = 1.0 if corner_factor > self._handbrake_threshold else 0.0
        self._handbrake = lerp(self._handbrake, target, dt * 2.0)

    # ------------------------------------------------------------------ #
    # Nitro

    def _update_nitro(self, dt: float, state: VehicleState, recommended_speed: float) -> bool:
        settings = self.settings
        self._nitro_cooldown_timer -= dt
        if self._nitro_slowdown_timer > 0.0:
            self._nitro_slowdown_timer -= dt

        near = self.lookahead_corner_factor(1.0)
        far = self.lookahead_corner_factor(2.0)
        safe = near < NITRO_SAFE_CORNER_FACTOR and far < NITRO_SAFE_CORNER_FACTOR

        use_nitro = False
        if self._force_start_nitro:
            self._start_nitro_timer -= dt
            if self._start_nitro_timer > 0.0 and safe:
                use_nitro = True
            else:
                self._force_start_nitro = False

        if not use_nitro and settings.use_nitro_on_straights and safe and self._nitro_available(state):
            if self.rng.decision.random() < settings.nitro_chance:
                use_nitro = True
                self._nitro_cooldown_timer = self.rng.decision.uniform(*settings.nitro_cooldown_range)
                self._nitro_slowdown_timer = settings.nitro_slowdown_duration
                self._nitro_slowing_down = True
                logger.info("%s using nitro (next window in %.1fs)", self.name, self._nitro_cooldown_timer)

        if self._nitro_slowing_down:
            if self._nitro_slowdown_timer > 0.0:
                if state.normalized_speed > recommended_speed * POST_NITRO_SPEED_RATIO:
                    self._throttle = lerp(self._throttle, 0.0, dt * 3.0)
                    self._brake = lerp(self._brake, 1.0, dt * 2.0)
            else:
                self._nitro_slowing_down = False

        return use_nitro

    def _nitro_available(self, state: VehicleState) -> bool:
        return (
            self._nitro_cooldown_timer <= 0.0
            and state.nitro_amount > self.settings.nitro_min_amount
            and not state.nitro_active
            and not state.nitro_cooling_down
        )

    # ------------------------------------------------------------------ #
    # Overtaking and defence

    def _update_overtaking(self, dt: float, state: VehicleState, ideal_speed: float) -> None:
        if self._overtake_cooldown_timer > 0.0:
            self._overtake_cooldown_timer -= dt
            return

        if self._is_overtaking:
            target = self.registry.peer(self._overtake_target) if self.registry is not None else None
            if target is None:
                self._finish_overtake("target gone")
                return
            to_target = target.position - np.asarray(state.position, dtype=float)
            if float(np.dot(state.forward, to_target)) < 0.0:
                self._finish_overtake("passed")
            return

        lead = self._find_car_to_overtake(state, ideal_speed)
        if lead is None:
            self._time_stuck = 0.0
            return

        self._time_stuck += dt
        if self._time_stuck > self.settings.overtake_trigger_time:
            self._start_overtake(lead.vehicle_id)

    def _find_car_to_overtake(self, state: VehicleState, ideal_speed: float) -> Optional[PeerSnapshot]:
        if self.registry is None:
            return None
        settings = self.settings
        position = np.asarray(state.position, dtype=float)
        closest_distance = settings.overtake_detection_range
        candidate: Optional[PeerSnapshot] = None
        for peer in self.registry.peers(self.vehicle_id):
            to_peer = peer.position - position
            distance = float(np.linalg.norm(to_peer))
            if distance >= closest_distance:
                continue
            if float(np.dot(state.forward, normalized(to_peer))) > settings.overtake_forward_dot:
                closest_distance = distance
                candidate = peer

        if candidate is None:
            return None
        wants_faster = ideal_speed * state.max_speed > candidate.speed * settings.overtake_speed_margin
        on_straight = self.detect_upcoming_corners() < settings.max_overtake_corner_factor
        return candidate if wants_faster and on_straight else None

    def _start_overtake(self, target_id: str) -> None:
        decision = self.rng.decision
        self._is_overtaking = True
        self._overtake_target = target_id
        self._time_stuck = 0.0
        self._acceleration_scale = decision.uniform(*self.settings.overtake_boost_range)
        side = 1.0 if decision.random() > 0.5 else -1.0
        self._target_overtake_offset = self.settings.overtake_lane_offset * side
        logger.info(
            "%s starting to overtake %s on the %s (boost %.2f)",
            self.name,
            target_id,
            "right" if side > 0 else "left",
            self._acceleration_scale,
        )
        if self.registry is not None:
            self.registry.request_defense(target_id, self.vehicle_id, self._acceleration_scale)

    def _finish_overtake(self, reason: str) -> None:
        logger.info("%s finished overtaking %s (%s)", self.name, self._overtake_target, reason)
        self._is_overtaking = False
        self._overtake_target = None
        self._target_overtake_offset = 0.0
        self._overtake_cooldown_timer = self.settings.overtake_cooldown
        self._acceleration_scale = 1.0

    def force_overtake(self, target_id: Optional[str]) -> bool:
        """Race-director order: overtake ``target_id`` now, bypassing the stuck timer."""
        if target_id is None or target_id == self.vehicle_id:
            return False
        if self._is_overtaking or self._overtake_target == target_id:
            return False
        if self.registry is not None and not self.registry.is_active(target_id):
            return False
        logger.debug("%s ordered to overtake %s", self.name, target_id)
        self._start_overtake(target_id)
        self._overtake_cooldown_timer = self.settings.overtake_cooldown
        return True

    def _deliver_defense_requests(self) -> None:
        if self.registry is None:
            return
        for request in self.registry.pop_defense_requests(self.vehicle_id):
            self.try_start_defense(request.acceleration_scale, attacker_id=request.attacker_id)

    def try_start_defense(self, attacker_acceleration_scale: float, attacker_id: Optional[str] = None) -> bool:
        if self._is_defending:
            return False
        decision = self.rng.decision
        if decision.random() >= self.settings.defense_chance:
            return False
        self._is_defending = True
        self._defense_timer = 0.0
        self._defense_duration = decision.uniform(*self.settings.defense_duration_range)
        self._acceleration_scale = attacker_acceleration_scale
        logger.info("%s defending against %s for %.1fs", self.name, attacker_id or "attacker", self._defense_duration)
        return True

    def _update_defense(self, dt: float) -> None:
        if not self._is_defending:
            return
        self._defense_timer += dt
        if self._defense_timer >= self._defense_duration:
            self._is_defending = False
            self._acceleration_scale = 1.0
            logger.info("%s stopped defending", self.name)

"""
Headless stand-ins for the collaborators a game engine would provide.

``KinematicKart`` is deliberately crude (no tyres, no mass transfer); it
only has to respond to the control surface plausibly enough to exercise
the AI. ``GateTriggers`` plays the role of trigger colliders by watching
which racing-line indices each kart passes.
"""

from __future__ import annotations

import math
from typing import Dict, Optional, Sequence

import numpy as np

from .data_models import Checkpoint, ControlCommand, GridSlot, VehicleState
from .geometry import TrackTransform, clamp, horizontal, normalized, right_of
from .racing_line import RacingLine


class KinematicKart:
    def __init__(
        self,
        position: Sequence[float],
        forward: Sequence[float],
        max_speed: float = 30.0,
        acceleration: float = 12.0,
        brake_deceleration: float = 25.0,
        drag: float = 0.05,
        handbrake_scrub: float = 0.4,
        handbrake_yaw: float = 0.5,
        turn_rate: float = 2.0,
        nitro_boost: float = 1.3,
        nitro_duration: float = 2.0,
        nitro_cost: float = 35.0,
        nitro_recharge: float = 4.0,
    ) -> None:
        self.position = np.array(position, dtype=float)
        self.forward = self._flat_forward(forward)
        self.speed = 0.0
        self.max_speed = max_speed
        self.acceleration = acceleration
        self.brake_deceleration = brake_deceleration
        self.drag = drag
        self.handbrake_scrub = handbrake_scrub
        self.handbrake_yaw = handbrake_yaw
        self.turn_rate = turn_rate
        self.nitro_boost = nitro_boost
        self.nitro_duration = nitro_duration
        self.nitro_cost = nitro_cost
        self.nitro_recharge = nitro_recharge

        self.nitro_amount = 100.0
        self._nitro_timer = 0.0
        self.command = ControlCommand.hold()
        self.nitro_uses = 0

    @staticmethod
    def _flat_forward(forward: Sequence[float]) -> np.ndarray:
        flat = normalized(horizontal(np.asarray(forward, dtype=float)))
        if not flat.any():
            return np.array([0.0, 0.0, 1.0])
        return flat

    @classmethod
    def from_slot(cls, slot: GridSlot, **kwargs) -> "KinematicKart":
        position, forward = slot
        return cls(position, forward, **kwargs)

    @property
    def nitro_active(self) -> bool:
        return self._nitro_timer > 0.0

    def read_state(self) -> VehicleState:
        return VehicleState(
            position=self.position.copy(),
            forward=self.forward.copy(),
            velocity=self.forward * self.speed,
            max_speed=self.max_speed,
            nitro_amount=self.nitro_amount,
            nitro_active=self.nitro_active,
            nitro_cooling_down=False,
        )

    def apply_controls(self, command: ControlCommand) -> None:
        self.command = command
        if command.nitro and not self.nitro_active and self.nitro_amount >= self.nitro_cost:
            self.nitro_amount -= self.nitro_cost
            self._nitro_timer = self.nitro_duration
            self.nitro_uses += 1

    def teleport(self, position: Sequence[float], forward: Sequence[float]) -> None:
        self.position = np.array(position, dtype=float)
        self.forward = self._flat_forward(forward)
        self.speed = 0.0
        self._nitro_timer = 0.0

    def step(self, dt: float) -> None:
        command = self.command
        boost = self.nitro_boost if self.nitro_active else 1.0

        drive = command.throttle * self.acceleration * command.acceleration_scale * boost
        # Handbrake drag scales with speed and the rear steps out.
        scrub = self.drag + command.handbrake * self.handbrake_scrub
        resist = command.brake * self.brake_deceleration + scrub * self.speed
        self.speed = clamp(self.speed + (drive - resist) * dt, 0.0, self.max_speed * boost)

        grip = min(1.0, self.speed / 5.0)
        yaw = command.steer * self.turn_rate * grip * (1.0 + command.handbrake * self.handbrake_yaw) * dt
        self.forward = normalized(math.cos(yaw) * self.forward + math.sin(yaw) * right_of(self.forward))
        self.position = self.position + self.forward * self.speed * dt

        if self._nitro_timer > 0.0:
            self._nitro_timer = max(0.0, self._nitro_timer - dt)
        else:
            self.nitro_amount = min(100.0, self.nitro_amount + self.nitro_recharge * dt)


class GateTriggers:
    """
    Emits checkpoint and start/finish events as karts move along the line.

    Each kart's nearest line index is compared against the previous frame;
    every index passed in the forward direction is checked against the
    checkpoint gates and against index 0 (the start/finish line).
    """

    def __init__(
        self,
        director,
        racing_line: RacingLine,
        checkpoints: Sequence[Checkpoint],
        track_transform: Optional[TrackTransform] = None,
    ) -> None:
        self.director = director
        self.racing_line = racing_line
        self.track_transform = track_transform or TrackTransform()
        self._gates: Dict[int, int] = {checkpoint.index: ordinal for ordinal, checkpoint in enumerate(checkpoints)}
        self._karts: Dict[str, KinematicKart] = {}
        self._last_index: Dict[str, Optional[int]] = {}

    def track(self, car_id: str, kart: KinematicKart) -> None:
        self._karts[car_id] = kart
        self._last_index[car_id] = None

    def reset(self) -> None:
        for car_id in self._last_index:
            self._last_index[car_id] = None

    def update(self) -> None:
        count = len(self.racing_line)
        if count == 0:
            return
        for car_id, kart in self._karts.items():
            local = self.track_transform.to_local(kart.position)
            index, _, _ = self.racing_line.get_closest_point(local)
            previous = self._last_index[car_id]
            self._last_index[car_id] = index
            if previous is None:
                continue
            advanced = (index - previous) % count
            # Standing still or rolling backwards never triggers gates.
            if advanced == 0 or advanced > count // 2:
                continue
            for step in range(1, advanced + 1):
                passed = (previous + step) % count
                if passed in self._gates:
                    self.director.handle_checkpoint(car_id, self._gates[passed])
                if passed == 0:
                    self.director.handle_start_finish(car_id)


class HeadlessRace:
    """Wires karts, triggers and a director together for scripted runs."""

    def __init__(self, director, triggers: GateTriggers) -> None:
        self.director = director
        self.triggers = triggers
        self.karts: Dict[str, KinematicKart] = {}

    def kart_factory(self, car_id: str, slot: GridSlot) -> KinematicKart:
        kart = KinematicKart.from_slot(slot)
        self.karts[car_id] = kart
        self.triggers.track(car_id, kart)
        return kart

    def reset(self) -> None:
        self.director.reset()
        self.triggers.reset()

    def step(self, dt: float) -> None:
        self.director.update(dt)
        self._move_karts(dt)

    def run(self, dt: float = 1.0 / 30.0, max_time: float = 600.0):
        return self.director.run_until_finished(
            dt=dt, on_update=lambda _director: self._move_karts(dt), max_time=max_time
        )

    def _move_karts(self, dt: float) -> None:
        for kart in self.karts.values():
            kart.step(dt)
        self.triggers.update()

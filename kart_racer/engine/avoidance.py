"""
Threat-field avoidance.

Every peer inside the detection radius and forward awareness cone pushes
the driver laterally away from the side it sits on; pushes are averaged
by threat so the most dangerous neighbour dominates.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

import numpy as np

from .data_models import PeerSnapshot
from .geometry import angle_between, clamp, clamp01, lerp, local_direction


@dataclass(frozen=True)
class AvoidanceSettings:
    detection_radius: float = 10.0
    awareness_angle: float = 120.0
    min_push: float = 1.5
    max_push: float = 3.0
    overtake_bias: float = 1.0
    max_offset: float = 3.5


DEFAULT_AVOIDANCE = AvoidanceSettings()


def threat_score(
    distance: float,
    angle: float,
    relative_speed: float,
    own_speed: float,
    aggressiveness: float,
    settings: AvoidanceSettings = DEFAULT_AVOIDANCE,
) -> float:
    half_cone = settings.awareness_angle * 0.5
    threat = lerp(1.0, 0.1, distance / settings.detection_radius)
    threat *= lerp(1.0, 0.2, angle / half_cone)
    threat *= 1.0 + clamp01(relative_speed / max(1.0, own_speed))
    # Aggressive drivers tolerate more before reacting.
    threat *= lerp(1.2, 0.7, aggressiveness)
    return threat


def avoidance_offset(
    own: PeerSnapshot,
    peers: Iterable[PeerSnapshot],
    aggressiveness: float,
    overtake_side: Optional[float] = None,
    settings: AvoidanceSettings = DEFAULT_AVOIDANCE,
) -> float:
    """
    Signed lateral offset (positive = right) away from nearby traffic.

    ``overtake_side`` is the sign of the active overtake offset, or ``None``
    when not overtaking; it nudges the result toward the chosen lane.
    """
    half_cone = settings.awareness_angle * 0.5
    own_speed = own.speed
    total_offset = 0.0
    total_threat = 0.0

    for peer in peers:
        if peer.vehicle_id == own.vehicle_id or not peer.active:
            continue
        to_other = peer.position - own.position
        distance = float(np.linalg.norm(to_other))
        if distance > settings.detection_radius:
            continue
        angle = angle_between(own.forward, to_other)
        if angle > half_cone:
            continue

        relative_speed = float(np.dot(peer.velocity - own.velocity, own.forward))
        threat = threat_score(distance, angle, relative_speed, own_speed, aggressiveness, settings)

        local_x = local_direction(own.forward, to_other)[0]
        side = 1.0 if local_x >= 0.0 else -1.0
        push = -side * lerp(settings.min_push, settings.max_push, threat)
        total_offset += push * threat
        total_threat += threat

    offset = total_offset / total_threat if total_threat > 0.0 else 0.0
    if overtake_side is not None:
        offset += (1.0 if overtake_side >= 0.0 else -1.0) * settings.overtake_bias
    return clamp(offset, -settings.max_offset, settings.max_offset)

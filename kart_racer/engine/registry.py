from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

import numpy as np

from .data_models import PeerSnapshot, VehicleStateProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DefenseRequest:
    attacker_id: str
    acceleration_scale: float


@dataclass
class _Entry:
    provider: VehicleStateProvider
    controller: Optional[Any] = None
    active: bool = True


class VehicleRegistry:
    """
    Explicit roster of live vehicles.

    Controllers never look at each other directly: peers are read from the
    snapshot captured at the end of the previous frame, and cross-vehicle
    requests are queued for the recipient's next tick.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, _Entry] = {}
        self._snapshot: Dict[str, PeerSnapshot] = {}
        self._defense_requests: Dict[str, List[DefenseRequest]] = defaultdict(list)

    def register(self, vehicle_id: str, provider: VehicleStateProvider, controller: Optional[Any] = None) -> None:
        if vehicle_id in self._entries:
            raise ValueError(f"Vehicle '{vehicle_id}' is already registered")
        self._entries[vehicle_id] = _Entry(provider=provider, controller=controller)
        logger.debug("Registered vehicle %s", vehicle_id)

    def attach_controller(self, vehicle_id: str, controller: Any) -> None:
        self._entry(vehicle_id).controller = controller

    def deregister(self, vehicle_id: str) -> None:
        self._entries.pop(vehicle_id, None)
        self._snapshot.pop(vehicle_id, None)
        self._defense_requests.pop(vehicle_id, None)
        logger.debug("Deregistered vehicle %s", vehicle_id)

    def set_active(self, vehicle_id: str, active: bool) -> None:
        self._entry(vehicle_id).active = active

    def is_active(self, vehicle_id: Optional[str]) -> bool:
        if vehicle_id is None:
            return False
        entry = self._entries.get(vehicle_id)
        return entry is not None and entry.active

    def __contains__(self, vehicle_id: object) -> bool:
        return vehicle_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def vehicle_ids(self) -> List[str]:
        return list(self._entries)

    def get_controller(self, vehicle_id: str) -> Optional[Any]:
        entry = self._entries.get(vehicle_id)
        return entry.controller if entry else None

    def get_provider(self, vehicle_id: str) -> VehicleStateProvider:
        return self._entry(vehicle_id).provider

    def _entry(self, vehicle_id: str) -> _Entry:
        try:
            return self._entries[vehicle_id]
        except KeyError:
            raise KeyError(f"Unknown vehicle id: {vehicle_id}") from None

    # ------------------------------------------------------------------ #
    # Double-buffered peer state

    def capture_snapshot(self) -> Mapping[str, PeerSnapshot]:
        """Freezes every vehicle's pose, velocity and progress for the coming frame."""
        snapshot: Dict[str, PeerSnapshot] = {}
        for vehicle_id, entry in self._entries.items():
            state = entry.provider.read_state()
            progress = float(getattr(entry.controller, "race_progress", 0.0)) if entry.controller else 0.0
            snapshot[vehicle_id] = PeerSnapshot(
                vehicle_id=vehicle_id,
                position=np.array(state.position, dtype=float),
                forward=np.array(state.forward, dtype=float),
                velocity=np.array(state.velocity, dtype=float),
                race_progress=progress,
                active=entry.active,
            )
        self._snapshot = snapshot
        return dict(snapshot)

    @property
    def snapshot(self) -> Mapping[str, PeerSnapshot]:
        return dict(self._snapshot)

    def peers(self, vehicle_id: str) -> List[PeerSnapshot]:
        return [peer for key, peer in self._snapshot.items() if key != vehicle_id and self.is_active(key)]

    def peer(self, vehicle_id: Optional[str]) -> Optional[PeerSnapshot]:
        if vehicle_id is None or not self.is_active(vehicle_id):
            return None
        return self._snapshot.get(vehicle_id)

    # ------------------------------------------------------------------ #
    # Cross-vehicle requests

    def request_defense(self, target_id: str, attacker_id: str, acceleration_scale: float) -> None:
        if target_id not in self._entries:
            logger.debug("Dropping defence request for unknown vehicle %s", target_id)
            return
        self._defense_requests[target_id].append(DefenseRequest(attacker_id, acceleration_scale))

    def pop_defense_requests(self, vehicle_id: str) -> List[DefenseRequest]:
        return self._defense_requests.pop(vehicle_id, [])

    def clear_requests(self) -> None:
        self._defense_requests.clear()

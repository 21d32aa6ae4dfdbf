import numpy as np
import pytest

from kart_racer.engine import VehicleRegistry, VehicleState


class _StaticVehicle:
    def __init__(self, position, velocity=(0.0, 0.0, 0.0)):
        self.position = np.array(position, dtype=float)
        self.velocity = np.array(velocity, dtype=float)

    def read_state(self) -> VehicleState:
        return VehicleState(
            position=self.position.copy(),
            forward=np.array([0.0, 0.0, 1.0]),
            velocity=self.velocity.copy(),
            max_speed=30.0,
        )


class _ProgressOnly:
    def __init__(self, progress):
        self.race_progress = progress


def _registry(**positions) -> VehicleRegistry:
    registry = VehicleRegistry()
    for vehicle_id, position in positions.items():
        registry.register(vehicle_id, _StaticVehicle(position))
    return registry


def test_duplicate_registration_is_rejected():
    registry = _registry(a=(0.0, 0.0, 0.0))
    with pytest.raises(ValueError):
        registry.register("a", _StaticVehicle((1.0, 0.0, 0.0)))
    assert len(registry) == 1
    assert "a" in registry


def test_unknown_vehicle_lookups():
    registry = _registry(a=(0.0, 0.0, 0.0))
    with pytest.raises(KeyError):
        registry.get_provider("ghost")
    with pytest.raises(KeyError):
        registry.set_active("ghost", False)
    assert registry.get_controller("ghost") is None
    assert registry.peer("ghost") is None
    assert registry.is_active(None) is False


def test_snapshot_is_frozen_until_next_capture():
    vehicle = _StaticVehicle((0.0, 0.0, 0.0))
    registry = VehicleRegistry()
    registry.register("a", vehicle)
    registry.register("b", _StaticVehicle((5.0, 0.0, 0.0)))
    registry.capture_snapshot()

    vehicle.position[:] = (100.0, 0.0, 0.0)
    assert np.allclose(registry.peer("a").position, (0.0, 0.0, 0.0))

    registry.capture_snapshot()
    assert np.allclose(registry.peer("a").position, (100.0, 0.0, 0.0))


def test_snapshot_carries_controller_progress():
    registry = VehicleRegistry()
    registry.register("a", _StaticVehicle((0.0, 0.0, 0.0)), _ProgressOnly(0.42))
    registry.register("b", _StaticVehicle((5.0, 0.0, 0.0)))
    snapshot = registry.capture_snapshot()
    assert snapshot["a"].race_progress == pytest.approx(0.42)
    assert snapshot["b"].race_progress == 0.0


def test_peers_exclude_self_and_inactive_vehicles():
    registry = _registry(a=(0.0, 0.0, 0.0), b=(5.0, 0.0, 0.0), c=(9.0, 0.0, 0.0))
    registry.capture_snapshot()
    assert sorted(peer.vehicle_id for peer in registry.peers("a")) == ["b", "c"]

    registry.set_active("c", False)
    assert [peer.vehicle_id for peer in registry.peers("a")] == ["b"]
    assert registry.peer("c") is None


def test_deregistered_vehicle_disappears_from_snapshot():
    registry = _registry(a=(0.0, 0.0, 0.0), b=(5.0, 0.0, 0.0))
    registry.capture_snapshot()
    registry.deregister("b")
    assert registry.peer("b") is None
    assert registry.peers("a") == []
    assert "b" not in registry.snapshot


def test_defense_requests_are_queued_per_target():
    registry = _registry(a=(0.0, 0.0, 0.0), b=(5.0, 0.0, 0.0))
    registry.request_defense("b", "a", 1.2)
    registry.request_defense("ghost", "a", 1.2)

    requests = registry.pop_defense_requests("b")
    assert len(requests) == 1
    assert requests[0].attacker_id == "a"
    assert requests[0].acceleration_scale == pytest.approx(1.2)
    assert registry.pop_defense_requests("b") == []
    assert registry.pop_defense_requests("ghost") == []

    registry.request_defense("a", "b", 1.1)
    registry.clear_requests()
    assert registry.pop_defense_requests("a") == []


def test_controller_can_be_attached_after_registration():
    registry = _registry(b=(5.0, 0.0, 0.0), a=(0.0, 0.0, 0.0))
    assert registry.vehicle_ids() == ["b", "a"]
    assert registry.get_controller("a") is None

    controller = _ProgressOnly(0.25)
    registry.attach_controller("a", controller)
    assert registry.get_controller("a") is controller
    assert registry.capture_snapshot()["a"].race_progress == pytest.approx(0.25)

    with pytest.raises(KeyError):
        registry.attach_controller("ghost", controller)

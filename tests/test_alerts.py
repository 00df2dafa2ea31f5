from __future__ import annotations

from fleetlink.alerts import AlertEvaluator, haversine_m, inside
from fleetlink.config import Geofence
from fleetlink.models.connection import ConnectionStatus
from fleetlink.models.vehicle import Location
from fleetlink.state.events import (
    AlertKind,
    ConnectionStatusChanged,
    EventBus,
    FleetEvent,
    VehicleAlert,
    VehicleStateChanged,
)

DEPOT = Geofence(name="depot", lat=52.5200, lng=13.4050, radius_m=500.0)


def _setup(**kwargs) -> tuple[EventBus, list[VehicleAlert]]:
    bus = EventBus()
    alerts: list[VehicleAlert] = []

    def _collect(event: FleetEvent) -> None:
        if isinstance(event, VehicleAlert):
            alerts.append(event)

    bus.subscribe(_collect)
    AlertEvaluator(bus, **kwargs).attach()
    return bus, alerts


def _moved(bus: EventBus, **changes: object) -> None:
    bus.publish(VehicleStateChanged(vehicle_id="V1", changes=changes, version=1))


def test_haversine_distance() -> None:
    # Berlin -> Potsdam is roughly 27 km.
    assert 26_000 < haversine_m(52.5200, 13.4050, 52.3906, 13.0645) < 28_000
    assert inside(DEPOT, Location(lat=52.5201, lng=13.4051))
    assert not inside(DEPOT, Location(lat=52.5300, lng=13.4050))


def test_speeding_alerts_on_transition_only() -> None:
    bus, alerts = _setup(speed_limit_kph=100.0)

    _moved(bus, speed_kph=80.0)
    _moved(bus, speed_kph=120.0)
    _moved(bus, speed_kph=130.0)
    _moved(bus, speed_kph=90.0)
    _moved(bus, speed_kph=110.0)

    assert [a.kind for a in alerts] == [AlertKind.SPEEDING, AlertKind.SPEEDING]
    assert alerts[0].details["speed_kph"] == 120.0


def test_first_observation_is_a_baseline() -> None:
    bus, alerts = _setup(speed_limit_kph=100.0, geofences=[DEPOT])

    _moved(bus, speed_kph=150.0, location=Location(lat=52.6, lng=13.4))

    assert alerts == []


def test_geofence_exit_and_enter() -> None:
    bus, alerts = _setup(geofences=[DEPOT])

    _moved(bus, location=Location(lat=52.5200, lng=13.4050))
    _moved(bus, location=Location(lat=52.5400, lng=13.4050))
    _moved(bus, location=Location(lat=52.5201, lng=13.4050))

    assert [a.kind for a in alerts] == [AlertKind.GEOFENCE_EXIT, AlertKind.GEOFENCE_ENTER]
    assert alerts[0].details["geofence"] == "depot"


def test_disconnect_resets_baseline() -> None:
    bus, alerts = _setup(speed_limit_kph=100.0)
    _moved(bus, speed_kph=50.0)

    bus.publish(
        ConnectionStatusChanged(vehicle_id="V1", provider_id="fake", old=ConnectionStatus.ACTIVE, new=None)
    )
    _moved(bus, speed_kph=150.0)

    assert alerts == []


def test_evaluator_without_rules_stays_detached() -> None:
    bus = EventBus()
    evaluator = AlertEvaluator(bus)
    evaluator.attach()

    assert not evaluator.enabled
    assert bus.subscriber_count == 0

"""Speed and geofence alert rules evaluated on state changes."""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence

from fleetlink._constants import EARTH_RADIUS_M
from fleetlink.config import Geofence
from fleetlink.models.vehicle import Location
from fleetlink.state.events import (
    AlertKind,
    ConnectionStatusChanged,
    EventBus,
    EventType,
    FleetEvent,
    Subscription,
    VehicleAlert,
    VehicleStateChanged,
)

_logger = logging.getLogger(__name__)


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in metres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = phi2 - phi1
    dlmb = math.radians(lng2 - lng1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(a))


def inside(fence: Geofence, location: Location) -> bool:
    return haversine_m(fence.lat, fence.lng, location.lat, location.lng) <= fence.radius_m


class AlertEvaluator:
    """Publishes :class:`VehicleAlert` when a vehicle crosses a threshold.

    Only transitions alert: the first observation of a vehicle sets the
    baseline, and staying over the limit (or outside a fence) stays quiet.
    """

    def __init__(
        self,
        bus: EventBus,
        *,
        speed_limit_kph: float | None = None,
        geofences: Sequence[Geofence] = (),
    ) -> None:
        self._bus = bus
        self._speed_limit = speed_limit_kph
        self._geofences = tuple(geofences)
        self._speeding: dict[str, bool] = {}
        self._inside: dict[tuple[str, str], bool] = {}
        self._subscription: Subscription | None = None

    @property
    def enabled(self) -> bool:
        return self._speed_limit is not None or bool(self._geofences)

    def attach(self) -> None:
        if self._subscription is None and self.enabled:
            self._subscription = self._bus.subscribe(
                self.handle,
                event_types=(EventType.STATE_CHANGED, EventType.CONNECTION_STATUS_CHANGED),
            )

    def detach(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def handle(self, event: FleetEvent) -> None:
        if isinstance(event, ConnectionStatusChanged):
            if event.new is None:
                self.forget(event.vehicle_id)
            return
        if not isinstance(event, VehicleStateChanged):
            return
        speed = event.changes.get("speed_kph")
        if speed is not None:
            self._check_speed(event.vehicle_id, speed)
        location = event.changes.get("location")
        if isinstance(location, Location):
            self._check_geofences(event.vehicle_id, location)

    def forget(self, vehicle_id: str) -> None:
        self._speeding.pop(vehicle_id, None)
        for key in [k for k in self._inside if k[0] == vehicle_id]:
            del self._inside[key]

    def _check_speed(self, vehicle_id: str, speed: float) -> None:
        if self._speed_limit is None:
            return
        over = speed > self._speed_limit
        was_over = self._speeding.get(vehicle_id)
        self._speeding[vehicle_id] = over
        if over and was_over is False:
            self._emit(
                vehicle_id,
                AlertKind.SPEEDING,
                f"{vehicle_id} at {speed:.0f} km/h exceeds {self._speed_limit:.0f} km/h",
                speed_kph=speed,
                limit_kph=self._speed_limit,
            )

    def _check_geofences(self, vehicle_id: str, location: Location) -> None:
        for fence in self._geofences:
            now_inside = inside(fence, location)
            previous = self._inside.get((vehicle_id, fence.name))
            self._inside[(vehicle_id, fence.name)] = now_inside
            if previous is None or previous == now_inside:
                continue
            kind = AlertKind.GEOFENCE_ENTER if now_inside else AlertKind.GEOFENCE_EXIT
            verb = "entered" if now_inside else "left"
            self._emit(
                vehicle_id,
                kind,
                f"{vehicle_id} {verb} {fence.name}",
                geofence=fence.name,
                lat=location.lat,
                lng=location.lng,
            )

    def _emit(self, vehicle_id: str, kind: AlertKind, message: str, **details: object) -> None:
        _logger.info("Alert: %s", message)
        self._bus.publish(VehicleAlert(vehicle_id=vehicle_id, kind=kind, message=message, details=details))

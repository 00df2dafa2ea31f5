"""Fleet snapshot query result."""

from __future__ import annotations

from fleetlink.models._base import FleetModel
from fleetlink.models.connection import ConnectionStatus
from fleetlink.models.vehicle import CanonicalVehicleState, Freshness, MotionStatus


class VehicleSnapshot(FleetModel):
    """Current state of one vehicle as seen by external consumers."""

    vehicle_id: str
    state: CanonicalVehicleState | None
    freshness: Freshness
    connection_status: ConnectionStatus | None
    motion: MotionStatus = MotionStatus.UNKNOWN
    pending_fields: frozenset[str] = frozenset()
    """Fields showing an optimistic value from an in-flight command."""
    unconfirmed_fields: frozenset[str] = frozenset()
    """Fields whose last command timed out; the vehicle's real value is unknown."""
    last_error: str | None = None

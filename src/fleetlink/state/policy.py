"""Read-time freshness and motion policy.

Nothing here is stored: freshness is judged whenever a consumer reads a
vehicle, so a vehicle goes stale without any timer firing.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from fleetlink._constants import PARKED_SPEED_KPH
from fleetlink.models.connection import ConnectionStatus
from fleetlink.models.vehicle import CanonicalVehicleState, EngineState, Freshness, MotionStatus
from fleetlink.state.registry import SyncStatus

_BROKEN_CONNECTION = frozenset({ConnectionStatus.ERROR, ConnectionStatus.REVOKED})


def evaluate_freshness(
    state: CanonicalVehicleState | None,
    sync: SyncStatus,
    connection_status: ConnectionStatus | None,
    *,
    now: datetime,
    poll_interval: float,
    factor: float = 2.0,
) -> Freshness:
    """Judge how trustworthy *state* is right now.

    Rate limiting and unreachable vehicles only age the state; ERROR is
    reserved for broken connections and permanent sync failures.
    """
    if connection_status in _BROKEN_CONNECTION or sync.error_is_permanent:
        return Freshness.ERROR
    if state is None:
        return Freshness.SYNCING if sync.syncing else Freshness.UNKNOWN
    if now - state.last_observed_at <= timedelta(seconds=poll_interval * factor):
        return Freshness.FRESH
    return Freshness.STALE


def motion_status(state: CanonicalVehicleState | None, freshness: Freshness) -> MotionStatus:
    if state is None:
        return MotionStatus.UNKNOWN
    if freshness in (Freshness.STALE, Freshness.ERROR):
        return MotionStatus.OFFLINE
    if state.speed_kph is not None:
        return MotionStatus.MOVING if state.speed_kph > PARKED_SPEED_KPH else MotionStatus.PARKED
    if state.engine_state == EngineState.RUNNING:
        return MotionStatus.MOVING
    return MotionStatus.PARKED

"""State layer.

The registry is the single source of truth for canonical vehicle state; the
reconciler is the only component that writes to it. Changes leave this
package as events on the :class:`EventBus`.
"""

from fleetlink.state.events import (
    AlertKind,
    CommandResolved,
    ConnectionStatusChanged,
    EventBus,
    EventType,
    FleetEvent,
    Subscription,
    VehicleAlert,
    VehicleStateChanged,
)
from fleetlink.state.policy import evaluate_freshness, motion_status
from fleetlink.state.reconcile import Reconciler
from fleetlink.state.registry import SyncStatus, VehicleStateRegistry

__all__ = [
    "AlertKind",
    "CommandResolved",
    "ConnectionStatusChanged",
    "EventBus",
    "EventType",
    "FleetEvent",
    "Reconciler",
    "Subscription",
    "SyncStatus",
    "VehicleAlert",
    "VehicleStateChanged",
    "VehicleStateRegistry",
    "evaluate_freshness",
    "motion_status",
]

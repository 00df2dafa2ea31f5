"""Reconciliation: the only writer of canonical vehicle state.

Incoming telemetry and command outcomes are diffed against the registry
under the vehicle's lock; events are published after the lock is released.
"""

from __future__ import annotations

import logging
from typing import Any

from fleetlink.models.vehicle import TELEMETRY_FIELDS, CanonicalVehicleState
from fleetlink.state.events import EventBus, VehicleStateChanged
from fleetlink.state.registry import VehicleStateRegistry

_logger = logging.getLogger(__name__)

#: Fields that exclude each other; reporting one clears the other.
_EXCLUSIVE = {"fuel_percent": "battery_percent", "battery_percent": "fuel_percent"}


class Reconciler:
    def __init__(self, registry: VehicleStateRegistry, bus: EventBus) -> None:
        self._registry = registry
        self._bus = bus

    def apply(self, incoming: CanonicalVehicleState) -> dict[str, Any] | None:
        """Merge a fetched state into the registry.

        Returns the changed fields, or ``None`` when *incoming* was not newer
        than the stored state and was discarded. Fields that *incoming* leaves
        as ``None`` were not reported and keep their stored value.
        """
        vehicle_id = incoming.vehicle_id
        with self._registry.lock(vehicle_id):
            stored = self._registry.get_confirmed(vehicle_id)
            if stored is not None and incoming.last_observed_at <= stored.last_observed_at:
                _logger.debug(
                    "Discarding out-of-order state for %s observed %s (stored %s)",
                    vehicle_id,
                    incoming.last_observed_at.isoformat(),
                    stored.last_observed_at.isoformat(),
                )
                return None

            reported = {name: getattr(incoming, name) for name in TELEMETRY_FIELDS}
            reported = {name: value for name, value in reported.items() if value is not None}

            if stored is None:
                new_state = incoming.model_copy(update={"version": 1})
                changes = dict(reported)
            else:
                changes = {name: value for name, value in reported.items() if getattr(stored, name) != value}
                for name, other in _EXCLUSIVE.items():
                    if name in changes and getattr(stored, other) is not None:
                        changes[other] = None
                update = {**changes, "version": stored.version + 1}
                if incoming.provider_id != stored.provider_id:
                    update["provider_id"] = incoming.provider_id
                new_state = stored.model_copy(update=update)

            self._registry.write(new_state)
            for name in self._registry.clear_unconfirmed(vehicle_id, set(reported)):
                changes.setdefault(name, reported[name])

        self._publish(vehicle_id, changes, new_state.version)
        return changes

    def apply_optimistic(self, vehicle_id: str, command_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        """Show *patch* on reads until *command_id* resolves."""
        with self._registry.lock(vehicle_id):
            before = self._registry.get(vehicle_id)
            self._registry.apply_optimistic(vehicle_id, command_id, patch)
            if before is None:
                return {}
            changes = {name: value for name, value in patch.items() if getattr(before, name) != value}

        self._publish(vehicle_id, changes, before.version)
        return changes

    def confirm_command(self, vehicle_id: str, command_id: str) -> dict[str, Any]:
        """Make the optimistic overlay of *command_id* authoritative."""
        with self._registry.lock(vehicle_id):
            patch = self._registry.pop_optimistic(vehicle_id, command_id)
            self._registry.clear_unconfirmed(vehicle_id, set(patch))
            stored = self._registry.get_confirmed(vehicle_id)
            if stored is None or not patch:
                return {}
            changes = {name: value for name, value in patch.items() if getattr(stored, name) != value}
            if not changes:
                return {}
            new_state = stored.model_copy(update={**changes, "version": stored.version + 1})
            self._registry.write(new_state)

        self._publish(vehicle_id, changes, new_state.version)
        return changes

    def rollback_command(self, vehicle_id: str, command_id: str, *, mark_unconfirmed: bool = False) -> dict[str, Any]:
        """Drop the optimistic overlay of *command_id*.

        With *mark_unconfirmed* the affected fields are flagged: the vehicle
        may have executed the command, so the restored value is not trusted.
        """
        with self._registry.lock(vehicle_id):
            patch = self._registry.pop_optimistic(vehicle_id, command_id)
            if mark_unconfirmed:
                self._registry.mark_unconfirmed(vehicle_id, set(patch))
            stored = self._registry.get_confirmed(vehicle_id)
            if stored is None or not patch:
                return {}
            merged = self._registry.get(vehicle_id) or stored
            reverted = {name: getattr(merged, name) for name, value in patch.items() if getattr(merged, name) != value}

        if reverted:
            self._publish(vehicle_id, reverted, stored.version)
        return reverted

    def _publish(self, vehicle_id: str, changes: dict[str, Any], version: int) -> None:
        if not changes or set(changes) == {"last_observed_at"}:
            return
        self._bus.publish(VehicleStateChanged(vehicle_id=vehicle_id, changes=changes, version=version))

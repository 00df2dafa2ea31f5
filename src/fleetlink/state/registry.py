"""Per-vehicle canonical state registry.

The registry stores three layers per vehicle:

* the last confirmed :class:`CanonicalVehicleState`,
* optimistic overlays written by in-flight commands, keyed by command id,
* the set of fields whose last command timed out ("unconfirmed").

Reads merge the overlays over the confirmed state. Every vehicle has its own
re-entrant lock; callers that need a read-modify-write hold it via
:meth:`VehicleStateRegistry.lock`. There is no registry-wide lock on the
data path.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections import OrderedDict
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from fleetlink.models._base import utcnow
from fleetlink.models.vehicle import CanonicalVehicleState

_logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class SyncStatus:
    """Outcome of the most recent telemetry fetch for one vehicle."""

    syncing: bool = False
    last_attempt_at: datetime | None = None
    last_error: str | None = None
    error_is_permanent: bool = False


@dataclasses.dataclass
class _VehicleEntry:
    confirmed: CanonicalVehicleState | None = None
    overlays: OrderedDict[str, dict[str, Any]] = dataclasses.field(default_factory=OrderedDict)
    unconfirmed: set[str] = dataclasses.field(default_factory=set)
    sync: SyncStatus = dataclasses.field(default_factory=SyncStatus)


class VehicleStateRegistry:
    """Single source of truth for canonical vehicle state."""

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}
        self._entries: dict[str, _VehicleEntry] = {}

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def _lock_for(self, vehicle_id: str) -> threading.RLock:
        lock = self._locks.get(vehicle_id)
        if lock is None:
            with self._guard:
                lock = self._locks.setdefault(vehicle_id, threading.RLock())
        return lock

    @contextmanager
    def lock(self, vehicle_id: str) -> Iterator[None]:
        with self._lock_for(vehicle_id):
            yield

    def _entry(self, vehicle_id: str) -> _VehicleEntry:
        entry = self._entries.get(vehicle_id)
        if entry is None:
            entry = self._entries.setdefault(vehicle_id, _VehicleEntry())
        return entry

    # ------------------------------------------------------------------
    # Confirmed state
    # ------------------------------------------------------------------

    def get_confirmed(self, vehicle_id: str) -> CanonicalVehicleState | None:
        with self.lock(vehicle_id):
            entry = self._entries.get(vehicle_id)
            return entry.confirmed if entry is not None else None

    def write(self, state: CanonicalVehicleState) -> bool:
        """Store *state* unless its version is not strictly newer.

        Returns ``True`` when the write was applied.
        """
        with self.lock(state.vehicle_id):
            entry = self._entry(state.vehicle_id)
            current = entry.confirmed
            if current is not None and state.version <= current.version:
                _logger.debug(
                    "Discarding write for %s: version %d <= stored %d",
                    state.vehicle_id,
                    state.version,
                    current.version,
                )
                return False
            entry.confirmed = state
            return True

    def get(self, vehicle_id: str) -> CanonicalVehicleState | None:
        """Confirmed state with optimistic overlays applied (newest overlay wins)."""
        with self.lock(vehicle_id):
            entry = self._entries.get(vehicle_id)
            if entry is None or entry.confirmed is None:
                return None
            if not entry.overlays:
                return entry.confirmed
            merged: dict[str, Any] = {}
            for patch in entry.overlays.values():
                merged.update(patch)
            return entry.confirmed.model_copy(update=merged)

    def vehicle_ids(self) -> list[str]:
        return list(self._entries)

    def remove(self, vehicle_id: str) -> None:
        """Drop everything known about *vehicle_id*."""
        with self.lock(vehicle_id):
            self._entries.pop(vehicle_id, None)
        _logger.debug("Removed registry entry for %s", vehicle_id)

    # ------------------------------------------------------------------
    # Optimistic overlays
    # ------------------------------------------------------------------

    def apply_optimistic(self, vehicle_id: str, command_id: str, patch: dict[str, Any]) -> None:
        if not patch:
            return
        with self.lock(vehicle_id):
            entry = self._entry(vehicle_id)
            entry.overlays[command_id] = dict(patch)
            entry.unconfirmed.difference_update(patch)

    def pop_optimistic(self, vehicle_id: str, command_id: str) -> dict[str, Any]:
        """Remove and return the overlay written for *command_id* (empty if none)."""
        with self.lock(vehicle_id):
            entry = self._entries.get(vehicle_id)
            if entry is None:
                return {}
            return entry.overlays.pop(command_id, {})

    def pending_fields(self, vehicle_id: str) -> frozenset[str]:
        with self.lock(vehicle_id):
            entry = self._entries.get(vehicle_id)
            if entry is None:
                return frozenset()
            return frozenset(name for patch in entry.overlays.values() for name in patch)

    # ------------------------------------------------------------------
    # Unconfirmed marks
    # ------------------------------------------------------------------

    def mark_unconfirmed(self, vehicle_id: str, fields: set[str] | frozenset[str]) -> None:
        if not fields:
            return
        with self.lock(vehicle_id):
            self._entry(vehicle_id).unconfirmed.update(fields)

    def clear_unconfirmed(self, vehicle_id: str, fields: set[str] | frozenset[str]) -> set[str]:
        """Clear marks for *fields*; returns the marks that were actually cleared."""
        with self.lock(vehicle_id):
            entry = self._entries.get(vehicle_id)
            if entry is None:
                return set()
            cleared = entry.unconfirmed & set(fields)
            entry.unconfirmed -= cleared
            return cleared

    def unconfirmed_fields(self, vehicle_id: str) -> frozenset[str]:
        with self.lock(vehicle_id):
            entry = self._entries.get(vehicle_id)
            return frozenset(entry.unconfirmed) if entry is not None else frozenset()

    # ------------------------------------------------------------------
    # Sync bookkeeping
    # ------------------------------------------------------------------

    def begin_sync(self, vehicle_id: str) -> None:
        with self.lock(vehicle_id):
            entry = self._entry(vehicle_id)
            entry.sync = dataclasses.replace(entry.sync, syncing=True, last_attempt_at=self._clock())

    def end_sync(self, vehicle_id: str, *, error: str | None = None, permanent: bool = False) -> None:
        with self.lock(vehicle_id):
            entry = self._entries.get(vehicle_id)
            if entry is None:
                # Removed while the fetch was in flight.
                return
            entry.sync = dataclasses.replace(
                entry.sync,
                syncing=False,
                last_error=error,
                error_is_permanent=permanent and error is not None,
            )

    def sync_status(self, vehicle_id: str) -> SyncStatus:
        with self.lock(vehicle_id):
            entry = self._entries.get(vehicle_id)
            return entry.sync if entry is not None else SyncStatus()

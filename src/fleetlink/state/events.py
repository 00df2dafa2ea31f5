"""Fleet events and the in-process event bus.

Components publish events after they have finished mutating their own
state; subscribers therefore always observe a consistent registry.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from collections.abc import AsyncIterator, Callable, Collection
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from fleetlink.models._base import utcnow
from fleetlink.models.command import Command
from fleetlink.models.connection import ConnectionStatus

_logger = logging.getLogger(__name__)


class EventType(StrEnum):
    STATE_CHANGED = "vehicle_state_changed"
    CONNECTION_STATUS_CHANGED = "connection_status_changed"
    COMMAND_RESOLVED = "command_resolved"
    ALERT = "vehicle_alert"


class AlertKind(StrEnum):
    SPEEDING = "speeding"
    GEOFENCE_EXIT = "geofence_exit"
    GEOFENCE_ENTER = "geofence_enter"


class FleetEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: EventType
    vehicle_id: str
    occurred_at: datetime = Field(default_factory=utcnow)


class VehicleStateChanged(FleetEvent):
    """Only the fields that changed, keyed by canonical field name."""

    type: EventType = EventType.STATE_CHANGED
    changes: dict[str, Any]
    version: int


class ConnectionStatusChanged(FleetEvent):
    """``new`` is ``None`` once the connection has been removed."""

    type: EventType = EventType.CONNECTION_STATUS_CHANGED
    provider_id: str
    old: ConnectionStatus | None
    new: ConnectionStatus | None
    reason: str | None = None


class CommandResolved(FleetEvent):
    type: EventType = EventType.COMMAND_RESOLVED
    command: Command


class VehicleAlert(FleetEvent):
    type: EventType = EventType.ALERT
    kind: AlertKind
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


EventCallback = Callable[[FleetEvent], Any]


class Subscription:
    """Handle returned by :meth:`EventBus.subscribe`."""

    def __init__(
        self,
        bus: EventBus,
        callback: EventCallback,
        vehicle_ids: frozenset[str] | None,
        event_types: frozenset[EventType] | None,
    ) -> None:
        self.id = next(bus._ids)
        self._bus = bus
        self.callback = callback
        self.vehicle_ids = vehicle_ids
        self.event_types = event_types

    def matches(self, event: FleetEvent) -> bool:
        if self.vehicle_ids is not None and event.vehicle_id not in self.vehicle_ids:
            return False
        return self.event_types is None or event.type in self.event_types

    def unsubscribe(self) -> None:
        self._bus._remove(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.unsubscribe()


class EventBus:
    """Synchronous fan-out of :class:`FleetEvent` to subscribers.

    Callbacks run inline in :meth:`publish`. A callback may return an
    awaitable; it is then scheduled as a task on the running loop. A callback
    that raises is logged and does not affect other subscribers.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._subscriptions: dict[int, Subscription] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    def subscribe(
        self,
        callback: EventCallback,
        *,
        vehicle_ids: Collection[str] | None = None,
        event_types: Collection[EventType] | None = None,
    ) -> Subscription:
        subscription = Subscription(
            self,
            callback,
            frozenset(vehicle_ids) if vehicle_ids is not None else None,
            frozenset(event_types) if event_types is not None else None,
        )
        self._subscriptions[subscription.id] = subscription
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.id, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: FleetEvent) -> None:
        for subscription in list(self._subscriptions.values()):
            if not subscription.matches(event):
                continue
            try:
                result = subscription.callback(event)
            except Exception:
                _logger.exception("Event subscriber %d failed on %s", subscription.id, event.type)
                continue
            if inspect.isawaitable(result):
                self._schedule(result, subscription.id)

    def _schedule(self, awaitable: Any, subscription_id: int) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                _logger.error("Async event subscriber %d failed", subscription_id, exc_info=t.exception())

        task.add_done_callback(_done)

    async def stream(
        self,
        *,
        vehicle_ids: Collection[str] | None = None,
        event_types: Collection[EventType] | None = None,
        maxsize: int = 0,
    ) -> AsyncIterator[FleetEvent]:
        """Iterate over matching events as they are published.

        With a bounded *maxsize*, events published while the queue is full are
        dropped and logged.
        """
        queue: asyncio.Queue[FleetEvent] = asyncio.Queue(maxsize=maxsize)

        def _enqueue(event: FleetEvent) -> None:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                _logger.warning("Event stream full; dropped %s for %s", event.type, event.vehicle_id)

        subscription = self.subscribe(_enqueue, vehicle_ids=vehicle_ids, event_types=event_types)
        try:
            while True:
                yield await queue.get()
        finally:
            subscription.unsubscribe()

    async def aclose(self) -> None:
        """Cancel pending async subscriber tasks."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

"""High-level service wiring every fleetlink component together."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import AsyncIterator, Callable, Collection, Mapping
from datetime import datetime
from typing import Any

import aiohttp

from fleetlink._transport import HttpTransport, Transport
from fleetlink.alerts import AlertEvaluator
from fleetlink.config import FleetConfig
from fleetlink.connections import (
    ConnectionManager,
    ConnectionStore,
    FileConnectionStore,
    MemoryConnectionStore,
)
from fleetlink.dispatcher import CommandDispatcher
from fleetlink.exceptions import FleetConfigError, FleetError, NotConnectedError
from fleetlink.models._base import utcnow
from fleetlink.models.command import Command, CommandKind
from fleetlink.models.connection import AuthorizationRequest, ProviderConnection
from fleetlink.models.provider import Provider
from fleetlink.models.snapshot import VehicleSnapshot
from fleetlink.providers import build_adapters
from fleetlink.providers.base import ProviderAdapter
from fleetlink.scheduler import PriorityTier, SyncScheduler
from fleetlink.state.events import EventBus, EventCallback, EventType, FleetEvent, Subscription
from fleetlink.state.policy import evaluate_freshness, motion_status
from fleetlink.state.reconcile import Reconciler
from fleetlink.state.registry import VehicleStateRegistry

_logger = logging.getLogger(__name__)

_HOUSEKEEPING_INTERVAL = 60.0


class FleetService:
    """Canonical fleet state and remote commands across telematics providers.

    Usage::

        async with FleetService(FleetConfig.from_env()) as fleet:
            request = fleet.connect("car-1", "smartcar", "https://app.example/cb")
            # ... owner authorizes, provider redirects back with code/state ...
            await fleet.complete_connection(state, code)
            command_id = fleet.request_command("car-1", CommandKind.LOCK)
    """

    def __init__(
        self,
        config: FleetConfig | None = None,
        *,
        session: aiohttp.ClientSession | None = None,
        transport: Transport | None = None,
        adapters: Mapping[str, ProviderAdapter] | None = None,
        store: ConnectionStore | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or FleetConfig.from_env()
        self._external_session = session is not None
        self._http_session = session
        self._transport = transport
        self._adapters = dict(adapters) if adapters is not None else None
        self._store = store
        self._rng = rng
        self._clock = clock
        self._monotonic = monotonic

        self.bus = EventBus()
        self.registry = VehicleStateRegistry(clock=clock)
        self.reconciler = Reconciler(self.registry, self.bus)
        self.alerts = AlertEvaluator(
            self.bus,
            speed_limit_kph=self._config.speed_limit_kph,
            geofences=self._config.geofences,
        )
        self._connections: ConnectionManager | None = None
        self._scheduler: SyncScheduler | None = None
        self._dispatcher: CommandDispatcher | None = None
        self._housekeeping: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    def _build_store(self) -> ConnectionStore:
        if self._store is not None:
            return self._store
        if self._config.store_path is None:
            return MemoryConnectionStore()
        if not self._config.store_key:
            raise FleetConfigError("store_key is required when store_path is set")
        return FileConnectionStore(self._config.store_path, self._config.store_key)

    async def __aenter__(self) -> FleetService:
        if self._adapters is None:
            if self._transport is None:
                if self._http_session is None:
                    self._http_session = aiohttp.ClientSession()
                self._transport = HttpTransport(
                    self._http_session,
                    timeout=self._config.request_timeout,
                    trace=self._config.api_trace_enabled,
                )
            self._adapters = build_adapters(self._config, self._transport)

        self._connections = ConnectionManager(
            self._adapters,
            self.bus,
            store=self._build_store(),
            token_refresh_margin=self._config.token_refresh_margin,
            revocation_timeout=self._config.revocation_timeout,
            clock=self._clock,
        )
        self._scheduler = SyncScheduler(
            self._connections,
            self.registry,
            self.reconciler,
            self._config,
            rng=self._rng,
            clock=self._monotonic,
        )
        self._dispatcher = CommandDispatcher(
            self._connections,
            self.registry,
            self.reconciler,
            self.bus,
            self._config,
            clock=self._clock,
            monotonic=self._monotonic,
        )
        self.alerts.attach()

        for connection in self._connections.restore():
            if connection.status.is_schedulable:
                self._scheduler.schedule(connection)
        self._scheduler.start()
        self._housekeeping = asyncio.get_running_loop().create_task(self._housekeeping_loop())
        return self

    async def __aexit__(self, *exc: Any) -> None:
        if self._housekeeping is not None:
            self._housekeeping.cancel()
            await asyncio.gather(self._housekeeping, return_exceptions=True)
            self._housekeeping = None
        if self._scheduler is not None:
            await self._scheduler.stop()
        if self._dispatcher is not None:
            await self._dispatcher.aclose()
        if self._connections is not None:
            await self._connections.aclose()
        self.alerts.detach()
        await self.bus.aclose()
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
            self._transport = None

    async def _housekeeping_loop(self) -> None:
        while True:
            await asyncio.sleep(_HOUSEKEEPING_INTERVAL)
            await self.housekeeping()

    async def housekeeping(self) -> None:
        """Collect resolved commands and refresh credentials close to expiry."""
        self.dispatcher.collect_garbage()
        for connection in self.connections.active():
            try:
                await self.connections.ensure_fresh_credentials(connection.vehicle_id)
            except NotConnectedError:
                continue

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    def _require_started(self) -> None:
        if self._connections is None:
            raise FleetError("Service not started. Use 'async with FleetService(...) as fleet:'")

    @property
    def connections(self) -> ConnectionManager:
        self._require_started()
        assert self._connections is not None  # noqa: S101
        return self._connections

    @property
    def scheduler(self) -> SyncScheduler:
        self._require_started()
        assert self._scheduler is not None  # noqa: S101
        return self._scheduler

    @property
    def dispatcher(self) -> CommandDispatcher:
        self._require_started()
        assert self._dispatcher is not None  # noqa: S101
        return self._dispatcher

    def providers(self) -> list[Provider]:
        return [adapter.provider for adapter in (self._adapters or {}).values()]

    # ------------------------------------------------------------------
    # Fleet snapshot
    # ------------------------------------------------------------------

    def snapshot(self, vehicle_ids: Collection[str] | None = None) -> list[VehicleSnapshot]:
        """Current state of *vehicle_ids* (default: every known vehicle).

        Freshness is judged now, against twice the vehicle's poll interval.
        """
        if vehicle_ids is None:
            known = {c.vehicle_id for c in self.connections.connections()} | set(self.registry.vehicle_ids())
            vehicle_ids = sorted(known)
        now = self._clock()
        return [self._snapshot_one(vehicle_id, now) for vehicle_id in vehicle_ids]

    def _snapshot_one(self, vehicle_id: str, now: datetime) -> VehicleSnapshot:
        state = self.registry.get(vehicle_id)
        connection = self.connections.get(vehicle_id)
        sync = self.registry.sync_status(vehicle_id)
        freshness = evaluate_freshness(
            state,
            sync,
            connection.status if connection else None,
            now=now,
            poll_interval=self.scheduler.poll_interval(vehicle_id),
            factor=self._config.freshness_factor,
        )
        return VehicleSnapshot(
            vehicle_id=vehicle_id,
            state=state,
            freshness=freshness,
            connection_status=connection.status if connection else None,
            motion=motion_status(state, freshness),
            pending_fields=self.registry.pending_fields(vehicle_id),
            unconfirmed_fields=self.registry.unconfirmed_fields(vehicle_id),
            last_error=(connection.last_error if connection else None) or sync.last_error,
        )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def request_command(self, vehicle_id: str, kind: CommandKind | str) -> str:
        """Queue a remote command and return its id without waiting for it."""
        return self.dispatcher.submit(vehicle_id, CommandKind(kind)).id

    def command_status(self, command_id: str) -> Command:
        return self.dispatcher.get(command_id)

    def retry_command(self, command_id: str) -> str:
        return self.dispatcher.retry(command_id).id

    async def wait_for_command(self, command_id: str, timeout: float | None = None) -> Command:
        return await self.dispatcher.wait(command_id, timeout=timeout)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def connect(
        self,
        vehicle_id: str,
        provider_id: str,
        redirect_uri: str,
        *,
        vin: str | None = None,
    ) -> AuthorizationRequest:
        return self.connections.begin_authorization(vehicle_id, provider_id, redirect_uri, vin=vin)

    async def complete_connection(
        self,
        state: str,
        code: str,
        *,
        provider_vehicle_ref: str | None = None,
        tier: PriorityTier = PriorityTier.IDLE,
    ) -> ProviderConnection:
        connection = await self.connections.complete_authorization(
            state, code, provider_vehicle_ref=provider_vehicle_ref
        )
        self.scheduler.schedule(connection, tier)
        return connection

    async def disconnect(self, vehicle_id: str) -> bool:
        """Disconnect *vehicle_id*; local state is gone when this returns.

        Provider-side revocation continues in the background.
        """
        connection = self.connections.disconnect(vehicle_id)
        self.scheduler.remove(vehicle_id)
        self.dispatcher.cancel_vehicle(vehicle_id)
        self.registry.remove(vehicle_id)
        return connection is not None

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def refresh_now(self, vehicle_id: str) -> bool:
        return self.scheduler.refresh_now(vehicle_id)

    def set_tier(self, vehicle_id: str, tier: PriorityTier) -> None:
        self.scheduler.set_tier(vehicle_id, tier)

    def set_trip_active(self, vehicle_id: str, active: bool) -> None:
        self.set_tier(vehicle_id, PriorityTier.ACTIVE_TRIP if active else PriorityTier.IDLE)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(
        self,
        callback: EventCallback,
        *,
        vehicle_ids: Collection[str] | None = None,
        event_types: Collection[EventType] | None = None,
    ) -> Subscription:
        return self.bus.subscribe(callback, vehicle_ids=vehicle_ids, event_types=event_types)

    def events(
        self,
        *,
        vehicle_ids: Collection[str] | None = None,
        event_types: Collection[EventType] | None = None,
    ) -> AsyncIterator[FleetEvent]:
        return self.bus.stream(vehicle_ids=vehicle_ids, event_types=event_types)

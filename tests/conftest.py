from __future__ import annotations

import asyncio
import random
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from fleetlink._transport import HttpResponse
from fleetlink.config import FleetConfig
from fleetlink.connections import ConnectionManager, MemoryConnectionStore
from fleetlink.dispatcher import CommandDispatcher
from fleetlink.models.command import CommandKind, CommandStatus
from fleetlink.models.connection import ProviderConnection, ProviderVehicle, TokenSet
from fleetlink.models.provider import CapabilitySet, Provider, RateLimitPolicy, TelemetryField
from fleetlink.models.vehicle import CanonicalVehicleState, Powertrain
from fleetlink.providers.base import ProviderAdapter
from fleetlink.scheduler import SyncScheduler
from fleetlink.state.events import EventBus, FleetEvent
from fleetlink.state.reconcile import Reconciler
from fleetlink.state.registry import VehicleStateRegistry

EPOCH = datetime(2026, 1, 1, tzinfo=UTC)


class FakeClock:
    """Shared monotonic + wall clock; ``sleep`` advances time instead of waiting."""

    def __init__(self) -> None:
        self.t = 1000.0

    def monotonic(self) -> float:
        return self.t

    def now(self) -> datetime:
        return EPOCH + timedelta(seconds=self.t)

    def advance(self, seconds: float) -> None:
        self.t += seconds

    async def sleep(self, seconds: float) -> None:
        self.advance(seconds)
        await asyncio.sleep(0)


class NoTransport:
    async def request(self, method: str, url: str, **_kwargs: Any) -> HttpResponse:  # pragma: no cover
        raise AssertionError(f"unexpected HTTP call {method} {url}")


class FakeAdapter(ProviderAdapter):
    """Scripted adapter.

    ``fetch_results`` / ``send_results`` / ``poll_results`` are queues of
    values, exceptions to raise, or async callables to await.
    """

    PROVIDER = Provider(
        id="fake",
        name="Fake",
        capabilities=CapabilitySet(commands=frozenset(CommandKind), telemetry=frozenset(TelemetryField)),
        rate_limit=RateLimitPolicy(max_concurrency=2, backoff_ceiling=3600.0),
    )

    def __init__(self, clock: FakeClock) -> None:
        super().__init__(NoTransport(), clock=clock.now)
        self.vehicles: list[ProviderVehicle] = []
        self.fetch_results: deque[Any] = deque()
        self.send_results: deque[Any] = deque()
        self.poll_results: deque[Any] = deque()
        self.refresh_results: deque[Any] = deque()
        self.fetch_calls: list[str] = []
        self.sent: list[tuple[str, CommandKind]] = []
        self.polls = 0
        self.refresh_calls = 0
        self.revoke_calls = 0
        self.revoke_result: Any = None
        self.concurrent_fetches = 0
        self.max_concurrent_fetches = 0
        self.commands_in_flight = 0
        self.max_commands_in_flight = 0

    @staticmethod
    async def _resolve(item: Any) -> Any:
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return await item()
        return item

    def authorization_url(self, state: str, redirect_uri: str) -> str:
        return f"https://fake.test/authorize?state={state}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        return TokenSet(access_token=f"access-{code}", refresh_token="refresh", expires_at=None)

    async def refresh_credentials(self, tokens: TokenSet) -> TokenSet:
        self.refresh_calls += 1
        await asyncio.sleep(0)
        if self.refresh_results:
            return await self._resolve(self.refresh_results.popleft())
        return TokenSet(access_token="access-refreshed", refresh_token="refresh")

    async def list_vehicles(self, tokens: TokenSet) -> list[ProviderVehicle]:
        return list(self.vehicles)

    async def revoke(self, connection: ProviderConnection) -> None:
        self.revoke_calls += 1
        await self._resolve(self.revoke_result)

    async def _fetch_state(self, connection: ProviderConnection) -> CanonicalVehicleState:
        self.fetch_calls.append(connection.vehicle_id)
        self.concurrent_fetches += 1
        self.max_concurrent_fetches = max(self.max_concurrent_fetches, self.concurrent_fetches)
        try:
            item = self.fetch_results.popleft() if self.fetch_results else None
            result = await self._resolve(item)
            if result is None:
                result = CanonicalVehicleState(
                    vehicle_id=connection.vehicle_id,
                    provider_id=self.id,
                    last_observed_at=self._clock(),
                )
            return result
        finally:
            self.concurrent_fetches -= 1

    async def _send_command(self, connection: ProviderConnection, kind: CommandKind) -> str:
        self.sent.append((connection.vehicle_id, kind))
        self.commands_in_flight += 1
        self.max_commands_in_flight = max(self.max_commands_in_flight, self.commands_in_flight)
        try:
            if self.send_results:
                await self._resolve(self.send_results.popleft())
        except BaseException:
            self.commands_in_flight -= 1
            raise
        return f"pc-{len(self.sent)}"

    async def _poll_command_status(self, connection: ProviderConnection, provider_command_id: str) -> CommandStatus:
        self.polls += 1
        status = CommandStatus.CONFIRMED
        if self.poll_results:
            status = await self._resolve(self.poll_results.popleft())
        if status.is_terminal:
            self.commands_in_flight -= 1
        return status


class Harness:
    """Every component wired together around one :class:`FakeAdapter`."""

    def __init__(self, config: FleetConfig) -> None:
        self.config = config
        self.clock = FakeClock()
        self.adapter = FakeAdapter(self.clock)
        self.bus = EventBus()
        self.events: list[FleetEvent] = []
        self.bus.subscribe(self.events.append)
        self.registry = VehicleStateRegistry(clock=self.clock.now)
        self.reconciler = Reconciler(self.registry, self.bus)
        self.store = MemoryConnectionStore()
        self.connections = ConnectionManager(
            {"fake": self.adapter},
            self.bus,
            store=self.store,
            revocation_timeout=config.revocation_timeout,
            clock=self.clock.now,
        )
        self.scheduler = SyncScheduler(
            self.connections,
            self.registry,
            self.reconciler,
            config,
            rng=random.Random(7),
            clock=self.clock.monotonic,
        )
        self.dispatcher = CommandDispatcher(
            self.connections,
            self.registry,
            self.reconciler,
            self.bus,
            config,
            clock=self.clock.now,
            monotonic=self.clock.monotonic,
            sleep=self.clock.sleep,
        )

    async def connect(self, vehicle_id: str, powertrain: Powertrain = Powertrain.ELECTRIC) -> ProviderConnection:
        ref = f"ref-{vehicle_id}"
        self.adapter.vehicles.append(ProviderVehicle(ref=ref, powertrain=powertrain))
        request = self.connections.begin_authorization(vehicle_id, "fake", "https://app.test/callback")
        return await self.connections.complete_authorization(request.state, "code", provider_vehicle_ref=ref)

    def state(self, vehicle_id: str, *, age: float = 0.0, **fields: Any) -> CanonicalVehicleState:
        return CanonicalVehicleState(
            vehicle_id=vehicle_id,
            provider_id="fake",
            last_observed_at=self.clock.now() - timedelta(seconds=age),
            **fields,
        )

    def events_of(self, event_type: type[FleetEvent]) -> list[Any]:
        return [e for e in self.events if isinstance(e, event_type)]

    async def run_jobs(self) -> None:
        self.scheduler.run_due()
        await self.scheduler.wait_idle()


@pytest.fixture
def config() -> FleetConfig:
    return FleetConfig(command_poll_initial=0.5, command_poll_max=5.0)


@pytest.fixture
def harness(config: FleetConfig) -> Harness:
    return Harness(config)


@pytest.fixture
def gate() -> Callable[[Any], Callable[[], Any]]:
    """Build an async callable that blocks until its event is set, then returns *value*."""

    def _make(value: Any, event: asyncio.Event | None = None) -> Any:
        event = event or asyncio.Event()

        async def _blocked() -> Any:
            await event.wait()
            if isinstance(value, BaseException):
                raise value
            return value

        _blocked.event = event  # type: ignore[attr-defined]
        return _blocked

    return _make

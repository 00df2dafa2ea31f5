from __future__ import annotations

import asyncio

import pytest

from fleetlink import (
    CommandKind,
    CommandStatus,
    ConnectionStatus,
    FleetConfig,
    FleetConfigError,
    FleetError,
    FleetService,
    Freshness,
    LockState,
    MotionStatus,
    NotConnectedError,
    PriorityTier,
    VehicleStateChanged,
)
from fleetlink.connections import MemoryConnectionStore
from fleetlink.models.connection import ProviderConnection, ProviderVehicle, TokenSet
from fleetlink.models.vehicle import Powertrain
from fleetlink.state.events import EventType, FleetEvent


def _service(harness, store: MemoryConnectionStore | None = None, config: FleetConfig | None = None) -> FleetService:
    return FleetService(
        config or harness.config,
        adapters={"fake": harness.adapter},
        store=store or MemoryConnectionStore(),
        clock=harness.clock.now,
        monotonic=harness.clock.monotonic,
    )


async def _sync(fleet: FleetService) -> None:
    fleet.scheduler.run_due()
    await fleet.scheduler.wait_idle()


@pytest.mark.asyncio
async def test_connect_sync_command_disconnect(harness) -> None:
    harness.adapter.vehicles.append(ProviderVehicle(ref="r-1", powertrain=Powertrain.ELECTRIC))
    harness.adapter.fetch_results.append(harness.state("car-1", lock_state=LockState.LOCKED, battery_percent=80.0))

    async with _service(harness) as fleet:
        events: list[FleetEvent] = []
        fleet.subscribe(events.append, vehicle_ids=["car-1"])

        request = fleet.connect("car-1", "fake", "https://app.test/cb")
        connection = await fleet.complete_connection(request.state, "code")
        assert connection.status == ConnectionStatus.ACTIVE
        await _sync(fleet)

        [snapshot] = fleet.snapshot()
        assert snapshot.vehicle_id == "car-1"
        assert snapshot.freshness == Freshness.FRESH
        assert snapshot.motion == MotionStatus.PARKED
        assert snapshot.connection_status == ConnectionStatus.ACTIVE
        assert snapshot.state is not None and snapshot.state.lock_state == LockState.LOCKED

        command_id = fleet.request_command("car-1", "UNLOCK")
        command = await fleet.wait_for_command(command_id, timeout=5)
        assert command.status == CommandStatus.CONFIRMED
        assert fleet.command_status(command_id).status == CommandStatus.CONFIRMED
        [snapshot] = fleet.snapshot(["car-1"])
        assert snapshot.state is not None and snapshot.state.lock_state == LockState.UNLOCKED

        assert await fleet.disconnect("car-1") is True
        assert fleet.snapshot() == []
        [gone] = fleet.snapshot(["car-1"])
        assert gone.state is None
        assert gone.connection_status is None
        assert gone.freshness == Freshness.UNKNOWN
        with pytest.raises(NotConnectedError):
            fleet.request_command("car-1", CommandKind.LOCK)
        assert await fleet.disconnect("car-1") is False

    types = {e.type for e in events}
    assert {EventType.CONNECTION_STATUS_CHANGED, EventType.STATE_CHANGED, EventType.COMMAND_RESOLVED} <= types
    assert any(isinstance(e, VehicleStateChanged) and e.changes.get("lock_state") == LockState.UNLOCKED for e in events)


@pytest.mark.asyncio
async def test_restored_connections_are_polled(harness) -> None:
    store = MemoryConnectionStore()
    store.save(
        ProviderConnection(
            vehicle_id="car-7",
            provider_id="fake",
            status=ConnectionStatus.ACTIVE,
            provider_vehicle_ref="r-7",
            credentials=TokenSet(access_token="a-7"),
            generation=2,
        )
    )

    async with _service(harness, store) as fleet:
        await _sync(fleet)
        [snapshot] = fleet.snapshot()

    assert harness.adapter.fetch_calls == ["car-7"]
    assert snapshot.vehicle_id == "car-7"
    assert snapshot.state is not None


@pytest.mark.asyncio
async def test_trip_tier_changes_poll_interval(harness) -> None:
    harness.adapter.vehicles.append(ProviderVehicle(ref="r-1"))

    async with _service(harness) as fleet:
        request = fleet.connect("car-1", "fake", "https://app.test/cb")
        await fleet.complete_connection(request.state, "code")
        await _sync(fleet)

        fleet.set_trip_active("car-1", True)
        assert fleet.scheduler.poll_interval("car-1") == harness.config.active_trip_interval
        fleet.set_tier("car-1", PriorityTier.BACKGROUND)
        low, high = harness.config.background_interval
        assert low <= fleet.scheduler.poll_interval("car-1") <= high
        assert fleet.refresh_now("car-1") is True


@pytest.mark.asyncio
async def test_retry_through_service(harness) -> None:
    harness.adapter.vehicles.append(ProviderVehicle(ref="r-1", powertrain=Powertrain.ELECTRIC))
    harness.adapter.poll_results.append(CommandStatus.FAILED)

    async with _service(harness) as fleet:
        request = fleet.connect("car-1", "fake", "https://app.test/cb")
        await fleet.complete_connection(request.state, "code")

        failed = await fleet.wait_for_command(fleet.request_command("car-1", CommandKind.FLASH_LIGHTS), timeout=5)
        retried = await fleet.wait_for_command(fleet.retry_command(failed.id), timeout=5)

    assert failed.status == CommandStatus.FAILED
    assert retried.status == CommandStatus.CONFIRMED
    assert retried.retry_of == failed.id


@pytest.mark.asyncio
async def test_event_stream(harness) -> None:
    harness.adapter.vehicles.append(ProviderVehicle(ref="r-1"))

    async with _service(harness) as fleet:
        stream = fleet.events(event_types=[EventType.CONNECTION_STATUS_CHANGED])
        first = asyncio.create_task(stream.__anext__())
        await asyncio.sleep(0)

        fleet.connect("car-1", "fake", "https://app.test/cb")
        event = await asyncio.wait_for(first, timeout=1)
        await stream.aclose()

    assert event.vehicle_id == "car-1"
    assert event.new == ConnectionStatus.CONNECTING


@pytest.mark.asyncio
async def test_housekeeping_collects_commands(harness) -> None:
    harness.adapter.vehicles.append(ProviderVehicle(ref="r-1", powertrain=Powertrain.ELECTRIC))

    async with _service(harness) as fleet:
        request = fleet.connect("car-1", "fake", "https://app.test/cb")
        await fleet.complete_connection(request.state, "code")
        command_id = fleet.request_command("car-1", CommandKind.HONK_HORN)
        await fleet.wait_for_command(command_id, timeout=5)

        harness.clock.advance(harness.config.command_retention + 1)
        await fleet.housekeeping()

        with pytest.raises(FleetError):
            fleet.command_status(command_id)


@pytest.mark.asyncio
async def test_service_requires_start(harness) -> None:
    fleet = _service(harness)
    with pytest.raises(FleetError, match="not started"):
        fleet.snapshot()


@pytest.mark.asyncio
async def test_file_store_without_key_is_a_config_error(harness, tmp_path) -> None:
    config = FleetConfig(store_path=str(tmp_path / "connections.json"))
    with pytest.raises(FleetConfigError):
        async with _service(harness, config=config):
            pass


@pytest.mark.asyncio
async def test_providers_lists_configured_adapters(harness) -> None:
    async with _service(harness) as fleet:
        assert [p.id for p in fleet.providers()] == ["fake"]

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

import pytest

from fleetlink.connections import (
    ConnectionManager,
    FileConnectionStore,
    MemoryConnectionStore,
    generate_store_key,
)
from fleetlink.exceptions import (
    ConnectionRevokedError,
    FleetConfigError,
    FleetError,
    NotConnectedError,
    ProviderError,
)
from fleetlink.models.connection import ConnectionStatus, ProviderConnection, ProviderVehicle, TokenSet
from fleetlink.models.vehicle import Powertrain
from fleetlink.state.events import ConnectionStatusChanged


def _transitions(harness) -> list[tuple[ConnectionStatus | None, ConnectionStatus | None]]:
    return [(e.old, e.new) for e in harness.events_of(ConnectionStatusChanged)]


@pytest.mark.asyncio
async def test_handshake_activates_connection(harness) -> None:
    harness.adapter.vehicles.append(ProviderVehicle(ref="v-1", vin="VIN1", powertrain=Powertrain.ELECTRIC))

    request = harness.connections.begin_authorization("car-1", "fake", "https://app.test/callback")
    assert request.state in request.url
    pending = harness.connections.get("car-1")
    assert pending is not None and pending.status == ConnectionStatus.CONNECTING
    assert harness.store.load() == []

    connection = await harness.connections.complete_authorization(request.state, "abc")

    assert connection.status == ConnectionStatus.ACTIVE
    assert connection.provider_vehicle_ref == "v-1"
    assert connection.powertrain == Powertrain.ELECTRIC
    assert connection.generation == 1
    assert connection.connected_at == harness.clock.now()
    assert connection.credentials is not None
    assert connection.credentials.access_token.get_secret_value() == "access-abc"
    assert harness.store.load() == [connection]
    assert _transitions(harness) == [
        (None, ConnectionStatus.CONNECTING),
        (ConnectionStatus.CONNECTING, ConnectionStatus.ACTIVE),
    ]


@pytest.mark.asyncio
async def test_authorization_state_is_single_use(harness) -> None:
    harness.adapter.vehicles.append(ProviderVehicle(ref="v-1"))
    request = harness.connections.begin_authorization("car-1", "fake", "https://app.test/callback")
    await harness.connections.complete_authorization(request.state, "abc")

    with pytest.raises(FleetError):
        await harness.connections.complete_authorization(request.state, "abc")


@pytest.mark.asyncio
async def test_vehicle_is_chosen_by_vin(harness) -> None:
    harness.adapter.vehicles.extend(
        [ProviderVehicle(ref="v-1", vin="VIN1"), ProviderVehicle(ref="v-2", vin="VIN2")]
    )
    request = harness.connections.begin_authorization("car-2", "fake", "https://app.test/cb", vin="vin2")

    connection = await harness.connections.complete_authorization(request.state, "abc")

    assert connection.provider_vehicle_ref == "v-2"


@pytest.mark.asyncio
async def test_ambiguous_account_puts_connection_in_error(harness) -> None:
    harness.adapter.vehicles.extend([ProviderVehicle(ref="v-1"), ProviderVehicle(ref="v-2")])
    request = harness.connections.begin_authorization("car-1", "fake", "https://app.test/cb")

    with pytest.raises(FleetError, match="2 vehicles"):
        await harness.connections.complete_authorization(request.state, "abc")

    connection = harness.connections.get("car-1")
    assert connection is not None and connection.status == ConnectionStatus.ERROR
    assert connection.last_error is not None


@pytest.mark.asyncio
async def test_connecting_an_active_vehicle_twice_is_refused(harness) -> None:
    await harness.connect("car-1")
    with pytest.raises(FleetError, match="already connected"):
        harness.connections.begin_authorization("car-1", "fake", "https://app.test/cb")


@pytest.mark.asyncio
async def test_unknown_provider_is_a_config_error(harness) -> None:
    with pytest.raises(FleetConfigError):
        harness.connections.begin_authorization("car-1", "nope", "https://app.test/cb")


@pytest.mark.asyncio
async def test_disconnect_returns_before_remote_revocation(harness, gate) -> None:
    await harness.connect("car-1")
    blocked = gate(None)
    harness.adapter.revoke_result = blocked

    removed = harness.connections.disconnect("car-1")

    assert removed is not None and removed.vehicle_id == "car-1"
    assert harness.connections.get("car-1") is None
    assert harness.connections.generation("car-1") == 2
    assert harness.store.load() == []
    assert _transitions(harness)[-1] == (ConnectionStatus.ACTIVE, None)
    with pytest.raises(NotConnectedError):
        harness.connections.require_active("car-1")

    for _ in range(5):
        await asyncio.sleep(0)
    assert harness.adapter.revoke_calls == 1
    blocked.event.set()
    await harness.connections.wait_revocations()


@pytest.mark.asyncio
async def test_failed_revocation_is_logged_and_not_retried(harness, caplog) -> None:
    await harness.connect("car-1")
    harness.adapter.revoke_result = ProviderError("provider unavailable", provider_id="fake")

    with caplog.at_level(logging.WARNING, logger="fleetlink.connections"):
        harness.connections.disconnect("car-1")
        await harness.connections.wait_revocations()

    assert harness.adapter.revoke_calls == 1
    assert any("not retrying" in r.getMessage() and r.levelno == logging.WARNING for r in caplog.records)


@pytest.mark.asyncio
async def test_revocation_timeout_is_bounded(harness, gate, caplog) -> None:
    manager = ConnectionManager(
        {"fake": harness.adapter},
        harness.bus,
        revocation_timeout=0.01,
        clock=harness.clock.now,
    )
    harness.adapter.vehicles.append(ProviderVehicle(ref="v-1"))
    request = manager.begin_authorization("car-1", "fake", "https://app.test/cb")
    await manager.complete_authorization(request.state, "abc")
    harness.adapter.revoke_result = gate(None)

    with caplog.at_level(logging.WARNING, logger="fleetlink.connections"):
        manager.disconnect("car-1")
        await manager.wait_revocations()

    assert any("timed out" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_revoked_connection_is_not_revoked_again(harness) -> None:
    await harness.connect("car-1")
    harness.connections.mark_revoked("car-1")

    harness.connections.disconnect("car-1")
    await harness.connections.wait_revocations()

    assert harness.adapter.revoke_calls == 0


@pytest.mark.asyncio
async def test_disconnect_drops_pending_handshake(harness) -> None:
    harness.adapter.vehicles.append(ProviderVehicle(ref="v-1"))
    request = harness.connections.begin_authorization("car-1", "fake", "https://app.test/cb")

    harness.connections.disconnect("car-1")

    with pytest.raises(FleetError):
        await harness.connections.complete_authorization(request.state, "abc")
    assert harness.connections.get("car-1") is None


@pytest.mark.asyncio
async def test_generation_grows_across_reconnects(harness) -> None:
    first = await harness.connect("car-1")
    harness.connections.disconnect("car-1")
    second = await harness.connect("car-1")

    assert first.generation == 1
    assert second.generation == 3
    assert harness.connections.generation("car-1") == 3


@pytest.mark.asyncio
async def test_concurrent_auth_failures_share_one_refresh(harness, gate) -> None:
    await harness.connect("car-1")
    blocked = gate(TokenSet(access_token="access-2", refresh_token="refresh-2"))
    harness.adapter.refresh_results.append(blocked)

    first = asyncio.create_task(harness.connections.handle_auth_expired("car-1"))
    second = asyncio.create_task(harness.connections.handle_auth_expired("car-1"))
    for _ in range(5):
        await asyncio.sleep(0)
    during = harness.connections.get("car-1")
    assert during is not None and during.status == ConnectionStatus.TOKEN_EXPIRED

    blocked.event.set()
    results = await asyncio.gather(first, second)

    assert harness.adapter.refresh_calls == 1
    assert all(r is not None and r.status == ConnectionStatus.ACTIVE for r in results)
    connection = harness.connections.get("car-1")
    assert connection is not None and connection.credentials is not None
    assert connection.credentials.access_token.get_secret_value() == "access-2"


@pytest.mark.asyncio
async def test_auth_failure_after_error_does_not_refresh(harness) -> None:
    await harness.connect("car-1")
    harness.connections.mark_error("car-1", "refresh token rejected")

    result = await harness.connections.handle_auth_expired("car-1")

    assert result is not None and result.status == ConnectionStatus.ERROR
    assert harness.adapter.refresh_calls == 0


@pytest.mark.asyncio
async def test_revoked_during_refresh(harness) -> None:
    await harness.connect("car-1")
    harness.adapter.refresh_results.append(ConnectionRevokedError("grant revoked"))

    result = await harness.connections.handle_auth_expired("car-1")

    assert result is not None and result.status == ConnectionStatus.REVOKED


def _stored_connection(harness, *, expires_in: float) -> ProviderConnection:
    return ProviderConnection(
        vehicle_id="car-9",
        provider_id="fake",
        status=ConnectionStatus.ACTIVE,
        provider_vehicle_ref="v-9",
        credentials=TokenSet(
            access_token="old-access",
            refresh_token="old-refresh",
            expires_at=harness.clock.now() + timedelta(seconds=expires_in),
        ),
        generation=4,
    )


@pytest.mark.asyncio
async def test_credentials_close_to_expiry_are_refreshed(harness) -> None:
    harness.store.save(_stored_connection(harness, expires_in=60))
    harness.connections.restore()

    refreshed = await harness.connections.ensure_fresh_credentials("car-9")

    assert harness.adapter.refresh_calls == 1
    assert refreshed is not None and refreshed.status == ConnectionStatus.ACTIVE
    assert refreshed.credentials is not None
    assert refreshed.credentials.access_token.get_secret_value() == "access-refreshed"


@pytest.mark.asyncio
async def test_credentials_far_from_expiry_are_left_alone(harness) -> None:
    harness.store.save(_stored_connection(harness, expires_in=3600))
    harness.connections.restore()

    await harness.connections.ensure_fresh_credentials("car-9")

    assert harness.adapter.refresh_calls == 0


def test_restore_keeps_generation_and_skips_unknown_providers(harness) -> None:
    store = MemoryConnectionStore()
    store.save(_stored_connection(harness, expires_in=3600))
    store.save(ProviderConnection(vehicle_id="car-x", provider_id="gone", status=ConnectionStatus.ACTIVE))
    manager = ConnectionManager({"fake": harness.adapter}, harness.bus, store=store)

    restored = manager.restore()

    assert [c.vehicle_id for c in restored] == ["car-9"]
    assert manager.generation("car-9") == 4
    assert manager.get("car-x") is None


def test_file_store_round_trip_seals_credentials(tmp_path, harness) -> None:
    path = tmp_path / "connections.json"
    key = generate_store_key()
    connection = _stored_connection(harness, expires_in=600)

    FileConnectionStore(path, key).save(connection)

    text = path.read_text(encoding="utf-8")
    assert "old-access" not in text
    assert "old-refresh" not in text
    assert '"car-9"' in text

    [loaded] = FileConnectionStore(path, key).load()
    assert loaded.vehicle_id == "car-9"
    assert loaded.generation == 4
    assert loaded.status == ConnectionStatus.ACTIVE
    assert loaded.credentials is not None
    assert loaded.credentials.access_token.get_secret_value() == "old-access"
    assert loaded.credentials.expires_at == connection.credentials.expires_at

    FileConnectionStore(path, key).delete("car-9")
    assert FileConnectionStore(path, key).load() == []


def test_file_store_with_wrong_key_refuses_to_load(tmp_path, harness) -> None:
    path = tmp_path / "connections.json"
    FileConnectionStore(path, generate_store_key()).save(_stored_connection(harness, expires_in=600))

    with pytest.raises(FleetConfigError):
        FileConnectionStore(path, generate_store_key()).load()


def test_file_store_rejects_malformed_key(tmp_path) -> None:
    with pytest.raises(FleetConfigError):
        FileConnectionStore(tmp_path / "c.json", "not-a-key")

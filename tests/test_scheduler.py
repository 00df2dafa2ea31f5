from __future__ import annotations

import asyncio
import logging

import pytest

from fleetlink.exceptions import (
    AuthExpiredError,
    ConnectionRevokedError,
    NotConnectedError,
    RateLimitedError,
    VehicleUnreachableError,
)
from fleetlink.models.connection import ConnectionStatus
from fleetlink.models.vehicle import Freshness, LockState
from fleetlink.scheduler import PriorityTier
from fleetlink.state.events import ConnectionStatusChanged, VehicleStateChanged
from fleetlink.state.policy import evaluate_freshness


def _freshness(harness, vehicle_id: str = "car-1") -> Freshness:
    connection = harness.connections.get(vehicle_id)
    return evaluate_freshness(
        harness.registry.get(vehicle_id),
        harness.registry.sync_status(vehicle_id),
        connection.status if connection else None,
        now=harness.clock.now(),
        poll_interval=harness.scheduler.poll_interval(vehicle_id),
    )


@pytest.mark.asyncio
async def test_successful_fetch_reconciles_and_reschedules(harness) -> None:
    connection = await harness.connect("car-1")
    harness.adapter.fetch_results.append(harness.state("car-1", lock_state=LockState.LOCKED, odometer_km=12.0))
    harness.scheduler.schedule(connection, PriorityTier.ACTIVE_TRIP)

    await harness.run_jobs()

    state = harness.registry.get("car-1")
    assert state is not None and state.lock_state == LockState.LOCKED
    job = harness.scheduler.job("car-1")
    assert job is not None
    assert job.next_poll_at == pytest.approx(harness.clock.t + 30.0)
    assert _freshness(harness) == Freshness.FRESH
    assert harness.events_of(VehicleStateChanged)


@pytest.mark.asyncio
async def test_idle_interval_is_jittered_within_range(harness, config) -> None:
    connection = await harness.connect("car-1")
    job = harness.scheduler.schedule(connection, PriorityTier.IDLE)
    low, high = config.idle_interval
    assert low <= job.interval <= high


@pytest.mark.asyncio
async def test_higher_tier_runs_first_when_due_together(harness) -> None:
    background = await harness.connect("car-bg")
    trip = await harness.connect("car-trip")
    harness.scheduler.schedule(background, PriorityTier.BACKGROUND)
    harness.scheduler.schedule(trip, PriorityTier.ACTIVE_TRIP)

    await harness.run_jobs()

    assert harness.adapter.fetch_calls == ["car-trip", "car-bg"]


@pytest.mark.asyncio
async def test_repeated_rate_limits_back_off_without_error(harness) -> None:
    connection = await harness.connect("car-1")
    harness.scheduler.schedule(connection, PriorityTier.ACTIVE_TRIP)
    await harness.run_jobs()
    harness.adapter.fetch_results.extend([RateLimitedError("429 Too Many Requests")] * 3)

    delays = []
    for _ in range(3):
        job = harness.scheduler.job("car-1")
        assert job is not None
        harness.clock.t = job.next_poll_at
        await harness.run_jobs()
        delays.append(job.next_poll_at - harness.clock.t)

    assert delays[0] >= 60.0
    assert delays[1] >= 120.0
    assert delays[2] >= 240.0
    assert delays[2] <= 240.0 * 1.1
    assert job.consecutive_rate_limits == 3
    connection = harness.connections.get("car-1")
    assert connection is not None and connection.status == ConnectionStatus.ACTIVE
    assert _freshness(harness) != Freshness.ERROR
    assert harness.registry.sync_status("car-1").last_error is None


@pytest.mark.asyncio
async def test_backoff_honours_ceiling_and_retry_after(harness) -> None:
    connection = await harness.connect("car-1")
    job = harness.scheduler.schedule(connection, PriorityTier.BACKGROUND)
    job.consecutive_rate_limits = 20

    capped = harness.scheduler._backoff(job, None)
    assert capped == harness.adapter.provider.rate_limit.backoff_ceiling
    assert harness.scheduler._backoff(job, 7200.0) == 7200.0


@pytest.mark.asyncio
async def test_success_resets_rate_limit_counter(harness) -> None:
    connection = await harness.connect("car-1")
    harness.scheduler.schedule(connection, PriorityTier.ACTIVE_TRIP)
    harness.adapter.fetch_results.append(RateLimitedError("429"))
    await harness.run_jobs()
    job = harness.scheduler.job("car-1")
    assert job is not None and job.consecutive_rate_limits == 1

    harness.clock.t = job.next_poll_at
    await harness.run_jobs()

    assert job.consecutive_rate_limits == 0


@pytest.mark.asyncio
async def test_refresh_now_leaves_tier_and_schedule_alone(harness) -> None:
    connection = await harness.connect("car-1")
    job = harness.scheduler.schedule(connection, PriorityTier.IDLE, immediate=False)
    next_poll_at = job.next_poll_at

    assert harness.scheduler.refresh_now("car-1") is True
    assert harness.scheduler.refresh_now("car-1") is False
    await harness.run_jobs()

    assert harness.adapter.fetch_calls == ["car-1"]
    assert harness.scheduler.job("car-1") is job
    assert job.tier == PriorityTier.IDLE
    assert job.next_poll_at == next_poll_at
    assert harness.scheduler.refresh_now("car-1") is True


@pytest.mark.asyncio
async def test_refresh_now_for_unknown_vehicle_raises(harness) -> None:
    with pytest.raises(NotConnectedError):
        harness.scheduler.refresh_now("ghost")


@pytest.mark.asyncio
async def test_never_two_fetches_for_one_vehicle(harness, gate) -> None:
    connection = await harness.connect("car-1")
    blocked = gate(None)
    harness.adapter.fetch_results.append(blocked)
    harness.scheduler.schedule(connection, PriorityTier.BACKGROUND)

    assert harness.scheduler.run_due() == 1
    assert harness.scheduler.refresh_now("car-1") is False
    # A tier change makes the vehicle due again while the fetch is still running.
    harness.scheduler.set_tier("car-1", PriorityTier.ACTIVE_TRIP)
    assert harness.scheduler.run_due() == 0

    blocked.event.set()
    await harness.scheduler.wait_idle()
    assert harness.adapter.fetch_calls == ["car-1"]
    assert not harness.scheduler.is_in_flight("car-1")


@pytest.mark.asyncio
async def test_result_from_before_disconnect_is_discarded(harness, gate) -> None:
    connection = await harness.connect("car-1")
    blocked = gate(harness.state("car-1", lock_state=LockState.LOCKED))
    harness.adapter.fetch_results.append(blocked)
    harness.scheduler.schedule(connection, PriorityTier.ACTIVE_TRIP)
    harness.scheduler.run_due()
    await asyncio.sleep(0)

    harness.connections.disconnect("car-1")
    harness.scheduler.remove("car-1")
    harness.registry.remove("car-1")
    await harness.connect("car-1")

    blocked.event.set()
    await harness.scheduler.wait_idle()

    assert harness.registry.get("car-1") is None
    assert harness.events_of(VehicleStateChanged) == []
    assert harness.scheduler.job("car-1") is None


@pytest.mark.asyncio
async def test_expired_token_refreshes_and_retries(harness) -> None:
    connection = await harness.connect("car-1")
    harness.adapter.fetch_results.append(AuthExpiredError("token expired"))
    harness.scheduler.schedule(connection, PriorityTier.IDLE)

    await harness.run_jobs()
    await harness.run_jobs()

    assert harness.adapter.refresh_calls == 1
    assert len(harness.adapter.fetch_calls) == 2
    connection = harness.connections.get("car-1")
    assert connection is not None and connection.status == ConnectionStatus.ACTIVE
    assert connection.credentials is not None
    assert connection.credentials.access_token.get_secret_value() == "access-refreshed"
    assert harness.registry.get("car-1") is not None
    statuses = [(e.old, e.new) for e in harness.events_of(ConnectionStatusChanged)]
    assert (ConnectionStatus.ACTIVE, ConnectionStatus.TOKEN_EXPIRED) in statuses
    assert (ConnectionStatus.TOKEN_EXPIRED, ConnectionStatus.ACTIVE) in statuses


@pytest.mark.asyncio
async def test_failed_refresh_stops_polling_and_reports_error(harness) -> None:
    connection = await harness.connect("car-1")
    harness.adapter.fetch_results.append(AuthExpiredError("token expired"))
    harness.adapter.refresh_results.append(AuthExpiredError("refresh token rejected"))
    harness.scheduler.schedule(connection, PriorityTier.IDLE)

    await harness.run_jobs()

    connection = harness.connections.get("car-1")
    assert connection is not None and connection.status == ConnectionStatus.ERROR
    assert harness.scheduler.job("car-1") is None
    assert _freshness(harness) == Freshness.ERROR


@pytest.mark.asyncio
async def test_revoked_access_stops_polling(harness) -> None:
    connection = await harness.connect("car-1")
    harness.adapter.fetch_results.append(ConnectionRevokedError("owner revoked access"))
    harness.scheduler.schedule(connection, PriorityTier.IDLE)

    await harness.run_jobs()

    connection = harness.connections.get("car-1")
    assert connection is not None and connection.status == ConnectionStatus.REVOKED
    assert harness.scheduler.job("car-1") is None
    assert harness.registry.sync_status("car-1").error_is_permanent
    assert _freshness(harness) == Freshness.ERROR


@pytest.mark.asyncio
async def test_unreachable_vehicle_goes_stale_not_error(harness) -> None:
    connection = await harness.connect("car-1")
    harness.scheduler.schedule(connection, PriorityTier.ACTIVE_TRIP)
    await harness.run_jobs()
    harness.adapter.fetch_results.append(VehicleUnreachableError("vehicle asleep"))

    harness.clock.advance(30.0)
    await harness.run_jobs()
    harness.clock.advance(45.0)

    sync = harness.registry.sync_status("car-1")
    assert sync.last_error == "vehicle asleep"
    assert not sync.error_is_permanent
    assert harness.scheduler.job("car-1") is not None
    assert _freshness(harness) == Freshness.STALE


@pytest.mark.asyncio
async def test_provider_concurrency_is_bounded(harness, gate) -> None:
    release = asyncio.Event()
    for n in range(5):
        connection = await harness.connect(f"car-{n}")
        harness.adapter.fetch_results.append(gate(None, release))
        harness.scheduler.schedule(connection, PriorityTier.IDLE)

    assert harness.scheduler.run_due() == 5
    for _ in range(20):
        await asyncio.sleep(0)
    assert harness.adapter.concurrent_fetches == 2

    release.set()
    await harness.scheduler.wait_idle()
    assert harness.adapter.max_concurrent_fetches == 2
    assert len(harness.adapter.fetch_calls) == 5


@pytest.mark.asyncio
async def test_set_tier_for_unknown_vehicle_raises(harness) -> None:
    with pytest.raises(NotConnectedError):
        harness.scheduler.set_tier("ghost", PriorityTier.ACTIVE_TRIP)


@pytest.mark.asyncio
async def test_background_loop_runs_due_jobs(harness) -> None:
    connection = await harness.connect("car-1")
    harness.scheduler.schedule(connection, PriorityTier.IDLE)

    harness.scheduler.start()
    for _ in range(20):
        await asyncio.sleep(0)
    await harness.scheduler.wait_idle()
    await harness.scheduler.stop()

    assert harness.adapter.fetch_calls == ["car-1"]
    assert harness.scheduler.job("car-1") is None


@pytest.mark.asyncio
async def test_unexpected_fetch_error_keeps_vehicle_scheduled(harness, caplog) -> None:
    connection = await harness.connect("car-1")
    harness.adapter.fetch_results.append(ValueError("malformed payload"))
    harness.scheduler.schedule(connection, PriorityTier.IDLE)

    with caplog.at_level(logging.ERROR, logger="fleetlink.scheduler"):
        await harness.run_jobs()

    sync = harness.registry.sync_status("car-1")
    assert not sync.syncing
    assert sync.last_error is not None and "malformed payload" in sync.last_error
    assert any(r.exc_info for r in caplog.records)
    job = harness.scheduler.job("car-1")
    assert job is not None and job.next_poll_at > harness.clock.t

    harness.clock.advance(10_000)
    assert harness.scheduler.run_due() == 1
    await harness.scheduler.wait_idle()
    assert harness.registry.get("car-1") is not None


@pytest.mark.asyncio
async def test_credentials_rejected_after_refresh_mark_connection_error(harness) -> None:
    connection = await harness.connect("car-1")
    harness.adapter.fetch_results.extend(AuthExpiredError("insufficient scope") for _ in range(5))
    harness.scheduler.schedule(connection, PriorityTier.IDLE)

    for _ in range(5):
        await harness.run_jobs()

    assert harness.adapter.refresh_calls == 1
    assert len(harness.adapter.fetch_calls) == 2
    connection = harness.connections.get("car-1")
    assert connection is not None and connection.status == ConnectionStatus.ERROR
    assert connection.last_error is not None and "after refresh" in connection.last_error
    assert harness.scheduler.job("car-1") is None
    assert _freshness(harness) == Freshness.ERROR

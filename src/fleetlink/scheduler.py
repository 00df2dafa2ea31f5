"""Telemetry sync scheduler.

Jobs live in a heap ordered by ``(next_poll_at, tier rank, sequence)``.
Rescheduling pushes a fresh heap entry and bumps the job's sequence; stale
entries are skipped when popped. Fetches run as tasks bounded by one
semaphore per provider, and never more than one per vehicle.
"""

from __future__ import annotations

import asyncio
import dataclasses
import heapq
import itertools
import logging
import random
import time
from collections.abc import Callable
from enum import StrEnum

from fleetlink.config import FleetConfig
from fleetlink.connections import ConnectionManager
from fleetlink.exceptions import (
    AuthExpiredError,
    ConnectionRevokedError,
    NotConnectedError,
    ProviderError,
    ProviderTransportError,
    RateLimitedError,
    VehicleUnreachableError,
)
from fleetlink.models.connection import ConnectionStatus, ProviderConnection
from fleetlink.state.reconcile import Reconciler
from fleetlink.state.registry import VehicleStateRegistry

_logger = logging.getLogger(__name__)

#: Longest the scheduler loop sleeps without re-checking the heap.
_MAX_IDLE_SLEEP = 60.0


class PriorityTier(StrEnum):
    ACTIVE_TRIP = "active_trip"
    IDLE = "idle"
    BACKGROUND = "background"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]


_TIER_RANK = {PriorityTier.ACTIVE_TRIP: 0, PriorityTier.IDLE: 1, PriorityTier.BACKGROUND: 2}
#: Heap rank of manual refresh jobs; ahead of every tier at the same instant.
_ONE_OFF_RANK = -1


@dataclasses.dataclass(eq=False)
class SyncJob:
    vehicle_id: str
    provider_id: str
    tier: PriorityTier
    generation: int
    interval: float
    next_poll_at: float = 0.0
    one_off: bool = False
    consecutive_rate_limits: int = 0
    #: Set when this fetch retries right after a credential refresh.
    auth_retry: bool = False
    seq: int = 0

    @property
    def rank(self) -> int:
        return _ONE_OFF_RANK if self.one_off else self.tier.rank


class SyncScheduler:
    """Decides which vehicle to poll next and runs the fetches."""

    def __init__(
        self,
        connections: ConnectionManager,
        registry: VehicleStateRegistry,
        reconciler: Reconciler,
        config: FleetConfig,
        *,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._connections = connections
        self._registry = registry
        self._reconciler = reconciler
        self._config = config
        self._rng = rng or random.Random()
        self._clock = clock
        self._heap: list[tuple[float, int, int, SyncJob]] = []
        self._seq = itertools.count(1)
        self._jobs: dict[str, SyncJob] = {}
        self._one_offs: dict[str, SyncJob] = {}
        self._in_flight: set[str] = set()
        self._semaphores: dict[str, asyncio.Semaphore] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._loop_task: asyncio.Task[None] | None = None
        self._wakeup = asyncio.Event()

    # ------------------------------------------------------------------
    # Intervals
    # ------------------------------------------------------------------

    def _interval_for(self, tier: PriorityTier, provider_id: str) -> float:
        if tier == PriorityTier.ACTIVE_TRIP:
            interval = self._config.active_trip_interval
        elif tier == PriorityTier.IDLE:
            interval = self._rng.uniform(*self._config.idle_interval)
        else:
            interval = self._rng.uniform(*self._config.background_interval)
        return max(interval, self._connections.adapter(provider_id).provider.rate_limit.min_interval)

    def _backoff(self, job: SyncJob, retry_after: float | None) -> float:
        ceiling = self._connections.adapter(job.provider_id).provider.rate_limit.backoff_ceiling
        n = job.consecutive_rate_limits
        delay = job.interval * 2**n * (1 + self._rng.uniform(0, self._config.backoff_jitter))
        delay = min(delay, ceiling)
        if retry_after is not None and retry_after > delay:
            delay = retry_after
        return delay

    def _semaphore(self, provider_id: str) -> asyncio.Semaphore:
        semaphore = self._semaphores.get(provider_id)
        if semaphore is None:
            limit = self._connections.adapter(provider_id).provider.rate_limit.max_concurrency
            semaphore = self._semaphores[provider_id] = asyncio.Semaphore(limit)
        return semaphore

    # ------------------------------------------------------------------
    # Job management
    # ------------------------------------------------------------------

    def _push(self, job: SyncJob, at: float) -> None:
        job.next_poll_at = at
        job.seq = next(self._seq)
        heapq.heappush(self._heap, (at, job.rank, job.seq, job))
        self._wakeup.set()

    def _is_current(self, job: SyncJob) -> bool:
        table = self._one_offs if job.one_off else self._jobs
        return table.get(job.vehicle_id) is job

    def schedule(
        self,
        connection: ProviderConnection,
        tier: PriorityTier = PriorityTier.IDLE,
        *,
        immediate: bool = True,
    ) -> SyncJob:
        """Create (or replace) the steady-state job for a connected vehicle."""
        job = SyncJob(
            vehicle_id=connection.vehicle_id,
            provider_id=connection.provider_id,
            tier=tier,
            generation=connection.generation,
            interval=self._interval_for(tier, connection.provider_id),
        )
        self._jobs[connection.vehicle_id] = job
        self._push(job, self._clock() if immediate else self._clock() + job.interval)
        _logger.debug("Scheduled %s (%s, every %.0fs)", connection.vehicle_id, tier, job.interval)
        return job

    def remove(self, vehicle_id: str) -> None:
        """Cancel all pending jobs for *vehicle_id*; an in-flight fetch is left to finish."""
        self._jobs.pop(vehicle_id, None)
        self._one_offs.pop(vehicle_id, None)

    def set_tier(self, vehicle_id: str, tier: PriorityTier) -> None:
        job = self._jobs.get(vehicle_id)
        if job is None:
            raise NotConnectedError(vehicle_id)
        if job.tier == tier:
            return
        job.tier = tier
        job.interval = self._interval_for(tier, job.provider_id)
        self._push(job, min(job.next_poll_at, self._clock() + job.interval))
        _logger.info("Vehicle %s now polled as %s", vehicle_id, tier)

    def refresh_now(self, vehicle_id: str) -> bool:
        """Queue a one-off fetch ahead of everything else.

        Returns ``False`` when one is already queued or running. The
        steady-state job keeps its tier and schedule.
        """
        steady = self._jobs.get(vehicle_id)
        if steady is None:
            raise NotConnectedError(vehicle_id)
        if vehicle_id in self._one_offs or vehicle_id in self._in_flight:
            return False
        job = dataclasses.replace(steady, one_off=True, consecutive_rate_limits=0)
        self._one_offs[vehicle_id] = job
        self._push(job, self._clock())
        return True

    def job(self, vehicle_id: str) -> SyncJob | None:
        return self._jobs.get(vehicle_id)

    def poll_interval(self, vehicle_id: str) -> float:
        job = self._jobs.get(vehicle_id)
        if job is None:
            return self._config.idle_interval[1]
        return job.interval

    def is_in_flight(self, vehicle_id: str) -> bool:
        return vehicle_id in self._in_flight

    # ------------------------------------------------------------------
    # Running jobs
    # ------------------------------------------------------------------

    def run_due(self) -> int:
        """Start a fetch for every due job; returns how many were started."""
        now = self._clock()
        started = 0
        while self._heap and self._heap[0][0] <= now:
            _at, _rank, seq, job = heapq.heappop(self._heap)
            if job.seq != seq or not self._is_current(job):
                continue
            if job.vehicle_id in self._in_flight:
                if job.one_off:
                    del self._one_offs[job.vehicle_id]
                else:
                    _logger.debug("Fetch for %s still in flight; skipping this poll", job.vehicle_id)
                    self._push(job, now + job.interval)
                continue
            self._in_flight.add(job.vehicle_id)
            task = asyncio.get_running_loop().create_task(self._run_job(job))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started += 1
        return started

    def _finish(self, job: SyncJob, *, delay: float | None = None) -> None:
        """Drop a one-off job, or put a steady job back at ``now + delay``."""
        if job.one_off:
            if self._one_offs.get(job.vehicle_id) is job:
                del self._one_offs[job.vehicle_id]
            return
        if not self._is_current(job):
            return
        if delay is None:
            job.interval = self._interval_for(job.tier, job.provider_id)
            delay = job.interval
        self._push(job, self._clock() + delay)

    def _discard(self, job: SyncJob) -> None:
        table = self._one_offs if job.one_off else self._jobs
        if table.get(job.vehicle_id) is job:
            del table[job.vehicle_id]

    def _drop(self, vehicle_id: str) -> None:
        self.remove(vehicle_id)
        _logger.info("Stopped polling %s", vehicle_id)

    def _stale(self, job: SyncJob) -> bool:
        return self._connections.generation(job.vehicle_id) != job.generation

    async def _run_job(self, job: SyncJob) -> None:
        vehicle_id = job.vehicle_id
        try:
            connection = self._connections.get(vehicle_id)
            if connection is None or connection.generation != job.generation:
                self._discard(job)
                return
            if connection.status == ConnectionStatus.TOKEN_EXPIRED:
                self._finish(job)
                return
            if not connection.status.is_schedulable:
                self._drop(vehicle_id)
                return
            await self._fetch(job, connection)
        finally:
            self._in_flight.discard(vehicle_id)

    async def _fetch(self, job: SyncJob, connection: ProviderConnection) -> None:
        vehicle_id = job.vehicle_id
        adapter = self._connections.adapter(job.provider_id)
        steady = self._jobs.get(vehicle_id)
        retried, job.auth_retry = job.auth_retry, False
        self._registry.begin_sync(vehicle_id)
        try:
            async with self._semaphore(job.provider_id):
                refreshed = await self._connections.ensure_fresh_credentials(vehicle_id)
                state = await adapter.fetch_state(refreshed or connection)
        except RateLimitedError as exc:
            if self._stale(job):
                return
            self._registry.end_sync(vehicle_id)
            target = steady or job
            target.consecutive_rate_limits += 1
            delay = self._backoff(target, exc.retry_after)
            _logger.info(
                "Rate limited by %s polling %s (%d in a row); next poll in %.0fs",
                job.provider_id,
                vehicle_id,
                target.consecutive_rate_limits,
                delay,
            )
            if job.one_off:
                self._finish(job)
            if steady is not None and self._is_current(steady):
                self._push(steady, self._clock() + delay)
        except AuthExpiredError as exc:
            if self._stale(job):
                return
            if retried:
                reason = f"credentials rejected again after refresh: {exc}"
                _logger.warning("Giving up on %s: %s", vehicle_id, reason)
                self._registry.end_sync(vehicle_id, error=reason, permanent=True)
                self._connections.mark_error(vehicle_id, reason)
                self._drop(vehicle_id)
                return
            self._registry.end_sync(vehicle_id, error=str(exc))
            try:
                updated = await self._connections.handle_auth_expired(vehicle_id)
            except NotConnectedError:
                return
            if updated is not None and updated.status == ConnectionStatus.ACTIVE:
                job.auth_retry = True
                self._finish(job, delay=0.0)
            else:
                self._drop(vehicle_id)
        except ConnectionRevokedError as exc:
            if self._stale(job):
                return
            self._registry.end_sync(vehicle_id, error=str(exc), permanent=True)
            self._connections.mark_revoked(vehicle_id, str(exc))
            self._drop(vehicle_id)
        except NotConnectedError:
            _logger.debug("Connection for %s superseded during fetch", vehicle_id)
        except (VehicleUnreachableError, ProviderTransportError) as exc:
            if self._stale(job):
                return
            _logger.debug("Vehicle %s not reachable: %s", vehicle_id, exc)
            self._registry.end_sync(vehicle_id, error=str(exc))
            self._finish(job)
        except ProviderError as exc:
            if self._stale(job):
                return
            _logger.warning("Sync of %s via %s failed: %s", vehicle_id, job.provider_id, exc)
            self._registry.end_sync(vehicle_id, error=str(exc), permanent=True)
            self._finish(job)
        except Exception as exc:
            _logger.exception("Unexpected error syncing %s via %s", vehicle_id, job.provider_id)
            if self._stale(job):
                return
            self._registry.end_sync(vehicle_id, error=f"unexpected error: {exc}")
            self._finish(job)
        else:
            if self._stale(job):
                _logger.debug("Discarding state for %s from generation %d", vehicle_id, job.generation)
                return
            self._reconciler.apply(state)
            self._registry.end_sync(vehicle_id)
            if steady is not None:
                steady.consecutive_rate_limits = 0
            self._finish(job)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _seconds_until_next(self) -> float:
        while self._heap:
            at, _rank, seq, job = self._heap[0]
            if job.seq == seq and self._is_current(job):
                return max(0.0, at - self._clock())
            heapq.heappop(self._heap)
        return _MAX_IDLE_SLEEP

    async def _run(self) -> None:
        while True:
            self._wakeup.clear()
            self.run_due()
            timeout = min(self._seconds_until_next(), _MAX_IDLE_SLEEP)
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            except TimeoutError:
                pass

    def start(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.get_running_loop().create_task(self._run())
            _logger.info("Sync scheduler started with %d job(s)", len(self._jobs))

    async def wait_idle(self) -> None:
        """Wait until every started fetch has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        tasks = list(self._tasks)
        if self._loop_task is not None:
            tasks.append(self._loop_task)
            self._loop_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._jobs.clear()
        self._one_offs.clear()
        self._heap.clear()
        _logger.info("Sync scheduler stopped")

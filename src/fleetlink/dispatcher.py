"""Remote command dispatch.

Commands for one vehicle run strictly one at a time in submission order: each
vehicle has a FIFO of command ids drained by a single worker task. Commands
for different vehicles run concurrently.

While a command is in flight its intended effect is shown through an
optimistic registry overlay. The overlay becomes authoritative on
CONFIRMED, is rolled back on FAILED, and is rolled back with the field marked
unconfirmed on TIMED_OUT: a timed-out command may still have executed.
Nothing is retried automatically; :meth:`CommandDispatcher.retry` is the
explicit caller action.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any, TypeVar

from fleetlink.config import FleetConfig
from fleetlink.connections import ConnectionManager
from fleetlink.exceptions import (
    AuthExpiredError,
    CommandNotRetryableError,
    ConnectionRevokedError,
    NotConnectedError,
    ProviderError,
    ProviderTransportError,
    RateLimitedError,
    UnknownCommandError,
    UnsupportedCapabilityError,
    VehicleUnreachableError,
)
from fleetlink.models._base import utcnow
from fleetlink.models.command import COMMAND_EFFECTS, COMMAND_TIMEOUTS, Command, CommandKind, CommandStatus
from fleetlink.models.connection import ConnectionStatus, ProviderConnection
from fleetlink.models.vehicle import Powertrain
from fleetlink.providers.base import ProviderAdapter
from fleetlink.state.events import CommandResolved, EventBus
from fleetlink.state.reconcile import Reconciler
from fleetlink.state.registry import VehicleStateRegistry

_logger = logging.getLogger(__name__)

T = TypeVar("T")

_Outcome = tuple[CommandStatus, str | None]


class _Deadline(Exception):
    """The command's confirmation window closed during an adapter call."""


class CommandDispatcher:
    def __init__(
        self,
        connections: ConnectionManager,
        registry: VehicleStateRegistry,
        reconciler: Reconciler,
        bus: EventBus,
        config: FleetConfig,
        *,
        timeouts: dict[CommandKind, float] | None = None,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._connections = connections
        self._registry = registry
        self._reconciler = reconciler
        self._bus = bus
        self._config = config
        self._timeouts = {**COMMAND_TIMEOUTS, **(timeouts or {})}
        self._clock = clock
        self._monotonic = monotonic
        self._sleep = sleep
        self._commands: dict[str, Command] = {}
        self._queues: dict[str, deque[str]] = {}
        self._workers: dict[str, asyncio.Task[None]] = {}
        self._in_flight: dict[str, str] = {}
        self._cancelled: set[str] = set()
        self._resolved: dict[str, asyncio.Event] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, command_id: str) -> Command:
        command = self._commands.get(command_id)
        if command is None:
            raise UnknownCommandError(f"Unknown command {command_id}")
        return command

    def commands_for(self, vehicle_id: str) -> list[Command]:
        commands = [c for c in self._commands.values() if c.vehicle_id == vehicle_id]
        return sorted(commands, key=lambda c: c.requested_at)

    def in_flight(self, vehicle_id: str) -> Command | None:
        command_id = self._in_flight.get(vehicle_id)
        return self._commands.get(command_id) if command_id else None

    async def wait(self, command_id: str, timeout: float | None = None) -> Command:
        """Wait until *command_id* reaches a terminal status."""
        command = self.get(command_id)
        if not command.is_terminal:
            await asyncio.wait_for(self._resolved[command_id].wait(), timeout=timeout)
        return self.get(command_id)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def _powertrain(self, connection: ProviderConnection) -> Powertrain:
        state = self._registry.get_confirmed(connection.vehicle_id)
        if state is not None and state.powertrain != Powertrain.UNKNOWN:
            return state.powertrain
        return connection.powertrain

    def submit(self, vehicle_id: str, kind: CommandKind) -> Command:
        """Validate and enqueue a command; returns the PENDING command immediately.

        Raises :class:`NotConnectedError` or :class:`UnsupportedCapabilityError`
        synchronously; in both cases nothing is sent and nothing is queued.
        """
        return self._enqueue(vehicle_id, CommandKind(kind))

    def retry(self, command_id: str) -> Command:
        """Re-issue a FAILED or TIMED_OUT command as a new, linked command."""
        original = self.get(command_id)
        if original.status not in (CommandStatus.FAILED, CommandStatus.TIMED_OUT):
            raise CommandNotRetryableError(f"Command {command_id} is {original.status}; only failed commands retry")
        return self._enqueue(
            original.vehicle_id,
            original.kind,
            retry_of=original.id,
            retry_count=original.retry_count + 1,
        )

    def _enqueue(
        self,
        vehicle_id: str,
        kind: CommandKind,
        *,
        retry_of: str | None = None,
        retry_count: int = 0,
    ) -> Command:
        connection = self._connections.require_active(vehicle_id)
        adapter = self._connections.adapter(connection.provider_id)
        adapter.check_command(connection, kind, self._powertrain(connection))

        command = Command(
            id=uuid.uuid4().hex,
            vehicle_id=vehicle_id,
            kind=kind,
            requested_at=self._clock(),
            retry_of=retry_of,
            retry_count=retry_count,
        )
        self._commands[command.id] = command
        self._resolved[command.id] = asyncio.Event()
        self._queues.setdefault(vehicle_id, deque()).append(command.id)
        _logger.debug("Queued %s %s for %s", command.id, kind, vehicle_id)

        if vehicle_id not in self._workers:
            worker = asyncio.get_running_loop().create_task(self._drain(vehicle_id))
            self._workers[vehicle_id] = worker
        return command

    # ------------------------------------------------------------------
    # Per-vehicle worker
    # ------------------------------------------------------------------

    async def _drain(self, vehicle_id: str) -> None:
        try:
            # Re-read every time: cancel_vehicle drops the queue.
            while queue := self._queues.get(vehicle_id):
                command = self._commands.get(queue.popleft())
                if command is None or command.is_terminal:
                    continue
                await self._execute(command)
        except Exception:
            _logger.exception("Command worker for %s crashed", vehicle_id)
        finally:
            self._workers.pop(vehicle_id, None)
            if not self._queues.get(vehicle_id):
                self._queues.pop(vehicle_id, None)

    async def _execute(self, command: Command) -> None:
        vehicle_id = command.vehicle_id
        connection = self._connections.get(vehicle_id)
        if connection is None or connection.status != ConnectionStatus.ACTIVE:
            self._resolve(command.id, CommandStatus.FAILED, "not connected")
            return

        generation = connection.generation
        adapter = self._connections.adapter(connection.provider_id)
        self._in_flight[vehicle_id] = command.id
        self._update(command.id, status=CommandStatus.IN_FLIGHT)
        self._reconciler.apply_optimistic(vehicle_id, command.id, COMMAND_EFFECTS[command.kind])
        _logger.info("Sending %s to %s via %s", command.kind, vehicle_id, connection.provider_id)

        deadline = self._monotonic() + self._timeouts[command.kind]
        try:
            status, reason = await self._run(command, connection, adapter, deadline)
        except Exception:
            # The request may already have reached the vehicle.
            _logger.exception("Unexpected error running %s on %s", command.kind, vehicle_id)
            status, reason = CommandStatus.TIMED_OUT, "unexpected adapter error"
        finally:
            self._in_flight.pop(vehicle_id, None)

        if command.id in self._cancelled or self._connections.generation(vehicle_id) != generation:
            self._cancelled.discard(command.id)
            status, reason = CommandStatus.TIMED_OUT, "disconnected"
        self._resolve(command.id, status, reason)

    async def _call(self, awaitable: Awaitable[T], deadline: float) -> T:
        remaining = deadline - self._monotonic()
        if remaining <= 0:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise _Deadline
        try:
            return await asyncio.wait_for(awaitable, timeout=remaining)
        except TimeoutError as exc:
            raise _Deadline from exc

    async def _reauthorize(self, vehicle_id: str) -> ProviderConnection | None:
        try:
            updated = await self._connections.handle_auth_expired(vehicle_id)
        except NotConnectedError:
            return None
        if updated is None or updated.status != ConnectionStatus.ACTIVE:
            return None
        return updated

    async def _run(
        self,
        command: Command,
        connection: ProviderConnection,
        adapter: ProviderAdapter,
        deadline: float,
    ) -> _Outcome:
        vehicle_id = command.vehicle_id
        reauthorized = False
        backoff = self._config.command_poll_initial

        # Submission. Until the provider accepts the request the vehicle has
        # not been contacted, so failures here are definite.
        while True:
            try:
                provider_command_id = await self._call(
                    adapter.send_command(connection, command.kind, powertrain=self._powertrain(connection)),
                    deadline,
                )
                break
            except _Deadline:
                return CommandStatus.TIMED_OUT, "no response from provider"
            except RateLimitedError as exc:
                wait = max(exc.retry_after or 0.0, backoff)
                if self._monotonic() + wait >= deadline:
                    return CommandStatus.FAILED, "rate limited by provider"
                _logger.debug("Rate limited sending %s to %s; retrying in %.1fs", command.kind, vehicle_id, wait)
                await self._sleep(wait)
                backoff = min(backoff * 2, self._config.command_poll_max)
            except AuthExpiredError:
                updated = None if reauthorized else await self._reauthorize(vehicle_id)
                if updated is None:
                    return CommandStatus.FAILED, "authorization expired"
                reauthorized = True
                connection = updated
            except ConnectionRevokedError as exc:
                self._connections.mark_revoked(vehicle_id, str(exc))
                return CommandStatus.FAILED, "access revoked"
            except ProviderTransportError as exc:
                # The request may have reached the provider.
                _logger.warning("Sending %s to %s: %s", command.kind, vehicle_id, exc)
                return CommandStatus.TIMED_OUT, "no response from provider"
            except (UnsupportedCapabilityError, VehicleUnreachableError, ProviderError) as exc:
                return CommandStatus.FAILED, str(exc)

        self._update(command.id, provider_command_id=provider_command_id)

        # Confirmation polling with bounded exponential backoff.
        backoff = self._config.command_poll_initial
        while command.id not in self._cancelled:
            try:
                status = await self._call(adapter.poll_command_status(connection, provider_command_id), deadline)
            except _Deadline:
                break
            except AuthExpiredError:
                updated = None if reauthorized else await self._reauthorize(vehicle_id)
                if updated is None:
                    return CommandStatus.TIMED_OUT, "authorization lost before confirmation"
                reauthorized = True
                connection = updated
                continue
            except (RateLimitedError, VehicleUnreachableError, ProviderTransportError) as exc:
                _logger.debug("Polling %s on %s: %s", command.kind, vehicle_id, exc)
                status = CommandStatus.IN_FLIGHT
            except ProviderError as exc:
                _logger.warning("Cannot confirm %s on %s: %s", command.kind, vehicle_id, exc)
                return CommandStatus.TIMED_OUT, str(exc)

            if status.is_terminal:
                reason = "rejected by provider" if status == CommandStatus.FAILED else None
                return status, reason

            remaining = deadline - self._monotonic()
            if remaining <= 0:
                break
            await self._sleep(min(backoff, remaining))
            backoff = min(backoff * 2, self._config.command_poll_max)

        return CommandStatus.TIMED_OUT, f"no confirmation within {self._timeouts[command.kind]:.0f}s"

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _update(self, command_id: str, **update: Any) -> Command:
        command = self._commands[command_id]
        if command.is_terminal:
            return command
        command = command.model_copy(update=update)
        self._commands[command_id] = command
        return command

    def _resolve(self, command_id: str, status: CommandStatus, reason: str | None = None) -> Command:
        current = self._commands[command_id]
        if current.is_terminal:
            return current
        command = self._update(command_id, status=status, resolved_at=self._clock(), failure_reason=reason)
        vehicle_id = command.vehicle_id

        if status == CommandStatus.CONFIRMED:
            self._reconciler.confirm_command(vehicle_id, command_id)
        else:
            self._reconciler.rollback_command(
                vehicle_id,
                command_id,
                mark_unconfirmed=status == CommandStatus.TIMED_OUT and reason != "disconnected",
            )

        log = _logger.info if status == CommandStatus.CONFIRMED else _logger.warning
        log("%s on %s resolved %s%s", command.kind, vehicle_id, status, f" ({reason})" if reason else "")
        self._bus.publish(CommandResolved(vehicle_id=vehicle_id, command=command))
        event = self._resolved.get(command_id)
        if event is not None:
            event.set()
        return command

    # ------------------------------------------------------------------
    # Cancellation and housekeeping
    # ------------------------------------------------------------------

    def cancel_vehicle(self, vehicle_id: str) -> None:
        """Fail queued commands; the in-flight one resolves TIMED_OUT when its call returns."""
        queue = self._queues.pop(vehicle_id, None)
        for command_id in queue or ():
            self._resolve(command_id, CommandStatus.FAILED, "cancelled")
        in_flight = self._in_flight.get(vehicle_id)
        if in_flight is not None:
            self._cancelled.add(in_flight)

    def collect_garbage(self) -> int:
        """Forget terminal commands older than the retention window."""
        cutoff = self._clock() - timedelta(seconds=self._config.command_retention)
        expired = [
            command_id
            for command_id, command in self._commands.items()
            if command.is_terminal and command.resolved_at is not None and command.resolved_at < cutoff
        ]
        for command_id in expired:
            del self._commands[command_id]
            self._resolved.pop(command_id, None)
        if expired:
            _logger.debug("Collected %d resolved command(s)", len(expired))
        return len(expired)

    async def aclose(self) -> None:
        workers = list(self._workers.values())
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        for command in list(self._commands.values()):
            if command.status == CommandStatus.PENDING:
                self._resolve(command.id, CommandStatus.FAILED, "cancelled")
            elif command.status == CommandStatus.IN_FLIGHT:
                self._resolve(command.id, CommandStatus.TIMED_OUT, "shutdown")
        self._queues.clear()

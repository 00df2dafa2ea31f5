"""Remote command models."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import Field

from fleetlink.exceptions import CommandFailedError, CommandTimedOutError
from fleetlink.models._base import FleetModel
from fleetlink.models.vehicle import ChargingState, EngineState, LockState


class CommandKind(enum.StrEnum):
    LOCK = "LOCK"
    UNLOCK = "UNLOCK"
    START_CHARGE = "START_CHARGE"
    STOP_CHARGE = "STOP_CHARGE"
    START_ENGINE = "START_ENGINE"
    STOP_ENGINE = "STOP_ENGINE"
    HONK_HORN = "HONK_HORN"
    FLASH_LIGHTS = "FLASH_LIGHTS"


class CommandStatus(enum.StrEnum):
    PENDING = "PENDING"
    IN_FLIGHT = "IN_FLIGHT"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({CommandStatus.CONFIRMED, CommandStatus.FAILED, CommandStatus.TIMED_OUT})

#: Commands that only make sense on an electric vehicle.
CHARGE_COMMANDS: frozenset[CommandKind] = frozenset({CommandKind.START_CHARGE, CommandKind.STOP_CHARGE})

#: Intended post-command values, applied optimistically while the command is in flight.
COMMAND_EFFECTS: dict[CommandKind, dict[str, Any]] = {
    CommandKind.LOCK: {"lock_state": LockState.LOCKED},
    CommandKind.UNLOCK: {"lock_state": LockState.UNLOCKED},
    CommandKind.START_CHARGE: {"charging_state": ChargingState.CHARGING},
    CommandKind.STOP_CHARGE: {"charging_state": ChargingState.NOT_CHARGING},
    CommandKind.START_ENGINE: {"engine_state": EngineState.RUNNING},
    CommandKind.STOP_ENGINE: {"engine_state": EngineState.OFF},
    CommandKind.HONK_HORN: {},
    CommandKind.FLASH_LIGHTS: {},
}

#: Seconds to wait for a provider confirmation before resolving TIMED_OUT.
COMMAND_TIMEOUTS: dict[CommandKind, float] = {
    CommandKind.LOCK: 30.0,
    CommandKind.UNLOCK: 30.0,
    CommandKind.START_CHARGE: 60.0,
    CommandKind.STOP_CHARGE: 60.0,
    CommandKind.START_ENGINE: 60.0,
    CommandKind.STOP_ENGINE: 60.0,
    CommandKind.HONK_HORN: 15.0,
    CommandKind.FLASH_LIGHTS: 15.0,
}


class Command(FleetModel):
    """A remote command request and its lifecycle.

    Terminal states (CONFIRMED, FAILED, TIMED_OUT) are never changed again.
    TIMED_OUT is ambiguous: the vehicle may or may not have executed it.
    """

    id: str
    vehicle_id: str
    kind: CommandKind
    status: CommandStatus = CommandStatus.PENDING
    requested_at: datetime
    resolved_at: datetime | None = None
    retry_count: int = Field(default=0, ge=0)
    retry_of: str | None = None
    provider_command_id: str | None = None
    failure_reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def raise_for_status(self) -> None:
        """Raise if the command resolved without confirmation."""
        if self.status == CommandStatus.FAILED:
            raise CommandFailedError(f"{self.kind} on {self.vehicle_id} failed: {self.failure_reason or 'unknown'}")
        if self.status == CommandStatus.TIMED_OUT:
            raise CommandTimedOutError(
                f"{self.kind} on {self.vehicle_id} did not confirm; check the vehicle before retrying"
            )

"""Provider configuration models (immutable, loaded at startup)."""

from __future__ import annotations

import enum

from pydantic import Field

from fleetlink.models._base import FleetModel
from fleetlink.models.command import CHARGE_COMMANDS, CommandKind
from fleetlink.models.vehicle import Powertrain


class ConnectType(enum.StrEnum):
    OAUTH = "oauth"
    DEVICE = "device"


class TelemetryField(enum.StrEnum):
    LOCATION = "location"
    SPEED = "speed_kph"
    FUEL = "fuel_percent"
    BATTERY = "battery_percent"
    RANGE = "range_km"
    ODOMETER = "odometer_km"
    TIRE_PRESSURES = "tire_pressures"
    LOCK_STATE = "lock_state"
    ENGINE_STATE = "engine_state"
    CHARGING_STATE = "charging_state"


class CapabilitySet(FleetModel):
    commands: frozenset[CommandKind] = frozenset()
    telemetry: frozenset[TelemetryField] = frozenset()

    def supports(self, kind: CommandKind) -> bool:
        return kind in self.commands

    def for_powertrain(self, powertrain: Powertrain) -> CapabilitySet:
        """Narrow provider capabilities to what a vehicle of *powertrain* can do."""
        if powertrain != Powertrain.COMBUSTION:
            return self
        return CapabilitySet(
            commands=self.commands - CHARGE_COMMANDS,
            telemetry=self.telemetry - {TelemetryField.BATTERY, TelemetryField.CHARGING_STATE},
        )


class RateLimitPolicy(FleetModel):
    max_concurrency: int = Field(default=4, ge=1)
    """Concurrent provider calls allowed (size of the provider semaphore)."""
    backoff_ceiling: float = Field(default=3600.0, gt=0)
    """Upper bound for rate-limit backoff, in seconds."""
    min_interval: float = Field(default=0.0, ge=0)
    """Shortest allowed poll interval for one vehicle, in seconds."""


class Provider(FleetModel):
    id: str
    name: str
    description: str = ""
    connect_type: ConnectType = ConnectType.OAUTH
    capabilities: CapabilitySet = Field(default_factory=CapabilitySet)
    rate_limit: RateLimitPolicy = Field(default_factory=RateLimitPolicy)

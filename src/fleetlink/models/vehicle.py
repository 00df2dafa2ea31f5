"""Canonical, provider independent vehicle state."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field, model_validator

from fleetlink.models._base import FleetEnum, FleetModel


class LockState(FleetEnum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    UNKNOWN = "unknown"


class EngineState(FleetEnum):
    RUNNING = "running"
    OFF = "off"
    UNKNOWN = "unknown"


class ChargingState(FleetEnum):
    CHARGING = "charging"
    NOT_CHARGING = "not_charging"
    FULLY_CHARGED = "fully_charged"
    UNPLUGGED = "unplugged"
    UNKNOWN = "unknown"


class Powertrain(FleetEnum):
    """Vehicle class; decides between fuel and battery level."""

    ELECTRIC = "electric"
    COMBUSTION = "combustion"
    UNKNOWN = "unknown"


class Freshness(FleetEnum):
    """Read-time telemetry lifecycle: UNKNOWN -> SYNCING -> FRESH | STALE | ERROR."""

    SYNCING = "syncing"
    FRESH = "fresh"
    STALE = "stale"
    ERROR = "error"
    UNKNOWN = "unknown"


class MotionStatus(FleetEnum):
    MOVING = "moving"
    PARKED = "parked"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class Location(FleetModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    heading: float | None = Field(default=None, ge=0, lt=360)
    """Compass heading in degrees, when the provider reports one."""


class TirePressures(FleetModel):
    """Tire pressures in kPa."""

    front_left: float | None = None
    front_right: float | None = None
    rear_left: float | None = None
    rear_right: float | None = None


class CanonicalVehicleState(FleetModel):
    """Normalized telemetry for one vehicle.

    ``None`` means "not reported". Only the state registry stores these and
    only the reconciler and the command dispatcher produce new versions.
    """

    vehicle_id: str
    provider_id: str
    location: Location | None = None
    speed_kph: float | None = Field(default=None, ge=0)
    fuel_percent: float | None = Field(default=None, ge=0, le=100)
    battery_percent: float | None = Field(default=None, ge=0, le=100)
    range_km: float | None = Field(default=None, ge=0)
    odometer_km: float | None = Field(default=None, ge=0)
    tire_pressures: TirePressures | None = None
    lock_state: LockState | None = None
    engine_state: EngineState | None = None
    charging_state: ChargingState | None = None
    last_observed_at: datetime
    version: int = 0

    @model_validator(mode="after")
    def _fuel_xor_battery(self) -> CanonicalVehicleState:
        if self.fuel_percent is not None and self.battery_percent is not None:
            raise ValueError("fuel_percent and battery_percent are mutually exclusive")
        return self

    @property
    def powertrain(self) -> Powertrain:
        if self.battery_percent is not None or self.charging_state is not None:
            return Powertrain.ELECTRIC
        if self.fuel_percent is not None:
            return Powertrain.COMBUSTION
        return Powertrain.UNKNOWN

    @property
    def is_locked(self) -> bool | None:
        if self.lock_state is None or self.lock_state == LockState.UNKNOWN:
            return None
        return self.lock_state == LockState.LOCKED


#: Telemetry field names that reconciliation diffs field-by-field.
TELEMETRY_FIELDS: tuple[str, ...] = tuple(
    name for name in CanonicalVehicleState.model_fields if name not in {"vehicle_id", "provider_id", "version"}
)


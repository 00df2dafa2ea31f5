"""Public models for fleetlink."""

from fleetlink.models.command import (
    CHARGE_COMMANDS,
    COMMAND_EFFECTS,
    COMMAND_TIMEOUTS,
    Command,
    CommandKind,
    CommandStatus,
)
from fleetlink.models.connection import (
    AuthorizationRequest,
    ConnectionStatus,
    ProviderConnection,
    ProviderVehicle,
    TokenSet,
)
from fleetlink.models.provider import (
    CapabilitySet,
    ConnectType,
    Provider,
    RateLimitPolicy,
    TelemetryField,
)
from fleetlink.models.snapshot import VehicleSnapshot
from fleetlink.models.vehicle import (
    TELEMETRY_FIELDS,
    CanonicalVehicleState,
    ChargingState,
    EngineState,
    Freshness,
    Location,
    LockState,
    MotionStatus,
    Powertrain,
    TirePressures,
)

__all__ = [
    "CHARGE_COMMANDS",
    "COMMAND_EFFECTS",
    "COMMAND_TIMEOUTS",
    "TELEMETRY_FIELDS",
    "AuthorizationRequest",
    "CanonicalVehicleState",
    "CapabilitySet",
    "ChargingState",
    "Command",
    "CommandKind",
    "CommandStatus",
    "ConnectType",
    "ConnectionStatus",
    "EngineState",
    "Freshness",
    "Location",
    "LockState",
    "MotionStatus",
    "Powertrain",
    "Provider",
    "ProviderConnection",
    "ProviderVehicle",
    "RateLimitPolicy",
    "TelemetryField",
    "TirePressures",
    "TokenSet",
    "VehicleSnapshot",
]

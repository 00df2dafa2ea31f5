"""fleetlink - canonical vehicle telemetry and remote commands across telematics providers."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("fleetlink")
except PackageNotFoundError:
    __version__ = "0+local"
from fleetlink.config import FleetConfig, Geofence, ProviderSettings
from fleetlink.exceptions import (
    AuthExpiredError,
    CommandFailedError,
    CommandNotRetryableError,
    CommandTimedOutError,
    ConnectionRevokedError,
    FleetConfigError,
    FleetError,
    NotConnectedError,
    ProviderError,
    ProviderTransportError,
    RateLimitedError,
    UnknownCommandError,
    UnsupportedCapabilityError,
    VehicleUnreachableError,
)
from fleetlink.fleet import FleetService
from fleetlink.models import (
    CanonicalVehicleState,
    Command,
    CommandKind,
    CommandStatus,
    ConnectionStatus,
    Freshness,
    LockState,
    MotionStatus,
    Powertrain,
    ProviderConnection,
    VehicleSnapshot,
)
from fleetlink.scheduler import PriorityTier
from fleetlink.state import (
    CommandResolved,
    ConnectionStatusChanged,
    EventType,
    VehicleAlert,
    VehicleStateChanged,
)

__all__ = [
    "__version__",
    "AuthExpiredError",
    "CanonicalVehicleState",
    "Command",
    "CommandFailedError",
    "CommandKind",
    "CommandNotRetryableError",
    "CommandResolved",
    "CommandStatus",
    "CommandTimedOutError",
    "ConnectionRevokedError",
    "ConnectionStatus",
    "ConnectionStatusChanged",
    "EventType",
    "FleetConfig",
    "FleetConfigError",
    "FleetError",
    "FleetService",
    "Freshness",
    "Geofence",
    "LockState",
    "MotionStatus",
    "NotConnectedError",
    "Powertrain",
    "PriorityTier",
    "ProviderConnection",
    "ProviderError",
    "ProviderSettings",
    "ProviderTransportError",
    "RateLimitedError",
    "UnknownCommandError",
    "UnsupportedCapabilityError",
    "VehicleAlert",
    "VehicleSnapshot",
    "VehicleStateChanged",
]

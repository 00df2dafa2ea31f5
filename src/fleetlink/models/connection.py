"""Provider connection models."""

from __future__ import annotations

import enum
from datetime import datetime, timedelta

from pydantic import Field, SecretStr

from fleetlink.models._base import FleetModel
from fleetlink.models.vehicle import Powertrain


class ConnectionStatus(enum.StrEnum):
    CONNECTING = "CONNECTING"
    ACTIVE = "ACTIVE"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    REVOKED = "REVOKED"
    ERROR = "ERROR"

    @property
    def is_schedulable(self) -> bool:
        return self == ConnectionStatus.ACTIVE


class TokenSet(FleetModel):
    """Opaque credential material; only the owning adapter interprets it."""

    access_token: SecretStr
    refresh_token: SecretStr | None = None
    expires_at: datetime | None = None
    scope: tuple[str, ...] = ()

    def expires_within(self, now: datetime, margin: timedelta) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at - now <= margin


class ProviderVehicle(FleetModel):
    """A vehicle as listed by a provider during the authorization handshake."""

    ref: str
    vin: str | None = None
    make: str | None = None
    model: str | None = None
    year: int | None = None
    powertrain: Powertrain = Powertrain.UNKNOWN


class ProviderConnection(FleetModel):
    """Binds one vehicle to one provider.

    Owned by the connection manager; everybody else gets read-only copies.
    """

    vehicle_id: str
    provider_id: str
    status: ConnectionStatus = ConnectionStatus.CONNECTING
    provider_vehicle_ref: str | None = None
    credentials: TokenSet | None = None
    connected_at: datetime | None = None
    generation: int = Field(default=0, ge=0)
    powertrain: Powertrain = Powertrain.UNKNOWN
    last_error: str | None = None


class AuthorizationRequest(FleetModel):
    """Returned by ``connect``: where to send the vehicle owner."""

    vehicle_id: str
    provider_id: str
    url: str
    state: str

"""Bouncie OBD-II dongle adapter (telemetry only).

Bouncie reports in imperial units and cannot send commands to the vehicle.
Its access tokens carry no refresh token: once a token is rejected the owner
has to go through the authorization handshake again.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from urllib.parse import urlencode

from pydantic import Field, ValidationError

from fleetlink._constants import miles_to_km
from fleetlink.exceptions import (
    AuthExpiredError,
    ConnectionRevokedError,
    ProviderError,
    RateLimitedError,
    VehicleUnreachableError,
)
from fleetlink.models._base import ProviderModel, Timestamp
from fleetlink.models.connection import ProviderConnection, ProviderVehicle, TokenSet
from fleetlink.models.provider import CapabilitySet, ConnectType, Provider, RateLimitPolicy, TelemetryField
from fleetlink.models.vehicle import CanonicalVehicleState, EngineState, Location, Powertrain
from fleetlink.providers.base import ProviderAdapter, parse_retry_after

_logger = logging.getLogger(__name__)

API_BASE_URL = "https://api.bouncie.dev/v1"
AUTH_BASE_URL = "https://auth.bouncie.com"


class _Coordinates(ProviderModel):
    lat: float
    lon: float
    heading: float | None = None


class _Stats(ProviderModel):
    location: _Coordinates | None = None
    fuel_level: float | None = None
    odometer: float | None = None
    speed: float | None = None
    is_running: bool | None = None
    last_updated: Timestamp = None


class _Model(ProviderModel):
    make: str | None = None
    name: str | None = None
    year: int | None = None


class _Vehicle(ProviderModel):
    imei: str
    vin: str | None = None
    model: _Model = Field(default_factory=_Model)
    stats: _Stats = Field(default_factory=_Stats)


class BouncieAdapter(ProviderAdapter):
    PROVIDER = Provider(
        id="bouncie",
        name="Bouncie",
        description="OBD-II connected car adapter",
        connect_type=ConnectType.DEVICE,
        capabilities=CapabilitySet(
            commands=frozenset(),
            telemetry=frozenset(
                {
                    TelemetryField.LOCATION,
                    TelemetryField.SPEED,
                    TelemetryField.FUEL,
                    TelemetryField.ODOMETER,
                    TelemetryField.ENGINE_STATE,
                }
            ),
        ),
        rate_limit=RateLimitPolicy(max_concurrency=2, backoff_ceiling=3600.0, min_interval=60.0),
    )

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._api = (self._settings.api_base_url or API_BASE_URL).rstrip("/")
        self._auth = (self._settings.auth_base_url or AUTH_BASE_URL).rstrip("/")

    def _raise_for_status(self, status: int, headers: Any, what: str) -> None:
        if 200 <= status < 300:
            return
        message = f"bouncie {what}: HTTP {status}"
        if status == 401:
            raise AuthExpiredError(message, provider_id=self.id, status_code=status)
        if status == 403:
            raise ConnectionRevokedError(message, provider_id=self.id, status_code=status)
        if status == 429:
            raise RateLimitedError(
                message, provider_id=self.id, status_code=status, retry_after=parse_retry_after(headers)
            )
        raise ProviderError(message, provider_id=self.id, status_code=status)

    async def _get_vehicles(self, token: str, imei: str | None = None) -> list[_Vehicle]:
        response = await self._transport.request(
            "GET",
            f"{self._api}/vehicles",
            provider_id=self.id,
            headers={"authorization": token},
            params={"imei": imei} if imei else None,
        )
        self._raise_for_status(response.status, response.headers, "vehicles")
        if not isinstance(response.body, list):
            raise self._unexpected(response, "vehicles")
        try:
            return [_Vehicle.model_validate(item) for item in response.body]
        except ValidationError as exc:
            raise ProviderError("bouncie vehicle payload malformed", provider_id=self.id, code="MALFORMED") from exc

    # ------------------------------------------------------------------
    # Authorization handshake
    # ------------------------------------------------------------------

    def authorization_url(self, state: str, redirect_uri: str) -> str:
        query = {
            "client_id": self._settings.client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "state": state,
        }
        return f"{self._auth}/dialog/authorize?{urlencode(query)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        return await self._token_request(
            f"{self._auth}/oauth/token",
            json_body={
                "client_id": self._settings.client_id,
                "client_secret": self._settings.client_secret,
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
            },
        )

    async def refresh_credentials(self, tokens: TokenSet) -> TokenSet:
        raise AuthExpiredError(
            "bouncie tokens cannot be refreshed; re-authorize the device",
            provider_id=self.id,
            code="NO_REFRESH",
        )

    async def list_vehicles(self, tokens: TokenSet) -> list[ProviderVehicle]:
        vehicles = await self._get_vehicles(self._bearer(tokens))
        return [
            ProviderVehicle(
                ref=v.imei,
                vin=v.vin,
                make=v.model.make,
                model=v.model.name,
                year=v.model.year,
                powertrain=Powertrain.COMBUSTION if v.stats.fuel_level is not None else Powertrain.UNKNOWN,
            )
            for v in vehicles
        ]

    async def revoke(self, connection: ProviderConnection) -> None:
        # Access is removed from the Bouncie app; there is no revocation endpoint.
        _logger.debug("bouncie has no revocation endpoint; %s dropped locally", connection.vehicle_id)

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------

    async def _fetch_state(self, connection: ProviderConnection) -> CanonicalVehicleState:
        vehicles = await self._get_vehicles(self._bearer(connection), connection.provider_vehicle_ref)
        match = next((v for v in vehicles if v.imei == connection.provider_vehicle_ref), None)
        if match is None:
            raise VehicleUnreachableError(
                f"bouncie device {connection.provider_vehicle_ref} not reporting",
                provider_id=self.id,
                code="DEVICE_NOT_FOUND",
            )
        try:
            return self._state_from_stats(connection, match.stats)
        except ValueError as exc:
            raise ProviderError(
                f"bouncie stats for {connection.provider_vehicle_ref} malformed: {exc}",
                provider_id=self.id,
                code="MALFORMED",
            ) from exc

    def _state_from_stats(self, connection: ProviderConnection, stats: _Stats) -> CanonicalVehicleState:
        observed: datetime = stats.last_updated or self._clock()
        location = None
        if stats.location is not None:
            heading = stats.location.heading
            location = Location(
                lat=stats.location.lat,
                lng=stats.location.lon,
                heading=heading % 360 if heading is not None else None,
            )
        engine = None
        if stats.is_running is not None:
            engine = EngineState.RUNNING if stats.is_running else EngineState.OFF
        return CanonicalVehicleState(
            vehicle_id=connection.vehicle_id,
            provider_id=self.id,
            location=location,
            speed_kph=miles_to_km(stats.speed) if stats.speed is not None else None,
            fuel_percent=stats.fuel_level,
            odometer_km=miles_to_km(stats.odometer) if stats.odometer is not None else None,
            engine_state=engine,
            last_observed_at=observed,
        )

"""Smartcar connected-car API adapter.

Telemetry is read with one ``/batch`` request; each sub-response carries its
own status code and an ``sc-data-age`` header with the time the OEM observed
the value. Commands are acknowledged synchronously: a 200 response means the
vehicle executed the action.

Units: Smartcar is queried in metric, so distances are km and tire pressures
kPa; battery and fuel levels are 0..1 fractions.
"""

from __future__ import annotations

import logging
import secrets
from typing import Any
from urllib.parse import urlencode

from pydantic import Field, ValidationError

from fleetlink._constants import fraction_to_percent
from fleetlink._transport import HttpResponse
from fleetlink.exceptions import (
    AuthExpiredError,
    ConnectionRevokedError,
    ProviderError,
    RateLimitedError,
    VehicleUnreachableError,
)
from fleetlink.models._base import ProviderModel, parse_timestamp
from fleetlink.models.command import CommandKind, CommandStatus
from fleetlink.models.connection import ProviderConnection, ProviderVehicle, TokenSet
from fleetlink.models.provider import CapabilitySet, ConnectType, Provider, RateLimitPolicy, TelemetryField
from fleetlink.models.vehicle import (
    CanonicalVehicleState,
    ChargingState,
    EngineState,
    Location,
    LockState,
    Powertrain,
    TirePressures,
)
from fleetlink.providers.base import ProviderAdapter, SyncCommandResults, parse_retry_after

_logger = logging.getLogger(__name__)

API_BASE_URL = "https://api.smartcar.com/v2.0"
AUTH_BASE_URL = "https://auth.smartcar.com"
CONNECT_URL = "https://connect.smartcar.com/oauth/authorize"
MANAGEMENT_PATH = "/application"

DEFAULT_SCOPE: tuple[str, ...] = (
    "read_vehicle_info",
    "read_vin",
    "read_location",
    "read_odometer",
    "read_battery",
    "read_charge",
    "read_fuel",
    "read_tires",
    "read_security",
    "control_security",
    "control_charge",
)

# Batch paths and the canonical field each one feeds.
_BATCH_PATHS: tuple[str, ...] = (
    "/location",
    "/odometer",
    "/battery",
    "/fuel",
    "/tires/pressure",
    "/charge",
    "/security",
    "/engine",
)

_COMMAND_ROUTES: dict[CommandKind, tuple[str, str]] = {
    CommandKind.LOCK: ("/security", "LOCK"),
    CommandKind.UNLOCK: ("/security", "UNLOCK"),
    CommandKind.START_CHARGE: ("/charge", "START"),
    CommandKind.STOP_CHARGE: ("/charge", "STOP"),
    CommandKind.START_ENGINE: ("/engine", "START"),
    CommandKind.STOP_ENGINE: ("/engine", "STOP"),
    CommandKind.HONK_HORN: ("/horn", "HONK"),
    CommandKind.FLASH_LIGHTS: ("/lights", "FLASH"),
}

# Error ``type`` values that mean "the car could not be reached right now".
_UNREACHABLE_TYPES = frozenset({"VEHICLE_STATE", "UPSTREAM", "CONNECTED_SERVICES_ACCOUNT"})


# ------------------------------------------------------------------
# Wire models (adapter private)
# ------------------------------------------------------------------


class _Error(ProviderModel):
    type: str = "SERVER"
    code: str | None = None
    description: str = ""


class _Location(ProviderModel):
    latitude: float
    longitude: float


class _Odometer(ProviderModel):
    distance: float


class _Level(ProviderModel):
    percent_remaining: float | None = None
    range: float | None = None


class _Tires(ProviderModel):
    front_left: float | None = None
    front_right: float | None = None
    back_left: float | None = None
    back_right: float | None = None


class _Charge(ProviderModel):
    is_plugged_in: bool | None = None
    state: str | None = None


class _Security(ProviderModel):
    is_locked: bool | None = None


class _Engine(ProviderModel):
    is_running: bool | None = None


class _BatchItem(ProviderModel):
    path: str
    code: int
    body: dict[str, Any] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)


class _VehicleInfo(ProviderModel):
    id: str
    make: str | None = None
    model: str | None = None
    year: int | None = None


_CHARGE_STATES: dict[str, ChargingState] = {
    "CHARGING": ChargingState.CHARGING,
    "FULLY_CHARGED": ChargingState.FULLY_CHARGED,
    "NOT_CHARGING": ChargingState.NOT_CHARGING,
}


class SmartcarAdapter(ProviderAdapter):
    PROVIDER = Provider(
        id="smartcar",
        name="Smartcar",
        description="Connected Car API",
        connect_type=ConnectType.OAUTH,
        capabilities=CapabilitySet(
            commands=frozenset(CommandKind),
            telemetry=frozenset(
                {
                    TelemetryField.LOCATION,
                    TelemetryField.FUEL,
                    TelemetryField.BATTERY,
                    TelemetryField.RANGE,
                    TelemetryField.ODOMETER,
                    TelemetryField.TIRE_PRESSURES,
                    TelemetryField.LOCK_STATE,
                    TelemetryField.ENGINE_STATE,
                    TelemetryField.CHARGING_STATE,
                }
            ),
        ),
        rate_limit=RateLimitPolicy(max_concurrency=8, backoff_ceiling=1800.0),
    )

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._api = (self._settings.api_base_url or API_BASE_URL).rstrip("/")
        self._auth = (self._settings.auth_base_url or AUTH_BASE_URL).rstrip("/")
        self._results = SyncCommandResults()

    # ------------------------------------------------------------------
    # Error mapping
    # ------------------------------------------------------------------

    def _raise_for_response(self, status: int, body: Any, headers: dict[str, str], what: str) -> None:
        if 200 <= status < 300:
            return
        try:
            error = _Error.model_validate(body if isinstance(body, dict) else {})
        except ValidationError:
            error = _Error()
        message = f"smartcar {what}: {error.type}/{error.code or status} {error.description}".strip()
        kwargs: dict[str, Any] = {"provider_id": self.id, "code": error.code or error.type, "status_code": status}
        if status == 429 or error.type == "RATE_LIMIT":
            raise RateLimitedError(message, retry_after=parse_retry_after(headers), **kwargs)
        if status == 401 or error.type == "AUTHENTICATION":
            raise AuthExpiredError(message, **kwargs)
        if status == 403 or error.type == "PERMISSION":
            raise ConnectionRevokedError(message, **kwargs)
        if error.type in _UNREACHABLE_TYPES:
            raise VehicleUnreachableError(message, **kwargs)
        raise ProviderError(message, **kwargs)

    def _check(self, response: HttpResponse, what: str) -> dict[str, Any]:
        self._raise_for_response(response.status, response.body, dict(response.headers), what)
        return response.body if isinstance(response.body, dict) else {}

    def _headers(self, token: str) -> dict[str, str]:
        return {"authorization": f"Bearer {token}", "sc-unit-system": "metric"}

    # ------------------------------------------------------------------
    # Authorization handshake
    # ------------------------------------------------------------------

    def authorization_url(self, state: str, redirect_uri: str) -> str:
        query = {
            "response_type": "code",
            "client_id": self._settings.client_id,
            "redirect_uri": redirect_uri,
            "scope": " ".join(self._settings.scope or DEFAULT_SCOPE),
            "state": state,
            "mode": "live",
        }
        return f"{CONNECT_URL}?{urlencode(query)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        return await self._token_request(
            f"{self._auth}/oauth/token",
            form={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "client_id": self._settings.client_id,
                "client_secret": self._settings.client_secret,
            },
        )

    async def refresh_credentials(self, tokens: TokenSet) -> TokenSet:
        if tokens.refresh_token is None:
            raise AuthExpiredError("smartcar connection has no refresh token", provider_id=self.id)
        return await self._token_request(
            f"{self._auth}/oauth/token",
            form={
                "grant_type": "refresh_token",
                "refresh_token": tokens.refresh_token.get_secret_value(),
                "client_id": self._settings.client_id,
                "client_secret": self._settings.client_secret,
            },
            previous=tokens,
        )

    async def list_vehicles(self, tokens: TokenSet) -> list[ProviderVehicle]:
        headers = self._headers(self._bearer(tokens))
        listing = self._check(
            await self._transport.request("GET", f"{self._api}/vehicles", provider_id=self.id, headers=headers),
            "list vehicles",
        )
        vehicles: list[ProviderVehicle] = []
        for vehicle_id in listing.get("vehicles", []):
            info = _VehicleInfo.model_validate(
                self._check(
                    await self._transport.request(
                        "GET", f"{self._api}/vehicles/{vehicle_id}", provider_id=self.id, headers=headers
                    ),
                    "vehicle info",
                )
            )
            vin_body = self._check(
                await self._transport.request(
                    "GET", f"{self._api}/vehicles/{vehicle_id}/vin", provider_id=self.id, headers=headers
                ),
                "vehicle vin",
            )
            vehicles.append(
                ProviderVehicle(
                    ref=info.id,
                    vin=vin_body.get("vin"),
                    make=info.make,
                    model=info.model,
                    year=info.year,
                )
            )
        return vehicles

    async def revoke(self, connection: ProviderConnection) -> None:
        response = await self._transport.request(
            "DELETE",
            f"{self._api}/vehicles/{connection.provider_vehicle_ref}{MANAGEMENT_PATH}",
            provider_id=self.id,
            headers=self._headers(self._bearer(connection)),
        )
        self._check(response, "revoke")

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------

    async def _fetch_state(self, connection: ProviderConnection) -> CanonicalVehicleState:
        response = await self._transport.request(
            "POST",
            f"{self._api}/vehicles/{connection.provider_vehicle_ref}/batch",
            provider_id=self.id,
            headers=self._headers(self._bearer(connection)),
            json_body={"requests": [{"path": path} for path in _BATCH_PATHS]},
        )
        body = self._check(response, "batch")
        try:
            items = [_BatchItem.model_validate(item) for item in body.get("responses", [])]
            return self._state_from_batch(connection, items)
        except (ValueError, TypeError) as exc:
            raise ProviderError(
                f"smartcar batch payload for {connection.vehicle_id} malformed: {exc}",
                provider_id=self.id,
                code="MALFORMED",
            ) from exc

    def _state_from_batch(self, connection: ProviderConnection, items: list[_BatchItem]) -> CanonicalVehicleState:
        fields: dict[str, Any] = {}
        observed = []
        failures: list[_BatchItem] = []

        for item in items:
            if item.code != 200:
                failures.append(item)
                continue
            age = item.headers.get("sc-data-age")
            if age:
                observed.append(parse_timestamp(age))
            self._apply_item(item, fields, connection.powertrain)

        if not fields and failures:
            # Nothing usable: surface the most significant sub-error.
            for item in sorted(failures, key=lambda i: (i.code != 429, i.code != 401, i.code != 403)):
                self._raise_for_response(item.code, item.body, item.headers, item.path)
        for item in failures:
            if item.code in (401, 429):
                self._raise_for_response(item.code, item.body, item.headers, item.path)
            _logger.debug("smartcar %s unavailable for %s: HTTP %d", item.path, connection.vehicle_id, item.code)

        stamps = [ts for ts in observed if ts is not None]
        return CanonicalVehicleState(
            vehicle_id=connection.vehicle_id,
            provider_id=self.id,
            last_observed_at=max(stamps) if stamps else self._clock(),
            **fields,
        )

    @staticmethod
    def _apply_item(item: _BatchItem, fields: dict[str, Any], powertrain: Powertrain) -> None:
        if item.path == "/location":
            loc = _Location.model_validate(item.body)
            fields["location"] = Location(lat=loc.latitude, lng=loc.longitude)
        elif item.path == "/odometer":
            fields["odometer_km"] = _Odometer.model_validate(item.body).distance
        elif item.path == "/battery":
            battery = _Level.model_validate(item.body)
            if battery.percent_remaining is not None and powertrain != Powertrain.COMBUSTION:
                fields["battery_percent"] = fraction_to_percent(battery.percent_remaining)
            if battery.range is not None:
                fields["range_km"] = battery.range
        elif item.path == "/fuel":
            fuel = _Level.model_validate(item.body)
            # Hybrids report both; the battery level wins for the canonical state.
            if fuel.percent_remaining is not None and "battery_percent" not in fields:
                fields["fuel_percent"] = fraction_to_percent(fuel.percent_remaining)
            if fuel.range is not None and "range_km" not in fields:
                fields["range_km"] = fuel.range
        elif item.path == "/tires/pressure":
            tires = _Tires.model_validate(item.body)
            fields["tire_pressures"] = TirePressures(
                front_left=tires.front_left,
                front_right=tires.front_right,
                rear_left=tires.back_left,
                rear_right=tires.back_right,
            )
        elif item.path == "/charge" and powertrain != Powertrain.COMBUSTION:
            charge = _Charge.model_validate(item.body)
            if charge.is_plugged_in is False:
                fields["charging_state"] = ChargingState.UNPLUGGED
            elif charge.state is not None:
                fields["charging_state"] = _CHARGE_STATES.get(charge.state, ChargingState.UNKNOWN)
        elif item.path == "/security":
            security = _Security.model_validate(item.body)
            if security.is_locked is not None:
                fields["lock_state"] = LockState.LOCKED if security.is_locked else LockState.UNLOCKED
        elif item.path == "/engine":
            engine = _Engine.model_validate(item.body)
            if engine.is_running is not None:
                fields["engine_state"] = EngineState.RUNNING if engine.is_running else EngineState.OFF

        if "fuel_percent" in fields and "battery_percent" in fields:
            del fields["fuel_percent"]

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def _send_command(self, connection: ProviderConnection, kind: CommandKind) -> str:
        path, action = _COMMAND_ROUTES[kind]
        response = await self._transport.request(
            "POST",
            f"{self._api}/vehicles/{connection.provider_vehicle_ref}{path}",
            provider_id=self.id,
            headers=self._headers(self._bearer(connection)),
            json_body={"action": action},
        )
        body = self._check(response, f"{kind} command")
        provider_command_id = secrets.token_hex(12)
        status = CommandStatus.CONFIRMED if body.get("status", "success") == "success" else CommandStatus.FAILED
        self._results.record(provider_command_id, status)
        _logger.debug("smartcar %s on %s -> %s", kind, connection.vehicle_id, status)
        return provider_command_id

    async def _poll_command_status(self, connection: ProviderConnection, provider_command_id: str) -> CommandStatus:
        status = self._results.pop(provider_command_id)
        if status is None:
            return await super()._poll_command_status(connection, provider_command_id)
        return status

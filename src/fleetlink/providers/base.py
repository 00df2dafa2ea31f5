"""Provider adapter interface.

An adapter translates one provider's proprietary API into the canonical
operations used by the rest of the library. Provider wire shapes, units and
error codes never cross this boundary: adapters return canonical models and
raise the shared exceptions from :mod:`fleetlink.exceptions`.
"""

from __future__ import annotations

import abc
import logging
from collections import OrderedDict
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any, ClassVar

from pydantic import Field, ValidationError

from fleetlink._transport import HttpResponse, Transport
from fleetlink.config import ProviderSettings
from fleetlink.exceptions import (
    AuthExpiredError,
    ProviderError,
    RateLimitedError,
    UnsupportedCapabilityError,
)
from fleetlink.models._base import ProviderModel, utcnow
from fleetlink.models.command import CommandKind, CommandStatus
from fleetlink.models.connection import ProviderConnection, ProviderVehicle, TokenSet
from fleetlink.models.provider import CapabilitySet, Provider, RateLimitPolicy
from fleetlink.models.vehicle import CanonicalVehicleState, Powertrain

_logger = logging.getLogger(__name__)

#: Provider command ids remembered by adapters whose commands confirm synchronously.
_MAX_REMEMBERED_RESULTS = 1024


class OAuthTokenResponse(ProviderModel):
    """Standard OAuth 2.0 token endpoint response."""

    access_token: str = Field(validation_alias="access_token")
    refresh_token: str | None = Field(default=None, validation_alias="refresh_token")
    expires_in: float | None = Field(default=None, validation_alias="expires_in")
    scope: str | None = None

    def to_token_set(self, now: datetime, *, previous: TokenSet | None = None) -> TokenSet:
        refresh = self.refresh_token
        if refresh is None and previous is not None and previous.refresh_token is not None:
            refresh = previous.refresh_token.get_secret_value()
        return TokenSet(
            access_token=self.access_token,
            refresh_token=refresh,
            expires_at=now + timedelta(seconds=self.expires_in) if self.expires_in is not None else None,
            scope=tuple(self.scope.split()) if self.scope else (),
        )


def parse_retry_after(headers: Mapping[str, str]) -> float | None:
    """Read a ``Retry-After`` header given in seconds."""
    value = headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class ProviderAdapter(abc.ABC):
    """Base class for provider adapters.

    Subclasses set :attr:`PROVIDER` and implement the ``_``-prefixed hooks.
    The public methods enforce the capability contract so an unsupported
    command never reaches the provider.
    """

    PROVIDER: ClassVar[Provider]

    def __init__(
        self,
        transport: Transport,
        settings: ProviderSettings | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._transport = transport
        self._settings = settings or ProviderSettings()
        self._clock = clock
        self.provider = self._with_overrides(self.PROVIDER, self._settings)

    @staticmethod
    def _with_overrides(provider: Provider, settings: ProviderSettings) -> Provider:
        policy = provider.rate_limit
        updates: dict[str, Any] = {}
        if settings.max_concurrency is not None:
            updates["max_concurrency"] = settings.max_concurrency
        if settings.backoff_ceiling is not None:
            updates["backoff_ceiling"] = settings.backoff_ceiling
        if not updates:
            return provider
        return provider.model_copy(update={"rate_limit": RateLimitPolicy(**{**policy.model_dump(), **updates})})

    @property
    def id(self) -> str:
        return self.provider.id

    def capabilities(self) -> CapabilitySet:
        return self.provider.capabilities

    def capabilities_for(self, powertrain: Powertrain) -> CapabilitySet:
        return self.capabilities().for_powertrain(powertrain)

    def check_command(self, connection: ProviderConnection, kind: CommandKind, powertrain: Powertrain) -> None:
        """Raise :class:`UnsupportedCapabilityError` without contacting the provider."""
        if powertrain == Powertrain.UNKNOWN:
            powertrain = connection.powertrain
        if not self.capabilities_for(powertrain).supports(kind):
            raise UnsupportedCapabilityError(kind, provider_id=self.id, vehicle_id=connection.vehicle_id)

    # ------------------------------------------------------------------
    # Canonical operations
    # ------------------------------------------------------------------

    async def fetch_state(self, connection: ProviderConnection) -> CanonicalVehicleState:
        """Read current telemetry for the connected vehicle."""
        return await self._fetch_state(connection)

    async def send_command(
        self,
        connection: ProviderConnection,
        kind: CommandKind,
        *,
        powertrain: Powertrain = Powertrain.UNKNOWN,
    ) -> str:
        """Issue *kind* and return the provider's command id."""
        self.check_command(connection, kind, powertrain)
        return await self._send_command(connection, kind)

    async def poll_command_status(self, connection: ProviderConnection, provider_command_id: str) -> CommandStatus:
        return await self._poll_command_status(connection, provider_command_id)

    # ------------------------------------------------------------------
    # Authorization handshake
    # ------------------------------------------------------------------

    @abc.abstractmethod
    def authorization_url(self, state: str, redirect_uri: str) -> str:
        """URL the vehicle owner is redirected to in order to grant access."""

    @abc.abstractmethod
    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet: ...

    @abc.abstractmethod
    async def refresh_credentials(self, tokens: TokenSet) -> TokenSet:
        """Exchange refresh material for new tokens.

        Raises :class:`AuthExpiredError` when the provider refuses.
        """

    @abc.abstractmethod
    async def list_vehicles(self, tokens: TokenSet) -> list[ProviderVehicle]: ...

    @abc.abstractmethod
    async def revoke(self, connection: ProviderConnection) -> None:
        """Best-effort provider-side revocation."""

    # ------------------------------------------------------------------
    # Subclass hooks
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def _fetch_state(self, connection: ProviderConnection) -> CanonicalVehicleState: ...

    async def _send_command(self, connection: ProviderConnection, kind: CommandKind) -> str:
        raise UnsupportedCapabilityError(kind, provider_id=self.id, vehicle_id=connection.vehicle_id)

    async def _poll_command_status(self, connection: ProviderConnection, provider_command_id: str) -> CommandStatus:
        raise ProviderError(
            f"Unknown command id {provider_command_id}",
            provider_id=self.id,
            code="UNKNOWN_COMMAND",
        )

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _bearer(connection_or_tokens: ProviderConnection | TokenSet) -> str:
        tokens = (
            connection_or_tokens.credentials
            if isinstance(connection_or_tokens, ProviderConnection)
            else connection_or_tokens
        )
        if tokens is None:
            raise AuthExpiredError("Connection has no credentials", code="NO_CREDENTIALS")
        return tokens.access_token.get_secret_value()

    async def _token_request(
        self,
        url: str,
        *,
        form: Mapping[str, str] | None = None,
        json_body: Any = None,
        previous: TokenSet | None = None,
    ) -> TokenSet:
        response = await self._transport.request(
            "POST",
            url,
            provider_id=self.id,
            form=form,
            json_body=json_body,
        )
        if response.status in (400, 401, 403):
            error = response.body.get("error") if isinstance(response.body, dict) else None
            raise AuthExpiredError(
                f"{self.id} token request rejected: {error or response.status}",
                provider_id=self.id,
                code=str(error or response.status),
                status_code=response.status,
            )
        if response.status == 429:
            raise RateLimitedError(
                f"{self.id} token endpoint rate limited",
                provider_id=self.id,
                status_code=429,
                retry_after=parse_retry_after(response.headers),
            )
        if not response.ok or not isinstance(response.body, dict):
            raise ProviderError(
                f"{self.id} token request failed: HTTP {response.status}",
                provider_id=self.id,
                status_code=response.status,
            )
        try:
            parsed = OAuthTokenResponse.model_validate(response.body)
        except ValidationError as exc:
            raise ProviderError(
                f"{self.id} token response malformed",
                provider_id=self.id,
                code="MALFORMED",
            ) from exc
        return parsed.to_token_set(self._clock(), previous=previous)

    def _unexpected(self, response: HttpResponse, what: str) -> ProviderError:
        return ProviderError(
            f"{self.id} {what} failed: HTTP {response.status}",
            provider_id=self.id,
            status_code=response.status,
        )


class SyncCommandResults:
    """Bounded memory of synchronously confirmed commands.

    Some providers answer a command request with the final outcome. The
    adapter records it here and hands it back on the first status poll.
    """

    def __init__(self, maxlen: int = _MAX_REMEMBERED_RESULTS) -> None:
        self._maxlen = maxlen
        self._results: OrderedDict[str, CommandStatus] = OrderedDict()

    def record(self, provider_command_id: str, status: CommandStatus) -> None:
        self._results[provider_command_id] = status
        while len(self._results) > self._maxlen:
            evicted, _ = self._results.popitem(last=False)
            _logger.debug("Evicted remembered command result %s", evicted)

    def pop(self, provider_command_id: str) -> CommandStatus | None:
        return self._results.pop(provider_command_id, None)

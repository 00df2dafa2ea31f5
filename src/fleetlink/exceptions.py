"""Custom exception hierarchy for fleetlink.

Provider adapters translate every provider-specific failure into one of the
:class:`ProviderError` subclasses below, so nothing outside an adapter ever
needs to know a provider's error codes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from fleetlink.models.command import CommandKind


class FleetError(Exception):
    """Base exception for all fleetlink errors."""


class FleetConfigError(FleetError):
    """Invalid or missing configuration."""


class ProviderError(FleetError):
    """A provider call failed (application-level or HTTP-level)."""

    def __init__(
        self,
        message: str,
        *,
        provider_id: str = "",
        code: str = "",
        status_code: int | None = None,
    ) -> None:
        self.provider_id = provider_id
        self.code = code
        self.status_code = status_code
        super().__init__(message)


class ProviderTransportError(ProviderError):
    """Network failure, timeout, non-JSON body or unexpected HTTP status."""


class AuthExpiredError(ProviderError):
    """Access credentials were rejected; a refresh may recover them.

    Handled internally by the connection manager and only surfaced to callers
    when the refresh fails as well.
    """


class RateLimitedError(ProviderError):
    """The provider asked us to slow down.

    This delays the next poll; it is never reported to callers as a failure.
    """

    def __init__(
        self,
        message: str,
        *,
        provider_id: str = "",
        code: str = "RATE_LIMITED",
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(message, provider_id=provider_id, code=code, status_code=status_code)


class VehicleUnreachableError(ProviderError):
    """The vehicle is asleep, offline or out of coverage."""


class ConnectionRevokedError(ProviderError):
    """The vehicle owner revoked access; the caller must re-authorize."""


class UnsupportedCapabilityError(FleetError):
    """Command not supported by the provider or the vehicle.

    Raised before any network call is made.
    """

    def __init__(self, kind: CommandKind, *, provider_id: str = "", vehicle_id: str = "") -> None:
        self.kind = kind
        self.provider_id = provider_id
        self.vehicle_id = vehicle_id
        target = f" for vehicle {vehicle_id}" if vehicle_id else ""
        super().__init__(f"{kind} is not supported by provider {provider_id or '?'}{target}")


class NotConnectedError(FleetError):
    """No usable provider connection exists for the vehicle."""

    def __init__(self, vehicle_id: str, *, status: str | None = None) -> None:
        self.vehicle_id = vehicle_id
        self.status = status
        detail = f" (status={status})" if status else ""
        super().__init__(f"Vehicle {vehicle_id} has no active provider connection{detail}")


class UnknownCommandError(FleetError):
    """No command with the given id is known (never created or already collected)."""


class CommandNotRetryableError(FleetError):
    """Only FAILED or TIMED_OUT commands may be retried."""


class CommandFailedError(FleetError):
    """The provider confirmed the command did not execute."""


class CommandTimedOutError(FleetError):
    """The command did not confirm in time; the vehicle's real state is unknown.

    Check the vehicle before retrying: the command may have executed.
    """

"""Connection lifecycle: authorization handshake, token refresh, revocation.

The :class:`ConnectionManager` exclusively owns :class:`ProviderConnection`
records. Other components receive read-only copies and report problems back
through its methods (``handle_auth_expired``, ``mark_revoked``, ...). Every
status transition is published as a :class:`ConnectionStatusChanged` event.
"""

from __future__ import annotations

import abc
import asyncio
import dataclasses
import json
import logging
import os
import secrets
import tempfile
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from fleetlink.exceptions import (
    AuthExpiredError,
    ConnectionRevokedError,
    FleetConfigError,
    FleetError,
    NotConnectedError,
    ProviderError,
)
from fleetlink.models._base import utcnow
from fleetlink.models.connection import (
    AuthorizationRequest,
    ConnectionStatus,
    ProviderConnection,
    ProviderVehicle,
    TokenSet,
)
from fleetlink.providers.base import ProviderAdapter
from fleetlink.state.events import ConnectionStatusChanged, EventBus

_logger = logging.getLogger(__name__)

_STORE_FORMAT_VERSION = 1


# ------------------------------------------------------------------
# Persistence
# ------------------------------------------------------------------


class ConnectionStore(abc.ABC):
    """Where connections survive a restart."""

    @abc.abstractmethod
    def load(self) -> list[ProviderConnection]: ...

    @abc.abstractmethod
    def save(self, connection: ProviderConnection) -> None: ...

    @abc.abstractmethod
    def delete(self, vehicle_id: str) -> None: ...


class MemoryConnectionStore(ConnectionStore):
    def __init__(self) -> None:
        self._connections: dict[str, ProviderConnection] = {}

    def load(self) -> list[ProviderConnection]:
        return list(self._connections.values())

    def save(self, connection: ProviderConnection) -> None:
        self._connections[connection.vehicle_id] = connection

    def delete(self, vehicle_id: str) -> None:
        self._connections.pop(vehicle_id, None)


def generate_store_key() -> str:
    """Return a new key suitable for ``FleetConfig.store_key``."""
    return Fernet.generate_key().decode("ascii")


class FileConnectionStore(ConnectionStore):
    """JSON file store; credential material is sealed with Fernet.

    Only the token set is encrypted. Status, provider binding and generation
    stay readable so the file can be inspected without the key.
    """

    def __init__(self, path: str | Path, key: str | bytes) -> None:
        self._path = Path(path)
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as exc:
            raise FleetConfigError("store_key must be a url-safe base64 32-byte Fernet key") from exc

    def _seal(self, tokens: TokenSet) -> str:
        payload = {
            "access_token": tokens.access_token.get_secret_value(),
            "refresh_token": tokens.refresh_token.get_secret_value() if tokens.refresh_token else None,
            "expires_at": tokens.expires_at.isoformat() if tokens.expires_at else None,
            "scope": list(tokens.scope),
        }
        return self._fernet.encrypt(json.dumps(payload).encode("utf-8")).decode("ascii")

    def _unseal(self, sealed: str) -> TokenSet:
        try:
            plain = self._fernet.decrypt(sealed.encode("ascii"))
        except InvalidToken as exc:
            raise FleetConfigError(f"Cannot decrypt credentials in {self._path}; wrong store_key?") from exc
        return TokenSet.model_validate(json.loads(plain))

    def _read(self) -> dict[str, dict[str, Any]]:
        if not self._path.exists():
            return {}
        with self._path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
        if data.get("version") != _STORE_FORMAT_VERSION:
            raise FleetConfigError(f"Unsupported connection store format in {self._path}")
        connections: dict[str, dict[str, Any]] = data.get("connections", {})
        return connections

    def _write(self, connections: dict[str, dict[str, Any]]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=self._path.name, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump({"version": _STORE_FORMAT_VERSION, "connections": connections}, fh, indent=2)
            os.replace(tmp, self._path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def load(self) -> list[ProviderConnection]:
        connections = []
        for record in self._read().values():
            sealed = record.pop("credentials", None)
            connection = ProviderConnection.model_validate(record)
            if sealed:
                connection = connection.model_copy(update={"credentials": self._unseal(sealed)})
            connections.append(connection)
        return connections

    def save(self, connection: ProviderConnection) -> None:
        records = self._read()
        record = connection.model_dump(mode="json", exclude={"credentials"})
        if connection.credentials is not None:
            record["credentials"] = self._seal(connection.credentials)
        records[connection.vehicle_id] = record
        self._write(records)

    def delete(self, vehicle_id: str) -> None:
        records = self._read()
        if records.pop(vehicle_id, None) is not None:
            self._write(records)


# ------------------------------------------------------------------
# Lifecycle
# ------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class _PendingAuthorization:
    vehicle_id: str
    provider_id: str
    redirect_uri: str
    generation: int
    vin: str | None = None


class ConnectionManager:
    """Owns provider connections and their state machine.

    ``CONNECTING -> ACTIVE -> TOKEN_EXPIRED -> ACTIVE | ERROR``, and
    ``REVOKED`` whenever a provider reports revoked access. ``ERROR`` and
    ``REVOKED`` connections stay visible but are never scheduled until the
    owner re-authorizes.
    """

    def __init__(
        self,
        adapters: Mapping[str, ProviderAdapter],
        bus: EventBus,
        *,
        store: ConnectionStore | None = None,
        token_refresh_margin: float = 120.0,
        revocation_timeout: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._adapters = dict(adapters)
        self._bus = bus
        self._store = store or MemoryConnectionStore()
        self._refresh_margin = timedelta(seconds=token_refresh_margin)
        self._revocation_timeout = revocation_timeout
        self._clock = clock
        self._connections: dict[str, ProviderConnection] = {}
        self._generations: dict[str, int] = {}
        self._pending: dict[str, _PendingAuthorization] = {}
        self._refreshes: dict[str, asyncio.Task[ProviderConnection]] = {}
        self._revocations: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, vehicle_id: str) -> ProviderConnection | None:
        return self._connections.get(vehicle_id)

    def connections(self) -> list[ProviderConnection]:
        return list(self._connections.values())

    def active(self) -> list[ProviderConnection]:
        return [c for c in self._connections.values() if c.status.is_schedulable]

    def generation(self, vehicle_id: str) -> int:
        """Current generation stamp; survives disconnects and only ever grows."""
        return self._generations.get(vehicle_id, 0)

    def require_active(self, vehicle_id: str) -> ProviderConnection:
        connection = self._connections.get(vehicle_id)
        if connection is None or connection.status != ConnectionStatus.ACTIVE:
            raise NotConnectedError(vehicle_id, status=connection.status if connection else None)
        return connection

    def adapter(self, provider_id: str) -> ProviderAdapter:
        adapter = self._adapters.get(provider_id)
        if adapter is None:
            raise FleetConfigError(f"Provider {provider_id!r} is not configured")
        return adapter

    # ------------------------------------------------------------------
    # Internal state transitions
    # ------------------------------------------------------------------

    def _bump_generation(self, vehicle_id: str) -> int:
        generation = self._generations.get(vehicle_id, 0) + 1
        self._generations[vehicle_id] = generation
        return generation

    def _put(self, connection: ProviderConnection, *, reason: str | None = None) -> ProviderConnection:
        previous = self._connections.get(connection.vehicle_id)
        self._connections[connection.vehicle_id] = connection
        if connection.status != ConnectionStatus.CONNECTING:
            self._store.save(connection)
        old_status = previous.status if previous is not None else None
        if old_status != connection.status:
            _logger.info(
                "Connection %s/%s: %s -> %s",
                connection.vehicle_id,
                connection.provider_id,
                old_status or "-",
                connection.status,
            )
            self._bus.publish(
                ConnectionStatusChanged(
                    vehicle_id=connection.vehicle_id,
                    provider_id=connection.provider_id,
                    old=old_status,
                    new=connection.status,
                    reason=reason,
                )
            )
        return connection

    def _transition(
        self,
        vehicle_id: str,
        status: ConnectionStatus,
        *,
        reason: str | None = None,
        **update: Any,
    ) -> ProviderConnection | None:
        connection = self._connections.get(vehicle_id)
        if connection is None:
            return None
        updated = connection.model_copy(update={"status": status, "last_error": reason, **update})
        return self._put(updated, reason=reason)

    # ------------------------------------------------------------------
    # Authorization handshake
    # ------------------------------------------------------------------

    def begin_authorization(
        self,
        vehicle_id: str,
        provider_id: str,
        redirect_uri: str,
        *,
        vin: str | None = None,
    ) -> AuthorizationRequest:
        """Start connecting *vehicle_id* to *provider_id*.

        Returns where to send the vehicle owner. The ``state`` nonce comes
        back with the provider's redirect and is passed to
        :meth:`complete_authorization`.
        """
        adapter = self.adapter(provider_id)
        existing = self._connections.get(vehicle_id)
        if existing is not None and existing.status == ConnectionStatus.ACTIVE:
            raise FleetError(f"Vehicle {vehicle_id} is already connected to {existing.provider_id}; disconnect first")

        state = secrets.token_urlsafe(24)
        self._pending[state] = _PendingAuthorization(
            vehicle_id=vehicle_id,
            provider_id=provider_id,
            redirect_uri=redirect_uri,
            generation=self.generation(vehicle_id),
            vin=vin,
        )
        self._put(
            ProviderConnection(
                vehicle_id=vehicle_id,
                provider_id=provider_id,
                status=ConnectionStatus.CONNECTING,
                generation=self.generation(vehicle_id),
            )
        )
        return AuthorizationRequest(
            vehicle_id=vehicle_id,
            provider_id=provider_id,
            url=adapter.authorization_url(state, redirect_uri),
            state=state,
        )

    async def complete_authorization(
        self,
        state: str,
        code: str,
        *,
        provider_vehicle_ref: str | None = None,
    ) -> ProviderConnection:
        """Finish the handshake started by :meth:`begin_authorization`."""
        pending = self._pending.pop(state, None)
        if pending is None:
            raise FleetError("Unknown or already used authorization state")
        adapter = self.adapter(pending.provider_id)

        try:
            tokens = await adapter.exchange_code(code, pending.redirect_uri)
            vehicles = await adapter.list_vehicles(tokens)
            bound = self._pick_vehicle(vehicles, pending, provider_vehicle_ref)
        except (ProviderError, FleetError) as exc:
            if self.generation(pending.vehicle_id) == pending.generation:
                self._transition(pending.vehicle_id, ConnectionStatus.ERROR, reason=str(exc))
            raise

        if self.generation(pending.vehicle_id) != pending.generation:
            # Disconnected (or reconnected) while the handshake was in flight.
            raise NotConnectedError(pending.vehicle_id, status="superseded")

        connection = ProviderConnection(
            vehicle_id=pending.vehicle_id,
            provider_id=pending.provider_id,
            status=ConnectionStatus.ACTIVE,
            provider_vehicle_ref=bound.ref,
            credentials=tokens,
            connected_at=self._clock(),
            generation=self._bump_generation(pending.vehicle_id),
            powertrain=bound.powertrain,
        )
        return self._put(connection)

    @staticmethod
    def _pick_vehicle(
        vehicles: list[ProviderVehicle],
        pending: _PendingAuthorization,
        ref: str | None,
    ) -> ProviderVehicle:
        if ref is not None:
            match = next((v for v in vehicles if v.ref == ref), None)
        elif pending.vin is not None:
            match = next((v for v in vehicles if v.vin and v.vin.upper() == pending.vin.upper()), None)
        elif len(vehicles) == 1:
            match = vehicles[0]
        else:
            raise FleetError(
                f"Provider account has {len(vehicles)} vehicles; pass provider_vehicle_ref or vin to choose one"
            )
        if match is None:
            raise FleetError(f"Vehicle {ref or pending.vin} not found in the authorized provider account")
        return match

    # ------------------------------------------------------------------
    # Credential refresh
    # ------------------------------------------------------------------

    async def handle_auth_expired(self, vehicle_id: str) -> ProviderConnection | None:
        """React to rejected credentials with a single refresh attempt.

        Concurrent callers share one refresh. Returns the connection after
        the attempt: ``ACTIVE`` on success, ``ERROR`` or ``REVOKED`` otherwise.
        """
        connection = self._connections.get(vehicle_id)
        if connection is None:
            return None
        if vehicle_id not in self._refreshes:
            if connection.status != ConnectionStatus.ACTIVE:
                # Already failed; only re-authorization helps now.
                return connection
            self._transition(vehicle_id, ConnectionStatus.TOKEN_EXPIRED, reason="credentials rejected")
        return await self._refresh(vehicle_id)

    async def ensure_fresh_credentials(self, vehicle_id: str) -> ProviderConnection | None:
        """Refresh ahead of time when the access token is about to expire."""
        connection = self._connections.get(vehicle_id)
        if connection is None or connection.credentials is None:
            return connection
        if vehicle_id in self._refreshes:
            return await self._refresh(vehicle_id)
        if connection.status != ConnectionStatus.ACTIVE or not connection.credentials.expires_within(
            self._clock(), self._refresh_margin
        ):
            return connection
        return await self._refresh(vehicle_id)

    async def _refresh(self, vehicle_id: str) -> ProviderConnection | None:
        task = self._refreshes.get(vehicle_id)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._do_refresh(vehicle_id))
            self._refreshes[vehicle_id] = task
            task.add_done_callback(lambda t: self._forget_refresh(vehicle_id, t))
        return await asyncio.shield(task)

    def _forget_refresh(self, vehicle_id: str, task: asyncio.Task[ProviderConnection]) -> None:
        if self._refreshes.get(vehicle_id) is task:
            del self._refreshes[vehicle_id]

    async def _do_refresh(self, vehicle_id: str) -> ProviderConnection:
        connection = self._connections.get(vehicle_id)
        if connection is None:
            raise NotConnectedError(vehicle_id, status="superseded")
        adapter = self.adapter(connection.provider_id)
        generation = connection.generation
        try:
            if connection.credentials is None:
                raise AuthExpiredError("No credentials to refresh", provider_id=connection.provider_id)
            tokens = await adapter.refresh_credentials(connection.credentials)
        except ConnectionRevokedError as exc:
            _logger.warning("Refresh for %s: access revoked by provider", vehicle_id)
            return self._settle(vehicle_id, generation, ConnectionStatus.REVOKED, reason=str(exc))
        except ProviderError as exc:
            _logger.warning("Refresh for %s failed: %s", vehicle_id, exc)
            return self._settle(vehicle_id, generation, ConnectionStatus.ERROR, reason=str(exc))
        _logger.debug("Refreshed credentials for %s", vehicle_id)
        return self._settle(vehicle_id, generation, ConnectionStatus.ACTIVE, credentials=tokens)

    def _settle(
        self,
        vehicle_id: str,
        generation: int,
        status: ConnectionStatus,
        *,
        reason: str | None = None,
        **update: Any,
    ) -> ProviderConnection:
        current = self._connections.get(vehicle_id)
        if current is None or current.generation != generation:
            raise NotConnectedError(vehicle_id, status="superseded")
        result = self._transition(vehicle_id, status, reason=reason, **update)
        assert result is not None  # noqa: S101
        return result

    # ------------------------------------------------------------------
    # Failure reports and teardown
    # ------------------------------------------------------------------

    def mark_revoked(self, vehicle_id: str, reason: str | None = None) -> None:
        self._transition(vehicle_id, ConnectionStatus.REVOKED, reason=reason or "access revoked by provider")

    def mark_error(self, vehicle_id: str, reason: str) -> None:
        self._transition(vehicle_id, ConnectionStatus.ERROR, reason=reason)

    def disconnect(self, vehicle_id: str) -> ProviderConnection | None:
        """Tear the connection down locally; remote revocation runs in the background.

        The generation is bumped before returning, so results of calls that
        were in flight for the old connection are recognisably stale.
        """
        for state, pending in list(self._pending.items()):
            if pending.vehicle_id == vehicle_id:
                del self._pending[state]

        connection = self._connections.pop(vehicle_id, None)
        if connection is None:
            return None

        if connection.credentials is not None and connection.status != ConnectionStatus.REVOKED:
            self._start_revocation(connection)

        self._bump_generation(vehicle_id)
        self._store.delete(vehicle_id)
        _logger.info("Disconnected %s from %s", vehicle_id, connection.provider_id)
        self._bus.publish(
            ConnectionStatusChanged(
                vehicle_id=vehicle_id,
                provider_id=connection.provider_id,
                old=connection.status,
                new=None,
                reason="disconnected",
            )
        )
        return connection

    def _start_revocation(self, connection: ProviderConnection) -> None:
        adapter = self._adapters.get(connection.provider_id)
        if adapter is None:
            return
        task = asyncio.get_running_loop().create_task(self._revoke(adapter, connection))
        self._revocations.add(task)
        task.add_done_callback(self._revocations.discard)

    async def _revoke(self, adapter: ProviderAdapter, connection: ProviderConnection) -> None:
        try:
            await asyncio.wait_for(adapter.revoke(connection), timeout=self._revocation_timeout)
        except TimeoutError:
            _logger.warning(
                "Remote revocation for %s timed out after %.0fs; not retrying",
                connection.vehicle_id,
                self._revocation_timeout,
            )
        except ProviderError as exc:
            _logger.warning("Remote revocation for %s failed: %s; not retrying", connection.vehicle_id, exc)
        else:
            _logger.debug("Remote revocation for %s done", connection.vehicle_id)

    # ------------------------------------------------------------------
    # Startup / shutdown
    # ------------------------------------------------------------------

    def restore(self) -> list[ProviderConnection]:
        """Load persisted connections for configured providers."""
        restored = []
        for connection in self._store.load():
            if connection.provider_id not in self._adapters:
                _logger.warning(
                    "Skipping stored connection %s: provider %s not configured",
                    connection.vehicle_id,
                    connection.provider_id,
                )
                continue
            self._generations[connection.vehicle_id] = max(
                connection.generation, self._generations.get(connection.vehicle_id, 0)
            )
            self._connections[connection.vehicle_id] = connection
            restored.append(connection)
        _logger.info("Restored %d connection(s)", len(restored))
        return restored

    async def wait_revocations(self) -> None:
        if self._revocations:
            await asyncio.gather(*list(self._revocations), return_exceptions=True)

    async def aclose(self) -> None:
        tasks = [*self._refreshes.values(), *self._revocations]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._refreshes.clear()
        self._revocations.clear()

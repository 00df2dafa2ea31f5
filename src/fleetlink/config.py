"""Service configuration for fleetlink."""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping
from typing import Any

from fleetlink.exceptions import FleetConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_float(env: Mapping[str, str], key: str) -> float | None:
    raw = env.get(key)
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError as exc:
        raise FleetConfigError(f"{key} must be numeric, got {raw!r}") from exc


@dataclasses.dataclass(frozen=True)
class ProviderSettings:
    """Per-provider credentials and overrides.

    Parameters
    ----------
    client_id, client_secret : str
        OAuth application credentials issued by the provider.
    api_base_url, auth_base_url : str or None
        Override the adapter's default endpoints (sandbox, regional hosts).
    max_concurrency : int or None
        Override the provider's concurrent-call limit.
    backoff_ceiling : float or None
        Override the provider's rate-limit backoff ceiling, in seconds.
    scope : tuple of str
        OAuth scopes to request; empty means the adapter default.
    """

    client_id: str = ""
    client_secret: str = ""
    api_base_url: str | None = None
    auth_base_url: str | None = None
    max_concurrency: int | None = None
    backoff_ceiling: float | None = None
    scope: tuple[str, ...] = ()


@dataclasses.dataclass(frozen=True)
class Geofence:
    """Circular zone used by the alert rules."""

    name: str
    lat: float
    lng: float
    radius_m: float


@dataclasses.dataclass(frozen=True)
class FleetConfig:
    """Service configuration.

    Parameters
    ----------
    providers : dict
        Provider id -> :class:`ProviderSettings`. Only listed providers are loaded.
    active_trip_interval : float
        Poll interval for vehicles on an active trip, seconds.
    idle_interval : tuple of float
        Jittered poll interval range for idle vehicles, seconds.
    background_interval : tuple of float
        Jittered poll interval range for background vehicles, seconds.
    freshness_factor : float
        State older than ``freshness_factor x poll interval`` reads as STALE.
    backoff_jitter : float
        Fraction of positive jitter added to rate-limit backoff.
    command_poll_initial, command_poll_max : float
        Bounds of the exponential command-status polling delay, seconds.
    command_retention : float
        Seconds terminal commands are kept before garbage collection.
    token_refresh_margin : float
        Refresh credentials that expire within this many seconds.
    revocation_timeout : float
        Upper bound for best-effort remote revocation on disconnect, seconds.
    request_timeout : float
        Total timeout for one provider HTTP request, seconds.
    store_path : str or None
        JSON file used to persist connections; ``None`` keeps them in memory.
    store_key : str or None
        Fernet key sealing credential material in the connection store.
    speed_limit_kph : float or None
        Emit a SPEEDING alert when a vehicle exceeds this speed.
    geofences : tuple of Geofence
        Zones whose entry/exit raises alerts.
    api_trace_enabled : bool
        Log redacted provider requests/responses at DEBUG.
    """

    providers: dict[str, ProviderSettings] = dataclasses.field(default_factory=dict)
    active_trip_interval: float = 30.0
    idle_interval: tuple[float, float] = (300.0, 900.0)
    background_interval: tuple[float, float] = (1800.0, 3600.0)
    freshness_factor: float = 2.0
    backoff_jitter: float = 0.1
    command_poll_initial: float = 0.5
    command_poll_max: float = 5.0
    command_retention: float = 3600.0
    token_refresh_margin: float = 120.0
    revocation_timeout: float = 10.0
    request_timeout: float = 20.0
    store_path: str | None = None
    store_key: str | None = None
    speed_limit_kph: float | None = None
    geofences: tuple[Geofence, ...] = ()
    api_trace_enabled: bool = False

    def __post_init__(self) -> None:
        for name in ("idle_interval", "background_interval"):
            low, high = getattr(self, name)
            if low <= 0 or high < low:
                raise FleetConfigError(f"{name} must be a (low, high) range with 0 < low <= high")
        if self.active_trip_interval <= 0:
            raise FleetConfigError("active_trip_interval must be positive")
        if self.freshness_factor < 1:
            raise FleetConfigError("freshness_factor must be >= 1")

    @classmethod
    def from_env(cls, **overrides: Any) -> FleetConfig:
        """Create configuration from ``FLEETLINK_*`` environment variables.

        Providers are enabled by ``FLEETLINK_<PROVIDER>_CLIENT_ID`` /
        ``FLEETLINK_<PROVIDER>_CLIENT_SECRET`` for each provider id in
        ``FLEETLINK_PROVIDERS`` (comma separated, default ``smartcar,bouncie``).
        Explicit keyword arguments override environment values.
        """
        env = os.environ

        providers: dict[str, ProviderSettings] = {}
        provider_ids = [p.strip() for p in env.get("FLEETLINK_PROVIDERS", "smartcar,bouncie").split(",") if p.strip()]
        for provider_id in provider_ids:
            prefix = f"FLEETLINK_{provider_id.upper()}_"
            client_id = env.get(prefix + "CLIENT_ID")
            if client_id is None:
                continue
            concurrency = env.get(prefix + "MAX_CONCURRENCY")
            scope = env.get(prefix + "SCOPE")
            providers[provider_id] = ProviderSettings(
                client_id=client_id,
                client_secret=env.get(prefix + "CLIENT_SECRET", ""),
                api_base_url=env.get(prefix + "API_BASE_URL"),
                auth_base_url=env.get(prefix + "AUTH_BASE_URL"),
                max_concurrency=int(concurrency) if concurrency is not None else None,
                backoff_ceiling=_env_float(env, prefix + "BACKOFF_CEILING"),
                scope=tuple(scope.split()) if scope else (),
            )

        config_kwargs: dict[str, Any] = {"providers": providers}

        _ENV_FLOAT_MAP = {
            "FLEETLINK_ACTIVE_TRIP_INTERVAL": "active_trip_interval",
            "FLEETLINK_FRESHNESS_FACTOR": "freshness_factor",
            "FLEETLINK_COMMAND_RETENTION": "command_retention",
            "FLEETLINK_TOKEN_REFRESH_MARGIN": "token_refresh_margin",
            "FLEETLINK_REVOCATION_TIMEOUT": "revocation_timeout",
            "FLEETLINK_REQUEST_TIMEOUT": "request_timeout",
            "FLEETLINK_SPEED_LIMIT_KPH": "speed_limit_kph",
        }
        for env_key, field_name in _ENV_FLOAT_MAP.items():
            value = _env_float(env, env_key)
            if value is not None:
                config_kwargs[field_name] = value

        _ENV_STR_MAP = {
            "FLEETLINK_STORE_PATH": "store_path",
            "FLEETLINK_STORE_KEY": "store_key",
        }
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        if "api_trace_enabled" not in overrides:
            config_kwargs["api_trace_enabled"] = _env_bool(env.get("FLEETLINK_API_TRACE_ENABLED"), False)

        config_kwargs.update(overrides)
        return cls(**config_kwargs)

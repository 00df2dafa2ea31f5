"""Provider adapters and the registry used to build them from configuration."""

from __future__ import annotations

import logging

from fleetlink._transport import Transport
from fleetlink.config import FleetConfig
from fleetlink.exceptions import FleetConfigError
from fleetlink.providers.base import ProviderAdapter
from fleetlink.providers.bouncie import BouncieAdapter
from fleetlink.providers.smartcar import SmartcarAdapter

_logger = logging.getLogger(__name__)

ADAPTERS: dict[str, type[ProviderAdapter]] = {
    SmartcarAdapter.PROVIDER.id: SmartcarAdapter,
    BouncieAdapter.PROVIDER.id: BouncieAdapter,
}


def register_adapter(adapter_cls: type[ProviderAdapter]) -> type[ProviderAdapter]:
    """Make an adapter class available to :func:`build_adapters`.

    Usable as a class decorator.
    """
    ADAPTERS[adapter_cls.PROVIDER.id] = adapter_cls
    return adapter_cls


def build_adapters(config: FleetConfig, transport: Transport) -> dict[str, ProviderAdapter]:
    """Instantiate one adapter per provider listed in *config*."""
    adapters: dict[str, ProviderAdapter] = {}
    for provider_id, settings in config.providers.items():
        adapter_cls = ADAPTERS.get(provider_id)
        if adapter_cls is None:
            raise FleetConfigError(f"Unknown provider {provider_id!r}; known: {', '.join(sorted(ADAPTERS))}")
        adapters[provider_id] = adapter_cls(transport, settings)
    _logger.info("Loaded %d provider adapter(s): %s", len(adapters), ", ".join(adapters) or "none")
    return adapters


__all__ = [
    "ADAPTERS",
    "BouncieAdapter",
    "ProviderAdapter",
    "SmartcarAdapter",
    "build_adapters",
    "register_adapter",
]

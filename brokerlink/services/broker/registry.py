"""
Broker plugin registry and factory.

The registry is a plain object: construct one per process (usually through
``create_default_registry``) and pass it to the factory and call sites.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from brokerlink.core.config import Settings, settings as default_settings
from brokerlink.core.exceptions import InvalidPluginError, UnknownBrokerError
from brokerlink.services.broker.base import BrokerAdapter
from brokerlink.services.broker.utils import RateLimiter

logger = logging.getLogger(__name__)


@dataclass
class BrokerCapabilities:
    """Describes what a broker supports."""
    auth_type: str                          # "direct" or "oauth"
    exchanges: list[str] = field(default_factory=list)
    order_types: list[str] = field(default_factory=list)
    product_types: list[str] = field(default_factory=list)
    supports_refresh_token: bool = False
    token_expires: bool = False
    max_orders_per_second: float = 10


@dataclass
class BrokerPlugin:
    name: str
    version: str
    create_instance: Callable[[], BrokerAdapter]
    description: str = ""
    capabilities: Optional[BrokerCapabilities] = None

    @property
    def key(self) -> str:
        return self.name.strip().lower()


class BrokerRegistry:
    """
    Catalog of broker plugins keyed by lower-cased broker name.

    Holds descriptors only: no adapters are created, no network is touched.
    """

    def __init__(self, enabled_brokers: Optional[Iterable[str]] = None):
        self._plugins: dict[str, BrokerPlugin] = {}
        self._enabled = {b.strip().lower() for b in (enabled_brokers or []) if b.strip()}

    def register_plugin(self, plugin: BrokerPlugin) -> None:
        """Add or replace a plugin. Registering the same key twice keeps the last one."""
        if not callable(plugin.create_instance):
            raise InvalidPluginError(f"Invalid plugin: {plugin.name}. create_instance must be callable.")

        key = plugin.key
        if self._enabled and key not in self._enabled:
            logger.info("Broker plugin %s is disabled by configuration", plugin.name)
            return

        if key in self._plugins:
            logger.debug("Replacing broker plugin %s", key)
        self._plugins[key] = plugin
        logger.info("Registered broker plugin %s v%s", plugin.name, plugin.version)

    def unregister_plugin(self, name: str) -> None:
        if self._plugins.pop(name.strip().lower(), None):
            logger.info("Unregistered broker plugin %s", name)

    def get_plugin(self, name: str) -> Optional[BrokerPlugin]:
        return self._plugins.get(name.strip().lower())

    def is_broker_available(self, name: str) -> bool:
        return name.strip().lower() in self._plugins

    def get_available_brokers(self) -> list[str]:
        return list(self._plugins.keys())

    def get_registered_plugins(self) -> list[BrokerPlugin]:
        return list(self._plugins.values())

    def reset(self) -> None:
        self._plugins.clear()

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.is_broker_available(name)

    def __len__(self) -> int:
        return len(self._plugins)


class BrokerFactory:
    """Turns a broker key into a fresh adapter instance."""

    def __init__(self, registry: BrokerRegistry):
        self._registry = registry

    @property
    def registry(self) -> BrokerRegistry:
        return self._registry

    def create_broker(self, name: str) -> BrokerAdapter:
        plugin = self._registry.get_plugin(name or "")
        if plugin is None:
            raise UnknownBrokerError(name, self._registry.get_available_brokers())

        adapter = plugin.create_instance()
        logger.debug("Created broker instance %s", plugin.key)
        return adapter

    def get_supported_brokers(self) -> list[str]:
        return self._registry.get_available_brokers()

    def is_broker_supported(self, name: str) -> bool:
        return self._registry.is_broker_available(name or "")


def create_default_registry(config: Optional[Settings] = None) -> BrokerRegistry:
    """Build a registry holding the built-in Shoonya and Fyers plugins."""
    from brokerlink.services.broker.fyers import FyersAdapter, FYERS_CAPABILITIES
    from brokerlink.services.broker.shoonya import ShoonyaAdapter, SHOONYA_CAPABILITIES

    cfg = config or default_settings
    registry = BrokerRegistry(enabled_brokers=cfg.ENABLED_BROKERS)

    def limiter(capabilities: BrokerCapabilities) -> RateLimiter:
        # Never exceed what the broker itself accepts per second
        max_calls = max(1, int(min(cfg.RATE_LIMIT_MAX_CALLS, capabilities.max_orders_per_second or cfg.RATE_LIMIT_MAX_CALLS)))
        return RateLimiter(max_calls, cfg.RATE_LIMIT_WINDOW_SECONDS)

    registry.register_plugin(BrokerPlugin(
        name=ShoonyaAdapter.broker_name,
        version="1.0.0",
        description="Finvasia Shoonya (SHA256 + TOTP direct auth)",
        create_instance=lambda: ShoonyaAdapter(config=cfg, rate_limiter=limiter(SHOONYA_CAPABILITIES)),
        capabilities=SHOONYA_CAPABILITIES,
    ))
    registry.register_plugin(BrokerPlugin(
        name=FyersAdapter.broker_name,
        version="1.0.0",
        description="Fyers (OAuth2 authorization-code flow)",
        create_instance=lambda: FyersAdapter(config=cfg, rate_limiter=limiter(FYERS_CAPABILITIES)),
        capabilities=FYERS_CAPABILITIES,
    ))
    return registry

"""Registry mapping protocol types to plugin instances."""

from __future__ import annotations

from backupchrono.backup.models import ProtocolType
from backupchrono.backup.plugins.base import ProtocolPlugin
from backupchrono.errors import ConfigurationError


class PluginRegistry:
    """One plugin per protocol; the protocol set is closed."""

    def __init__(self, plugins: list[ProtocolPlugin] | None = None) -> None:
        self._registry: dict[ProtocolType, ProtocolPlugin] = {}
        for plugin in plugins or []:
            self.register(plugin)

    def register(self, plugin: ProtocolPlugin, protocol: ProtocolType | None = None) -> None:
        """Register ``plugin`` for its own protocol, or the given one."""
        self._registry[protocol or plugin.protocol] = plugin

    def unregister(self, protocol: ProtocolType) -> None:
        self._registry.pop(protocol, None)

    def get(self, protocol: ProtocolType) -> ProtocolPlugin:
        plugin = self._registry.get(protocol)
        if plugin is None:
            raise ConfigurationError(
                f"No plugin registered for protocol '{protocol.value}'"
            )
        return plugin

    def available(self) -> dict[ProtocolType, ProtocolPlugin]:
        """Return a snapshot of all registered plugins."""
        return dict(self._registry)

"""Protocol plugins used to reach devices."""

from backupchrono.backup.plugins.base import ProtocolPlugin, build_magic_packet
from backupchrono.backup.plugins.local import LocalPathPlugin
from backupchrono.backup.plugins.registry import PluginRegistry

__all__ = ["ProtocolPlugin", "PluginRegistry", "LocalPathPlugin", "build_magic_packet"]

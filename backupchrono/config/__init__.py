"""Configuration module for BackupChrono"""

from backupchrono.config.settings import (
    Settings,
    clear_settings_cache,
    get_settings,
    override_settings,
)
from backupchrono.config.store import (
    ConfigurationStore,
    InMemoryConfigurationStore,
    YamlConfigurationStore,
)

__all__ = [
    "Settings",
    "get_settings",
    "clear_settings_cache",
    "override_settings",
    "ConfigurationStore",
    "InMemoryConfigurationStore",
    "YamlConfigurationStore",
]

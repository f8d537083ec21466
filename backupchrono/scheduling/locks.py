"""Per-resource mutual exclusion for backup executions."""

from __future__ import annotations

from threading import Lock

import structlog

from backupchrono.backup.models import ResourceKey
from backupchrono.errors import ResourceBusyError

logger = structlog.get_logger(__name__)


class ResourceLease:
    """Proof of ownership of a resource key; release is idempotent."""

    def __init__(self, registry: ResourceLocks, key: ResourceKey, owner: str):
        self._registry = registry
        self.key = key
        self.owner = owner
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._registry._release(self)


class ResourceLocks:
    """Owns the live lock map; callers only see leases.

    A device-wide key ``(device, None)`` conflicts with every share key of
    the same device and vice versa. Acquisition is check-and-set under a
    single mutex so two near-simultaneous triggers cannot both win.
    """

    def __init__(self) -> None:
        self._mutex = Lock()
        self._held: dict[ResourceKey, ResourceLease] = {}

    def try_acquire(self, key: ResourceKey, owner: str = "") -> ResourceLease:
        """Acquire ``key`` or raise ``ResourceBusyError`` immediately."""
        with self._mutex:
            if self._conflicts(key):
                raise ResourceBusyError(key)
            lease = ResourceLease(self, key, owner)
            self._held[key] = lease

        logger.debug("Resource lock acquired", resource=str(key), owner=owner)
        return lease

    def is_locked(self, key: ResourceKey) -> bool:
        with self._mutex:
            return self._conflicts(key)

    def held_count(self) -> int:
        with self._mutex:
            return len(self._held)

    def held_keys(self) -> list[ResourceKey]:
        with self._mutex:
            return list(self._held)

    def _conflicts(self, key: ResourceKey) -> bool:
        if key in self._held:
            return True
        if key.share_id is None:
            return any(k.device_id == key.device_id for k in self._held)
        return ResourceKey(key.device_id, None) in self._held

    def _release(self, lease: ResourceLease) -> None:
        with self._mutex:
            if self._held.get(lease.key) is lease:
                del self._held[lease.key]
        logger.debug("Resource lock released", resource=str(lease.key), owner=lease.owner)

"""Plugin for shares that are already reachable on the local filesystem."""

from __future__ import annotations

from pathlib import Path

from backupchrono.backup.models import Device, ProtocolType, Share
from backupchrono.backup.plugins.base import ProtocolPlugin
from backupchrono.errors import MountError


class LocalPathPlugin(ProtocolPlugin):
    """Backs up ``share.path`` in place; nothing to mount or release."""

    protocol = ProtocolType.LOCAL

    async def test_connection(self, device: Device) -> bool:
        return True

    async def mount(self, device: Device, share: Share) -> str:
        path = Path(share.path)
        if not path.is_dir():
            raise MountError(f"Local path does not exist: {share.path}")
        return str(path)

    async def unmount(self, local_path: str) -> None:
        self.logger.debug("Nothing to unmount for local path", path=local_path)

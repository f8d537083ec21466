"""Base class for protocol plugins.

A plugin knows how to reach one kind of device: probe it, expose a share as
a local staging path, release that path again and optionally wake the host.
"""

from __future__ import annotations

import asyncio
import re
import socket
from abc import ABC, abstractmethod

import structlog

from backupchrono.backup.models import Device, ProtocolType, Share
from backupchrono.errors import ConfigurationError

logger = structlog.get_logger(__name__)

WAKE_ON_LAN_PORT = 9
_MAC_SEPARATORS = re.compile(r"[:\-.]")


def build_magic_packet(mac_address: str) -> bytes:
    """Six 0xFF bytes followed by the MAC address repeated sixteen times."""
    digits = _MAC_SEPARATORS.sub("", mac_address.strip())
    if not re.fullmatch(r"[0-9A-Fa-f]{12}", digits):
        raise ConfigurationError(f"Invalid MAC address: '{mac_address}'")
    return b"\xff" * 6 + bytes.fromhex(digits) * 16


def _send_broadcast(packet: bytes, port: int) -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.sendto(packet, ("255.255.255.255", port))


class ProtocolPlugin(ABC):
    """Per-protocol device access used by the job executor."""

    protocol: ProtocolType

    def __init__(self, connection_timeout: float = 10.0):
        self.connection_timeout = connection_timeout
        self.logger = structlog.get_logger(__name__, protocol=self.protocol.value)

    # === Required ===

    @abstractmethod
    async def mount(self, device: Device, share: Share) -> str:
        """Expose ``share`` locally and return the staging path."""

    @abstractmethod
    async def unmount(self, local_path: str) -> None:
        """Release a path previously returned by ``mount``."""

    # === Overridable defaults ===

    async def test_connection(self, device: Device) -> bool:
        """TCP probe of the device's protocol port."""
        port = device.effective_port
        if port is None:
            return True

        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(device.host, port),
                timeout=self.connection_timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            self.logger.info(
                "Connection test failed", device=device.name, host=device.host, port=port, error=str(e)
            )
            return False

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    async def wake(self, device: Device) -> None:
        """Broadcast a Wake-on-LAN magic packet for the device."""
        if not device.wake_on_lan_mac:
            raise ConfigurationError(
                f"Device '{device.name}' has Wake-on-LAN enabled but no MAC address"
            )

        packet = build_magic_packet(device.wake_on_lan_mac)
        await asyncio.to_thread(_send_broadcast, packet, WAKE_ON_LAN_PORT)
        self.logger.info(
            "Wake-on-LAN packet sent", device=device.name, mac=device.wake_on_lan_mac
        )

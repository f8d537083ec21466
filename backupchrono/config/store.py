"""Read-only adapters over the device/share configuration collaborator.

The orchestrator never persists configuration. Every call returns a fresh
snapshot so that edits made between two resolutions are always observed.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Protocol

import aiofiles
import structlog
import yaml
from pydantic import ValidationError

from backupchrono.backup.models import Device, GlobalConfig, Share

logger = structlog.get_logger(__name__)


class ConfigurationStore(Protocol):
    """Narrow interface consumed by the orchestrator."""

    async def get_global_config(self) -> GlobalConfig: ...

    async def list_devices(self) -> list[Device]: ...

    async def list_shares(self, device_id: str) -> list[Share]: ...

    async def get_device(self, device_id: str) -> Device | None: ...


class InMemoryConfigurationStore:
    """Mutable in-process snapshot, used by embedders and tests."""

    def __init__(self, global_config: GlobalConfig | None = None):
        self._global = global_config or GlobalConfig()
        self._devices: dict[str, Device] = {}
        self._shares: dict[str, Share] = {}

    def set_global_config(self, global_config: GlobalConfig) -> None:
        self._global = global_config

    def put_device(self, device: Device) -> Device:
        self._devices[device.id] = device
        return device

    def put_share(self, share: Share) -> Share:
        if share.device_id not in self._devices:
            raise KeyError(f"Device '{share.device_id}' is not registered")
        self._shares[share.id] = share
        return share

    def remove_share(self, share_id: str) -> None:
        self._shares.pop(share_id, None)

    def remove_device(self, device_id: str) -> None:
        self._devices.pop(device_id, None)
        for share_id in [s.id for s in self._shares.values() if s.device_id == device_id]:
            del self._shares[share_id]

    async def get_global_config(self) -> GlobalConfig:
        return self._global.model_copy(deep=True)

    async def list_devices(self) -> list[Device]:
        return [d.model_copy(deep=True) for d in self._devices.values()]

    async def list_shares(self, device_id: str) -> list[Share]:
        return [
            s.model_copy(deep=True)
            for s in self._shares.values()
            if s.device_id == device_id
        ]

    async def get_device(self, device_id: str) -> Device | None:
        device = self._devices.get(device_id)
        return device.model_copy(deep=True) if device else None


class YamlConfigurationStore:
    """Reads the configuration YAML document on every call.

    Expected layout::

        global:
          schedule: {cron_expression: "0 2 * * *"}
        devices:
          - id: office-nas
            name: office-nas
            protocol: smb
            host: 192.168.1.20
            shares:
              - {id: docs, name: docs, path: /docs}
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    async def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            logger.warning("Configuration file not found", path=str(self.path))
            return {}

        async with aiofiles.open(self.path, encoding="utf-8") as f:
            content = await f.read()

        data = yaml.safe_load(content) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Configuration root must be a mapping: {self.path}")
        return data

    async def get_global_config(self) -> GlobalConfig:
        data = await self._load()
        return GlobalConfig.model_validate(data.get("global") or {})

    async def list_devices(self) -> list[Device]:
        data = await self._load()
        devices = []
        for raw in data.get("devices") or []:
            device = self._parse_device(raw)
            if device is not None:
                devices.append(device)
        return devices

    async def list_shares(self, device_id: str) -> list[Share]:
        data = await self._load()
        for raw in data.get("devices") or []:
            if isinstance(raw, dict) and str(raw.get("id")) == device_id:
                shares = []
                for share in raw.get("shares") or []:
                    try:
                        shares.append(Share.model_validate({**share, "device_id": device_id}))
                    except (TypeError, ValidationError) as e:
                        logger.error(
                            "Invalid share record skipped",
                            device_id=device_id,
                            share=share.get("id") if isinstance(share, dict) else None,
                            error=str(e),
                        )
                return shares
        return []

    async def get_device(self, device_id: str) -> Device | None:
        for device in await self.list_devices():
            if device.id == device_id:
                return device
        return None

    @staticmethod
    def _parse_device(raw: Any) -> Device | None:
        if not isinstance(raw, dict):
            logger.error("Invalid device record skipped", record=repr(raw)[:200])
            return None
        try:
            return Device.model_validate({k: v for k, v in raw.items() if k != "shares"})
        except ValidationError as e:
            logger.error("Invalid device record skipped", device_id=raw.get("id"), error=str(e))
            return None

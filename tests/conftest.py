"""
Shared fixtures.

- Test environment variables are set for every test (autouse) and the
  settings cache is cleared around each test.
- Fakes for the protocol plugin, the backup engine and the clock let the
  executor and scheduler run without network, mounts or restic.
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Iterator
from datetime import datetime, timedelta
from pathlib import Path

import pytest

_PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))

from backupchrono.backup.cancellation import CancellationToken  # noqa: E402
from backupchrono.backup.engine import (  # noqa: E402
    BackupEngine,
    EngineProgress,
    StorageStatus,
)
from backupchrono.backup.executor import JobExecutor  # noqa: E402
from backupchrono.backup.log_store import ExecutionLogStore  # noqa: E402
from backupchrono.backup.models import (  # noqa: E402
    Device,
    EngineSummary,
    GlobalConfig,
    ProtocolType,
    Share,
)
from backupchrono.backup.plugins.base import ProtocolPlugin  # noqa: E402
from backupchrono.backup.plugins.registry import PluginRegistry  # noqa: E402
from backupchrono.backup.progress import ProgressBroadcaster  # noqa: E402
from backupchrono.config.settings import clear_settings_cache  # noqa: E402
from backupchrono.config.store import InMemoryConfigurationStore  # noqa: E402
from backupchrono.errors import MountError, StorageExhaustedError  # noqa: E402


@pytest.fixture(autouse=True)
def _test_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[None]:
    """Minimal environment for every test; restored by ``monkeypatch``."""
    env = {
        "ENVIRONMENT": "testing",
        "LOG_LEVEL": "DEBUG",
        "LOG_FORMAT": "console",
        "LOG_DIR": str(tmp_path / "logs"),
        "EXECUTION_LOG_PATH": str(tmp_path / "data" / "executions.jsonl"),
        "REPOSITORY_BASE_PATH": str(tmp_path / "repositories"),
        "WAKE_GRACE_SECONDS": "0",
    }
    for k, v in env.items():
        monkeypatch.setenv(k, v)

    clear_settings_cache()
    yield
    clear_settings_cache()


class FakeClock:
    """Deterministic clock for scheduler and retry tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 0, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakePlugin(ProtocolPlugin):
    """Records calls; behaviour is switched through attributes."""

    protocol = ProtocolType.SMB

    def __init__(self, staging_root: Path):
        super().__init__(connection_timeout=0.1)
        self.staging_root = staging_root
        self.reachable = True
        self.mount_fails_for: set[str] = set()
        self.wake_error: Exception | None = None
        self.calls: list[tuple[str, str]] = []
        self.mounted: list[str] = []
        self.unmounted: list[str] = []

    async def test_connection(self, device: Device) -> bool:
        self.calls.append(("test_connection", device.id))
        return self.reachable

    async def wake(self, device: Device) -> None:
        self.calls.append(("wake", device.id))
        if self.wake_error:
            raise self.wake_error

    async def mount(self, device: Device, share: Share) -> str:
        self.calls.append(("mount", share.id))
        if share.id in self.mount_fails_for:
            raise MountError(f"cannot mount {share.name}")
        path = self.staging_root / share.id
        path.mkdir(parents=True, exist_ok=True)
        self.mounted.append(str(path))
        return str(path)

    async def unmount(self, local_path: str) -> None:
        self.calls.append(("unmount", local_path))
        self.unmounted.append(local_path)


class FakeEngine(BackupEngine):
    """Scripted engine; never spawns a process."""

    def __init__(self, repository_base: Path):
        super().__init__(repository_base, binary="restic")
        self.events: list = [
            EngineProgress(percent_done=50.0, files_done=1, total_files=2, bytes_done=10, total_bytes=20),
            EngineProgress(percent_done=100.0, files_done=2, total_files=2, bytes_done=20, total_bytes=20),
            EngineSummary(snapshot_id="abc123", total_files_processed=2, total_bytes_processed=20, data_added=5),
        ]
        self.error_for: dict[str, Exception] = {}
        self.block = False
        self.started = asyncio.Event()
        self.storage_used_percent = 10.0
        self.backups: list[str] = []
        self.forgets: list[Path] = []
        self.initialised: list[Path] = []

    def check_storage(self, repository: Path) -> StorageStatus:
        used = int(self.storage_used_percent)
        if self.storage_used_percent >= self.exhausted_percent:
            raise StorageExhaustedError(f"Repository storage at {used}%")
        return StorageStatus(
            path=Path(repository),
            total_bytes=100,
            used_bytes=used,
            free_bytes=100 - used,
            critical=self.storage_used_percent >= self.critical_percent,
        )

    async def ensure_repository(self, repository: Path, token: CancellationToken | None = None) -> bool:
        if repository in self.initialised:
            return False
        self.initialised.append(repository)
        return True

    async def forget(self, repository, retention, token=None) -> None:
        self.forgets.append(repository)

    async def backup(self, repository, source, rules, token=None):
        self.backups.append(source)
        self.started.set()
        for event in self.events:
            yield event
            await asyncio.sleep(0)
        if self.block:
            assert token is not None
            await token.run(asyncio.Event().wait())
        for fragment, error in self.error_for.items():
            if fragment in source:
                raise error


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def device() -> Device:
    return Device(id="nas", name="office-nas", protocol=ProtocolType.SMB, host="192.0.2.10")


@pytest.fixture
def share(device: Device) -> Share:
    return Share(id="docs", device_id=device.id, name="docs", path="/docs")


@pytest.fixture
def store(device: Device, share: Share) -> InMemoryConfigurationStore:
    store = InMemoryConfigurationStore(GlobalConfig())
    store.put_device(device)
    store.put_share(share)
    return store


@pytest.fixture
def plugin(tmp_path: Path) -> FakePlugin:
    return FakePlugin(tmp_path / "staging")


@pytest.fixture
def plugins(plugin: FakePlugin) -> PluginRegistry:
    return PluginRegistry([plugin])


@pytest.fixture
def engine(tmp_path: Path) -> FakeEngine:
    return FakeEngine(tmp_path / "repositories")


@pytest.fixture
def log_store(tmp_path: Path) -> ExecutionLogStore:
    return ExecutionLogStore(tmp_path / "data" / "executions.jsonl")


@pytest.fixture
def progress() -> ProgressBroadcaster:
    return ProgressBroadcaster()


@pytest.fixture
def executor(store, plugins, engine, log_store, progress) -> JobExecutor:
    return JobExecutor(
        store,
        plugins,
        engine,
        log_store,
        progress,
        max_concurrent=3,
        wake_grace_seconds=0,
    )


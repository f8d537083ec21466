"""Test configuration module"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from backupchrono.backup.models import ProtocolType
from backupchrono.config import (
    InMemoryConfigurationStore,
    Settings,
    YamlConfigurationStore,
    get_settings,
    override_settings,
)


def test_settings_from_environment(monkeypatch, tmp_path) -> None:
    """Settings are built from environment variables."""
    monkeypatch.setenv("MAX_CONCURRENT_BACKUPS", "5")
    monkeypatch.setenv("RETRY_DELAYS_MINUTES", "[1, 2]")
    monkeypatch.setenv("ENGINE_PASSWORD", "s3cret")

    settings = get_settings(refresh=True)

    assert settings.max_concurrent_backups == 5
    assert settings.retry_delays_minutes == [1, 2]
    assert settings.engine_password.get_secret_value() == "s3cret"
    assert settings.execution_log_path == tmp_path / "data" / "executions.jsonl"
    assert settings.is_testing


def test_settings_defaults() -> None:
    settings = Settings()

    assert settings.engine_binary == "restic"
    assert settings.retry_delays_minutes == [5, 15, 45]
    assert settings.storage_critical_percent == 90.0
    assert settings.storage_exhausted_percent == 95.0


def test_settings_are_cached() -> None:
    assert get_settings() is get_settings()


def test_override_settings_restores_previous() -> None:
    original = get_settings()

    with override_settings(max_concurrent_backups=1) as patched:
        assert get_settings() is patched
        assert patched.max_concurrent_backups == 1

    assert get_settings() is original


@pytest.mark.parametrize("delays", [[0], [5, -1]])
def test_retry_delays_must_be_positive(delays) -> None:
    with pytest.raises(ValidationError):
        Settings(retry_delays_minutes=delays)


class TestYamlConfigurationStore:
    @pytest.mark.asyncio
    async def test_reads_devices_and_shares(self, tmp_path: Path):
        path = tmp_path / "backupchrono.yaml"
        path.write_text(
            """
global:
  schedule:
    cron_expression: "0 3 * * *"
  retention_policy:
    keep_latest: 2
devices:
  - id: nas
    name: office-nas
    protocol: SMB
    host: 192.0.2.10
    shares:
      - {id: docs, name: docs, path: /docs}
      - {id: photos, name: photos, path: /photos, enabled: false}
""",
            encoding="utf-8",
        )
        store = YamlConfigurationStore(path)

        global_config = await store.get_global_config()
        devices = await store.list_devices()
        shares = await store.list_shares("nas")

        assert global_config.schedule.cron_expression == "0 3 * * *"
        assert global_config.retention_policy.keep_latest == 2
        assert global_config.retention_policy.keep_daily == 7
        assert [d.protocol for d in devices] == [ProtocolType.SMB]
        assert [(s.id, s.enabled, s.device_id) for s in shares] == [
            ("docs", True, "nas"),
            ("photos", False, "nas"),
        ]
        assert (await store.get_device("nas")).name == "office-nas"
        assert await store.get_device("missing") is None

    @pytest.mark.asyncio
    async def test_missing_file_is_empty(self, tmp_path: Path):
        store = YamlConfigurationStore(tmp_path / "absent.yaml")

        assert await store.list_devices() == []
        assert await store.list_shares("nas") == []
        assert (await store.get_global_config()).schedule.cron_expression == "0 0 2 * * ?"

    @pytest.mark.asyncio
    async def test_edits_are_observed(self, tmp_path: Path):
        path = tmp_path / "backupchrono.yaml"
        path.write_text("devices: []\n", encoding="utf-8")
        store = YamlConfigurationStore(path)
        assert await store.list_devices() == []

        path.write_text(
            "devices:\n  - {id: laptop, name: laptop, protocol: local, host: localhost}\n",
            encoding="utf-8",
        )

        assert [d.id for d in await store.list_devices()] == ["laptop"]

    @pytest.mark.asyncio
    async def test_non_mapping_root_is_rejected(self, tmp_path: Path):
        path = tmp_path / "backupchrono.yaml"
        path.write_text("- just\n- a list\n", encoding="utf-8")

        with pytest.raises(ValueError):
            await YamlConfigurationStore(path).list_devices()

    @pytest.mark.asyncio
    async def test_invalid_records_are_skipped(self, tmp_path: Path):
        path = tmp_path / "backupchrono.yaml"
        path.write_text(
            """
devices:
  - id: good
    name: office-nas
    protocol: smb
    host: 192.0.2.10
    shares:
      - {id: docs, name: docs, path: /docs}
      - {id: broken, name: broken}
      - just-a-string
  - id: old
    name: legacy
    protocol: ftp
    host: 192.0.2.11
  - not-a-device
""",
            encoding="utf-8",
        )
        store = YamlConfigurationStore(path)

        assert [d.id for d in await store.list_devices()] == ["good"]
        assert [s.id for s in await store.list_shares("good")] == ["docs"]
        assert await store.get_device("old") is None
        assert (await store.get_device("good")).protocol == ProtocolType.SMB


class TestInMemoryConfigurationStore:
    def test_share_requires_device(self, share):
        with pytest.raises(KeyError):
            InMemoryConfigurationStore().put_share(share)

    @pytest.mark.asyncio
    async def test_returns_copies(self, store):
        device = await store.get_device("nas")
        device.name = "renamed"

        assert (await store.get_device("nas")).name == "office-nas"

    @pytest.mark.asyncio
    async def test_remove_device_drops_shares(self, store):
        store.remove_device("nas")

        assert await store.list_devices() == []
        assert await store.list_shares("nas") == []

"""Tests for the domain models."""

from datetime import datetime, time

import pytest

from backupchrono.backup.models import (
    BackupJob,
    ExecutionLogEntry,
    JobStatus,
    ProtocolType,
    ResourceKey,
    RetentionPolicy,
    Schedule,
    TriggerKind,
)


def _job(**kwargs) -> BackupJob:
    return BackupJob(device_id="nas", share_id="docs", trigger=TriggerKind.MANUAL, **kwargs)


class TestBackupJob:
    def test_lifecycle_timestamps(self):
        job = _job()
        assert job.status == JobStatus.PENDING

        job.mark_running()
        job.mark_completed()

        assert job.started_at is not None
        assert job.completed_at >= job.started_at
        assert job.is_terminal

    @pytest.mark.parametrize("finish", ["mark_completed", "mark_cancelled", "mark_running"])
    def test_terminal_jobs_are_immutable(self, finish):
        job = _job()
        job.mark_failed("Connectivity failure: unreachable", "connectivity")

        with pytest.raises(ValueError):
            getattr(job, finish)()

    def test_describe_completed(self):
        job = _job(files_processed=12, bytes_transferred=2048)
        job.mark_completed()

        assert job.describe_outcome() == "Completed: 12 files, 2048 bytes"

    def test_describe_failed_retry(self):
        job = _job(retry_attempt=1)
        job.mark_failed("Mount failure: denied", "mount")

        assert job.describe_outcome(3) == "Mount failure: denied (failed on retry 1 of 3)"

    def test_log_entry_round_trip_keeps_fields(self):
        job = _job(warnings=["archival /docs/x: permission denied"])
        job.mark_running()

        entry = ExecutionLogEntry.from_job(job)

        assert entry.to_job() == job
        assert entry.recorded_at is not None


class TestValueObjects:
    def test_protocol_is_case_insensitive(self):
        assert ProtocolType("SMB") is ProtocolType.SMB
        assert ProtocolType.SMB.default_port == 445
        assert ProtocolType.LOCAL.default_port is None

    def test_resource_key_str(self):
        assert str(ResourceKey("nas", "docs")) == "nas/docs"
        assert str(ResourceKey("nas")) == "nas/*"

    def test_schedule_window(self):
        schedule = Schedule(cron_expression="0 2 * * *", window_start=time(1), window_end=time(5))

        assert schedule.in_window(datetime(2024, 1, 1, 2, 0))
        assert not schedule.in_window(datetime(2024, 1, 1, 6, 0))
        assert Schedule(cron_expression="0 2 * * *").in_window(datetime(2024, 1, 1, 23, 0))

    @pytest.mark.parametrize(
        ("counts", "valid"),
        [
            ({}, True),
            ({"keep_latest": 0, "keep_daily": 0, "keep_weekly": 0, "keep_monthly": 0, "keep_yearly": 1}, True),
            ({"keep_latest": 0, "keep_daily": 0, "keep_weekly": 0, "keep_monthly": 0, "keep_yearly": 0}, False),
            ({"keep_latest": -1}, False),
        ],
    )
    def test_retention_validity(self, counts, valid):
        assert RetentionPolicy(**counts).is_valid() is valid

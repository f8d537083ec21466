"""Backup domain data models."""

from __future__ import annotations

import uuid
from datetime import datetime, time
from enum import Enum
from typing import NamedTuple

from pydantic import BaseModel, Field, SecretStr, field_validator


class ProtocolType(str, Enum):
    """Transfer protocol declared by a device."""

    SMB = "smb"
    SSH = "ssh"
    RSYNC = "rsync"
    LOCAL = "local"

    @classmethod
    def _missing_(cls, value: object) -> ProtocolType | None:
        if isinstance(value, str):
            lowered = value.lower()
            for member in cls:
                if member.value == lowered:
                    return member
        return None

    @property
    def default_port(self) -> int | None:
        """Port used when the device does not override it."""
        return {
            ProtocolType.SMB: 445,
            ProtocolType.SSH: 22,
            ProtocolType.RSYNC: 873,
        }.get(self)


class TriggerKind(str, Enum):
    """Why a job was started."""

    SCHEDULED = "scheduled"
    MANUAL = "manual"
    RETRY = "retry"


class JobStatus(str, Enum):
    """Backup job lifecycle status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class ResourceKey(NamedTuple):
    """Lock key serialising executions: ``(device_id, share_id | None)``."""

    device_id: str
    share_id: str | None = None

    def __str__(self) -> str:
        return f"{self.device_id}/{self.share_id or '*'}"


# === Configuration value objects ===


class Schedule(BaseModel):
    """When a backup runs: a cron expression plus an optional time window."""

    cron_expression: str = Field(..., description="5, 6 or 7 field cron expression")
    window_start: time | None = Field(None, description="Earliest time of day to run")
    window_end: time | None = Field(None, description="Latest time of day to run")

    def in_window(self, moment: datetime) -> bool:
        """Check whether ``moment`` falls inside the configured window."""
        if self.window_start is None or self.window_end is None:
            return True
        return self.window_start <= moment.time() <= self.window_end


class RetentionPolicy(BaseModel):
    """Snapshot counts kept per time bucket."""

    keep_latest: int = 7
    keep_daily: int = 7
    keep_weekly: int = 4
    keep_monthly: int = 12
    keep_yearly: int = 3

    def is_valid(self) -> bool:
        """All counts non-negative and at least one of them positive."""
        counts = self.model_dump().values()
        return all(c >= 0 for c in counts) and any(c > 0 for c in counts)


class RetentionOverride(BaseModel):
    """Device or share retention override; ``None`` fields inherit."""

    keep_latest: int | None = None
    keep_daily: int | None = None
    keep_weekly: int | None = None
    keep_monthly: int | None = None
    keep_yearly: int | None = None


class IncludeExcludeRules(BaseModel):
    """Which files the engine includes or skips."""

    exclude_patterns: list[str] = Field(default_factory=list)
    exclude_regex: list[str] = Field(default_factory=list)
    include_only_regex: list[str] = Field(default_factory=list)
    exclude_if_present: list[str] = Field(default_factory=list)

    def is_valid(self) -> bool:
        """Exclude-regex and include-only-regex are mutually exclusive."""
        return not (self.exclude_regex and self.include_only_regex)

    @classmethod
    def default(cls) -> IncludeExcludeRules:
        return cls(
            exclude_patterns=["*.tmp", "*.temp", "Thumbs.db", ".DS_Store", "$RECYCLE.BIN/"],
            exclude_if_present=[".nobackup"],
        )


class RulesOverride(BaseModel):
    """Device or share pattern override; a set list replaces the inherited one."""

    exclude_patterns: list[str] | None = None
    exclude_regex: list[str] | None = None
    include_only_regex: list[str] | None = None
    exclude_if_present: list[str] | None = None


class GlobalConfig(BaseModel):
    """System-wide defaults at the bottom of the configuration cascade."""

    schedule: Schedule = Field(
        default_factory=lambda: Schedule(cron_expression="0 0 2 * * ?")
    )
    retention_policy: RetentionPolicy = Field(default_factory=RetentionPolicy)
    include_exclude_rules: IncludeExcludeRules = Field(
        default_factory=IncludeExcludeRules.default
    )


class Device(BaseModel):
    """A backed-up host reachable through one transfer protocol."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    protocol: ProtocolType
    host: str
    port: int | None = None
    username: str = ""
    password: SecretStr = SecretStr("")
    wake_on_lan_enabled: bool = False
    wake_on_lan_mac: str | None = None
    schedule: Schedule | None = None
    retention_policy: RetentionOverride | None = None
    include_exclude_rules: RulesOverride | None = None

    @property
    def effective_port(self) -> int | None:
        return self.port or self.protocol.default_port


class Share(BaseModel):
    """A path on a device that is backed up."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    device_id: str
    name: str
    path: str
    enabled: bool = True
    schedule: Schedule | None = None
    retention_policy: RetentionOverride | None = None
    include_exclude_rules: RulesOverride | None = None


class EffectiveConfig(BaseModel):
    """Resolved configuration for a share; every field is populated."""

    schedule: Schedule
    retention_policy: RetentionPolicy
    include_exclude_rules: IncludeExcludeRules


# === Execution records ===


class BackupJob(BaseModel):
    """Transient execution record, immutable once terminal."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    device_id: str
    share_id: str | None = None
    device_name: str | None = None
    share_name: str | None = None
    trigger: TriggerKind
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = Field(default_factory=datetime.now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    files_processed: int = 0
    bytes_transferred: int = 0
    data_added: int = 0
    snapshot_id: str | None = None
    error_message: str | None = None
    failure_kind: str | None = None
    retry_attempt: int = 0
    next_retry_at: datetime | None = None
    warnings: list[str] = Field(default_factory=list)
    command_line: str | None = None

    @property
    def resource_key(self) -> ResourceKey:
        return ResourceKey(self.device_id, self.share_id)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def mark_running(self) -> None:
        self._ensure_mutable()
        self.status = JobStatus.RUNNING
        self.started_at = datetime.now()

    def mark_completed(self) -> None:
        self._finish(JobStatus.COMPLETED)

    def mark_failed(self, message: str, failure_kind: str) -> None:
        self._finish(JobStatus.FAILED)
        self.error_message = message
        self.failure_kind = failure_kind

    def mark_cancelled(self, message: str = "Backup cancelled by user") -> None:
        self._finish(JobStatus.CANCELLED)
        self.error_message = message
        self.failure_kind = "cancelled"

    def describe_outcome(self, max_retries: int = 3) -> str:
        """Operator-facing summary including the retry state."""
        if self.status == JobStatus.COMPLETED:
            return f"Completed: {self.files_processed} files, {self.bytes_transferred} bytes"
        if self.status == JobStatus.CANCELLED:
            return self.error_message or "Cancelled"
        if self.status != JobStatus.FAILED:
            return self.status.value.capitalize()

        message = self.error_message or "Failed"
        if self.next_retry_at is not None:
            return (
                f"{message} (retry {self.retry_attempt + 1} of {max_retries} "
                f"scheduled at {self.next_retry_at.isoformat()})"
            )
        if self.retry_attempt >= max_retries:
            return f"{message} (permanently failed after {self.retry_attempt} retries)"
        if self.retry_attempt > 0:
            return f"{message} (failed on retry {self.retry_attempt} of {max_retries})"
        return message

    def _finish(self, status: JobStatus) -> None:
        self._ensure_mutable()
        self.status = status
        self.completed_at = datetime.now()

    def _ensure_mutable(self) -> None:
        if self.is_terminal:
            raise ValueError(f"Job {self.id} is already {self.status.value}")


class ExecutionLogEntry(BackupJob):
    """Durable projection of a BackupJob, one JSON line per record."""

    recorded_at: datetime = Field(default_factory=datetime.now)

    @classmethod
    def from_job(cls, job: BackupJob) -> ExecutionLogEntry:
        return cls.model_validate(job.model_dump())

    def to_job(self) -> BackupJob:
        return BackupJob.model_validate(self.model_dump(exclude={"recorded_at"}))


class ProgressEvent(BaseModel):
    """Incremental transfer state published while a job runs."""

    job_id: str
    device_id: str
    share_id: str | None = None
    sequence: int = 0
    kind: str = Field(default="progress", description="progress or status")
    status: JobStatus = JobStatus.RUNNING
    files_done: int = 0
    total_files: int | None = None
    bytes_done: int = 0
    total_bytes: int | None = None
    percent_complete: float = Field(default=0.0, ge=0, le=100)
    current_file: str | None = None
    message: str | None = None
    timestamp: datetime = Field(default_factory=datetime.now)

    @field_validator("percent_complete", mode="before")
    @classmethod
    def clamp_percent(cls, v: float) -> float:
        """Engines occasionally overshoot 100 on the last status line."""
        return max(0.0, min(100.0, float(v)))


class EngineSummary(BaseModel):
    """Terminal summary emitted by the backup engine."""

    snapshot_id: str | None = None
    files_new: int = 0
    files_changed: int = 0
    files_unmodified: int = 0
    total_files_processed: int = 0
    total_bytes_processed: int = 0
    data_added: int = 0
    total_duration: float = 0.0

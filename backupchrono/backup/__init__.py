"""Backup domain: models, configuration cascade and job execution."""

from backupchrono.backup.models import (
    BackupJob,
    Device,
    EffectiveConfig,
    ExecutionLogEntry,
    GlobalConfig,
    IncludeExcludeRules,
    JobStatus,
    ProgressEvent,
    ProtocolType,
    ResourceKey,
    RetentionOverride,
    RetentionPolicy,
    RulesOverride,
    Schedule,
    Share,
    TriggerKind,
)
from backupchrono.backup.resolver import resolve, validate_effective_config

__all__ = [
    "BackupJob",
    "Device",
    "EffectiveConfig",
    "ExecutionLogEntry",
    "GlobalConfig",
    "IncludeExcludeRules",
    "JobStatus",
    "ProgressEvent",
    "ProtocolType",
    "ResourceKey",
    "RetentionOverride",
    "RetentionPolicy",
    "RulesOverride",
    "Schedule",
    "Share",
    "TriggerKind",
    "resolve",
    "validate_effective_config",
]

"""Error taxonomy shared by the scheduler, executor and orchestrator.

Every exception carries two class-level attributes:

``retryable``
    Whether a job failing with this error is eligible for automatic retry.
``failure_kind``
    Short machine-readable tag persisted on failed jobs.
"""


class BackupChronoError(Exception):
    """Base class for all orchestration errors."""

    retryable = False
    failure_kind = "internal"
    message_prefix = "Backup failed"

    def user_message(self) -> str:
        """Human readable message distinguishing the failure class."""
        return f"{self.message_prefix}: {self}"


class ConfigurationError(BackupChronoError):
    """Malformed cron expression, invalid window or conflicting pattern rules."""

    failure_kind = "configuration"
    message_prefix = "Configuration error"


class DeviceNotFoundError(ConfigurationError):
    """Device or share is missing from the configuration store."""


class ConnectivityError(BackupChronoError):
    """Device unreachable or authentication rejected."""

    retryable = True
    failure_kind = "connectivity"
    message_prefix = "Connectivity failure"


class MountError(ConnectivityError):
    """Share could not be mounted to a local staging path."""

    failure_kind = "mount"
    message_prefix = "Mount failure"


class SubprocessError(BackupChronoError):
    """Backup engine exited non-zero or produced unusable output."""

    retryable = True
    failure_kind = "subprocess"
    message_prefix = "Backup engine failure"

    def __init__(self, message: str, returncode: int | None = None):
        super().__init__(message)
        self.returncode = returncode


class StorageExhaustedError(BackupChronoError):
    """Repository storage is full; escalates to a system-wide suspension."""

    failure_kind = "storage_exhausted"
    message_prefix = "Storage exhausted"


class ResourceBusyError(BackupChronoError):
    """The device/share lock key is already held by an in-flight execution."""

    failure_kind = "busy"
    message_prefix = "Resource busy"

    def __init__(self, key: object):
        super().__init__(f"A backup is already running for {key}")
        self.key = key


class JobCancelledError(BackupChronoError):
    """Raised at a cancellation checkpoint once a job has been cancelled."""

    failure_kind = "cancelled"
    message_prefix = "Cancelled"


class PartialBackupError(BackupChronoError):
    """A device-wide job in which at least one share failed."""

    retryable = True
    failure_kind = "partial"
    message_prefix = "Partially completed"


# Unexpected errors ("internal") are retried like transient ones.
RETRYABLE_FAILURE_KINDS = frozenset(
    {"internal"}
    | {
        cls.failure_kind
        for cls in (ConnectivityError, MountError, SubprocessError, PartialBackupError)
    }
)

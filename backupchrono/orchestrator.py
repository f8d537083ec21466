"""Public entry point used by the API layer and the process runner."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import structlog

from backupchrono.backup.engine import BackupEngine
from backupchrono.backup.executor import JobExecutor
from backupchrono.backup.log_store import ExecutionLogStore
from backupchrono.backup.models import (
    BackupJob,
    Device,
    GlobalConfig,
    JobStatus,
    ResourceKey,
    Schedule,
    TriggerKind,
)
from backupchrono.backup.plugins.local import LocalPathPlugin
from backupchrono.backup.plugins.registry import PluginRegistry
from backupchrono.backup.progress import ProgressBroadcaster
from backupchrono.backup.resolver import resolve, validate_effective_config
from backupchrono.config.settings import Settings, get_settings
from backupchrono.config.store import ConfigurationStore, YamlConfigurationStore
from backupchrono.errors import (
    ConfigurationError,
    DeviceNotFoundError,
    StorageExhaustedError,
)
from backupchrono.scheduling.locks import ResourceLease, ResourceLocks
from backupchrono.scheduling.models import ScheduledTrigger, TriggerHandler, TriggerKey
from backupchrono.scheduling.retry import RetryCoordinator
from backupchrono.scheduling.scheduler import Scheduler

logger = structlog.get_logger(__name__)

INTERRUPTED_MESSAGE = (
    "Backup interrupted: the service stopped while this job was running"
)


class BackupOrchestrator:
    """Wires the scheduler, executor and retry coordinator together."""

    def __init__(
        self,
        config_store: ConfigurationStore,
        plugins: PluginRegistry,
        engine: BackupEngine,
        log_store: ExecutionLogStore,
        *,
        settings: Settings | None = None,
        progress: ProgressBroadcaster | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.settings = settings or get_settings()
        self.config_store = config_store
        self.log_store = log_store
        self.progress = progress or ProgressBroadcaster()
        self.locks = ResourceLocks()

        self.scheduler = Scheduler(
            self.locks,
            check_interval=self.settings.scheduler_check_interval,
            clock=clock,
        )
        self.executor = JobExecutor(
            config_store,
            plugins,
            engine,
            log_store,
            self.progress,
            locks=self.locks,
            max_concurrent=self.settings.max_concurrent_backups,
            wake_grace_seconds=self.settings.wake_grace_seconds,
            completed_job_retention=timedelta(
                minutes=self.settings.completed_job_retention_minutes
            ),
        )
        self.retry = RetryCoordinator(
            self.scheduler,
            self._dispatch_retry,
            delays_minutes=self.settings.retry_delays_minutes,
            clock=clock,
        )
        self.started_at: datetime | None = None

    @classmethod
    def from_settings(
        cls, settings: Settings | None = None, plugins: PluginRegistry | None = None
    ) -> BackupOrchestrator:
        """Build the default stack: YAML configuration, restic engine, JSONL log."""
        settings = settings or get_settings()
        if plugins is None:
            plugins = PluginRegistry(
                [LocalPathPlugin(connection_timeout=settings.connection_timeout_seconds)]
            )
        engine = BackupEngine(
            settings.repository_base_path,
            binary=settings.engine_binary,
            password=(
                settings.engine_password.get_secret_value()
                if settings.engine_password
                else None
            ),
            terminate_timeout=settings.engine_terminate_timeout,
            critical_percent=settings.storage_critical_percent,
            exhausted_percent=settings.storage_exhausted_percent,
        )
        return cls(
            YamlConfigurationStore(settings.config_file),
            plugins,
            engine,
            ExecutionLogStore(settings.execution_log_path),
            settings=settings,
        )

    # === Lifecycle ===

    async def start(self) -> None:
        logger.info("Starting backup orchestrator")
        await self.recover_interrupted_jobs()
        await self.reschedule_all()
        await self.scheduler.start()
        self.started_at = datetime.now()

    async def stop(self, timeout: float | None = None) -> None:
        """Halt scheduling first, then cancel running jobs and let them unmount."""
        logger.info("Stopping backup orchestrator", active_jobs=len(self.executor.active_jobs))
        await self.scheduler.stop_loop()
        for job in list(self.executor.active_jobs.values()):
            self.executor.cancel(job.id, reason="Backup cancelled by shutdown")
        await self.scheduler.wait_for_workers(timeout=timeout)
        await self.scheduler.stop()
        self.started_at = None

    async def __aenter__(self) -> BackupOrchestrator:
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()

    async def recover_interrupted_jobs(self) -> list[BackupJob]:
        """Mark jobs left Running by a previous process as failed."""
        recovered = []
        for entry in (await self.log_store.load_all()).values():
            if entry.status not in (JobStatus.RUNNING, JobStatus.PENDING):
                continue
            job = entry.to_job()
            job.warnings.append("Needs operator review: job was not resumed after restart")
            job.mark_failed(INTERRUPTED_MESSAGE, "interrupted")
            await self.log_store.append(job)
            recovered.append(job)
            logger.warning(
                "Interrupted job marked as failed",
                job_id=job.id,
                resource=str(job.resource_key),
                started_at=job.started_at.isoformat() if job.started_at else None,
            )
        return recovered

    # === JobRunner ===

    def create_job(
        self, key: ResourceKey, trigger: TriggerKind, retry_attempt: int = 0
    ) -> BackupJob:
        return self.executor.create_job(key, trigger, retry_attempt)

    async def run(self, job: BackupJob, lease: ResourceLease) -> BackupJob:
        job = await self.executor.run(job, lease)
        await self._after_job(job)
        return job

    async def _after_job(self, job: BackupJob) -> None:
        if job.status != JobStatus.FAILED:
            return

        if job.failure_kind == StorageExhaustedError.failure_kind:
            self.scheduler.suspend(job.error_message or "Repository storage exhausted")
            return

        if self.retry.schedule_retry(job) is not None:
            await self.log_store.append(job)
        logger.info("Job outcome", job_id=job.id, outcome=job.describe_outcome(self.retry.max_retries))

    async def _dispatch_retry(self, key: ResourceKey, attempt: int) -> None:
        self.scheduler.dispatch(key, self, TriggerKind.RETRY, retry_attempt=attempt)

    # === Public operations ===

    async def trigger_manual(self, device_id: str, share_id: str | None = None) -> BackupJob:
        """Start a backup now. Raises ``ResourceBusyError`` when one is running."""
        device = await self.config_store.get_device(device_id)
        if device is None:
            raise DeviceNotFoundError(f"Device '{device_id}' not found")
        if share_id is not None:
            shares = await self.config_store.list_shares(device_id)
            if not any(s.id == share_id for s in shares):
                raise DeviceNotFoundError(
                    f"Share '{share_id}' not found on device '{device.name}'"
                )

        job = self.scheduler.trigger_now(ResourceKey(device_id, share_id), self)
        logger.info("Manual backup triggered", job_id=job.id, device=device.name, share_id=share_id)
        return job

    def cancel(self, job_id: str) -> bool:
        """Cooperatively cancel a job; returns ``False`` if it is not running."""
        cancelled = self.executor.cancel(job_id)
        if not cancelled:
            logger.warning("Cancel requested for inactive job", job_id=job_id)
        return cancelled

    async def reschedule_all(self) -> dict[str, list[str]]:
        """Rebuild triggers from the configuration store.

        One trigger per enabled share with its own schedule, plus one
        device-level trigger fanning out to the enabled shares that inherit.
        Triggers whose schedule did not change keep their next fire time.
        """
        global_config = await self.config_store.get_global_config()
        desired: dict[TriggerKey, tuple[Schedule, TriggerHandler]] = {}
        errors: list[str] = []

        for device in await self.config_store.list_devices():
            try:
                desired.update(await self._desired_triggers(global_config, device, errors))
            except Exception as e:
                errors.append(f"device '{device.name}': {e}")
                logger.error("Failed to build triggers for device", device=device.name, error=str(e))

        removed = []
        for key in self.scheduler.trigger_keys(kinds=("device", "share")):
            if key not in desired:
                self.scheduler.remove_trigger(key)
                removed.append(str(key))

        registered = []
        for key, (schedule, handler) in desired.items():
            existing = self.scheduler.get_trigger(key)
            if existing is not None and existing.schedule == schedule:
                continue
            try:
                self.scheduler.add_cron_trigger(key, schedule, handler)
                registered.append(str(key))
            except ConfigurationError as e:
                errors.append(f"{key}: {e}")
                logger.error("Trigger not registered", trigger=str(key), error=str(e))

        logger.info(
            "Schedules rebuilt",
            registered=len(registered),
            removed=len(removed),
            errors=len(errors),
            total=len(self.scheduler.trigger_keys(kinds=("device", "share"))),
        )
        return {"registered": registered, "removed": removed, "errors": errors}

    async def _desired_triggers(
        self, global_config: GlobalConfig, device: Device, errors: list[str]
    ) -> dict[TriggerKey, tuple[Schedule, TriggerHandler]]:
        desired: dict[TriggerKey, tuple[Schedule, TriggerHandler]] = {}
        shares = [s for s in await self.config_store.list_shares(device.id) if s.enabled]

        inheriting = []
        for share in shares:
            try:
                config = validate_effective_config(resolve(global_config, device, share))
            except ConfigurationError as e:
                errors.append(f"share '{share.name}': {e}")
                logger.error("Invalid share configuration", device=device.name, share=share.name, error=str(e))
                continue
            if share.schedule is not None:
                desired[TriggerKey.share(share.id)] = (
                    config.schedule,
                    self._share_handler(ResourceKey(device.id, share.id)),
                )
            else:
                inheriting.append(share)

        if inheriting:
            schedule = validate_effective_config(resolve(global_config, device)).schedule
            desired[TriggerKey.device(device.id)] = (schedule, self._device_handler(device.id))
        return desired

    def _share_handler(self, key: ResourceKey) -> TriggerHandler:
        async def handler(trigger: ScheduledTrigger, fired_at: datetime) -> None:
            self.scheduler.dispatch(key, self, TriggerKind.SCHEDULED)

        return handler

    def _device_handler(self, device_id: str) -> TriggerHandler:
        async def handler(trigger: ScheduledTrigger, fired_at: datetime) -> None:
            # shares are read at fire time; later config edits are honoured
            for share in await self.config_store.list_shares(device_id):
                if share.enabled and share.schedule is None:
                    self.scheduler.dispatch(
                        ResourceKey(device_id, share.id), self, TriggerKind.SCHEDULED
                    )

        return handler

    def resume_scheduling(self) -> None:
        """Lift a storage-exhaustion suspension after operator intervention."""
        self.scheduler.resume()

    # === Queries ===

    async def get_job(self, job_id: str) -> BackupJob | None:
        job = self.executor.get_job(job_id)
        if job is not None:
            return job
        entry = await self.log_store.get(job_id)
        return entry.to_job() if entry else None

    async def list_jobs(
        self, device_id: str | None = None, share_id: str | None = None
    ) -> list[BackupJob]:
        """In-memory jobs first, then history from the execution log."""
        jobs = {
            j.id: j
            for j in self.executor.list_jobs()
            if (device_id is None or j.device_id == device_id)
            and (share_id is None or j.share_id == share_id)
        }
        for entry in await self.log_store.list_entries(device_id, share_id):
            jobs.setdefault(entry.id, entry.to_job())
        return sorted(jobs.values(), key=lambda j: j.created_at, reverse=True)

    def health(self) -> dict[str, Any]:
        return {
            "scheduler_running": self.scheduler.is_running,
            "locked_resources": self.locks.held_count(),
            "active_jobs": len(self.executor.active_jobs),
            "scheduled_triggers": len(self.scheduler.trigger_keys()),
            "pending_retries": len(self.retry.pending_retries()),
            "suspended": self.scheduler.suspended,
            "suspended_reason": self.scheduler.suspended_reason,
            "uptime_seconds": (
                (datetime.now() - self.started_at).total_seconds()
                if self.started_at
                else 0
            ),
        }

"""Runs one backup job from lease to terminal status.

Steps: resolve and validate configuration, wake the device, test the
connection, check repository storage, mount each share, stream the engine
backup, apply retention and always unmount. The resource lease is released
and the final record persisted no matter how the job ends.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog

from backupchrono.backup.cancellation import CancellationToken
from backupchrono.backup.engine import BackupEngine, EngineProgress, EngineWarning
from backupchrono.backup.log_store import ExecutionLogStore
from backupchrono.backup.models import (
    BackupJob,
    Device,
    EffectiveConfig,
    EngineSummary,
    JobStatus,
    ProgressEvent,
    ResourceKey,
    Share,
    TriggerKind,
)
from backupchrono.backup.plugins.base import ProtocolPlugin
from backupchrono.backup.plugins.registry import PluginRegistry
from backupchrono.backup.progress import ProgressSink
from backupchrono.backup.resolver import resolve, validate_effective_config
from backupchrono.config.store import ConfigurationStore
from backupchrono.errors import (
    BackupChronoError,
    ConfigurationError,
    ConnectivityError,
    DeviceNotFoundError,
    JobCancelledError,
    MountError,
    PartialBackupError,
    StorageExhaustedError,
)
from backupchrono.scheduling.locks import ResourceLease, ResourceLocks
from backupchrono.utils.logger import sanitize_log_content

logger = structlog.get_logger(__name__)


@dataclass
class _Totals:
    """Counters accumulated across the shares of one job."""

    shares: int = 1
    index: int = 0
    files: int = 0
    bytes: int = 0
    data_added: int = 0
    last_files: int = 0
    last_bytes: int = 0
    last_percent: float = 0.0


class JobExecutor:
    """Executes jobs under a global concurrency cap."""

    def __init__(
        self,
        config_store: ConfigurationStore,
        plugins: PluginRegistry,
        engine: BackupEngine,
        log_store: ExecutionLogStore,
        progress: ProgressSink,
        *,
        locks: ResourceLocks | None = None,
        max_concurrent: int = 3,
        wake_grace_seconds: float = 30.0,
        completed_job_retention: timedelta = timedelta(hours=1),
    ):
        self.config_store = config_store
        self.plugins = plugins
        self.engine = engine
        self.log_store = log_store
        self.progress = progress
        self.locks = locks or ResourceLocks()
        self.wake_grace_seconds = wake_grace_seconds
        self.completed_job_retention = completed_job_retention

        self._slots = asyncio.Semaphore(max_concurrent)
        self.active_jobs: dict[str, BackupJob] = {}
        self._completed: dict[str, BackupJob] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._sequence: dict[str, int] = {}
        self._percent: dict[str, float] = {}

    # === Job registry ===

    def create_job(
        self, key: ResourceKey, trigger: TriggerKind, retry_attempt: int = 0
    ) -> BackupJob:
        job = BackupJob(
            device_id=key.device_id,
            share_id=key.share_id,
            trigger=trigger,
            retry_attempt=retry_attempt,
        )
        self.active_jobs[job.id] = job
        self._tokens[job.id] = CancellationToken()
        return job

    def get_job(self, job_id: str) -> BackupJob | None:
        self._prune_completed()
        return self.active_jobs.get(job_id) or self._completed.get(job_id)

    def list_jobs(self) -> list[BackupJob]:
        self._prune_completed()
        return [*self.active_jobs.values(), *self._completed.values()]

    def cancel(self, job_id: str, reason: str = "Backup cancelled by user") -> bool:
        """Request cancellation; returns ``False`` if the job is not active."""
        token = self._tokens.get(job_id)
        job = self.active_jobs.get(job_id)
        if token is None or job is None or job.is_terminal:
            return False
        token.cancel(reason)
        logger.info("Cancellation requested", job_id=job_id, reason=reason)
        return True

    def _prune_completed(self) -> None:
        cutoff = datetime.now() - self.completed_job_retention
        for job_id in [
            j.id for j in self._completed.values() if (j.completed_at or j.created_at) < cutoff
        ]:
            del self._completed[job_id]

    # === Execution ===

    async def execute(
        self,
        device_id: str,
        share_id: str | None = None,
        trigger: TriggerKind = TriggerKind.MANUAL,
        retry_attempt: int = 0,
    ) -> BackupJob:
        """Acquire the resource, then run a new job to completion."""
        key = ResourceKey(device_id, share_id)
        lease = self.locks.try_acquire(key, owner=trigger.value)
        try:
            job = self.create_job(key, trigger, retry_attempt)
        except BaseException:
            lease.release()
            raise
        return await self.run(job, lease)

    async def run(self, job: BackupJob, lease: ResourceLease) -> BackupJob:
        token = self._tokens.setdefault(job.id, CancellationToken())
        self.active_jobs[job.id] = job
        log = logger.bind(
            job_id=job.id,
            resource=str(job.resource_key),
            trigger=job.trigger.value,
            retry_attempt=job.retry_attempt,
        )

        try:
            await token.run(self._slots.acquire())
            try:
                job.mark_running()
                await self.log_store.append(job)
                await self._publish_status(job, "Backup started")
                log.info("Backup started")

                await self._run_steps(job, token, log)
                job.mark_completed()
                log.info(
                    "Backup completed",
                    files=job.files_processed,
                    bytes=job.bytes_transferred,
                    snapshot_id=job.snapshot_id,
                    warnings=len(job.warnings),
                )
            finally:
                self._slots.release()
        except JobCancelledError as e:
            job.mark_cancelled(str(e))
            log.info("Backup cancelled", reason=str(e))
        except BackupChronoError as e:
            job.mark_failed(e.user_message(), e.failure_kind)
            log.error("Backup failed", failure_kind=e.failure_kind, error=str(e))
        except asyncio.CancelledError:
            if not job.is_terminal:
                job.mark_cancelled("Backup interrupted by shutdown")
            raise
        except Exception as e:
            job.mark_failed(f"Unexpected error: {e}", "internal")
            log.error("Backup failed unexpectedly", error=str(e), exc_info=True)
        finally:
            lease.release()
            await self._finalize(job, log)

        return job

    async def _finalize(self, job: BackupJob, log: structlog.stdlib.BoundLogger) -> None:
        self.active_jobs.pop(job.id, None)
        self._tokens.pop(job.id, None)
        self._completed[job.id] = job
        try:
            await self.log_store.append(job)
        except OSError as e:
            log.error("Failed to persist job record", error=str(e))
        await self._publish_status(job, job.describe_outcome())
        self._sequence.pop(job.id, None)
        self._percent.pop(job.id, None)
        self.progress.forget(job.id)

    async def _run_steps(
        self,
        job: BackupJob,
        token: CancellationToken,
        log: structlog.stdlib.BoundLogger,
    ) -> None:
        device = await self.config_store.get_device(job.device_id)
        if device is None:
            raise DeviceNotFoundError(f"Device '{job.device_id}' not found")
        job.device_name = device.name

        shares = await self._select_shares(job, device)
        global_config = await self.config_store.get_global_config()
        configs = {
            share.id: validate_effective_config(resolve(global_config, device, share))
            for share in shares
        }

        plugin = self.plugins.get(device.protocol)

        if device.wake_on_lan_enabled:
            await self._wake(device, plugin, token, log)

        token.raise_if_cancelled()
        await self._test_connection(device, plugin, token)

        totals = _Totals(shares=len(shares))
        failures: list[tuple[Share, BackupChronoError]] = []
        for index, share in enumerate(shares):
            token.raise_if_cancelled()
            totals.index = index
            try:
                await self._backup_share(job, device, share, configs[share.id], plugin, token, totals, log)
            except (JobCancelledError, StorageExhaustedError):
                raise
            except BackupChronoError as e:
                if len(shares) == 1:
                    raise
                log.warning("Share backup failed", share=share.name, error=str(e))
                failures.append((share, e))

        if failures:
            details = "; ".join(f"share '{s.name}': {e.user_message()}" for s, e in failures)
            raise PartialBackupError(
                f"{len(shares) - len(failures)}/{len(shares)} shares backed up ({details})"
            )

    async def _select_shares(self, job: BackupJob, device: Device) -> list[Share]:
        shares = await self.config_store.list_shares(device.id)
        if job.share_id is None:
            enabled = [s for s in shares if s.enabled]
            if not enabled:
                raise ConfigurationError(f"Device '{device.name}' has no enabled shares")
            return enabled

        for share in shares:
            if share.id == job.share_id:
                if not share.enabled:
                    raise ConfigurationError(f"Share '{share.name}' is disabled")
                job.share_name = share.name
                return [share]
        raise DeviceNotFoundError(f"Share '{job.share_id}' not found on device '{device.name}'")

    async def _wake(
        self,
        device: Device,
        plugin: ProtocolPlugin,
        token: CancellationToken,
        log: structlog.stdlib.BoundLogger,
    ) -> None:
        try:
            await token.run(plugin.wake(device))
        except JobCancelledError:
            raise
        except Exception as e:
            log.warning("Wake-on-LAN failed, attempting connection anyway", error=str(e))
            return
        log.info("Waiting for device to wake", seconds=self.wake_grace_seconds)
        await token.sleep(self.wake_grace_seconds)

    async def _test_connection(
        self, device: Device, plugin: ProtocolPlugin, token: CancellationToken
    ) -> None:
        try:
            reachable = await token.run(plugin.test_connection(device))
        except BackupChronoError:
            raise
        except Exception as e:
            raise ConnectivityError(f"Connection test to '{device.name}' failed: {e}") from e
        if not reachable:
            raise ConnectivityError(f"Device '{device.name}' ({device.host}) is unreachable")

    async def _backup_share(
        self,
        job: BackupJob,
        device: Device,
        share: Share,
        config: EffectiveConfig,
        plugin: ProtocolPlugin,
        token: CancellationToken,
        totals: _Totals,
        log: structlog.stdlib.BoundLogger,
    ) -> None:
        log = log.bind(share=share.name)
        repository = self.engine.repository_path(device.id, share.id)

        storage = self.engine.check_storage(repository)
        if storage.critical:
            job.warnings.append(f"Repository storage is at {storage.used_percent:.1f}%")
            log.warning("Repository storage critical", used_percent=round(storage.used_percent, 1))

        # mount runs to completion so every successful mount is matched by an unmount
        try:
            mount_path = await plugin.mount(device, share)
        except MountError:
            raise
        except Exception as e:
            raise MountError(f"Failed to mount share '{share.name}': {e}") from e

        try:
            token.raise_if_cancelled()
            if await self.engine.ensure_repository(repository, token):
                log.info("Created repository", repository=str(repository))

            rules = config.include_exclude_rules
            job.command_line = self.engine.describe_command(
                repository, self.engine.build_backup_args(mount_path, rules)
            )

            summary: EngineSummary | None = None
            async for event in self.engine.backup(repository, mount_path, rules, token):
                if isinstance(event, EngineProgress):
                    await self._publish_progress(job, event, totals)
                elif isinstance(event, EngineWarning):
                    job.warnings.append(sanitize_log_content(event.message))
                else:
                    summary = event

            if summary is not None:
                totals.files += summary.total_files_processed
                totals.bytes += summary.total_bytes_processed
                totals.data_added += summary.data_added
                job.snapshot_id = summary.snapshot_id or job.snapshot_id
            job.files_processed = totals.files
            job.bytes_transferred = totals.bytes
            job.data_added = totals.data_added

            token.raise_if_cancelled()
            await self.engine.forget(repository, config.retention_policy, token)
        finally:
            try:
                await plugin.unmount(mount_path)
            except Exception as e:
                log.warning("Unmount failed", path=mount_path, error=str(e))
                job.warnings.append(f"Unmount of '{share.name}' failed: {e}")

    # === Progress ===

    def _next_sequence(self, job_id: str) -> int:
        self._sequence[job_id] = self._sequence.get(job_id, 0) + 1
        return self._sequence[job_id]

    async def _publish_progress(
        self, job: BackupJob, event: EngineProgress, totals: _Totals
    ) -> None:
        files_done = max(totals.last_files, totals.files + event.files_done)
        bytes_done = max(totals.last_bytes, totals.bytes + event.bytes_done)
        percent = (totals.index + event.percent_done / 100) / totals.shares * 100
        percent = max(totals.last_percent, min(100.0, percent))
        totals.last_files, totals.last_bytes, totals.last_percent = files_done, bytes_done, percent

        job.files_processed = files_done
        job.bytes_transferred = bytes_done
        self._percent[job.id] = percent

        await self._publish(
            ProgressEvent(
                job_id=job.id,
                device_id=job.device_id,
                share_id=job.share_id,
                sequence=self._next_sequence(job.id),
                status=JobStatus.RUNNING,
                files_done=files_done,
                total_files=event.total_files,
                bytes_done=bytes_done,
                total_bytes=event.total_bytes,
                percent_complete=percent,
                current_file=event.current_file,
            )
        )

    async def _publish_status(self, job: BackupJob, message: str) -> None:
        await self._publish(
            ProgressEvent(
                job_id=job.id,
                device_id=job.device_id,
                share_id=job.share_id,
                sequence=self._next_sequence(job.id),
                kind="status",
                status=job.status,
                files_done=job.files_processed,
                bytes_done=job.bytes_transferred,
                percent_complete=(
                    100.0
                    if job.status == JobStatus.COMPLETED
                    else self._percent.get(job.id, 0.0)
                ),
                message=message,
            )
        )

    async def _publish(self, event: ProgressEvent) -> None:
        try:
            await self.progress.publish(event)
        except Exception as e:
            logger.warning("Progress publish failed", job_id=event.job_id, error=str(e))

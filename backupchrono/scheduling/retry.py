"""Delayed automatic retries for failed jobs."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timedelta

import structlog

from backupchrono.backup.models import BackupJob, JobStatus, ResourceKey
from backupchrono.errors import RETRYABLE_FAILURE_KINDS
from backupchrono.scheduling.models import ScheduledTrigger, TriggerKey
from backupchrono.scheduling.scheduler import Scheduler

logger = structlog.get_logger(__name__)

RetryDispatch = Callable[[ResourceKey, int], Awaitable[None]]


class RetryCoordinator:
    """Registers one-shot retry triggers with increasing delays.

    The n-th retry (1-based) runs ``delays[n - 1]`` after the failure it
    follows. A job that fails on its last allowed attempt is not retried.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        dispatch: RetryDispatch,
        delays_minutes: Sequence[int] = (5, 15, 45),
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.scheduler = scheduler
        self._dispatch = dispatch
        self.delays = [timedelta(minutes=m) for m in delays_minutes]
        self._clock = clock

    @property
    def max_retries(self) -> int:
        return len(self.delays)

    def next_delay(self, attempt: int) -> timedelta | None:
        """Delay before the retry that follows attempt ``attempt`` (0 = original)."""
        if 0 <= attempt < len(self.delays):
            return self.delays[attempt]
        return None

    def schedule_retry(self, job: BackupJob) -> datetime | None:
        """Register a retry for ``job`` when eligible; sets ``next_retry_at``."""
        if job.status != JobStatus.FAILED:
            return None

        if job.failure_kind not in RETRYABLE_FAILURE_KINDS:
            logger.info(
                "Failure is not retryable", job_id=job.id, failure_kind=job.failure_kind
            )
            return None

        delay = self.next_delay(job.retry_attempt)
        if delay is None:
            logger.warning(
                "Backup permanently failed",
                job_id=job.id,
                resource=str(job.resource_key),
                retries=job.retry_attempt,
            )
            return None

        run_at = self._clock() + delay
        next_attempt = job.retry_attempt + 1
        key = job.resource_key

        async def fire(trigger: ScheduledTrigger, fired_at: datetime) -> None:
            await self._dispatch(key, next_attempt)

        self.scheduler.add_one_shot(TriggerKey.retry(job.id), run_at, fire)
        job.next_retry_at = run_at

        logger.info(
            "Retry scheduled",
            job_id=job.id,
            resource=str(key),
            attempt=next_attempt,
            max_retries=self.max_retries,
            run_at=run_at.isoformat(),
        )
        return run_at

    def pending_retries(self) -> list[TriggerKey]:
        return self.scheduler.trigger_keys(kinds=["retry"])

"""Cron scheduler for backup triggers.

Triggers fire from a single asyncio loop. A firing trigger only dispatches
work: it acquires the resource lease and spawns the job as a separate task,
so the loop never waits for a backup to finish.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine, Iterable
from datetime import datetime
from typing import Any, Protocol

import structlog

from backupchrono.backup.models import BackupJob, ResourceKey, Schedule, TriggerKind
from backupchrono.backup.resolver import validate_schedule
from backupchrono.errors import ResourceBusyError
from backupchrono.scheduling.cron import next_fire_time
from backupchrono.scheduling.locks import ResourceLease, ResourceLocks
from backupchrono.scheduling.models import (
    ScheduledTrigger,
    TriggerHandler,
    TriggerKey,
    TriggerState,
)

logger = structlog.get_logger(__name__)


class JobRunner(Protocol):
    """Creates and runs jobs for leases handed over by the scheduler."""

    def create_job(
        self, key: ResourceKey, trigger: TriggerKind, retry_attempt: int = 0
    ) -> BackupJob: ...

    def run(self, job: BackupJob, lease: ResourceLease) -> Coroutine[Any, Any, Any]: ...


class Scheduler:
    """Owns the trigger table, the resource locks and the worker tasks."""

    def __init__(
        self,
        locks: ResourceLocks | None = None,
        *,
        check_interval: float = 30.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.locks = locks or ResourceLocks()
        self.check_interval = check_interval
        self._clock = clock

        self._triggers: dict[TriggerKey, ScheduledTrigger] = {}
        self._workers: set[asyncio.Task[Any]] = set()

        self._scheduler_task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self._changed = asyncio.Event()

        self._suspended_reason: str | None = None

        self.total_dispatched = 0
        self.total_skipped = 0

    # === Lifecycle ===

    @property
    def is_running(self) -> bool:
        return self._scheduler_task is not None and not self._scheduler_task.done()

    async def start(self) -> None:
        if self.is_running:
            logger.warning("Scheduler is already running")
            return

        logger.info("Starting backup scheduler", triggers=len(self._triggers))
        self._stop_event.clear()
        self._scheduler_task = asyncio.create_task(self._scheduler_loop())

    async def stop(self, cancel_workers: bool = True) -> None:
        await self.stop_loop()
        if cancel_workers:
            for task in list(self._workers):
                if not task.done():
                    task.cancel()
        await self.wait_for_workers()
        logger.info("Backup scheduler stopped")

    async def stop_loop(self) -> None:
        """Stop firing triggers; jobs already dispatched keep running."""
        if self._scheduler_task is not None:
            logger.info("Stopping backup scheduler")
        self._stop_event.set()
        self._changed.set()

        if self._scheduler_task and not self._scheduler_task.done():
            self._scheduler_task.cancel()
            try:
                await self._scheduler_task
            except asyncio.CancelledError:
                pass
        self._scheduler_task = None

    async def __aenter__(self) -> Scheduler:
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()

    # === Trigger table ===

    def add_cron_trigger(
        self, key: TriggerKey, schedule: Schedule, handler: TriggerHandler
    ) -> ScheduledTrigger:
        """Register or replace a cron trigger. Raises ``ConfigurationError``."""
        schedule = validate_schedule(schedule)
        trigger = ScheduledTrigger(
            key=key,
            handler=handler,
            schedule=schedule,
            next_run=next_fire_time(schedule.cron_expression, self._clock()),
        )
        self._replace(trigger)
        logger.info(
            "Trigger scheduled",
            trigger=str(key),
            cron=schedule.cron_expression,
            next_run=trigger.next_run.isoformat() if trigger.next_run else None,
        )
        return trigger

    def add_one_shot(
        self, key: TriggerKey, run_at: datetime, handler: TriggerHandler
    ) -> ScheduledTrigger:
        trigger = ScheduledTrigger(key=key, handler=handler, next_run=run_at)
        self._replace(trigger)
        logger.info("One-shot trigger scheduled", trigger=str(key), run_at=run_at.isoformat())
        return trigger

    def remove_trigger(self, key: TriggerKey) -> bool:
        trigger = self._triggers.pop(key, None)
        if trigger is None:
            return False
        trigger.state = TriggerState.UNSCHEDULED
        logger.info("Trigger removed", trigger=str(key))
        return True

    def get_trigger(self, key: TriggerKey) -> ScheduledTrigger | None:
        return self._triggers.get(key)

    def trigger_keys(self, kinds: Iterable[str] | None = None) -> list[TriggerKey]:
        wanted = set(kinds) if kinds is not None else None
        return [k for k in self._triggers if wanted is None or k.kind in wanted]

    def next_due(self) -> datetime | None:
        times = [
            t.next_run
            for t in self._triggers.values()
            if t.state == TriggerState.SCHEDULED and t.next_run is not None
        ]
        return min(times) if times else None

    def _replace(self, trigger: ScheduledTrigger) -> None:
        previous = self._triggers.get(trigger.key)
        if previous is not None:
            previous.state = TriggerState.UNSCHEDULED
        self._triggers[trigger.key] = trigger
        self._changed.set()

    # === Suspension ===

    @property
    def suspended(self) -> bool:
        return self._suspended_reason is not None

    @property
    def suspended_reason(self) -> str | None:
        return self._suspended_reason

    def suspend(self, reason: str) -> None:
        """Stop dispatching scheduled and retry runs until ``resume``."""
        if self._suspended_reason is None:
            logger.error("Scheduling suspended", reason=reason)
        self._suspended_reason = reason

    def resume(self) -> None:
        if self._suspended_reason is not None:
            logger.info("Scheduling resumed", previous_reason=self._suspended_reason)
        self._suspended_reason = None

    # === Dispatch ===

    def dispatch(
        self,
        key: ResourceKey,
        runner: JobRunner,
        trigger: TriggerKind,
        retry_attempt: int = 0,
    ) -> BackupJob | None:
        """Start a job for ``key`` unless the resource is busy.

        Scheduled and retry dispatches that find the resource locked are
        skipped and return ``None``. Manual dispatches raise
        ``ResourceBusyError`` instead so the caller gets immediate feedback.
        """
        manual = trigger == TriggerKind.MANUAL
        if self._suspended_reason is not None and not manual:
            self.total_skipped += 1
            logger.warning(
                "Run skipped, scheduling suspended",
                resource=str(key),
                trigger=trigger.value,
                reason=self._suspended_reason,
            )
            return None

        try:
            lease = self.locks.try_acquire(key, owner=trigger.value)
        except ResourceBusyError:
            if manual:
                raise
            self.total_skipped += 1
            logger.info("Run skipped, resource busy", resource=str(key), trigger=trigger.value)
            return None

        try:
            job = runner.create_job(key, trigger, retry_attempt)
        except BaseException:
            lease.release()
            raise

        self.spawn(runner.run(job, lease), name=f"backup-{job.id}")
        self.total_dispatched += 1
        logger.info(
            "Backup dispatched",
            job_id=job.id,
            resource=str(key),
            trigger=trigger.value,
            retry_attempt=retry_attempt,
        )
        return job

    def trigger_now(self, key: ResourceKey, runner: JobRunner) -> BackupJob:
        """Immediate manual run; bypasses the schedule but respects the lock."""
        job = self.dispatch(key, runner, TriggerKind.MANUAL)
        if job is None:
            raise ResourceBusyError(key)
        return job

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._workers.add(task)
        task.add_done_callback(self._worker_done)
        return task

    def _worker_done(self, task: asyncio.Task[Any]) -> None:
        self._workers.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Worker task failed", task=task.get_name(), error=str(error), exc_info=error
            )

    @property
    def active_workers(self) -> int:
        return sum(1 for t in self._workers if not t.done())

    async def wait_for_workers(self, timeout: float | None = None) -> None:
        """Wait for every spawned job task (including ones spawned meanwhile)."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._workers:
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            _, pending = await asyncio.wait(set(self._workers), timeout=remaining)
            if pending and deadline is not None and loop.time() >= deadline:
                return

    # === Firing ===

    async def run_pending(self, now: datetime | None = None) -> int:
        """Fire every trigger due at ``now``. Returns the number fired."""
        now = now or self._clock()
        due = sorted(
            (
                t
                for t in self._triggers.values()
                if t.state == TriggerState.SCHEDULED
                and t.next_run is not None
                and t.next_run <= now
            ),
            key=lambda t: t.next_run or now,
        )
        for trigger in due:
            await self._fire(trigger, now)
        return len(due)

    async def _fire(self, trigger: ScheduledTrigger, now: datetime) -> None:
        trigger.state = TriggerState.FIRING
        try:
            if trigger.schedule is not None and not trigger.schedule.in_window(now):
                self.total_skipped += 1
                logger.info(
                    "Run skipped, outside schedule window",
                    trigger=str(trigger.key),
                    window_start=str(trigger.schedule.window_start),
                    window_end=str(trigger.schedule.window_end),
                )
            else:
                await trigger.handler(trigger, now)
        except Exception as e:
            logger.error("Trigger handler failed", trigger=str(trigger.key), error=str(e), exc_info=True)
        finally:
            trigger.last_run = now
            trigger.fire_count += 1
            current = self._triggers.get(trigger.key) is trigger
            if trigger.one_shot:
                if current:
                    del self._triggers[trigger.key]
                trigger.state = TriggerState.UNSCHEDULED
            elif current and trigger.schedule is not None:
                trigger.next_run = next_fire_time(trigger.schedule.cron_expression, now)
                trigger.state = TriggerState.SCHEDULED

    async def _scheduler_loop(self) -> None:
        logger.info("Scheduler loop started")
        while not self._stop_event.is_set():
            try:
                await self.run_pending()
            except Exception as e:
                logger.error("Scheduler loop error", error=str(e), exc_info=True)
            await self._sleep_until_due()

    async def _sleep_until_due(self) -> None:
        timeout = self.check_interval
        next_due = self.next_due()
        if next_due is not None:
            until_due = (next_due - self._clock()).total_seconds()
            timeout = max(0.0, min(timeout, until_due))

        self._changed.clear()
        try:
            await asyncio.wait_for(self._changed.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    # === Status ===

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self.is_running,
            "suspended": self.suspended,
            "suspended_reason": self._suspended_reason,
            "triggers": [t.to_dict() for t in self._triggers.values()],
            "locked_resources": [str(k) for k in self.locks.held_keys()],
            "active_workers": self.active_workers,
            "total_dispatched": self.total_dispatched,
            "total_skipped": self.total_skipped,
        }

"""Scheduler data models."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import NamedTuple

from backupchrono.backup.models import Schedule


class TriggerState(str, Enum):
    """Lifecycle of a registered trigger."""

    UNSCHEDULED = "unscheduled"
    SCHEDULED = "scheduled"
    FIRING = "firing"


class TriggerKey(NamedTuple):
    """Identity of a trigger: ``device:<id>``, ``share:<id>`` or ``retry:<job id>``."""

    kind: str
    ident: str

    @classmethod
    def device(cls, device_id: str) -> TriggerKey:
        return cls("device", device_id)

    @classmethod
    def share(cls, share_id: str) -> TriggerKey:
        return cls("share", share_id)

    @classmethod
    def retry(cls, job_id: str) -> TriggerKey:
        return cls("retry", job_id)

    def __str__(self) -> str:
        return f"{self.kind}:{self.ident}"


TriggerHandler = Callable[["ScheduledTrigger", datetime], Awaitable[None]]


@dataclass
class ScheduledTrigger:
    """A cron or one-shot trigger with its handler."""

    key: TriggerKey
    handler: TriggerHandler
    next_run: datetime | None
    schedule: Schedule | None = None
    state: TriggerState = TriggerState.SCHEDULED
    last_run: datetime | None = None
    fire_count: int = 0

    @property
    def one_shot(self) -> bool:
        return self.schedule is None

    def to_dict(self) -> dict[str, str | int | None]:
        return {
            "key": str(self.key),
            "state": self.state.value,
            "cron_expression": self.schedule.cron_expression if self.schedule else None,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "fire_count": self.fire_count,
        }

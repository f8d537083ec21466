"""Append-only JSON Lines execution log.

Each record is one line. The same job may be appended several times as it
progresses; on replay the last line for a job id wins. Lines that cannot be
parsed are skipped so a single corrupted record never hides the rest.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import aiofiles
import structlog
from pydantic import ValidationError

from backupchrono.backup.models import BackupJob, ExecutionLogEntry

logger = structlog.get_logger(__name__)


class ExecutionLogStore:
    """Durable job history backed by a single JSONL file."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()
        self._tail_checked = False

    async def append(self, job: BackupJob) -> ExecutionLogEntry:
        entry = (
            job if isinstance(job, ExecutionLogEntry) else ExecutionLogEntry.from_job(job)
        )
        line = entry.model_dump_json() + "\n"

        async with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            prefix = await self._newline_prefix()
            async with aiofiles.open(self.path, "a", encoding="utf-8") as f:
                await f.write(prefix + line)
                await f.flush()

        logger.debug("Execution log entry appended", job_id=entry.id, status=entry.status.value)
        return entry

    async def _newline_prefix(self) -> str:
        # a torn final line from a crash must not swallow the next record
        if self._tail_checked:
            return ""
        self._tail_checked = True
        if not self.path.exists() or self.path.stat().st_size == 0:
            return ""
        async with aiofiles.open(self.path, "rb") as f:
            await f.seek(-1, 2)
            last = await f.read(1)
        return "" if last == b"\n" else "\n"

    async def load_all(self) -> dict[str, ExecutionLogEntry]:
        """Replay the file; returns the latest entry per job id."""
        if not self.path.exists():
            return {}

        async with self._lock:
            async with aiofiles.open(self.path, encoding="utf-8", errors="replace") as f:
                content = await f.read()

        entries: dict[str, ExecutionLogEntry] = {}
        skipped = 0
        for lineno, line in enumerate(content.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                entry = ExecutionLogEntry.model_validate_json(line)
            except ValidationError as e:
                skipped += 1
                logger.warning(
                    "Skipping malformed execution log line",
                    path=str(self.path),
                    line=lineno,
                    error=str(e.errors()[0]["msg"]) if e.errors() else str(e),
                )
                continue
            entries[entry.id] = entry

        if skipped:
            logger.info("Execution log replayed with skipped lines", entries=len(entries), skipped=skipped)
        return entries

    async def get(self, job_id: str) -> ExecutionLogEntry | None:
        return (await self.load_all()).get(job_id)

    async def list_entries(
        self, device_id: str | None = None, share_id: str | None = None
    ) -> list[ExecutionLogEntry]:
        """Latest entries, newest first, optionally filtered by resource."""
        entries = [
            e
            for e in (await self.load_all()).values()
            if (device_id is None or e.device_id == device_id)
            and (share_id is None or e.share_id == share_id)
        ]
        return sorted(entries, key=lambda e: e.created_at, reverse=True)

"""Driver for the restic backup engine.

The engine is an external process. ``backup`` starts one process per call and
yields parsed events from its ``--json`` output as they arrive: progress
snapshots, per-file warnings and a single terminal summary.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import shlex
import shutil
import subprocess
import tempfile
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from backupchrono.backup.cancellation import CancellationToken
from backupchrono.backup.models import EngineSummary, IncludeExcludeRules, RetentionPolicy
from backupchrono.errors import StorageExhaustedError, SubprocessError

logger = structlog.get_logger(__name__)

# restic: 3 means the snapshot was created but some source files were unreadable
EXIT_PARTIAL = 3
EXIT_NO_REPOSITORY = 10
STREAM_LIMIT = 1024 * 1024
NO_SPACE_MARKER = "no space left on device"

_RETENTION_FLAGS = {
    "keep_latest": "--keep-last",
    "keep_daily": "--keep-daily",
    "keep_weekly": "--keep-weekly",
    "keep_monthly": "--keep-monthly",
    "keep_yearly": "--keep-yearly",
}


@dataclass
class EngineProgress:
    """One ``status`` line of engine output."""

    percent_done: float = 0.0
    files_done: int = 0
    total_files: int | None = None
    bytes_done: int = 0
    total_bytes: int | None = None
    current_file: str | None = None


@dataclass
class EngineWarning:
    """Non-fatal problem reported by the engine (usually a single file)."""

    message: str


EngineEvent = EngineProgress | EngineWarning | EngineSummary


@dataclass
class StorageStatus:
    path: Path
    total_bytes: int
    used_bytes: int
    free_bytes: int
    critical: bool = False

    @property
    def used_percent(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return self.used_bytes / self.total_bytes * 100


def parse_engine_line(line: str) -> EngineEvent | None:
    """Parse one line of ``restic backup --json`` output.

    Returns ``None`` for blank, non-JSON and uninteresting lines.
    """
    line = line.strip()
    if not line:
        return None

    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        logger.debug("Skipping non-JSON engine output", line=line[:200])
        return None

    if not isinstance(data, dict):
        return None

    message_type = data.get("message_type")
    try:
        return _build_event(message_type, data)
    except (TypeError, ValueError, ValidationError) as e:
        logger.debug(
            "Skipping malformed engine output",
            message_type=message_type,
            error=str(e),
            line=line[:200],
        )
        return None


def _build_event(message_type: Any, data: dict[str, Any]) -> EngineEvent | None:
    if message_type == "status":
        current_files = data.get("current_files") or []
        return EngineProgress(
            percent_done=float(data.get("percent_done") or 0.0) * 100,
            files_done=int(data.get("files_done") or 0),
            total_files=data.get("total_files"),
            bytes_done=int(data.get("bytes_done") or 0),
            total_bytes=data.get("total_bytes"),
            current_file=current_files[0] if current_files else None,
        )

    if message_type == "summary":
        return EngineSummary(
            snapshot_id=data.get("snapshot_id"),
            files_new=data.get("files_new", 0),
            files_changed=data.get("files_changed", 0),
            files_unmodified=data.get("files_unmodified", 0),
            total_files_processed=data.get("total_files_processed", 0),
            total_bytes_processed=data.get("total_bytes_processed", 0),
            data_added=data.get("data_added", 0),
            total_duration=data.get("total_duration", 0.0),
        )

    if message_type == "error":
        error = data.get("error") or {}
        detail = error.get("message") if isinstance(error, dict) else str(error)
        item = data.get("item") or ""
        during = data.get("during") or "backup"
        return EngineWarning(f"{during} {item}: {detail}".strip())

    return None


def matches_regex_rules(relative_path: str, rules: IncludeExcludeRules) -> bool:
    """Whether a file survives the regex rules (patterns are applied by restic)."""
    if rules.include_only_regex:
        return any(re.search(p, relative_path) for p in rules.include_only_regex)
    if rules.exclude_regex:
        return not any(re.search(p, relative_path) for p in rules.exclude_regex)
    return True


def _collect_files(source: Path, rules: IncludeExcludeRules) -> list[str]:
    selected = []
    for root, _, files in os.walk(source):
        for name in files:
            path = Path(root) / name
            if matches_regex_rules(path.relative_to(source).as_posix(), rules):
                selected.append(str(path))
    return sorted(selected)


class BackupEngine:
    """restic wrapper: one repository per ``(device, share)``."""

    def __init__(
        self,
        repository_base: Path,
        binary: str = "restic",
        password: str | None = None,
        terminate_timeout: float = 10.0,
        critical_percent: float = 90.0,
        exhausted_percent: float = 95.0,
    ):
        self.repository_base = Path(repository_base)
        self.binary = binary
        self.password = password
        self.terminate_timeout = terminate_timeout
        self.critical_percent = critical_percent
        self.exhausted_percent = exhausted_percent

    def repository_path(self, device_id: str, share_id: str) -> Path:
        return self.repository_base / device_id / share_id

    # === Storage ===

    def check_storage(self, repository: Path) -> StorageStatus:
        """Disk usage of the filesystem holding ``repository``.

        Raises ``StorageExhaustedError`` above the exhausted threshold.
        """
        probe = Path(repository)
        while not probe.exists() and probe != probe.parent:
            probe = probe.parent

        usage = shutil.disk_usage(probe)
        status = StorageStatus(
            path=probe,
            total_bytes=usage.total,
            used_bytes=usage.used,
            free_bytes=usage.free,
        )
        if status.used_percent >= self.exhausted_percent:
            raise StorageExhaustedError(
                f"Repository storage at {status.used_percent:.1f}% "
                f"(limit {self.exhausted_percent:.0f}%): {probe}"
            )
        status.critical = status.used_percent >= self.critical_percent
        return status

    # === Commands ===

    def build_backup_args(
        self, source: str, rules: IncludeExcludeRules, files_from: Path | None = None
    ) -> list[str]:
        args = [self.binary, "backup", "--json"]
        if files_from is not None:
            args += ["--files-from-verbatim", str(files_from)]
        else:
            args.append(source)
        for pattern in rules.exclude_patterns:
            args += ["--exclude", pattern]
        for marker in rules.exclude_if_present:
            args += ["--exclude-if-present", marker]
        return args

    def describe_command(self, repository: Path, args: list[str]) -> str:
        """Loggable command line; the password is passed via the environment."""
        return f"RESTIC_REPOSITORY={shlex.quote(str(repository))} " + " ".join(
            shlex.quote(a) for a in args
        )

    def build_forget_args(self, retention: RetentionPolicy) -> list[str]:
        args = [self.binary, "forget", "--prune"]
        for field, flag in _RETENTION_FLAGS.items():
            count = getattr(retention, field)
            if count > 0:
                args += [flag, str(count)]
        return args

    async def ensure_repository(
        self, repository: Path, token: CancellationToken | None = None
    ) -> bool:
        """Initialise the repository when missing. Returns ``True`` if created."""
        result = await self._run(
            [self.binary, "cat", "config"], repository, token, check=False
        )
        if result.returncode == 0:
            return False

        stderr = result.stderr.lower()
        missing = result.returncode == EXIT_NO_REPOSITORY or any(
            marker in stderr
            for marker in ("does not exist", "is there a repository", "unable to open config")
        )
        if not missing:
            raise SubprocessError(
                f"Repository check failed: {result.stderr.strip()}", result.returncode
            )

        Path(repository).mkdir(parents=True, exist_ok=True)
        await self._run([self.binary, "init"], repository, token)
        logger.info("Repository initialised", repository=str(repository))
        return True

    async def forget(
        self,
        repository: Path,
        retention: RetentionPolicy,
        token: CancellationToken | None = None,
    ) -> None:
        """Apply the retention policy to the repository's snapshots."""
        await self._run(self.build_forget_args(retention), repository, token)

    async def backup(
        self,
        repository: Path,
        source: str,
        rules: IncludeExcludeRules,
        token: CancellationToken | None = None,
    ) -> AsyncIterator[EngineEvent]:
        """Run one backup and yield its events.

        Raises ``SubprocessError`` when the process fails without a summary
        and ``StorageExhaustedError`` when it ran out of space.
        """
        files_from = None
        if rules.exclude_regex or rules.include_only_regex:
            selected = await asyncio.to_thread(_collect_files, Path(source), rules)
            if not selected:
                logger.info("No files matched the include rules", source=source)
                yield EngineSummary()
                return
            files_from = await asyncio.to_thread(self._write_file_list, selected)

        args = self.build_backup_args(source, rules, files_from)
        try:
            async for event in self._stream(args, repository, token):
                yield event
        finally:
            if files_from is not None:
                files_from.unlink(missing_ok=True)

    async def _stream(
        self,
        args: list[str],
        repository: Path,
        token: CancellationToken | None,
    ) -> AsyncIterator[EngineEvent]:
        process = await self._spawn(args, repository)
        if process.stdout is None or process.stderr is None:
            process.kill()
            await process.wait()
            raise SubprocessError("Engine process started without output pipes")
        stderr_task = asyncio.create_task(process.stderr.read())

        summary: EngineSummary | None = None
        no_space = False
        try:
            while True:
                reader = process.stdout.readline()
                raw = await (token.run(reader) if token else reader)
                if not raw:
                    break
                event = parse_engine_line(raw.decode("utf-8", errors="replace"))
                if event is None:
                    continue
                if isinstance(event, EngineSummary):
                    summary = event
                elif isinstance(event, EngineWarning) and NO_SPACE_MARKER in event.message.lower():
                    no_space = True
                yield event
            returncode = await process.wait()
        finally:
            if process.returncode is None:
                await self._terminate(process)
            stderr = (await stderr_task).decode("utf-8", errors="replace")

        if no_space or NO_SPACE_MARKER in stderr.lower():
            raise StorageExhaustedError("Repository storage ran out of space during backup")

        if returncode not in (0, EXIT_PARTIAL) or summary is None:
            tail = stderr.strip().splitlines()[-5:]
            raise SubprocessError(
                f"{Path(self.binary).name} exited with code {returncode}"
                + (f": {' | '.join(tail)}" if tail else ""),
                returncode,
            )

        if returncode == EXIT_PARTIAL:
            yield EngineWarning("Snapshot incomplete: some source files could not be read")

    # === Process handling ===

    def _environment(self, repository: Path) -> dict[str, str]:
        env = os.environ.copy()
        env["RESTIC_REPOSITORY"] = str(repository)
        if self.password:
            env["RESTIC_PASSWORD"] = self.password
        return env

    async def _spawn(self, args: list[str], repository: Path) -> asyncio.subprocess.Process:
        logger.debug("Starting engine", command=self.describe_command(repository, args))
        try:
            return await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._environment(repository),
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError as e:
            raise SubprocessError(f"Backup engine not found: {args[0]}") from e

    async def _run(
        self,
        args: list[str],
        repository: Path,
        token: CancellationToken | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        process = await self._spawn(args, repository)
        try:
            communicate = process.communicate()
            stdout, stderr = await (token.run(communicate) if token else communicate)
        finally:
            if process.returncode is None:
                await self._terminate(process)

        result = subprocess.CompletedProcess(
            args,
            process.returncode or 0,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )
        if check and result.returncode != 0:
            if NO_SPACE_MARKER in result.stderr.lower():
                raise StorageExhaustedError("Repository storage ran out of space")
            raise SubprocessError(
                f"{' '.join(args[:2])} failed: {result.stderr.strip()}",
                result.returncode,
            )
        return result

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """Terminate, then kill if the process ignores the request."""
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.terminate_timeout)
        except asyncio.TimeoutError:
            logger.warning("Engine did not exit after terminate, killing", pid=process.pid)
            process.kill()
            await process.wait()

    @staticmethod
    def _write_file_list(files: list[str]) -> Path:
        with tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", suffix=".files", delete=False
        ) as f:
            f.write("\n".join(files) + "\n")
            return Path(f.name)

    def status(self) -> dict[str, Any]:
        return {
            "binary": self.binary,
            "available": shutil.which(self.binary) is not None,
            "repository_base": str(self.repository_base),
        }

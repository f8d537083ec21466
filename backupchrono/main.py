"""
Main entry point for BackupChrono
"""

import asyncio
import signal
import sys
from dataclasses import dataclass
from typing import TYPE_CHECKING

from backupchrono import __version__
from backupchrono.config import get_settings
from backupchrono.utils import get_logger, setup_logging

if TYPE_CHECKING:
    from structlog.stdlib import BoundLogger

    from backupchrono.config.settings import Settings
    from backupchrono.monitoring.health_server import HealthServer
    from backupchrono.orchestrator import BackupOrchestrator


@dataclass
class RuntimeContext:
    """Container for runtime components."""

    settings: "Settings"
    orchestrator: "BackupOrchestrator"
    health_server: "HealthServer | None" = None


def build_runtime_context(settings: "Settings", logger: "BoundLogger") -> RuntimeContext:
    """Construct the orchestrator from settings."""
    from backupchrono.orchestrator import BackupOrchestrator

    orchestrator = BackupOrchestrator.from_settings(settings)
    logger.info(
        "Orchestrator configured",
        config_file=str(settings.config_file),
        execution_log=str(settings.execution_log_path),
        max_concurrent_backups=settings.max_concurrent_backups,
    )
    return RuntimeContext(settings=settings, orchestrator=orchestrator)


def start_health_server(
    context: RuntimeContext, logger: "BoundLogger"
) -> "HealthServer | None":
    """Start the health check server, handling port conflicts."""
    if not context.settings.health_server_enabled:
        return None

    from backupchrono.monitoring import HealthServer

    try:
        health_server = HealthServer(
            orchestrator=context.orchestrator, port=context.settings.health_port
        )
        health_server.start()
        return health_server
    except OSError as exc:
        logger.warning(f"Health server startup failed: {exc}")
        logger.info("Service will continue without health server")
        return None


def install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # not available on every platform (e.g. Windows)
            pass


async def run_application(context: RuntimeContext, logger: "BoundLogger") -> None:
    """Run the scheduler until a shutdown signal arrives."""
    stop_event = asyncio.Event()
    install_signal_handlers(stop_event)

    await context.orchestrator.start()
    context.health_server = start_health_server(context, logger)
    logger.info("BackupChrono running", health=context.orchestrator.health())

    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down services...")
        await context.orchestrator.stop(timeout=context.settings.engine_terminate_timeout * 2)
        if context.health_server:
            context.health_server.stop()
        logger.info("All services stopped")


async def main() -> None:
    """Main application entry point."""
    setup_logging()
    logger = get_logger("main")

    logger.info("Starting BackupChrono", version=__version__)

    try:
        settings = get_settings()
        context = build_runtime_context(settings, logger)
        await run_application(context, logger)
    except Exception as exc:  # pragma: no cover
        logger.error("Failed to start service", error=str(exc), exc_info=True)
        sys.exit(1)


def run() -> None:
    """Console script entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nBackupChrono stopped by user")
        sys.exit(0)


if __name__ == "__main__":
    run()

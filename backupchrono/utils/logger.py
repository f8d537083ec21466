"""
Logging configuration for BackupChrono
"""

import logging
import re
from typing import cast

import structlog
from rich.console import Console
from rich.logging import RichHandler

from backupchrono.config import get_settings


def setup_logging() -> None:
    """Set up structured logging with rich formatting"""

    settings = get_settings()

    # Configure log level
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    # Create logs directory if it doesn't exist
    settings.log_dir.mkdir(parents=True, exist_ok=True)

    # Configure standard library logging
    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[
            RichHandler(
                console=Console(stderr=True),
                show_time=True,
                show_path=True,
                markup=False,
                rich_tracebacks=True,
            ),
            logging.FileHandler(settings.log_dir / "backupchrono.log", encoding="utf-8"),
        ],
    )

    # Configure structlog
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            (
                structlog.processors.JSONRenderer()
                if settings.log_format == "json"
                else structlog.dev.ConsoleRenderer()
            ),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance"""
    logger = structlog.get_logger(name)
    return cast("structlog.stdlib.BoundLogger", logger)


_SENSITIVE_PATTERNS = [
    r'password[=:\s]*["\']?[^\s"\']{4,}["\']?',
    r'secret[=:\s]*["\']?[\w\-\.]{8,}["\']?',
    r'token[=:\s]*["\']?[\w\-\.]{20,}["\']?',
    r"(?:[a-z][a-z0-9+\-.]*://)[^/\s:@]+:[^/\s@]+@",  # credentials embedded in URLs
]


def sanitize_log_content(content: str, max_length: int = 500) -> str:
    """Mask credentials in engine/plugin output before it is logged or stored"""
    sanitized = content

    for pattern in _SENSITIVE_PATTERNS:
        sanitized = re.sub(pattern, "[REDACTED]", sanitized, flags=re.IGNORECASE)

    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length] + "..."

    return sanitized

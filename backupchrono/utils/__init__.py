"""Utility modules for BackupChrono"""

from .logger import (
    get_logger,
    sanitize_log_content,
    setup_logging,
)

__all__ = [
    "get_logger",
    "setup_logging",
    "sanitize_log_content",
]

"""BackupChrono - backup orchestration and scheduling service"""

__version__ = "0.1.0"

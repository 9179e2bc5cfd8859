"""Backup strategies layered on top of BackupManager."""

from .incremental import IncrementalBackupStrategy
from .differential import DifferentialBackupStrategy

__all__ = ["IncrementalBackupStrategy", "DifferentialBackupStrategy"]

"""Backup, restore and backup-strategy components."""

from .manager import BackupManager
from .models import BackupKind, BackupType, BackupRecord, RestoreResult, CleanupResult

__all__ = ["BackupManager", "BackupKind", "BackupType", "BackupRecord", "RestoreResult", "CleanupResult"]

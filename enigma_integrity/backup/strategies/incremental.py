"""Incremental backups: a chain of deltas anchored to a full backup."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from ..._checksum import ChecksumEngine
from ..._utils import logger, PathLike
from ...config import IncrementalConfig
from ..manager import BackupManager
from ..models import (
    BackupType,
    IncrementalBackupResult,
    IncrementalChainEntry,
    IncrementalIndex,
)
from ..utils import generate_backup_id
from .base import IndexedStrategy


class IncrementalBackupStrategy(IndexedStrategy[IncrementalIndex]):
    """Back up a file only when it changed since its last recorded backup."""

    index_model = IncrementalIndex
    index_filename = "incremental-index.json"

    def __init__(self, config: IncrementalConfig, checksums: ChecksumEngine, backups: BackupManager):
        super().__init__(config.directory, checksums, backups)
        self.config = config
        self._skipped = 0

    async def create_incremental_backup(
        self, path: PathLike, root: Optional[PathLike] = None
    ) -> IncrementalBackupResult:
        """Create a full, incremental or no backup of ``path``.

        Args:
            path: File to back up
            root: Tracked root the chain belongs to; defaults to the file itself

        Returns:
            IncrementalBackupResult; ``backup_type`` is ``skipped`` when nothing changed
        """
        resolved, root_key = self._keys(path, root)

        async with self._root_lock(root_key):
            index = await self._ensure_loaded()
            st = self._stat_source(resolved)
            chain = index.chains.get(root_key, [])

            backup_type, reason = await self._classify(resolved, st, chain, index)

            if backup_type is BackupType.SKIPPED:
                self._skipped += 1
                logger.debug(f"Incremental backup skipped for {resolved}: {reason}")
                return IncrementalBackupResult(
                    parent_id=chain[-1].backup_id if chain else None,
                    backup_type=BackupType.SKIPPED,
                    files_changed=0,
                    chain_length=len(chain),
                    reason=reason,
                )

            record = await self.backups.create_backup(resolved)
            backup_id = generate_backup_id("full" if backup_type is BackupType.FULL else "incr")
            parent_id = None if backup_type is BackupType.FULL else chain[-1].backup_id
            entry = IncrementalChainEntry(
                backup_id=backup_id,
                parent_id=parent_id,
                backup_kind=backup_type,
                changed_files={str(resolved)},
                backup_path=record.backup_path,
                created_at=datetime.now(timezone.utc),
            )
            baseline = await self._baseline(resolved, st, backup_id)

            if backup_type is BackupType.FULL:
                index.chains[root_key] = [entry]
            else:
                index.chains[root_key].append(entry)
            index.files[str(resolved)] = baseline
            await self._persist()

            chain_length = len(index.chains[root_key])

        logger.info(
            f"{backup_type.value.capitalize()} backup {backup_id} of {resolved.name} "
            f"(chain length {chain_length}): {reason}"
        )
        return IncrementalBackupResult(
            backup_id=backup_id,
            parent_id=parent_id,
            backup_type=backup_type,
            files_changed=1,
            changed_files=[str(resolved)],
            chain_length=chain_length,
            reason=reason,
            backup=record,
        )

    async def get_chain(self, root: PathLike) -> List[IncrementalChainEntry]:
        index = await self._ensure_loaded()
        _, root_key = self._keys(root, None)
        return [entry.model_copy() for entry in index.chains.get(root_key, [])]

    async def get_stats(self) -> Dict[str, Any]:
        index = await self._ensure_loaded()
        entries = [entry for chain in index.chains.values() for entry in chain]
        return {
            "enabled": self.config.enabled,
            "strategy": self.config.strategy,
            "change_detection": self.config.change_detection,
            "max_chain_length": self.config.max_chain_length,
            "tracked_roots": len(index.chains),
            "tracked_files": len(index.files),
            "total_entries": len(entries),
            "full_backups": sum(1 for e in entries if e.backup_kind is BackupType.FULL),
            "incremental_backups": sum(1 for e in entries if e.backup_kind is BackupType.INCREMENTAL),
            "skipped_backups": self._skipped,
            "longest_chain": max((len(chain) for chain in index.chains.values()), default=0),
            "corruption_recoveries": self.corruption_recoveries,
            "index_path": str(self.index_path),
            "last_updated": index.last_updated,
        }

    async def _classify(self, resolved, st, chain, index: IncrementalIndex) -> Tuple[BackupType, str]:
        if not chain:
            return BackupType.FULL, "no prior backup record"

        baseline = index.files.get(str(resolved))
        if baseline is not None:
            changed = await self._has_changed(resolved, st, baseline, self.config.change_detection)
            if not changed:
                return BackupType.SKIPPED, "unchanged since last backup"

        if self.config.strategy == "full":
            return BackupType.FULL, "full strategy backs up every change in full"
        if len(chain) >= self.config.max_chain_length:
            return BackupType.FULL, f"chain reached {self.config.max_chain_length} entries"

        anchor_age = (datetime.now(timezone.utc) - chain[0].created_at).total_seconds()
        if anchor_age > self.config.full_backup_interval:
            return BackupType.FULL, f"full backup is {anchor_age:.0f}s old"

        if baseline is None:
            return BackupType.INCREMENTAL, "new file in tracked root"
        return BackupType.INCREMENTAL, f"changed ({self.config.change_detection})"

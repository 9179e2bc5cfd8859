"""Differential backups: cumulative changes since the last full backup."""

import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..._checksum import ChecksumEngine
from ..._utils import logger, PathLike
from ...config import DifferentialConfig
from ..manager import BackupManager
from ..models import (
    BackupType,
    DifferentialBackupResult,
    DifferentialIndex,
    DifferentialState,
)
from ..utils import generate_backup_id
from .base import IndexedStrategy


class DifferentialBackupStrategy(IndexedStrategy[DifferentialIndex]):
    """Back up files that changed since the full backup of their tracked root.

    With the ``manual`` strategy a full backup is only recommended; with
    ``auto`` a recommended promotion is carried out on the next call.
    """

    index_model = DifferentialIndex
    index_filename = "differential-index.json"

    def __init__(self, config: DifferentialConfig, checksums: ChecksumEngine, backups: BackupManager):
        super().__init__(config.directory, checksums, backups)
        self.config = config

    async def create_differential_backup(
        self, path: PathLike, root: Optional[PathLike] = None
    ) -> DifferentialBackupResult:
        resolved, root_key = self._keys(path, root)

        async with self._root_lock(root_key):
            index = await self._ensure_loaded()
            st = self._stat_source(resolved)
            state = index.states.get(root_key)

            if state is None:
                return await self._full_backup(index, root_key, resolved, st, "no full backup for root")
            if state.promotion_pending and self.config.strategy == "auto":
                return await self._full_backup(index, root_key, resolved, st, "promoted to full backup")

            baseline = state.baselines.get(str(resolved))
            # Compared against the full backup's baseline, not the last differential
            changed = baseline is None or await self._has_changed(resolved, st, baseline, "hybrid")

            if not changed:
                reasons = self._promotion_reasons(state)
                logger.debug(f"Differential backup skipped for {resolved}: unchanged since full backup")
                return self._result(state, BackupType.SKIPPED, None, 0, reasons)

            record = await self.backups.create_backup(resolved)
            backup_id = generate_backup_id("diff")
            state.cumulative_changed_files.add(str(resolved))
            state.cumulative_size += st.st_size
            state.differential_count += 1

            reasons = self._promotion_reasons(state)
            if reasons and self.config.strategy == "auto":
                state.promotion_pending = True
            await self._persist()

        logger.info(
            f"Differential backup {backup_id} of {resolved.name}: "
            f"{len(state.cumulative_changed_files)} files / {state.cumulative_size:,} bytes since "
            f"{state.current_full_backup_id}"
        )
        if reasons:
            logger.info(f"Full backup recommended for {root_key}: {'; '.join(reasons)}")
        return self._result(state, BackupType.DIFFERENTIAL, backup_id, 1, reasons, record)

    async def get_state(self, root: PathLike) -> Optional[DifferentialState]:
        index = await self._ensure_loaded()
        _, root_key = self._keys(root, None)
        state = index.states.get(root_key)
        return state.model_copy(deep=True) if state else None

    async def get_stats(self) -> Dict[str, Any]:
        index = await self._ensure_loaded()
        states = list(index.states.values())
        return {
            "enabled": self.config.enabled,
            "strategy": self.config.strategy,
            "size_multiplier": self.config.size_multiplier,
            "full_backup_threshold": self.config.full_backup_threshold,
            "tracked_roots": len(states),
            "differential_backups": sum(s.differential_count for s in states),
            "cumulative_changed_files": sum(len(s.cumulative_changed_files) for s in states),
            "cumulative_size": sum(s.cumulative_size for s in states),
            "roots_pending_full_backup": sum(1 for s in states if self._promotion_reasons(s)),
            "corruption_recoveries": self.corruption_recoveries,
            "index_path": str(self.index_path),
            "last_updated": index.last_updated,
        }

    async def _full_backup(
        self, index: DifferentialIndex, root_key: str, resolved, st: os.stat_result, reason: str
    ) -> DifferentialBackupResult:
        record = await self.backups.create_backup(resolved)
        backup_id = generate_backup_id("full")
        state = DifferentialState(
            current_full_backup_id=backup_id,
            full_backup_path=record.backup_path,
            base_full_size=st.st_size,
            created_at=datetime.now(timezone.utc),
            baselines={str(resolved): await self._baseline(resolved, st, backup_id)},
        )
        index.states[root_key] = state
        await self._persist()

        logger.info(f"Full backup {backup_id} of {resolved.name} starts a differential cycle: {reason}")
        return self._result(state, BackupType.FULL, backup_id, 1, [], record)

    def _promotion_reasons(self, state: DifferentialState) -> List[str]:
        reasons = []
        size_limit = state.base_full_size * self.config.size_multiplier
        if state.cumulative_size > size_limit:
            reasons.append(f"cumulative size {state.cumulative_size:,} exceeds {size_limit:,.0f} bytes")
        age = (datetime.now(timezone.utc) - state.created_at).total_seconds()
        if age > self.config.full_backup_interval:
            reasons.append(f"full backup is {age:.0f}s old")
        if len(state.cumulative_changed_files) >= self.config.full_backup_threshold:
            reasons.append(f"{len(state.cumulative_changed_files)} files changed since full backup")
        return reasons

    @staticmethod
    def _result(state, backup_type, backup_id, files_changed, reasons, record=None) -> DifferentialBackupResult:
        return DifferentialBackupResult(
            backup_id=backup_id,
            full_backup_id=state.current_full_backup_id,
            backup_type=backup_type,
            files_changed=files_changed,
            cumulative_changed_files=sorted(state.cumulative_changed_files),
            cumulative_size=state.cumulative_size,
            recommend_full_backup=bool(reasons),
            reasons=reasons,
            backup=record,
        )

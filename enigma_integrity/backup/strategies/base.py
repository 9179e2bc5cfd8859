"""Shared index handling and change detection for backup strategies."""

import asyncio
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Generic, Optional, Type, TypeVar

from pydantic import BaseModel

from ..._checksum import ChecksumEngine
from ..._utils import logger, resolve_path, PathLike
from ...errors import RollbackError
from ..manager import BackupManager
from ..models import FileBaseline
from ..utils import save_index, load_index, artifact_timestamp

IndexT = TypeVar("IndexT", bound=BaseModel)


class IndexedStrategy(Generic[IndexT]):
    """A backup strategy whose state lives in one JSON index document.

    Decisions and backups for one tracked root are serialized by a per-root
    lock; mutations of the index document itself by ``self._lock``.
    """

    index_model: Type[IndexT]
    index_filename: str

    def __init__(self, directory: str, checksums: ChecksumEngine, backups: BackupManager):
        self.checksums = checksums
        self.backups = backups
        self.index_path = resolve_path(directory) / self.index_filename
        self._index: Optional[IndexT] = None
        self._lock = asyncio.Lock()
        self._root_locks: Dict[str, asyncio.Lock] = {}
        self.corruption_recoveries = 0

    def _root_lock(self, root_key: str) -> asyncio.Lock:
        if root_key not in self._root_locks:
            self._root_locks[root_key] = asyncio.Lock()
        return self._root_locks[root_key]

    @staticmethod
    def _keys(path: PathLike, root: Optional[PathLike]):
        resolved = resolve_path(path)
        root_key = str(resolve_path(root)) if root is not None else str(resolved)
        return resolved, root_key

    def _stat_source(self, resolved: Path) -> os.stat_result:
        access = self.checksums.verify_file_access(resolved)
        if not access.exists or not access.readable:
            raise RollbackError(f"Cannot backup file: {access.error or 'File not accessible'}", str(resolved))
        return os.stat(resolved)

    async def _ensure_loaded(self) -> IndexT:
        async with self._lock:
            if self._index is not None:
                return self._index
            try:
                document = await load_index(self.index_path)
                index = self.index_model.model_validate(document) if document is not None else None
            except (OSError, ValueError) as e:
                self.corruption_recoveries += 1
                quarantine = self.index_path.with_name(f"{self.index_filename}.corrupt-{artifact_timestamp()}")
                logger.warning(
                    f"Backup index {self.index_path} is corrupted ({e}); reinitializing, history is lost. "
                    f"Old file moved to {quarantine.name}"
                )
                try:
                    os.replace(self.index_path, quarantine)
                except OSError as move_error:
                    logger.warning(f"Could not move corrupted index aside: {move_error}")
                index = None
            self._index = index if index is not None else self.index_model()
            return self._index

    async def _persist(self) -> None:
        async with self._lock:
            self._index.last_updated = datetime.now(timezone.utc)
            await save_index(self._index.model_dump(mode="json"), self.index_path)

    async def _baseline(self, resolved: Path, st: os.stat_result, backup_id: str) -> FileBaseline:
        # Backups just hashed this file, so this is normally a cache hit
        record = await self.checksums.compute_checksum(resolved)
        return FileBaseline(
            mtime_ns=st.st_mtime_ns,
            size=st.st_size,
            checksum=record.hash,
            last_backup_id=backup_id,
            recorded_at=datetime.now(timezone.utc),
        )

    async def _has_changed(self, resolved: Path, st: os.stat_result, baseline: FileBaseline, method: str) -> bool:
        """Compare a file against its baseline.

        ``timestamp`` looks at mtime and size only, ``checksum`` always hashes,
        ``hybrid`` hashes only when the cheap stat comparison reports a change.
        """
        stat_changed = st.st_mtime_ns != baseline.mtime_ns or st.st_size != baseline.size
        if method == "timestamp":
            return stat_changed
        if method == "hybrid" and not stat_changed:
            return False
        if baseline.checksum is None:
            return stat_changed
        current = await self.checksums.compute_checksum(resolved, use_cache=False)
        return current.hash != baseline.checksum

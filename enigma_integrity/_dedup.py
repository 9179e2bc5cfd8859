"""Content-addressable deduplication store with reference counting."""

import asyncio
import os
import shutil
import stat
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import aiofiles

from ._checksum import ChecksumEngine, new_hasher, CHUNK_SIZE
from ._utils import logger, resolve_path, remove_silently, PathLike
from .backup.models import DeduplicationIndex, DeduplicationIndexEntry, DeduplicationResult
from .backup.utils import save_index, load_index, artifact_timestamp
from .config import DeduplicationConfig
from .errors import ChecksumError, ChecksumTimeoutError, IntegrityError

INDEX_FILENAME = "dedup-index.json"


class DeduplicationStore:
    """Store file contents once under ``<directory>/<hash>`` and count references.

    The index is the one shared mutable resource of the engine: every
    read-modify-write of it happens under ``self._lock``.
    """

    def __init__(
        self,
        config: DeduplicationConfig,
        checksums: ChecksumEngine,
        max_file_size: int,
        timeout: float,
    ):
        self.config = config
        self.checksums = checksums
        self.max_file_size = max_file_size
        self.timeout = timeout
        self.storage_root = resolve_path(config.directory)
        self.index_path = self.storage_root / INDEX_FILENAME
        self._index: Optional[DeduplicationIndex] = None
        self._lock = asyncio.Lock()

    def should_deduplicate(self, size: int) -> bool:
        return self.config.enabled and size >= self.config.threshold

    def blob_path(self, content_hash: str) -> Path:
        return self.storage_root / content_hash

    async def deduplicate(self, path: PathLike, link_to: Optional[PathLike] = None) -> DeduplicationResult:
        """Register the contents of ``path`` in the store.

        Args:
            path: Source file
            link_to: Optional path to materialize as a hard link (or copy) of the stored blob

        Returns:
            DeduplicationResult; ``space_saved`` is the blob size when the content was already stored
        """
        resolved = resolve_path(path)
        # Hash while copying into a temp blob so the stored bytes are exactly the hashed bytes
        content_hash, size, tmp_blob = await self._ingest(resolved)

        try:
            async with self._lock:
                index = await self._ensure_loaded()
                now = datetime.now(timezone.utc)
                entry = index.entries.get(content_hash)
                blob = self.blob_path(content_hash)

                if entry is None:
                    os.replace(tmp_blob, blob)
                    entry = DeduplicationIndexEntry(
                        content_hash=content_hash,
                        storage_path=str(blob),
                        reference_count=1,
                        first_seen_at=now,
                        last_referenced_at=now,
                        size_bytes=size,
                    )
                    index.entries[content_hash] = entry
                    index.stats.stored_bytes += size
                    is_new, space_saved = True, 0
                else:
                    if not blob.exists():
                        logger.warning(f"Stored blob missing for {content_hash[:16]}..., restoring it")
                        os.replace(tmp_blob, blob)
                    elif not await self._blob_intact(blob, entry):
                        # e.g. an in-place edit of a hard link to the blob
                        logger.warning(f"Stored blob for {content_hash[:16]}... is corrupted, replacing it")
                        os.replace(tmp_blob, blob)
                    else:
                        remove_silently(tmp_blob)
                    entry.reference_count += 1
                    entry.last_referenced_at = now
                    is_new, space_saved = False, entry.size_bytes
                    index.stats.duplicates_found += 1
                    index.stats.space_saved += space_saved

                index.stats.total_files_processed += 1
                await self._persist(index)
                reference_count = entry.reference_count
        finally:
            remove_silently(tmp_blob)

        result = DeduplicationResult(
            content_hash=content_hash,
            is_new_entry=is_new,
            reference_count=reference_count,
            space_saved=space_saved,
            storage_path=str(blob),
            size_bytes=size,
        )

        if link_to is not None:
            result.linked_path, result.hard_linked = await self.materialize(content_hash, link_to)

        logger.info(
            f"Deduplicated {resolved.name}: {'new entry' if is_new else 'duplicate'} "
            f"{content_hash[:16]}... refs={reference_count} saved={space_saved:,} bytes"
        )
        return result

    async def release(self, content_hash: str) -> int:
        """Drop one reference; the entry and its blob go away when the count reaches 0.

        Returns:
            Remaining reference count (0 when the entry was removed or unknown)
        """
        async with self._lock:
            index = await self._ensure_loaded()
            entry = index.entries.get(content_hash)
            if entry is None:
                return 0

            remaining = entry.reference_count - 1
            if remaining <= 0:
                del index.entries[content_hash]
                index.stats.stored_bytes = max(0, index.stats.stored_bytes - entry.size_bytes)
                remove_silently(Path(entry.storage_path))
                logger.debug(f"Removed dedup entry {content_hash[:16]}...")
            else:
                entry.reference_count = remaining
            await self._persist(index)
            return max(remaining, 0)

    async def materialize(self, content_hash: str, target: PathLike) -> Tuple[str, bool]:
        """Make ``target`` hold the stored content, as a hard link where possible.

        Returns:
            (target path, whether a hard link was used)
        """
        blob = self.blob_path(content_hash)
        if not blob.exists():
            raise IntegrityError(
                f"Stored content missing for {content_hash}", "DEDUP_BLOB_MISSING", str(blob), "deduplication"
            )

        target_path = resolve_path(target)
        target_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = target_path.with_name(f".{target_path.name}.tmp-{uuid.uuid4().hex[:8]}")

        hard_linked = False
        try:
            if self.config.prefer_hard_links:
                try:
                    os.link(blob, tmp_path)
                    hard_linked = True
                except OSError as e:
                    logger.debug(f"Hard link unavailable ({e}), falling back to copy")
            if not hard_linked:
                await asyncio.to_thread(shutil.copyfile, blob, tmp_path)
            os.replace(tmp_path, target_path)
        finally:
            remove_silently(tmp_path)

        self.checksums.invalidate(target_path)
        return str(target_path), hard_linked

    async def read_blob(
        self,
        content_hash: str,
        storage_path: Optional[PathLike] = None,
        algorithm: Optional[str] = None,
        verify: bool = True,
    ) -> bytes:
        """Read stored content, optionally checking it still hashes to ``content_hash``.

        ``storage_path`` and ``algorithm`` come from a reference document when
        the blob was written under a different store configuration.
        """
        blob = Path(storage_path) if storage_path else self.blob_path(content_hash)
        if verify:
            record = await self.checksums.compute_checksum(
                blob, algorithm=algorithm or self.config.algorithm, use_cache=False
            )
            if record.hash != content_hash:
                raise IntegrityError(
                    f"Stored content for {content_hash} is corrupted (hash {record.hash})",
                    "DEDUP_BLOB_CORRUPTED",
                    str(blob),
                    "deduplication",
                )
        async with aiofiles.open(blob, "rb") as f:
            return await f.read()

    async def get_entry(self, content_hash: str) -> Optional[DeduplicationIndexEntry]:
        async with self._lock:
            index = await self._ensure_loaded()
            entry = index.entries.get(content_hash)
            return entry.model_copy() if entry else None

    async def get_stats(self) -> Dict[str, Any]:
        async with self._lock:
            index = await self._ensure_loaded()
            total_references = sum(e.reference_count for e in index.entries.values())
            logical_bytes = sum(e.size_bytes * e.reference_count for e in index.entries.values())
            return {
                "enabled": self.config.enabled,
                "algorithm": self.config.algorithm,
                "storage_root": str(self.storage_root),
                "total_entries": len(index.entries),
                "total_references": total_references,
                "stored_bytes": index.stats.stored_bytes,
                "logical_bytes": logical_bytes,
                "space_saved": index.stats.space_saved,
                "duplicates_found": index.stats.duplicates_found,
                "total_files_processed": index.stats.total_files_processed,
                "deduplication_ratio": (
                    round(logical_bytes / index.stats.stored_bytes, 4) if index.stats.stored_bytes else None
                ),
                "last_updated": index.last_updated,
            }

    # Private helper methods

    async def _blob_intact(self, blob: Path, entry: DeduplicationIndexEntry) -> bool:
        try:
            if blob.stat().st_size != entry.size_bytes:
                return False
            record = await self.checksums.compute_checksum(blob, algorithm=self.config.algorithm, use_cache=False)
        except (OSError, ChecksumError) as e:
            logger.debug(f"Cannot verify stored blob {blob.name[:16]}...: {e}")
            return False
        return record.hash == entry.content_hash

    async def _ingest(self, resolved: Path) -> Tuple[str, int, Path]:
        try:
            st = os.stat(resolved)
        except OSError as e:
            raise ChecksumError(f"Cannot access file: {e}", str(resolved), e) from e
        if not stat.S_ISREG(st.st_mode):
            raise ChecksumError(f"Path is not a file: {resolved}", str(resolved))
        if st.st_size > self.max_file_size:
            raise ChecksumError(
                f"File size ({st.st_size}) exceeds maximum allowed size ({self.max_file_size})", str(resolved)
            )

        self.storage_root.mkdir(parents=True, exist_ok=True)
        tmp_blob = self.storage_root / f".ingest-{uuid.uuid4().hex}"

        async def copy_and_hash() -> Tuple[str, int]:
            hasher = new_hasher(self.config.algorithm)
            size = 0
            async with aiofiles.open(resolved, "rb") as src, aiofiles.open(tmp_blob, "wb") as dst:
                while True:
                    chunk = await src.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    hasher.update(chunk)
                    size += len(chunk)
                    await dst.write(chunk)
            return hasher.hexdigest(), size

        try:
            content_hash, size = await asyncio.wait_for(copy_and_hash(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            remove_silently(tmp_blob)
            raise ChecksumTimeoutError(self.timeout, str(resolved)) from e
        except OSError as e:
            remove_silently(tmp_blob)
            raise ChecksumError(f"Failed to read file for deduplication: {e}", str(resolved), e) from e
        except BaseException:
            remove_silently(tmp_blob)
            raise
        return content_hash, size, tmp_blob

    async def _ensure_loaded(self) -> DeduplicationIndex:
        if self._index is not None:
            return self._index

        try:
            document = await load_index(self.index_path)
            index = DeduplicationIndex.model_validate(document) if document is not None else None
        except (OSError, ValueError) as e:
            quarantine = self.index_path.with_name(f"{INDEX_FILENAME}.corrupt-{artifact_timestamp()}")
            logger.warning(
                f"Deduplication index {self.index_path} is corrupted ({e}); "
                f"reinitializing and moving the old file to {quarantine.name}"
            )
            try:
                os.replace(self.index_path, quarantine)
            except OSError as move_error:
                logger.warning(f"Could not move corrupted index aside: {move_error}")
            index = None

        if index is None:
            index = DeduplicationIndex(algorithm=self.config.algorithm)
        elif index.algorithm != self.config.algorithm and index.entries:
            logger.warning(
                f"Deduplication index was built with {index.algorithm}, "
                f"configured algorithm is {self.config.algorithm}"
            )

        self._index = index
        return index

    async def _persist(self, index: DeduplicationIndex) -> None:
        index.total_entries = len(index.entries)
        index.last_updated = datetime.now(timezone.utc)
        await save_index(index.model_dump(mode="json"), self.index_path)

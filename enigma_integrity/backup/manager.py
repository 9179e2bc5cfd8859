"""Backup and restore orchestration for single files."""

import asyncio
import json
import shutil
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import aiofiles

from .._checksum import ChecksumEngine, hash_bytes
from .._compression import CompressionCodec
from .._dedup import DeduplicationStore
from .._utils import logger, resolve_path, elapsed_ms, remove_silently, PathLike
from ..config import IntegrityConfig
from ..errors import RollbackError
from .models import (
    BackupKind,
    BackupRecord,
    BackupMetadata,
    CleanupResult,
    DeduplicationReference,
    RestoreResult,
)
from .utils import (
    DEDUP_SUFFIX,
    artifact_kind,
    atomic_write_bytes,
    parse_artifact_name,
    unique_artifact_path,
)


class BackupManager:
    """Create verified backups of files before they are rewritten, and restore them."""

    def __init__(
        self,
        config: IntegrityConfig,
        checksums: ChecksumEngine,
        codec: CompressionCodec,
        dedup: DeduplicationStore,
    ):
        """Initialize backup manager.

        Args:
            config: Integrity configuration (backup directory, retention, verification)
            checksums: Checksum engine shared with the rest of the validator
            codec: Compression codec for compressed artifacts
            dedup: Deduplication store for deduplicated artifacts
        """
        self.config = config
        self.checksums = checksums
        self.codec = codec
        self.dedup = dedup
        self.backup_dir = resolve_path(config.backup_directory)

    async def create_backup(self, path: PathLike) -> BackupRecord:
        """Create a verified backup of ``path``.

        Storage form is chosen by size: deduplicated, compressed or plain,
        in the order given by ``storage_precedence``.

        Raises:
            RollbackError: source not accessible, or the artifact failed verification
        """
        start = time.perf_counter()
        resolved = resolve_path(path)
        logger.debug(f"Creating backup of {resolved} in {self.backup_dir}")

        if not self.config.create_backups:
            raise RollbackError("Backups are disabled by configuration", str(resolved))

        try:
            access = self.checksums.verify_file_access(resolved)
            if not access.exists or not access.readable:
                raise RollbackError(f"Cannot backup file: {access.error or 'File not accessible'}", str(resolved))

            if not self.backup_dir.exists():
                self.backup_dir.mkdir(parents=True, exist_ok=True)
                logger.debug(f"Created backup directory {self.backup_dir}")

            source = await self.checksums.compute_checksum(resolved, use_cache=False)
            kind = self._choose_storage(source.file_size)

            if kind is BackupKind.DEDUPLICATED:
                record = await self._backup_deduplicated(resolved, source.hash, source.file_size)
            elif kind is BackupKind.COMPRESSED:
                record = await self._backup_compressed(resolved, source.hash, source.file_size)
            else:
                record = await self._backup_plain(resolved, source.hash, source.file_size)

        except RollbackError as e:
            logger.error(f"Backup creation failed for {resolved}: {e}")
            raise
        except Exception as e:
            logger.error(f"Backup creation failed for {resolved}: {e}")
            raise RollbackError(f"Backup creation failed: {e}", str(resolved), e) from e

        logger.info(
            f"Backup created: {resolved.name} -> {Path(record.backup_path).name} "
            f"({record.backup_kind.value}, {record.original_size:,} -> {record.stored_size:,} bytes, "
            f"{elapsed_ms(start)}ms)"
        )
        return record

    async def restore_from_backup(self, path: PathLike, backup_path: PathLike) -> RestoreResult:
        """Restore ``path`` from a backup artifact of any storage kind.

        The current file, if any, is first backed up (safety backup). When
        ``verify_after_rollback`` is on and the restored file does not match
        the artifact content, the safety backup is re-applied and
        RollbackError is raised.
        """
        start = time.perf_counter()
        resolved = resolve_path(path)
        resolved_backup = resolve_path(backup_path)
        logger.debug(f"Restoring {resolved} from {resolved_backup}")

        try:
            access = self.checksums.verify_file_access(resolved_backup)
            if not access.exists or not access.readable:
                raise RollbackError(
                    f"Cannot restore from backup: {access.error or 'Backup file not accessible'}", str(resolved)
                )

            content = await self.read_backup_content(resolved_backup)
            expected_hash = hash_bytes(content, self.config.algorithm)

            safety_backup_path = None
            if resolved.exists():
                try:
                    safety = await self.create_backup(resolved)
                    safety_backup_path = safety.backup_path
                    logger.debug(f"Created safety backup of current file: {safety_backup_path}")
                except Exception as e:
                    logger.warning(f"Failed to create safety backup of {resolved}, proceeding anyway: {e}")

            await atomic_write_bytes(resolved, content)
            self.checksums.invalidate(resolved)

            integrity_verified = False
            if self.config.verify_after_rollback:
                restored = await self.checksums.compute_checksum(resolved, use_cache=False)
                if restored.hash != expected_hash:
                    if safety_backup_path:
                        await self._reapply_safety_backup(resolved, Path(safety_backup_path))
                    raise RollbackError(
                        "Rollback verification failed: restored file checksum does not match backup",
                        str(resolved),
                    )
                integrity_verified = True

        except RollbackError as e:
            logger.error(f"Rollback failed for {resolved} from {resolved_backup}: {e}")
            raise
        except Exception as e:
            logger.error(f"Rollback failed for {resolved} from {resolved_backup}: {e}")
            raise RollbackError(f"Rollback failed: {e}", str(resolved), e) from e

        result = RestoreResult(
            file_path=str(resolved),
            backup_path=str(resolved_backup),
            success=True,
            integrity_verified=integrity_verified,
            safety_backup_path=safety_backup_path,
            rolled_back_at=datetime.now(timezone.utc),
            processing_time_ms=elapsed_ms(start),
        )
        logger.info(
            f"File restored from backup: {resolved} (verified={integrity_verified}, {result.processing_time_ms}ms)"
        )
        return result

    async def read_backup_content(self, backup_path: PathLike) -> bytes:
        """Return the original bytes stored in an artifact, whatever its kind."""
        artifact = resolve_path(backup_path)
        kind, algorithm = artifact_kind(artifact)

        async with aiofiles.open(artifact, "rb") as f:
            raw = await f.read()

        if kind is BackupKind.COMPRESSED:
            return await self.codec.adecompress(raw, algorithm)
        if kind is BackupKind.DEDUPLICATED:
            reference = DeduplicationReference.model_validate_json(raw)
            return await self.dedup.read_blob(
                reference.content_hash,
                storage_path=reference.storage_path,
                algorithm=reference.algorithm,
            )
        return raw

    async def cleanup_backups(self) -> CleanupResult:
        """Delete artifacts older than ``backup_retention_days``.

        Files that do not follow the artifact naming convention are left alone.
        A missing backup directory is not an error.
        """
        result = CleanupResult()
        if not self.backup_dir.is_dir():
            return result

        now = time.time()
        cutoff = now - self.config.backup_retention_days * 24 * 3600

        for entry in sorted(self.backup_dir.iterdir()):
            if not entry.is_file():
                continue
            if parse_artifact_name(entry.name) is None:
                result.skipped += 1
                continue
            try:
                st = entry.stat()
                if st.st_mtime < cutoff:
                    entry.unlink()
                    result.cleaned += 1
                    result.total_size += st.st_size
                    logger.debug(
                        f"Cleaned up old backup {entry.name} "
                        f"(age {round((now - st.st_mtime) / 86400)} days, {st.st_size:,} bytes)"
                    )
            except OSError as e:
                message = f"Failed to clean backup {entry.name}: {e}"
                result.errors.append(message)
                logger.warning(message)

        logger.info(
            f"Backup cleanup completed: {result.cleaned} removed, {result.skipped} skipped, "
            f"{len(result.errors)} errors, {result.total_size:,} bytes reclaimed"
        )
        return result

    async def list_backups(self, path: Optional[PathLike] = None) -> List[BackupMetadata]:
        """List artifacts in the backup directory, newest first.

        Args:
            path: Only list artifacts of this original file
        """
        if not self.backup_dir.is_dir():
            return []

        wanted = resolve_path(path).name if path is not None else None
        backups = []

        for entry in self.backup_dir.iterdir():
            parts = parse_artifact_name(entry.name)
            if parts is None or not entry.is_file():
                continue
            if wanted is not None and parts["original_name"] != wanted:
                continue

            kind, algorithm = artifact_kind(entry)
            st = entry.stat()
            extra = {"timestamp": parts["timestamp"]}
            if algorithm:
                extra["compression_algorithm"] = algorithm
            if kind is BackupKind.DEDUPLICATED:
                try:
                    extra.update(json.loads(entry.read_text(encoding="utf-8")))
                except (OSError, ValueError) as e:
                    logger.warning(f"Failed to read dedup reference {entry.name}: {e}")

            backups.append(BackupMetadata(
                backup_path=str(entry),
                original_name=parts["original_name"],
                backup_kind=kind,
                size_bytes=st.st_size,
                modified_at=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
                extra=extra,
            ))

        backups.sort(key=lambda b: (b.modified_at, b.backup_path), reverse=True)
        return backups

    # Private helper methods

    def _choose_storage(self, size: int) -> BackupKind:
        candidates = [
            (BackupKind.DEDUPLICATED, self.dedup.should_deduplicate(size)),
            (BackupKind.COMPRESSED, self.codec.should_compress(size)),
        ]
        if self.config.storage_precedence == "compression-first":
            candidates.reverse()
        for kind, eligible in candidates:
            if eligible:
                return kind
        return BackupKind.PLAIN

    async def _backup_plain(self, source: Path, source_hash: str, size: int) -> BackupRecord:
        artifact = unique_artifact_path(self.backup_dir, source)
        try:
            # copyfile, not copy2: the artifact's mtime drives retention
            await asyncio.to_thread(shutil.copyfile, source, artifact)
            stored = await self.checksums.compute_checksum(artifact, use_cache=False)
        except BaseException:
            remove_silently(artifact)
            raise

        if stored.hash != source_hash:
            remove_silently(artifact)
            raise RollbackError("Backup verification failed: checksums do not match", str(source))

        return BackupRecord(
            original_path=str(source),
            backup_path=str(artifact),
            created_at=datetime.now(timezone.utc),
            backup_kind=BackupKind.PLAIN,
            original_size=size,
            stored_size=stored.file_size,
            content_hash=source_hash,
        )

    async def _backup_compressed(self, source: Path, source_hash: str, size: int) -> BackupRecord:
        algorithm = self.codec.config.algorithm
        artifact = unique_artifact_path(self.backup_dir, source, self.codec.suffix_for(algorithm))
        try:
            async with aiofiles.open(source, "rb") as f:
                data = await f.read()
            compressed = await self.codec.acompress(data, algorithm)
            await atomic_write_bytes(artifact, compressed)

            async with aiofiles.open(artifact, "rb") as f:
                round_trip = await self.codec.adecompress(await f.read(), algorithm)
        except BaseException:
            remove_silently(artifact)
            raise

        if hash_bytes(round_trip, self.config.algorithm) != source_hash:
            remove_silently(artifact)
            raise RollbackError("Backup verification failed: compressed artifact does not match source", str(source))

        return BackupRecord(
            original_path=str(source),
            backup_path=str(artifact),
            created_at=datetime.now(timezone.utc),
            backup_kind=BackupKind.COMPRESSED,
            original_size=size,
            stored_size=len(compressed),
            compression_algorithm=algorithm,
            compression_ratio=self.codec.compression_ratio(size, len(compressed)),
            content_hash=source_hash,
        )

    async def _backup_deduplicated(self, source: Path, source_hash: str, size: int) -> BackupRecord:
        artifact = unique_artifact_path(self.backup_dir, source, DEDUP_SUFFIX)
        result = await self.dedup.deduplicate(source)

        try:
            reference = DeduplicationReference(
                original_path=str(source),
                content_hash=result.content_hash,
                storage_path=result.storage_path,
                reference_count=result.reference_count,
                timestamp=datetime.now(timezone.utc),
                algorithm=self.dedup.config.algorithm,
            )
            await atomic_write_bytes(artifact, reference.model_dump_json(indent=2).encode("utf-8"))
            stored = await self.checksums.compute_checksum(result.storage_path, use_cache=False)
            verified = stored.hash == source_hash
        except BaseException:
            remove_silently(artifact)
            await self.dedup.release(result.content_hash)
            raise

        if not verified:
            remove_silently(artifact)
            await self.dedup.release(result.content_hash)
            raise RollbackError("Backup verification failed: deduplicated content does not match source", str(source))

        reference_size = artifact.stat().st_size
        return BackupRecord(
            original_path=str(source),
            backup_path=str(artifact),
            created_at=reference.timestamp,
            backup_kind=BackupKind.DEDUPLICATED,
            original_size=size,
            stored_size=reference_size + (result.size_bytes if result.is_new_entry else 0),
            content_hash=result.content_hash,
            dedup_reference_count=result.reference_count,
        )

    async def _reapply_safety_backup(self, target: Path, safety_backup: Path) -> None:
        try:
            content = await self.read_backup_content(safety_backup)
            await atomic_write_bytes(target, content)
            self.checksums.invalidate(target)
            logger.warning(f"Restored original file {target} due to rollback verification failure")
        except Exception as e:
            logger.error(f"Failed to re-apply safety backup {safety_backup} to {target}: {e}")

import time
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ._batch import BatchOptions, LargeProjectOptimizer
from ._checksum import ChecksumEngine, ExpectedChecksum
from ._compression import CompressionCodec
from ._dedup import DeduplicationStore
from ._utils import logger, elapsed_ms, utc_now, PathLike
from .backup.manager import BackupManager
from .backup.models import (
    BackupMetadata,
    BackupRecord,
    CleanupResult,
    DeduplicationResult,
    DifferentialBackupResult,
    IncrementalBackupResult,
    RestoreResult,
)
from .backup.strategies import DifferentialBackupStrategy, IncrementalBackupStrategy
from .config import IntegrityConfig, validate_config
from .errors import ChecksumError, RollbackError
from .models import (
    BatchResult,
    BatchValidationResult,
    ChecksumRecord,
    FileAccessInfo,
    FileComparison,
    ProgressEvent,
    ValidationMetadata,
    ValidationOutcome,
)


class FileIntegrityValidator:
    """File integrity validation and backup engine."""

    def __init__(self, config: Optional[IntegrityConfig] = None):
        """Initialize the validator with a configuration object.

        Args:
            config: IntegrityConfig object. If None, uses defaults.
        """
        self.config = config or IntegrityConfig()
        for warning in validate_config(self.config):
            logger.warning(f"Configuration warning: {warning}")

        self._init_engines()
        self._init_backups()
        self._init_strategies()

        logger.debug(
            f"FileIntegrityValidator initialized (algorithm={self.config.algorithm}, "
            f"backups={self.config.backup_directory})"
        )

    def _init_engines(self):
        self.checksums = ChecksumEngine(self.config)
        self.codec = CompressionCodec(self.config.compression)
        self.dedup = DeduplicationStore(
            self.config.deduplication,
            self.checksums,
            max_file_size=self.config.max_file_size,
            timeout=self.config.timeout,
        )

    def _init_backups(self):
        self.backups = BackupManager(self.config, self.checksums, self.codec, self.dedup)

    def _init_strategies(self):
        self.incremental = IncrementalBackupStrategy(self.config.incremental, self.checksums, self.backups)
        self.differential = DifferentialBackupStrategy(self.config.differential, self.checksums, self.backups)
        self.optimizer = LargeProjectOptimizer(self.config.large_project, self.checksums, self.backups)

    # Checksums and validation

    async def calculate_checksum(
        self, path: PathLike, algorithm: Optional[str] = None, use_cache: bool = True
    ) -> ChecksumRecord:
        return await self.checksums.compute_checksum(path, algorithm=algorithm, use_cache=use_cache)

    def calculate_checksum_sync(self, path: PathLike, algorithm: Optional[str] = None) -> ChecksumRecord:
        return self.checksums.compute_checksum_sync(path, algorithm=algorithm)

    async def validate_file(self, path: PathLike, expected: ExpectedChecksum) -> ValidationOutcome:
        return await self.checksums.validate_file(path, expected)

    async def validate_batch(self, files: Iterable[Tuple[PathLike, ExpectedChecksum]]) -> BatchValidationResult:
        return await self.checksums.validate_batch(files)

    async def compare_files(self, path1: PathLike, path2: PathLike, use_cache: bool = True) -> FileComparison:
        return await self.checksums.compare_files(path1, path2, use_cache=use_cache)

    def verify_file_access(self, path: PathLike) -> FileAccessInfo:
        return self.checksums.verify_file_access(path)

    # Backups

    async def create_backup(self, path: PathLike) -> BackupRecord:
        return await self.backups.create_backup(path)

    async def restore_from_backup(self, path: PathLike, backup_path: PathLike) -> RestoreResult:
        return await self.backups.restore_from_backup(path, backup_path)

    async def cleanup_backups(self) -> CleanupResult:
        return await self.backups.cleanup_backups()

    async def list_backups(self, path: Optional[PathLike] = None) -> List[BackupMetadata]:
        return await self.backups.list_backups(path)

    async def deduplicate_file(self, path: PathLike, link_to: Optional[PathLike] = None) -> DeduplicationResult:
        """Register a file in the deduplication store outside of a backup.

        Args:
            path: File whose contents are stored
            link_to: Optional path that receives a hard link (or copy) of the stored blob
        """
        return await self.dedup.deduplicate(path, link_to=link_to)

    async def create_incremental_backup(
        self, path: PathLike, root: Optional[PathLike] = None
    ) -> IncrementalBackupResult:
        if not self.config.incremental.enabled:
            raise RollbackError("Incremental backups are disabled", str(path))
        return await self.incremental.create_incremental_backup(path, root=root)

    async def create_differential_backup(
        self, path: PathLike, root: Optional[PathLike] = None
    ) -> DifferentialBackupResult:
        if not self.config.differential.enabled:
            raise RollbackError("Differential backups are disabled", str(path))
        return await self.differential.create_differential_backup(path, root=root)

    # Large projects

    async def process_large_project(
        self,
        paths: Sequence[PathLike],
        operation: str = "checksum",
        options: Optional[BatchOptions] = None,
    ) -> BatchResult:
        if not self.config.large_project.enabled:
            options = replace(options or BatchOptions(), strategy="sequential")
        return await self.optimizer.process_large_project(paths, operation, options)

    def on_progress(self, listener: Callable[[ProgressEvent], None]) -> None:
        self.optimizer.on_progress(listener)

    def off_progress(self, listener: Callable[[ProgressEvent], None]) -> None:
        self.optimizer.off_progress(listener)

    # Stats

    def get_cache_stats(self) -> Dict[str, Any]:
        return self.checksums.get_cache_stats()

    def clear_cache(self) -> None:
        self.checksums.clear_cache()

    async def get_deduplication_stats(self) -> Dict[str, Any]:
        return await self.dedup.get_stats()

    async def get_incremental_stats(self) -> Dict[str, Any]:
        return await self.incremental.get_stats()

    async def get_differential_stats(self) -> Dict[str, Any]:
        return await self.differential.get_stats()

    def get_large_project_stats(self) -> Dict[str, Any]:
        return self.optimizer.get_stats()

    def generate_metadata(
        self, operation: str, start: float, context: Optional[Dict[str, Any]] = None
    ) -> ValidationMetadata:
        """Describe an operation for reports; ``start`` is a ``time.perf_counter()`` reading."""
        return ValidationMetadata(
            operation=operation,
            timestamp=utc_now(),
            processing_time_ms=elapsed_ms(start),
            options=self.config.to_dict(),
            context=context,
        )


def create_file_integrity_validator(config: Optional[IntegrityConfig] = None) -> FileIntegrityValidator:
    return FileIntegrityValidator(config)


async def calculate_file_checksum(
    path: PathLike, algorithm: str = "sha256", config: Optional[IntegrityConfig] = None
) -> ChecksumRecord:
    """One-off checksum without keeping a validator around."""
    validator = FileIntegrityValidator(config)
    return await validator.calculate_checksum(path, algorithm=algorithm)


async def validate_file_integrity(
    path: PathLike, expected: ExpectedChecksum, config: Optional[IntegrityConfig] = None
) -> bool:
    """Return whether ``path`` matches ``expected``; problems reading the file count as invalid."""
    start = time.perf_counter()
    validator = FileIntegrityValidator(config)
    try:
        outcome = await validator.validate_file(path, expected)
    except ChecksumError as e:
        logger.warning(f"Integrity check of {path} failed: {e}")
        return False
    logger.debug(f"Integrity check of {path} took {elapsed_ms(start)}ms")
    return outcome.is_valid

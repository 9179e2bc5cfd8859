"""Streaming checksum computation with an mtime-validated cache."""

import asyncio
import hashlib
import os
import stat
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional, Tuple, Union

import aiofiles
import xxhash

from ._utils import logger, resolve_path, elapsed_ms, PathLike
from .config import IntegrityConfig
from .errors import ChecksumError, ChecksumTimeoutError, ValidationError
from .models import (
    ChecksumRecord,
    ValidationOutcome,
    BatchValidationResult,
    FileComparison,
    FileAccessInfo,
)

CHUNK_SIZE = 64 * 1024

ExpectedChecksum = Union[str, ChecksumRecord]


def new_hasher(algorithm: str):
    """Return a fresh digest object for ``algorithm``.

    Besides the hashlib algorithms, ``xxh64`` and ``xxh128`` are accepted for
    content addressing where cryptographic strength is not required.
    """
    if algorithm == "xxh64":
        return xxhash.xxh64()
    if algorithm == "xxh128":
        return xxhash.xxh3_128()
    try:
        return hashlib.new(algorithm)
    except ValueError as e:
        raise ChecksumError(f"Unsupported hash algorithm: {algorithm}", cause=e) from e


def hash_bytes(data: bytes, algorithm: str) -> str:
    hasher = new_hasher(algorithm)
    hasher.update(data)
    return hasher.hexdigest()


class ChecksumEngine:
    """Compute, cache and compare file checksums."""

    def __init__(self, config: IntegrityConfig):
        self.config = config
        self._cache: "OrderedDict[Tuple[str, str], ChecksumRecord]" = OrderedDict()
        self._hits = 0
        self._misses = 0

    async def compute_checksum(
        self,
        path: PathLike,
        algorithm: Optional[str] = None,
        use_cache: bool = True,
    ) -> ChecksumRecord:
        """Calculate checksum for a file, streaming its contents.

        Args:
            path: File to hash
            algorithm: Digest algorithm, defaults to the configured one
            use_cache: Set to False to force recomputation (the fresh record is still cached)

        Returns:
            ChecksumRecord for the file

        Raises:
            ChecksumError: file missing, not a regular file, too large, unreadable or timed out
        """
        start = time.perf_counter()
        resolved = resolve_path(path)
        algorithm = algorithm or self.config.algorithm

        logger.debug(f"Calculating {algorithm} checksum: {resolved}")

        try:
            st = self._stat_file(resolved)

            if self.config.enable_caching and use_cache:
                cached = self._lookup(str(resolved), algorithm, st)
                if cached is not None:
                    return cached

            self._check_regular_file(resolved, st)

            try:
                digest = await asyncio.wait_for(
                    self._stream_digest(resolved, algorithm),
                    timeout=self.config.timeout,
                )
            except asyncio.TimeoutError as e:
                raise ChecksumTimeoutError(self.config.timeout, str(resolved)) from e
            except OSError as e:
                raise ChecksumError(
                    f"Failed to read file for checksum calculation: {e}", str(resolved), e
                ) from e

            record = ChecksumRecord(
                hash=digest,
                algorithm=algorithm,
                file_size=st.st_size,
                file_path=str(resolved),
                computed_at=time.time(),
                compute_duration_ms=elapsed_ms(start),
                mtime_ns=st.st_mtime_ns,
            )
        except ChecksumError as e:
            logger.error(f"Checksum calculation failed for {resolved}: {e} ({elapsed_ms(start)}ms)")
            raise

        if self.config.enable_caching:
            self._store(record)

        logger.debug(f"Checksum calculated: {resolved} {record.hash[:16]}... ({record.compute_duration_ms}ms)")
        return record

    def compute_checksum_sync(self, path: PathLike, algorithm: Optional[str] = None) -> ChecksumRecord:
        """Blocking variant that reads the whole file at once. Meant for small files."""
        start = time.perf_counter()
        resolved = resolve_path(path)
        algorithm = algorithm or self.config.algorithm

        try:
            st = self._stat_file(resolved)
            if self.config.enable_caching:
                cached = self._lookup(str(resolved), algorithm, st)
                if cached is not None:
                    return cached
            self._check_regular_file(resolved, st)
            try:
                with open(resolved, "rb") as f:
                    digest = hash_bytes(f.read(), algorithm)
            except OSError as e:
                raise ChecksumError(f"Failed to read file for checksum calculation: {e}", str(resolved), e) from e
        except ChecksumError as e:
            logger.error(f"Checksum calculation failed (sync) for {resolved}: {e}")
            raise

        record = ChecksumRecord(
            hash=digest,
            algorithm=algorithm,
            file_size=st.st_size,
            file_path=str(resolved),
            computed_at=time.time(),
            compute_duration_ms=elapsed_ms(start),
            mtime_ns=st.st_mtime_ns,
        )
        if self.config.enable_caching:
            self._store(record)
        return record

    async def validate_file(self, path: PathLike, expected: ExpectedChecksum) -> ValidationOutcome:
        """Validate file integrity against an expected checksum. Never raises."""
        start = time.perf_counter()
        resolved = resolve_path(path)
        original = expected if isinstance(expected, ChecksumRecord) else None
        expected_hash = expected.hash if isinstance(expected, ChecksumRecord) else expected

        try:
            current = await self.compute_checksum(
                resolved, algorithm=original.algorithm if original else None
            )
        except Exception as e:
            logger.error(f"File integrity validation error for {resolved}: {e}")
            return ValidationOutcome(
                file_path=str(resolved),
                is_valid=False,
                expected=expected_hash,
                original_checksum=original,
                error=str(e),
                validated_at=datetime.now(timezone.utc),
                processing_time_ms=elapsed_ms(start),
            )

        is_valid = current.hash == expected_hash
        outcome = ValidationOutcome(
            file_path=str(resolved),
            is_valid=is_valid,
            expected=expected_hash,
            observed=current.hash,
            original_checksum=original,
            current_checksum=current,
            validated_at=datetime.now(timezone.utc),
            processing_time_ms=elapsed_ms(start),
        )
        if is_valid:
            logger.debug(f"File integrity validation passed: {resolved}")
        else:
            outcome.error = f"Checksum mismatch: expected {expected_hash}, got {current.hash}"
            logger.warning(f"File integrity validation failed: {resolved} ({outcome.error})")
        return outcome

    async def validate_batch(
        self, files: Iterable[Tuple[PathLike, ExpectedChecksum]]
    ) -> BatchValidationResult:
        """Validate many files, ``batch_size`` at a time, in parallel within a batch."""
        start = time.perf_counter()
        files = list(files)
        batch_size = self.config.batch_size
        results = []

        logger.debug(f"Starting batch validation of {len(files)} files (batch size {batch_size})")

        try:
            for i in range(0, len(files), batch_size):
                batch = files[i:i + batch_size]
                batch_results = await asyncio.gather(
                    *(self.validate_file(path, expected) for path, expected in batch)
                )
                results.extend(batch_results)
        except Exception as e:
            logger.error(f"Batch validation failed after {len(results)}/{len(files)} files: {e}")
            raise ValidationError(f"Batch validation failed: {e}", cause=e) from e

        valid = sum(1 for r in results if r.is_valid)
        result = BatchValidationResult(
            total_files=len(files),
            valid_files=valid,
            invalid_files=len(results) - valid,
            results=results,
            total_processing_time_ms=elapsed_ms(start),
            processed_at=datetime.now(timezone.utc),
        )
        logger.info(
            f"Batch validation completed: {result.valid_files} valid, "
            f"{result.invalid_files} invalid of {result.total_files}"
        )
        return result

    async def compare_files(self, path1: PathLike, path2: PathLike, use_cache: bool = True) -> FileComparison:
        """Compare two files by checksum, hashing both concurrently."""
        start = time.perf_counter()
        try:
            checksum1, checksum2 = await asyncio.gather(
                self.compute_checksum(path1, use_cache=use_cache),
                self.compute_checksum(path2, use_cache=use_cache),
            )
        except Exception as e:
            logger.error(f"File comparison failed ({path1} vs {path2}): {e}")
            raise ValidationError(f"File comparison failed: {e}", cause=e) from e

        return FileComparison(
            match=checksum1.hash == checksum2.hash,
            checksum1=checksum1,
            checksum2=checksum2,
            processing_time_ms=elapsed_ms(start),
        )

    def verify_file_access(self, path: PathLike) -> FileAccessInfo:
        """Check that a path exists, is a regular file and is readable."""
        resolved = resolve_path(path)
        try:
            st = os.stat(resolved)
        except OSError as e:
            logger.debug(f"File access verification failed for {resolved}: {e}")
            return FileAccessInfo(exists=False, readable=False, error=str(e))

        if not stat.S_ISREG(st.st_mode):
            return FileAccessInfo(exists=True, readable=False, error="Path exists but is not a file")
        if not os.access(resolved, os.R_OK):
            return FileAccessInfo(exists=True, readable=False, error="Permission denied")
        return FileAccessInfo(exists=True, readable=True, size=st.st_size)

    def invalidate(self, path: PathLike) -> None:
        """Drop cached checksums of ``path`` for every algorithm."""
        key_path = str(resolve_path(path))
        for key in [k for k in self._cache if k[0] == key_path]:
            del self._cache[key]

    def clear_cache(self) -> None:
        self._cache.clear()
        self._hits = 0
        self._misses = 0
        logger.debug("Checksum cache cleared")

    def get_cache_stats(self) -> Dict[str, Union[int, float, None]]:
        lookups = self._hits + self._misses
        return {
            "size": len(self._cache),
            "max_size": self.config.cache_size,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": self._hits / lookups if lookups else None,
        }

    # Private helper methods

    @staticmethod
    def _stat_file(resolved) -> os.stat_result:
        try:
            return os.stat(resolved)
        except FileNotFoundError as e:
            raise ChecksumError(f"File not found: {resolved}", str(resolved), e) from e
        except OSError as e:
            raise ChecksumError(f"Cannot access file: {e}", str(resolved), e) from e

    def _check_regular_file(self, resolved, st: os.stat_result) -> None:
        if not stat.S_ISREG(st.st_mode):
            raise ChecksumError(f"Path is not a file: {resolved}", str(resolved))
        if st.st_size > self.config.max_file_size:
            raise ChecksumError(
                f"File size ({st.st_size}) exceeds maximum allowed size ({self.config.max_file_size})",
                str(resolved),
            )

    @staticmethod
    async def _stream_digest(resolved, algorithm: str) -> str:
        hasher = new_hasher(algorithm)
        async with aiofiles.open(resolved, "rb") as f:
            while True:
                chunk = await f.read(CHUNK_SIZE)
                if not chunk:
                    break
                hasher.update(chunk)
        return hasher.hexdigest()

    def _lookup(self, path: str, algorithm: str, st: os.stat_result) -> Optional[ChecksumRecord]:
        key = (path, algorithm)
        cached = self._cache.get(key)
        if cached is None:
            self._misses += 1
            return None

        stale = (
            st.st_mtime > cached.computed_at
            or st.st_mtime_ns != cached.mtime_ns
            or st.st_size != cached.file_size
        )
        if stale:
            del self._cache[key]
            self._misses += 1
            logger.debug(f"Invalidated stale cache entry: {path}")
            return None

        self._hits += 1
        logger.debug(f"Using cached checksum: {path}")
        return cached

    def _store(self, record: ChecksumRecord) -> None:
        key = (record.file_path, record.algorithm)
        self._cache.pop(key, None)
        while len(self._cache) >= self.config.cache_size:
            # FIFO eviction
            self._cache.popitem(last=False)
        self._cache[key] = record

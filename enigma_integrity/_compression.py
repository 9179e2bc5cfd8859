"""Pluggable compression codec for backup artifacts."""

import asyncio
import gzip
import zlib
from typing import Optional

import brotli

from ._utils import logger
from .config import CompressionConfig, COMPRESSION_LEVELS
from .errors import ConfigError

SUFFIXES = {
    "gzip": ".gz",
    "deflate": ".deflate",
    "brotli": ".br",
}


class CompressionCodec:
    """Compress and decompress artifact payloads with gzip, deflate or brotli."""

    def __init__(self, config: CompressionConfig):
        self.config = config

    def should_compress(self, size: int) -> bool:
        """Only payloads at or above the threshold are compressed."""
        return self.config.enabled and size >= self.config.threshold

    def compress(self, data: bytes, algorithm: Optional[str] = None, level: Optional[int] = None) -> bytes:
        algorithm = algorithm or self.config.algorithm
        level = self.config.level if level is None else level
        _check_level(algorithm, level)

        if algorithm == "gzip":
            # mtime=0 keeps output deterministic for identical input
            return gzip.compress(data, compresslevel=level, mtime=0)
        if algorithm == "deflate":
            return zlib.compress(data, level)
        return brotli.compress(data, quality=level)

    def decompress(self, data: bytes, algorithm: Optional[str] = None) -> bytes:
        algorithm = algorithm or self.config.algorithm
        if algorithm == "gzip":
            return gzip.decompress(data)
        if algorithm == "deflate":
            return zlib.decompress(data)
        if algorithm == "brotli":
            return brotli.decompress(data)
        raise ConfigError(f"Unknown compression algorithm: {algorithm}")

    async def acompress(self, data: bytes, algorithm: Optional[str] = None, level: Optional[int] = None) -> bytes:
        """Compress in a worker thread so the event loop keeps running."""
        compressed = await asyncio.to_thread(self.compress, data, algorithm, level)
        logger.debug(
            f"Compressed {len(data):,} -> {len(compressed):,} bytes "
            f"({algorithm or self.config.algorithm})"
        )
        return compressed

    async def adecompress(self, data: bytes, algorithm: Optional[str] = None) -> bytes:
        return await asyncio.to_thread(self.decompress, data, algorithm)

    @staticmethod
    def suffix_for(algorithm: str) -> str:
        try:
            return SUFFIXES[algorithm]
        except KeyError:
            raise ConfigError(f"Unknown compression algorithm: {algorithm}") from None

    @staticmethod
    def algorithm_for_suffix(suffix: str) -> Optional[str]:
        """Map an artifact suffix such as ``.br`` back to its algorithm."""
        for algorithm, known in SUFFIXES.items():
            if suffix == known:
                return algorithm
        return None

    @staticmethod
    def compression_ratio(original_size: int, stored_size: int) -> float:
        if stored_size <= 0:
            return 0.0
        return round(original_size / stored_size, 4)


def _check_level(algorithm: str, level: int) -> None:
    if algorithm not in COMPRESSION_LEVELS:
        raise ConfigError(f"Unknown compression algorithm: {algorithm}")
    low, high = COMPRESSION_LEVELS[algorithm]
    if not low <= level <= high:
        raise ConfigError(f"{algorithm} level must be between {low} and {high}, got {level}")

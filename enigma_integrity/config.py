"""Configuration management for enigma-integrity."""

import os
from dataclasses import dataclass, field, replace, asdict
from pathlib import Path

from .errors import ConfigError

HASH_ALGORITHMS = {"md5", "sha1", "sha256", "sha512"}
DEDUP_ALGORITHMS = HASH_ALGORITHMS | {"xxh64", "xxh128"}
COMPRESSION_LEVELS = {
    "gzip": (0, 9),
    "deflate": (0, 9),
    "brotli": (0, 11),  # quality scale
}
STORAGE_PRECEDENCE = {"deduplication-first", "compression-first"}


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class CompressionConfig:
    """Artifact compression configuration."""
    enabled: bool = False
    algorithm: str = "gzip"  # gzip, deflate, brotli
    level: int = 6
    threshold: int = 1024  # bytes; smaller files are stored plain

    @classmethod
    def from_env(cls) -> 'CompressionConfig':
        """Create config from environment variables."""
        return cls(
            enabled=_env_bool("ENIGMA_COMPRESSION_ENABLED", "false"),
            algorithm=os.getenv("ENIGMA_COMPRESSION_ALGORITHM", "gzip"),
            level=int(os.getenv("ENIGMA_COMPRESSION_LEVEL", "6")),
            threshold=int(os.getenv("ENIGMA_COMPRESSION_THRESHOLD", "1024"))
        )

    def __post_init__(self):
        """Validate configuration."""
        if self.algorithm not in COMPRESSION_LEVELS:
            raise ConfigError(f"Unknown compression algorithm: {self.algorithm}. Available: {sorted(COMPRESSION_LEVELS)}")
        low, high = COMPRESSION_LEVELS[self.algorithm]
        if not low <= self.level <= high:
            raise ConfigError(f"{self.algorithm} level must be between {low} and {high}, got {self.level}")
        if self.threshold < 0:
            raise ConfigError(f"compression threshold must be non-negative, got {self.threshold}")


@dataclass(frozen=True)
class DeduplicationConfig:
    """Content-addressable storage configuration."""
    enabled: bool = False
    directory: str = ".backups/dedup"
    algorithm: str = "sha256"  # also xxh64, xxh128
    threshold: int = 1024
    prefer_hard_links: bool = True

    @classmethod
    def from_env(cls) -> 'DeduplicationConfig':
        """Create config from environment variables."""
        return cls(
            enabled=_env_bool("ENIGMA_DEDUP_ENABLED", "false"),
            directory=os.getenv("ENIGMA_DEDUP_DIRECTORY", ".backups/dedup"),
            algorithm=os.getenv("ENIGMA_DEDUP_ALGORITHM", "sha256"),
            threshold=int(os.getenv("ENIGMA_DEDUP_THRESHOLD", "1024")),
            prefer_hard_links=_env_bool("ENIGMA_DEDUP_HARD_LINKS", "true")
        )

    def __post_init__(self):
        """Validate configuration."""
        if self.algorithm not in DEDUP_ALGORITHMS:
            raise ConfigError(f"Unknown deduplication algorithm: {self.algorithm}. Available: {sorted(DEDUP_ALGORITHMS)}")
        if self.threshold < 0:
            raise ConfigError(f"deduplication threshold must be non-negative, got {self.threshold}")


@dataclass(frozen=True)
class IncrementalConfig:
    """Incremental backup chain configuration."""
    enabled: bool = False
    strategy: str = "chain"  # chain, full
    change_detection: str = "hybrid"  # timestamp, checksum, hybrid
    max_chain_length: int = 10
    full_backup_interval: float = 7 * 24 * 3600.0  # seconds
    directory: str = ".backups/incremental"

    @classmethod
    def from_env(cls) -> 'IncrementalConfig':
        """Create config from environment variables."""
        return cls(
            enabled=_env_bool("ENIGMA_INCREMENTAL_ENABLED", "false"),
            strategy=os.getenv("ENIGMA_INCREMENTAL_STRATEGY", "chain"),
            change_detection=os.getenv("ENIGMA_INCREMENTAL_CHANGE_DETECTION", "hybrid"),
            max_chain_length=int(os.getenv("ENIGMA_INCREMENTAL_MAX_CHAIN", "10")),
            full_backup_interval=float(os.getenv("ENIGMA_INCREMENTAL_FULL_INTERVAL", str(7 * 24 * 3600.0))),
            directory=os.getenv("ENIGMA_INCREMENTAL_DIRECTORY", ".backups/incremental")
        )

    def __post_init__(self):
        """Validate configuration."""
        if self.strategy not in {"chain", "full"}:
            raise ConfigError(f"Unknown incremental strategy: {self.strategy}")
        if self.change_detection not in {"timestamp", "checksum", "hybrid"}:
            raise ConfigError(f"Unknown change detection method: {self.change_detection}")
        if self.max_chain_length < 1:
            raise ConfigError(f"max_chain_length must be positive, got {self.max_chain_length}")
        if self.full_backup_interval <= 0:
            raise ConfigError(f"full_backup_interval must be positive, got {self.full_backup_interval}")


@dataclass(frozen=True)
class DifferentialConfig:
    """Differential backup configuration."""
    enabled: bool = False
    strategy: str = "manual"  # manual, auto
    full_backup_threshold: int = 50  # cumulative changed files
    full_backup_interval: float = 7 * 24 * 3600.0
    size_multiplier: float = 0.5
    directory: str = ".backups/differential"

    @classmethod
    def from_env(cls) -> 'DifferentialConfig':
        """Create config from environment variables."""
        return cls(
            enabled=_env_bool("ENIGMA_DIFFERENTIAL_ENABLED", "false"),
            strategy=os.getenv("ENIGMA_DIFFERENTIAL_STRATEGY", "manual"),
            full_backup_threshold=int(os.getenv("ENIGMA_DIFFERENTIAL_FULL_THRESHOLD", "50")),
            full_backup_interval=float(os.getenv("ENIGMA_DIFFERENTIAL_FULL_INTERVAL", str(7 * 24 * 3600.0))),
            size_multiplier=float(os.getenv("ENIGMA_DIFFERENTIAL_SIZE_MULTIPLIER", "0.5")),
            directory=os.getenv("ENIGMA_DIFFERENTIAL_DIRECTORY", ".backups/differential")
        )

    def __post_init__(self):
        """Validate configuration."""
        if self.strategy not in {"manual", "auto"}:
            raise ConfigError(f"Unknown differential strategy: {self.strategy}")
        if self.full_backup_threshold < 1:
            raise ConfigError(f"full_backup_threshold must be positive, got {self.full_backup_threshold}")
        if self.full_backup_interval <= 0:
            raise ConfigError(f"full_backup_interval must be positive, got {self.full_backup_interval}")
        if self.size_multiplier <= 0:
            raise ConfigError(f"size_multiplier must be positive, got {self.size_multiplier}")


@dataclass(frozen=True)
class LargeProjectConfig:
    """Batch processing configuration for large file sets."""
    enabled: bool = True
    initial_batch_size: int = 50
    min_batch_size: int = 5
    max_batch_size: int = 500
    dynamic_sizing: bool = True
    memory_threshold_percent: float = 85.0
    cpu_threshold_percent: float = 90.0
    event_loop_lag_threshold_ms: float = 100.0
    strategy: str = "adaptive"  # sequential, parallel, adaptive
    progress_interval: float = 1.0  # seconds
    max_concurrency: int = 8

    @classmethod
    def from_env(cls) -> 'LargeProjectConfig':
        """Create config from environment variables."""
        return cls(
            enabled=_env_bool("ENIGMA_BATCH_ENABLED", "true"),
            initial_batch_size=int(os.getenv("ENIGMA_BATCH_SIZE", "50")),
            min_batch_size=int(os.getenv("ENIGMA_BATCH_MIN_SIZE", "5")),
            max_batch_size=int(os.getenv("ENIGMA_BATCH_MAX_SIZE", "500")),
            dynamic_sizing=_env_bool("ENIGMA_BATCH_DYNAMIC_SIZING", "true"),
            memory_threshold_percent=float(os.getenv("ENIGMA_BATCH_MEMORY_THRESHOLD", "85.0")),
            cpu_threshold_percent=float(os.getenv("ENIGMA_BATCH_CPU_THRESHOLD", "90.0")),
            event_loop_lag_threshold_ms=float(os.getenv("ENIGMA_BATCH_LAG_THRESHOLD_MS", "100.0")),
            strategy=os.getenv("ENIGMA_BATCH_STRATEGY", "adaptive"),
            progress_interval=float(os.getenv("ENIGMA_BATCH_PROGRESS_INTERVAL", "1.0")),
            max_concurrency=int(os.getenv("ENIGMA_BATCH_MAX_CONCURRENCY", "8"))
        )

    def __post_init__(self):
        """Validate configuration."""
        if self.min_batch_size <= 0:
            raise ConfigError(f"min_batch_size must be positive, got {self.min_batch_size}")
        if self.max_batch_size < self.min_batch_size:
            raise ConfigError(f"max_batch_size ({self.max_batch_size}) must be >= min_batch_size ({self.min_batch_size})")
        if not self.min_batch_size <= self.initial_batch_size <= self.max_batch_size:
            raise ConfigError(
                f"initial_batch_size ({self.initial_batch_size}) must be within "
                f"[{self.min_batch_size}, {self.max_batch_size}]"
            )
        if not 0.0 < self.memory_threshold_percent <= 100.0:
            raise ConfigError(f"memory_threshold_percent must be in (0, 100], got {self.memory_threshold_percent}")
        if not 0.0 < self.cpu_threshold_percent <= 100.0:
            raise ConfigError(f"cpu_threshold_percent must be in (0, 100], got {self.cpu_threshold_percent}")
        if self.event_loop_lag_threshold_ms <= 0:
            raise ConfigError(f"event_loop_lag_threshold_ms must be positive, got {self.event_loop_lag_threshold_ms}")
        if self.strategy not in {"sequential", "parallel", "adaptive"}:
            raise ConfigError(f"Unknown batch strategy: {self.strategy}")
        if self.progress_interval < 0:
            raise ConfigError(f"progress_interval must be non-negative, got {self.progress_interval}")
        if self.max_concurrency <= 0:
            raise ConfigError(f"max_concurrency must be positive, got {self.max_concurrency}")


@dataclass(frozen=True)
class IntegrityConfig:
    """Main file integrity configuration."""
    algorithm: str = "sha256"
    create_backups: bool = True
    backup_directory: str = ".backups"
    backup_retention_days: int = 7
    max_file_size: int = 100 * 1024 * 1024
    timeout: float = 30.0  # seconds
    verify_after_rollback: bool = True
    batch_size: int = 10
    enable_caching: bool = True
    cache_size: int = 1000
    # Dedup and compression are mutually exclusive per artifact; this picks which wins
    storage_precedence: str = "deduplication-first"

    compression: CompressionConfig = field(default_factory=CompressionConfig)
    deduplication: DeduplicationConfig = field(default_factory=DeduplicationConfig)
    incremental: IncrementalConfig = field(default_factory=IncrementalConfig)
    differential: DifferentialConfig = field(default_factory=DifferentialConfig)
    large_project: LargeProjectConfig = field(default_factory=LargeProjectConfig)

    @classmethod
    def from_env(cls) -> 'IntegrityConfig':
        """Create complete config from environment variables."""
        return cls(
            algorithm=os.getenv("ENIGMA_HASH_ALGORITHM", "sha256"),
            create_backups=_env_bool("ENIGMA_CREATE_BACKUPS", "true"),
            backup_directory=os.getenv("ENIGMA_BACKUP_DIRECTORY", ".backups"),
            backup_retention_days=int(os.getenv("ENIGMA_BACKUP_RETENTION_DAYS", "7")),
            max_file_size=int(os.getenv("ENIGMA_MAX_FILE_SIZE", str(100 * 1024 * 1024))),
            timeout=float(os.getenv("ENIGMA_TIMEOUT", "30.0")),
            verify_after_rollback=_env_bool("ENIGMA_VERIFY_AFTER_ROLLBACK", "true"),
            batch_size=int(os.getenv("ENIGMA_VALIDATION_BATCH_SIZE", "10")),
            enable_caching=_env_bool("ENIGMA_ENABLE_CACHING", "true"),
            cache_size=int(os.getenv("ENIGMA_CACHE_SIZE", "1000")),
            storage_precedence=os.getenv("ENIGMA_STORAGE_PRECEDENCE", "deduplication-first"),
            compression=CompressionConfig.from_env(),
            deduplication=DeduplicationConfig.from_env(),
            incremental=IncrementalConfig.from_env(),
            differential=DifferentialConfig.from_env(),
            large_project=LargeProjectConfig.from_env()
        )

    @classmethod
    def rooted_at(cls, root: str, **overrides) -> 'IntegrityConfig':
        """Create config with every persisted directory placed under ``root``.

        Section overrides may be given either as section instances or as
        dicts of field overrides, e.g. ``compression={"enabled": True}``.
        """
        base = Path(root)
        sections = {
            "compression": CompressionConfig(),
            "deduplication": DeduplicationConfig(directory=str(base / "dedup")),
            "incremental": IncrementalConfig(directory=str(base / "incremental")),
            "differential": DifferentialConfig(directory=str(base / "differential")),
            "large_project": LargeProjectConfig(),
        }
        for name, default in sections.items():
            value = overrides.pop(name, None)
            if isinstance(value, dict):
                sections[name] = replace(default, **value)
            elif value is not None:
                sections[name] = value
        overrides.setdefault("backup_directory", str(base / "backups"))
        return cls(**overrides, **sections)

    def __post_init__(self):
        """Validate configuration."""
        if self.algorithm not in HASH_ALGORITHMS:
            raise ConfigError(f"Unknown hash algorithm: {self.algorithm}. Available: {sorted(HASH_ALGORITHMS)}")
        if not 1 <= self.backup_retention_days <= 365:
            raise ConfigError(f"backup_retention_days must be between 1 and 365, got {self.backup_retention_days}")
        if self.max_file_size < 1:
            raise ConfigError(f"max_file_size must be positive, got {self.max_file_size}")
        if not 1.0 <= self.timeout <= 300.0:
            raise ConfigError(f"timeout must be between 1 and 300 seconds, got {self.timeout}")
        if not 1 <= self.batch_size <= 100:
            raise ConfigError(f"batch_size must be between 1 and 100, got {self.batch_size}")
        if not 10 <= self.cache_size <= 10000:
            raise ConfigError(f"cache_size must be between 10 and 10000, got {self.cache_size}")
        if self.storage_precedence not in STORAGE_PRECEDENCE:
            raise ConfigError(f"Unknown storage precedence: {self.storage_precedence}. Available: {sorted(STORAGE_PRECEDENCE)}")

    def to_dict(self) -> dict:
        """Convert config to a plain dictionary (for metadata and logging)."""
        return asdict(self)


def validate_config(config: IntegrityConfig) -> list[str]:
    """Validate configuration and return list of warnings.

    Args:
        config: Integrity configuration to validate

    Returns:
        List of warning messages (empty if no issues)
    """
    warnings = []

    if config.algorithm in {"md5", "sha1"}:
        warnings.append(f"{config.algorithm} is not collision resistant; prefer sha256 for integrity checks")

    if not config.verify_after_rollback:
        warnings.append("verify_after_rollback is disabled; restored files will not be checked")

    if config.deduplication.enabled and config.compression.enabled:
        warnings.append(
            f"Both deduplication and compression are enabled; {config.storage_precedence} "
            "decides which applies to eligible files"
        )

    if config.deduplication.enabled and config.deduplication.algorithm in {"md5", "sha1", "xxh64"}:
        warnings.append(
            f"Deduplication keyed by {config.deduplication.algorithm} risks collisions between different contents"
        )

    if config.large_project.max_concurrency > 64:
        warnings.append(f"Very high max_concurrency ({config.large_project.max_concurrency}) may exhaust file handles")

    if config.incremental.enabled and config.differential.enabled:
        warnings.append("Incremental and differential backups are both enabled; each keeps its own index")

    return warnings

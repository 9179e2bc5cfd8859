"""Data models for backup/restore operations."""

from datetime import datetime
from enum import Enum
from typing import Dict, Any, List, Optional, Set

from pydantic import BaseModel, Field


class BackupKind(str, Enum):
    """Storage form of a single backup artifact."""

    PLAIN = "plain"
    COMPRESSED = "compressed"
    DEDUPLICATED = "deduplicated"


class BackupType(str, Enum):
    """Role of a backup within an incremental chain or differential cycle."""

    FULL = "full"
    INCREMENTAL = "incremental"
    DIFFERENTIAL = "differential"
    SKIPPED = "skipped"


class BackupRecord(BaseModel):
    """One record per backup invocation."""

    original_path: str
    backup_path: str = Field(..., description="Artifact path; suffix encodes the storage kind")
    created_at: datetime
    backup_kind: BackupKind
    original_size: int
    stored_size: int
    compression_algorithm: Optional[str] = None
    compression_ratio: Optional[float] = None
    content_hash: Optional[str] = None
    dedup_reference_count: Optional[int] = None
    success: bool = True
    error: Optional[str] = None


class RestoreResult(BaseModel):
    file_path: str
    backup_path: str
    success: bool
    integrity_verified: bool = False
    safety_backup_path: Optional[str] = None
    rolled_back_at: datetime
    processing_time_ms: float
    error: Optional[str] = None


class CleanupResult(BaseModel):
    cleaned: int = 0
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)
    total_size: int = Field(0, description="Bytes reclaimed")


class DeduplicationIndexEntry(BaseModel):
    content_hash: str
    storage_path: str
    reference_count: int = Field(..., ge=1)
    first_seen_at: datetime
    last_referenced_at: Optional[datetime] = None
    size_bytes: int


class DeduplicationStats(BaseModel):
    total_files_processed: int = 0
    duplicates_found: int = 0
    space_saved: int = 0
    stored_bytes: int = 0


class DeduplicationIndex(BaseModel):
    """Persisted as ``dedup-index.json``; the sole source of truth for stored blobs."""

    version: int = 1
    total_entries: int = 0
    last_updated: Optional[datetime] = None
    algorithm: str = "sha256"
    entries: Dict[str, DeduplicationIndexEntry] = Field(default_factory=dict)
    stats: DeduplicationStats = Field(default_factory=DeduplicationStats)


class DeduplicationResult(BaseModel):
    content_hash: str
    is_new_entry: bool
    reference_count: int
    space_saved: int
    storage_path: str
    size_bytes: int
    linked_path: Optional[str] = None
    hard_linked: bool = False


class DeduplicationReference(BaseModel):
    """Contents of a ``.dedup`` backup artifact."""

    type: str = "deduplication_reference"
    original_path: str
    content_hash: str
    storage_path: str
    reference_count: int
    timestamp: datetime
    algorithm: str


class FileBaseline(BaseModel):
    """What a file looked like when it was last backed up."""

    mtime_ns: int
    size: int
    checksum: Optional[str] = None
    last_backup_id: Optional[str] = None
    recorded_at: datetime


class IncrementalChainEntry(BaseModel):
    backup_id: str
    parent_id: Optional[str] = None  # None marks the chain's full backup
    backup_kind: BackupType
    changed_files: Set[str] = Field(default_factory=set)
    backup_path: Optional[str] = None
    created_at: datetime


class IncrementalIndex(BaseModel):
    version: int = 1
    last_updated: Optional[datetime] = None
    chains: Dict[str, List[IncrementalChainEntry]] = Field(default_factory=dict)
    files: Dict[str, FileBaseline] = Field(default_factory=dict)


class IncrementalBackupResult(BaseModel):
    backup_id: Optional[str] = None
    parent_id: Optional[str] = None
    backup_type: BackupType
    files_changed: int
    changed_files: List[str] = Field(default_factory=list)
    chain_length: int
    reason: str
    backup: Optional[BackupRecord] = None


class DifferentialState(BaseModel):
    """Deltas accumulated since the last full backup of a tracked root."""

    current_full_backup_id: str
    full_backup_path: Optional[str] = None
    base_full_size: int
    cumulative_changed_files: Set[str] = Field(default_factory=set)
    cumulative_size: int = 0
    created_at: datetime
    baselines: Dict[str, FileBaseline] = Field(default_factory=dict)
    differential_count: int = 0
    promotion_pending: bool = False


class DifferentialIndex(BaseModel):
    version: int = 1
    last_updated: Optional[datetime] = None
    states: Dict[str, DifferentialState] = Field(default_factory=dict)


class DifferentialBackupResult(BaseModel):
    backup_id: Optional[str] = None
    full_backup_id: str
    backup_type: BackupType
    files_changed: int
    cumulative_changed_files: List[str] = Field(default_factory=list)
    cumulative_size: int
    recommend_full_backup: bool = False
    reasons: List[str] = Field(default_factory=list)
    backup: Optional[BackupRecord] = None


class BackupMetadata(BaseModel):
    """Summary of an artifact found on disk, for listings."""

    backup_path: str
    original_name: str
    backup_kind: BackupKind
    size_bytes: int
    modified_at: datetime
    extra: Dict[str, Any] = Field(default_factory=dict)

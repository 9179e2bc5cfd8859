"""Data models for checksum, validation and batch operations."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ChecksumRecord(BaseModel):
    """Checksum of a file at a point in time. Immutable once produced."""

    model_config = ConfigDict(frozen=True)

    hash: str = Field(..., description="Hex digest of the file contents")
    algorithm: str
    file_size: int
    file_path: str = Field(..., description="Absolute path of the hashed file")
    computed_at: float = Field(..., description="Epoch seconds when hashing finished")
    compute_duration_ms: float
    mtime_ns: int = Field(0, description="File modification time observed before hashing")


class ValidationOutcome(BaseModel):
    """Result of checking a file against an expected checksum. Never persisted."""

    file_path: str
    is_valid: bool
    expected: Optional[str] = None
    observed: Optional[str] = None
    original_checksum: Optional[ChecksumRecord] = None
    current_checksum: Optional[ChecksumRecord] = None
    error: Optional[str] = None
    validated_at: datetime
    processing_time_ms: float = 0.0


class BatchValidationResult(BaseModel):
    total_files: int
    valid_files: int
    invalid_files: int
    results: List[ValidationOutcome]
    total_processing_time_ms: float
    processed_at: datetime


class FileComparison(BaseModel):
    match: bool
    checksum1: ChecksumRecord
    checksum2: ChecksumRecord
    processing_time_ms: float


class FileAccessInfo(BaseModel):
    exists: bool
    readable: bool
    size: Optional[int] = None
    error: Optional[str] = None


class ValidationMetadata(BaseModel):
    """Operation metadata for reporting."""

    source: str = "FileIntegrityValidator"
    operation: str
    timestamp: datetime
    processing_time_ms: float
    options: Dict[str, Any]
    context: Optional[Dict[str, Any]] = None


class SystemMetrics(BaseModel):
    """System resource sample taken between batches."""

    memory_percent: float
    rss_mb: float
    cpu_percent: float
    event_loop_lag_ms: float
    sampled_at: datetime


class ProgressEvent(BaseModel):
    processed: int
    total: int
    percentage: float
    rate: float = Field(..., description="Files per second")
    eta_seconds: Optional[float] = None
    batch_size: int


class FileOperationResult(BaseModel):
    file_path: str
    success: bool
    value: Optional[Any] = None
    error: Optional[str] = None
    duration_ms: float = 0.0


class BatchTiming(BaseModel):
    index: int
    size: int
    duration_ms: float
    strategy: str
    metrics: Optional[SystemMetrics] = None


class BatchResult(BaseModel):
    """Aggregate outcome of a large-project run."""

    operation: str
    total: int
    processed: int
    successful: int
    failed: int
    skipped: int
    skipped_paths: List[str] = Field(default_factory=list)
    results: List[FileOperationResult] = Field(default_factory=list)
    batch_timings: List[BatchTiming] = Field(default_factory=list)
    peak_memory_mb: float = 0.0
    average_memory_mb: float = 0.0
    final_batch_size: int
    duration_ms: float
    aborted: bool = False

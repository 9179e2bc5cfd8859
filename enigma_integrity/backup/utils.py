"""Utility functions for backup/restore operations."""

import json
import os
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, Optional, Tuple

import aiofiles
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .._compression import CompressionCodec
from .._utils import logger, remove_silently
from .models import BackupKind

BACKUP_EXTENSION = ".backup"
DEDUP_SUFFIX = ".dedup"

ARTIFACT_PATTERN = re.compile(
    r"^(?P<stem>.+?)\."
    r"(?P<timestamp>\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}-\d{6}Z(?:-\d+)?)"
    r"(?P<ext>\.[^.]+)?"
    r"\.backup"
    r"(?P<suffix>\.gz|\.deflate|\.br|\.dedup)?$"
)


def artifact_timestamp(moment: Optional[datetime] = None) -> str:
    """Filesystem-safe UTC timestamp with microseconds, e.g. 2026-10-19T08-30-00-123456Z."""
    moment = moment or datetime.now(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H-%M-%S-%fZ")


def build_artifact_name(original: Path, timestamp: str, suffix: str = "") -> str:
    """Name an artifact ``<stem>.<timestamp><ext>.backup[<suffix>]``."""
    return f"{original.stem}.{timestamp}{original.suffix}{BACKUP_EXTENSION}{suffix}"


def unique_artifact_path(backup_dir: Path, original: Path, suffix: str = "") -> Path:
    """Pick an artifact path that does not exist yet.

    Back-to-back backups of one file (e.g. a safety backup right after a
    regular one) can share a timestamp; a counter is appended in that case.
    """
    timestamp = artifact_timestamp()
    candidate = backup_dir / build_artifact_name(original, timestamp, suffix)
    counter = 1
    while candidate.exists():
        candidate = backup_dir / build_artifact_name(original, f"{timestamp}-{counter}", suffix)
        counter += 1
    return candidate


def parse_artifact_name(name: str) -> Optional[Dict[str, Optional[str]]]:
    """Split an artifact file name into its parts, or None if it is not an artifact."""
    match = ARTIFACT_PATTERN.match(name)
    if match is None:
        return None
    parts = match.groupdict()
    parts["original_name"] = f"{parts['stem']}{parts['ext'] or ''}"
    return parts


def artifact_kind(path: Path) -> Tuple[BackupKind, Optional[str]]:
    """Storage kind and compression algorithm encoded in an artifact's suffix."""
    stem, dot, last = path.name.rpartition(".")
    if not dot or not stem.endswith(BACKUP_EXTENSION):
        return BackupKind.PLAIN, None
    suffix = dot + last
    if suffix == DEDUP_SUFFIX:
        return BackupKind.DEDUPLICATED, None
    algorithm = CompressionCodec.algorithm_for_suffix(suffix)
    if algorithm is not None:
        return BackupKind.COMPRESSED, algorithm
    return BackupKind.PLAIN, None


def generate_backup_id(prefix: str = "snapshot") -> str:
    """Generate backup ID with timestamp.

    Returns:
        Backup ID in format: <prefix>_YYYY-MM-DDTHH-MM-SSZ_<8 hex chars>
    """
    timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%SZ")
    return f"{prefix}_{timestamp}_{uuid.uuid4().hex[:8]}"


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.05, max=1),
    retry=retry_if_exception_type(PermissionError),
    reraise=True,
)
def _replace(source: Path, target: Path) -> None:
    # os.replace may transiently fail while another process holds the target open
    os.replace(source, target)


async def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write ``data`` to a sibling temp file and swap it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp-{uuid.uuid4().hex[:8]}")
    try:
        async with aiofiles.open(tmp_path, "wb") as f:
            await f.write(data)
        _replace(tmp_path, path)
    except BaseException:
        remove_silently(tmp_path)
        raise


async def save_index(document: Dict[str, Any], output_path: Path) -> None:
    """Persist an index document as JSON, atomically.

    Args:
        document: JSON-serializable dictionary
        output_path: Output file path
    """
    payload = json.dumps(document, indent=2, default=str).encode("utf-8")
    await atomic_write_bytes(output_path, payload)
    logger.debug(f"Index saved: {output_path}")


async def load_index(index_path: Path) -> Optional[Dict[str, Any]]:
    """Load an index document.

    Returns:
        The parsed dictionary, or None if the file does not exist

    Raises:
        ValueError: the file exists but is not a JSON object
    """
    if not index_path.exists():
        return None

    async with aiofiles.open(index_path, "r", encoding="utf-8") as f:
        raw = await f.read()

    document = json.loads(raw)
    if not isinstance(document, dict):
        raise ValueError(f"Index root must be an object, got {type(document).__name__}")

    logger.debug(f"Index loaded: {index_path}")
    return document

import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Union

logger = logging.getLogger("enigma-integrity")

PathLike = Union[str, os.PathLike]


def resolve_path(path: PathLike) -> Path:
    """Absolute, normalized path without requiring the file to exist."""
    return Path(os.path.abspath(os.fspath(path)))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def elapsed_ms(start: float) -> float:
    """Milliseconds since a ``time.perf_counter()`` reading."""
    return round((time.perf_counter() - start) * 1000, 3)


def format_bytes(size: int) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if abs(size) < 1024:
            return f"{size:.1f}{unit}" if unit != "B" else f"{size}{unit}"
        size /= 1024
    return f"{size:.1f}TB"


def remove_silently(path: Path) -> None:
    """Unlink a file if present; used for partial artifacts."""
    try:
        path.unlink()
    except FileNotFoundError:
        pass

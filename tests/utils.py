"""Test utilities for enigma-integrity tests."""
import os
import time
from pathlib import Path


def write_file(path: Path, content, age_seconds: float = 0.0) -> Path:
    """Write ``content`` to ``path``; ``age_seconds`` pushes mtime into the past."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8") if isinstance(content, str) else content
    path.write_bytes(data)
    if age_seconds:
        stamp = time.time() - age_seconds
        os.utime(path, (stamp, stamp))
    return path


def touch_forward(path: Path, seconds: float = 5.0) -> None:
    """Move mtime forward so timestamp-based change detection sees the edit."""
    st = path.stat()
    os.utime(path, (st.st_atime + seconds, st.st_mtime + seconds))


def css_payload(repeat: int = 200) -> str:
    """Compressible stylesheet-like content."""
    return ".btn { padding: 0.5rem 1rem; color: #fff; }\n" * repeat


def edit_file(path: Path, content) -> Path:
    """Rewrite ``path`` and move mtime past its previous value."""
    previous = path.stat().st_mtime if path.exists() else time.time()
    write_file(path, content)
    stamp = previous + 5.0
    os.utime(path, (stamp, stamp))
    return path

"""Global pytest configuration and fixtures."""

import sys
import tempfile
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from enigma_integrity import FileIntegrityValidator, IntegrityConfig


@pytest.fixture
def temp_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def work_dir(temp_dir):
    """Directory holding the files under test, separate from backup storage."""
    path = temp_dir / "project"
    path.mkdir()
    return path


@pytest.fixture
def make_config(temp_dir):
    def _make(**overrides) -> IntegrityConfig:
        return IntegrityConfig.rooted_at(str(temp_dir / ".enigma"), **overrides)

    return _make


@pytest.fixture
def make_validator(make_config):
    def _make(**overrides) -> FileIntegrityValidator:
        return FileIntegrityValidator(make_config(**overrides))

    return _make


@pytest.fixture
def validator(make_validator):
    return make_validator()

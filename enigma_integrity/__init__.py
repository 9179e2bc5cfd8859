from .integrity import (
    FileIntegrityValidator,
    create_file_integrity_validator,
    calculate_file_checksum,
    validate_file_integrity,
)
from ._batch import BatchOptions
from .config import IntegrityConfig
from .errors import (
    IntegrityError,
    ChecksumError,
    ChecksumTimeoutError,
    ValidationError,
    RollbackError,
    ConfigError,
)

__version__ = "0.3.0"
__author__ = "Tailwind Enigma Contributors"
__url__ = "https://github.com/tailwind-enigma/enigma-integrity"

__all__ = [
    "FileIntegrityValidator",
    "IntegrityConfig",
    "BatchOptions",
    "create_file_integrity_validator",
    "calculate_file_checksum",
    "validate_file_integrity",
    "IntegrityError",
    "ChecksumError",
    "ChecksumTimeoutError",
    "ValidationError",
    "RollbackError",
    "ConfigError",
]

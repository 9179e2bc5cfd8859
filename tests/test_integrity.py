"""End-to-end tests for FileIntegrityValidator."""

import hashlib
import time

import pytest

from enigma_integrity import (
    FileIntegrityValidator,
    IntegrityConfig,
    ChecksumError,
    IntegrityError,
    create_file_integrity_validator,
    calculate_file_checksum,
    validate_file_integrity,
)
from enigma_integrity.backup.models import BackupType
from tests.utils import write_file


@pytest.mark.asyncio
async def test_missing_file_raises_checksum_error(validator, work_dir):
    with pytest.raises(ChecksumError) as exc_info:
        await validator.calculate_checksum(work_dir / "does-not-exist.css")
    assert isinstance(exc_info.value, IntegrityError)
    assert exc_info.value.to_dict()["code"] == "CHECKSUM_ERROR"


@pytest.mark.asyncio
async def test_rewrite_then_rollback_workflow(make_validator, work_dir):
    """Checksum, back up, rewrite, detect the change, roll back."""
    validator = make_validator(compression={"enabled": True, "threshold": 0})
    path = write_file(work_dir / "dist.css", ".a{color:red}\n" * 50)

    before = await validator.calculate_checksum(path)
    backup = await validator.create_backup(path)
    write_file(path, ".a{color:blue}\n")

    outcome = await validator.validate_file(path, before)
    assert outcome.is_valid is False

    restored = await validator.restore_from_backup(path, backup.backup_path)
    assert restored.integrity_verified is True
    assert (await validator.validate_file(path, before)).is_valid is True


@pytest.mark.asyncio
async def test_incremental_skip_for_unchanged_file(make_validator, work_dir):
    validator = make_validator(incremental={"enabled": True})
    path = write_file(work_dir / "a.css", "unchanged")
    await validator.create_incremental_backup(path)

    result = await validator.create_incremental_backup(path)

    assert result.backup_type is BackupType.SKIPPED
    assert result.files_changed == 0


@pytest.mark.asyncio
async def test_deduplicate_file(make_validator, work_dir):
    validator = make_validator(deduplication={"enabled": True})
    a = write_file(work_dir / "a.css", "dup")
    b = write_file(work_dir / "b.css", "dup")

    await validator.deduplicate_file(a)
    result = await validator.deduplicate_file(b)

    assert result.reference_count == 2


@pytest.mark.asyncio
async def test_compare_and_access(validator, work_dir):
    a = write_file(work_dir / "a.css", "same")
    b = write_file(work_dir / "b.css", "same")

    assert (await validator.compare_files(a, b)).match is True
    assert validator.verify_file_access(a).readable is True


@pytest.mark.asyncio
async def test_validate_batch(validator, work_dir):
    path = write_file(work_dir / "a.css", "a")
    result = await validator.validate_batch([(path, hashlib.sha256(b"a").hexdigest())])
    assert result.valid_files == 1


def test_calculate_checksum_sync(validator, work_dir):
    path = write_file(work_dir / "a.css", "sync")
    assert validator.calculate_checksum_sync(path).hash == hashlib.sha256(b"sync").hexdigest()


@pytest.mark.asyncio
async def test_cache_stats_and_clear(validator, work_dir):
    path = write_file(work_dir / "a.css", "cached", age_seconds=60)
    await validator.calculate_checksum(path)
    await validator.calculate_checksum(path)

    assert validator.get_cache_stats()["hits"] == 1
    validator.clear_cache()
    assert validator.get_cache_stats()["size"] == 0


def test_generate_metadata(validator):
    metadata = validator.generate_metadata("checksum", time.perf_counter(), {"files": 3})

    assert metadata.source == "FileIntegrityValidator"
    assert metadata.operation == "checksum"
    assert metadata.options["algorithm"] == "sha256"
    assert metadata.context == {"files": 3}
    assert metadata.processing_time_ms >= 0


def test_factory():
    validator = create_file_integrity_validator(IntegrityConfig(algorithm="sha512"))
    assert isinstance(validator, FileIntegrityValidator)
    assert validator.config.algorithm == "sha512"


def test_validators_are_independent(temp_dir):
    first = FileIntegrityValidator(IntegrityConfig.rooted_at(str(temp_dir / "one")))
    second = FileIntegrityValidator(IntegrityConfig.rooted_at(str(temp_dir / "two")))
    assert first.checksums is not second.checksums
    assert first.backups.backup_dir != second.backups.backup_dir


def test_config_warnings_logged(caplog):
    FileIntegrityValidator(IntegrityConfig(algorithm="md5"))
    assert "collision resistant" in caplog.text


@pytest.mark.asyncio
async def test_convenience_functions(work_dir):
    path = write_file(work_dir / "a.css", "quick")
    digest = hashlib.md5(b"quick").hexdigest()

    record = await calculate_file_checksum(path, algorithm="md5")
    assert record.hash == digest

    assert await validate_file_integrity(path, hashlib.sha256(b"quick").hexdigest()) is True
    assert await validate_file_integrity(path, "0" * 64) is False
    assert await validate_file_integrity(work_dir / "missing.css", "0" * 64) is False

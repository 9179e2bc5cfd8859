"""Tests for the incremental backup strategy."""

import asyncio
import os
from datetime import timedelta

import pytest

from enigma_integrity.backup.models import BackupType
from enigma_integrity.errors import RollbackError
from tests.utils import write_file, edit_file, touch_forward


@pytest.fixture
def make_incremental(make_validator):
    def _make(**settings):
        return make_validator(incremental={"enabled": True, **settings})

    return _make


@pytest.mark.asyncio
async def test_first_backup_is_full(make_incremental, work_dir):
    validator = make_incremental()
    path = write_file(work_dir / "app.css", "v1")

    result = await validator.create_incremental_backup(path)

    assert result.backup_type is BackupType.FULL
    assert result.parent_id is None
    assert result.files_changed == 1
    assert result.chain_length == 1
    assert result.reason == "no prior backup record"
    assert os.path.exists(result.backup.backup_path)


@pytest.mark.asyncio
async def test_unchanged_file_is_skipped(make_incremental, work_dir):
    validator = make_incremental()
    path = write_file(work_dir / "app.css", "v1")
    await validator.create_incremental_backup(path)

    result = await validator.create_incremental_backup(path)

    assert result.backup_type is BackupType.SKIPPED
    assert result.files_changed == 0
    assert result.backup is None
    assert result.chain_length == 1


@pytest.mark.asyncio
async def test_changed_file_extends_chain(make_incremental, work_dir):
    validator = make_incremental()
    path = write_file(work_dir / "app.css", "v1")
    full = await validator.create_incremental_backup(path)

    edit_file(path, "v2")
    incr = await validator.create_incremental_backup(path)

    assert incr.backup_type is BackupType.INCREMENTAL
    assert incr.parent_id == full.backup_id
    assert incr.chain_length == 2
    assert incr.changed_files == [str(path)]

    chain = await validator.incremental.get_chain(path)
    assert [entry.backup_id for entry in chain] == [full.backup_id, incr.backup_id]
    assert chain[1].parent_id == chain[0].backup_id


@pytest.mark.asyncio
async def test_chain_length_is_bounded(make_incremental, work_dir):
    validator = make_incremental(max_chain_length=3)
    path = write_file(work_dir / "app.css", "v0")
    await validator.create_incremental_backup(path)

    types = []
    for version in range(1, 5):
        edit_file(path, f"v{version}")
        result = await validator.create_incremental_backup(path)
        types.append(result.backup_type)
        assert result.chain_length <= 3

    assert types == [
        BackupType.INCREMENTAL,
        BackupType.INCREMENTAL,
        BackupType.FULL,
        BackupType.INCREMENTAL,
    ]


@pytest.mark.asyncio
async def test_full_strategy(make_incremental, work_dir):
    validator = make_incremental(strategy="full")
    path = write_file(work_dir / "app.css", "v1")
    await validator.create_incremental_backup(path)

    edit_file(path, "v2")
    result = await validator.create_incremental_backup(path)

    assert result.backup_type is BackupType.FULL
    assert result.chain_length == 1


@pytest.mark.asyncio
async def test_full_backup_interval(make_incremental, work_dir):
    validator = make_incremental(full_backup_interval=3600)
    path = write_file(work_dir / "app.css", "v1")
    await validator.create_incremental_backup(path)

    edit_file(path, "v2")
    fresh = await validator.create_incremental_backup(path)
    assert fresh.backup_type is BackupType.INCREMENTAL

    index = await validator.incremental._ensure_loaded()
    for chain in index.chains.values():
        chain[0].created_at -= timedelta(hours=2)

    edit_file(path, "version three")
    result = await validator.create_incremental_backup(path)

    assert result.backup_type is BackupType.FULL


@pytest.mark.asyncio
async def test_timestamp_detection_counts_touch_as_change(make_incremental, work_dir):
    validator = make_incremental(change_detection="timestamp")
    path = write_file(work_dir / "app.css", "same")
    await validator.create_incremental_backup(path)

    touch_forward(path)
    result = await validator.create_incremental_backup(path)

    assert result.backup_type is BackupType.INCREMENTAL


@pytest.mark.asyncio
async def test_hybrid_detection_ignores_touch(make_incremental, work_dir):
    validator = make_incremental(change_detection="hybrid")
    path = write_file(work_dir / "app.css", "same")
    await validator.create_incremental_backup(path)

    touch_forward(path)
    result = await validator.create_incremental_backup(path)

    assert result.backup_type is BackupType.SKIPPED


@pytest.mark.asyncio
async def test_checksum_detection_sees_content_behind_same_mtime(make_incremental, work_dir):
    validator = make_incremental(change_detection="checksum")
    path = write_file(work_dir / "app.css", "aaaa")
    await validator.create_incremental_backup(path)
    st = path.stat()

    # Same size and mtime, different bytes
    path.write_text("bbbb")
    os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns))
    result = await validator.create_incremental_backup(path)

    assert result.backup_type is BackupType.INCREMENTAL


@pytest.mark.asyncio
async def test_files_share_a_tracked_root(make_incremental, work_dir):
    validator = make_incremental()
    a = write_file(work_dir / "a.css", "a")
    b = write_file(work_dir / "b.css", "b")

    first = await validator.create_incremental_backup(a, root=work_dir)
    second = await validator.create_incremental_backup(b, root=work_dir)

    assert first.backup_type is BackupType.FULL
    assert second.backup_type is BackupType.INCREMENTAL
    assert second.parent_id == first.backup_id
    assert second.reason == "new file in tracked root"


@pytest.mark.asyncio
async def test_index_survives_restart(make_incremental, work_dir):
    path = write_file(work_dir / "app.css", "v1")
    await make_incremental().create_incremental_backup(path)

    result = await make_incremental().create_incremental_backup(path)

    assert result.backup_type is BackupType.SKIPPED


@pytest.mark.asyncio
async def test_corrupted_index_reinitializes(make_incremental, work_dir, caplog):
    validator = make_incremental()
    index_path = validator.incremental.index_path
    index_path.parent.mkdir(parents=True)
    index_path.write_text("this is not json")
    path = write_file(work_dir / "app.css", "v1")

    result = await validator.create_incremental_backup(path)

    assert result.backup_type is BackupType.FULL
    assert "corrupted" in caplog.text
    stats = await validator.get_incremental_stats()
    assert stats["corruption_recoveries"] == 1
    assert list(index_path.parent.glob("incremental-index.json.corrupt-*"))


@pytest.mark.asyncio
async def test_stats(make_incremental, work_dir):
    validator = make_incremental()
    path = write_file(work_dir / "app.css", "v1")
    await validator.create_incremental_backup(path)
    await validator.create_incremental_backup(path)
    edit_file(path, "v2")
    await validator.create_incremental_backup(path)

    stats = await validator.get_incremental_stats()

    assert stats["tracked_roots"] == 1
    assert stats["full_backups"] == 1
    assert stats["incremental_backups"] == 1
    assert stats["skipped_backups"] == 1
    assert stats["longest_chain"] == 2


@pytest.mark.asyncio
async def test_disabled(validator, work_dir):
    path = write_file(work_dir / "app.css", "v1")
    with pytest.raises(RollbackError, match="Incremental backups are disabled"):
        await validator.create_incremental_backup(path)


@pytest.mark.asyncio
async def test_missing_file(make_incremental, work_dir):
    with pytest.raises(RollbackError, match="Cannot backup file"):
        await make_incremental().create_incremental_backup(work_dir / "missing.css")


@pytest.mark.asyncio
async def test_concurrent_backups_share_one_chain(make_incremental, work_dir):
    validator = make_incremental(max_chain_length=3)
    paths = [write_file(work_dir / f"part{i}.css", f"part {i}") for i in range(8)]

    results = await asyncio.gather(
        *[validator.create_incremental_backup(p, root=work_dir) for p in paths]
    )

    # Serialized per root: full, incr, incr, full, incr, incr, full, incr
    assert sorted(r.chain_length for r in results) == [1, 1, 1, 2, 2, 2, 3, 3]
    assert sum(r.backup_type is BackupType.FULL for r in results) == 3
    chain = await validator.incremental.get_chain(work_dir)
    assert len(chain) <= 3
    for parent, child in zip(chain, chain[1:]):
        assert child.parent_id == parent.backup_id

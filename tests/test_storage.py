"""
Tests for artifact storage: atomic publish, reads, path safety and orphan cleanup.

Example usage:
    pytest tests/test_storage.py -v
"""

import os
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

import pytest
from freezegun import freeze_time

from core.errors import ArtifactIOError, ArtifactNotFoundError
from core.storage import (
    ARTIFACT_FILENAME,
    ArtifactStore,
    InvalidArtifactIdError,
    calculate_directory_size,
    is_path_safe,
    remove_artifact_directory,
)

UID_A = "a1b2c3d4-0000-4000-8000-000000000001"
UID_B = "b1b2c3d4-0000-4000-8000-000000000002"


def _age(path: Path, hours: float) -> None:
    ts = time.time() - hours * 3600
    os.utime(path, (ts, ts))


class TestPaths:
    """Storage layout and traversal protection."""

    def test_sharded_layout(self, tmp_path):
        store = ArtifactStore(tmp_path)
        assert store.path_for(UID_A) == tmp_path / "a1" / UID_A / ARTIFACT_FILENAME

    @pytest.mark.parametrize("bad_id", ["../../etc", "a/b", "", "ab", "x" * 200, "..hidden"])
    def test_invalid_ids_rejected(self, tmp_path, bad_id):
        with pytest.raises(InvalidArtifactIdError):
            ArtifactStore(tmp_path).path_for(bad_id)

    def test_is_path_safe(self, tmp_path):
        assert is_path_safe(tmp_path / "ab" / "abc", tmp_path) is True
        assert is_path_safe(tmp_path / ".." / "elsewhere", tmp_path) is False


class TestWriteRead:
    """Atomic publish and retrieval."""

    def test_write_then_read(self, tmp_path):
        store = ArtifactStore(tmp_path)
        path = store.write(UID_A, b"%PDF-1.4 body")

        assert Path(path).read_bytes() == b"%PDF-1.4 body"
        assert store.read(UID_A) == b"%PDF-1.4 body"
        assert store.exists(UID_A)

    def test_overwrite_replaces_content(self, tmp_path):
        store = ArtifactStore(tmp_path)
        store.write(UID_A, b"one")
        store.write(UID_A, b"two")
        assert store.read(UID_A) == b"two"

    def test_no_temp_files_left(self, tmp_path):
        store = ArtifactStore(tmp_path)
        store.write(UID_A, b"content")
        assert os.listdir(store.path_for(UID_A).parent) == [ARTIFACT_FILENAME]

    def test_failed_replace_leaves_nothing(self, tmp_path):
        store = ArtifactStore(tmp_path)
        with patch("core.storage.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(ArtifactIOError) as exc_info:
                store.write(UID_A, b"content")

        assert exc_info.value.retriable is True
        assert not store.exists(UID_A)
        assert os.listdir(store.path_for(UID_A).parent) == []

    def test_read_missing(self, tmp_path):
        with pytest.raises(ArtifactNotFoundError):
            ArtifactStore(tmp_path).read(UID_A)

    def test_delete(self, tmp_path):
        store = ArtifactStore(tmp_path)
        store.write(UID_A, b"content")
        assert store.delete(UID_A) is True
        assert not store.exists(UID_A)
        assert store.delete(UID_A) is True


class TestOrphanCleanup:
    """Removal of artifacts with no certificate record."""

    def test_iter_skips_foreign_entries(self, tmp_path):
        store = ArtifactStore(tmp_path)
        store.write(UID_A, b"x")
        (tmp_path / "audit.jsonl").write_text("{}")
        (tmp_path / "not-a-shard").mkdir()

        assert [uid for uid, _ in store.iter_artifact_dirs()] == [UID_A]

    def test_known_ids_are_kept(self, tmp_path):
        store = ArtifactStore(tmp_path)
        store.write(UID_A, b"x")
        _age(store.path_for(UID_A).parent, 48)

        assert store.find_orphan_artifacts({UID_A}, timedelta(hours=24)) == []

    def test_recent_orphans_are_within_grace(self, tmp_path):
        store = ArtifactStore(tmp_path)
        store.write(UID_A, b"x")
        assert store.find_orphan_artifacts(set(), timedelta(hours=24)) == []

    def test_old_orphans_found(self, tmp_path):
        store = ArtifactStore(tmp_path)
        store.write(UID_A, b"x")
        store.write(UID_B, b"y")
        _age(store.path_for(UID_A).parent, 48)
        _age(store.path_for(UID_B).parent, 48)

        orphans = store.find_orphan_artifacts({UID_B}, timedelta(hours=24))
        assert [path.name for path, _ in orphans] == [UID_A]

    def test_now_provider(self, tmp_path):
        store = ArtifactStore(tmp_path)
        store.write(UID_A, b"x")
        later = datetime.now(timezone.utc) + timedelta(days=2)

        orphans = store.find_orphan_artifacts(set(), timedelta(hours=24), now_provider=lambda: later)
        assert len(orphans) == 1

    @freeze_time("2099-01-01 00:00:00")
    def test_cleanup_removes_orphans(self, tmp_path):
        store = ArtifactStore(tmp_path)
        store.write(UID_A, b"x" * 2048)
        store.write(UID_B, b"keep")

        stats = store.cleanup_orphan_artifacts({UID_B}, timedelta(hours=24))

        assert stats["orphaned"] == 1
        assert stats["removed"] == 1
        assert stats["failed"] == 0
        assert stats["freed_bytes"] == 2048
        assert not store.exists(UID_A)
        assert store.exists(UID_B)

    @freeze_time("2099-01-01 00:00:00")
    def test_dry_run_keeps_files(self, tmp_path):
        store = ArtifactStore(tmp_path)
        store.write(UID_A, b"x")

        stats = store.cleanup_orphan_artifacts(set(), timedelta(hours=24), dry_run=True)

        assert stats["removed"] == 1
        assert stats["freed_bytes"] == 0
        assert store.exists(UID_A)

    def test_failed_removal_counted(self, tmp_path):
        store = ArtifactStore(tmp_path)
        store.write(UID_A, b"x")
        _age(store.path_for(UID_A).parent, 48)

        with patch("core.storage.shutil.rmtree", side_effect=OSError("busy")):
            stats = store.cleanup_orphan_artifacts(set(), timedelta(hours=24))

        assert stats["failed"] == 1
        assert stats["removed"] == 0
        assert store.exists(UID_A)

    def test_missing_root(self, tmp_path):
        store = ArtifactStore(tmp_path / "missing")
        assert store.cleanup_orphan_artifacts(set(), timedelta(hours=1))["orphaned"] == 0


def test_directory_size(tmp_path):
    (tmp_path / "a").write_bytes(b"12345")
    (tmp_path / "sub").mkdir()
    (tmp_path / "sub" / "b").write_bytes(b"123")
    assert calculate_directory_size(tmp_path) == 8


def test_remove_missing_directory_is_success(tmp_path):
    assert remove_artifact_directory(tmp_path / "nope") is True

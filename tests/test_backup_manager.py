"""Tests for backup management."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from vault_guard.backup.manager import BackupManager
from vault_guard.safety.models import BackupWriteFailure


class TestNormalizeKey:
    """Test resource key normalization."""

    @pytest.mark.parametrize(
        "resource,expected",
        [
            ("Daily/2024-01-01.md", "Daily__2024-01-01.md"),
            ("/Inbox/todo.md", "Inbox__todo.md"),
            ("Projects\\Q1\\plan.md", "Projects__Q1__plan.md"),
            ("My Notes/idea?.md", "My_Notes__idea_.md"),
            ("", "_root"),
        ],
    )
    def test_normalize(self, resource, expected):
        """Test paths become single-segment file names."""
        assert BackupManager.normalize_key(resource) == expected


class TestSnapshot:
    """Test writing backups."""

    def test_writes_verbatim_content(self, backup_manager: BackupManager):
        """Test the prior payload is stored byte-for-byte."""
        content = "# Title\r\nline with trailing spaces   \n"

        record = backup_manager.snapshot("Inbox/todo.md", content)

        assert record.filename == "Inbox__todo.md.20240101-120000.backup"
        assert record.read_content() == content

    def test_creates_backup_directory(self, tmp_path: Path, fake_clock):
        """Test the directory is created on first write."""
        manager = BackupManager(tmp_path / "nested" / "backups", clock=fake_clock)

        manager.snapshot("a.md", "x")

        assert (tmp_path / "nested" / "backups").is_dir()

    def test_same_second_moves_forward(self, tmp_path: Path):
        """Test a collision within one second does not overwrite."""
        fixed = datetime(2024, 1, 1, 12, 0, 0)
        manager = BackupManager(tmp_path, keep_last_n=0, clock=lambda: fixed)

        first = manager.snapshot("a.md", "one")
        second = manager.snapshot("a.md", "two")

        assert first.filename != second.filename
        assert second.timestamp == datetime(2024, 1, 1, 12, 0, 1)
        assert first.read_content() == "one"

    def test_write_failure_raises(self, tmp_path: Path, fake_clock):
        """Test unwritable directories raise BackupWriteFailure."""
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("file in the way")
        manager = BackupManager(blocker / "backups", clock=fake_clock)

        with pytest.raises(BackupWriteFailure) as exc_info:
            manager.snapshot("Inbox/todo.md", "content")

        assert exc_info.value.error_code == "BACKUP_WRITE_FAILURE"
        assert exc_info.value.details["resource_key"] == "Inbox__todo.md"

    def test_no_temp_files_left_behind(self, backup_manager: BackupManager):
        """Test only finished backups remain in the directory."""
        backup_manager.snapshot("a.md", "x")

        names = [path.name for path in backup_manager.backup_dir.iterdir()]
        assert all(name.endswith(".backup") for name in names)


class TestRotation:
    """Test retention of the most recent copies."""

    @pytest.mark.parametrize("writes", [1, 3, 4, 10])
    def test_keeps_min_of_cap_and_writes(self, backup_manager: BackupManager, writes):
        """Test exactly min(N, k) most recent copies remain."""
        for i in range(writes):
            backup_manager.snapshot("Inbox/todo.md", f"version {i}")

        records = backup_manager.list_backups("Inbox/todo.md")

        assert len(records) == min(3, writes)
        assert [record.read_content() for record in records] == [
            f"version {i}" for i in range(max(0, writes - 3), writes)
        ]

    def test_rotation_is_per_resource(self, backup_manager: BackupManager):
        """Test copies of other resources are untouched."""
        backup_manager.snapshot("b.md", "keep me")
        for i in range(5):
            backup_manager.snapshot("a.md", str(i))

        assert len(backup_manager.list_backups("a.md")) == 3
        assert len(backup_manager.list_backups("b.md")) == 1

    def test_zero_keeps_everything(self, tmp_path: Path, fake_clock):
        """Test a cap of zero disables rotation."""
        manager = BackupManager(tmp_path, keep_last_n=0, clock=fake_clock)
        for i in range(8):
            manager.snapshot("a.md", str(i))

        assert len(manager.list_backups("a.md")) == 8

    def test_explicit_rotate(self, tmp_path: Path, fake_clock):
        """Test rotating after lowering the cap deletes the oldest copies."""
        manager = BackupManager(tmp_path, keep_last_n=0, clock=fake_clock)
        for i in range(4):
            manager.snapshot("a.md", str(i))

        manager.keep_last_n = 2
        deleted = manager.rotate("a.md")

        assert [record.read_content() for record in manager.list_backups("a.md")] == ["2", "3"]
        assert len(deleted) == 2

    def test_list_ignores_unrelated_files(self, backup_manager: BackupManager):
        """Test stray files in the directory are not listed."""
        backup_manager.snapshot("a.md", "x")
        (backup_manager.backup_dir / "notes.txt").write_text("stray")
        (backup_manager.backup_dir / "a.md.garbage.backup").write_text("stray")

        assert len(backup_manager.list_backups("a.md")) == 1


class TestTimestampOrdering:
    """Test that newer copies always sort after older ones."""

    def test_fixed_clock_keeps_newest(self, tmp_path: Path):
        """Test repeated writes within one second never rotate away the newest copy."""
        fixed = datetime(2024, 1, 1, 12, 0, 0)
        manager = BackupManager(tmp_path, keep_last_n=1, clock=lambda: fixed)

        for content in ("v1", "v2", "v3"):
            manager.snapshot("a.md", content)

        assert [record.read_content() for record in manager.list_backups("a.md")] == ["v3"]

    def test_clock_stepping_back(self, tmp_path: Path):
        """Test a clock moving backwards still produces the newest file name."""
        readings = iter(
            [
                datetime(2024, 10, 27, 1, 30, 0),
                datetime(2024, 10, 27, 1, 50, 0),
                datetime(2024, 10, 27, 1, 10, 0),
            ]
        )
        manager = BackupManager(tmp_path, keep_last_n=2, clock=lambda: next(readings))

        for content in ("v1", "v2", "v3"):
            manager.snapshot("a.md", content)

        records = manager.list_backups("a.md")
        assert [record.read_content() for record in records] == ["v2", "v3"]
        assert records[-1].timestamp == datetime(2024, 10, 27, 1, 50, 1)

    def test_aware_clock_is_stored_as_utc(self, tmp_path: Path):
        """Test timezone-aware readings are converted to UTC."""
        local = timezone(timedelta(hours=2))
        manager = BackupManager(
            tmp_path, clock=lambda: datetime(2024, 1, 1, 14, 0, 0, tzinfo=local)
        )

        record = manager.snapshot("a.md", "x")

        assert record.filename == "a.md.20240101-120000.backup"

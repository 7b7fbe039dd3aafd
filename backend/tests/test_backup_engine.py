"""Tests for full/incremental database backups and retention cleanup."""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from coachvault.models import ActivityLog, Conversation, Message, TeamMember, User
from coachvault.services.backup_engine import (
    LATEST_POINTER,
    BackupEngine,
    BackupResult,
    _backup_stamp,
)
from scripts.automated_backup import main as backup_cli


@pytest.fixture
def seeded(file_session_factory):
    with file_session_factory() as db:
        db.add(User(id="user-1", email="a@example.com"))
        db.add(TeamMember(id="tm-1", manager_id="user-1", name="Sam", strengths=["Focus"]))
        db.add(Conversation(id="conv-1", owner_id="user-1", title="1:1", last_sequence=2))
        db.add(Message(id="m-1", conversation_id="conv-1", role="user", content="hi", sequence=1))
        db.add(Message(id="m-2", conversation_id="conv-1", role="ai", content="hello", sequence=2))
        db.add(ActivityLog(event_type="seed", summary="seeded"))
        db.commit()
    return file_session_factory


@pytest.fixture
def engine(seeded, tmp_path):
    return BackupEngine(seeded, backup_dir=tmp_path / "backups", retention=30)


def _make_full_backups(directory: Path, count: int, start: datetime) -> list[str]:
    directory.mkdir(parents=True, exist_ok=True)
    names = []
    for i in range(count):
        name = f"backup-{_backup_stamp(start + timedelta(hours=i))}-{i:06d}-abc123.json"
        (directory / name).write_text("{}")
        names.append(name)
    return names


class TestFullBackup:
    def test_writes_manifest_and_pointer(self, engine):
        result = engine.create_full_backup()

        assert result.success
        assert result.counts == {
            "users": 1,
            "team_members": 1,
            "conversations": 1,
            "messages": 2,
            "conversation_backups": 0,
            "activity_log": 1,
        }
        manifest = json.loads(result.path.read_text())
        assert manifest["version"] == "1.0"
        assert manifest["counts"] == result.counts
        assert [m["id"] for m in manifest["data"]["messages"]] == ["m-1", "m-2"]
        assert manifest["data"]["team_members"][0]["strengths"] == ["Focus"]
        assert manifest["data"]["conversation_backups"] == []

        latest = engine.read_latest()
        assert latest["latest"] == result.path.name
        assert latest["counts"] == result.counts
        assert not list(engine.backup_dir.glob(".*.tmp"))

    def test_names_are_unique_within_one_instant(self, engine):
        now = datetime(2026, 10, 18, 2, 0, tzinfo=timezone.utc)
        first = engine.create_full_backup(now=now)
        second = engine.create_full_backup(now=now)

        assert first.path != second.path
        assert len(engine.list_full_backups()) == 2
        assert engine.list_full_backups()[0] == second.path

    def test_failure_removes_partial_file_and_keeps_pointer(self, engine):
        good = engine.create_full_backup()
        real_stream = BackupEngine._stream_rows

        def broken_stream(self, db, name, since):
            if name == "messages":
                raise OSError("disk full")
            return real_stream(self, db, name, since)

        with patch.object(BackupEngine, "_stream_rows", broken_stream):
            result = engine.create_full_backup()

        assert result.success is False
        assert "disk full" in result.error
        assert engine.list_full_backups() == [good.path]
        assert not list(engine.backup_dir.glob(".*.tmp"))
        assert engine.read_latest()["latest"] == good.path.name

    def test_missing_pointer_reads_as_none(self, tmp_path, seeded):
        assert BackupEngine(seeded, backup_dir=tmp_path / "empty").read_latest() is None


class TestIncrementalBackup:
    def test_recent_changes_are_captured(self, engine):
        result = engine.create_incremental_backup()

        assert result.success
        assert not result.skipped
        assert result.path.parent == engine.incremental_dir
        manifest = json.loads(result.path.read_text())
        assert manifest["type"] == "incremental"
        assert manifest["since"] == result.since.isoformat()
        assert manifest["counts"]["messages"] == 2

    def test_no_changes_writes_nothing(self, engine):
        later = datetime.now(timezone.utc) + timedelta(days=3)

        result = engine.create_incremental_backup(now=later)

        assert result.success
        assert result.skipped
        assert result.path is None
        assert not engine.incremental_dir.exists() or not list(engine.incremental_dir.iterdir())

    def test_only_rows_after_watermark(self, engine, seeded):
        with seeded() as db:
            db.query(Message).filter(Message.id == "m-1").update(
                {Message.created_at: datetime(2020, 1, 1)}
            )
            db.commit()

        result = engine.create_incremental_backup()

        manifest = json.loads(result.path.read_text())
        assert [m["id"] for m in manifest["data"]["messages"]] == ["m-2"]


class TestCleanup:
    def test_keeps_newest_thirty(self, tmp_path, seeded):
        backup_dir = tmp_path / "backups"
        names = _make_full_backups(backup_dir, 35, datetime(2026, 1, 1, tzinfo=timezone.utc))
        engine = BackupEngine(seeded, backup_dir=backup_dir, retention=30)

        report = engine.cleanup_old_backups()

        assert report.retained == 30
        assert sorted(report.deleted) == sorted(names[:5])
        assert report.failed == []
        remaining = {p.name for p in engine.list_full_backups()}
        assert remaining == set(names[5:])

    def test_deletion_failure_is_logged_and_skipped(self, tmp_path, seeded):
        backup_dir = tmp_path / "backups"
        names = _make_full_backups(backup_dir, 35, datetime(2026, 1, 1, tzinfo=timezone.utc))
        victim = names[2]
        real_unlink = Path.unlink

        def flaky_unlink(self, *args, **kwargs):
            if self.name == victim:
                raise PermissionError("permission denied")
            return real_unlink(self, *args, **kwargs)

        engine = BackupEngine(seeded, backup_dir=backup_dir, retention=30)
        with patch.object(Path, "unlink", flaky_unlink):
            report = engine.cleanup_old_backups()

        assert report.failed == [victim]
        assert len(report.deleted) == 4
        assert (backup_dir / victim).exists()

    def test_unrelated_files_are_left_alone(self, tmp_path, seeded):
        backup_dir = tmp_path / "backups"
        _make_full_backups(backup_dir, 3, datetime(2026, 1, 1, tzinfo=timezone.utc))
        (backup_dir / LATEST_POINTER).write_text("{}")
        (backup_dir / "notes.txt").write_text("keep me")

        report = BackupEngine(seeded, backup_dir=backup_dir, retention=1).cleanup_old_backups()

        assert len(report.deleted) == 2
        assert (backup_dir / LATEST_POINTER).exists()
        assert (backup_dir / "notes.txt").exists()

    def test_missing_directory_is_not_an_error(self, tmp_path, seeded):
        report = BackupEngine(seeded, backup_dir=tmp_path / "nowhere").cleanup_old_backups()
        assert report.retained == 0
        assert report.deleted == []


class TestCli:
    def test_full_backup_exits_zero(self, seeded, tmp_path):
        backup_dir = tmp_path / "cli"
        assert backup_cli(["full", "--backup-dir", str(backup_dir)], session_factory=seeded) == 0
        assert len(list(backup_dir.glob("backup-*.json"))) == 1
        assert (backup_dir / LATEST_POINTER).exists()

    def test_full_backup_prunes_afterwards(self, seeded, tmp_path):
        backup_dir = tmp_path / "cli"
        _make_full_backups(backup_dir, 3, datetime(2020, 1, 1, tzinfo=timezone.utc))

        code = backup_cli(["full", "--backup-dir", str(backup_dir), "--retention", "2"], session_factory=seeded)

        assert code == 0
        assert len(list(backup_dir.glob("backup-*.json"))) == 2

    def test_cleanup_failure_does_not_change_exit_code(self, seeded, tmp_path):
        backup_dir = tmp_path / "cli"
        _make_full_backups(backup_dir, 3, datetime(2020, 1, 1, tzinfo=timezone.utc))

        def refuse(self, *args, **kwargs):
            raise PermissionError("read-only")

        with patch.object(Path, "unlink", refuse):
            code = backup_cli(["full", "--backup-dir", str(backup_dir), "--retention", "1"], session_factory=seeded)

        assert code == 0

    def test_failed_backup_exits_one(self, seeded, tmp_path):
        failed = BackupResult(success=False, error="database is locked")
        with patch.object(BackupEngine, "create_full_backup", return_value=failed):
            assert backup_cli(["full", "--backup-dir", str(tmp_path)], session_factory=seeded) == 1

    def test_incremental_and_cleanup_commands(self, seeded, tmp_path):
        assert backup_cli(["incremental", "--backup-dir", str(tmp_path)], session_factory=seeded) == 0
        assert backup_cli(["cleanup", "--backup-dir", str(tmp_path)], session_factory=seeded) == 0

    def test_unknown_command_exits_two(self, seeded, capsys):
        with pytest.raises(SystemExit) as exc_info:
            backup_cli(["restore-everything"], session_factory=seeded)
        assert exc_info.value.code == 2
        assert "usage" in capsys.readouterr().err

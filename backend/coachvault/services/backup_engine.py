"""Point-in-time JSON snapshots of the durable tables.

Full backups copy every tracked table into one manifest file::

    {"timestamp", "version", "counts": {table: n}, "data": {table: [rows]}}

named ``backup-<UTC timestamp>-<counter>-<random>.json`` so that two runs in
the same microsecond still get distinct names. ``latest-backup.json`` points
at the newest one. Incremental backups hold only rows touched since the
watermark and land in ``incremental/``; when nothing changed no file is
written.

Rows are read inside one transaction and streamed to disk in batches, so a
table never has to fit in memory. Every file is written to a temp name and
renamed into place; a failed run removes its temp file. Manifests are never
edited after the rename; cleanup only deletes whole files.
"""

import itertools
import json
import logging
import os
import re
import secrets
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, TextIO

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, sessionmaker

from coachvault.config import settings
from coachvault.models import ActivityLog, Conversation, ConversationBackup, Message, TeamMember, User

logger = logging.getLogger(__name__)

BACKUP_VERSION = "1.0"
LATEST_POINTER = "latest-backup.json"
INCREMENTAL_DIR = "incremental"
TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S.%fZ"
FULL_BACKUP_PATTERN = re.compile(r"^backup-(\d{8}T\d{6}\.\d{6}Z)-(\d+)-([0-9a-f]+)\.json$")

TRACKED_TABLES = {
    "users": User.__table__,
    "team_members": TeamMember.__table__,
    "conversations": Conversation.__table__,
    "messages": Message.__table__,
    "conversation_backups": ConversationBackup.__table__,
    "activity_log": ActivityLog.__table__,
}

# Columns whose value moves forward whenever a row is written
MUTATION_COLUMNS = {
    "users": ("updated_at",),
    "team_members": ("updated_at",),
    "conversations": ("updated_at", "last_activity"),
    "messages": ("created_at",),
    "conversation_backups": ("created_at",),
    "activity_log": ("created_at",),
}

_run_counter = itertools.count(1)


@dataclass
class BackupResult:
    success: bool
    path: Optional[Path] = None
    counts: dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None
    skipped: bool = False
    since: Optional[datetime] = None


@dataclass
class CleanupReport:
    retained: int = 0
    deleted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _backup_stamp(now: datetime) -> str:
    return now.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def _unique_suffix() -> str:
    return f"{next(_run_counter):06d}-{secrets.token_hex(3)}"


def full_backup_sort_key(path: Path) -> tuple[str, int]:
    match = FULL_BACKUP_PATTERN.match(path.name)
    return (match.group(1), int(match.group(2))) if match else ("", 0)


class BackupEngine:
    def __init__(
        self,
        session_factory: Callable[[], Session] | sessionmaker,
        backup_dir: Optional[Path] = None,
        retention: Optional[int] = None,
        incremental_window: Optional[timedelta] = None,
        batch_size: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.backup_dir = Path(backup_dir or settings.backup_dir)
        self.retention = retention if retention is not None else settings.backup_retention
        self.incremental_window = incremental_window or timedelta(hours=settings.incremental_window_hours)
        self.batch_size = batch_size or settings.backup_batch_size

    @property
    def incremental_dir(self) -> Path:
        return self.backup_dir / INCREMENTAL_DIR

    # --- reading ---

    @staticmethod
    def _begin_snapshot(db: Session) -> None:
        # SQLite already reads from one snapshot per transaction in WAL mode
        if db.get_bind().dialect.name != "sqlite":
            db.connection(execution_options={"isolation_level": "REPEATABLE READ"})

    @staticmethod
    def _changed_since(name: str, since: Optional[datetime]):
        if since is None:
            return None
        table = TRACKED_TABLES[name]
        return or_(*(table.c[col] > since for col in MUTATION_COLUMNS[name]))

    def _count_rows(self, db: Session, since: Optional[datetime]) -> dict[str, int]:
        counts = {}
        for name, table in TRACKED_TABLES.items():
            q = select(func.count()).select_from(table)
            condition = self._changed_since(name, since)
            if condition is not None:
                q = q.where(condition)
            counts[name] = db.execute(q).scalar_one()
        return counts

    def _stream_rows(self, db: Session, name: str, since: Optional[datetime]) -> Iterator[dict]:
        table = TRACKED_TABLES[name]
        q = select(table).order_by(*table.primary_key.columns)
        condition = self._changed_since(name, since)
        if condition is not None:
            q = q.where(condition)
        result = db.execute(q.execution_options(yield_per=self.batch_size))
        for row in result.mappings():
            yield {key: _jsonable(value) for key, value in row.items()}

    # --- writing ---

    @staticmethod
    def _atomic_write(path: Path, writer: Callable[[TextIO], None]) -> None:
        tmp_path = path.with_name(f".{path.name}.tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as fh:
                writer(fh)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

    def _write_manifest(
        self,
        fh: TextIO,
        db: Session,
        header: dict[str, Any],
        counts: dict[str, int],
        since: Optional[datetime],
    ) -> None:
        fh.write("{\n")
        for key, value in header.items():
            fh.write(f"  {json.dumps(key)}: {json.dumps(value)},\n")
        fh.write(f'  "counts": {json.dumps(counts)},\n')
        fh.write('  "data": {')

        for index, name in enumerate(TRACKED_TABLES):
            fh.write("\n" if index == 0 else ",\n")
            fh.write(f"    {json.dumps(name)}: [")
            written = 0
            for row in self._stream_rows(db, name, since):
                fh.write("\n      " if written == 0 else ",\n      ")
                fh.write(json.dumps(row, ensure_ascii=False, default=str))
                written += 1
            fh.write("\n    ]" if written else "]")
            if written != counts[name]:
                raise RuntimeError(
                    f"{name}: counted {counts[name]} rows but streamed {written}; snapshot was not consistent"
                )

        fh.write("\n  }\n}\n")

    def _write_pointer(self, filename: str, stamp: str, counts: dict[str, int], path: Path) -> None:
        pointer = {"latest": filename, "timestamp": stamp, "counts": counts, "path": str(path)}
        self._atomic_write(
            self.backup_dir / LATEST_POINTER,
            lambda fh: fh.write(json.dumps(pointer, indent=2)),
        )

    # --- operations ---

    def create_full_backup(self, now: Optional[datetime] = None) -> BackupResult:
        now = now or datetime.now(timezone.utc)
        stamp = _backup_stamp(now)
        filename = f"backup-{stamp}-{_unique_suffix()}.json"
        path = self.backup_dir / filename
        logger.info(f"Starting full backup {filename}")

        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            with self.session_factory() as db:
                self._begin_snapshot(db)
                counts = self._count_rows(db, since=None)
                header = {"timestamp": stamp, "version": BACKUP_VERSION}
                self._atomic_write(path, lambda fh: self._write_manifest(fh, db, header, counts, None))
                db.rollback()
        except Exception as e:
            logger.exception("Full backup failed")
            return BackupResult(success=False, error=str(e))

        try:
            self._write_pointer(filename, stamp, counts, path)
        except OSError as e:
            logger.error(f"Backup {filename} written but {LATEST_POINTER} could not be updated: {e}")
            return BackupResult(success=False, path=path, counts=counts, error=f"pointer update failed: {e}")

        logger.info(f"Full backup completed: {filename} {counts}")
        return BackupResult(success=True, path=path, counts=counts)

    def create_incremental_backup(self, now: Optional[datetime] = None) -> BackupResult:
        now = now or datetime.now(timezone.utc)
        since = now - self.incremental_window

        try:
            with self.session_factory() as db:
                self._begin_snapshot(db)
                counts = self._count_rows(db, since=since)
                if not any(counts.values()):
                    logger.info(f"No changes since {since.isoformat()}; incremental backup skipped")
                    return BackupResult(success=True, skipped=True, counts=counts, since=since)

                stamp = _backup_stamp(now)
                self.incremental_dir.mkdir(parents=True, exist_ok=True)
                path = self.incremental_dir / f"incremental-{stamp}-{_unique_suffix()}.json"
                header = {
                    "type": "incremental",
                    "timestamp": stamp,
                    "version": BACKUP_VERSION,
                    "since": since.isoformat(),
                }
                self._atomic_write(path, lambda fh: self._write_manifest(fh, db, header, counts, since))
                db.rollback()
        except Exception as e:
            logger.exception("Incremental backup failed")
            return BackupResult(success=False, error=str(e), since=since)

        logger.info(f"Incremental backup completed: {path.name} {counts}")
        return BackupResult(success=True, path=path, counts=counts, since=since)

    def list_full_backups(self) -> list[Path]:
        """Full backup files, newest first by the timestamp in their name."""
        if not self.backup_dir.is_dir():
            return []
        files = [p for p in self.backup_dir.iterdir() if FULL_BACKUP_PATTERN.match(p.name)]
        return sorted(files, key=full_backup_sort_key, reverse=True)

    def cleanup_old_backups(self) -> CleanupReport:
        """Keep the newest ``retention`` full backups and delete the rest. Never raises."""
        try:
            files = self.list_full_backups()
        except OSError as e:
            logger.warning(f"Backup cleanup could not list {self.backup_dir}: {e}")
            return CleanupReport()

        report = CleanupReport(retained=min(len(files), self.retention))
        for path in files[self.retention:]:
            try:
                path.unlink()
            except OSError as e:
                logger.warning(f"Could not delete old backup {path.name}: {e}")
                report.failed.append(path.name)
                continue
            logger.info(f"Deleted old backup: {path.name}")
            report.deleted.append(path.name)

        logger.info(
            f"Cleanup completed: {report.retained} retained, {len(report.deleted)} deleted, "
            f"{len(report.failed)} failed"
        )
        return report

    def read_latest(self) -> Optional[dict]:
        pointer = self.backup_dir / LATEST_POINTER
        if not pointer.exists():
            return None
        return json.loads(pointer.read_text(encoding="utf-8"))

#!/usr/bin/env python3
"""Scheduled database backups.

Full backups snapshot every tracked table and then prune old full backups
down to the retention count. Incremental backups capture rows changed in the
last window and write nothing when there were no changes.

Usage:
    python scripts/automated_backup.py full
    python scripts/automated_backup.py incremental
    python scripts/automated_backup.py cleanup
    python scripts/automated_backup.py full --backup-dir /var/backups/coachvault

Cron (daily full at 02:00, hourly incremental):
    0 2 * * * cd /srv/coachvault/backend && python scripts/automated_backup.py full
    0 * * * * cd /srv/coachvault/backend && python scripts/automated_backup.py incremental

Exit codes: 0 success, 1 backup failed, 2 bad usage.
"""

import argparse
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parent.parent / ".env")

from coachvault.config import settings
from coachvault.services.backup_engine import BackupEngine

logger = logging.getLogger("automated_backup")

COMMANDS = ("full", "incremental", "cleanup")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create and prune database backups")
    parser.add_argument("command", choices=COMMANDS, help="Backup to run")
    parser.add_argument("--backup-dir", type=Path, default=None,
                        help=f"Backup directory (default: {settings.backup_dir})")
    parser.add_argument("--retention", type=int, default=None,
                        help=f"Full backups to keep (default: {settings.backup_retention})")
    return parser


def run(engine: BackupEngine, command: str) -> int:
    if command == "cleanup":
        report = engine.cleanup_old_backups()
        print(f"Retained {report.retained}, deleted {len(report.deleted)}, failed {len(report.failed)}")
        return 0

    if command == "full":
        result = engine.create_full_backup()
    else:
        result = engine.create_incremental_backup()

    if not result.success:
        print(f"Backup failed: {result.error}", file=sys.stderr)
        return 1

    if result.skipped:
        print("No changes since the last window; nothing written")
    else:
        total = sum(result.counts.values())
        print(f"Wrote {result.path} ({total} rows)")
        for table, count in result.counts.items():
            print(f"  {table}: {count}")

    if command == "full":
        # Retention problems are logged by the engine and never fail a good backup
        engine.cleanup_old_backups()
    return 0


def main(argv=None, session_factory=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if session_factory is None:
        from coachvault.database import SessionLocal
        session_factory = SessionLocal

    engine = BackupEngine(session_factory, backup_dir=args.backup_dir, retention=args.retention)
    return run(engine, args.command)


if __name__ == "__main__":
    sys.exit(main())

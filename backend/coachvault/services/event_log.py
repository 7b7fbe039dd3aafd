"""Append-only JSONL trail of migration and recovery events, one file per UTC day."""

import json
import os
from datetime import datetime, timezone
from pathlib import Path

from coachvault.config import settings


def _get_log_path() -> Path:
    log_dir = settings.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    return log_dir / f"events_{today}.jsonl"


def log_event(
    event: str,
    user_id: str | None = None,
    conversation_id: str | None = None,
    source: str | None = None,
    **extra,
) -> None:
    if os.environ.get("TESTING") == "1":
        return

    entry = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "event": event,
        "user_id": user_id,
        "conversation_id": conversation_id,
        "source": source,
        **extra,
    }
    entry = {k: v for k, v in entry.items() if v is not None}

    log_path = _get_log_path()
    with open(log_path, "a") as f:
        f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")

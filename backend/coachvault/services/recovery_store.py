"""Client-local chat history storage with corruption recovery.

Every function here is stateless and works through a storage port: any
object with ``get``/``set``/``remove``/``keys`` over string values. Ports
signal failure by raising ``StorageUnavailable``, ``QuotaExceeded`` or
``OSError``; the functions below turn those into ``StorageResult`` values so
callers never see a raw exception.

Recovery of a corrupted ``chat-history`` blob tries three strategies in a
fixed order and stops at the first that yields a list:

1. decode the raw text again as-is
2. append the closing brackets the text is missing, then decode
3. pull conversation-shaped objects out of the text one by one

None of them writes to storage. Strategy 3 is a heuristic: it will miss
conversations whose text contains braces or that nest deeper than it
scans, and that is accepted. It never invents records.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol

from coachvault.errors import CoachVaultError, QuotaExceeded, StorageUnavailable

logger = logging.getLogger(__name__)

CHAT_HISTORY_KEY = "chat-history"
UNMIGRATED_KEY = "chat-history-unmigrated"
MIGRATION_STATUS_KEY = "migration-status"

HEALTH_PROBE_KEY = "__storage_test__"
QUOTA_PROBE_KEY = "__quota_test__"
QUOTA_PROBE_BYTES = 1024 * 1024

_STORAGE_ERRORS = (CoachVaultError, OSError)

# Balanced braces up to three levels deep: conversation -> message -> metadata
CONVERSATION_PATTERN = re.compile(r"\{(?:[^{}]|\{(?:[^{}]|\{[^{}]*\})*\})*\}")

_CLOSERS = {"{": "}", "[": "]"}


class StoragePort(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...


@dataclass
class StorageResult:
    success: bool
    data: Any = None
    error: Optional[str] = None
    corrupted: bool = False
    recovered_by: Optional[str] = None


@dataclass
class MigrationStatus:
    completed: bool = False
    timestamp: Optional[str] = None


@dataclass
class StorageHealth:
    available: bool
    quota_exceeded: bool
    estimated_size: int
    errors: list[str] = field(default_factory=list)


class MemoryStorage:
    """In-process storage port. ``quota_bytes`` caps the summed size of keys and values."""

    def __init__(self, initial: Optional[dict[str, str]] = None, quota_bytes: Optional[int] = None,
                 available: bool = True):
        self._items: dict[str, str] = dict(initial or {})
        self.quota_bytes = quota_bytes
        self.available = available

    def _check_available(self):
        if not self.available:
            raise StorageUnavailable("storage is disabled")

    def get(self, key: str) -> Optional[str]:
        self._check_available()
        return self._items.get(key)

    def set(self, key: str, value: str) -> None:
        self._check_available()
        if self.quota_bytes is not None:
            used = sum(len(k) + len(v) for k, v in self._items.items() if k != key)
            if used + len(key) + len(value) > self.quota_bytes:
                raise QuotaExceeded(f"writing {key!r} would exceed the {self.quota_bytes} byte quota")
        self._items[key] = value

    def remove(self, key: str) -> None:
        self._check_available()
        self._items.pop(key, None)

    def keys(self) -> list[str]:
        self._check_available()
        return list(self._items)


class JsonFileStorage:
    """Storage port persisted as one JSON object on disk, rewritten atomically on every change."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise StorageUnavailable(f"storage file {self.path} is unreadable: {e}") from e
        if not isinstance(payload, dict):
            raise StorageUnavailable(f"storage file {self.path} does not hold an object")
        bad_keys = [k for k, v in payload.items() if not isinstance(v, str)]
        if bad_keys:
            raise StorageUnavailable(f"storage file {self.path} holds non-string values for {bad_keys}")
        return payload

    def _save(self, items: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            tmp_path.write_text(json.dumps(items, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, self.path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        items = self._load()
        items[key] = value
        self._save(items)

    def remove(self, key: str) -> None:
        items = self._load()
        if items.pop(key, None) is not None:
            self._save(items)

    def keys(self) -> list[str]:
        return list(self._load())


def read(port: StoragePort, key: str) -> StorageResult:
    """Read and decode a JSON value. A missing key is a success with ``data=None``."""
    try:
        raw = port.get(key)
    except _STORAGE_ERRORS as e:
        logger.error(f"Error reading storage key {key!r}: {e}")
        return StorageResult(success=False, error=str(e))

    if raw is None:
        return StorageResult(success=True, data=None)

    try:
        return StorageResult(success=True, data=json.loads(raw))
    except json.JSONDecodeError as e:
        logger.error(f"Stored value for {key!r} is not valid JSON: {e}")
        return StorageResult(success=False, error=str(e), corrupted=True)


def write(port: StoragePort, key: str, value: Any) -> StorageResult:
    try:
        encoded = json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        return StorageResult(success=False, error=f"value for {key!r} is not serializable: {e}")

    try:
        port.set(key, encoded)
    except _STORAGE_ERRORS as e:
        logger.error(f"Error writing storage key {key!r}: {e}")
        return StorageResult(success=False, error=str(e))
    return StorageResult(success=True)


def remove(port: StoragePort, key: str) -> StorageResult:
    try:
        port.remove(key)
    except _STORAGE_ERRORS as e:
        logger.error(f"Error removing storage key {key!r}: {e}")
        return StorageResult(success=False, error=str(e))
    return StorageResult(success=True)


def get_chat_history(port: StoragePort) -> StorageResult:
    result = read(port, CHAT_HISTORY_KEY)
    if not result.success:
        return result

    if result.data is not None and not isinstance(result.data, list):
        return StorageResult(success=False, error="Chat history data is not a list", corrupted=True)

    return StorageResult(success=True, data=result.data or [])


def get_migration_status(port: StoragePort) -> MigrationStatus:
    result = read(port, MIGRATION_STATUS_KEY)
    if not result.success or not isinstance(result.data, dict):
        return MigrationStatus(completed=False)
    return MigrationStatus(
        completed=result.data.get("completed") is True,
        timestamp=result.data.get("timestamp"),
    )


def set_migration_completed(port: StoragePort) -> StorageResult:
    current = get_migration_status(port)
    if current.completed:
        return StorageResult(success=True)
    return write(port, MIGRATION_STATUS_KEY, {
        "completed": True,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })


def clear_chat_history(port: StoragePort) -> StorageResult:
    return remove(port, CHAT_HISTORY_KEY)


def is_conversation_record(value: Any) -> bool:
    """Minimum shape a recovered record needs to be worth migrating."""
    if not isinstance(value, dict):
        return False
    title = value.get("title")
    return isinstance(title, str) and bool(title.strip()) and isinstance(value.get("messages"), list)


def _decode_direct(raw: str) -> Any:
    return json.loads(raw)


def _decode_balanced(raw: str) -> Any:
    """Append whatever closing brackets ``raw`` is missing and decode the result."""
    stack: list[str] = []
    in_string = False
    escaped = False
    for ch in raw:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(ch)
        elif ch in ("}", "]"):
            if not stack or _CLOSERS[stack[-1]] != ch:
                raise ValueError(f"unmatched {ch!r}; cannot repair by appending")
            stack.pop()

    if not stack:
        raise ValueError("brackets already balanced")
    if in_string:
        raise ValueError("text ends inside a string")

    repaired = raw.rstrip()
    if repaired.endswith(","):
        repaired = repaired[:-1]
    repaired += "".join(_CLOSERS[opener] for opener in reversed(stack))
    return json.loads(repaired)


def extract_conversation_fragments(raw: str) -> list[dict]:
    fragments = []
    for match in CONVERSATION_PATTERN.finditer(raw):
        text = match.group(0)
        if '"title"' not in text or '"messages"' not in text:
            continue
        try:
            candidate = json.loads(text)
        except json.JSONDecodeError:
            continue
        if is_conversation_record(candidate):
            fragments.append(candidate)
    return fragments


RECOVERY_STRATEGIES = (
    ("direct", _decode_direct),
    ("bracket_balance", _decode_balanced),
    ("fragments", extract_conversation_fragments),
)


def recover_chat_history(raw: str) -> StorageResult:
    """Run the recovery strategies over ``raw`` in order; first list wins."""
    for name, strategy in RECOVERY_STRATEGIES:
        try:
            recovered = strategy(raw)
        except ValueError as e:  # JSONDecodeError is a ValueError
            logger.debug(f"Recovery strategy {name} failed: {e}")
            continue
        if isinstance(recovered, list):
            if name != "direct":
                logger.warning(f"Recovered {len(recovered)} conversation(s) using {name}")
            return StorageResult(success=True, data=recovered, recovered_by=name)

    return StorageResult(
        success=False,
        error="Could not recover data using any strategy",
        corrupted=True,
    )


def read_raw(port: StoragePort, key: str) -> StorageResult:
    """Fetch the undecoded string stored under ``key``."""
    try:
        return StorageResult(success=True, data=port.get(key))
    except _STORAGE_ERRORS as e:
        logger.error(f"Error reading storage key {key!r}: {e}")
        return StorageResult(success=False, error=str(e))


def attempt_data_recovery(port: StoragePort) -> StorageResult:
    """Recover chat history from the port without modifying what is stored."""
    raw = read_raw(port, CHAT_HISTORY_KEY)
    if not raw.success:
        return raw
    if not raw.data:
        return StorageResult(success=True, data=[])
    return recover_chat_history(raw.data)


def _discard_probe(port: StoragePort, key: str, errors: list[str], report: bool) -> None:
    # Always attempted: a port may have half-written the probe before failing
    try:
        port.remove(key)
    except _STORAGE_ERRORS as e:
        if report:
            logger.warning(f"Could not remove storage probe {key!r}: {e}")
            errors.append(f"probe key {key} could not be removed: {e}")


def check_storage_health(port: StoragePort) -> StorageHealth:
    errors: list[str] = []
    available = False
    quota_exceeded = False
    estimated_size = 0

    try:
        port.set(HEALTH_PROBE_KEY, "test")
        available = True
    except _STORAGE_ERRORS as e:
        errors.append(str(e) or "storage unavailable")
    finally:
        _discard_probe(port, HEALTH_PROBE_KEY, errors, report=available)

    if not available:
        return StorageHealth(available=False, quota_exceeded=False, estimated_size=0, errors=errors)

    wrote_quota_probe = False
    try:
        port.set(QUOTA_PROBE_KEY, "x" * QUOTA_PROBE_BYTES)
        wrote_quota_probe = True
    except QuotaExceeded:
        quota_exceeded = True
        errors.append("storage quota exceeded or nearly full")
    except _STORAGE_ERRORS as e:
        errors.append(str(e))
    finally:
        _discard_probe(port, QUOTA_PROBE_KEY, errors, report=wrote_quota_probe)

    try:
        for key in port.keys():
            estimated_size += len(key) + len(port.get(key) or "")
    except _STORAGE_ERRORS as e:
        errors.append(f"could not estimate usage: {e}")

    return StorageHealth(
        available=available,
        quota_exceeded=quota_exceeded,
        estimated_size=estimated_size,
        errors=errors,
    )

"""Exactly-once migration of client-local chat history into durable storage.

The client side is ``MigrationCoordinator``: it owns the ``migration-status``
flag and the local ``chat-history`` blob, and pushes recovered conversations
through a sink one at a time. The server side is ``migrate_local_blob``,
which runs the same per-item loop straight against the database.

A failed item never aborts the batch. The flag is only set, and the local
blob only cleared, when every item went through; otherwise both stay as they
were so the migration can be retried. Retries do not duplicate items that
already landed: the server sink skips records whose original id it has
already imported.

Records too malformed to migrate are copied to ``chat-history-unmigrated``
before the blob is cleared; if that copy fails the blob is left in place.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Protocol

from sqlalchemy.orm import Session

from coachvault.errors import CorruptedDataError, MigrationPartialFailure
from coachvault.models import Conversation
from coachvault.services import conversation_store, recovery_store
from coachvault.services.event_log import log_event

logger = logging.getLogger(__name__)

MIGRATION_SOURCE = "localStorage"
INCIDENT_PREVIEW_CHARS = 1000


class MigrationState(str, enum.Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass
class MigrationItemError:
    index: int
    source_id: Optional[str]
    title: Optional[str]
    message: str

    def to_dict(self) -> dict:
        return {"index": self.index, "sourceId": self.source_id, "title": self.title, "message": self.message}


@dataclass
class MigrationResult:
    success: bool
    conversations_created: int = 0
    messages_created: int = 0
    errors: list[MigrationItemError] = field(default_factory=list)
    skipped: int = 0
    already_migrated: int = 0
    error: Optional[str] = None
    rejected: bool = False
    skipped_records: list = field(default_factory=list)

    def raise_for_failure(self) -> None:
        if not self.success and self.errors:
            raise MigrationPartialFailure(self)

    def to_dict(self) -> dict:
        body = {
            "success": self.success,
            "conversationsCreated": self.conversations_created,
            "messagesCreated": self.messages_created,
            "skipped": self.skipped,
            "alreadyMigrated": self.already_migrated,
            "errors": [e.to_dict() for e in self.errors],
        }
        if self.error:
            body["error"] = self.error
        return body


class ConversationSink(Protocol):
    async def import_conversation(
        self,
        title: str,
        mode: str,
        messages: list[dict],
        metadata: Optional[dict] = None,
        last_activity: Optional[datetime] = None,
    ) -> Optional[int]:
        """Persist one conversation with its messages as a unit.

        Returns the number of messages written, or None when the
        conversation was already imported earlier.
        """
        ...


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def prepare_record(record: Any) -> Optional[dict]:
    """Turn a client-local conversation record into sink arguments, or None if unusable."""
    if not recovery_store.is_conversation_record(record):
        return None

    messages = []
    for msg in record["messages"]:
        if not isinstance(msg, dict):
            continue
        role = conversation_store.normalize_role(msg.get("role") or msg.get("type"))
        content = msg.get("content")
        if role not in conversation_store.ROLES or not isinstance(content, str) or not content.strip():
            logger.warning(f"Skipping invalid message in conversation {record.get('id')!r}")
            continue
        messages.append({
            "role": role,
            "content": content,
            "metadata": {"originalId": msg.get("id"), "originalTimestamp": msg.get("timestamp")},
        })

    mode = record.get("mode") if record.get("mode") in conversation_store.MODES else "personal"
    return {
        "title": record["title"],
        "mode": mode,
        "messages": messages,
        "metadata": {
            "migratedFrom": MIGRATION_SOURCE,
            "originalId": record.get("id"),
            "originalLastActivity": record.get("lastActivity"),
        },
        "last_activity": _parse_timestamp(record.get("lastActivity")),
    }


def recover_records(raw: Optional[str]) -> list:
    """Recover conversation records from a raw blob.

    An absent or blank blob is simply empty, and so is one that decodes
    (directly or after bracket repair) to an empty list. A blob that only
    the fragment scan could read and that yields nothing raises
    ``CorruptedDataError``.
    """
    if raw is None or not raw.strip():
        return []

    recovered = recovery_store.recover_chat_history(raw)
    if not recovered.success:
        raise CorruptedDataError(recovered.error or "Chat history could not be recovered")
    if not recovered.data and recovered.recovered_by == "fragments":
        raise CorruptedDataError("Chat history is corrupted and no conversations could be recovered")
    return recovered.data


async def run_migration(records: Iterable[Any], sink: ConversationSink) -> MigrationResult:
    result = MigrationResult(success=True)

    for index, record in enumerate(records):
        prepared = prepare_record(record)
        if prepared is None:
            logger.warning(f"Skipping invalid conversation record at index {index}")
            result.skipped += 1
            result.skipped_records.append(record)
            continue

        try:
            written = await sink.import_conversation(**prepared)
        except Exception as e:
            logger.exception(f"Failed to migrate conversation at index {index}")
            result.errors.append(MigrationItemError(
                index=index,
                source_id=record.get("id"),
                title=record.get("title"),
                message=str(e) or e.__class__.__name__,
            ))
            continue

        if written is None:
            result.already_migrated += 1
            continue
        result.conversations_created += 1
        result.messages_created += written

    if result.errors:
        result.success = False
        result.error = f"{len(result.errors)} conversation(s) failed to migrate"
    return result


class StoreSink:
    """Sink that writes straight into the database, one savepoint per conversation."""

    def __init__(self, db: Session, owner_id: str):
        self.db = db
        self.owner_id = owner_id
        self._imported_ids: Optional[set[str]] = None

    def _already_imported(self, original_id: Optional[str]) -> bool:
        if original_id is None:
            return False
        if self._imported_ids is None:
            rows = (
                self.db.query(Conversation.metadata_json)
                .filter(Conversation.owner_id == self.owner_id)
                .all()
            )
            self._imported_ids = {
                str(meta.get("originalId"))
                for (meta,) in rows
                if isinstance(meta, dict)
                and meta.get("migratedFrom") == MIGRATION_SOURCE
                and meta.get("originalId") is not None
            }
        return str(original_id) in self._imported_ids

    async def import_conversation(
        self,
        title: str,
        mode: str,
        messages: list[dict],
        metadata: Optional[dict] = None,
        last_activity: Optional[datetime] = None,
    ) -> Optional[int]:
        original_id = (metadata or {}).get("originalId")
        if self._already_imported(original_id):
            return None

        with self.db.begin_nested():
            _, written = conversation_store.import_conversation(
                self.db, self.owner_id, title, mode, messages, metadata, last_activity
            )
        if original_id is not None:
            self._imported_ids.add(str(original_id))
        return written


class MigrationCoordinator:
    """Client-side driver for the one-time move of local chat history to the server.

    Only one ``migrate`` call runs at a time per coordinator; a call that
    arrives while another is in flight is rejected without side effects.
    """

    def __init__(self, storage: recovery_store.StoragePort, sink: ConversationSink):
        self.storage = storage
        self.sink = sink
        self._in_flight = False
        if recovery_store.get_migration_status(storage).completed:
            self._state = MigrationState.COMPLETED
        else:
            self._state = MigrationState.NOT_STARTED

    @property
    def state(self) -> MigrationState:
        return self._state

    async def migrate(self, raw_blob: Optional[str] = None) -> MigrationResult:
        # No await between the check and the flag: concurrent callers cannot both pass
        if self._in_flight:
            return MigrationResult(success=False, rejected=True, error="Migration already in progress")

        if recovery_store.get_migration_status(self.storage).completed:
            self._state = MigrationState.COMPLETED
            return MigrationResult(success=True)

        self._in_flight = True
        self._state = MigrationState.IN_PROGRESS
        try:
            result = await self._migrate(raw_blob)
        except BaseException:
            self._state = MigrationState.NOT_STARTED
            raise
        finally:
            self._in_flight = False

        self._state = MigrationState.COMPLETED if result.success else MigrationState.NOT_STARTED
        return result

    async def _migrate(self, raw_blob: Optional[str]) -> MigrationResult:
        if raw_blob is None:
            raw = recovery_store.read_raw(self.storage, recovery_store.CHAT_HISTORY_KEY)
            if not raw.success:
                return MigrationResult(success=False, error=raw.error)
            raw_blob = raw.data

        records = recover_records(raw_blob)
        result = await run_migration(records, self.sink)

        if not result.success:
            log_event("migration_failed", source=MIGRATION_SOURCE, errors=len(result.errors))
            return result

        flagged = recovery_store.set_migration_completed(self.storage)
        if not flagged.success:
            logger.error(f"Migration succeeded but the completion flag could not be saved: {flagged.error}")

        if result.skipped_records and not self._retain_skipped(result.skipped_records):
            logger.error("Skipped records could not be set aside; keeping local chat history")
        else:
            cleared = recovery_store.clear_chat_history(self.storage)
            if not cleared.success:
                logger.error(f"Migration succeeded but local chat history could not be cleared: {cleared.error}")

        log_event(
            "migration_completed",
            source=MIGRATION_SOURCE,
            conversations=result.conversations_created,
            messages=result.messages_created,
        )
        return result

    def _retain_skipped(self, records: list) -> bool:
        """Append unmigratable records to the ``chat-history-unmigrated`` key before the blob goes."""
        existing = recovery_store.read(self.storage, recovery_store.UNMIGRATED_KEY)
        if not existing.success or not isinstance(existing.data, (list, type(None))):
            return False
        kept = existing.data or []
        written = recovery_store.write(self.storage, recovery_store.UNMIGRATED_KEY, kept + records)
        if written.success:
            logger.warning(f"Set aside {len(records)} record(s) that could not be migrated")
        return written.success


async def _persist_records(db: Session, owner_id: str, records: list) -> MigrationResult:
    if records:
        # Snapshot first so a failure halfway leaves the original input on record
        conversation_store.create_conversation_backup(db, owner_id, records, MIGRATION_SOURCE)
        db.commit()

    result = await run_migration(records, StoreSink(db, owner_id))
    db.commit()
    return result


async def migrate_local_blob(db: Session, owner_id: str, raw: str) -> MigrationResult:
    """Server-side migration of a raw client blob for ``owner_id``."""
    records = recover_records(raw)
    result = await _persist_records(db, owner_id, records)
    log_event(
        "server_migration",
        user_id=owner_id,
        success=result.success,
        conversations=result.conversations_created,
        messages=result.messages_created,
        errors=len(result.errors),
    )
    return result


async def recover_corrupted_blob(db: Session, owner_id: str, partial_data: Optional[str]) -> dict:
    """Salvage what can be salvaged from a blob the client could not parse.

    When nothing is recoverable, an incident record with the head of the
    raw data is stored as a manual backup for later inspection.
    """
    if partial_data:
        fragments = recovery_store.extract_conversation_fragments(partial_data)
        if fragments:
            result = await _persist_records(db, owner_id, fragments)
            if result.success:
                log_event("corruption_recovered", user_id=owner_id, conversations=result.conversations_created)
                return {
                    "success": True,
                    "message": (
                        f"Recovered {result.conversations_created} conversations and "
                        f"{result.messages_created} messages from corrupted data"
                    ),
                }

    conversation_store.create_conversation_backup(
        db,
        owner_id,
        {
            "corruption": True,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "partialData": partial_data[:INCIDENT_PREVIEW_CHARS] if partial_data else None,
        },
        "manual",
    )
    db.commit()
    log_event("corruption_unrecoverable", user_id=owner_id)
    return {
        "success": False,
        "message": (
            "Local chat history was corrupted and could not be recovered. "
            "A record of the incident has been saved."
        ),
    }

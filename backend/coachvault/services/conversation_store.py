"""Durable conversation storage: conversations, messages, and per-user backups.

Functions flush but never commit; the router or service driving a request
owns the transaction. ``delete_conversation`` is the physical-delete
primitive and is only called from ``data_protection``.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from coachvault.errors import NotFoundError
from coachvault.models import Conversation, ConversationBackup, Message, User
from coachvault.services.activity_log import log_activity

logger = logging.getLogger(__name__)

MODES = ("personal", "team")
ROLES = ("user", "ai")
BACKUP_SOURCES = ("localStorage", "manual", "automatic")

_ROLE_ALIASES = {"assistant": "ai"}


def normalize_role(role: Optional[str]) -> Optional[str]:
    if role is None:
        return None
    role = role.strip().lower()
    return _ROLE_ALIASES.get(role, role)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _conversation_query(db: Session, conversation_id: str, owner_id: Optional[str]):
    q = db.query(Conversation).filter(Conversation.id == conversation_id)
    if owner_id is not None:
        q = q.filter(Conversation.owner_id == owner_id)
    return q


def get_conversation(db: Session, conversation_id: str, owner_id: Optional[str] = None) -> Conversation:
    conversation = _conversation_query(db, conversation_id, owner_id).first()
    if conversation is None:
        raise NotFoundError(f"Conversation {conversation_id} not found")
    return conversation


def create_conversation(
    db: Session,
    owner_id: str,
    title: str,
    mode: str = "personal",
    metadata: Optional[dict] = None,
) -> Conversation:
    if mode not in MODES:
        raise ValueError(f"mode must be one of {', '.join(MODES)}")
    if not title or not title.strip():
        raise ValueError("title is required")

    owner = db.get(User, owner_id)
    if owner is None or owner.is_deleted:
        raise NotFoundError(f"User {owner_id} not found")

    now = datetime.now(timezone.utc)
    conversation = Conversation(
        owner_id=owner_id,
        title=title.strip(),
        mode=mode,
        last_activity=now,
        last_sequence=0,
        archived=False,
        metadata_json=metadata,
        created_at=now,
        updated_at=now,
    )
    db.add(conversation)
    db.flush()
    return conversation


def update_conversation(
    db: Session,
    conversation_id: str,
    owner_id: str,
    title: Optional[str] = None,
    mode: Optional[str] = None,
    metadata: Optional[dict] = None,
    last_activity: Optional[datetime] = None,
) -> Conversation:
    conversation = get_conversation(db, conversation_id, owner_id)
    if title is not None:
        if not title.strip():
            raise ValueError("title must not be empty")
        conversation.title = title.strip()
    if mode is not None:
        if mode not in MODES:
            raise ValueError(f"mode must be one of {', '.join(MODES)}")
        conversation.mode = mode
    if metadata is not None:
        conversation.metadata_json = metadata
    if last_activity is not None:
        conversation.last_activity = last_activity
    db.flush()
    return conversation


def append_message(
    db: Session,
    conversation_id: str,
    role: str,
    content: str,
    metadata: Optional[dict] = None,
    owner_id: Optional[str] = None,
) -> Message:
    """Add a message with the conversation's next sequence number.

    The sequence is claimed with a single UPDATE that also bumps
    ``last_activity``, so concurrent appends to one conversation serialize
    on the row and never reuse a number.
    """
    role = normalize_role(role)
    if role not in ROLES:
        raise ValueError(f"role must be one of {', '.join(ROLES)}")
    if content is None or not str(content).strip():
        raise ValueError("content is required")

    now = datetime.now(timezone.utc)
    stmt = (
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values(
            last_sequence=Conversation.last_sequence + 1,
            last_activity=now,
            updated_at=now,
        )
        .execution_options(synchronize_session="fetch")
    )
    if owner_id is not None:
        stmt = stmt.where(Conversation.owner_id == owner_id)

    if db.execute(stmt).rowcount == 0:
        raise NotFoundError(f"Conversation {conversation_id} not found")

    sequence = (
        db.query(Conversation.last_sequence)
        .filter(Conversation.id == conversation_id)
        .scalar()
    )

    message = Message(
        conversation_id=conversation_id,
        role=role,
        content=str(content),
        sequence=sequence,
        metadata_json=metadata,
        created_at=now,
    )
    db.add(message)
    db.flush()
    return message


def get_messages(db: Session, conversation_id: str) -> list[Message]:
    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.sequence.asc())
        .all()
    )


def archive_conversation(db: Session, conversation_id: str, owner_id: Optional[str] = None) -> Conversation:
    conversation = get_conversation(db, conversation_id, owner_id)
    conversation.archived = True
    db.flush()
    return conversation


def list_conversations(db: Session, owner_id: str, include_archived: bool = False) -> list[Conversation]:
    q = db.query(Conversation).filter(Conversation.owner_id == owner_id)
    if not include_archived:
        q = q.filter(Conversation.archived == False)  # noqa: E712
    return q.order_by(Conversation.last_activity.desc(), Conversation.id.asc()).all()


def delete_conversation(db: Session, conversation_id: str) -> None:
    """Physically remove a conversation and its messages. Guarded by data_protection."""
    conversation = get_conversation(db, conversation_id)
    db.delete(conversation)
    db.flush()


def import_conversation(
    db: Session,
    owner_id: str,
    title: str,
    mode: str = "personal",
    messages: Iterable[dict] = (),
    metadata: Optional[dict] = None,
    last_activity: Optional[datetime] = None,
) -> tuple[Conversation, int]:
    """Create a conversation and append ``messages`` in their given order.

    Each message is ``{"role" or "type", "content", "metadata"?}``.
    Returns the conversation and the number of messages written.
    """
    conversation = create_conversation(db, owner_id, title, mode, metadata)
    written = 0
    for msg in messages:
        append_message(
            db,
            conversation.id,
            role=msg.get("role") or msg.get("type"),
            content=msg.get("content"),
            metadata=msg.get("metadata"),
        )
        written += 1
    if last_activity is not None:
        conversation.last_activity = last_activity
        db.flush()
    return conversation, written


def export_conversations(db: Session, owner_id: str) -> dict[str, list[dict[str, Any]]]:
    """Every conversation of ``owner_id``, archived included, in the client blob shape."""
    exported = []
    for conversation in list_conversations(db, owner_id, include_archived=True):
        exported.append({
            "id": conversation.id,
            "title": conversation.title,
            "mode": conversation.mode,
            "archived": bool(conversation.archived),
            "lastActivity": _isoformat(conversation.last_activity),
            "messages": [
                {
                    "id": m.id,
                    "content": m.content,
                    "type": m.role,
                    "sequence": m.sequence,
                    "timestamp": _isoformat(m.created_at),
                }
                for m in get_messages(db, conversation.id)
            ],
        })
    return {"conversations": exported}


def archive_old_conversations(
    db: Session,
    owner_id: str,
    days_old: int = 90,
    now: Optional[datetime] = None,
) -> int:
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days_old)
    stale = (
        db.query(Conversation)
        .filter(
            Conversation.owner_id == owner_id,
            Conversation.archived == False,  # noqa: E712
            Conversation.last_activity < cutoff,
        )
        .all()
    )
    for conversation in stale:
        conversation.archived = True
    db.flush()
    if stale:
        logger.info(f"Archived {len(stale)} conversations older than {days_old} days for {owner_id}")
    return len(stale)


# --- Per-user conversation backups ---


def create_conversation_backup(db: Session, user_id: str, payload: Any, source: str) -> ConversationBackup:
    if source not in BACKUP_SOURCES:
        raise ValueError(f"source must be one of {', '.join(BACKUP_SOURCES)}")
    backup = ConversationBackup(
        user_id=user_id,
        source=source,
        payload=payload,
        created_at=datetime.now(timezone.utc),
    )
    db.add(backup)
    db.flush()
    return backup


def list_conversation_backups(db: Session, user_id: str) -> list[ConversationBackup]:
    return (
        db.query(ConversationBackup)
        .filter(ConversationBackup.user_id == user_id)
        .order_by(ConversationBackup.created_at.desc(), ConversationBackup.id.asc())
        .all()
    )


def _backup_records(payload: Any) -> list[dict]:
    if isinstance(payload, dict):
        payload = payload.get("conversations", [])
    if not isinstance(payload, list):
        return []
    return [r for r in payload if isinstance(r, dict)]


def restore_conversation_backup(db: Session, backup_id: str, user_id: str) -> list[Conversation]:
    """Re-create the conversations recorded in a backup. The backup row itself is left untouched."""
    backup = (
        db.query(ConversationBackup)
        .filter(ConversationBackup.id == backup_id, ConversationBackup.user_id == user_id)
        .first()
    )
    if backup is None:
        raise NotFoundError(f"Backup {backup_id} not found")

    restored = []
    for record in _backup_records(backup.payload):
        title = record.get("title")
        messages = record.get("messages")
        if not isinstance(title, str) or not title.strip() or not isinstance(messages, list):
            continue
        usable = [
            m for m in messages
            if isinstance(m, dict) and m.get("content") and normalize_role(m.get("role") or m.get("type")) in ROLES
        ]
        mode = record.get("mode") if record.get("mode") in MODES else "personal"
        conversation, _ = import_conversation(
            db,
            user_id,
            title,
            mode,
            usable,
            metadata={"restoredFrom": backup.id, "originalId": record.get("id")},
        )
        restored.append(conversation)

    log_activity(
        db,
        "backup_restored",
        f"Restored {len(restored)} conversations from backup {backup.id}",
        {"backup_id": backup.id, "user_id": user_id, "restored": len(restored)},
        commit=False,
    )
    return restored

"""Deletion guard, dangerous-operation policy, and orphan audits.

Users are never removed. A user who owns data can only be soft-deleted, and
only when the caller explicitly asks to preserve it; a user who owns nothing
is refused as well, because there is no hard-delete path to take. The count,
the decision, and the soft-delete write run in one transaction with the user
row locked, so a conversation created mid-decision cannot slip past.

Orphan scans report child rows whose parent row is gone. The number of
distinct missing parents is a lower bound on past deletions: a deleted user
who owned nothing leaves no trace.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, null, select
from sqlalchemy.orm import Session

from coachvault.config import settings
from coachvault.database import Base
from coachvault.errors import DangerousOperationBlocked, OrphanedRecord
from coachvault.models import Conversation, Message, TeamMember, User
from coachvault.services import conversation_store
from coachvault.services.activity_log import log_activity

logger = logging.getLogger(__name__)

DANGEROUS_OPERATIONS = frozenset({
    "bulk_delete_users",
    "cascade_delete",
    "cleanup_all_users",
    "reset_database",
})

# (child table, foreign key column) pairs that point at users.id
OWNER_REFERENCES = (
    ("team_members", "manager_id"),
    ("conversations", "owner_id"),
    ("conversation_backups", "user_id"),
)


@dataclass
class DataImportance:
    has_important_data: bool
    data_types: list[str] = field(default_factory=list)
    counts: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class DeletionOutcome:
    success: bool
    message: str
    importance: Optional[DataImportance] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "importance": self.importance.to_dict() if self.importance else None,
        }


@dataclass
class ConversationDeletion:
    conversation_id: str
    action: str  # archived/deleted
    backup_id: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class DeletedOwnerEstimate:
    lower_bound: int
    owner_ids: list[str] = field(default_factory=list)
    orphans_by_table: dict[str, list[OrphanedRecord]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "lower_bound": self.lower_bound,
            "owner_ids": self.owner_ids,
            "orphans_by_table": {
                table: [o.to_dict() for o in orphans] for table, orphans in self.orphans_by_table.items()
            },
        }


def assess_importance(db: Session, owner_id: str) -> DataImportance:
    """Count what ``owner_id`` owns in one statement, so all counts share a snapshot."""
    team_members = (
        select(func.count()).select_from(TeamMember)
        .where(TeamMember.manager_id == owner_id)
        .scalar_subquery()
    )
    conversations = (
        select(func.count()).select_from(Conversation)
        .where(Conversation.owner_id == owner_id)
        .scalar_subquery()
    )
    messages = (
        select(func.count()).select_from(Message)
        .join(Conversation, Message.conversation_id == Conversation.id)
        .where(Conversation.owner_id == owner_id)
        .scalar_subquery()
    )
    row = db.execute(select(
        team_members.label("team_members"),
        conversations.label("conversations"),
        messages.label("messages"),
    )).one()

    counts = {
        "team_members": row.team_members,
        "conversations": row.conversations,
        "messages": row.messages,
    }
    labels = {"team_members": "team members", "conversations": "conversations", "messages": "messages"}
    data_types = [f"{n} {labels[key]}" for key, n in counts.items() if n > 0]
    return DataImportance(has_important_data=bool(data_types), data_types=data_types, counts=counts)


def _record(db: Session, event_type: str, summary: str, detail: dict) -> None:
    log_activity(db, event_type, summary, detail, commit=False)
    db.commit()


def safe_delete(
    db: Session,
    owner_id: str,
    preserve_data: bool = False,
    reason: Optional[str] = None,
    actor_id: Optional[str] = None,
) -> DeletionOutcome:
    user = db.query(User).filter(User.id == owner_id).with_for_update().first()
    detail = {"user_id": owner_id, "actor_id": actor_id, "preserve_data": preserve_data, "reason": reason}

    if user is None:
        _record(db, "delete_refused", f"Deletion refused: user {owner_id} not found", detail)
        return DeletionOutcome(success=False, message="User not found")

    importance = assess_importance(db, owner_id)
    detail["counts"] = importance.counts

    if user.is_deleted:
        _record(db, "delete_noop", f"User {owner_id} was already soft-deleted", detail)
        return DeletionOutcome(success=True, message="User already soft-deleted", importance=importance)

    if importance.has_important_data and not preserve_data:
        message = (
            "Cannot delete user with important data: "
            f"{', '.join(importance.data_types)}. Set preserve_data to soft-delete instead."
        )
        logger.warning(f"Blocked deletion of user {owner_id}: {', '.join(importance.data_types)}")
        _record(db, "delete_blocked", f"Blocked deletion of user {owner_id}", detail)
        return DeletionOutcome(success=False, message=message, importance=importance)

    if not preserve_data:
        _record(db, "delete_refused", f"Hard deletion of user {owner_id} refused", detail)
        return DeletionOutcome(
            success=False,
            message="Hard deletion disabled. Set preserve_data to soft-delete this user.",
            importance=importance,
        )

    user.deleted_at = datetime.now(timezone.utc)
    user.deleted_reason = reason or "Soft-deleted with data preserved"
    user.deleted_by = actor_id
    logger.info(f"Soft-deleted user {owner_id} (actor={actor_id})")
    _record(db, "soft_delete", f"Soft-deleted user {owner_id}; all data preserved", detail)
    return DeletionOutcome(success=True, message="User soft-deleted; all data preserved", importance=importance)


def safe_delete_conversation(db: Session, conversation_id: str, owner_id: str) -> ConversationDeletion:
    """Delete as much of a conversation as is safe.

    A conversation with messages is archived. An empty one is copied into an
    automatic backup first and then physically removed.
    """
    conversation = conversation_store.get_conversation(db, conversation_id, owner_id)
    message_count = (
        db.query(func.count(Message.id))
        .filter(Message.conversation_id == conversation.id)
        .scalar()
    )

    if message_count:
        conversation_store.archive_conversation(db, conversation.id, owner_id)
        _record(
            db,
            "conversation_archived",
            f"Archived conversation {conversation.id} instead of deleting {message_count} messages",
            {"conversation_id": conversation.id, "user_id": owner_id, "messages": message_count},
        )
        return ConversationDeletion(conversation_id=conversation.id, action="archived")

    snapshot = conversation_store.create_conversation_backup(
        db,
        owner_id,
        {
            "reason": "empty_conversation_deleted",
            "conversations": [{
                "id": conversation.id,
                "title": conversation.title,
                "mode": conversation.mode,
                "archived": bool(conversation.archived),
                "lastActivity": conversation.last_activity.isoformat() if conversation.last_activity else None,
                "messages": [],
            }],
        },
        "automatic",
    )
    conversation_store.delete_conversation(db, conversation.id)
    _record(
        db,
        "conversation_deleted",
        f"Deleted empty conversation {conversation_id}",
        {"conversation_id": conversation_id, "user_id": owner_id, "backup_id": snapshot.id},
    )
    return ConversationDeletion(conversation_id=conversation_id, action="deleted", backup_id=snapshot.id)


def is_operation_allowed(operation: str, environment: Optional[str] = None) -> bool:
    environment = environment or settings.environment
    if environment == "production" and operation in DANGEROUS_OPERATIONS:
        logger.warning(f"Blocked dangerous operation in production: {operation}")
        return False
    return True


def require_operation_allowed(operation: str, environment: Optional[str] = None) -> None:
    if not is_operation_allowed(operation, environment):
        raise DangerousOperationBlocked(f"Operation '{operation}' is blocked in production")


def _table(name: str):
    try:
        return Base.metadata.tables[name]
    except KeyError:
        raise ValueError(f"Unknown table: {name}") from None


def find_orphans(
    db: Session,
    child_table: str,
    parent_table: str,
    fk: str,
    parent_key: str = "id",
    created_column: str = "created_at",
) -> list[OrphanedRecord]:
    """Child rows whose non-null ``fk`` matches no parent row."""
    child = _table(child_table)
    parent = _table(parent_table)
    if fk not in child.c or parent_key not in parent.c:
        raise ValueError(f"Unknown column for {child_table}.{fk} -> {parent_table}.{parent_key}")

    child_pk = list(child.primary_key.columns)[0]
    fk_col = child.c[fk]
    parent_col = parent.c[parent_key]
    created = child.c[created_column] if created_column in child.c else null()

    q = (
        select(child_pk.label("row_id"), fk_col.label("fk_value"), created.label("created_at"))
        .select_from(child.outerjoin(parent, fk_col == parent_col))
        .where(fk_col.is_not(None), parent_col.is_(None))
        .order_by(child_pk)
    )
    return [
        OrphanedRecord(child_table, row.row_id, row.fk_value, row.created_at)
        for row in db.execute(q)
    ]


def estimate_deleted_owners(db: Session) -> DeletedOwnerEstimate:
    """Distinct missing owners referenced by surviving rows. A lower bound, never exact."""
    orphans_by_table = {}
    owner_ids: set[str] = set()
    for child_table, fk in OWNER_REFERENCES:
        orphans = find_orphans(db, child_table, "users", fk)
        orphans_by_table[child_table] = orphans
        owner_ids.update(str(o.fk_value) for o in orphans)

    if owner_ids:
        logger.warning(f"Found rows referencing at least {len(owner_ids)} missing users")
    return DeletedOwnerEstimate(
        lower_bound=len(owner_ids),
        owner_ids=sorted(owner_ids),
        orphans_by_table=orphans_by_table,
    )

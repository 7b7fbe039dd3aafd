import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, Text, DateTime, ForeignKey, JSON, Boolean, UniqueConstraint
)
from sqlalchemy.orm import relationship

from coachvault.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    email = Column(String(255), unique=True, nullable=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, index=True)

    # Soft delete: the row and everything it owns stays in place
    deleted_at = Column(DateTime, nullable=True)
    deleted_reason = Column(Text, nullable=True)
    deleted_by = Column(String(64), nullable=True)

    team_members = relationship("TeamMember", back_populates="manager")

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class TeamMember(Base):
    __tablename__ = "team_members"

    id = Column(String(36), primary_key=True, default=_uuid)
    manager_id = Column(String(64), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    strengths = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, index=True)

    manager = relationship("User", back_populates="team_members")


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=_uuid)
    owner_id = Column(String(64), nullable=False, index=True)  # no FK: orphans must stay detectable
    title = Column(Text, nullable=False)
    mode = Column(String(20), nullable=False, default="personal")  # personal/team
    last_activity = Column(DateTime, default=_utcnow, index=True)
    last_sequence = Column(Integer, nullable=False, default=0, server_default="0")
    archived = Column(Boolean, nullable=False, default=False, server_default="0")
    metadata_json = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, index=True)

    messages = relationship(
        "Message", back_populates="conversation", order_by="Message.sequence", cascade="all, delete-orphan"
    )


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("conversation_id", "sequence", name="uq_messages_conversation_sequence"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    conversation_id = Column(
        String(36), ForeignKey("conversations.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    role = Column(String(10), nullable=False)  # user/ai
    content = Column(Text, nullable=False)
    sequence = Column(Integer, nullable=False)
    metadata_json = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=_utcnow, index=True)

    conversation = relationship("Conversation", back_populates="messages")


class ConversationBackup(Base):
    """Immutable point-in-time copy of a user's conversations. Never updated."""

    __tablename__ = "conversation_backups"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    source = Column(String(20), nullable=False)  # localStorage/manual/automatic
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=_utcnow, index=True)


class ActivityLog(Base):
    __tablename__ = "activity_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(50), nullable=False, index=True)  # delete_blocked, soft_delete, backup_restored, etc.
    summary = Column(Text, nullable=False)
    detail_json = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=_utcnow, index=True)

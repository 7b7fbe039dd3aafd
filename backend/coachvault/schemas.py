from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class ConversationCreateIn(CamelModel):
    title: str = Field(min_length=1)
    mode: str = "personal"
    metadata: Optional[dict[str, Any]] = None


class ConversationUpdateIn(CamelModel):
    title: Optional[str] = None
    mode: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class MessageIn(CamelModel):
    role: Optional[str] = None
    type: Optional[str] = None  # client-local blobs call the role "type"
    content: str = Field(min_length=1)
    metadata: Optional[dict[str, Any]] = None

    @property
    def resolved_role(self) -> Optional[str]:
        return self.role or self.type


class ImportConversationIn(CamelModel):
    title: str = Field(min_length=1)
    mode: str = "personal"
    messages: list[MessageIn] = []
    metadata: Optional[dict[str, Any]] = None
    last_activity: Optional[datetime] = None


class MigrateIn(CamelModel):
    local_storage_data: str


class RecoverIn(CamelModel):
    partial_data: Optional[str] = None


class BackupCreateIn(CamelModel):
    source: str = "manual"


class MessageOut(CamelModel):
    id: str
    conversation_id: str
    role: str
    content: str
    sequence: int
    metadata: Optional[dict[str, Any]] = Field(default=None, validation_alias="metadata_json")
    created_at: Optional[datetime] = None


class ConversationOut(CamelModel):
    id: str
    owner_id: str
    title: str
    mode: str
    archived: bool
    last_activity: Optional[datetime] = None
    last_sequence: int = 0
    metadata: Optional[dict[str, Any]] = Field(default=None, validation_alias="metadata_json")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ConversationDetailOut(ConversationOut):
    messages: list[MessageOut] = []


class BackupOut(CamelModel):
    id: str
    user_id: str
    source: str
    created_at: Optional[datetime] = None


class ActivityOut(BaseModel):
    id: int
    event_type: str
    summary: str
    detail_json: Optional[dict[str, Any]] = None
    created_at: Optional[datetime] = None
    model_config = {"from_attributes": True}

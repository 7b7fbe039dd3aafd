"""Conversation, message, migration and per-user backup endpoints."""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from coachvault.database import get_db
from coachvault.deps import current_user_id
from coachvault.schemas import (
    BackupCreateIn,
    BackupOut,
    ConversationCreateIn,
    ConversationDetailOut,
    ConversationOut,
    ConversationUpdateIn,
    ImportConversationIn,
    MessageIn,
    MessageOut,
    MigrateIn,
    RecoverIn,
)
from coachvault.services import conversation_store, data_protection, migration

router = APIRouter(prefix="/api/conversations", tags=["conversations"])


def _dump(schema, obj) -> dict:
    return schema.model_validate(obj).model_dump(mode="json", by_alias=True)


@router.get("")
def list_conversations(
    include_archived: bool = Query(False, alias="includeArchived"),
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    conversations = conversation_store.list_conversations(db, user_id, include_archived=include_archived)
    return {"data": [_dump(ConversationOut, c) for c in conversations]}


@router.post("", status_code=201)
def create_conversation(
    body: ConversationCreateIn,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    conversation = conversation_store.create_conversation(db, user_id, body.title, body.mode, body.metadata)
    db.commit()
    return {"data": _dump(ConversationOut, conversation)}


# Fixed paths are declared before /{conversation_id} so they are matched first


@router.get("/export")
def export_conversations(user_id: str = Depends(current_user_id), db: Session = Depends(get_db)):
    return {"data": conversation_store.export_conversations(db, user_id)}


@router.get("/backups")
def list_backups(user_id: str = Depends(current_user_id), db: Session = Depends(get_db)):
    backups = conversation_store.list_conversation_backups(db, user_id)
    return {"data": [_dump(BackupOut, b) for b in backups]}


@router.post("/backups", status_code=201)
def create_backup(
    body: BackupCreateIn | None = None,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    source = body.source if body else "manual"
    payload = conversation_store.export_conversations(db, user_id)
    backup = conversation_store.create_conversation_backup(db, user_id, payload, source)
    db.commit()
    return {"data": _dump(BackupOut, backup)}


@router.post("/restore/{backup_id}")
def restore_backup(backup_id: str, user_id: str = Depends(current_user_id), db: Session = Depends(get_db)):
    restored = conversation_store.restore_conversation_backup(db, backup_id, user_id)
    db.commit()
    return {
        "data": {
            "restored": len(restored),
            "conversations": [_dump(ConversationOut, c) for c in restored],
        }
    }


@router.post("/import", status_code=201)
async def import_conversation(
    body: ImportConversationIn,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    sink = migration.StoreSink(db, user_id)
    written = await sink.import_conversation(
        title=body.title,
        mode=body.mode,
        messages=[
            {"role": m.resolved_role, "content": m.content, "metadata": m.metadata}
            for m in body.messages
        ],
        metadata=body.metadata,
        last_activity=body.last_activity,
    )
    db.commit()
    if written is None:
        return {"data": {"duplicate": True, "messagesCreated": 0}}
    return {"data": {"duplicate": False, "messagesCreated": written}}


@router.post("/migrate")
async def migrate_local_storage(
    body: MigrateIn,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    result = await migration.migrate_local_blob(db, user_id, body.local_storage_data)
    return {"data": result.to_dict()}


@router.post("/recover")
async def recover_local_storage(
    body: RecoverIn,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return {"data": await migration.recover_corrupted_blob(db, user_id, body.partial_data)}


@router.get("/{conversation_id}")
def get_conversation(conversation_id: str, user_id: str = Depends(current_user_id), db: Session = Depends(get_db)):
    conversation = conversation_store.get_conversation(db, conversation_id, user_id)
    return {"data": _dump(ConversationDetailOut, conversation)}


@router.put("/{conversation_id}")
def update_conversation(
    conversation_id: str,
    body: ConversationUpdateIn,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    conversation = conversation_store.update_conversation(
        db, conversation_id, user_id, title=body.title, mode=body.mode, metadata=body.metadata
    )
    db.commit()
    return {"data": _dump(ConversationOut, conversation)}


@router.delete("/{conversation_id}")
def delete_conversation(conversation_id: str, user_id: str = Depends(current_user_id), db: Session = Depends(get_db)):
    outcome = data_protection.safe_delete_conversation(db, conversation_id, user_id)
    return {"data": outcome.to_dict()}


@router.post("/{conversation_id}/archive")
def archive_conversation(conversation_id: str, user_id: str = Depends(current_user_id), db: Session = Depends(get_db)):
    conversation = conversation_store.archive_conversation(db, conversation_id, user_id)
    db.commit()
    return {"data": _dump(ConversationOut, conversation)}


@router.get("/{conversation_id}/messages")
def list_messages(conversation_id: str, user_id: str = Depends(current_user_id), db: Session = Depends(get_db)):
    conversation = conversation_store.get_conversation(db, conversation_id, user_id)
    messages = conversation_store.get_messages(db, conversation.id)
    return {"data": [_dump(MessageOut, m) for m in messages]}


@router.post("/{conversation_id}/messages", status_code=201)
def append_message(
    conversation_id: str,
    body: MessageIn,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    if not body.resolved_role:
        raise HTTPException(400, "role is required")
    message = conversation_store.append_message(
        db, conversation_id, body.resolved_role, body.content, body.metadata, owner_id=user_id
    )
    db.commit()
    return {"data": _dump(MessageOut, message)}

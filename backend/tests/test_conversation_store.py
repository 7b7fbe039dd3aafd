"""Tests for durable conversation storage and per-user backups."""

from datetime import datetime, timedelta, timezone

import pytest

from coachvault.errors import NotFoundError
from coachvault.models import ActivityLog, ConversationBackup, Message
from coachvault.services import conversation_store as store
from tests.conftest import count_commits, seed_user


class TestConversations:
    def test_create_and_get(self, db_session, user):
        conv = store.create_conversation(db_session, user.id, "  Quarterly review  ", "team", {"tag": "q3"})

        fetched = store.get_conversation(db_session, conv.id, user.id)

        assert fetched.title == "Quarterly review"
        assert fetched.mode == "team"
        assert fetched.metadata_json == {"tag": "q3"}
        assert fetched.last_sequence == 0
        assert fetched.archived is False

    def test_get_missing_raises_not_found(self, db_session, user):
        with pytest.raises(NotFoundError):
            store.get_conversation(db_session, "does-not-exist")

    def test_other_owner_cannot_see_conversation(self, db_session, user):
        other = seed_user(db_session, "user-2")
        conv = store.create_conversation(db_session, user.id, "Private")
        with pytest.raises(NotFoundError):
            store.get_conversation(db_session, conv.id, other.id)

    def test_create_for_unknown_owner_fails(self, db_session):
        with pytest.raises(NotFoundError):
            store.create_conversation(db_session, "ghost", "Hello")

    def test_create_for_soft_deleted_owner_fails(self, db_session):
        seed_user(db_session, "gone", deleted_at=datetime.now(timezone.utc))
        with pytest.raises(NotFoundError):
            store.create_conversation(db_session, "gone", "Hello")

    @pytest.mark.parametrize("title,mode", [("", "personal"), ("   ", "personal"), ("OK", "group")])
    def test_create_rejects_bad_input(self, db_session, user, title, mode):
        with pytest.raises(ValueError):
            store.create_conversation(db_session, user.id, title, mode)

    def test_update_changes_only_given_fields(self, db_session, user):
        conv = store.create_conversation(db_session, user.id, "Old", metadata={"a": 1})

        store.update_conversation(db_session, conv.id, user.id, title="New")

        assert conv.title == "New"
        assert conv.mode == "personal"
        assert conv.metadata_json == {"a": 1}

    def test_store_functions_do_not_commit(self, db_session, user):
        with count_commits(db_session) as commits:
            conv = store.create_conversation(db_session, user.id, "T")
            store.append_message(db_session, conv.id, "user", "hi")
            store.archive_conversation(db_session, conv.id)
        assert commits["count"] == 0


class TestMessages:
    def test_sequences_are_dense_and_ordered(self, db_session, user):
        conv = store.create_conversation(db_session, user.id, "T")

        for i, role in enumerate(["user", "ai", "user"]):
            store.append_message(db_session, conv.id, role, f"msg {i}")

        messages = store.get_messages(db_session, conv.id)
        assert [m.sequence for m in messages] == [1, 2, 3]
        assert [m.content for m in messages] == ["msg 0", "msg 1", "msg 2"]

    def test_interleaved_appends_keep_per_conversation_sequences(self, file_session_factory):
        with file_session_factory() as setup:
            seed_user(setup, "user-1")
            conv_a = store.create_conversation(setup, "user-1", "A").id
            conv_b = store.create_conversation(setup, "user-1", "B").id
            setup.commit()

        first = file_session_factory()
        second = file_session_factory()
        try:
            for session, conv_id in [(first, conv_a), (second, conv_a), (second, conv_b), (first, conv_a)]:
                store.append_message(session, conv_id, "user", "hello")
                session.commit()
        finally:
            first.close()
            second.close()

        with file_session_factory() as check:
            seq_a = [m.sequence for m in store.get_messages(check, conv_a)]
            seq_b = [m.sequence for m in store.get_messages(check, conv_b)]
        assert seq_a == [1, 2, 3]
        assert seq_b == [1]

    def test_append_bumps_last_activity(self, db_session, user):
        conv = store.create_conversation(db_session, user.id, "T")
        old = datetime(2020, 1, 1)
        conv.last_activity = old
        db_session.flush()

        store.append_message(db_session, conv.id, "ai", "reply")

        db_session.refresh(conv)
        assert conv.last_activity > old
        assert conv.last_sequence == 1

    def test_assistant_role_is_stored_as_ai(self, db_session, user):
        conv = store.create_conversation(db_session, user.id, "T")
        msg = store.append_message(db_session, conv.id, "assistant", "hi")
        assert msg.role == "ai"

    def test_append_to_missing_conversation(self, db_session, user):
        with pytest.raises(NotFoundError):
            store.append_message(db_session, "missing", "user", "hi")

    def test_append_checks_owner(self, db_session, user):
        conv = store.create_conversation(db_session, user.id, "T")
        with pytest.raises(NotFoundError):
            store.append_message(db_session, conv.id, "user", "hi", owner_id="someone-else")

    @pytest.mark.parametrize("role,content", [("robot", "hi"), ("user", ""), ("user", "   ")])
    def test_append_rejects_bad_input(self, db_session, user, role, content):
        conv = store.create_conversation(db_session, user.id, "T")
        with pytest.raises(ValueError):
            store.append_message(db_session, conv.id, role, content)


class TestListing:
    def test_ordered_by_activity_then_id(self, db_session, user):
        same = datetime(2026, 3, 1, 12, 0)
        convs = [store.create_conversation(db_session, user.id, f"T{i}") for i in range(3)]
        convs[0].last_activity = datetime(2026, 3, 2)
        convs[1].last_activity = same
        convs[2].last_activity = same
        db_session.flush()

        listed = store.list_conversations(db_session, user.id)

        tied = sorted([convs[1].id, convs[2].id])
        assert [c.id for c in listed] == [convs[0].id] + tied

    def test_archived_hidden_unless_requested(self, db_session, user):
        kept = store.create_conversation(db_session, user.id, "Active")
        archived = store.create_conversation(db_session, user.id, "Old")
        store.archive_conversation(db_session, archived.id)

        assert [c.id for c in store.list_conversations(db_session, user.id)] == [kept.id]
        assert len(store.list_conversations(db_session, user.id, include_archived=True)) == 2

    def test_archive_old_conversations(self, db_session, user):
        now = datetime(2026, 6, 1)
        stale = store.create_conversation(db_session, user.id, "Stale")
        fresh = store.create_conversation(db_session, user.id, "Fresh")
        stale.last_activity = now - timedelta(days=120)
        fresh.last_activity = now - timedelta(days=10)
        db_session.flush()

        archived = store.archive_old_conversations(db_session, user.id, days_old=90, now=now)

        assert archived == 1
        assert stale.archived is True
        assert fresh.archived is False


class TestImportExport:
    def test_import_preserves_message_order(self, db_session, user):
        conv, written = store.import_conversation(
            db_session,
            user.id,
            "Imported",
            messages=[{"type": "user", "content": "q"}, {"role": "ai", "content": "a"}],
            last_activity=datetime(2025, 12, 24),
        )

        assert written == 2
        assert [m.role for m in store.get_messages(db_session, conv.id)] == ["user", "ai"]
        assert conv.last_activity == datetime(2025, 12, 24)

    def test_export_includes_archived(self, db_session, user):
        conv, _ = store.import_conversation(
            db_session, user.id, "One", messages=[{"role": "user", "content": "hello"}]
        )
        store.archive_conversation(db_session, conv.id)

        exported = store.export_conversations(db_session, user.id)

        assert len(exported["conversations"]) == 1
        record = exported["conversations"][0]
        assert record["archived"] is True
        assert record["messages"][0]["type"] == "user"
        assert record["messages"][0]["sequence"] == 1

    def test_delete_removes_messages(self, db_session, user):
        conv, _ = store.import_conversation(
            db_session, user.id, "Doomed", messages=[{"role": "user", "content": "x"}]
        )
        store.delete_conversation(db_session, conv.id)
        assert db_session.query(Message).count() == 0


class TestBackups:
    def test_restore_recreates_conversations_and_leaves_backup_untouched(self, db_session, user):
        payload = {"conversations": [
            {"id": "c1", "title": "Saved", "mode": "team", "messages": [
                {"content": "hello", "type": "user"},
                {"content": "", "type": "ai"},
                {"content": "hi", "type": "assistant"},
            ]},
            {"id": "c2", "title": "", "messages": []},
        ]}
        backup = store.create_conversation_backup(db_session, user.id, payload, "manual")
        db_session.commit()
        created_at = backup.created_at

        restored = store.restore_conversation_backup(db_session, backup.id, user.id)
        db_session.commit()

        assert len(restored) == 1
        assert restored[0].mode == "team"
        assert restored[0].metadata_json == {"restoredFrom": backup.id, "originalId": "c1"}
        assert [m.content for m in store.get_messages(db_session, restored[0].id)] == ["hello", "hi"]

        db_session.expire_all()
        reloaded = db_session.get(ConversationBackup, backup.id)
        assert reloaded.payload == payload
        assert reloaded.created_at == created_at
        assert db_session.query(ActivityLog).filter(ActivityLog.event_type == "backup_restored").count() == 1

    def test_restore_other_users_backup_is_not_found(self, db_session, user):
        seed_user(db_session, "user-2")
        backup = store.create_conversation_backup(db_session, "user-2", [], "manual")
        with pytest.raises(NotFoundError):
            store.restore_conversation_backup(db_session, backup.id, user.id)

    def test_backup_source_is_validated(self, db_session, user):
        with pytest.raises(ValueError):
            store.create_conversation_backup(db_session, user.id, [], "cron")

    def test_list_backups_newest_first(self, db_session, user):
        older = store.create_conversation_backup(db_session, user.id, [], "manual")
        newer = store.create_conversation_backup(db_session, user.id, [], "automatic")
        older.created_at = datetime(2026, 1, 1)
        newer.created_at = datetime(2026, 2, 1)
        db_session.flush()

        assert [b.id for b in store.list_conversation_backups(db_session, user.id)] == [newer.id, older.id]

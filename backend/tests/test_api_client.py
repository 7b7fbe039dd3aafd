"""Tests for the HTTP conversation client used as a migration sink."""

import asyncio
import json

import httpx
import pytest

from coachvault.services.api_client import ApiError, ConversationApiClient
from coachvault.services.migration import MigrationCoordinator
from coachvault.services.recovery_store import CHAT_HISTORY_KEY, MemoryStorage, get_migration_status


def _client(handler, **kwargs):
    transport = httpx.MockTransport(handler)
    http = httpx.AsyncClient(base_url="http://testserver", transport=transport)
    return ConversationApiClient("http://testserver", user_id="user-1", client=http, **kwargs)


def test_import_sends_identity_and_payload():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["user"] = request.headers.get("X-User-Id")
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"data": {"duplicate": False, "messagesCreated": 2}})

    async def run():
        async with _client(handler) as api:
            return await api.import_conversation(
                "Title", "personal", [{"role": "user", "content": "a"}], {"originalId": "c1"}
            )

    assert asyncio.run(run()) == 2
    assert seen["path"] == "/api/conversations/import"
    assert seen["user"] == "user-1"
    assert seen["body"]["metadata"] == {"originalId": "c1"}
    assert seen["body"]["lastActivity"] is None


def test_duplicate_import_returns_none():
    def handler(request):
        return httpx.Response(201, json={"data": {"duplicate": True, "messagesCreated": 0}})

    async def run():
        async with _client(handler) as api:
            return await api.import_conversation("T", "personal", [])

    assert asyncio.run(run()) is None


def test_error_body_becomes_api_error():
    def handler(request):
        return httpx.Response(404, json={"error": {"message": "Backup b1 not found", "code": "not_found"}})

    async def run():
        async with _client(handler) as api:
            await api.restore_backup("b1")

    with pytest.raises(ApiError) as exc_info:
        asyncio.run(run())
    assert exc_info.value.status_code == 404
    assert "Backup b1 not found" in str(exc_info.value)


def test_non_json_error_uses_text():
    def handler(request):
        return httpx.Response(502, text="bad gateway")

    async def run():
        async with _client(handler) as api:
            await api.export_conversations()

    with pytest.raises(ApiError, match="bad gateway"):
        asyncio.run(run())


def test_cookies_are_forwarded():
    seen = {}

    def handler(request):
        seen["cookie"] = request.headers.get("cookie")
        return httpx.Response(200, json={"data": []})

    async def run():
        async with _client(handler, cookies={"session": "abc"}) as api:
            return await api.list_backups()

    assert asyncio.run(run()) == []
    assert "session=abc" in seen["cookie"]


def test_coordinator_migrates_over_http_and_keeps_blob_on_failure():
    records = [
        {"id": "c1", "title": "Fine", "messages": [{"content": "hi", "type": "user"}]},
        {"id": "c2", "title": "Rejected", "messages": [{"content": "hi", "type": "user"}]},
    ]
    storage = MemoryStorage({CHAT_HISTORY_KEY: json.dumps(records)})

    def handler(request):
        body = json.loads(request.content)
        if body["title"] == "Rejected":
            return httpx.Response(500, json={"error": {"message": "database is locked", "code": "internal_error"}})
        return httpx.Response(201, json={"data": {"duplicate": False, "messagesCreated": len(body["messages"])}})

    async def run():
        async with _client(handler) as api:
            return await MigrationCoordinator(storage, api).migrate()

    result = asyncio.run(run())

    assert result.success is False
    assert result.conversations_created == 1
    assert "database is locked" in result.errors[0].message
    assert storage.get(CHAT_HISTORY_KEY) is not None
    assert get_migration_status(storage).completed is False


def test_migrate_blob_posts_raw_history():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"data": {"success": True, "conversationsCreated": 1, "skipped": 0}})

    async def run():
        async with _client(handler) as api:
            return await api.migrate_blob('[{"id": "c1"}]')

    result = asyncio.run(run())

    assert seen["path"] == "/api/conversations/migrate"
    assert seen["body"] == {"localStorageData": '[{"id": "c1"}]'}
    assert result["conversationsCreated"] == 1

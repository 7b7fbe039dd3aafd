"""HTTP client for the conversation API, used by clients that migrate over the network."""

from datetime import datetime
from typing import Any, Optional

import httpx

from coachvault.errors import CoachVaultError

DEFAULT_TIMEOUT = 30.0


class ApiError(CoachVaultError):
    code = "api_error"

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(f"{status_code}: {message}")


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or resp.reason_phrase
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return body["error"].get("message") or resp.reason_phrase
    return resp.text or resp.reason_phrase


class ConversationApiClient:
    """Credentialed JSON client. Non-2xx responses raise ``ApiError`` with the server's message."""

    def __init__(
        self,
        base_url: str,
        user_id: Optional[str] = None,
        cookies: Optional[dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        headers = {"Accept": "application/json"}
        if user_id:
            headers["X-User-Id"] = user_id
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        if cookies:
            self._client.cookies.update(cookies)
        self._headers = headers

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def _request(self, method: str, path: str, json: Any = None) -> Any:
        resp = await self._client.request(method, path, json=json, headers=self._headers)
        if resp.status_code < 200 or resp.status_code >= 300:
            raise ApiError(resp.status_code, _error_message(resp))
        return resp.json().get("data")

    async def import_conversation(
        self,
        title: str,
        mode: str,
        messages: list[dict],
        metadata: Optional[dict] = None,
        last_activity: Optional[datetime] = None,
    ) -> Optional[int]:
        data = await self._request("POST", "/api/conversations/import", json={
            "title": title,
            "mode": mode,
            "messages": messages,
            "metadata": metadata,
            "lastActivity": last_activity.isoformat() if last_activity else None,
        })
        if data.get("duplicate"):
            return None
        return data["messagesCreated"]

    async def migrate_blob(self, raw: str) -> dict:
        return await self._request("POST", "/api/conversations/migrate", json={"localStorageData": raw})

    async def export_conversations(self) -> dict:
        return await self._request("GET", "/api/conversations/export")

    async def list_backups(self) -> list[dict]:
        return await self._request("GET", "/api/conversations/backups")

    async def restore_backup(self, backup_id: str) -> dict:
        return await self._request("POST", f"/api/conversations/restore/{backup_id}")

"""
Mailbox backend transport
Contract the remote providers need from a mailbox gateway, and its HTTP implementation
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import httpx
import structlog

from ..config import BackendSettings
from ..models.sync_models import ItemKind, Mailbox, RemoteFolder
from .filters import ItemFilter

logger = structlog.get_logger(__name__)


class BackendError(Exception):
    """Base mailbox backend error"""
    def __init__(self, message: str, status_code: Optional[int] = None, error_code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class BackendNotFoundError(BackendError):
    """Item or folder does not exist on the backend"""
    def __init__(self, message: str):
        super().__init__(message, status_code=404, error_code="ItemNotFound")


class BackendAuthError(BackendError):
    """Credentials rejected"""
    def __init__(self, message: str, status_code: int = 401):
        super().__init__(message, status_code=status_code, error_code="AuthenticationFailed")


class BackendRateLimitError(BackendError):
    def __init__(self, message: str, retry_after: int = 60):
        super().__init__(message, status_code=429, error_code="ServerBusy")
        self.retry_after = retry_after


class BackendServerError(BackendError):
    """Server error (5xx)"""
    pass


@dataclass
class ItemPage:
    items: List[Dict[str, Any]] = field(default_factory=list)
    more_available: bool = False


class MailboxBackend(Protocol):
    """Operations a remote provider performs against a mailbox"""

    async def list_folders(self, mailbox: Mailbox) -> List[RemoteFolder]: ...

    async def get_folder(self, mailbox: Mailbox, folder_id: str) -> RemoteFolder: ...

    async def find_items(self, mailbox: Mailbox, kind: ItemKind, folder_id: str,
                         item_filter: ItemFilter, offset: int, limit: int) -> ItemPage: ...

    async def get_item(self, mailbox: Mailbox, kind: ItemKind, item_id: str) -> Dict[str, Any]: ...

    async def save_item(self, mailbox: Mailbox, kind: ItemKind, folder_id: Optional[str],
                        payload: Dict[str, Any]) -> Dict[str, Any]: ...

    async def set_local_marker(self, mailbox: Mailbox, kind: ItemKind, item_id: str, local_id: str) -> None: ...


def folder_from_payload(payload: Dict[str, Any]) -> RemoteFolder:
    return RemoteFolder(
        id=payload["id"],
        name=payload.get("displayName", payload.get("name", "")),
        folder_class=payload.get("folderClass"),
        parent_id=payload.get("parentFolderId"),
        is_trash=bool(payload.get("isDeletedItems", False)),
    )


class HttpMailboxBackend:
    """
    JSON-over-HTTP mailbox gateway client

    Certificate verification follows each mailbox's ignore_ssl_errors setting;
    one pooled client is kept per verification mode instead of toggling any
    process-wide flag.
    """

    def __init__(self, settings: Optional[BackendSettings] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings or BackendSettings()
        self._transport = transport
        self._clients: Dict[bool, httpx.AsyncClient] = {}
        self._client_lock = asyncio.Lock()

    async def _get_client(self, verify: bool) -> httpx.AsyncClient:
        if verify not in self._clients:
            async with self._client_lock:
                if verify not in self._clients:
                    self._clients[verify] = httpx.AsyncClient(
                        base_url=self.settings.base_url,
                        limits=httpx.Limits(max_connections=self.settings.max_connections),
                        timeout=httpx.Timeout(self.settings.timeout_seconds, connect=10.0),
                        verify=verify,
                        transport=self._transport,
                        headers={"Accept": "application/json", "User-Agent": "MailboxSync/1.0"},
                    )
                    logger.info("Backend HTTP client created", verify_ssl=verify)
        return self._clients[verify]

    async def close(self) -> None:
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()

    async def _request(self, mailbox: Mailbox, method: str, path: str,
                       json: Optional[Dict[str, Any]] = None,
                       params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        credentials = mailbox.credentials
        client = await self._get_client(verify=not credentials.ignore_ssl_errors)

        headers = {"X-Mailbox-Address": mailbox.sender_email_address}
        auth = None
        if credentials.use_oauth and credentials.access_token:
            headers["Authorization"] = f"Bearer {credentials.access_token}"
        else:
            auth = httpx.BasicAuth(credentials.user_name, credentials.password)

        response = await client.request(method, path, json=json, params=params, headers=headers, auth=auth)
        return self._handle_response(response, path)

    def _handle_response(self, response: httpx.Response, path: str) -> Dict[str, Any]:
        if 200 <= response.status_code < 300:
            if response.status_code == 204 or not response.content:
                return {}
            return response.json()

        detail = response.text or "no details"
        if response.status_code in (404, 410):
            raise BackendNotFoundError(f"Not found: {path}")
        if response.status_code in (401, 403):
            raise BackendAuthError(f"Authentication failed {response.status_code}: {detail}",
                                   status_code=response.status_code)
        if response.status_code == 429:
            raise BackendRateLimitError(
                f"Rate limit exceeded: {path}",
                retry_after=int(response.headers.get("Retry-After", "60"))
            )
        if response.status_code >= 500:
            raise BackendServerError(f"Server error {response.status_code}: {detail}",
                                     status_code=response.status_code)
        raise BackendError(f"Client error {response.status_code}: {detail}",
                           status_code=response.status_code)

    async def list_folders(self, mailbox: Mailbox) -> List[RemoteFolder]:
        data = await self._request(mailbox, "GET", f"/mailboxes/{mailbox.id}/folders")
        return [folder_from_payload(folder) for folder in data.get("value", [])]

    async def get_folder(self, mailbox: Mailbox, folder_id: str) -> RemoteFolder:
        data = await self._request(mailbox, "GET", f"/mailboxes/{mailbox.id}/folders/{folder_id}")
        return folder_from_payload(data)

    async def find_items(self, mailbox: Mailbox, kind: ItemKind, folder_id: str,
                         item_filter: ItemFilter, offset: int, limit: int) -> ItemPage:
        data = await self._request(
            mailbox, "POST", f"/mailboxes/{mailbox.id}/folders/{folder_id}/items/query",
            json={"kind": kind.value, "filter": item_filter.to_query(), "offset": offset, "limit": limit},
        )
        return ItemPage(items=data.get("value", []), more_available=bool(data.get("moreAvailable")))

    async def get_item(self, mailbox: Mailbox, kind: ItemKind, item_id: str) -> Dict[str, Any]:
        return await self._request(
            mailbox, "GET", f"/mailboxes/{mailbox.id}/items/{item_id}", params={"kind": kind.value}
        )

    async def save_item(self, mailbox: Mailbox, kind: ItemKind, folder_id: Optional[str],
                        payload: Dict[str, Any]) -> Dict[str, Any]:
        path = (f"/mailboxes/{mailbox.id}/folders/{folder_id}/items" if folder_id
                else f"/mailboxes/{mailbox.id}/items")
        return await self._request(mailbox, "POST", path, json={"kind": kind.value, "item": payload})

    async def set_local_marker(self, mailbox: Mailbox, kind: ItemKind, item_id: str, local_id: str) -> None:
        await self._request(
            mailbox, "PATCH", f"/mailboxes/{mailbox.id}/items/{item_id}/properties",
            json={"kind": kind.value, "localId": local_id},
        )

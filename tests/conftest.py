"""
Shared fixtures: in-memory database, fakeredis cache and an in-memory mailbox backend
"""

import itertools
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from mailbox_sync.cache import CacheService
from mailbox_sync.config import SyncSettings
from mailbox_sync.database import Database
from mailbox_sync.mailbox.service import MailboxService
from mailbox_sync.models.sync_models import (
    CheckpointPolicy,
    ItemKind,
    Mailbox,
    MailboxCredentials,
    RemoteFolder,
)
from mailbox_sync.providers.backend import BackendNotFoundError, ItemPage, folder_from_payload
from mailbox_sync.providers.filters import ItemFilter
from mailbox_sync.sync.local_store import LocalStoreAdapter
from mailbox_sync.sync.runner import SyncRunner

pytest_plugins = ("pytest_asyncio",)

T0 = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)


class FakeMailboxBackend:
    """In-memory mailbox gateway with folders, paging and local-id markers"""

    def __init__(self):
        self.folders: Dict[str, Dict[str, Any]] = {}
        self.items: Dict[str, Dict[str, Any]] = {}
        self.find_errors: Dict[str, Exception] = {}
        self.get_errors: Dict[str, Exception] = {}
        self.marker_error: Optional[Exception] = None
        self.find_calls: List[Dict[str, Any]] = []
        self.saved: List[Dict[str, Any]] = []
        self._ids = itertools.count(1)

    def add_folder(self, folder_id: str, folder_class: str = "IPF.Note",
                   name: Optional[str] = None, is_trash: bool = False) -> None:
        self.folders[folder_id] = {
            "id": folder_id,
            "displayName": name or folder_id,
            "folderClass": folder_class,
            "isDeletedItems": is_trash,
        }

    def add_item(self, item_id: str, folder_id: str, **payload: Any) -> Dict[str, Any]:
        payload.setdefault("subject", item_id)
        payload.setdefault("lastModifiedDateTime", T0.isoformat())
        payload.update({"id": item_id, "parentFolderId": folder_id})
        self.items[item_id] = payload
        return payload

    async def list_folders(self, mailbox: Mailbox) -> List[RemoteFolder]:
        return [folder_from_payload(folder) for folder in self.folders.values()]

    async def get_folder(self, mailbox: Mailbox, folder_id: str) -> RemoteFolder:
        if folder_id not in self.folders:
            raise BackendNotFoundError(f"Folder {folder_id} not found")
        return folder_from_payload(self.folders[folder_id])

    async def find_items(self, mailbox: Mailbox, kind: ItemKind, folder_id: str,
                         item_filter: ItemFilter, offset: int, limit: int) -> ItemPage:
        self.find_calls.append({"folder_id": folder_id, "offset": offset, "limit": limit})
        if folder_id in self.find_errors:
            raise self.find_errors[folder_id]
        if folder_id not in self.folders:
            raise BackendNotFoundError(f"Folder {folder_id} not found")
        items = sorted(
            (dict(item) for item in self.items.values() if item["parentFolderId"] == folder_id),
            key=lambda item: item["lastModifiedDateTime"],
        )
        page = items[offset:offset + limit]
        return ItemPage(items=page, more_available=offset + limit < len(items))

    async def get_item(self, mailbox: Mailbox, kind: ItemKind, item_id: str) -> Dict[str, Any]:
        if item_id in self.get_errors:
            raise self.get_errors[item_id]
        if item_id not in self.items:
            raise BackendNotFoundError(f"Item {item_id} not found")
        return dict(self.items[item_id])

    async def save_item(self, mailbox: Mailbox, kind: ItemKind, folder_id: Optional[str],
                        payload: Dict[str, Any]) -> Dict[str, Any]:
        item_id = f"saved-{next(self._ids)}"
        saved = self.add_item(item_id, folder_id or "outbox", lastModifiedDateTime=T0.isoformat(), **payload)
        self.saved.append(saved)
        return dict(saved)

    async def set_local_marker(self, mailbox: Mailbox, kind: ItemKind, item_id: str, local_id: str) -> None:
        if self.marker_error is not None:
            raise self.marker_error
        self.items[item_id]["localId"] = local_id


def at(minutes: int) -> str:
    """ISO timestamp minutes after T0"""
    return (T0 + timedelta(minutes=minutes)).isoformat()


@pytest.fixture
async def database():
    """Create test database instance"""
    database = Database("sqlite+aiosqlite:///:memory:")
    await database.initialize()

    yield database
    await database.close()


@pytest.fixture
async def cache_service():
    """Create test cache service backed by fakeredis"""
    import fakeredis.aioredis

    cache = CacheService("redis://fake")
    cache.redis_client = fakeredis.aioredis.FakeRedis(decode_responses=True)

    yield cache
    await cache.close()


@pytest.fixture
def sync_settings():
    return SyncSettings(
        dedup_by_fingerprint=True,
        fingerprint_tolerance_minutes=1440,
        lock_ttl_seconds=900,
        checkpoint_policy=CheckpointPolicy.HOLD,
        default_import_horizon_days=30,
        task_page_size=2,
        email_page_size=2,
    )


@pytest.fixture
def backend():
    backend = FakeMailboxBackend()
    backend.add_folder("inbox", "IPF.Note", "Inbox")
    backend.add_folder("tasks", "IPF.Task", "Tasks")
    backend.add_folder("calendar", "IPF.Appointment", "Calendar")
    backend.add_folder("trash", "IPF.Note", "Deleted Items", is_trash=True)
    return backend


@pytest.fixture
def mailbox_service(database):
    return MailboxService(database)


@pytest.fixture
def local_store(database, sync_settings):
    return LocalStoreAdapter(database, sync_settings)


@pytest.fixture
def make_mailbox():
    def factory(mailbox_id: str = "mbx-1", **overrides: Any) -> Mailbox:
        values = {
            "id": mailbox_id,
            "sender_email_address": f"{mailbox_id}@contoso.com",
            "owner_id": "user-1",
            "owner_user_name": "Alex Wilber",
            "owner_time_zone": "UTC",
            "credentials": MailboxCredentials(
                user_name="alex@contoso.com", password="secret", server_address="mail.contoso.com"
            ),
            "import_from": datetime(2020, 1, 1, tzinfo=timezone.utc),
            "checkpoints": {ItemKind.EMAIL: T0, ItemKind.TASK: T0, ItemKind.EVENT: T0},
        }
        values.update(overrides)
        return Mailbox(**values)
    return factory


@pytest.fixture
async def mailbox(mailbox_service, make_mailbox):
    return await mailbox_service.add_mailbox(make_mailbox())


@pytest.fixture
def runner(mailbox_service, backend, local_store, sync_settings):
    return SyncRunner(mailbox_service, backend, local_store, sync_settings)

"""
Tests for remote providers: enumeration filter, folder scope, paging and payload mapping
"""

import json
from datetime import timedelta

import httpx
import pytest

from mailbox_sync.models.sync_models import ItemKind, LocalRecord, MailboxType, RemoteItem
from mailbox_sync.providers import ExchangeProvider, ImapProvider, create_provider
from mailbox_sync.providers.backend import (
    BackendAuthError,
    BackendNotFoundError,
    BackendRateLimitError,
    BackendServerError,
    HttpMailboxBackend,
)
from mailbox_sync.providers.base import start_of_day
from mailbox_sync.providers.filters import ItemFilter
from conftest import T0, at


async def collect(provider, checkpoint):
    return [result async for result in provider.enumerate_changes(checkpoint)]


class TestItemFilter:
    """Import floor AND (modified after checkpoint OR unmarked)"""

    def item(self, minutes, local_id=None):
        return RemoteItem("r-1", ItemKind.TASK, last_modified=T0 + timedelta(minutes=minutes), local_id=local_id)

    def test_modified_after_checkpoint_passes(self):
        item_filter = ItemFilter(import_floor=T0 - timedelta(days=1), modified_after=T0)
        assert item_filter.matches(self.item(1, local_id="rec-1"))

    def test_unmodified_marked_item_is_skipped(self):
        item_filter = ItemFilter(import_floor=T0 - timedelta(days=1), modified_after=T0)
        assert not item_filter.matches(self.item(-5, local_id="rec-1"))

    def test_unmarked_item_passes_regardless_of_checkpoint(self):
        item_filter = ItemFilter(import_floor=T0 - timedelta(days=1), modified_after=T0)
        assert item_filter.matches(self.item(-5))

    def test_unmarked_clause_off_without_marker_support(self):
        item_filter = ItemFilter(import_floor=T0 - timedelta(days=1), modified_after=T0, include_unmarked=False)
        assert not item_filter.matches(self.item(-5))

    def test_import_floor_always_applies(self):
        item_filter = ItemFilter(import_floor=T0, modified_after=None)
        assert not item_filter.matches(self.item(-5))

    def test_drafts_excluded(self):
        item_filter = ItemFilter(exclude_drafts=True)
        assert not item_filter.matches(self.item(1), is_draft=True)


class TestEnumeration:
    """Folder-scoped paging over the backend"""

    @pytest.mark.asyncio
    async def test_pages_through_all_items(self, backend, mailbox, mailbox_service, sync_settings):
        for minute in range(1, 6):
            backend.add_item(f"m-{minute}", "inbox", lastModifiedDateTime=at(minute))
        provider = ExchangeProvider(mailbox, ItemKind.EMAIL, backend, mailbox_service, sync_settings)

        results = await collect(provider, T0)

        assert [r.value.remote_id for r in results] == ["m-1", "m-2", "m-3", "m-4", "m-5"]
        assert [call["offset"] for call in backend.find_calls] == [0, 2, 4]

    @pytest.mark.asyncio
    async def test_trash_and_other_folder_classes_skipped(self, backend, mailbox, mailbox_service, sync_settings):
        backend.add_item("deleted-mail", "trash", lastModifiedDateTime=at(1))
        backend.add_item("task-1", "tasks", lastModifiedDateTime=at(1))
        provider = ExchangeProvider(mailbox, ItemKind.EMAIL, backend, mailbox_service, sync_settings)

        assert await collect(provider, T0) == []

    @pytest.mark.asyncio
    async def test_drafts_skipped_for_mail(self, backend, mailbox, mailbox_service, sync_settings):
        backend.add_item("draft-1", "inbox", isDraft=True, lastModifiedDateTime=at(1))
        provider = ExchangeProvider(mailbox, ItemKind.EMAIL, backend, mailbox_service, sync_settings)

        assert await collect(provider, T0) == []

    @pytest.mark.asyncio
    async def test_missing_selected_folder_is_skipped(self, backend, mailbox_service, make_mailbox, sync_settings):
        mailbox = make_mailbox(sync_all_folders=False, folder_ids=["gone", "inbox"])
        backend.add_item("m-1", "inbox", lastModifiedDateTime=at(1))
        provider = ExchangeProvider(mailbox, ItemKind.EMAIL, backend, mailbox_service, sync_settings)

        results = await collect(provider, T0)

        assert [r.value.remote_id for r in results] == ["m-1"]

    @pytest.mark.asyncio
    async def test_page_failure_ends_stream_with_one_error(self, backend, mailbox, mailbox_service, sync_settings):
        backend.add_item("m-1", "inbox", lastModifiedDateTime=at(1))
        backend.find_errors["inbox"] = BackendServerError("Server error 502: bad gateway", status_code=502)
        provider = ExchangeProvider(mailbox, ItemKind.EMAIL, backend, mailbox_service, sync_settings)

        results = await collect(provider, T0)

        assert len(results) == 1
        assert results[0].is_transient

    @pytest.mark.asyncio
    async def test_malformed_item_is_skipped(self, backend, mailbox, mailbox_service, sync_settings):
        backend.add_item("m-1", "inbox", lastModifiedDateTime=at(1))
        backend.items["broken"] = {"parentFolderId": "inbox", "lastModifiedDateTime": at(2)}
        provider = ExchangeProvider(mailbox, ItemKind.EMAIL, backend, mailbox_service, sync_settings)

        results = await collect(provider, T0)

        assert [r.value.remote_id for r in results] == ["m-1"]

    @pytest.mark.asyncio
    async def test_load_deleted_item_is_not_found(self, backend, mailbox, mailbox_service, sync_settings):
        backend.add_item("m-1", "inbox", isDeleted=True)
        provider = ExchangeProvider(mailbox, ItemKind.EMAIL, backend, mailbox_service, sync_settings)

        assert (await provider.load_item("m-1")).is_not_found
        assert (await provider.load_item("missing")).is_not_found


class TestMapping:
    """Backend payloads to remote items"""

    def test_exchange_event_mapping(self, make_mailbox, backend):
        provider = ExchangeProvider(make_mailbox(), ItemKind.EVENT, backend, None)
        item = provider.to_remote_item({
            "id": "evt-1",
            "subject": "Design review",
            "iCalUId": "040000008200E00074C5B7101A82E008",
            "start": {"dateTime": "2024-03-05T10:00:00", "timeZone": "UTC"},
            "end": {"dateTime": "2024-03-05T11:00:00", "timeZone": "UTC"},
            "location": {"displayName": "Room 4"},
            "importance": "high",
            "lastModifiedDateTime": "2024-03-04T09:30:00Z",
        }, "calendar")

        assert item.correlation_id == "040000008200E00074C5B7101A82E008"
        assert item.location == "Room 4"
        assert item.priority == "high"
        assert item.folder_id == "calendar"
        assert item.last_modified == T0 + timedelta(minutes=30)

    def test_exchange_task_payload_round_trip_fields(self, make_mailbox, backend):
        provider = ExchangeProvider(make_mailbox(), ItemKind.TASK, backend, None)
        record = LocalRecord("rec-1", "user-1", "mbx-1", ItemKind.TASK, title="Call supplier",
                             due=T0, status="in_progress")

        payload = provider.to_payload(record)

        assert payload["subject"] == "Call supplier"
        assert payload["status"] == "inProgress"
        assert payload["dueDateTime"] == T0.isoformat()

    def test_imap_mapping_uses_flags(self, make_mailbox, backend):
        provider = ImapProvider(make_mailbox(mailbox_type=MailboxType.IMAP), ItemKind.EMAIL, backend, None)
        item = provider.to_remote_item({
            "uid": 42,
            "messageId": "<abc@contoso.com>",
            "subject": "Invoice",
            "flags": ["\\Seen", "\\Flagged"],
            "date": "2024-03-04T09:00:00Z",
        }, "INBOX")

        assert item.remote_id == "INBOX:42"
        assert item.status == "read"
        assert item.priority == "high"
        assert item.correlation_id == "<abc@contoso.com>"

    def test_imap_payload_maps_flags(self, make_mailbox, backend):
        provider = ImapProvider(make_mailbox(mailbox_type=MailboxType.IMAP), ItemKind.EMAIL, backend, None)
        record = LocalRecord("rec-1", "user-1", "mbx-1", ItemKind.EMAIL, title="Invoice",
                             start=T0, status="read", priority="high")

        payload = provider.to_payload(record)

        assert payload["subject"] == "Invoice"
        assert payload["flags"] == ["\\Seen", "\\Flagged"]
        assert payload["date"] == T0.isoformat()

    @pytest.mark.asyncio
    async def test_imap_export_is_refused(self, make_mailbox, backend):
        provider = ImapProvider(make_mailbox(mailbox_type=MailboxType.IMAP), ItemKind.EMAIL, backend, None)
        record = LocalRecord("rec-1", "user-1", "mbx-1", ItemKind.EMAIL, title="Invoice")

        result = await provider.save_item(record)

        assert result.kind.value == "fatal"
        assert backend.saved == []

    def test_imap_only_supports_mail(self, make_mailbox, backend):
        mailbox = make_mailbox(mailbox_type=MailboxType.IMAP)

        with pytest.raises(ValueError):
            create_provider(mailbox, ItemKind.TASK, backend, None)

    def test_start_of_day_in_owner_zone(self):
        value = T0.replace(hour=2)
        start = start_of_day(value, "America/New_York")
        assert start.isoformat() == "2024-03-03T05:00:00+00:00"


class TestHttpMailboxBackend:
    """Gateway client status mapping and authentication headers"""

    def backend_for(self, handler):
        return HttpMailboxBackend(transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_basic_auth_by_default(self, make_mailbox):
        seen = {}

        def handler(request):
            seen["authorization"] = request.headers.get("Authorization")
            seen["mailbox"] = request.headers.get("X-Mailbox-Address")
            return httpx.Response(200, json={"value": [{"id": "inbox", "displayName": "Inbox"}]})

        backend = self.backend_for(handler)
        folders = await backend.list_folders(make_mailbox())
        await backend.close()

        assert [folder.id for folder in folders] == ["inbox"]
        assert seen["authorization"].startswith("Basic ")
        assert seen["mailbox"] == "mbx-1@contoso.com"

    @pytest.mark.asyncio
    async def test_bearer_token_for_oauth(self, make_mailbox):
        seen = {}

        def handler(request):
            seen["authorization"] = request.headers.get("Authorization")
            return httpx.Response(204)

        mailbox = make_mailbox()
        mailbox.credentials.use_oauth = True
        mailbox.credentials.access_token = "token-123"
        backend = self.backend_for(handler)
        await backend.set_local_marker(mailbox, ItemKind.TASK, "r-1", "rec-1")
        await backend.close()

        assert seen["authorization"] == "Bearer token-123"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,expected", [
        (404, BackendNotFoundError),
        (401, BackendAuthError),
        (429, BackendRateLimitError),
        (503, BackendServerError),
    ])
    async def test_status_codes_map_to_errors(self, make_mailbox, status, expected):
        backend = self.backend_for(lambda request: httpx.Response(status, text="nope"))

        with pytest.raises(expected):
            await backend.get_item(make_mailbox(), ItemKind.EMAIL, "m-1")
        await backend.close()

    @pytest.mark.asyncio
    async def test_find_items_sends_filter(self, make_mailbox):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"value": [{"id": "m-1"}], "moreAvailable": True})

        backend = self.backend_for(handler)
        page = await backend.find_items(make_mailbox(), ItemKind.EMAIL, "inbox",
                                        ItemFilter(modified_after=T0), 0, 50)
        await backend.close()

        assert page.more_available is True
        assert seen["body"]["filter"]["modifiedAfter"] == T0.isoformat()
        assert seen["body"]["limit"] == 50

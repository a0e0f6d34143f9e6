"""
Remote provider base
Enumerates changed remote items for one mailbox and item kind, loads and saves single items
"""

from abc import ABC, abstractmethod
from datetime import datetime, time, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from ..config import SyncSettings
from ..models.sync_models import ItemKind, LocalRecord, Mailbox, RemoteFolder, RemoteItem, utc_now
from ..utils.result import Result
from .backend import BackendNotFoundError, MailboxBackend
from .filters import ItemFilter

logger = structlog.get_logger(__name__)


def start_of_day(value: datetime, time_zone: str) -> datetime:
    """Midnight of value's calendar date in the given zone, as UTC"""
    try:
        zone = ZoneInfo(time_zone or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        zone = ZoneInfo("UTC")
    local = value.astimezone(zone)
    return datetime.combine(local.date(), time.min, tzinfo=zone).astimezone(timezone.utc)


class RemoteProvider(ABC):
    """
    Adapter over one mailbox backend for one item kind

    Every public call returns a Result; enumeration yields Results so that a
    failing page surfaces as one non-Ok value at the end of the stream instead
    of an exception escaping mid-iteration.
    """

    supports_local_marker = True
    folder_classes: Dict[ItemKind, Tuple[str, ...]] = {}

    def __init__(self, mailbox: Mailbox, kind: ItemKind, backend: MailboxBackend,
                 mailbox_service, settings: Optional[SyncSettings] = None):
        self.mailbox = mailbox
        self.kind = kind
        self.backend = backend
        self.mailbox_service = mailbox_service
        self.settings = settings or SyncSettings()
        self.page_size = self.settings.page_size_for(kind)

    @abstractmethod
    def to_remote_item(self, payload: Dict[str, Any], folder_id: Optional[str]) -> RemoteItem:
        """Map a backend payload to a RemoteItem"""

    @abstractmethod
    def to_payload(self, record: LocalRecord) -> Dict[str, Any]:
        """Map a local record to a backend payload for export"""

    def is_draft(self, payload: Dict[str, Any]) -> bool:
        return False

    # Filters

    def import_floor(self) -> datetime:
        """Import horizon: never import items older than this, even on first sync"""
        if self.mailbox.import_from is not None:
            return self.mailbox.import_from
        return utc_now() - self.settings.default_import_horizon

    def build_filter(self, checkpoint: Optional[datetime]) -> ItemFilter:
        return ItemFilter(
            import_floor=self.import_floor(),
            modified_after=checkpoint,
            include_unmarked=self.supports_local_marker,
            exclude_drafts=self.kind == ItemKind.EMAIL,
        )

    # Folders

    def accepts_folder(self, folder: RemoteFolder) -> bool:
        if folder.is_trash:
            return False
        allowed = self.folder_classes.get(self.kind)
        if allowed and folder.folder_class:
            return folder.folder_class.startswith(allowed)
        return True

    async def get_folders(self) -> List[RemoteFolder]:
        folders = await self.backend.list_folders(self.mailbox)
        return [folder for folder in folders if self.accepts_folder(folder)]

    async def resolve_folders(self) -> List[RemoteFolder]:
        """
        Folders in synchronization scope

        For selected-folder mailboxes each id is bound separately; ids that no
        longer exist are logged and skipped. Other failures propagate so the
        run does not advance past folders it could not read.
        """
        if self.mailbox.sync_all_folders:
            return await self.get_folders()

        resolved = []
        for folder_id in self.mailbox.folder_ids:
            try:
                folder = await self.backend.get_folder(self.mailbox, folder_id)
            except BackendNotFoundError:
                logger.warning("Selected folder no longer exists, skipping",
                               mailbox_id=self.mailbox.id, folder_id=folder_id)
                continue
            if folder.is_trash:
                continue
            resolved.append(folder)
        return resolved

    # Contract

    async def enumerate_changes(self, checkpoint: Optional[datetime]) -> AsyncIterator[Result]:
        """
        Lazily enumerate items changed since checkpoint, page by page

        Yields Ok(RemoteItem) per item. A failure yields a single non-Ok
        Result and ends the stream; nothing is written, so the caller can
        restart from the same checkpoint.
        """
        item_filter = self.build_filter(checkpoint)
        try:
            folders = await self.resolve_folders()
        except Exception as e:
            logger.error("Failed to resolve folders", mailbox_id=self.mailbox.id, error=str(e))
            yield Result.from_exception(e, operation="resolve_folders", mailbox_id=self.mailbox.id)
            return

        for folder in folders:
            offset = 0
            while True:
                try:
                    page = await self.backend.find_items(
                        self.mailbox, self.kind, folder.id, item_filter, offset, self.page_size
                    )
                except BackendNotFoundError:
                    logger.warning("Folder disappeared during enumeration, skipping",
                                   mailbox_id=self.mailbox.id, folder_id=folder.id)
                    break
                except Exception as e:
                    result = Result.from_exception(e, operation="find_items", mailbox_id=self.mailbox.id)
                    logger.error("Failed to load items page", mailbox_id=self.mailbox.id,
                                 folder_id=folder.id, offset=offset, error=result.reason)
                    yield result
                    return

                for payload in page.items:
                    try:
                        item = self.to_remote_item(payload, folder.id)
                    except (KeyError, TypeError, ValueError) as e:
                        logger.warning("Skipping malformed remote item", mailbox_id=self.mailbox.id,
                                       folder_id=folder.id, error=str(e))
                        continue
                    if item_filter.matches(item, is_draft=self.is_draft(payload)):
                        yield Result.ok(item)

                if not page.more_available or not page.items:
                    break
                offset += len(page.items)

    async def load_item(self, item_id: str) -> Result:
        """Targeted load; NotFound means the item was deleted remotely"""
        try:
            payload = await self.backend.get_item(self.mailbox, self.kind, item_id)
        except Exception as e:
            return Result.from_exception(e, operation="load_item", mailbox_id=self.mailbox.id)
        if not payload or payload.get("isDeleted"):
            return Result.not_found(f"{item_id} no longer exists")
        try:
            return Result.ok(self.to_remote_item(payload, payload.get("parentFolderId")))
        except (KeyError, TypeError, ValueError) as e:
            return Result.fatal(f"Malformed remote item {item_id}: {e}")

    async def save_item(self, record: LocalRecord, folder_id: Optional[str] = None) -> Result:
        """Create the remote counterpart of a local record"""
        try:
            payload = self.to_payload(record)
            if self.supports_local_marker:
                payload["localId"] = record.id
            saved = await self.backend.save_item(self.mailbox, self.kind, folder_id, payload)
            return Result.ok(self.to_remote_item(saved, saved.get("parentFolderId", folder_id)))
        except Exception as e:
            return Result.from_exception(e, operation="save_item", mailbox_id=self.mailbox.id)

    async def mark_item(self, remote_id: str, local_id: str) -> Result:
        """Write the local-correlation marker back to the remote item"""
        if not self.supports_local_marker:
            return Result.ok()
        try:
            await self.backend.set_local_marker(self.mailbox, self.kind, remote_id, local_id)
            return Result.ok()
        except Exception as e:
            return Result.from_exception(e, operation="mark_item", mailbox_id=self.mailbox.id)

    async def commit_changes(self, context) -> Result:
        """Persist the session's new checkpoint for this mailbox and kind"""
        checkpoint = context.next_checkpoint()
        if checkpoint is None:
            return Result.ok()
        stored = self.mailbox.get_checkpoint(self.kind)
        if stored is not None and checkpoint <= stored:
            # catch-up runs start below the stored checkpoint
            return Result.ok(stored)
        try:
            await self.mailbox_service.update_checkpoint(self.mailbox.id, self.kind, checkpoint)
            self.mailbox.checkpoints[self.kind] = checkpoint
            return Result.ok(checkpoint)
        except Exception as e:
            return Result.from_exception(e, operation="commit_changes", mailbox_id=self.mailbox.id)

"""
Local store adapter
Maps remote items onto local records: duplicate detection, advisory locking and idempotent apply
"""

import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import structlog

from ..config import SyncSettings
from ..database import EntityStore, Range
from ..models.sync_models import ItemKind, LocalRecord, Mailbox, RemoteItem, SyncAction, utc_now
from ..utils.result import Result
from .envelope import SyncEnvelope
from .fingerprint import fingerprint_of, within_tolerance

logger = structlog.get_logger(__name__)

RECORD_TYPE = "local_record"


@dataclass
class Resolution:
    """Outcome of matching a remote item against local storage"""
    action: SyncAction
    record: Optional[LocalRecord] = None
    lock_key: Optional[str] = None
    matched_by: Optional[str] = None


def record_from_row(row: Dict[str, Any]) -> LocalRecord:
    values = dict(row)
    values["kind"] = ItemKind(values["kind"])
    return LocalRecord(**values)


def record_lock_key(record_id: str) -> str:
    return f"record:{record_id}"


def remote_lock_key(mailbox_id: str, identity: str) -> str:
    return f"remote:{mailbox_id}:{identity}"


class LocalStoreAdapter:
    """
    Resolves and applies envelopes against the entity store

    Resolution order: local-id marker, correlation id, remote id; then
    content fingerprint when the item has no correlation id and duplicate
    suppression is on; otherwise Create.
    """

    def __init__(self, store: EntityStore, settings: Optional[SyncSettings] = None):
        self.store = store
        self.settings = settings or SyncSettings()

    # Lookups

    async def find_existing(self, mailbox: Mailbox, item: RemoteItem) -> Tuple[Optional[LocalRecord], Optional[str]]:
        if item.local_id:
            row = await self.store.fetch_by_id(RECORD_TYPE, item.local_id)
            if row and row["owner_id"] == mailbox.owner_id:
                return record_from_row(row), "marker"

        if item.correlation_id:
            rows = await self.store.fetch_by_column(RECORD_TYPE, "correlation_id", item.correlation_id)
            for row in rows:
                if row["owner_id"] == mailbox.owner_id and row["kind"] == item.kind.value:
                    return record_from_row(row), "correlation_id"

        rows = await self.store.query(RECORD_TYPE, {"mailbox_id": mailbox.id, "remote_id": item.remote_id})
        if rows:
            return record_from_row(rows[0]), "remote_id"

        return None, None

    async def find_by_fingerprint(self, mailbox: Mailbox, item: RemoteItem, fingerprint: str) -> Optional[LocalRecord]:
        tolerance = self.settings.fingerprint_tolerance
        filters: Dict[str, Any] = {
            "owner_id": mailbox.owner_id,
            "kind": item.kind.value,
            "fingerprint": fingerprint,
        }
        if item.start is not None:
            filters["start"] = Range(item.start - tolerance, item.start + tolerance)
        rows = await self.store.query(RECORD_TYPE, filters)
        for row in rows:
            if within_tolerance(row.get("start"), item.start, tolerance):
                return record_from_row(row)
        return None

    # Resolution

    async def resolve(self, mailbox: Mailbox, item: RemoteItem, lock_owner: str) -> Result:
        """Decide the action for a remote item; Ok(Resolution) or a failure Result"""
        try:
            if item.deleted:
                return await self._resolve_deleted(mailbox, item.remote_id, lock_owner, item)

            record, matched_by = await self.find_existing(mailbox, item)
            fingerprint = fingerprint_of(item)

            if record is not None:
                lock_key = record_lock_key(record.id)
                if not await self.lock(lock_key, lock_owner):
                    return Result.ok(Resolution(SyncAction.REPEAT, record, None, matched_by))
                action = SyncAction.NONE if record.fingerprint == fingerprint else SyncAction.UPDATE
                return Result.ok(Resolution(action, record, lock_key, matched_by))

            if item.correlation_id is None and self.settings.dedup_by_fingerprint:
                duplicate = await self.find_by_fingerprint(mailbox, item, fingerprint)
                if duplicate is not None:
                    logger.debug("Remote item matches existing record by content",
                                 mailbox_id=mailbox.id, remote_id=item.remote_id, record_id=duplicate.id)
                    return Result.ok(Resolution(SyncAction.NONE, duplicate, None, "fingerprint"))

            lock_key = remote_lock_key(mailbox.id, item.identity_key)
            if not await self.lock(lock_key, lock_owner):
                return Result.ok(Resolution(SyncAction.REPEAT, None, None, None))
            return Result.ok(Resolution(SyncAction.CREATE, None, lock_key, None))

        except Exception as e:
            logger.error("Failed to resolve remote item", mailbox_id=mailbox.id,
                         remote_id=item.remote_id, error=str(e))
            return Result.from_exception(e, operation="resolve", mailbox_id=mailbox.id)

    async def resolve_deleted(self, mailbox: Mailbox, remote_id: str, lock_owner: str) -> Result:
        """Resolution for an item the backend reports as gone"""
        try:
            return await self._resolve_deleted(mailbox, remote_id, lock_owner)
        except Exception as e:
            logger.error("Failed to resolve deleted item", mailbox_id=mailbox.id,
                         remote_id=remote_id, error=str(e))
            return Result.from_exception(e, operation="resolve_deleted", mailbox_id=mailbox.id)

    async def _resolve_deleted(self, mailbox: Mailbox, remote_id: str, lock_owner: str,
                               item: Optional[RemoteItem] = None) -> Result:
        rows = await self.store.query(RECORD_TYPE, {"mailbox_id": mailbox.id, "remote_id": remote_id})
        if not rows and item is not None and item.local_id:
            row = await self.store.fetch_by_id(RECORD_TYPE, item.local_id)
            rows = [row] if row else []
        if not rows:
            return Result.ok(Resolution(SyncAction.NONE))

        record = record_from_row(rows[0])
        lock_key = record_lock_key(record.id)
        if not await self.lock(lock_key, lock_owner):
            return Result.ok(Resolution(SyncAction.REPEAT, record))
        return Result.ok(Resolution(SyncAction.DELETE, record, lock_key, "remote_id"))

    # Locks

    async def lock(self, key: str, owner: str) -> bool:
        """Advisory lock; False when another session holds it or the store cannot be reached"""
        try:
            return await self.store.acquire_lock(key, owner, self.settings.lock_ttl_seconds)
        except Exception as e:
            logger.warning("Failed to acquire sync lock", key=key, owner=owner, error=str(e))
            return False

    async def unlock(self, key: str, owner: str) -> bool:
        try:
            return await self.store.release_lock(key, owner)
        except Exception as e:
            logger.warning("Failed to release sync lock, expiry will reclaim it", key=key, error=str(e))
            return False

    async def unlock_all(self, owner: str) -> int:
        try:
            return await self.store.release_locks(owner)
        except Exception as e:
            logger.warning("Failed to release session locks, expiry will reclaim them", owner=owner, error=str(e))
            return 0

    # Apply

    def _values_from_item(self, item: RemoteItem, mailbox: Optional[Mailbox] = None,
                          record: Optional[LocalRecord] = None) -> Dict[str, Any]:
        """
        Column values for a remote item

        A record matched from another mailbox of the same owner keeps the
        remote id of the mailbox that holds it, so (mailbox_id, remote_id)
        still finds it when that item is deleted.
        """
        values = {
            "title": item.title,
            "start": item.start,
            "due": item.due,
            "priority": item.priority,
            "status": item.status,
            "time_zone": item.time_zone,
            "location": item.location,
            "body": item.body,
            "fingerprint": fingerprint_of(item),
            "remote_id": item.remote_id,
            "correlation_id": item.correlation_id,
            "modified_at": item.last_modified,
        }
        if record is not None and mailbox is not None and record.mailbox_id != mailbox.id:
            values.pop("remote_id")
        return values

    async def apply(self, mailbox: Mailbox, envelope: SyncEnvelope) -> Result:
        """
        Perform the local mutation for a resolved envelope

        Safe to repeat: Create re-checks for an existing record first, Delete
        of a missing record succeeds, None writes nothing.
        """
        action = envelope.action
        item = envelope.remote_item
        try:
            if action == SyncAction.NONE:
                return Result.ok(envelope.local_record)

            if action == SyncAction.DELETE:
                if envelope.local_record is not None:
                    await self.store.delete(RECORD_TYPE, envelope.local_record.id)
                return Result.ok(None)

            if action == SyncAction.CREATE:
                existing, _ = await self.find_existing(mailbox, item)
                if existing is not None:
                    row = await self.store.update(RECORD_TYPE, existing.id,
                                                  self._values_from_item(item, mailbox, existing))
                    return Result.ok(record_from_row(row))
                values = self._values_from_item(item)
                values.update({
                    "id": uuid.uuid4().hex,
                    "owner_id": mailbox.owner_id,
                    "mailbox_id": mailbox.id,
                    "kind": item.kind.value,
                    "created_at": utc_now(),
                })
                row = await self.store.insert(RECORD_TYPE, values)
                return Result.ok(record_from_row(row))

            if action == SyncAction.UPDATE:
                row = await self.store.update(RECORD_TYPE, envelope.local_record.id,
                                              self._values_from_item(item, mailbox, envelope.local_record))
                if row is None:
                    return Result.not_found(f"Local record {envelope.local_record.id} was removed")
                return Result.ok(record_from_row(row))

            return Result.fatal(f"Cannot apply action {action}")

        except Exception as e:
            logger.error("Failed to apply envelope", mailbox_id=mailbox.id,
                         remote_id=envelope.remote_id, action=action.value if action else None, error=str(e))
            return Result.from_exception(e, operation="apply", mailbox_id=mailbox.id)

    # Export direction

    async def collect_new_local_records(self, mailbox: Mailbox, kind: ItemKind) -> List[LocalRecord]:
        """Records created locally that have never been pushed to the mailbox"""
        rows = await self.store.query(RECORD_TYPE, {
            "mailbox_id": mailbox.id,
            "kind": kind.value,
            "remote_id": None,
        })
        return [record_from_row(row) for row in rows]

    async def link_remote(self, record_id: str, item: RemoteItem) -> Result:
        """Store the remote id and fingerprint of a freshly exported record"""
        try:
            row = await self.store.update(RECORD_TYPE, record_id, {
                "remote_id": item.remote_id,
                "correlation_id": item.correlation_id,
                "fingerprint": fingerprint_of(item),
                "modified_at": item.last_modified,
            })
            if row is None:
                return Result.not_found(f"Local record {record_id} was removed")
            return Result.ok(record_from_row(row))
        except Exception as e:
            return Result.from_exception(e, operation="link_remote")

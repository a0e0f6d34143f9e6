"""
Mailbox service
Loads mailbox configuration and owns the checkpoint and error-state fields the engine mutates
"""

from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

from ..database import EntityStore
from ..models.sync_models import ItemKind, Mailbox, MailboxCredentials, MailboxType

logger = structlog.get_logger(__name__)

RECORD_TYPE = "mailbox"


class MailboxNotFoundError(Exception):
    """Mailbox does not exist"""
    pass


def _checkpoint_column(kind: ItemKind) -> str:
    return f"{kind.value}_checkpoint"


def mailbox_from_row(row: Dict[str, Any]) -> Mailbox:
    return Mailbox(
        id=row["id"],
        sender_email_address=row["sender_email_address"],
        owner_id=row["owner_id"],
        owner_user_name=row.get("owner_user_name") or "",
        owner_time_zone=row.get("owner_time_zone") or "UTC",
        mailbox_type=MailboxType(row.get("mailbox_type") or MailboxType.EXCHANGE.value),
        credentials=MailboxCredentials(**(row.get("credentials") or {})),
        is_shared=bool(row.get("is_shared")),
        allow_synchronization=bool(row.get("allow_synchronization")),
        synchronization_stopped=bool(row.get("synchronization_stopped")),
        import_enabled=bool(row.get("import_enabled")),
        export_enabled=bool(row.get("export_enabled")),
        sync_all_folders=bool(row.get("sync_all_folders")),
        folder_ids=list(row.get("folder_ids") or []),
        import_from=row.get("import_from"),
        checkpoints={kind: row.get(_checkpoint_column(kind)) for kind in ItemKind},
        error_code=row.get("error_code"),
        error_message=row.get("error_message"),
        retry_count=row.get("retry_count") or 0,
    )


def mailbox_to_row(mailbox: Mailbox) -> Dict[str, Any]:
    row = {
        "id": mailbox.id,
        "sender_email_address": mailbox.sender_email_address,
        "owner_id": mailbox.owner_id,
        "owner_user_name": mailbox.owner_user_name,
        "owner_time_zone": mailbox.owner_time_zone,
        "mailbox_type": mailbox.mailbox_type.value,
        "credentials": asdict(mailbox.credentials),
        "is_shared": mailbox.is_shared,
        "allow_synchronization": mailbox.allow_synchronization,
        "synchronization_stopped": mailbox.synchronization_stopped,
        "import_enabled": mailbox.import_enabled,
        "export_enabled": mailbox.export_enabled,
        "sync_all_folders": mailbox.sync_all_folders,
        "folder_ids": list(mailbox.folder_ids),
        "import_from": mailbox.import_from,
        "error_code": mailbox.error_code,
        "error_message": mailbox.error_message,
        "retry_count": mailbox.retry_count,
    }
    for kind in ItemKind:
        row[_checkpoint_column(kind)] = mailbox.checkpoints.get(kind)
    return row


class MailboxService:
    """Mailbox lookups and engine-owned field updates over the entity store"""

    def __init__(self, store: EntityStore):
        self.store = store

    async def add_mailbox(self, mailbox: Mailbox) -> Mailbox:
        row = await self.store.insert(RECORD_TYPE, mailbox_to_row(mailbox))
        logger.info("Mailbox added", mailbox_id=mailbox.id, sender=mailbox.sender_email_address)
        return mailbox_from_row(row)

    async def get_mailbox(self, mailbox_id: str) -> Mailbox:
        row = await self.store.fetch_by_id(RECORD_TYPE, mailbox_id)
        if row is None:
            raise MailboxNotFoundError(f"Mailbox {mailbox_id} not found")
        return mailbox_from_row(row)

    async def get_mailbox_by_sender(self, sender_email_address: str,
                                    owner_id: Optional[str] = None) -> Optional[Mailbox]:
        """Mailbox for an address, owned by owner_id or shared"""
        rows = await self.store.fetch_by_column(RECORD_TYPE, "sender_email_address", sender_email_address)
        mailboxes = [mailbox_from_row(row) for row in rows]
        if owner_id is not None:
            owned = [m for m in mailboxes if m.owner_id == owner_id]
            if owned:
                return owned[0]
            mailboxes = [m for m in mailboxes if m.is_shared]
        return mailboxes[0] if mailboxes else None

    async def get_all_synchronizable(self) -> List[Mailbox]:
        rows = await self.store.query(RECORD_TYPE, {
            "allow_synchronization": True,
            "synchronization_stopped": False,
        })
        return [mailbox_from_row(row) for row in rows]

    async def update_checkpoint(self, mailbox_id: str, kind: ItemKind, value: datetime) -> None:
        updated = await self.store.update(RECORD_TYPE, mailbox_id, {_checkpoint_column(kind): value})
        if updated is None:
            raise MailboxNotFoundError(f"Mailbox {mailbox_id} not found")
        logger.debug("Checkpoint advanced", mailbox_id=mailbox_id, kind=kind.value, checkpoint=value.isoformat())

    async def record_error(self, mailbox_id: str, error_code: str, error_message: str) -> None:
        """Flag the mailbox with an operator-visible error and bump its retry counter"""
        row = await self.store.fetch_by_id(RECORD_TYPE, mailbox_id)
        if row is None:
            logger.warning("Cannot record error for unknown mailbox", mailbox_id=mailbox_id)
            return
        await self.store.update(RECORD_TYPE, mailbox_id, {
            "error_code": error_code,
            "error_message": error_message,
            "retry_count": (row.get("retry_count") or 0) + 1,
        })
        logger.warning("Mailbox synchronization error recorded",
                       mailbox_id=mailbox_id, error_code=error_code, error_message=error_message)

    async def clean_up_error(self, mailbox_id: str) -> None:
        row = await self.store.fetch_by_id(RECORD_TYPE, mailbox_id)
        if row is None or (not row.get("error_code") and not row.get("retry_count")):
            return
        await self.store.update(RECORD_TYPE, mailbox_id, {
            "error_code": None,
            "error_message": None,
            "retry_count": 0,
        })

    async def stop_synchronization(self, mailbox_id: str) -> None:
        """Soft-disable synchronization; the mailbox row is kept"""
        await self.store.update(RECORD_TYPE, mailbox_id, {"synchronization_stopped": True})
        logger.info("Mailbox synchronization stopped", mailbox_id=mailbox_id)

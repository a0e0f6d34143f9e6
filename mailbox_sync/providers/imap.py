"""
IMAP-like provider
Mail only; items cannot carry a local marker, so Message-ID is the correlation id
"""

from typing import Any, Dict, Optional

from ..models.sync_models import ItemKind, LocalRecord, RemoteItem, parse_datetime
from ..utils.result import Result
from .base import RemoteProvider


class ImapProvider(RemoteProvider):

    supports_local_marker = False

    def is_draft(self, payload: Dict[str, Any]) -> bool:
        return "\\Draft" in payload.get("flags", [])

    def to_remote_item(self, payload: Dict[str, Any], folder_id: Optional[str]) -> RemoteItem:
        folder = payload.get("folder", folder_id)
        remote_id = payload.get("id") or f"{folder}:{payload['uid']}"
        flags = payload.get("flags", [])
        return RemoteItem(
            remote_id=remote_id,
            kind=ItemKind.EMAIL,
            last_modified=parse_datetime(payload.get("internalDate") or payload.get("date")),
            folder_id=folder,
            correlation_id=payload.get("messageId"),
            title=payload.get("subject", ""),
            start=parse_datetime(payload.get("date")),
            status="read" if "\\Seen" in flags else "unread",
            priority="high" if "\\Flagged" in flags else "normal",
            time_zone=self.mailbox.owner_time_zone or "UTC",
            body=payload.get("body", ""),
            deleted="\\Deleted" in flags,
            raw=payload,
        )

    def to_payload(self, record: LocalRecord) -> Dict[str, Any]:
        flags = ["\\Seen"] if record.status == "read" else []
        if record.priority == "high":
            flags.append("\\Flagged")
        return {
            "subject": record.title,
            "date": record.start.isoformat() if record.start else None,
            "flags": flags,
            "body": record.body,
        }

    async def save_item(self, record: LocalRecord, folder_id: Optional[str] = None) -> Result:
        return Result.fatal("Export is not supported for IMAP mailboxes")

"""
Exchange-like provider
Tasks, events and mail from a folder-based backend that can store a local-id marker on items
"""

from typing import Any, Dict, Optional

from ..models.sync_models import ItemKind, LocalRecord, RemoteItem, parse_datetime
from .base import RemoteProvider

_PRIORITIES = {"low": "low", "normal": "normal", "high": "high"}
_STATUSES = {
    "notStarted": "not_started",
    "inProgress": "in_progress",
    "completed": "completed",
    "waitingOnOthers": "waiting",
    "deferred": "deferred",
}
_STATUS_NAMES = {value: key for key, value in _STATUSES.items()}


def _date_time(value: Any):
    """Accept either an ISO string or a {dateTime, timeZone} object"""
    if isinstance(value, dict):
        return parse_datetime(value.get("dateTime"))
    return parse_datetime(value)


class ExchangeProvider(RemoteProvider):
    """Exchange-like backend: folder classes, extended local-id property, drafts skipped"""

    supports_local_marker = True
    folder_classes = {
        ItemKind.TASK: ("IPF.Task",),
        ItemKind.EVENT: ("IPF.Appointment",),
        ItemKind.EMAIL: ("IPF.Note",),
    }

    def is_draft(self, payload: Dict[str, Any]) -> bool:
        return bool(payload.get("isDraft"))

    def to_remote_item(self, payload: Dict[str, Any], folder_id: Optional[str]) -> RemoteItem:
        kind = self.kind
        if kind == ItemKind.EMAIL:
            start = parse_datetime(payload.get("sentDateTime") or payload.get("receivedDateTime"))
            due = None
            correlation_id = payload.get("internetMessageId")
            status = "read" if payload.get("isRead") else "unread"
        elif kind == ItemKind.EVENT:
            start = _date_time(payload.get("start"))
            due = _date_time(payload.get("end"))
            correlation_id = payload.get("iCalUId")
            status = payload.get("showAs", "busy")
        else:
            start = _date_time(payload.get("startDateTime"))
            due = _date_time(payload.get("dueDateTime"))
            correlation_id = None
            status = _STATUSES.get(payload.get("status", "notStarted"), "not_started")

        location = payload.get("location") or ""
        if isinstance(location, dict):
            location = location.get("displayName", "")
        body = payload.get("body") or ""
        if isinstance(body, dict):
            body = body.get("content", "")

        return RemoteItem(
            remote_id=payload["id"],
            kind=kind,
            last_modified=parse_datetime(payload.get("lastModifiedDateTime")),
            folder_id=payload.get("parentFolderId", folder_id),
            correlation_id=correlation_id,
            local_id=payload.get("localId"),
            title=payload.get("subject", ""),
            start=start,
            due=due,
            priority=_PRIORITIES.get(payload.get("importance", "normal"), "normal"),
            status=status,
            time_zone=payload.get("timeZone") or self.mailbox.owner_time_zone or "UTC",
            location=location,
            body=body,
            deleted=bool(payload.get("isDeleted")),
            raw=payload,
        )

    def to_payload(self, record: LocalRecord) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "subject": record.title,
            "importance": record.priority,
            "timeZone": record.time_zone,
            "body": {"contentType": "text", "content": record.body},
        }
        if self.kind == ItemKind.EVENT:
            payload["start"] = {"dateTime": record.start.isoformat() if record.start else None,
                                "timeZone": record.time_zone}
            payload["end"] = {"dateTime": record.due.isoformat() if record.due else None,
                              "timeZone": record.time_zone}
            payload["location"] = {"displayName": record.location}
        else:
            payload["startDateTime"] = record.start.isoformat() if record.start else None
            payload["dueDateTime"] = record.due.isoformat() if record.due else None
            payload["status"] = _STATUS_NAMES.get(record.status, "notStarted")
        return payload

"""
Synchronization data models
Mailboxes, remote items, local records and recovery jobs moved through the sync pipeline
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 strings as returned by backends and the listener service"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    try:
        return ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        return None


class MailboxType(str, Enum):
    """Mailbox backend families"""
    EXCHANGE = "exchange"
    IMAP = "imap"


class ItemKind(str, Enum):
    """Kinds of synchronized items, each with its own checkpoint"""
    TASK = "task"
    EVENT = "event"
    EMAIL = "email"


class SyncAction(str, Enum):
    """Action resolved for one envelope"""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NONE = "none"
    REPEAT = "repeat"


class SyncDirection(str, Enum):
    DOWNLOAD = "download"
    UPLOAD = "upload"
    BOTH = "both"


class EnvelopeState(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    COMMITTED = "committed"
    DEFERRED = "deferred"


class SubscriptionState(str, Enum):
    """Listener subscription state; UNKNOWN means the listener service was unreachable"""
    MISSING = "missing"
    EXISTS = "exists"
    UNKNOWN = "unknown"


class CheckpointPolicy(str, Enum):
    """How the checkpoint moves when some envelopes were not committed"""
    HOLD = "hold"
    FLOOR = "floor"


@dataclass
class MailboxCredentials:
    """Credentials reference for a mailbox account"""
    user_name: str = ""
    password: str = ""
    server_address: str = ""
    access_token: Optional[str] = None
    use_oauth: bool = False
    ignore_ssl_errors: bool = False

    def is_complete(self) -> bool:
        if not self.user_name or not self.server_address:
            return False
        if self.use_oauth:
            return bool(self.access_token)
        return bool(self.password)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userName": self.user_name,
            "password": self.password,
            "serverAddress": self.server_address,
            "accessToken": self.access_token,
            "useOAuth": self.use_oauth,
            "ignoreSslErrors": self.ignore_ssl_errors,
        }


@dataclass
class UserContext:
    """User a job or session runs for"""
    user_id: str
    user_name: str = ""
    time_zone: str = "UTC"


@dataclass
class Mailbox:
    """Configured remote mailbox account"""
    id: str
    sender_email_address: str
    owner_id: str
    mailbox_type: MailboxType = MailboxType.EXCHANGE
    credentials: MailboxCredentials = field(default_factory=MailboxCredentials)
    owner_user_name: str = ""
    owner_time_zone: str = "UTC"
    is_shared: bool = False
    allow_synchronization: bool = True
    synchronization_stopped: bool = False
    import_enabled: bool = True
    export_enabled: bool = False
    sync_all_folders: bool = True
    folder_ids: List[str] = field(default_factory=list)
    import_from: Optional[datetime] = None
    checkpoints: Dict[ItemKind, Optional[datetime]] = field(default_factory=dict)
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int = 0

    @property
    def is_synchronizable(self) -> bool:
        return self.allow_synchronization and not self.synchronization_stopped

    @property
    def owner_context(self) -> UserContext:
        return UserContext(
            user_id=self.owner_id,
            user_name=self.owner_user_name,
            time_zone=self.owner_time_zone,
        )

    def get_checkpoint(self, kind: ItemKind) -> Optional[datetime]:
        return self.checkpoints.get(kind)

    @property
    def last_sync_date(self) -> Optional[datetime]:
        """Last successful mail checkpoint, the one the failover path cares about"""
        return self.checkpoints.get(ItemKind.EMAIL)

    def check_synchronization_settings(self) -> bool:
        """Whether the configuration is consistent enough to subscribe and sync"""
        if not self.sender_email_address or not self.allow_synchronization:
            return False
        if not self.sync_all_folders and not self.folder_ids:
            return False
        return self.credentials.is_complete()


@dataclass
class RemoteFolder:
    id: str
    name: str
    folder_class: Optional[str] = None
    parent_id: Optional[str] = None
    is_trash: bool = False


@dataclass
class RemoteItem:
    """Remote task, event or mail item"""
    remote_id: str
    kind: ItemKind
    last_modified: Optional[datetime] = None
    folder_id: Optional[str] = None
    correlation_id: Optional[str] = None
    local_id: Optional[str] = None
    title: str = ""
    start: Optional[datetime] = None
    due: Optional[datetime] = None
    priority: str = "normal"
    status: str = "not_started"
    time_zone: str = "UTC"
    location: str = ""
    body: str = ""
    deleted: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def identity_key(self) -> str:
        """Key used for session-level de-duplication across overlapping pages"""
        return self.correlation_id or self.remote_id


@dataclass
class LocalRecord:
    """Local counterpart of a remote item"""
    id: str
    owner_id: str
    mailbox_id: str
    kind: ItemKind
    title: str = ""
    start: Optional[datetime] = None
    due: Optional[datetime] = None
    priority: str = "normal"
    status: str = "not_started"
    time_zone: str = "UTC"
    location: str = ""
    body: str = ""
    fingerprint: Optional[str] = None
    remote_id: Optional[str] = None
    correlation_id: Optional[str] = None
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None


@dataclass
class ValidationResult:
    is_valid: bool
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RecoveryJob:
    """One-shot recovery job for a mailbox"""
    mailbox_id: str
    job_group: str
    user_context: UserContext
    scheduled_at: datetime = field(default_factory=utc_now)

    @property
    def job_name(self) -> str:
        return f"{self.mailbox_id}_{self.job_group}"

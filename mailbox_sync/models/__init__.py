"""
Data models for mailbox synchronization
"""

from .sync_models import (
    CheckpointPolicy,
    EnvelopeState,
    ItemKind,
    LocalRecord,
    Mailbox,
    MailboxCredentials,
    MailboxType,
    RecoveryJob,
    RemoteFolder,
    RemoteItem,
    SubscriptionState,
    SyncAction,
    SyncDirection,
    UserContext,
    ValidationResult,
)

__all__ = [
    "CheckpointPolicy",
    "EnvelopeState",
    "ItemKind",
    "LocalRecord",
    "Mailbox",
    "MailboxCredentials",
    "MailboxType",
    "RecoveryJob",
    "RemoteFolder",
    "RemoteItem",
    "SubscriptionState",
    "SyncAction",
    "SyncDirection",
    "UserContext",
    "ValidationResult",
]

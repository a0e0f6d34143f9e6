"""
Remote providers: one adapter per mailbox backend family
"""

from typing import Optional

from ..config import SyncSettings
from ..models.sync_models import ItemKind, Mailbox, MailboxType
from .backend import (
    BackendAuthError,
    BackendError,
    BackendNotFoundError,
    BackendRateLimitError,
    BackendServerError,
    HttpMailboxBackend,
    ItemPage,
    MailboxBackend,
)
from .base import RemoteProvider
from .exchange import ExchangeProvider
from .filters import ItemFilter
from .imap import ImapProvider


def create_provider(mailbox: Mailbox, kind: ItemKind, backend: MailboxBackend,
                    mailbox_service, settings: Optional[SyncSettings] = None) -> RemoteProvider:
    """Pick the provider for the mailbox backend type"""
    if mailbox.mailbox_type == MailboxType.IMAP:
        if kind != ItemKind.EMAIL:
            raise ValueError(f"IMAP mailboxes only synchronize email, not {kind.value}")
        return ImapProvider(mailbox, kind, backend, mailbox_service, settings)
    return ExchangeProvider(mailbox, kind, backend, mailbox_service, settings)


__all__ = [
    "BackendAuthError",
    "BackendError",
    "BackendNotFoundError",
    "BackendRateLimitError",
    "BackendServerError",
    "ExchangeProvider",
    "HttpMailboxBackend",
    "ImapProvider",
    "ItemFilter",
    "ItemPage",
    "MailboxBackend",
    "RemoteProvider",
    "create_provider",
]

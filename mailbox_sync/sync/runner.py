"""
Sync runner
Builds a provider and engine per mailbox and item kind and runs sessions for jobs and notifications
"""

from datetime import datetime
from typing import Iterable, List, Optional

import structlog

from ..config import SyncSettings
from ..models.sync_models import ItemKind, Mailbox, MailboxType
from ..notifications.channel import ClientChannel
from ..notifications.sync_logger import SynchronizationLogger
from ..providers import MailboxBackend, create_provider
from .engine import SyncEngine
from .local_store import LocalStoreAdapter
from .session import SyncReport, SyncSessionError

logger = structlog.get_logger(__name__)


def kinds_for(mailbox: Mailbox) -> List[ItemKind]:
    if mailbox.mailbox_type == MailboxType.IMAP:
        return [ItemKind.EMAIL]
    return [ItemKind.EMAIL, ItemKind.TASK, ItemKind.EVENT]


class SyncRunner:
    """Entry point used by scheduled jobs, the failover path and push notifications"""

    def __init__(self, mailbox_service, backend: MailboxBackend, local_store: LocalStoreAdapter,
                 settings: Optional[SyncSettings] = None, channel: Optional[ClientChannel] = None):
        self.mailbox_service = mailbox_service
        self.backend = backend
        self.local_store = local_store
        self.settings = settings or SyncSettings()
        self.channel = channel

    def create_engine(self, mailbox: Mailbox, kind: ItemKind) -> SyncEngine:
        provider = create_provider(mailbox, kind, self.backend, self.mailbox_service, self.settings)
        sync_logger = SynchronizationLogger(
            mailbox.owner_id, self.channel, mailbox_id=mailbox.id, kind=kind.value
        )
        return SyncEngine(provider, self.local_store, sync_logger, self.mailbox_service, self.settings)

    async def synchronize(self, mailbox_id: str, kinds: Optional[Iterable[ItemKind]] = None,
                          since: Optional[datetime] = None) -> List[SyncReport]:
        """
        Run one session per item kind for a mailbox

        A kind whose session cannot start is logged and skipped; the other
        kinds still run.
        """
        mailbox = await self.mailbox_service.get_mailbox(mailbox_id)
        reports = []
        for kind in (kinds or kinds_for(mailbox)):
            engine = self.create_engine(mailbox, kind)
            try:
                reports.append(await engine.run_session(since=since))
            except SyncSessionError as e:
                logger.warning("Synchronization session not started", mailbox_id=mailbox_id,
                               kind=kind.value, error=str(e))
        return reports

    async def process_notification(self, mailbox_id: str, kind: ItemKind, item_ids: Iterable[str]) -> SyncReport:
        mailbox = await self.mailbox_service.get_mailbox(mailbox_id)
        engine = self.create_engine(mailbox, kind)
        return await engine.process_notification(item_ids)

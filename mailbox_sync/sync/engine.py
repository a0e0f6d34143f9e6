"""
Sync engine
Drives one session: enumerate remote changes, resolve and apply each envelope, then commit the checkpoint
"""

from datetime import datetime
from typing import Iterable, Optional

import structlog

from ..config import SyncSettings
from ..models.sync_models import ItemKind, Mailbox, RemoteItem, SyncAction, SyncDirection
from ..notifications.sync_logger import SynchronizationLogger
from ..providers.base import RemoteProvider
from ..utils.result import ResultKind
from .envelope import SyncEnvelope
from .local_store import LocalStoreAdapter, record_lock_key
from .session import SyncContext, SyncReport, SyncSessionError

logger = structlog.get_logger(__name__)


class SyncEngine:
    """
    Synchronization driver for one mailbox and item kind

    Failures are isolated per envelope: a deferred item flags the session for
    a rerun while the rest of the batch proceeds. Only failing to set up the
    session raises.
    """

    def __init__(self, provider: RemoteProvider, local_store: LocalStoreAdapter,
                 sync_logger: SynchronizationLogger, mailbox_service,
                 settings: Optional[SyncSettings] = None):
        self.provider = provider
        self.local_store = local_store
        self.sync_logger = sync_logger
        self.mailbox_service = mailbox_service
        self.settings = settings or SyncSettings()

    @property
    def mailbox(self) -> Mailbox:
        return self.provider.mailbox

    @property
    def kind(self) -> ItemKind:
        return self.provider.kind

    def create_context(self, since: Optional[datetime] = None,
                       advance_checkpoint: bool = True) -> SyncContext:
        mailbox = self.mailbox
        if not mailbox.is_synchronizable:
            raise SyncSessionError(f"Synchronization is disabled for mailbox {mailbox.id}", mailbox.id)
        if not mailbox.check_synchronization_settings():
            raise SyncSessionError(
                f"Mailbox {mailbox.sender_email_address} synchronization settings are incomplete", mailbox.id
            )
        start = since if since is not None else mailbox.get_checkpoint(self.kind)
        return SyncContext(
            mailbox, self.kind, start,
            policy=self.settings.checkpoint_policy,
            advance_checkpoint=advance_checkpoint,
        )

    async def run_session(self, since: Optional[datetime] = None) -> SyncReport:
        """
        Full incremental run from the stored checkpoint (or from since, for catch-up)

        Raises:
            SyncSessionError: The mailbox cannot be synchronized at all
        """
        try:
            context = self.create_context(since)
        except SyncSessionError as e:
            await self.mailbox_service.record_error(self.mailbox.id, "SyncSessionError", str(e))
            await self.sync_logger.error("Synchronization not started", error=e)
            raise

        await self.sync_logger.info(
            f"Synchronization of {self.kind.value} items for {self.mailbox.sender_email_address} started"
        )
        try:
            if self.mailbox.import_enabled:
                await self._download(context)
            if self.mailbox.export_enabled and self.kind != ItemKind.EMAIL:
                await self._upload(context)
            return await self._finish(context)
        finally:
            await self.local_store.unlock_all(context.session_id)

    async def process_notification(self, item_ids: Iterable[str]) -> SyncReport:
        """Push-driven targeted loads; the stored checkpoint is left as is"""
        context = self.create_context(advance_checkpoint=False)
        try:
            for item_id in item_ids:
                result = await self.provider.load_item(item_id)
                if result.is_ok:
                    if not context.is_duplicate(result.value):
                        await self._process_item(context, result.value)
                elif result.is_not_found:
                    await self._process_deleted(context, item_id)
                else:
                    logger.warning("Targeted load failed", mailbox_id=self.mailbox.id,
                                   item_id=item_id, reason=result.reason)
                    context.record_load_failure(item_id, result)
            return await self._finish(context)
        finally:
            await self.local_store.unlock_all(context.session_id)

    # Download

    async def _download(self, context: SyncContext) -> None:
        async for result in self.provider.enumerate_changes(context.start_checkpoint):
            if not result.is_ok:
                logger.error("Enumeration stopped", mailbox_id=self.mailbox.id,
                             kind=self.kind.value, reason=result.reason)
                context.fail_enumeration(result)
                break
            if context.is_duplicate(result.value):
                logger.debug("Skipping item already processed in this session",
                             mailbox_id=self.mailbox.id, remote_id=result.value.remote_id)
                continue
            await self._process_item(context, result.value)

    async def _process_item(self, context: SyncContext, item: RemoteItem) -> None:
        envelope = context.add(SyncEnvelope(item, SyncDirection.DOWNLOAD))
        try:
            resolved = await self.local_store.resolve(self.mailbox, item, context.session_id)
            if not resolved.is_ok:
                envelope.resolve(SyncAction.REPEAT)
                context.defer(envelope, resolved.reason, resolved.kind, self._error_code(resolved))
                return

            resolution = resolved.value
            envelope.resolve(resolution.action, resolution.record)
            if resolution.lock_key:
                envelope.lock_keys.append(resolution.lock_key)

            if resolution.action == SyncAction.REPEAT:
                logger.info("Item locked by another synchronization, deferring",
                            mailbox_id=self.mailbox.id, remote_id=item.remote_id)
                context.defer(envelope, "locked by another synchronization")
                return

            await self._apply(context, envelope)

        except Exception as e:
            logger.error("Unexpected error processing item", mailbox_id=self.mailbox.id,
                         remote_id=item.remote_id,
                         action=envelope.action.value if envelope.action else None,
                         error=str(e))
            if envelope.action is None:
                envelope.resolve(SyncAction.REPEAT)
            context.defer(envelope, str(e), ResultKind.FATAL, e.__class__.__name__)

    async def _process_deleted(self, context: SyncContext, item_id: str) -> None:
        envelope = context.add(SyncEnvelope(RemoteItem(remote_id=item_id, kind=self.kind, deleted=True)))
        resolved = await self.local_store.resolve_deleted(self.mailbox, item_id, context.session_id)
        if not resolved.is_ok:
            envelope.resolve(SyncAction.REPEAT)
            context.defer(envelope, resolved.reason, resolved.kind)
            return
        resolution = resolved.value
        envelope.resolve(resolution.action, resolution.record)
        if resolution.action == SyncAction.REPEAT:
            context.defer(envelope, "locked by another synchronization")
            return
        await self._apply(context, envelope)

    async def _apply(self, context: SyncContext, envelope: SyncEnvelope) -> None:
        applied = await self.local_store.apply(self.mailbox, envelope)
        if not applied.is_ok:
            logger.error("Failed to apply item", mailbox_id=self.mailbox.id,
                         remote_id=envelope.remote_id, action=envelope.action.value,
                         reason=applied.reason)
            context.defer(envelope, applied.reason, applied.kind, self._error_code(applied))
            return

        if envelope.action == SyncAction.CREATE and applied.value is not None:
            envelope.local_record = applied.value
            marked = await self.provider.mark_item(envelope.remote_id, applied.value.id)
            if not marked.is_ok:
                logger.warning("Failed to write local marker to remote item",
                               mailbox_id=self.mailbox.id, remote_id=envelope.remote_id,
                               reason=marked.reason)

        context.commit(envelope)

    # Upload

    async def _upload(self, context: SyncContext) -> None:
        records = await self.local_store.collect_new_local_records(self.mailbox, self.kind)
        for record in records:
            envelope = context.add(SyncEnvelope(None, SyncDirection.UPLOAD, local_record=record))
            lock_key = record_lock_key(record.id)
            if not await self.local_store.lock(lock_key, context.session_id):
                envelope.resolve(SyncAction.REPEAT)
                context.defer(envelope, "locked by another synchronization")
                continue
            envelope.resolve(SyncAction.CREATE)
            envelope.lock_keys.append(lock_key)

            saved = await self.provider.save_item(record)
            if not saved.is_ok:
                context.defer(envelope, saved.reason, saved.kind, self._error_code(saved))
                continue
            linked = await self.local_store.link_remote(record.id, saved.value)
            if not linked.is_ok:
                context.defer(envelope, linked.reason, linked.kind)
                continue
            context.commit(envelope)

    # Commit

    async def _finish(self, context: SyncContext) -> SyncReport:
        committed = await self.provider.commit_changes(context)
        checkpoint = None
        if committed.is_ok:
            checkpoint = committed.value
        else:
            logger.warning("Failed to commit synchronization changes, checkpoint not advanced",
                           mailbox_id=self.mailbox.id, kind=self.kind.value, reason=committed.reason)

        report = context.report(checkpoint)

        try:
            if context.errors:
                first = context.errors[0]
                await self.mailbox_service.record_error(
                    self.mailbox.id, first.error_code or first.kind.value, first.reason
                )
            elif committed.is_ok:
                await self.mailbox_service.clean_up_error(self.mailbox.id)
        except Exception as e:
            logger.error("Failed to update mailbox error state", mailbox_id=self.mailbox.id, error=str(e))

        summary = (f"Synchronization of {self.kind.value} items for {self.mailbox.sender_email_address} "
                   f"finished: {report.counts}, deferred {report.deferred}")
        if context.errors:
            await self.sync_logger.warning(summary, needs_rerun=report.needs_rerun)
        else:
            await self.sync_logger.info(summary, needs_rerun=report.needs_rerun)
        return report

    @staticmethod
    def _error_code(result) -> Optional[str]:
        return result.error.error_code if result.error else None

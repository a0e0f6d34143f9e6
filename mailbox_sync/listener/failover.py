"""
Listener failover
Periodic check that schedules subscription recovery plus a catch-up mail sync for mailboxes the listener lost
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog

from ..config import LEGACY_EMAIL_INTEGRATION, FailoverSettings, FeatureFlags, SyncSettings
from ..models.sync_models import ItemKind, Mailbox, RecoveryJob, SubscriptionState, UserContext, utc_now
from ..providers.base import start_of_day
from ..scheduling import JobScheduler
from .manager import ListenerSubscriptionManager

logger = structlog.get_logger(__name__)

FAILOVER_JOB_NAME = "ListenerServiceFailJob"
SYSTEM_CONTEXT = UserContext(user_id="system", user_name="system")


def failover_period_start(mailbox: Mailbox, default_horizon: timedelta, offset: timedelta,
                          now: Optional[datetime] = None) -> datetime:
    """
    Where a catch-up sync starts

    The later of the last mail checkpoint and the start of the import horizon
    day in the owner's time zone, minus the offset.
    """
    horizon = mailbox.import_from or ((now or utc_now()) - default_horizon)
    candidates = [start_of_day(horizon, mailbox.owner_time_zone)]
    if mailbox.last_sync_date is not None:
        candidates.append(mailbox.last_sync_date)
    return max(candidates) - offset


class ListenerRecoveryHandler:
    """One-shot recovery job body for a single mailbox"""

    def __init__(self, mailbox_service, listener_manager: ListenerSubscriptionManager, sync_runner,
                 feature_flags: Optional[FeatureFlags] = None,
                 settings: Optional[FailoverSettings] = None,
                 sync_settings: Optional[SyncSettings] = None):
        self.mailbox_service = mailbox_service
        self.listener_manager = listener_manager
        self.sync_runner = sync_runner
        self.feature_flags = feature_flags or FeatureFlags()
        self.settings = settings or FailoverSettings()
        self.sync_settings = sync_settings or SyncSettings()

    async def __call__(self, user_context: UserContext, parameters: Dict[str, Any]) -> None:
        await self.handle(parameters["mailbox_id"], user_context)

    async def handle(self, mailbox_id: str, user_context: UserContext) -> None:
        if self.feature_flags.is_enabled(LEGACY_EMAIL_INTEGRATION, user_context.user_id):
            logger.debug("Legacy email integration enabled, recovery skipped", mailbox_id=mailbox_id)
            return

        mailbox = await self.mailbox_service.get_mailbox(mailbox_id)
        await self._restore_subscription(mailbox)
        await self._catch_up(mailbox)

    async def _restore_subscription(self, mailbox: Mailbox) -> None:
        try:
            if await self.listener_manager.is_service_available():
                await self.listener_manager.recreate(mailbox.id)
                logger.info("Listener subscription restored", mailbox_id=mailbox.id)
            else:
                logger.info("Listener service unavailable, subscription not restored", mailbox_id=mailbox.id)
        except Exception as e:
            logger.error("Listener subscription restore failed", mailbox_id=mailbox.id, error=str(e))

    async def _catch_up(self, mailbox: Mailbox) -> None:
        since = failover_period_start(mailbox, self.sync_settings.default_import_horizon,
                                      self.settings.sync_offset)
        try:
            await self.sync_runner.synchronize(mailbox.id, kinds=[ItemKind.EMAIL], since=since)
            logger.info("Catch-up synchronization finished", mailbox_id=mailbox.id, since=since.isoformat())
        except Exception as e:
            logger.error("Catch-up synchronization failed", mailbox_id=mailbox.id, error=str(e))


class FailoverController:
    """
    Periodic listener failover loop

    Each pass finds synchronizable mailboxes without a live subscription and
    schedules one recovery job per mailbox. With FAILOVER_INTERVAL_MINUTES=0
    the loop unschedules its own job group.
    """

    def __init__(self, mailbox_service, listener_manager: ListenerSubscriptionManager,
                 job_scheduler: JobScheduler, recovery_handler: ListenerRecoveryHandler,
                 settings: Optional[FailoverSettings] = None,
                 feature_flags: Optional[FeatureFlags] = None):
        self.mailbox_service = mailbox_service
        self.listener_manager = listener_manager
        self.job_scheduler = job_scheduler
        self.recovery_handler = recovery_handler
        self.settings = settings or FailoverSettings()
        self.feature_flags = feature_flags or FeatureFlags()

    async def start(self) -> bool:
        if self.settings.interval_seconds <= 0:
            await self.job_scheduler.remove_group_jobs(self.settings.job_group)
            logger.warning("Failover interval is 0, failover loop not started")
            return False
        return await self.job_scheduler.schedule_periodic(
            FAILOVER_JOB_NAME, self.settings.job_group, self._run_pass, SYSTEM_CONTEXT,
            lambda: self.settings.interval_seconds,
        )

    async def stop(self) -> None:
        await self.job_scheduler.remove_group_jobs(self.settings.job_group)

    async def _run_pass(self, user_context: UserContext, parameters: Dict[str, Any]) -> None:
        await self.run_once()

    async def run_once(self) -> List[str]:
        """
        One failover pass

        Returns:
            List[str]: Ids of mailboxes a recovery job was scheduled for
        """
        scheduled = []
        try:
            if self.feature_flags.is_enabled(LEGACY_EMAIL_INTEGRATION):
                logger.debug("Legacy email integration enabled, failover pass skipped")
                return scheduled
            mailboxes = await self.get_mailboxes_without_subscription()
            scheduled = await self.schedule_recovery(mailboxes)
        except Exception as e:
            logger.error("Failover pass failed", error=str(e))
        finally:
            if self.settings.interval_seconds <= 0:
                await self.job_scheduler.remove_group_jobs(self.settings.job_group)
                logger.error("Failover interval is 0, failover loop stopped")
            logger.info("Failover pass ended", scheduled=len(scheduled))
        return scheduled

    async def get_mailboxes_without_subscription(self) -> List[Mailbox]:
        mailboxes = await self.mailbox_service.get_all_synchronizable()
        if not mailboxes:
            return []
        if not await self.listener_manager.is_service_available():
            logger.info("Listener service unavailable, all mailboxes need recovery", count=len(mailboxes))
            return mailboxes

        states = await self.listener_manager.get_health([m.id for m in mailboxes])
        filtered = [m for m in mailboxes if states.get(m.id) != SubscriptionState.EXISTS]
        logger.info("Mailboxes filtered by subscription state", total=len(mailboxes), without=len(filtered))
        return filtered

    async def schedule_recovery(self, mailboxes: List[Mailbox]) -> List[str]:
        scheduled = []
        for mailbox in mailboxes:
            job = RecoveryJob(mailbox.id, self.settings.recovery_job_group, mailbox.owner_context)
            if await self.job_scheduler.is_job_pending(job.job_name, job.job_group):
                logger.debug("Recovery job already pending", mailbox_id=mailbox.id)
                continue
            started = await self.job_scheduler.schedule_immediate(
                job.job_name, job.job_group, self.recovery_handler, job.user_context,
                {"mailbox_id": mailbox.id, "sender_email_address": mailbox.sender_email_address},
            )
            if started:
                scheduled.append(mailbox.id)
                logger.debug("Recovery job scheduled", mailbox_id=mailbox.id, user_id=job.user_context.user_id)
        return scheduled

"""
HTTP surface for listener notifications and mailbox operations
"""

from dataclasses import asdict
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, HTTPException, status
from pydantic import BaseModel, Field

from ..mailbox.service import MailboxNotFoundError
from ..models.sync_models import ItemKind, UserContext
from ..scheduling import JobScheduler
from .manager import ListenerActionError, ListenerSubscriptionManager

logger = structlog.get_logger(__name__)

SYNC_JOB_GROUP = "MailboxSync"


class ListenerNotification(BaseModel):
    """Change notification pushed by the listener service"""
    mailbox_id: str
    kind: ItemKind = ItemKind.EMAIL
    item_ids: List[str] = Field(default_factory=list)


class SyncRequest(BaseModel):
    kinds: Optional[List[ItemKind]] = None


class ValidateRequest(BaseModel):
    send_test_message: bool = False


def create_listener_router(mailbox_service, listener_manager: ListenerSubscriptionManager,
                           sync_runner, job_scheduler: JobScheduler, validator) -> APIRouter:
    """Create FastAPI router for listener callbacks and mailbox endpoints"""
    router = APIRouter(tags=["mailboxes"])

    async def process_notification(notification: ListenerNotification) -> None:
        try:
            report = await sync_runner.process_notification(
                notification.mailbox_id, notification.kind, notification.item_ids
            )
            logger.info("Notification processed", mailbox_id=notification.mailbox_id,
                        counts=report.counts, needs_rerun=report.needs_rerun)
        except Exception as e:
            logger.error("Notification processing failed", mailbox_id=notification.mailbox_id, error=str(e))

    async def run_sync_job(user_context: UserContext, parameters: Dict[str, Any]) -> None:
        kinds = parameters.get("kinds")
        reports = await sync_runner.synchronize(
            parameters["mailbox_id"], kinds=[ItemKind(k) for k in kinds] if kinds else None
        )
        logger.info("Manual synchronization finished", mailbox_id=parameters["mailbox_id"],
                    sessions=len(reports), user_id=user_context.user_id)

    async def load_mailbox(mailbox_id: str):
        try:
            return await mailbox_service.get_mailbox(mailbox_id)
        except MailboxNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    @router.post("/listener/notifications", status_code=status.HTTP_202_ACCEPTED)
    async def listener_notification(notification: ListenerNotification, background_tasks: BackgroundTasks):
        """Push notification from the listener service"""
        await load_mailbox(notification.mailbox_id)
        background_tasks.add_task(process_notification, notification)
        return {"accepted": True, "mailbox_id": notification.mailbox_id, "items": len(notification.item_ids)}

    @router.post("/mailboxes/{mailbox_id}/sync", status_code=status.HTTP_202_ACCEPTED)
    async def start_sync(mailbox_id: str, request: Optional[SyncRequest] = None):
        mailbox = await load_mailbox(mailbox_id)
        kinds = [k.value for k in request.kinds] if request and request.kinds else None
        scheduled = await job_scheduler.schedule_immediate(
            f"{mailbox_id}_sync", SYNC_JOB_GROUP, run_sync_job, mailbox.owner_context,
            {"mailbox_id": mailbox_id, "kinds": kinds},
        )
        if not scheduled:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT,
                                detail=f"Synchronization already running for mailbox {mailbox_id}")
        return {"scheduled": True, "mailbox_id": mailbox_id}

    @router.post("/mailboxes/{mailbox_id}/subscription")
    async def recreate_subscription(mailbox_id: str):
        await load_mailbox(mailbox_id)
        try:
            recreated = await listener_manager.recreate(mailbox_id)
        except ListenerActionError as e:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
        return {"mailbox_id": mailbox_id, "recreated": recreated}

    @router.delete("/mailboxes/{mailbox_id}/subscription")
    async def close_subscription(mailbox_id: str):
        await load_mailbox(mailbox_id)
        try:
            closed = await listener_manager.close(mailbox_id)
        except ListenerActionError as e:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
        return {"mailbox_id": mailbox_id, "closed": closed}

    @router.post("/mailboxes/{mailbox_id}/validate")
    async def validate_mailbox(mailbox_id: str, request: Optional[ValidateRequest] = None):
        mailbox = await load_mailbox(mailbox_id)
        result = await validator.validate_synchronization(mailbox)
        response = {"synchronization": asdict(result)}
        if request and request.send_test_message:
            response["email_send"] = asdict(await validator.validate_email_send(mailbox))
        return response

    @router.get("/mailboxes/health")
    async def subscriptions_health():
        """Subscription state of every synchronizable mailbox"""
        mailboxes = await mailbox_service.get_all_synchronizable()
        available = await listener_manager.is_service_available()
        states = await listener_manager.get_health([m.id for m in mailboxes]) if mailboxes else {}
        return {
            "service_available": available,
            "subscriptions": {mailbox_id: state.value for mailbox_id, state in states.items()},
        }

    return router

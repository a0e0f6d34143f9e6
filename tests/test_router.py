"""
Tests for the HTTP surface: notifications, manual sync, subscriptions and health
"""

import asyncio

import httpx
import pytest
from fastapi import FastAPI

from mailbox_sync.listener import ListenerActionError, create_listener_router
from mailbox_sync.listener.router import SYNC_JOB_GROUP
from mailbox_sync.mailbox import MailboxValidator
from mailbox_sync.models.sync_models import ItemKind, SubscriptionState, ValidationResult
from mailbox_sync.scheduling import JobScheduler
from mailbox_sync.utils.error_handler import ErrorCategory


class FakeListenerManager:

    def __init__(self):
        self.recreated = []
        self.error = None

    async def recreate(self, mailbox_id):
        if self.error is not None:
            raise self.error
        self.recreated.append(mailbox_id)
        return True

    async def close(self, mailbox_id):
        return True

    async def validate(self, mailbox):
        return ValidationResult(True, "Credentials accepted")

    async def is_service_available(self):
        return True

    async def get_health(self, mailbox_ids):
        return {mailbox_id: SubscriptionState.EXISTS for mailbox_id in mailbox_ids}


class FakeSyncRunner:

    def __init__(self):
        self.notifications = []
        self.synchronized = []
        self.release = asyncio.Event()
        self.release.set()

    async def process_notification(self, mailbox_id, kind, item_ids):
        self.notifications.append((mailbox_id, kind, list(item_ids)))

        class Report:
            counts = {"update": len(item_ids)}
            needs_rerun = False
        return Report()

    async def synchronize(self, mailbox_id, kinds=None, since=None):
        await self.release.wait()
        self.synchronized.append((mailbox_id, kinds))
        return []


@pytest.fixture
def listener_manager():
    return FakeListenerManager()


@pytest.fixture
def sync_runner():
    return FakeSyncRunner()


@pytest.fixture
async def scheduler():
    scheduler = JobScheduler()
    yield scheduler
    await scheduler.shutdown()


@pytest.fixture
async def client(mailbox_service, listener_manager, sync_runner, scheduler):
    app = FastAPI()
    app.include_router(create_listener_router(
        mailbox_service, listener_manager, sync_runner, scheduler, MailboxValidator(listener_manager)
    ))
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


async def drain(scheduler):
    tasks = [job.task for job in scheduler.get_group_jobs(SYNC_JOB_GROUP) if job.task is not None]
    await asyncio.gather(*tasks, return_exceptions=True)


class TestNotifications:

    @pytest.mark.asyncio
    async def test_notification_accepted_and_processed(self, client, sync_runner, mailbox):
        response = await client.post("/listener/notifications", json={
            "mailbox_id": mailbox.id, "kind": "email", "item_ids": ["item-1", "item-2"],
        })

        assert response.status_code == 202
        assert response.json()["items"] == 2
        assert sync_runner.notifications == [(mailbox.id, ItemKind.EMAIL, ["item-1", "item-2"])]

    @pytest.mark.asyncio
    async def test_unknown_mailbox(self, client):
        response = await client.post("/listener/notifications", json={"mailbox_id": "nope", "item_ids": []})
        assert response.status_code == 404


class TestManualSync:

    @pytest.mark.asyncio
    async def test_sync_scheduled(self, client, scheduler, sync_runner, mailbox):
        response = await client.post(f"/mailboxes/{mailbox.id}/sync", json={"kinds": ["task"]})
        await drain(scheduler)

        assert response.status_code == 202
        assert sync_runner.synchronized == [(mailbox.id, [ItemKind.TASK])]

    @pytest.mark.asyncio
    async def test_second_request_conflicts_while_running(self, client, scheduler, sync_runner, mailbox):
        sync_runner.release.clear()

        first = await client.post(f"/mailboxes/{mailbox.id}/sync")
        second = await client.post(f"/mailboxes/{mailbox.id}/sync")

        assert first.status_code == 202
        assert second.status_code == 409
        sync_runner.release.set()
        await drain(scheduler)


class TestSubscriptions:

    @pytest.mark.asyncio
    async def test_recreate(self, client, listener_manager, mailbox):
        response = await client.post(f"/mailboxes/{mailbox.id}/subscription")

        assert response.json() == {"mailbox_id": mailbox.id, "recreated": True}
        assert listener_manager.recreated == [mailbox.id]

    @pytest.mark.asyncio
    async def test_listener_failure_is_bad_gateway(self, client, listener_manager, mailbox):
        listener_manager.error = ListenerActionError("ConnectError", "connection refused",
                                                     ErrorCategory.NETWORK_ERROR, mailbox.id)

        response = await client.post(f"/mailboxes/{mailbox.id}/subscription")

        assert response.status_code == 502
        assert "ConnectError" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_close(self, client, mailbox):
        response = await client.delete(f"/mailboxes/{mailbox.id}/subscription")
        assert response.json()["closed"] is True

    @pytest.mark.asyncio
    async def test_validate(self, client, mailbox):
        response = await client.post(f"/mailboxes/{mailbox.id}/validate", json={"send_test_message": True})

        body = response.json()
        assert body["synchronization"]["is_valid"] is True
        assert body["email_send"]["message"] == "Mail sending is not configured"

    @pytest.mark.asyncio
    async def test_health(self, client, mailbox):
        response = await client.get("/mailboxes/health")

        assert response.json() == {"service_available": True, "subscriptions": {mailbox.id: "exists"}}

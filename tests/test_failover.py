"""
Tests for listener failover: mailbox selection, recovery scheduling and the recovery job body
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from mailbox_sync.config import LEGACY_EMAIL_INTEGRATION, FailoverSettings, FeatureFlags, SyncSettings
from mailbox_sync.listener.failover import (
    FAILOVER_JOB_NAME,
    FailoverController,
    ListenerRecoveryHandler,
    failover_period_start,
)
from mailbox_sync.models.sync_models import ItemKind, SubscriptionState
from mailbox_sync.scheduling import JobScheduler
from conftest import T0


class FakeListenerManager:
    """Listener manager stand-in with switchable availability and health"""

    def __init__(self):
        self.available = True
        self.health = {}
        self.recreated = []
        self.recreate_error = None

    async def is_service_available(self):
        return self.available

    async def get_health(self, mailbox_ids):
        return {mailbox_id: self.health.get(mailbox_id, SubscriptionState.MISSING) for mailbox_id in mailbox_ids}

    async def recreate(self, mailbox_id):
        if self.recreate_error is not None:
            raise self.recreate_error
        self.recreated.append(mailbox_id)
        return True


class FakeSyncRunner:

    def __init__(self):
        self.calls = []
        self.error = None

    async def synchronize(self, mailbox_id, kinds=None, since=None):
        self.calls.append({"mailbox_id": mailbox_id, "kinds": kinds, "since": since})
        if self.error is not None:
            raise self.error
        return []


@pytest.fixture
def listener_manager():
    return FakeListenerManager()


@pytest.fixture
def sync_runner():
    return FakeSyncRunner()


@pytest.fixture
def feature_flags():
    return FeatureFlags()


@pytest.fixture
def failover_settings():
    return FailoverSettings(interval_minutes=1, sync_offset_minutes=5,
                            job_group="ListenerFailover", recovery_job_group="ListenerRecovery")


@pytest.fixture
def recovery_handler(mailbox_service, listener_manager, sync_runner, feature_flags, failover_settings):
    return ListenerRecoveryHandler(mailbox_service, listener_manager, sync_runner, feature_flags,
                                   failover_settings, SyncSettings(default_import_horizon_days=30))


@pytest.fixture
async def scheduler():
    scheduler = JobScheduler()
    yield scheduler
    await scheduler.shutdown()


@pytest.fixture
def controller(mailbox_service, listener_manager, scheduler, recovery_handler, failover_settings, feature_flags):
    return FailoverController(mailbox_service, listener_manager, scheduler, recovery_handler,
                              failover_settings, feature_flags)


async def add_mailboxes(mailbox_service, make_mailbox, *ids, **overrides):
    return [await mailbox_service.add_mailbox(make_mailbox(mailbox_id, **overrides)) for mailbox_id in ids]


async def drain(scheduler, group="ListenerRecovery"):
    tasks = [job.task for job in scheduler.get_group_jobs(group) if job.task is not None]
    await asyncio.gather(*tasks, return_exceptions=True)


class TestMailboxSelection:
    """Which mailboxes need recovery"""

    @pytest.mark.asyncio
    async def test_service_down_selects_all(self, controller, listener_manager, mailbox_service, make_mailbox):
        await add_mailboxes(mailbox_service, make_mailbox, "mbx-1", "mbx-2")
        listener_manager.available = False
        listener_manager.health = {"mbx-1": SubscriptionState.EXISTS}

        selected = await controller.get_mailboxes_without_subscription()

        assert sorted(m.id for m in selected) == ["mbx-1", "mbx-2"]

    @pytest.mark.asyncio
    async def test_only_missing_subscriptions(self, controller, listener_manager, mailbox_service, make_mailbox):
        await add_mailboxes(mailbox_service, make_mailbox, "mbx-1", "mbx-2", "mbx-3")
        listener_manager.health = {
            "mbx-1": SubscriptionState.EXISTS,
            "mbx-2": SubscriptionState.MISSING,
            "mbx-3": SubscriptionState.UNKNOWN,
        }

        selected = await controller.get_mailboxes_without_subscription()

        assert sorted(m.id for m in selected) == ["mbx-2", "mbx-3"]

    @pytest.mark.asyncio
    async def test_stopped_mailboxes_ignored(self, controller, mailbox_service, make_mailbox):
        await add_mailboxes(mailbox_service, make_mailbox, "mbx-off", synchronization_stopped=True)

        assert await controller.get_mailboxes_without_subscription() == []


class TestFailoverPass:
    """Periodic pass scheduling"""

    @pytest.mark.asyncio
    async def test_pass_schedules_one_job_per_mailbox(self, controller, scheduler, sync_runner,
                                                      listener_manager, mailbox_service, make_mailbox):
        await add_mailboxes(mailbox_service, make_mailbox, "mbx-1", "mbx-2")

        scheduled = await controller.run_once()
        await drain(scheduler)

        assert sorted(scheduled) == ["mbx-1", "mbx-2"]
        assert sorted(listener_manager.recreated) == ["mbx-1", "mbx-2"]
        assert all(call["kinds"] == [ItemKind.EMAIL] for call in sync_runner.calls)

    @pytest.mark.asyncio
    async def test_pending_recovery_not_duplicated(self, controller, scheduler, mailbox_service, make_mailbox):
        await add_mailboxes(mailbox_service, make_mailbox, "mbx-1")
        release = asyncio.Event()

        async def slow(user_context, parameters):
            await release.wait()

        assert await scheduler.schedule_immediate("mbx-1_ListenerRecovery", "ListenerRecovery", slow,
                                                  make_mailbox().owner_context)

        assert await controller.run_once() == []

        release.set()
        await drain(scheduler)

    @pytest.mark.asyncio
    async def test_recovery_runs_under_owner_context(self, controller, scheduler, mailbox_service, make_mailbox):
        await add_mailboxes(mailbox_service, make_mailbox, "mbx-1", owner_id="user-42")
        release = asyncio.Event()
        controller.recovery_handler = lambda user_context, parameters: release.wait()

        await controller.run_once()
        [job] = scheduler.get_group_jobs("ListenerRecovery")

        assert job.name == "mbx-1_ListenerRecovery"
        assert job.user_context.user_id == "user-42"
        assert job.parameters == {"mailbox_id": "mbx-1", "sender_email_address": "mbx-1@contoso.com"}
        release.set()
        await drain(scheduler)

    @pytest.mark.asyncio
    async def test_legacy_flag_skips_pass(self, controller, feature_flags, mailbox_service, make_mailbox):
        await add_mailboxes(mailbox_service, make_mailbox, "mbx-1")
        feature_flags.set_enabled(LEGACY_EMAIL_INTEGRATION, True)

        assert await controller.run_once() == []

    @pytest.mark.asyncio
    async def test_pass_failure_is_contained(self, controller, mailbox_service):
        async def broken():
            raise RuntimeError("database down")

        mailbox_service.get_all_synchronizable = broken

        assert await controller.run_once() == []


class TestFailoverLoop:
    """Start, stop and interval 0"""

    @pytest.mark.asyncio
    async def test_start_registers_periodic_job(self, controller, scheduler):
        assert await controller.start() is True
        assert scheduler.does_job_exist(FAILOVER_JOB_NAME, "ListenerFailover")
        assert await controller.start() is False

        await controller.stop()
        assert not scheduler.does_job_exist(FAILOVER_JOB_NAME, "ListenerFailover")

    @pytest.mark.asyncio
    async def test_zero_interval_unschedules(self, controller, scheduler, failover_settings):
        assert await controller.start() is True
        failover_settings.interval_minutes = 0

        await controller.run_once()

        assert scheduler.get_group_jobs("ListenerFailover") == []
        assert await controller.start() is False


class TestRecoveryHandler:
    """Restore the subscription, then catch up on mail"""

    @pytest.mark.asyncio
    async def test_recreates_and_catches_up(self, recovery_handler, listener_manager, sync_runner,
                                            mailbox, make_mailbox):
        await recovery_handler(make_mailbox().owner_context, {"mailbox_id": mailbox.id})

        assert listener_manager.recreated == [mailbox.id]
        [call] = sync_runner.calls
        assert call["kinds"] == [ItemKind.EMAIL]
        assert call["since"] == T0 - timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_service_down_still_catches_up(self, recovery_handler, listener_manager, sync_runner,
                                                 mailbox, make_mailbox):
        listener_manager.available = False

        await recovery_handler.handle(mailbox.id, make_mailbox().owner_context)

        assert listener_manager.recreated == []
        assert len(sync_runner.calls) == 1

    @pytest.mark.asyncio
    async def test_recreate_failure_does_not_block_sync(self, recovery_handler, listener_manager,
                                                        sync_runner, mailbox, make_mailbox):
        listener_manager.recreate_error = RuntimeError("listener rejected credentials")

        await recovery_handler.handle(mailbox.id, make_mailbox().owner_context)

        assert len(sync_runner.calls) == 1

    @pytest.mark.asyncio
    async def test_sync_failure_is_logged_not_raised(self, recovery_handler, sync_runner, mailbox, make_mailbox):
        sync_runner.error = RuntimeError("backend down")

        await recovery_handler.handle(mailbox.id, make_mailbox().owner_context)

    @pytest.mark.asyncio
    async def test_legacy_user_skipped(self, recovery_handler, feature_flags, listener_manager,
                                       sync_runner, mailbox, make_mailbox):
        feature_flags.set_enabled(LEGACY_EMAIL_INTEGRATION, True, user_id=mailbox.owner_id)

        await recovery_handler.handle(mailbox.id, make_mailbox().owner_context)

        assert listener_manager.recreated == []
        assert sync_runner.calls == []


class TestFailoverPeriodStart:
    """Catch-up window start"""

    def test_last_sync_wins_when_later(self, make_mailbox):
        mailbox = make_mailbox()
        assert failover_period_start(mailbox, timedelta(days=30), timedelta(minutes=5)) == T0 - timedelta(minutes=5)

    def test_import_day_start_in_owner_zone(self, make_mailbox):
        mailbox = make_mailbox(owner_time_zone="Europe/Berlin", checkpoints={},
                               import_from=datetime(2024, 3, 4, 12, 0, tzinfo=timezone.utc))

        start = failover_period_start(mailbox, timedelta(days=30), timedelta(minutes=5))

        assert start == datetime(2024, 3, 3, 23, 0, tzinfo=timezone.utc) - timedelta(minutes=5)

    def test_default_horizon_without_import_date(self, make_mailbox):
        mailbox = make_mailbox(import_from=None, checkpoints={})
        now = datetime(2024, 3, 31, 15, 0, tzinfo=timezone.utc)

        start = failover_period_start(mailbox, timedelta(days=30), timedelta(0), now=now)

        assert start == datetime(2024, 3, 1, tzinfo=timezone.utc)

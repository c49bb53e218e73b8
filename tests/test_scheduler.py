import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from subscription_engine import Scheduler, create_billing_client
from subscription_engine.changefeed import SubscriptionChangeFeed
from subscription_engine.config import SchedulerConfig, get_settings
from subscription_engine.exceptions import DatabaseError
from subscription_engine.notifications import NotificationDispatcher
from subscription_engine.models import (
    IntentKind,
    PlanCreate,
    ReminderIntent,
    ReminderReason,
    SubscriptionStatus,
    TransitionIntent,
)

pytestmark = pytest.mark.asyncio

JAN_1 = datetime(2025, 1, 1, 8, 0, tzinfo=timezone.utc)


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    async def send(self, notice) -> None:
        self.sent.append(notice)


@pytest_asyncio.fixture
async def recorder():
    return RecordingNotifier()


@pytest_asyncio.fixture
async def client(db_engine, recorder):
    client = create_billing_client(notifier=recorder)
    client.dispatcher.start()
    yield client
    await client.aclose()


async def test_tick_expires_trial_and_is_idempotent(client, recorder):
    """A trial past its end with no payment on file expires once; a second tick changes nothing."""
    # --- ARRANGE ---
    tenant = await client.create_tenant("Trial Cafe")
    plan = await client.create_plan(_plan("Trial Plan", trial_days=14))
    trial = await client.create_subscription(tenant.id, plan.plan_id, now=JAN_1)
    scheduler = Scheduler(client, SchedulerConfig(max_parallel_tenants=2))
    now = trial.trial_end + timedelta(days=1)

    # --- ACT ---
    first = await scheduler.run_tick(now)
    second = await scheduler.run_tick(now)
    await client.dispatcher.drain()

    # --- ASSERT ---
    assert first == {"tenants": 1, "transitioned": 1, "reminders": 0, "failed": 0}
    assert second["tenants"] == 0
    record = await client.get_current(tenant.id)
    assert record.status is SubscriptionStatus.expired
    assert [n.kind for n in recorder.sent if isinstance(n, TransitionIntent)] == [IntentKind.trial_expired]


async def test_reminder_sent_once_per_day(client, recorder):
    tenant = await client.create_tenant("Reminder Grill")
    plan = await client.create_plan(_plan("Reminder Plan", trial_days=14))
    trial = await client.create_subscription(tenant.id, plan.plan_id, now=JAN_1)
    scheduler = Scheduler(client)
    seven_days_before = trial.trial_end - timedelta(days=7)

    first = await scheduler.run_tick(seven_days_before)
    later_same_day = await scheduler.run_tick(seven_days_before + timedelta(hours=2))
    await client.dispatcher.drain()

    reminders = [n for n in recorder.sent if isinstance(n, ReminderIntent)]
    assert first["reminders"] == 1
    assert later_same_day["reminders"] == 0
    assert len(reminders) == 1
    assert reminders[0].threshold_days == 7
    assert reminders[0].reason_code is ReminderReason.trial_expiring


async def test_active_lapse_runs_through_grace_to_expiry(client):
    tenant = await client.create_tenant("Grace Bar")
    plan = await client.create_plan(_plan("Grace Plan", trial_days=3))
    trial = await client.create_subscription(tenant.id, plan.plan_id, now=JAN_1)
    # Convert the trial by marking a payment method on file.
    async def attach(session):
        record = await client.subscriptions.get_current_for_tenant_in_session(session, tenant.id)
        return await client.subscriptions.save_in_session(session, record.evolve(payment_on_file=True))
    await client.transactor.run(tenant.id, attach)

    converted = await client.tick_tenant(tenant.id, trial.trial_end)
    lapsed = await client.tick_tenant(tenant.id, converted.record.current_period_end + timedelta(days=1))
    expired = await client.tick_tenant(tenant.id, converted.record.current_period_end + timedelta(days=8))

    assert converted.record.status is SubscriptionStatus.active
    assert lapsed.record.status is SubscriptionStatus.past_due
    assert lapsed.record.grace_period_end - lapsed.record.current_period_end == timedelta(days=7)
    assert expired.record.status is SubscriptionStatus.expired
    assert expired.record.grace_period_end is None


async def test_change_feed_announces_subscription_writes(client):
    tenant = await client.create_tenant("Feed Diner")
    plan = await client.create_plan(_plan("Feed Plan"))

    async with SubscriptionChangeFeed(get_settings().postgres.get_raw_dsn()) as feed:
        record = await client.create_subscription(tenant.id, plan.plan_id, now=JAN_1)
        change = await feed.get(timeout=5)

    assert change["subscription_id"] == str(record.id)
    assert change["tenant_id"] == str(tenant.id)
    assert change["status"] == "trialing"


async def test_dropped_reminder_is_not_counted_and_stays_due(db_engine, recorder):
    """A reminder the full queue refused is retried later the same day."""
    # --- ARRANGE ---
    client = create_billing_client(notifier=recorder)
    client.dispatcher = NotificationDispatcher(recorder, queue_size=1)
    try:
        tenant = await client.create_tenant("Busy Bistro")
        plan = await client.create_plan(_plan("Busy Plan", trial_days=14))
        trial = await client.create_subscription(tenant.id, plan.plan_id, now=JAN_1)
        seven_days_before = trial.trial_end - timedelta(days=7)
        client.dispatcher.enqueue(ReminderIntent(tenant_id=tenant.id, threshold_days=14,
                                                 reason_code=ReminderReason.trial_expiring))
        scheduler = Scheduler(client)

        # --- ACT ---
        while_full = await scheduler.run_tick(seven_days_before)
        logged_while_full = await client.reminders.was_notified(tenant.id, seven_days_before.date())
        await client.dispatcher.drain()
        retried = await scheduler.run_tick(seven_days_before + timedelta(hours=1))
        await client.dispatcher.drain()
    finally:
        await client.aclose()

    # --- ASSERT ---
    assert while_full["reminders"] == 0
    assert logged_while_full is False
    assert client.dispatcher.dropped == 1
    assert retried["reminders"] == 1
    assert [n.threshold_days for n in recorder.sent] == [14, 7]


class _FlakyStore:
    """Fails the first tenant listing, then asks the loop to stop."""

    def __init__(self, stop):
        self.stop = stop
        self.calls = 0

    async def list_tenants_to_tick(self):
        self.calls += 1
        if self.calls == 1:
            raise DatabaseError("connection reset")
        self.stop.set()
        return []


class _StubClient:
    def __init__(self, stop):
        self.subscriptions = _FlakyStore(stop)
        self.dispatcher = NotificationDispatcher()


async def test_scheduler_loop_survives_a_failed_tick():
    stop = asyncio.Event()
    stub = _StubClient(stop)
    scheduler = Scheduler(stub, SchedulerConfig(interval_seconds=1))

    await asyncio.wait_for(scheduler.run_forever(stop), timeout=10)
    await stub.dispatcher.stop()

    assert stub.subscriptions.calls == 2


def _plan(name, trial_days=14):
    return PlanCreate(name=name, price=10000, currency="RWF", trial_days=trial_days)

import asyncio
from uuid import uuid4

import pytest

from subscription_engine.notifications import NotificationDispatcher
from subscription_engine.models import ReminderIntent, ReminderReason

pytestmark = pytest.mark.asyncio


def _reminder(days=7) -> ReminderIntent:
    return ReminderIntent(tenant_id=uuid4(), threshold_days=days, reason_code=ReminderReason.subscription_expiring)


class FlakyNotifier:
    def __init__(self):
        self.sent = []

    async def send(self, notice) -> None:
        if notice.threshold_days == 3:
            raise RuntimeError("SMTP down")
        self.sent.append(notice)


async def test_full_queue_drops_instead_of_blocking():
    dispatcher = NotificationDispatcher(queue_size=2)

    accepted = [dispatcher.enqueue(_reminder()) for _ in range(3)]

    assert accepted == [True, True, False]
    assert dispatcher.dropped == 1
    assert dispatcher.pending == 2


async def test_worker_survives_a_failed_delivery():
    """A notifier error is logged and the next notice is still delivered."""
    notifier = FlakyNotifier()
    dispatcher = NotificationDispatcher(notifier)
    dispatcher.start()

    dispatcher.enqueue(_reminder(3))
    dispatcher.enqueue(_reminder(1))
    await asyncio.wait_for(dispatcher.drain(), timeout=2)
    await dispatcher.stop()

    assert [n.threshold_days for n in notifier.sent] == [1]

# subscription_engine/notifications.py

import asyncio
import logging
from typing import Optional, Protocol, Union

from subscription_engine.models.notification import ReminderIntent
from subscription_engine.models.subscription import TransitionIntent

logger = logging.getLogger(__name__)

Notice = Union[ReminderIntent, TransitionIntent]


class Notifier(Protocol):
    """Delivery collaborator (email, WhatsApp, ...). Message content is its business."""

    async def send(self, notice: Notice) -> None: ...


class LoggingNotifier:
    async def send(self, notice: Notice) -> None:
        if isinstance(notice, ReminderIntent):
            logger.info(f"Reminder for tenant {notice.tenant_id}: {notice.reason_code.value}, "
                        f"{notice.threshold_days} day(s) left")
        else:
            logger.info(f"Subscription {notice.subscription_id} {notice.kind.value}: "
                        f"{notice.from_status.value} -> {notice.to_status.value}")


class NotificationDispatcher:
    """
    Bounded in-memory queue in front of the notifier.

    enqueue() never blocks, so webhook and tick processing never wait on
    delivery. When the queue is full the notice is dropped and logged.
    """

    def __init__(self, notifier: Optional[Notifier] = None, queue_size: int = 1000):
        self._notifier = notifier or LoggingNotifier()
        self._queue: asyncio.Queue[Notice] = asyncio.Queue(maxsize=queue_size)
        self._worker: Optional[asyncio.Task] = None
        self.dropped = 0

    def enqueue(self, notice: Notice) -> bool:
        try:
            self._queue.put_nowait(notice)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Notification queue full, dropping notice for tenant {notice.tenant_id}")
            return False

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="notification-dispatcher")

    async def _run(self) -> None:
        while True:
            notice = await self._queue.get()
            try:
                await self._notifier.send(notice)
            except Exception:
                # One failed delivery must not stop the worker.
                logger.exception(f"Failed to deliver notice for tenant {notice.tenant_id}")
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Waits until everything queued so far has been handed to the notifier."""
        if self._worker is None:
            self.start()
        await self._queue.join()

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

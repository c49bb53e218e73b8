# subscription_engine/scheduler.py

import asyncio
import logging
from collections import Counter
from datetime import datetime
from typing import Optional
from uuid import UUID

from subscription_engine.client import BillingClient
from subscription_engine.config import SchedulerConfig
from subscription_engine.exceptions import BillingEngineError
from subscription_engine.models.subscription import ensure_utc, utcnow

logger = logging.getLogger(__name__)


class Scheduler:
    """
    Periodic driver for the time-based rules.

    One tick advances every tenant that still has a live subscription,
    at most `max_parallel_tenants` at a time, then asks the reminder
    generator about the resulting record. Ticks are idempotent: running
    one twice with the same `now` changes nothing the second time.
    """

    def __init__(self, client: BillingClient, config: SchedulerConfig | None = None):
        self._client = client
        self._config = config or SchedulerConfig()

    async def run_tick(self, now: Optional[datetime] = None) -> dict[str, int]:
        now = ensure_utc(now) if now else utcnow()
        tenant_ids = await self._client.subscriptions.list_tenants_to_tick()
        semaphore = asyncio.Semaphore(self._config.max_parallel_tenants)
        counters: Counter = Counter()

        async def tick_one(tenant_id: UUID) -> None:
            async with semaphore:
                try:
                    result = await self._client.tick_tenant(tenant_id, now)
                    if result is None:
                        return
                    if result.changed:
                        counters["transitioned"] += 1
                    if await self._client.collect_reminder(result.record, now) is not None:
                        counters["reminders"] += 1
                except BillingEngineError as e:
                    # The tenant is retried on the next tick.
                    counters["failed"] += 1
                    logger.error(f"Tick failed for tenant {tenant_id}: {e}")

        await asyncio.gather(*(tick_one(t) for t in tenant_ids))
        summary = {
            "tenants": len(tenant_ids),
            "transitioned": counters["transitioned"],
            "reminders": counters["reminders"],
            "failed": counters["failed"],
        }
        logger.info(f"Scheduler tick at {now.isoformat()}: {summary}")
        return summary

    async def run_forever(self, stop: Optional[asyncio.Event] = None) -> None:
        stop = stop or asyncio.Event()
        self._client.dispatcher.start()
        logger.info(f"Scheduler started, interval {self._config.interval_seconds}s")
        while not stop.is_set():
            try:
                await self.run_tick()
            except BillingEngineError:
                # The next tick picks the same tenants up again.
                logger.exception("Scheduler tick failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._config.interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Scheduler stopped")

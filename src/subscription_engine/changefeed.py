# subscription_engine/changefeed.py

import asyncio
import json
import logging
from typing import Any, Optional

import asyncpg

from subscription_engine.db.triggers import SUBSCRIPTION_CHANNEL

logger = logging.getLogger(__name__)


class SubscriptionChangeFeed:
    """
    LISTENs on the channel the subscriptions trigger notifies.

        async with SubscriptionChangeFeed(dsn) as feed:
            async for change in feed:
                ...  # {"subscription_id", "tenant_id", "status", "version"}
    """

    def __init__(self, dsn: str, channel: str = SUBSCRIPTION_CHANNEL):
        self._dsn = dsn
        self._channel = channel
        self._conn: Optional[asyncpg.Connection] = None
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

    def _on_notify(self, connection, pid: int, channel: str, payload: str) -> None:
        try:
            self._queue.put_nowait(json.loads(payload))
        except json.JSONDecodeError:
            logger.warning(f"Ignoring malformed notification on '{channel}': {payload!r}")

    async def __aenter__(self) -> "SubscriptionChangeFeed":
        self._conn = await asyncpg.connect(self._dsn)
        await self._conn.add_listener(self._channel, self._on_notify)
        logger.info(f"Listening on '{self._channel}'")
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._conn is not None:
            await self._conn.remove_listener(self._channel, self._on_notify)
            await self._conn.close()
            self._conn = None

    def __aiter__(self):
        return self

    async def __anext__(self) -> dict[str, Any]:
        if self._conn is None:
            raise StopAsyncIteration
        return await self._queue.get()

    async def get(self, timeout: float | None = None) -> dict[str, Any]:
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

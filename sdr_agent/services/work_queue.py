"""Durable work queue on Redis lists (reliable-queue pattern).

Layout for ``QUEUE_NAME = "whatsapp_messages"``:

  whatsapp_messages                          pending units (LPUSH in, oldest at the right)
  whatsapp_messages:processing:<worker_id>   the unit a worker is handling right now
  whatsapp_messages_dlq                      units whose handler raised

A worker takes one unit at a time with ``BLMOVE`` into its own in-flight
list, so it never holds a second unit before the first is settled.  On
success the unit is removed from the in-flight list; on failure a record
``{unit, error, failed_at}`` goes to the dead-letter list first.  A worker
that crashes leaves its unit in the in-flight list and moves it back onto
the main queue on its next start (at-least-once delivery).
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from sdr_agent.config import QUEUE_NAME, QUEUE_RECONNECT_SECONDS, REDIS_URL, WORKER_ID
from sdr_agent.services.metrics import metrics

logger = logging.getLogger(__name__)

BLOCK_TIMEOUT_SECONDS = 1


@dataclass(frozen=True)
class WorkUnit:
    """One coalesced conversational turn from one contact.

    ``from_self`` marks an operator control command typed on the bot's own
    phone; such units are never merged with the contact's text.
    """

    instance: str
    phone: str
    text: str
    name: str | None
    message_id: str
    timestamp_ms: int
    from_self: bool = False

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: str) -> WorkUnit:
        data = json.loads(raw)
        return cls(
            instance=data["instance"],
            phone=data["phone"],
            text=data["text"],
            name=data.get("name"),
            message_id=data["message_id"],
            timestamp_ms=int(data.get("timestamp_ms", 0)),
            from_self=bool(data.get("from_self", False)),
        )


Handler = Callable[[WorkUnit], Awaitable[None]]


class WorkQueue:
    def __init__(
        self,
        redis_url: str = REDIS_URL,
        queue_name: str = QUEUE_NAME,
        worker_id: str = WORKER_ID,
        *,
        client: Any = None,
        reconnect_seconds: float = QUEUE_RECONNECT_SECONDS,
    ):
        self.queue_name = queue_name
        self.dlq_name = f"{queue_name}_dlq"
        self.processing_name = f"{queue_name}:processing:{worker_id}"
        self._client = client or aioredis.from_url(redis_url, decode_responses=True)
        self._reconnect_seconds = reconnect_seconds
        self._connected = False
        self._reconnect_task: asyncio.Task | None = None
        self._closing = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    # ── Connection lifecycle ─────────────────────────────────────────

    async def connect(self) -> bool:
        """Ping the broker.  On failure keep retrying in the background."""
        try:
            await self._client.ping()
        except (RedisError, OSError) as exc:
            logger.error("Queue broker unavailable: %s", exc)
            self._mark_disconnected()
            return False
        self._connected = True
        logger.info("Connected to queue broker (%s)", self.queue_name)
        return True

    def _mark_disconnected(self) -> None:
        self._connected = False
        if self._closing:
            return
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        while not self._connected and not self._closing:
            await asyncio.sleep(self._reconnect_seconds)
            try:
                await self._client.ping()
            except (RedisError, OSError) as exc:
                logger.warning("Queue reconnect failed (%s); retrying in %.0fs",
                               exc, self._reconnect_seconds)
                continue
            self._connected = True
            logger.info("Reconnected to queue broker")

    async def close(self) -> None:
        self._closing = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
        try:
            await self._client.aclose()
        except (RedisError, OSError) as exc:
            logger.warning("Error closing queue broker connection: %s", exc)
        self._connected = False
        logger.info("Queue broker connection closed")

    # ── Producer side ────────────────────────────────────────────────

    async def publish(self, unit: WorkUnit) -> bool:
        """Enqueue *unit*.  ``False`` means it was not delivered."""
        if not self._connected:
            logger.error("Queue not connected; unit %s for %s not published",
                         unit.message_id, unit.phone)
            metrics.record_failure("queue", "publish", error_type="not_connected")
            return False
        try:
            with metrics.track("queue", "publish"):
                await self._client.lpush(self.queue_name, unit.to_json())
        except (RedisError, OSError) as exc:
            logger.error("Failed to publish unit for %s: %s", unit.phone, exc)
            self._mark_disconnected()
            return False
        logger.info("Unit queued: %s@%s", unit.phone, unit.instance)
        return True

    # ── Consumer side ────────────────────────────────────────────────

    async def requeue_in_flight(self) -> int:
        """Move whatever this worker left in flight back onto the main queue."""
        moved = 0
        while await self._client.lmove(
            self.processing_name, self.queue_name, src="RIGHT", dest="RIGHT",
        ):
            moved += 1
        if moved:
            logger.warning("Requeued %d in-flight unit(s) from %s", moved, self.processing_name)
        return moved

    async def consume(self, handler: Handler, stop: asyncio.Event | None = None) -> None:
        """Deliver units to *handler* one at a time until *stop* is set."""
        stop = stop or asyncio.Event()
        logger.info("Consumer started on %s", self.queue_name)
        while not stop.is_set():
            if not self._connected:
                # The reconnect loop flips this back
                await asyncio.sleep(self._reconnect_seconds)
                continue
            try:
                raw = await self._client.blmove(
                    self.queue_name,
                    self.processing_name,
                    BLOCK_TIMEOUT_SECONDS,
                    src="RIGHT",
                    dest="LEFT",
                )
                if raw is None:
                    continue
                await self._settle(raw, handler)
            except (RedisError, OSError) as exc:
                logger.error("Queue broker error while consuming: %s", exc)
                self._mark_disconnected()
        logger.info("Consumer stopped")

    async def _settle(self, raw: str, handler: Handler) -> None:
        try:
            unit = WorkUnit.from_json(raw)
            logger.info("Processing unit from %s@%s", unit.phone, unit.instance)
            await handler(unit)
        except Exception as exc:
            logger.exception("Unit failed; moving to %s", self.dlq_name)
            record = {
                "unit": raw,
                "error": f"{type(exc).__name__}: {exc}",
                "failed_at": datetime.now(UTC).isoformat(),
            }
            await self._client.lpush(self.dlq_name, json.dumps(record, ensure_ascii=False))
            await self._client.lrem(self.processing_name, 1, raw)
            metrics.record_count("Queue/DeadLettered", Queue=self.queue_name)
            return
        await self._client.lrem(self.processing_name, 1, raw)
        metrics.record_count("Queue/Processed", Queue=self.queue_name)

    # ── Introspection ────────────────────────────────────────────────

    async def status(self) -> dict[str, Any]:
        if not self._connected:
            return {"connected": False}
        try:
            return {
                "connected": True,
                "queued": await self._client.llen(self.queue_name),
                "dead_lettered": await self._client.llen(self.dlq_name),
                "in_flight": await self._client.llen(self.processing_name),
            }
        except (RedisError, OSError) as exc:
            logger.warning("Queue status unavailable: %s", exc)
            return {"connected": False}

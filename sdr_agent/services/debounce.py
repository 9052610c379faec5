"""Per-contact debounce buffer.

People type in bursts ("oi" / "tudo bem?" / "quero agendar").  Instead of
answering each fragment, fragments for the same (instance, phone) are held
until nobody has written for ``delay`` seconds and then published to the
work queue as a single ``WorkUnit``.

Every new fragment resets the timer.  ``drain()`` flushes everything that
is still buffered and must be awaited on shutdown.  Buffered fragments do
not survive a process crash.

Operator commands (`from_self`) are never buffered: the contact's pending
fragments are flushed first and the command follows as a unit of its own.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from sdr_agent.config import DEBOUNCE_DELAY_SECONDS
from sdr_agent.services.normalizer import OPERATOR_NAME, InboundMessage
from sdr_agent.services.work_queue import WorkUnit

logger = logging.getLogger(__name__)

Publisher = Callable[[WorkUnit], Awaitable[bool]]


@dataclass
class _Pending:
    instance: str
    phone: str
    first_timestamp_ms: int
    name: str | None = None
    texts: list[str] = field(default_factory=list)
    message_ids: list[str] = field(default_factory=list)
    timer: asyncio.TimerHandle | None = None


class DebounceCoalescer:
    """Owns the pending buffer.  Must be used from a single event loop."""

    def __init__(self, publish: Publisher, delay: float = DEBOUNCE_DELAY_SECONDS):
        self._publish = publish
        self._delay = delay
        self._pending: dict[tuple[str, str], _Pending] = {}
        self._flush_tasks: set[asyncio.Task] = set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def add(self, message: InboundMessage) -> None:
        key = (message.instance, message.phone)
        if message.from_self:
            buffered = self._take(key)
            task = asyncio.get_running_loop().create_task(self._publish_command(buffered, message))
            self._track(task)
            return

        entry = self._pending.get(key)
        if entry is None:
            entry = _Pending(
                instance=message.instance,
                phone=message.phone,
                first_timestamp_ms=message.timestamp_ms,
            )
            self._pending[key] = entry
            logger.info("New message from %s, waiting %.1fs", message.phone, self._delay)
        else:
            entry.timer.cancel()
            logger.info("Message buffered for %s (%d so far)", message.phone, len(entry.texts) + 1)

        entry.texts.append(message.text)
        entry.message_ids.append(message.message_id)
        if message.name and message.name != OPERATOR_NAME and not entry.name:
            entry.name = message.name

        loop = asyncio.get_running_loop()
        entry.timer = loop.call_later(self._delay, self._schedule_flush, key)

    def _track(self, task: asyncio.Task) -> None:
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    def _schedule_flush(self, key: tuple[str, str]) -> None:
        self._track(asyncio.get_running_loop().create_task(self._flush(key)))

    async def _publish_command(self, buffered: _Pending | None, message: InboundMessage) -> None:
        # What the contact typed before the command is handled before it
        if buffered is not None:
            await self._publish_entry(buffered)
        unit = WorkUnit(
            instance=message.instance,
            phone=message.phone,
            text=message.text,
            name=None,
            message_id=message.message_id,
            timestamp_ms=message.timestamp_ms,
            from_self=True,
        )
        logger.info("Operator command %r for %s queued", message.text, message.phone)
        if not await self._publish(unit):
            logger.error("Failed to queue operator command for %s", message.phone)

    def _take(self, key: tuple[str, str]) -> _Pending | None:
        entry = self._pending.pop(key, None)
        if entry is not None and entry.timer is not None:
            entry.timer.cancel()
        return entry

    async def _flush(self, key: tuple[str, str]) -> None:
        entry = self._take(key)
        if entry is not None:
            await self._publish_entry(entry)

    async def _publish_entry(self, entry: _Pending) -> None:
        unit = WorkUnit(
            instance=entry.instance,
            phone=entry.phone,
            text="\n".join(entry.texts),
            name=entry.name,
            message_id="_".join(entry.message_ids),
            timestamp_ms=entry.first_timestamp_ms,
        )
        logger.info("Flushing %d message(s) from %s", len(entry.texts), entry.phone)
        if not await self._publish(unit):
            logger.error("Failed to queue messages from %s; unit %s dropped",
                         entry.phone, unit.message_id)

    async def drain(self) -> None:
        """Flush every pending entry now and wait for in-progress flushes."""
        if self._pending:
            logger.info("Draining %d pending contact(s)", len(self._pending))
        for key in list(self._pending):
            await self._flush(key)
        if self._flush_tasks:
            await asyncio.gather(*self._flush_tasks, return_exceptions=True)

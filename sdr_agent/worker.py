"""Queue consumer: one coalesced turn at a time, replies via WhatsApp.

Run with:
    python -m sdr_agent.worker

Start any number of these; give each a distinct ``WORKER_ID`` so their
in-flight lists do not collide.  On start a worker moves whatever it left
in flight (a crash mid-unit) back onto the main queue.
"""

from __future__ import annotations

import asyncio
import logging
import signal

from sdr_agent.bootstrap import Components, build_components
from sdr_agent.config import QUEUE_RECONNECT_SECONDS
from sdr_agent.services.metrics import metrics
from sdr_agent.services.work_queue import WorkQueue, WorkUnit

logger = logging.getLogger(__name__)


def make_handler(components: Components):
    """The unit handler.  Anything it raises dead-letters the unit."""

    async def handle(unit: WorkUnit) -> None:
        reply = await asyncio.to_thread(components.processor.process, unit)
        if reply:
            await asyncio.to_thread(
                components.whatsapp.send_text, unit.instance, unit.phone, reply,
            )

    return handle


async def run(components: Components, queue: WorkQueue) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    if not await queue.connect():
        # The queue reconnects in the background
        while not queue.is_connected and not stop.is_set():
            await asyncio.sleep(QUEUE_RECONNECT_SECONDS)
    if queue.is_connected:
        await queue.requeue_in_flight()
    try:
        await queue.consume(make_handler(components), stop)
    finally:
        await queue.close()


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    components = build_components()
    queue = WorkQueue()
    logger.info("Worker starting on %s", queue.processing_name)
    try:
        asyncio.run(run(components, queue))
    finally:
        components.close()
        metrics.flush()
    logger.info("Worker stopped")


if __name__ == "__main__":
    main()

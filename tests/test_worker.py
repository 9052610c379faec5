"""Tests for the queue consumer wiring."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from sdr_agent.services.work_queue import WorkQueue, WorkUnit
from sdr_agent.worker import make_handler


def _unit(text="Oi"):
    return WorkUnit(
        instance="chat2", phone="5511999990000", text=text, name="Maria",
        message_id="M1", timestamp_ms=1,
    )


@pytest.fixture
def components():
    components = MagicMock()
    components.processor.process.return_value = "Olá!"
    return components


class TestHandler:
    def test_reply_goes_out_through_the_same_instance(self, components):
        asyncio.run(make_handler(components)(_unit()))
        components.whatsapp.send_text.assert_called_once_with("chat2", "5511999990000", "Olá!")

    def test_no_reply_sends_nothing(self, components):
        components.processor.process.return_value = None
        asyncio.run(make_handler(components)(_unit(".")))
        components.whatsapp.send_text.assert_not_called()

    def test_send_failure_propagates(self, components):
        components.whatsapp.send_text.side_effect = RuntimeError("instance offline")
        with pytest.raises(RuntimeError):
            asyncio.run(make_handler(components)(_unit()))

    def test_failed_unit_is_dead_lettered(self, components, fake_redis):
        components.processor.process.side_effect = RuntimeError("database down")

        async def scenario():
            queue = WorkQueue("redis://unused", "q", "w1", client=fake_redis)
            await queue.connect()
            await queue.publish(_unit())
            stop = asyncio.Event()

            async def watch():
                while fake_redis.lists.get("q") or fake_redis.lists.get(queue.processing_name):
                    await asyncio.sleep(0.001)
                stop.set()

            watcher = asyncio.create_task(watch())
            await asyncio.wait_for(queue.consume(make_handler(components), stop), timeout=2)
            await watcher
            return await queue.status()

        assert asyncio.run(scenario())["dead_lettered"] == 1
        components.whatsapp.send_text.assert_not_called()

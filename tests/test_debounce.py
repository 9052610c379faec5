"""Tests for the per-contact debounce buffer."""

from __future__ import annotations

import asyncio

from sdr_agent.services.debounce import DebounceCoalescer
from sdr_agent.services.normalizer import InboundMessage


def _msg(
    text: str, msg_id: str, *, phone="5511999990000", instance="chat1", name=None, ts=1000,
    from_self=False,
):
    return InboundMessage(
        instance=instance, phone=phone, text=text, name=name, message_id=msg_id, timestamp_ms=ts,
        from_self=from_self,
    )


class _Recorder:
    def __init__(self, result: bool = True):
        self.units = []
        self.result = result

    async def __call__(self, unit):
        self.units.append(unit)
        return self.result


class TestCoalescing:
    def test_burst_becomes_one_unit_in_arrival_order(self):
        published = _Recorder()

        async def scenario():
            coalescer = DebounceCoalescer(published, delay=0.05)
            coalescer.add(_msg("oi", "A", ts=1000))
            await asyncio.sleep(0.02)
            coalescer.add(_msg("tudo bem?", "B", ts=2000))
            await asyncio.sleep(0.02)
            coalescer.add(_msg("quero agendar", "C", ts=3000))
            await asyncio.sleep(0.15)
            return coalescer

        coalescer = asyncio.run(scenario())

        assert len(published.units) == 1
        unit = published.units[0]
        assert unit.text == "oi\ntudo bem?\nquero agendar"
        assert unit.message_id == "A_B_C"
        assert unit.timestamp_ms == 1000
        assert coalescer.pending_count == 0

    def test_timer_resets_on_each_fragment(self):
        published = _Recorder()

        async def scenario():
            coalescer = DebounceCoalescer(published, delay=0.1)
            coalescer.add(_msg("um", "A"))
            await asyncio.sleep(0.07)
            coalescer.add(_msg("dois", "B"))
            await asyncio.sleep(0.07)
            # 0.14s after the first fragment, only 0.07s after the last one
            flushed_early = len(published.units)
            await asyncio.sleep(0.1)
            return flushed_early

        assert asyncio.run(scenario()) == 0
        assert len(published.units) == 1
        assert published.units[0].text == "um\ndois"

    def test_different_contacts_are_buffered_separately(self):
        published = _Recorder()

        async def scenario():
            coalescer = DebounceCoalescer(published, delay=0.03)
            coalescer.add(_msg("a", "1", phone="111"))
            coalescer.add(_msg("b", "2", phone="222"))
            coalescer.add(_msg("c", "3", phone="111", instance="chat2"))
            assert coalescer.pending_count == 3
            await asyncio.sleep(0.1)

        asyncio.run(scenario())
        keys = sorted((u.instance, u.phone, u.text) for u in published.units)
        assert keys == [("chat1", "111", "a"), ("chat1", "222", "b"), ("chat2", "111", "c")]

    def test_first_non_empty_name_wins(self):
        published = _Recorder()

        async def scenario():
            coalescer = DebounceCoalescer(published, delay=0.02)
            coalescer.add(_msg("oi", "A", name=None))
            coalescer.add(_msg("sou eu", "B", name="Maria"))
            coalescer.add(_msg("de novo", "C", name="Outro"))
            await asyncio.sleep(0.08)

        asyncio.run(scenario())
        assert published.units[0].name == "Maria"


class TestOperatorCommands:
    def test_command_is_published_on_its_own(self):
        published = _Recorder()

        async def scenario():
            coalescer = DebounceCoalescer(published, delay=60)
            coalescer.add(_msg(".", "OP", name="admin", from_self=True))
            await asyncio.sleep(0.01)
            return coalescer

        coalescer = asyncio.run(scenario())
        assert len(published.units) == 1
        unit = published.units[0]
        assert (unit.text, unit.name, unit.from_self) == (".", None, True)
        assert coalescer.pending_count == 0

    def test_buffered_burst_goes_out_before_the_command(self):
        published = _Recorder()

        async def scenario():
            coalescer = DebounceCoalescer(published, delay=0.05)
            coalescer.add(_msg("quero agendar", "A", name="Maria"))
            coalescer.add(_msg(".", "OP", name="admin", from_self=True))
            coalescer.add(_msg("alguém aí?", "B", name="Maria"))
            await asyncio.sleep(0.15)

        asyncio.run(scenario())
        assert [(u.text, u.name, u.from_self) for u in published.units] == [
            ("quero agendar", "Maria", False),
            (".", None, True),
            ("alguém aí?", "Maria", False),
        ]

    def test_operator_name_never_names_a_unit(self):
        published = _Recorder()

        async def scenario():
            coalescer = DebounceCoalescer(published, delay=0.02)
            coalescer.add(_msg("oi", "A", name="admin"))
            coalescer.add(_msg("sou eu", "B", name="Maria"))
            await asyncio.sleep(0.08)

        asyncio.run(scenario())
        assert published.units[0].name == "Maria"


class TestDrain:
    def test_drain_flushes_everything_immediately(self):
        published = _Recorder()

        async def scenario():
            coalescer = DebounceCoalescer(published, delay=60)
            coalescer.add(_msg("oi", "A", phone="111"))
            coalescer.add(_msg("ola", "B", phone="222"))
            await coalescer.drain()
            return coalescer

        coalescer = asyncio.run(scenario())
        assert len(published.units) == 2
        assert coalescer.pending_count == 0

    def test_drain_with_nothing_pending_is_a_noop(self):
        published = _Recorder()
        asyncio.run(DebounceCoalescer(published, delay=1).drain())
        assert published.units == []

    def test_failed_publish_does_not_raise(self):
        published = _Recorder(result=False)

        async def scenario():
            coalescer = DebounceCoalescer(published, delay=60)
            coalescer.add(_msg("oi", "A"))
            await coalescer.drain()
            return coalescer

        coalescer = asyncio.run(scenario())
        assert len(published.units) == 1
        assert coalescer.pending_count == 0

"""Shared test fixtures for the SDR agent test suite."""

from __future__ import annotations

import asyncio
import os
from datetime import UTC, datetime, timedelta

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("EVOLUTION_API_URL", "http://evolution.test")
    os.environ.setdefault("EVOLUTION_API_KEY", "test-evolution-key-456")
    os.environ.setdefault("EVOLUTION_INSTANCES", "chat1,chat2")
    os.environ.setdefault("SELLERS_GROUP_ID", "120363000000000000@g.us")
    os.environ.setdefault("METRICS_ENABLED", "false")


# Monday 12 Jan 2026, 08:00 in São Paulo (UTC-3)
MONDAY_8AM = datetime(2026, 1, 12, 11, 0, tzinfo=UTC)


class Clock:
    """Mutable clock passed as ``clock=`` to the services."""

    def __init__(self, now: datetime = MONDAY_8AM):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeCalendar:
    """In-memory ``CalendarBackend``; created events also block their span."""

    def __init__(self):
        self.busy: dict[str, list] = {}
        self.events: dict[str, tuple[str, datetime, datetime]] = {}
        self.deleted: list[str] = []
        self.fail_create = False
        self.fail_delete = False
        self.free_busy_calls = 0
        self._counter = 0

    def block(self, calendar_id: str, start: datetime, end: datetime) -> None:
        from sdr_agent.services.calendar_client import BusyInterval

        self.busy.setdefault(calendar_id, []).append(BusyInterval(start, end))

    def free_busy(self, calendar_ids, start, end):
        from sdr_agent.services.calendar_client import BusyInterval

        self.free_busy_calls += 1
        result = {}
        for cid in calendar_ids:
            intervals = list(self.busy.get(cid, []))
            intervals += [
                BusyInterval(s, e) for c, s, e in self.events.values() if c == cid
            ]
            result[cid] = [b for b in intervals if b.overlaps(start, end)]
        return result

    def create_event(self, calendar_id, summary, description, start, end):
        from sdr_agent.services.calendar_client import CalendarAPIError, CreatedEvent

        if self.fail_create:
            raise CalendarAPIError("calendar unavailable", status_code=503)
        self._counter += 1
        event_id = f"evt-{self._counter}"
        self.events[event_id] = (calendar_id, start, end)
        return CreatedEvent(event_id=event_id, join_link=f"https://meet.test/{event_id}")

    def delete_event(self, calendar_id, event_id):
        from sdr_agent.services.calendar_client import CalendarAPIError

        if self.fail_delete:
            raise CalendarAPIError("calendar unavailable", status_code=503)
        self.events.pop(event_id, None)
        self.deleted.append(event_id)


class FakeRedis:
    """The handful of Redis list commands the work queue uses."""

    def __init__(self):
        self.lists: dict[str, list[str]] = {}
        self.down = False
        self.closed = False

    def _check(self):
        from redis.exceptions import ConnectionError as RedisConnectionError

        if self.down:
            raise RedisConnectionError("broker down")

    def _list(self, name: str) -> list[str]:
        return self.lists.setdefault(name, [])

    async def ping(self):
        self._check()
        return True

    async def lpush(self, name, *values):
        self._check()
        for value in values:
            self._list(name).insert(0, value)
        return len(self._list(name))

    async def lmove(self, first, second, src="LEFT", dest="RIGHT"):
        self._check()
        source = self._list(first)
        if not source:
            return None
        value = source.pop() if src == "RIGHT" else source.pop(0)
        target = self._list(second)
        target.append(value) if dest == "RIGHT" else target.insert(0, value)
        return value

    async def blmove(self, first, second, timeout, src="LEFT", dest="RIGHT"):
        value = await self.lmove(first, second, src=src, dest=dest)
        if value is None:
            await asyncio.sleep(0)
        return value

    async def lrem(self, name, count, value):
        self._check()
        items = self._list(name)
        removed = 0
        while value in items and (count == 0 or removed < count):
            items.remove(value)
            removed += 1
        return removed

    async def llen(self, name):
        self._check()
        return len(self._list(name))

    async def aclose(self):
        self.closed = True


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture
def session_factory():
    from sqlalchemy import create_engine
    from sqlalchemy.pool import StaticPool

    from sdr_agent.database import create_session_factory, init_db

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def calendar():
    return FakeCalendar()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def sellers(session_factory):
    """Two active sellers and one inactive one."""
    from sdr_agent.models import Seller

    rows = [
        Seller(id="s-ana", name="Ana", email="ana@example.com", phone="5511911110000",
               calendar_id="cal-ana"),
        Seller(id="s-bruno", name="Bruno", email="bruno@example.com", phone="5511922220000",
               calendar_id="cal-bruno"),
        Seller(id="s-carla", name="Carla", email="carla@example.com", calendar_id="cal-carla",
               is_active=False),
    ]
    with session_factory() as session, session.begin():
        session.add_all(rows)
    return rows


@pytest.fixture
def store(session_factory):
    from sdr_agent.services.history import ConversationStore

    return ConversationStore(session_factory, history_limit=6)


@pytest.fixture
def engine(session_factory, calendar, sellers, clock):
    from sdr_agent.services.meetings import SchedulingEngine

    return SchedulingEngine(session_factory, calendar, clock=clock)


def local(day: int, hour: int, minute: int = 0, month: int = 1) -> datetime:
    """A São Paulo wall-clock time in January 2026, as an aware datetime."""
    from zoneinfo import ZoneInfo

    return datetime(2026, month, day, hour, minute, tzinfo=ZoneInfo("America/Sao_Paulo"))

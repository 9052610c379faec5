"""Tests for business hours and free/busy arithmetic."""

from __future__ import annotations

from datetime import UTC, date, datetime, time
from zoneinfo import ZoneInfo

import pytest
from conftest import FakeCalendar, local

from sdr_agent.models import Seller
from sdr_agent.services.availability import (
    BusinessHours,
    ResourceAvailability,
    check_availability,
    list_available_days,
    list_free_slots,
    select_resource,
)
from sdr_agent.services.calendar_client import BusyInterval

HOURS = BusinessHours(
    tz=ZoneInfo("America/Sao_Paulo"), start=time(9, 0), end=time(18, 30), slot_minutes=30,
)
SUNDAY_NIGHT = datetime(2026, 1, 11, 23, 0, tzinfo=UTC)  # Sun 20:00 local
ANA = Seller(id="s-ana", name="Ana", email="a@x", calendar_id="cal-ana")
BRUNO = Seller(id="s-bruno", name="Bruno", email="b@x", calendar_id="cal-bruno")


def _times(slots):
    return [f"{HOURS.local(s.start):%H:%M}" for s in slots]


class TestBusyInterval:
    def test_half_open_overlap(self):
        busy = BusyInterval(local(12, 10), local(12, 11))
        assert busy.overlaps(local(12, 10, 30), local(12, 11, 30))
        assert not busy.overlaps(local(12, 11), local(12, 11, 30))  # touching end
        assert not busy.overlaps(local(12, 9, 30), local(12, 10))  # touching start


class TestBusinessHours:
    def test_full_window_on_a_future_weekday(self):
        assert HOURS.bookable_window(date(2026, 1, 13), SUNDAY_NIGHT) == (
            local(13, 9), local(13, 18, 30),
        )

    def test_weekend_has_no_window(self):
        assert HOURS.bookable_window(date(2026, 1, 17), SUNDAY_NIGHT) is None
        assert HOURS.bookable_window(date(2026, 1, 18), SUNDAY_NIGHT) is None

    def test_today_starts_at_next_boundary_after_one_slot(self):
        now = local(12, 10, 10)
        opens, _ = HOURS.bookable_window(date(2026, 1, 12), now)
        assert opens == local(12, 11)

    def test_today_on_exact_boundary(self):
        opens, _ = HOURS.bookable_window(date(2026, 1, 12), local(12, 10))
        assert opens == local(12, 10, 30)

    def test_today_too_late(self):
        assert HOURS.bookable_window(date(2026, 1, 12), local(12, 18, 1)) is None

    @pytest.mark.parametrize(
        "start, end, fragment",
        [
            (local(13, 10), local(13, 10), "depois do início"),
            (local(12, 7), local(12, 7, 30), "já passou"),
            (local(17, 10), local(17, 10, 30), "sábados"),
            (local(13, 8, 30), local(13, 9), "horário comercial"),
            (local(13, 18, 15), local(13, 18, 45), "horário comercial"),
        ],
    )
    def test_validate_span_rejections(self, start, end, fragment):
        assert fragment in HOURS.validate_span(start, end, local(12, 8))

    def test_validate_span_rejects_naive(self):
        naive = datetime(2026, 1, 13, 10, 0)
        assert HOURS.validate_span(naive, naive, local(12, 8)) is not None

    def test_last_slot_is_valid(self):
        assert HOURS.validate_span(local(13, 18), local(13, 18, 30), local(12, 8)) is None


class TestCheckAvailability:
    def test_partitions_sellers(self):
        calendar = FakeCalendar()
        calendar.block("cal-ana", local(13, 10), local(13, 11))

        result = check_availability(calendar, [ANA, BRUNO], local(13, 10, 30), local(13, 11))

        assert [r.seller_name for r in result.available] == ["Bruno"]
        assert [r.seller_name for r in result.unavailable] == ["Ana"]
        assert result.unavailable[0].busy == [BusyInterval(local(13, 10), local(13, 11))]

    def test_no_sellers_means_nothing_available(self):
        result = check_availability(FakeCalendar(), [], local(13, 10), local(13, 10, 30))
        assert result.available == [] and result.unavailable == []


class TestListFreeSlots:
    def test_slot_covered_by_any_seller(self):
        calendar = FakeCalendar()
        calendar.block("cal-ana", local(13, 9), local(13, 10))

        slots = list_free_slots(calendar, [ANA, BRUNO], HOURS, date(2026, 1, 13), SUNDAY_NIGHT)

        assert _times(slots)[:3] == ["09:00", "09:30", "10:00"]
        assert len(slots) == 19
        assert _times(slots)[-1] == "18:00"

    def test_slot_dropped_when_everyone_busy(self):
        calendar = FakeCalendar()
        calendar.block("cal-ana", local(13, 9), local(13, 10))
        calendar.block("cal-bruno", local(13, 9, 15), local(13, 9, 45))

        slots = list_free_slots(calendar, [ANA, BRUNO], HOURS, date(2026, 1, 13), SUNDAY_NIGHT)

        assert "09:00" not in _times(slots)
        assert "09:30" not in _times(slots)
        assert _times(slots)[0] == "10:00"

    @pytest.mark.parametrize("day", [date(2026, 1, 17), date(2026, 1, 18)])
    def test_weekends_are_empty(self, day):
        calendar = FakeCalendar()
        assert list_free_slots(calendar, [ANA, BRUNO], HOURS, day, SUNDAY_NIGHT) == []
        assert calendar.free_busy_calls == 0

    def test_today_skips_past_and_short_notice_slots(self):
        slots = list_free_slots(FakeCalendar(), [ANA], HOURS, date(2026, 1, 12), local(12, 16, 40))
        assert _times(slots) == ["17:30", "18:00"]

    def test_single_free_busy_call_per_day(self):
        calendar = FakeCalendar()
        list_free_slots(calendar, [ANA, BRUNO], HOURS, date(2026, 1, 13), SUNDAY_NIGHT)
        assert calendar.free_busy_calls == 1


class TestListAvailableDays:
    def test_skips_weekends_and_full_days(self):
        calendar = FakeCalendar()
        # Tuesday fully booked for the only seller
        calendar.block("cal-ana", local(13, 9), local(13, 18, 30))
        now = local(12, 18, 10)  # Monday is already over

        days = list_available_days(calendar, [ANA], HOURS, now, count=5)

        assert [d.date for d in days] == [
            date(2026, 1, 14), date(2026, 1, 15), date(2026, 1, 16),
            date(2026, 1, 19), date(2026, 1, 20),
        ]
        assert days[0].weekday == "quarta-feira"
        assert days[0].date_formatted == "14/01/2026"
        assert days[0].slot_count == 19
        assert not any(d.is_today for d in days)

    def test_today_is_flagged(self):
        days = list_available_days(FakeCalendar(), [ANA], HOURS, local(12, 8), count=1)
        assert days[0].date == date(2026, 1, 12)
        assert days[0].is_today

    def test_search_is_bounded(self):
        calendar = FakeCalendar()
        calendar.block("cal-ana", local(1, 0), local(28, 0))
        days = list_available_days(calendar, [ANA], HOURS, local(12, 8), count=2)
        assert days == []
        assert calendar.free_busy_calls <= 6


class TestSelectResource:
    def _entries(self, *ids):
        return [ResourceAvailability(i, i.upper(), f"cal-{i}") for i in ids]

    def test_least_loaded_wins(self):
        chosen = select_resource(self._entries("a", "b", "c"), {"a": 3, "b": 1, "c": 2})
        assert chosen.seller_id == "b"

    def test_tie_goes_to_first(self):
        chosen = select_resource(self._entries("a", "b"), {"a": 1, "b": 1})
        assert chosen.seller_id == "a"

    def test_missing_counts_are_zero(self):
        chosen = select_resource(self._entries("a", "b"), {"a": 2})
        assert chosen.seller_id == "b"

    def test_nothing_available(self):
        assert select_resource([], {}) is None

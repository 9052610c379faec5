"""Free/busy arithmetic over several seller calendars.

Everything here is either pure or talks to the calendar only through the
``CalendarBackend`` protocol:

* ``BusinessHours``        the single bookable-window policy (weekdays,
                           09:00-18:30 local, 30-minute slots)
* ``check_availability``   which sellers are free for ``[start, end)``
* ``list_free_slots``      slots of a day covered by at least one seller
* ``list_available_days``  the next business days that have any free slot
* ``select_resource``      least-loaded free seller, stable tie-break

Intervals are half-open: a busy block ``[b0, b1)`` conflicts with
``[start, end)`` iff ``b0 < end and b1 > start``.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from sdr_agent.config import BUSINESS_END, BUSINESS_START, MEETING_DURATION_MINUTES, TIMEZONE
from sdr_agent.models import Seller
from sdr_agent.services.calendar_client import BusyInterval, CalendarBackend

logger = logging.getLogger(__name__)

WEEKDAYS_PT = [
    "segunda-feira",
    "terça-feira",
    "quarta-feira",
    "quinta-feira",
    "sexta-feira",
    "sábado",
    "domingo",
]


# ── Business-hours policy ────────────────────────────────────────────


@dataclass(frozen=True)
class BusinessHours:
    tz: ZoneInfo
    start: time
    end: time
    slot_minutes: int

    @classmethod
    def from_config(cls) -> BusinessHours:
        return cls(
            tz=ZoneInfo(TIMEZONE),
            start=time(*BUSINESS_START),
            end=time(*BUSINESS_END),
            slot_minutes=MEETING_DURATION_MINUTES,
        )

    @property
    def slot(self) -> timedelta:
        return timedelta(minutes=self.slot_minutes)

    def local(self, moment: datetime) -> datetime:
        return moment.astimezone(self.tz)

    def is_business_day(self, day: date) -> bool:
        return day.weekday() < 5

    def window(self, day: date) -> tuple[datetime, datetime]:
        """Opening and closing instants of *day* in the local zone."""
        return (
            datetime.combine(day, self.start, tzinfo=self.tz),
            datetime.combine(day, self.end, tzinfo=self.tz),
        )

    def bookable_window(self, day: date, now: datetime) -> tuple[datetime, datetime] | None:
        """Like ``window`` but without slots that are past or too close.

        For today the start moves to the first slot boundary at or after
        ``now + slot``.  ``None`` when nothing on *day* can still be booked.
        """
        if not self.is_business_day(day):
            return None
        opens, closes = self.window(day)
        earliest = self.local(now) + self.slot
        if earliest > opens:
            steps = -(-(earliest - opens) // self.slot)  # ceil division
            opens = opens + steps * self.slot
        if opens + self.slot > closes:
            return None
        return opens, closes

    def validate_span(self, start: datetime, end: datetime, now: datetime) -> str | None:
        """Return a user-facing reason why ``[start, end)`` cannot be booked."""
        if start.tzinfo is None or end.tzinfo is None:
            return "Horário sem fuso horário definido."
        if end <= start:
            return "O horário de término deve ser depois do início."
        if start <= now:
            return "Não é possível agendar em um horário que já passou."
        local_start, local_end = self.local(start), self.local(end)
        if local_start.date() != local_end.date():
            return "A reunião deve começar e terminar no mesmo dia."
        if not self.is_business_day(local_start.date()):
            return "Não agendamos reuniões aos sábados e domingos."
        opens, closes = self.window(local_start.date())
        if local_start < opens or local_end > closes:
            return (
                f"Fora do horário comercial ({self.start:%H:%M} às {self.end:%H:%M}, "
                "segunda a sexta)."
            )
        return None


# ── Result types ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class TimeSlot:
    start: datetime
    end: datetime


@dataclass
class ResourceAvailability:
    seller_id: str
    seller_name: str
    calendar_id: str
    busy: list[BusyInterval] = field(default_factory=list)

    @property
    def is_available(self) -> bool:
        return not self.busy


@dataclass
class AvailabilityResult:
    start: datetime
    end: datetime
    available: list[ResourceAvailability] = field(default_factory=list)
    unavailable: list[ResourceAvailability] = field(default_factory=list)


@dataclass(frozen=True)
class AvailableDay:
    date: date
    weekday: str
    is_today: bool
    slot_count: int

    @property
    def date_formatted(self) -> str:
        return self.date.strftime("%d/%m/%Y")


# ── Operations ───────────────────────────────────────────────────────


def _conflicts(busy: list[BusyInterval], start: datetime, end: datetime) -> list[BusyInterval]:
    return [b for b in busy if b.overlaps(start, end)]


def check_availability(
    calendar: CalendarBackend,
    sellers: Sequence[Seller],
    start: datetime,
    end: datetime,
) -> AvailabilityResult:
    """Partition *sellers* into free and busy for ``[start, end)``."""
    result = AvailabilityResult(start=start, end=end)
    if not sellers:
        return result

    busy_by_calendar = calendar.free_busy([s.calendar_id for s in sellers], start, end)
    for seller in sellers:
        conflicts = _conflicts(busy_by_calendar.get(seller.calendar_id, []), start, end)
        entry = ResourceAvailability(
            seller_id=seller.id,
            seller_name=seller.name,
            calendar_id=seller.calendar_id,
            busy=conflicts,
        )
        (result.unavailable if conflicts else result.available).append(entry)

    logger.info(
        "Availability %s-%s: free=%s busy=%s",
        start.isoformat(),
        end.isoformat(),
        [r.seller_name for r in result.available],
        [r.seller_name for r in result.unavailable],
    )
    return result


def list_free_slots(
    calendar: CalendarBackend,
    sellers: Sequence[Seller],
    hours: BusinessHours,
    day: date,
    now: datetime,
) -> list[TimeSlot]:
    """Slots of *day* for which at least one seller is free end to end."""
    window = hours.bookable_window(day, now)
    if window is None or not sellers:
        return []
    opens, closes = window

    busy_by_calendar = calendar.free_busy([s.calendar_id for s in sellers], opens, closes)
    busy_lists = [busy_by_calendar.get(s.calendar_id, []) for s in sellers]

    slots: list[TimeSlot] = []
    slot_start = opens
    while slot_start + hours.slot <= closes:
        slot_end = slot_start + hours.slot
        if any(not _conflicts(busy, slot_start, slot_end) for busy in busy_lists):
            slots.append(TimeSlot(slot_start, slot_end))
        slot_start = slot_end
    return slots


def list_available_days(
    calendar: CalendarBackend,
    sellers: Sequence[Seller],
    hours: BusinessHours,
    now: datetime,
    count: int = 5,
) -> list[AvailableDay]:
    """The next *count* business days with at least one free slot.

    At most ``3 * count`` calendar days are examined, starting today.
    """
    today = hours.local(now).date()
    days: list[AvailableDay] = []
    for offset in range(count * 3):
        if len(days) >= count:
            break
        day = today + timedelta(days=offset)
        if not hours.is_business_day(day):
            continue
        slots = list_free_slots(calendar, sellers, hours, day, now)
        if slots:
            days.append(
                AvailableDay(
                    date=day,
                    weekday=WEEKDAYS_PT[day.weekday()],
                    is_today=day == today,
                    slot_count=len(slots),
                )
            )
    return days


def select_resource(
    available: Sequence[ResourceAvailability],
    load_counts: Mapping[str, int],
) -> ResourceAvailability | None:
    """Pick the free seller with the fewest future meetings.

    Ties go to the earliest entry in *available*, so the caller's ordering
    makes the choice reproducible.
    """
    if not available:
        return None
    return min(
        enumerate(available),
        key=lambda pair: (load_counts.get(pair[1].seller_id, 0), pair[0]),
    )[1]

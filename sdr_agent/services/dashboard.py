"""Read-only dashboard queries over conversations, meetings and the
reactivation queue.

Date filters apply to row creation time.  Day boundaries, peak hours and
time buckets use the business time zone; naive datetimes coming from
query strings are read as local time.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from sdr_agent.models import (
    Conversation,
    ConversationStatus,
    ConversationSummary,
    Meeting,
    MeetingStatus,
    QueueItemStatus,
    ReactivationQueueItem,
    utcnow,
)
from sdr_agent.services.availability import BusinessHours

logger = logging.getLogger(__name__)

FUNNEL_STAGES = [
    ("greeting", "Saudação"),
    ("city_collected", "Cidade Coletada"),
    ("segment_collected", "Segmento Coletado"),
    ("day_selected", "Dia Selecionado"),
    ("meeting_scheduled", "Reunião Agendada"),
]
GRANULARITIES = ("day", "week", "month")
DEFAULT_WINDOW_DAYS = 30
MAX_PAGE_SIZE = 100
REACTIVATION_HISTORY_LIMIT = 10


def _percent(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


class DashboardStats:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        hours: BusinessHours | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._hours = hours or BusinessHours.from_config()
        self._clock = clock

    def _aware(self, value: datetime | None) -> datetime | None:
        if value is None or value.tzinfo is not None:
            return value
        return value.replace(tzinfo=self._hours.tz)

    def _created_between(self, model, start: datetime | None, end: datetime | None) -> list:
        start, end = self._aware(start), self._aware(end)
        criteria = []
        if start is not None:
            criteria.append(model.created_at >= start)
        if end is not None:
            criteria.append(model.created_at <= end)
        return criteria

    # ── KPIs & funnel ────────────────────────────────────────────────

    def kpis(self, start: datetime | None = None, end: datetime | None = None) -> dict[str, Any]:
        local_now = self._hours.local(self._clock())
        midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
        leads_in_range = self._created_between(Conversation, start, end)
        meetings_in_range = self._created_between(Meeting, start, end)

        with self._session_factory() as session:

            def count(model, *criteria) -> int:
                return session.scalar(
                    select(func.count()).select_from(model).where(*criteria)
                ) or 0

            def meetings(status: MeetingStatus) -> int:
                return count(Meeting, *meetings_in_range, Meeting.status == status)

            total = count(Conversation, *leads_in_range)
            converted = count(
                Conversation, *leads_in_range,
                Conversation.status == ConversationStatus.CONVERTED,
            )
            return {
                "total_leads": total,
                "new_leads_today": count(Conversation, Conversation.created_at >= midnight),
                "conversion_rate": _percent(converted, total),
                "meetings_scheduled": meetings(MeetingStatus.SCHEDULED),
                "meetings_completed": meetings(MeetingStatus.COMPLETED),
                "meetings_cancelled": meetings(MeetingStatus.CANCELLED),
                "meetings_no_show": meetings(MeetingStatus.NO_SHOW),
                "active_conversations": count(
                    Conversation, Conversation.status == ConversationStatus.ACTIVE,
                ),
                "reactivations_pending": count(
                    ReactivationQueueItem,
                    ReactivationQueueItem.status == QueueItemStatus.PENDING,
                ),
            }

    def funnel(self, start: datetime | None = None, end: datetime | None = None) -> dict[str, Any]:
        """Leads per stage.  Converted leads always count as booked."""
        criteria = self._created_between(Conversation, start, end)
        with self._session_factory() as session:
            by_stage = dict(
                session.execute(
                    select(Conversation.stage, func.count())
                    .where(*criteria)
                    .group_by(Conversation.stage)
                ).all()
            )
            converted = session.scalar(
                select(func.count()).select_from(Conversation).where(
                    *criteria, Conversation.status == ConversationStatus.CONVERTED,
                )
            ) or 0

        counts = {name: by_stage.get(name, 0) for name, _ in FUNNEL_STAGES}
        counts["meeting_scheduled"] = max(counts["meeting_scheduled"], converted)
        total = sum(counts.values())
        return {
            "stages": [
                {
                    "name": name,
                    "label": label,
                    "count": counts[name],
                    "percentage": _percent(counts[name], total),
                }
                for name, label in FUNNEL_STAGES
            ]
        }

    # ── Time series ──────────────────────────────────────────────────

    def _bucket(self, created_at: datetime, granularity: str) -> str:
        local = self._hours.local(created_at)
        if granularity == "month":
            return local.strftime("%Y-%m")
        if granularity == "week":
            # Weeks start on Sunday
            local -= timedelta(days=(local.weekday() + 1) % 7)
        return local.strftime("%Y-%m-%d")

    def leads_over_time(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        granularity: str = "day",
    ) -> dict[str, Any]:
        if granularity not in GRANULARITIES:
            raise ValueError(f"granularity must be one of {', '.join(GRANULARITIES)}")
        end = self._aware(end) or self._clock()
        start = self._aware(start) or end - timedelta(days=DEFAULT_WINDOW_DAYS)

        with self._session_factory() as session:
            rows = session.execute(
                select(Conversation.created_at, Conversation.status)
                .where(*self._created_between(Conversation, start, end))
                .order_by(Conversation.created_at)
            ).all()

        buckets: dict[str, dict[str, int]] = {}
        for created_at, status in rows:
            entry = buckets.setdefault(
                self._bucket(created_at, granularity),
                {"new_leads": 0, "converted": 0, "discarded": 0},
            )
            entry["new_leads"] += 1
            if status == ConversationStatus.CONVERTED:
                entry["converted"] += 1
            elif status == ConversationStatus.DISCARDED:
                entry["discarded"] += 1
        return {"data": [{"date": key, **values} for key, values in sorted(buckets.items())]}

    def peak_hours(self, start: datetime | None = None, end: datetime | None = None) -> dict[str, Any]:
        """New leads per local hour of the day, all 24 hours listed."""
        with self._session_factory() as session:
            created = session.scalars(
                select(Conversation.created_at).where(
                    *self._created_between(Conversation, start, end)
                )
            ).all()
        hours = Counter(self._hours.local(value).hour for value in created)
        return {"data": [{"hour": hour, "count": hours.get(hour, 0)} for hour in range(24)]}

    # ── Leads ────────────────────────────────────────────────────────

    def leads(
        self,
        page: int = 1,
        limit: int = 20,
        status: ConversationStatus | None = None,
        search: str | None = None,
    ) -> dict[str, Any]:
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        criteria = []
        if status is not None:
            criteria.append(Conversation.status == status)
        if search:
            criteria.append(Conversation.phone.contains(search))

        now = self._clock()
        with self._session_factory() as session:
            total = session.scalar(
                select(func.count()).select_from(Conversation).where(*criteria)
            ) or 0
            rows = session.execute(
                select(Conversation, ConversationSummary.id)
                .outerjoin(
                    ConversationSummary,
                    ConversationSummary.conversation_id == Conversation.id,
                )
                .where(*criteria)
                .order_by(Conversation.last_contact_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
            phones = [conversation.phone for conversation, _ in rows]
            next_meeting: dict[str, datetime] = dict(
                session.execute(
                    select(Meeting.client_phone, func.min(Meeting.start_time))
                    .where(
                        Meeting.client_phone.in_(phones),
                        Meeting.status == MeetingStatus.SCHEDULED,
                        Meeting.start_time >= now,
                    )
                    .group_by(Meeting.client_phone)
                ).all()
            ) if phones else {}

        return {
            "data": [
                {
                    "id": conversation.id,
                    "phone": conversation.phone,
                    "name": conversation.name,
                    "status": conversation.status.value,
                    "stage": conversation.stage,
                    "last_contact_at": conversation.last_contact_at.isoformat(),
                    "created_at": conversation.created_at.isoformat(),
                    "reactivation_attempts": conversation.reactivation_attempts,
                    "has_summary": summary_id is not None,
                    "has_meeting": conversation.phone in next_meeting,
                    "meeting_date": (
                        next_meeting[conversation.phone].isoformat()
                        if conversation.phone in next_meeting else None
                    ),
                }
                for conversation, summary_id in rows
            ],
            "pagination": {
                "total": total,
                "page": page,
                "limit": limit,
                "total_pages": math.ceil(total / limit),
            },
        }

    def lead_details(self, conversation_id: str) -> dict[str, Any] | None:
        with self._session_factory() as session:
            conversation = session.get(Conversation, conversation_id)
            if conversation is None:
                return None
            meetings = session.scalars(
                select(Meeting)
                .where(Meeting.client_phone == conversation.phone)
                .order_by(Meeting.start_time.desc())
            ).all()
            nudges = session.scalars(
                select(ReactivationQueueItem)
                .where(ReactivationQueueItem.conversation_id == conversation.id)
                .order_by(ReactivationQueueItem.created_at.desc())
                .limit(REACTIVATION_HISTORY_LIMIT)
            ).all()

            return {
                "id": conversation.id,
                "phone": conversation.phone,
                "name": conversation.name,
                "status": conversation.status.value,
                "stage": conversation.stage,
                "disabled": conversation.disabled,
                "last_contact_at": conversation.last_contact_at.isoformat(),
                "created_at": conversation.created_at.isoformat(),
                "reactivation_attempts": conversation.reactivation_attempts,
                "discard_reason": conversation.discard_reason,
                "messages": list(conversation.messages or []),
                "meetings": [
                    {
                        "id": m.id,
                        "start_time": m.start_time.isoformat(),
                        "end_time": m.end_time.isoformat(),
                        "status": m.status.value,
                        "meet_link": m.meet_link,
                        "seller_name": m.seller.name,
                    }
                    for m in meetings
                ],
                "reactivation_history": [
                    {
                        "id": n.id,
                        "message": n.message,
                        "status": n.status.value,
                        "scheduled_at": n.scheduled_at.isoformat(),
                        "sent_at": n.sent_at.isoformat() if n.sent_at else None,
                    }
                    for n in nudges
                ],
            }

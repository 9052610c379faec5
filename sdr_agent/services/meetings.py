"""Meeting booking, rescheduling and cancellation.

Rules the engine upholds:

1. **One live booking per (client phone, start).**  ``create_meeting``
   first looks for a SCHEDULED meeting at the same start for the same
   phone and returns it unchanged.  A partial unique index backs this up
   when two workers race: the loser deletes the calendar event it just
   created and returns the winner's row.
2. **No row without an event.**  The calendar event is created first and
   the row is written only after that call succeeds.
3. **Create, then cancel.**  A reschedule books the replacement before
   cancelling the original, so a failure part-way leaves two live
   meetings, never zero.
4. **No cancelled row for a live event.**  ``cancel_meeting`` deletes the
   calendar event first and only then marks the row CANCELLED.

Business-rule failures come back as result objects with ``success=False``
and a user-facing ``error`` in Portuguese; nothing here raises for them.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import joinedload, sessionmaker

from sdr_agent.models import (
    Conversation,
    ConversationStatus,
    Meeting,
    MeetingStatus,
    Seller,
    utcnow,
)
from sdr_agent.services.availability import (
    AvailabilityResult,
    AvailableDay,
    BusinessHours,
    TimeSlot,
    check_availability,
    list_available_days,
    list_free_slots,
    select_resource,
)
from sdr_agent.services.calendar_client import CalendarBackend
from sdr_agent.services.metrics import metrics

logger = logging.getLogger(__name__)

REMINDER_LEAD = timedelta(minutes=15)
MEETING_TITLE = "Demo Flowlinker"

Notifier = Callable[[str, str], None]


class MeetingNotFound(LookupError):
    pass


# ── Value objects ────────────────────────────────────────────────────


@dataclass(frozen=True)
class MeetingRequest:
    client_phone: str
    start: datetime
    client_name: str | None = None
    client_email: str | None = None
    subject: str | None = None
    seller_id: str | None = None
    city: str | None = None
    state: str | None = None
    segment: str | None = None
    observations: str | None = None


@dataclass(frozen=True)
class MeetingDetails:
    meeting_id: str
    seller_id: str
    seller_name: str
    seller_email: str
    seller_phone: str | None
    client_phone: str
    client_name: str | None
    client_email: str | None
    start: datetime
    end: datetime
    event_id: str
    join_link: str | None
    reminder_at: datetime | None
    status: MeetingStatus

    @classmethod
    def from_row(cls, meeting: Meeting, seller: Seller) -> MeetingDetails:
        return cls(
            meeting_id=meeting.id,
            seller_id=seller.id,
            seller_name=seller.name,
            seller_email=seller.email,
            seller_phone=seller.phone,
            client_phone=meeting.client_phone,
            client_name=meeting.client_name,
            client_email=meeting.client_email,
            start=meeting.start_time,
            end=meeting.end_time,
            event_id=meeting.event_id,
            join_link=meeting.meet_link,
            reminder_at=meeting.reminder_at,
            status=meeting.status,
        )


@dataclass(frozen=True)
class MeetingResult:
    success: bool
    meeting: MeetingDetails | None = None
    error: str | None = None
    already_existed: bool = False


@dataclass(frozen=True)
class RescheduleResult:
    success: bool
    old_meeting_id: str
    new_meeting: MeetingDetails | None = None
    old_cancelled: bool = False
    unchanged: bool = False
    warning: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class CancelResult:
    success: bool
    meeting_id: str
    already_cancelled: bool = False
    error: str | None = None


# ── Engine ───────────────────────────────────────────────────────────


class SchedulingEngine:
    def __init__(
        self,
        session_factory: sessionmaker,
        calendar: CalendarBackend,
        hours: BusinessHours | None = None,
        *,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._calendar = calendar
        self.hours = hours or BusinessHours.from_config()
        self._notifier = notifier
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    # ── Queries ──────────────────────────────────────────────────────

    def active_sellers(self) -> list[Seller]:
        """Active sellers in the stable order used for tie-breaking."""
        with self._session_factory() as session:
            return list(
                session.scalars(
                    select(Seller).where(Seller.is_active.is_(True)).order_by(Seller.name, Seller.id)
                )
            )

    def load_counts(self, seller_ids: list[str]) -> dict[str, int]:
        """Future SCHEDULED meetings per seller."""
        if not seller_ids:
            return {}
        with self._session_factory() as session:
            rows = session.execute(
                select(Meeting.seller_id, func.count(Meeting.id))
                .where(
                    Meeting.seller_id.in_(seller_ids),
                    Meeting.status == MeetingStatus.SCHEDULED,
                    Meeting.start_time >= self.now(),
                )
                .group_by(Meeting.seller_id)
            ).all()
        return {seller_id: count for seller_id, count in rows}

    def check_availability(self, start: datetime, end: datetime) -> AvailabilityResult:
        with metrics.track("scheduling", "check_availability"):
            return check_availability(self._calendar, self.active_sellers(), start, end)

    def list_free_slots(self, day: date) -> list[TimeSlot]:
        return list_free_slots(self._calendar, self.active_sellers(), self.hours, day, self.now())

    def list_available_days(self, count: int = 5) -> list[AvailableDay]:
        return list_available_days(
            self._calendar, self.active_sellers(), self.hours, self.now(), count,
        )

    def get_meetings_by_phone(self, phone: str) -> list[MeetingDetails]:
        return self._upcoming(Meeting.client_phone == phone)

    def get_meetings_by_email(self, email: str) -> list[MeetingDetails]:
        return self._upcoming(func.lower(Meeting.client_email) == email.strip().lower())

    def _upcoming(self, criterion) -> list[MeetingDetails]:
        with self._session_factory() as session:
            meetings = session.scalars(
                select(Meeting)
                .options(joinedload(Meeting.seller))
                .where(
                    criterion,
                    Meeting.status == MeetingStatus.SCHEDULED,
                    Meeting.start_time >= self.now(),
                )
                .order_by(Meeting.start_time)
            ).all()
            return [MeetingDetails.from_row(m, m.seller) for m in meetings]

    def _find_scheduled(self, client_phone: str, start: datetime) -> MeetingDetails | None:
        with self._session_factory() as session:
            meeting = session.scalar(
                select(Meeting)
                .options(joinedload(Meeting.seller))
                .where(
                    Meeting.client_phone == client_phone,
                    Meeting.start_time == start,
                    Meeting.status == MeetingStatus.SCHEDULED,
                )
            )
            return MeetingDetails.from_row(meeting, meeting.seller) if meeting else None

    def _load(self, meeting_id: str) -> MeetingDetails | None:
        with self._session_factory() as session:
            meeting = session.get(Meeting, meeting_id, options=[joinedload(Meeting.seller)])
            return MeetingDetails.from_row(meeting, meeting.seller) if meeting else None

    # ── Create ───────────────────────────────────────────────────────

    def create_meeting(self, request: MeetingRequest) -> MeetingResult:
        start = request.start
        if start.tzinfo is None:
            return MeetingResult(False, error="Horário sem fuso horário definido.")
        end = start + self.hours.slot

        existing = self._find_scheduled(request.client_phone, start)
        if existing is not None:
            logger.info("Meeting already exists for %s at %s (%s)",
                        request.client_phone, start.isoformat(), existing.meeting_id)
            return MeetingResult(True, meeting=existing, already_existed=True)

        invalid = self.hours.validate_span(start, end, self.now())
        if invalid:
            return MeetingResult(False, error=invalid)

        sellers = self.active_sellers()
        try:
            if request.seller_id:
                seller = next((s for s in sellers if s.id == request.seller_id), None)
                if seller is None:
                    return MeetingResult(False, error="Vendedor não encontrado.")
                availability = check_availability(self._calendar, [seller], start, end)
                if not availability.available:
                    return MeetingResult(
                        False, error=f"{seller.name} não está disponível neste horário.",
                    )
            else:
                availability = check_availability(self._calendar, sellers, start, end)
                chosen = select_resource(
                    availability.available,
                    self.load_counts([r.seller_id for r in availability.available]),
                )
                if chosen is None:
                    return MeetingResult(False, error="Nenhum vendedor disponível neste horário.")
                seller = next(s for s in sellers if s.id == chosen.seller_id)
                logger.info("Round-robin picked %s", seller.name)
        except Exception as exc:
            logger.exception("Availability check failed for %s", start.isoformat())
            return MeetingResult(False, error=f"Erro ao consultar a agenda: {exc}")

        try:
            with metrics.track("scheduling", "create_event"):
                created = self._calendar.create_event(
                    seller.calendar_id,
                    f"{MEETING_TITLE} - {request.client_name or request.client_phone}",
                    self._describe(request),
                    start,
                    end,
                )
        except Exception as exc:
            logger.exception("Calendar event creation failed for %s", request.client_phone)
            return MeetingResult(False, error=f"Erro ao criar evento na agenda: {exc}")

        meeting = Meeting(
            seller_id=seller.id,
            client_phone=request.client_phone,
            client_name=request.client_name,
            client_email=request.client_email,
            subject=request.subject,
            start_time=start,
            end_time=end,
            event_id=created.event_id,
            meet_link=created.join_link,
            reminder_at=start - REMINDER_LEAD,
            status=MeetingStatus.SCHEDULED,
            observations=request.observations,
        )
        try:
            with self._session_factory() as session, session.begin():
                session.add(meeting)
                session.flush()
                session.execute(
                    update(Conversation)
                    .where(Conversation.phone == request.client_phone)
                    .values(status=ConversationStatus.CONVERTED, discard_reason=None,
                            updated_at=utcnow())
                )
        except IntegrityError:
            logger.warning("Lost booking race for %s at %s; removing orphan event %s",
                           request.client_phone, start.isoformat(), created.event_id)
            self._delete_event_quietly(seller.calendar_id, created.event_id)
            winner = self._find_scheduled(request.client_phone, start)
            if winner is None:
                return MeetingResult(False, error="Conflito ao salvar a reunião. Tente novamente.")
            return MeetingResult(True, meeting=winner, already_existed=True)

        details = MeetingDetails.from_row(meeting, seller)
        logger.info("Meeting %s booked: %s with %s at %s",
                    details.meeting_id, request.client_phone, seller.name, start.isoformat())
        metrics.record_count("Meetings/Created")
        self._notify_seller(details, "Nova reunião agendada")
        return MeetingResult(True, meeting=details)

    def _describe(self, request: MeetingRequest) -> str:
        location = None
        if request.city:
            location = f"{request.city}/{request.state}" if request.state else request.city
        lines = [
            "DADOS DO CLIENTE",
            "━━━━━━━━━━━━━━━━━━━━",
            f"Nome: {request.client_name or 'Não informado'}",
            f"Telefone: {request.client_phone}",
            f"Email: {request.client_email or 'Não informado'}",
            f"Cidade: {location}" if location else None,
            f"Segmento: {request.segment}" if request.segment else None,
            "",
            "DETALHES DA REUNIÃO",
            "━━━━━━━━━━━━━━━━━━━━",
            f"Assunto: {request.subject or MEETING_TITLE}",
            f"Observações: {request.observations}" if request.observations else None,
            "",
            "━━━━━━━━━━━━━━━━━━━━",
            "Agendado automaticamente pelo bot.",
        ]
        return "\n".join(line for line in lines if line is not None)

    def _notify_seller(self, details: MeetingDetails, headline: str) -> None:
        if self._notifier is None or not details.seller_phone:
            return
        local_start = self.hours.local(details.start)
        local_end = self.hours.local(details.end)
        text = (
            f"{headline}\n\n"
            f"Cliente: {details.client_name or details.client_phone}\n"
            f"Telefone: {details.client_phone}\n"
            + (f"Email: {details.client_email}\n" if details.client_email else "")
            + f"Data: {local_start:%d/%m/%Y}\n"
            f"Horário: {local_start:%H:%M} - {local_end:%H:%M}\n"
            + (f"\nLink: {details.join_link}" if details.join_link else "")
        )
        try:
            self._notifier(details.seller_phone, text)
        except Exception:
            logger.exception("Failed to notify seller %s about %s",
                             details.seller_name, details.meeting_id)

    def _delete_event_quietly(self, calendar_id: str, event_id: str) -> None:
        try:
            self._calendar.delete_event(calendar_id, event_id)
        except Exception:
            logger.exception("Could not delete orphan calendar event %s", event_id)

    # ── Reschedule ───────────────────────────────────────────────────

    def reschedule_meeting(
        self,
        meeting_id: str,
        new_start: datetime,
        *,
        client_phone: str | None = None,
    ) -> RescheduleResult:
        """Book the new slot, then cancel the old one."""
        old = self._load(meeting_id)
        if old is None or (client_phone and old.client_phone != client_phone):
            return RescheduleResult(False, meeting_id, error="Reunião não encontrada.")

        if old.status != MeetingStatus.SCHEDULED:
            if old.status == MeetingStatus.CANCELLED:
                # A retry after a reschedule that already went through
                replacement = self._find_scheduled(old.client_phone, new_start)
                if replacement is not None:
                    return RescheduleResult(
                        True, meeting_id, new_meeting=replacement, old_cancelled=True,
                    )
            return RescheduleResult(
                False, meeting_id, error="Essa reunião não está ativa para remarcar.",
            )

        if old.start == new_start:
            return RescheduleResult(True, meeting_id, new_meeting=old, unchanged=True)

        new_end = new_start + self.hours.slot
        keep_seller: str | None = None
        try:
            seller = next((s for s in self.active_sellers() if s.id == old.seller_id), None)
            if seller is not None:
                if check_availability(self._calendar, [seller], new_start, new_end).available:
                    keep_seller = seller.id
        except Exception:
            logger.warning("Same-seller check failed; falling back to automatic selection",
                           exc_info=True)

        with self._session_factory() as session:
            row = session.get(Meeting, meeting_id)
            request = MeetingRequest(
                client_phone=row.client_phone,
                start=new_start,
                client_name=row.client_name,
                client_email=row.client_email,
                subject=row.subject,
                seller_id=keep_seller,
                observations=row.observations,
            )

        created = self.create_meeting(request)
        if not created.success and keep_seller:
            # The seller got booked between the check and the insert
            created = self.create_meeting(replace(request, seller_id=None))
        if not created.success:
            logger.info("Reschedule of %s aborted; original kept: %s", meeting_id, created.error)
            return RescheduleResult(False, meeting_id, error=created.error)

        cancelled = self.cancel_meeting(meeting_id)
        if not cancelled.success:
            logger.error("Reschedule of %s created %s but could not cancel the original: %s",
                         meeting_id, created.meeting.meeting_id, cancelled.error)
            return RescheduleResult(
                True,
                meeting_id,
                new_meeting=created.meeting,
                old_cancelled=False,
                warning="A nova reunião foi criada, mas a antiga não pôde ser cancelada.",
            )

        logger.info("Meeting %s rescheduled to %s", meeting_id, created.meeting.meeting_id)
        return RescheduleResult(True, meeting_id, new_meeting=created.meeting, old_cancelled=True)

    # ── Cancel / terminal transitions ────────────────────────────────

    def cancel_meeting(self, meeting_id: str, *, client_phone: str | None = None) -> CancelResult:
        current = self._load(meeting_id)
        if current is None or (client_phone and current.client_phone != client_phone):
            return CancelResult(False, meeting_id, error="Reunião não encontrada.")
        if current.status == MeetingStatus.CANCELLED:
            return CancelResult(True, meeting_id, already_cancelled=True)
        if current.status != MeetingStatus.SCHEDULED:
            return CancelResult(
                False, meeting_id, error="Essa reunião já foi encerrada e não pode ser cancelada.",
            )

        with self._session_factory() as session:
            calendar_id = session.get(Seller, current.seller_id).calendar_id

        try:
            with metrics.track("scheduling", "delete_event"):
                self._calendar.delete_event(calendar_id, current.event_id)
        except Exception as exc:
            logger.exception("Calendar delete failed for meeting %s", meeting_id)
            return CancelResult(False, meeting_id, error=f"Erro ao cancelar na agenda: {exc}")

        with self._session_factory() as session, session.begin():
            meeting = session.get(Meeting, meeting_id)
            if meeting.status == MeetingStatus.CANCELLED:
                return CancelResult(True, meeting_id, already_cancelled=True)
            meeting.transition(MeetingStatus.CANCELLED)
        logger.info("Meeting %s cancelled", meeting_id)
        return CancelResult(True, meeting_id)

    def mark_completed(self, meeting_id: str) -> MeetingDetails:
        return self._finish(meeting_id, MeetingStatus.COMPLETED)

    def mark_no_show(self, meeting_id: str) -> MeetingDetails:
        return self._finish(meeting_id, MeetingStatus.NO_SHOW)

    def _finish(self, meeting_id: str, status: MeetingStatus) -> MeetingDetails:
        """Raises ``MeetingNotFound`` or ``InvalidMeetingTransition``."""
        with self._session_factory() as session, session.begin():
            meeting = session.get(Meeting, meeting_id, options=[joinedload(Meeting.seller)])
            if meeting is None:
                raise MeetingNotFound(meeting_id)
            meeting.transition(status)
            details = MeetingDetails.from_row(meeting, meeting.seller)
        logger.info("Meeting %s marked %s", meeting_id, status.value)
        return details


"""LangChain tools over the scheduling engine.

``SchedulingCapabilities`` is the fixed set of operations the agent may
call.  ``build_scheduling_tools`` wraps each one as a LangChain tool whose
arguments are what the model supplies (dates, times, ids, lead data) and
whose result is a JSON string the model reads back.

The contact's phone and name are never model arguments: they come from
the run config (``configurable.requester_id`` / ``requester_name``), so the
model cannot book or cancel on someone else's behalf.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from datetime import date, datetime, time
from typing import Any

from langchain_core.runnables import RunnableConfig
from langchain_core.tools import BaseTool, tool

from sdr_agent.config import SELLERS_GROUP_ID
from sdr_agent.services.availability import WEEKDAYS_PT
from sdr_agent.services.history import ConversationStore
from sdr_agent.services.meetings import MeetingDetails, MeetingRequest, SchedulingEngine

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _parse_date(value: str) -> date:
    return date.fromisoformat(value.strip())


def _parse_time(value: str) -> time:
    return datetime.strptime(value.strip(), "%H:%M").time()


def _error(message: str) -> dict[str, Any]:
    return {"success": False, "error": message}


class SchedulingCapabilities:
    """Scheduling operations with plain, JSON-friendly inputs and outputs."""

    def __init__(
        self,
        engine: SchedulingEngine,
        store: ConversationStore,
        notify: Callable[[str, str], None] | None = None,
        sellers_group_id: str | None = SELLERS_GROUP_ID,
    ):
        self._engine = engine
        self._store = store
        self._notify = notify
        self._group_id = sellers_group_id

    # ── Formatting ───────────────────────────────────────────────────

    def _local_start(self, day: str, hhmm: str) -> datetime:
        return datetime.combine(_parse_date(day), _parse_time(hhmm), tzinfo=self._engine.hours.tz)

    def _meeting_dict(self, details: MeetingDetails) -> dict[str, Any]:
        start = self._engine.hours.local(details.start)
        end = self._engine.hours.local(details.end)
        return {
            "meeting_id": details.meeting_id,
            "seller_name": details.seller_name,
            "date": start.strftime("%d/%m/%Y"),
            "weekday": WEEKDAYS_PT[start.weekday()],
            "time": f"{start:%H:%M} - {end:%H:%M}",
            "join_link": details.join_link,
            "status": details.status.value,
        }

    # ── Availability ─────────────────────────────────────────────────

    def check_availability(self, day: str, hhmm: str) -> dict[str, Any]:
        try:
            start = self._local_start(day, hhmm)
        except ValueError:
            return _error("Data ou horário inválido. Use YYYY-MM-DD e HH:MM.")
        end = start + self._engine.hours.slot
        invalid = self._engine.hours.validate_span(start, end, self._engine.now())
        if invalid:
            return _error(invalid)
        result = self._engine.check_availability(start, end)
        return {
            "success": True,
            "available": bool(result.available),
            "free_sellers": len(result.available),
        }

    def list_available_slots(self, day: str) -> dict[str, Any]:
        try:
            target = _parse_date(day)
        except ValueError:
            return _error("Data inválida. Use YYYY-MM-DD.")
        if not self._engine.hours.is_business_day(target):
            return _error("Não agendamos reuniões aos sábados e domingos.")
        slots = self._engine.list_free_slots(target)
        return {
            "success": True,
            "date": target.strftime("%d/%m/%Y"),
            "weekday": WEEKDAYS_PT[target.weekday()],
            "slots": [
                {"number": i, "time": f"{self._engine.hours.local(s.start):%H:%M}"}
                for i, s in enumerate(slots, start=1)
            ],
        }

    def list_available_days(self, count: int = 5) -> dict[str, Any]:
        days = self._engine.list_available_days(max(1, min(count, 10)))
        return {
            "success": True,
            "days": [
                {
                    "number": i,
                    "date": d.date.isoformat(),
                    "date_formatted": d.date_formatted,
                    "weekday": d.weekday,
                    "is_today": d.is_today,
                    "slot_count": d.slot_count,
                }
                for i, d in enumerate(days, start=1)
            ],
        }

    # ── Booking ──────────────────────────────────────────────────────

    def create_meeting(
        self,
        requester_id: str,
        requester_name: str | None,
        day: str,
        hhmm: str,
        *,
        name: str | None = None,
        email: str | None = None,
        city: str | None = None,
        state: str | None = None,
        segment: str | None = None,
        observations: str | None = None,
    ) -> dict[str, Any]:
        try:
            start = self._local_start(day, hhmm)
        except ValueError:
            return _error("Data ou horário inválido. Use YYYY-MM-DD e HH:MM.")
        email = (email or "").strip() or None
        if email and not _EMAIL_RE.match(email):
            return _error(f'"{email}" não parece um email válido.')

        result = self._engine.create_meeting(
            MeetingRequest(
                client_phone=requester_id,
                start=start,
                client_name=name or requester_name,
                client_email=email,
                city=city,
                state=state,
                segment=segment,
                observations=observations,
            )
        )
        if not result.success:
            return _error(result.error)
        return {
            "success": True,
            "already_existed": result.already_existed,
            "meeting": self._meeting_dict(result.meeting),
        }

    def get_meetings(self, requester_id: str) -> dict[str, Any]:
        meetings = self._engine.get_meetings_by_phone(requester_id)
        return {"success": True, "meetings": [self._meeting_dict(m) for m in meetings]}

    def get_meetings_by_email(self, email: str) -> dict[str, Any]:
        if not _EMAIL_RE.match((email or "").strip()):
            return _error("Email inválido.")
        meetings = self._engine.get_meetings_by_email(email)
        return {"success": True, "meetings": [self._meeting_dict(m) for m in meetings]}

    def reschedule_meeting(
        self, requester_id: str, meeting_id: str, day: str, hhmm: str,
    ) -> dict[str, Any]:
        try:
            new_start = self._local_start(day, hhmm)
        except ValueError:
            return _error("Data ou horário inválido. Use YYYY-MM-DD e HH:MM.")
        result = self._engine.reschedule_meeting(meeting_id, new_start, client_phone=requester_id)
        if not result.success:
            return _error(result.error)
        payload: dict[str, Any] = {
            "success": True,
            "unchanged": result.unchanged,
            "old_cancelled": result.old_cancelled,
            "meeting": self._meeting_dict(result.new_meeting),
        }
        if result.warning:
            payload["warning"] = result.warning
        return payload

    def cancel_meeting(self, requester_id: str, meeting_id: str) -> dict[str, Any]:
        result = self._engine.cancel_meeting(meeting_id, client_phone=requester_id)
        if not result.success:
            return _error(result.error)
        return {"success": True, "already_cancelled": result.already_cancelled}

    # ── Hand-off ─────────────────────────────────────────────────────

    def transfer_to_human(
        self, requester_id: str, requester_name: str | None, reason: str,
    ) -> dict[str, Any]:
        if not self._group_id or self._notify is None:
            return _error("Grupo de vendedores não configurado.")
        text = (
            "Atendimento humano solicitado\n\n"
            f"Cliente: {requester_name or 'Não informado'}\n"
            f"Telefone: {requester_id}\n"
            f"Motivo: {reason}"
        )
        try:
            self._notify(self._group_id, text)
        except Exception as exc:
            logger.exception("Hand-off notice failed for %s", requester_id)
            return _error(f"Não foi possível avisar a equipe: {exc}")
        self._store.set_disabled(requester_id, True)
        return {"success": True, "message": "Equipe avisada. Um consultor vai continuar o atendimento."}


def _requester(config: RunnableConfig) -> tuple[str, str | None]:
    configurable = (config or {}).get("configurable") or {}
    requester_id = configurable.get("requester_id")
    if not requester_id:
        raise ValueError("requester_id missing from run config")
    return requester_id, configurable.get("requester_name")


def _dump(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False)


def build_scheduling_tools(capabilities: SchedulingCapabilities) -> list[BaseTool]:
    """Wrap *capabilities* as the tool list bound to the chat model."""

    @tool
    def check_availability(date: str, time: str) -> str:
        """Check whether any consultant is free for a 30-minute demo.

        Args:
            date: Day in YYYY-MM-DD format.
            time: Start time in HH:MM (Brasília time).
        """
        return _dump(capabilities.check_availability(date, time))

    @tool
    def list_available_slots(date: str) -> str:
        """List the free 30-minute start times for one business day.

        Args:
            date: Day in YYYY-MM-DD format.
        """
        return _dump(capabilities.list_available_slots(date))

    @tool
    def list_available_days(count: int = 5) -> str:
        """List the next business days that still have free slots.

        Args:
            count: How many days to return (1-10, default 5).
        """
        return _dump(capabilities.list_available_days(count))

    @tool
    def create_meeting(
        date: str,
        time: str,
        config: RunnableConfig,
        name: str | None = None,
        email: str | None = None,
        city: str | None = None,
        state: str | None = None,
        segment: str | None = None,
        observations: str | None = None,
    ) -> str:
        """Book a 30-minute demo for the current contact.

        Args:
            date: Day in YYYY-MM-DD format.
            time: Start time in HH:MM (Brasília time), one of list_available_slots.
            name: Contact's name, if known.
            email: Contact's email (optional).
            city: Contact's city.
            state: Contact's state (UF).
            segment: "negócios", "pessoal" or "político".
            observations: Anything relevant the contact said.
        """
        requester_id, requester_name = _requester(config)
        return _dump(
            capabilities.create_meeting(
                requester_id, requester_name, date, time,
                name=name, email=email, city=city, state=state,
                segment=segment, observations=observations,
            )
        )

    @tool
    def get_meetings(config: RunnableConfig) -> str:
        """List the current contact's upcoming meetings."""
        requester_id, _ = _requester(config)
        return _dump(capabilities.get_meetings(requester_id))

    @tool
    def get_meetings_by_email(email: str) -> str:
        """List upcoming meetings booked with a given email.

        Args:
            email: The email the contact says they booked with.
        """
        return _dump(capabilities.get_meetings_by_email(email))

    @tool
    def reschedule_meeting(meeting_id: str, date: str, time: str, config: RunnableConfig) -> str:
        """Move one of the contact's meetings to a new slot.

        The new meeting is booked first; the old one is cancelled afterwards.

        Args:
            meeting_id: Id returned by get_meetings.
            date: New day in YYYY-MM-DD format.
            time: New start time in HH:MM.
        """
        requester_id, _ = _requester(config)
        return _dump(capabilities.reschedule_meeting(requester_id, meeting_id, date, time))

    @tool
    def cancel_meeting(meeting_id: str, config: RunnableConfig) -> str:
        """Cancel one of the contact's meetings.

        Args:
            meeting_id: Id returned by get_meetings.
        """
        requester_id, _ = _requester(config)
        return _dump(capabilities.cancel_meeting(requester_id, meeting_id))

    @tool
    def transfer_to_human(reason: str, config: RunnableConfig) -> str:
        """Hand the conversation to a human consultant and stop the bot.

        Args:
            reason: Short description of why a human is needed.
        """
        requester_id, requester_name = _requester(config)
        return _dump(capabilities.transfer_to_human(requester_id, requester_name, reason))

    return [
        check_availability,
        list_available_slots,
        list_available_days,
        create_meeting,
        get_meetings,
        get_meetings_by_email,
        reschedule_meeting,
        cancel_meeting,
        transfer_to_human,
    ]

"""Conversation persistence: bounded message log plus lifecycle flags."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from sdr_agent.config import HISTORY_LIMIT
from sdr_agent.models import (
    Conversation,
    ConversationStatus,
    QueueItemStatus,
    ReactivationQueueItem,
    utcnow,
)

logger = logging.getLogger(__name__)

RESPONDED_CANCEL_REASON = "Contato respondeu antes do envio"


class ConversationStore:
    def __init__(self, session_factory: sessionmaker, history_limit: int = HISTORY_LIMIT):
        self._session_factory = session_factory
        self._history_limit = history_limit

    # ── Reads ────────────────────────────────────────────────────────

    def get(self, phone: str) -> Conversation | None:
        with self._session_factory() as session:
            return session.scalar(select(Conversation).where(Conversation.phone == phone))

    def load_history(self, phone: str) -> list[dict[str, Any]]:
        conversation = self.get(phone)
        if conversation is None:
            return []
        return list(conversation.messages or [])

    def is_disabled(self, phone: str) -> bool:
        conversation = self.get(phone)
        return bool(conversation and conversation.disabled)

    # ── Writes ───────────────────────────────────────────────────────

    def _get_or_create(self, session: Session, phone: str) -> Conversation:
        conversation = session.scalar(select(Conversation).where(Conversation.phone == phone))
        if conversation is not None:
            return conversation
        conversation = Conversation(phone=phone, messages=[])
        try:
            with session.begin_nested():
                session.add(conversation)
        except IntegrityError:
            # Another worker created the row first
            conversation = session.scalar(select(Conversation).where(Conversation.phone == phone))
        return conversation

    def append_messages(
        self,
        phone: str,
        messages: list[dict[str, Any]],
        *,
        name: str | None = None,
        instance: str | None = None,
        touch_contact: bool = True,
    ) -> Conversation:
        """Append ``{"role", "content"}`` entries and keep the last N.

        ``touch_contact=False`` is used for our own outbound nudges so they
        do not count as the contact being active.
        """
        with self._session_factory() as session, session.begin():
            conversation = self._get_or_create(session, phone)
            history = list(conversation.messages or []) + list(messages)
            conversation.messages = history[-self._history_limit:]
            if name and name != "admin" and not conversation.name:
                conversation.name = name
            if instance:
                conversation.last_contact_instance = instance
                if not conversation.first_contact_instance:
                    conversation.first_contact_instance = instance
            if touch_contact:
                conversation.last_contact_at = utcnow()
        logger.debug("Saved %d message(s) for %s", len(messages), phone)
        return conversation

    def set_disabled(self, phone: str, disabled: bool) -> None:
        with self._session_factory() as session, session.begin():
            self._get_or_create(session, phone).disabled = disabled
        logger.info("Bot %s for %s", "DISABLED" if disabled else "ENABLED", phone)

    def mark_responded(self, phone: str) -> int:
        """The contact wrote to us: drop queued nudges and reopen the conversation.

        Returns the number of reactivation items cancelled.
        """
        with self._session_factory() as session, session.begin():
            cancelled = session.execute(
                update(ReactivationQueueItem)
                .where(
                    ReactivationQueueItem.phone == phone,
                    ReactivationQueueItem.status == QueueItemStatus.PENDING,
                )
                .values(
                    status=QueueItemStatus.CANCELLED,
                    error_message=RESPONDED_CANCEL_REASON,
                    updated_at=utcnow(),
                )
            ).rowcount
            session.execute(
                update(Conversation)
                .where(
                    Conversation.phone == phone,
                    Conversation.status != ConversationStatus.ACTIVE,
                )
                .values(status=ConversationStatus.ACTIVE, updated_at=utcnow())
            )
        if cancelled:
            logger.info("Cancelled %d pending reactivation(s) for %s", cancelled, phone)
        return cancelled

    def set_status(
        self,
        phone: str,
        status: ConversationStatus,
        *,
        stage: str | None = None,
        discard_reason: str | None = None,
    ) -> None:
        values: dict[str, Any] = {"status": status, "updated_at": utcnow()}
        if stage is not None:
            values["stage"] = stage
        if discard_reason is not None:
            values["discard_reason"] = discard_reason
        with self._session_factory() as session, session.begin():
            session.execute(update(Conversation).where(Conversation.phone == phone).values(**values))

    def increment_attempts(self, phone: str, at: datetime | None = None) -> None:
        """Atomic ``reactivation_attempts += 1``."""
        at = at or utcnow()
        with self._session_factory() as session, session.begin():
            session.execute(
                update(Conversation)
                .where(Conversation.phone == phone)
                .values(
                    reactivation_attempts=Conversation.reactivation_attempts + 1,
                    last_reactivation_at=at,
                    status=ConversationStatus.REACTIVATING,
                    updated_at=at,
                )
            )

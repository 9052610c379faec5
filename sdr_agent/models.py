"""SQLAlchemy ORM models.

Five tables back the whole system:

- ``sellers``             — the people whose calendars receive bookings
- ``conversations``       — one row per WhatsApp contact, with a bounded
                            message log and the reactivation bookkeeping
- ``meetings``            — bookings; cancelled rows are kept, never deleted
- ``reactivation_queue``  — outbound nudges waiting to be sent
- ``conversation_summaries`` — cached LLM summaries for the dashboard

Two partial unique indexes enforce the "at most one live row" rules at
the database level: one SCHEDULED meeting per (phone, start time) and
one PENDING reactivation item per phone.
"""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


class UTCDateTime(TypeDecorator):
    """Store datetimes as naive UTC and hand them back timezone-aware.

    SQLite has no timezone support, so without this the same model would
    return aware datetimes on PostgreSQL and naive ones on SQLite.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to a UTCDateTime column")
        return value.astimezone(UTC).replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        return value.replace(tzinfo=UTC)


class Base(DeclarativeBase):
    pass


# ── Enums ────────────────────────────────────────────────────────────


class ConversationStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    REACTIVATING = "REACTIVATING"
    CONVERTED = "CONVERTED"
    DISCARDED = "DISCARDED"


class MeetingStatus(str, enum.Enum):
    SCHEDULED = "SCHEDULED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"
    NO_SHOW = "NO_SHOW"


class QueueItemStatus(str, enum.Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


REACTIVATABLE_STATUSES = (
    ConversationStatus.ACTIVE,
    ConversationStatus.INACTIVE,
    ConversationStatus.REACTIVATING,
)


class InvalidMeetingTransition(Exception):
    """Raised when a meeting is moved out of a terminal status."""


# ── Tables ───────────────────────────────────────────────────────────


class Seller(Base):
    """A bookable resource: one person, one external calendar."""

    __tablename__ = "sellers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(120))
    email: Mapped[str] = mapped_column(String(255), unique=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    calendar_id: Mapped[str] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    meetings: Mapped[list[Meeting]] = relationship(back_populates="seller")


class Conversation(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    phone: Mapped[str] = mapped_column(String(32), unique=True)
    name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    # [{"role": "user" | "assistant", "content": "..."}], most recent last
    messages: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    status: Mapped[ConversationStatus] = mapped_column(
        Enum(ConversationStatus, native_enum=False, length=16),
        default=ConversationStatus.ACTIVE,
    )
    stage: Mapped[str | None] = mapped_column(String(40), nullable=True)
    discard_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    reactivation_attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_reactivation_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_contact_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    disabled: Mapped[bool] = mapped_column(Boolean, default=False)
    first_contact_instance: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_contact_instance: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)


class Meeting(Base):
    __tablename__ = "meetings"
    __table_args__ = (
        Index(
            "uq_meetings_scheduled_phone_start",
            "client_phone",
            "start_time",
            unique=True,
            sqlite_where=text("status = 'SCHEDULED'"),
            postgresql_where=text("status = 'SCHEDULED'"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    seller_id: Mapped[str] = mapped_column(ForeignKey("sellers.id"))
    client_phone: Mapped[str] = mapped_column(String(32), index=True)
    client_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    client_email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    subject: Mapped[str | None] = mapped_column(String(255), nullable=True)
    start_time: Mapped[datetime] = mapped_column(UTCDateTime)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime)
    event_id: Mapped[str] = mapped_column(String(255))
    meet_link: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reminder_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    status: Mapped[MeetingStatus] = mapped_column(
        Enum(MeetingStatus, native_enum=False, length=16),
        default=MeetingStatus.SCHEDULED,
    )
    observations: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    seller: Mapped[Seller] = relationship(back_populates="meetings")

    def transition(self, new_status: MeetingStatus) -> None:
        """Move SCHEDULED → CANCELLED / COMPLETED / NO_SHOW (all terminal)."""
        if self.status != MeetingStatus.SCHEDULED:
            raise InvalidMeetingTransition(
                f"Meeting {self.id} is {self.status.value}; cannot move to {new_status.value}"
            )
        if new_status == MeetingStatus.SCHEDULED:
            raise InvalidMeetingTransition(f"Meeting {self.id} is already SCHEDULED")
        self.status = new_status


class ReactivationQueueItem(Base):
    __tablename__ = "reactivation_queue"
    __table_args__ = (
        Index(
            "uq_reactivation_pending_phone",
            "phone",
            unique=True,
            sqlite_where=text("status = 'PENDING'"),
            postgresql_where=text("status = 'PENDING'"),
        ),
        Index("ix_reactivation_status_scheduled", "status", "scheduled_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    conversation_id: Mapped[str] = mapped_column(ForeignKey("conversations.id"))
    phone: Mapped[str] = mapped_column(String(32))
    message: Mapped[str] = mapped_column(Text)
    instance: Mapped[str] = mapped_column(String(64))
    attempt: Mapped[int] = mapped_column(Integer, default=1)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    scheduled_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    status: Mapped[QueueItemStatus] = mapped_column(
        Enum(QueueItemStatus, native_enum=False, length=16),
        default=QueueItemStatus.PENDING,
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)


class ConversationSummary(Base):
    """Dashboard summary of one conversation.

    ``messages_hash`` is the SHA-256 of the message log it was generated
    from; a different hash means the summary is stale.
    """

    __tablename__ = "conversation_summaries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    conversation_id: Mapped[str] = mapped_column(ForeignKey("conversations.id"), unique=True)
    summary: Mapped[str] = mapped_column(Text)
    key_points: Mapped[list[str]] = mapped_column(JSON, default=list)
    sentiment: Mapped[str] = mapped_column(String(16), default="neutro")
    messages_hash: Mapped[str] = mapped_column(String(64))
    message_count: Mapped[int] = mapped_column(Integer, default=0)
    generated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

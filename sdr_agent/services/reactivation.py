"""Reactivation of stalled conversations.

Two phases, each safe to run on its own and to re-run:

**analyze_and_queue**
    Picks conversations idle for ``inactive_days`` that are still open,
    below ``max_attempts``, not handed to a human and without a future
    meeting.  Each one is classified by the fast model; accepted ones get a
    PENDING ``ReactivationQueueItem`` whose send time is staggered by
    ``delay_seconds * position``.  At most one PENDING item per phone ever
    exists (checked before classifying, enforced by a partial unique index).

**process_send_queue**
    Sends due PENDING items in priority order, a small batch at a time,
    sleeping ``delay_seconds`` between sends.  An item whose contact wrote
    to us after it was queued is cancelled instead of sent.

``run_cycle`` runs the send phase first and the analysis second.  The
analysis admits at most ``daily_limit`` items per local day, counting
items created since midnight that are PENDING or SENT.
"""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any

from langchain_anthropic import ChatAnthropic
from sqlalchemy import case, exists, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from sdr_agent.config import (
    ANTHROPIC_API_KEY,
    DEFAULT_INSTANCE,
    FAST_MODEL_NAME,
    REACTIVATION_BATCH_SIZE,
    REACTIVATION_DAILY_LIMIT,
    REACTIVATION_DELAY_SECONDS,
    REACTIVATION_INACTIVE_DAYS,
    REACTIVATION_MAX_ATTEMPTS,
)
from sdr_agent.models import (
    REACTIVATABLE_STATUSES,
    Conversation,
    ConversationStatus,
    Meeting,
    MeetingStatus,
    QueueItemStatus,
    ReactivationQueueItem,
    utcnow,
)
from sdr_agent.prompts import get_classifier_prompt
from sdr_agent.services.availability import BusinessHours
from sdr_agent.services.history import RESPONDED_CANCEL_REASON, ConversationStore
from sdr_agent.services.metrics import metrics

logger = logging.getLogger(__name__)

STAGES = frozenset({
    "greeting",
    "city_collected",
    "segment_collected",
    "day_selected",
    "scheduling",
    "meeting_scheduled",
    "meeting_cancelled",
    "objection",
    "transferred",
    "unresponsive",
    "unknown",
})

_CODE_FENCE = re.compile(r"```(?:json)?\s*|```")

Sender = Callable[[str, str, str], None]


@dataclass(frozen=True)
class ReactivationConfig:
    inactive_days: int = REACTIVATION_INACTIVE_DAYS
    max_attempts: int = REACTIVATION_MAX_ATTEMPTS
    daily_limit: int = REACTIVATION_DAILY_LIMIT
    delay_seconds: float = REACTIVATION_DELAY_SECONDS
    batch_size: int = REACTIVATION_BATCH_SIZE
    instance: str = DEFAULT_INSTANCE

    def merged(self, overrides: dict[str, Any] | None) -> ReactivationConfig:
        """Apply non-``None`` overrides (e.g. from an HTTP request body)."""
        if not overrides:
            return self
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


# ── Classification ───────────────────────────────────────────────────


@dataclass(frozen=True)
class Verdict:
    stage: str
    should_reactivate: bool
    reactivation_message: str | None
    discard_reason: str | None
    summary: str


def strip_code_fences(raw: str) -> str:
    return _CODE_FENCE.sub("", raw).strip()


def parse_verdict(raw: str) -> Verdict:
    """Parse the classifier's JSON answer.  Raises ``ValueError`` if unusable."""
    data = json.loads(strip_code_fences(raw))
    if not isinstance(data, dict):
        raise ValueError("classifier answer is not a JSON object")
    stage = data.get("stage") if data.get("stage") in STAGES else "unknown"
    return Verdict(
        stage=stage,
        should_reactivate=bool(data.get("should_reactivate")),
        reactivation_message=(data.get("reactivation_message") or None),
        discard_reason=(data.get("discard_reason") or None),
        summary=data.get("summary") or "",
    )


class ConversationClassifier:
    """Asks the fast Anthropic model where a conversation stalled."""

    def __init__(self, llm=None):
        if llm is None:
            llm = ChatAnthropic(
                model=FAST_MODEL_NAME,
                api_key=ANTHROPIC_API_KEY,
                temperature=0.0,
                max_tokens=512,
            )
        self._llm = llm

    def classify(
        self,
        history: list[dict[str, Any]],
        attempt: int,
        max_attempts: int,
        now: datetime | None = None,
    ) -> Verdict:
        prompt = get_classifier_prompt(history, attempt, max_attempts, now)
        with metrics.track("anthropic", "reactivation_classify"):
            response = self._llm.invoke(prompt)
        content = response.content if isinstance(response.content, str) else json.dumps(
            response.content
        )
        return parse_verdict(content)


def apply_policy(verdict: Verdict, attempts: int, max_attempts: int) -> Verdict:
    """Contacts already at the attempt cap are discarded whatever the model says."""
    if attempts >= max_attempts:
        return replace(
            verdict,
            should_reactivate=False,
            reactivation_message=None,
            discard_reason=f"Máximo de tentativas de reativação atingido ({max_attempts})",
        )
    return verdict


# ── Results ──────────────────────────────────────────────────────────


@dataclass
class Detail:
    phone: str
    action: str
    reason: str = ""


@dataclass
class AnalysisResult:
    total_analyzed: int = 0
    queued: int = 0
    discarded: int = 0
    skipped: int = 0
    errors: int = 0
    budget_remaining: int = 0
    details: list[Detail] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SendResult:
    sent: int = 0
    failed: int = 0
    cancelled: int = 0
    remaining: int = 0
    details: list[Detail] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ── Scheduler ────────────────────────────────────────────────────────


class ReactivationScheduler:
    def __init__(
        self,
        session_factory: sessionmaker,
        store: ConversationStore,
        classifier: ConversationClassifier,
        send: Sender,
        *,
        config: ReactivationConfig | None = None,
        hours: BusinessHours | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._session_factory = session_factory
        self._store = store
        self._classifier = classifier
        self._send = send
        self.config = config or ReactivationConfig()
        self._hours = hours or BusinessHours.from_config()
        self._clock = clock
        self._sleep = sleep

    def _local_midnight(self, now: datetime) -> datetime:
        local = self._hours.local(now)
        return local.replace(hour=0, minute=0, second=0, microsecond=0)

    def budget_used(self, now: datetime | None = None) -> int:
        """Items created since local midnight that are PENDING or SENT."""
        now = now or self._clock()
        with self._session_factory() as session:
            return session.scalar(
                select(func.count(ReactivationQueueItem.id)).where(
                    ReactivationQueueItem.created_at >= self._local_midnight(now),
                    ReactivationQueueItem.status.in_(
                        [QueueItemStatus.PENDING, QueueItemStatus.SENT]
                    ),
                )
            ) or 0

    # ── Candidate selection ──────────────────────────────────────────

    @staticmethod
    def _has_pending_item():
        return exists().where(
            ReactivationQueueItem.phone == Conversation.phone,
            ReactivationQueueItem.status == QueueItemStatus.PENDING,
        )

    @staticmethod
    def _quiet_since():
        """Later of the last contact and the last nudge; NULL nudge means never."""
        return case(
            (
                Conversation.last_reactivation_at > Conversation.last_contact_at,
                Conversation.last_reactivation_at,
            ),
            else_=Conversation.last_contact_at,
        )

    def _has_future_meeting(self, now: datetime):
        return exists().where(
            Meeting.client_phone == Conversation.phone,
            Meeting.status == MeetingStatus.SCHEDULED,
            Meeting.start_time >= now,
        )

    def find_candidates(
        self, config: ReactivationConfig, limit: int, now: datetime,
    ) -> list[Conversation]:
        cutoff = now - timedelta(days=config.inactive_days)
        with self._session_factory() as session:
            return list(
                session.scalars(
                    select(Conversation)
                    .where(
                        self._quiet_since() < cutoff,
                        Conversation.status.in_(REACTIVATABLE_STATUSES),
                        Conversation.reactivation_attempts < config.max_attempts,
                        Conversation.disabled.is_(False),
                        ~self._has_future_meeting(now),
                    )
                    .order_by(Conversation.reactivation_attempts, Conversation.last_contact_at)
                    .limit(limit)
                )
            )

    def _discard_exhausted(
        self, config: ReactivationConfig, now: datetime, result: AnalysisResult,
    ) -> None:
        """Close conversations that used every attempt and still went quiet."""
        cutoff = now - timedelta(days=config.inactive_days)
        reason = f"Máximo de tentativas de reativação atingido ({config.max_attempts})"
        with self._session_factory() as session, session.begin():
            phones = list(
                session.scalars(
                    select(Conversation.phone).where(
                        Conversation.status == ConversationStatus.REACTIVATING,
                        Conversation.reactivation_attempts >= config.max_attempts,
                        self._quiet_since() < cutoff,
                        Conversation.disabled.is_(False),
                        ~self._has_pending_item(),
                    )
                )
            )
            if phones:
                session.execute(
                    update(Conversation)
                    .where(Conversation.phone.in_(phones))
                    .values(status=ConversationStatus.DISCARDED, discard_reason=reason,
                            updated_at=now)
                )
        for phone in phones:
            result.discarded += 1
            result.details.append(Detail(phone, "discarded", reason))

    def _pending_exists(self, phone: str) -> bool:
        with self._session_factory() as session:
            return session.scalar(
                select(func.count(ReactivationQueueItem.id)).where(
                    ReactivationQueueItem.phone == phone,
                    ReactivationQueueItem.status == QueueItemStatus.PENDING,
                )
            ) > 0

    # ── Phase 1 ──────────────────────────────────────────────────────

    def analyze_and_queue(self, overrides: dict[str, Any] | None = None) -> AnalysisResult:
        config = self.config.merged(overrides)
        now = self._clock()
        result = AnalysisResult()
        logger.info("Reactivation analysis started (%s)", config)

        self._discard_exhausted(config, now, result)

        remaining = config.daily_limit - self.budget_used(now)
        if remaining <= 0:
            logger.info("Daily reactivation limit reached (%d)", config.daily_limit)
            return result

        for conversation in self.find_candidates(config, remaining, now):
            result.total_analyzed += 1
            phone = conversation.phone

            if self._pending_exists(phone):
                result.skipped += 1
                result.details.append(Detail(phone, "skipped", "Já está na fila de reativação"))
                continue

            history = list(conversation.messages or [])
            if not history:
                self._store.set_status(
                    phone, ConversationStatus.DISCARDED,
                    stage="unknown", discard_reason="Histórico de conversa vazio",
                )
                result.discarded += 1
                result.details.append(Detail(phone, "discarded", "Histórico de conversa vazio"))
                continue

            attempt = conversation.reactivation_attempts + 1
            try:
                verdict = self._classifier.classify(history, attempt, config.max_attempts, now)
            except Exception as exc:
                logger.exception("Classifier failed for %s", phone)
                result.errors += 1
                result.details.append(Detail(phone, "error", f"{type(exc).__name__}: {exc}"))
                continue

            verdict = apply_policy(verdict, conversation.reactivation_attempts, config.max_attempts)
            logger.info("%s: stage=%s reactivate=%s", phone, verdict.stage, verdict.should_reactivate)

            if not verdict.should_reactivate:
                if verdict.discard_reason:
                    self._store.set_status(
                        phone, ConversationStatus.DISCARDED,
                        stage=verdict.stage, discard_reason=verdict.discard_reason,
                    )
                    result.discarded += 1
                    result.details.append(Detail(phone, "discarded", verdict.discard_reason))
                else:
                    result.skipped += 1
                    result.details.append(Detail(phone, "skipped", verdict.summary))
                continue

            if not verdict.reactivation_message:
                result.skipped += 1
                result.details.append(Detail(phone, "skipped", "Sem mensagem de reativação"))
                continue

            item = ReactivationQueueItem(
                conversation_id=conversation.id,
                phone=phone,
                message=verdict.reactivation_message,
                instance=conversation.last_contact_instance or config.instance,
                attempt=attempt,
                scheduled_at=now + timedelta(seconds=config.delay_seconds * result.queued),
                status=QueueItemStatus.PENDING,
                created_at=now,
                updated_at=now,
            )
            try:
                with self._session_factory() as session, session.begin():
                    session.add(item)
                    session.execute(
                        update(Conversation)
                        .where(Conversation.id == conversation.id)
                        .values(stage=verdict.stage, status=ConversationStatus.REACTIVATING,
                                discard_reason=None, updated_at=now)
                    )
            except IntegrityError:
                result.skipped += 1
                result.details.append(Detail(phone, "skipped", "Já está na fila de reativação"))
                continue

            result.queued += 1
            result.details.append(
                Detail(phone, "queued", f"Estágio: {verdict.stage}. Mensagem: {item.message}")
            )

        result.budget_remaining = max(remaining - result.queued, 0)
        metrics.record_count("Reactivation/Queued", result.queued)
        logger.info(
            "Reactivation analysis finished: analyzed=%d queued=%d discarded=%d skipped=%d errors=%d",
            result.total_analyzed, result.queued, result.discarded, result.skipped, result.errors,
        )
        return result

    # ── Phase 2 ──────────────────────────────────────────────────────

    def process_send_queue(self, overrides: dict[str, Any] | None = None) -> SendResult:
        config = self.config.merged(overrides)
        now = self._clock()
        result = SendResult()

        with self._session_factory() as session:
            items = list(
                session.scalars(
                    select(ReactivationQueueItem)
                    .where(
                        ReactivationQueueItem.status == QueueItemStatus.PENDING,
                        ReactivationQueueItem.scheduled_at <= now,
                    )
                    .order_by(
                        ReactivationQueueItem.priority.desc(),
                        ReactivationQueueItem.scheduled_at,
                    )
                    .limit(config.batch_size)
                )
            )
        logger.info("%d reactivation message(s) due", len(items))

        for index, item in enumerate(items):
            conversation = self._store.get(item.phone)
            if conversation is not None and conversation.last_contact_at > item.created_at:
                self._settle(item.id, QueueItemStatus.CANCELLED, error=RESPONDED_CANCEL_REASON)
                result.cancelled += 1
                result.details.append(Detail(item.phone, "cancelled", RESPONDED_CANCEL_REASON))
                continue

            try:
                self._send(item.instance, item.phone, item.message)
            except Exception as exc:
                logger.exception("Reactivation send failed for %s", item.phone)
                self._settle(item.id, QueueItemStatus.FAILED, error=str(exc) or type(exc).__name__)
                result.failed += 1
                result.details.append(Detail(item.phone, "failed", str(exc)))
                continue

            sent_at = self._clock()
            self._settle(item.id, QueueItemStatus.SENT, sent_at=sent_at)
            self._store.increment_attempts(item.phone, sent_at)
            self._store.append_messages(
                item.phone,
                [{"role": "assistant", "content": item.message}],
                instance=item.instance,
                touch_contact=False,
            )
            result.sent += 1
            result.details.append(Detail(item.phone, "sent"))

            if index < len(items) - 1:
                self._sleep(config.delay_seconds)

        with self._session_factory() as session:
            result.remaining = session.scalar(
                select(func.count(ReactivationQueueItem.id)).where(
                    ReactivationQueueItem.status == QueueItemStatus.PENDING
                )
            ) or 0

        metrics.record_count("Reactivation/Sent", result.sent)
        logger.info("Reactivation send finished: sent=%d failed=%d cancelled=%d remaining=%d",
                    result.sent, result.failed, result.cancelled, result.remaining)
        return result

    def _settle(
        self,
        item_id: str,
        status: QueueItemStatus,
        *,
        error: str | None = None,
        sent_at: datetime | None = None,
    ) -> None:
        with self._session_factory() as session, session.begin():
            item = session.get(ReactivationQueueItem, item_id)
            item.status = status
            item.error_message = error
            if sent_at is not None:
                item.sent_at = sent_at

    # ── Cycle & stats ────────────────────────────────────────────────

    def run_cycle(self, overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        logger.info("=== Reactivation cycle started ===")
        sending = self.process_send_queue(overrides)
        analysis = self.analyze_and_queue(overrides)
        logger.info("=== Reactivation cycle finished ===")
        return {"sending": sending.to_dict(), "analysis": analysis.to_dict()}

    def stats(self) -> dict[str, int]:
        midnight = self._local_midnight(self._clock())

        def count(model, *criteria) -> int:
            return session.scalar(select(func.count()).select_from(model).where(*criteria)) or 0

        with self._session_factory() as session:
            return {
                "pending_queue": count(
                    ReactivationQueueItem,
                    ReactivationQueueItem.status == QueueItemStatus.PENDING,
                ),
                "sent_today": count(
                    ReactivationQueueItem,
                    ReactivationQueueItem.status == QueueItemStatus.SENT,
                    ReactivationQueueItem.sent_at >= midnight,
                ),
                "failed_today": count(
                    ReactivationQueueItem,
                    ReactivationQueueItem.status == QueueItemStatus.FAILED,
                    ReactivationQueueItem.updated_at >= midnight,
                ),
                "contacts_reactivating": count(
                    Conversation, Conversation.status == ConversationStatus.REACTIVATING,
                ),
                "contacts_discarded": count(
                    Conversation, Conversation.status == ConversationStatus.DISCARDED,
                ),
            }

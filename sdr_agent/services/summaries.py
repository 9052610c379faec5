"""Cached conversation summaries for the dashboard.

A summary is regenerated only when the conversation's message log has
changed since the cached one was written (count first, then SHA-256 of
the log).  Generation uses the same fast Anthropic model as the
reactivation classifier.  A failed generation is logged and reported as
``None``; the dashboard shows the lead without a summary.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from langchain_anthropic import ChatAnthropic
from sqlalchemy import delete, select
from sqlalchemy.orm import sessionmaker

from sdr_agent.config import ANTHROPIC_API_KEY, FAST_MODEL_NAME
from sdr_agent.models import Conversation, ConversationSummary, utcnow
from sdr_agent.prompts import get_summary_prompt
from sdr_agent.services.metrics import metrics
from sdr_agent.services.reactivation import strip_code_fences

logger = logging.getLogger(__name__)

SENTIMENTS = ("positivo", "neutro", "negativo")
MAX_KEY_POINTS = 5
EMPTY_SUMMARY = "Sem mensagens na conversa"


@dataclass(frozen=True)
class SummaryResult:
    summary: str
    key_points: list[str]
    sentiment: str
    is_cached: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class BatchResult:
    processed: int = 0
    success: int = 0
    failed: int = 0
    phones: list[str] = field(default_factory=list)


def messages_hash(messages: list[dict[str, Any]]) -> str:
    raw = json.dumps(messages, ensure_ascii=False, sort_keys=True)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def parse_summary(raw: str) -> tuple[str, list[str], str]:
    """Parse the model's JSON answer.  Raises ``ValueError`` if unusable."""
    data = json.loads(strip_code_fences(raw))
    if not isinstance(data, dict) or not data.get("summary"):
        raise ValueError("summary answer has no 'summary' field")
    key_points = [str(p) for p in data.get("key_points") or [] if p][:MAX_KEY_POINTS]
    sentiment = data.get("sentiment") if data.get("sentiment") in SENTIMENTS else "neutro"
    return str(data["summary"]), key_points, sentiment


class SummaryGenerator:
    def __init__(
        self,
        session_factory: sessionmaker,
        llm=None,
        *,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if llm is None:
            llm = ChatAnthropic(
                model=FAST_MODEL_NAME,
                api_key=ANTHROPIC_API_KEY,
                temperature=0.0,
                max_tokens=512,
            )
        self._session_factory = session_factory
        self._llm = llm
        self._clock = clock
        self._sleep = sleep

    def _generate(self, messages: list[dict[str, Any]]) -> tuple[str, list[str], str]:
        with metrics.track("anthropic", "conversation_summary"):
            response = self._llm.invoke(get_summary_prompt(messages))
        content = response.content if isinstance(response.content, str) else json.dumps(
            response.content
        )
        return parse_summary(content)

    def get_or_generate(self, conversation_id: str) -> SummaryResult | None:
        """Cached summary when still fresh, a new one otherwise.

        Returns ``None`` for an unknown conversation or when generation fails.
        """
        with self._session_factory() as session:
            conversation = session.get(Conversation, conversation_id)
            if conversation is None:
                return None
            messages = list(conversation.messages or [])
            cached = session.scalar(
                select(ConversationSummary).where(
                    ConversationSummary.conversation_id == conversation_id
                )
            )

        if not messages:
            return SummaryResult(EMPTY_SUMMARY, [], "neutro", is_cached=False)

        digest = messages_hash(messages)
        if (
            cached is not None
            and cached.message_count == len(messages)
            and cached.messages_hash == digest
        ):
            return SummaryResult(cached.summary, list(cached.key_points or []),
                                 cached.sentiment, is_cached=True)

        try:
            summary, key_points, sentiment = self._generate(messages)
        except Exception:
            logger.exception("Summary generation failed for conversation %s", conversation_id)
            return None

        with self._session_factory() as session, session.begin():
            row = session.scalar(
                select(ConversationSummary).where(
                    ConversationSummary.conversation_id == conversation_id
                )
            )
            if row is None:
                row = ConversationSummary(conversation_id=conversation_id)
                session.add(row)
            row.summary = summary
            row.key_points = key_points
            row.sentiment = sentiment
            row.messages_hash = digest
            row.message_count = len(messages)
            row.generated_at = self._clock()
        logger.info("Summary generated for conversation %s (%d messages)",
                    conversation_id, len(messages))
        return SummaryResult(summary, key_points, sentiment, is_cached=False)

    def regenerate(self, conversation_id: str) -> SummaryResult | None:
        """Drop the cached summary and generate a new one."""
        with self._session_factory() as session, session.begin():
            session.execute(
                delete(ConversationSummary).where(
                    ConversationSummary.conversation_id == conversation_id
                )
            )
        return self.get_or_generate(conversation_id)

    def generate_missing(self, limit: int = 10, delay_seconds: float = 1.0) -> BatchResult:
        """Summarize the most recently active conversations that have none yet."""
        with self._session_factory() as session:
            rows = session.execute(
                select(Conversation.id, Conversation.phone)
                .outerjoin(
                    ConversationSummary,
                    ConversationSummary.conversation_id == Conversation.id,
                )
                .where(ConversationSummary.id.is_(None))
                .order_by(Conversation.last_contact_at.desc())
                .limit(limit)
            ).all()

        result = BatchResult()
        for index, (conversation_id, phone) in enumerate(rows):
            if index and delay_seconds > 0:
                self._sleep(delay_seconds)
            result.processed += 1
            result.phones.append(phone)
            if self.get_or_generate(conversation_id) is None:
                result.failed += 1
            else:
                result.success += 1
        logger.info("Summary batch: %d processed, %d ok, %d failed",
                    result.processed, result.success, result.failed)
        return result

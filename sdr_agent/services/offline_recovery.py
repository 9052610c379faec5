"""Re-import messages that arrived while the webhook was down.

Scans each instance's chats, and for every personal chat publishes the
inbound text messages newer than both the look-back cutoff and the
conversation's ``last_contact_at``.  Messages go straight onto the work
queue, oldest first, bypassing the debounce buffer.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from sdr_agent.config import EVOLUTION_INSTANCES
from sdr_agent.services.history import ConversationStore
from sdr_agent.services.whatsapp_client import (
    WhatsAppAPIError,
    WhatsAppClient,
    extract_message_text,
    extract_phone_from_jid,
    is_group_jid,
)
from sdr_agent.services.work_queue import WorkQueue, WorkUnit

logger = logging.getLogger(__name__)

MESSAGES_PER_CHAT = 30


@dataclass
class RecoveryResult:
    instance: str
    chats_scanned: int = 0
    messages_published: int = 0
    errors: int = 0
    phones: list[str] = field(default_factory=list)


def _timestamp(record: dict[str, Any]) -> datetime | None:
    raw = record.get("messageTimestamp")
    try:
        return datetime.fromtimestamp(int(raw), UTC)
    except (TypeError, ValueError):
        return None


class OfflineRecovery:
    def __init__(self, whatsapp: WhatsAppClient, store: ConversationStore, queue: WorkQueue):
        self._whatsapp = whatsapp
        self._store = store
        self._queue = queue

    async def recover(self, instance: str, hours_back: int = 48) -> RecoveryResult:
        result = RecoveryResult(instance=instance)
        cutoff = datetime.now(UTC) - timedelta(hours=hours_back)

        try:
            chats = await asyncio.to_thread(self._whatsapp.find_chats, instance)
        except WhatsAppAPIError as exc:
            logger.error("Could not list chats for %s: %s", instance, exc)
            result.errors += 1
            return result

        for chat in chats:
            remote_jid = chat.get("remoteJid") or chat.get("id") or ""
            if not remote_jid or is_group_jid(remote_jid):
                continue
            result.chats_scanned += 1
            try:
                published = await self._recover_chat(instance, remote_jid, cutoff)
            except Exception:
                logger.exception("Offline recovery failed for chat %s", remote_jid)
                result.errors += 1
                continue
            if published:
                result.messages_published += published
                result.phones.append(extract_phone_from_jid(remote_jid))

        logger.info(
            "Offline recovery %s: %d chats, %d messages, %d errors",
            instance, result.chats_scanned, result.messages_published, result.errors,
        )
        return result

    async def _recover_chat(self, instance: str, remote_jid: str, cutoff: datetime) -> int:
        phone = extract_phone_from_jid(remote_jid)
        conversation = await asyncio.to_thread(self._store.get, phone)
        since = max(cutoff, conversation.last_contact_at) if conversation else cutoff

        records = await asyncio.to_thread(
            self._whatsapp.find_messages, instance, remote_jid, MESSAGES_PER_CHAT,
        )
        pending = []
        for record in records:
            key = record.get("key") or {}
            if key.get("fromMe"):
                continue
            text = extract_message_text(record.get("message"))
            sent_at = _timestamp(record)
            if not text or sent_at is None or sent_at <= since:
                continue
            pending.append((sent_at, key.get("id") or "", text, record.get("pushName")))

        published = 0
        for sent_at, message_id, text, name in sorted(pending, key=lambda p: p[0]):
            unit = WorkUnit(
                instance=instance,
                phone=phone,
                text=text,
                name=name,
                message_id=message_id,
                timestamp_ms=int(sent_at.timestamp() * 1000),
            )
            if not await self._queue.publish(unit):
                raise RuntimeError("work queue unavailable")
            published += 1
        return published

    async def recover_all(self, hours_back: int = 48) -> list[RecoveryResult]:
        return [await self.recover(instance, hours_back) for instance in EVOLUTION_INSTANCES]

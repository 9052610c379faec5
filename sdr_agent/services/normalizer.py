"""Turn a raw ``messages.upsert`` webhook event into an ``InboundMessage``.

Events that should not reach the bot come back as ``None``: group
traffic, our own outgoing messages (other than the operator's control
tokens), empty payloads and voice notes that could not be transcribed.
``normalize`` never raises.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

from sdr_agent.config import DEFAULT_INSTANCE, DISABLE_TOKEN, ENABLE_TOKEN
from sdr_agent.services.transcription import TranscriptionClient
from sdr_agent.services.whatsapp_client import (
    WhatsAppClient,
    extract_message_text,
    extract_phone_from_jid,
    get_audio_info,
    has_audio_message,
    is_group_jid,
)

logger = logging.getLogger(__name__)

OPERATOR_NAME = "admin"


@dataclass(frozen=True)
class InboundMessage:
    instance: str
    phone: str
    text: str
    name: str | None
    message_id: str
    timestamp_ms: int
    from_self: bool = False


class InboundNormalizer:
    def __init__(self, whatsapp: WhatsAppClient, transcriber: TranscriptionClient):
        self._whatsapp = whatsapp
        self._transcriber = transcriber

    def normalize(self, payload: dict[str, Any]) -> InboundMessage | None:
        try:
            return self._normalize(payload)
        except Exception:
            logger.exception("Failed to normalize inbound event; dropping it")
            return None

    def _normalize(self, payload: dict[str, Any]) -> InboundMessage | None:
        data = payload.get("data") or {}
        key = data.get("key") or {}
        remote_jid = key.get("remoteJid")
        message_id = key.get("id")
        if not remote_jid or not message_id:
            logger.info("Event without remoteJid/id ignored")
            return None

        instance = payload.get("instance") or DEFAULT_INSTANCE
        message = data.get("message") or {}
        text = (extract_message_text(message) or "").strip()
        now_ms = int(time.time() * 1000)

        if key.get("fromMe"):
            # Only the operator's hand-off commands are let through
            if text in (DISABLE_TOKEN, ENABLE_TOKEN):
                logger.info("Operator command %r for %s", text, remote_jid)
                return InboundMessage(
                    instance=instance,
                    phone=extract_phone_from_jid(remote_jid),
                    text=text,
                    name=OPERATOR_NAME,
                    message_id=message_id,
                    timestamp_ms=now_ms,
                    from_self=True,
                )
            return None

        if is_group_jid(remote_jid):
            logger.debug("Group message ignored (%s)", remote_jid)
            return None

        phone = extract_phone_from_jid(remote_jid)

        if not text and (data.get("messageType") == "audioMessage" or has_audio_message(message)):
            text = self._transcribe(instance, phone, message_id, message) or ""
            if not text:
                return None

        if not text:
            logger.info("Message from %s has no text and no audio; ignored", phone)
            return None

        logger.info("Message from %s@%s: %r", phone, instance, text[:50])
        return InboundMessage(
            instance=instance,
            phone=phone,
            text=text,
            name=data.get("pushName") or None,
            message_id=message_id,
            timestamp_ms=now_ms,
        )

    def _transcribe(
        self, instance: str, phone: str, message_id: str, message: dict[str, Any],
    ) -> str | None:
        info = get_audio_info(message) or {}
        mimetype = info.get("mimetype") or "audio/ogg"
        logger.info("Audio from %s (%ss, %s)", phone, info.get("seconds"), mimetype)

        # Present when the instance has webhook_base64 enabled
        audio_b64 = message.get("base64")
        if not audio_b64:
            media = self._whatsapp.get_media_base64(instance, message_id)
            audio_b64 = (media or {}).get("base64")
        if not audio_b64:
            logger.warning("Could not download audio %s; dropping it", message_id)
            return None

        text = self._transcriber.transcribe(audio_b64, mimetype)
        if not text:
            logger.warning("Transcription failed for %s; dropping it", message_id)
        return text

"""WhatsApp channel client (Evolution API).

Evolution API docs: https://doc.evolution-api.com/
Every call takes the instance name explicitly: the bot runs several
WhatsApp numbers and replies go out through the number the contact wrote to.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from sdr_agent.config import EVOLUTION_API_KEY, EVOLUTION_API_URL
from sdr_agent.services.http import ExternalAPIError, RetryingClient

logger = logging.getLogger(__name__)

PERSONAL_JID_SUFFIX = "@s.whatsapp.net"
GROUP_JID_SUFFIX = "@g.us"
COUNTRY_CODE = "55"

_NON_DIGITS = re.compile(r"\D")


class WhatsAppAPIError(ExternalAPIError):
    """Raised when an Evolution API call fails after all retries."""


# ── Payload helpers ──────────────────────────────────────────────────


def format_phone(phone: str) -> str:
    """Digits only, with the Brazilian country code added when missing."""
    cleaned = _NON_DIGITS.sub("", phone)
    if not cleaned.startswith(COUNTRY_CODE) and len(cleaned) <= 11:
        cleaned = COUNTRY_CODE + cleaned
    return cleaned


def is_group_jid(remote_jid: str) -> bool:
    return remote_jid.endswith(GROUP_JID_SUFFIX)


def extract_phone_from_jid(remote_jid: str) -> str:
    return remote_jid.replace(PERSONAL_JID_SUFFIX, "").replace(GROUP_JID_SUFFIX, "")


def extract_message_text(message: dict[str, Any] | None) -> str | None:
    """Pull the user-visible text out of the message variants we handle."""
    if not message:
        return None
    return (
        message.get("conversation")
        or (message.get("extendedTextMessage") or {}).get("text")
        or (message.get("buttonsResponseMessage") or {}).get("selectedButtonId")
        or ((message.get("listResponseMessage") or {}).get("singleSelectReply") or {}).get(
            "selectedRowId"
        )
        or None
    )


def has_audio_message(message: dict[str, Any] | None) -> bool:
    return bool(message and message.get("audioMessage"))


def get_audio_info(message: dict[str, Any] | None) -> dict[str, Any] | None:
    """Return ``{"mimetype", "seconds"}`` for an audio message, else ``None``."""
    if not has_audio_message(message):
        return None
    audio = message["audioMessage"]
    mimetype = (audio.get("mimetype") or "audio/ogg").split(";")[0].strip()
    return {"mimetype": mimetype, "seconds": audio.get("seconds")}


# ── Client ───────────────────────────────────────────────────────────


class WhatsAppClient(RetryingClient):
    """Thin wrapper around the Evolution API REST endpoints we use."""

    service_name = "evolution"
    error_class = WhatsAppAPIError

    def __init__(self, base_url: str | None = None, api_key: str | None = None):
        super().__init__(
            (base_url or EVOLUTION_API_URL).rstrip("/"),
            headers={
                "apikey": api_key or EVOLUTION_API_KEY,
                "Content-Type": "application/json",
            },
        )

    def send_text(self, instance: str, phone: str, text: str) -> None:
        """Send a plain text message.  Group ids are passed through untouched."""
        number = phone if is_group_jid(phone) else format_phone(phone)
        self._request(
            "POST",
            f"/message/sendText/{instance}",
            json_body={"number": number, "text": text},
        )
        logger.info("Message sent via %s to %s (%d chars)", instance, number, len(text))

    def get_media_base64(self, instance: str, message_id: str) -> dict[str, Any] | None:
        """Download a media message as base64.  Returns ``None`` on failure."""
        try:
            data = self._request(
                "POST",
                f"/chat/getBase64FromMediaMessage/{instance}",
                json_body={"message": {"key": {"id": message_id}}, "convertToMp4": False},
            )
        except WhatsAppAPIError as exc:
            logger.error("Failed to fetch media %s: %s", message_id, exc)
            return None
        return data if data.get("base64") else None

    def find_chats(self, instance: str) -> list[dict[str, Any]]:
        data = self._request("POST", f"/chat/findChats/{instance}", json_body={})
        return data if isinstance(data, list) else []

    def find_messages(
        self, instance: str, remote_jid: str, limit: int = 20,
    ) -> list[dict[str, Any]]:
        data = self._request(
            "POST",
            f"/chat/findMessages/{instance}",
            json_body={"where": {"key": {"remoteJid": remote_jid}}, "limit": limit},
        )
        # Newer Evolution versions wrap the list in {"messages": {"records": [...]}}
        if isinstance(data, dict):
            data = (data.get("messages") or {}).get("records", [])
        return data if isinstance(data, list) else []

    def connection_state(self, instance: str) -> str | None:
        """Return the instance connection state (``"open"`` when connected)."""
        try:
            data = self._request("GET", f"/instance/connectionState/{instance}")
        except WhatsAppAPIError as exc:
            logger.warning("Connection state check failed for %s: %s", instance, exc)
            return None
        return (data.get("instance") or data).get("state")

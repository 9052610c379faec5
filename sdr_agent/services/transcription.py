"""Voice-note transcription through the OpenAI audio API."""

from __future__ import annotations

import base64
import binascii
import logging
import re

from sdr_agent.config import OPENAI_API_KEY, OPENAI_BASE_URL
from sdr_agent.services.http import ExternalAPIError, RetryingClient

logger = logging.getLogger(__name__)

TRANSCRIPTION_MODEL = "whisper-1"
LANGUAGE = "pt"

_DATA_URI_PREFIX = re.compile(r"^data:[\w/+.-]+;base64,")

_EXTENSIONS = {
    "audio/ogg": "ogg",
    "audio/mp4": "mp4",
    "audio/mpeg": "mp3",
    "audio/wav": "wav",
    "audio/webm": "webm",
    "audio/x-m4a": "m4a",
}


class TranscriptionClient(RetryingClient):
    """Turns audio into text.  Every failure is reported as ``None``."""

    service_name = "openai_transcription"

    def __init__(self, api_key: str | None = None, base_url: str | None = None):
        super().__init__(base_url or OPENAI_BASE_URL, timeout=60.0)
        self._api_key = api_key if api_key is not None else OPENAI_API_KEY

    @property
    def enabled(self) -> bool:
        return bool(self._api_key)

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"}

    def transcribe(self, audio: bytes | str, mime_type: str = "audio/ogg") -> str | None:
        """Transcribe raw bytes or a base64 string (``data:`` URIs accepted)."""
        if not self.enabled:
            logger.warning("Transcription disabled (no OPENAI_API_KEY); dropping audio")
            return None

        if isinstance(audio, str):
            try:
                audio = base64.b64decode(_DATA_URI_PREFIX.sub("", audio))
            except (binascii.Error, ValueError):
                logger.error("Audio payload is not valid base64")
                return None

        extension = _EXTENSIONS.get(mime_type, "ogg")
        try:
            data = self._request(
                "POST",
                "/audio/transcriptions",
                data={"model": TRANSCRIPTION_MODEL, "language": LANGUAGE},
                files={"file": (f"audio.{extension}", audio, mime_type)},
            )
        except ExternalAPIError as exc:
            logger.error("Transcription failed: %s", exc)
            return None

        text = (data.get("text") or "").strip()
        if not text:
            return None
        logger.info("Audio transcribed: %r", text[:50])
        return text

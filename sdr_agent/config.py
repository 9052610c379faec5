"""Centralized configuration for the SDR agent.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/sdr-agent/<VARIABLE_NAME>``.
"""

from __future__ import annotations

import logging
import os
import socket

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415 — lazy import to avoid boto3 dep in tests

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/sdr-agent/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /sdr-agent/{name} (AWS)."
    )


def _optional_secret(name: str) -> str | None:
    """Like ``_require_env`` but returns ``None`` when the value is absent."""
    try:
        return _require_env(name)
    except OSError:
        return None


def _parse_hhmm(value: str) -> tuple[int, int]:
    hour, minute = value.strip().split(":")
    return int(hour), int(minute)


# ── LLM ─────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-sonnet-4-5")
# Cheap model for the reactivation classifier
FAST_MODEL_NAME: str = os.getenv("FAST_MODEL_NAME", "claude-haiku-4-5")

# ── Transcription (optional) ────────────────────────────────────────
OPENAI_API_KEY: str | None = _optional_secret("OPENAI_API_KEY")
OPENAI_BASE_URL: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")

# ── WhatsApp channel (Evolution API) ────────────────────────────────
EVOLUTION_API_URL: str = _require_env("EVOLUTION_API_URL")
EVOLUTION_API_KEY: str = _require_env("EVOLUTION_API_KEY")
EVOLUTION_INSTANCES: list[str] = [
    name.strip()
    for name in os.getenv("EVOLUTION_INSTANCES", "flowlinker-chat1").split(",")
    if name.strip()
]
DEFAULT_INSTANCE: str = EVOLUTION_INSTANCES[0]
SELLERS_GROUP_ID: str | None = os.getenv("SELLERS_GROUP_ID") or None

# Control commands typed by the human operator in the chat
DISABLE_TOKEN: str = os.getenv("DISABLE_TOKEN", ".")
ENABLE_TOKEN: str = os.getenv("ENABLE_TOKEN", "..")

# ── Google Calendar ─────────────────────────────────────────────────
GOOGLE_SERVICE_ACCOUNT_FILE: str = os.getenv(
    "GOOGLE_SERVICE_ACCOUNT_FILE", "service-account.json",
)
GOOGLE_CALENDAR_BASE_URL: str = "https://www.googleapis.com/calendar/v3"

# ── Persistence ─────────────────────────────────────────────────────
DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./sdr_agent.db")
HISTORY_LIMIT: int = int(os.getenv("HISTORY_LIMIT", "20"))

# ── Work queue ──────────────────────────────────────────────────────
REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
QUEUE_NAME: str = os.getenv("QUEUE_NAME", "whatsapp_messages")
WORKER_ID: str = os.getenv("WORKER_ID", socket.gethostname())
QUEUE_RECONNECT_SECONDS: float = float(os.getenv("QUEUE_RECONNECT_SECONDS", "5"))

# ── Debounce ────────────────────────────────────────────────────────
DEBOUNCE_DELAY_SECONDS: float = float(os.getenv("DEBOUNCE_DELAY_SECONDS", "3"))

# ── Business hours ──────────────────────────────────────────────────
TIMEZONE: str = os.getenv("TIMEZONE", "America/Sao_Paulo")
BUSINESS_START: tuple[int, int] = _parse_hhmm(os.getenv("BUSINESS_START", "09:00"))
BUSINESS_END: tuple[int, int] = _parse_hhmm(os.getenv("BUSINESS_END", "18:30"))
MEETING_DURATION_MINUTES: int = int(os.getenv("MEETING_DURATION_MINUTES", "30"))

# ── Reactivation ────────────────────────────────────────────────────
REACTIVATION_INACTIVE_DAYS: int = int(os.getenv("REACTIVATION_INACTIVE_DAYS", "2"))
REACTIVATION_MAX_ATTEMPTS: int = int(os.getenv("REACTIVATION_MAX_ATTEMPTS", "3"))
REACTIVATION_DAILY_LIMIT: int = int(os.getenv("REACTIVATION_DAILY_LIMIT", "60"))
REACTIVATION_DELAY_SECONDS: float = float(os.getenv("REACTIVATION_DELAY_SECONDS", "45"))
REACTIVATION_BATCH_SIZE: int = int(os.getenv("REACTIVATION_BATCH_SIZE", "10"))

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")

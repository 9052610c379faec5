"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ChatRequest(BaseModel):
    """A local test message, processed like a WhatsApp turn but never sent."""

    message: str = Field(..., min_length=1, max_length=4000, description="The user's message")
    phone: str = Field(
        "5500000000000",
        min_length=8,
        max_length=32,
        description="Phone the conversation is stored under",
    )
    name: str | None = Field(None, max_length=120)


class ChatResponse(BaseModel):
    reply: str | None = Field(None, description="The agent's reply; null when none is sent")
    phone: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "sdr-agent"


class WebhookHealthResponse(BaseModel):
    status: str = "ok"
    timestamp: str
    pending_debounce: int


class ReactivationOverrides(BaseModel):
    """Optional per-call overrides of the reactivation settings."""

    inactive_days: int | None = Field(None, ge=1)
    max_attempts: int | None = Field(None, ge=1)
    daily_limit: int | None = Field(None, ge=0)
    delay_seconds: float | None = Field(None, ge=0)
    batch_size: int | None = Field(None, ge=1)
    instance: str | None = None


class RecoverRequest(BaseModel):
    instance: str | None = Field(None, description="One instance, or all when omitted")
    hours_back: int = Field(48, ge=1, le=24 * 14)


class ActionResponse(BaseModel):
    success: bool = True
    result: dict[str, Any] | list[Any]

"""FastAPI route definitions.

Four routers, mounted by ``server.py``:

- ``webhook_router``       Evolution API callbacks (``/webhook``)
- ``reactivation_router``  triggers for the reactivation phases (``/reactivation``)
- ``dashboard_router``     metrics, leads and conversation summaries (``/api/dashboard``)
- ``router``               local chat and health (``/api``)

Everything that blocks (database, LLM, outbound HTTP) is offloaded with
``asyncio.to_thread`` so the event loop keeps serving webhooks.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import asdict
from datetime import UTC, datetime
from typing import Any, Literal

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request

from sdr_agent.api.schemas import (
    ActionResponse,
    ChatRequest,
    ChatResponse,
    HealthResponse,
    ReactivationOverrides,
    RecoverRequest,
    WebhookHealthResponse,
)
from sdr_agent.config import DEFAULT_INSTANCE
from sdr_agent.models import ConversationStatus
from sdr_agent.services.work_queue import WorkUnit

logger = logging.getLogger(__name__)

router = APIRouter()
webhook_router = APIRouter()
reactivation_router = APIRouter()
dashboard_router = APIRouter()


def _state(request: Request, name: str):
    """Fetch a component the lifespan put on ``app.state``."""
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=503,
            detail="The service is still starting up. Please try again in a moment.",
        )
    return value


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "?")


def _overrides(body: ReactivationOverrides | None) -> dict[str, Any]:
    return body.model_dump(exclude_none=True) if body else {}


async def _run_blocking(request: Request, label: str, func, *args):
    try:
        return await asyncio.to_thread(func, *args)
    except Exception as e:
        # Full traceback stays server-side
        logger.exception("[%s] %s failed", _request_id(request), label)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e


# ── Webhook ──────────────────────────────────────────────────────────


async def _ingest(app_state, payload: dict[str, Any]) -> None:
    message = await asyncio.to_thread(app_state.components.normalizer.normalize, payload)
    if message is not None:
        app_state.coalescer.add(message)


@webhook_router.post("/messages-upsert")
async def messages_upsert(request: Request, background: BackgroundTasks):
    """Acknowledge fast; normalization and buffering run after the response."""
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload.") from None
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, dict) or not data.get("key"):
        raise HTTPException(status_code=400, detail="Payload without data.key.")

    _state(request, "coalescer")
    background.add_task(_ingest, request.app.state, payload)
    return {"status": "received"}


@webhook_router.get("/health", response_model=WebhookHealthResponse)
async def webhook_health(request: Request):
    coalescer = getattr(request.app.state, "coalescer", None)
    return WebhookHealthResponse(
        timestamp=datetime.now(UTC).isoformat(),
        pending_debounce=coalescer.pending_count if coalescer else 0,
    )


@webhook_router.post("/{event}")
async def other_event(event: str, request: Request):
    logger.info("[%s] Webhook event %s acknowledged", _request_id(request), event)
    return {"status": "received", "event": event}


# ── Reactivation ─────────────────────────────────────────────────────


@reactivation_router.post("/run", response_model=ActionResponse)
async def reactivation_run(request: Request, body: ReactivationOverrides | None = None):
    scheduler = _state(request, "components").reactivation
    result = await _run_blocking(request, "Reactivation cycle", scheduler.run_cycle, _overrides(body))
    return ActionResponse(result=result)


@reactivation_router.post("/analyze", response_model=ActionResponse)
async def reactivation_analyze(request: Request, body: ReactivationOverrides | None = None):
    scheduler = _state(request, "components").reactivation
    result = await _run_blocking(
        request, "Reactivation analysis", scheduler.analyze_and_queue, _overrides(body),
    )
    return ActionResponse(result=result.to_dict())


@reactivation_router.post("/send", response_model=ActionResponse)
async def reactivation_send(request: Request, body: ReactivationOverrides | None = None):
    scheduler = _state(request, "components").reactivation
    result = await _run_blocking(
        request, "Reactivation send", scheduler.process_send_queue, _overrides(body),
    )
    return ActionResponse(result=result.to_dict())


@reactivation_router.get("/stats", response_model=ActionResponse)
async def reactivation_stats(request: Request):
    scheduler = _state(request, "components").reactivation
    result = await _run_blocking(request, "Reactivation stats", scheduler.stats)
    return ActionResponse(result=result)


@reactivation_router.post("/recover-offline", response_model=ActionResponse)
async def recover_offline(request: Request, body: RecoverRequest | None = None):
    recovery = _state(request, "recovery")
    body = body or RecoverRequest()
    try:
        if body.instance:
            results = [await recovery.recover(body.instance, body.hours_back)]
        else:
            results = await recovery.recover_all(body.hours_back)
    except Exception as e:
        logger.exception("[%s] Offline recovery failed", _request_id(request))
        raise HTTPException(status_code=500, detail="An internal error occurred.") from e
    return ActionResponse(result=[asdict(r) for r in results])


# ── Dashboard ────────────────────────────────────────────────────────

LEAD_NOT_FOUND = "Lead not found."


@dashboard_router.get("/kpis")
async def dashboard_kpis(
    request: Request, start_date: datetime | None = None, end_date: datetime | None = None,
):
    dashboard = _state(request, "components").dashboard
    return await _run_blocking(request, "Dashboard KPIs", dashboard.kpis, start_date, end_date)


@dashboard_router.get("/funnel")
async def dashboard_funnel(
    request: Request, start_date: datetime | None = None, end_date: datetime | None = None,
):
    dashboard = _state(request, "components").dashboard
    return await _run_blocking(request, "Dashboard funnel", dashboard.funnel, start_date, end_date)


@dashboard_router.get("/leads-over-time")
async def dashboard_leads_over_time(
    request: Request,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    granularity: Literal["day", "week", "month"] = "day",
):
    dashboard = _state(request, "components").dashboard
    return await _run_blocking(
        request, "Dashboard leads over time", dashboard.leads_over_time,
        start_date, end_date, granularity,
    )


@dashboard_router.get("/peak-hours")
async def dashboard_peak_hours(
    request: Request, start_date: datetime | None = None, end_date: datetime | None = None,
):
    dashboard = _state(request, "components").dashboard
    return await _run_blocking(
        request, "Dashboard peak hours", dashboard.peak_hours, start_date, end_date,
    )


@dashboard_router.get("/leads")
async def dashboard_leads(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: ConversationStatus | None = None,
    search: str | None = Query(None, max_length=32),
):
    dashboard = _state(request, "components").dashboard
    return await _run_blocking(
        request, "Dashboard leads", dashboard.leads, page, limit, status, search,
    )


@dashboard_router.get("/leads/{lead_id}")
async def dashboard_lead(lead_id: str, request: Request):
    components = _state(request, "components")
    lead = await _run_blocking(request, "Lead details", components.dashboard.lead_details, lead_id)
    if lead is None:
        raise HTTPException(status_code=404, detail=LEAD_NOT_FOUND)
    summary = await _run_blocking(
        request, "Lead summary", components.summaries.get_or_generate, lead_id,
    )
    return {"lead": lead, "summary": summary.to_dict() if summary else None}


@dashboard_router.post("/leads/{lead_id}/regenerate-summary")
async def dashboard_regenerate_summary(lead_id: str, request: Request):
    components = _state(request, "components")
    lead = await _run_blocking(request, "Lead details", components.dashboard.lead_details, lead_id)
    if lead is None:
        raise HTTPException(status_code=404, detail=LEAD_NOT_FOUND)
    summary = await _run_blocking(
        request, "Summary regeneration", components.summaries.regenerate, lead_id,
    )
    if summary is None:
        raise HTTPException(status_code=503, detail="Summary generation failed. Please try again.")
    return summary.to_dict()


@dashboard_router.post("/summaries/generate", response_model=ActionResponse)
async def dashboard_generate_summaries(
    request: Request, limit: int = Query(10, ge=1, le=100),
):
    summaries = _state(request, "components").summaries
    result = await _run_blocking(
        request, "Summary batch", summaries.generate_missing, limit,
    )
    return ActionResponse(result=asdict(result))


# ── Local chat & health ──────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    return HealthResponse()


@router.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest, http_request: Request):
    """Run one turn through the processor exactly as the worker would,
    without sending anything over WhatsApp."""
    processor = _state(http_request, "components").processor
    unit = WorkUnit(
        instance=DEFAULT_INSTANCE,
        phone=request.phone,
        text=request.message,
        name=request.name,
        message_id=f"local-{uuid.uuid4().hex[:12]}",
        timestamp_ms=int(time.time() * 1000),
    )
    reply = await _run_blocking(http_request, "Chat turn", processor.process, unit)
    return ChatResponse(reply=reply, phone=request.phone)

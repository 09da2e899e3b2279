"""Aggregator callback endpoints.

- ``POST /api/v1/webhooks/sms``  -- delivery reports and inbound SMS.
- ``POST /api/v1/webhooks/ussd`` -- USSD session callbacks.

Africa's Talking posts form-encoded bodies; JSON bodies are accepted too
so the endpoints can be driven by hand.  USSD callbacks must be answered
with plain text starting with ``CON`` (keep the session open) or ``END``.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import PlainTextResponse

from src.services.errors import InvalidWebhookPayload
from src.services.webhook_ingestion import IngestOutcome, WebhookIngestion

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

USSD_END_TEXT = "END Thank you. Your request has been received."


def _get_ingestion(request: Request) -> WebhookIngestion:
    ingestion = getattr(request.app.state, "ingestion", None)
    if ingestion is None:
        raise HTTPException(status_code=503, detail="Webhook ingestion not initialised.")
    return ingestion


async def _read_payload(request: Request) -> dict[str, Any]:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Malformed JSON body.") from exc
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Expected a JSON object.")
        return body
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


@router.post("/sms", response_model=IngestOutcome)
async def sms_callback(request: Request) -> IngestOutcome:
    ingestion = _get_ingestion(request)
    payload = await _read_payload(request)
    try:
        return await ingestion.ingest(payload)
    except InvalidWebhookPayload as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.post("/ussd", response_class=PlainTextResponse)
async def ussd_callback(request: Request) -> PlainTextResponse:
    ingestion = _get_ingestion(request)
    payload = await _read_payload(request)
    try:
        await ingestion.ingest_ussd(payload)
    except InvalidWebhookPayload as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return PlainTextResponse(USSD_END_TEXT)

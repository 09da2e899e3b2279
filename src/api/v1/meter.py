"""Meter operation endpoints.

Endpoints
---------
- ``POST   /api/v1/meter/bill``                        -- Current bill snapshot.
- ``POST   /api/v1/meter/tokens``                      -- Buy prepaid tokens.
- ``POST   /api/v1/meter/units``                       -- Remaining units.
- ``GET    /api/v1/meter/correlations/{request_id}``   -- Correlation state.
- ``DELETE /api/v1/meter/correlations/{request_id}``   -- Stop waiting.
- ``GET    /api/v1/meter/deliveries/stats``            -- Delivery report counts.

The three operations block until the provider replies or the reply
window closes, then return the structured result.  Check ``source``:
``fallback`` results are placeholders.
"""

from __future__ import annotations

from collections.abc import Awaitable
from typing import TypeVar

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from src.middleware.auth import require_api_key
from src.models.correlation import PendingCorrelation
from src.models.results import ConfirmedResult, UnconfirmedResult
from src.services.dispatcher import CommandDispatcher
from src.services.errors import CorrelationConflict, DispatchError, InvalidParameters
from src.services.meter_service import MeterService

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/meter",
    tags=["meter"],
    dependencies=[Depends(require_api_key)],
)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------


class MeterRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    meter_number: str = Field(..., min_length=1, max_length=32)
    phone_number: str = Field(..., min_length=1, max_length=20)


class BillRequest(MeterRequest):
    account_number: str | None = Field(default=None, max_length=32)


class TokenPurchaseRequest(MeterRequest):
    amount: float = Field(..., gt=0, le=1_000_000, description="Amount in KSh")


class CancelResponse(BaseModel):
    request_id: str
    cancelled: bool


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_meter_service(request: Request) -> MeterService:
    """Retrieve the meter service from app state, or raise 503."""
    service = getattr(request.app.state, "meter_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Meter service not initialised.")
    return service


def _get_dispatcher(request: Request) -> CommandDispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="Dispatcher not initialised.")
    return dispatcher


async def _run_operation(operation: Awaitable[T]) -> T:
    """Await *operation*, mapping pre-send errors to HTTP status codes."""
    try:
        return await operation
    except InvalidParameters as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except CorrelationConflict as exc:
        raise HTTPException(
            status_code=409,
            detail={"message": str(exc), "request_id": exc.existing.id},
        ) from exc
    except DispatchError as exc:
        logger.warning("api.meter.dispatch_failed", error=str(exc))
        raise HTTPException(status_code=502, detail=str(exc)) from exc


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


@router.post("/bill")
async def fetch_bill(body: BillRequest, request: Request) -> ConfirmedResult | UnconfirmedResult:
    service = _get_meter_service(request)
    return await _run_operation(
        service.fetch_bill_data(
            body.user_id,
            body.meter_number,
            body.phone_number,
            account_number=body.account_number,
        )
    )


@router.post("/tokens")
async def purchase_tokens(
    body: TokenPurchaseRequest,
    request: Request,
) -> ConfirmedResult | UnconfirmedResult:
    """Buy tokens.  A ``fallback`` token code will not load on the meter."""
    service = _get_meter_service(request)
    return await _run_operation(
        service.purchase_tokens(body.user_id, body.meter_number, body.amount, body.phone_number)
    )


@router.post("/units")
async def check_units(body: MeterRequest, request: Request) -> ConfirmedResult | UnconfirmedResult:
    service = _get_meter_service(request)
    return await _run_operation(
        service.check_units(body.user_id, body.meter_number, body.phone_number)
    )


# ---------------------------------------------------------------------------
# Correlation control
# ---------------------------------------------------------------------------


@router.get("/correlations/{request_id}", response_model=PendingCorrelation)
async def get_correlation(request_id: str, request: Request) -> PendingCorrelation:
    service = _get_meter_service(request)
    pending = service.get_correlation(request_id)
    if pending is None:
        raise HTTPException(status_code=404, detail=f"Unknown request {request_id}.")
    return pending


@router.delete("/correlations/{request_id}", response_model=CancelResponse, status_code=202)
async def cancel_correlation(request_id: str, request: Request) -> CancelResponse:
    """Stop waiting for a reply.  The command itself is not recalled."""
    service = _get_meter_service(request)
    pending = service.get_correlation(request_id)
    if pending is None:
        raise HTTPException(status_code=404, detail=f"Unknown request {request_id}.")
    if not service.cancel(request_id):
        raise HTTPException(
            status_code=409,
            detail=f"Request {request_id} is already {pending.status}.",
        )
    return CancelResponse(request_id=request_id, cancelled=True)


@router.get("/deliveries/stats")
async def delivery_stats(request: Request) -> dict[str, int]:
    return _get_dispatcher(request).get_delivery_stats()

"""Main API router combining the v1 route modules under ``/api/v1``.

Includes:
    * meter: bill, token and units operations plus correlation control
    * webhooks: aggregator SMS and USSD callbacks
    * health: liveness and readiness probes
"""

from __future__ import annotations

from fastapi import APIRouter

from src.api.v1 import health, meter, webhooks

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(meter.router)
api_router.include_router(webhooks.router)
api_router.include_router(health.router)

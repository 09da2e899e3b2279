"""API key authentication for the meter operation endpoints.

Callers send the key in the ``X-API-Key`` header; it is compared with
``METERLINK_API_KEY`` in constant time.  Webhook and health routes are
not protected: the aggregator cannot send custom headers.
"""

from __future__ import annotations

import hmac

import structlog
from fastapi import HTTPException, Request, Security
from fastapi.security import APIKeyHeader

from config.settings import settings

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def require_api_key(
    request: Request,
    api_key: str | None = Security(_api_key_header),
) -> str:
    """FastAPI dependency that enforces API key authentication.

    Returns the validated key, or ``""`` when no key is configured
    outside production.  Raises 401 for a missing key, 403 for a wrong
    one and 503 when production runs without a key.
    """
    configured_key = settings.api_key

    if not configured_key:
        if not settings.is_production:
            logger.warning("auth.api_key_not_configured", path=request.url.path)
            return ""
        logger.error("auth.api_key_not_configured_production")
        raise HTTPException(
            status_code=503,
            detail="API authentication is not configured.",
        )

    if not api_key:
        logger.warning("auth.missing_api_key", path=request.url.path, client_ip=_client_ip(request))
        raise HTTPException(
            status_code=401,
            detail="Missing X-API-Key header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    if not hmac.compare_digest(api_key.encode(), configured_key.encode()):
        logger.warning("auth.invalid_api_key", path=request.url.path, client_ip=_client_ip(request))
        raise HTTPException(status_code=403, detail="Invalid API key.")

    return api_key

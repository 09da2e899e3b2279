"""MeterLink FastAPI application entry point.

Creates the FastAPI app, configures middleware, includes routers, and
manages the lifecycle of the correlation engine (record store,
aggregator client, dispatcher, correlator, parser, persister).
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from config.settings import settings
from src.api.router import api_router
from src.services.aggregator import create_aggregator
from src.services.engine import Engine, build_engine
from src.services.store import create_record_store

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Structured logging configuration
# ---------------------------------------------------------------------------


def _configure_logging() -> None:
    """Set up structlog with JSON or console rendering based on settings."""
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            structlog.get_level_from_name(settings.log_level),
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------


def install_engine(app: FastAPI, engine: Engine) -> None:
    """Expose engine components on ``app.state`` for the route modules."""
    app.state.engine = engine
    app.state.store = engine.store
    app.state.dispatcher = engine.dispatcher
    app.state.meter_service = engine.meter_service
    app.state.ingestion = engine.ingestion


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage startup and shutdown of the engine.

    On startup:
      1. Connect the record store (Redis, or in-memory fallback)
      2. Create the aggregator client (Africa's Talking, or the mock)
      3. Build the engine and store it on ``app.state``

    On shutdown:
      - Cancel in-flight waits and flush pending result writes.
      - Close the aggregator HTTP client and the store.
    """
    _configure_logging()
    logger.info(
        "app.startup",
        env=settings.env,
        aggregator=settings.aggregator,
        short_code=settings.provider_short_code,
    )
    app.state.start_time = time.time()

    # -- 1. Record store ----------------------------------------------------
    store = await create_record_store(settings.redis_url or None)

    # -- 2. Aggregator ------------------------------------------------------
    aggregator = create_aggregator(settings)

    # -- 3. Engine ----------------------------------------------------------
    engine = build_engine(settings, store=store, aggregator=aggregator)
    install_engine(app, engine)
    logger.info("app.startup_complete")

    yield

    # -- Shutdown -----------------------------------------------------------
    logger.info("app.shutdown_start", in_flight=engine.meter_service.in_flight)
    await engine.close()
    logger.info("app.shutdown_complete")


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="MeterLink API",
    description=(
        "Prepaid and postpaid electricity meter operations over the "
        "utility provider's SMS gateway: bill lookup, token purchase and "
        "units balance, correlated with asynchronous provider replies."
    ),
    version="0.1.0",
    lifespan=lifespan,
    default_response_class=ORJSONResponse,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
)

# -- CORS middleware --------------------------------------------------------
# allow_credentials=True must not be combined with allow_origins=["*"]
if settings.is_production:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type", "Authorization", "X-API-Key"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:8000", "http://127.0.0.1:8000"],
        allow_credentials=False,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS", "HEAD"],
        allow_headers=["Content-Type", "Accept", "Authorization", "X-API-Key"],
    )

# -- Prometheus metrics -----------------------------------------------------
Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    excluded_handlers=["/metrics", "/api/v1/health", "/api/v1/health/ready"],
).instrument(app).expose(
    app,
    endpoint="/metrics",
    include_in_schema=not settings.is_production,
)

# -- Include routers -------------------------------------------------------
app.include_router(api_router)


@app.get("/api", response_class=ORJSONResponse)
async def api_info() -> dict:
    """API information endpoint."""
    return {
        "name": "MeterLink API",
        "version": app.version,
        "docs": "/docs",
        "health": "/api/v1/health",
        "aggregator": settings.aggregator,
        "endpoints": {
            "bill": "/api/v1/meter/bill",
            "tokens": "/api/v1/meter/tokens",
            "units": "/api/v1/meter/units",
            "correlations": "/api/v1/meter/correlations/{request_id}",
            "delivery_stats": "/api/v1/meter/deliveries/stats",
            "sms_webhook": "/api/v1/webhooks/sms",
            "ussd_webhook": "/api/v1/webhooks/ussd",
        },
    }


def run() -> None:
    """Serve the app with uvicorn on the configured host and port."""
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )

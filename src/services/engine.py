"""Wiring of the correlation engine components.

:func:`build_engine` assembles every component around one record store
and one aggregator client.  The application lifespan uses it with the
configured backends; tests use it with an in-memory store, the mock
aggregator and short timings.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog

from src.models.enums import ResponseKind
from src.services.aggregator import AggregatorClient
from src.services.correlator import BackoffPolicy, ResponseCorrelator
from src.services.dispatcher import CommandDispatcher
from src.services.meter_service import MeterService
from src.services.parser import ResponseParser
from src.services.persister import ResultPersister
from src.services.response_store import ResponseStore
from src.services.store import RecordStore
from src.services.webhook_ingestion import WebhookIngestion

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class Engine:
    store: RecordStore
    aggregator: AggregatorClient
    responses: ResponseStore
    dispatcher: CommandDispatcher
    correlator: ResponseCorrelator
    parser: ResponseParser
    persister: ResultPersister
    meter_service: MeterService
    ingestion: WebhookIngestion

    async def close(self) -> None:
        """Stop in-flight waits, flush writes, release clients."""
        await self.meter_service.shutdown()
        await self.aggregator.close()
        await self.store.close()


def build_engine(settings: Any, *, store: RecordStore, aggregator: AggregatorClient) -> Engine:
    responses = ResponseStore(store)
    dispatcher = CommandDispatcher(
        aggregator,
        provider_short_code=settings.provider_short_code,
        timeouts={
            ResponseKind.BALANCE: settings.balance_timeout_seconds,
            ResponseKind.UNITS: settings.units_timeout_seconds,
            ResponseKind.TOKEN: settings.token_timeout_seconds,
        },
    )
    correlator = ResponseCorrelator(
        responses,
        dispatcher,
        policy=BackoffPolicy(
            base_interval=settings.poll_base_interval,
            factor=settings.poll_backoff_factor,
            max_interval=settings.poll_max_interval,
        ),
    )
    parser = ResponseParser()
    persister = ResultPersister(store, persist_fallback=settings.persist_fallback_results)
    meter_service = MeterService(dispatcher, correlator, parser, persister)
    ingestion = WebhookIngestion(
        responses,
        dispatcher,
        provider_sender_ids=settings.provider_sender_ids,
    )
    logger.info(
        "engine.built",
        store=type(store).__name__,
        aggregator=type(aggregator).__name__,
        short_code=settings.provider_short_code,
    )
    return Engine(
        store=store,
        aggregator=aggregator,
        responses=responses,
        dispatcher=dispatcher,
        correlator=correlator,
        parser=parser,
        persister=persister,
        meter_service=meter_service,
        ingestion=ingestion,
    )

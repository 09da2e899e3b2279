"""MeterLink service layer: the SMS command/response correlation engine.

Flow: :mod:`commands` builds the provider command, :mod:`dispatcher`
sends it and opens a pending correlation, :mod:`webhook_ingestion`
files inbound replies in the :mod:`response_store`, :mod:`correlator`
matches them, :mod:`parser` turns the reply into a structured result and
:mod:`persister` stores it.  :mod:`meter_service` runs the whole flow.
"""

from __future__ import annotations

from src.services.aggregator import (
    AfricasTalkingClient,
    AggregatorClient,
    MockAggregatorClient,
    SendReceipt,
    create_aggregator,
)
from src.services.commands import build_command, normalize_meter, sanitize_phone
from src.services.correlator import BackoffPolicy, ResponseCorrelator
from src.services.dispatcher import CommandDispatcher
from src.services.engine import Engine, build_engine
from src.services.errors import (
    CorrelationConflict,
    CorrelationTimeout,
    DispatchError,
    InvalidParameters,
    InvalidWebhookPayload,
    MeterLinkError,
    PersistenceWarning,
    UnconfirmedResultError,
)
from src.services.meter_service import MeterService
from src.services.parser import ResponseParser
from src.services.persister import ResultPersister
from src.services.response_store import ResponseStore
from src.services.store import (
    InMemoryRecordStore,
    RecordStore,
    RedisRecordStore,
    create_record_store,
)
from src.services.webhook_ingestion import WebhookIngestion

__all__ = [
    "AfricasTalkingClient",
    "AggregatorClient",
    "BackoffPolicy",
    "CommandDispatcher",
    "CorrelationConflict",
    "CorrelationTimeout",
    "DispatchError",
    "Engine",
    "InMemoryRecordStore",
    "InvalidParameters",
    "InvalidWebhookPayload",
    "MeterLinkError",
    "MeterService",
    "MockAggregatorClient",
    "PersistenceWarning",
    "RecordStore",
    "RedisRecordStore",
    "ResponseCorrelator",
    "ResponseParser",
    "ResponseStore",
    "ResultPersister",
    "SendReceipt",
    "UnconfirmedResultError",
    "WebhookIngestion",
    "build_command",
    "build_engine",
    "create_aggregator",
    "create_record_store",
    "normalize_meter",
    "sanitize_phone",
]

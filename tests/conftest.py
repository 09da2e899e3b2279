"""Shared fixtures: an engine on the in-memory store and mock aggregator.

Timings are scaled down so reply windows close in well under a second.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from src.models.correlation import InboundMessage, PendingCorrelation, utcnow
from src.models.enums import MessageKind, ResponseKind
from src.services.aggregator import MockAggregatorClient
from src.services.correlator import BackoffPolicy, ResponseCorrelator
from src.services.dispatcher import CommandDispatcher
from src.services.engine import Engine, build_engine
from src.services.response_store import ResponseStore
from src.services.store import InMemoryRecordStore

PHONE = "+254700000001"
METER = "54321678901"

FAST_POLICY = BackoffPolicy(base_interval=0.05, factor=1.5, max_interval=0.1)


def fast_settings(**overrides) -> SimpleNamespace:
    values = {
        "provider_short_code": "95551",
        "provider_sender_ids": ["95551", "+25495551", "USSD_KPLC"],
        "balance_timeout_seconds": 0.4,
        "units_timeout_seconds": 0.4,
        "token_timeout_seconds": 0.4,
        "poll_base_interval": FAST_POLICY.base_interval,
        "poll_backoff_factor": FAST_POLICY.factor,
        "poll_max_interval": FAST_POLICY.max_interval,
        "persist_fallback_results": True,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def make_message(
    text: str,
    kind: MessageKind = MessageKind.BALANCE,
    *,
    phone: str = PHONE,
    received_at: datetime | None = None,
    sender: str = "95551",
) -> InboundMessage:
    return InboundMessage(
        phone_number=phone,
        text=text,
        sender=sender,
        classified_kind=kind,
        received_at=received_at or utcnow(),
    )


def make_pending(
    kind: ResponseKind = ResponseKind.BALANCE,
    *,
    phone: str = PHONE,
    window: float = 0.4,
    created_at: datetime | None = None,
) -> PendingCorrelation:
    created = created_at or utcnow()
    return PendingCorrelation(
        phone_number=phone,
        response_kind=kind,
        meter_number=METER,
        command=f"BAL {METER}",
        created_at=created,
        deadline=created + timedelta(seconds=window),
    )


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def responses(store: InMemoryRecordStore) -> ResponseStore:
    return ResponseStore(store)


@pytest.fixture
def aggregator() -> MockAggregatorClient:
    return MockAggregatorClient()


@pytest.fixture
def dispatcher(aggregator: MockAggregatorClient) -> CommandDispatcher:
    return CommandDispatcher(
        aggregator,
        timeouts={
            ResponseKind.BALANCE: 0.4,
            ResponseKind.UNITS: 0.4,
            ResponseKind.TOKEN: 0.4,
        },
    )


@pytest.fixture
def correlator(responses: ResponseStore, dispatcher: CommandDispatcher) -> ResponseCorrelator:
    return ResponseCorrelator(responses, dispatcher, policy=FAST_POLICY)


@pytest.fixture
def engine(store: InMemoryRecordStore, aggregator: MockAggregatorClient) -> Engine:
    return build_engine(fast_settings(), store=store, aggregator=aggregator)

"""End-to-end tests of the meter operations on the in-memory engine.

Replies are injected through webhook ingestion, the same way the
aggregator delivers them.
"""

from __future__ import annotations

import asyncio

import pytest

from conftest import FAST_POLICY, METER, PHONE
from src.models.enums import CorrelationStatus, FallbackReason, ResponseKind
from src.models.results import (
    BillSnapshot,
    ConfirmedResult,
    TokenTransaction,
    UnconfirmedResult,
    UnconfirmedResultError,
    require_confirmed,
)
from src.services.engine import Engine
from src.services.errors import CorrelationConflict, InvalidParameters


async def _provider_reply(engine: Engine, text: str, *, delay: float = FAST_POLICY.base_interval) -> None:
    await asyncio.sleep(delay)
    await engine.ingestion.ingest({"from": "95551", "to": PHONE, "text": text})


class TestFetchBill:
    async def test_scenario_a_matched_bill(self, engine: Engine, store) -> None:
        replier = asyncio.create_task(_provider_reply(engine, "Your balance is 450.50 KSh"))
        result = await engine.meter_service.fetch_bill_data("user-1", METER, "0700000001")
        await replier

        assert isinstance(result, ConfirmedResult)
        assert isinstance(result.fields, BillSnapshot)
        assert result.fields.outstanding_balance == 450.50
        assert engine.aggregator.sent[0]["message"] == f"BAL {METER}"
        assert engine.aggregator.sent[0]["from"] == PHONE

        pending = engine.meter_service.get_correlation(result.request_id)
        assert pending is not None and pending.status == CorrelationStatus.MATCHED

        await engine.meter_service.drain()
        rows = await store.query("kplc_bills", where={"user_id": "user-1"})
        assert len(rows) == 1 and rows[0]["confirmed"] is True

    async def test_subscriber_text_never_confirms_a_bill(self, engine: Engine, store) -> None:
        async def subscriber_sms() -> None:
            await asyncio.sleep(FAST_POLICY.base_interval)
            await engine.ingestion.ingest({"from": PHONE, "to": "95551", "text": f"BAL {METER}"})

        sender = asyncio.create_task(subscriber_sms())
        result = await engine.meter_service.fetch_bill_data("user-1", METER, PHONE)
        await sender

        assert isinstance(result, UnconfirmedResult)
        assert result.reason == FallbackReason.TIMEOUT
        assert result.fields.outstanding_balance is None
        pending = engine.meter_service.get_correlation(result.request_id)
        assert pending is not None and pending.status == CorrelationStatus.TIMED_OUT

    async def test_invalid_input_sends_nothing(self, engine: Engine) -> None:
        with pytest.raises(InvalidParameters):
            await engine.meter_service.fetch_bill_data("user-1", "abc", PHONE)
        with pytest.raises(InvalidParameters):
            await engine.meter_service.fetch_bill_data("user-1", METER, "12345")
        assert engine.aggregator.sent == []


class TestPurchaseTokens:
    async def test_scenario_b_timeout_gives_fallback_token(self, engine: Engine, store) -> None:
        result = await engine.meter_service.purchase_tokens("user-1", METER, 500, PHONE)

        assert isinstance(result, UnconfirmedResult)
        assert result.source == "fallback"
        assert result.reason == FallbackReason.TIMEOUT
        assert isinstance(result.fields, TokenTransaction)
        assert result.fields.token_code
        assert engine.aggregator.sent[0]["message"] == f"BUY {METER} 500"

        pending = engine.meter_service.get_correlation(result.request_id)
        assert pending is not None and pending.status == CorrelationStatus.TIMED_OUT

        with pytest.raises(UnconfirmedResultError):
            require_confirmed(result)

        await engine.meter_service.drain()
        rows = await store.query("token_transactions")
        assert rows[0]["confirmed"] is False

    async def test_matched_token(self, engine: Engine) -> None:
        replier = asyncio.create_task(
            _provider_reply(engine, "Token: 1234-5678-9012-3456-7890 Units: 34.5 KSh 500 Ref: XYZ98765")
        )
        result = await engine.meter_service.purchase_tokens("user-1", METER, 500, PHONE)
        await replier

        confirmed = require_confirmed(result)
        assert confirmed.fields.token_code == "12345678901234567890"

    async def test_missing_amount_is_rejected(self, engine: Engine) -> None:
        with pytest.raises(InvalidParameters):
            await engine.meter_service.purchase_tokens("user-1", METER, 0, PHONE)


class TestCheckUnits:
    async def test_units_answered_by_balance_classified_reply(self, engine: Engine) -> None:
        replier = asyncio.create_task(_provider_reply(engine, "Balance: 42.5 units remaining"))
        result = await engine.meter_service.check_units("user-1", METER, PHONE)
        await replier

        assert require_confirmed(result).fields.current_units == 42.5


class TestConcurrency:
    async def test_scenario_c_back_to_back_balance_checks_conflict(self, engine: Engine) -> None:
        first = asyncio.create_task(engine.meter_service.fetch_bill_data("user-1", METER, PHONE))
        await asyncio.sleep(0.01)

        with pytest.raises(CorrelationConflict):
            await engine.meter_service.fetch_bill_data("user-1", METER, PHONE)

        result = await first
        assert result.source == "fallback"
        assert len(engine.aggregator.sent) == 1

    async def test_different_phones_run_concurrently(self, engine: Engine) -> None:
        results = await asyncio.gather(
            engine.meter_service.check_units("user-1", METER, PHONE),
            engine.meter_service.check_units("user-2", METER, "+254711111111"),
        )
        assert [r.source for r in results] == ["fallback", "fallback"]


class TestCancel:
    async def test_cancel_returns_cancelled_fallback(self, engine: Engine) -> None:
        operation = asyncio.create_task(engine.meter_service.fetch_bill_data("user-1", METER, PHONE))
        await asyncio.sleep(0.02)

        pending = engine.dispatcher.pending_for(PHONE, ResponseKind.BALANCE)
        assert pending is not None
        assert engine.meter_service.cancel(pending.id) is True

        result = await operation
        assert isinstance(result, UnconfirmedResult)
        assert result.reason == FallbackReason.CANCELLED
        assert pending.status == CorrelationStatus.CANCELLED
        assert engine.meter_service.cancel(pending.id) is False, "nothing left to cancel"

    async def test_cancel_unknown_request(self, engine: Engine) -> None:
        assert engine.meter_service.cancel("nope") is False

    async def test_shutdown_stops_waits(self, engine: Engine) -> None:
        operation = asyncio.create_task(engine.meter_service.fetch_bill_data("user-1", METER, PHONE))
        await asyncio.sleep(0.02)
        assert engine.meter_service.in_flight == 1

        await engine.meter_service.shutdown()
        result = await operation
        assert result.reason == FallbackReason.CANCELLED
        assert engine.meter_service.in_flight == 0

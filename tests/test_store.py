"""Tests for the record store backends and the inbound response log."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import orjson
import pytest

from conftest import PHONE, make_message, make_pending
from src.models.correlation import utcnow
from src.models.enums import MessageKind, ResponseKind
from src.services.response_store import RESPONSES_TABLE, ResponseStore
from src.services.store import (
    InMemoryRecordStore,
    RedisRecordStore,
    create_record_store,
)


# -----------------------------------------------------------------------
# InMemoryRecordStore
# -----------------------------------------------------------------------


class TestInMemoryRecordStore:
    async def test_insert_requires_time_field(self) -> None:
        store = InMemoryRecordStore()
        with pytest.raises(ValueError):
            await store.insert("kplc_bills", {"user_id": "u1"})

    async def test_query_filters_by_indexed_fields(self) -> None:
        store = InMemoryRecordStore()
        now = utcnow()
        await store.insert("kplc_bills", {"user_id": "u1", "created_at": now})
        await store.insert("kplc_bills", {"user_id": "u2", "created_at": now})
        rows = await store.query("kplc_bills", where={"user_id": "u1"})
        assert [r["user_id"] for r in rows] == ["u1"], "only rows for u1 should be returned"

    async def test_enum_and_plain_string_lookups_agree(self) -> None:
        store = InMemoryRecordStore()
        await store.insert(
            RESPONSES_TABLE,
            {"phone_number": PHONE, "classified_kind": MessageKind.BALANCE, "received_at": utcnow()},
        )
        by_enum = await store.query(
            RESPONSES_TABLE, where={"phone_number": PHONE, "classified_kind": MessageKind.BALANCE},
        )
        by_str = await store.query(
            RESPONSES_TABLE, where={"phone_number": PHONE, "classified_kind": "balance"},
        )
        assert len(by_enum) == len(by_str) == 1

    async def test_since_and_ordering(self) -> None:
        store = InMemoryRecordStore()
        base = utcnow()
        for offset in (0, 2, 1):
            await store.insert("units_readings", {"n": offset, "created_at": base + timedelta(seconds=offset)})

        newest_first = await store.query("units_readings", since=base + timedelta(seconds=1))
        assert [r["n"] for r in newest_first] == [2, 1]

        oldest_first = await store.query("units_readings", descending=False, limit=2)
        assert [r["n"] for r in oldest_first] == [0, 1]

    async def test_multi_value_where_scans(self) -> None:
        store = InMemoryRecordStore()
        now = utcnow()
        for user in ("a", "b", "c"):
            await store.insert("token_transactions", {"user_id": user, "created_at": now})
        rows = await store.query("token_transactions", where={"user_id": ["a", "c"]})
        assert sorted(r["user_id"] for r in rows) == ["a", "c"]

    async def test_returned_rows_are_copies(self) -> None:
        store = InMemoryRecordStore()
        await store.insert("kplc_bills", {"user_id": "u1", "created_at": utcnow()})
        rows = await store.query("kplc_bills")
        rows[0]["user_id"] = "changed"
        again = await store.query("kplc_bills")
        assert again[0]["user_id"] == "u1", "mutating a result must not change the log"

    async def test_concurrent_appends_are_not_lost(self) -> None:
        store = InMemoryRecordStore()
        await asyncio.gather(
            *(store.insert("kplc_bills", {"user_id": "u", "created_at": utcnow()}) for _ in range(50))
        )
        assert store.count("kplc_bills") == 50


# -----------------------------------------------------------------------
# RedisRecordStore (no server: the client is mocked)
# -----------------------------------------------------------------------


class TestRedisRecordStore:
    def test_index_key_uses_enum_values(self) -> None:
        store = RedisRecordStore(url="redis://localhost:6390/0")
        key = store._index_key(
            RESPONSES_TABLE, ("phone_number", "classified_kind"), [PHONE, MessageKind.TOKEN],
        )
        assert key == f"meterlink:sms_responses:idx:phone_number={PHONE},classified_kind=token"

    async def test_query_pushes_limit_down_for_fully_indexed_filter(self) -> None:
        store = RedisRecordStore(url="redis://localhost:6390/0")
        row = {"phone_number": PHONE, "classified_kind": "balance", "received_at": utcnow().isoformat()}
        fake = AsyncMock()
        fake.zrevrangebyscore.return_value = [orjson.dumps(row)]
        store._redis = fake

        since = utcnow() - timedelta(seconds=5)
        rows = await store.query(
            RESPONSES_TABLE,
            where={"phone_number": PHONE, "classified_kind": MessageKind.BALANCE},
            since=since,
            limit=1,
        )

        assert rows == [row]
        args, kwargs = fake.zrevrangebyscore.call_args
        assert args[0].endswith("phone_number=+254700000001,classified_kind=balance")
        assert args[2] == since.timestamp()
        assert kwargs == {"start": 0, "num": 1}

    async def test_factory_falls_back_to_memory_when_ping_fails(self) -> None:
        with patch.object(RedisRecordStore, "ping", AsyncMock(return_value=False)), patch.object(
            RedisRecordStore, "close", AsyncMock(),
        ):
            store = await create_record_store("redis://localhost:6390/0")
        assert isinstance(store, InMemoryRecordStore)

    async def test_factory_without_url_uses_memory(self) -> None:
        assert isinstance(await create_record_store(None), InMemoryRecordStore)


# -----------------------------------------------------------------------
# ResponseStore
# -----------------------------------------------------------------------


class TestResponseStore:
    async def test_find_eligible_returns_latest_matching_message(
        self, responses: ResponseStore,
    ) -> None:
        pending = make_pending(ResponseKind.BALANCE)
        await responses.append(make_message("Balance 100", received_at=pending.created_at + timedelta(seconds=1)))
        await responses.append(make_message("Balance 200", received_at=pending.created_at + timedelta(seconds=2)))

        found = await responses.find_eligible(pending)
        assert found is not None and found.text == "Balance 200", "most recent eligible reply wins"

    async def test_message_before_creation_is_never_eligible(self, responses: ResponseStore) -> None:
        pending = make_pending(ResponseKind.BALANCE)
        await responses.append(make_message("Balance 100", received_at=pending.created_at - timedelta(seconds=1)))
        assert await responses.find_eligible(pending) is None

    async def test_other_phone_or_kind_is_not_eligible(self, responses: ResponseStore) -> None:
        pending = make_pending(ResponseKind.TOKEN)
        later = pending.created_at + timedelta(seconds=1)
        await responses.append(make_message("Balance 100", MessageKind.BALANCE, received_at=later))
        await responses.append(
            make_message("Token 1234", MessageKind.TOKEN, phone="+254711111111", received_at=later),
        )
        assert await responses.find_eligible(pending) is None

    async def test_units_correlation_accepts_balance_messages(self, responses: ResponseStore) -> None:
        pending = make_pending(ResponseKind.UNITS)
        await responses.append(
            make_message("Units remaining 42.5 kWh", MessageKind.BALANCE,
                         received_at=pending.created_at + timedelta(seconds=1)),
        )
        assert await responses.find_eligible(pending) is not None

    async def test_wait_for_arrival_wakes_on_append(self, responses: ResponseStore) -> None:
        waiter = asyncio.create_task(responses.wait_for_arrival(PHONE, timeout=2.0))
        await asyncio.sleep(0.01)
        await responses.append(make_message("Balance 1"))
        assert await waiter is True

    async def test_wait_for_arrival_times_out(self, responses: ResponseStore) -> None:
        assert await responses.wait_for_arrival(PHONE, timeout=0.02) is False

    async def test_arrival_for_other_phone_does_not_wake(self, responses: ResponseStore) -> None:
        waiter = asyncio.create_task(responses.wait_for_arrival(PHONE, timeout=0.1))
        await asyncio.sleep(0.01)
        await responses.append(make_message("Balance 1", phone="+254711111111"))
        assert await waiter is False

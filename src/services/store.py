"""Keyed record store with Redis primary and in-memory fallback.

The engine only needs two operations from persistence: append a row and
run a filtered, time-ordered range query.  Both backends keep one
append log per table plus secondary indexes keyed by the configured
field combinations (e.g. ``(phone_number, classified_kind)`` for inbound
messages), so eligibility queries never scan unrelated rows.

Rows are plain dicts.  Every table has a time field (``created_at`` by
default) which orders the log and backs ``since`` range filters.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import defaultdict
from collections.abc import Collection, Mapping, Sequence
from datetime import datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable

import orjson
import structlog

logger = structlog.get_logger(__name__)

IndexSpec = Mapping[str, Sequence[tuple[str, ...]]]

DEFAULT_INDEXES: dict[str, tuple[tuple[str, ...], ...]] = {
    "sms_responses": (("phone_number", "classified_kind"), ("phone_number",)),
    "kplc_bills": (("user_id",),),
    "token_transactions": (("user_id",),),
    "units_readings": (("user_id",),),
}

DEFAULT_TIME_FIELDS: dict[str, str] = {
    "sms_responses": "received_at",
}


# ---------------------------------------------------------------------------
# Store protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class RecordStore(Protocol):
    """Async append-and-query persistence contract."""

    async def insert(self, table: str, row: Mapping[str, Any]) -> None: ...

    async def query(
        self,
        table: str,
        *,
        where: Mapping[str, Any] | None = None,
        since: datetime | None = None,
        order_by: str | None = None,
        descending: bool = True,
        limit: int | None = None,
    ) -> list[dict[str, Any]]: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_epoch(value: Any) -> float:
    if isinstance(value, datetime):
        return value.timestamp()
    if isinstance(value, str):
        return datetime.fromisoformat(value).timestamp()
    if isinstance(value, (int, float)):
        return float(value)
    raise TypeError(f"Cannot order by value of type {type(value).__name__}")


def _key_value(value: Any) -> Any:
    # Enum members hash by name, so index keys use the raw value
    return value.value if isinstance(value, Enum) else value


def _is_multi(value: Any) -> bool:
    return isinstance(value, Collection) and not isinstance(value, (str, bytes))


def _matches(row: Mapping[str, Any], where: Mapping[str, Any]) -> bool:
    for field, expected in where.items():
        actual = row.get(field)
        if _is_multi(expected):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


def _pick_index(
    indexes: Sequence[tuple[str, ...]],
    where: Mapping[str, Any],
) -> tuple[str, ...] | None:
    """Return the widest index fully covered by scalar ``where`` values."""
    usable = [
        fields for fields in indexes
        if all(f in where and not _is_multi(where[f]) for f in fields)
    ]
    return max(usable, key=len, default=None)


def _sort_and_limit(
    rows: list[dict[str, Any]],
    order_by: str,
    descending: bool,
    limit: int | None,
) -> list[dict[str, Any]]:
    rows.sort(key=lambda r: _to_epoch(r[order_by]), reverse=descending)
    if limit is not None:
        return rows[:limit]
    return rows


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryRecordStore:
    """Process-local indexed append log.

    Writes are serialised with an :class:`asyncio.Lock`; reads work on a
    snapshot of the candidate list, so concurrent appends are never lost
    and never block readers.
    """

    __slots__ = ("_index", "_indexes", "_lock", "_rows", "_time_fields")

    def __init__(
        self,
        *,
        indexes: IndexSpec | None = None,
        time_fields: Mapping[str, str] | None = None,
    ) -> None:
        self._indexes: IndexSpec = DEFAULT_INDEXES if indexes is None else indexes
        self._time_fields = dict(DEFAULT_TIME_FIELDS if time_fields is None else time_fields)
        self._rows: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self._index: dict[tuple[Any, ...], list[dict[str, Any]]] = defaultdict(list)
        self._lock = asyncio.Lock()

    def time_field(self, table: str) -> str:
        return self._time_fields.get(table, "created_at")

    async def insert(self, table: str, row: Mapping[str, Any]) -> None:
        stored = dict(row)
        time_field = self.time_field(table)
        if time_field not in stored:
            raise ValueError(f"Row for {table!r} is missing time field {time_field!r}")
        async with self._lock:
            self._rows[table].append(stored)
            for fields in self._indexes.get(table, ()):
                key = (table, fields, *(_key_value(stored.get(f)) for f in fields))
                self._index[key].append(stored)

    async def query(
        self,
        table: str,
        *,
        where: Mapping[str, Any] | None = None,
        since: datetime | None = None,
        order_by: str | None = None,
        descending: bool = True,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        where = where or {}
        time_field = self.time_field(table)
        index = _pick_index(self._indexes.get(table, ()), where)
        if index is not None:
            lookup = (table, index, *(_key_value(where[f]) for f in index))
            candidates = list(self._index.get(lookup, ()))
        else:
            candidates = list(self._rows.get(table, ()))

        since_ts = since.timestamp() if since is not None else None
        rows = [
            dict(row) for row in candidates
            if _matches(row, where)
            and (since_ts is None or _to_epoch(row[time_field]) >= since_ts)
        ]
        return _sort_and_limit(rows, order_by or time_field, descending, limit)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None

    def count(self, table: str) -> int:
        return len(self._rows.get(table, ()))


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisRecordStore:
    """Redis-backed store using one sorted set per table and per index.

    Members are *orjson*-encoded rows scored by the table's time field.
    An insert writes the table log and every index key in a single
    ``MULTI`` transaction.
    """

    __slots__ = ("_indexes", "_namespace", "_pool", "_redis", "_time_fields")

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        namespace: str = "meterlink:",
        indexes: IndexSpec | None = None,
        time_fields: Mapping[str, str] | None = None,
        max_connections: int = 20,
    ) -> None:
        import redis.asyncio as aioredis

        self._pool = aioredis.ConnectionPool.from_url(
            url,
            max_connections=max_connections,
            decode_responses=False,
        )
        self._redis = aioredis.Redis(connection_pool=self._pool)
        self._namespace = namespace
        self._indexes: IndexSpec = DEFAULT_INDEXES if indexes is None else indexes
        self._time_fields = dict(DEFAULT_TIME_FIELDS if time_fields is None else time_fields)

    def time_field(self, table: str) -> str:
        return self._time_fields.get(table, "created_at")

    def _table_key(self, table: str) -> str:
        return f"{self._namespace}{table}"

    def _index_key(self, table: str, fields: tuple[str, ...], values: Sequence[Any]) -> str:
        parts = ",".join(f"{f}={_key_value(v)}" for f, v in zip(fields, values, strict=True))
        return f"{self._namespace}{table}:idx:{parts}"

    async def insert(self, table: str, row: Mapping[str, Any]) -> None:
        time_field = self.time_field(table)
        if time_field not in row:
            raise ValueError(f"Row for {table!r} is missing time field {time_field!r}")
        member = orjson.dumps(dict(row))
        score = _to_epoch(row[time_field])

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zadd(self._table_key(table), {member: score})
            for fields in self._indexes.get(table, ()):
                key = self._index_key(table, fields, [row.get(f) for f in fields])
                pipe.zadd(key, {member: score})
            await pipe.execute()

    async def query(
        self,
        table: str,
        *,
        where: Mapping[str, Any] | None = None,
        since: datetime | None = None,
        order_by: str | None = None,
        descending: bool = True,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        where = where or {}
        time_field = self.time_field(table)
        order_field = order_by or time_field
        index = _pick_index(self._indexes.get(table, ()), where)
        if index is not None:
            key = self._index_key(table, index, [where[f] for f in index])
            fully_indexed = set(index) == set(where)
        else:
            key = self._table_key(table)
            fully_indexed = not where

        low: float | str = since.timestamp() if since is not None else "-inf"
        # Limits can be pushed down only when Redis order equals the requested one
        push_limit = limit if (fully_indexed and order_field == time_field) else None
        paging = {"start": 0, "num": push_limit} if push_limit is not None else {}

        if descending:
            raw = await self._redis.zrevrangebyscore(key, "+inf", low, **paging)
        else:
            raw = await self._redis.zrangebyscore(key, low, "+inf", **paging)

        rows = [orjson.loads(item) for item in raw]
        rows = [r for r in rows if _matches(r, where)]
        return _sort_and_limit(rows, order_field, descending, limit)

    async def ping(self) -> bool:
        """Return *True* if the Redis server is reachable."""
        try:
            return bool(await self._redis.ping())
        except Exception:
            return False

    async def close(self) -> None:
        await self._redis.aclose()
        await self._pool.aclose()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


async def create_record_store(redis_url: str | None) -> RecordStore:
    """Return a Redis store when *redis_url* answers ``PING``, else memory."""
    if redis_url:
        try:
            store = RedisRecordStore(url=redis_url)
        except Exception:
            logger.warning("store.redis_init_failed", redis_url=redis_url, exc_info=True)
        else:
            if await store.ping():
                logger.info("store.redis_connected")
                return store
            logger.warning("store.redis_unavailable_using_inmemory")
            with contextlib.suppress(Exception):
                await store.close()

    logger.info("store.inmemory_initialised")
    return InMemoryRecordStore()

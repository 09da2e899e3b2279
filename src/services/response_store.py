"""Append-only log of inbound provider and user messages.

Written by webhook ingestion, read by every active correlator.  Besides
the range query used for eligibility, the store offers an in-process
arrival signal per phone number so a waiting correlator can re-check as
soon as a message lands instead of sleeping out its full backoff
interval.  Messages appended by other processes (Redis backend) are
still found by the next timed poll.
"""

from __future__ import annotations

import asyncio
import weakref

import structlog

from src.models.correlation import InboundMessage, PendingCorrelation
from src.services.store import RecordStore

logger = structlog.get_logger(__name__)

RESPONSES_TABLE = "sms_responses"


class ResponseStore:
    """Inbound message log on top of a :class:`RecordStore`."""

    __slots__ = ("_arrivals", "_store")

    def __init__(self, store: RecordStore) -> None:
        self._store = store
        self._arrivals: weakref.WeakValueDictionary[str, asyncio.Event] = (
            weakref.WeakValueDictionary()
        )

    async def append(self, message: InboundMessage) -> None:
        """Persist *message* and wake correlators waiting on its phone."""
        await self._store.insert(RESPONSES_TABLE, message.model_dump())
        event = self._arrivals.pop(message.phone_number, None)
        if event is not None:
            event.set()

    async def find_eligible(self, pending: PendingCorrelation) -> InboundMessage | None:
        """Return the most recent message that may answer *pending*."""
        best: InboundMessage | None = None
        for kind in sorted(pending.accepted_kinds):
            rows = await self._store.query(
                RESPONSES_TABLE,
                where={"phone_number": pending.phone_number, "classified_kind": kind},
                since=pending.created_at,
                descending=True,
                limit=1,
            )
            for row in rows:
                candidate = InboundMessage.model_validate(row)
                if not pending.accepts(candidate):
                    continue
                if best is None or candidate.received_at > best.received_at:
                    best = candidate
        return best

    async def wait_for_arrival(self, phone_number: str, timeout: float) -> bool:
        """Wait up to *timeout* seconds for a new message to *phone_number*.

        Returns ``True`` when woken by an arrival, ``False`` on timeout.
        """
        event = self._arrivals.get(phone_number)
        if event is None:
            event = asyncio.Event()
            self._arrivals[phone_number] = event
        try:
            await asyncio.wait_for(event.wait(), timeout=max(timeout, 0.0))
        except asyncio.TimeoutError:
            return False
        return True

    async def recent(self, phone_number: str, *, limit: int = 20) -> list[InboundMessage]:
        """Most recent messages filed under *phone_number*, newest first."""
        rows = await self._store.query(
            RESPONSES_TABLE,
            where={"phone_number": phone_number},
            descending=True,
            limit=limit,
        )
        return [InboundMessage.model_validate(row) for row in rows]

    async def ping(self) -> bool:
        return await self._store.ping()

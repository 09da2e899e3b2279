"""Response correlation: wait for the reply to a dispatched command.

The correlator polls the response log for a message that satisfies the
pending correlation's eligibility rule, backing off exponentially
between polls.  Between polls it also listens for the response log's
arrival signal, so a reply is usually picked up as soon as the webhook
stores it; the timer only bounds how long a silent wait may last.

Polling stops when the deadline passes or when the number of timed
polls reaches ``window / base_interval``, whichever comes first.  The
poll cap keeps a correlator honest under clock skew or slow stores.

Each call suspends only its own task; any number of correlations can be
awaited concurrently.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import structlog

from src.models.correlation import (
    CorrelationResult,
    InboundMessage,
    PendingCorrelation,
    utcnow,
)
from src.models.enums import CorrelationStatus, FallbackReason, ResultSource
from src.services.dispatcher import CommandDispatcher
from src.services.errors import CorrelationTimeout
from src.services.response_store import ResponseStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """Bounded exponential backoff between polls (seconds)."""

    base_interval: float = 5.0
    factor: float = 1.5
    max_interval: float = 15.0

    def __post_init__(self) -> None:
        if self.base_interval <= 0:
            raise ValueError("base_interval must be positive")
        if self.factor < 1:
            raise ValueError("factor must be >= 1")
        if self.max_interval < self.base_interval:
            raise ValueError("max_interval must be >= base_interval")

    def max_polls(self, window_seconds: float) -> int:
        return max(1, int(window_seconds // self.base_interval))

    def next_interval(self, interval: float) -> float:
        return min(interval * self.factor, self.max_interval)


class ResponseCorrelator:
    """Matches pending correlations against the response log."""

    __slots__ = ("_dispatcher", "_policy", "_responses")

    def __init__(
        self,
        responses: ResponseStore,
        dispatcher: CommandDispatcher,
        *,
        policy: BackoffPolicy | None = None,
    ) -> None:
        self._responses = responses
        self._dispatcher = dispatcher
        self._policy = policy or BackoffPolicy()

    @property
    def policy(self) -> BackoffPolicy:
        return self._policy

    async def await_match(self, pending: PendingCorrelation) -> CorrelationResult:
        """Wait until a reply for *pending* arrives or its deadline passes.

        Returns a ``matched`` result carrying the raw reply text, or a
        ``fallback`` result with no data on timeout.  If the calling task
        is cancelled the correlation is marked ``cancelled`` and the
        cancellation propagates; the command itself stays sent.
        """
        log = logger.bind(
            request_id=pending.id,
            phone=pending.phone_number,
            kind=str(pending.response_kind),
        )
        if not pending.is_pending:
            return self._terminal_result(pending)

        window = (pending.deadline - pending.created_at).total_seconds()
        max_polls = self._policy.max_polls(window)
        interval = self._policy.base_interval
        timed_polls = 0
        woken = 0

        try:
            while True:
                message = await self._poll(pending, log)
                if message is not None:
                    return self._match(pending, message, log, polls=timed_polls + woken + 1)
                if not pending.is_pending:
                    return self._terminal_result(pending)

                remaining = (pending.deadline - utcnow()).total_seconds()
                if remaining <= 0 or timed_polls >= max_polls:
                    raise CorrelationTimeout(
                        f"No reply after {timed_polls} timed polls "
                        f"({'deadline passed' if remaining <= 0 else 'poll cap reached'})"
                    )

                if await self._responses.wait_for_arrival(
                    pending.phone_number, min(interval, remaining),
                ):
                    woken += 1
                else:
                    timed_polls += 1
                    interval = self._policy.next_interval(interval)

        except CorrelationTimeout as exc:
            if self._dispatcher.resolve(pending, CorrelationStatus.TIMED_OUT):
                log.info("correlator.timed_out", reason=str(exc), max_polls=max_polls)
                return CorrelationResult(
                    request_id=pending.id,
                    source=ResultSource.FALLBACK,
                    reason=FallbackReason.TIMEOUT,
                    resolved_at=pending.resolved_at or utcnow(),
                )
            return self._terminal_result(pending)

        except asyncio.CancelledError:
            if self._dispatcher.resolve(pending, CorrelationStatus.CANCELLED):
                log.info("correlator.cancelled")
            raise

    # ------------------------------------------------------------------

    async def _poll(self, pending: PendingCorrelation, log: structlog.BoundLogger) -> InboundMessage | None:
        try:
            return await self._responses.find_eligible(pending)
        except Exception:
            log.warning("correlator.poll_failed", exc_info=True)
            return None

    def _match(
        self,
        pending: PendingCorrelation,
        message: InboundMessage,
        log: structlog.BoundLogger,
        *,
        polls: int,
    ) -> CorrelationResult:
        if not self._dispatcher.resolve(pending, CorrelationStatus.MATCHED):
            return self._terminal_result(pending)
        pending.matched_message_id = message.id
        pending.reply_text = message.text
        latency = (message.received_at - pending.created_at).total_seconds()
        log.info(
            "correlator.matched",
            message_id=message.id,
            polls=polls,
            reply_latency_s=round(latency, 3),
        )
        return CorrelationResult(
            request_id=pending.id,
            source=ResultSource.MATCHED,
            raw_text=message.text,
            resolved_at=pending.resolved_at or utcnow(),
        )

    @staticmethod
    def _terminal_result(pending: PendingCorrelation) -> CorrelationResult:
        """Describe an already-resolved correlation without changing it."""
        if pending.status == CorrelationStatus.MATCHED and pending.reply_text is not None:
            return CorrelationResult(
                request_id=pending.id,
                source=ResultSource.MATCHED,
                raw_text=pending.reply_text,
                resolved_at=pending.resolved_at or utcnow(),
            )
        reason = (
            FallbackReason.CANCELLED
            if pending.status == CorrelationStatus.CANCELLED
            else FallbackReason.TIMEOUT
        )
        return CorrelationResult(
            request_id=pending.id,
            source=ResultSource.FALLBACK,
            reason=reason,
            resolved_at=pending.resolved_at or utcnow(),
        )

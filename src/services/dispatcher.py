"""Command dispatch and the registry of pending correlations.

The channel has no request ids, so two outstanding commands of the same
kind to the same phone would make any reply ambiguous.  The dispatcher
therefore allows at most one ``pending`` correlation per
``(phone_number, response_kind)``.  The check and the reservation happen
together under a lock *before* the send, so a second dispatch racing the
first one's network round trip still sees the key as taken.

Delivery reports from the aggregator are attached to the correlation
they belong to (by aggregator message id) purely for observability.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from collections.abc import Mapping
from datetime import timedelta
from typing import Any, Final

import structlog

from src.models.correlation import PendingCorrelation, utcnow
from src.models.enums import CorrelationStatus, DeliveryState, ResponseKind
from src.services.aggregator import AggregatorClient
from src.services.errors import CorrelationConflict, DispatchError

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUTS: Final[dict[ResponseKind, float]] = {
    ResponseKind.BALANCE: 30.0,
    ResponseKind.UNITS: 30.0,
    ResponseKind.TOKEN: 60.0,
}

_HISTORY_LIMIT: Final[int] = 10_000

_DELIVERY_STATUS_MAP: Final[dict[str, DeliveryState]] = {
    "success": DeliveryState.DELIVERED,
    "delivered": DeliveryState.DELIVERED,
    "sent": DeliveryState.SENT,
    "submitted": DeliveryState.SENT,
    "buffered": DeliveryState.SENT,
    "queued": DeliveryState.QUEUED,
    "failed": DeliveryState.FAILED,
    "rejected": DeliveryState.FAILED,
    "expired": DeliveryState.FAILED,
}


def map_delivery_status(raw_status: str) -> DeliveryState:
    """Map an aggregator delivery status onto :class:`DeliveryState`.

    Unknown values count as failed.
    """
    return _DELIVERY_STATUS_MAP.get((raw_status or "").strip().lower(), DeliveryState.FAILED)


class CommandDispatcher:
    """Sends provider commands and owns the correlation registry.

    Parameters
    ----------
    aggregator:
        Client used for the outbound send.
    provider_short_code:
        Destination short code of the utility provider.
    timeouts:
        Seconds to wait for a reply, per response kind.
    """

    __slots__ = (
        "_aggregator",
        "_by_provider_id",
        "_history",
        "_lock",
        "_pending",
        "_provider_short_code",
        "_timeouts",
    )

    def __init__(
        self,
        aggregator: AggregatorClient,
        *,
        provider_short_code: str = "95551",
        timeouts: Mapping[ResponseKind, float] | None = None,
    ) -> None:
        self._aggregator = aggregator
        self._provider_short_code = provider_short_code
        self._timeouts = {**DEFAULT_TIMEOUTS, **(timeouts or {})}
        self._pending: dict[tuple[str, ResponseKind], PendingCorrelation] = {}
        self._history: OrderedDict[str, PendingCorrelation] = OrderedDict()
        self._by_provider_id: dict[str, str] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def timeout_for(self, kind: ResponseKind) -> float:
        return self._timeouts[kind]

    async def dispatch(
        self,
        phone_number: str,
        command: str,
        response_kind: ResponseKind,
        meter_number: str,
        *,
        timeout: float | None = None,
        amount: float | None = None,
    ) -> PendingCorrelation:
        """Send *command* and open a pending correlation for its reply.

        Raises
        ------
        CorrelationConflict
            A correlation for ``(phone_number, response_kind)`` is pending.
        DispatchError
            The aggregator did not accept the send.  The reservation is
            released, nothing was sent.
        """
        wait_seconds = self.timeout_for(response_kind) if timeout is None else timeout
        log = logger.bind(phone=phone_number, kind=str(response_kind))

        async with self._lock:
            existing = self._pending.get((phone_number, response_kind))
            if existing is not None:
                log.warning("dispatcher.conflict", existing_id=existing.id)
                raise CorrelationConflict(existing)

            created_at = utcnow()
            pending = PendingCorrelation(
                phone_number=phone_number,
                response_kind=response_kind,
                meter_number=meter_number,
                command=command,
                amount=amount,
                created_at=created_at,
                deadline=created_at + timedelta(seconds=wait_seconds),
            )
            self._pending[pending.key] = pending

        start = time.perf_counter()
        try:
            receipt = await self._aggregator.send(
                self._provider_short_code, command, sender=phone_number,
            )
        except DispatchError:
            self._release(pending)
            log.warning("dispatcher.send_rejected", request_id=pending.id)
            raise
        except Exception as exc:
            self._release(pending)
            log.error("dispatcher.send_failed", request_id=pending.id, exc_info=True)
            raise DispatchError(f"Send failed: {exc}") from exc
        except asyncio.CancelledError:
            # The command may or may not have left; nobody will wait for it
            self._release(pending)
            log.warning("dispatcher.send_cancelled", request_id=pending.id)
            raise

        # The reply window starts once the aggregator has the command.
        pending.deadline = utcnow() + timedelta(seconds=wait_seconds)
        pending.provider_message_id = receipt.message_id or None
        pending.delivery_status = DeliveryState.MOCK if receipt.mock else DeliveryState.SENT
        self._remember(pending)

        log.info(
            "dispatcher.sent",
            request_id=pending.id,
            command=command,
            provider_message_id=receipt.message_id,
            deadline=pending.deadline.isoformat(),
            elapsed_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return pending

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def resolve(self, pending: PendingCorrelation, status: CorrelationStatus) -> bool:
        """Apply a terminal transition and free the correlation key.

        Returns ``False`` (and changes nothing) if *pending* was already
        terminal.
        """
        if not pending.resolve(status):
            return False
        self._release(pending)
        logger.info(
            "dispatcher.correlation_resolved",
            request_id=pending.id,
            status=str(status),
        )
        return True

    def get(self, request_id: str) -> PendingCorrelation | None:
        return self._history.get(request_id)

    def pending_for(self, phone_number: str, kind: ResponseKind) -> PendingCorrelation | None:
        return self._pending.get((phone_number, kind))

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _release(self, pending: PendingCorrelation) -> None:
        if self._pending.get(pending.key) is pending:
            del self._pending[pending.key]

    def _remember(self, pending: PendingCorrelation) -> None:
        self._history[pending.id] = pending
        if pending.provider_message_id:
            self._by_provider_id[pending.provider_message_id] = pending.id
        while len(self._history) > _HISTORY_LIMIT:
            _, old = self._history.popitem(last=False)
            if old.provider_message_id:
                self._by_provider_id.pop(old.provider_message_id, None)

    # ------------------------------------------------------------------
    # Delivery tracking
    # ------------------------------------------------------------------

    def update_delivery_status(
        self,
        provider_message_id: str,
        raw_status: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> bool:
        """Record a delivery report for a dispatched command.

        Never changes correlation status.  Returns ``False`` when the
        message id is unknown (e.g. a report for an older process).
        """
        request_id = self._by_provider_id.get(provider_message_id)
        pending = self._history.get(request_id) if request_id else None
        if pending is None:
            logger.info(
                "dispatcher.delivery_report_unmatched",
                provider_message_id=provider_message_id,
                status=raw_status,
            )
            return False

        mapped = map_delivery_status(raw_status)
        pending.delivery_status = mapped
        pending.delivery_metadata = {
            **dict(metadata or {}),
            "original_status": raw_status,
            "processed_at": utcnow().isoformat(),
        }
        logger.info(
            "dispatcher.delivery_status_updated",
            request_id=pending.id,
            provider_message_id=provider_message_id,
            status=str(mapped),
        )
        return True

    def get_delivery_stats(self) -> dict[str, int]:
        """Counts of dispatched commands grouped by delivery state."""
        stats: dict[str, int] = {"total": 0, **{state.value: 0 for state in DeliveryState}}
        for entry in self._history.values():
            stats["total"] += 1
            stats[entry.delivery_status.value] += 1
        return stats

"""High-level meter operations: bill lookup, token purchase, units check.

Every operation follows the same path::

    validate -> build command -> dispatch -> await reply -> parse -> persist

and always returns a structured result once the command has been sent.
Errors before the send (:class:`~src.services.errors.InvalidParameters`,
:class:`~src.services.errors.CorrelationConflict`,
:class:`~src.services.errors.DispatchError`) propagate; after the send
the worst case is an :class:`~src.models.results.UnconfirmedResult`.

Persistence runs as a write-behind task so a slow store never delays
the caller; :meth:`MeterService.drain` waits for outstanding writes.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from src.models.correlation import CorrelationResult, PendingCorrelation
from src.models.enums import CorrelationStatus, FallbackReason, ResponseKind, ResultSource
from src.models.results import ConfirmedResult, UnconfirmedResult
from src.services.commands import build_command, normalize_meter, sanitize_phone
from src.services.correlator import ResponseCorrelator
from src.services.dispatcher import CommandDispatcher
from src.services.parser import ResponseParser
from src.services.persister import ResultPersister

logger = structlog.get_logger(__name__)


class MeterService:
    """Facade used by the HTTP layer.

    Parameters
    ----------
    dispatcher, correlator, parser, persister:
        The engine components; see their modules.
    """

    def __init__(
        self,
        dispatcher: CommandDispatcher,
        correlator: ResponseCorrelator,
        parser: ResponseParser,
        persister: ResultPersister,
    ) -> None:
        self._dispatcher = dispatcher
        self._correlator = correlator
        self._parser = parser
        self._persister = persister
        self._waits: dict[str, asyncio.Task[CorrelationResult]] = {}
        self._writes: set[asyncio.Task[bool]] = set()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def fetch_bill_data(
        self,
        user_id: str,
        meter_number: str,
        phone_number: str,
        *,
        account_number: str | None = None,
    ) -> ConfirmedResult | UnconfirmedResult:
        """Ask the provider for the current bill of *meter_number*."""
        return await self._run(
            user_id,
            ResponseKind.BALANCE,
            meter_number,
            phone_number,
            account_number=account_number,
        )

    async def purchase_tokens(
        self,
        user_id: str,
        meter_number: str,
        amount: float,
        phone_number: str,
    ) -> ConfirmedResult | UnconfirmedResult:
        """Buy prepaid tokens worth *amount* KSh.

        A fallback result's token code is a placeholder; check
        ``result.source`` (or call
        :func:`~src.models.results.require_confirmed`) before showing it
        as a real token.
        """
        return await self._run(
            user_id,
            ResponseKind.TOKEN,
            meter_number,
            phone_number,
            amount=amount,
        )

    async def check_units(
        self,
        user_id: str,
        meter_number: str,
        phone_number: str,
    ) -> ConfirmedResult | UnconfirmedResult:
        return await self._run(user_id, ResponseKind.UNITS, meter_number, phone_number)

    # ------------------------------------------------------------------
    # Correlation control
    # ------------------------------------------------------------------

    def get_correlation(self, request_id: str) -> PendingCorrelation | None:
        return self._dispatcher.get(request_id)

    def cancel(self, request_id: str) -> bool:
        """Stop waiting for the reply to *request_id*.

        The command stays sent; the caller of the operation receives an
        unconfirmed result with reason ``cancelled``.  Returns ``False``
        when no wait is in flight for the id.
        """
        task = self._waits.get(request_id)
        if task is None or task.done():
            return False
        task.cancel()
        logger.info("meter_service.cancel_requested", request_id=request_id)
        return True

    @property
    def in_flight(self) -> int:
        return sum(1 for task in self._waits.values() if not task.done())

    async def drain(self) -> None:
        """Wait for all scheduled result writes to finish."""
        while self._writes:
            await asyncio.gather(*list(self._writes), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._waits.values()):
            task.cancel()
        if self._waits:
            await asyncio.gather(*self._waits.values(), return_exceptions=True)
        await self.drain()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(
        self,
        user_id: str,
        kind: ResponseKind,
        meter_number: str,
        phone_number: str,
        *,
        amount: float | None = None,
        account_number: str | None = None,
    ) -> ConfirmedResult | UnconfirmedResult:
        phone = sanitize_phone(phone_number)
        meter = normalize_meter(meter_number)
        command = build_command(kind, meter, amount)

        pending = await self._dispatcher.dispatch(
            phone, command, kind, meter, amount=amount,
        )
        log = logger.bind(request_id=pending.id, kind=str(kind), user_id=user_id)

        correlation = await self._await_reply(pending)
        request_params: dict[str, Any] = {
            "meter_number": meter,
            "amount": amount,
            "account_number": account_number,
        }
        result = self._parser.parse(correlation, kind, request_params)
        log.info(
            "meter_service.completed",
            source=result.source,
            reason=getattr(result, "reason", None),
        )

        self._schedule_write(user_id, kind, result)
        return result

    async def _await_reply(self, pending: PendingCorrelation) -> CorrelationResult:
        task = asyncio.create_task(
            self._correlator.await_match(pending),
            name=f"correlate-{pending.id}",
        )
        self._waits[pending.id] = task
        try:
            return await task
        except asyncio.CancelledError:
            # A wait cancelled before its first step never resolved itself
            self._dispatcher.resolve(pending, CorrelationStatus.CANCELLED)
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                # The caller itself is being cancelled
                raise
            return CorrelationResult(
                request_id=pending.id,
                source=ResultSource.FALLBACK,
                reason=FallbackReason.CANCELLED,
                resolved_at=pending.resolved_at or pending.created_at,
            )
        finally:
            self._waits.pop(pending.id, None)

    def _schedule_write(
        self,
        user_id: str,
        kind: ResponseKind,
        result: ConfirmedResult | UnconfirmedResult,
    ) -> None:
        task = asyncio.create_task(
            self._persister.persist(user_id, kind, result),
            name=f"persist-{result.request_id}",
        )
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)

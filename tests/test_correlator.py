"""Tests for reply correlation: matching, timeouts, cancellation and
the eligibility window.

Timings use a 50 ms base interval so every test finishes quickly.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import FAST_POLICY, METER, PHONE, make_message
from src.models.enums import (
    CorrelationStatus,
    FallbackReason,
    MessageKind,
    ResponseKind,
    ResultSource,
)
from src.services.correlator import BackoffPolicy, ResponseCorrelator
from src.services.dispatcher import CommandDispatcher
from src.services.response_store import ResponseStore


async def _dispatch_balance(dispatcher: CommandDispatcher, timeout: float = 0.4):
    return await dispatcher.dispatch(PHONE, f"BAL {METER}", ResponseKind.BALANCE, METER, timeout=timeout)


# ---------------------------------------------------------------------------
# BackoffPolicy
# ---------------------------------------------------------------------------


class TestBackoffPolicy:
    def test_defaults(self) -> None:
        policy = BackoffPolicy()
        assert (policy.base_interval, policy.factor, policy.max_interval) == (5.0, 1.5, 15.0)

    def test_intervals_grow_and_cap(self) -> None:
        policy = BackoffPolicy()
        intervals = [5.0]
        for _ in range(4):
            intervals.append(policy.next_interval(intervals[-1]))
        assert intervals == [5.0, 7.5, 11.25, 15.0, 15.0]

    @pytest.mark.parametrize(("window", "expected"), [(30, 6), (60, 12), (4, 1), (0, 1)])
    def test_max_polls(self, window: float, expected: int) -> None:
        assert BackoffPolicy().max_polls(window) == expected

    @pytest.mark.parametrize(
        "kwargs",
        [{"base_interval": 0}, {"factor": 0.5}, {"base_interval": 10, "max_interval": 5}],
    )
    def test_rejects_invalid_settings(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            BackoffPolicy(**kwargs)


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


class TestMatching:
    async def test_scenario_a_reply_one_interval_later_matches(
        self,
        correlator: ResponseCorrelator,
        dispatcher: CommandDispatcher,
        responses: ResponseStore,
    ) -> None:
        pending = await _dispatch_balance(dispatcher)

        async def reply_later() -> None:
            await asyncio.sleep(FAST_POLICY.base_interval)
            await responses.append(make_message("Your balance is 450.50 KSh", MessageKind.BALANCE))

        replier = asyncio.create_task(reply_later())
        result = await correlator.await_match(pending)
        await replier

        assert result.source == ResultSource.MATCHED
        assert result.raw_text == "Your balance is 450.50 KSh"
        assert pending.status == CorrelationStatus.MATCHED
        assert pending.reply_text == result.raw_text
        assert dispatcher.pending_for(PHONE, ResponseKind.BALANCE) is None

    async def test_reply_already_stored_matches_on_first_poll(
        self,
        correlator: ResponseCorrelator,
        dispatcher: CommandDispatcher,
        responses: ResponseStore,
    ) -> None:
        pending = await _dispatch_balance(dispatcher)
        await responses.append(make_message("Balance 10"))

        started = asyncio.get_running_loop().time()
        result = await correlator.await_match(pending)
        assert result.matched
        assert asyncio.get_running_loop().time() - started < FAST_POLICY.base_interval

    async def test_arrival_wakes_waiter_before_interval_elapses(
        self, responses: ResponseStore, dispatcher: CommandDispatcher,
    ) -> None:
        slow_policy = BackoffPolicy(base_interval=1.0, factor=1.5, max_interval=2.0)
        correlator = ResponseCorrelator(responses, dispatcher, policy=slow_policy)
        pending = await _dispatch_balance(dispatcher, timeout=3.0)

        waiter = asyncio.create_task(correlator.await_match(pending))
        await asyncio.sleep(0.05)
        await responses.append(make_message("Balance 10"))

        result = await asyncio.wait_for(waiter, timeout=0.5)
        assert result.matched, "an arrival must be noticed without waiting out the backoff"

    async def test_non_matching_arrival_does_not_resolve(
        self,
        correlator: ResponseCorrelator,
        dispatcher: CommandDispatcher,
        responses: ResponseStore,
    ) -> None:
        pending = await _dispatch_balance(dispatcher, timeout=0.2)

        async def noise() -> None:
            await asyncio.sleep(0.02)
            await responses.append(make_message("hello", MessageKind.USER_COMMAND))

        task = asyncio.create_task(noise())
        result = await correlator.await_match(pending)
        await task

        assert result.source == ResultSource.FALLBACK
        assert pending.status == CorrelationStatus.TIMED_OUT


# ---------------------------------------------------------------------------
# Timeouts and eligibility
# ---------------------------------------------------------------------------


class TestTimeouts:
    async def test_no_reply_times_out_with_fallback(
        self, correlator: ResponseCorrelator, dispatcher: CommandDispatcher,
    ) -> None:
        pending = await _dispatch_balance(dispatcher, timeout=0.2)
        result = await correlator.await_match(pending)

        assert result.source == ResultSource.FALLBACK
        assert result.reason == FallbackReason.TIMEOUT
        assert result.raw_text is None
        assert pending.status == CorrelationStatus.TIMED_OUT
        assert pending.resolved_at is not None
        assert dispatcher.pending_count == 0

    async def test_scenario_d_stale_message_is_ignored(
        self,
        correlator: ResponseCorrelator,
        dispatcher: CommandDispatcher,
        responses: ResponseStore,
    ) -> None:
        pending = await _dispatch_balance(dispatcher, timeout=0.2)
        await responses.append(
            make_message(
                "Your balance is 450.50 KSh",
                received_at=pending.created_at - timedelta(seconds=1),
            )
        )

        result = await correlator.await_match(pending)
        assert result.source == ResultSource.FALLBACK
        assert pending.status == CorrelationStatus.TIMED_OUT

    async def test_poll_cap_stops_before_deadline(
        self, responses: ResponseStore, dispatcher: CommandDispatcher,
    ) -> None:
        pending = await _dispatch_balance(dispatcher, timeout=10.0)
        # Three base intervals fit in the window, far from the deadline
        pending.created_at = pending.deadline - timedelta(seconds=3)
        counting = AsyncMock(spec=ResponseStore)
        counting.find_eligible.return_value = None
        counting.wait_for_arrival.return_value = False

        policy = BackoffPolicy(base_interval=1.0, factor=1.5, max_interval=2.0)
        correlator = ResponseCorrelator(counting, dispatcher, policy=policy)
        result = await correlator.await_match(pending)

        assert result.reason == FallbackReason.TIMEOUT
        assert counting.wait_for_arrival.await_count == 3
        assert counting.find_eligible.await_count == 4, "initial poll plus one per timed wait"

    async def test_store_errors_count_as_misses(self, dispatcher: CommandDispatcher) -> None:
        pending = await _dispatch_balance(dispatcher, timeout=0.2)
        flaky = AsyncMock(spec=ResponseStore)
        flaky.find_eligible.side_effect = ConnectionError("store down")
        flaky.wait_for_arrival.return_value = False

        correlator = ResponseCorrelator(flaky, dispatcher, policy=FAST_POLICY)
        result = await correlator.await_match(pending)

        assert result.reason == FallbackReason.TIMEOUT
        assert flaky.find_eligible.await_count >= 2


# ---------------------------------------------------------------------------
# Terminal transitions and cancellation
# ---------------------------------------------------------------------------


class TestTerminalTransitions:
    async def test_rerun_after_match_is_a_no_op(
        self,
        correlator: ResponseCorrelator,
        dispatcher: CommandDispatcher,
        responses: ResponseStore,
    ) -> None:
        pending = await _dispatch_balance(dispatcher)
        await responses.append(make_message("Balance 10"))
        first = await correlator.await_match(pending)
        resolved_at = pending.resolved_at

        await responses.append(make_message("Balance 99"))
        second = await correlator.await_match(pending)

        assert pending.status == CorrelationStatus.MATCHED
        assert pending.resolved_at == resolved_at
        assert second.raw_text == first.raw_text == "Balance 10"

    async def test_rerun_after_timeout_does_not_match_late_reply(
        self,
        correlator: ResponseCorrelator,
        dispatcher: CommandDispatcher,
        responses: ResponseStore,
    ) -> None:
        pending = await _dispatch_balance(dispatcher, timeout=0.1)
        await correlator.await_match(pending)
        await responses.append(make_message("Balance 10"))

        again = await correlator.await_match(pending)
        assert again.source == ResultSource.FALLBACK
        assert pending.status == CorrelationStatus.TIMED_OUT

    async def test_cancellation_marks_cancelled_and_propagates(
        self, correlator: ResponseCorrelator, dispatcher: CommandDispatcher,
    ) -> None:
        pending = await _dispatch_balance(dispatcher, timeout=5.0)
        task = asyncio.create_task(correlator.await_match(pending))
        await asyncio.sleep(0.02)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert pending.status == CorrelationStatus.CANCELLED
        assert dispatcher.pending_count == 0

    async def test_concurrent_correlations_do_not_block_each_other(
        self,
        correlator: ResponseCorrelator,
        dispatcher: CommandDispatcher,
        responses: ResponseStore,
    ) -> None:
        other = "+254711111111"
        slow = await _dispatch_balance(dispatcher, timeout=0.3)
        fast = await dispatcher.dispatch(other, f"BAL {METER}", ResponseKind.BALANCE, METER, timeout=0.3)

        tasks = [
            asyncio.create_task(correlator.await_match(slow)),
            asyncio.create_task(correlator.await_match(fast)),
        ]
        await asyncio.sleep(0.02)
        await responses.append(make_message("Balance 5", phone=other))

        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        assert tasks[1] in done
        results = await asyncio.gather(*tasks)
        assert [r.source for r in results] == [ResultSource.FALLBACK, ResultSource.MATCHED]

"""Tests for CancellationToken and run_cancellable."""

import asyncio

import pytest

from exceptions import OperationCancelled
from utils.cancellation import CancellationToken, run_cancellable


async def _value(result, delay=0.0):
    await asyncio.sleep(delay)
    return result


class TestCancellationToken:
    async def test_cancel(self) -> None:
        token = CancellationToken()
        assert not token.is_cancelled
        token.raise_if_cancelled()

        token.cancel()
        token.cancel()

        assert token.is_cancelled
        with pytest.raises(OperationCancelled):
            token.raise_if_cancelled()

    async def test_cancel_after(self) -> None:
        token = CancellationToken()
        token.cancel_after(0.01)
        assert not token.is_cancelled

        await asyncio.wait_for(token.wait(), timeout=1)

        assert token.is_cancelled

    async def test_cancel_after_rescheduled(self) -> None:
        token = CancellationToken()
        token.cancel_after(0.01)
        token.cancel_after(10)
        await asyncio.sleep(0.05)
        assert not token.is_cancelled
        token.cancel()


class TestRunCancellable:
    async def test_without_token(self) -> None:
        assert await run_cancellable(_value(3), None) == 3

    async def test_completes_before_token(self) -> None:
        assert await run_cancellable(_value("done"), CancellationToken()) == "done"

    async def test_already_cancelled(self) -> None:
        token = CancellationToken()
        token.cancel()
        started = []

        async def op():
            started.append(True)

        with pytest.raises(OperationCancelled):
            await run_cancellable(op(), token)
        assert started == []

    async def test_cancelled_in_flight(self) -> None:
        token = CancellationToken()
        cancelled = []

        async def slow():
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.append(True)
                raise

        token.cancel_after(0.01)
        with pytest.raises(OperationCancelled):
            await run_cancellable(slow(), token)
        assert cancelled == [True]

    async def test_operation_error_propagates(self) -> None:
        async def broken():
            raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            await run_cancellable(broken(), CancellationToken())

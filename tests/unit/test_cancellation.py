"""
Unit tests for CancellationToken and retry_async.
"""

import asyncio

import pytest

from r2migrate.core.errors import OperationCancelledError, PartUploadError
from r2migrate.core.migration.cancellation import CancellationToken, retry_async


class TestCancellationToken:
    """Hard cancel versus soft stop."""

    def test_fresh_token_is_idle(self):
        token = CancellationToken()
        assert not token.cancelled
        assert not token.stop_requested
        assert not token.should_stop
        token.raise_if_cancelled()

    def test_stop_request_does_not_cancel(self):
        """A stop lets the current item finish; only should_stop flips."""
        token = CancellationToken()
        token.request_stop()

        assert token.should_stop
        assert not token.cancelled
        token.raise_if_cancelled()

    def test_cancel_raises(self):
        token = CancellationToken()
        token.cancel()

        assert token.should_stop
        with pytest.raises(OperationCancelledError):
            token.raise_if_cancelled()

    def test_run_returns_result(self):
        async def run():
            token = CancellationToken()

            async def work():
                await asyncio.sleep(0)
                return 42

            return await token.run(work())

        assert asyncio.run(run()) == 42

    def test_run_interrupts_pending_work(self):
        """Cancel from another task ends a hanging call right away."""
        finished = []

        async def run():
            token = CancellationToken()

            async def hang():
                await asyncio.sleep(30)
                finished.append(True)

            asyncio.get_running_loop().call_later(0.01, token.cancel)
            await token.run(hang())

        with pytest.raises(OperationCancelledError):
            asyncio.run(run())
        assert finished == []

    def test_run_on_cancelled_token_never_starts(self):
        started = []

        async def run():
            token = CancellationToken()
            token.cancel()

            async def work():
                started.append(True)

            await token.run(work())

        with pytest.raises(OperationCancelledError):
            asyncio.run(run())
        assert started == []

    def test_run_propagates_errors(self):
        async def run():
            async def fail():
                raise RuntimeError("boom")

            await CancellationToken().run(fail())

        with pytest.raises(RuntimeError, match="boom"):
            asyncio.run(run())

    def test_sleep_wakes_on_cancel(self):
        async def run():
            token = CancellationToken()
            asyncio.get_running_loop().call_later(0.01, token.cancel)
            await token.sleep(30)

        with pytest.raises(OperationCancelledError):
            asyncio.run(run())


class TestRetryAsync:
    """Bounded attempts with a fixed delay."""

    def test_succeeds_after_transient_failures(self):
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise PartUploadError("try again")
            return "ok"

        result = asyncio.run(retry_async(
            flaky, attempts=3, delay_seconds=0, retry_on=(PartUploadError,)
        ))

        assert result == "ok"
        assert len(attempts) == 3

    def test_reraises_last_error_when_exhausted(self):
        attempts = []

        async def always_fails():
            attempts.append(1)
            raise PartUploadError(f"attempt {len(attempts)}")

        with pytest.raises(PartUploadError, match="attempt 3"):
            asyncio.run(retry_async(
                always_fails, attempts=3, delay_seconds=0, retry_on=(PartUploadError,)
            ))

        assert len(attempts) == 3

    def test_non_retryable_error_propagates_immediately(self):
        attempts = []

        async def broken():
            attempts.append(1)
            raise KeyError("bug")

        with pytest.raises(KeyError):
            asyncio.run(retry_async(
                broken, attempts=3, delay_seconds=0, retry_on=(PartUploadError,)
            ))

        assert len(attempts) == 1

    def test_cancellation_is_never_retried(self):
        attempts = []

        async def run():
            token = CancellationToken()

            async def cancels():
                attempts.append(1)
                token.cancel()
                raise OperationCancelledError()

            await retry_async(cancels, attempts=3, delay_seconds=0, token=token)

        with pytest.raises(OperationCancelledError):
            asyncio.run(run())

        assert len(attempts) == 1

    def test_cancel_during_delay_stops_retrying(self):
        attempts = []

        async def run():
            token = CancellationToken()

            async def fails():
                attempts.append(1)
                asyncio.get_running_loop().call_later(0.01, token.cancel)
                raise PartUploadError("nope")

            await retry_async(
                fails, attempts=3, delay_seconds=30,
                retry_on=(PartUploadError,), token=token,
            )

        with pytest.raises(OperationCancelledError):
            asyncio.run(run())

        assert len(attempts) == 1

    def test_attempts_must_be_positive(self):
        async def noop():
            return None

        with pytest.raises(ValueError):
            asyncio.run(retry_async(noop, attempts=0))

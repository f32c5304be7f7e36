import asyncio
import inspect

import pytest

from agentwire.cancellation import CancellationToken
from agentwire.errors import RequestAborted


class TestCancellationToken:
    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel()
        assert token.cancelled
        with pytest.raises(RequestAborted):
            token.raise_if_cancelled()

    @pytest.mark.asyncio
    async def test_wait_returns_result(self):
        token = CancellationToken()

        async def work():
            return 42

        assert await token.wait(work()) == 42

    @pytest.mark.asyncio
    async def test_wait_aborts_and_cancels_pending_work(self):
        token = CancellationToken()
        started = asyncio.Event()
        finished = []

        async def slow():
            started.set()
            await asyncio.sleep(10)
            finished.append(True)

        async def cancel_soon():
            await started.wait()
            token.cancel()

        canceller = asyncio.create_task(cancel_soon())
        with pytest.raises(RequestAborted):
            await token.wait(slow())
        await canceller
        assert finished == []

    @pytest.mark.asyncio
    async def test_wait_on_cancelled_token_raises_immediately(self):
        token = CancellationToken()
        token.cancel()

        async def work():
            return 1

        coro = work()
        with pytest.raises(RequestAborted):
            await token.wait(coro)
        assert inspect.getcoroutinestate(coro) == inspect.CORO_CLOSED

    @pytest.mark.asyncio
    async def test_iterate_stops_when_cancelled(self):
        token = CancellationToken()

        async def numbers():
            for i in range(5):
                yield i

        seen = []
        with pytest.raises(RequestAborted):
            async for n in token.iterate(numbers()):
                seen.append(n)
                if n == 1:
                    token.cancel()
        assert seen == [0, 1]

    @pytest.mark.asyncio
    async def test_iterate_exhausts_source(self):
        token = CancellationToken()

        async def letters():
            yield "a"
            yield "b"

        assert [x async for x in token.iterate(letters())] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_sleep_is_cancellable(self):
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)
        with pytest.raises(RequestAborted):
            await token.sleep(10)

    @pytest.mark.asyncio
    async def test_zero_sleep_checks_token(self):
        token = CancellationToken()
        await token.sleep(0)
        token.cancel()
        with pytest.raises(RequestAborted):
            await token.sleep(0)

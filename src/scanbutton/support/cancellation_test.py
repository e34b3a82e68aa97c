import asyncio
import unittest

from hamcrest import assert_that, is_

from scanbutton.support.cancellation import CancellationToken, ShutdownRequested


class CancellationTokenTest(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.sut = CancellationToken()

    async def test_not_cancelled_initially(self):
        assert_that(self.sut.cancelled, is_(False))
        self.sut.check()

    async def test_cancel_is_idempotent(self):
        self.sut.cancel()
        self.sut.cancel()
        assert_that(self.sut.cancelled, is_(True))
        with self.assertRaises(ShutdownRequested):
            self.sut.check()

    async def test_guard_returns_result(self):
        async def answer():
            return 42
        assert_that(await self.sut.guard(answer()), is_(42))

    async def test_guard_propagates_exception(self):
        async def fail():
            raise ValueError("boom")
        with self.assertRaises(ValueError):
            await self.sut.guard(fail())

    async def test_guard_times_out(self):
        with self.assertRaises(asyncio.TimeoutError):
            await self.sut.guard(asyncio.sleep(10), timeout=0.01)

    async def test_guard_aborts_pending_awaitable_on_cancel(self):
        pending = asyncio.get_running_loop().create_future()
        asyncio.get_running_loop().call_soon(self.sut.cancel)
        with self.assertRaises(ShutdownRequested):
            await self.sut.guard(pending)
        assert_that(pending.cancelled(), is_(True))

    async def test_guard_refuses_when_already_cancelled(self):
        self.sut.cancel()
        coro = asyncio.sleep(0)
        with self.assertRaises(ShutdownRequested):
            await self.sut.guard(coro)
        coro.close()

    async def test_sleep_completes(self):
        await self.sut.sleep(0.01)

    async def test_sleep_interrupted(self):
        loop = asyncio.get_running_loop()
        loop.call_later(0.01, self.sut.cancel)
        started = loop.time()
        with self.assertRaises(ShutdownRequested):
            await self.sut.sleep(10)
        assert_that(loop.time() - started < 1, is_(True))

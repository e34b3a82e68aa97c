"""
A shutdown signal that can be observed at every suspension point of a coroutine.

The token wraps an asyncio.Event. Coroutines wrap what they await with guard()
and sleep with sleep(), so that setting the token unwinds them promptly with
ShutdownRequested instead of leaving them blocked on the network.
"""
import asyncio
import logging

logger = logging.getLogger(__name__)


class ShutdownRequested(Exception):
    """ Raised at a suspension point once the cancellation token has been set. """


class CancellationToken:

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        """ Signals shutdown. Safe to call more than once, and from a signal handler
        registered with loop.add_signal_handler() """
        if not self._event.is_set():
            logger.debug("shutdown requested")
        self._event.set()

    def check(self):
        """ raises ShutdownRequested if the token is set """
        if self._event.is_set():
            raise ShutdownRequested()

    async def wait(self):
        await self._event.wait()

    async def guard(self, awaitable, timeout=None):
        """
        Awaits the given awaitable, abandoning it when the token is set.
        :param awaitable: the coroutine or future to wait for. It is cancelled when shutdown wins.
        :param timeout: optional limit in seconds; asyncio.TimeoutError is raised when it elapses.
        :return: the result of the awaitable
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise ShutdownRequested()
        task = asyncio.ensure_future(awaitable)
        stop = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait((task, stop), timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
            if task in done:
                return task.result()
            if stop in done:
                raise ShutdownRequested()
            raise asyncio.TimeoutError()
        finally:
            for pending in (task, stop):
                if not pending.done():
                    pending.cancel()
            await asyncio.gather(task, stop, return_exceptions=True)

    async def sleep(self, delay):
        """ Suspends for delay seconds, raising ShutdownRequested as soon as the token is set. """
        self.check()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise ShutdownRequested()

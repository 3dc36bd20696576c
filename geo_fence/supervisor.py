import asyncio
import logging
import os
import typing
from contextlib import suppress

import async_timeout

from .exceptions import CycleError
from .exceptions import StartupError

logger = logging.getLogger('geofence.supervisor')

EXIT_FAILURE = 1


class FailureCounter:
    def __init__(self, threshold: int):
        self.threshold = threshold
        self.fails_in_row = 0

    @property
    def exhausted(self) -> bool:
        return self.fails_in_row >= self.threshold

    def ok(self):
        if self.fails_in_row:
            logger.info('Recovered after %s failed cycle(s)', self.fails_in_row)
        self.fails_in_row = 0

    def fail(self):
        self.fails_in_row += 1
        logger.error('Consecutive failures: %s/%s', self.fails_in_row, self.threshold)


class Supervisor:
    """Run update cycles forever

    ``shutdown`` is the cancellation token: once set, the supervisor stops
    after the running cycle or within one ``sleep_chunk`` of the inter-cycle sleep.
    :meth:`run` returns the process exit code.
    """

    def __init__(
        self,
        cycle,
        liveness,
        shutdown: asyncio.Event,
        interval: float,
        max_failures: int,
        sleep_chunk: float = 60,
        wait_ready: typing.Optional[typing.Callable[[], typing.Awaitable]] = None,
    ):
        self.cycle = cycle
        self.liveness = liveness
        self.shutdown = shutdown
        self.interval = interval
        self.sleep_chunk = sleep_chunk
        self.wait_ready = wait_ready
        self.failures = FailureCounter(max_failures)

    async def run(self) -> int:
        if self.wait_ready is not None:
            try:
                ready = await self._wait_ready()
            except StartupError as exc:
                logger.error('Cannot proceed without network connectivity: %s', exc)
                return EXIT_FAILURE

            if not ready:
                logger.info('Shutdown requested while waiting for the registry, exiting gracefully')
                return os.EX_OK

        while True:
            if self.shutdown.is_set():
                logger.info('Shutdown requested, exiting gracefully')
                return os.EX_OK

            try:
                await self.cycle.run()
            except CycleError as exc:
                if exc.fatal:
                    logger.error('Geo-fence update impossible: %s', exc)
                    return EXIT_FAILURE
                logger.error('Geo-fence update failed: %s', exc)
                self.failures.fail()
            except Exception:
                logger.exception('Geo-fence update failed unexpectedly')
                self.failures.fail()
            else:
                self.failures.ok()
                self._touch_liveness()

            if self.failures.exhausted:
                logger.error('Maximum consecutive failures reached, exiting')
                return EXIT_FAILURE

            logger.info('Sleeping for %s seconds until next update', self.interval)
            if await self.sleep(self.interval):
                logger.info('Shutdown requested during sleep, exiting gracefully')
                return os.EX_OK

    async def _wait_ready(self) -> bool:
        """Run ``wait_ready`` until it finishes or shutdown is requested

        Return False on shutdown, which wins over a concurrent startup failure.
        """
        ready = asyncio.ensure_future(self.wait_ready())
        stop = asyncio.ensure_future(self.shutdown.wait())
        try:
            await asyncio.wait((ready, stop), return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (ready, stop):
                task.cancel()
            await asyncio.gather(ready, stop, return_exceptions=True)

        if self.shutdown.is_set():
            return False

        ready.result()
        return True

    def _touch_liveness(self):
        try:
            self.liveness.touch()
        except OSError as exc:
            logger.error('Can not update liveness marker %s: %s', self.liveness.path, exc)

    async def sleep(self, seconds: float) -> bool:
        """Sleep in chunks, return True when shutdown was requested"""
        remaining = seconds
        while remaining > 0 and not self.shutdown.is_set():
            chunk = min(remaining, self.sleep_chunk)
            with suppress(asyncio.TimeoutError):
                async with async_timeout.timeout(chunk):
                    await self.shutdown.wait()
            remaining -= chunk

        return self.shutdown.is_set()

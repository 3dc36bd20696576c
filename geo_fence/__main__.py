import asyncio
import functools
import logging
import os
import signal
import sys

import uvloop
from pid.decorator import pidfile

from . import config
from .exceptions import CycleError
from .fetcher import wait_for_registry
from .ipset import IPSetBackend
from .iptables import IptablesBackend
from .liveness import LivenessMarker
from .orchestrator import UpdateCycle
from .supervisor import EXIT_FAILURE
from .supervisor import Supervisor

logger = logging.getLogger('geofence')

EXIT_INTERRUPTED = 130
PIDNAME = 'geo-fence'


@pidfile(PIDNAME, piddir=config.settings.piddir)
def run():
    sys.exit(uvloop.run(_run_supervisor()))


@pidfile(PIDNAME, piddir=config.settings.piddir)
def run_once():
    sys.exit(uvloop.run(_run_once()))


def _install_signal_handlers(shutdown: asyncio.Event):
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()

    def _graceful():
        logger.info('Shutdown signal received, will exit after current operation completes')
        shutdown.set()

    def _immediate():
        logger.warning('Immediate shutdown signal received, exiting now')
        task.cancel()

    loop.add_signal_handler(signal.SIGTERM, _graceful)
    loop.add_signal_handler(signal.SIGINT, _immediate)


async def _run_supervisor() -> int:
    settings = config.settings
    shutdown = asyncio.Event()
    _install_signal_handlers(shutdown)

    logger.info('Geo-fence starting up')
    logger.info('Update interval: %ss (%s hours)', settings.update_interval, settings.update_interval // 3600)
    logger.info('Health check file: %s', settings.health_file)

    wait_ready = functools.partial(
        wait_for_registry,
        settings.probe_url,
        attempts=settings.probe_attempts,
        delay=settings.probe_delay,
        timeout=settings.probe_timeout,
    )

    with IPSetBackend() as set_backend:
        supervisor = Supervisor(
            UpdateCycle(settings, set_backend, IptablesBackend(settings.iptables)),
            LivenessMarker(settings.health_file),
            shutdown,
            interval=settings.update_interval,
            max_failures=settings.max_consecutive_failures,
            sleep_chunk=settings.sleep_chunk,
            wait_ready=wait_ready,
        )
        try:
            return await supervisor.run()
        except asyncio.CancelledError:
            return EXIT_INTERRUPTED


async def _run_once() -> int:
    settings = config.settings

    with IPSetBackend() as set_backend:
        cycle = UpdateCycle(settings, set_backend, IptablesBackend(settings.iptables))
        try:
            await cycle.run()
        except CycleError as exc:
            logger.error('Geo-fence update failed: %s', exc)
            return EXIT_FAILURE

    LivenessMarker(settings.health_file).touch()
    return os.EX_OK


if __name__ == '__main__':
    run()

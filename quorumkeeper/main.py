"""
quorum-keeper process entry helpers

Logging setup and a signal-aware runner that drives a
:class:`~quorumkeeper.mon.health.HealthChecker` until the process is told
to stop. Building the collaborators is left to the embedding operator.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import structlog

from quorumkeeper.mon.health import HealthChecker


def setup_logging(log_level: str = "INFO", json_logs: bool = True) -> None:
    """
    Route structlog through stdlib logging at ``log_level``.

    Reconciler events are rendered as JSON lines, or as aligned console
    output when ``json_logs`` is False.
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger(__name__)


async def run_until_signalled(checker: HealthChecker) -> None:
    """Load persisted state, then run health checks until SIGINT/SIGTERM."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support.
            pass

    await checker.reconciler.load_state()
    await checker.start()
    logger.info("quorumkeeper.running", interval=checker.interval.total_seconds())
    try:
        await stop_event.wait()
    finally:
        await checker.stop()
        logger.info("quorumkeeper.shutdown", stats=checker.reconciler.get_stats())

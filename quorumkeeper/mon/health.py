"""
Monitor Health Checker

Periodic driver for :class:`QuorumReconciler`. Every interval it runs one
reconciliation pass followed by orphan resource cleanup. Passes never
overlap: a pass requested while another is outstanding is skipped, and
the background loop awaits each pass before sleeping again.

The interval is resolved once at construction, most specific first:

1. the cluster's ``health_check.mon.interval``
2. the operator-wide ``QUORUMKEEPER_MON_HEALTHCHECK_INTERVAL``
3. 45 seconds
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Optional

import structlog

from quorumkeeper.mon.config import (
    DEFAULT_HEALTH_CHECK_INTERVAL,
    OperatorSettings,
    resolve_health_check_interval,
)
from quorumkeeper.mon.errors import MonitorError
from quorumkeeper.mon.reconcile import QuorumReconciler

logger = structlog.get_logger(__name__)


class HealthChecker:
    """
    Runs reconciliation passes on a fixed interval.

    Usage::

        checker = HealthChecker(reconciler)
        await checker.start()
        ...
        await checker.stop()
    """

    def __init__(
        self,
        reconciler: QuorumReconciler,
        *,
        settings: Optional[OperatorSettings] = None,
    ) -> None:
        self._reconciler = reconciler
        settings = settings or reconciler.settings
        state = reconciler.state
        if state is not None:
            self._interval = resolve_health_check_interval(state.spec, settings)
            self._disabled = state.spec.health_check.mon.disabled
        else:
            self._interval = DEFAULT_HEALTH_CHECK_INTERVAL
            self._disabled = False

        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task[None]] = None
        self._running = False

        self._checks_ok: int = 0
        self._checks_failed: int = 0
        self._checks_skipped: int = 0

        logger.info(
            "health_checker.init",
            interval=self._interval.total_seconds(),
            disabled=self._disabled,
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def reconciler(self) -> QuorumReconciler:
        return self._reconciler

    @property
    def interval(self) -> timedelta:
        return self._interval

    @property
    def disabled(self) -> bool:
        return self._disabled

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Single pass
    # ------------------------------------------------------------------

    async def check(self) -> bool:
        """
        Run one pass and orphan cleanup. Returns ``True`` on success.

        Failures are logged and reported, never raised; the next tick is
        the retry. Cancellation propagates.
        """
        if self._lock.locked():
            self._checks_skipped += 1
            logger.debug("health_checker.pass_in_progress")
            return False

        async with self._lock:
            try:
                await self._reconciler.check_health()
            except MonitorError as exc:
                self._checks_failed += 1
                logger.warning(
                    "health_checker.check_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                return False
            except Exception:
                self._checks_failed += 1
                logger.exception("health_checker.check_error")
                return False

            try:
                await self._reconciler.remove_orphan_resources()
            except Exception:
                logger.exception("health_checker.orphan_cleanup_error")

            self._checks_ok += 1
            return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Launch the background loop."""
        if self._running:
            logger.warning("health_checker.already_running")
            return
        if self._disabled:
            logger.info("health_checker.disabled")
            return
        self._running = True
        self._task = asyncio.create_task(self.run())
        logger.info("health_checker.started", interval=self._interval.total_seconds())

    async def stop(self) -> None:
        """Cancel the background loop and wait for it to finish."""
        if not self._running:
            return
        self._running = False
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        logger.info("health_checker.stopped")

    async def run(self) -> None:
        """Check, sleep, repeat until stopped or cancelled."""
        if self._disabled:
            logger.info("health_checker.disabled")
            return
        self._running = True
        try:
            while self._running:
                await self.check()
                await asyncio.sleep(self._interval.total_seconds())
        except asyncio.CancelledError:
            logger.debug("health_checker.cancelled")
            raise
        finally:
            self._running = False

    def get_stats(self) -> dict:
        return {
            "interval_seconds": self._interval.total_seconds(),
            "disabled": self._disabled,
            "checks_ok": self._checks_ok,
            "checks_failed": self._checks_failed,
            "checks_skipped": self._checks_skipped,
            "running": self._running,
        }

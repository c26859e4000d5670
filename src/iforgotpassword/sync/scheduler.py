# Sync Module — Background Sync Scheduler
#
# Background asyncio task that runs SyncEngine.full_sync() every
# sync_interval_minutes while the vault is unlocked.
#
# After a failed pass the next attempt is pulled forward using exponential
# backoff with full jitter (delay drawn uniformly from
# [0, min(max_backoff, base * 2**failures)]), so a device that was briefly
# offline catches up quickly without every client retrying in lockstep.
# trigger() (e.g. on connectivity restore) wakes the loop immediately.

import asyncio
import logging
import random
from datetime import datetime
from typing import Callable, Optional

from ..core.config import DEFAULT_SYNC_INTERVAL_MINUTES
from ..vault.models import utcnow
from .engine import SyncEngine, SyncReport, SyncStatus

logger = logging.getLogger(__name__)

DEFAULT_BASE_BACKOFF = 15.0  # seconds


class SyncScheduler:
    """Periodic driver for a SyncEngine.

    Args:
        engine: Engine to run.
        interval: Seconds between successful passes.
        is_unlocked: Returns False while the vault is locked; passes are
            skipped then.
        base_backoff: First backoff ceiling after a failure, in seconds.
        max_backoff: Upper bound for backoff ceilings (defaults to interval).
        rng: Random source for jitter.
    """

    def __init__(
        self,
        engine: SyncEngine,
        interval: float = DEFAULT_SYNC_INTERVAL_MINUTES * 60,
        *,
        is_unlocked: Optional[Callable[[], bool]] = None,
        base_backoff: float = DEFAULT_BASE_BACKOFF,
        max_backoff: Optional[float] = None,
        rng: Optional[random.Random] = None,
    ):
        self._engine = engine
        self._interval = interval
        self._is_unlocked = is_unlocked or (lambda: True)
        self._base_backoff = base_backoff
        self._max_backoff = max_backoff if max_backoff is not None else interval
        self._rng = rng or random.Random()

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._wake: Optional[asyncio.Event] = None
        self._failures = 0
        self._last_run: Optional[datetime] = None
        self._run_count = 0

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self):
        """Start the sync loop as a background task."""
        if self._running:
            return
        self._running = True
        self._wake = asyncio.Event()
        self._task = asyncio.create_task(self._sync_loop())
        logger.info("Sync scheduler started (interval=%ds)", self._interval)

    async def stop(self):
        """Stop the sync loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Sync scheduler stopped")

    def trigger(self) -> None:
        """Wake the loop now (connectivity restored, user pressed sync)."""
        if self._wake is not None:
            self._wake.set()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def failures(self) -> int:
        return self._failures

    @property
    def last_run(self) -> Optional[datetime]:
        return self._last_run

    @property
    def run_count(self) -> int:
        return self._run_count

    # ── Scheduling ───────────────────────────────────────────────────

    def next_delay(self) -> float:
        """Seconds until the next pass."""
        if self._failures == 0:
            return self._interval
        ceiling = min(self._max_backoff, self._base_backoff * (2 ** (self._failures - 1)))
        return self._rng.uniform(0, ceiling)

    async def run_once(self) -> Optional[SyncReport]:
        """Run a single pass now. Returns None if the vault is locked."""
        if not self._is_unlocked():
            logger.debug("Vault locked, skipping scheduled sync")
            return None

        report = await self._engine.full_sync()
        self._last_run = utcnow()
        self._run_count += 1

        if report.status == SyncStatus.ERROR:
            self._failures += 1
            logger.info("Sync pass failed (%d in a row): %s", self._failures, report.error)
        elif report.status == SyncStatus.IDLE:
            self._failures = 0
        return report

    async def _sync_loop(self):
        """Main loop: run a pass, then sleep until the next one or a trigger."""
        while self._running:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Scheduled sync cycle failed")
            delay = self.next_delay()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

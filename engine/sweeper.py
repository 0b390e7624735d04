from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config.settings import SWEEP_INTERVAL_SECONDS
from engine.tokens import TokenStore

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "token_sweep"


class TokenSweeper:
    """Periodic job that evicts expired tokens from a ``TokenStore``."""

    def __init__(
        self,
        store: TokenStore,
        *,
        interval_seconds: float = SWEEP_INTERVAL_SECONDS,
        scheduler: BackgroundScheduler | None = None,
    ) -> None:
        self._store = store
        self._interval_seconds = interval_seconds
        self._scheduler = scheduler or BackgroundScheduler(timezone="UTC")

    @property
    def scheduler(self) -> BackgroundScheduler:
        return self._scheduler

    @property
    def running(self) -> bool:
        return bool(self._scheduler.running)

    def run_once(self) -> int:
        evicted = self._store.sweep()
        if evicted:
            logger.info("Token sweep evicted %d expired tokens (%d live)", evicted, len(self._store))
        return evicted

    def start(self) -> None:
        self._scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(seconds=self._interval_seconds),
            id=SWEEP_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Token sweeper active (interval=%ss)", self._interval_seconds)

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Token sweeper shutdown")

import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from totals_cache import TotalsCache, get_totals_cache


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, cache: Optional[TotalsCache] = None) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self.prune_minutes = settings.cache_prune_minutes
        self.cache = cache if cache is not None else get_totals_cache()

    def _run_job(self, source: str = "manual") -> int:
        removed = self.cache.prune()
        logger.info(
            f"cache_prune: source={source} removed={removed} remaining={len(self.cache)}"
        )
        return removed

    def start(self) -> None:
        trigger = IntervalTrigger(minutes=self.prune_minutes)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["interval"],
            id="totals_cache_prune",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with totals cache pruning every {self.prune_minutes} min"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from cache import CacheCoordinator, MemoryCache
from config import get_settings
from dashboard import DashboardService
from database import SessionFactory


logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(
        self,
        session_factory: SessionFactory,
        cache: CacheCoordinator,
        dashboards: Optional[DashboardService] = None,
    ) -> None:
        settings = get_settings()
        self.settings = settings
        self.cache = cache
        self.dashboards = dashboards or DashboardService(session_factory, cache=cache)
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def sweep_cache(self, source: str = "manual") -> int:
        store = self.cache.store
        if not isinstance(store, MemoryCache):
            return 0
        removed = store.purge_expired()
        logger.info(f"cache_sweep: source={source} expired_removed={removed}")
        return removed

    def warm_dashboards(self, source: str = "manual") -> None:
        logger.info(f"dashboard_warm: source={source}")
        try:
            self.dashboards.main_dashboard()
            self.dashboards.surplus_deficit()
        except Exception:
            logger.exception(f"dashboard_warm_failed: source={source}")
            return
        logger.info(f"dashboard_warm: source={source} done")

    def start(self) -> None:
        if not self.settings.cache_enabled:
            logger.info("Scheduler not started: cache disabled")
            return

        self.warm_dashboards("startup")

        trigger = IntervalTrigger(minutes=self.settings.cache_sweep_minutes)
        self.scheduler.add_job(
            self.sweep_cache,
            trigger,
            args=["interval"],
            id="cache_sweep",
            replace_existing=True,
            misfire_grace_time=300,
        )

        trigger = CronTrigger(hour=0, minute=5)
        self.scheduler.add_job(
            self.warm_dashboards,
            trigger,
            args=["daily_00:05"],
            id="dashboard_warm_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with cache sweep every "
            f"{self.settings.cache_sweep_minutes} min and daily 00:05 warm-up"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

import logging
from typing import Optional

import pytz
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.ext.asyncio import async_sessionmaker

from domain.cache import ReadThroughCache
from domain.services import BetLifecycleService
from infra.db import AsyncSessionLocal
from infra.redis import cache_store
from infra.settings import settings

logger = logging.getLogger(__name__)


class SchedulerService:
    """Maintenance jobs: expired-bet report and nightly account reconciliation"""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        cache: Optional[ReadThroughCache] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.cache = cache or ReadThroughCache(cache_store)
        self.scheduler = self._create_scheduler()

    def _create_scheduler(self) -> AsyncIOScheduler:
        """Create and configure APScheduler"""
        # Jobs are re-registered on every start, nothing needs to persist
        jobstores = {
            'default': MemoryJobStore(),
        }

        executors = {
            'default': AsyncIOExecutor(),
        }

        job_defaults = {
            'coalesce': True,
            'max_instances': 1
        }

        scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone=pytz.timezone(settings.timezone)
        )

        return scheduler

    async def start(self):
        """Start the scheduler and register maintenance jobs"""
        self.scheduler.start()

        self.scheduler.add_job(
            self.report_expired_bets,
            'interval',
            seconds=settings.expired_scan_interval_sec,
            id='expired_bets_report',
            replace_existing=True
        )

        self.scheduler.add_job(
            self.reconcile_accounts,
            'cron',
            hour=settings.reconcile_hour,
            minute=0,
            timezone=pytz.timezone(settings.timezone),
            id='nightly_reconciliation',
            replace_existing=True
        )

        logger.info(f"Scheduler started with nightly reconciliation at {settings.reconcile_hour:02d}:00 {settings.timezone}")

    async def stop(self):
        """Stop the scheduler"""
        self.scheduler.shutdown()
        logger.info("Scheduler stopped")

    async def report_expired_bets(self) -> int:
        """Log active bets whose window passed without a settlement"""
        async with self.session_factory() as db:
            service = BetLifecycleService(db, self.cache)
            expired = await service.list_expired_active_bets()

        if expired:
            oldest = expired[0]
            logger.warning(
                f"{len(expired)} expired bets awaiting settlement, "
                f"oldest {oldest.id} expired at {oldest.expires_at.isoformat()}"
            )
        return len(expired)

    async def reconcile_accounts(self) -> int:
        """Rebuild every account's counters from its bets; returns accounts corrected"""
        async with self.session_factory() as db:
            service = BetLifecycleService(db, self.cache)
            try:
                results = await service.reconcile_all()
            except Exception as e:
                logger.error(f"Reconciliation failed: {e}")
                raise

        corrected = sum(1 for r in results if r["corrected"])
        logger.info(f"Reconciliation checked {len(results)} accounts, corrected {corrected}")
        return corrected

    def get_scheduler_status(self) -> dict:
        """Get scheduler status and job information"""
        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append({
                'id': job.id,
                'next_run': job.next_run_time,
                'trigger': str(job.trigger),
            })

        return {
            'running': self.scheduler.running,
            'jobs': jobs
        }

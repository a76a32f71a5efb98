"""Background job scheduler for the trade ledger auto-resolve sweep"""

import logging

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from services.authorization import Actor
from services.trade_engine import SweepResult, TradeEngine
from utils.background_task_runner import run_io_task

logger = logging.getLogger(__name__)

AUTO_RESOLVE_JOB_ID = "auto_resolve_trades"


class LedgerScheduler:
    """
    In-process trigger for the auto-resolve sweep.

    Holds no ledger state: each tick runs the same sweep the cron endpoint
    runs, so it is safe to have both active.
    """

    def __init__(self, trade_engine: TradeEngine, interval_seconds: int = None):
        self.trade_engine = trade_engine
        self.interval_seconds = interval_seconds or Config.AUTO_RESOLVE_INTERVAL_SECONDS

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Collapse missed ticks into one run
            'max_instances': 1,
            'misfire_grace_time': 60
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        if self.scheduler.get_job(AUTO_RESOLVE_JOB_ID):
            self.scheduler.remove_job(AUTO_RESOLVE_JOB_ID)

        self.scheduler.add_job(
            self.auto_resolve_trades,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=AUTO_RESOLVE_JOB_ID,
            name="Auto-resolve Scheduled Trades",
            max_instances=1,
            coalesce=True,
        )

    def start(self):
        """Start the scheduler (must be called from a running event loop)"""
        self.setup_jobs()
        self.scheduler.start()
        logger.info(f"✅ Ledger scheduler started: auto-resolve every {self.interval_seconds}s")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")

    async def auto_resolve_trades(self) -> SweepResult:
        """One sweep tick; errors are logged, never raised into APScheduler"""
        try:
            result = await run_io_task(self.trade_engine.auto_resolve_due, Actor.system())
        except Exception as e:
            logger.error(f"❌ AUTO_RESOLVE_JOB_FAILED: {e}", exc_info=True)
            return SweepResult()

        if result.errors:
            logger.warning(f"⚠️ AUTO_RESOLVE_JOB: {len(result.errors)} trades could not be settled: {result.errors}")
        return result

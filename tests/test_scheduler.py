"""
Scheduler Tests
APScheduler job registration and the auto-resolve tick
"""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from jobs.scheduler import AUTO_RESOLVE_JOB_ID, LedgerScheduler


class TestLedgerScheduler:

    def test_job_registered_once(self, trade_engine):
        scheduler = LedgerScheduler(trade_engine, interval_seconds=15)

        scheduler.setup_jobs()
        scheduler.setup_jobs()

        jobs = scheduler.scheduler.get_jobs()
        assert [job.id for job in jobs] == [AUTO_RESOLVE_JOB_ID]
        assert jobs[0].trigger.interval == timedelta(seconds=15)

    @pytest.mark.asyncio
    async def test_tick_runs_sweep(self, trade_engine, make_user, make_trade, balance_of):
        user_id = make_user(balance="0")
        trade_id = make_trade(user_id, opened_seconds_ago=300, admin_result="WON")

        result = await LedgerScheduler(trade_engine).auto_resolve_trades()

        assert result.resolved == [trade_id]
        assert balance_of(user_id) == Decimal("60")

    @pytest.mark.asyncio
    async def test_tick_swallows_sweep_failure(self):
        engine = MagicMock()
        engine.auto_resolve_due.side_effect = RuntimeError("database unavailable")

        result = await LedgerScheduler(engine, interval_seconds=5).auto_resolve_trades()

        assert result.resolved == []
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_start_and_stop(self, trade_engine):
        scheduler = LedgerScheduler(trade_engine, interval_seconds=3600)

        scheduler.start()
        assert scheduler.scheduler.running
        scheduler.stop()
        assert not scheduler.scheduler.running

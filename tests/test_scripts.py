"""
Operational Script Tests
Cron sweep, wallet normalization and gunicorn entry points
"""

import json
from decimal import Decimal
from unittest.mock import patch

from scripts import normalize_wallets, run_auto_resolve
from services.trade_engine import SweepResult


class TestRunAutoResolve:

    def test_run_sweep_settles_due_trades(self, session_factory, make_user, make_trade, balance_of):
        user_id = make_user(balance="0")
        trade_id = make_trade(user_id, opened_seconds_ago=120, admin_result="WON")

        result = run_auto_resolve.run_sweep(session_factory)

        assert result.resolved == [trade_id]
        assert balance_of(user_id) == Decimal("60")

    def test_main_exit_status_reflects_errors(self, capsys):
        failed = SweepResult(resolved=[], errors=[{"tradeId": 9, "error": "Trade not found"}])
        with patch.object(run_auto_resolve, "run_sweep", return_value=failed):
            assert run_auto_resolve.main(["--quiet"]) == 1

        printed = json.loads(capsys.readouterr().out)
        assert printed["errors"][0]["tradeId"] == 9

    def test_main_quiet_success_prints_nothing(self, capsys):
        with patch.object(run_auto_resolve, "run_sweep", return_value=SweepResult(resolved=[1])):
            assert run_auto_resolve.main(["--quiet"]) == 0
        assert capsys.readouterr().out == ""


class TestNormalizeWallets:

    def test_normalize_summary(self, session_factory, make_user):
        wallet = "0x" + "ef" * 20
        make_user(balance="3", wallet_address=wallet)
        make_user(balance="1", email=f"{wallet}@wallet.local")

        assert normalize_wallets.normalize(session_factory) == {"deduped": 1, "updated": 0}

    def test_main_reports_failure(self, capsys):
        with patch.object(normalize_wallets, "normalize", side_effect=RuntimeError("db down")):
            assert normalize_wallets.main([]) == 1
        assert "Normalization failed" in capsys.readouterr().out


class TestGunicornSettings:

    def test_uvicorn_workers_without_preload(self):
        import gunicorn_conf

        assert gunicorn_conf.worker_class == "uvicorn.workers.UvicornWorker"
        # Engine pools and the scheduler must be created per worker
        assert gunicorn_conf.preload_app is False
        assert not hasattr(gunicorn_conf, "post_fork")

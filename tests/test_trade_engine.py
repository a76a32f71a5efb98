"""
Trade Engine Tests
Open/resolve/close lifecycle, exactly-once settlement and the auto-resolve sweep
"""

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest
from sqlalchemy import delete, func, select

from middleware.rate_limiter import RateLimiter
from models import AuditLog, Trade, TradeStatus, User
from services.authorization import Actor
from services.trade_engine import TradeEngine
from utils.exception_handler import (
    AlreadyResolvedError,
    ForbiddenError,
    InsufficientFundsError,
    NotFoundError,
    TooManyRequestsError,
    UpstreamUnavailableError,
    ValidationError,
)


def _trade_count(session_factory) -> int:
    with session_factory() as session:
        return session.execute(select(func.count(Trade.id))).scalar_one()


def _get_trade(session_factory, trade_id) -> Trade:
    with session_factory() as session:
        return session.get(Trade, trade_id)


class TestOpenTrade:

    @pytest.mark.asyncio
    async def test_open_debits_stake_and_snapshots_price(self, trade_engine, make_user, balance_of,
                                                         audit_actions):
        user_id = make_user(balance="100")

        trade = await trade_engine.open_trade(Actor(user_id), "btc", "up", "50", 60)

        assert trade.status == TradeStatus.PENDING.value
        assert trade.coin == "BTC"
        assert trade.direction == "UP"
        assert trade.return_pct == 20
        assert trade.price_open == Decimal("50000")
        assert trade.price_open_at is not None
        assert balance_of(user_id) == Decimal("50")
        assert audit_actions("Trade") == ["TRADE_OPEN"]
        assert trade_engine.potential_return(trade) == Decimal("10")

    @pytest.mark.asyncio
    async def test_insufficient_balance_never_calls_oracle(self, trade_engine, price_oracle, make_user,
                                                           balance_of, session_factory):
        user_id = make_user(balance="10")

        with pytest.raises(InsufficientFundsError):
            await trade_engine.open_trade(Actor(user_id), "BTC", "UP", "50", 60)

        assert price_oracle.spot_calls == 0
        assert balance_of(user_id) == Decimal("10")
        assert _trade_count(session_factory) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("direction,amount,timeframe", [
        ("UP", "50", 29),
        ("UP", "50", 3601),
        ("UP", "50", 60.5),
        ("UP", "50", "soon"),
        ("SIDEWAYS", "50", 60),
        ("UP", "0", 60),
        ("UP", "-5", 60),
        ("UP", "lots", 60),
        ("UP", True, 60),
    ])
    async def test_invalid_requests_rejected_without_side_effects(self, trade_engine, make_user, balance_of,
                                                                  session_factory, direction, amount, timeframe):
        user_id = make_user(balance="100")

        with pytest.raises(ValidationError):
            await trade_engine.open_trade(Actor(user_id), "BTC", direction, amount, timeframe)

        assert balance_of(user_id) == Decimal("100")
        assert _trade_count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_sub_precision_stake_rejected(self, trade_engine, price_oracle, make_user, balance_of,
                                                session_factory):
        user_id = make_user(balance="100")

        with pytest.raises(ValidationError):
            await trade_engine.open_trade(Actor(user_id), "BTC", "UP", "0.000000001", 60)

        assert price_oracle.spot_calls == 0
        assert balance_of(user_id) == Decimal("100")
        assert _trade_count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_stake_rounded_once_for_debit_and_record(self, trade_engine, make_user, balance_of,
                                                           session_factory):
        user_id = make_user(balance="100")

        trade = await trade_engine.open_trade(Actor(user_id), "BTC", "UP", "0.123456789", 60)

        stored = _get_trade(session_factory, trade.id)
        assert stored.amount == Decimal("0.12345679")
        assert balance_of(user_id) + stored.amount == Decimal("100")

    @pytest.mark.asyncio
    async def test_oracle_failure_aborts_before_mutation(self, trade_engine, price_oracle, make_user,
                                                         balance_of, session_factory):
        user_id = make_user(balance="100")
        price_oracle.fail = True

        with pytest.raises(UpstreamUnavailableError):
            await trade_engine.open_trade(Actor(user_id), "BTC", "UP", "50", 60)

        assert balance_of(user_id) == Decimal("100")
        assert _trade_count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_slow_oracle_times_out(self, session_factory, price_oracle, limiter, make_user, balance_of):
        engine = TradeEngine(session_factory=session_factory, price_oracle=price_oracle, limiter=limiter,
                             price_timeout_seconds=0.05)
        price_oracle.delay_seconds = 1
        user_id = make_user(balance="100")

        with pytest.raises(UpstreamUnavailableError):
            await engine.open_trade(Actor(user_id), "BTC", "UP", "50", 60)

        assert balance_of(user_id) == Decimal("100")

    @pytest.mark.asyncio
    async def test_rate_limit_applies_per_actor(self, trade_engine, limiter, make_user):
        user_id = make_user(balance="100")
        other_id = make_user(balance="100")
        for _ in range(30):
            limiter.check(user_id, "trade_create")

        with pytest.raises(TooManyRequestsError):
            await trade_engine.open_trade(Actor(user_id), "BTC", "UP", "1", 60)

        trade = await trade_engine.open_trade(Actor(other_id), "BTC", "UP", "1", 60)
        assert trade.user_id == other_id

    @pytest.mark.asyncio
    async def test_concurrent_opens_never_overdraw(self, trade_engine, make_user, balance_of, session_factory):
        """Five simultaneous 50-unit opens against a balance of 100: exactly two succeed"""
        user_id = make_user(balance="100")

        results = await asyncio.gather(
            *[trade_engine.open_trade(Actor(user_id), "BTC", "UP", "50", 60) for _ in range(5)],
            return_exceptions=True,
        )

        opened = [r for r in results if isinstance(r, Trade)]
        rejected = [r for r in results if isinstance(r, InsufficientFundsError)]
        assert len(opened) == 2
        assert len(rejected) == 3
        assert balance_of(user_id) == Decimal("0")
        assert _trade_count(session_factory) == 2


class TestResolveTrade:

    @pytest.mark.asyncio
    async def test_won_credits_stake_plus_return(self, trade_engine, make_user, balance_of, admin_actor):
        user_id = make_user(balance="100")
        trade = await trade_engine.open_trade(Actor(user_id), "BTC", "UP", "50", 60)

        resolved = trade_engine.resolve_trade(trade.id, "WON", admin_actor)

        assert resolved.status == TradeStatus.WON.value
        assert resolved.pnl == Decimal("10")
        assert resolved.price_close == resolved.price_open
        assert resolved.resolved_at is not None
        assert balance_of(user_id) == Decimal("110")

    @pytest.mark.asyncio
    async def test_lost_credits_nothing(self, trade_engine, make_user, balance_of, admin_actor, audit_actions):
        user_id = make_user(balance="100")
        trade = await trade_engine.open_trade(Actor(user_id), "BTC", "UP", "50", 60)

        resolved = trade_engine.resolve_trade(trade.id, "LOST", admin_actor, price_close="49000")

        assert resolved.status == TradeStatus.LOST.value
        assert resolved.pnl == Decimal("-50")
        assert resolved.price_close == Decimal("49000")
        assert balance_of(user_id) == Decimal("50")
        assert audit_actions("Trade") == ["TRADE_OPEN", "TRADE_RESOLVE"]

    def test_second_resolution_is_rejected(self, trade_engine, make_user, make_trade, balance_of, admin_actor):
        user_id = make_user(balance="0")
        trade_id = make_trade(user_id)

        trade_engine.resolve_trade(trade_id, "WON", admin_actor)
        with pytest.raises(AlreadyResolvedError):
            trade_engine.resolve_trade(trade_id, "LOST", admin_actor)

        assert balance_of(user_id) == Decimal("60")
        assert _get_trade(trade_engine.session_factory, trade_id).status == TradeStatus.WON.value

    def test_concurrent_resolutions_settle_exactly_once(self, trade_engine, make_user, make_trade, balance_of,
                                                        admin_actor):
        user_id = make_user(balance="0")
        trade_id = make_trade(user_id)
        barrier = threading.Barrier(6)

        def resolve():
            barrier.wait()
            try:
                trade_engine.resolve_trade(trade_id, "WON", admin_actor)
                return "ok"
            except AlreadyResolvedError:
                return "conflict"

        with ThreadPoolExecutor(max_workers=6) as pool:
            outcomes = list(pool.map(lambda _: resolve(), range(6)))

        assert outcomes.count("ok") == 1
        assert outcomes.count("conflict") == 5
        assert balance_of(user_id) == Decimal("60")

    def test_unknown_trade(self, trade_engine, admin_actor):
        with pytest.raises(NotFoundError):
            trade_engine.resolve_trade(999, "WON", admin_actor)

    def test_invalid_result(self, trade_engine, make_user, make_trade, admin_actor):
        trade_id = make_trade(make_user())
        with pytest.raises(ValidationError):
            trade_engine.resolve_trade(trade_id, "DRAW", admin_actor)

    def test_non_admin_cannot_resolve(self, trade_engine, make_user, make_trade, balance_of):
        user_id = make_user(balance="0")
        trade_id = make_trade(user_id)

        with pytest.raises(ForbiddenError):
            trade_engine.resolve_trade(trade_id, "WON", Actor(user_id))

        assert balance_of(user_id) == Decimal("0")


class TestCloseTradeAtMarket:

    @pytest.mark.asyncio
    async def test_close_at_spot_win(self, trade_engine, price_oracle, make_user, balance_of, admin_actor):
        user_id = make_user(balance="100")
        trade = await trade_engine.open_trade(Actor(user_id), "BTC", "UP", "50", 60)
        price_oracle.spot["BTC"] = Decimal("51000")

        closed = await trade_engine.close_trade_at_market(trade.id, admin_actor, mode="spot")

        assert closed.status == TradeStatus.CLOSED.value
        assert closed.price_close == Decimal("51000")
        assert closed.price_close_at is not None
        assert closed.pnl == Decimal("10")
        assert balance_of(user_id) == Decimal("110")

    @pytest.mark.asyncio
    async def test_close_at_spot_loss(self, trade_engine, price_oracle, make_user, balance_of, admin_actor):
        user_id = make_user(balance="100")
        trade = await trade_engine.open_trade(Actor(user_id), "BTC", "UP", "50", 60)
        price_oracle.spot["BTC"] = Decimal("49999")

        closed = await trade_engine.close_trade_at_market(trade.id, admin_actor)

        assert closed.pnl == Decimal("-50")
        assert balance_of(user_id) == Decimal("50")

    @pytest.mark.asyncio
    async def test_close_with_explicit_price_skips_oracle(self, trade_engine, price_oracle, make_user,
                                                          make_trade, balance_of, admin_actor):
        user_id = make_user(balance="0")
        trade_id = make_trade(user_id, direction="DOWN", price_open="100")

        closed = await trade_engine.close_trade_at_market(trade_id, admin_actor, price_close="95")

        assert price_oracle.spot_calls == 0
        assert closed.price_close == Decimal("95")
        assert closed.pnl == Decimal("10")
        assert balance_of(user_id) == Decimal("60")

    @pytest.mark.asyncio
    async def test_close_at_open_time_uses_historical_price(self, trade_engine, price_oracle, make_user,
                                                            make_trade, admin_actor):
        user_id = make_user(balance="0")
        trade_id = make_trade(user_id, price_open="100")
        price_oracle.historical["BTC"] = Decimal("100")

        closed = await trade_engine.close_trade_at_market(trade_id, admin_actor, mode="openTime")

        assert len(price_oracle.historical_calls) == 1
        assert closed.price_close == Decimal("100")
        # Unchanged price counts as a win for UP
        assert closed.pnl == Decimal("10")

    @pytest.mark.asyncio
    async def test_close_resolved_trade_rejected_before_price_lookup(self, trade_engine, price_oracle,
                                                                     make_user, make_trade, admin_actor):
        trade_id = make_trade(make_user())
        trade_engine.resolve_trade(trade_id, "LOST", admin_actor)

        with pytest.raises(AlreadyResolvedError):
            await trade_engine.close_trade_at_market(trade_id, admin_actor)
        assert price_oracle.spot_calls == 0

    @pytest.mark.asyncio
    async def test_invalid_mode(self, trade_engine, make_user, make_trade, admin_actor):
        trade_id = make_trade(make_user())
        with pytest.raises(ValidationError):
            await trade_engine.close_trade_at_market(trade_id, admin_actor, mode="yesterday")


class TestAutoResolve:

    def test_schedule_then_sweep_settles_due_trades(self, trade_engine, make_user, make_trade, balance_of,
                                                    admin_actor, audit_actions):
        user_id = make_user(balance="0")
        due_id = make_trade(user_id, timeframe=60, opened_seconds_ago=120)
        not_due_id = make_trade(user_id, timeframe=600, opened_seconds_ago=120)
        unscheduled_id = make_trade(user_id, timeframe=60, opened_seconds_ago=120)

        trade_engine.schedule_trade_result(due_id, "WON", admin_actor)
        trade_engine.schedule_trade_result(not_due_id, "WON", admin_actor)

        result = trade_engine.auto_resolve_due(Actor.system())

        assert result.resolved == [due_id]
        assert result.errors == []
        assert balance_of(user_id) == Decimal("60")
        assert _get_trade(trade_engine.session_factory, not_due_id).status == TradeStatus.PENDING.value
        assert _get_trade(trade_engine.session_factory, unscheduled_id).status == TradeStatus.PENDING.value
        assert audit_actions("Trade").count("TRADE_SCHEDULE") == 2

    def test_sweep_isolates_failures(self, trade_engine, session_factory, make_user, make_trade, balance_of):
        """Three due trades, one owner deleted: two resolve, one error, the failed one stays PENDING"""
        alice = make_user(balance="0")
        bob = make_user(balance="0")
        ghost = make_user(balance="0")
        first = make_trade(alice, opened_seconds_ago=120, admin_result="WON")
        orphan = make_trade(ghost, opened_seconds_ago=120, admin_result="WON")
        second = make_trade(bob, opened_seconds_ago=120, admin_result="LOST")
        with session_factory() as session:
            session.execute(delete(User).where(User.id == ghost))
            session.commit()

        result = trade_engine.auto_resolve_due(Actor.system())

        assert sorted(result.resolved) == sorted([first, second])
        assert len(result.errors) == 1
        assert result.errors[0]["tradeId"] == orphan
        assert _get_trade(session_factory, orphan).status == TradeStatus.PENDING.value
        assert balance_of(alice) == Decimal("60")
        assert balance_of(bob) == Decimal("0")

    def test_invalid_scheduled_result_reported(self, trade_engine, make_user, make_trade):
        trade_id = make_trade(make_user(), opened_seconds_ago=120, admin_result="MAYBE")

        result = trade_engine.auto_resolve_due(Actor.system())

        assert result.resolved == []
        assert result.errors == [{"tradeId": trade_id, "error": "Invalid adminResult: MAYBE"}]

    def test_sweep_writes_system_audit(self, trade_engine, session_factory, make_user, make_trade):
        make_trade(make_user(), opened_seconds_ago=120, admin_result="LOST")

        trade_engine.auto_resolve_due(Actor.system())

        with session_factory() as session:
            entry = session.execute(
                select(AuditLog).where(AuditLog.action == "TRADE_RESOLVE")
            ).scalar_one()
        assert entry.actor_user_id is None
        assert entry.audit_metadata["trigger"] == "auto_resolve"

    def test_sweep_requires_admin(self, trade_engine, make_user):
        with pytest.raises(ForbiddenError):
            trade_engine.auto_resolve_due(Actor(make_user()))

    def test_cannot_schedule_resolved_trade(self, trade_engine, make_user, make_trade, admin_actor):
        trade_id = make_trade(make_user())
        trade_engine.resolve_trade(trade_id, "WON", admin_actor)

        with pytest.raises(AlreadyResolvedError):
            trade_engine.schedule_trade_result(trade_id, "LOST", admin_actor)


class TestTradeListing:

    def test_admin_listing_with_stats(self, trade_engine, make_user, make_trade, admin_actor):
        user_id = make_user()
        pending = make_trade(user_id)
        won = make_trade(user_id)
        trade_engine.resolve_trade(won, "WON", admin_actor)

        listing = trade_engine.list_trades(admin_actor, status="pending")

        assert [t.id for t in listing.trades] == [pending]
        assert listing.stats == {"total": 2, "pending": 1, "won": 1, "lost": 0, "closed": 0}

    def test_user_sees_only_own_trades(self, trade_engine, make_user, make_trade):
        mine = make_user()
        theirs = make_user()
        own_trade = make_trade(mine)
        make_trade(theirs)

        trades = trade_engine.list_user_trades(Actor(mine))

        assert [t.id for t in trades] == [own_trade]

    def test_unknown_status_filter(self, trade_engine, admin_actor):
        with pytest.raises(ValidationError):
            trade_engine.list_trades(admin_actor, status="EXPIRED")

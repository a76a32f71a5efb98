"""
Shared fixtures for the ledger test suite

Every test gets its own SQLite file database (immediate-begin transactions,
same guarded statements as production), a scripted price oracle and a
fresh rate limiter.
"""

import os

# Must be set before config/database are imported anywhere
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("ENVIRONMENT", "development")

import asyncio
import logging
from datetime import timedelta
from decimal import Decimal
from typing import Dict, Optional

import pytest
from sqlalchemy import select

from database import build_engine, build_session_factory, create_tables
from middleware.rate_limiter import RateLimiter
from models import AuditLog, Trade, TradeStatus, User, UserRole
from services.authorization import Actor
from services.price_oracle import PriceOracle, PriceQuote
from services.trade_engine import TradeEngine
from utils.datetime_helpers import from_timestamp_ms, get_naive_utc_now
from utils.exception_handler import UpstreamUnavailableError

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

class FakePriceOracle(PriceOracle):
    """Scripted oracle: fixed spot prices, optional historical prices, failure and delay knobs"""

    def __init__(self, spot: Optional[Dict[str, str]] = None, historical: Optional[Dict[str, str]] = None):
        self.spot = {k: Decimal(v) for k, v in (spot or {"BTC": "50000", "ETH": "3000"}).items()}
        self.historical = {k: Decimal(v) for k, v in (historical or {}).items()}
        self.fail = False
        self.delay_seconds = 0.0
        self.spot_calls = 0
        self.historical_calls = []

    async def get_spot(self, symbol: str) -> PriceQuote:
        self.spot_calls += 1
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.fail or symbol.upper() not in self.spot:
            raise UpstreamUnavailableError(f"Symbol not found: {symbol}")
        return PriceQuote(symbol=symbol.upper(), price=self.spot[symbol.upper()], at=get_naive_utc_now())

    async def get_historical(self, symbol: str, timestamp_ms: int) -> PriceQuote:
        self.historical_calls.append((symbol.upper(), timestamp_ms))
        if self.fail or symbol.upper() not in self.historical:
            raise UpstreamUnavailableError(f"No price data for {symbol}")
        return PriceQuote(symbol=symbol.upper(), price=self.historical[symbol.upper()],
                          at=from_timestamp_ms(timestamp_ms))


@pytest.fixture
def db_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    assert create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def price_oracle():
    return FakePriceOracle()


@pytest.fixture
def limiter():
    return RateLimiter()


@pytest.fixture
def trade_engine(session_factory, price_oracle, limiter):
    return TradeEngine(session_factory=session_factory, price_oracle=price_oracle, limiter=limiter)


@pytest.fixture
def make_user(session_factory):
    """Create a user and return its id"""
    counter = {"n": 0}

    def _make_user(balance="0", role=UserRole.USER.value, wallet_address=None, email=None, created_at=None):
        counter["n"] += 1
        with session_factory() as session:
            user = User(
                balance=Decimal(balance),
                role=role,
                wallet_address=wallet_address,
                email=email or f"user{counter['n']}@example.com",
            )
            if created_at is not None:
                user.created_at = created_at
            session.add(user)
            session.commit()
            return user.id

    return _make_user


@pytest.fixture
def make_trade(session_factory):
    """Insert a PENDING trade directly (no stake debit) for settlement tests"""

    def _make_trade(user_id, amount="50", timeframe=60, return_pct=20, direction="UP",
                    price_open="100", opened_seconds_ago=0, admin_result=None, coin="BTC"):
        with session_factory() as session:
            trade = Trade(
                user_id=user_id,
                coin=coin,
                direction=direction,
                amount=Decimal(amount),
                timeframe=timeframe,
                return_pct=return_pct,
                price_open=Decimal(price_open),
                price_open_at=get_naive_utc_now() - timedelta(seconds=opened_seconds_ago),
                status=TradeStatus.PENDING.value,
                admin_result=admin_result,
            )
            session.add(trade)
            session.commit()
            return trade.id

    return _make_trade


@pytest.fixture
def balance_of(session_factory):
    def _balance_of(user_id) -> Decimal:
        with session_factory() as session:
            return session.execute(select(User.balance).where(User.id == user_id)).scalar_one()

    return _balance_of


@pytest.fixture
def audit_actions(session_factory):
    def _audit_actions(entity=None):
        with session_factory() as session:
            query = select(AuditLog).order_by(AuditLog.id)
            if entity:
                query = query.where(AuditLog.entity == entity)
            return [row.action for row in session.execute(query).scalars()]

    return _audit_actions


@pytest.fixture
def admin_actor(make_user):
    return Actor(user_id=make_user(role=UserRole.ADMIN.value), role=UserRole.ADMIN.value)

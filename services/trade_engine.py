"""
Trade Engine - binary trade lifecycle

    OPEN      stake debited, PENDING trade inserted with the open-price snapshot
    RESOLVE   admin sets WON/LOST, payout credited once
    CLOSE     settle against a market reference price (spot or historical)
    SWEEP     settle every due trade that carries a scheduled admin_result

Each transition runs in one atomic transaction. The trade status guard
(``UPDATE ... WHERE status = 'PENDING'``) decides which concurrent resolver
wins; every other caller gets AlreadyResolvedError and no credit happens.
Price lookups are awaited before any transaction opens.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, sessionmaker

from config import Config
from models import AuditAction, Trade, TradeDirection, TradeStatus, User
from middleware.rate_limiter import RateLimiter, rate_limiter as default_rate_limiter
from services.audit_logger import audit_recorder
from services.authorization import Actor, Capability, CapabilityCheck, check_capability
from services.ledger_service import credit_balance, debit_balance, read_balance
from services.price_oracle import PriceOracle, PriceQuote, get_price_oracle
from services.settlement import (
    compute_settlement,
    is_winning_close,
    potential_return,
    return_pct_for_timeframe,
)
from utils.atomic_transactions import atomic_transaction
from utils.background_task_runner import run_io_task
from utils.datetime_helpers import ensure_naive_datetime, expires_at, get_naive_utc_now, to_timestamp_ms
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import (
    AlreadyResolvedError,
    InsufficientFundsError,
    LedgerError,
    NotFoundError,
    UpstreamUnavailableError,
    ValidationError,
)

logger = logging.getLogger(__name__)

ADMIN_RESULTS = (TradeStatus.WON.value, TradeStatus.LOST.value)
REFERENCE_PRICE_MODES = ("spot", "openTime")


@dataclass
class SweepResult:
    resolved: List[int] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "resolvedCount": len(self.resolved),
            "resolved": self.resolved,
            "errors": self.errors,
        }


@dataclass
class TradeListing:
    trades: List[Trade]
    stats: Dict[str, int]


def _validate_open_request(coin: Any, direction: Any, amount: Any, timeframe: Any):
    if not isinstance(coin, str) or not coin.strip():
        raise ValidationError("coin is required")
    coin = coin.strip().upper()
    if len(coin) > 20:
        raise ValidationError("coin is too long")

    direction = direction.strip().upper() if isinstance(direction, str) else None
    if direction not in (TradeDirection.UP.value, TradeDirection.DOWN.value):
        raise ValidationError("Invalid trade type. Must be UP or DOWN")

    stake = MonetaryDecimal.to_positive_decimal(amount, "amount")

    if isinstance(timeframe, bool):
        raise ValidationError("timeframe must be an integer number of seconds")
    try:
        timeframe_decimal = Decimal(str(timeframe))
    except (InvalidOperation, ValueError):
        raise ValidationError("timeframe must be an integer number of seconds")
    if not timeframe_decimal.is_finite() or timeframe_decimal != timeframe_decimal.to_integral_value():
        raise ValidationError("timeframe must be an integer number of seconds")
    seconds = int(timeframe_decimal)
    if seconds < Config.MIN_TRADE_TIMEFRAME_SECONDS or seconds > Config.MAX_TRADE_TIMEFRAME_SECONDS:
        raise ValidationError(
            f"Timeframe must be between {Config.MIN_TRADE_TIMEFRAME_SECONDS} "
            f"and {Config.MAX_TRADE_TIMEFRAME_SECONDS} seconds"
        )

    return coin, direction, stake, seconds


def _validate_admin_result(result: Any) -> str:
    value = result.strip().upper() if isinstance(result, str) else None
    if value not in ADMIN_RESULTS:
        raise ValidationError("Invalid result. Must be WON or LOST")
    return value


class TradeEngine:
    """Opens and settles binary trades against the ledger"""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        price_oracle: Optional[PriceOracle] = None,
        capability_check: CapabilityCheck = check_capability,
        limiter: Optional[RateLimiter] = None,
        price_timeout_seconds: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.price_oracle = price_oracle or get_price_oracle()
        self.capability_check = capability_check
        self.limiter = limiter or default_rate_limiter
        self.price_timeout_seconds = price_timeout_seconds or Config.PRICE_API_TIMEOUT_SECONDS

    async def _await_price(self, lookup) -> PriceQuote:
        try:
            return await asyncio.wait_for(lookup, timeout=self.price_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"⏰ PRICE_TIMEOUT: no quote within {self.price_timeout_seconds}s")
            raise UpstreamUnavailableError("Price service timed out")

    # ------------------------------------------------------------------
    # Open
    # ------------------------------------------------------------------

    async def open_trade(self, actor: Actor, coin, direction, amount, timeframe) -> Trade:
        """
        Stake ``amount`` on ``coin`` moving ``direction`` within ``timeframe`` seconds.

        The balance is checked before the price lookup so an unfunded request
        never calls the oracle, and checked again by the guarded debit inside
        the transaction so concurrent opens cannot overdraw.
        """
        self.capability_check(actor, Capability.TRADE_OPEN).raise_for_status()
        self.limiter.check(actor.user_id, "trade_create")

        coin, direction, stake, seconds = _validate_open_request(coin, direction, amount, timeframe)
        return_pct = return_pct_for_timeframe(seconds)

        balance = await run_io_task(self._read_balance, actor.user_id)
        if balance < stake:
            raise InsufficientFundsError("Insufficient balance for this trade")

        quote = await self._await_price(self.price_oracle.get_spot(coin))

        return await run_io_task(
            self._open_trade_txn, actor, coin, direction, stake, seconds, return_pct, quote
        )

    def _read_balance(self, user_id: int) -> Decimal:
        with atomic_transaction(self.session_factory) as session:
            return read_balance(session, user_id)

    def _open_trade_txn(self, actor: Actor, coin: str, direction: str, stake: Decimal,
                        seconds: int, return_pct: int, quote: PriceQuote) -> Trade:
        with atomic_transaction(self.session_factory) as session:
            debit_balance(session, actor.user_id, stake)

            trade = Trade(
                user_id=actor.user_id,
                coin=coin,
                direction=direction,
                amount=stake,
                timeframe=seconds,
                return_pct=return_pct,
                price_open=quote.price,
                price_open_at=ensure_naive_datetime(quote.at) or get_naive_utc_now(),
                status=TradeStatus.PENDING.value,
            )
            session.add(trade)
            session.flush()

            audit_recorder.record(
                session,
                AuditAction.TRADE_OPEN,
                entity="Trade",
                entity_id=trade.id,
                actor_user_id=actor.user_id,
                metadata={
                    "coin": coin,
                    "direction": direction,
                    "amount": stake,
                    "timeframe": seconds,
                    "returnPct": return_pct,
                    "priceOpen": quote.price,
                },
            )

        logger.info(
            f"📈 TRADE_OPEN: trade {trade.id} user {actor.user_id} {direction} {coin} "
            f"stake {stake} for {seconds}s at {quote.price} ({return_pct}%)"
        )
        return trade

    @staticmethod
    def potential_return(trade: Trade) -> Decimal:
        return potential_return(trade.amount, trade.return_pct)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def _settle(
        self,
        session: Session,
        trade_id: int,
        *,
        won_status: Optional[str],
        price_close: Optional[Decimal],
        price_close_at: Optional[datetime],
        action: AuditAction,
        actor_user_id: Optional[int],
        extra_metadata: Optional[Dict[str, Any]] = None,
    ) -> Trade:
        """
        Move one PENDING trade to its terminal state and pay out.

        ``won_status`` is WON/LOST for admin outcomes; None means settle by
        comparing ``price_close`` with the open price and mark CLOSED.
        """
        trade = session.get(Trade, trade_id)
        if trade is None:
            raise NotFoundError("Trade not found")
        if trade.status != TradeStatus.PENDING.value:
            raise AlreadyResolvedError("Trade has already been resolved")
        if session.get(User, trade.user_id) is None:
            raise NotFoundError(f"Owner of trade {trade_id} not found")

        close_price = price_close if price_close is not None else trade.price_open
        if won_status is None:
            won = is_winning_close(trade.direction, trade.price_open, close_price)
            final_status = TradeStatus.CLOSED.value
        else:
            won = won_status == TradeStatus.WON.value
            final_status = won_status

        settlement = compute_settlement(trade.amount, trade.return_pct, won)
        now = get_naive_utc_now()

        result = session.execute(
            update(Trade)
            .where(Trade.id == trade_id, Trade.status == TradeStatus.PENDING.value)
            .values(
                status=final_status,
                price_close=close_price,
                price_close_at=ensure_naive_datetime(price_close_at) or now,
                pnl=settlement.pnl,
                resolved_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise AlreadyResolvedError("Trade has already been resolved")

        credit_balance(session, trade.user_id, settlement.credit)

        metadata = {
            "coin": trade.coin,
            "direction": trade.direction,
            "status": final_status,
            "priceOpen": trade.price_open,
            "priceClose": close_price,
            "pnl": settlement.pnl,
            "credit": settlement.credit,
        }
        metadata.update(extra_metadata or {})
        audit_recorder.record(
            session, action, entity="Trade", entity_id=trade_id,
            actor_user_id=actor_user_id, metadata=metadata,
        )

        session.refresh(trade)
        return trade

    def resolve_trade(self, trade_id: int, result, actor: Actor, price_close=None) -> Trade:
        """Admin outcome: WON pays amount + amount*pct/100, LOST pays nothing"""
        self.capability_check(actor, Capability.TRADE_RESOLVE).raise_for_status()
        outcome = _validate_admin_result(result)
        close_price = (
            MonetaryDecimal.to_positive_decimal(price_close, "priceClose") if price_close is not None else None
        )

        with atomic_transaction(self.session_factory) as session:
            trade = self._settle(
                session, trade_id,
                won_status=outcome,
                price_close=close_price,
                price_close_at=None,
                action=AuditAction.TRADE_RESOLVE,
                actor_user_id=actor.user_id,
            )

        logger.info(f"🏁 TRADE_RESOLVE: trade {trade_id} -> {outcome} pnl {trade.pnl} by {actor.user_id}")
        return trade

    async def close_trade_at_market(self, trade_id: int, actor: Actor, mode: str = "spot",
                                    price_close=None) -> Trade:
        """
        Settle against a market reference price.

        ``mode`` picks the oracle lookup when no explicit price is given:
        ``spot`` uses the current price, ``openTime`` the historical price
        at the trade's open timestamp.
        """
        self.capability_check(actor, Capability.TRADE_CLOSE).raise_for_status()
        mode = mode or "spot"
        if mode not in REFERENCE_PRICE_MODES:
            raise ValidationError("useHistoricalAt must be 'spot' or 'openTime'")

        trade = await run_io_task(self._load_pending_trade, trade_id)

        if price_close is not None:
            close_price = MonetaryDecimal.to_positive_decimal(price_close, "priceClose")
            close_at = get_naive_utc_now()
        else:
            if mode == "openTime":
                quote = await self._await_price(
                    self.price_oracle.get_historical(trade.coin, to_timestamp_ms(trade.price_open_at))
                )
            else:
                quote = await self._await_price(self.price_oracle.get_spot(trade.coin))
            close_price, close_at = quote.price, quote.at

        closed = await run_io_task(self._close_txn, trade_id, close_price, close_at, mode, actor)
        logger.info(
            f"🔒 TRADE_CLOSE: trade {trade_id} closed at {close_price} ({mode}) pnl {closed.pnl} by {actor.user_id}"
        )
        return closed

    def _load_pending_trade(self, trade_id: int) -> Trade:
        with atomic_transaction(self.session_factory) as session:
            trade = session.get(Trade, trade_id)
            if trade is None:
                raise NotFoundError("Trade not found")
            if trade.status != TradeStatus.PENDING.value:
                raise AlreadyResolvedError("Trade already processed")
            return trade

    def _close_txn(self, trade_id: int, close_price: Decimal, close_at: datetime, mode: str,
                   actor: Actor) -> Trade:
        with atomic_transaction(self.session_factory) as session:
            return self._settle(
                session, trade_id,
                won_status=None,
                price_close=close_price,
                price_close_at=close_at,
                action=AuditAction.TRADE_CLOSE,
                actor_user_id=actor.user_id,
                extra_metadata={"referencePrice": mode},
            )

    # ------------------------------------------------------------------
    # Scheduled outcomes
    # ------------------------------------------------------------------

    def schedule_trade_result(self, trade_id: int, result, actor: Actor) -> Trade:
        """Pre-set the outcome the sweep applies once the trade expires"""
        self.capability_check(actor, Capability.TRADE_SCHEDULE).raise_for_status()
        outcome = _validate_admin_result(result)

        with atomic_transaction(self.session_factory) as session:
            trade = session.get(Trade, trade_id)
            if trade is None:
                raise NotFoundError("Trade not found")

            updated = session.execute(
                update(Trade)
                .where(Trade.id == trade_id, Trade.status == TradeStatus.PENDING.value)
                .values(admin_result=outcome)
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount == 0:
                raise AlreadyResolvedError("Trade has already been resolved")

            audit_recorder.record(
                session, AuditAction.TRADE_SCHEDULE, entity="Trade", entity_id=trade_id,
                actor_user_id=actor.user_id,
                metadata={"adminResult": outcome, "previous": trade.admin_result},
            )
            session.refresh(trade)

        logger.info(f"🗓️ TRADE_SCHEDULE: trade {trade_id} will settle {outcome} at expiry")
        return trade

    def auto_resolve_due(self, actor: Actor, now: Optional[datetime] = None) -> SweepResult:
        """
        Settle every due trade that has a scheduled admin_result.

        Each trade settles in its own transaction. Failures are collected
        and the sweep moves on; a failed trade stays PENDING for the next run.
        """
        self.capability_check(actor, Capability.TRADE_SWEEP).raise_for_status()
        now = ensure_naive_datetime(now) or get_naive_utc_now()

        with atomic_transaction(self.session_factory) as session:
            candidates = session.execute(
                select(Trade.id, Trade.price_open_at, Trade.created_at, Trade.timeframe, Trade.admin_result)
                .where(Trade.status == TradeStatus.PENDING.value, Trade.admin_result.is_not(None))
                .order_by(Trade.id)
            ).all()

        due = [
            row for row in candidates
            if expires_at(row.price_open_at or row.created_at, row.timeframe) <= now
        ]

        sweep = SweepResult()
        for row in due:
            if row.admin_result not in ADMIN_RESULTS:
                sweep.errors.append({"tradeId": row.id, "error": f"Invalid adminResult: {row.admin_result}"})
                continue
            try:
                with atomic_transaction(self.session_factory) as session:
                    self._settle(
                        session, row.id,
                        won_status=row.admin_result,
                        price_close=None,
                        price_close_at=None,
                        action=AuditAction.TRADE_RESOLVE,
                        actor_user_id=actor.user_id,
                        extra_metadata={"trigger": "auto_resolve"},
                    )
                sweep.resolved.append(row.id)
            except LedgerError as e:
                logger.warning(f"⚠️ AUTO_RESOLVE_SKIPPED: trade {row.id}: {e.message}")
                sweep.errors.append({"tradeId": row.id, "error": e.message})
            except Exception as e:
                logger.error(f"❌ AUTO_RESOLVE_FAILED: trade {row.id}: {e}", exc_info=True)
                sweep.errors.append({"tradeId": row.id, "error": "Failed to resolve trade"})

        if due:
            logger.info(
                f"🧹 AUTO_RESOLVE: {len(sweep.resolved)} resolved, {len(sweep.errors)} errors "
                f"out of {len(due)} due"
            )
        return sweep

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def list_user_trades(self, actor: Actor, limit: int = 100) -> List[Trade]:
        self.capability_check(actor, Capability.TRADE_VIEW_OWN).raise_for_status()
        with atomic_transaction(self.session_factory) as session:
            return list(session.execute(
                select(Trade)
                .where(Trade.user_id == actor.user_id)
                .order_by(Trade.created_at.desc(), Trade.id.desc())
                .limit(limit)
            ).scalars())

    def list_trades(self, actor: Actor, status: Optional[str] = None) -> TradeListing:
        """All trades (optionally one status) with per-status counts over the whole book"""
        self.capability_check(actor, Capability.TRADE_VIEW_ALL).raise_for_status()

        if status is not None:
            status = status.upper()
            if status not in {s.value for s in TradeStatus}:
                raise ValidationError(f"Unknown trade status: {status}")

        with atomic_transaction(self.session_factory) as session:
            query = select(Trade).order_by(Trade.created_at.desc(), Trade.id.desc())
            if status:
                query = query.where(Trade.status == status)
            trades = list(session.execute(query).scalars())

            counts = dict(session.execute(
                select(Trade.status, func.count(Trade.id)).group_by(Trade.status)
            ).all())

        stats = {"total": sum(counts.values())}
        for trade_status in TradeStatus:
            stats[trade_status.value.lower()] = counts.get(trade_status.value, 0)
        return TradeListing(trades=trades, stats=stats)

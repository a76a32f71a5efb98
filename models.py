"""
Trade Ledger - Database Schema
==============================

Focused schema for the balance ledger behind the binary trading product:
- One USD balance per user
- Binary trades (stake debited at open, payout credited once at settlement)
- Withdrawal requests (funds reserved at request time, refunded on rejection)
- Deposits (credited once, only when confirmed by a verified source)
- Append-only audit trail written in the same transaction as every balance change
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import (
    Integer, String, Numeric, DateTime, Text, JSON, Boolean,
    ForeignKey, UniqueConstraint, Index, CheckConstraint
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column

from utils.datetime_helpers import get_naive_utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# JSONB on PostgreSQL, plain JSON elsewhere (local SQLite runs)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Monetary precision for USD balances and prices
Money = Numeric(20, 8)


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class UserRole(Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class TradeDirection(Enum):
    UP = "UP"
    DOWN = "DOWN"


class TradeStatus(Enum):
    """Trade lifecycle: PENDING -> exactly one terminal state"""
    PENDING = "PENDING"
    WON = "WON"
    LOST = "LOST"
    CLOSED = "CLOSED"


class WithdrawStatus(Enum):
    """Withdrawal lifecycle: PENDING -> APPROVED | REJECTED"""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class DepositStatus(Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"


class AuditAction(Enum):
    """Audited ledger decisions"""
    TRADE_OPEN = "TRADE_OPEN"
    TRADE_RESOLVE = "TRADE_RESOLVE"
    TRADE_CLOSE = "TRADE_CLOSE"
    TRADE_SCHEDULE = "TRADE_SCHEDULE"
    WITHDRAW_REQUEST = "WITHDRAW_REQUEST"
    WITHDRAW_APPROVED = "WITHDRAW_APPROVED"
    WITHDRAW_REJECTED = "WITHDRAW_REJECTED"
    DEPOSIT_SUBMITTED = "DEPOSIT_SUBMITTED"
    DEPOSIT_CONFIRMED = "DEPOSIT_CONFIRMED"
    BALANCE_ADJUST = "BALANCE_ADJUST"
    USER_MERGE = "USER_MERGE"
    DEPOSIT_ADDRESSES_UPDATE = "DEPOSIT_ADDRESSES_UPDATE"


TERMINAL_TRADE_STATUSES = (TradeStatus.WON.value, TradeStatus.LOST.value, TradeStatus.CLOSED.value)


# ============================================================================
# CORE ENTITIES
# ============================================================================

class User(Base):
    """Ledger account - one fungible USD balance per user"""
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Identity linkage (resolved by the external auth layer)
    wallet_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, unique=True, index=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True, index=True)
    role: Mapped[str] = mapped_column(String(10), default=UserRole.USER.value, nullable=False)

    # Authoritative balance - only mutated through guarded ledger statements
    balance: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False
    )

    trades: Mapped[list["Trade"]] = relationship("Trade", back_populates="user")
    withdraw_requests: Mapped[list["WithdrawRequest"]] = relationship("WithdrawRequest", back_populates="user")
    deposits: Mapped[list["Deposit"]] = relationship("Deposit", back_populates="user")

    __table_args__ = (
        CheckConstraint(f"role IN ('{UserRole.USER.value}', '{UserRole.ADMIN.value}')", name='ck_user_role_valid'),
    )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "walletAddress": self.wallet_address,
            "email": self.email,
            "role": self.role,
            "balance": str(self.balance),
        }


class Trade(Base):
    """Binary UP/DOWN trade with an immutable open-price snapshot"""
    __tablename__ = 'trades'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False, index=True)

    coin: Mapped[str] = mapped_column(String(20), nullable=False)
    direction: Mapped[str] = mapped_column(String(4), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)  # Stake, debited at open
    timeframe: Mapped[int] = mapped_column(Integer, nullable=False)  # Seconds
    return_pct: Mapped[int] = mapped_column(Integer, nullable=False)

    price_open: Mapped[Decimal] = mapped_column(Money, nullable=False)
    price_open_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    price_close: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    price_close_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    pnl: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)

    status: Mapped[str] = mapped_column(String(10), default=TradeStatus.PENDING.value, nullable=False)
    admin_result: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)  # Pre-scheduled outcome
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="trades")

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_trade_amount_positive'),
        CheckConstraint('timeframe >= 30 AND timeframe <= 3600', name='ck_trade_timeframe_bounds'),
        CheckConstraint(f"direction IN ('{TradeDirection.UP.value}', '{TradeDirection.DOWN.value}')", name='ck_trade_direction_valid'),
        CheckConstraint(
            f"status IN ('{TradeStatus.PENDING.value}', '{TradeStatus.WON.value}', "
            f"'{TradeStatus.LOST.value}', '{TradeStatus.CLOSED.value}')",
            name='ck_trade_status_valid'
        ),
        Index('ix_trades_status_admin_result', 'status', 'admin_result'),
        Index('ix_trades_user_created', 'user_id', 'created_at'),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "coin": self.coin,
            "direction": self.direction,
            "amount": str(self.amount),
            "timeframe": self.timeframe,
            "returnPct": self.return_pct,
            "priceOpen": str(self.price_open),
            "priceOpenAt": self.price_open_at.isoformat() if self.price_open_at else None,
            "priceClose": str(self.price_close) if self.price_close is not None else None,
            "priceCloseAt": self.price_close_at.isoformat() if self.price_close_at else None,
            "pnl": str(self.pnl) if self.pnl is not None else None,
            "status": self.status,
            "adminResult": self.admin_result,
            "resolvedAt": self.resolved_at.isoformat() if self.resolved_at else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class WithdrawRequest(Base):
    """Withdrawal request - amount is reserved (debited) at creation"""
    __tablename__ = 'withdraw_requests'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    to_address: Mapped[str] = mapped_column(String(255), nullable=False)

    status: Mapped[str] = mapped_column(String(10), default=WithdrawStatus.PENDING.value, nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="withdraw_requests")

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_withdraw_amount_positive'),
        CheckConstraint(
            f"status IN ('{WithdrawStatus.PENDING.value}', '{WithdrawStatus.APPROVED.value}', "
            f"'{WithdrawStatus.REJECTED.value}')",
            name='ck_withdraw_status_valid'
        ),
        Index('ix_withdraw_requests_status_created', 'status', 'created_at'),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "amount": str(self.amount),
            "toAddress": self.to_address,
            "status": self.status,
            "resolvedAt": self.resolved_at.isoformat() if self.resolved_at else None,
            "adminNotes": self.admin_notes,
            "txHash": self.tx_hash,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class Deposit(Base):
    """Deposit record - credited exactly once, only when CONFIRMED"""
    __tablename__ = 'deposits'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    token: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    usd_amount: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    transaction_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(String(10), default=DepositStatus.PENDING.value, nullable=False)
    # Provider event id for webhook-confirmed deposits
    external_event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="deposits")

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_deposit_amount_positive'),
        CheckConstraint(
            f"status IN ('{DepositStatus.PENDING.value}', '{DepositStatus.CONFIRMED.value}')",
            name='ck_deposit_status_valid'
        ),
        Index('ix_deposits_user_created', 'user_id', 'created_at'),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "token": self.token,
            "amount": str(self.amount),
            "usdAmount": str(self.usd_amount) if self.usd_amount is not None else None,
            "transactionHash": self.transaction_hash,
            "status": self.status,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class DepositAddress(Base):
    """Where users send funds, one active address per token"""
    __tablename__ = 'deposit_addresses'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    address: Mapped[str] = mapped_column(String(255), nullable=False)
    network: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "token": self.token,
            "address": self.address,
            "network": self.network,
            "isActive": self.is_active,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


class WebhookEventLedger(Base):
    """Processed provider events - the unique key blocks duplicate credits on redelivery"""
    __tablename__ = 'webhook_event_ledger'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="processed", nullable=False)
    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    amount: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    deposit_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('deposits.id'), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint('provider', 'event_id', name='uq_webhook_event_provider_id'),
    )


class AuditLog(Base):
    """Append-only audit trail; rows are never updated or deleted"""
    __tablename__ = 'audit_logs'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)  # NULL = system
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    entity: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    audit_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        Index('ix_audit_entity_id', 'entity', 'entity_id'),
        Index('ix_audit_created', 'created_at'),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "actorUserId": self.actor_user_id,
            "action": self.action,
            "entity": self.entity,
            "entityId": self.entity_id,
            "metadata": self.audit_metadata,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

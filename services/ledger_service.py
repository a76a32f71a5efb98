"""
Ledger Service - guarded balance mutations

Every balance change goes through one conditional UPDATE whose affected-row
count decides success. Two concurrent debits against the same balance can
never both pass the ``balance >= amount`` guard, so the loser sees
InsufficientFundsError instead of driving the balance negative.

These helpers never commit; callers run them inside atomic_transaction()
together with the domain record and audit row they belong to.
"""

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from models import AuditAction, User
from services.audit_logger import audit_recorder
from services.authorization import Actor, Capability, CapabilityCheck, check_capability
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import InsufficientFundsError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def debit_balance(session: Session, user_id: int, amount: Decimal) -> None:
    """Debit only if the balance covers the amount, in a single statement"""
    result = session.execute(
        update(User)
        .where(User.id == user_id, User.balance >= amount)
        .values(balance=User.balance - amount, updated_at=get_naive_utc_now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        if session.get(User, user_id) is None:
            raise NotFoundError("User not found")
        logger.info(f"💸 INSUFFICIENT_FUNDS: user {user_id} requested debit of {amount}")
        raise InsufficientFundsError("Insufficient balance")


def credit_balance(session: Session, user_id: int, amount: Decimal) -> None:
    if amount == 0:
        return
    result = session.execute(
        update(User)
        .where(User.id == user_id)
        .values(balance=User.balance + amount, updated_at=get_naive_utc_now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFoundError("User not found")


def read_balance(session: Session, user_id: int) -> Decimal:
    balance = session.execute(select(User.balance).where(User.id == user_id)).scalar_one_or_none()
    if balance is None:
        raise NotFoundError("User not found")
    return balance


class LedgerService:
    """Balance reads and the audited admin override"""

    def __init__(self, session_factory: Optional[sessionmaker] = None,
                 capability_check: CapabilityCheck = check_capability):
        self.session_factory = session_factory
        self.capability_check = capability_check

    def get_balance(self, user_id: int) -> Decimal:
        with atomic_transaction(self.session_factory) as session:
            return read_balance(session, user_id)

    def adjust_balance(self, user_id: int, mode: str, amount, actor: Actor) -> User:
        """
        Admin override: ``set`` replaces the balance, ``delta`` adds to it.

        A negative delta may take the balance below zero; this is the one
        operation allowed to do so. Before/after values are audited in the
        same transaction.
        """
        self.capability_check(actor, Capability.BALANCE_ADJUST).raise_for_status()

        mode = (mode or "").lower()
        if mode not in ("set", "delta"):
            raise ValidationError("mode must be 'set' or 'delta'")
        value = MonetaryDecimal.to_decimal(amount, "amount")

        with atomic_transaction(self.session_factory) as session:
            user = session.execute(
                select(User).where(User.id == user_id).with_for_update()
            ).scalar_one_or_none()
            if user is None:
                raise NotFoundError("User not found")

            before = user.balance
            if mode == "set":
                result = session.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(balance=value, updated_at=get_naive_utc_now())
                    .execution_options(synchronize_session=False)
                )
            else:
                result = session.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(balance=User.balance + value, updated_at=get_naive_utc_now())
                    .execution_options(synchronize_session=False)
                )
            if result.rowcount == 0:
                raise NotFoundError("User not found")

            session.refresh(user)
            after = user.balance

            audit_recorder.record(
                session,
                AuditAction.BALANCE_ADJUST,
                entity="User",
                entity_id=user_id,
                actor_user_id=actor.user_id,
                metadata={"mode": mode, "amount": value, "before": before, "after": after},
            )

        logger.info(f"🛠️ BALANCE_ADJUST: user {user_id} {mode} {value} ({before} -> {after}) by {actor.user_id}")
        return user

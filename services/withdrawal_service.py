"""
Withdrawal Service - request/approve/reject with fund reservation

The requested amount leaves the balance when the request is created, so a
user can never withdraw the same funds twice while a request is pending.
Rejection refunds exactly the reserved amount; approval moves no money
(payout happens outside the ledger).
"""

import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from config import Config
from models import AuditAction, WithdrawRequest, WithdrawStatus
from middleware.rate_limiter import RateLimiter, rate_limiter as default_rate_limiter
from services.audit_logger import audit_recorder
from services.authorization import Actor, Capability, CapabilityCheck, check_capability
from services.ledger_service import credit_balance, debit_balance
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import AlreadyProcessedError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

DECISIONS = (WithdrawStatus.APPROVED.value, WithdrawStatus.REJECTED.value)


def _optional_text(value, field: str, max_length: int) -> Optional[str]:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(f"{field} is too long")
    return value or None


class WithdrawalService:
    """Withdrawal request lifecycle against the ledger"""

    def __init__(self, session_factory: Optional[sessionmaker] = None,
                 capability_check: CapabilityCheck = check_capability,
                 limiter: Optional[RateLimiter] = None):
        self.session_factory = session_factory
        self.capability_check = capability_check
        self.limiter = limiter or default_rate_limiter

    def create_withdrawal(self, actor: Actor, amount, to_address, tx_hash=None) -> WithdrawRequest:
        self.capability_check(actor, Capability.WITHDRAW_CREATE).raise_for_status()
        self.limiter.check(actor.user_id, "withdraw_create")

        value = MonetaryDecimal.to_positive_decimal(amount, "amount")
        if not isinstance(to_address, str) or len(to_address.strip()) < Config.MIN_WITHDRAW_ADDRESS_LENGTH:
            raise ValidationError(
                f"toAddress must be at least {Config.MIN_WITHDRAW_ADDRESS_LENGTH} characters"
            )
        address = to_address.strip()
        if len(address) > 255:
            raise ValidationError("toAddress is too long")
        user_tx_hash = _optional_text(tx_hash, "txHash", 128)

        with atomic_transaction(self.session_factory) as session:
            debit_balance(session, actor.user_id, value)

            request = WithdrawRequest(
                user_id=actor.user_id,
                amount=value,
                to_address=address,
                tx_hash=user_tx_hash,
                status=WithdrawStatus.PENDING.value,
            )
            session.add(request)
            session.flush()

            audit_recorder.record(
                session,
                AuditAction.WITHDRAW_REQUEST,
                entity="WithdrawRequest",
                entity_id=request.id,
                actor_user_id=actor.user_id,
                metadata={"amount": value, "toAddress": address},
            )

        logger.info(f"🏧 WITHDRAW_REQUEST: request {request.id} user {actor.user_id} reserved {value}")
        return request

    def decide_withdrawal(self, request_id: int, decision, actor: Actor,
                          admin_notes=None, tx_hash=None) -> WithdrawRequest:
        """
        Approve or reject a PENDING request.

        The status guard makes the decision exactly-once: a second decision,
        concurrent or not, raises AlreadyProcessedError and refunds nothing.
        """
        self.capability_check(actor, Capability.WITHDRAW_DECIDE).raise_for_status()

        status = decision.strip().upper() if isinstance(decision, str) else None
        if status not in DECISIONS:
            raise ValidationError("Invalid status. Must be APPROVED or REJECTED")
        notes = _optional_text(admin_notes, "adminNotes", 2000)
        new_tx_hash = _optional_text(tx_hash, "txHash", 128)

        with atomic_transaction(self.session_factory) as session:
            request = session.get(WithdrawRequest, request_id)
            if request is None:
                raise NotFoundError("Withdraw request not found")
            if request.status != WithdrawStatus.PENDING.value:
                raise AlreadyProcessedError("Withdraw request is already processed")

            result = session.execute(
                update(WithdrawRequest)
                .where(WithdrawRequest.id == request_id, WithdrawRequest.status == WithdrawStatus.PENDING.value)
                .values(
                    status=status,
                    resolved_at=get_naive_utc_now(),
                    admin_notes=notes,
                    tx_hash=new_tx_hash or request.tx_hash,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise AlreadyProcessedError("Withdraw request is already processed")

            refunded = Decimal("0")
            if status == WithdrawStatus.REJECTED.value:
                credit_balance(session, request.user_id, request.amount)
                refunded = request.amount

            action = AuditAction.WITHDRAW_APPROVED if status == WithdrawStatus.APPROVED.value else AuditAction.WITHDRAW_REJECTED
            audit_recorder.record(
                session,
                action,
                entity="WithdrawRequest",
                entity_id=request_id,
                actor_user_id=actor.user_id,
                metadata={
                    "amount": request.amount,
                    "toAddress": request.to_address,
                    "txHash": new_tx_hash,
                    "adminNotes": notes,
                    "refunded": refunded,
                },
            )
            session.refresh(request)

        logger.info(f"✅ WITHDRAW_{status}: request {request_id} by {actor.user_id} (refunded {refunded})")
        return request

    def list_user_withdrawals(self, actor: Actor) -> List[WithdrawRequest]:
        self.capability_check(actor, Capability.WITHDRAW_VIEW_OWN).raise_for_status()
        with atomic_transaction(self.session_factory) as session:
            return list(session.execute(
                select(WithdrawRequest)
                .where(WithdrawRequest.user_id == actor.user_id)
                .order_by(WithdrawRequest.created_at.desc(), WithdrawRequest.id.desc())
            ).scalars())

    def list_withdrawals(self, actor: Actor, status: Optional[str] = None) -> List[WithdrawRequest]:
        self.capability_check(actor, Capability.WITHDRAW_VIEW_ALL).raise_for_status()
        if status is not None:
            status = status.upper()
            if status not in {s.value for s in WithdrawStatus}:
                raise ValidationError(f"Unknown withdraw status: {status}")

        with atomic_transaction(self.session_factory) as session:
            query = select(WithdrawRequest).order_by(WithdrawRequest.created_at.desc(), WithdrawRequest.id.desc())
            if status:
                query = query.where(WithdrawRequest.status == status)
            return list(session.execute(query).scalars())

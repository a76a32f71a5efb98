"""
Deposit Intake - user-submitted proofs and signed provider confirmations

Only a verified webhook credits the balance. User submissions are stored
as PENDING evidence for operators and never move money.

Coinbase Commerce delivers at least once; the (provider, event_id) unique
key in webhook_event_ledger makes the credit exactly-once, including when
two deliveries of the same event race each other.
"""

import json
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from config import Config
from models import AuditAction, Deposit, DepositStatus, User, WebhookEventLedger
from services.audit_logger import audit_recorder
from services.authorization import Actor, Capability, CapabilityCheck, check_capability
from services.ledger_service import credit_balance
from services.webhook_security_service import WebhookSecurityService, validate_webhook_signature
from utils.atomic_transactions import atomic_transaction
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import (
    ConfigurationError,
    SignatureInvalidError,
    ValidationError,
)

logger = logging.getLogger(__name__)

PROVIDER = "coinbase_commerce"
CONFIRMED_EVENT = "charge:confirmed"


def extract_event_id(event: Dict[str, Any]) -> Optional[str]:
    """Top-level event id, then charge id/code, then first payment transaction id"""
    data = event.get("data") if isinstance(event.get("data"), dict) else {}
    payments = data.get("payments") if isinstance(data.get("payments"), list) else []
    first_payment = payments[0] if payments and isinstance(payments[0], dict) else {}

    for candidate in (event.get("id"), data.get("id"), data.get("code"), first_payment.get("transaction_id")):
        if candidate not in (None, ""):
            return str(candidate)
    return None


def _first_transaction_id(data: Dict[str, Any]) -> Optional[str]:
    payments = data.get("payments")
    if isinstance(payments, list) and payments and isinstance(payments[0], dict):
        tx = payments[0].get("transaction_id")
        return str(tx) if tx else None
    return None


def _parse_user_id(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


class DepositService:
    """Deposit records and webhook-confirmed credits"""

    def __init__(self, session_factory: Optional[sessionmaker] = None,
                 capability_check: CapabilityCheck = check_capability,
                 webhook_secret: Optional[str] = None):
        self.session_factory = session_factory
        self.capability_check = capability_check
        self.webhook_secret = webhook_secret

    @property
    def secret(self) -> Optional[str]:
        return self.webhook_secret if self.webhook_secret is not None else Config.COINBASE_COMMERCE_WEBHOOK_SECRET

    def record_deposit_proof(self, actor: Actor, token, amount, tx_hash) -> Deposit:
        """Store a user's claim of an on-chain transfer; no balance effect"""
        self.capability_check(actor, Capability.DEPOSIT_SUBMIT).raise_for_status()

        if not isinstance(token, str) or not token.strip() or len(token.strip()) > 20:
            raise ValidationError("token is required")
        value = MonetaryDecimal.to_positive_decimal(amount, "amount")
        if not isinstance(tx_hash, str) or not tx_hash.strip():
            raise ValidationError("txHash is required")
        if len(tx_hash.strip()) > 128:
            raise ValidationError("txHash is too long")

        with atomic_transaction(self.session_factory) as session:
            deposit = Deposit(
                user_id=actor.user_id,
                token=token.strip().upper(),
                amount=value,
                transaction_hash=tx_hash.strip(),
                status=DepositStatus.PENDING.value,
            )
            session.add(deposit)
            session.flush()

            audit_recorder.record(
                session,
                AuditAction.DEPOSIT_SUBMITTED,
                entity="Deposit",
                entity_id=deposit.id,
                actor_user_id=actor.user_id,
                metadata={"token": deposit.token, "amount": value, "txHash": deposit.transaction_hash},
            )

        logger.info(f"🧾 DEPOSIT_SUBMITTED: deposit {deposit.id} user {actor.user_id} {value} {deposit.token}")
        return deposit

    def confirm_deposit_from_webhook(self, raw_body: bytes, signature: Optional[str]) -> Optional[Deposit]:
        """
        Credit a confirmed charge exactly once.

        Returns the created (or previously created) deposit, or None when the
        event is valid but not a confirmed charge. Every rejection happens
        before the first write.
        """
        secret = self.secret
        if not secret:
            logger.critical("🚨 WEBHOOK_SECRET_MISSING: COINBASE_COMMERCE_WEBHOOK_SECRET not configured")
            raise ConfigurationError("Webhook secret not configured")

        if len(raw_body) > Config.MAX_WEBHOOK_PAYLOAD_BYTES:
            raise ValidationError("Payload too large")

        if not validate_webhook_signature(raw_body, signature, secret):
            WebhookSecurityService.log_security_violation(
                PROVIDER, "missing signature" if not signature else "invalid signature"
            )
            raise SignatureInvalidError("Invalid signature")

        try:
            event = json.loads(raw_body)
        except (UnicodeDecodeError, ValueError):
            logger.warning("⚠️ WEBHOOK_MALFORMED: signed payload is not valid JSON")
            raise ValidationError("Malformed webhook payload")
        if not isinstance(event, dict):
            raise ValidationError("Malformed webhook payload")

        event_type = event.get("type")
        if event_type != CONFIRMED_EVENT:
            logger.info(f"ℹ️ WEBHOOK_IGNORED: {PROVIDER} event type {event_type}")
            return None

        data = event.get("data") if isinstance(event.get("data"), dict) else {}
        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}

        user_id = _parse_user_id(metadata.get("userId"))
        token = str(metadata.get("token") or Config.DEFAULT_DEPOSIT_TOKEN).upper()
        try:
            amount = MonetaryDecimal.to_positive_decimal(metadata.get("amount"), "amount")
        except ValidationError:
            amount = None
        if user_id is None or amount is None:
            logger.warning(f"⚠️ WEBHOOK_IGNORED: {CONFIRMED_EVENT} without usable userId/amount metadata")
            return None

        event_id = extract_event_id(event)
        if event_id is None:
            raise ValidationError("Webhook event has no identifier")
        tx_hash = _first_transaction_id(data)

        existing = self._find_processed(event_id)
        if existing is not None:
            logger.info(f"🔁 WEBHOOK_DUPLICATE: event {event_id} already credited as deposit {existing.id}")
            return existing

        if not self._user_exists(user_id):
            logger.warning(f"⚠️ WEBHOOK_IGNORED: event {event_id} names unknown user {user_id}")
            return None

        try:
            deposit = self._credit_confirmed(event_id, event_type, user_id, token, amount, tx_hash)
        except IntegrityError:
            # Concurrent delivery of the same event committed first
            existing = self._find_processed(event_id)
            if existing is None:
                raise
            logger.warning(f"⚠️ WEBHOOK_RACE_CONDITION: event {event_id} credited by a concurrent delivery")
            return existing

        logger.info(f"💰 DEPOSIT_CONFIRMED: deposit {deposit.id} user {user_id} +{amount} {token} (event {event_id})")
        return deposit

    def _user_exists(self, user_id: int) -> bool:
        with atomic_transaction(self.session_factory) as session:
            return session.execute(select(User.id).where(User.id == user_id)).scalar_one_or_none() is not None

    def _find_processed(self, event_id: str) -> Optional[Deposit]:
        with atomic_transaction(self.session_factory) as session:
            ledger_row = session.execute(
                select(WebhookEventLedger).where(
                    WebhookEventLedger.provider == PROVIDER,
                    WebhookEventLedger.event_id == event_id,
                )
            ).scalar_one_or_none()
            if ledger_row is not None and ledger_row.deposit_id is not None:
                return session.get(Deposit, ledger_row.deposit_id)
            return session.execute(
                select(Deposit).where(Deposit.external_event_id == event_id)
            ).scalar_one_or_none()

    def _credit_confirmed(self, event_id: str, event_type: str, user_id: int, token: str,
                          amount: Decimal, tx_hash: Optional[str]) -> Deposit:
        with atomic_transaction(self.session_factory) as session:
            deposit = Deposit(
                user_id=user_id,
                token=token,
                amount=amount,
                usd_amount=amount,
                transaction_hash=tx_hash,
                status=DepositStatus.CONFIRMED.value,
                external_event_id=event_id,
            )
            session.add(deposit)
            session.flush()

            credit_balance(session, user_id, amount)

            session.add(WebhookEventLedger(
                provider=PROVIDER,
                event_id=event_id,
                event_type=event_type,
                status="processed",
                user_id=user_id,
                amount=amount,
                deposit_id=deposit.id,
            ))
            session.flush()

            audit_recorder.record(
                session,
                AuditAction.DEPOSIT_CONFIRMED,
                entity="Deposit",
                entity_id=deposit.id,
                actor_user_id=None,
                metadata={"token": token, "amount": amount, "txHash": tx_hash, "eventId": event_id},
            )
        return deposit

    def list_user_deposits(self, actor: Actor) -> List[Deposit]:
        self.capability_check(actor, Capability.DEPOSIT_VIEW_OWN).raise_for_status()
        with atomic_transaction(self.session_factory) as session:
            return list(session.execute(
                select(Deposit)
                .where(Deposit.user_id == actor.user_id)
                .order_by(Deposit.created_at.desc(), Deposit.id.desc())
            ).scalars())

    def list_deposits(self, actor: Actor) -> List[Deposit]:
        self.capability_check(actor, Capability.DEPOSIT_VIEW_ALL).raise_for_status()
        with atomic_transaction(self.session_factory) as session:
            return list(session.execute(
                select(Deposit).order_by(Deposit.created_at.desc(), Deposit.id.desc())
            ).scalars())

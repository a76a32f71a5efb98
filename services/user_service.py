"""
User Service - account provisioning and duplicate wallet merge

Identity is proven upstream; this service only maps a wallet address or
email onto exactly one ledger account.
"""

import logging
import re
from collections import defaultdict
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from models import AuditAction, AuditLog, Deposit, Trade, User, WebhookEventLedger, WithdrawRequest
from services.audit_logger import audit_recorder
from services.authorization import Actor, Capability, CapabilityCheck, check_capability
from services.ledger_service import credit_balance
from utils.atomic_transactions import atomic_transaction
from utils.exception_handler import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

HEX_ADDRESS_REGEX = re.compile(r"^0x[0-9a-fA-F]{40}$")
EMAIL_HEX_REGEX = re.compile(r"^(0x[0-9a-fA-F]{40})")
PLACEHOLDER_EMAIL_DOMAIN = "wallet.local"


def placeholder_email(address: str) -> str:
    return f"{address}@{PLACEHOLDER_EMAIL_DOMAIN}"


def extract_wallet_address(user: User) -> Optional[str]:
    """Lower-cased wallet for a user, falling back to a hex-prefixed email"""
    if user.wallet_address and HEX_ADDRESS_REGEX.match(user.wallet_address):
        return user.wallet_address.lower()
    if user.email:
        match = EMAIL_HEX_REGEX.match(user.email)
        if match:
            return match.group(1).lower()
    return None


class UserService:
    """Account provisioning and merging"""

    def __init__(self, session_factory: Optional[sessionmaker] = None,
                 capability_check: CapabilityCheck = check_capability):
        self.session_factory = session_factory
        self.capability_check = capability_check

    def ensure_user(self, wallet_address: Optional[str] = None, email: Optional[str] = None) -> User:
        """Get or create the account for a freshly authenticated identity"""
        address = wallet_address.strip().lower() if wallet_address else None
        email = email.strip().lower() if email else None
        if not address and not email:
            raise ValidationError("walletAddress or email is required")
        if address and not HEX_ADDRESS_REGEX.match(address):
            raise ValidationError("walletAddress must be a 0x-prefixed 20-byte hex address")

        user = self._find_user(address, email)
        if user is not None:
            return user

        try:
            with atomic_transaction(self.session_factory) as session:
                user = User(wallet_address=address, email=email or placeholder_email(address))
                session.add(user)
                session.flush()
        except IntegrityError:
            # Concurrent first login created it
            user = self._find_user(address, email)
            if user is None:
                raise
            return user

        logger.info(f"👤 USER_CREATED: user {user.id} ({address or email})")
        return user

    def _find_user(self, address: Optional[str], email: Optional[str]) -> Optional[User]:
        with atomic_transaction(self.session_factory) as session:
            if address:
                user = session.execute(
                    select(User).where(User.wallet_address == address)
                ).scalar_one_or_none()
                if user is not None:
                    return user
                email = email or placeholder_email(address)
            return session.execute(select(User).where(User.email == email)).scalar_one_or_none()

    def merge_users(self, primary_id: int, duplicate_id: int, actor: Actor) -> User:
        """
        Fold ``duplicate_id`` into ``primary_id`` in one transaction.

        Balance, trades, withdrawal requests, deposits, webhook records and
        audit actor references move to the primary; the duplicate row is
        deleted. Total ledger value is unchanged.
        """
        self.capability_check(actor, Capability.USER_MERGE).raise_for_status()
        if primary_id == duplicate_id:
            raise ValidationError("Cannot merge a user into itself")

        with atomic_transaction(self.session_factory) as session:
            primary = session.get(User, primary_id)
            duplicate = session.get(User, duplicate_id)
            if primary is None or duplicate is None:
                raise NotFoundError("User not found")

            transferred = duplicate.balance or Decimal("0")
            moved = self._merge_into(session, primary_id, duplicate_id, transferred)

            audit_recorder.record(
                session,
                AuditAction.USER_MERGE,
                entity="User",
                entity_id=primary_id,
                actor_user_id=actor.user_id,
                metadata={"mergedUserId": duplicate_id, "amount": transferred, **moved},
            )
            session.refresh(primary)

        logger.info(f"🔗 USER_MERGE: user {duplicate_id} merged into {primary_id} (balance {transferred})")
        return primary

    @staticmethod
    def _merge_into(session, primary_id: int, duplicate_id: int, transferred: Decimal) -> Dict[str, int]:
        if transferred != 0:
            credit_balance(session, primary_id, transferred)

        moved = {}
        for label, model in (("trades", Trade), ("withdrawRequests", WithdrawRequest), ("deposits", Deposit)):
            result = session.execute(
                update(model).where(model.user_id == duplicate_id).values(user_id=primary_id)
                .execution_options(synchronize_session=False)
            )
            moved[label] = result.rowcount
        session.execute(
            update(WebhookEventLedger).where(WebhookEventLedger.user_id == duplicate_id)
            .values(user_id=primary_id).execution_options(synchronize_session=False)
        )
        session.execute(
            update(AuditLog).where(AuditLog.actor_user_id == duplicate_id)
            .values(actor_user_id=primary_id).execution_options(synchronize_session=False)
        )
        session.execute(
            delete(User).where(User.id == duplicate_id).execution_options(synchronize_session=False)
        )
        session.flush()
        return moved

    def normalize_wallet_accounts(self, actor: Actor) -> Dict[str, int]:
        """
        Collapse accounts that belong to the same wallet.

        The survivor is the account with the highest balance, earliest
        created on ties. Survivors get the lower-cased address and a
        placeholder email when their email is just the address. Safe to
        re-run.
        """
        self.capability_check(actor, Capability.USER_MERGE).raise_for_status()

        with atomic_transaction(self.session_factory) as session:
            users = list(session.execute(select(User).order_by(User.created_at, User.id)).scalars())

            by_address: Dict[str, List[User]] = defaultdict(list)
            for user in users:
                address = extract_wallet_address(user)
                if address:
                    by_address[address].append(user)

            deduped = 0
            updated = 0
            for address, group in by_address.items():
                group.sort(key=lambda u: (-(u.balance or Decimal("0")), u.created_at, u.id))
                primary, duplicates = group[0], group[1:]

                for duplicate in duplicates:
                    transferred = duplicate.balance or Decimal("0")
                    moved = self._merge_into(session, primary.id, duplicate.id, transferred)
                    session.expunge(duplicate)
                    audit_recorder.record(
                        session,
                        AuditAction.USER_MERGE,
                        entity="User",
                        entity_id=primary.id,
                        actor_user_id=actor.user_id,
                        metadata={"mergedUserId": duplicate.id, "amount": transferred,
                                  "walletAddress": address, **moved},
                    )
                    deduped += 1

                changes = {}
                if primary.wallet_address != address:
                    changes["wallet_address"] = address
                if primary.email and EMAIL_HEX_REGEX.match(primary.email) and primary.email != placeholder_email(address):
                    changes["email"] = placeholder_email(address)
                if changes:
                    session.execute(
                        update(User).where(User.id == primary.id).values(**changes)
                        .execution_options(synchronize_session=False)
                    )
                    updated += 1

        logger.info(f"🧹 WALLET_NORMALIZATION: deduped {deduped} duplicate users, updated {updated} records")
        return {"deduped": deduped, "updated": updated}

"""
Deposit Address Registry - where users send funds before a deposit is confirmed

Reads are public. Until an admin stores addresses, the configured
environment addresses are served instead (``source: env``).
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from config import Config
from models import AuditAction, DepositAddress
from services.audit_logger import audit_recorder
from services.authorization import Actor, Capability, CapabilityCheck, check_capability
from utils.atomic_transactions import atomic_transaction
from utils.exception_handler import ValidationError

logger = logging.getLogger(__name__)

MAX_ADDRESSES_PER_UPDATE = 50


@dataclass
class AddressBook:
    addresses: List[Dict[str, Any]]
    source: str  # "database" or "env"


def fallback_addresses() -> List[Dict[str, Any]]:
    """Environment-configured addresses; USDC shares the Ethereum address"""
    return [
        {"token": "BTC", "address": Config.DEPOSIT_ADDRESS_BTC, "network": "Bitcoin"},
        {"token": "ETH", "address": Config.DEPOSIT_ADDRESS_ETH, "network": "Ethereum"},
        {"token": "USDT", "address": Config.DEPOSIT_ADDRESS_USDT, "network": "Tron"},
        {"token": "USDC", "address": Config.DEPOSIT_ADDRESS_ETH, "network": "Ethereum"},
    ]


def _required_text(entry: Dict[str, Any], key: str, max_length: int) -> str:
    value = entry.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{key} is required")
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(f"{key} is too long")
    return value


def _validate_entries(addresses: Any) -> List[Dict[str, Any]]:
    if not isinstance(addresses, list) or not addresses:
        raise ValidationError("addresses must be a non-empty list")
    if len(addresses) > MAX_ADDRESSES_PER_UPDATE:
        raise ValidationError(f"At most {MAX_ADDRESSES_PER_UPDATE} addresses per update")

    cleaned = []
    seen = set()
    for entry in addresses:
        if not isinstance(entry, dict):
            raise ValidationError("Each address must be an object")

        token = _required_text(entry, "token", 20).upper()
        if token in seen:
            raise ValidationError(f"Duplicate token: {token}")
        seen.add(token)

        network = entry.get("network")
        if network is not None and not isinstance(network, str):
            raise ValidationError("network must be a string")
        network = (network or "").strip() or None
        if network and len(network) > 50:
            raise ValidationError("network is too long")

        is_active = entry.get("isActive", True)
        if not isinstance(is_active, bool):
            raise ValidationError("isActive must be a boolean")

        cleaned.append({
            "token": token,
            "address": _required_text(entry, "address", 255),
            "network": network,
            "isActive": is_active,
        })
    return cleaned


class DepositAddressService:
    """Public address listing and the audited admin upsert"""

    def __init__(self, session_factory: Optional[sessionmaker] = None,
                 capability_check: CapabilityCheck = check_capability):
        self.session_factory = session_factory
        self.capability_check = capability_check

    def list_active_addresses(self) -> AddressBook:
        with atomic_transaction(self.session_factory) as session:
            rows = list(session.execute(
                select(DepositAddress)
                .where(DepositAddress.is_active.is_(True))
                .order_by(DepositAddress.token)
            ).scalars())

        if not rows:
            return AddressBook(addresses=fallback_addresses(), source="env")
        return AddressBook(addresses=[row.to_dict() for row in rows], source="database")

    def update_addresses(self, actor: Actor, addresses) -> List[DepositAddress]:
        """Insert or update one row per token; tokens not mentioned are left alone"""
        self.capability_check(actor, Capability.DEPOSIT_ADDRESS_MANAGE).raise_for_status()
        entries = _validate_entries(addresses)

        with atomic_transaction(self.session_factory) as session:
            results = []
            for entry in entries:
                row = session.execute(
                    select(DepositAddress).where(DepositAddress.token == entry["token"])
                ).scalar_one_or_none()
                if row is None:
                    row = DepositAddress(token=entry["token"])
                    session.add(row)
                row.address = entry["address"]
                row.network = entry["network"]
                row.is_active = entry["isActive"]
                results.append(row)
            session.flush()

            audit_recorder.record(
                session,
                AuditAction.DEPOSIT_ADDRESSES_UPDATE,
                entity="DepositAddress",
                entity_id="bulk",
                actor_user_id=actor.user_id,
                metadata={"addresses": entries},
            )
            for row in results:
                session.refresh(row)

        logger.info(
            f"🏦 DEPOSIT_ADDRESSES_UPDATE: {', '.join(e['token'] for e in entries)} by {actor.user_id}"
        )
        return sorted(results, key=lambda row: row.token)

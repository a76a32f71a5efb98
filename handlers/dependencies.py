"""
Shared request plumbing for the ledger routers

The application factory stores one LedgerServices container on
``app.state.services``; routers reach every engine through it so tests can
swap the database, price oracle or identity resolver per app instance.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict

from fastapi import Request

from services.authorization import Actor, AuthorizationPolicy, Capability, IdentityResolver, check_capability
from services.deposit_address_service import DepositAddressService
from services.deposit_service import DepositService
from services.ledger_service import LedgerService
from services.trade_engine import TradeEngine
from services.user_service import UserService
from services.withdrawal_service import WithdrawalService
from utils.exception_handler import ForbiddenError, UnauthorizedError, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class LedgerServices:
    trade_engine: TradeEngine
    withdrawal_service: WithdrawalService
    deposit_service: DepositService
    deposit_address_service: DepositAddressService
    ledger_service: LedgerService
    user_service: UserService
    identity_resolver: IdentityResolver
    sweep_policy: AuthorizationPolicy
    provision_policy: AuthorizationPolicy


def get_services(request: Request) -> LedgerServices:
    return request.app.state.services


def require_actor(request: Request) -> Actor:
    """Identity injected by the authenticating gateway, or 401"""
    actor = get_services(request).identity_resolver.resolve(request)
    if actor is None:
        raise UnauthorizedError("Unauthorized")
    return actor


def require_capability(request: Request, capability: Capability) -> Actor:
    """Resolve the actor and fail fast with 401/403 before reading the body"""
    return check_capability(require_actor(request), capability).raise_for_status()


def require_policy(request: Request, policy: AuthorizationPolicy, operation: str) -> Actor:
    """Authorize through a composite policy (shared secret or session role)"""
    result = policy.authorize(request)
    if not result.ok:
        logger.warning(f"🚫 {operation}_DENIED: {result.error}")
        if result.status_code == 401:
            raise UnauthorizedError(result.error or "Unauthorized")
        raise ForbiddenError(result.error or "Forbidden")
    return result.actor


async def read_json_body(request: Request) -> Dict[str, Any]:
    """Parse a JSON object body; anything else is a validation failure"""
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except (UnicodeDecodeError, ValueError):
        raise ValidationError("Invalid JSON body")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def parse_id(value: Any, field: str) -> int:
    if value is None or isinstance(value, bool):
        raise ValidationError(f"Missing required field: {field}")
    try:
        return int(str(value).strip())
    except ValueError:
        raise ValidationError(f"{field} must be an integer")

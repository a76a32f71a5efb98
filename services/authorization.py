"""
Authorization boundary for ledger operations

Identity and role resolution happen upstream (wallet/session auth); this
module only turns the resolved identity into an Actor and answers one
question per operation: may this actor exercise this capability?
"""

import hmac
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional, Protocol

from models import UserRole
from utils.exception_handler import ForbiddenError, UnauthorizedError

logger = logging.getLogger(__name__)


class Capability(Enum):
    """Operations an actor can be authorized for"""
    TRADE_OPEN = "trade_open"
    TRADE_VIEW_OWN = "trade_view_own"
    WITHDRAW_CREATE = "withdraw_create"
    WITHDRAW_VIEW_OWN = "withdraw_view_own"
    DEPOSIT_SUBMIT = "deposit_submit"
    DEPOSIT_VIEW_OWN = "deposit_view_own"
    # Admin-only
    TRADE_RESOLVE = "trade_resolve"
    TRADE_CLOSE = "trade_close"
    TRADE_SCHEDULE = "trade_schedule"
    TRADE_SWEEP = "trade_sweep"
    TRADE_VIEW_ALL = "trade_view_all"
    WITHDRAW_DECIDE = "withdraw_decide"
    WITHDRAW_VIEW_ALL = "withdraw_view_all"
    DEPOSIT_VIEW_ALL = "deposit_view_all"
    BALANCE_ADJUST = "balance_adjust"
    USER_MERGE = "user_merge"
    USER_PROVISION = "user_provision"
    DEPOSIT_ADDRESS_MANAGE = "deposit_address_manage"


ADMIN_CAPABILITIES = frozenset({
    Capability.TRADE_RESOLVE,
    Capability.TRADE_CLOSE,
    Capability.TRADE_SCHEDULE,
    Capability.TRADE_SWEEP,
    Capability.TRADE_VIEW_ALL,
    Capability.WITHDRAW_DECIDE,
    Capability.WITHDRAW_VIEW_ALL,
    Capability.DEPOSIT_VIEW_ALL,
    Capability.BALANCE_ADJUST,
    Capability.USER_MERGE,
    Capability.USER_PROVISION,
    Capability.DEPOSIT_ADDRESS_MANAGE,
})


@dataclass(frozen=True)
class Actor:
    """Resolved caller identity; user_id None means an automated system caller"""
    user_id: Optional[int]
    role: str = UserRole.USER.value

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value

    @property
    def is_system(self) -> bool:
        return self.user_id is None

    @classmethod
    def system(cls) -> "Actor":
        return cls(user_id=None, role=UserRole.ADMIN.value)


@dataclass(frozen=True)
class AuthorizationResult:
    ok: bool
    actor: Optional[Actor] = None
    error: Optional[str] = None
    status_code: int = 200

    @classmethod
    def allow(cls, actor: Actor) -> "AuthorizationResult":
        return cls(ok=True, actor=actor)

    @classmethod
    def deny(cls, error: str, status_code: int = 403) -> "AuthorizationResult":
        return cls(ok=False, error=error, status_code=status_code)

    def raise_for_status(self) -> Actor:
        """Return the actor or raise the matching ledger error"""
        if self.ok:
            return self.actor
        if self.status_code == 401:
            raise UnauthorizedError(self.error or "Unauthorized")
        raise ForbiddenError(self.error or "Forbidden")


CapabilityCheck = Callable[[Optional[Actor], Capability], AuthorizationResult]


def check_capability(actor: Optional[Actor], capability: Capability) -> AuthorizationResult:
    """The single capability check injected into every engine operation"""
    if actor is None:
        return AuthorizationResult.deny("Unauthorized", 401)

    if capability in ADMIN_CAPABILITIES:
        if not actor.is_admin:
            logger.warning(f"🚫 FORBIDDEN: user {actor.user_id} attempted {capability.value}")
            return AuthorizationResult.deny("Forbidden", 403)
        return AuthorizationResult.allow(actor)

    # User capabilities act on the caller's own account
    if actor.user_id is None:
        return AuthorizationResult.deny("Unauthorized", 401)
    return AuthorizationResult.allow(actor)


# ============================================================================
# Request authorization policies (sweep trigger, HTTP boundary)
# ============================================================================

class IdentityResolver(Protocol):
    def resolve(self, request) -> Optional[Actor]:
        ...


class HeaderIdentityResolver:
    """
    Reads the identity the authenticating gateway injected into the request.

    The gateway validates the session or wallet signature and forwards
    X-User-Id / X-User-Role; this service trusts that boundary completely.
    """

    def __init__(self, user_header: str = "X-User-Id", role_header: str = "X-User-Role"):
        self.user_header = user_header
        self.role_header = role_header

    def resolve(self, request) -> Optional[Actor]:
        raw_user_id = request.headers.get(self.user_header)
        if not raw_user_id:
            return None
        try:
            user_id = int(raw_user_id)
        except (TypeError, ValueError):
            logger.warning(f"⚠️ IDENTITY: Malformed {self.user_header} header")
            return None

        role = (request.headers.get(self.role_header) or UserRole.USER.value).strip().upper()
        if role not in (UserRole.USER.value, UserRole.ADMIN.value):
            role = UserRole.USER.value
        return Actor(user_id=user_id, role=role)


class AuthorizationPolicy(Protocol):
    def authorize(self, request) -> AuthorizationResult:
        ...


class SharedSecretPolicy:
    """Grants a system actor when the request carries the shared secret"""

    def __init__(self, secret: Optional[str], header: str):
        self.secret = secret
        self.header = header

    def authorize(self, request) -> AuthorizationResult:
        if not self.secret:
            return AuthorizationResult.deny("Shared secret not configured", 401)
        provided = request.headers.get(self.header)
        if not provided:
            return AuthorizationResult.deny("Missing shared secret", 401)
        if not hmac.compare_digest(provided.encode("utf-8"), self.secret.encode("utf-8")):
            logger.warning(f"🚨 SECURITY: Invalid {self.header} presented")
            return AuthorizationResult.deny("Invalid shared secret", 401)
        return AuthorizationResult.allow(Actor.system())


class SessionRolePolicy:
    """Grants the resolved session actor when it holds the capability"""

    def __init__(self, resolver: IdentityResolver, capability: Capability,
                 capability_check: CapabilityCheck = check_capability):
        self.resolver = resolver
        self.capability = capability
        self.capability_check = capability_check

    def authorize(self, request) -> AuthorizationResult:
        return self.capability_check(self.resolver.resolve(request), self.capability)


class AnyOfPolicy:
    """First granting strategy wins; otherwise the last denial is reported"""

    def __init__(self, policies: Iterable[AuthorizationPolicy]):
        self.policies = list(policies)

    def authorize(self, request) -> AuthorizationResult:
        result = AuthorizationResult.deny("Forbidden", 403)
        for policy in self.policies:
            result = policy.authorize(request)
            if result.ok:
                return result
        return result

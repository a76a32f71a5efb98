"""
Webhook Security Service - signature validation for deposit webhooks
"""

import hashlib
import hmac
import logging
from typing import Optional, Union

logger = logging.getLogger(__name__)


def compute_webhook_signature(payload: Union[bytes, str], secret: str) -> str:
    """Hex HMAC-SHA256 of the raw request body"""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def validate_webhook_signature(payload: Union[bytes, str], signature: Optional[str], secret: str) -> bool:
    """
    Validate a provider signature over the exact bytes received

    Args:
        payload: Raw webhook body, before any JSON parsing
        signature: Hex digest from the signature header
        secret: Shared webhook secret

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature or not secret:
        return False

    provided = signature.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]

    expected = compute_webhook_signature(payload, secret)
    # Use secure comparison
    return hmac.compare_digest(provided.lower().encode("utf-8"), expected.encode("utf-8"))


class WebhookSecurityService:
    """Centralized webhook security validation service"""

    @staticmethod
    def log_security_violation(provider: str, reason: str, client_ip: Optional[str] = None) -> None:
        logger.critical(
            f"🚨 SECURITY_BREACH: {provider} webhook rejected - {reason}"
            + (f" (ip {client_ip})" if client_ip else "")
        )

"""
Exception Handler Module
Ledger error taxonomy and the FastAPI handlers that turn it into responses
"""

import logging
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base class for every reportable ledger failure"""

    code = "LEDGER_ERROR"
    http_status = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"success": False, "error": self.message, "code": self.code}


class ValidationError(LedgerError):
    """Bad input shape or range - no state change"""
    code = "VALIDATION_ERROR"
    http_status = 400


class InsufficientFundsError(LedgerError):
    code = "INSUFFICIENT_FUNDS"
    http_status = 400


class NotFoundError(LedgerError):
    code = "NOT_FOUND"
    http_status = 404


class AlreadyResolvedError(LedgerError):
    """Trade status guard tripped"""
    code = "ALREADY_RESOLVED"
    http_status = 409


class AlreadyProcessedError(LedgerError):
    """Withdrawal status guard tripped"""
    code = "ALREADY_PROCESSED"
    http_status = 409


class SignatureInvalidError(LedgerError):
    code = "SIGNATURE_INVALID"
    http_status = 400


class UpstreamUnavailableError(LedgerError):
    """Price oracle failed - raised before any mutation, safe to retry"""
    code = "UPSTREAM_UNAVAILABLE"
    http_status = 503


class TooManyRequestsError(LedgerError):
    code = "TOO_MANY_REQUESTS"
    http_status = 429

    def __init__(self, message: str, retry_after: int = 0):
        super().__init__(message)
        self.retry_after = retry_after


class UnauthorizedError(LedgerError):
    code = "UNAUTHORIZED"
    http_status = 401


class ForbiddenError(LedgerError):
    code = "FORBIDDEN"
    http_status = 403


class ConfigurationError(LedgerError):
    """Required secret or setting missing - fail closed"""
    code = "CONFIGURATION_ERROR"
    http_status = 500


def register_exception_handlers(app: FastAPI) -> None:
    """Map ledger errors to the {success, error, code} envelope"""

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        if exc.http_status >= 500:
            logger.error(f"❌ {exc.code} on {request.method} {request.url.path}: {exc.message}")
        else:
            logger.info(f"↩️ {exc.code} on {request.method} {request.url.path}: {exc.message}")

        headers = None
        if isinstance(exc, TooManyRequestsError) and exc.retry_after:
            headers = {"Retry-After": str(exc.retry_after)}
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict(), headers=headers)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error(f"❌ Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Internal server error", "code": "INTERNAL_ERROR"},
        )

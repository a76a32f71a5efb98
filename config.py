"""Configuration management for the trade ledger service"""

import os
import logging
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower().strip() in ("1", "true", "yes")


class Config:
    """Application configuration"""

    # Environment detection
    # ENVIRONMENT takes absolute priority, then deployment heuristics
    ENVIRONMENT = os.getenv("ENVIRONMENT", "").lower().strip()

    if ENVIRONMENT:
        IS_PRODUCTION = ENVIRONMENT == "production"
    else:
        IS_PRODUCTION = bool(os.getenv("RAILWAY_PUBLIC_DOMAIN"))

    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Database configuration
    DATABASE_URL = os.getenv("DATABASE_URL")

    if DATABASE_URL:
        if DATABASE_URL.startswith("sqlite"):
            DATABASE_SOURCE = "SQLite (local)"
        else:
            DATABASE_SOURCE = "PostgreSQL"
    else:
        DATABASE_SOURCE = "NOT CONFIGURED"
        logger.error("❌ DATABASE_URL not configured! Please set DATABASE_URL environment variable.")

    DATABASE_POOL_SIZE = int(os.getenv("DATABASE_POOL_SIZE", "7"))
    DATABASE_MAX_OVERFLOW = int(os.getenv("DATABASE_MAX_OVERFLOW", "15"))

    # Webhook security
    # Coinbase Commerce signs the raw body with HMAC-SHA256
    COINBASE_COMMERCE_WEBHOOK_SECRET = os.getenv("COINBASE_COMMERCE_WEBHOOK_SECRET")
    WEBHOOK_SIGNATURE_HEADER = "X-CC-Webhook-Signature"
    MAX_WEBHOOK_PAYLOAD_BYTES = 1024 * 1024  # 1MB

    # Scheduler trigger shared secret (cron calls the auto-resolve endpoint)
    CRON_SECRET = os.getenv("CRON_SECRET")
    CRON_SECRET_HEADER = "X-Cron-Secret"

    # Auth gateway shared secret for first-login provisioning
    GATEWAY_SECRET = os.getenv("GATEWAY_SECRET")
    GATEWAY_SECRET_HEADER = "X-Gateway-Secret"

    # Price oracle
    PRICE_API_URL = os.getenv("PRICE_API_URL", "https://api.coingecko.com/api/v3")
    PRICE_API_KEY = os.getenv("PRICE_API_KEY")
    PRICE_API_TIMEOUT_SECONDS = float(os.getenv("PRICE_API_TIMEOUT_SECONDS", "5"))
    # Half-width of the window queried around a historical timestamp
    PRICE_HISTORY_WINDOW_MS = int(os.getenv("PRICE_HISTORY_WINDOW_MS", "60000"))

    # Trading limits
    MIN_TRADE_TIMEFRAME_SECONDS = 30
    MAX_TRADE_TIMEFRAME_SECONDS = 3600
    MIN_WITHDRAW_ADDRESS_LENGTH = 4
    DEFAULT_DEPOSIT_TOKEN = os.getenv("DEFAULT_DEPOSIT_TOKEN", "USDC")

    # Shown to users until an admin stores addresses in the database
    DEPOSIT_ADDRESS_BTC = os.getenv("DEPOSIT_ADDRESS_BTC", "")
    DEPOSIT_ADDRESS_ETH = os.getenv("DEPOSIT_ADDRESS_ETH", "")
    DEPOSIT_ADDRESS_USDT = os.getenv("DEPOSIT_ADDRESS_USDT", "")

    # Rate limiting (fixed window, per actor)
    TRADE_CREATE_RATE_LIMIT = int(os.getenv("TRADE_CREATE_RATE_LIMIT", "30"))
    WITHDRAW_CREATE_RATE_LIMIT = int(os.getenv("WITHDRAW_CREATE_RATE_LIMIT", "10"))
    RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))

    # In-process auto-resolve trigger (cron endpoint is the primary trigger)
    AUTO_RESOLVE_ENABLED = _env_bool("AUTO_RESOLVE_ENABLED")
    AUTO_RESOLVE_INTERVAL_SECONDS = int(os.getenv("AUTO_RESOLVE_INTERVAL_SECONDS", "30"))

    # Amounts above this are logged at WARNING for operator visibility
    LARGE_AMOUNT_ALERT_THRESHOLD = Decimal(os.getenv("LARGE_AMOUNT_ALERT_THRESHOLD", "1000"))

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Ledger Environment Configuration:")
        logger.info(f"   Environment: {Config.CURRENT_ENVIRONMENT.upper()}")
        logger.info(f"   Is Production: {Config.IS_PRODUCTION}")

        if Config.DATABASE_SOURCE == "NOT CONFIGURED":
            logger.error(f"   ❌ Database: {Config.DATABASE_SOURCE}")
        else:
            logger.info(f"   Database: {Config.DATABASE_SOURCE}")

        logger.info(f"   Price API: {Config.PRICE_API_URL} (timeout {Config.PRICE_API_TIMEOUT_SECONDS}s)")
        logger.info(
            f"   Rate limits: trades {Config.TRADE_CREATE_RATE_LIMIT}/{Config.RATE_LIMIT_WINDOW_SECONDS}s, "
            f"withdrawals {Config.WITHDRAW_CREATE_RATE_LIMIT}/{Config.RATE_LIMIT_WINDOW_SECONDS}s"
        )
        if Config.AUTO_RESOLVE_ENABLED:
            logger.info(f"   Auto-resolve: every {Config.AUTO_RESOLVE_INTERVAL_SECONDS}s")
        else:
            logger.info("   Auto-resolve: external trigger only")

    @staticmethod
    def validate_security_configuration():
        """Validate webhook, cron and gateway secrets for production safety"""
        logger.info("🔧 Security Configuration:")

        if Config.COINBASE_COMMERCE_WEBHOOK_SECRET:
            logger.info("   COINBASE_COMMERCE_WEBHOOK_SECRET: ✅ Configured")
        elif Config.IS_PRODUCTION:
            logger.critical("🚨 PRODUCTION_SECURITY_RISK: COINBASE_COMMERCE_WEBHOOK_SECRET not configured!")
            logger.critical("   Deposit webhooks will be REJECTED without this secret")
        else:
            logger.warning("⚠️ COINBASE_COMMERCE_WEBHOOK_SECRET not configured - deposit webhooks disabled")

        if Config.CRON_SECRET:
            logger.info("   CRON_SECRET: ✅ Configured")
        else:
            logger.warning("⚠️ CRON_SECRET not configured - auto-resolve requires an admin session")

        if Config.GATEWAY_SECRET:
            logger.info("   GATEWAY_SECRET: ✅ Configured")
        else:
            logger.warning("⚠️ GATEWAY_SECRET not configured - user provisioning requires an admin session")

"""
FastAPI server for the trade ledger
Hosts the user, admin and webhook routes, plus the optional in-process auto-resolve trigger
"""
import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from sqlalchemy.orm import sessionmaker

from config import Config
from handlers.admin_routes import router as admin_router
from handlers.dependencies import LedgerServices
from handlers.deposit_routes import router as deposit_router
from handlers.trade_routes import router as trade_router
from handlers.user_routes import router as user_router
from handlers.withdraw_routes import router as withdraw_router
from jobs.scheduler import LedgerScheduler
from middleware.rate_limiter import RateLimiter
from services.authorization import (
    AnyOfPolicy,
    Capability,
    HeaderIdentityResolver,
    IdentityResolver,
    SessionRolePolicy,
    SharedSecretPolicy,
)
from services.deposit_address_service import DepositAddressService
from services.deposit_service import DepositService
from services.ledger_service import LedgerService
from services.price_oracle import PriceOracle, get_price_oracle
from services.trade_engine import TradeEngine
from services.user_service import UserService
from services.withdrawal_service import WithdrawalService
from utils.exception_handler import register_exception_handlers

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    """Process-wide logging; a no-op when the host already configured handlers"""
    logging.basicConfig(
        level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)]
    )
    logging.getLogger('apscheduler').setLevel(logging.WARNING)


def build_services(
    session_factory: Optional[sessionmaker] = None,
    price_oracle: Optional[PriceOracle] = None,
    identity_resolver: Optional[IdentityResolver] = None,
    limiter: Optional[RateLimiter] = None,
    webhook_secret: Optional[str] = None,
    cron_secret: Optional[str] = None,
    gateway_secret: Optional[str] = None,
) -> LedgerServices:
    """Wire every engine against one session factory"""
    resolver = identity_resolver or HeaderIdentityResolver()
    sweep_policy = AnyOfPolicy([
        SharedSecretPolicy(cron_secret if cron_secret is not None else Config.CRON_SECRET, Config.CRON_SECRET_HEADER),
        SessionRolePolicy(resolver, Capability.TRADE_SWEEP),
    ])
    provision_policy = AnyOfPolicy([
        SharedSecretPolicy(
            gateway_secret if gateway_secret is not None else Config.GATEWAY_SECRET, Config.GATEWAY_SECRET_HEADER
        ),
        SessionRolePolicy(resolver, Capability.USER_PROVISION),
    ])

    return LedgerServices(
        trade_engine=TradeEngine(
            session_factory=session_factory,
            price_oracle=price_oracle or get_price_oracle(),
            limiter=limiter,
        ),
        withdrawal_service=WithdrawalService(session_factory=session_factory, limiter=limiter),
        deposit_service=DepositService(session_factory=session_factory, webhook_secret=webhook_secret),
        deposit_address_service=DepositAddressService(session_factory=session_factory),
        ledger_service=LedgerService(session_factory=session_factory),
        user_service=UserService(session_factory=session_factory),
        identity_resolver=resolver,
        sweep_policy=sweep_policy,
        provision_policy=provision_policy,
    )


def create_app(
    session_factory: Optional[sessionmaker] = None,
    price_oracle: Optional[PriceOracle] = None,
    identity_resolver: Optional[IdentityResolver] = None,
    limiter: Optional[RateLimiter] = None,
    webhook_secret: Optional[str] = None,
    cron_secret: Optional[str] = None,
    gateway_secret: Optional[str] = None,
    enable_scheduler: Optional[bool] = None,
    create_schema: bool = False,
) -> FastAPI:
    services = build_services(
        session_factory=session_factory,
        price_oracle=price_oracle,
        identity_resolver=identity_resolver,
        limiter=limiter,
        webhook_secret=webhook_secret,
        cron_secret=cron_secret,
        gateway_secret=gateway_secret,
    )
    run_scheduler = Config.AUTO_RESOLVE_ENABLED if enable_scheduler is None else enable_scheduler

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup: log configuration, optionally create tables, start the sweep trigger
        Shutdown: stop the scheduler
        """
        logger.info(f"🔧 Ledger worker {os.getpid()} starting...")
        Config.log_environment_config()
        Config.validate_security_configuration()

        if create_schema:
            from database import create_tables
            create_tables(session_factory.kw.get("bind") if session_factory else None)

        scheduler = None
        if run_scheduler:
            scheduler = LedgerScheduler(services.trade_engine)
            scheduler.start()

        yield  # App is now running and handling requests

        if scheduler is not None:
            scheduler.stop()
        logger.info(f"🔄 Ledger worker {os.getpid()} shutting down...")

    app = FastAPI(
        title="Trade Ledger",
        description="Balance ledger and trade settlement service",
        lifespan=lifespan
    )
    app.state.services = services

    register_exception_handlers(app)
    app.include_router(trade_router)
    app.include_router(withdraw_router)
    app.include_router(deposit_router)
    app.include_router(admin_router)
    app.include_router(user_router)

    @app.get("/health")
    async def health_check():
        """Liveness check for the load balancer"""
        return {"status": "healthy", "service": "trade-ledger"}

    return app


configure_logging()
app = create_app(create_schema=True)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "5000")))

"""
Admin endpoints - trade settlement, auto-resolve sweep, balance overrides and account merges
"""

import logging
from typing import Optional

from fastapi import APIRouter, Request

from handlers.dependencies import get_services, parse_id, read_json_body, require_capability, require_policy
from services.authorization import Capability
from utils.background_task_runner import run_io_task

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.get("/trades")
async def list_trades(request: Request, status: Optional[str] = None):
    actor = require_capability(request, Capability.TRADE_VIEW_ALL)
    listing = await run_io_task(get_services(request).trade_engine.list_trades, actor, status)
    return {"success": True, "trades": [t.to_dict() for t in listing.trades], "stats": listing.stats}


@router.post("/trades/auto-resolve")
async def auto_resolve_trades(request: Request):
    """
    Sweep due trades with a scheduled outcome.

    Authorized by the cron shared secret or an admin session. Per-trade
    failures come back in ``errors``; the request itself still succeeds.
    """
    actor = require_policy(request, get_services(request).sweep_policy, "AUTO_RESOLVE")
    sweep = await run_io_task(get_services(request).trade_engine.auto_resolve_due, actor)
    return {"success": True, **sweep.to_dict()}


@router.post("/trades/{trade_id}/resolve")
async def resolve_trade(trade_id: str, request: Request):
    actor = require_capability(request, Capability.TRADE_RESOLVE)
    body = await read_json_body(request)

    trade = await run_io_task(
        get_services(request).trade_engine.resolve_trade,
        parse_id(trade_id, "tradeId"),
        body.get("result"),
        actor,
        body.get("priceClose"),
    )
    if trade.status == "WON":
        message = f"Trade resolved as WON. User balance increased by ${trade.amount + trade.pnl:,.2f}"
    else:
        message = "Trade resolved as LOST. User lost their stake"
    return {"success": True, "trade": trade.to_dict(), "message": message}


@router.post("/trades/{trade_id}/schedule")
async def schedule_trade_result(trade_id: str, request: Request):
    actor = require_capability(request, Capability.TRADE_SCHEDULE)
    body = await read_json_body(request)

    trade = await run_io_task(
        get_services(request).trade_engine.schedule_trade_result,
        parse_id(trade_id, "tradeId"),
        body.get("result"),
        actor,
    )
    return {"success": True, "trade": trade.to_dict()}


@router.patch("/users/{user_id}/balance")
async def adjust_user_balance(user_id: str, request: Request):
    actor = require_capability(request, Capability.BALANCE_ADJUST)
    body = await read_json_body(request)

    user = await run_io_task(
        get_services(request).ledger_service.adjust_balance,
        parse_id(user_id, "userId"),
        body.get("mode") or "set",
        body.get("amount"),
        actor,
    )
    return {"success": True, "user": user.to_dict(), "message": "Balance updated successfully"}


@router.post("/users/merge")
async def merge_users(request: Request):
    actor = require_capability(request, Capability.USER_MERGE)
    body = await read_json_body(request)

    user = await run_io_task(
        get_services(request).user_service.merge_users,
        parse_id(body.get("primaryUserId"), "primaryUserId"),
        parse_id(body.get("duplicateUserId"), "duplicateUserId"),
        actor,
    )
    return {"success": True, "user": user.to_dict()}


@router.post("/users/normalize-wallets")
async def normalize_wallets(request: Request):
    actor = require_capability(request, Capability.USER_MERGE)
    summary = await run_io_task(get_services(request).user_service.normalize_wallet_accounts, actor)
    return {"success": True, **summary}

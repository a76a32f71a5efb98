"""
Trade endpoints - open trades and read trade history
"""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from handlers.dependencies import get_services, parse_id, read_json_body, require_actor, require_capability
from services.authorization import Capability
from utils.background_task_runner import run_io_task

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/trades", tags=["trades"])


@router.post("/create")
async def create_trade(request: Request):
    """Open a binary trade for the authenticated user"""
    actor = require_actor(request)
    body = await read_json_body(request)
    engine = get_services(request).trade_engine

    trade = await engine.open_trade(
        actor,
        coin=body.get("coin"),
        # "type" is the legacy client field name
        direction=body.get("direction", body.get("type")),
        amount=body.get("amount"),
        timeframe=body.get("timeframe"),
    )

    return JSONResponse(
        status_code=201,
        content={
            "success": True,
            "trade": trade.to_dict(),
            "message": "Binary trade created successfully",
            "potentialReturn": str(engine.potential_return(trade)),
            "priceOpen": str(trade.price_open),
        },
    )


@router.get("")
async def list_my_trades(request: Request):
    actor = require_actor(request)
    trades = await run_io_task(get_services(request).trade_engine.list_user_trades, actor)
    return {"success": True, "trades": [t.to_dict() for t in trades], "count": len(trades)}


@router.post("/close")
async def close_trade(request: Request):
    """Admin: settle a trade against spot, historical open-time price, or an explicit price"""
    actor = require_capability(request, Capability.TRADE_CLOSE)
    body = await read_json_body(request)

    trade = await get_services(request).trade_engine.close_trade_at_market(
        parse_id(body.get("tradeId"), "tradeId"),
        actor,
        mode=body.get("useHistoricalAt") or "spot",
        price_close=body.get("priceClose"),
    )
    return {"success": True, "trade": trade.to_dict()}

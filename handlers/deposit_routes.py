"""
Deposit endpoints - proof submission, history, deposit addresses and the Coinbase Commerce webhook
"""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from config import Config
from handlers.dependencies import get_services, read_json_body, require_actor, require_capability
from services.authorization import Capability
from utils.background_task_runner import run_io_task

logger = logging.getLogger(__name__)

router = APIRouter(tags=["deposits"])


@router.post("/api/deposits")
async def submit_deposit_proof(request: Request):
    actor = require_actor(request)
    body = await read_json_body(request)

    deposit = await run_io_task(
        get_services(request).deposit_service.record_deposit_proof,
        actor,
        body.get("token"),
        body.get("amount"),
        body.get("txHash", body.get("transactionHash")),
    )
    return JSONResponse(
        status_code=201,
        content={"success": True, "deposit": deposit.to_dict(), "message": "Deposit proof submitted"},
    )


@router.get("/api/deposits")
async def list_all_deposits(request: Request):
    actor = require_capability(request, Capability.DEPOSIT_VIEW_ALL)
    deposits = await run_io_task(get_services(request).deposit_service.list_deposits, actor)
    return {"success": True, "deposits": [d.to_dict() for d in deposits]}


@router.get("/api/deposits/list")
async def list_my_deposits(request: Request):
    actor = require_actor(request)
    deposits = await run_io_task(get_services(request).deposit_service.list_user_deposits, actor)
    return {"success": True, "deposits": [d.to_dict() for d in deposits], "count": len(deposits)}


@router.post("/api/coinbase/webhook")
async def coinbase_webhook(request: Request):
    """
    Coinbase Commerce webhook.

    The signature covers the exact bytes received, so the body is read raw
    and only parsed after verification.
    """
    raw_body = await request.body()
    signature = request.headers.get(Config.WEBHOOK_SIGNATURE_HEADER)

    deposit = await run_io_task(
        get_services(request).deposit_service.confirm_deposit_from_webhook, raw_body, signature
    )

    response = {"success": True}
    if deposit is not None:
        response["depositId"] = deposit.id
    return response


@router.get("/api/deposit-addresses")
async def list_deposit_addresses(request: Request):
    """Public; falls back to the configured addresses until an admin stores some"""
    book = await run_io_task(get_services(request).deposit_address_service.list_active_addresses)
    return {"success": True, "addresses": book.addresses, "source": book.source}


@router.put("/api/deposit-addresses")
async def update_deposit_addresses(request: Request):
    actor = require_capability(request, Capability.DEPOSIT_ADDRESS_MANAGE)
    body = await read_json_body(request)

    rows = await run_io_task(
        get_services(request).deposit_address_service.update_addresses, actor, body.get("addresses")
    )
    return {
        "success": True,
        "addresses": [row.to_dict() for row in rows],
        "message": f"Updated {len(rows)} deposit address(es)",
    }

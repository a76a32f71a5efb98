"""
Withdrawal endpoints - user requests and admin decisions
"""

import logging
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from handlers.dependencies import get_services, parse_id, read_json_body, require_actor, require_capability
from services.authorization import Capability
from utils.background_task_runner import run_io_task

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/withdraw", tags=["withdrawals"])


@router.post("/create")
async def create_withdraw_request(request: Request):
    actor = require_actor(request)
    body = await read_json_body(request)

    withdraw_request = await run_io_task(
        get_services(request).withdrawal_service.create_withdrawal,
        actor,
        body.get("amount"),
        body.get("toAddress"),
        body.get("txHash"),
    )
    return JSONResponse(
        status_code=201,
        content={
            "success": True,
            "withdrawRequest": withdraw_request.to_dict(),
            "message": "Withdraw request submitted successfully",
        },
    )


@router.get("/list")
async def list_my_withdraw_requests(request: Request):
    actor = require_actor(request)
    requests = await run_io_task(get_services(request).withdrawal_service.list_user_withdrawals, actor)
    return {"success": True, "withdrawRequests": [r.to_dict() for r in requests], "count": len(requests)}


@router.get("/requests")
async def list_all_withdraw_requests(request: Request, status: Optional[str] = None):
    actor = require_capability(request, Capability.WITHDRAW_VIEW_ALL)
    requests = await run_io_task(get_services(request).withdrawal_service.list_withdrawals, actor, status)
    return {"success": True, "withdrawRequests": [r.to_dict() for r in requests]}


@router.patch("/manage")
async def manage_withdraw_request(request: Request):
    """Admin approves or rejects a pending request; rejection refunds the reserved amount"""
    actor = require_capability(request, Capability.WITHDRAW_DECIDE)
    body = await read_json_body(request)

    withdraw_request = await run_io_task(
        get_services(request).withdrawal_service.decide_withdrawal,
        parse_id(body.get("requestId"), "requestId"),
        body.get("status"),
        actor,
        body.get("adminNotes"),
        body.get("txHash"),
    )
    return {
        "success": True,
        "withdrawRequest": withdraw_request.to_dict(),
        "message": f"Withdraw request {withdraw_request.status.lower()} successfully",
    }

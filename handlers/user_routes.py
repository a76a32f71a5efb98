"""
User endpoints - first-login provisioning and balance
"""

import logging

from fastapi import APIRouter, Request

from handlers.dependencies import get_services, read_json_body, require_actor, require_policy
from utils.background_task_runner import run_io_task

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["users"])


@router.post("/ensure")
async def ensure_user(request: Request):
    """
    Called by the auth gateway after a wallet or email login is verified.

    Authorized by the gateway shared secret or an admin session.
    """
    require_policy(request, get_services(request).provision_policy, "USER_PROVISION")
    body = await read_json_body(request)
    user = await run_io_task(
        get_services(request).user_service.ensure_user,
        body.get("walletAddress"),
        body.get("email"),
    )
    return {"success": True, "user": user.to_dict()}


@router.get("/me/balance")
async def my_balance(request: Request):
    actor = require_actor(request)
    balance = await run_io_task(get_services(request).ledger_service.get_balance, actor.user_id)
    return {"success": True, "userId": actor.user_id, "balance": str(balance)}

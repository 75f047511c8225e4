"""
Admin API — gift credits to one or many users.
"""

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..core.auth import AuthenticatedUser
from ..core.dependencies import get_ledger, require_admin
from ..services import realtime
from ..services.credits import CreditLedger, gift_credits, gift_credits_bulk

logger = logging.getLogger(__name__)

admin_router = APIRouter(prefix="/admin", tags=["admin"])


class GiftRequest(BaseModel):
    user_id: str = Field(min_length=1)
    amount: int = Field(gt=0)
    reason: str = ""


class BulkGiftRequest(BaseModel):
    user_ids: list[str]
    amount: int = Field(gt=0)
    reason: str = ""


@admin_router.post("/credits/gift")
async def gift(
    request: GiftRequest,
    admin: AuthenticatedUser = Depends(require_admin),
    ledger: CreditLedger = Depends(get_ledger),
):
    balance = await gift_credits(ledger, request.user_id, request.amount, request.reason)
    logger.info("Admin %s gifted %d credits to %s", admin.user_id, request.amount, request.user_id)
    await realtime.credits_updated(request.user_id, balance, "admin_gift")
    return {"user_id": request.user_id, "balance": balance}


@admin_router.post("/credits/gift/bulk")
async def gift_bulk(
    request: BulkGiftRequest,
    admin: AuthenticatedUser = Depends(require_admin),
    ledger: CreditLedger = Depends(get_ledger),
):
    user_ids = list(dict.fromkeys(u for u in request.user_ids if u))
    result = await gift_credits_bulk(ledger, user_ids, request.amount, request.reason)
    logger.info("Admin %s bulk-gifted %d credits to %d users", admin.user_id, request.amount, len(user_ids))
    return result

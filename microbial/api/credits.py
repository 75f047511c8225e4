"""
Credits API — balance, history and purchasable packages.
"""

from fastapi import APIRouter, Depends, Query

from ..core.auth import AuthenticatedUser
from ..core.dependencies import get_ledger, get_user
from ..services.credits import CreditLedger, credit_costs
from ..services.payments import CREDIT_PACKAGES

credits_router = APIRouter(prefix="/credits", tags=["credits"])


@credits_router.get("")
async def get_credits(
    user: AuthenticatedUser = Depends(get_user),
    ledger: CreditLedger = Depends(get_ledger),
):
    """Current balance. First sight of a user grants the welcome bonus."""
    await ledger.ensure_initialized(user.user_id)
    balance = await ledger.get_balance(user.user_id)
    return {
        "user_id": user.user_id,
        "balance": balance,
        "costs": {t.value: cost for t, cost in credit_costs().items()},
    }


@credits_router.get("/history")
async def get_history(
    limit: int = Query(default=50, ge=1, le=200),
    user: AuthenticatedUser = Depends(get_user),
    ledger: CreditLedger = Depends(get_ledger),
):
    transactions = await ledger.recent_history(user.user_id, limit=limit)
    return {"transactions": [t.to_dict() for t in transactions]}


@credits_router.get("/packages")
async def get_packages():
    return {"packages": [p.to_dict() for p in CREDIT_PACKAGES.values()]}

"""
Payment gateway callbacks. No user auth: requests are verified by signature.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..core.dependencies import get_ledger
from ..core.errors import InvalidPayment
from ..services.credits import CreditLedger
from ..services.payments import SIGNATURE_HEADER, handle_paystack_webhook

logger = logging.getLogger(__name__)

payments_router = APIRouter(prefix="/payments", tags=["payments"])


@payments_router.post("/paystack/webhook")
async def paystack_webhook(
    request: Request,
    ledger: CreditLedger = Depends(get_ledger),
):
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER, "")
    try:
        balance = await handle_paystack_webhook(ledger, body, signature)
    except InvalidPayment as e:
        logger.warning("Rejected Paystack webhook: %s", e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if balance is None:
        return {"status": "ignored"}
    return {"status": "ok", "balance": balance}

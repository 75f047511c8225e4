"""
Chat API — one conversation turn per request.

POST /v1/chat   — Send a message (anonymous allowed)
POST /v1/vision — Analyze an image (sign-in required)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from ..core.auth import AuthenticatedUser
from ..core.dependencies import get_optional_user_dep, get_orchestrator, get_user
from ..orchestrator.orchestrator import TurnOrchestrator, TurnOutcome, TurnStatus

logger = logging.getLogger(__name__)

chat_router = APIRouter(tags=["chat"])


class ChatRequest(BaseModel):
    message: str
    thread_id: Optional[str] = None


class VisionRequest(BaseModel):
    image_url: str
    prompt: Optional[str] = None
    thread_id: Optional[str] = None


class TurnResponse(BaseModel):
    status: str
    thread_id: Optional[str] = None
    reply: str = ""
    balance: Optional[int] = None
    run_id: Optional[str] = None
    billed: bool = False
    error: Optional[str] = None
    metadata: dict = {}


def _respond(outcome: TurnOutcome) -> TurnResponse:
    """Refusals become HTTP errors. Everything that wrote a transcript is a 200."""
    if outcome.status == TurnStatus.REJECTED:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=outcome.error)
    if outcome.status == TurnStatus.INSUFFICIENT_CREDITS:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={"message": "Insufficient credits", "balance": outcome.balance},
        )
    return TurnResponse(**outcome.to_dict())


@chat_router.post("/chat", response_model=TurnResponse)
async def chat(
    request: ChatRequest,
    user: Optional[AuthenticatedUser] = Depends(get_optional_user_dep),
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
):
    """Send a message to the assistant. Signed-in users are billed per reply."""
    outcome = await orchestrator.handle_turn(
        request.message,
        user_id=user.user_id if user else None,
        thread_id=request.thread_id,
    )
    return _respond(outcome)


@chat_router.post("/vision", response_model=TurnResponse)
async def vision(
    request: VisionRequest,
    user: AuthenticatedUser = Depends(get_user),
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
):
    outcome = await orchestrator.handle_image_analysis(
        user.user_id,
        request.image_url,
        prompt=request.prompt,
        thread_id=request.thread_id,
    )
    return _respond(outcome)

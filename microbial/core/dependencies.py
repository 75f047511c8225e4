"""
FastAPI dependencies. Injected into route handlers.

Long-lived services (ledger, assistants client, orchestrator) are built once
per process on first use and shared by every request.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from .auth import AuthenticatedUser, get_current_user, get_optional_user
from .database import get_session_factory
from ..orchestrator.orchestrator import TurnOrchestrator
from ..orchestrator.transcript import SqlThreadStore, SqlTranscriptStore, ThreadStore, TranscriptStore
from ..services.assistants import AssistantsClient
from ..services.credits import CreditLedger
from ..services.personalization import PersonalizationResolver
from ..services.profiles import SqlProfileStore

_ledger: Optional[CreditLedger] = None
_transcripts: Optional[SqlTranscriptStore] = None
_threads: Optional[SqlThreadStore] = None
_orchestrator: Optional[TurnOrchestrator] = None


async def get_user(
    authorization: str = Header(default=""),
) -> AuthenticatedUser:
    """
    Resolve authenticated user from Authorization header.
    Returns dev user if FF_USE_AUTH0=false.
    """
    try:
        return await get_current_user(authorization)
    except PermissionError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_optional_user_dep(
    authorization: str = Header(default=""),
) -> Optional[AuthenticatedUser]:
    """None for anonymous callers. A malformed or invalid token is still a 401."""
    try:
        return await get_optional_user(authorization)
    except PermissionError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )


async def require_admin(
    user: AuthenticatedUser = Depends(get_user),
) -> AuthenticatedUser:
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return user


# ── Services ─────────────────────────────────────────────────────────

def get_ledger() -> CreditLedger:
    global _ledger
    if _ledger is None:
        _ledger = CreditLedger(get_session_factory())
    return _ledger


def get_transcripts() -> TranscriptStore:
    global _transcripts
    if _transcripts is None:
        _transcripts = SqlTranscriptStore(get_session_factory())
    return _transcripts


def get_threads() -> ThreadStore:
    global _threads
    if _threads is None:
        _threads = SqlThreadStore(get_session_factory())
    return _threads


def get_orchestrator() -> TurnOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        factory = get_session_factory()
        _orchestrator = TurnOrchestrator(
            ledger=get_ledger(),
            resolver=PersonalizationResolver(SqlProfileStore(factory)),
            client=AssistantsClient.from_settings(),
            transcripts=get_transcripts(),
            threads=get_threads(),
        )
    return _orchestrator


def reset_services() -> None:
    """Drop the shared services. Called on shutdown, after the engine is disposed."""
    global _ledger, _transcripts, _threads, _orchestrator
    _ledger = None
    _transcripts = None
    _threads = None
    _orchestrator = None

"""
Main API router. Mounts all sub-routers.
"""

from fastapi import APIRouter

router = APIRouter()


# ── Health (no auth) ─────────────────────────────────────────────────

@router.get("/health")
async def health():
    return {"status": "ok", "service": "microbial"}


# ── Auth config (no auth) ───────────────────────────────────────────

@router.get("/auth/config")
async def auth_config():
    from ..core.config import get_settings
    from ..core.flags import get_flags

    flags = get_flags()
    if not flags.use_auth0:
        return {"auth_enabled": False, "message": "Dev mode — no auth required"}

    settings = get_settings()
    return {
        "auth_enabled": True,
        "domain": settings.auth0_domain,
        "audience": settings.auth0_audience,
    }


# ── V1 routes (auth per endpoint: chat allows anonymous callers) ─────

from .admin import admin_router
from .chat import chat_router
from .credits import credits_router
from .payments import payments_router
from .threads import threads_router

router.include_router(chat_router, prefix="/v1")
router.include_router(threads_router, prefix="/v1")
router.include_router(credits_router, prefix="/v1")
router.include_router(payments_router, prefix="/v1")
router.include_router(admin_router, prefix="/v1")

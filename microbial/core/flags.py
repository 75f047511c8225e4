"""
Central feature flags. One file controls every optional dependency.

Set via environment variables (prefix FF_) or .env file.
When a flag is OFF, the system uses a local fallback. Nothing crashes.
"""

from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FeatureFlags(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Auth ─────────────────────────────────────────────────────────
    use_auth0: bool = Field(default=True, alias="FF_USE_AUTH0")
    # ON  → JWT validated via Auth0 JWKS. Needs AUTH0_DOMAIN, AUTH0_AUDIENCE.
    # OFF → Dev user injected for authenticated routes. Chat stays anonymous
    #       when no Authorization header is sent.

    # ── Cache / Realtime ─────────────────────────────────────────────
    use_redis: bool = Field(default=True, alias="FF_USE_REDIS")
    # ON  → Redis pub/sub for balance and chat notifications. Needs REDIS_URL.
    # OFF → Notifications silently skipped.

    # ── Reply personalization ────────────────────────────────────────
    personalize_replies: bool = Field(default=True, alias="FF_PERSONALIZE_REPLIES")
    # ON  → Occasionally splice a personalized lead-in into assistant replies.
    # OFF → Replies are delivered exactly as generated.

    # ── Image analysis ───────────────────────────────────────────────
    enable_image_analysis: bool = Field(default=True, alias="FF_ENABLE_IMAGE_ANALYSIS")
    # Requires: OPENAI_API_KEY with a vision-capable VISION_MODEL.


@lru_cache
def get_flags() -> FeatureFlags:
    return FeatureFlags()

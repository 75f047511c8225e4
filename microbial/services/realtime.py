"""
Realtime notifications. Thin wrapper around core.redis.
Chat events go to the thread channel, balance events to the user channel.
"""

from typing import Optional

from ..core import redis as _redis


# ── Chat events ──────────────────────────────────────────────────────

async def chat_started(thread_id: Optional[str], data: dict = None):
    if thread_id:
        await _redis.publish("thread", thread_id, "chat.started", data)


async def chat_completed(thread_id: Optional[str], data: dict = None):
    if thread_id:
        await _redis.publish("thread", thread_id, "chat.completed", data)


async def chat_error(thread_id: Optional[str], data: dict = None):
    if thread_id:
        await _redis.publish("thread", thread_id, "chat.error", data)


# ── Credit events ────────────────────────────────────────────────────

async def credits_updated(user_id: str, balance: int, reason: str = ""):
    await _redis.publish("user", user_id, "credits.updated", {"balance": balance, "reason": reason})

"""
Thread transcripts. Guidance messages are never returned.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status

from ..core.auth import AuthenticatedUser
from ..core.dependencies import get_optional_user_dep, get_threads, get_transcripts
from ..core.errors import TranscriptUnavailable
from ..orchestrator.transcript import ThreadStore, TranscriptStore

logger = logging.getLogger(__name__)

threads_router = APIRouter(tags=["threads"])


@threads_router.get("/threads/{thread_id}/messages")
async def list_thread_messages(
    thread_id: str,
    user: Optional[AuthenticatedUser] = Depends(get_optional_user_dep),
    threads: ThreadStore = Depends(get_threads),
    transcripts: TranscriptStore = Depends(get_transcripts),
):
    try:
        record = await threads.get(thread_id)
        if record and record.user_id and (not user or user.user_id != record.user_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Thread not found")
        messages = await transcripts.list_visible(thread_id)
    except TranscriptUnavailable as e:
        logger.error("Transcript for %s unavailable: %s", thread_id, e)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Transcript temporarily unavailable",
        )

    return {
        "thread_id": thread_id,
        "messages": [m.to_dict() for m in messages],
    }

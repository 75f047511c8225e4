"""
Threads and transcript messages.

A thread row caches the external assistants thread id. Messages are the
local, append-only transcript the UI renders; guidance rows are stored but
never rendered.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, Text, Integer, JSON, DateTime, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base
from .base import RecordBase, utcnow


class ConversationThread(Base):
    __tablename__ = "conversation_threads"

    # External thread id (opaque string from the assistants backend)
    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )


class TranscriptMessage(RecordBase):
    __tablename__ = "transcript_messages"
    __table_args__ = (
        UniqueConstraint("thread_id", "sequence_number", name="uq_transcript_messages_sequence"),
    )

    # Not a foreign key: anonymous sign-in nudges live under local keys
    thread_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    role: Mapped[str] = mapped_column(String, nullable=False)  # user, assistant, system_guidance
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    metadata_: Mapped[dict] = mapped_column(
        "metadata", JSON, nullable=True, default=dict
    )
    # Stores: attachment (image reference), run_id, error kind

"""
Transcript and thread bookkeeping.

Transcripts are ordered, append-only message lists keyed by thread id.
Guidance messages are stored like any other message but list_visible()
never returns them, so the UI renders through one filter.

Threads record which external thread ids exist locally and who owns them.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Protocol

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.errors import TranscriptUnavailable
from ..models.base import utcnow
from ..models.conversation import ConversationThread, TranscriptMessage

logger = logging.getLogger(__name__)

LOCAL_THREAD_PREFIX = "local_"


def new_local_thread_key() -> str:
    """Transcript key for conversations that never reached the backend."""
    return f"{LOCAL_THREAD_PREFIX}{uuid.uuid4().hex}"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM_GUIDANCE = "system_guidance"


@dataclass(frozen=True)
class Message:
    role: MessageRole
    content: str
    created_at: datetime = field(default_factory=utcnow)
    attachment: Optional[dict] = None
    metadata: dict = field(default_factory=dict)

    @property
    def is_visible(self) -> bool:
        return self.role != MessageRole.SYSTEM_GUIDANCE

    @classmethod
    def user(cls, content: str, attachment: Optional[dict] = None) -> "Message":
        return cls(role=MessageRole.USER, content=content, attachment=attachment)

    @classmethod
    def assistant(cls, content: str, **metadata) -> "Message":
        return cls(role=MessageRole.ASSISTANT, content=content, metadata=metadata)

    @classmethod
    def guidance(cls, content: str) -> "Message":
        return cls(role=MessageRole.SYSTEM_GUIDANCE, content=content)

    def to_dict(self) -> dict:
        return {
            "role": self.role.value,
            "content": self.content,
            "created_at": self.created_at.isoformat() if self.created_at else "",
            "attachment": self.attachment,
            "metadata": self.metadata,
        }


# ── Transcript stores ────────────────────────────────────────────────

class TranscriptStore(Protocol):
    async def append(self, thread_id: str, message: Message) -> None: ...

    async def list_messages(self, thread_id: str) -> list[Message]:
        """All messages, oldest first."""
        ...

    async def list_visible(self, thread_id: str) -> list[Message]:
        """list_messages() without system guidance."""
        ...


class InMemoryTranscriptStore:
    def __init__(self):
        self._messages: dict[str, list[Message]] = {}

    async def append(self, thread_id: str, message: Message) -> None:
        self._messages.setdefault(thread_id, []).append(message)

    async def list_messages(self, thread_id: str) -> list[Message]:
        return list(self._messages.get(thread_id, []))

    async def list_visible(self, thread_id: str) -> list[Message]:
        return [m for m in self._messages.get(thread_id, []) if m.is_visible]


class SqlTranscriptStore:
    """
    TranscriptStore backed by transcript_messages.

    Storage failures surface as TranscriptUnavailable.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], max_attempts: int = 3):
        self._session_factory = session_factory
        self._max_attempts = max_attempts

    async def append(self, thread_id: str, message: Message) -> None:
        metadata = dict(message.metadata)
        if message.attachment:
            metadata["attachment"] = message.attachment

        for attempt in range(self._max_attempts):
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        last = await session.scalar(
                            select(func.max(TranscriptMessage.sequence_number))
                            .where(TranscriptMessage.thread_id == thread_id)
                        )
                        session.add(TranscriptMessage(
                            thread_id=thread_id,
                            role=message.role.value,
                            content=message.content,
                            sequence_number=(last or 0) + 1,
                            metadata_=metadata,
                            created_at=message.created_at,
                        ))
                return
            except IntegrityError as e:
                # Another append took the same sequence number
                if attempt + 1 >= self._max_attempts:
                    raise TranscriptUnavailable(
                        f"Could not append to {thread_id} after {self._max_attempts} attempts"
                    ) from e
                logger.debug("Transcript sequence conflict on %s, retrying", thread_id)
            except SQLAlchemyError as e:
                raise TranscriptUnavailable(f"Could not append to {thread_id}: {e}") from e

    async def _select(self, thread_id: str, visible_only: bool) -> list[Message]:
        stmt = (
            select(TranscriptMessage)
            .where(TranscriptMessage.thread_id == thread_id)
            .order_by(TranscriptMessage.sequence_number.asc())
        )
        if visible_only:
            stmt = stmt.where(TranscriptMessage.role != MessageRole.SYSTEM_GUIDANCE.value)

        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise TranscriptUnavailable(f"Could not read {thread_id}: {e}") from e

        messages = []
        for row in rows:
            metadata = dict(row.metadata_ or {})
            attachment = metadata.pop("attachment", None)
            messages.append(Message(
                role=MessageRole(row.role),
                content=row.content,
                created_at=row.created_at,
                attachment=attachment,
                metadata=metadata,
            ))
        return messages

    async def list_messages(self, thread_id: str) -> list[Message]:
        return await self._select(thread_id, visible_only=False)

    async def list_visible(self, thread_id: str) -> list[Message]:
        return await self._select(thread_id, visible_only=True)


# ── Thread stores ────────────────────────────────────────────────────

@dataclass(frozen=True)
class ThreadRecord:
    id: str
    user_id: Optional[str]
    created_at: datetime


class ThreadStore(Protocol):
    async def save(self, thread_id: str, user_id: Optional[str] = None) -> ThreadRecord: ...

    async def get(self, thread_id: str) -> Optional[ThreadRecord]: ...


class InMemoryThreadStore:
    def __init__(self):
        self._threads: dict[str, ThreadRecord] = {}

    async def save(self, thread_id: str, user_id: Optional[str] = None) -> ThreadRecord:
        record = self._threads.get(thread_id)
        if record is None:
            record = ThreadRecord(id=thread_id, user_id=user_id, created_at=utcnow())
            self._threads[thread_id] = record
        return record

    async def get(self, thread_id: str) -> Optional[ThreadRecord]:
        return self._threads.get(thread_id)


class SqlThreadStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def save(self, thread_id: str, user_id: Optional[str] = None) -> ThreadRecord:
        existing = await self.get(thread_id)
        if existing:
            return existing
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    row = ConversationThread(id=thread_id, user_id=user_id, created_at=utcnow())
                    session.add(row)
        except IntegrityError:
            return await self.get(thread_id)
        except SQLAlchemyError as e:
            raise TranscriptUnavailable(f"Could not save thread {thread_id}: {e}") from e
        logger.info("Saved thread %s (user=%s)", thread_id, user_id or "anonymous")
        return ThreadRecord(id=row.id, user_id=row.user_id, created_at=row.created_at)

    async def get(self, thread_id: str) -> Optional[ThreadRecord]:
        try:
            async with self._session_factory() as session:
                row = await session.get(ConversationThread, thread_id)
        except SQLAlchemyError as e:
            raise TranscriptUnavailable(f"Could not load thread {thread_id}: {e}") from e
        if row is None:
            return None
        return ThreadRecord(id=row.id, user_id=row.user_id, created_at=row.created_at)

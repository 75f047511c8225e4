"""
ConversationSession — one conversation turn against the assistants backend.

A session is created per turn and walks a small state machine:

  NEW → THREAD_READY → (GUIDANCE_SENT) → MESSAGE_SUBMITTED → RUN_STARTED
      → RUN_COMPLETED | RUN_FAILED | RUN_TIMED_OUT
  RUN_COMPLETED → RESPONSE_EXTRACTED

Polling is the only long suspension. When the surrounding task is cancelled
mid-run the backend run is cancelled too (shielded, bounded wait).
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import NoReturn, Optional, Union

from ..core.errors import EmptyResponse, RunError, RunErrorKind
from ..services.assistants import AssistantsClient
from .transcript import LOCAL_THREAD_PREFIX, ThreadStore

logger = logging.getLogger(__name__)

NO_RESPONSE_TEXT = "No response text available"
GUIDANCE_KIND = "system_guidance"

# Backend run statuses
PENDING_STATUSES = {"queued", "in_progress", "cancelling"}
COMPLETED_STATUSES = {"completed", "incomplete"}
TRANSIENT_FAILURE_CODES = {"rate_limit_exceeded", "server_error"}


class SessionState(str, Enum):
    NEW = "new"
    THREAD_READY = "thread_ready"
    GUIDANCE_SENT = "guidance_sent"
    MESSAGE_SUBMITTED = "message_submitted"
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_TIMED_OUT = "run_timed_out"
    RESPONSE_EXTRACTED = "response_extracted"


_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.NEW: {SessionState.THREAD_READY},
    SessionState.THREAD_READY: {SessionState.GUIDANCE_SENT, SessionState.MESSAGE_SUBMITTED},
    SessionState.GUIDANCE_SENT: {SessionState.MESSAGE_SUBMITTED},
    SessionState.MESSAGE_SUBMITTED: {SessionState.RUN_STARTED, SessionState.RUN_FAILED},
    SessionState.RUN_STARTED: {
        SessionState.RUN_COMPLETED,
        SessionState.RUN_FAILED,
        SessionState.RUN_TIMED_OUT,
    },
    SessionState.RUN_COMPLETED: {SessionState.RESPONSE_EXTRACTED, SessionState.RUN_FAILED},
    # A failed or timed-out run may be started again once
    SessionState.RUN_FAILED: {SessionState.RUN_STARTED},
    SessionState.RUN_TIMED_OUT: {SessionState.RUN_STARTED},
    SessionState.RESPONSE_EXTRACTED: set(),
}


@dataclass(frozen=True)
class ThreadHandle:
    thread_id: str
    user_id: Optional[str] = None
    created: bool = False


@dataclass(frozen=True)
class AssistantConfig:
    model: str
    name: str
    instructions: str
    assistant_id: Optional[str] = None


# ── Replies ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TextReply:
    text: str
    run_id: Optional[str] = None
    message_id: Optional[str] = None


@dataclass(frozen=True)
class EmptyReply:
    run_id: Optional[str] = None


@dataclass(frozen=True)
class ErrorReply:
    reason: str
    run_id: Optional[str] = None


AssistantReply = Union[TextReply, EmptyReply, ErrorReply]


def parse_reply(messages: list, run_id: Optional[str] = None) -> AssistantReply:
    """
    Pick the assistant's answer out of a newest-first message listing.

    Only assistant messages produced by run_id count. The backend's
    "No response text available" placeholder is treated as empty.
    """
    if not isinstance(messages, list):
        return ErrorReply("message listing is not a list", run_id)

    for message in messages:
        if not isinstance(message, dict):
            return ErrorReply("malformed message entry", run_id)
        if message.get("role") != "assistant":
            continue
        if run_id and message.get("run_id") not in (None, run_id):
            continue

        content = message.get("content")
        if not isinstance(content, list):
            return ErrorReply("malformed message content", run_id)

        parts = []
        for part in content:
            if not isinstance(part, dict) or part.get("type") != "text":
                continue
            value = (part.get("text") or {}).get("value")
            if not isinstance(value, str):
                return ErrorReply("text part without a value", run_id)
            parts.append(value)

        text = "\n\n".join(parts).strip()
        if not text or text == NO_RESPONSE_TEXT:
            return EmptyReply(run_id)
        return TextReply(text=text, run_id=run_id, message_id=message.get("id"))

    return EmptyReply(run_id)


def _failure_kind(run: dict) -> RunErrorKind:
    code = (run.get("last_error") or {}).get("code")
    return RunErrorKind.TRANSIENT if code in TRANSIENT_FAILURE_CODES else RunErrorKind.FATAL


# ── Session ──────────────────────────────────────────────────────────

class ConversationSession:
    def __init__(
        self,
        client: AssistantsClient,
        threads: ThreadStore,
        poll_interval: float = 1.0,
        max_wait: float = 90.0,
        cancel_timeout: float = 5.0,
    ):
        self._client = client
        self._threads = threads
        self._poll_interval = poll_interval
        self._max_wait = max_wait
        self._cancel_timeout = cancel_timeout
        self.state = SessionState.NEW
        self.run_id: Optional[str] = None

    def _transition(self, target: SessionState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid session transition {self.state.value} → {target.value}")
        logger.debug("Session %s → %s", self.state.value, target.value)
        self.state = target

    # ── Thread ───────────────────────────────────────────────────────

    async def start_or_resume_thread(
        self,
        existing_thread_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> ThreadHandle:
        """
        Resume the given backend thread, or create a new one.

        A thread recorded as owned by someone else is never resumed: the
        caller gets a fresh thread instead.
        """
        thread_id = None
        created = False

        resumable = bool(existing_thread_id) and not existing_thread_id.startswith(LOCAL_THREAD_PREFIX)
        if resumable:
            record = await self._threads.get(existing_thread_id)
            if record is not None and record.user_id and record.user_id != user_id:
                logger.warning(
                    "Thread %s belongs to another user, starting a new one for %s",
                    existing_thread_id, user_id or "anonymous",
                )
                resumable = False

        if resumable:
            try:
                thread = await self._client.retrieve_thread(existing_thread_id)
                thread_id = thread["id"]
            except RunError as e:
                if e.is_transient:
                    raise
                logger.warning("Thread %s not resumable (%s), starting a new one", existing_thread_id, e)

        if thread_id is None:
            metadata = {"user_id": user_id} if user_id else None
            thread = await self._client.create_thread(metadata=metadata)
            thread_id = thread["id"]
            created = True

        await self._threads.save(thread_id, user_id)
        self._transition(SessionState.THREAD_READY)
        return ThreadHandle(thread_id=thread_id, user_id=user_id, created=created)

    # ── Messages ─────────────────────────────────────────────────────

    async def submit_guidance(self, thread: ThreadHandle, context_text: str) -> None:
        if not context_text or not context_text.strip():
            return
        await self._client.append_message(
            thread.thread_id,
            role="user",
            content=f"[SYSTEM GUIDANCE: {context_text}]",
            metadata={"kind": GUIDANCE_KIND},
        )
        self._transition(SessionState.GUIDANCE_SENT)

    async def submit_user_message(self, thread: ThreadHandle, text: str) -> None:
        await self._client.append_message(thread.thread_id, role="user", content=text)
        self._transition(SessionState.MESSAGE_SUBMITTED)

    # ── Run ──────────────────────────────────────────────────────────

    async def run_to_completion(
        self,
        thread: ThreadHandle,
        config: AssistantConfig,
        poll_interval: Optional[float] = None,
        max_wait: Optional[float] = None,
    ) -> AssistantReply:
        poll_interval = self._poll_interval if poll_interval is None else poll_interval
        max_wait = self._max_wait if max_wait is None else max_wait
        thread_id = thread.thread_id

        assistant_id = config.assistant_id or await self._client.get_or_create_assistant(
            config.model, config.name, config.instructions
        )
        # Shielded so a cancelled turn still learns the id of the run it created
        creating = asyncio.ensure_future(self._client.create_run(
            thread_id, assistant_id, instructions=config.instructions, model=config.model
        ))
        try:
            run = await asyncio.shield(creating)
        except asyncio.CancelledError:
            logger.info("Turn cancelled while creating a run on thread %s", thread_id)
            await self._abandon_creation(thread_id, creating)
            raise
        except RunError:
            if self.state == SessionState.MESSAGE_SUBMITTED:
                self._transition(SessionState.RUN_FAILED)
            raise

        run_id = run["id"]
        self.run_id = run_id
        self._transition(SessionState.RUN_STARTED)
        logger.info("Run %s started on thread %s", run_id, thread_id)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + max_wait
        try:
            while run.get("status") in PENDING_STATUSES:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    await self._time_out(thread_id, run_id, max_wait)
                await asyncio.sleep(min(poll_interval, remaining))
                try:
                    run = await asyncio.wait_for(
                        self._client.get_run(thread_id, run_id),
                        timeout=max(deadline - loop.time(), 0.0),
                    )
                except asyncio.TimeoutError:
                    await self._time_out(thread_id, run_id, max_wait)
        except asyncio.CancelledError:
            logger.info("Turn cancelled while run %s was in flight", run_id)
            await self._cancel_run(thread_id, run_id)
            raise
        except RunError:
            if self.state == SessionState.RUN_STARTED:
                self._transition(SessionState.RUN_FAILED)
            raise

        status = run.get("status")
        if status in COMPLETED_STATUSES:
            self._transition(SessionState.RUN_COMPLETED)
            try:
                messages = await self._client.list_messages(thread_id, run_id=run_id)
            except RunError:
                self._transition(SessionState.RUN_FAILED)
                raise
            return parse_reply(messages, run_id)

        if status == "requires_action":
            # No tools are registered, so the run cannot make progress
            await self._cancel_run(thread_id, run_id)
            self._transition(SessionState.RUN_FAILED)
            raise RunError(f"Run {run_id} requested a tool call", RunErrorKind.FATAL)

        self._transition(SessionState.RUN_FAILED)
        if status == "failed":
            last_error = run.get("last_error") or {}
            raise RunError(
                f"Run {run_id} failed: {last_error.get('message') or last_error.get('code') or 'unknown'}",
                _failure_kind(run),
            )
        raise RunError(f"Run {run_id} ended with status {status}", RunErrorKind.TRANSIENT)

    async def _time_out(self, thread_id: str, run_id: str, max_wait: float) -> NoReturn:
        self._transition(SessionState.RUN_TIMED_OUT)
        await self._cancel_run(thread_id, run_id)
        raise RunError(f"Run {run_id} did not finish within {max_wait:g}s", RunErrorKind.TRANSIENT)

    async def _abandon_creation(self, thread_id: str, creating: asyncio.Future) -> None:
        """Cancel the run an interrupted create_run produced, once its id is known."""
        try:
            run = await asyncio.wait_for(asyncio.shield(creating), timeout=self._cancel_timeout)
        except asyncio.TimeoutError:
            logger.warning("Run creation on %s still pending after cancel, run may be orphaned", thread_id)
            return
        except RunError:
            return
        self.run_id = run["id"]
        await self._cancel_run(thread_id, run["id"])

    async def _cancel_run(self, thread_id: str, run_id: str) -> None:
        """Best-effort backend cancel. Survives a second cancellation of the caller."""
        try:
            await asyncio.wait_for(
                asyncio.shield(self._client.cancel_run(thread_id, run_id)),
                timeout=self._cancel_timeout,
            )
            logger.info("Cancelled run %s", run_id)
        except (asyncio.TimeoutError, RunError) as e:
            logger.warning("Could not cancel run %s: %s", run_id, e)

    def extract_text(self, reply: AssistantReply) -> str:
        if isinstance(reply, TextReply):
            self._transition(SessionState.RESPONSE_EXTRACTED)
            return reply.text
        if self.state == SessionState.RUN_COMPLETED:
            self._transition(SessionState.RUN_FAILED)
        if isinstance(reply, EmptyReply):
            raise EmptyResponse(f"Run {reply.run_id} produced no text")
        raise RunError(f"Run {reply.run_id} reply unusable: {reply.reason}", RunErrorKind.FATAL)

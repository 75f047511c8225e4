"""
Main turn loop.

Admit → personalize → run → record → settle.

  - Admission (credits, sign-in) happens before any backend call. A turn
    that is not admitted leaves no trace in the ledger.
  - A turn is debited once, after the reply is recorded, keyed by the run
    id. Failed generation is never billed.
  - A transcript or debit failure after generation is a reconciliation
    warning: the reply is still delivered.
  - Every user-visible failure is an assistant message in the transcript.
"""

import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from ..core import guardrails
from ..core.config import Settings, get_settings
from ..core.errors import (
    InsufficientCredits,
    LedgerUnavailable,
    MicrobialError,
    RunError,
    RunErrorKind,
    TranscriptUnavailable,
)
from ..core.flags import FeatureFlags, get_flags
from ..models.credits import TransactionType
from ..services import llm, prompts, realtime
from ..services.assistants import AssistantsClient
from ..services.credits import CreditLedger, credit_costs
from ..services.personalization import (
    PersonalizationContext,
    PersonalizationResolver,
    build_instructions,
    guidance_text,
    personalize_reply,
)
from .session import AssistantConfig, ConversationSession
from .transcript import Message, ThreadStore, TranscriptStore, new_local_thread_key

logger = logging.getLogger(__name__)

T = TypeVar("T")

LEDGER_UNAVAILABLE_REPLY = "Credits are temporarily unavailable. Please try again in a moment."
IMAGE_SIGN_IN_REPLY = "Please sign in to analyze images."


class TurnStatus(str, Enum):
    COMPLETED = "completed"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    SIGN_IN_REQUIRED = "sign_in_required"
    FAILED = "failed"
    REJECTED = "rejected"


@dataclass
class TurnOutcome:
    status: TurnStatus
    thread_id: Optional[str] = None
    reply: str = ""
    balance: Optional[int] = None
    run_id: Optional[str] = None
    billed: bool = False
    error: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == TurnStatus.COMPLETED

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "thread_id": self.thread_id,
            "reply": self.reply,
            "balance": self.balance,
            "run_id": self.run_id,
            "billed": self.billed,
            "error": self.error,
            "metadata": self.metadata,
        }


VisionFn = Callable[..., Awaitable[str]]


class TurnOrchestrator:
    def __init__(
        self,
        ledger: CreditLedger,
        resolver: PersonalizationResolver,
        client: AssistantsClient,
        transcripts: TranscriptStore,
        threads: ThreadStore,
        settings: Optional[Settings] = None,
        flags: Optional[FeatureFlags] = None,
        vision: Optional[VisionFn] = None,
        rng: Optional[random.Random] = None,
    ):
        self._ledger = ledger
        self._resolver = resolver
        self._client = client
        self._transcripts = transcripts
        self._threads = threads
        self._settings = settings or get_settings()
        self._flags = flags or get_flags()
        self._vision = vision or llm.chat_with_vision
        self._rng = rng
        self._costs = credit_costs()

    def new_session(self) -> ConversationSession:
        return ConversationSession(
            self._client,
            self._threads,
            poll_interval=self._settings.run_poll_interval,
            max_wait=self._settings.run_max_wait,
            cancel_timeout=self._settings.run_cancel_timeout,
        )

    def assistant_config(self, context: PersonalizationContext) -> AssistantConfig:
        return AssistantConfig(
            model=self._settings.assistant_model,
            name=self._settings.assistant_name,
            instructions=build_instructions(context),
            assistant_id=self._settings.assistant_id or None,
        )

    # ── Admission ────────────────────────────────────────────────────

    async def _admit(
        self, user_id: str, cost: int, thread_id: Optional[str]
    ) -> Optional[TurnOutcome]:
        """None when the user may proceed, otherwise the refusal."""
        try:
            await self._ledger.ensure_initialized(user_id)
            if await self._ledger.has_sufficient_balance(user_id, cost):
                return None
            balance = await self._ledger.get_balance(user_id)
        except LedgerUnavailable as e:
            logger.error("Ledger unavailable at admission for %s: %s", user_id, e)
            return TurnOutcome(
                TurnStatus.FAILED,
                thread_id=thread_id,
                reply=LEDGER_UNAVAILABLE_REPLY,
                error=str(e),
            )

        logger.info("User %s has %d credits, needs %d", user_id, balance, cost)
        return TurnOutcome(
            TurnStatus.INSUFFICIENT_CREDITS,
            thread_id=thread_id,
            balance=balance,
            error=str(InsufficientCredits(user_id, cost, balance)),
        )

    async def _settle(
        self,
        user_id: str,
        cost: int,
        tx_type: TransactionType,
        description: str,
        reference: Optional[str],
    ) -> Optional[int]:
        """Debit after a successful generation. Returns the balance, or None if unbilled."""
        try:
            balance = await self._ledger.debit(
                user_id, cost, tx_type, description=description, reference=reference
            )
        except (InsufficientCredits, LedgerUnavailable) as e:
            logger.warning(
                "RECONCILE: %s for user %s (ref=%s) delivered but not billed: %s",
                tx_type.value, user_id, reference, e,
            )
            return None
        await realtime.credits_updated(user_id, balance, tx_type.value)
        return balance

    async def _record(self, thread_id: str, message: Message) -> bool:
        """Append to the transcript. A storage failure is logged, never raised."""
        try:
            await self._transcripts.append(thread_id, message)
        except TranscriptUnavailable as e:
            logger.warning(
                "RECONCILE: %s message not recorded on %s: %s", message.role.value, thread_id, e
            )
            return False
        return True

    async def _writable_thread(self, thread_id: Optional[str], user_id: Optional[str]) -> Optional[str]:
        """thread_id if the caller may write to it, else None."""
        if not thread_id:
            return None
        try:
            record = await self._threads.get(thread_id)
        except TranscriptUnavailable as e:
            logger.warning("Could not check owner of thread %s: %s", thread_id, e)
            return None
        if record is not None and record.user_id and record.user_id != user_id:
            logger.warning("Thread %s belongs to another user, not writing to it", thread_id)
            return None
        return thread_id

    # ── Chat turn ────────────────────────────────────────────────────

    async def _retry_once(self, step: str, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await fn()
        except RunError as e:
            if not e.is_transient:
                raise
            logger.warning("Step '%s' failed transiently (%s), retrying once", step, e)
            return await fn()

    async def handle_turn(
        self,
        text: str,
        user_id: Optional[str] = None,
        thread_id: Optional[str] = None,
    ) -> TurnOutcome:
        start = time.monotonic()

        # 0. Input guardrail
        check = guardrails.check_input(text, user_id)
        if not check.allowed:
            return TurnOutcome(TurnStatus.REJECTED, thread_id=thread_id, error=check.reason)

        cost = self._costs[TransactionType.CHAT_MESSAGE]

        # 1–2. Admission
        if user_id:
            refusal = await self._admit(user_id, cost, thread_id)
            if refusal:
                return refusal
        elif self._resolver.detects_personal_query(text):
            key = await self._writable_thread(thread_id, None) or new_local_thread_key()
            await self._record(key, Message.user(text))
            await self._record(key, Message.assistant(prompts.SIGN_IN_NUDGE))
            return TurnOutcome(
                TurnStatus.SIGN_IN_REQUIRED, thread_id=key, reply=prompts.SIGN_IN_NUDGE
            )

        # 3. Personalization
        context = await self._resolver.resolve(user_id)

        # 4. Backend turn
        session = self.new_session()
        transcript_key = None
        user_recorded = False
        try:
            thread = await self._retry_once(
                "thread", lambda: session.start_or_resume_thread(thread_id, user_id)
            )
            transcript_key = thread.thread_id
            await realtime.chat_started(thread.thread_id, {"message": text[:100]})

            guidance = guidance_text(context)
            try:
                await self._retry_once("guidance", lambda: session.submit_guidance(thread, guidance))
                await self._record(thread.thread_id, Message.guidance(guidance))
            except RunError as e:
                logger.warning("Guidance not delivered on %s, continuing without it: %s", thread.thread_id, e)

            await self._retry_once("message", lambda: session.submit_user_message(thread, text))
            user_recorded = await self._record(thread.thread_id, Message.user(text))

            config = self.assistant_config(context)
            reply = await self._retry_once("run", lambda: session.run_to_completion(thread, config))
            content = session.extract_text(reply)
        except (RunError, TranscriptUnavailable) as e:
            # 5. Failure: apology, no debit
            return await self._fail_turn(transcript_key, text, user_recorded, e, session.run_id)

        # 6. Record the reply, then settle
        checked = guardrails.check_output(content)
        content = checked.modified_text or content
        if self._flags.personalize_replies:
            content = personalize_reply(content, context, self._rng)
        await self._record(thread.thread_id, Message.assistant(content, run_id=session.run_id))

        balance = None
        if user_id:
            balance = await self._settle(
                user_id,
                cost,
                TransactionType.CHAT_MESSAGE,
                "Chat message",
                reference=f"run:{session.run_id}",
            )

        elapsed_ms = int((time.monotonic() - start) * 1000)
        await realtime.chat_completed(thread.thread_id, {"run_id": session.run_id, "elapsed_ms": elapsed_ms})
        logger.info(
            "Turn completed: thread=%s run=%s user=%s billed=%s (%dms)",
            thread.thread_id, session.run_id, user_id or "anonymous", balance is not None, elapsed_ms,
        )
        return TurnOutcome(
            TurnStatus.COMPLETED,
            thread_id=thread.thread_id,
            reply=content,
            balance=balance,
            run_id=session.run_id,
            billed=balance is not None,
            metadata={"degraded_personalization": context.degraded} if context.degraded else {},
        )

    async def _fail_turn(
        self,
        transcript_key: Optional[str],
        text: str,
        user_recorded: bool,
        error: MicrobialError,
        run_id: Optional[str],
    ) -> TurnOutcome:
        # Storage trouble is worth retrying, like a transient backend error
        kind = error.kind if isinstance(error, RunError) else RunErrorKind.TRANSIENT
        logger.error("Turn failed (%s, run=%s): %s", kind.value, run_id, error)
        key = transcript_key or new_local_thread_key()
        if not user_recorded:
            await self._record(key, Message.user(text))
        apology = prompts.TRY_AGAIN_REPLY if kind == RunErrorKind.TRANSIENT else prompts.RUN_FAILED_REPLY
        await self._record(key, Message.assistant(apology, error=kind.value))
        await realtime.chat_error(key, {"error": str(error), "kind": kind.value})
        return TurnOutcome(
            TurnStatus.FAILED,
            thread_id=key,
            reply=apology,
            run_id=run_id,
            error=str(error),
        )

    # ── Image analysis ───────────────────────────────────────────────

    async def handle_image_analysis(
        self,
        user_id: Optional[str],
        image_url: str,
        prompt: Optional[str] = None,
        thread_id: Optional[str] = None,
    ) -> TurnOutcome:
        """
        One-shot vision analysis of an image. Signed-in users only, billed
        at the image analysis cost after the model answers.
        """
        if not self._flags.enable_image_analysis:
            return TurnOutcome(TurnStatus.REJECTED, thread_id=thread_id, error="Image analysis is disabled.")
        if not (image_url or "").strip():
            return TurnOutcome(TurnStatus.REJECTED, thread_id=thread_id, error="Image URL is empty.")
        if not user_id:
            return TurnOutcome(TurnStatus.SIGN_IN_REQUIRED, thread_id=thread_id, reply=IMAGE_SIGN_IN_REPLY)

        cost = self._costs[TransactionType.IMAGE_ANALYSIS]
        refusal = await self._admit(user_id, cost, thread_id)
        if refusal:
            return refusal

        prompt = (prompt or "").strip() or prompts.VISION_DEFAULT_PROMPT
        attachment = {"type": "image", "url": image_url}
        thread_id = await self._writable_thread(thread_id, user_id)
        try:
            analysis = await self._vision(prompt, [image_url], system=prompts.VISION_SYSTEM_PROMPT)
        except RunError as e:
            logger.error("Image analysis failed for %s (%s): %s", user_id, e.kind.value, e)
            apology = prompts.TRY_AGAIN_REPLY if e.is_transient else prompts.RUN_FAILED_REPLY
            if thread_id:
                await self._record(thread_id, Message.user(prompt, attachment=attachment))
                await self._record(thread_id, Message.assistant(apology, error=e.kind.value))
            return TurnOutcome(TurnStatus.FAILED, thread_id=thread_id, reply=apology, error=str(e))

        if thread_id:
            await self._record(thread_id, Message.user(prompt, attachment=attachment))
            await self._record(thread_id, Message.assistant(analysis, kind="image_analysis"))
        balance = await self._settle(
            user_id, cost, TransactionType.IMAGE_ANALYSIS, "Image analysis", reference=None
        )

        return TurnOutcome(
            TurnStatus.COMPLETED,
            thread_id=thread_id,
            reply=analysis,
            balance=balance,
            billed=balance is not None,
        )

import asyncio
import itertools
from collections import defaultdict
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from microbial.core.config import get_settings
from microbial.core.database import create_tables
from microbial.core.errors import ProfileUnavailable, RunError
from microbial.core.flags import get_flags
from microbial.orchestrator.orchestrator import TurnOrchestrator
from microbial.orchestrator.transcript import InMemoryThreadStore, InMemoryTranscriptStore
from microbial.services.credits import CreditLedger
from microbial.services.personalization import PersonalizationResolver
from microbial.services.profiles import Profile


DEFAULT_REPLY = "Binary fission is how bacteria divide. The cell copies its chromosome. Then it splits in two."


class FakeAssistantsClient:
    """In-memory stand-in for the assistants backend."""

    def __init__(self, reply: Optional[str] = DEFAULT_REPLY, statuses=None, last_error=None):
        self.reply = reply
        self.statuses = list(statuses or ["queued", "completed"])
        self.last_error = last_error
        self.calls: list[tuple] = []
        self.threads: dict[str, dict] = {}
        self.messages: dict[str, list[dict]] = defaultdict(list)
        self.runs: dict[str, dict] = {}
        self.cancelled: list[str] = []
        self.failures: dict[str, list[Exception]] = defaultdict(list)
        self.run_started = asyncio.Event()
        self.run_gate: Optional[asyncio.Event] = None
        self.create_gate: Optional[asyncio.Event] = None
        self._ids = itertools.count(1)

    def fail(self, method: str, *errors: Exception) -> None:
        self.failures[method].extend(errors)

    def _record(self, method: str, *args) -> None:
        self.calls.append((method, *args))
        if self.failures[method]:
            raise self.failures[method].pop(0)

    async def create_thread(self, metadata=None):
        self._record("create_thread", metadata)
        thread_id = f"thread_{next(self._ids)}"
        self.threads[thread_id] = {"id": thread_id, "metadata": metadata or {}}
        return self.threads[thread_id]

    async def retrieve_thread(self, thread_id):
        self._record("retrieve_thread", thread_id)
        if thread_id not in self.threads:
            raise RunError(f"Assistants API GET /threads/{thread_id} failed with HTTP 404")
        return self.threads[thread_id]

    async def append_message(self, thread_id, role, content, metadata=None):
        self._record("append_message", thread_id, role, content, metadata)
        message = {
            "id": f"msg_{next(self._ids)}",
            "role": role,
            "content": [{"type": "text", "text": {"value": content}}],
            "metadata": metadata or {},
            "run_id": None,
        }
        self.messages[thread_id].append(message)
        return message

    async def list_messages(self, thread_id, run_id=None, order="desc", limit=20):
        self._record("list_messages", thread_id, run_id)
        found = [m for m in self.messages[thread_id] if not run_id or m["run_id"] == run_id]
        return list(reversed(found)) if order == "desc" else found

    async def get_or_create_assistant(self, model, name, instructions):
        self._record("get_or_create_assistant", model, name)
        return "asst_fake"

    def _advance(self, run: dict) -> dict:
        statuses = run["_statuses"]
        run["status"] = statuses.pop(0) if len(statuses) > 1 else statuses[0]
        if run["status"] == "completed" and not run["_answered"]:
            run["_answered"] = True
            if self.reply is not None:
                self.messages[run["thread_id"]].append({
                    "id": f"msg_{next(self._ids)}",
                    "role": "assistant",
                    "content": [{"type": "text", "text": {"value": self.reply}}],
                    "run_id": run["id"],
                })
        if run["status"] == "failed":
            run["last_error"] = self.last_error
        return {k: v for k, v in run.items() if not k.startswith("_")}

    async def create_run(self, thread_id, assistant_id, instructions=None, model=None):
        self._record("create_run", thread_id, assistant_id, instructions)
        if self.create_gate is not None:
            await self.create_gate.wait()
        run = {
            "id": f"run_{next(self._ids)}",
            "thread_id": thread_id,
            "instructions": instructions,
            "_statuses": list(self.statuses),
            "_answered": False,
        }
        self.runs[run["id"]] = run
        self.run_started.set()
        return self._advance(run)

    async def get_run(self, thread_id, run_id):
        self._record("get_run", thread_id, run_id)
        if self.run_gate is not None:
            await self.run_gate.wait()
        return self._advance(self.runs[run_id])

    async def cancel_run(self, thread_id, run_id):
        self._record("cancel_run", thread_id, run_id)
        self.cancelled.append(run_id)
        return {"id": run_id, "status": "cancelling"}

    def count(self, method: str) -> int:
        return sum(1 for c in self.calls if c[0] == method)


class FakeProfileStore:
    def __init__(self, profiles=None, broken: bool = False):
        self.profiles = {p.user_id: p for p in (profiles or [])}
        self.broken = broken

    async def get_profile(self, user_id):
        if self.broken:
            raise ProfileUnavailable("profile store is down")
        return self.profiles.get(user_id)


class FakeRng:
    """random.Random stand-in with fixed answers."""

    def __init__(self, value: float = 0.9, pick: int = 0):
        self.value = value
        self.pick = pick

    def random(self):
        return self.value

    def choice(self, items):
        return items[self.pick]


# ── Fixtures ─────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'microbial.db'}",
        connect_args={"timeout": 30},
    )
    await create_tables(engine)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def ledger(session_factory):
    return CreditLedger(session_factory, default_credits=20, base_delay=0.001)


@pytest.fixture
def transcripts():
    return InMemoryTranscriptStore()


@pytest.fixture
def threads():
    return InMemoryThreadStore()


@pytest.fixture
def assistants():
    return FakeAssistantsClient()


@pytest.fixture
def alice():
    return Profile(
        user_id="alice",
        display_name="Alice",
        expertise_level="advanced",
        interests=["antibiotic resistance"],
        preferred_topics=["Medical microbiology"],
    )


@pytest.fixture
def profiles(alice):
    return FakeProfileStore([alice])


@pytest.fixture
def test_settings():
    return get_settings().model_copy(update={
        "run_poll_interval": 0.0,
        "run_max_wait": 2.0,
        "run_cancel_timeout": 0.5,
        "assistant_id": "",
    })


@pytest.fixture
def test_flags():
    return get_flags().model_copy(update={
        "use_redis": False,
        "personalize_replies": False,
        "enable_image_analysis": True,
    })


@pytest.fixture
def make_orchestrator(ledger, profiles, assistants, transcripts, threads, test_settings, test_flags):
    def _make(**overrides) -> TurnOrchestrator:
        settings = test_settings.model_copy(update=overrides.pop("settings", {}))
        flags = test_flags.model_copy(update=overrides.pop("flags", {}))
        return TurnOrchestrator(
            ledger=overrides.pop("ledger", ledger),
            resolver=PersonalizationResolver(overrides.pop("profiles", profiles)),
            client=overrides.pop("client", assistants),
            transcripts=overrides.pop("transcripts", transcripts),
            threads=overrides.pop("threads", threads),
            settings=settings,
            flags=flags,
            **overrides,
        )

    return _make

import asyncio

import pytest

from conftest import FakeAssistantsClient
from microbial.core.errors import EmptyResponse, RunError, RunErrorKind
from microbial.orchestrator.session import (
    NO_RESPONSE_TEXT,
    AssistantConfig,
    ConversationSession,
    EmptyReply,
    ErrorReply,
    SessionState,
    TextReply,
    ThreadHandle,
    parse_reply,
)
from microbial.orchestrator.transcript import InMemoryThreadStore, new_local_thread_key

CONFIG = AssistantConfig(model="gpt-4o-mini", name="Microbial AI", instructions="Be helpful.")


def _assistant(text, run_id="run_1", msg_id="msg_9"):
    return {
        "id": msg_id,
        "role": "assistant",
        "run_id": run_id,
        "content": [{"type": "text", "text": {"value": text}}],
    }


# ── parse_reply ──────────────────────────────────────────────────────

def test_parse_reply_takes_newest_assistant_text():
    messages = [_assistant("Newest", msg_id="m2"), _assistant("Older", msg_id="m1")]

    reply = parse_reply(messages, "run_1")

    assert reply == TextReply(text="Newest", run_id="run_1", message_id="m2")


def test_parse_reply_skips_other_runs_and_user_messages():
    messages = [
        {"role": "user", "content": [{"type": "text", "text": {"value": "hi"}}]},
        _assistant("From another run", run_id="run_0"),
    ]

    assert parse_reply(messages, "run_1") == EmptyReply("run_1")


def test_parse_reply_joins_text_parts():
    message = _assistant("Part one")
    message["content"].append({"type": "image_file", "image_file": {"file_id": "f"}})
    message["content"].append({"type": "text", "text": {"value": "Part two"}})

    assert parse_reply([message], "run_1").text == "Part one\n\nPart two"


@pytest.mark.parametrize("text", [NO_RESPONSE_TEXT, "   ", ""])
def test_parse_reply_placeholder_is_empty(text):
    assert isinstance(parse_reply([_assistant(text)], "run_1"), EmptyReply)


def test_parse_reply_malformed_content():
    message = {"role": "assistant", "run_id": "run_1", "content": "not a list"}

    reply = parse_reply([message], "run_1")

    assert isinstance(reply, ErrorReply)


# ── Thread lifecycle ─────────────────────────────────────────────────

@pytest.fixture
def client():
    return FakeAssistantsClient()


@pytest.fixture
def thread_store():
    return InMemoryThreadStore()


@pytest.fixture
def session(client, thread_store):
    return ConversationSession(client, thread_store, poll_interval=0.0, max_wait=1.0, cancel_timeout=0.5)


@pytest.mark.asyncio
async def test_new_thread_is_created_and_saved(session, client, thread_store):
    handle = await session.start_or_resume_thread(user_id="u1")

    assert handle.created is True
    assert session.state == SessionState.THREAD_READY
    assert client.threads[handle.thread_id]["metadata"] == {"user_id": "u1"}
    assert (await thread_store.get(handle.thread_id)).user_id == "u1"


@pytest.mark.asyncio
async def test_existing_thread_is_resumed(session, client):
    existing = await client.create_thread()

    handle = await session.start_or_resume_thread(existing["id"])

    assert handle.thread_id == existing["id"]
    assert handle.created is False


@pytest.mark.asyncio
async def test_unknown_or_local_thread_starts_fresh(client, thread_store):
    for thread_id in ("thread_missing", new_local_thread_key()):
        session = ConversationSession(client, thread_store)
        handle = await session.start_or_resume_thread(thread_id)
        assert handle.created is True
        assert handle.thread_id != thread_id


@pytest.mark.asyncio
async def test_transient_retrieve_error_propagates(session, client):
    client.fail("retrieve_thread", RunError("503", RunErrorKind.TRANSIENT))

    with pytest.raises(RunError) as exc:
        await session.start_or_resume_thread("thread_1")
    assert exc.value.is_transient


# ── Messages ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_guidance_is_tagged(session, client):
    handle = await session.start_or_resume_thread()

    await session.submit_guidance(handle, "User is a beginner.")

    sent = client.messages[handle.thread_id][-1]
    assert sent["role"] == "user"
    assert sent["metadata"] == {"kind": "system_guidance"}
    assert sent["content"][0]["text"]["value"] == "[SYSTEM GUIDANCE: User is a beginner.]"
    assert session.state == SessionState.GUIDANCE_SENT


@pytest.mark.asyncio
async def test_empty_guidance_is_a_no_op(session, client):
    handle = await session.start_or_resume_thread()

    await session.submit_guidance(handle, "  ")

    assert client.count("append_message") == 0
    assert session.state == SessionState.THREAD_READY


@pytest.mark.asyncio
async def test_out_of_order_step_is_rejected(session):
    with pytest.raises(RuntimeError):
        await session.submit_user_message(ThreadHandle("thread_x"), "hello")


# ── Runs ─────────────────────────────────────────────────────────────

async def _ready(session):
    handle = await session.start_or_resume_thread()
    await session.submit_user_message(handle, "What is a prion?")
    return handle


@pytest.mark.asyncio
async def test_run_to_completion_returns_text(session, client):
    handle = await _ready(session)

    reply = await session.run_to_completion(handle, CONFIG)

    assert isinstance(reply, TextReply)
    assert session.extract_text(reply) == client.reply
    assert session.state == SessionState.RESPONSE_EXTRACTED
    assert session.run_id == reply.run_id


@pytest.mark.asyncio
async def test_configured_assistant_id_skips_creation(session, client):
    handle = await _ready(session)
    config = AssistantConfig(model="m", name="n", instructions="i", assistant_id="asst_cfg")

    await session.run_to_completion(handle, config)

    assert client.count("get_or_create_assistant") == 0
    create = next(c for c in client.calls if c[0] == "create_run")
    assert create[2] == "asst_cfg"


@pytest.mark.asyncio
@pytest.mark.parametrize("code,kind", [
    ("rate_limit_exceeded", RunErrorKind.TRANSIENT),
    ("server_error", RunErrorKind.TRANSIENT),
    ("invalid_prompt", RunErrorKind.FATAL),
])
async def test_failed_run_maps_error_kind(thread_store, code, kind):
    client = FakeAssistantsClient(statuses=["queued", "failed"], last_error={"code": code, "message": "x"})
    session = ConversationSession(client, thread_store, poll_interval=0.0)
    handle = await _ready(session)

    with pytest.raises(RunError) as exc:
        await session.run_to_completion(handle, CONFIG)

    assert exc.value.kind == kind
    assert session.state == SessionState.RUN_FAILED


@pytest.mark.asyncio
async def test_expired_run_is_transient(thread_store):
    client = FakeAssistantsClient(statuses=["queued", "expired"])
    session = ConversationSession(client, thread_store, poll_interval=0.0)
    handle = await _ready(session)

    with pytest.raises(RunError) as exc:
        await session.run_to_completion(handle, CONFIG)
    assert exc.value.is_transient


@pytest.mark.asyncio
async def test_requires_action_is_cancelled_and_fatal(thread_store):
    client = FakeAssistantsClient(statuses=["queued", "requires_action"])
    session = ConversationSession(client, thread_store, poll_interval=0.0)
    handle = await _ready(session)

    with pytest.raises(RunError) as exc:
        await session.run_to_completion(handle, CONFIG)

    assert exc.value.kind == RunErrorKind.FATAL
    assert client.cancelled == [session.run_id]


@pytest.mark.asyncio
async def test_run_timeout_is_transient_and_cancels(thread_store):
    client = FakeAssistantsClient(statuses=["queued", "in_progress"])
    session = ConversationSession(client, thread_store, poll_interval=0.01, max_wait=0.05)
    handle = await _ready(session)

    with pytest.raises(RunError) as exc:
        await session.run_to_completion(handle, CONFIG)

    assert exc.value.is_transient
    assert session.state == SessionState.RUN_TIMED_OUT
    assert client.cancelled == [session.run_id]


@pytest.mark.asyncio
async def test_timed_out_run_can_be_started_again(thread_store):
    client = FakeAssistantsClient(statuses=["queued", "in_progress"])
    session = ConversationSession(client, thread_store, poll_interval=0.01, max_wait=0.05)
    handle = await _ready(session)
    with pytest.raises(RunError):
        await session.run_to_completion(handle, CONFIG)

    client.statuses = ["queued", "completed"]
    reply = await session.run_to_completion(handle, CONFIG)

    assert isinstance(reply, TextReply)
    assert client.count("create_run") == 2


@pytest.mark.asyncio
async def test_cancelling_the_turn_cancels_the_run(thread_store):
    client = FakeAssistantsClient(statuses=["queued", "in_progress"])
    session = ConversationSession(client, thread_store, poll_interval=0.01, max_wait=30.0)
    handle = await _ready(session)

    task = asyncio.create_task(session.run_to_completion(handle, CONFIG))
    await client.run_started.wait()
    await asyncio.sleep(0.03)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert client.cancelled == [session.run_id]


@pytest.mark.asyncio
async def test_empty_reply_raises_empty_response(thread_store):
    client = FakeAssistantsClient(reply=None)
    session = ConversationSession(client, thread_store, poll_interval=0.0)
    handle = await _ready(session)

    reply = await session.run_to_completion(handle, CONFIG)

    assert isinstance(reply, EmptyReply)
    with pytest.raises(EmptyResponse):
        session.extract_text(reply)
    assert session.state == SessionState.RUN_FAILED


@pytest.mark.asyncio
async def test_hung_poll_still_honours_max_wait(thread_store):
    client = FakeAssistantsClient(statuses=["queued", "in_progress"])
    client.run_gate = asyncio.Event()  # get_run never answers
    session = ConversationSession(client, thread_store, poll_interval=0.01, max_wait=0.2, cancel_timeout=0.5)
    handle = await _ready(session)
    loop = asyncio.get_running_loop()

    started = loop.time()
    with pytest.raises(RunError) as exc:
        await session.run_to_completion(handle, CONFIG)

    assert loop.time() - started < 1.0
    assert exc.value.is_transient
    assert session.state == SessionState.RUN_TIMED_OUT
    assert client.cancelled == [session.run_id]


@pytest.mark.asyncio
async def test_cancel_during_run_creation_cancels_the_created_run(thread_store):
    client = FakeAssistantsClient()
    client.create_gate = asyncio.Event()
    session = ConversationSession(client, thread_store, poll_interval=0.0, cancel_timeout=1.0)
    handle = await _ready(session)

    task = asyncio.create_task(session.run_to_completion(handle, CONFIG))
    while client.count("create_run") == 0:
        await asyncio.sleep(0)
    task.cancel()
    client.create_gate.set()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert client.cancelled == list(client.runs)
    assert session.run_id in client.cancelled


# ── Ownership ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_thread_owned_by_someone_else_is_not_resumed(client, thread_store):
    owner = ConversationSession(client, thread_store)
    owned = await owner.start_or_resume_thread(user_id="alice")

    intruder = ConversationSession(client, thread_store)
    handle = await intruder.start_or_resume_thread(owned.thread_id, user_id="bob")

    assert handle.created is True
    assert handle.thread_id != owned.thread_id
    assert client.count("retrieve_thread") == 0
    assert (await thread_store.get(owned.thread_id)).user_id == "alice"


@pytest.mark.asyncio
async def test_owner_resumes_own_thread(client, thread_store):
    first = await ConversationSession(client, thread_store).start_or_resume_thread(user_id="alice")

    again = await ConversationSession(client, thread_store).start_or_resume_thread(first.thread_id, "alice")

    assert again.thread_id == first.thread_id
    assert again.created is False

"""
OpenAI Assistants v2 client (threads, messages, runs).

One long-lived instance is created at startup and injected into every
ConversationSession. Errors are mapped onto RunError:
  - 429 / 5xx / timeouts / connection errors → transient
  - other 4xx, missing API key → fatal

Reads are retried with backoff. Creating calls (messages, runs) are never
replayed here; the orchestrator decides whether to retry a step once.
"""

import asyncio
import logging
from typing import Any, Optional

import httpx

from ..core.config import get_settings
from ..core.errors import RunError, RunErrorKind
from .openai_http import RETRYABLE_STATUS, auth_headers, get_client, request_with_retry

logger = logging.getLogger(__name__)

ASSISTANTS_BETA_HEADER = {"OpenAI-Beta": "assistants=v2"}


class AssistantsClient:
    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        http: Optional[httpx.AsyncClient] = None,
        read_retries: int = 2,
    ):
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._http = http
        self._read_retries = read_retries
        self._assistants: dict[tuple[str, str], str] = {}
        self._assistant_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls) -> "AssistantsClient":
        settings = get_settings()
        return cls(api_key=settings.openai_api_key, base_url=settings.openai_base_url)

    @property
    def http(self) -> httpx.AsyncClient:
        return self._http or get_client()

    async def _call(
        self,
        method: str,
        path: str,
        retries: int = 0,
        **kwargs,
    ) -> dict:
        if not self._api_key:
            raise RunError("No API key for OpenAI. Set OPENAI_API_KEY.", RunErrorKind.FATAL)

        url = f"{self._base_url}{path}"
        headers = auth_headers(self._api_key, ASSISTANTS_BETA_HEADER)
        try:
            resp = await request_with_retry(
                self.http, method, url, max_retries=retries, headers=headers, **kwargs
            )
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            kind = RunErrorKind.TRANSIENT if status in RETRYABLE_STATUS else RunErrorKind.FATAL
            raise RunError(f"Assistants API {method} {path} failed with HTTP {status}", kind) from e
        except httpx.TransportError as e:
            raise RunError(
                f"Assistants API {method} {path} transport error: {e}", RunErrorKind.TRANSIENT
            ) from e

        try:
            return resp.json()
        except ValueError as e:
            raise RunError(f"Assistants API {method} {path} returned invalid JSON") from e

    # ── Threads ──────────────────────────────────────────────────────

    async def create_thread(self, metadata: Optional[dict] = None) -> dict:
        body: dict[str, Any] = {}
        if metadata:
            body["metadata"] = metadata
        thread = await self._call("POST", "/threads", json=body)
        logger.info("Assistants: created thread %s", thread.get("id"))
        return thread

    async def retrieve_thread(self, thread_id: str) -> dict:
        return await self._call("GET", f"/threads/{thread_id}", retries=self._read_retries)

    # ── Messages ─────────────────────────────────────────────────────

    async def append_message(
        self,
        thread_id: str,
        role: str,
        content: str,
        metadata: Optional[dict] = None,
    ) -> dict:
        body: dict[str, Any] = {"role": role, "content": content}
        if metadata:
            body["metadata"] = metadata
        return await self._call("POST", f"/threads/{thread_id}/messages", json=body)

    async def list_messages(
        self,
        thread_id: str,
        run_id: Optional[str] = None,
        order: str = "desc",
        limit: int = 20,
    ) -> list[dict]:
        params: dict[str, Any] = {"order": order, "limit": limit}
        if run_id:
            params["run_id"] = run_id
        data = await self._call(
            "GET", f"/threads/{thread_id}/messages", retries=self._read_retries, params=params
        )
        return list(data.get("data") or [])

    # ── Assistants ───────────────────────────────────────────────────

    async def create_assistant(self, model: str, name: str, instructions: str) -> dict:
        return await self._call(
            "POST",
            "/assistants",
            json={"model": model, "name": name, "instructions": instructions, "tools": []},
        )

    async def get_or_create_assistant(self, model: str, name: str, instructions: str) -> str:
        """One assistant per (model, name) for the life of the process."""
        key = (model, name)
        async with self._assistant_lock:
            if key not in self._assistants:
                assistant = await self.create_assistant(model, name, instructions)
                self._assistants[key] = assistant["id"]
                logger.info("Assistants: created assistant %s (%s)", assistant["id"], model)
            return self._assistants[key]

    # ── Runs ─────────────────────────────────────────────────────────

    async def create_run(
        self,
        thread_id: str,
        assistant_id: str,
        instructions: Optional[str] = None,
        model: Optional[str] = None,
    ) -> dict:
        body: dict[str, Any] = {"assistant_id": assistant_id}
        if instructions:
            body["instructions"] = instructions
        if model:
            body["model"] = model
        return await self._call("POST", f"/threads/{thread_id}/runs", json=body)

    async def get_run(self, thread_id: str, run_id: str) -> dict:
        return await self._call(
            "GET", f"/threads/{thread_id}/runs/{run_id}", retries=self._read_retries
        )

    async def cancel_run(self, thread_id: str, run_id: str) -> dict:
        return await self._call("POST", f"/threads/{thread_id}/runs/{run_id}/cancel")

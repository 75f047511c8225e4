"""
Chat completions client. Used for one-shot image analysis.

Conversation turns go through the assistants thread/run API instead
(see services/assistants.py).
"""

import logging
import time
from typing import Any, Optional

import httpx

from ..core.config import get_settings
from ..core.errors import EmptyResponse, RunError, RunErrorKind
from .openai_http import RETRYABLE_STATUS, auth_headers, get_client, request_with_retry

logger = logging.getLogger(__name__)


async def chat(
    messages: list[dict],
    model: Optional[str] = None,
    temperature: float = 0.4,
    max_tokens: Optional[int] = None,
) -> dict:
    """
    Chat completion with retry.
    Returns the full API response as dict. Raises RunError on failure.
    """
    settings = get_settings()
    if not settings.openai_api_key:
        raise RunError("No API key for OpenAI. Set OPENAI_API_KEY.", RunErrorKind.FATAL)

    payload: dict[str, Any] = {
        "model": model or settings.vision_model,
        "messages": messages,
        "temperature": temperature,
        "max_tokens": max_tokens or settings.vision_max_tokens,
    }
    url = f"{settings.openai_base_url.rstrip('/')}/chat/completions"

    start = time.monotonic()
    try:
        resp = await request_with_retry(get_client(), "POST", url, json=payload, headers=auth_headers())
    except httpx.HTTPStatusError as e:
        status = e.response.status_code
        kind = RunErrorKind.TRANSIENT if status in RETRYABLE_STATUS else RunErrorKind.FATAL
        raise RunError(f"Chat completion failed with HTTP {status}", kind) from e
    except httpx.TransportError as e:
        raise RunError(f"Chat completion transport error: {e}", RunErrorKind.TRANSIENT) from e

    data = resp.json()
    usage = data.get("usage", {})
    logger.info(
        "LLM chat: %dms | in=%d out=%d tokens | model=%s",
        int((time.monotonic() - start) * 1000),
        usage.get("prompt_tokens", 0),
        usage.get("completion_tokens", 0),
        payload["model"],
    )
    return data


async def chat_with_vision(
    prompt: str,
    image_urls: list[str],
    system: str = "",
    model: Optional[str] = None,
    max_tokens: Optional[int] = None,
) -> str:
    """Chat with image inputs (vision). Returns string response."""
    content: list[dict] = [{"type": "text", "text": prompt}]
    for url in image_urls:
        content.append({"type": "image_url", "image_url": {"url": url}})

    messages = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": content})

    response = await chat(messages=messages, model=model, max_tokens=max_tokens)
    choices = response.get("choices") or []
    text = ((choices[0].get("message") or {}).get("content") if choices else "") or ""
    if not text.strip():
        raise EmptyResponse("Vision model returned no text")
    return text

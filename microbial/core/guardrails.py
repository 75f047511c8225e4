"""
Guardrails — input/output validation around a conversation turn.

Layers:
  1. Input validation (empty, length). Rejected turns record nothing.
  2. Injection heuristics. Logged only, the assistant instructions handle it.
  3. Output validation (length, instruction leakage).
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

# ── Configuration ─────────────────────────────────────────────────────

MAX_MESSAGE_LENGTH = 10000
MAX_RESPONSE_LENGTH = 50000

_INJECTION_PATTERNS = [
    re.compile(p)
    for p in (
        r"ignore\s+(all\s+)?previous\s+instructions",
        r"disregard\s+(all\s+)?previous",
        r"you\s+are\s+now\s+(?:a|an)\s+",
        r"\[\s*system\s+guidance\s*:",
        r"<\s*system\s*>",
    )
]

_LEAK_INDICATORS = [
    "user personalization information",
    "[system guidance:",
    "important guidelines:",
]


@dataclass
class GuardrailResult:
    """Result of a guardrail check."""
    allowed: bool
    reason: Optional[str] = None
    modified_text: Optional[str] = None


# ── Input ─────────────────────────────────────────────────────────────

def check_input(message: str, user_id: Optional[str] = None) -> GuardrailResult:
    """
    Validate user input before a turn is admitted.
    Returns allowed=False with a user-facing reason when blocked.
    """
    if not (message or "").strip():
        return GuardrailResult(allowed=False, reason="Message is empty.")

    if len(message) > MAX_MESSAGE_LENGTH:
        return GuardrailResult(
            allowed=False,
            reason=f"Message too long ({len(message)} chars). Maximum is {MAX_MESSAGE_LENGTH}.",
        )

    lowered = message.lower()
    for pattern in _INJECTION_PATTERNS:
        if pattern.search(lowered):
            logger.warning(
                "Potential injection from user=%s: %s", user_id or "anonymous", message[:100]
            )
            break

    return GuardrailResult(allowed=True)


# ── Output ────────────────────────────────────────────────────────────

def check_output(response: str) -> GuardrailResult:
    """Validate assistant output before it is delivered."""
    if len(response) > MAX_RESPONSE_LENGTH:
        return GuardrailResult(
            allowed=True,
            modified_text=response[:MAX_RESPONSE_LENGTH] + "\n\n[Response truncated due to length]",
        )

    lowered = response.lower()
    for indicator in _LEAK_INDICATORS:
        if indicator in lowered:
            logger.warning("Possible instruction leak detected in assistant output")
            break

    return GuardrailResult(allowed=True)

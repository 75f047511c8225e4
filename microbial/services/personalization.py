"""
Personalization — turn a user profile into a short briefing for the assistant.

Used by the orchestrator on every turn:
  - resolve(): profile → PersonalizationContext (recomputed per turn)
  - detects_personal_query(): pre-admission guard for anonymous users
  - build_instructions() / guidance_text(): what the assistant is told
  - personalize_reply(): optional cosmetic lead-in, never affects billing
"""

import logging
import random
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from ..core.errors import ProfileUnavailable
from . import prompts
from .profiles import Profile, ProfileStore

logger = logging.getLogger(__name__)

NOT_AUTHENTICATED_CONTEXT = (
    "The user is not signed in, so no profile information is available."
)
NO_PROFILE_CONTEXT = "User is authenticated but no profile data is available."

_PERSONAL_QUERY_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\bmy\s+(name|age|location|background|profile|interests|preferences|info|information)\b",
        r"\bwho\s+(am\s+i|i\s+am)\b",
        r"\babout\s+me\b",
        r"\b(tell|know)\s+.*\s+me\b",
        r"\bmy\s+.*\s+(likes?|interests?|preferences?|background|history|profile)\b",
        r"\bdo\s+you\s+(know|remember)\s+me\b",
        r"\b(what|how)\s+.*\s+i\s+(like|prefer|interested\s+in)\b",
    )
]

MICROBIOLOGY_SUBFIELDS = [
    "bacteriology",
    "mycology",
    "virology",
    "parasitology",
    "immunology",
    "microbial genetics",
    "microbial ecology",
    "microbial physiology",
    "microbial biotechnology",
    "environmental microbiology",
    "food microbiology",
    "industrial microbiology",
    "medical microbiology",
    "pharmaceutical microbiology",
    "veterinary microbiology",
    "agricultural microbiology",
    "microbial genomics",
    "proteomics",
]


@dataclass
class PersonalizationContext:
    """Derived per turn from the profile. Never persisted."""
    is_authenticated: bool
    text: str
    user_id: Optional[str] = None
    display_name: str = ""
    expertise_level: str = ""
    interests: list[str] = field(default_factory=list)
    preferred_topics: list[str] = field(default_factory=list)
    degraded: bool = False  # profile store failed; rendered as anonymous


def _clean(items: Optional[list]) -> list[str]:
    return [str(i).strip() for i in (items or []) if str(i).strip()]


def _sentence(text: str) -> str:
    text = text.strip()
    if not text:
        return ""
    return text if text[-1] in ".!?" else text + "."


def _format_date(value: datetime) -> str:
    return f"{value:%B} {value.day}, {value.year}"


def render_profile(profile: Profile) -> str:
    """Concatenate the profile clauses. Empty fields are skipped entirely."""
    clauses = []

    name = (profile.display_name or "").strip()
    if name:
        clauses.append(f"This conversation is with {name}.")

    level = (profile.expertise_level or "").strip()
    if level:
        clauses.append(f"Their expertise level in microbiology is {level}.")
    else:
        clauses.append("Their expertise level in microbiology is not specified.")

    interests = _clean(profile.interests)
    if interests:
        clauses.append(f"Their interests include: {', '.join(interests)}.")

    topics = _clean(profile.preferred_topics)
    if topics:
        clauses.append(f"Their preferred microbiology topics include: {', '.join(topics)}.")

    if profile.last_login:
        clauses.append(f"Their last interaction was on {_format_date(profile.last_login)}.")

    notes = _sentence(profile.notes or "")
    if notes:
        clauses.append(f"Additional context: {notes}")

    return " ".join(clauses)


def anonymous_context(user_id: Optional[str] = None, degraded: bool = False) -> PersonalizationContext:
    return PersonalizationContext(
        is_authenticated=False,
        text=NOT_AUTHENTICATED_CONTEXT,
        user_id=user_id,
        degraded=degraded,
    )


def detects_personal_query(text: str) -> bool:
    """True when the text asks about the user's own identity or preferences."""
    return any(p.search(text or "") for p in _PERSONAL_QUERY_PATTERNS)


class PersonalizationResolver:
    def __init__(self, profiles: ProfileStore):
        self._profiles = profiles

    detects_personal_query = staticmethod(detects_personal_query)

    async def resolve(self, user_id: Optional[str]) -> PersonalizationContext:
        if not user_id:
            return anonymous_context()

        try:
            profile = await self._profiles.get_profile(user_id)
        except ProfileUnavailable as e:
            logger.warning("Profile unavailable for %s, personalization degraded: %s", user_id, e)
            return anonymous_context(user_id=user_id, degraded=True)

        if profile is None:
            return PersonalizationContext(
                is_authenticated=True,
                text=NO_PROFILE_CONTEXT,
                user_id=user_id,
            )

        return PersonalizationContext(
            is_authenticated=True,
            text=render_profile(profile),
            user_id=user_id,
            display_name=(profile.display_name or "").strip(),
            expertise_level=(profile.expertise_level or "").strip(),
            interests=_clean(profile.interests),
            preferred_topics=_clean(profile.preferred_topics),
        )


# ── Assistant instructions ───────────────────────────────────────────

def build_instructions(context: PersonalizationContext, now: Optional[datetime] = None) -> str:
    """Base instructions plus a personalization section for signed-in users."""
    now = now or datetime.now(timezone.utc)
    instructions = prompts.ASSISTANT_BASE_INSTRUCTIONS.format(now=now.strftime("%m/%d/%Y, %I:%M:%S %p"))

    if context.is_authenticated:
        lines = ["\n\n**USER PERSONALIZATION INFORMATION**:"]
        if context.display_name:
            lines.append(
                f"- You are speaking with {context.display_name}. "
                "Address them by name occasionally in your responses."
            )
        if context.interests:
            lines.append(
                f"- Their areas of interest include: {', '.join(context.interests)}. "
                "Prioritize these topics when relevant."
            )
        if context.preferred_topics:
            lines.append(
                "- They have expressed specific interest in these microbiology topics: "
                f"{', '.join(context.preferred_topics)}. Use examples from these areas when possible."
            )
        if context.text:
            lines.append(f"- Additional user context: {context.text}")
        lines.append(
            "\nIncorporate this personalization subtly into your responses without explicitly "
            "mentioning that you're using their profile data."
        )
        instructions += "\n".join(lines)

    return instructions + prompts.ASSISTANT_CLOSING


def guidance_text(context: PersonalizationContext) -> str:
    """Hidden guidance payload submitted to the thread ahead of the user's message."""
    if context.is_authenticated:
        return f"{prompts.GUIDANCE_PREAMBLE} {context.text}\n\n{prompts.AUTHENTICATED_GUIDELINES}"
    return f"{prompts.GUIDANCE_PREAMBLE} {context.text} {prompts.ANONYMOUS_GUIDELINES}"


# ── Cosmetic reply personalization ───────────────────────────────────

def _preferred_subfield(topics: list[str]) -> str:
    for topic in topics:
        lowered = topic.lower()
        if any(sub in lowered for sub in MICROBIOLOGY_SUBFIELDS):
            return topic
    return "microbiology"


def personalize_reply(
    text: str,
    context: PersonalizationContext,
    rng: Optional[random.Random] = None,
) -> str:
    """
    Sometimes splice a personalized lead-in into the second sentence.
    Single-sentence replies and replies already naming the user are left alone.
    """
    if not context.is_authenticated or not context.display_name:
        return text
    if context.display_name in text or ". " not in text:
        return text

    rng = rng or random
    if rng.random() <= 0.5:
        return text

    topic = _preferred_subfield(context.preferred_topics)
    lead_ins = [
        f"{context.display_name}, ",
        f"As you're interested in {topic}, ",
        f"Given your {context.expertise_level or 'intermediate'} expertise in microbiology, ",
        f"Considering your interest in {topic}, ",
    ]
    lead_in = rng.choice(lead_ins)

    sentences = text.split(". ")
    second = sentences[1]
    if not second:
        return text
    sentences[1] = lead_in + second[0].lower() + second[1:]
    return ". ".join(sentences)

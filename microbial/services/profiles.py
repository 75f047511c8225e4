"""
Profile store — read-only access to user profiles for personalization.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.errors import ProfileUnavailable
from ..models.profile import UserProfile

logger = logging.getLogger(__name__)


@dataclass
class Profile:
    user_id: str
    display_name: str = ""
    email: str = ""
    expertise_level: str = ""
    interests: list[str] = field(default_factory=list)
    preferred_topics: list[str] = field(default_factory=list)
    notes: str = ""
    last_login: Optional[datetime] = None


class ProfileStore(Protocol):
    async def get_profile(self, user_id: str) -> Optional[Profile]:
        """Return the profile, None if not found. Raises ProfileUnavailable on store failure."""
        ...


class SqlProfileStore:
    """ProfileStore backed by the user_profiles table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_profile(self, user_id: str) -> Optional[Profile]:
        try:
            async with self._session_factory() as session:
                row = await session.scalar(
                    select(UserProfile).where(UserProfile.user_id == user_id)
                )
        except SQLAlchemyError as e:
            raise ProfileUnavailable(f"Profile lookup failed for {user_id}: {e}") from e

        if row is None:
            return None

        return Profile(
            user_id=row.user_id,
            display_name=row.display_name or "",
            email=row.email or "",
            expertise_level=row.expertise_level or "",
            interests=list(row.interests or []),
            preferred_topics=list(row.preferred_topics or []),
            notes=row.notes or "",
            last_login=row.last_login,
        )

"""
User profiles. Read by personalization on every turn.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, Text, JSON, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from .base import RecordBase


class UserProfile(RecordBase):
    __tablename__ = "user_profiles"

    user_id: Mapped[str] = mapped_column(String, unique=True, nullable=False, index=True)
    email: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    display_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    expertise_level: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    interests: Mapped[list] = mapped_column(JSON, nullable=True, default=list)
    preferred_topics: Mapped[list] = mapped_column(JSON, nullable=True, default=list)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_login: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

"""
All database models. Imported here so Base.metadata sees them for create_all().
"""

from .base import RecordBase
from .credits import CreditAccount, CreditTransaction, TransactionType
from .profile import UserProfile
from .conversation import ConversationThread, TranscriptMessage

__all__ = [
    "RecordBase",
    "CreditAccount", "CreditTransaction", "TransactionType",
    "UserProfile",
    "ConversationThread", "TranscriptMessage",
]

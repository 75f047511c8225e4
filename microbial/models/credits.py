"""
Credit ledger persistence.

One account row per user holding the cached balance, plus an append-only
transaction table. The transactions are the source of truth: for every
account, balance == sum(amount).
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base
from .base import utcnow


class TransactionType(str, Enum):
    """Closed set of ledger entry kinds."""
    WELCOME_BONUS = "welcome_bonus"
    PURCHASE = "purchase"
    CHAT_MESSAGE = "chat_message"
    IMAGE_ANALYSIS = "image_analysis"
    CONFERENCE_HOSTING = "conference_hosting"
    ADMIN_GIFT = "admin_gift"
    ADMIN_BULK_GIFT = "admin_bulk_gift"


class CreditAccount(Base):
    __tablename__ = "credit_accounts"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_credit_accounts_balance_non_negative"),
    )

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )


class CreditTransaction(Base):
    __tablename__ = "credit_transactions"
    __table_args__ = (
        # Idempotency: a payment reference or run id is applied at most once per user
        UniqueConstraint("user_id", "reference", name="uq_credit_transactions_reference"),
    )

    # Integer id gives a stable newest-first order for history pagination
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String, ForeignKey("credit_accounts.user_id"), nullable=False, index=True
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    reference: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "amount": self.amount,
            "type": self.type,
            "description": self.description,
            "reference": self.reference,
            "timestamp": self.created_at.isoformat() if self.created_at else "",
        }

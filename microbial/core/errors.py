"""
Error taxonomy for a conversation turn.

Admission errors stop a turn before any external call. Generation errors
are never billed. Settlement errors never hide a reply already produced.
"""

from enum import Enum


class MicrobialError(Exception):
    """Base class for all domain errors."""


class InsufficientCredits(MicrobialError):
    """The account cannot cover the cost of an action."""

    def __init__(self, user_id: str, cost: int, balance: int = 0):
        super().__init__(f"User {user_id} has {balance} credits, needs {cost}")
        self.user_id = user_id
        self.cost = cost
        self.balance = balance


class LedgerUnavailable(MicrobialError):
    """A ledger mutation could not be confirmed after bounded retries."""


class ProfileUnavailable(MicrobialError):
    """The profile store failed. Personalization degrades, the turn goes on."""


class TranscriptUnavailable(MicrobialError):
    """The transcript or thread store could not be read or written."""


class RunErrorKind(str, Enum):
    TRANSIENT = "transient"
    FATAL = "fatal"


class RunError(MicrobialError):
    """The assistants backend could not produce a reply."""

    def __init__(self, message: str, kind: RunErrorKind = RunErrorKind.FATAL):
        super().__init__(message)
        self.kind = kind

    @property
    def is_transient(self) -> bool:
        return self.kind == RunErrorKind.TRANSIENT

    def __repr__(self) -> str:
        return f"RunError({self.kind.value}: {self})"


class EmptyResponse(RunError):
    """The run completed but produced no usable text. Treated as fatal."""

    def __init__(self, message: str = "Assistant returned an empty response"):
        super().__init__(message, RunErrorKind.FATAL)


class InvalidPayment(MicrobialError):
    """A payment notification failed verification or names an unknown package."""

"""Custom exception hierarchy for the ChoreBlimey package."""

from __future__ import annotations


class ChoreBlimeyError(Exception):
    """Base class for all ChoreBlimey specific errors."""

    code = "SYSTEM_INTERNAL_ERROR"


class NotFoundError(ChoreBlimeyError):
    """Raised when an assignment, child, completion or wallet lookup fails."""

    code = "RESOURCE_NOT_FOUND"


class AuthenticationError(ChoreBlimeyError):
    """Raised when a request carries no usable caller identity."""

    code = "AUTH_INVALID_CREDENTIALS"


class ForbiddenError(ChoreBlimeyError):
    """Raised when the caller may not perform the requested action."""

    code = "AUTH_INSUFFICIENT_PERMISSIONS"


class AlreadyProcessedError(ChoreBlimeyError):
    """Raised when a completion or star purchase has already left ``pending``."""

    code = "RESOURCE_CONFLICT"


class ChallengeLockedError(ChoreBlimeyError):
    """Raised when another child holds the lowest bid on a contested chore."""

    code = "BUSINESS_CHALLENGE_LOCKED"

    def __init__(self, message: str, *, champion_child_id: int | None = None) -> None:
        super().__init__(message)
        self.champion_child_id = champion_child_id


class NoChampionYetError(ChoreBlimeyError):
    """Raised when a contested chore is submitted before anyone has bid."""

    code = "BUSINESS_INVALID_OPERATION"


class InsufficientFundsError(ChoreBlimeyError):
    """Raised when a debit would take a wallet below zero."""

    code = "BUSINESS_INSUFFICIENT_FUNDS"


class LedgerWriteError(ChoreBlimeyError):
    """Raised when the backing store fails while crediting or debiting a wallet."""

    code = "SYSTEM_DATABASE_ERROR"

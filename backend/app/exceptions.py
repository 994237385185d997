"""
QE Coach exception hierarchy.

All custom exceptions inherit from QECoachException so callers can
catch a single base type when they want a broad safety net.
"""


class QECoachException(Exception):
    """Base exception for all QE Coach errors."""


class ConfigurationError(QECoachException, ValueError):
    """Raised when a required setting is missing or invalid."""


class NoOrganizationError(QECoachException):
    """Raised when an identity subject has no organization membership."""


class OrganizationNotFoundError(QECoachException, LookupError):
    """Raised when a referenced organization does not exist."""


class WalletNotFoundError(QECoachException, LookupError):
    """Raised when an organization has no credit wallet."""


class InsufficientCreditsError(QECoachException):
    """Raised when a wallet balance cannot cover a charge."""

    def __init__(self, balance: int = 0, required: int = 0) -> None:
        super().__init__("Insufficient credits")
        self.balance = balance
        self.required = required


class LLMError(QECoachException):
    """Raised when the completion provider call fails."""

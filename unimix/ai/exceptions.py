"""Errors raised by remote advisor implementations."""


class AdvisorError(Exception):
    """Base exception for all advisor failures."""


class AdvisorUnavailableError(AdvisorError):
    """Raised when the advisor service cannot be reached or rejects the call."""

    def __init__(self, message: str, status_code: int = 0):
        self.status_code = status_code
        super().__init__(message if not status_code else f"HTTP {status_code}: {message}")


class AdvisorResponseError(AdvisorError):
    """Raised when the advisor answers with something that is not a suggestion."""

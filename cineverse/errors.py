# cineverse/errors.py
from typing import Optional


class CineVerseError(Exception):
    """Base class for every error raised by the service layer."""
    pass


class ValidationError(CineVerseError):
    """Raised when input fails validation. Always raised before any remote call."""
    pass


class NotFoundError(CineVerseError):
    """Raised when a by-id lookup, update or delete matches no row."""
    pass


class AmbiguousResultError(CineVerseError):
    """Raised when a by-id lookup returns more than one row."""
    pass


class AuthRequiredError(CineVerseError):
    """Raised when an operation needs an authenticated identity."""
    pass


class RemoteError(CineVerseError):
    """
    Failure reported by the remote store or identity provider.
    The message is the store's own message, unchanged.
    """

    def __init__(self, message: str, code: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status


class ConflictError(RemoteError):
    """Unique constraint violation reported by the store."""
    pass


class DuplicateReviewError(ConflictError):
    pass

"""Custom exception classes for the TGV Max engine"""

from typing import Optional


class TGVMaxError(Exception):
    """Base exception for engine errors"""

    pass


class ValidationError(TGVMaxError):
    """Raised for missing or malformed input (never retried)"""

    pass


class SessionInitError(TGVMaxError):
    """Raised when the driver could not establish an anonymous session"""

    pass


class BlockedError(TGVMaxError):
    """Raised when anti-bot blocking persists past the retry bound

    Only the anonymous scraping path raises this. The session has already
    been re-initialized the maximum number of times when it surfaces.
    """

    def __init__(self, message: str = "Blocked by remote site", attempts: int = 0):
        self.attempts = attempts
        super().__init__(message)


class AuthError(TGVMaxError):
    """Raised for bad credentials or a login that could not be verified"""

    pass


class NotAuthenticatedError(TGVMaxError):
    """Raised when an authenticated operation has no usable user record"""

    pass


class RemoteResponseError(TGVMaxError):
    """Raised when the remote API answers with an unexpected status"""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)

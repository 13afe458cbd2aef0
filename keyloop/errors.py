"""Error types raised by keyloop.

Token service failures carry the HTTP status (when there was one) so
callers can tell a rejected grant from a transport problem.
"""

from typing import Optional


class AuthError(Exception):
    """Base class for every keyloop failure."""


class TokenServiceError(AuthError):
    """A call against the authorization server or API failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ExchangeFailed(TokenServiceError):
    """Authorization code could not be exchanged for tokens."""


class RefreshFailed(TokenServiceError):
    """Refresh token was rejected; callers should force a fresh login."""


class UserInfoFailed(TokenServiceError):
    """The userinfo endpoint did not return a profile."""


class ApiKeyMintFailed(TokenServiceError):
    """The API key issuance endpoint did not return a key."""


class LoginTimeout(AuthError):
    """No callback arrived within the login window."""


class LoginCancelled(AuthError):
    """The pending login was cancelled by the caller."""


class CallbackError(AuthError):
    """The provider redirected back with an error, or the callback was invalid."""


class EncryptionUnavailable(AuthError):
    """Secure storage cannot encrypt or decrypt on this machine."""


class StoreDeletionFailed(AuthError):
    """The durable credential file could not be removed."""

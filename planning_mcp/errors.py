"""
Error taxonomy for the authentication subsystem.

Two shapes are used:

- ``Rejection`` is a *value*. The Authenticator and the Access Control Guard
  return it for expected outcomes (no credential, expired session, role too
  low), so callers branch on it instead of catching exceptions.
- Exceptions are raised at the edges: the Token Exchanger (provider failures),
  the Login/Callback Flow (state mismatch, failed exchange), and the server
  layer which turns a Rejection into an ``AuthError`` for the MCP client.

No message in this module ever includes token values.
"""

from dataclasses import dataclass
from enum import Enum


class RejectionCode(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    TEMPORARILY_UNAVAILABLE = "temporarily_unavailable"
    INSUFFICIENT_ROLE = "insufficient_role"


# What clients see. Unauthenticated outcomes all share one message so a
# caller cannot tell a missing session from an expired one or a deleted user.
PUBLIC_MESSAGES = {
    RejectionCode.UNAUTHENTICATED: "authentication required, please log in again",
    RejectionCode.TEMPORARILY_UNAVAILABLE: "authentication service unavailable, retry later",
    RejectionCode.INSUFFICIENT_ROLE: "insufficient role for this operation",
}

STATUS_CODES = {
    RejectionCode.UNAUTHENTICATED: 401,
    RejectionCode.TEMPORARILY_UNAVAILABLE: 503,
    RejectionCode.INSUFFICIENT_ROLE: 403,
}


@dataclass(frozen=True)
class Rejection:
    """
    A refused request.

    Attributes:
        code: Stable machine-readable rejection code
        message: Short description of the outcome ("session expired")
        reason: Internal detail for logs only, never shown to clients
    """

    code: RejectionCode
    message: str
    reason: str = ""

    @property
    def public_message(self) -> str:
        return PUBLIC_MESSAGES[self.code]

    @property
    def status_code(self) -> int:
        return STATUS_CODES[self.code]

    @property
    def retryable(self) -> bool:
        return self.code is RejectionCode.TEMPORARILY_UNAVAILABLE


class AuthError(Exception):
    """
    Raised at the server edge when a request is rejected.

    Attributes:
        message: Client-facing error description
        status_code: HTTP status code to return (401, 403 or 503)
    """

    def __init__(self, message: str, status_code: int = 401):
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    @classmethod
    def from_rejection(cls, rejection: Rejection) -> "AuthError":
        return cls(rejection.public_message, rejection.status_code)


class InsufficientRole(PermissionError):
    """The principal is authenticated but below the operation's role floor."""

    def __init__(self, message: str = PUBLIC_MESSAGES[RejectionCode.INSUFFICIENT_ROLE]):
        self.message = message
        super().__init__(message)


class UserNotFound(LookupError):
    pass


# --- Identity provider failures ---


class ProviderError(Exception):
    """The identity provider returned something unusable."""


class InvalidGrant(ProviderError):
    """
    The provider rejected the code or refresh token.

    Terminal for that credential: a refresh token that fails with InvalidGrant
    must not be tried again.
    """


class ProviderUnavailable(ProviderError):
    """Network failure, timeout or 5xx from the provider. Transient."""


# --- Login flow failures ---


class LoginError(Exception):
    """
    Base class for failures of the login callback.

    Attributes:
        code: Stable error code for the HTTP response body
        message: Client-facing description
        status_code: HTTP status code to return
    """

    code = "login_failed"

    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class StateMismatch(LoginError):
    code = "state_mismatch"

    def __init__(self, message: str = "login state did not match, restart login"):
        super().__init__(message, 400)


class ExchangeFailed(LoginError):
    code = "exchange_failed"

    def __init__(self, message: str = "login failed, restart login", retryable: bool = False):
        self.retryable = retryable
        super().__init__(message, 503 if retryable else 400)

"""
Login/Callback Flow: provider consent URL and callback handling.

Login happens in two HTTP round trips and keeps no state between them on the
server:

1. ``build_authorization_url`` returns the provider's consent URL plus a
   freshly generated anti-forgery ``state``. The HTTP layer stores that state
   in a short-lived cookie (signed with ``issue_state_token``).
2. On the provider's redirect back, ``handle_callback`` compares the
   ``state`` query parameter with the one read back from the cookie
   (``read_state_token``). Only when they match does it exchange the code,
   fetch the profile, upsert the user and create the session.

A mismatched state is treated as a forged callback: it is logged and the
request is aborted before any call to the provider.

The state cookie is a JWT signed with HS256 (PyJWT) so a client cannot mint
its own state value, and its ``exp`` claim bounds how long a login attempt
stays open.
"""

import datetime
import logging
import secrets
from collections.abc import Sequence
from dataclasses import dataclass
from urllib.parse import urlencode

import jwt

from planning_mcp.errors import (
    ExchangeFailed,
    InvalidGrant,
    ProviderError,
    ProviderUnavailable,
    StateMismatch,
)
from planning_mcp.exchanger import TokenExchanger
from planning_mcp.models import Session
from planning_mcp.sessions import SessionStore
from planning_mcp.users import UserDirectory

logger = logging.getLogger("planning-mcp.login")

STATE_TOKEN_TYPE = "oauth_state"


@dataclass(frozen=True)
class AuthorizationRequest:
    url: str
    state: str


def issue_state_token(
    state: str,
    secret: str,
    algorithm: str = "HS256",
    ttl_seconds: int = 600,
) -> str:
    """Sign ``state`` into a short-lived JWT for the state cookie."""
    now = datetime.datetime.now(datetime.timezone.utc)
    payload = {
        "state": state,
        "typ": STATE_TOKEN_TYPE,
        "iat": now,
        "exp": now + datetime.timedelta(seconds=ttl_seconds),
    }
    return jwt.encode(payload, secret, algorithm=algorithm)


def read_state_token(token: str | None, secret: str, algorithm: str = "HS256") -> str | None:
    """
    Recover the state value from a state cookie.

    Returns None for a missing, expired, tampered or malformed token, which
    then fails the state comparison in ``handle_callback``.
    """
    if not token:
        return None
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[algorithm],
            options={"require": ["exp", "state"]},
        )
    except jwt.InvalidTokenError as e:
        logger.warning(
            "Rejected OAuth state cookie",
            extra={"auth_data": {"reason": type(e).__name__}},
        )
        return None
    if payload.get("typ") != STATE_TOKEN_TYPE or not isinstance(payload.get("state"), str):
        return None
    return payload["state"]


class LoginFlow:
    def __init__(
        self,
        exchanger: TokenExchanger,
        users: UserDirectory,
        sessions: SessionStore,
        *,
        client_id: str,
        redirect_uri: str,
        authorize_url: str,
        scopes: Sequence[str] = ("openid", "email", "profile"),
    ) -> None:
        self.exchanger = exchanger
        self.users = users
        self.sessions = sessions
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self.authorize_url = authorize_url
        self.scopes = tuple(scopes)

    def build_authorization_url(self, scopes: Sequence[str] | None = None) -> AuthorizationRequest:
        """
        Build the provider consent URL.

        ``access_type=offline`` asks for a refresh token and ``prompt=consent``
        makes the provider issue one again on repeat logins.
        """
        state = secrets.token_urlsafe(32)
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(scopes if scopes is not None else self.scopes),
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return AuthorizationRequest(url=f"{self.authorize_url}?{urlencode(params)}", state=state)

    async def handle_callback(self, code: str, state: str, expected_state: str | None) -> Session:
        """
        Complete a login from the provider's redirect.

        Args:
            code: Authorization code from the callback query string
            state: ``state`` from the callback query string
            expected_state: State value persisted by ``build_authorization_url``'s caller

        Returns:
            The newly created Session

        Raises:
            StateMismatch: state missing or different; no exchange was attempted
            ExchangeFailed: the provider rejected the code or could not be reached
        """
        if not state or not expected_state or state != expected_state:
            logger.warning(
                "OAuth state mismatch on callback",
                extra={
                    "auth_data": {
                        "decision": "rejected",
                        "reason": "state_mismatch",
                        "state_present": bool(state),
                        "expected_present": bool(expected_state),
                    }
                },
            )
            raise StateMismatch()

        if not code:
            raise ExchangeFailed("login failed: no authorization code, restart login")

        try:
            token_set = await self.exchanger.exchange_code(code, self.redirect_uri)
            profile = await self.exchanger.fetch_profile(token_set.access_token)
        except InvalidGrant as e:
            logger.warning(
                "Authorization code rejected",
                extra={"auth_data": {"decision": "rejected", "reason": "invalid_grant"}},
            )
            raise ExchangeFailed() from e
        except ProviderUnavailable as e:
            logger.warning(
                "Identity provider unavailable during login",
                extra={"auth_data": {"decision": "rejected", "reason": "provider_unavailable"}},
            )
            raise ExchangeFailed(
                "identity provider unavailable, restart login later", retryable=True
            ) from e
        except ProviderError as e:
            logger.error(
                "Unusable identity provider response during login",
                extra={"auth_data": {"decision": "rejected", "reason": str(e)}},
            )
            raise ExchangeFailed() from e

        user = await self.users.find_or_create(profile.external_id, profile)
        session = await self.sessions.create(user.id, token_set)

        logger.info(
            "Login completed",
            extra={
                "auth_data": {
                    "decision": "authenticated",
                    "user_id": user.id,
                    "role": user.role.value,
                }
            },
        )
        return session

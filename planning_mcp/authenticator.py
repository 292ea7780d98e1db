"""
Request-time authentication: session credential -> Principal or Rejection.

This module handles the Authentication (AuthN) layer for every protected call:
- Extracts the session id from the session cookie, falling back to an
  ``Authorization: Bearer <session id>`` header
- Resolves it against the Session Store
- Refreshes expired provider tokens on demand through the Token Exchanger
- Resolves the owning user and returns a Principal carrying the user's
  current role

Per-request states:

    NoCredential -> CredentialPresent -> Valid | Expired | Invalid
    Expired -> RefreshedValid | RefreshFailed

Expected outcomes are returned, not raised: ``authenticate`` gives back a
``Principal`` or a ``Rejection``. Expiry is judged from the session record as
observed at request time; there is no background refresh timer.

Refreshes are single-flight per session id. The first request that finds a
session expired starts a refresh task and concurrent requests for the same id
await that same task, so a rotating refresh token is spent once and exactly
one update is stored. The task is shielded from the callers' cancellation: a
client disconnect never aborts a refresh halfway, the result is persisted for
the next caller. No lock is held while the provider call is in flight.
"""

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from planning_mcp.errors import (
    InvalidGrant,
    ProviderError,
    Rejection,
    RejectionCode,
)
from planning_mcp.exchanger import TokenExchanger
from planning_mcp.models import Principal, Session, SessionPatch, utcnow
from planning_mcp.sessions import SessionStore
from planning_mcp.users import UserDirectory

logger = logging.getLogger("planning-mcp.authenticator")

AUTH_REQUIRED = "authentication required"
INVALID_SESSION = "invalid or expired session"
SESSION_EXPIRED = "session expired"
SERVICE_UNAVAILABLE = "authentication service unavailable"
USER_NOT_FOUND = "user not found"


@dataclass(frozen=True)
class RequestCredentials:
    """
    The parts of an inbound request that can carry a session credential.

    Attributes:
        cookies: Parsed request cookies
        authorization: Raw Authorization header value, if any
    """

    cookies: Mapping[str, str] = field(default_factory=dict)
    authorization: str | None = None


def extract_session_id(credentials: RequestCredentials, cookie_name: str) -> str | None:
    """
    Pick the session id out of a request.

    The session cookie wins over the Authorization header. The header must
    use the Bearer scheme (matched case-insensitively, RFC 6750).
    """
    cookie_value = credentials.cookies.get(cookie_name)
    if cookie_value and cookie_value.strip():
        return cookie_value.strip()

    header = credentials.authorization
    if not header:
        return None
    parts = header.strip().split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    token = parts[1].strip()
    return token or None


def _unauthenticated(message: str, reason: str) -> Rejection:
    return Rejection(RejectionCode.UNAUTHENTICATED, message, reason=reason)


class Authenticator:
    def __init__(
        self,
        sessions: SessionStore,
        users: UserDirectory,
        exchanger: TokenExchanger,
        *,
        cookie_name: str = "planning_session",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.sessions = sessions
        self.users = users
        self.exchanger = exchanger
        self.cookie_name = cookie_name
        self._clock = clock
        self._refreshes: dict[str, asyncio.Future] = {}

    async def authenticate(self, credentials: RequestCredentials) -> Principal | Rejection:
        """
        Authenticate one request.

        Returns:
            Principal for an authenticated request, otherwise a Rejection
            with code UNAUTHENTICATED or TEMPORARILY_UNAVAILABLE
        """
        # Step 1: credential
        session_id = extract_session_id(credentials, self.cookie_name)
        if session_id is None:
            return _unauthenticated(AUTH_REQUIRED, "no_credential")

        # Step 2: session lookup
        session = await self.sessions.get(session_id)
        if session is None:
            return _unauthenticated(INVALID_SESSION, "session_not_found")

        now = self._clock()

        # Step 3: absolute lifetime, when configured
        if self.sessions.outlived(session, now):
            await self.sessions.delete(session.id)
            return _unauthenticated(SESSION_EXPIRED, "session_max_age_exceeded")

        # Step 4: token expiry, refreshing on demand
        if session.is_expired(now):
            if session.refresh_token is None:
                return _unauthenticated(SESSION_EXPIRED, "expired_without_refresh_token")
            outcome = await self._refresh(session)
            if isinstance(outcome, Rejection):
                return outcome
            session = outcome

        # Step 5: owning user
        user = await self.users.get_by_id(session.user_id)
        if user is None:
            logger.warning(
                "Session references a missing user",
                extra={"auth_data": {"user_id": session.user_id, "reason": "user_not_found"}},
            )
            return _unauthenticated(USER_NOT_FOUND, "user_not_found")

        return Principal(
            user_id=user.id,
            role=user.role,
            session_id=session.id,
            display_name=user.display_name,
            email=user.email,
        )

    async def _refresh(self, session: Session) -> Session | Rejection:
        future = self._refreshes.get(session.id)
        if future is None:
            future = asyncio.ensure_future(self._run_refresh(session))
            self._refreshes[session.id] = future
            future.add_done_callback(lambda f, sid=session.id: self._forget_refresh(sid, f))
        return await asyncio.shield(future)

    def _forget_refresh(self, session_id: str, future: asyncio.Future) -> None:
        if self._refreshes.get(session_id) is future:
            del self._refreshes[session_id]

    async def _run_refresh(self, session: Session) -> Session | Rejection:
        # Another worker may have refreshed the session since it was read.
        current = await self.sessions.get(session.id)
        if current is None:
            return _unauthenticated(INVALID_SESSION, "session_deleted_before_refresh")
        if not current.is_expired(self._clock()):
            return current
        if current.refresh_token is None:
            return _unauthenticated(SESSION_EXPIRED, "expired_without_refresh_token")

        try:
            token_set = await self.exchanger.refresh(current.refresh_token)
        except InvalidGrant:
            await self.sessions.delete(current.id)
            logger.info(
                "Token refresh rejected, session removed",
                extra={
                    "auth_data": {
                        "user_id": current.user_id,
                        "decision": "session_deleted",
                        "reason": "invalid_grant",
                    }
                },
            )
            return _unauthenticated(SESSION_EXPIRED, "refresh_invalid_grant")
        except ProviderError as e:
            # ProviderUnavailable and malformed provider responses: keep the
            # session, the caller may retry the whole request later.
            logger.warning(
                "Token refresh failed, session kept",
                extra={
                    "auth_data": {
                        "user_id": current.user_id,
                        "decision": "refresh_failed",
                        "reason": type(e).__name__,
                    }
                },
            )
            return Rejection(
                RejectionCode.TEMPORARILY_UNAVAILABLE,
                SERVICE_UNAVAILABLE,
                reason=type(e).__name__,
            )

        now = self._clock()
        expires_at = None
        if token_set.expires_in_seconds is not None:
            expires_at = now + timedelta(seconds=token_set.expires_in_seconds)

        updated = await self.sessions.update(
            current.id,
            SessionPatch(
                access_token=token_set.access_token,
                refresh_token=token_set.refresh_token,
                expires_at=expires_at,
            ),
        )
        if updated is None:
            # Logged out while the refresh was in flight.
            return _unauthenticated(INVALID_SESSION, "session_deleted_during_refresh")

        logger.info(
            "Session tokens refreshed",
            extra={
                "auth_data": {
                    "user_id": updated.user_id,
                    "decision": "refreshed",
                    "rotated_refresh_token": token_set.refresh_token is not None,
                    "expires_at": updated.expires_at.isoformat() if updated.expires_at else None,
                }
            },
        )
        return updated

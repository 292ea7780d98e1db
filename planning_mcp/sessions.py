"""
Session Store: session id -> Session record.

Sessions are kept in an in-memory table that is loaded from the storage
backend on first use and written through on every mutation. Every mutation
of a given session id runs under that id's lock, and the backend write
completes before the new record becomes visible in the table, so readers only
ever observe durable state. A write that has started always reaches the
table too, even when its caller is cancelled (see ``write_through``).

Session ids are the bearer secret, so they come from ``secrets`` and carry
256 bits of randomness. They are never sequential and never derived from the
user or the provider tokens.
"""

import asyncio
import logging
import secrets
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta

from planning_mcp.locks import KeyedLock
from planning_mcp.models import Session, SessionPatch, TokenSet, utcnow
from planning_mcp.storage import StorageBackend, write_through

logger = logging.getLogger("planning-mcp.sessions")

SESSION_ID_BYTES = 32


class SessionStore:
    COLLECTION = "sessions"

    def __init__(
        self,
        backend: StorageBackend,
        *,
        clock: Callable[[], datetime] = utcnow,
        max_age_seconds: int | None = None,
    ) -> None:
        self._backend = backend
        self._clock = clock
        self.max_age_seconds = max_age_seconds
        self._sessions: dict[str, Session] | None = None
        self._load_lock = asyncio.Lock()
        self._locks = KeyedLock()

    async def _table(self) -> dict[str, Session]:
        if self._sessions is None:
            async with self._load_lock:
                if self._sessions is None:
                    records = await asyncio.to_thread(self._backend.load, self.COLLECTION)
                    self._sessions = {
                        key: Session.from_record(record) for key, record in records.items()
                    }
        return self._sessions

    async def _save(self, table: dict[str, Session], session: Session) -> None:
        def apply() -> None:
            table[session.id] = session

        await write_through(
            lambda: self._backend.put(self.COLLECTION, session.id, session.to_record()),
            apply,
        )

    def outlived(self, session: Session, now: datetime) -> bool:
        """True if the session is older than the configured absolute max age."""
        if self.max_age_seconds is None:
            return False
        return session.created_at + timedelta(seconds=self.max_age_seconds) <= now

    async def create(self, user_id: str, token_set: TokenSet) -> Session:
        """
        Create and persist a session for ``user_id`` from a fresh token set.

        ``expires_at`` is ``now + expires_in_seconds`` when the provider
        reported a lifetime, otherwise the session has no token expiry.
        """
        table = await self._table()
        now = self._clock()
        session_id = secrets.token_urlsafe(SESSION_ID_BYTES)
        while session_id in table:
            session_id = secrets.token_urlsafe(SESSION_ID_BYTES)

        expires_at = None
        if token_set.expires_in_seconds is not None:
            expires_at = now + timedelta(seconds=token_set.expires_in_seconds)

        session = Session(
            id=session_id,
            user_id=user_id,
            access_token=token_set.access_token,
            refresh_token=token_set.refresh_token,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        async with self._locks.hold(session_id):
            await self._save(table, session)

        logger.info(
            "Session created",
            extra={"auth_data": {"decision": "session_created", **session.public_view()}},
        )
        return session

    async def get(self, session_id: str) -> Session | None:
        table = await self._table()
        return table.get(session_id)

    async def update(self, session_id: str, patch: SessionPatch) -> Session | None:
        """
        Atomically apply refreshed tokens to a session.

        ``id``, ``user_id`` and ``created_at`` are never changed. Returns None
        if the session no longer exists (for example, it was logged out while
        the refresh was in flight).
        """
        table = await self._table()
        async with self._locks.hold(session_id):
            current = table.get(session_id)
            if current is None:
                return None
            updated = replace(
                current,
                access_token=patch.access_token,
                refresh_token=patch.refresh_token or current.refresh_token,
                expires_at=patch.expires_at,
                updated_at=self._clock(),
            )
            await self._save(table, updated)
        return updated

    async def delete(self, session_id: str) -> None:
        """Remove a session. Deleting an unknown id is not an error."""
        table = await self._table()
        async with self._locks.hold(session_id):
            if session_id not in table:
                return
            await write_through(
                lambda: self._backend.delete(self.COLLECTION, session_id),
                lambda: table.pop(session_id, None),
            )

    async def list_for_user(self, user_id: str) -> list[Session]:
        table = await self._table()
        return [s for s in table.values() if s.user_id == user_id]

    async def delete_expired(self, now: datetime | None = None) -> int:
        """
        Sweep sessions that can no longer authenticate.

        Removes sessions whose token expired and which hold no refresh token,
        and sessions past the absolute max age. Sessions with a refresh token
        are left for the Authenticator to refresh on demand. Returns the
        number of sessions removed.
        """
        table = await self._table()
        now = now or self._clock()
        stale = [
            s.id
            for s in list(table.values())
            if (s.is_expired(now) and s.refresh_token is None) or self.outlived(s, now)
        ]
        for session_id in stale:
            await self.delete(session_id)
        if stale:
            logger.info(
                "Expired sessions swept",
                extra={"auth_data": {"decision": "sessions_swept", "count": len(stale)}},
            )
        return len(stale)

"""
User Directory: maps provider identities to internal users with a role.

A user is created on first login (``find_or_create``) and identified
internally by an opaque id. The provider's subject id (``external_id``) is
unique across users; a secondary index keeps lookups by it O(1), and creation
for a given external id is serialized so two simultaneous first logins for
the same identity produce one user.

Roles are only ever set here by:
- ``default_role_for`` when a user is first created
- ``set_role``, reached from the ADMIN-only tool or the admin CLI
"""

import asyncio
import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import datetime

from planning_mcp.locks import KeyedLock
from planning_mcp.models import Profile, Role, User, utcnow
from planning_mcp.storage import StorageBackend, write_through

logger = logging.getLogger("planning-mcp.users")


def default_role_for(
    email: str | None,
    admin_domains: Iterable[str],
    default_role: Role,
) -> Role:
    """
    Pick the role for a brand-new user.

    A user whose email domain is on the admin allow-list becomes ADMIN,
    everybody else gets ``default_role``. Domains compare case-insensitively
    and must match exactly (``sub.yourcompany.com`` does not match
    ``yourcompany.com``).

    Args:
        email: The user's verified email, or None if unknown/unverified
        admin_domains: Allow-list of admin email domains
        default_role: Role for everybody else

    Returns:
        The role to assign
    """
    if not email or "@" not in email:
        return default_role
    domain = email.rsplit("@", 1)[1].strip().lower()
    allowed = {d.strip().lower().lstrip("@") for d in admin_domains if d and d.strip()}
    if domain and domain in allowed:
        return Role.ADMIN
    return default_role


class UserDirectory:
    COLLECTION = "users"

    def __init__(
        self,
        backend: StorageBackend,
        *,
        admin_domains: Iterable[str] = (),
        default_role: Role = Role.MEMBER,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._backend = backend
        self.admin_domains = tuple(admin_domains)
        self.default_role = default_role
        self._clock = clock
        self._users: dict[str, User] | None = None
        self._by_external: dict[str, str] = {}
        self._load_lock = asyncio.Lock()
        self._external_locks = KeyedLock()
        self._user_locks = KeyedLock()

    async def _table(self) -> dict[str, User]:
        if self._users is None:
            async with self._load_lock:
                if self._users is None:
                    records = await asyncio.to_thread(self._backend.load, self.COLLECTION)
                    users = {key: User.from_record(record) for key, record in records.items()}
                    self._by_external = {u.external_id: u.id for u in users.values()}
                    self._users = users
        return self._users

    async def _save(self, table: dict[str, User], user: User) -> None:
        def apply() -> None:
            table[user.id] = user
            self._by_external[user.external_id] = user.id

        await write_through(
            lambda: self._backend.put(self.COLLECTION, user.id, user.to_record()),
            apply,
        )

    async def find_or_create(self, external_id: str, profile: Profile) -> User:
        """
        Return the user for ``external_id``, creating it on first login.

        Profile fields are refreshed on every call, the role never is. An
        email the provider has not verified is never stored, so it can neither
        grant a role nor be used to look the user up.
        """
        table = await self._table()
        email = profile.email if profile.email_verified else None
        async with self._external_locks.hold(external_id):
            user_id = self._by_external.get(external_id)
            now = self._clock()

            if user_id is None:
                user = User(
                    id=uuid.uuid4().hex,
                    external_id=external_id,
                    role=default_role_for(email, self.admin_domains, self.default_role),
                    display_name=profile.display_name,
                    email=email,
                    avatar_url=profile.avatar_url,
                    created_at=now,
                    updated_at=now,
                )
                async with self._user_locks.hold(user.id):
                    await self._save(table, user)
                logger.info(
                    "User created",
                    extra={
                        "auth_data": {
                            "decision": "user_created",
                            "user_id": user.id,
                            "role": user.role.value,
                        }
                    },
                )
                return user

            async with self._user_locks.hold(user_id):
                current = table[user_id]
                refreshed = replace(
                    current,
                    display_name=profile.display_name or current.display_name,
                    email=email or current.email,
                    avatar_url=profile.avatar_url or current.avatar_url,
                    updated_at=now,
                )
                await self._save(table, refreshed)
            return refreshed

    async def get_by_id(self, user_id: str) -> User | None:
        table = await self._table()
        return table.get(user_id)

    async def get_by_external_id(self, external_id: str) -> User | None:
        table = await self._table()
        user_id = self._by_external.get(external_id)
        return table.get(user_id) if user_id else None

    async def find_by_email(self, email: str) -> User | None:
        table = await self._table()
        wanted = email.strip().lower()
        for user in table.values():
            if user.email and user.email.lower() == wanted:
                return user
        return None

    async def set_role(self, user_id: str, new_role: Role) -> User | None:
        table = await self._table()
        async with self._user_locks.hold(user_id):
            current = table.get(user_id)
            if current is None:
                return None
            updated = replace(current, role=new_role, updated_at=self._clock())
            await self._save(table, updated)
        logger.info(
            "User role changed",
            extra={
                "auth_data": {
                    "decision": "role_changed",
                    "user_id": user_id,
                    "old_role": current.role.value,
                    "new_role": new_role.value,
                }
            },
        )
        return updated

    async def list_users(self) -> list[User]:
        table = await self._table()
        return sorted(table.values(), key=lambda u: (u.created_at, u.id))

"""
Data model for users, sessions and the values that flow between auth components.

All records are frozen dataclasses. Components never mutate a record in
place; an update produces a new instance (dataclasses.replace) that is swapped
into the store as a whole, so a concurrent reader sees either the old or the
new record and never a mix of the two.

Optional provider data (refresh token, expiry) is modelled as ``None`` rather
than empty strings, because its absence changes the Authenticator's control
flow.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dt_to_str(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _dt_from_str(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class Role(str, Enum):
    """
    Closed set of roles, ordered READONLY < MEMBER < ADMIN.

    The string values are what gets persisted and what tools accept as input.
    """

    READONLY = "readonly"
    MEMBER = "member"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]

    def at_least(self, required: "Role") -> bool:
        """True if this role satisfies the given role floor."""
        return self.rank >= required.rank


_ROLE_RANK = {Role.READONLY: 0, Role.MEMBER: 1, Role.ADMIN: 2}


@dataclass(frozen=True)
class TokenSet:
    """
    Credentials issued by the identity provider's token endpoint.

    Attributes:
        access_token: Opaque provider access token
        refresh_token: Present only when the provider issued (or rotated) one
        expires_in_seconds: Lifetime of the access token; None if not reported
    """

    access_token: str
    refresh_token: str | None = None
    expires_in_seconds: int | None = None


@dataclass(frozen=True)
class Profile:
    """Identity returned by the provider's userinfo endpoint."""

    external_id: str
    email: str | None = None
    email_verified: bool = True
    display_name: str | None = None
    avatar_url: str | None = None


@dataclass(frozen=True)
class User:
    id: str
    external_id: str
    role: Role
    display_name: str | None = None
    email: str | None = None
    avatar_url: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def as_public_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "email": self.email,
            "avatar_url": self.avatar_url,
            "role": self.role.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    def to_record(self) -> dict[str, Any]:
        record = self.as_public_dict()
        record["external_id"] = self.external_id
        return record

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "User":
        return cls(
            id=record["id"],
            external_id=record["external_id"],
            role=Role(record["role"]),
            display_name=record.get("display_name"),
            email=record.get("email"),
            avatar_url=record.get("avatar_url"),
            created_at=_dt_from_str(record["created_at"]),
            updated_at=_dt_from_str(record["updated_at"]),
        )


@dataclass(frozen=True)
class Session:
    """
    One authenticated client binding.

    The ``id`` is the bearer credential presented by the client. ``expires_at``
    of None means the session never expires by token lifetime.
    """

    id: str
    user_id: str
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def public_view(self) -> dict[str, Any]:
        """Redacted view for logs and diagnostics: no token material."""
        return {
            "user_id": self.user_id,
            "has_refresh_token": self.refresh_token is not None,
            "expires_at": _dt_to_str(self.expires_at),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": _dt_to_str(self.expires_at),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Session":
        return cls(
            id=record["id"],
            user_id=record["user_id"],
            access_token=record["access_token"],
            refresh_token=record.get("refresh_token"),
            expires_at=_dt_from_str(record.get("expires_at")),
            created_at=_dt_from_str(record["created_at"]),
            updated_at=_dt_from_str(record.get("updated_at") or record["created_at"]),
        )


@dataclass(frozen=True)
class SessionPatch:
    """
    Token fields written back by the refresh path.

    A refresh_token of None keeps the current one (the provider did not
    rotate it). expires_at of None clears the expiry.
    """

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True)
class Principal:
    """
    The resolved identity attached to an authenticated request.

    This is what the Access Control Guard and the tools see; it never carries
    provider tokens.
    """

    user_id: str
    role: Role
    session_id: str
    display_name: str | None = None
    email: str | None = None

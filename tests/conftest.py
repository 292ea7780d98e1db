"""
Shared test fixtures for the auth subsystem test suite.

Key fixtures:
- provider: a fake OAuth identity provider served through httpx.MockTransport.
  It issues single-use authorization codes, (optionally rotating) refresh
  tokens and userinfo payloads, and counts every call it receives.
- clock: a controllable clock injected into the stores and the Authenticator,
  so tests can move time forward instead of sleeping.
- users / sessions / exchanger / authenticator / login_flow / service: the
  real components wired against an in-memory backend and the fake provider.
- make_user / make_session: factories for seeding the stores.

Testing approach:
- Unit tests exercise each component directly.
- test_tools.py drives the full FastMCP app over ASGI, the same way a client
  would, with the fake provider behind it.
"""

import itertools

import pytest

from planning_mcp.authenticator import Authenticator
from planning_mcp.exchanger import TokenExchanger
from planning_mcp.login import LoginFlow
from planning_mcp.models import Profile, Role, TokenSet
from planning_mcp.service import AuthService
from planning_mcp.sessions import SessionStore
from planning_mcp.storage import MemoryBackend
from planning_mcp.users import UserDirectory
from tests.fakes import (
    AUTHORIZE_URL,
    CLIENT_ID,
    CLIENT_SECRET,
    COOKIE_NAME,
    REDIRECT_URI,
    TOKEN_URL,
    USERINFO_URL,
    FakeClock,
    FakeProvider,
)


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
async def http_client(provider):
    async with provider.client() as client:
        yield client


@pytest.fixture
def users(backend, clock):
    return UserDirectory(
        backend,
        admin_domains=["yourcompany.com"],
        default_role=Role.MEMBER,
        clock=clock,
    )


@pytest.fixture
def sessions(backend, clock):
    return SessionStore(backend, clock=clock)


@pytest.fixture
def exchanger(http_client):
    return TokenExchanger(
        client_id=CLIENT_ID,
        client_secret=CLIENT_SECRET,
        token_url=TOKEN_URL,
        userinfo_url=USERINFO_URL,
        http_client=http_client,
    )


@pytest.fixture
def authenticator(sessions, users, exchanger, clock):
    return Authenticator(sessions, users, exchanger, cookie_name=COOKIE_NAME, clock=clock)


@pytest.fixture
def login_flow(exchanger, users, sessions):
    return LoginFlow(
        exchanger,
        users,
        sessions,
        client_id=CLIENT_ID,
        redirect_uri=REDIRECT_URI,
        authorize_url=AUTHORIZE_URL,
    )


@pytest.fixture
def service(users, sessions, exchanger, login_flow, authenticator):
    return AuthService(
        users=users,
        sessions=sessions,
        exchanger=exchanger,
        login_flow=login_flow,
        authenticator=authenticator,
    )


# ---------------------------------------------------------------------------
# Seeding factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_user(users):
    """
    Factory fixture creating a user with a given role.

    Usage in tests:
        async def test_something(make_user):
            user = await make_user("ext-1", role=Role.READONLY)
    """

    counter = itertools.count(1)

    async def _make_user(
        external_id: str | None = None,
        role: Role = Role.MEMBER,
        email: str | None = None,
        name: str = "Test User",
    ):
        n = next(counter)
        external_id = external_id or f"ext-{n}"
        user = await users.find_or_create(
            external_id,
            Profile(
                external_id=external_id,
                email=email or f"user{n}@example.org",
                display_name=name,
            ),
        )
        if user.role is not role:
            user = await users.set_role(user.id, role)
        return user

    return _make_user


@pytest.fixture
def make_session(make_user, sessions, provider):
    """
    Factory fixture creating a user plus a session for them.

    The refresh token (if any) is registered with the fake provider so the
    Authenticator can refresh it. Returns (user, session).
    """

    counter = itertools.count(1)

    async def _make_session(
        role: Role = Role.MEMBER,
        expires_in: int | None = 3600,
        refresh: bool = True,
        user=None,
    ):
        n = next(counter)
        user = user or await make_user(role=role)
        refresh_token = f"seed-refresh-{n}" if refresh else None
        if refresh_token:
            provider.add_refresh_token(refresh_token, sub=user.external_id)
        session = await sessions.create(
            user.id,
            TokenSet(
                access_token=f"seed-access-{n}",
                refresh_token=refresh_token,
                expires_in_seconds=expires_in,
            ),
        )
        return user, session

    return _make_session

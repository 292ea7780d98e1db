"""
AuthService: the surface the server exposes on top of the auth components.

    initiate_login()                       -> {"redirect_url", "state"}
    complete_login(code, state, expected)  -> {"session_id"}
    authenticate_request(credentials)      -> Principal | Rejection
    logout(session_id)                     -> None
    who_am_i(principal)                    -> {"id", "display_name", "email", "role"}
    list_users(principal)                  -> [User]          (ADMIN)
    set_user_role(principal, user_id, role) -> User           (ADMIN)

``build_auth_service`` wires the components from Settings.
"""

import asyncio
import logging

import httpx

from planning_mcp.authenticator import Authenticator, RequestCredentials
from planning_mcp.config import Settings
from planning_mcp.errors import LoginError, Rejection, UserNotFound
from planning_mcp.exchanger import TokenExchanger
from planning_mcp.guard import require
from planning_mcp.login import LoginFlow
from planning_mcp.models import Principal, Role, User
from planning_mcp.sessions import SessionStore
from planning_mcp.storage import JsonFileBackend, StorageBackend
from planning_mcp.users import UserDirectory

logger = logging.getLogger("planning-mcp.service")


def _retrieve_login_outcome(task: asyncio.Future) -> None:
    # Runs even when the caller was cancelled and nobody awaits the task.
    if task.cancelled():
        return
    error = task.exception()
    if isinstance(error, LoginError):
        logger.info(
            "Login failed",
            extra={"auth_data": {"decision": "rejected", "reason": error.code}},
        )
    elif error is not None:
        logger.error("Login failed unexpectedly", exc_info=error)


class AuthService:
    def __init__(
        self,
        *,
        users: UserDirectory,
        sessions: SessionStore,
        exchanger: TokenExchanger,
        login_flow: LoginFlow,
        authenticator: Authenticator,
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.exchanger = exchanger
        self.login_flow = login_flow
        self.authenticator = authenticator

    def initiate_login(self) -> dict[str, str]:
        request = self.login_flow.build_authorization_url()
        return {"redirect_url": request.url, "state": request.state}

    async def complete_login(self, code: str, state: str, expected_state: str | None) -> dict[str, str]:
        """
        Finish a login and return the new session id.

        The exchange runs in its own task so that a client disconnect cannot
        abort it between the provider call and the session write.

        Raises:
            StateMismatch, ExchangeFailed (both LoginError)
        """
        task = asyncio.ensure_future(self.login_flow.handle_callback(code, state, expected_state))
        task.add_done_callback(_retrieve_login_outcome)
        session = await asyncio.shield(task)
        return {"session_id": session.id}

    async def authenticate_request(self, credentials: RequestCredentials) -> Principal | Rejection:
        return await self.authenticator.authenticate(credentials)

    async def logout(self, session_id: str) -> None:
        await self.sessions.delete(session_id)
        logger.info("Session logged out", extra={"auth_data": {"decision": "logged_out"}})

    async def who_am_i(self, principal: Principal) -> dict[str, str | None]:
        user = await self.users.get_by_id(principal.user_id)
        if user is None:
            return {
                "id": principal.user_id,
                "display_name": principal.display_name,
                "email": principal.email,
                "role": principal.role.value,
            }
        return {
            "id": user.id,
            "display_name": user.display_name,
            "email": user.email,
            "role": user.role.value,
        }

    async def list_users(self, principal: Principal) -> list[User]:
        require(principal, Role.ADMIN)
        return await self.users.list_users()

    async def set_user_role(self, principal: Principal, target_user_id: str, new_role: Role | str) -> User:
        """
        Change another user's role. ADMIN only.

        The change applies to every live session of the target user from
        their next request on, since roles are resolved per request.

        Raises:
            InsufficientRole: principal is not ADMIN
            UserNotFound: no user with that id
            ValueError: unknown role name
        """
        require(principal, Role.ADMIN)
        role = Role(new_role)
        user = await self.users.set_role(target_user_id, role)
        if user is None:
            raise UserNotFound(f"user {target_user_id} not found")
        logger.info(
            "Role assigned by admin",
            extra={
                "auth_data": {
                    "actor": principal.user_id,
                    "target": target_user_id,
                    "new_role": role.value,
                    "decision": "allowed",
                }
            },
        )
        return user


def build_auth_service(
    settings: Settings,
    *,
    backend: StorageBackend | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> AuthService:
    """Wire the auth components from configuration."""
    backend = backend if backend is not None else JsonFileBackend(settings.data_dir)

    users = UserDirectory(
        backend,
        admin_domains=settings.admin_domains,
        default_role=settings.default_role,
    )
    sessions = SessionStore(backend, max_age_seconds=settings.session_max_age_seconds)
    exchanger = TokenExchanger(
        client_id=settings.oauth_client_id,
        client_secret=settings.oauth_client_secret,
        token_url=settings.oauth_token_url,
        userinfo_url=settings.oauth_userinfo_url,
        timeout=settings.provider_timeout_seconds,
        http_client=http_client,
    )
    login_flow = LoginFlow(
        exchanger,
        users,
        sessions,
        client_id=settings.oauth_client_id,
        redirect_uri=settings.oauth_redirect_uri,
        authorize_url=settings.oauth_authorize_url,
        scopes=settings.oauth_scopes,
    )
    authenticator = Authenticator(
        sessions,
        users,
        exchanger,
        cookie_name=settings.session_cookie_name,
    )
    return AuthService(
        users=users,
        sessions=sessions,
        exchanger=exchanger,
        login_flow=login_flow,
        authenticator=authenticator,
    )

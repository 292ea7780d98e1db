"""
MCP Server implementation using FastMCP v2 with session authentication middleware.

This module creates and runs the MCP server with:
- OAuth login against an external identity provider (/auth/login, /auth/callback)
- Session authentication: every MCP request must carry a valid session id,
  either in the session cookie or as "Authorization: Bearer <session id>"
- Role-based authorization: the caller's role decides which tools are
  visible/callable
- Account tools: whoami, logout, list_users, set_user_role
- Health and readiness HTTP endpoints
- Structured JSON logging for all auth decisions
- Streamable HTTP transport

Architecture:
    The auth flow for every MCP request:

    1. Client sends an HTTP request with its session cookie or Bearer header
    2. FastMCP's RequestContextMiddleware stores the HTTP request in a ContextVar
    3. AuthMiddleware intercepts the MCP method (tools/list or tools/call)
    4. Middleware calls get_http_request() to read the cookies and headers
    5. AuthService.authenticate_request() resolves the session (refreshing
       expired provider tokens on the way) and returns a Principal or Rejection
    6. For tools/list: the tool list is filtered by TOOL_ROLE_MAP
    7. For tools/call: the Access Control Guard checks the role floor, then
       the Principal is handed to the tool through a per-call ContextVar

Running the server:
    python -m planning_mcp.server

    This starts the server on http://0.0.0.0:8080 with:
    - MCP endpoint at /mcp (Streamable HTTP)
    - Login at /auth/login, OAuth callback at /auth/callback
    - Logout at /auth/logout (POST)
    - Health check at /health, readiness check at /ready
"""

import json
import logging
import sys
import uuid
from typing import Sequence

from fastmcp import FastMCP
from fastmcp.server.dependencies import get_http_request
from fastmcp.server.middleware import CallNext, Middleware, MiddlewareContext
from fastmcp.tools.tool import Tool, ToolResult
from mcp.types import CallToolRequestParams, ListToolsRequest
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response

from planning_mcp.authenticator import RequestCredentials, extract_session_id
from planning_mcp.config import Settings, settings
from planning_mcp.errors import AuthError, InsufficientRole, LoginError, Rejection
from planning_mcp.guard import authorize
from planning_mcp.login import issue_state_token, read_state_token
from planning_mcp.models import Principal
from planning_mcp.service import AuthService, build_auth_service
from planning_mcp.tools import TOOL_ROLE_MAP, current_principal, get_principal

# ---------------------------------------------------------------------------
# Structured JSON Logging
# ---------------------------------------------------------------------------
# One JSON object per log line so the logging pipeline can index fields like
# user_id, tool and decision. Structured fields are passed as
# logger.info("msg", extra={"auth_data": {...}}).


class JSONLogFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON objects.

    Example output:

        {"timestamp": "2026-02-06 10:30:00,123", "level": "INFO", "logger": "planning-mcp",
         "message": "Tool call authorized", "user_id": "3f2a...", "tool": "whoami"}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "auth_data"):
            log_entry.update(record.auth_data)
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


handler = logging.StreamHandler(sys.stdout)
handler.setFormatter(JSONLogFormatter())

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    handlers=[handler],
)
logger = logging.getLogger("planning-mcp")


# ---------------------------------------------------------------------------
# Authentication & Authorization Middleware
# ---------------------------------------------------------------------------


def _request_credentials() -> RequestCredentials:
    """
    Read the session credential carriers from the current HTTP request.

    Returns empty credentials if no HTTP request is available (e.g. stdio
    transport), which then authenticates as "no credential".
    """
    try:
        request = get_http_request()
    except RuntimeError:
        return RequestCredentials()
    return RequestCredentials(
        cookies=dict(request.cookies),
        authorization=request.headers.get("authorization"),
    )


class AuthMiddleware(Middleware):
    """
    Session authentication and role-based authorization middleware.

    - tools/list responses are filtered to the tools the caller's role allows
    - tools/call requests are rejected unless the caller meets the tool's floor

    Every request is authenticated independently; nothing is cached between
    MCP messages, so a logout or role change applies to the very next call.
    """

    def __init__(self, service: AuthService):
        self.service = service

    async def _authenticate(self, request_id: str) -> Principal:
        """
        Resolve the request's session to a Principal.

        Raises:
            AuthError: 401 for unauthenticated requests, 503 if a required
                       token refresh could not reach the identity provider
        """
        outcome = await self.service.authenticate_request(_request_credentials())
        if isinstance(outcome, Rejection):
            logger.warning(
                "Authentication failed",
                extra={
                    "auth_data": {
                        "request_id": request_id,
                        "decision": "rejected",
                        "code": outcome.code.value,
                        "reason": outcome.reason,
                    }
                },
            )
            raise AuthError.from_rejection(outcome)

        logger.info(
            "Authentication successful",
            extra={
                "auth_data": {
                    "request_id": request_id,
                    "user_id": outcome.user_id,
                    "role": outcome.role.value,
                    "decision": "authenticated",
                }
            },
        )
        return outcome

    async def on_list_tools(
        self,
        context: MiddlewareContext[ListToolsRequest],
        call_next: CallNext[ListToolsRequest, Sequence[Tool]],
    ) -> Sequence[Tool]:
        """Return only the tools whose role floor the caller meets."""
        request_id = str(uuid.uuid4())[:8]
        principal = await self._authenticate(request_id)

        all_tools = await call_next(context)

        authorized_tools = [
            tool
            for tool in all_tools
            if tool.name in TOOL_ROLE_MAP
            and not isinstance(authorize(principal, TOOL_ROLE_MAP[tool.name]), Rejection)
        ]

        logger.info(
            "Tool list filtered by role",
            extra={
                "auth_data": {
                    "request_id": request_id,
                    "user_id": principal.user_id,
                    "role": principal.role.value,
                    "total_tools": len(all_tools),
                    "authorized_tools": [t.name for t in authorized_tools],
                    "decision": "filtered",
                }
            },
        )
        return authorized_tools

    async def on_call_tool(
        self,
        context: MiddlewareContext[CallToolRequestParams],
        call_next: CallNext[CallToolRequestParams, ToolResult],
    ) -> ToolResult:
        """
        Enforce the tool's role floor, then run it with the caller's Principal.

        A denial is raised as a PermissionError, which FastMCP converts to an
        MCP error result.
        """
        request_id = str(uuid.uuid4())[:8]
        tool_name = context.message.name

        principal = await self._authenticate(request_id)

        if tool_name not in TOOL_ROLE_MAP:
            logger.warning(
                "Tool call denied: no role mapping found",
                extra={
                    "auth_data": {
                        "request_id": request_id,
                        "user_id": principal.user_id,
                        "tool": tool_name,
                        "decision": "denied",
                        "reason": "no_role_mapping",
                    }
                },
            )
            raise InsufficientRole()

        required_role = TOOL_ROLE_MAP[tool_name]
        decision = authorize(principal, required_role)
        if isinstance(decision, Rejection):
            logger.warning(
                "Tool call denied: insufficient role",
                extra={
                    "auth_data": {
                        "request_id": request_id,
                        "user_id": principal.user_id,
                        "tool": tool_name,
                        "required_role": required_role.value,
                        "role": principal.role.value,
                        "decision": "denied",
                        "reason": "insufficient_role",
                    }
                },
            )
            raise InsufficientRole()

        logger.info(
            "Tool call authorized",
            extra={
                "auth_data": {
                    "request_id": request_id,
                    "user_id": principal.user_id,
                    "tool": tool_name,
                    "required_role": required_role.value if required_role else None,
                    "decision": "allowed",
                }
            },
        )

        token = current_principal.set(principal)
        try:
            return await call_next(context)
        finally:
            current_principal.reset(token)


# ---------------------------------------------------------------------------
# Server factory
# ---------------------------------------------------------------------------


def _error_response(code: str, message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": code, "message": message}, status_code=status_code)


def create_server(service: AuthService, config: Settings = settings) -> FastMCP:
    """Build the FastMCP app around an AuthService."""
    mcp = FastMCP(
        name="software-planning-tool",
        instructions=(
            "Software planning MCP server. Log in through /auth/login, then "
            "present the session id (cookie or Bearer header) on every call. "
            "Tools are available according to your role."
        ),
        middleware=[AuthMiddleware(service)],
    )

    secure_cookies = config.oauth_redirect_uri.startswith("https://")

    # -----------------------------------------------------------------------
    # Tools (role floors in TOOL_ROLE_MAP, enforced by AuthMiddleware)
    # -----------------------------------------------------------------------

    @mcp.tool(description="Show the identity and role of the current session.")
    async def whoami() -> dict:
        return await service.who_am_i(get_principal())

    @mcp.tool(description="End the current session.")
    async def logout() -> str:
        principal = get_principal()
        await service.logout(principal.session_id)
        return "Logged out."

    @mcp.tool(description="List all users and their roles (admin only).")
    async def list_users() -> dict:
        users = await service.list_users(get_principal())
        return {"users": [u.as_public_dict() for u in users]}

    @mcp.tool(description="Change a user's role to admin, member or readonly (admin only).")
    async def set_user_role(user_id: str, role: str) -> dict:
        user = await service.set_user_role(get_principal(), user_id, role)
        return user.as_public_dict()

    # -----------------------------------------------------------------------
    # Login / logout HTTP routes
    # -----------------------------------------------------------------------
    # Plain HTTP, not MCP: a browser follows these during the OAuth dance.

    @mcp.custom_route("/auth/login", methods=["GET"])
    async def login(request: Request) -> Response:
        """Redirect to the provider's consent page with a fresh state cookie."""
        login_request = service.initiate_login()
        response = RedirectResponse(login_request["redirect_url"], status_code=302)
        response.set_cookie(
            config.state_cookie_name,
            issue_state_token(
                login_request["state"],
                config.jwt_secret_key,
                config.jwt_algorithm,
                config.state_ttl_seconds,
            ),
            max_age=config.state_ttl_seconds,
            httponly=True,
            secure=secure_cookies,
            samesite="lax",
        )
        return response

    @mcp.custom_route("/auth/callback", methods=["GET"])
    async def callback(request: Request) -> Response:
        """Complete the login, set the session cookie and return the session id."""
        if "error" in request.query_params:
            logger.warning(
                "Identity provider returned an error on callback",
                extra={"auth_data": {"reason": request.query_params.get("error")}},
            )
            return _error_response("exchange_failed", "login was not completed, restart login", 400)

        expected_state = read_state_token(
            request.cookies.get(config.state_cookie_name),
            config.jwt_secret_key,
            config.jwt_algorithm,
        )
        try:
            result = await service.complete_login(
                request.query_params.get("code", ""),
                request.query_params.get("state", ""),
                expected_state,
            )
        except LoginError as e:
            response = _error_response(e.code, e.message, e.status_code)
            response.delete_cookie(config.state_cookie_name)
            return response

        response = JSONResponse(result)
        response.set_cookie(
            config.session_cookie_name,
            result["session_id"],
            httponly=True,
            secure=secure_cookies,
            samesite="lax",
        )
        response.delete_cookie(config.state_cookie_name)
        return response

    @mcp.custom_route("/auth/logout", methods=["POST"])
    async def logout_route(request: Request) -> Response:
        """Delete the presented session. Logging out twice is not an error."""
        session_id = extract_session_id(
            RequestCredentials(
                cookies=dict(request.cookies),
                authorization=request.headers.get("authorization"),
            ),
            config.session_cookie_name,
        )
        if session_id:
            await service.logout(session_id)
        response = JSONResponse({"status": "logged_out"})
        response.delete_cookie(config.session_cookie_name)
        return response

    # -----------------------------------------------------------------------
    # Health and Readiness Endpoints
    # -----------------------------------------------------------------------
    # No authentication: probes have no session.

    @mcp.custom_route("/health", methods=["GET"])
    async def health_check(request: Request) -> Response:
        """Liveness probe: is the server process alive and responsive?"""
        return JSONResponse({"status": "healthy"})

    @mcp.custom_route("/ready", methods=["GET"])
    async def readiness_check(request: Request) -> Response:
        """Readiness probe: is the identity provider configured?"""
        if not config.oauth_client_id or not config.oauth_client_secret:
            return JSONResponse(
                {"status": "not_ready", "reason": "oauth client not configured"},
                status_code=503,
            )
        return JSONResponse({"status": "ready"})

    return mcp


mcp = create_server(build_auth_service(settings), settings)


# ---------------------------------------------------------------------------
# Server entry point
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    logger.info(
        "Starting MCP server on %s:%d (transport=streamable-http, auth=sessions)",
        settings.host,
        settings.port,
    )
    mcp.run(
        transport="streamable-http",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )

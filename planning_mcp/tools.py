"""
Tool role floors and the per-request principal.

This module is the central registry for access control:

    TOOL_ROLE_MAP = {
        "tool_name": <minimum Role, or None for "any authenticated caller">,
    }

The server registers the actual tool functions (in server.py); the auth
middleware imports TOOL_ROLE_MAP from here to decide whether a caller's role
lets them see or call a given tool. A tool missing from the map is denied to
everybody.

The authenticated Principal reaches a tool through ``current_principal``, a
ContextVar the middleware sets for the duration of one tool call. Tools read
it with ``get_principal()``; there is no module-level "current user".
"""

from contextvars import ContextVar

from planning_mcp.models import Principal, Role

# Role floors, ordered READONLY < MEMBER < ADMIN.
#   whoami, logout   -> any authenticated session
#   list_users       -> ADMIN
#   set_user_role    -> ADMIN
TOOL_ROLE_MAP: dict[str, Role | None] = {
    "whoami": None,
    "logout": None,
    "list_users": Role.ADMIN,
    "set_user_role": Role.ADMIN,
}

current_principal: ContextVar[Principal | None] = ContextVar("current_principal", default=None)


def get_principal() -> Principal:
    """Return the Principal of the tool call being executed."""
    principal = current_principal.get()
    if principal is None:
        raise PermissionError("No authenticated principal for this call")
    return principal

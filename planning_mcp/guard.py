"""
Access Control Guard: role floors for protected operations.

``authorize`` is a pure function of the principal and the required role. It
answers Allow or Deny and nothing else; a denial only says the role is too
low, never whether the target of the operation exists.

A required role of None means the operation only needs an authenticated
principal (e.g. "who am I").
"""

from dataclasses import dataclass

from planning_mcp.errors import InsufficientRole, Rejection, RejectionCode
from planning_mcp.models import Principal, Role


@dataclass(frozen=True)
class Allow:
    principal: Principal


Decision = Allow | Rejection


def authorize(principal: Principal, required_role: Role | None) -> Decision:
    if required_role is None or principal.role.at_least(required_role):
        return Allow(principal)
    return Rejection(
        RejectionCode.INSUFFICIENT_ROLE,
        "insufficient role",
        reason=f"role {principal.role.value} below floor {required_role.value}",
    )


def require(principal: Principal, required_role: Role | None) -> Principal:
    """Like authorize, but raises InsufficientRole on denial."""
    decision = authorize(principal, required_role)
    if isinstance(decision, Rejection):
        raise InsufficientRole()
    return principal

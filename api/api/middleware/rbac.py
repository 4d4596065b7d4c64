"""Role-based access control for the billing API.

Five roles, ordered by authority.  ``member`` and ``specialist`` are agency
staff who may look at billing state; ``agency`` is the agency owner who can
spend money; ``admin`` and ``super_admin`` are platform operators who review
managed-service requests for every agency.

Usage in routers::

    @router.post("/{managed_service_id}/approve")
    async def approve(
        ...,
        _role: Role = Depends(require_permission(Permission.REVIEW_MANAGED_SERVICES)),
    ) -> ...:
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum, IntEnum

from fastapi import Depends, HTTPException, Request

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Role hierarchy (higher int = more authority)
# ---------------------------------------------------------------------------


class Role(IntEnum):
    """User roles ordered by privilege level."""

    MEMBER = 0
    SPECIALIST = 1
    AGENCY = 2
    ADMIN = 3
    SUPER_ADMIN = 4

    @property
    def is_operator(self) -> bool:
        return self >= Role.ADMIN


_ROLE_LOOKUP: dict[str, Role] = {r.name.lower(): r for r in Role}
# Legacy claim value for member accounts.
_ROLE_LOOKUP["user"] = Role.MEMBER


def parse_role(raw: str) -> Role:
    """Convert a token ``role`` claim into a :class:`Role`.

    Raises :class:`ValueError` if the string does not map to a known role.
    """
    try:
        return _ROLE_LOOKUP[raw.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown role '{raw}'. Valid roles: {sorted(_ROLE_LOOKUP)}") from None


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


class Permission(str, Enum):
    """Permission tokens checked by endpoint guards."""

    READ_BILLING = "read:billing"
    MANAGE_SUBSCRIPTION = "manage:subscription"
    MANAGE_ADD_ONS = "manage:add_ons"
    REQUEST_MANAGED_SERVICES = "request:managed_services"
    CANCEL_MANAGED_SERVICES = "cancel:managed_services"
    REVIEW_MANAGED_SERVICES = "review:managed_services"
    RUN_BILLING_MAINTENANCE = "run:billing_maintenance"


_MEMBER_PERMS: frozenset[Permission] = frozenset({Permission.READ_BILLING})

_SPECIALIST_PERMS: frozenset[Permission] = _MEMBER_PERMS

_AGENCY_PERMS: frozenset[Permission] = _SPECIALIST_PERMS | frozenset(
    {
        Permission.MANAGE_SUBSCRIPTION,
        Permission.MANAGE_ADD_ONS,
        Permission.REQUEST_MANAGED_SERVICES,
        Permission.CANCEL_MANAGED_SERVICES,
    }
)

_ADMIN_PERMS: frozenset[Permission] = _AGENCY_PERMS | frozenset(
    {
        Permission.REVIEW_MANAGED_SERVICES,
        Permission.RUN_BILLING_MAINTENANCE,
    }
)

ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.MEMBER: _MEMBER_PERMS,
    Role.SPECIALIST: _SPECIALIST_PERMS,
    Role.AGENCY: _AGENCY_PERMS,
    Role.ADMIN: _ADMIN_PERMS,
    Role.SUPER_ADMIN: _ADMIN_PERMS,
}


def role_has_permission(role: Role, permission: Permission) -> bool:
    """Return ``True`` if *role* grants *permission*."""
    return permission in ROLE_PERMISSIONS.get(role, frozenset())


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------


def get_user_role(request: Request) -> Role:
    """Resolve the caller's role from ``request.state.role``.

    Raises
    ------
    HTTPException(401)
        If the request carries no role (unauthenticated or malformed token).
    HTTPException(403)
        If the role claim value is not recognised.
    """
    raw_role: str | None = getattr(request.state, "role", None)
    if raw_role is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        return parse_role(raw_role)
    except ValueError:
        logger.warning("Unrecognised role claim '%s'; denying access", raw_role)
        raise HTTPException(status_code=403, detail=f"Unrecognised role '{raw_role}'") from None


def require_permission(permission: Permission) -> Callable[..., Role]:
    """Return a FastAPI dependency that enforces a specific permission.

    The resolved :class:`Role` is returned so handlers can branch on it
    (operators see every agency's records).
    """

    def _guard(role: Role = Depends(get_user_role)) -> Role:
        if not role_has_permission(role, permission):
            logger.info("Permission denied: role=%s requires %s", role.name, permission.value)
            raise HTTPException(
                status_code=403,
                detail=f"Permission denied: role '{role.name.lower()}' does not have '{permission.value}' permission",
            )
        return role

    return _guard

"""Closed role set and the static tables derived from it.

Nothing here touches storage: permissions, grant rights, realm placement and
display metadata are pure lookups keyed by ``Role``.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Optional


class RoleNamespace(str, Enum):
    PLATFORM = "platform"
    SERVICES = "services"


class Role(str, Enum):
    PLATFORM_ADMIN = "platform_admin"
    HOMEOWNER = "homeowner"
    CONTRACTOR = "contractor"
    PROJECT_MANAGER = "project_manager"
    SERVICE_CLIENT = "service_client"

    @property
    def namespace(self) -> RoleNamespace:
        return ROLE_NAMESPACES[self]

    @property
    def external_name(self) -> str:
        """Role name as mirrored to the external identity provider."""
        return self.value.replace("_", "-")

    @classmethod
    def parse(cls, value: str) -> Optional["Role"]:
        normalized = (value or "").strip().lower().replace("-", "_")
        try:
            return cls(normalized)
        except ValueError:
            return None


ROLE_NAMESPACES: Dict[Role, RoleNamespace] = {
    Role.PLATFORM_ADMIN: RoleNamespace.PLATFORM,
    Role.HOMEOWNER: RoleNamespace.PLATFORM,
    Role.CONTRACTOR: RoleNamespace.PLATFORM,
    Role.PROJECT_MANAGER: RoleNamespace.PLATFORM,
    Role.SERVICE_CLIENT: RoleNamespace.SERVICES,
}

ROLE_PERMISSIONS: Dict[Role, FrozenSet[str]] = {
    Role.PLATFORM_ADMIN: frozenset(
        {
            "admin:full_access",
            "user:create",
            "user:read",
            "user:update",
            "user:delete",
            "role:assign",
            "role:revoke",
            "system:manage",
            "auth:manage",
            "email:manage",
            "token:manage",
            "reports:admin",
            "reports:view",
        }
    ),
    Role.HOMEOWNER: frozenset(
        {
            "profile:read",
            "profile:update",
            "project:create",
            "project:read",
            "data:read",
            "auth:basic",
        }
    ),
    Role.CONTRACTOR: frozenset(
        {
            "profile:read",
            "profile:update",
            "project:read",
            "bid:create",
            "data:read",
            "data:write",
            "auth:basic",
        }
    ),
    Role.PROJECT_MANAGER: frozenset(
        {
            "profile:read",
            "profile:update",
            "project:read",
            "project:update",
            "role:assign",
            "reports:view",
            "data:read",
            "data:write",
            "auth:basic",
        }
    ),
    Role.SERVICE_CLIENT: frozenset({"service:access", "data:read", "data:write"}),
}

# Roles each role may grant to (or revoke from) other users.
GRANTABLE_ROLES: Dict[Role, FrozenSet[Role]] = {
    Role.PLATFORM_ADMIN: frozenset(Role),
    Role.PROJECT_MANAGER: frozenset({Role.HOMEOWNER, Role.CONTRACTOR}),
    Role.HOMEOWNER: frozenset(),
    Role.CONTRACTOR: frozenset(),
    Role.SERVICE_CLIENT: frozenset(),
}

ROLE_DISPLAY: Dict[Role, tuple[str, str]] = {
    Role.PLATFORM_ADMIN: (
        "Platform Administrator",
        "Full system access with administrative capabilities",
    ),
    Role.HOMEOWNER: ("Homeowner", "Creates projects and reviews contractor bids"),
    Role.CONTRACTOR: ("Contractor", "Bids on and delivers homeowner projects"),
    Role.PROJECT_MANAGER: (
        "Project Manager",
        "Coordinates projects and onboards homeowners and contractors",
    ),
    Role.SERVICE_CLIENT: (
        "Service Client",
        "Machine identity for service-to-service calls",
    ),
}


def permissions_for(role: Role) -> FrozenSet[str]:
    return ROLE_PERMISSIONS.get(role, frozenset())


def role_has_permission(role: Optional[Role], permission: str) -> bool:
    if role is None:
        return False
    return permission in permissions_for(role)


def can_grant(acting_role: Optional[Role], target_role: Role) -> bool:
    if acting_role is None:
        return False
    return target_role in GRANTABLE_ROLES.get(acting_role, frozenset())


def describe_role(role: Role) -> dict:
    display_name, description = ROLE_DISPLAY[role]
    return {
        "role": role.value,
        "namespace": role.namespace.value,
        "display_name": display_name,
        "description": description,
        "permissions": sorted(permissions_for(role)),
    }

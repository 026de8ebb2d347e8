from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from app.domain.models import Permission

SYSTEM_SUPERUSER_ROLE = "System Superuser"

PERM_MANAGE_SYSTEM = "manage_system"
PERM_MANAGE_ORGANIZATIONS = "manage_organizations"
PERM_VIEW_ALL_DATA = "view_all_data"
PERM_MANAGE_USERS = "manage_users"
PERM_MANAGE_STANDARDS = "manage_standards"
PERM_MANAGE_OBSERVATIONS = "manage_observations"
PERM_VIEW_STANDARDS = "view_standards"
PERM_CREATE_OBSERVATIONS = "create_observations"
PERM_VIEW_OBSERVATIONS = "view_observations"
PERM_MANAGE_FACILITIES = "manage_facilities"
PERM_VIEW_FACILITIES = "view_facilities"


@dataclass(frozen=True)
class PermissionSpec:
    name: str
    resource: str
    action: str
    description: str


DEFAULT_PERMISSIONS: tuple[PermissionSpec, ...] = (
    PermissionSpec(PERM_MANAGE_SYSTEM, "system", "all", "Full system administration access"),
    PermissionSpec(PERM_MANAGE_ORGANIZATIONS, "organizations", "all", "Manage all organizations"),
    PermissionSpec(PERM_VIEW_ALL_DATA, "data", "read", "View data across all organizations"),
    PermissionSpec(PERM_MANAGE_USERS, "users", "all", "Manage users within organization"),
    PermissionSpec(PERM_MANAGE_STANDARDS, "standards", "all", "Manage standards within organization"),
    PermissionSpec(PERM_MANAGE_OBSERVATIONS, "observations", "all", "Manage observations within organization"),
    PermissionSpec(PERM_VIEW_STANDARDS, "standards", "read", "View standards within organization"),
    PermissionSpec(PERM_CREATE_OBSERVATIONS, "observations", "create", "Create new observations"),
    PermissionSpec(PERM_VIEW_OBSERVATIONS, "observations", "read", "View observations within organization"),
    PermissionSpec(PERM_MANAGE_FACILITIES, "facilities", "all", "Manage facilities within organization"),
    PermissionSpec(PERM_VIEW_FACILITIES, "facilities", "read", "View facilities within organization"),
)

DEFAULT_PERMISSION_NAMES = [item.name for item in DEFAULT_PERMISSIONS]


@dataclass(frozen=True)
class PermissionMatch:
    """Matches a permission carrying ``token`` as a tag, or containing it in its name."""

    token: str

    def matches(self, permission: Permission) -> bool:
        return self.token in (permission.tags or []) or self.token in permission.name


@dataclass(frozen=True)
class RoleTemplate:
    name: str
    description: str
    include: tuple[PermissionMatch, ...] | None = None
    exclude: tuple[PermissionMatch, ...] = ()

    def selects(self, permission: Permission) -> bool:
        if any(rule.matches(permission) for rule in self.exclude):
            return False
        if self.include is None:
            return True
        return any(rule.matches(permission) for rule in self.include)

    def select(self, permissions: Iterable[Permission]) -> list[Permission]:
        return [item for item in permissions if self.selects(item)]


def _matches(*tokens: str) -> tuple[PermissionMatch, ...]:
    return tuple(PermissionMatch(token) for token in tokens)


DEFAULT_ROLE_TEMPLATES: tuple[RoleTemplate, ...] = (
    RoleTemplate(
        name="Organization Admin",
        description="Full administrative access within organization",
        include=None,
        exclude=_matches(PERM_MANAGE_SYSTEM, PERM_MANAGE_ORGANIZATIONS),
    ),
    RoleTemplate(
        name="Manager",
        description="Management access within organization",
        include=_matches(PERM_MANAGE_STANDARDS, PERM_MANAGE_OBSERVATIONS, "view_", PERM_CREATE_OBSERVATIONS),
    ),
    RoleTemplate(
        name="Observer",
        description="Read-only access within organization",
        include=_matches("view_", PERM_CREATE_OBSERVATIONS),
    ),
)

OBSERVER_ROLE = "Observer"


def is_system_superuser_role(name: str, is_system_role: bool) -> bool:
    return is_system_role and name == SYSTEM_SUPERUSER_ROLE

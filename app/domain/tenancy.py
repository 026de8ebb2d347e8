from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

# No organization has this id; filters that must match nothing pin to it.
NO_ORGANIZATION = -1

ORGANIZATION_KEY = "organization_id"
FACILITY_PATH: tuple[str, ...] = ("facility",)
AREA_PATH: tuple[str, ...] = ("department", "facility")


@dataclass(frozen=True)
class RoleSummary:
    id: int
    name: str
    organization_id: int | None
    is_system_role: bool


@dataclass(frozen=True)
class UserPermissions:
    user_id: str
    organization_id: int | None
    is_system_superuser: bool
    permissions: frozenset[str] = frozenset()
    roles: tuple[RoleSummary, ...] = ()


@dataclass(frozen=True)
class TenantContext:
    user_id: str
    organization_id: int | None
    is_system_superuser: bool
    allowed_organizations: frozenset[int] = field(default_factory=frozenset)

    def allows(self, organization_id: int | None) -> bool:
        return organization_id is not None and organization_id in self.allowed_organizations


def tenant_context_for(permissions: UserPermissions, all_organization_ids: Sequence[int] = ()) -> TenantContext:
    if permissions.is_system_superuser:
        return TenantContext(
            user_id=permissions.user_id,
            organization_id=None,
            is_system_superuser=True,
            allowed_organizations=frozenset(all_organization_ids),
        )
    allowed = frozenset() if permissions.organization_id is None else frozenset({permissions.organization_id})
    return TenantContext(
        user_id=permissions.user_id,
        organization_id=permissions.organization_id,
        is_system_superuser=False,
        allowed_organizations=allowed,
    )


def permission_granted(
    permissions: UserPermissions | None,
    permission: str,
    organization_id: int | None = None,
) -> bool:
    if permissions is None:
        return False
    if permissions.is_system_superuser:
        return True
    if permission not in permissions.permissions:
        return False
    return organization_id is None or permissions.organization_id == organization_id


def _scoped_organization(context: TenantContext) -> int:
    if context.organization_id is None:
        return NO_ORGANIZATION
    return context.organization_id


def _merge_path(base: Mapping[str, Any], path: Sequence[str], organization_id: int) -> dict[str, Any]:
    merged = dict(base)
    if not path:
        merged[ORGANIZATION_KEY] = organization_id
        return merged
    head, rest = path[0], path[1:]
    nested = merged.get(head)
    merged[head] = _merge_path(nested if isinstance(nested, Mapping) else {}, rest, organization_id)
    return merged


def apply_relation_tenant_filter(
    context: TenantContext,
    base_filter: Mapping[str, Any] | None,
    path: Sequence[str],
) -> dict[str, Any]:
    base = dict(base_filter or {})
    if context.is_system_superuser:
        return base
    return _merge_path(base, path, _scoped_organization(context))


def apply_tenant_filter(context: TenantContext, base_filter: Mapping[str, Any] | None = None) -> dict[str, Any]:
    return apply_relation_tenant_filter(context, base_filter, ())


def apply_facility_tenant_filter(
    context: TenantContext,
    base_filter: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    return apply_relation_tenant_filter(context, base_filter, FACILITY_PATH)

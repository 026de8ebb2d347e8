from __future__ import annotations

import logging

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from app.domain.models import Organization, Permission, Role, RolePermission, User, UserRole
from app.domain.permissions import is_system_superuser_role
from app.domain.tenancy import (
    RoleSummary,
    TenantContext,
    UserPermissions,
    permission_granted,
    tenant_context_for,
)
from app.infra.db import get_engine

logger = logging.getLogger(__name__)


class AccessService:
    def __init__(self, engine: Engine | None = None) -> None:
        self._engine = engine or get_engine()

    def _session(self) -> Session:
        return Session(self._engine, expire_on_commit=False)

    def _load_permissions(self, session: Session, user_id: str) -> UserPermissions | None:
        user = session.get(User, user_id)
        if user is None:
            return None

        roles = list(
            session.exec(
                select(Role)
                .join(UserRole, col(UserRole.role_id) == col(Role.id))
                .where(UserRole.user_id == user_id)
                .order_by(col(Role.id))
            ).all()
        )
        role_ids = [role.id for role in roles]
        names: set[str] = set()
        if role_ids:
            names = set(
                session.exec(
                    select(Permission.name)
                    .join(RolePermission, col(RolePermission.permission_id) == col(Permission.id))
                    .where(col(RolePermission.role_id).in_(role_ids))
                ).all()
            )

        summaries = tuple(
            RoleSummary(
                id=role.id,
                name=role.name,
                organization_id=role.organization_id,
                is_system_role=role.is_system_role,
            )
            for role in roles
            if role.id is not None
        )
        return UserPermissions(
            user_id=user.id,
            organization_id=user.organization_id,
            is_system_superuser=any(
                is_system_superuser_role(role.name, role.is_system_role) for role in summaries
            ),
            permissions=frozenset(names),
            roles=summaries,
        )

    def compute_permissions(self, user_id: str) -> UserPermissions | None:
        try:
            with self._session() as session:
                return self._load_permissions(session, user_id)
        except SQLAlchemyError:
            logger.exception("failed to load permissions for user %s", user_id)
            return None

    def compute_tenant_context(self, user_id: str) -> TenantContext | None:
        permissions = self.compute_permissions(user_id)
        if permissions is None:
            return None
        if not permissions.is_system_superuser:
            return tenant_context_for(permissions)
        try:
            with self._session() as session:
                organization_ids = [
                    item for item in session.exec(select(Organization.id)).all() if item is not None
                ]
        except SQLAlchemyError:
            logger.exception("failed to list organizations for superuser %s", user_id)
            return None
        return tenant_context_for(permissions, organization_ids)

    def has_permission(self, user_id: str, permission: str, organization_id: int | None = None) -> bool:
        return permission_granted(self.compute_permissions(user_id), permission, organization_id)

    def can_access_organization(self, user_id: str, organization_id: int) -> bool:
        context = self.compute_tenant_context(user_id)
        if context is None:
            return False
        return context.allows(organization_id)

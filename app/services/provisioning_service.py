from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from app.domain.models import Organization, Permission, Role, RolePermission, User, UserRole
from app.domain.permissions import (
    DEFAULT_PERMISSIONS,
    DEFAULT_ROLE_TEMPLATES,
    OBSERVER_ROLE,
    SYSTEM_SUPERUSER_ROLE,
    RoleTemplate,
)
from app.infra.db import get_engine

logger = logging.getLogger(__name__)


class ProvisioningError(Exception):
    pass


class NotFoundError(ProvisioningError):
    pass


class ConflictError(ProvisioningError):
    pass


class ProvisioningService:
    def __init__(self, engine: Engine | None = None) -> None:
        self._engine = engine or get_engine()

    def _session(self) -> Session:
        return Session(self._engine, expire_on_commit=False)

    def _upsert_permissions(self, session: Session) -> list[Permission]:
        existing = {item.name: item for item in session.exec(select(Permission)).all()}
        for spec in DEFAULT_PERMISSIONS:
            permission = existing.get(spec.name)
            if permission is None:
                session.add(
                    Permission(
                        name=spec.name,
                        resource=spec.resource,
                        action=spec.action,
                        description=spec.description,
                    )
                )
                continue
            permission.resource = spec.resource
            permission.action = spec.action
            permission.description = spec.description
            session.add(permission)
        session.flush()
        return list(session.exec(select(Permission).order_by(col(Permission.id))).all())

    def _replace_role_permissions(self, session: Session, role: Role, permissions: Sequence[Permission]) -> int:
        current = list(session.exec(select(RolePermission).where(RolePermission.role_id == role.id)).all())
        wanted = {item.id for item in permissions if item.id is not None}
        for link in current:
            if link.permission_id not in wanted:
                session.delete(link)
        linked = {link.permission_id for link in current}
        for permission_id in sorted(wanted - linked):
            session.add(RolePermission(role_id=role.id, permission_id=permission_id))
        return len(wanted)

    def ensure_default_permissions(self) -> list[Permission]:
        with self._session() as session:
            permissions = self._upsert_permissions(session)
            session.commit()
            return permissions

    def ensure_system_superuser_role(self) -> Role:
        with self._session() as session:
            permissions = self._upsert_permissions(session)
            role = session.exec(
                select(Role)
                .where(Role.name == SYSTEM_SUPERUSER_ROLE)
                .where(col(Role.is_system_role).is_(True))
                .where(col(Role.organization_id).is_(None))
            ).first()
            if role is None:
                role = Role(
                    name=SYSTEM_SUPERUSER_ROLE,
                    description="Unrestricted access across all organizations",
                    organization_id=None,
                    is_system_role=True,
                )
                session.add(role)
                session.flush()
            self._replace_role_permissions(session, role, permissions)
            session.commit()
            session.refresh(role)
            return role

    def provision_roles_in_session(
        self,
        session: Session,
        organization_id: int,
        templates: Sequence[RoleTemplate] = DEFAULT_ROLE_TEMPLATES,
    ) -> list[dict[str, Any]]:
        permissions = self._upsert_permissions(session)
        existing = {
            role.name: role
            for role in session.exec(select(Role).where(Role.organization_id == organization_id)).all()
        }
        summary: list[dict[str, Any]] = []
        for template in templates:
            role = existing.get(template.name)
            created = role is None
            if role is None:
                role = Role(
                    name=template.name,
                    description=template.description,
                    organization_id=organization_id,
                    is_system_role=False,
                )
                session.add(role)
                session.flush()
            linked = self._replace_role_permissions(session, role, template.select(permissions))
            summary.append(
                {
                    "role_id": role.id,
                    "name": role.name,
                    "created": created,
                    "permission_count": linked,
                }
            )
        return summary

    def provision_default_roles(
        self,
        organization_id: int,
        templates: Sequence[RoleTemplate] = DEFAULT_ROLE_TEMPLATES,
    ) -> list[dict[str, Any]]:
        with self._session() as session:
            if session.get(Organization, organization_id) is None:
                raise NotFoundError("organization not found")
            summary = self.provision_roles_in_session(session, organization_id, templates)
            session.commit()
        logger.info(
            "provisioned roles for organization %s: %s",
            organization_id,
            ", ".join(f"{item['name']}({item['permission_count']})" for item in summary),
        )
        return summary

    def assign_role_to_user(self, user_id: str, role_id: int, organization_id: int | None) -> UserRole:
        with self._session() as session:
            user = session.get(User, user_id)
            role = session.get(Role, role_id)
            if user is None or role is None:
                raise NotFoundError("user or role not found")
            if role.organization_id is not None and role.organization_id != organization_id:
                raise ConflictError("role belongs to a different organization")
            link = session.get(UserRole, (user_id, role_id))
            if link is not None:
                return link
            link = UserRole(user_id=user_id, role_id=role_id, organization_id=organization_id)
            session.add(link)
            session.commit()
            session.refresh(link)
            return link

    def assign_default_observer_roles(self, organization_id: int) -> list[str]:
        with self._session() as session:
            observer = session.exec(
                select(Role).where(Role.organization_id == organization_id).where(Role.name == OBSERVER_ROLE)
            ).first()
            if observer is None:
                raise NotFoundError("observer role not provisioned for organization")
            users = list(session.exec(select(User).where(User.organization_id == organization_id)).all())
            assigned_user_ids = set(
                session.exec(
                    select(UserRole.user_id).where(col(UserRole.user_id).in_([item.id for item in users]))
                ).all()
            )
            assigned: list[str] = []
            for user in users:
                if user.id in assigned_user_ids:
                    continue
                session.add(UserRole(user_id=user.id, role_id=observer.id, organization_id=organization_id))
                assigned.append(user.id)
            session.commit()
        if assigned:
            logger.info("assigned observer role to %d users in organization %s", len(assigned), organization_id)
        return assigned

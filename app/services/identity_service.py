from __future__ import annotations

import logging

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.domain.models import (
    BootstrapSuperuserRequest,
    Organization,
    Role,
    User,
    UserCreate,
    UserRole,
)
from app.domain.permissions import PERM_MANAGE_USERS, SYSTEM_SUPERUSER_ROLE
from app.domain.tenancy import TenantContext, UserPermissions
from app.infra.auth import hash_password
from app.infra.db import get_engine
from app.services import provisioning_service as provisioning
from app.services.access_service import AccessService
from app.services.provisioning_service import ProvisioningService

logger = logging.getLogger(__name__)


class IdentityError(Exception):
    pass


class NotFoundError(IdentityError):
    pass


class ConflictError(IdentityError):
    pass


class AuthError(IdentityError):
    pass


class AccessDeniedError(IdentityError):
    pass


class IdentityService:
    def __init__(self, engine: Engine | None = None) -> None:
        self._engine = engine or get_engine()
        self._access = AccessService(self._engine)
        self._provisioning = ProvisioningService(self._engine)

    def _session(self) -> Session:
        return Session(self._engine, expire_on_commit=False)

    def _ensure_can_manage(self, context: TenantContext, organization_id: int | None) -> None:
        if context.is_system_superuser:
            return
        if organization_id is None or not context.allows(organization_id):
            raise AccessDeniedError("organization not accessible")
        if not self._access.has_permission(context.user_id, PERM_MANAGE_USERS, organization_id):
            raise AccessDeniedError(f"missing permission: {PERM_MANAGE_USERS}")

    def bootstrap_superuser(self, payload: BootstrapSuperuserRequest) -> User:
        role = self._provisioning.ensure_system_superuser_role()
        with self._session() as session:
            holder = session.exec(select(UserRole.user_id).where(UserRole.role_id == role.id)).first()
            if holder is not None:
                raise ConflictError("system superuser already exists")
            user = User(
                email=payload.email.lower(),
                name=payload.name,
                password_hash=hash_password(payload.password),
                organization_id=None,
            )
            session.add(user)
            try:
                session.flush()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("email already registered") from exc
            session.add(UserRole(user_id=user.id, role_id=role.id, organization_id=None))
            session.commit()
            session.refresh(user)
        logger.info("bootstrapped %s %s", SYSTEM_SUPERUSER_ROLE, user.id)
        return user

    def dev_login(self, email: str, password: str) -> User:
        with self._session() as session:
            user = session.exec(select(User).where(User.email == email.lower())).first()
            if user is None or user.password_hash != hash_password(password):
                raise AuthError("invalid credentials")
            if not user.is_active:
                raise AuthError("user disabled")
            return user

    def create_user(self, context: TenantContext, payload: UserCreate) -> User:
        organization_id = payload.organization_id
        if organization_id is None and not context.is_system_superuser:
            organization_id = context.organization_id
        self._ensure_can_manage(context, organization_id)
        with self._session() as session:
            if organization_id is not None and session.get(Organization, organization_id) is None:
                raise NotFoundError("organization not found")
            user = User(
                email=payload.email.lower(),
                name=payload.name,
                password_hash=hash_password(payload.password),
                organization_id=organization_id,
                is_active=payload.is_active,
            )
            session.add(user)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("email already registered") from exc
            session.refresh(user)
            return user

    def assign_role(self, context: TenantContext, user_id: str, role_id: int) -> UserRole:
        with self._session() as session:
            user = session.get(User, user_id)
            role = session.get(Role, role_id)
        if user is None or role is None:
            raise NotFoundError("user or role not found")
        if not context.is_system_superuser and not (
            context.allows(user.organization_id)
            and (role.organization_id is None or context.allows(role.organization_id))
        ):
            raise NotFoundError("user or role not found")
        if role.is_system_role and not context.is_system_superuser:
            raise AccessDeniedError("system roles can only be granted by a system superuser")
        self._ensure_can_manage(context, user.organization_id)
        try:
            return self._provisioning.assign_role_to_user(user_id, role_id, user.organization_id)
        except provisioning.NotFoundError as exc:
            raise NotFoundError(str(exc)) from exc
        except provisioning.ConflictError as exc:
            raise ConflictError(str(exc)) from exc

    def list_roles(self, context: TenantContext) -> list[Role]:
        with self._session() as session:
            statement = select(Role).order_by(col(Role.id))
            if not context.is_system_superuser:
                statement = statement.where(col(Role.organization_id).in_(sorted(context.allowed_organizations)))
            return list(session.exec(statement).all())

    def visible_permissions(self, context: TenantContext, user_id: str) -> UserPermissions | None:
        permissions = self._access.compute_permissions(user_id)
        if permissions is None:
            return None
        if context.is_system_superuser or context.user_id == user_id:
            return permissions
        if permissions.is_system_superuser or not context.allows(permissions.organization_id):
            return None
        if not self._access.has_permission(context.user_id, PERM_MANAGE_USERS, permissions.organization_id):
            return None
        return permissions

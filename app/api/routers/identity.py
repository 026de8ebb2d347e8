from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.api.deps import get_tenant_context
from app.domain.models import (
    BootstrapSuperuserRequest,
    DevLoginRequest,
    RoleRead,
    RoleSummaryRead,
    TokenResponse,
    UserCreate,
    UserPermissionsRead,
    UserRead,
    UserRoleAssignRequest,
    UserRoleRead,
)
from app.domain.tenancy import TenantContext, UserPermissions
from app.infra.audit import set_audit_context
from app.infra.auth import create_access_token
from app.services.identity_service import (
    AccessDeniedError,
    AuthError,
    ConflictError,
    IdentityService,
    NotFoundError,
)

router = APIRouter()


def get_identity_service() -> IdentityService:
    return IdentityService()


Context = Annotated[TenantContext, Depends(get_tenant_context)]
Service = Annotated[IdentityService, Depends(get_identity_service)]


def _handle_identity_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, AuthError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    if isinstance(exc, AccessDeniedError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    raise exc


def _permissions_read(permissions: UserPermissions) -> UserPermissionsRead:
    return UserPermissionsRead(
        user_id=permissions.user_id,
        organization_id=permissions.organization_id,
        is_system_superuser=permissions.is_system_superuser,
        permissions=sorted(permissions.permissions),
        roles=[RoleSummaryRead.model_validate(item) for item in permissions.roles],
    )


@router.post(
    "/identity/bootstrap-superuser",
    response_model=UserRead,
    status_code=status.HTTP_201_CREATED,
)
def bootstrap_superuser(payload: BootstrapSuperuserRequest, service: Service) -> UserRead:
    try:
        user = service.bootstrap_superuser(payload)
        return UserRead.model_validate(user)
    except (NotFoundError, ConflictError) as exc:
        _handle_identity_error(exc)
        raise


@router.post("/identity/dev-login", response_model=TokenResponse)
def dev_login(payload: DevLoginRequest, service: Service) -> TokenResponse:
    try:
        user = service.dev_login(payload.email, payload.password)
    except AuthError as exc:
        _handle_identity_error(exc)
        raise
    return TokenResponse(access_token=create_access_token(user_id=user.id))


@router.post("/users", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(payload: UserCreate, context: Context, service: Service) -> UserRead:
    try:
        user = service.create_user(context, payload)
        return UserRead.model_validate(user)
    except (NotFoundError, ConflictError, AccessDeniedError) as exc:
        _handle_identity_error(exc)
        raise


@router.post("/users/{user_id}/roles", response_model=UserRoleRead)
def assign_role(
    user_id: str,
    payload: UserRoleAssignRequest,
    request: Request,
    context: Context,
    service: Service,
) -> UserRoleRead:
    try:
        link = service.assign_role(context, user_id, payload.role_id)
    except (NotFoundError, ConflictError, AccessDeniedError) as exc:
        set_audit_context(
            request,
            action="identity.user_role.assign",
            detail={"result": {"outcome": "failed", "reason": str(exc)}},
        )
        _handle_identity_error(exc)
        raise
    set_audit_context(
        request,
        action="identity.user_role.assign",
        detail={"what": {"user_id": user_id, "role_id": payload.role_id}},
    )
    return UserRoleRead.model_validate(link)


@router.get("/users/{user_id}/permissions", response_model=UserPermissionsRead | None)
def get_user_permissions(user_id: str, context: Context, service: Service) -> UserPermissionsRead | None:
    permissions = service.visible_permissions(context, user_id)
    if permissions is None:
        return None
    return _permissions_read(permissions)


@router.get("/roles", response_model=list[RoleRead])
def list_roles(context: Context, service: Service) -> list[RoleRead]:
    return [RoleRead.model_validate(item) for item in service.list_roles(context)]

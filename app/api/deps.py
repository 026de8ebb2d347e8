from __future__ import annotations

from collections.abc import Callable
from typing import Annotated, Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from app.domain.tenancy import TenantContext
from app.infra.auth import decode_access_token
from app.services.access_service import AccessService

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/identity/dev-login")


def get_access_service() -> AccessService:
    return AccessService()


def get_current_claims(
    request: Request,
    token: str = Depends(oauth2_scheme),
) -> dict[str, Any]:
    try:
        claims = decode_access_token(token)
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        ) from exc
    request.state.claims = claims
    return claims


def get_tenant_context(
    request: Request,
    claims: Annotated[dict[str, Any], Depends(get_current_claims)],
    access: Annotated[AccessService, Depends(get_access_service)],
) -> TenantContext:
    context = access.compute_tenant_context(claims["sub"])
    if context is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No access context for user",
        )
    request.state.tenant_context = context
    return context


def require_permission(permission: str) -> Callable[..., TenantContext]:
    def _checker(
        context: Annotated[TenantContext, Depends(get_tenant_context)],
        access: Annotated[AccessService, Depends(get_access_service)],
    ) -> TenantContext:
        if not access.has_permission(context.user_id, permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permission: {permission}",
            )
        return context

    return _checker

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.api.deps import get_tenant_context, require_permission
from app.domain.models import (
    AreaCreate,
    AreaRead,
    DepartmentCreate,
    DepartmentRead,
    FacilityCreate,
    FacilityRead,
    OrganizationCreate,
    OrganizationRead,
)
from app.domain.permissions import PERM_MANAGE_FACILITIES
from app.domain.tenancy import TenantContext
from app.infra.audit import set_audit_context
from app.services.hierarchy_service import (
    AccessDeniedError,
    ConflictError,
    HierarchyService,
    NotFoundError,
)

router = APIRouter()


def get_hierarchy_service() -> HierarchyService:
    return HierarchyService()


Context = Annotated[TenantContext, Depends(get_tenant_context)]
ManagerContext = Annotated[TenantContext, Depends(require_permission(PERM_MANAGE_FACILITIES))]
Service = Annotated[HierarchyService, Depends(get_hierarchy_service)]


def _handle_hierarchy_error(exc: Exception, *, write: bool = False) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, AccessDeniedError):
        code = status.HTTP_403_FORBIDDEN if write else status.HTTP_404_NOT_FOUND
        raise HTTPException(status_code=code, detail=str(exc)) from exc
    raise exc


@router.get("/organizations", response_model=list[OrganizationRead])
def list_organizations(context: Context, service: Service) -> list[OrganizationRead]:
    return [OrganizationRead.model_validate(item) for item in service.list_organizations(context)]


@router.post(
    "/organizations",
    response_model=OrganizationRead,
    status_code=status.HTTP_201_CREATED,
)
def create_organization(
    payload: OrganizationCreate,
    request: Request,
    context: Context,
    service: Service,
) -> OrganizationRead:
    try:
        organization = service.create_organization(context, payload)
    except (NotFoundError, ConflictError, AccessDeniedError) as exc:
        _handle_hierarchy_error(exc, write=True)
        raise
    set_audit_context(
        request,
        action="hierarchy.organization.create",
        detail={"what": {"organization_id": organization.id, "code": organization.code}},
    )
    return OrganizationRead.model_validate(organization)


@router.get("/organizations/{organization_id}", response_model=OrganizationRead)
def get_organization(organization_id: int, context: Context, service: Service) -> OrganizationRead:
    try:
        return OrganizationRead.model_validate(service.get_organization(context, organization_id))
    except (NotFoundError, AccessDeniedError) as exc:
        _handle_hierarchy_error(exc)
        raise


@router.get("/facilities", response_model=list[FacilityRead])
def list_facilities(
    context: Context,
    service: Service,
    organization_id: int | None = None,
) -> list[FacilityRead]:
    facilities = service.list_facilities(context, organization_id)
    return [FacilityRead.model_validate(item) for item in facilities]


@router.post("/facilities", response_model=FacilityRead, status_code=status.HTTP_201_CREATED)
def create_facility(payload: FacilityCreate, context: ManagerContext, service: Service) -> FacilityRead:
    try:
        return FacilityRead.model_validate(service.create_facility(context, payload))
    except (NotFoundError, ConflictError, AccessDeniedError) as exc:
        _handle_hierarchy_error(exc, write=True)
        raise


@router.get("/facilities/{facility_id}", response_model=FacilityRead)
def get_facility(facility_id: int, context: Context, service: Service) -> FacilityRead:
    try:
        return FacilityRead.model_validate(service.get_facility(context, facility_id))
    except NotFoundError as exc:
        _handle_hierarchy_error(exc)
        raise


@router.get("/departments", response_model=list[DepartmentRead])
def list_departments(
    context: Context,
    service: Service,
    facility_id: int | None = None,
) -> list[DepartmentRead]:
    departments = service.list_departments(context, facility_id)
    return [DepartmentRead.model_validate(item) for item in departments]


@router.post("/departments", response_model=DepartmentRead, status_code=status.HTTP_201_CREATED)
def create_department(payload: DepartmentCreate, context: ManagerContext, service: Service) -> DepartmentRead:
    try:
        return DepartmentRead.model_validate(service.create_department(context, payload))
    except (NotFoundError, ConflictError) as exc:
        _handle_hierarchy_error(exc, write=True)
        raise


@router.get("/departments/{department_id}", response_model=DepartmentRead)
def get_department(department_id: int, context: Context, service: Service) -> DepartmentRead:
    try:
        return DepartmentRead.model_validate(service.get_department(context, department_id))
    except NotFoundError as exc:
        _handle_hierarchy_error(exc)
        raise


@router.get("/areas", response_model=list[AreaRead])
def list_areas(
    context: Context,
    service: Service,
    department_id: int | None = None,
) -> list[AreaRead]:
    return [AreaRead.model_validate(item) for item in service.list_areas(context, department_id)]


@router.post("/areas", response_model=AreaRead, status_code=status.HTTP_201_CREATED)
def create_area(payload: AreaCreate, context: ManagerContext, service: Service) -> AreaRead:
    try:
        return AreaRead.model_validate(service.create_area(context, payload))
    except (NotFoundError, ConflictError) as exc:
        _handle_hierarchy_error(exc, write=True)
        raise


@router.get("/areas/{area_id}", response_model=AreaRead)
def get_area(area_id: int, context: Context, service: Service) -> AreaRead:
    try:
        return AreaRead.model_validate(service.get_area(context, area_id))
    except NotFoundError as exc:
        _handle_hierarchy_error(exc)
        raise

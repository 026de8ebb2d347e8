from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.domain.models import (
    Area,
    AreaCreate,
    Department,
    DepartmentCreate,
    Facility,
    FacilityCreate,
    Organization,
    OrganizationCreate,
    Standard,
    StandardCreate,
    StandardRead,
    UomEntry,
    UomEntryRead,
)
from app.domain.tenancy import (
    AREA_PATH,
    TenantContext,
    apply_facility_tenant_filter,
    apply_relation_tenant_filter,
    apply_tenant_filter,
)
from app.infra.db import get_engine
from app.infra.events import event_bus
from app.services.provisioning_service import ProvisioningService
from app.services.query_filters import build_conditions

logger = logging.getLogger(__name__)


class HierarchyError(Exception):
    pass


class NotFoundError(HierarchyError):
    pass


class ConflictError(HierarchyError):
    pass


class AccessDeniedError(HierarchyError):
    pass


class HierarchyService:
    def __init__(self, engine: Engine | None = None) -> None:
        self._engine = engine or get_engine()
        self._provisioning = ProvisioningService(self._engine)

    def _session(self) -> Session:
        return Session(self._engine, expire_on_commit=False)

    def _commit(self, session: Session, conflict_message: str) -> None:
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError(conflict_message) from exc

    def _scoped_facility(self, session: Session, context: TenantContext, facility_id: int) -> Facility:
        facility = session.exec(
            select(Facility).where(*build_conditions(Facility, apply_tenant_filter(context, {"id": facility_id})))
        ).first()
        if facility is None:
            raise NotFoundError("facility not found")
        return facility

    def _scoped_department(self, session: Session, context: TenantContext, department_id: int) -> Department:
        department = session.exec(
            select(Department).where(
                *build_conditions(Department, apply_facility_tenant_filter(context, {"id": department_id}))
            )
        ).first()
        if department is None:
            raise NotFoundError("department not found")
        return department

    def _scoped_area(self, session: Session, context: TenantContext, area_id: int) -> Area:
        area = session.exec(
            select(Area).where(
                *build_conditions(Area, apply_relation_tenant_filter(context, {"id": area_id}, AREA_PATH))
            )
        ).first()
        if area is None:
            raise NotFoundError("area not found")
        return area

    def _standard_read(self, session: Session, standard: Standard) -> StandardRead:
        entries = session.exec(
            select(UomEntry).where(UomEntry.standard_id == standard.id).order_by(col(UomEntry.id))
        ).all()
        read = StandardRead.model_validate(standard)
        read.uom_entries = [UomEntryRead.model_validate(item) for item in entries]
        return read

    def list_organizations(self, context: TenantContext) -> list[Organization]:
        with self._session() as session:
            statement = select(Organization).order_by(col(Organization.name))
            if not context.is_system_superuser:
                statement = statement.where(col(Organization.id).in_(sorted(context.allowed_organizations)))
            return list(session.exec(statement).all())

    def get_organization(self, context: TenantContext, organization_id: int) -> Organization:
        if not context.is_system_superuser and not context.allows(organization_id):
            raise NotFoundError("organization not found")
        with self._session() as session:
            organization = session.get(Organization, organization_id)
            if organization is None:
                raise NotFoundError("organization not found")
            return organization

    def create_organization(self, context: TenantContext, payload: OrganizationCreate) -> Organization:
        if not context.is_system_superuser:
            raise AccessDeniedError("system superuser required")
        with self._session() as session:
            organization = Organization(code=payload.code, name=payload.name, logo=payload.logo)
            session.add(organization)
            try:
                session.flush()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("organization code already exists") from exc
            summary = self._provisioning.provision_roles_in_session(session, organization.id)
            self._commit(session, "organization code already exists")
            session.refresh(organization)

        event_bus.publish_dict(
            "organization.created",
            organization.id,
            {
                "code": organization.code,
                "roles": [item["name"] for item in summary],
            },
            actor_id=context.user_id,
        )
        return organization

    def list_facilities(self, context: TenantContext, organization_id: int | None = None) -> list[Facility]:
        base: dict[str, Any] = {}
        if organization_id is not None:
            if not context.is_system_superuser and not context.allows(organization_id):
                return []
            base["organization_id"] = organization_id
        with self._session() as session:
            statement = (
                select(Facility)
                .where(*build_conditions(Facility, apply_tenant_filter(context, base)))
                .order_by(col(Facility.name))
            )
            return list(session.exec(statement).all())

    def get_facility(self, context: TenantContext, facility_id: int) -> Facility:
        with self._session() as session:
            return self._scoped_facility(session, context, facility_id)

    def create_facility(self, context: TenantContext, payload: FacilityCreate) -> Facility:
        if not context.is_system_superuser and not context.allows(payload.organization_id):
            raise AccessDeniedError("cannot create facility in this organization")
        with self._session() as session:
            if session.get(Organization, payload.organization_id) is None:
                raise NotFoundError("organization not found")
            facility = Facility(
                organization_id=payload.organization_id,
                name=payload.name,
                ref=payload.ref,
                city=payload.city,
            )
            session.add(facility)
            self._commit(session, "facility name already exists in organization")
            session.refresh(facility)
            return facility

    def list_departments(self, context: TenantContext, facility_id: int | None = None) -> list[Department]:
        base: dict[str, Any] = {} if facility_id is None else {"facility_id": facility_id}
        with self._session() as session:
            statement = (
                select(Department)
                .where(*build_conditions(Department, apply_facility_tenant_filter(context, base)))
                .order_by(col(Department.name))
            )
            return list(session.exec(statement).all())

    def get_department(self, context: TenantContext, department_id: int) -> Department:
        with self._session() as session:
            return self._scoped_department(session, context, department_id)

    def create_department(self, context: TenantContext, payload: DepartmentCreate) -> Department:
        with self._session() as session:
            facility = self._scoped_facility(session, context, payload.facility_id)
            department = Department(facility_id=facility.id, name=payload.name)
            session.add(department)
            self._commit(session, "department name already exists in facility")
            session.refresh(department)
            return department

    def list_areas(self, context: TenantContext, department_id: int | None = None) -> list[Area]:
        base: dict[str, Any] = {} if department_id is None else {"department_id": department_id}
        with self._session() as session:
            statement = (
                select(Area)
                .where(*build_conditions(Area, apply_relation_tenant_filter(context, base, AREA_PATH)))
                .order_by(col(Area.name))
            )
            return list(session.exec(statement).all())

    def get_area(self, context: TenantContext, area_id: int) -> Area:
        with self._session() as session:
            return self._scoped_area(session, context, area_id)

    def create_area(self, context: TenantContext, payload: AreaCreate) -> Area:
        with self._session() as session:
            department = self._scoped_department(session, context, payload.department_id)
            area = Area(department_id=department.id, name=payload.name)
            session.add(area)
            self._commit(session, "area name already exists in department")
            session.refresh(area)
            return area

    def list_standards(
        self,
        context: TenantContext,
        *,
        facility_id: int | None = None,
        area_id: int | None = None,
    ) -> list[StandardRead]:
        base: dict[str, Any] = {}
        if facility_id is not None:
            base["facility_id"] = facility_id
        if area_id is not None:
            base["area_id"] = area_id
        with self._session() as session:
            statement = (
                select(Standard)
                .where(*build_conditions(Standard, apply_facility_tenant_filter(context, base)))
                .order_by(col(Standard.name))
            )
            return [self._standard_read(session, item) for item in session.exec(statement).all()]

    def get_standard(self, context: TenantContext, standard_id: int) -> StandardRead:
        with self._session() as session:
            standard = session.exec(
                select(Standard).where(
                    *build_conditions(Standard, apply_facility_tenant_filter(context, {"id": standard_id}))
                )
            ).first()
            if standard is None:
                raise NotFoundError("standard not found")
            return self._standard_read(session, standard)

    def create_standard(self, context: TenantContext, payload: StandardCreate) -> StandardRead:
        with self._session() as session:
            facility = self._scoped_facility(session, context, payload.facility_id)
            department = session.get(Department, payload.department_id)
            area = session.get(Area, payload.area_id)
            if department is None or department.facility_id != facility.id:
                raise NotFoundError("department not found in facility")
            if area is None or area.department_id != department.id:
                raise NotFoundError("area not found in department")
            existing = session.exec(
                select(Standard.id).where(Standard.area_id == area.id).where(Standard.name == payload.name)
            ).first()
            if existing is not None:
                raise ConflictError(f"Standard '{payload.name}' already exists in this area")

            standard = Standard(
                facility_id=facility.id,
                department_id=department.id,
                area_id=area.id,
                name=payload.name,
                notes=payload.notes,
                best_practices=payload.best_practices,
                process_opportunities=payload.process_opportunities,
            )
            session.add(standard)
            session.flush()
            for entry in payload.uom_entries:
                session.add(
                    UomEntry(
                        standard_id=standard.id,
                        code=entry.code,
                        description=entry.description,
                        sam_value=entry.sam_value,
                        tags=entry.tags,
                    )
                )
            self._commit(session, f"Standard '{payload.name}' already exists in this area")
            session.refresh(standard)
            logger.info("created standard %s in area %s", standard.id, area.id)
            return self._standard_read(session, standard)

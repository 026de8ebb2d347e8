from __future__ import annotations

import logging
from typing import Any, TypeVar

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, select

from app.domain.models import (
    Area,
    Department,
    Facility,
    Organization,
    Standard,
    StandardImportDetail,
    StandardImportResult,
    UomEntry,
)
from app.domain.standard_csv import (
    ParsedStandard,
    parse_csv_content,
    transform_row,
    validate_standard_row,
)
from app.domain.tenancy import TenantContext
from app.infra.db import get_engine
from app.infra.events import event_bus
from app.services.provisioning_service import ProvisioningService
from app.services.query_filters import build_conditions

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=SQLModel)

MAX_ROW_ATTEMPTS = 2


class StandardImportError(Exception):
    pass


class ConflictError(StandardImportError):
    pass


class AccessDeniedError(StandardImportError):
    pass


class StandardImportService:
    def __init__(self, engine: Engine | None = None) -> None:
        self._engine = engine or get_engine()
        self._provisioning = ProvisioningService(self._engine)

    def _session(self) -> Session:
        return Session(self._engine, expire_on_commit=False)

    def _find_or_create(
        self,
        session: Session,
        model: type[ModelT],
        lookup: dict[str, Any],
        **extra: Any,
    ) -> ModelT:
        found = session.exec(select(model).where(*build_conditions(model, lookup))).first()
        if found is not None:
            return found
        created = model(**lookup, **extra)
        session.add(created)
        session.flush()
        return created

    def _resolve_organization(self, session: Session, parsed: ParsedStandard, context: TenantContext) -> Organization:
        code = parsed.organization.code
        organization = session.exec(select(Organization).where(Organization.code == code)).first()
        if organization is not None:
            if not context.is_system_superuser and not context.allows(organization.id):
                raise AccessDeniedError(f"organization '{code}' is not accessible")
            return organization
        if not context.is_system_superuser:
            raise AccessDeniedError(f"organization '{code}' is not accessible")

        organization = Organization(code=code, name=parsed.organization.name)
        session.add(organization)
        session.flush()
        self._provisioning.provision_roles_in_session(session, organization.id)
        logger.info("created organization %s (%s) during standards import", organization.id, code)
        return organization

    def _create_standard(
        self,
        session: Session,
        parsed: ParsedStandard,
        facility: Facility,
        department: Department,
        area: Area,
    ) -> Standard:
        existing = session.exec(
            select(Standard.id).where(Standard.area_id == area.id).where(Standard.name == parsed.standard.name)
        ).first()
        if existing is not None:
            raise ConflictError(f"Standard '{parsed.standard.name}' already exists in this area")

        standard = Standard(
            facility_id=facility.id,
            department_id=department.id,
            area_id=area.id,
            name=parsed.standard.name,
            notes=parsed.standard.notes,
            best_practices=parsed.standard.best_practices,
            process_opportunities=parsed.standard.process_opportunities,
        )
        session.add(standard)
        session.flush()
        for entry in parsed.uom_entries:
            session.add(
                UomEntry(
                    standard_id=standard.id,
                    code=entry.code,
                    description=entry.description,
                    sam_value=entry.sam_value,
                    tags=entry.tags,
                )
            )
        return standard

    def _process_row(self, parsed: ParsedStandard, context: TenantContext) -> Standard:
        with self._session() as session:
            organization = self._resolve_organization(session, parsed, context)
            facility = self._find_or_create(
                session,
                Facility,
                {"organization_id": organization.id, "name": parsed.facility.name},
                ref=parsed.facility.ref,
                city=parsed.facility.city,
            )
            department = self._find_or_create(
                session,
                Department,
                {"facility_id": facility.id, "name": parsed.department.name},
            )
            area = self._find_or_create(
                session,
                Area,
                {"department_id": department.id, "name": parsed.area.name},
            )
            standard = self._create_standard(session, parsed, facility, department, area)
            session.commit()
            return standard

    def _run_row(self, parsed: ParsedStandard, context: TenantContext) -> Standard:
        attempt = 1
        while True:
            try:
                return self._process_row(parsed, context)
            except IntegrityError:
                if attempt >= MAX_ROW_ATTEMPTS:
                    raise
                attempt += 1
                logger.info("uniqueness race on standard '%s', retrying with fresh lookups", parsed.standard.name)

    def import_csv(self, content: str, context: TenantContext) -> StandardImportResult:
        rows = parse_csv_content(content)

        errors: list[str] = []
        warnings: list[str] = []
        for index, row in enumerate(rows):
            validation = validate_standard_row(row, index)
            errors.extend(validation.errors)
            warnings.extend(validation.warnings)
        if errors:
            logger.info("rejected standards import: %d rows, %d validation errors", len(rows), len(errors))
            return StandardImportResult(
                success=False,
                created=0,
                errors=errors,
                warnings=warnings,
                details=[],
                rejected=True,
            )

        result = StandardImportResult(success=True, warnings=warnings)
        for index, row in enumerate(rows):
            number = index + 1
            parsed = transform_row(row)
            try:
                self._run_row(parsed, context)
            except (ConflictError, AccessDeniedError, IntegrityError) as exc:
                message = str(exc) if not isinstance(exc, IntegrityError) else "conflicting concurrent write"
                logger.warning("standards import row %d failed: %s", number, message)
                result.errors.append(f"Row {number}: Failed to create standard - {message}")
                result.details.append(
                    StandardImportDetail(
                        row=number,
                        standard_name=parsed.standard.name,
                        status="error",
                        message=message,
                    )
                )
                continue
            result.created += 1
            result.details.append(
                StandardImportDetail(row=number, standard_name=parsed.standard.name, status="created")
            )

        result.success = not result.errors
        logger.info(
            "standards import finished: %d rows, %d created, %d failed",
            len(rows),
            result.created,
            len(result.errors),
        )
        event_bus.publish_dict(
            "standards.imported",
            context.organization_id,
            {"rows": len(rows), "created": result.created, "failed": len(result.errors)},
            actor_id=context.user_id,
        )
        return result

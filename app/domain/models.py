from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index, UniqueConstraint
from sqlmodel import Field, SQLModel


def now_utc() -> datetime:
    return datetime.now(UTC)


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    organization_id: int | None = Field(default=None, index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    organization_id: int | None = Field(default=None, index=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class Organization(SQLModel, table=True):
    __tablename__ = "organizations"

    id: int | None = Field(default=None, primary_key=True)
    code: str = Field(index=True, unique=True)
    name: str = Field(index=True)
    logo: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    organization_id: int | None = Field(default=None, foreign_key="organizations.id", index=True)
    email: str = Field(index=True, unique=True)
    name: str
    password_hash: str
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Role(SQLModel, table=True):
    __tablename__ = "roles"
    __table_args__ = (UniqueConstraint("organization_id", "name", name="uq_roles_organization_name"),)

    id: int | None = Field(default=None, primary_key=True)
    organization_id: int | None = Field(default=None, foreign_key="organizations.id", index=True)
    name: str = Field(index=True)
    description: str | None = None
    is_system_role: bool = Field(default=False)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Permission(SQLModel, table=True):
    __tablename__ = "permissions"

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    resource: str
    action: str
    description: str | None = None
    tags: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    created_at: datetime = Field(default_factory=now_utc, index=True)


class RolePermission(SQLModel, table=True):
    __tablename__ = "role_permissions"

    role_id: int = Field(foreign_key="roles.id", primary_key=True)
    permission_id: int = Field(foreign_key="permissions.id", primary_key=True)
    created_at: datetime = Field(default_factory=now_utc)


class UserRole(SQLModel, table=True):
    __tablename__ = "user_roles"
    __table_args__ = (Index("ix_user_roles_organization_user", "organization_id", "user_id"),)

    user_id: str = Field(foreign_key="users.id", primary_key=True)
    role_id: int = Field(foreign_key="roles.id", primary_key=True)
    organization_id: int | None = Field(default=None, foreign_key="organizations.id")
    created_at: datetime = Field(default_factory=now_utc)


class Facility(SQLModel, table=True):
    __tablename__ = "facilities"
    __table_args__ = (UniqueConstraint("organization_id", "name", name="uq_facilities_organization_name"),)

    id: int | None = Field(default=None, primary_key=True)
    organization_id: int = Field(foreign_key="organizations.id", index=True)
    name: str = Field(index=True)
    ref: str | None = None
    city: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Department(SQLModel, table=True):
    __tablename__ = "departments"
    __table_args__ = (UniqueConstraint("facility_id", "name", name="uq_departments_facility_name"),)

    id: int | None = Field(default=None, primary_key=True)
    facility_id: int = Field(foreign_key="facilities.id", index=True)
    name: str = Field(index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Area(SQLModel, table=True):
    __tablename__ = "areas"
    __table_args__ = (UniqueConstraint("department_id", "name", name="uq_areas_department_name"),)

    id: int | None = Field(default=None, primary_key=True)
    department_id: int = Field(foreign_key="departments.id", index=True)
    name: str = Field(index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Standard(SQLModel, table=True):
    __tablename__ = "standards"
    __table_args__ = (
        UniqueConstraint("area_id", "name", name="uq_standards_area_name"),
        Index("ix_standards_facility_department", "facility_id", "department_id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    facility_id: int = Field(foreign_key="facilities.id", index=True)
    department_id: int = Field(foreign_key="departments.id", index=True)
    area_id: int = Field(foreign_key="areas.id", index=True)
    name: str = Field(index=True)
    notes: str = ""
    best_practices: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    process_opportunities: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    created_at: datetime = Field(default_factory=now_utc, index=True)


class UomEntry(SQLModel, table=True):
    __tablename__ = "uom_entries"

    id: int | None = Field(default=None, primary_key=True)
    standard_id: int = Field(foreign_key="standards.id", index=True, ondelete="CASCADE")
    code: str
    description: str
    sam_value: float
    tags: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    organization_id: int | None = None
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    payload: dict[str, Any] = PydanticField(default_factory=dict)


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class RequestModel(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class OrganizationCreate(RequestModel):
    code: str = PydanticField(min_length=1)
    name: str = PydanticField(min_length=1)
    logo: str | None = None


class OrganizationRead(ORMReadModel):
    id: int
    code: str
    name: str
    logo: str | None = None
    created_at: datetime


class FacilityCreate(RequestModel):
    organization_id: int
    name: str = PydanticField(min_length=1)
    ref: str | None = None
    city: str | None = None


class FacilityRead(ORMReadModel):
    id: int
    organization_id: int
    name: str
    ref: str | None = None
    city: str | None = None
    created_at: datetime


class DepartmentCreate(RequestModel):
    facility_id: int
    name: str = PydanticField(min_length=1)


class DepartmentRead(ORMReadModel):
    id: int
    facility_id: int
    name: str
    created_at: datetime


class AreaCreate(RequestModel):
    department_id: int
    name: str = PydanticField(min_length=1)


class AreaRead(ORMReadModel):
    id: int
    department_id: int
    name: str
    created_at: datetime


class UomEntryCreate(RequestModel):
    code: str = PydanticField(min_length=1)
    description: str = PydanticField(min_length=1)
    sam_value: float = PydanticField(gt=0, allow_inf_nan=False)
    tags: list[str] = PydanticField(default_factory=list)


class UomEntryRead(ORMReadModel):
    id: int
    code: str
    description: str
    sam_value: float
    tags: list[str]


class StandardCreate(RequestModel):
    facility_id: int
    department_id: int
    area_id: int
    name: str = PydanticField(min_length=1)
    notes: str = ""
    best_practices: list[str] = PydanticField(default_factory=list)
    process_opportunities: list[str] = PydanticField(default_factory=list)
    uom_entries: list[UomEntryCreate] = PydanticField(min_length=1)


class StandardRead(ORMReadModel):
    id: int
    facility_id: int
    department_id: int
    area_id: int
    name: str
    notes: str
    best_practices: list[str]
    process_opportunities: list[str]
    created_at: datetime
    uom_entries: list[UomEntryRead] = PydanticField(default_factory=list)


class UserCreate(RequestModel):
    email: str = PydanticField(min_length=3)
    name: str = PydanticField(min_length=1)
    password: str = PydanticField(min_length=1)
    organization_id: int | None = None
    is_active: bool = True


class UserRead(ORMReadModel):
    id: str
    organization_id: int | None = None
    email: str
    name: str
    is_active: bool
    created_at: datetime


class UserRoleAssignRequest(RequestModel):
    role_id: int


class UserRoleRead(ORMReadModel):
    user_id: str
    role_id: int
    organization_id: int | None = None


class BootstrapSuperuserRequest(RequestModel):
    email: str = PydanticField(min_length=3)
    name: str = PydanticField(min_length=1)
    password: str = PydanticField(min_length=1)


class DevLoginRequest(RequestModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class RoleRead(ORMReadModel):
    id: int
    organization_id: int | None = None
    name: str
    description: str | None = None
    is_system_role: bool


class RoleSummaryRead(ORMReadModel):
    id: int
    name: str
    organization_id: int | None = None
    is_system_role: bool


class UserPermissionsRead(ORMReadModel):
    user_id: str
    organization_id: int | None = None
    is_system_superuser: bool
    permissions: list[str]
    roles: list[RoleSummaryRead]


class StandardImportDetail(BaseModel):
    row: int
    standard_name: str = PydanticField(serialization_alias="standardName")
    status: Literal["created", "error"]
    message: str | None = None


class StandardImportResult(BaseModel):
    success: bool
    created: int = 0
    errors: list[str] = PydanticField(default_factory=list)
    warnings: list[str] = PydanticField(default_factory=list)
    details: list[StandardImportDetail] = PydanticField(default_factory=list)
    rejected: bool = PydanticField(default=False, exclude=True)

from __future__ import annotations

import csv
import io
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, create_engine, select

from app import main as app_main
from app.domain.models import (
    AuditLog,
    Department,
    EventRecord,
    Facility,
    Organization,
    Role,
    Standard,
    StandardImportDetail,
    StandardImportResult,
    UomEntry,
)
from app.domain.standard_csv import expected_header, parse_csv_content, validate_standard_row
from app.domain.tenancy import TenantContext
from app.infra import audit, db, events
from app.services import standard_import_service
from app.services.standard_import_service import StandardImportService


@pytest.fixture()
def import_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "standard_import_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(audit, "engine", test_engine)
    monkeypatch.setattr(events, "engine", test_engine)
    client = TestClient(app_main.app)
    yield client
    client.close()


def _auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _login(client: TestClient, email: str, password: str) -> str:
    response = client.post("/api/identity/dev-login", json={"email": email, "password": password})
    assert response.status_code == 200
    return response.json()["access_token"]


def _bootstrap(client: TestClient) -> str:
    response = client.post(
        "/api/identity/bootstrap-superuser",
        json={"email": "root@example.test", "name": "Root", "password": "root-pass"},
    )
    assert response.status_code == 201
    return _login(client, "root@example.test", "root-pass")


def _member(client: TestClient, root: str, code: str, role: str) -> str:
    org = client.post("/api/organizations", json={"code": code, "name": f"{code} Corp"}, headers=_auth_header(root))
    assert org.status_code == 201
    org_id = org.json()["id"]
    email = f"{role.split()[0].lower()}@{code.lower()}.test"
    user = client.post(
        "/api/users",
        json={"email": email, "name": role, "password": "pw", "organization_id": org_id},
        headers=_auth_header(root),
    )
    assert user.status_code == 201
    roles = client.get("/api/roles", headers=_auth_header(root)).json()
    role_id = next(item["id"] for item in roles if item["organization_id"] == org_id and item["name"] == role)
    assigned = client.post(
        f"/api/users/{user.json()['id']}/roles",
        json={"role_id": role_id},
        headers=_auth_header(root),
    )
    assert assigned.status_code == 200
    return _login(client, email, "pw")


def _row(**overrides: str) -> dict[str, str]:
    row = {
        "organizationCode": "ACME",
        "organizationName": "Acme Corp",
        "facilityName": "North Plant",
        "facilityRef": "NP-1",
        "facilityCity": "Lyon",
        "departmentName": "Production",
        "areaName": "Line 1",
        "standardName": "Bracket Assembly",
        "notes": "",
        "bestPractices": "Wear gloves",
        "processOpportunities": "Kitting",
        "uom1_code": "PCS",
        "uom1_description": "Pieces",
        "uom1_samValue": "0.75",
        "uom1_tags": "assembly",
    }
    row.update(overrides)
    return row


def _csv_bytes(rows: list[dict[str, str]]) -> bytes:
    header = expected_header(1)
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(header)
    for row in rows:
        writer.writerow([row.get(column, "") for column in header])
    return buffer.getvalue().encode("utf-8")


def _upload(client: TestClient, token: str, content: bytes, filename: str = "standards.csv") -> Any:
    return client.post(
        "/api/standards/upload",
        files={"file": (filename, content, "text/csv")},
        headers=_auth_header(token),
    )


def _count(model: type[SQLModel]) -> int:
    with Session(db.get_engine()) as session:
        return len(session.exec(select(model)).all())


def test_invalid_row_rejects_whole_submission(import_client: TestClient) -> None:
    root = _bootstrap(import_client)
    response = _upload(import_client, root, _csv_bytes([_row(standardName="Good"), _row(standardName="")]))

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["created"] == 0
    assert body["details"] == []
    assert "Row 2: Missing required field 'standardName'" in body["errors"]
    assert "rejected" not in body
    assert _count(Standard) == 0
    assert _count(Organization) == 0


def test_superuser_import_creates_hierarchy_once(import_client: TestClient) -> None:
    root = _bootstrap(import_client)
    rows = [_row(standardName="Bracket Assembly"), _row(standardName="Hinge Assembly")]
    response = _upload(import_client, root, _csv_bytes(rows))

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["created"] == 2
    assert body["errors"] == []
    assert [(item["row"], item["standardName"], item["status"]) for item in body["details"]] == [
        (1, "Bracket Assembly", "created"),
        (2, "Hinge Assembly", "created"),
    ]

    with Session(db.get_engine()) as session:
        organizations = session.exec(select(Organization).where(Organization.code == "ACME")).all()
        assert len(organizations) == 1
        roles = session.exec(select(Role).where(Role.organization_id == organizations[0].id)).all()
        assert sorted(item.name for item in roles) == ["Manager", "Observer", "Organization Admin"]
        facility = session.exec(select(Facility)).one()
        assert (facility.ref, facility.city) == ("NP-1", "Lyon")
        entries = session.exec(select(UomEntry)).all()
        assert [item.tags for item in entries] == [["assembly"], ["assembly"]]
        imported = session.exec(select(EventRecord).where(EventRecord.event_type == "standards.imported")).one()
        assert imported.payload == {"rows": 2, "created": 2, "failed": 0}
    assert _count(Department) == 1
    assert _count(Standard) == 2


def test_duplicate_standard_is_a_row_error(import_client: TestClient) -> None:
    root = _bootstrap(import_client)
    rows = [_row(), _row(), _row(standardName="Hinge Assembly")]
    response = _upload(import_client, root, _csv_bytes(rows))

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is False
    assert body["created"] == 2
    assert body["errors"] == [
        "Row 2: Failed to create standard - Standard 'Bracket Assembly' already exists in this area"
    ]
    assert [item["status"] for item in body["details"]] == ["created", "error", "created"]
    assert body["details"][1]["message"] == "Standard 'Bracket Assembly' already exists in this area"
    assert body["details"][1]["standardName"] == "Bracket Assembly"
    assert "standard_name" not in body["details"][1]
    assert _count(Standard) == 2


def test_failed_row_leaves_no_partial_hierarchy(
    import_client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    root = _bootstrap(import_client)
    original = StandardImportService._create_standard

    def _fail_for_second_plant(self: StandardImportService, session: Session, parsed: Any, *args: Any) -> Standard:
        if parsed.facility.name == "South Plant":
            raise standard_import_service.ConflictError("simulated failure")
        return original(self, session, parsed, *args)

    monkeypatch.setattr(StandardImportService, "_create_standard", _fail_for_second_plant)
    rows = [
        _row(),
        _row(facilityName="South Plant", departmentName="Packing", standardName="Boxing"),
    ]
    response = _upload(import_client, root, _csv_bytes(rows))

    assert response.status_code == 200
    assert response.json()["created"] == 1
    with Session(db.get_engine()) as session:
        assert session.exec(select(Facility).where(Facility.name == "South Plant")).first() is None
        assert session.exec(select(Department).where(Department.name == "Packing")).first() is None
    assert _count(Standard) == 1


def test_member_imports_only_into_own_organization(import_client: TestClient) -> None:
    root = _bootstrap(import_client)
    manager = _member(import_client, root, "ACME", "Manager")
    rows = [_row(), _row(organizationCode="OTHER", organizationName="Other Corp", standardName="Foreign")]
    response = _upload(import_client, manager, _csv_bytes(rows))

    assert response.status_code == 200
    body = response.json()
    assert body["created"] == 1
    assert body["errors"] == ["Row 2: Failed to create standard - organization 'OTHER' is not accessible"]
    with Session(db.get_engine()) as session:
        assert session.exec(select(Organization).where(Organization.code == "OTHER")).first() is None


def test_observer_cannot_upload(import_client: TestClient) -> None:
    root = _bootstrap(import_client)
    observer = _member(import_client, root, "ACME", "Observer")
    response = _upload(import_client, observer, _csv_bytes([_row()]))
    assert response.status_code == 403


def test_upload_input_errors(import_client: TestClient) -> None:
    root = _bootstrap(import_client)
    headers = _auth_header(root)

    missing = import_client.post("/api/standards/upload", headers=headers)
    assert missing.status_code == 400
    assert missing.json() == {"error": "No file uploaded"}

    wrong_type = _upload(import_client, root, b"hello", filename="notes.txt")
    assert wrong_type.status_code == 400
    assert wrong_type.json() == {"error": "File must be a CSV"}

    unparsable = _upload(import_client, root, b"name,code\nx,y\n")
    assert unparsable.status_code == 400
    assert unparsable.json()["error"].startswith("Failed to parse CSV")

    binary = _upload(import_client, root, b"\xff\xfe\x00bad")
    assert binary.status_code == 400
    assert binary.json() == {"error": "File must be UTF-8 encoded text"}

    with Session(db.get_engine()) as session:
        audits = session.exec(select(AuditLog).where(AuditLog.resource == "/api/standards/upload")).all()
    assert len(audits) == 4


def test_oversized_upload_is_rejected(import_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    from app.api.routers import standards

    root = _bootstrap(import_client)
    monkeypatch.setattr(standards, "CSV_MAX_UPLOAD_BYTES", 10)
    response = _upload(import_client, root, _csv_bytes([_row()]))
    assert response.status_code == 400
    assert "upload limit" in response.json()["error"]


def test_template_download_round_trips(import_client: TestClient) -> None:
    root = _bootstrap(import_client)
    response = import_client.get("/api/standards/template", headers=_auth_header(root))

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert response.headers["content-disposition"] == 'attachment; filename="standards-template.csv"'
    rows = parse_csv_content(response.text)
    assert validate_standard_row(rows[0], 0).errors == []

    imported = _upload(import_client, root, response.content, filename="standards-template.csv")
    assert imported.status_code == 200
    assert imported.json()["created"] == 1


def _service_context() -> TenantContext:
    return TenantContext(user_id="root", organization_id=None, is_system_superuser=True)


def test_integrity_race_is_retried_once(import_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    service = StandardImportService(db.get_engine())
    original = StandardImportService._process_row
    calls: list[str] = []

    def _race_once(self: StandardImportService, parsed: Any, context: TenantContext) -> Standard:
        calls.append(parsed.standard.name)
        if len(calls) == 1:
            raise IntegrityError("INSERT INTO facilities", {}, Exception("UNIQUE constraint failed"))
        return original(self, parsed, context)

    monkeypatch.setattr(StandardImportService, "_process_row", _race_once)
    result = service.import_csv(_csv_bytes([_row()]).decode(), _service_context())

    assert calls == ["Bracket Assembly", "Bracket Assembly"]
    assert result.success is True
    assert result.created == 1


def test_repeated_integrity_error_becomes_row_error(
    import_client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    service = StandardImportService(db.get_engine())

    def _always_race(self: StandardImportService, parsed: Any, context: TenantContext) -> Standard:
        raise IntegrityError("INSERT INTO standards", {}, Exception("UNIQUE constraint failed"))

    monkeypatch.setattr(StandardImportService, "_process_row", _always_race)
    result = service.import_csv(_csv_bytes([_row()]).decode(), _service_context())

    assert result.success is False
    assert result.created == 0
    assert result.errors == ["Row 1: Failed to create standard - conflicting concurrent write"]
    assert result.details[0].status == "error"


def test_import_result_serializes_camel_case_detail_names() -> None:
    result = StandardImportResult(
        success=False,
        details=[StandardImportDetail(row=1, standard_name="Widget", status="error", message="bad")],
        rejected=True,
    )

    body = result.model_dump(mode="json", by_alias=True)

    assert body["details"] == [{"row": 1, "standardName": "Widget", "status": "error", "message": "bad"}]
    assert "rejected" not in body

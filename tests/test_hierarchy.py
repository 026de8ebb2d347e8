from __future__ import annotations

from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlalchemy.exc import OperationalError
from sqlmodel import SQLModel, create_engine

from app import main as app_main
from app.infra import audit, db, events
from app.services.hierarchy_service import HierarchyService


@pytest.fixture()
def hierarchy_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "hierarchy_test.db"
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


def _post(client: TestClient, token: str, path: str, payload: dict[str, Any]) -> dict[str, Any]:
    response = client.post(path, json=payload, headers=_auth_header(token))
    assert response.status_code == 201, response.text
    return response.json()


def _setup_tenants(client: TestClient) -> dict[str, Any]:
    client.post(
        "/api/identity/bootstrap-superuser",
        json={"email": "root@example.test", "name": "Root", "password": "root-pass"},
    )
    root = _login(client, "root@example.test", "root-pass")
    state: dict[str, Any] = {"root": root}
    for code in ("A", "B"):
        org_id = _post(client, root, "/api/organizations", {"code": code, "name": f"Org {code}"})["id"]
        roles = client.get("/api/roles", headers=_auth_header(root)).json()
        admin_role = next(
            item["id"] for item in roles if item["organization_id"] == org_id and item["name"] == "Organization Admin"
        )
        email = f"admin@{code.lower()}.test"
        user_id = _post(
            client,
            root,
            "/api/users",
            {"email": email, "name": f"Admin {code}", "password": "pw", "organization_id": org_id},
        )["id"]
        client.post(f"/api/users/{user_id}/roles", json={"role_id": admin_role}, headers=_auth_header(root))
        token = _login(client, email, "pw")
        facility = _post(client, token, "/api/facilities", {"organization_id": org_id, "name": "Plant"})
        department = _post(client, token, "/api/departments", {"facility_id": facility["id"], "name": "Production"})
        area = _post(client, token, "/api/areas", {"department_id": department["id"], "name": "Line 1"})
        state[code] = {
            "org_id": org_id,
            "token": token,
            "facility_id": facility["id"],
            "department_id": department["id"],
            "area_id": area["id"],
        }
    return state


def test_members_only_list_their_organization(hierarchy_client: TestClient) -> None:
    state = _setup_tenants(hierarchy_client)
    tenant_a = state["A"]
    headers = _auth_header(tenant_a["token"])

    organizations = hierarchy_client.get("/api/organizations", headers=headers).json()
    assert [item["id"] for item in organizations] == [tenant_a["org_id"]]

    facilities = hierarchy_client.get("/api/facilities", headers=headers).json()
    assert [item["id"] for item in facilities] == [tenant_a["facility_id"]]

    departments = hierarchy_client.get("/api/departments", headers=headers).json()
    assert [item["id"] for item in departments] == [tenant_a["department_id"]]

    areas = hierarchy_client.get("/api/areas", headers=headers).json()
    assert [item["id"] for item in areas] == [tenant_a["area_id"]]

    foreign_filter = hierarchy_client.get(
        "/api/facilities",
        params={"organization_id": state["B"]["org_id"]},
        headers=headers,
    )
    assert foreign_filter.json() == []

    everything = hierarchy_client.get("/api/facilities", headers=_auth_header(state["root"])).json()
    assert len(everything) == 2


def test_cross_tenant_reads_are_not_found(hierarchy_client: TestClient) -> None:
    state = _setup_tenants(hierarchy_client)
    headers = _auth_header(state["A"]["token"])
    tenant_b = state["B"]

    assert hierarchy_client.get(f"/api/organizations/{tenant_b['org_id']}", headers=headers).status_code == 404
    assert hierarchy_client.get(f"/api/facilities/{tenant_b['facility_id']}", headers=headers).status_code == 404
    assert hierarchy_client.get(f"/api/departments/{tenant_b['department_id']}", headers=headers).status_code == 404
    assert hierarchy_client.get(f"/api/areas/{tenant_b['area_id']}", headers=headers).status_code == 404
    assert hierarchy_client.get("/api/facilities/999", headers=headers).status_code == 404

    own = hierarchy_client.get(f"/api/areas/{state['A']['area_id']}", headers=headers)
    assert own.status_code == 200


def test_cross_tenant_writes_are_refused(hierarchy_client: TestClient) -> None:
    state = _setup_tenants(hierarchy_client)
    headers = _auth_header(state["A"]["token"])
    tenant_b = state["B"]

    facility = hierarchy_client.post(
        "/api/facilities",
        json={"organization_id": tenant_b["org_id"], "name": "Intruder"},
        headers=headers,
    )
    assert facility.status_code == 403

    department = hierarchy_client.post(
        "/api/departments",
        json={"facility_id": tenant_b["facility_id"], "name": "Intruder"},
        headers=headers,
    )
    assert department.status_code == 404

    organization = hierarchy_client.post(
        "/api/organizations",
        json={"code": "NEW", "name": "New"},
        headers=headers,
    )
    assert organization.status_code == 403


def test_duplicate_names_conflict(hierarchy_client: TestClient) -> None:
    state = _setup_tenants(hierarchy_client)
    tenant_a = state["A"]
    response = hierarchy_client.post(
        "/api/facilities",
        json={"organization_id": tenant_a["org_id"], "name": "Plant"},
        headers=_auth_header(tenant_a["token"]),
    )
    assert response.status_code == 409


def test_standard_crud_checks_hierarchy(hierarchy_client: TestClient) -> None:
    state = _setup_tenants(hierarchy_client)
    tenant_a = state["A"]
    headers = _auth_header(tenant_a["token"])
    payload = {
        "facility_id": tenant_a["facility_id"],
        "department_id": tenant_a["department_id"],
        "area_id": tenant_a["area_id"],
        "name": "Bracket Assembly",
        "best_practices": ["Wear gloves"],
        "uom_entries": [{"code": "PCS", "description": "Pieces", "sam_value": 0.5}],
    }

    created = hierarchy_client.post("/api/standards", json=payload, headers=headers)
    assert created.status_code == 201
    body = created.json()
    assert body["uom_entries"][0]["code"] == "PCS"

    duplicate = hierarchy_client.post("/api/standards", json=payload, headers=headers)
    assert duplicate.status_code == 409

    mixed = hierarchy_client.post(
        "/api/standards",
        json={**payload, "name": "Mixed", "area_id": state["B"]["area_id"]},
        headers=headers,
    )
    assert mixed.status_code == 404

    invalid = hierarchy_client.post(
        "/api/standards",
        json={**payload, "name": "Zero", "uom_entries": [{"code": "PCS", "description": "Pieces", "sam_value": 0}]},
        headers=headers,
    )
    assert invalid.status_code == 422

    fetched = hierarchy_client.get(f"/api/standards/{body['id']}", headers=headers)
    assert fetched.status_code == 200
    assert fetched.json()["name"] == "Bracket Assembly"

    foreign = hierarchy_client.get(f"/api/standards/{body['id']}", headers=_auth_header(state["B"]["token"]))
    assert foreign.status_code == 404
    listed = hierarchy_client.get("/api/standards", headers=_auth_header(state["B"]["token"]))
    assert listed.json() == []


def test_store_errors_become_generic_500(hierarchy_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    state = _setup_tenants(hierarchy_client)

    def _broken(self: HierarchyService, context: Any) -> list[Any]:
        raise OperationalError("SELECT organizations", {}, Exception("connection lost"))

    monkeypatch.setattr(HierarchyService, "list_organizations", _broken)
    response = hierarchy_client.get("/api/organizations", headers=_auth_header(state["A"]["token"]))
    assert response.status_code == 500
    assert response.json() == {"detail": "internal server error"}

from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import create_engine, inspect
from sqlmodel import SQLModel

from app.domain import models  # noqa: F401
from app.infra import migrate

ROOT = Path(__file__).resolve().parents[1]


def test_upgrade_head_matches_models(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr(migrate, "ALEMBIC_CONFIG", str(ROOT / "alembic.ini"))
    database_url = f"sqlite:///{tmp_path / 'migrated.db'}"

    migrate.run_upgrade_head(database_url)

    inspector = inspect(create_engine(database_url))
    tables = set(inspector.get_table_names()) - {"alembic_version"}
    assert tables == set(SQLModel.metadata.tables)
    for name, table in SQLModel.metadata.tables.items():
        migrated = {column["name"] for column in inspector.get_columns(name)}
        assert migrated == {column.name for column in table.columns}, name
    unique = {item["name"] for item in inspector.get_unique_constraints("standards")}
    assert "uq_standards_area_name" in unique

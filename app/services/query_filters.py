from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import SQLModel, col, select

from app.domain.models import Area, Department, Facility, Organization, Standard

RELATED_MODELS: dict[str, type[SQLModel]] = {
    "organization": Organization,
    "facility": Facility,
    "department": Department,
    "area": Area,
    "standard": Standard,
}


def _column(model: type[SQLModel], name: str) -> Any:
    column = getattr(model, name, None)
    if column is None or name not in model.model_fields:
        raise ValueError(f"unknown filter field {model.__name__}.{name}")
    return column


def build_conditions(model: type[SQLModel], filters: Mapping[str, Any]) -> list[ColumnElement[bool]]:
    conditions: list[ColumnElement[bool]] = []
    for key, value in filters.items():
        if isinstance(value, Mapping):
            related = RELATED_MODELS.get(key)
            if related is None:
                raise ValueError(f"unknown filter relation {model.__name__}.{key}")
            foreign_key = _column(model, f"{key}_id")
            subquery = select(_column(related, "id")).where(*build_conditions(related, value))
            conditions.append(col(foreign_key).in_(subquery))
            continue
        column = _column(model, key)
        if value is None:
            conditions.append(col(column).is_(None))
        else:
            conditions.append(col(column) == value)
    return conditions

from __future__ import annotations

import csv
import io
import math
import re
from collections.abc import Iterator
from dataclasses import dataclass, field

from pydantic import BaseModel
from pydantic import Field as PydanticField

MAX_UOM_ENTRIES = 75
LIST_DELIMITER = ";"
TAG_SPLIT_PATTERN = re.compile(r"[;,]")

BASE_COLUMNS: tuple[str, ...] = (
    "organizationCode",
    "organizationName",
    "facilityName",
    "facilityRef",
    "facilityCity",
    "departmentName",
    "areaName",
    "standardName",
    "notes",
    "bestPractices",
    "processOpportunities",
)
UOM_FIELDS: tuple[str, ...] = ("code", "description", "samValue", "tags")
REQUIRED_COLUMNS: tuple[str, ...] = (
    "organizationCode",
    "organizationName",
    "facilityName",
    "departmentName",
    "areaName",
    "standardName",
)


class CsvParseError(ValueError):
    pass


def uom_columns(number: int) -> tuple[str, ...]:
    return tuple(f"uom{number}_{name}" for name in UOM_FIELDS)


def expected_header(uom_groups: int = MAX_UOM_ENTRIES) -> list[str]:
    header = list(BASE_COLUMNS)
    for number in range(1, uom_groups + 1):
        header.extend(uom_columns(number))
    return header


def split_list(value: str, pattern: re.Pattern[str] | None = None) -> list[str]:
    parts = pattern.split(value) if pattern is not None else value.split(LIST_DELIMITER)
    return [item.strip() for item in parts if item.strip()]


def parse_sam_value(value: str) -> float | None:
    try:
        parsed = float(value)
    except ValueError:
        return None
    if not math.isfinite(parsed) or parsed <= 0:
        return None
    return parsed


@dataclass(frozen=True)
class UomCells:
    code: str
    description: str
    sam_value: str
    tags: str

    def is_blank(self) -> bool:
        return not (self.code or self.description or self.sam_value)


@dataclass(frozen=True)
class StandardCsvRow:
    line: int
    values: dict[str, str] = field(default_factory=dict)
    uom_groups: int = 0

    def get(self, column: str) -> str:
        return self.values.get(column, "")

    def uom_cells(self) -> Iterator[tuple[int, UomCells]]:
        for number in range(1, self.uom_groups + 1):
            code, description, sam_value, tags = (self.get(column) for column in uom_columns(number))
            yield number, UomCells(code=code, description=description, sam_value=sam_value, tags=tags)


@dataclass
class RowValidation:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


class OrganizationData(BaseModel):
    code: str
    name: str


class FacilityData(BaseModel):
    name: str
    ref: str | None = None
    city: str | None = None


class NamedData(BaseModel):
    name: str


class StandardData(BaseModel):
    name: str
    notes: str = ""
    best_practices: list[str] = PydanticField(default_factory=list)
    process_opportunities: list[str] = PydanticField(default_factory=list)


class UomEntryData(BaseModel):
    code: str
    description: str
    sam_value: float
    tags: list[str] = PydanticField(default_factory=list)


class ParsedStandard(BaseModel):
    organization: OrganizationData
    facility: FacilityData
    department: NamedData
    area: NamedData
    standard: StandardData
    uom_entries: list[UomEntryData]


def _check_header(header: list[str]) -> int:
    base = list(BASE_COLUMNS)
    for position, column in enumerate(base):
        found = header[position] if position < len(header) else None
        if found != column:
            raise CsvParseError(f"header column {position + 1} must be '{column}', found '{found or ''}'")
    rest = header[len(base) :]
    if not rest or len(rest) % len(UOM_FIELDS):
        raise CsvParseError(
            "header must end with complete UOM column groups (uomN_code, uomN_description, uomN_samValue, uomN_tags)"
        )
    groups = len(rest) // len(UOM_FIELDS)
    if groups > MAX_UOM_ENTRIES:
        raise CsvParseError(f"header declares {groups} UOM groups, at most {MAX_UOM_ENTRIES} are supported")
    if header != expected_header(groups):
        mismatch = next(
            column for column, wanted in zip(header, expected_header(groups), strict=True) if column != wanted
        )
        raise CsvParseError(f"unexpected header column '{mismatch}'")
    return groups


def parse_csv_content(content: str) -> list[StandardCsvRow]:
    text = content.lstrip("\ufeff")
    if not text.strip():
        raise CsvParseError("CSV file is empty")

    reader = csv.reader(io.StringIO(text, newline=""), strict=True)
    try:
        records = [(reader.line_num, record) for record in reader if any(cell.strip() for cell in record)]
    except csv.Error as exc:
        raise CsvParseError(f"line {reader.line_num}: {exc}") from exc
    if len(records) < 2:
        raise CsvParseError("CSV must contain a header row and at least one data row")

    header = [cell.strip() for cell in records[0][1]]
    groups = _check_header(header)
    rows: list[StandardCsvRow] = []
    for line, record in records[1:]:
        if len(record) != len(header):
            raise CsvParseError(f"line {line}: expected {len(header)} columns, found {len(record)}")
        values = {column: cell.strip() for column, cell in zip(header, record, strict=True)}
        rows.append(StandardCsvRow(line=line, values=values, uom_groups=groups))
    return rows


def validate_standard_row(row: StandardCsvRow, index: int) -> RowValidation:
    result = RowValidation()
    label = f"Row {index + 1}"

    for column in REQUIRED_COLUMNS:
        if not row.get(column):
            result.errors.append(f"{label}: Missing required field '{column}'")

    entries = 0
    for number, cells in row.uom_cells():
        if cells.is_blank():
            if cells.tags:
                result.warnings.append(f"{label}: UOM {number} has tags but no other values and will be ignored")
            continue
        entries += 1
        if not cells.code:
            result.errors.append(f"{label}: UOM {number} is missing its code")
        if not cells.description:
            result.errors.append(f"{label}: UOM {number} is missing its description")
        if not cells.sam_value:
            result.errors.append(f"{label}: UOM {number} is missing its SAM value")
        elif parse_sam_value(cells.sam_value) is None:
            result.errors.append(f"{label}: UOM {number} SAM value must be a positive number")

    if entries == 0:
        result.errors.append(f"{label}: At least one UOM entry is required")
    if not split_list(row.get("bestPractices")):
        result.warnings.append(f"{label}: No best practices defined")
    if not split_list(row.get("processOpportunities")):
        result.warnings.append(f"{label}: No process opportunities defined")
    return result


def transform_row(row: StandardCsvRow) -> ParsedStandard:
    uom_entries: list[UomEntryData] = []
    for number, cells in row.uom_cells():
        if cells.is_blank():
            continue
        sam_value = parse_sam_value(cells.sam_value)
        if sam_value is None:
            raise ValueError(f"UOM {number} SAM value must be a positive number")
        uom_entries.append(
            UomEntryData(
                code=cells.code,
                description=cells.description,
                sam_value=sam_value,
                tags=split_list(cells.tags, TAG_SPLIT_PATTERN),
            )
        )

    return ParsedStandard(
        organization=OrganizationData(code=row.get("organizationCode"), name=row.get("organizationName")),
        facility=FacilityData(
            name=row.get("facilityName"),
            ref=row.get("facilityRef") or None,
            city=row.get("facilityCity") or None,
        ),
        department=NamedData(name=row.get("departmentName")),
        area=NamedData(name=row.get("areaName")),
        standard=StandardData(
            name=row.get("standardName"),
            notes=row.get("notes"),
            best_practices=split_list(row.get("bestPractices")),
            process_opportunities=split_list(row.get("processOpportunities")),
        ),
        uom_entries=uom_entries,
    )


SAMPLE_ROW: dict[str, str] = {
    "organizationCode": "EXO",
    "organizationName": "Example Organization",
    "facilityName": "Main Facility",
    "facilityRef": "FAC001",
    "facilityCity": "New York",
    "departmentName": "Production",
    "areaName": "Assembly Line A",
    "standardName": "Widget Assembly Standard",
    "notes": "Additional notes about this standard",
    "bestPractices": "Follow safety protocols at all times;Maintain clean workspace;Use proper lifting techniques",
    "processOpportunities": "Implement visual management system;Standardize tool placement",
    "uom1_code": "Units",
    "uom1_description": "Number of units produced",
    "uom1_samValue": "0.5",
    "uom1_tags": "Production;Quality",
    "uom2_code": "Minutes",
    "uom2_description": "Time spent on task",
    "uom2_samValue": "1.2",
    "uom2_tags": "Time;Efficiency",
    "uom3_code": "Pieces",
    "uom3_description": "Components assembled",
    "uom3_samValue": "0.8",
    "uom3_tags": "Assembly",
}


def generate_csv_template() -> str:
    header = expected_header(MAX_UOM_ENTRIES)
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(header)
    writer.writerow([SAMPLE_ROW.get(column, "") for column in header])
    return buffer.getvalue()

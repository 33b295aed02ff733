"""CSV import/export for CRM collections.

Export flattens entities into one row each (address and related-to split
into columns, list fields joined with ``;``, maps as JSON). Import reads
the same layout back into create payloads; rows that fail validation are
reported with their line number instead of aborting the whole file.
"""

from __future__ import annotations

import csv
import io
import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ValidationError

from src.app.crm.backend.field_mapping import (
    ADDRESS_COLUMNS,
    META_COLUMNS,
    PLAIN_COLUMNS,
    SENSITIVE_KEYS,
)
from src.app.crm.schemas import (
    ActivityCreate,
    CompanyCreate,
    ContactCreate,
    DealCreate,
    EntityKind,
)

CREATE_MODELS: dict[EntityKind, type[BaseModel]] = {
    EntityKind.COMPANIES: CompanyCreate,
    EntityKind.CONTACTS: ContactCreate,
    EntityKind.DEALS: DealCreate,
    EntityKind.ACTIVITIES: ActivityCreate,
}

LIST_FIELDS = {"tags", "contact_ids"}
JSON_FIELDS = {"custom_fields"}
RELATED_COLUMNS = ("related_to_type", "related_to_id")


@dataclass
class RowError:
    row_number: int
    message: str


@dataclass
class ImportResult:
    payloads: list[BaseModel] = field(default_factory=list)
    errors: list[RowError] = field(default_factory=list)


def export_columns(kind: EntityKind) -> list[str]:
    columns = [*META_COLUMNS, *PLAIN_COLUMNS[kind]]
    if kind == EntityKind.COMPANIES:
        columns += [c for c in ADDRESS_COLUMNS if c != "coordinates"]
    if kind == EntityKind.ACTIVITIES:
        columns += list(RELATED_COLUMNS)
    columns += list(SENSITIVE_KEYS.get(kind, {}))
    return columns


def _cell(column: str, value: Any) -> str:
    if value is None:
        return ""
    if column in LIST_FIELDS:
        return ";".join(str(v) for v in value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def export_csv(kind: EntityKind, records: Iterable[BaseModel]) -> str:
    """Write entities of one kind to CSV text with a header row."""
    columns = export_columns(kind)
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=columns)
    writer.writeheader()
    for record in records:
        dumped = record.model_dump(mode="json")
        flat = dict(dumped)
        if dumped.get("address"):
            flat.update(dumped["address"])
        if dumped.get("related_to"):
            flat["related_to_type"] = dumped["related_to"]["type"]
            flat["related_to_id"] = dumped["related_to"]["id"]
        writer.writerow({column: _cell(column, flat.get(column)) for column in columns})
    return output.getvalue()


def _payload(kind: EntityKind, raw: dict[str, str]) -> dict[str, Any]:
    data: dict[str, Any] = {}
    address: dict[str, str] = {}
    for column, value in raw.items():
        if column is None or value is None:
            continue
        value = value.strip()
        if not value or column in META_COLUMNS or column == "created_by":
            continue
        if column in LIST_FIELDS:
            data[column] = [v.strip() for v in value.replace(",", ";").split(";") if v.strip()]
        elif column in JSON_FIELDS:
            data[column] = json.loads(value)
        elif kind == EntityKind.COMPANIES and column in ADDRESS_COLUMNS:
            address[column] = value
        else:
            data[column] = value

    if address:
        data["address"] = address
    if "related_to_type" in data or "related_to_id" in data:
        data["related_to"] = {
            "type": data.pop("related_to_type", None),
            "id": data.pop("related_to_id", None),
        }
    return data


def parse_csv(kind: EntityKind, text: str) -> ImportResult:
    """Read CSV text into create payloads for ``kind``.

    Line numbers in errors count the header as line 1.

    Raises:
        ValueError: ``kind`` has no create payload (products, notes).
    """
    if kind not in CREATE_MODELS:
        raise ValueError(f"Import not supported for {kind.value}")
    model = CREATE_MODELS[kind]

    result = ImportResult()
    reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")))
    for row_number, raw in enumerate(reader, start=2):
        try:
            result.payloads.append(model.model_validate(_payload(kind, raw)))
        except ValidationError as exc:
            first = exc.errors()[0]
            location = ".".join(str(part) for part in first["loc"])
            result.errors.append(RowError(row_number, f"{location}: {first['msg']}"))
        except json.JSONDecodeError as exc:
            result.errors.append(RowError(row_number, f"custom_fields: {exc.msg}"))
    return result

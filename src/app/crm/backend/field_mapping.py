"""Row mappings between CRM domain models and backend table columns.

Defines:
- PLAIN_COLUMNS: per-table columns copied verbatim from the model dump.
- SENSITIVE_KEYS: model fields sealed into the encrypted column, with the
  JSON key each is stored under.
- split_sensitive(): separates sensitive fields from a model dump.
- to_row(): converts a model dump (JSON mode) into a column dict.
- from_row(): converts a backend row (with embedded relations) into a model.

Structured values are flattened on the way out: an Address becomes
street/city/state/postal_code/country/coordinates columns, a RelatedTo
becomes related_to_type/related_to_id. Deal line items live in the
deal_products table and come back embedded as ``products``.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from src.app.crm.backend.crypto import SensitiveDataCipher
from src.app.crm.schemas import (
    Activity,
    Company,
    Contact,
    CustomField,
    Deal,
    EntityKind,
    Note,
    Product,
)


# ── Column Maps ─────────────────────────────────────────────────────────────

PLAIN_COLUMNS: dict[EntityKind, tuple[str, ...]] = {
    EntityKind.COMPANIES: (
        "name",
        "industry",
        "size",
        "website",
        "status",
        "assigned_to",
        "created_by",
    ),
    EntityKind.CONTACTS: (
        "first_name",
        "last_name",
        "email",
        "phone",
        "company_id",
        "title",
        "status",
        "source",
        "tags",
        "assigned_to",
        "last_contacted_at",
        "created_by",
    ),
    EntityKind.DEALS: (
        "name",
        "company_id",
        "value",
        "currency",
        "stage",
        "probability",
        "expected_close_date",
        "contact_ids",
        "source",
        "lost_reason",
        "tags",
        "assigned_to",
        "created_by",
        "closed_at",
    ),
    EntityKind.ACTIVITIES: (
        "type",
        "subject",
        "description",
        "status",
        "due_date",
        "completed_at",
        "assigned_to",
        "created_by",
    ),
    EntityKind.PRODUCTS: (
        "name",
        "description",
        "price",
        "currency",
        "category",
        "status",
        "created_by",
    ),
    EntityKind.NOTES: (
        "security_level",
        "created_by",
    ),
    EntityKind.CUSTOM_FIELDS: (
        "name",
        "field_type",
        "entity_type",
        "options",
        "required",
    ),
}

SENSITIVE_KEYS: dict[EntityKind, dict[str, str]] = {
    EntityKind.COMPANIES: {
        "revenue": "financials",
        "internal_notes": "internalNotes",
        "custom_fields": "customFields",
    },
    EntityKind.CONTACTS: {
        "custom_fields": "customFields",
    },
    EntityKind.NOTES: {
        "content": "content",
    },
}

ADDRESS_COLUMNS = ("street", "city", "state", "postal_code", "country", "coordinates")

META_COLUMNS = ("id", "created_at", "updated_at")

MODELS: dict[EntityKind, type[BaseModel]] = {
    EntityKind.COMPANIES: Company,
    EntityKind.CONTACTS: Contact,
    EntityKind.DEALS: Deal,
    EntityKind.ACTIVITIES: Activity,
    EntityKind.PRODUCTS: Product,
    EntityKind.NOTES: Note,
    EntityKind.CUSTOM_FIELDS: CustomField,
}


def encrypted_column(kind: EntityKind) -> str:
    return "encrypted_content" if kind == EntityKind.NOTES else "encrypted_data"


# ── Conversion Functions ────────────────────────────────────────────────────


def split_sensitive(
    kind: EntityKind, data: dict[str, Any]
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Split a model dump into (plain fields, sensitive payload).

    The sensitive payload is keyed by its stored JSON name
    (``financials``, ``customFields`` ...) and only contains fields present
    in ``data``.
    """
    keys = SENSITIVE_KEYS.get(kind, {})
    plain = {k: v for k, v in data.items() if k not in keys}
    sensitive = {keys[k]: v for k, v in data.items() if k in keys}
    return plain, sensitive


def to_row(kind: EntityKind, data: dict[str, Any]) -> dict[str, Any]:
    """Convert a JSON-mode model dump into backend columns.

    Only keys present in ``data`` are emitted, so the same function maps
    full create payloads and partial updates. Sensitive fields are ignored
    here; callers seal them via split_sensitive() and the cipher.
    """
    row = {column: data[column] for column in PLAIN_COLUMNS[kind] if column in data}

    if "address" in data:
        address = data["address"] or {}
        for column in ADDRESS_COLUMNS:
            row[column] = address.get(column)

    related_to = data.get("related_to")
    if related_to:
        row["related_to_type"] = related_to["type"]
        row["related_to_id"] = related_to["id"]

    return row


def deal_product_rows(deal_id: str, products: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Rows for the deal_products join table."""
    return [
        {
            "deal_id": deal_id,
            "product_id": product["id"],
            "quantity": product.get("quantity", 1),
            "price": product.get("price", 0),
            "discount": product.get("discount", 0),
        }
        for product in products
    ]


def from_row(
    kind: EntityKind,
    row: dict[str, Any],
    cipher: SensitiveDataCipher | None = None,
) -> BaseModel:
    """Convert a backend row into its domain model.

    Null columns are skipped so model defaults apply. Embedded relations
    from the select (``company``, ``products``) are folded back into
    ``company_id`` and DealProduct line items.
    """
    data: dict[str, Any] = {}
    for column in (*META_COLUMNS, *PLAIN_COLUMNS[kind]):
        if row.get(column) is not None:
            data[column] = row[column]

    if kind == EntityKind.COMPANIES and any(row.get(c) is not None for c in ADDRESS_COLUMNS):
        data["address"] = {
            column: row[column]
            for column in ADDRESS_COLUMNS
            if row.get(column) is not None
        }

    if row.get("related_to_type") is not None:
        data["related_to"] = {"type": row["related_to_type"], "id": row["related_to_id"]}

    company = row.get("company")
    if "company_id" not in data and isinstance(company, dict) and company.get("id"):
        data["company_id"] = company["id"]

    if kind == EntityKind.DEALS and row.get("products"):
        data["products"] = [_line_item(item) for item in row["products"]]

    sealed = row.get(encrypted_column(kind))
    if sealed and cipher is not None:
        opened = cipher.decrypt(sealed)
        if isinstance(opened, dict):
            for field, key in SENSITIVE_KEYS.get(kind, {}).items():
                if opened.get(key) is not None:
                    data[field] = opened[key]

    return MODELS[kind].model_validate(data)


def _line_item(item: dict[str, Any]) -> dict[str, Any]:
    product = item.get("product") or {}
    return {
        "id": item.get("product_id") or product.get("id") or item["id"],
        "name": product.get("name", ""),
        "quantity": item.get("quantity", 1),
        "price": item.get("price", 0),
        "discount": item.get("discount", 0),
    }

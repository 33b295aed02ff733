"""In-process CRM backend -- the ``local`` provider.

Keeps every table in an insertion-ordered dict of domain models. Ids are
uuid4 strings and timestamps are assigned here, exactly as the managed
backend would, so the action layer cannot tell the two apart. Useful for
development without a Supabase project and as the test double for the
store and action layer.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import BaseModel

from src.app.crm.backend.adapter import CRMService
from src.app.crm.backend.field_mapping import META_COLUMNS, MODELS, from_row, to_row
from src.app.crm.errors import EntityNotFoundError
from src.app.crm.schemas import (
    Activity,
    ActivityCreate,
    ActivityFilter,
    ActivityMetrics,
    ActivityUpdate,
    Company,
    CompanyCreate,
    CompanyFilter,
    CompanyUpdate,
    Contact,
    ContactCreate,
    ContactFilter,
    ContactUpdate,
    CRMUpdate,
    CustomField,
    CustomFieldCreate,
    Deal,
    DealCreate,
    DealFilter,
    DealUpdate,
    EntityKind,
    MetricsTimeframe,
    Note,
    NoteCreate,
    PipelineStage,
    Product,
    ProductCreate,
)
from src.app.crm.selectors import build_pipeline, summarize_activities

logger = structlog.get_logger(__name__)


def _matches_search(search: str | None, *values: str) -> bool:
    if not search:
        return True
    needle = search.lower()
    return any(needle in value.lower() for value in values)


class InMemoryCRMService(CRMService):
    """Dict-backed CRMService."""

    def __init__(self) -> None:
        self._tables: dict[EntityKind, dict[str, BaseModel]] = {kind: {} for kind in EntityKind}

    # ── Internals ───────────────────────────────────────────────────────

    def _insert(self, kind: EntityKind, data: BaseModel) -> Any:
        now = datetime.now(timezone.utc)
        entity = MODELS[kind].model_validate(
            {
                **data.model_dump(),
                "id": str(uuid.uuid4()),
                "created_at": now,
                "updated_at": now,
            }
        )
        self._tables[kind][entity.id] = entity
        logger.info("memory_crm.created", kind=kind.value, entity_id=entity.id)
        return entity

    def _update(self, kind: EntityKind, entity_id: str, updates: CRMUpdate) -> Any:
        existing = self._tables[kind].get(entity_id)
        if existing is None:
            raise EntityNotFoundError(kind.value, entity_id)
        entity = MODELS[kind].model_validate(
            {
                **existing.model_dump(),
                **updates.changes(),
                "updated_at": datetime.now(timezone.utc),
            }
        )
        self._tables[kind][entity_id] = entity
        logger.info("memory_crm.updated", kind=kind.value, entity_id=entity_id)
        return entity

    def _all(self, kind: EntityKind) -> list[Any]:
        return list(self._tables[kind].values())

    # ── Collections ─────────────────────────────────────────────────────

    async def get_companies(self, filters: CompanyFilter | None = None) -> list[Company]:
        result: list[Company] = self._all(EntityKind.COMPANIES)
        if filters:
            if filters.status:
                result = [c for c in result if c.status == filters.status]
            if filters.industry:
                result = [c for c in result if c.industry == filters.industry]
            if filters.assigned_to:
                result = [c for c in result if c.assigned_to == filters.assigned_to]
            result = [c for c in result if _matches_search(filters.search, c.name)]
        return result

    async def get_contacts(self, filters: ContactFilter | None = None) -> list[Contact]:
        result: list[Contact] = self._all(EntityKind.CONTACTS)
        if filters:
            if filters.status:
                result = [c for c in result if c.status == filters.status]
            if filters.company_id:
                result = [c for c in result if c.company_id == filters.company_id]
            if filters.assigned_to:
                result = [c for c in result if c.assigned_to == filters.assigned_to]
            result = [
                c for c in result if _matches_search(filters.search, c.first_name, c.last_name)
            ]
        return result

    async def get_deals(self, filters: DealFilter | None = None) -> list[Deal]:
        result: list[Deal] = self._all(EntityKind.DEALS)
        if filters:
            if filters.stage:
                result = [d for d in result if d.stage == filters.stage]
            if filters.company_id:
                result = [d for d in result if d.company_id == filters.company_id]
            if filters.assigned_to:
                result = [d for d in result if d.assigned_to == filters.assigned_to]
            result = [d for d in result if _matches_search(filters.search, d.name)]
        return result

    async def get_activities(self, filters: ActivityFilter | None = None) -> list[Activity]:
        result: list[Activity] = self._all(EntityKind.ACTIVITIES)
        if filters:
            if filters.type:
                result = [a for a in result if a.type == filters.type]
            if filters.status:
                result = [a for a in result if a.status == filters.status]
            if filters.assigned_to:
                result = [a for a in result if a.assigned_to == filters.assigned_to]
            if filters.related_to:
                result = [a for a in result if a.related_to == filters.related_to]
        return result

    # ── Create / update ─────────────────────────────────────────────────

    async def create_company(self, data: CompanyCreate) -> Company:
        return self._insert(EntityKind.COMPANIES, data)

    async def update_company(self, company_id: str, updates: CompanyUpdate) -> Company:
        return self._update(EntityKind.COMPANIES, company_id, updates)

    async def create_contact(self, data: ContactCreate) -> Contact:
        return self._insert(EntityKind.CONTACTS, data)

    async def update_contact(self, contact_id: str, updates: ContactUpdate) -> Contact:
        return self._update(EntityKind.CONTACTS, contact_id, updates)

    async def create_deal(self, data: DealCreate) -> Deal:
        return self._insert(EntityKind.DEALS, data)

    async def update_deal(self, deal_id: str, updates: DealUpdate) -> Deal:
        return self._update(EntityKind.DEALS, deal_id, updates)

    async def create_activity(self, data: ActivityCreate) -> Activity:
        return self._insert(EntityKind.ACTIVITIES, data)

    async def update_activity(self, activity_id: str, updates: ActivityUpdate) -> Activity:
        return self._update(EntityKind.ACTIVITIES, activity_id, updates)

    async def create_product(self, data: ProductCreate) -> Product:
        return self._insert(EntityKind.PRODUCTS, data)

    async def create_note(self, data: NoteCreate) -> Note:
        return self._insert(EntityKind.NOTES, data)

    async def create_custom_field(self, data: CustomFieldCreate) -> CustomField:
        return self._insert(EntityKind.CUSTOM_FIELDS, data)

    # ── Reporting / bulk ────────────────────────────────────────────────

    async def get_deals_pipeline(self) -> list[PipelineStage]:
        return build_pipeline(self._all(EntityKind.DEALS))

    async def get_activity_metrics(self, timeframe: MetricsTimeframe) -> ActivityMetrics:
        return summarize_activities(self._all(EntityKind.ACTIVITIES), timeframe)

    async def import_data(self, kind: EntityKind, rows: list[dict[str, Any]]) -> int:
        now = datetime.now(timezone.utc).isoformat()
        for row in rows:
            entity = from_row(
                kind,
                {"id": str(uuid.uuid4()), "created_at": now, "updated_at": now, **row},
            )
            self._tables[kind][entity.id] = entity
        logger.info("memory_crm.imported", kind=kind.value, count=len(rows))
        return len(rows)

    async def export_data(self, kind: EntityKind) -> list[dict[str, Any]]:
        rows = []
        for entity in self._all(kind):
            dumped = entity.model_dump(mode="json")
            rows.append({**{c: dumped.get(c) for c in META_COLUMNS}, **to_row(kind, dumped)})
        return rows

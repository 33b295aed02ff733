"""CRM service abstract base class -- the interface the store's action layer consumes.

Every backend (managed Supabase project, in-process local store) implements
this ABC. The action layer only ever calls the collection reads and the
create/update pairs; the remaining methods serve pages and scripts directly.

Contract:
- get_*: full current collection (optionally filtered); raise on failure.
- create_*: input has no id; return the persisted entity with its
  backend-assigned id and timestamps.
- update_*: return the full post-update entity; raise EntityNotFoundError
  if the id does not exist.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

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


class CRMService(ABC):
    """Abstract interface for CRM backend operations."""

    # Collections

    @abstractmethod
    async def get_companies(self, filters: CompanyFilter | None = None) -> list[Company]:
        ...

    @abstractmethod
    async def get_contacts(self, filters: ContactFilter | None = None) -> list[Contact]:
        ...

    @abstractmethod
    async def get_deals(self, filters: DealFilter | None = None) -> list[Deal]:
        ...

    @abstractmethod
    async def get_activities(self, filters: ActivityFilter | None = None) -> list[Activity]:
        ...

    # Create / update

    @abstractmethod
    async def create_company(self, data: CompanyCreate) -> Company:
        ...

    @abstractmethod
    async def update_company(self, company_id: str, updates: CompanyUpdate) -> Company:
        ...

    @abstractmethod
    async def create_contact(self, data: ContactCreate) -> Contact:
        ...

    @abstractmethod
    async def update_contact(self, contact_id: str, updates: ContactUpdate) -> Contact:
        ...

    @abstractmethod
    async def create_deal(self, data: DealCreate) -> Deal:
        ...

    @abstractmethod
    async def update_deal(self, deal_id: str, updates: DealUpdate) -> Deal:
        ...

    @abstractmethod
    async def create_activity(self, data: ActivityCreate) -> Activity:
        ...

    @abstractmethod
    async def update_activity(self, activity_id: str, updates: ActivityUpdate) -> Activity:
        ...

    # Catalogue, notes, reporting, bulk data

    @abstractmethod
    async def create_product(self, data: ProductCreate) -> Product:
        ...

    @abstractmethod
    async def create_note(self, data: NoteCreate) -> Note:
        ...

    @abstractmethod
    async def create_custom_field(self, data: CustomFieldCreate) -> CustomField:
        """Define a user-defined field for one entity type."""
        ...

    @abstractmethod
    async def get_deals_pipeline(self) -> list[PipelineStage]:
        """Deals grouped by stage with count, value and weighted value."""
        ...

    @abstractmethod
    async def get_activity_metrics(self, timeframe: MetricsTimeframe) -> ActivityMetrics:
        """Activity totals and completion rate over the trailing timeframe."""
        ...

    @abstractmethod
    async def import_data(self, kind: EntityKind, rows: list[dict[str, Any]]) -> int:
        """Bulk insert raw rows into a table; return the number inserted."""
        ...

    @abstractmethod
    async def export_data(self, kind: EntityKind) -> list[dict[str, Any]]:
        """Return every raw row of a table."""
        ...

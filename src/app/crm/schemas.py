"""Pydantic schemas for the CRM domain -- entities, payloads, filters, analytics.

Defines all structured types shared by the store, action layer and backends:
- Enums: CompanyStatus, ContactStatus, DealStage, ActivityType, ActivityStatus,
  RelatedToType, ProductStatus, EntityKind, MetricsTimeframe
- Entities: Company, Contact, Deal (with DealProduct line items), Activity,
  Product, Note
- Payloads: *Create (no id, no createdBy) and *Update (every field optional)
- Filters: CompanyFilter, ContactFilter, DealFilter, ActivityFilter
- Analytics: PipelineStage, PipelineSummary, ActivityMetrics

Entities are frozen so a snapshot held by the store cannot be changed in
place. Attributes are snake_case; camelCase aliases (``firstName``,
``expectedCloseDate``) are accepted on input and used by ``by_alias`` dumps.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


# ── Enums ───────────────────────────────────────────────────────────────────


class CompanyStatus(str, Enum):
    LEAD = "lead"
    CUSTOMER = "customer"
    PARTNER = "partner"


class ContactStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class DealStage(str, Enum):
    """Pipeline stages in canonical board order."""

    PROSPECTING = "prospecting"
    QUALIFICATION = "qualification"
    PROPOSAL = "proposal"
    NEGOTIATION = "negotiation"
    CLOSED_WON = "closed-won"
    CLOSED_LOST = "closed-lost"


class ActivityType(str, Enum):
    CALL = "call"
    EMAIL = "email"
    MEETING = "meeting"
    TASK = "task"
    NOTE = "note"


class ActivityStatus(str, Enum):
    PLANNED = "planned"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RelatedToType(str, Enum):
    """Entity kinds an activity or note may hang off (exactly one)."""

    CONTACT = "contact"
    COMPANY = "company"
    DEAL = "deal"


class ProductStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class EntityKind(str, Enum):
    """Backend tables; values are the table names."""

    COMPANIES = "companies"
    CONTACTS = "contacts"
    DEALS = "deals"
    ACTIVITIES = "activities"
    PRODUCTS = "products"
    NOTES = "notes"
    CUSTOM_FIELDS = "custom_fields"


class MetricsTimeframe(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


# ── Base ────────────────────────────────────────────────────────────────────


class CRMModel(BaseModel):
    """Common config: camelCase aliases, populate by name, immutable."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class CRMUpdate(CRMModel):
    """Base for partial updates; only explicitly set fields are sent."""

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


# ── Shared value objects ────────────────────────────────────────────────────


class Coordinates(CRMModel):
    lat: float
    lng: float


class Address(CRMModel):
    street: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = ""
    coordinates: Coordinates | None = None


class RelatedTo(CRMModel):
    """Tagged reference to exactly one contact, company or deal."""

    type: RelatedToType
    id: str


def _unique_tags(value: list[str]) -> list[str]:
    seen: dict[str, None] = {}
    for tag in value:
        seen.setdefault(tag, None)
    return list(seen)


# ── Company ─────────────────────────────────────────────────────────────────


class CompanyCreate(CRMModel):
    name: str
    industry: str = ""
    size: str = ""
    website: str = ""
    address: Address | None = None
    status: CompanyStatus = CompanyStatus.LEAD
    revenue: Decimal | None = None
    internal_notes: str | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    assigned_to: str | None = None
    created_by: str | None = None


class Company(CompanyCreate):
    id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CompanyUpdate(CRMUpdate):
    name: str | None = None
    industry: str | None = None
    size: str | None = None
    website: str | None = None
    address: Address | None = None
    status: CompanyStatus | None = None
    revenue: Decimal | None = None
    internal_notes: str | None = None
    custom_fields: dict[str, Any] | None = None
    assigned_to: str | None = None


# ── Contact ─────────────────────────────────────────────────────────────────


class ContactCreate(CRMModel):
    first_name: str
    last_name: str = ""
    email: str = ""
    phone: str = ""
    company_id: str | None = None
    title: str = ""
    status: ContactStatus = ContactStatus.ACTIVE
    source: str = ""
    tags: list[str] = Field(default_factory=list)
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    assigned_to: str | None = None
    last_contacted_at: datetime | None = None
    created_by: str | None = None

    @field_validator("tags")
    @classmethod
    def dedupe_tags(cls, value: list[str]) -> list[str]:
        return _unique_tags(value)


class Contact(ContactCreate):
    id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ContactUpdate(CRMUpdate):
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    company_id: str | None = None
    title: str | None = None
    status: ContactStatus | None = None
    source: str | None = None
    tags: list[str] | None = None
    custom_fields: dict[str, Any] | None = None
    assigned_to: str | None = None
    last_contacted_at: datetime | None = None

    @field_validator("tags")
    @classmethod
    def dedupe_tags(cls, value: list[str] | None) -> list[str] | None:
        return _unique_tags(value) if value is not None else value


# ── Deal ────────────────────────────────────────────────────────────────────


class DealProduct(CRMModel):
    """Line item on a deal; ``id`` is the product id."""

    id: str
    name: str = ""
    quantity: int = Field(default=1, ge=0)
    price: Decimal = Decimal("0")
    discount: Decimal = Field(default=Decimal("0"), ge=0, le=100)

    @property
    def line_total(self) -> Decimal:
        return self.quantity * self.price * (Decimal(100) - self.discount) / Decimal(100)


class DealCreate(CRMModel):
    name: str
    company_id: str | None = None
    value: Decimal = Decimal("0")
    currency: str = Field(default="USD", pattern=r"^[A-Z]{3}$")
    stage: DealStage = DealStage.PROSPECTING
    probability: int = Field(default=0, ge=0, le=100)
    expected_close_date: date | None = None
    products: list[DealProduct] = Field(default_factory=list)
    contact_ids: list[str] = Field(default_factory=list)
    source: str = ""
    lost_reason: str | None = None
    tags: list[str] = Field(default_factory=list)
    assigned_to: str | None = None
    created_by: str | None = None

    @field_validator("tags")
    @classmethod
    def dedupe_tags(cls, value: list[str]) -> list[str]:
        return _unique_tags(value)


class Deal(DealCreate):
    id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None
    closed_at: datetime | None = None

    @property
    def weighted_value(self) -> Decimal:
        return self.value * self.probability / Decimal(100)


class DealUpdate(CRMUpdate):
    name: str | None = None
    company_id: str | None = None
    value: Decimal | None = None
    currency: str | None = Field(default=None, pattern=r"^[A-Z]{3}$")
    stage: DealStage | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    expected_close_date: date | None = None
    contact_ids: list[str] | None = None
    source: str | None = None
    lost_reason: str | None = None
    tags: list[str] | None = None
    assigned_to: str | None = None
    closed_at: datetime | None = None

    @field_validator("tags")
    @classmethod
    def dedupe_tags(cls, value: list[str] | None) -> list[str] | None:
        return _unique_tags(value) if value is not None else value


# ── Activity ────────────────────────────────────────────────────────────────


class ActivityCreate(CRMModel):
    type: ActivityType
    subject: str
    related_to: RelatedTo
    description: str = ""
    status: ActivityStatus = ActivityStatus.PLANNED
    due_date: datetime | None = None
    completed_at: datetime | None = None
    assigned_to: str | None = None
    created_by: str | None = None


class Activity(ActivityCreate):
    id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ActivityUpdate(CRMUpdate):
    type: ActivityType | None = None
    subject: str | None = None
    related_to: RelatedTo | None = None
    description: str | None = None
    status: ActivityStatus | None = None
    due_date: datetime | None = None
    completed_at: datetime | None = None
    assigned_to: str | None = None


# ── Product / Note ──────────────────────────────────────────────────────────


class ProductCreate(CRMModel):
    name: str
    description: str = ""
    price: Decimal = Decimal("0")
    currency: str = Field(default="USD", pattern=r"^[A-Z]{3}$")
    category: str = ""
    status: ProductStatus = ProductStatus.ACTIVE
    created_by: str | None = None


class Product(ProductCreate):
    id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class NoteCreate(CRMModel):
    content: str
    related_to: RelatedTo
    security_level: str = "internal"
    created_by: str | None = None


class Note(NoteCreate):
    id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Custom field definitions ────────────────────────────────────────────────


class CustomFieldCreate(CRMModel):
    """Definition of a user-defined field shown on one entity type.

    ``options`` is free-form (choices for a select field, bounds for a
    number field) and stored as JSON.
    """

    name: str = Field(min_length=1)
    field_type: str = Field(min_length=1)
    entity_type: str = Field(min_length=1)
    options: Any = None
    required: bool = False


class CustomField(CustomFieldCreate):
    id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Filters ─────────────────────────────────────────────────────────────────


class CompanyFilter(BaseModel):
    status: CompanyStatus | None = None
    industry: str | None = None
    assigned_to: str | None = None
    search: str | None = None


class ContactFilter(BaseModel):
    status: ContactStatus | None = None
    company_id: str | None = None
    assigned_to: str | None = None
    search: str | None = None


class DealFilter(BaseModel):
    stage: DealStage | None = None
    company_id: str | None = None
    assigned_to: str | None = None
    search: str | None = None


class ActivityFilter(BaseModel):
    type: ActivityType | None = None
    status: ActivityStatus | None = None
    assigned_to: str | None = None
    related_to: RelatedTo | None = None


# ── Analytics ───────────────────────────────────────────────────────────────


class PipelineStage(BaseModel):
    """One kanban column: the deals in a stage and their totals."""

    stage: DealStage
    deals: list[Deal] = Field(default_factory=list)
    count: int = 0
    total_value: Decimal = Decimal("0")
    weighted_value: Decimal = Decimal("0")


class PipelineSummary(BaseModel):
    total_deals: int = 0
    total_value: Decimal = Decimal("0")
    weighted_value: Decimal = Decimal("0")
    win_rate: float = 0.0


class ActivityMetrics(BaseModel):
    timeframe: MetricsTimeframe
    total: int = 0
    completed: int = 0
    overdue: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)
    completion_rate: float = 0.0

"""Tests for the CRM backends, row mapping, encryption and backend selection.

Tests cover:
- SensitiveDataCipher: open/seal, undecodable blobs
- field_mapping: to_row flattening, from_row embedded relations and
  decryption, split_sensitive
- InMemoryCRMService: filters, unknown id, pipeline, import/export,
  custom field definitions, tag de-duplication on update
- SupabaseCRMService (httpx.MockTransport): URL and headers, filter params
  and quoted search terms, sealed writes, sensitive merge on update, 406
  as not found, 4xx no retry, transient retry, deal line items, custom
  field definitions
- build_crm_service: provider selection and key requirement
"""

from __future__ import annotations

import json
from decimal import Decimal

import httpx
import pytest
from tenacity import wait_none

from src.app.config import Settings
from src.app.crm.backend.crypto import SensitiveDataCipher
from src.app.crm.backend.factory import build_crm_service
from src.app.crm.backend.field_mapping import from_row, split_sensitive, to_row
from src.app.crm.backend.memory import InMemoryCRMService
from src.app.crm.backend.supabase import DEAL_SELECT, OBJECT_ACCEPT, SupabaseCRMService
from src.app.crm.errors import CRMBackendError, EntityNotFoundError
from src.app.crm.schemas import (
    ActivityCreate,
    ActivityFilter,
    CompanyCreate,
    CompanyFilter,
    CompanyUpdate,
    ContactCreate,
    ContactFilter,
    ContactUpdate,
    CustomFieldCreate,
    DealCreate,
    DealFilter,
    DealProduct,
    DealStage,
    DealUpdate,
    EntityKind,
    NoteCreate,
    ProductCreate,
    RelatedTo,
)


# ── Helpers ─────────────────────────────────────────────────────────────────


class _Recorder:
    """httpx.MockTransport handler that records requests.

    Each entry in ``responses`` is either an httpx.Response, an exception
    to raise, or a callable taking the request and returning a response.
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(request)
        return response


def _echo(status_code: int = 201, **extra):
    """Respond with the request body plus ``extra`` columns."""

    def respond(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        return httpx.Response(status_code, json={**body, **extra})

    return respond


def _supabase(cipher: SensitiveDataCipher, recorder: _Recorder, **kwargs) -> SupabaseCRMService:
    return SupabaseCRMService(
        "https://crm.supabase.co/",
        "anon-key",
        cipher,
        retry_wait=wait_none(),
        transport=httpx.MockTransport(recorder),
        **kwargs,
    )


def _body(request: httpx.Request):
    return json.loads(request.content)


# ── SensitiveDataCipher ─────────────────────────────────────────────────────


class TestSensitiveDataCipher:
    def test_seal_and_open(self, cipher):
        token = cipher.encrypt({"financials": Decimal("1200.50"), "customFields": {"tier": "gold"}})

        assert "gold" not in token
        assert cipher.decrypt(token) == {"financials": "1200.50", "customFields": {"tier": "gold"}}

    def test_wrong_key_yields_none(self, cipher):
        other = SensitiveDataCipher(SensitiveDataCipher.generate_key())
        token = other.encrypt({"financials": "10"})

        assert cipher.decrypt(token) is None

    def test_garbage_yields_none(self, cipher):
        assert cipher.decrypt("not-a-fernet-token") is None

    def test_invalid_key_rejected(self):
        with pytest.raises(ValueError):
            SensitiveDataCipher("too-short")


# ── field_mapping ───────────────────────────────────────────────────────────


class TestFieldMapping:
    """Domain model <-> column conversions."""

    def test_company_address_flattened(self):
        data = CompanyCreate(
            name="Acme",
            address={"street": "1 Main St", "city": "Springfield", "postalCode": "12345"},
        ).model_dump(mode="json")

        row = to_row(EntityKind.COMPANIES, data)

        assert row["name"] == "Acme"
        assert row["city"] == "Springfield"
        assert row["postal_code"] == "12345"
        assert row["coordinates"] is None
        assert "address" not in row

    def test_partial_update_emits_only_given_columns(self):
        data = CompanyUpdate(industry="Retail").model_dump(mode="json", exclude_unset=True)

        assert to_row(EntityKind.COMPANIES, data) == {"industry": "Retail"}

    def test_related_to_split(self):
        data = ActivityCreate(
            type="call", subject="Intro", related_to=RelatedTo(type="deal", id="d1")
        ).model_dump(mode="json")

        row = to_row(EntityKind.ACTIVITIES, data)

        assert row["related_to_type"] == "deal"
        assert row["related_to_id"] == "d1"
        assert "related_to" not in row

    def test_split_sensitive(self):
        plain, sensitive = split_sensitive(
            EntityKind.COMPANIES,
            {"name": "Acme", "revenue": "10", "internal_notes": "vip"},
        )

        assert plain == {"name": "Acme"}
        assert sensitive == {"financials": "10", "internalNotes": "vip"}

    def test_from_row_embedded_company(self):
        contact = from_row(
            EntityKind.CONTACTS,
            {"id": "p1", "first_name": "Grace", "company": {"id": "c1", "name": "Acme"}},
        )

        assert contact.company_id == "c1"

    def test_from_row_skips_nulls(self):
        company = from_row(
            EntityKind.COMPANIES,
            {"id": "c1", "name": "Acme", "industry": None, "street": None, "city": None},
        )

        assert company.industry == ""
        assert company.address is None

    def test_from_row_decrypts(self, cipher):
        row = {
            "id": "c1",
            "name": "Acme",
            "encrypted_data": cipher.encrypt(
                {"financials": "2500000", "internalNotes": "Key account"}
            ),
        }

        company = from_row(EntityKind.COMPANIES, row, cipher)

        assert company.revenue == Decimal("2500000")
        assert company.internal_notes == "Key account"

    def test_from_row_note_content(self, cipher):
        row = {
            "id": "n1",
            "related_to_type": "contact",
            "related_to_id": "p1",
            "encrypted_content": cipher.encrypt({"content": "Prefers email"}),
        }

        note = from_row(EntityKind.NOTES, row, cipher)

        assert note.content == "Prefers email"
        assert note.related_to.id == "p1"


# ── InMemoryCRMService ──────────────────────────────────────────────────────


class TestInMemoryCRMService:
    async def test_create_assigns_identity(self, service):
        company = await service.create_company(CompanyCreate(name="Acme"))

        assert company.id
        assert company.created_at is not None
        assert company.created_at == company.updated_at

    async def test_contact_search_is_case_insensitive(self, service):
        await service.create_contact(ContactCreate(first_name="Grace", last_name="Hopper"))
        await service.create_contact(ContactCreate(first_name="Alan", last_name="Turing"))

        found = await service.get_contacts(ContactFilter(search="HOP"))

        assert [c.first_name for c in found] == ["Grace"]

    async def test_company_and_deal_filters(self, service):
        acme = await service.create_company(CompanyCreate(name="Acme", status="customer"))
        await service.create_company(CompanyCreate(name="Globex"))
        await service.create_deal(DealCreate(name="Pilot", company_id=acme.id, stage="proposal"))
        await service.create_deal(DealCreate(name="Other"))

        customers = await service.get_companies(CompanyFilter(status="customer"))
        proposals = await service.get_deals(DealFilter(stage=DealStage.PROPOSAL))

        assert customers == [acme]
        assert [d.name for d in proposals] == ["Pilot"]

    async def test_activity_related_filter(self, service):
        target = RelatedTo(type="deal", id="d1")
        await service.create_activity(ActivityCreate(type="call", subject="A", related_to=target))
        await service.create_activity(
            ActivityCreate(type="call", subject="B", related_to=RelatedTo(type="deal", id="d2"))
        )

        found = await service.get_activities(ActivityFilter(related_to=target))

        assert [a.subject for a in found] == ["A"]

    async def test_update_unknown_raises(self, service):
        with pytest.raises(EntityNotFoundError) as exc_info:
            await service.update_contact("x1", ContactUpdate(title="CTO"))

        assert exc_info.value.kind == "contacts"
        assert str(exc_info.value) == "contacts not found: x1"

    async def test_update_merges_changes(self, service):
        deal = await service.create_deal(DealCreate(name="Pilot", probability=20))

        updated = await service.update_deal(deal.id, DealUpdate(probability=60))

        assert updated.name == "Pilot"
        assert updated.probability == 60
        assert updated.created_at == deal.created_at

    async def test_products_and_notes(self, service):
        product = await service.create_product(ProductCreate(name="Seat", price=Decimal("49")))
        note = await service.create_note(
            NoteCreate(content="Prefers email", related_to=RelatedTo(type="contact", id="p1"))
        )

        assert product.id and note.id
        assert note.security_level == "internal"

    async def test_create_custom_field(self, service):
        field = await service.create_custom_field(
            CustomFieldCreate(
                name="Tier",
                field_type="select",
                entity_type="company",
                options=["gold", "silver"],
                required=True,
            )
        )

        assert field.id
        assert field.created_at is not None
        assert field.options == ["gold", "silver"]
        rows = await service.export_data(EntityKind.CUSTOM_FIELDS)
        assert rows[0]["field_type"] == "select"
        assert rows[0]["required"] is True

    async def test_update_dedupes_tags(self, service):
        """Tags given on update are de-duplicated like tags given on create."""
        contact = await service.create_contact(ContactCreate(first_name="Grace"))
        deal = await service.create_deal(DealCreate(name="Pilot"))

        contact = await service.update_contact(
            contact.id, ContactUpdate(tags=["vip", "vip", "navy"])
        )
        deal = await service.update_deal(deal.id, DealUpdate(tags=["q3", "q3"]))

        assert contact.tags == ["vip", "navy"]
        assert deal.tags == ["q3"]

    def test_update_without_tags_leaves_them_unset(self):
        assert ContactUpdate(title="CTO").changes() == {"title": "CTO"}
        assert DealUpdate(tags=None).changes() == {"tags": None}

    async def test_pipeline_covers_every_stage(self, service):
        await service.create_deal(DealCreate(name="Won", stage="closed-won", value=Decimal("10")))

        pipeline = await service.get_deals_pipeline()

        assert [column.stage for column in pipeline] == list(DealStage)
        assert pipeline[-2].count == 1

    async def test_import_then_export(self, service):
        count = await service.import_data(
            EntityKind.COMPANIES,
            [{"name": "Acme", "industry": "Retail"}, {"name": "Globex", "city": "Cypress Creek"}],
        )

        rows = await service.export_data(EntityKind.COMPANIES)

        assert count == 2
        assert [r["name"] for r in rows] == ["Acme", "Globex"]
        assert rows[1]["city"] == "Cypress Creek"
        assert rows[0]["id"]


# ── SupabaseCRMService ──────────────────────────────────────────────────────


class TestSupabaseRequests:
    """URL, headers and filter translation."""

    async def test_list_url_and_headers(self, cipher):
        recorder = _Recorder(
            httpx.Response(200, json=[{"id": "c1", "name": "Acme"}]),
            httpx.Response(200, json=[]),
        )
        service = _supabase(cipher, recorder)

        companies = await service.get_companies()
        service.set_access_token("user-jwt")
        await service.get_companies()

        first, second = recorder.requests
        assert first.url.path == "/rest/v1/companies"
        assert first.url.params["select"] == "*"
        assert first.headers["apikey"] == "anon-key"
        assert first.headers["Authorization"] == "Bearer anon-key"
        assert second.headers["Authorization"] == "Bearer user-jwt"
        assert [c.name for c in companies] == ["Acme"]

    async def test_company_filters(self, cipher):
        recorder = _Recorder(httpx.Response(200, json=[]))
        service = _supabase(cipher, recorder)

        await service.get_companies(CompanyFilter(status="customer", search="acme"))

        params = recorder.requests[0].url.params
        assert params["status"] == "eq.customer"
        assert params["name"] == "ilike.*acme*"

    async def test_contact_search_spans_names(self, cipher):
        recorder = _Recorder(httpx.Response(200, json=[]))
        service = _supabase(cipher, recorder)

        await service.get_contacts(ContactFilter(search="gr", company_id="c1"))

        params = recorder.requests[0].url.params
        assert params["or"] == '(first_name.ilike."*gr*",last_name.ilike."*gr*")'
        assert params["company_id"] == "eq.c1"

    async def test_contact_search_quotes_reserved_characters(self, cipher):
        """Commas, parentheses and quotes in the term stay inside the pattern."""
        recorder = _Recorder(httpx.Response(200, json=[]))
        service = _supabase(cipher, recorder)

        await service.get_contacts(ContactFilter(search='a,b) "c"'))

        params = recorder.requests[0].url.params
        assert params["or"] == (
            '(first_name.ilike."*a,b) \\"c\\"*",last_name.ilike."*a,b) \\"c\\"*")'
        )
        assert set(params) == {"select", "or"}

    async def test_activity_related_filter(self, cipher):
        recorder = _Recorder(httpx.Response(200, json=[]))
        service = _supabase(cipher, recorder)

        await service.get_activities(ActivityFilter(related_to=RelatedTo(type="deal", id="d1")))

        params = recorder.requests[0].url.params
        assert params["related_to_type"] == "eq.deal"
        assert params["related_to_id"] == "eq.d1"

    async def test_deals_embed_line_items(self, cipher):
        row = {
            "id": "d1",
            "name": "Pilot",
            "value": 1000,
            "stage": "proposal",
            "probability": 50,
            "products": [
                {
                    "id": "dp1",
                    "product_id": "p1",
                    "quantity": 2,
                    "price": 100,
                    "discount": 10,
                    "product": {"id": "p1", "name": "Seat"},
                }
            ],
        }
        recorder = _Recorder(httpx.Response(200, json=[row]))
        service = _supabase(cipher, recorder)

        deals = await service.get_deals()

        assert recorder.requests[0].url.params["select"] == DEAL_SELECT
        item = deals[0].products[0]
        assert item.id == "p1"
        assert item.name == "Seat"
        assert item.line_total == Decimal("180")
        assert deals[0].weighted_value == Decimal("500")

    async def test_undecodable_row_still_loads(self, cipher):
        recorder = _Recorder(
            httpx.Response(200, json=[{"id": "c1", "name": "Acme", "encrypted_data": "garbage"}])
        )
        service = _supabase(cipher, recorder)

        companies = await service.get_companies()

        assert companies[0].name == "Acme"
        assert companies[0].revenue is None


class TestSupabaseWrites:
    """Creates and updates."""

    async def test_create_company_seals_sensitive_fields(self, cipher):
        recorder = _Recorder(_echo(id="c1", created_at="2026-01-05T10:00:00+00:00"))
        service = _supabase(cipher, recorder)

        company = await service.create_company(
            CompanyCreate(
                name="Acme",
                revenue=Decimal("2500000"),
                internal_notes="Key account",
                custom_fields={"tier": "gold"},
                created_by="user-1",
            )
        )

        request = recorder.requests[0]
        body = _body(request)
        assert request.method == "POST"
        assert request.headers["Prefer"] == "return=representation"
        assert request.headers["Accept"] == OBJECT_ACCEPT
        assert "revenue" not in body
        assert "internal_notes" not in body
        assert body["created_by"] == "user-1"
        assert cipher.decrypt(body["encrypted_data"]) == {
            "financials": "2500000",
            "internalNotes": "Key account",
            "customFields": {"tier": "gold"},
        }
        assert company.id == "c1"
        assert company.revenue == Decimal("2500000")
        assert company.custom_fields == {"tier": "gold"}

    async def test_note_sealed_into_encrypted_content(self, cipher):
        recorder = _Recorder(_echo(id="n1"))
        service = _supabase(cipher, recorder)

        note = await service.create_note(
            NoteCreate(content="Prefers email", related_to=RelatedTo(type="contact", id="p1"))
        )

        body = _body(recorder.requests[0])
        assert "content" not in body
        assert cipher.decrypt(body["encrypted_content"]) == {"content": "Prefers email"}
        assert note.content == "Prefers email"

    async def test_update_without_sensitive_fields_is_one_patch(self, cipher):
        recorder = _Recorder(
            _echo(200, id="d1", name="Pilot"),
        )
        service = _supabase(cipher, recorder)

        deal = await service.update_deal("d1", DealUpdate(stage=DealStage.NEGOTIATION))

        request = recorder.requests[0]
        assert request.method == "PATCH"
        assert request.url.params["id"] == "eq.d1"
        assert _body(request) == {"stage": "negotiation"}
        assert deal.stage == DealStage.NEGOTIATION

    async def test_update_merges_sealed_payload(self, cipher):
        stored = cipher.encrypt(
            {"financials": "100", "internalNotes": "old note", "customFields": {}}
        )
        recorder = _Recorder(
            httpx.Response(200, json={"encrypted_data": stored}),
            _echo(200, id="c1", name="Acme"),
        )
        service = _supabase(cipher, recorder)

        company = await service.update_company("c1", CompanyUpdate(revenue=Decimal("200")))

        read, write = recorder.requests
        assert read.method == "GET"
        assert read.url.params["select"] == "encrypted_data"
        assert cipher.decrypt(_body(write)["encrypted_data"]) == {
            "financials": "200",
            "internalNotes": "old note",
            "customFields": {},
        }
        assert company.revenue == Decimal("200")
        assert company.internal_notes == "old note"

    async def test_update_missing_row_is_not_found(self, cipher):
        recorder = _Recorder(
            httpx.Response(406, json={"message": "JSON object requested, multiple (or no) rows returned"})
        )
        service = _supabase(cipher, recorder)

        with pytest.raises(EntityNotFoundError) as exc_info:
            await service.update_deal("missing", DealUpdate(stage=DealStage.PROPOSAL))

        assert exc_info.value.kind == "deals"
        assert len(recorder.requests) == 1

    async def test_create_custom_field_posts_definition(self, cipher):
        recorder = _Recorder(_echo(id="f1"))
        service = _supabase(cipher, recorder)

        field = await service.create_custom_field(
            CustomFieldCreate(name="Tier", field_type="select", entity_type="company")
        )

        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/rest/v1/custom_fields"
        assert _body(request) == {
            "name": "Tier",
            "field_type": "select",
            "entity_type": "company",
            "options": None,
            "required": False,
        }
        assert field.id == "f1"
        assert field.required is False

    async def test_create_deal_inserts_line_items(self, cipher):
        recorder = _Recorder(
            _echo(id="d1"),
            httpx.Response(201),
        )
        service = _supabase(cipher, recorder)
        line = DealProduct(id="p1", name="Seat", quantity=3, price=Decimal("49"))

        deal = await service.create_deal(DealCreate(name="Pilot", products=[line]))

        insert_deal, insert_items = recorder.requests
        assert "products" not in _body(insert_deal)
        assert insert_items.url.path == "/rest/v1/deal_products"
        assert insert_items.headers["Prefer"] == "return=minimal"
        assert _body(insert_items) == [
            {"deal_id": "d1", "product_id": "p1", "quantity": 3, "price": "49", "discount": "0"}
        ]
        assert deal.products == [line]


class TestSupabaseErrors:
    """Error mapping and retry."""

    async def test_client_error_is_not_retried(self, cipher):
        recorder = _Recorder(
            httpx.Response(400, json={"message": 'null value in column "name"'}),
        )
        service = _supabase(cipher, recorder)

        with pytest.raises(CRMBackendError) as exc_info:
            await service.create_company(CompanyCreate(name="Acme"))

        assert exc_info.value.status_code == 400
        assert 'column "name"' in str(exc_info.value)
        assert len(recorder.requests) == 1

    async def test_transient_error_is_retried(self, cipher):
        recorder = _Recorder(
            httpx.Response(503, text="upstream unavailable"),
            httpx.Response(200, json=[{"id": "c1", "name": "Acme"}]),
        )
        service = _supabase(cipher, recorder)

        companies = await service.get_companies()

        assert len(recorder.requests) == 2
        assert companies[0].id == "c1"

    async def test_retries_exhausted(self, cipher):
        recorder = _Recorder(*[httpx.Response(503, text="down") for _ in range(3)])
        service = _supabase(cipher, recorder, max_attempts=3)

        with pytest.raises(CRMBackendError) as exc_info:
            await service.get_deals()

        assert exc_info.value.status_code == 503
        assert len(recorder.requests) == 3

    async def test_connect_error_wrapped(self, cipher):
        recorder = _Recorder(
            httpx.ConnectError("connection refused"),
            httpx.ConnectError("connection refused"),
        )
        service = _supabase(cipher, recorder, max_attempts=2)

        with pytest.raises(CRMBackendError, match="GET contacts failed"):
            await service.get_contacts()

        assert len(recorder.requests) == 2

    async def test_import_empty_is_noop(self, cipher):
        recorder = _Recorder()
        service = _supabase(cipher, recorder)

        assert await service.import_data(EntityKind.CONTACTS, []) == 0
        assert recorder.requests == []


# ── build_crm_service ───────────────────────────────────────────────────────


class TestBuildCRMService:
    def test_local_provider(self):
        settings = Settings(_env_file=None, BACKEND_PROVIDER="local")
        assert isinstance(build_crm_service(settings), InMemoryCRMService)

    def test_supabase_requires_key(self):
        settings = Settings(_env_file=None, BACKEND_PROVIDER="supabase", ENCRYPTION_KEY="")

        with pytest.raises(ValueError, match="ENCRYPTION_KEY"):
            build_crm_service(settings)

    def test_supabase_provider(self):
        settings = Settings(
            _env_file=None,
            BACKEND_PROVIDER="supabase",
            SUPABASE_URL="https://crm.supabase.co",
            ENCRYPTION_KEY=SensitiveDataCipher.generate_key(),
        )

        assert isinstance(build_crm_service(settings), SupabaseCRMService)

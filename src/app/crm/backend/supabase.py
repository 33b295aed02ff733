"""Supabase CRM backend -- PostgREST over httpx.

Implements CRMService against a managed Supabase project's REST endpoint
(``{url}/rest/v1/{table}``). Each call opens a short-lived
httpx.AsyncClient, mirroring the other HTTP integrations in this repo.

Key implementation details:
- Writes send ``Prefer: return=representation`` so the backend returns the
  persisted row with its assigned id and timestamps.
- Single-row calls send the PostgREST object Accept header; a 406 on an
  update therefore means the id matched nothing (EntityNotFoundError).
- Transient failures (5xx, 429, connect errors, timeouts) are retried with
  tenacity exponential backoff; anything else surfaces immediately as
  CRMBackendError.
- Sensitive fields are sealed into ``encrypted_data`` / ``encrypted_content``
  with SensitiveDataCipher before they leave the process.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from src.app.crm.backend.adapter import CRMService
from src.app.crm.backend.crypto import SensitiveDataCipher
from src.app.crm.backend.field_mapping import (
    deal_product_rows,
    encrypted_column,
    from_row,
    split_sensitive,
    to_row,
)
from src.app.crm.errors import CRMBackendError, EntityNotFoundError
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
    CRMModel,
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

OBJECT_ACCEPT = "application/vnd.pgrst.object+json"

DEAL_SELECT = (
    "*,products:deal_products(id,product_id,quantity,price,discount,"
    "product:products(id,name))"
)

_SELECTS: dict[EntityKind, str] = {
    EntityKind.DEALS: DEAL_SELECT,
}


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status >= 500 or status == 429
    return isinstance(exc, (httpx.ConnectError, httpx.TimeoutException))


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return body.get("message") or body.get("error") or str(body)
    return str(body)


def _quoted_ilike(search: str) -> str:
    """Substring pattern for use inside an ``or=(...)`` tree.

    Double quotes keep commas, dots, colons and parentheses in the term
    from being read as tree syntax.
    """
    escaped = search.replace("\\", "\\\\").replace('"', '\\"')
    return f'ilike."*{escaped}*"'


class SupabaseCRMService(CRMService):
    """CRMService backed by a Supabase project.

    Args:
        url: Project URL, e.g. ``https://abc.supabase.co``.
        api_key: Project anon key (sent as ``apikey``).
        cipher: Cipher for the encrypted columns.
        access_token: Signed-in user's JWT; defaults to the anon key.
        timeout: Per-request timeout in seconds.
        max_attempts: Attempts per request for transient failures.
        retry_wait: tenacity wait strategy between attempts.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        cipher: SensitiveDataCipher,
        *,
        access_token: str | None = None,
        timeout: float = 10.0,
        max_attempts: int = 3,
        retry_wait: wait_base | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._rest_url = f"{url.rstrip('/')}/rest/v1"
        self._api_key = api_key
        self._cipher = cipher
        self._access_token = access_token
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)
        self._transport = transport

    def set_access_token(self, token: str | None) -> None:
        """Switch the bearer token after the user signs in or out."""
        self._access_token = token

    # ── HTTP ────────────────────────────────────────────────────────────

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={
                "apikey": self._api_key,
                "Authorization": f"Bearer {self._access_token or self._api_key}",
                "Content-Type": "application/json",
            },
            timeout=self._timeout,
            transport=self._transport,
        )

    async def _send(
        self,
        method: str,
        table: str,
        *,
        params: dict[str, str] | None = None,
        json: Any = None,
        single: bool = False,
        returning: bool = True,
    ) -> Any:
        """Issue one PostgREST request with retry; return the decoded body."""
        headers: dict[str, str] = {}
        if method in ("POST", "PATCH"):
            headers["Prefer"] = "return=representation" if returning else "return=minimal"
        if single:
            headers["Accept"] = OBJECT_ACCEPT

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_attempts),
                wait=self._retry_wait,
                retry=retry_if_exception(_is_transient),
                reraise=True,
            ):
                with attempt:
                    async with self._client() as client:
                        response = await client.request(
                            method,
                            f"{self._rest_url}/{table}",
                            params=params,
                            json=json,
                            headers=headers,
                        )
                        response.raise_for_status()
                        return response.json() if response.content else None
        except httpx.HTTPStatusError as exc:
            raise CRMBackendError(
                _error_message(exc.response), status_code=exc.response.status_code
            ) from exc
        except httpx.HTTPError as exc:
            raise CRMBackendError(f"{method} {table} failed: {exc}") from exc

    # ── Generic operations ──────────────────────────────────────────────

    def _sealed_row(self, kind: EntityKind, data: CRMModel) -> dict[str, Any]:
        plain, sensitive = split_sensitive(kind, data.model_dump(mode="json"))
        row = to_row(kind, plain)
        if sensitive:
            row[encrypted_column(kind)] = self._cipher.encrypt(sensitive)
        return row

    async def _list(self, kind: EntityKind, params: dict[str, str]) -> list[Any]:
        rows = await self._send(
            "GET", kind.value, params={"select": _SELECTS.get(kind, "*"), **params}
        )
        return [from_row(kind, row, self._cipher) for row in rows or []]

    async def _insert(self, kind: EntityKind, data: CRMModel) -> Any:
        row = await self._send("POST", kind.value, json=self._sealed_row(kind, data), single=True)
        entity = from_row(kind, row, self._cipher)
        logger.info("supabase_crm.created", kind=kind.value, entity_id=entity.id)
        return entity

    async def _update(self, kind: EntityKind, entity_id: str, updates: CRMUpdate) -> Any:
        plain, sensitive = split_sensitive(kind, updates.model_dump(mode="json", exclude_unset=True))
        row = to_row(kind, plain)
        params = {"id": f"eq.{entity_id}", "select": _SELECTS.get(kind, "*")}

        try:
            if sensitive:
                column = encrypted_column(kind)
                current = await self._send(
                    "GET",
                    kind.value,
                    params={"id": f"eq.{entity_id}", "select": column},
                    single=True,
                )
                merged = {}
                if current and current.get(column):
                    merged = self._cipher.decrypt(current[column]) or {}
                merged.update(sensitive)
                row[column] = self._cipher.encrypt(merged)

            updated = await self._send("PATCH", kind.value, params=params, json=row, single=True)
        except CRMBackendError as exc:
            if exc.status_code == 406:
                raise EntityNotFoundError(kind.value, entity_id) from exc
            raise

        entity = from_row(kind, updated, self._cipher)
        logger.info("supabase_crm.updated", kind=kind.value, entity_id=entity_id)
        return entity

    # ── Collections ─────────────────────────────────────────────────────

    async def get_companies(self, filters: CompanyFilter | None = None) -> list[Company]:
        params: dict[str, str] = {}
        if filters:
            if filters.status:
                params["status"] = f"eq.{filters.status.value}"
            if filters.industry:
                params["industry"] = f"eq.{filters.industry}"
            if filters.assigned_to:
                params["assigned_to"] = f"eq.{filters.assigned_to}"
            if filters.search:
                params["name"] = f"ilike.*{filters.search}*"
        return await self._list(EntityKind.COMPANIES, params)

    async def get_contacts(self, filters: ContactFilter | None = None) -> list[Contact]:
        params: dict[str, str] = {}
        if filters:
            if filters.status:
                params["status"] = f"eq.{filters.status.value}"
            if filters.company_id:
                params["company_id"] = f"eq.{filters.company_id}"
            if filters.assigned_to:
                params["assigned_to"] = f"eq.{filters.assigned_to}"
            if filters.search:
                pattern = _quoted_ilike(filters.search)
                params["or"] = f"(first_name.{pattern},last_name.{pattern})"
        return await self._list(EntityKind.CONTACTS, params)

    async def get_deals(self, filters: DealFilter | None = None) -> list[Deal]:
        params: dict[str, str] = {}
        if filters:
            if filters.stage:
                params["stage"] = f"eq.{filters.stage.value}"
            if filters.company_id:
                params["company_id"] = f"eq.{filters.company_id}"
            if filters.assigned_to:
                params["assigned_to"] = f"eq.{filters.assigned_to}"
            if filters.search:
                params["name"] = f"ilike.*{filters.search}*"
        return await self._list(EntityKind.DEALS, params)

    async def get_activities(self, filters: ActivityFilter | None = None) -> list[Activity]:
        params: dict[str, str] = {}
        if filters:
            if filters.type:
                params["type"] = f"eq.{filters.type.value}"
            if filters.status:
                params["status"] = f"eq.{filters.status.value}"
            if filters.assigned_to:
                params["assigned_to"] = f"eq.{filters.assigned_to}"
            if filters.related_to:
                params["related_to_type"] = f"eq.{filters.related_to.type.value}"
                params["related_to_id"] = f"eq.{filters.related_to.id}"
        return await self._list(EntityKind.ACTIVITIES, params)

    # ── Create / update ─────────────────────────────────────────────────

    async def create_company(self, data: CompanyCreate) -> Company:
        return await self._insert(EntityKind.COMPANIES, data)

    async def update_company(self, company_id: str, updates: CompanyUpdate) -> Company:
        return await self._update(EntityKind.COMPANIES, company_id, updates)

    async def create_contact(self, data: ContactCreate) -> Contact:
        return await self._insert(EntityKind.CONTACTS, data)

    async def update_contact(self, contact_id: str, updates: ContactUpdate) -> Contact:
        return await self._update(EntityKind.CONTACTS, contact_id, updates)

    async def create_deal(self, data: DealCreate) -> Deal:
        """Insert the deal, then its deal_products line items."""
        deal: Deal = await self._insert(EntityKind.DEALS, data)
        if data.products:
            products = [p.model_dump(mode="json") for p in data.products]
            await self._send(
                "POST",
                "deal_products",
                json=deal_product_rows(deal.id, products),
                returning=False,
            )
            deal = deal.model_copy(update={"products": list(data.products)})
        return deal

    async def update_deal(self, deal_id: str, updates: DealUpdate) -> Deal:
        return await self._update(EntityKind.DEALS, deal_id, updates)

    async def create_activity(self, data: ActivityCreate) -> Activity:
        return await self._insert(EntityKind.ACTIVITIES, data)

    async def update_activity(self, activity_id: str, updates: ActivityUpdate) -> Activity:
        return await self._update(EntityKind.ACTIVITIES, activity_id, updates)

    async def create_product(self, data: ProductCreate) -> Product:
        return await self._insert(EntityKind.PRODUCTS, data)

    async def create_note(self, data: NoteCreate) -> Note:
        return await self._insert(EntityKind.NOTES, data)

    async def create_custom_field(self, data: CustomFieldCreate) -> CustomField:
        return await self._insert(EntityKind.CUSTOM_FIELDS, data)

    # ── Reporting / bulk ────────────────────────────────────────────────

    async def get_deals_pipeline(self) -> list[PipelineStage]:
        return build_pipeline(await self.get_deals())

    async def get_activity_metrics(self, timeframe: MetricsTimeframe) -> ActivityMetrics:
        return summarize_activities(await self.get_activities(), timeframe)

    async def import_data(self, kind: EntityKind, rows: list[dict[str, Any]]) -> int:
        if not rows:
            return 0
        await self._send("POST", kind.value, json=rows, returning=False)
        logger.info("supabase_crm.imported", kind=kind.value, count=len(rows))
        return len(rows)

    async def export_data(self, kind: EntityKind) -> list[dict[str, Any]]:
        rows = await self._send("GET", kind.value, params={"select": "*"})
        return rows or []

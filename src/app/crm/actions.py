"""CRM action layer -- async create/update/refresh operations over the store.

Each create/update performs exactly one service round trip and then one
dispatch, returning the persisted entity. Nothing is applied optimistically:
the store only changes once the backend has answered.

Failure policy:
- create/update: the error is logged and re-raised unchanged; the store is
  not touched and no SetError is dispatched. The caller decides what the
  user sees.
- refresh_data: any of the four collection reads failing dispatches
  SetError(REFRESH_ERROR_MESSAGE); results of the other reads are dropped
  and the previous collections stay as they were.

Concurrent mutations of the same entity are not serialized; whichever
response arrives last is dispatched last and wins.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar

import structlog

from src.app.core.session import AuthSession
from src.app.crm.backend.adapter import CRMService
from src.app.crm.errors import CRMProviderNotMountedError
from src.app.crm.schemas import (
    Activity,
    ActivityCreate,
    ActivityUpdate,
    Company,
    CompanyCreate,
    CompanyUpdate,
    Contact,
    ContactCreate,
    ContactUpdate,
    CRMModel,
    Deal,
    DealCreate,
    DealUpdate,
)
from src.app.crm.store import (
    AddActivity,
    AddCompany,
    AddContact,
    AddDeal,
    CRMAction,
    CRMStore,
    SetActivities,
    SetCompanies,
    SetContacts,
    SetDeals,
    SetError,
    SetLoading,
    UpdateActivity,
    UpdateCompany,
    UpdateContact,
    UpdateDeal,
)

logger = structlog.get_logger(__name__)

REFRESH_ERROR_MESSAGE = "Failed to load CRM data"

M = TypeVar("M", bound=CRMModel)
E = TypeVar("E")


def _coerce(model: type[M], data: M | Mapping[str, Any]) -> M:
    if isinstance(data, model):
        return data
    return model.model_validate(data)


class CRMActions:
    """Named async operations bound to one store, service and session.

    Args:
        store: The CRMStore to dispatch into.
        service: Backend implementing CRMService.
        session: Source of the ``created_by`` identity and refresh gate.
        is_active: Returns False once the owning provider has unmounted;
            new calls then raise CRMProviderNotMountedError.
    """

    def __init__(
        self,
        store: CRMStore,
        service: CRMService,
        session: AuthSession,
        *,
        is_active: Callable[[], bool] | None = None,
    ) -> None:
        self._store = store
        self._service = service
        self._session = session
        self._is_active = is_active or (lambda: True)
        self._refresh_generation = 0

    def _ensure_active(self, operation: str) -> None:
        if not self._is_active():
            raise CRMProviderNotMountedError(operation)

    async def _create(
        self,
        operation: str,
        model: type[M],
        data: M | Mapping[str, Any],
        call: Callable[[M], Awaitable[E]],
        action: Callable[[E], CRMAction],
    ) -> E:
        self._ensure_active(operation)
        try:
            payload = _coerce(model, data).model_copy(
                update={"created_by": self._session.user_id}
            )
            entity = await call(payload)
        except Exception:
            logger.error("crm.create_failed", operation=operation, exc_info=True)
            raise
        self._store.dispatch(action(entity))
        return entity

    async def _update(
        self,
        operation: str,
        entity_id: str,
        model: type[M],
        updates: M | Mapping[str, Any],
        call: Callable[[str, M], Awaitable[E]],
        action: Callable[[E], CRMAction],
    ) -> E:
        self._ensure_active(operation)
        try:
            entity = await call(entity_id, _coerce(model, updates))
        except Exception:
            logger.error(
                "crm.update_failed", operation=operation, entity_id=entity_id, exc_info=True
            )
            raise
        self._store.dispatch(action(entity))
        return entity

    # ── Companies ───────────────────────────────────────────────────────

    async def create_company(self, data: CompanyCreate | Mapping[str, Any]) -> Company:
        return await self._create(
            "create_company", CompanyCreate, data, self._service.create_company, AddCompany
        )

    async def update_company(
        self, company_id: str, updates: CompanyUpdate | Mapping[str, Any]
    ) -> Company:
        return await self._update(
            "update_company",
            company_id,
            CompanyUpdate,
            updates,
            self._service.update_company,
            UpdateCompany,
        )

    # ── Contacts ────────────────────────────────────────────────────────

    async def create_contact(self, data: ContactCreate | Mapping[str, Any]) -> Contact:
        return await self._create(
            "create_contact", ContactCreate, data, self._service.create_contact, AddContact
        )

    async def update_contact(
        self, contact_id: str, updates: ContactUpdate | Mapping[str, Any]
    ) -> Contact:
        return await self._update(
            "update_contact",
            contact_id,
            ContactUpdate,
            updates,
            self._service.update_contact,
            UpdateContact,
        )

    # ── Deals ───────────────────────────────────────────────────────────

    async def create_deal(self, data: DealCreate | Mapping[str, Any]) -> Deal:
        return await self._create(
            "create_deal", DealCreate, data, self._service.create_deal, AddDeal
        )

    async def update_deal(self, deal_id: str, updates: DealUpdate | Mapping[str, Any]) -> Deal:
        return await self._update(
            "update_deal", deal_id, DealUpdate, updates, self._service.update_deal, UpdateDeal
        )

    # ── Activities ──────────────────────────────────────────────────────

    async def create_activity(self, data: ActivityCreate | Mapping[str, Any]) -> Activity:
        return await self._create(
            "create_activity",
            ActivityCreate,
            data,
            self._service.create_activity,
            AddActivity,
        )

    async def update_activity(
        self, activity_id: str, updates: ActivityUpdate | Mapping[str, Any]
    ) -> Activity:
        return await self._update(
            "update_activity",
            activity_id,
            ActivityUpdate,
            updates,
            self._service.update_activity,
            UpdateActivity,
        )

    # ── Bulk refresh ────────────────────────────────────────────────────

    async def refresh_data(self) -> bool:
        """Reload all four collections concurrently.

        No-op (not even SetLoading) when nobody is signed in. When a newer
        refresh starts before this one settles, this one's outcome is
        discarded so only the most recent refresh decides the state.

        Returns:
            True if this refresh decided the state (loaded or SetError),
            False if it was a no-op or was superseded.
        """
        self._ensure_active("refresh_data")
        user_id = self._session.user_id
        if user_id is None:
            return False

        self._refresh_generation += 1
        generation = self._refresh_generation
        self._store.dispatch(SetLoading())

        try:
            companies, contacts, deals, activities = await asyncio.gather(
                self._service.get_companies(),
                self._service.get_contacts(),
                self._service.get_deals(),
                self._service.get_activities(),
            )
        except Exception:
            logger.error("crm.refresh_failed", user_id=user_id, exc_info=True)
            if generation != self._refresh_generation:
                return False
            self._store.dispatch(SetError(REFRESH_ERROR_MESSAGE))
            return True

        if generation != self._refresh_generation:
            logger.info("crm.refresh_superseded", user_id=user_id)
            return False

        self._store.dispatch_many(
            [
                SetCompanies(tuple(companies)),
                SetContacts(tuple(contacts)),
                SetDeals(tuple(deals)),
                SetActivities(tuple(activities)),
            ]
        )
        logger.info(
            "crm.refreshed",
            user_id=user_id,
            companies=len(companies),
            contacts=len(contacts),
            deals=len(deals),
            activities=len(activities),
        )
        return True

"""CRM domain store -- immutable state, closed action set, pure reducer.

The store holds the client-side snapshot of the four CRM collections
(companies, contacts, deals, activities) plus the bulk-refresh flags.
Every transition goes through ``CRMStore.dispatch``, which applies
``reduce`` synchronously and then notifies subscribers, so a reader always
sees a whole snapshot from before or after an action, never a torn one.

Transitions:
- SetLoading: is_loading=True, error=None
- SetError: is_loading=False, error=message
- Set<Collection>: replace that collection wholesale, is_loading=False
- Add<Entity>: append; ignored when the id is already present
- Update<Entity>: replace the entry with the same id in place, order kept

Nothing is ever removed and no foreign keys are checked here; delete is
deliberately absent (add a Remove<Entity> action here if the backend grows
one).
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from typing import ClassVar, Union

import structlog

from src.app.crm.schemas import Activity, Company, Contact, Deal

logger = structlog.get_logger(__name__)


# ── State ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class CRMState:
    """Immutable snapshot of the CRM collections."""

    companies: tuple[Company, ...] = ()
    contacts: tuple[Contact, ...] = ()
    deals: tuple[Deal, ...] = ()
    activities: tuple[Activity, ...] = ()
    is_loading: bool = False
    error: str | None = None


# ── Actions ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SetLoading:
    type: ClassVar[str] = "SET_LOADING"


@dataclass(frozen=True)
class SetError:
    message: str
    type: ClassVar[str] = "SET_ERROR"


@dataclass(frozen=True)
class SetCompanies:
    companies: tuple[Company, ...]
    type: ClassVar[str] = "SET_COMPANIES"


@dataclass(frozen=True)
class SetContacts:
    contacts: tuple[Contact, ...]
    type: ClassVar[str] = "SET_CONTACTS"


@dataclass(frozen=True)
class SetDeals:
    deals: tuple[Deal, ...]
    type: ClassVar[str] = "SET_DEALS"


@dataclass(frozen=True)
class SetActivities:
    activities: tuple[Activity, ...]
    type: ClassVar[str] = "SET_ACTIVITIES"


@dataclass(frozen=True)
class AddCompany:
    company: Company
    type: ClassVar[str] = "ADD_COMPANY"


@dataclass(frozen=True)
class UpdateCompany:
    company: Company
    type: ClassVar[str] = "UPDATE_COMPANY"


@dataclass(frozen=True)
class AddContact:
    contact: Contact
    type: ClassVar[str] = "ADD_CONTACT"


@dataclass(frozen=True)
class UpdateContact:
    contact: Contact
    type: ClassVar[str] = "UPDATE_CONTACT"


@dataclass(frozen=True)
class AddDeal:
    deal: Deal
    type: ClassVar[str] = "ADD_DEAL"


@dataclass(frozen=True)
class UpdateDeal:
    deal: Deal
    type: ClassVar[str] = "UPDATE_DEAL"


@dataclass(frozen=True)
class AddActivity:
    activity: Activity
    type: ClassVar[str] = "ADD_ACTIVITY"


@dataclass(frozen=True)
class UpdateActivity:
    activity: Activity
    type: ClassVar[str] = "UPDATE_ACTIVITY"


CRMAction = Union[
    SetLoading,
    SetError,
    SetCompanies,
    SetContacts,
    SetDeals,
    SetActivities,
    AddCompany,
    UpdateCompany,
    AddContact,
    UpdateContact,
    AddDeal,
    UpdateDeal,
    AddActivity,
    UpdateActivity,
]

_ADD_ACTIONS = (AddCompany, AddContact, AddDeal, AddActivity)


# ── Reducer ─────────────────────────────────────────────────────────────────


def _append(state: CRMState, field: str, entity) -> CRMState:
    items = getattr(state, field)
    if any(item.id == entity.id for item in items):
        return state
    return replace(state, **{field: (*items, entity)})


def _replace_by_id(state: CRMState, field: str, entity) -> CRMState:
    items = getattr(state, field)
    if not any(item.id == entity.id for item in items):
        return state
    return replace(
        state,
        **{field: tuple(entity if item.id == entity.id else item for item in items)},
    )


def reduce(state: CRMState, action: CRMAction) -> CRMState:
    """Apply one action to a state and return the next state.

    Pure and total: unknown actions return ``state`` itself.
    """
    match action:
        case SetLoading():
            return replace(state, is_loading=True, error=None)
        case SetError(message=message):
            return replace(state, is_loading=False, error=message)
        case SetCompanies(companies=companies):
            return replace(state, companies=tuple(companies), is_loading=False)
        case SetContacts(contacts=contacts):
            return replace(state, contacts=tuple(contacts), is_loading=False)
        case SetDeals(deals=deals):
            return replace(state, deals=tuple(deals), is_loading=False)
        case SetActivities(activities=activities):
            return replace(state, activities=tuple(activities), is_loading=False)
        case AddCompany(company=company):
            return _append(state, "companies", company)
        case UpdateCompany(company=company):
            return _replace_by_id(state, "companies", company)
        case AddContact(contact=contact):
            return _append(state, "contacts", contact)
        case UpdateContact(contact=contact):
            return _replace_by_id(state, "contacts", contact)
        case AddDeal(deal=deal):
            return _append(state, "deals", deal)
        case UpdateDeal(deal=deal):
            return _replace_by_id(state, "deals", deal)
        case AddActivity(activity=activity):
            return _append(state, "activities", activity)
        case UpdateActivity(activity=activity):
            return _replace_by_id(state, "activities", activity)
        case _:
            return state


# ── Store ───────────────────────────────────────────────────────────────────


StateListener = Callable[[CRMState], None]


class CRMStore:
    """Owns the current CRMState and broadcasts transitions.

    ``dispatch`` is the only mutation path. Subscribers are called with the
    new state after every dispatch that changed it.

    Args:
        initial: Starting state; an empty CRMState by default.
    """

    def __init__(self, initial: CRMState | None = None) -> None:
        self._state = initial if initial is not None else CRMState()
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> CRMState:
        return self._state

    def dispatch(self, action: CRMAction) -> CRMState:
        """Reduce ``action`` into the current state and notify subscribers."""
        previous = self._state
        self._state = reduce(previous, action)

        if self._state is previous:
            if isinstance(action, _ADD_ACTIONS):
                logger.warning("crm_store.duplicate_add_ignored", action=action.type)
            return self._state

        logger.debug("crm_store.dispatched", action=getattr(action, "type", None))
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                logger.warning("crm_store.listener_failed", exc_info=True)
        return self._state

    def dispatch_many(self, actions: Iterable[CRMAction]) -> CRMState:
        for action in actions:
            self.dispatch(action)
        return self._state

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener; returns a callable that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

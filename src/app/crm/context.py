"""CRM provider -- owns the store for its mounted lifetime and drives refreshes.

The provider is constructed explicitly with a backend and an AuthSession
and used as an async context manager::

    async with CRMProvider(service, session) as crm:
        await crm.wait_until_idle()
        company = await crm.actions.create_company({"name": "Acme"})
        crm.state.companies

While mounted it listens to the session and starts exactly one
refresh_data() per distinct signed-in identity: on mount if someone is
already signed in, and again whenever a different user signs in or the
same user signs in after signing out. Signing out clears nothing; the last
snapshot stays readable until the next identity loads.

Every capability (state, dispatch, subscribe, actions, refresh_data)
raises CRMProviderNotMountedError outside the mounted lifetime. Work that
was already in flight at unmount still completes and dispatches.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from types import TracebackType

import structlog

from src.app.core.session import AuthSession, User
from src.app.crm.actions import CRMActions
from src.app.crm.backend.adapter import CRMService
from src.app.crm.errors import CRMProviderNotMountedError
from src.app.crm.store import CRMAction, CRMState, CRMStore, StateListener

logger = structlog.get_logger(__name__)


class CRMLifecycle(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    ERRORED = "errored"


class CRMProvider:
    """Mountable owner of one CRMStore and its action layer.

    Args:
        service: Backend implementing CRMService.
        session: Session whose identity gates and stamps every operation.
        store: Optional pre-built store (defaults to an empty one).
    """

    def __init__(
        self,
        service: CRMService,
        session: AuthSession,
        *,
        store: CRMStore | None = None,
    ) -> None:
        self._store = store if store is not None else CRMStore()
        self._session = session
        self._actions = CRMActions(
            self._store, service, session, is_active=lambda: self._mounted
        )
        self._mounted = False
        self._unsubscribe = None
        self._loaded_identity: str | None = None
        self._refreshed = False
        self._pending: set[asyncio.Task[None]] = set()

    # ── Lifetime ────────────────────────────────────────────────────────

    @property
    def mounted(self) -> bool:
        return self._mounted

    async def mount(self) -> None:
        """Start listening to the session; refresh if someone is signed in."""
        if self._mounted:
            return
        self._mounted = True
        self._unsubscribe = self._session.subscribe(self._on_session_change)
        logger.info("crm_provider.mounted", user_id=self._session.user_id)
        self._on_session_change(self._session.user)

    async def unmount(self) -> None:
        """Stop listening; wait for in-flight refreshes to settle."""
        if not self._mounted:
            return
        self._mounted = False
        self._loaded_identity = None
        self._refreshed = False
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        logger.info("crm_provider.unmounted", pending=len(self._pending))
        await self._drain()

    async def __aenter__(self) -> CRMProvider:
        await self.mount()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.unmount()

    def _on_session_change(self, user: User | None) -> None:
        if user is None:
            self._loaded_identity = None
            return
        if user.id == self._loaded_identity:
            return
        self._loaded_identity = user.id

        logger.info("crm_provider.identity_changed", user_id=user.id)
        task = asyncio.get_running_loop().create_task(self._refresh())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _refresh(self) -> None:
        try:
            loaded = await self._actions.refresh_data()
        except CRMProviderNotMountedError:
            logger.debug("crm_provider.refresh_skipped_unmounted")
            return
        if loaded and self._mounted:
            self._refreshed = True

    async def _drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending))
            self._pending.difference_update([t for t in self._pending if t.done()])

    async def wait_until_idle(self) -> None:
        """Wait for every refresh this provider started to settle."""
        self._require("wait_until_idle")
        await self._drain()

    # ── Capabilities ────────────────────────────────────────────────────

    def _require(self, capability: str) -> None:
        if not self._mounted:
            raise CRMProviderNotMountedError(capability)

    @property
    def state(self) -> CRMState:
        self._require("state")
        return self._store.state

    @property
    def actions(self) -> CRMActions:
        self._require("actions")
        return self._actions

    @property
    def status(self) -> CRMLifecycle:
        self._require("status")
        state = self._store.state
        if self._pending or state.is_loading:
            return CRMLifecycle.LOADING
        if state.error is not None:
            return CRMLifecycle.ERRORED
        if self._refreshed:
            return CRMLifecycle.READY
        return CRMLifecycle.UNINITIALIZED

    def dispatch(self, action: CRMAction) -> CRMState:
        """Raw dispatch for callers composing their own actions."""
        self._require("dispatch")
        return self._store.dispatch(action)

    def subscribe(self, listener: StateListener):
        self._require("subscribe")
        return self._store.subscribe(listener)

    async def refresh_data(self) -> bool:
        self._require("refresh_data")
        loaded = await self._actions.refresh_data()
        if loaded:
            self._refreshed = True
        return loaded


def use_crm(provider: CRMProvider | None) -> CRMProvider:
    """Return ``provider`` if it is mounted, else raise.

    Raises:
        CRMProviderNotMountedError: No provider, or one that is not mounted.
    """
    if provider is None or not provider.mounted:
        raise CRMProviderNotMountedError("use_crm")
    return provider

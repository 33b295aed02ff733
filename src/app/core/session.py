"""Authenticated session identity.

The AuthSession is the single source of the current user for the CRM
client. It is constructed explicitly and passed to whatever needs it (the
CRM provider and action layer); there is no module-level global. Listeners
are notified synchronously whenever the user signs in or out, which is
what drives the provider's refresh-per-identity lifecycle.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class User:
    """Immutable snapshot of the signed-in user."""

    id: str
    email: str = ""
    name: str = ""
    role: str = "member"
    permissions: tuple[str, ...] = field(default_factory=tuple)


SessionListener = Callable[["User | None"], None]


class AuthSession:
    """Holds the current user and broadcasts identity changes.

    Args:
        user: Optional user to start signed in with.
    """

    def __init__(self, user: User | None = None) -> None:
        self._user = user
        self._listeners: list[SessionListener] = []

    @property
    def user(self) -> User | None:
        return self._user

    @property
    def user_id(self) -> str | None:
        """Session identity, or None when signed out."""
        return self._user.id if self._user is not None else None

    def sign_in(self, user: User) -> None:
        """Replace the current user and notify listeners."""
        self._user = user
        logger.info("session.signed_in", user_id=user.id)
        self._notify()

    def sign_out(self) -> None:
        """Clear the current user and notify listeners."""
        previous = self.user_id
        self._user = None
        logger.info("session.signed_out", user_id=previous)
        self._notify()

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register a listener; returns a callable that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self._user)

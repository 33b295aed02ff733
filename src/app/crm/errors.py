"""Exceptions raised by the CRM client layers."""

from __future__ import annotations


class CRMError(Exception):
    """Base class for CRM client errors."""


class CRMProviderNotMountedError(CRMError):
    """A store capability was used outside a mounted CRMProvider."""

    def __init__(self, capability: str) -> None:
        self.capability = capability
        super().__init__(
            f"{capability} used outside provider -- enter CRMProvider before using it"
        )


class EntityNotFoundError(CRMError):
    """The backend has no row with the requested id."""

    def __init__(self, kind: str, entity_id: str) -> None:
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} not found: {entity_id}")


class CRMBackendError(CRMError):
    """The backend rejected a request (validation, permissions, constraints)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)

"""Shared fixtures for CRM client tests.

Every test runs against the in-process backend or an httpx.MockTransport,
so no Supabase project, network or .env file is needed.
"""

from __future__ import annotations

import pytest

from src.app.core.session import AuthSession, User
from src.app.crm.actions import CRMActions
from src.app.crm.backend.crypto import SensitiveDataCipher
from src.app.crm.backend.memory import InMemoryCRMService
from src.app.crm.store import CRMStore


@pytest.fixture
def user() -> User:
    """The signed-in test user."""
    return User(id="user-1", email="ada@example.com", name="Ada Lovelace")


@pytest.fixture
def session(user: User) -> AuthSession:
    """Session already signed in as ``user``."""
    return AuthSession(user)


@pytest.fixture
def service() -> InMemoryCRMService:
    """Empty in-process backend."""
    return InMemoryCRMService()


@pytest.fixture
def store() -> CRMStore:
    return CRMStore()


@pytest.fixture
def actions(store: CRMStore, service: InMemoryCRMService, session: AuthSession) -> CRMActions:
    """Action layer wired to the empty store, memory backend and session."""
    return CRMActions(store, service, session)


@pytest.fixture
def cipher() -> SensitiveDataCipher:
    """Cipher with a fresh random key."""
    return SensitiveDataCipher(SensitiveDataCipher.generate_key())

"""Backend selection from settings."""

from __future__ import annotations

import structlog

from src.app.config import BackendProvider, Settings
from src.app.crm.backend.adapter import CRMService
from src.app.crm.backend.crypto import SensitiveDataCipher
from src.app.crm.backend.memory import InMemoryCRMService
from src.app.crm.backend.supabase import SupabaseCRMService

logger = structlog.get_logger(__name__)


def build_crm_service(settings: Settings) -> CRMService:
    """Instantiate the CRMService named by ``BACKEND_PROVIDER``.

    Raises:
        ValueError: Unknown provider, or supabase without an ENCRYPTION_KEY.
    """
    provider = BackendProvider(settings.BACKEND_PROVIDER)

    if provider == BackendProvider.local:
        logger.info("crm_backend.selected", provider=provider.value)
        return InMemoryCRMService()

    if not settings.ENCRYPTION_KEY:
        raise ValueError("ENCRYPTION_KEY must be set for the supabase backend")

    logger.info("crm_backend.selected", provider=provider.value, url=settings.SUPABASE_URL)
    return SupabaseCRMService(
        url=settings.SUPABASE_URL,
        api_key=settings.SUPABASE_ANON_KEY,
        cipher=SensitiveDataCipher(settings.ENCRYPTION_KEY),
        timeout=settings.HTTP_TIMEOUT,
        max_attempts=settings.HTTP_MAX_RETRIES,
    )

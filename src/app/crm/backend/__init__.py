"""CRM backends -- pluggable service layer behind the store's action layer.

Provides the abstract CRMService interface with concrete implementations:
- SupabaseCRMService: managed Supabase project over PostgREST (httpx)
- InMemoryCRMService: in-process ``local`` provider
- build_crm_service: picks one from Settings.BACKEND_PROVIDER
"""

from src.app.crm.backend.adapter import CRMService
from src.app.crm.backend.crypto import SensitiveDataCipher
from src.app.crm.backend.factory import build_crm_service
from src.app.crm.backend.memory import InMemoryCRMService
from src.app.crm.backend.supabase import SupabaseCRMService

__all__ = [
    "CRMService",
    "InMemoryCRMService",
    "SensitiveDataCipher",
    "SupabaseCRMService",
    "build_crm_service",
]

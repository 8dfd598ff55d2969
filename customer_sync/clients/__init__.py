"""Store client wrappers.

Each client handles:
- Authentication
- Insert / upsert / update / delete / select
- Rate limiting
- Retries of transient failures with exponential backoff
"""

from .base import BaseAPIClient, StoreClient, StoreError
from .supabase_client import SupabaseClient

__all__ = ["BaseAPIClient", "StoreClient", "StoreError", "SupabaseClient"]
